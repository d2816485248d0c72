# core/embedder.py
import logging
import math
from abc import ABC, abstractmethod
from typing import List, Optional

import config
from app.exceptions import ProviderError
from core.openai_client import OpenAIClient

logger = logging.getLogger(__name__)


class EmbeddingService(ABC):
    """
    Interfaz del servicio de embeddings de texto.

    Devuelve un vector de dimensión fija D para cada texto.
    """

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """
        Calcula el embedding de `text`.

        Raises:
            ProviderError: Salida vacía o fallo del proveedor.
        """

    @property
    @abstractmethod
    def dimension(self) -> Optional[int]:
        """Dimensión de los vectores, o None si aún no se conoce."""

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """True si el servicio tiene la configuración necesaria."""

    @abstractmethod
    def ensure_ready(self):
        """Lanza UpstreamUnavailableError si falta configuración."""


def validate_vector(vector, source: str) -> List[float]:
    """
    Convierte la salida de un proveedor en una lista de floats finitos.

    Raises:
        ProviderError: Si el vector está vacío, no es numérico o contiene NaN/inf.
    """
    if vector is None:
        raise ProviderError(f"{source} returned no embedding")
    try:
        values = [float(v) for v in vector]
    except (TypeError, ValueError) as e:
        raise ProviderError(f"{source} returned a non-numeric embedding: {e}") from e
    if not values:
        raise ProviderError(f"{source} returned an empty embedding")
    if not all(math.isfinite(v) for v in values):
        raise ProviderError(f"{source} returned a non-finite embedding")
    return values


class OpenAIEmbedder(EmbeddingService):
    """Embeddings mediante el endpoint /embeddings de una API compatible con OpenAI."""

    _KNOWN_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        client: Optional[OpenAIClient] = None,
        model_name: str = config.EMBEDDING_MODEL_NAME,
    ):
        self.client = client or OpenAIClient()
        self.model_name = model_name
        self._dimension: Optional[int] = self._KNOWN_DIMENSIONS.get(model_name)

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    @property
    def is_ready(self) -> bool:
        return self.client.is_ready

    def ensure_ready(self):
        self.client.ensure_ready()

    def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise ProviderError("Cannot embed empty text.")

        body = self.client.post_json("embeddings", {"input": text, "model": self.model_name})
        try:
            raw = body["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Embedding model returned an unexpected response shape: {e}") from e

        vector = validate_vector(raw, f"Embedding model '{self.model_name}'")
        if self._dimension is None:
            self._dimension = len(vector)
        elif len(vector) != self._dimension:
            raise ProviderError(
                f"Embedding dimension changed: expected {self._dimension}, got {len(vector)}."
            )
        return vector
