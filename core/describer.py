# core/describer.py
import logging
from abc import ABC, abstractmethod
from typing import Optional

import config
from app.exceptions import ProviderError
from core.openai_client import OpenAIClient

logger = logging.getLogger(__name__)

# Enfoque del prompt: emoción, acción, entorno y concepto abstracto.
# Determina la calidad de los embeddings para el matching posterior; no modificar.
DESCRIPTION_PROMPT = (
    "Describe this image in detail, focusing on emotions, actions, setting, and abstract concepts."
)


class DescriptionService(ABC):
    """
    Interfaz del servicio de descripción visual.

    Dada la URL de una imagen, devuelve una descripción en lenguaje natural.
    """

    @abstractmethod
    def describe(self, image_url: str) -> str:
        """
        Describe la imagen accesible en `image_url`.

        Raises:
            ProviderError: Salida vacía/ilegible o fallo de transporte.
        """

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """True si el servicio tiene la configuración necesaria."""

    @abstractmethod
    def ensure_ready(self):
        """Lanza UpstreamUnavailableError si falta configuración."""


class OpenAIVisionDescriber(DescriptionService):
    """Descripción de imágenes mediante un modelo multimodal de chat compatible con OpenAI."""

    def __init__(
        self,
        client: Optional[OpenAIClient] = None,
        model_name: str = config.VISION_MODEL_NAME,
        prompt: str = DESCRIPTION_PROMPT,
    ):
        self.client = client or OpenAIClient()
        self.model_name = model_name
        self.prompt = prompt

    @property
    def is_ready(self) -> bool:
        return self.client.is_ready

    def ensure_ready(self):
        self.client.ensure_ready()

    def build_payload(self, image_url: str) -> dict:
        return {
            "model": self.model_name,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self.prompt},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
        }

    def describe(self, image_url: str) -> str:
        if not image_url:
            raise ProviderError("Cannot describe an image without a URL.")

        logger.debug(f"Requesting description for {image_url} with model '{self.model_name}'...")
        body = self.client.post_json("chat/completions", self.build_payload(image_url))

        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Vision model returned an unexpected response shape: {e}") from e

        description = content.strip() if isinstance(content, str) else ""
        if not description:
            raise ProviderError("Vision model did not return a description")

        logger.debug(f"Description received ({len(description)} chars).")
        return description
