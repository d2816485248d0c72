# core/vectorizer.py
import torch
from transformers import AutoModel, AutoProcessor, AutoTokenizer, PreTrainedModel
from typing import List, Optional, Any, Dict
import logging
import threading
import time

from config import DEVICE, TRUST_REMOTE_CODE, VECTOR_DIMENSION
from app.exceptions import InitializationError, ProviderError
from core.embedder import EmbeddingService, validate_vector

logger = logging.getLogger(__name__)


class LocalTextEmbedder(EmbeddingService):
    """
    Embeddings de texto con un modelo local de Hugging Face.

    Gestiona la carga del modelo/procesador, la ubicación del dispositivo,
    la normalización L2 y el truncamiento opcional. Los modelos con
    `get_text_features` (CLIP y similares) usan esa proyección; el resto usa
    mean pooling sobre `last_hidden_state`.

    Attributes:
        model_name: Nombre del modelo de Hugging Face.
        device: Dispositivo real utilizado para la inferencia ('cuda' o 'cpu').
        truncate_dim: Dimensión a la que truncar, o None para la nativa.
    """

    def __init__(
        self,
        model_name: str,
        device: str = DEVICE,
        trust_remote_code: bool = TRUST_REMOTE_CODE,
        truncate_dim: Optional[int] = VECTOR_DIMENSION,
    ):
        """
        Inicializa el embedder, cargando el modelo y procesador especificados.

        Raises:
            InitializationError: Si el modelo o procesador no se cargan correctamente.
        """
        self.model_name = model_name
        self.device = self._resolve_device(device)
        self.trust_remote_code = trust_remote_code
        self.truncate_dim = truncate_dim
        self.model: Optional[PreTrainedModel] = None
        self.processor: Optional[Any] = None
        self._native_dimension: Optional[int] = None
        self._is_loaded = False
        # La inferencia de un mismo modelo se serializa entre hilos
        self._inference_lock = threading.Lock()

        logger.info(
            f"Initializing LocalTextEmbedder with model: {self.model_name} on device: {self.device}"
        )
        self._load_model_and_processor()

    @property
    def is_ready(self) -> bool:
        """Verifica si el modelo y el procesador están cargados."""
        return self._is_loaded and self.model is not None and self.processor is not None

    def ensure_ready(self):
        if not self.is_ready:
            raise InitializationError(f"Local embedding model '{self.model_name}' is not loaded.")

    @property
    def native_dimension(self) -> Optional[int]:
        return self._native_dimension

    @property
    def dimension(self) -> Optional[int]:
        native = self._native_dimension
        if native and self.truncate_dim and 0 < self.truncate_dim < native:
            return self.truncate_dim
        return native

    def _resolve_device(self, requested_device: str) -> str:
        """Determina el dispositivo real a usar, recurriendo a CPU si CUDA no está disponible."""
        resolved = "cpu"
        if requested_device.lower() == "cuda":
            if torch.cuda.is_available():
                logger.info("CUDA available. Using GPU.")
                resolved = "cuda"
            else:
                logger.warning("CUDA specified but not available. Falling back to CPU.")
        return resolved

    def _load_model_and_processor(self):
        """Carga el modelo y el procesador (o tokenizer) de Hugging Face."""
        try:
            logger.info(f"Loading model '{self.model_name}'...")
            start_time = time.time()
            model = AutoModel.from_pretrained(
                self.model_name, trust_remote_code=self.trust_remote_code
            )
            self.model = model.to(self.device)
            self.model.eval()
            logger.info(
                f"Model loaded to {self.device} in {time.time() - start_time:.2f}s."
            )

            try:
                self.processor = AutoProcessor.from_pretrained(
                    self.model_name, trust_remote_code=self.trust_remote_code
                )
            except (ValueError, OSError) as e:
                logger.warning(
                    f"Could not load AutoProcessor for '{self.model_name}': {e}. Falling back to AutoTokenizer."
                )
                self.processor = AutoTokenizer.from_pretrained(
                    self.model_name, trust_remote_code=self.trust_remote_code
                )

            model_config = getattr(self.model, "config", None)
            self._native_dimension = (
                getattr(model_config, "projection_dim", None)
                or getattr(model_config, "hidden_size", None)
            )
            self._is_loaded = True

        except OSError as e:
            msg = f"OSError loading model/processor '{self.model_name}': {e}. Correct name? Internet access?"
            logger.error(msg, exc_info=True)
            raise InitializationError(msg) from e
        except Exception as e:
            msg = f"Unexpected error loading model or processor '{self.model_name}': {e}"
            logger.error(msg, exc_info=True)
            raise InitializationError(msg) from e

    def _prepare_inputs(self, texts: List[str]) -> Dict[str, torch.Tensor]:
        inputs = self.processor(
            text=texts, return_tensors="pt", padding=True, truncation=True
        )
        return inputs.to(self.device)

    def _run_inference(self, inputs: Dict[str, torch.Tensor]) -> torch.Tensor:
        with torch.no_grad():
            if hasattr(self.model, "get_text_features"):
                return self.model.get_text_features(**inputs)
            outputs = self.model(**inputs)
            hidden = outputs.last_hidden_state
            mask = inputs["attention_mask"].unsqueeze(-1).to(hidden.dtype)
            return (hidden * mask).sum(dim=1) / mask.sum(dim=1).clamp(min=1e-9)

    def _postprocess_embeddings(self, embeddings_tensor: torch.Tensor) -> List[List[float]]:
        """Normaliza, trunca (opcionalmente) y convierte los embeddings a listas de floats."""
        embeddings_tensor = torch.nn.functional.normalize(embeddings_tensor, p=2, dim=-1)

        original_dim = embeddings_tensor.shape[-1]
        if self.truncate_dim is not None and original_dim > self.truncate_dim:
            embeddings_tensor = embeddings_tensor[:, :self.truncate_dim]
            embeddings_tensor = torch.nn.functional.normalize(embeddings_tensor, p=2, dim=-1)
            logger.debug(
                f"Truncated and re-normalized embeddings from {original_dim} to {self.truncate_dim} dimensions."
            )

        return embeddings_tensor.cpu().numpy().tolist()

    def embed(self, text: str) -> List[float]:
        if not self.is_ready:
            raise ProviderError("Local embedder not ready. Cannot vectorize text.")
        if not text or not text.strip():
            raise ProviderError("Cannot embed empty text.")

        start_time = time.time()
        try:
            with self._inference_lock:
                inputs = self._prepare_inputs([text])
                embeddings = self._postprocess_embeddings(self._run_inference(inputs))
        except (TypeError, RuntimeError, ValueError) as e:
            raise ProviderError(f"Local text vectorization failed: {e}") from e

        if len(embeddings) != 1:
            raise ProviderError(f"Local model returned {len(embeddings)} embeddings for one text.")
        vector = validate_vector(embeddings[0], f"Local model '{self.model_name}'")
        logger.debug(f"Text vectorized locally in {time.time() - start_time:.3f}s (dim: {len(vector)}).")
        return vector
