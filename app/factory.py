# app/factory.py
import logging
import threading
from typing import Dict, Optional

import config # Importa la configuración actualizada
from app.concurrency import RateLimiter, RetryPolicy
from app.exceptions import InitializationError
from app.ingestion import IngestionOrchestrator
from app.matching import MatchingOrchestrator
from core.describer import DescriptionService, OpenAIVisionDescriber
from core.embedder import EmbeddingService, OpenAIEmbedder
from core.openai_client import OpenAIClient
from data_access.blob_store import BlobStore, LocalBlobStore, VercelBlobStore
from data_access.chroma_db import ChromaVectorDB # Importa la implementación concreta
from data_access.vector_db_interface import VectorDBInterface

logger = logging.getLogger(__name__)

# Cachés simples en memoria, por proceso.
# Los rate limiters se comparten para que el límite sea por servicio y no por orquestador.
_cache_lock = threading.Lock()
_embedder_cache: Dict[str, EmbeddingService] = {}
_db_cache: Dict[str, VectorDBInterface] = {}
_limiter_cache: Dict[str, RateLimiter] = {}
_client_cache: Dict[str, OpenAIClient] = {}


def create_openai_client() -> OpenAIClient:
    """Cliente compartido para la API compatible con OpenAI (visión y embeddings)."""
    with _cache_lock:
        client = _client_cache.get(config.OPENAI_BASE_URL)
        if client is None:
            client = OpenAIClient(
                api_key=config.OPENAI_API_KEY,
                base_url=config.OPENAI_BASE_URL,
                timeout=config.REQUEST_TIMEOUT_S,
            )
            _client_cache[config.OPENAI_BASE_URL] = client
        return client


def create_blob_store(backend: Optional[str] = None) -> BlobStore:
    """
    Crea el almacén de blobs configurado ('vercel' o 'local').

    No valida credenciales: eso lo hace `ensure_ready()` en el orquestador,
    de modo que un lote vacío se rechaza antes que una configuración incompleta.
    """
    backend = (backend or config.BLOB_BACKEND).lower()
    if backend == "local":
        logger.info(f"Using local blob store at '{config.LOCAL_BLOB_DIR}'")
        return LocalBlobStore(
            root_dir=config.LOCAL_BLOB_DIR,
            public_base_url=config.LOCAL_BLOB_BASE_URL,
        )
    if backend == "vercel":
        logger.info("Using Vercel Blob store")
        return VercelBlobStore(
            token=config.BLOB_READ_WRITE_TOKEN,
            api_url=config.VERCEL_BLOB_API_URL,
            timeout=config.REQUEST_TIMEOUT_S,
        )
    raise InitializationError(f"Unknown blob backend '{backend}'. Available: {config.AVAILABLE_BLOB_BACKENDS}")


def create_describer() -> DescriptionService:
    return OpenAIVisionDescriber(
        client=create_openai_client(),
        model_name=config.VISION_MODEL_NAME,
    )


def create_embedder(provider: Optional[str] = None) -> EmbeddingService:
    """
    Crea o recupera desde caché el servicio de embeddings del proveedor indicado.

    El proveedor 'local' importa torch/transformers solo cuando se solicita.

    Raises:
        InitializationError: Si el modelo local no se puede cargar o el proveedor es desconocido.
    """
    provider = (provider or config.EMBEDDING_PROVIDER).lower()
    if provider == "openai":
        cache_key = f"openai_{config.EMBEDDING_MODEL_NAME}"
    elif provider == "local":
        cache_key = f"local_{config.LOCAL_EMBEDDING_MODEL_NAME}_{config.DEVICE}_{config.VECTOR_DIMENSION}"
    else:
        raise InitializationError(
            f"Unknown embedding provider '{provider}'. Available: {config.AVAILABLE_EMBEDDING_PROVIDERS}"
        )

    with _cache_lock:
        if cache_key in _embedder_cache:
            logger.debug(f"Returning cached embedder instance for key: {cache_key}")
            return _embedder_cache[cache_key]

    if provider == "openai":
        embedder: EmbeddingService = OpenAIEmbedder(
            client=create_openai_client(),
            model_name=config.EMBEDDING_MODEL_NAME,
        )
    else:
        logger.info(f"Creating local embedder for model: {config.LOCAL_EMBEDDING_MODEL_NAME} on device: {config.DEVICE}...")
        try:
            from core.vectorizer import LocalTextEmbedder

            embedder = LocalTextEmbedder(
                model_name=config.LOCAL_EMBEDDING_MODEL_NAME,
                device=config.DEVICE,
                trust_remote_code=config.TRUST_REMOTE_CODE,
                truncate_dim=config.VECTOR_DIMENSION,
            )
        except InitializationError:
            raise
        except Exception as e:
            logger.error(f"Failed to create local embedder: {e}", exc_info=True)
            raise InitializationError(f"Local embedder initialization failed: {e}") from e

    with _cache_lock:
        _embedder_cache[cache_key] = embedder
    return embedder


def create_vector_database(
    path: Optional[str] = None,
    collection_name: Optional[str] = None,
) -> VectorDBInterface:
    """
    Crea o recupera desde caché una instancia de ChromaVectorDB para una colección.

    Una instancia que no se pudo inicializar se devuelve sin cachear; su
    `ensure_ready()` lanzará InitializationError cuando se use.
    """
    path = path or config.CHROMA_DB_PATH
    collection_name = collection_name or config.CHROMA_COLLECTION_NAME
    cache_key = f"{path}_{collection_name}"

    with _cache_lock:
        cached_db = _db_cache.get(cache_key)
        if cached_db is not None:
            if cached_db.is_initialized:
                logger.debug(f"Returning cached DB instance for collection: '{collection_name}'")
                return cached_db
            logger.warning(f"Cached DB instance for '{collection_name}' is no longer initialized. Removing from cache.")
            del _db_cache[cache_key]

        logger.info(f"Creating/Getting DB instance for collection: '{collection_name}'...")
        db_instance = ChromaVectorDB(path=path, collection_name=collection_name)
        if db_instance.is_initialized:
            _db_cache[cache_key] = db_instance
        else:
            logger.error(f"DB instance for '{collection_name}' failed initialization; it will not be cached.")
        return db_instance


def create_rate_limiter(service: str) -> RateLimiter:
    """Limiter compartido por servicio: 'blob', 'vision' o 'embedding'."""
    rates = {
        "blob": config.BLOB_RATE_LIMIT,
        "vision": config.VISION_RATE_LIMIT,
        "embedding": config.EMBEDDING_RATE_LIMIT,
    }
    if service not in rates:
        raise ValueError(f"Unknown rate-limited service '{service}'.")
    with _cache_lock:
        limiter = _limiter_cache.get(service)
        if limiter is None:
            limiter = RateLimiter(rates[service], name=service)
            _limiter_cache[service] = limiter
        return limiter


def create_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.RETRY_MAX_ATTEMPTS,
        base_delay=config.RETRY_BASE_DELAY_S,
        max_delay=config.RETRY_MAX_DELAY_S,
    )


def create_ingestion_orchestrator(
    db_path: Optional[str] = None,
    collection_name: Optional[str] = None,
    max_workers: Optional[int] = None,
    batch_timeout: Optional[float] = None,
) -> IngestionOrchestrator:
    """Ensambla el orquestador de ingesta con los colaboradores configurados."""
    timeout = batch_timeout if batch_timeout is not None else config.BATCH_TIMEOUT_S
    return IngestionOrchestrator(
        blob_store=create_blob_store(),
        describer=create_describer(),
        embedder=create_embedder(),
        db=create_vector_database(db_path, collection_name),
        max_workers=max_workers or config.MAX_WORKERS,
        batch_timeout=timeout or None,
        retry_policy=create_retry_policy(),
        blob_limiter=create_rate_limiter("blob"),
        vision_limiter=create_rate_limiter("vision"),
        embedding_limiter=create_rate_limiter("embedding"),
    )


def create_matching_orchestrator(
    db_path: Optional[str] = None,
    collection_name: Optional[str] = None,
    max_workers: Optional[int] = None,
    batch_timeout: Optional[float] = None,
) -> MatchingOrchestrator:
    """Ensambla el orquestador de matching con los colaboradores configurados."""
    timeout = batch_timeout if batch_timeout is not None else config.BATCH_TIMEOUT_S
    return MatchingOrchestrator(
        embedder=create_embedder(),
        db=create_vector_database(db_path, collection_name),
        max_workers=max_workers or config.MAX_WORKERS,
        batch_timeout=timeout or None,
        retry_policy=create_retry_policy(),
        embedding_limiter=create_rate_limiter("embedding"),
    )
