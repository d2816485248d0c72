# app/ingestion.py
import logging
import threading
import time
from typing import Callable, List, Optional, Sequence

from app.concurrency import RateLimiter, RetryPolicy, run_indexed
from app.exceptions import ImageMatchError, InvalidInputError, ProviderError
from app.models import (
    FailureReason,
    FilePayload,
    IngestFailure,
    IngestOutcome,
    IngestSuccess,
)
from core.describer import DescriptionService
from core.embedder import EmbeddingService, validate_vector
from core.image_processor import inspect_image_bytes, sanitize_filename
from data_access.blob_store import BlobStore
from data_access.vector_db_interface import VectorDBInterface

logger = logging.getLogger(__name__)

_UNKNOWN_CONTENT_TYPE = "application/octet-stream"


class IngestionOrchestrator:
    """
    Pipeline de ingesta: blob -> descripción -> embedding -> registro.

    Cada fichero del lote recorre los pasos en orden; los ficheros se procesan
    en paralelo sobre un pool fijo de workers y el resultado conserva el orden
    de entrada. Un fallo en un fichero se adjunta a su resultado
    (IngestFailure) y nunca aborta a los demás.

    Args:
        blob_store: Almacén de los bytes originales.
        describer: Servicio de descripción visual.
        embedder: Servicio de embeddings de texto.
        db: Almacén de registros con búsqueda vectorial.
        max_workers: Tamaño del pool por lote.
        batch_timeout: Tiempo máximo por lote en segundos (None/0 => sin límite).
        retry_policy: Reintentos para blob, descripción y embedding. La inserción nunca se reintenta.
        blob_limiter / vision_limiter / embedding_limiter: Límite de peticiones por servicio.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        describer: DescriptionService,
        embedder: EmbeddingService,
        db: VectorDBInterface,
        max_workers: int = 4,
        batch_timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        blob_limiter: Optional[RateLimiter] = None,
        vision_limiter: Optional[RateLimiter] = None,
        embedding_limiter: Optional[RateLimiter] = None,
    ):
        self.blob_store = blob_store
        self.describer = describer
        self.embedder = embedder
        self.db = db
        self.max_workers = max(1, int(max_workers))
        self.batch_timeout = batch_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.blob_limiter = blob_limiter
        self.vision_limiter = vision_limiter
        self.embedding_limiter = embedding_limiter

    def ensure_ready(self):
        """Lanza UpstreamUnavailableError si algún colaborador no está configurado."""
        self.blob_store.ensure_ready()
        self.describer.ensure_ready()
        self.embedder.ensure_ready()
        self.db.ensure_ready()

    def ingest(
        self,
        files: Sequence[FilePayload],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[IngestOutcome]:
        """
        Ingiere un lote de ficheros y devuelve un resultado por fichero, en orden de entrada.

        Raises:
            InvalidInputError: Lote vacío o entradas que no son FilePayload.
            UpstreamUnavailableError: Algún colaborador sin configurar (antes de cualquier llamada de red).
        """
        if not files:
            raise InvalidInputError("No files provided for ingestion.")
        files = list(files)
        for index, payload in enumerate(files):
            if not isinstance(payload, FilePayload):
                raise InvalidInputError(
                    f"Unsupported file entry at index {index}: {type(payload).__name__}"
                )

        self.ensure_ready()

        logger.info(f"--- Ingesting batch of {len(files)} files with {self.max_workers} workers ---")
        start_time = time.time()
        outcomes = run_indexed(
            files,
            worker=self._ingest_one,
            max_workers=self.max_workers,
            on_cancel=self._cancelled,
            on_error=self._unexpected_error,
            timeout=self.batch_timeout,
            cancel_event=cancel_event,
            label="ingest",
        )

        succeeded = sum(1 for outcome in outcomes if outcome.ok)
        logger.info(
            f"--- Ingestion finished in {time.time() - start_time:.2f}s: "
            f"{succeeded} succeeded, {len(outcomes) - succeeded} failed ---"
        )
        return outcomes

    def _ingest_one(self, index: int, payload: FilePayload, begin_commit: Callable[[int], bool]) -> IngestOutcome:
        label = f"Item {index} ('{payload.name}')"
        # Motivo que se adjunta si falla el paso en curso
        stage = FailureReason.INVALID_IMAGE
        url: Optional[str] = None
        try:
            info = inspect_image_bytes(payload.data)
            content_type = info.content_type
            if content_type == _UNKNOWN_CONTENT_TYPE and payload.content_type:
                content_type = payload.content_type

            stage = FailureReason.BLOB_WRITE_FAILED
            url = self.retry_policy.call(
                self.blob_store.write,
                sanitize_filename(payload.name),
                payload.data,
                content_type,
                limiter=self.blob_limiter,
                description=f"{label} blob write",
            )
            logger.debug(f"{label}: stored at {url}")

            stage = FailureReason.DESCRIPTION_UNAVAILABLE
            description = self.retry_policy.call(
                self.describer.describe,
                url,
                limiter=self.vision_limiter,
                description=f"{label} description",
            )
            if not isinstance(description, str) or not description.strip():
                raise ProviderError("Vision model returned an empty description")
            description = description.strip()

            stage = FailureReason.EMBEDDING_UNAVAILABLE
            embedding = self.retry_policy.call(
                self.embedder.embed,
                description,
                limiter=self.embedding_limiter,
                description=f"{label} embedding",
            )
            embedding = validate_vector(embedding, "Embedding service")

            if not begin_commit(index):
                logger.warning(f"{label}: batch closed before persisting; blob {url} left orphaned.")
                return self._cancelled(index, payload)
            stage = FailureReason.PERSIST_FAILED
            record = self.db.insert(url=url, description=description, embedding=embedding)
        except Exception as e:
            if isinstance(e, (ImageMatchError, ValueError)):
                logger.warning(f"{label} failed ({stage.value}): {e}")
            else:
                logger.error(f"{label} failed unexpectedly ({stage.value}): {e}", exc_info=True)
            if url is not None:
                logger.warning(f"{label}: blob {url} left orphaned (no record persisted).")
            return IngestFailure(index=index, reason=stage, detail=str(e))

        logger.info(f"{label} ingested as record {record.id}.")
        return IngestSuccess(
            index=index,
            url=record.url,
            description=record.description,
            record_id=record.id,
        )

    @staticmethod
    def _cancelled(index: int, payload: FilePayload) -> IngestOutcome:
        return IngestFailure(
            index=index,
            reason=FailureReason.CANCELLED,
            detail="Batch cancelled or timed out before this file completed.",
        )

    @staticmethod
    def _unexpected_error(index: int, payload: FilePayload, error: Exception) -> IngestOutcome:
        return IngestFailure(
            index=index,
            reason=FailureReason.PERSIST_FAILED,
            detail=f"Unexpected error: {error}",
        )
