# app/matching.py
import logging
import threading
import time
from typing import Any, Callable, Iterable, List, Optional

from app.concurrency import RateLimiter, RetryPolicy, run_indexed
from app.exceptions import ImageMatchError, InvalidInputError
from app.models import FailureReason, MatchResult
from core.embedder import EmbeddingService, validate_vector
from data_access.vector_db_interface import VectorDBInterface

logger = logging.getLogger(__name__)


def normalize_titles(titles: Optional[Iterable[Any]]) -> List[str]:
    """
    Recorta los títulos y descarta los vacíos, conservando el orden.
    Las entradas que no son cadenas se tratan como vacías.
    """
    if titles is None:
        return []
    if isinstance(titles, str):
        titles = [titles]
    return [t.strip() for t in titles if isinstance(t, str) and t.strip()]


class MatchingOrchestrator:
    """
    Resuelve títulos de texto libre a la imagen almacenada más cercana.

    Cada título se embebe y se consulta su vecino más próximo; los títulos se
    procesan en paralelo y el resultado conserva el orden de entrada. El orden
    devuelto por el almacén es el que decide los empates.
    """

    def __init__(
        self,
        embedder: EmbeddingService,
        db: VectorDBInterface,
        max_workers: int = 4,
        batch_timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
        embedding_limiter: Optional[RateLimiter] = None,
        n_candidates: int = 1,
    ):
        self.embedder = embedder
        self.db = db
        self.max_workers = max(1, int(max_workers))
        self.batch_timeout = batch_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.embedding_limiter = embedding_limiter
        self.n_candidates = max(1, int(n_candidates))

    def ensure_ready(self):
        self.embedder.ensure_ready()
        self.db.ensure_ready()

    def match(
        self,
        titles: Iterable[Any],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[MatchResult]:
        """
        Devuelve un MatchResult por título no vacío, en orden de entrada.

        Raises:
            InvalidInputError: Si no queda ningún título tras recortar (sin llamadas externas).
            UpstreamUnavailableError: Si el embedder o el almacén no están configurados.
        """
        clean_titles = normalize_titles(titles)
        if not clean_titles:
            raise InvalidInputError("No non-blank titles provided.")

        self.ensure_ready()

        logger.info(f"--- Matching {len(clean_titles)} titles with {self.max_workers} workers ---")
        start_time = time.time()
        results = run_indexed(
            clean_titles,
            worker=self._match_one,
            max_workers=self.max_workers,
            on_cancel=self._cancelled,
            on_error=self._unexpected_error,
            timeout=self.batch_timeout,
            cancel_event=cancel_event,
            label="match",
        )

        matched = sum(1 for result in results if result.best_match is not None)
        failed = sum(1 for result in results if not result.ok)
        logger.info(
            f"--- Matching finished in {time.time() - start_time:.2f}s: "
            f"{matched} matched, {len(results) - matched - failed} without candidate, {failed} failed ---"
        )
        return results

    def _match_one(self, index: int, title: str, begin_commit: Optional[Callable[[int], bool]] = None) -> MatchResult:
        # Solo lecturas: begin_commit no aplica
        try:
            query_vector = self.retry_policy.call(
                self.embedder.embed,
                title,
                limiter=self.embedding_limiter,
                description=f"Title {index} embedding",
            )
            query_vector = validate_vector(query_vector, "Embedding service")
        except (ImageMatchError, ValueError) as e:
            logger.warning(f"Title {index} ('{title}'): embedding failed: {e}")
            return MatchResult(title=title, error=FailureReason.EMBEDDING_UNAVAILABLE, detail=str(e))

        try:
            search_results = self.retry_policy.call(
                self.db.query_similar,
                query_vector,
                self.n_candidates,
                description=f"Title {index} query",
            )
        except (ImageMatchError, ValueError) as e:
            logger.warning(f"Title {index} ('{title}'): query failed: {e}")
            return MatchResult(title=title, error=FailureReason.QUERY_FAILED, detail=str(e))

        best = search_results.best
        if best is None:
            logger.debug(f"Title {index} ('{title}'): no candidate in store.")
            return MatchResult(title=title)

        logger.debug(f"Title {index} ('{title}') -> {best.id} (similarity {best.similarity})")
        return MatchResult(title=title, best_match=best.record, score=best.similarity)

    @staticmethod
    def _cancelled(index: int, title: str) -> MatchResult:
        return MatchResult(
            title=title,
            error=FailureReason.CANCELLED,
            detail="Batch cancelled or timed out before this title completed.",
        )

    @staticmethod
    def _unexpected_error(index: int, title: str, error: Exception) -> MatchResult:
        return MatchResult(title=title, error=FailureReason.QUERY_FAILED, detail=f"Unexpected error: {error}")
