# app/concurrency.py
import logging
import math
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple, Type, TypeVar

from app.exceptions import BlobStoreError, DatabaseError, PipelineError, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# Intervalo con el que el hilo coordinador revisa cancelación y deadline
_POLL_INTERVAL_S = 0.05
# Espera máxima por items que ya estaban persistiendo al cerrar el lote
_COMMIT_GRACE_S = 10.0
# Espera máxima para que los workers terminen tras cerrar el lote
_JOIN_GRACE_S = 0.2


class RateLimiter:
    """
    Token bucket thread-safe para limitar las llamadas a un servicio externo.

    Args:
        rate_per_second: Tokens repuestos por segundo. <= 0 desactiva el límite.
        burst: Capacidad máxima del bucket (por defecto ceil(rate), mínimo 1).
        name: Nombre del servicio, solo para logs.
    """

    def __init__(
        self,
        rate_per_second: float,
        burst: Optional[int] = None,
        name: str = "service",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rate = float(rate_per_second)
        self.name = name
        self.capacity = float(burst) if burst else float(max(1, math.ceil(self.rate)))
        self._clock = clock
        self._tokens = self.capacity
        self._last = clock()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.rate > 0

    def _refill(self, now: float):
        elapsed = max(0.0, now - self._last)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last = now

    def try_acquire(self) -> bool:
        """Consume un token si hay disponible, sin esperar."""
        if not self.enabled:
            return True
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def acquire(self) -> float:
        """
        Bloquea hasta obtener un token. El lock no se mantiene durante la espera.

        Returns:
            Segundos esperados.
        """
        if not self.enabled:
            return 0.0
        waited = 0.0
        while True:
            with self._lock:
                self._refill(self._clock())
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    if waited > 0:
                        logger.debug(f"Rate limiter '{self.name}' waited {waited:.3f}s for a token.")
                    return waited
                delay = (1.0 - self._tokens) / self.rate
            time.sleep(delay)
            waited += delay


@dataclass(frozen=True)
class RetryPolicy:
    """
    Reintento acotado con backoff exponencial.

    max_attempts=1 equivale a no reintentar. Solo se reintentan las
    excepciones de `retry_on`; el resto se propaga inmediatamente.
    """

    max_attempts: int = 1
    base_delay: float = 0.5
    max_delay: float = 8.0
    retry_on: Tuple[Type[BaseException], ...] = (ProviderError, BlobStoreError, DatabaseError)

    def delay_for(self, attempt: int) -> float:
        """Espera tras el intento fallido número `attempt` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def call(
        self,
        fn: Callable[..., R],
        *args: Any,
        limiter: Optional[RateLimiter] = None,
        description: str = "call",
        **kwargs: Any,
    ) -> R:
        attempt = 0
        while True:
            attempt += 1
            if limiter is not None:
                limiter.acquire()
            try:
                return fn(*args, **kwargs)
            except self.retry_on as e:
                if attempt >= self.max_attempts:
                    if self.max_attempts > 1:
                        logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}): {e}. Retrying in {delay:.2f}s..."
                )
                if delay > 0:
                    time.sleep(delay)


def run_indexed(
    items: Sequence[T],
    worker: Callable[[int, T, Callable[[int], bool]], R],
    max_workers: int,
    on_cancel: Callable[[int, T], R],
    on_error: Callable[[int, T, Exception], R],
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    label: str = "batch",
) -> List[R]:
    """
    Procesa `items` con un pool fijo de workers que consumen una cola de pares (índice, item).

    Los resultados se escriben en una lista pre-dimensionada por índice, de modo
    que el orden de salida coincide con el de entrada aunque la ejecución sea
    concurrente. Si `cancel_event` se activa o vence `timeout`, los workers dejan
    de tomar trabajo nuevo y cada índice sin resultado (pendiente o en curso) recibe
    `on_cancel(index, item)`; los resultados ya calculados se conservan y las
    finalizaciones tardías de items abandonados se descartan.

    El worker recibe además `begin_commit(index)`, que debe llamar justo antes de
    un efecto irreversible (p.ej. persistir un registro). Devuelve False si el lote
    ya está cerrado, y entonces el worker no debe aplicar el efecto. Si devuelve
    True, el lote espera el resultado real de ese item en lugar de cancelarlo.

    Args:
        items: Elementos del lote.
        worker: Función (índice, item, begin_commit) -> resultado. Se ejecuta en hilos del pool.
        max_workers: Tamaño del pool (se acota al tamaño del lote).
        on_cancel: Resultado para un índice cancelado.
        on_error: Resultado para un índice cuyo worker lanzó una excepción (recibe un PipelineError).
        timeout: Tiempo máximo del lote en segundos (None o <= 0 => sin límite).
        cancel_event: Evento de cancelación externo opcional.
        label: Nombre del lote para los logs.

    Returns:
        Lista de resultados, uno por item, en el orden de entrada.
    """
    total = len(items)
    if total == 0:
        return []

    cancel_event = cancel_event or threading.Event()
    deadline = time.monotonic() + timeout if timeout and timeout > 0 else None

    results: List[Optional[R]] = [None] * total
    filled = [False] * total
    committing = [False] * total
    state_lock = threading.Lock()
    all_done = threading.Event()
    remaining = [total]
    closed = [False]

    work_queue: "queue.Queue[Tuple[int, T]]" = queue.Queue()
    for index, item in enumerate(items):
        work_queue.put((index, item))

    def _should_stop() -> bool:
        if cancel_event.is_set():
            return True
        return deadline is not None and time.monotonic() >= deadline

    def _begin_commit(index: int) -> bool:
        with state_lock:
            if closed[0] or _should_stop():
                return False
            committing[index] = True
            return True

    def _store(index: int, result: R):
        with state_lock:
            if filled[index] or (closed[0] and not committing[index]):
                logger.debug(f"{label}: discarding late result for item {index}.")
                return
            results[index] = result
            filled[index] = True
            remaining[0] -= 1
            if remaining[0] == 0:
                all_done.set()

    def _worker_loop():
        while not _should_stop():
            try:
                index, item = work_queue.get_nowait()
            except queue.Empty:
                return
            try:
                result = worker(index, item, _begin_commit)
            except Exception as e:
                logger.error(f"{label}: unexpected error processing item {index}: {e}", exc_info=True)
                error = PipelineError(f"{label}: item {index} failed unexpectedly: {e}")
                error.__cause__ = e
                result = on_error(index, item, error)
            _store(index, result)

    pool_size = max(1, min(max_workers, total))
    logger.debug(f"{label}: processing {total} items with {pool_size} workers.")
    threads = [
        threading.Thread(target=_worker_loop, name=f"{label}-worker-{n}", daemon=True)
        for n in range(pool_size)
    ]
    for thread in threads:
        thread.start()

    while not all_done.is_set():
        if _should_stop():
            reason = "cancelled" if cancel_event.is_set() else "timed out"
            logger.warning(f"{label}: batch {reason} with {remaining[0]}/{total} items unfinished.")
            break
        if not any(thread.is_alive() for thread in threads):
            break
        wait_s = _POLL_INTERVAL_S
        if deadline is not None:
            wait_s = max(0.0, min(wait_s, deadline - time.monotonic()))
        all_done.wait(wait_s)

    with state_lock:
        closed[0] = True
        pending_commits = [i for i in range(total) if committing[i] and not filled[i]]

    # Un item ya comprometido termina con su resultado real
    if pending_commits:
        logger.info(f"{label}: waiting for {len(pending_commits)} item(s) already committing.")
        commit_deadline = time.monotonic() + _COMMIT_GRACE_S
        while time.monotonic() < commit_deadline:
            with state_lock:
                if all(filled[i] for i in pending_commits):
                    break
            all_done.wait(_POLL_INTERVAL_S)

    with state_lock:
        for index in range(total):
            if not filled[index]:
                if committing[index]:
                    logger.error(f"{label}: item {index} did not finish committing in time; its outcome is unknown.")
                results[index] = on_cancel(index, items[index])
                filled[index] = True

    join_deadline = time.monotonic() + _JOIN_GRACE_S
    for thread in threads:
        thread.join(max(0.0, join_deadline - time.monotonic()))
    still_running = sum(1 for thread in threads if thread.is_alive())
    if still_running:
        logger.debug(f"{label}: {still_running} worker(s) still finishing abandoned items.")

    return results  # type: ignore[return-value]
