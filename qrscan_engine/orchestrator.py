"""Document-level scan loop.

One session walks pages 1..N strictly in order on the caller's thread. Each
page attempt (image request, decode, materialization) runs on a daemon worker
thread and is raced against the per-page timeout; the attempt never touches
session state, so a late result from an abandoned attempt is simply dropped.

Control calls (pause/resume/stop/reset) may come from any thread, including
from inside an observer callback. State mutations and observer notifications
are serialized by one re-entrant lock.
"""

from __future__ import annotations

import gc
import logging
import threading
import time
from concurrent.futures import Future, wait
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from .cache import TTLCache
from .config import ScanConfig
from .decoder import DecodeEngine
from .errors import (
    DocumentLimitError,
    ErrorKind,
    ImageExtractionError,
    InvalidInputError,
    MemoryPressureError,
    PageTimeoutError,
    ProcessingError,
    ScanEngineError,
    ScanInProgressError,
    UnsupportedEnvironmentError,
    classify_error,
    is_fatal,
    is_retryable,
    partial_failure_verdict,
)
from .materializer import ActionBuilder
from .metrics import MemoryMonitor, MetricsAggregator
from .types import (
    STOP_CANCELLED,
    STOP_CONSECUTIVE_FAILURES,
    STOP_FATAL,
    BoundingBox,
    Detection,
    PageScanOutcome,
    ScanError,
    ScanPhase,
    ScanProgress,
    ScanState,
)
from .utils import utc_now

logger = logging.getLogger(__name__)

ImageProvider = Callable[[int], Any]
Materializer = Callable[[Detection, int, Optional[str]], Any]
ContextProvider = Callable[[int, BoundingBox], Optional[str]]
StateObserver = Callable[[ScanState], None]
ProgressObserver = Callable[[ScanProgress], None]


class _Cancelled(Exception):
    pass


@dataclass(frozen=True)
class _AttemptResult:
    detections: tuple[Detection, ...]
    results: tuple[Any, ...]
    materialize_failures: tuple[str, ...] = ()


@dataclass
class _Session:
    generation: int
    total_pages: int
    provider: ImageProvider
    cancel: threading.Event
    pause_gate: threading.Event
    outcomes: list[PageScanOutcome] = field(default_factory=list)
    results: list[Any] = field(default_factory=list)
    failed_pages: list[int] = field(default_factory=list)
    consecutive_failures: int = 0
    last_failed_page: int = 0
    stop_reason: str | None = None


class ScanOrchestrator:
    """Drives a DecodeEngine over every page of a document.

    Example:
        orch = ScanOrchestrator()
        orch.on_state_change(lambda s: print(s.phase, s.current_page))
        items = orch.start_scanning(doc.page_count, provider)
    """

    def __init__(
        self,
        engine: DecodeEngine | None = None,
        materializer: Materializer | None = None,
        config: ScanConfig | None = None,
        *,
        context_provider: ContextProvider | None = None,
        memory_monitor: MemoryMonitor | None = None,
    ) -> None:
        self.engine = engine or DecodeEngine()
        self.materializer: Materializer = materializer or ActionBuilder()
        self.config = config or ScanConfig()
        self.context_provider = context_provider
        self.memory = memory_monitor or MemoryMonitor()
        self.metrics = MetricsAggregator()

        self._lock = threading.RLock()
        self._state = ScanState()
        self._progress: ScanProgress | None = None
        self._state_observers: list[StateObserver] = []
        self._progress_observers: list[ProgressObserver] = []
        self._generation = 0
        self._session: _Session | None = None
        self._cache: TTLCache[Any] = TTLCache(self.config.cache_ttl_ms)

    # ═══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════════

    def get_state(self) -> ScanState:
        with self._lock:
            return self._state

    def get_progress(self) -> ScanProgress | None:
        with self._lock:
            return self._progress

    def on_state_change(self, callback: StateObserver) -> Callable[[], None]:
        return self._subscribe(self._state_observers, callback)

    def on_progress(self, callback: ProgressObserver) -> Callable[[], None]:
        return self._subscribe(self._progress_observers, callback)

    def start_scanning(self, total_pages: int, image_provider: ImageProvider) -> list[Any]:
        """Scan pages 1..total_pages and return the materialized results.

        Only pre-flight checks raise; page failures end up in the state's
        ``errors`` and the session still completes with what it found.

        Raises:
            ScanInProgressError: a session is already scanning or paused
            UnsupportedEnvironmentError: the decode engine cannot run here
            InvalidInputError: total_pages is not a non-negative integer
        """
        with self._lock:
            if self._state.phase.is_active:
                raise ScanInProgressError()
            info = self.engine.support_info()
            if not info.supported:
                raise UnsupportedEnvironmentError(info.reason)
            if isinstance(total_pages, bool) or not isinstance(total_pages, int) or total_pages < 0:
                raise InvalidInputError(f"total_pages must be a non-negative integer, got {total_pages!r}")

            self._generation += 1
            gate = threading.Event()
            gate.set()
            session = _Session(
                generation=self._generation,
                total_pages=total_pages,
                provider=image_provider,
                cancel=threading.Event(),
                pause_gate=gate,
            )
            self._session = session
            self.metrics.reset()
            self.memory.reset_baseline()
            self._cache.clear()
            reset = getattr(self.materializer, "reset", None)
            if callable(reset):
                reset()

            started = utc_now()
            self._progress = ScanProgress(
                total_pages=total_pages,
                scanned_pages=0,
                outcomes=(),
                results=(),
                errors=(),
                started_at=started,
            )
            self._replace_state(ScanState(phase=ScanPhase.SCANNING, total_pages=total_pages, started_at=started))

        logger.info("scan started: %d page(s)", total_pages)
        return self._run(session)

    def pause_scanning(self) -> None:
        with self._lock:
            session = self._session
            if session is None or self._state.phase is not ScanPhase.SCANNING:
                return
            session.pause_gate.clear()
            self._commit(session, phase=ScanPhase.PAUSED)
        logger.info("scan paused")

    def resume_scanning(self) -> None:
        with self._lock:
            session = self._session
            if session is None or self._state.phase is not ScanPhase.PAUSED:
                return
            self._commit(session, phase=ScanPhase.SCANNING)
            session.pause_gate.set()
        logger.info("scan resumed")

    def stop_scanning(self) -> None:
        with self._lock:
            session = self._session
            if session is None or not self._state.phase.is_active:
                return
            session.cancel.set()
            # a paused loop has to wake up to see the cancellation
            session.pause_gate.set()
        logger.info("scan stop requested")

    def reset(self) -> None:
        with self._lock:
            session = self._session
            if session is not None:
                session.cancel.set()
                session.pause_gate.set()
            self._generation += 1
            self._session = None
            self._progress = None
            self.metrics.reset()
            self._cache.clear()
            self._replace_state(ScanState())

    def dispose(self) -> None:
        self.reset()
        with self._lock:
            self._state_observers.clear()
            self._progress_observers.clear()

    # ═══════════════════════════════════════════════════════════════════════════
    # STATE & OBSERVERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _subscribe(self, observers: list, callback: Callable) -> Callable[[], None]:
        with self._lock:
            observers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in observers:
                    observers.remove(callback)

        return unsubscribe

    def _is_current(self, session: _Session) -> bool:
        return session.generation == self._generation

    def _replace_state(self, state: ScanState) -> None:
        # caller holds the lock
        self._state = state
        for cb in list(self._state_observers):
            try:
                cb(state)
            except Exception:
                logger.warning("state observer raised; ignoring", exc_info=True)

    def _commit(self, session: _Session, **changes: Any) -> bool:
        """Apply ``changes`` if ``session`` is still the live one; notify observers."""
        with self._lock:
            if not self._is_current(session):
                return False
            self._replace_state(replace(self._state, **changes))
            return True

    def _publish_progress(self, session: _Session, *, completed: bool = False) -> None:
        with self._lock:
            if not self._is_current(session) or self._progress is None:
                return
            state = self._state
            progress = ScanProgress(
                total_pages=session.total_pages,
                scanned_pages=len(session.outcomes),
                outcomes=tuple(session.outcomes),
                results=tuple(session.results),
                errors=state.errors,
                started_at=self._progress.started_at,
                completed_at=state.completed_at if completed else None,
                metrics=state.metrics,
            )
            self._progress = progress
            for cb in list(self._progress_observers):
                try:
                    cb(progress)
                except Exception:
                    logger.warning("progress observer raised; ignoring", exc_info=True)

    def _append_error(self, session: _Session, error: ScanError, **changes: Any) -> bool:
        with self._lock:
            if not self._is_current(session):
                return False
            state = self._state
            if len(state.errors) < self.config.max_stored_errors:
                return self._commit(session, errors=state.errors + (error,), **changes)
            return self._commit(session, dropped_errors=state.dropped_errors + 1, **changes)

    # ═══════════════════════════════════════════════════════════════════════════
    # SCAN LOOP
    # ═══════════════════════════════════════════════════════════════════════════

    def _run(self, session: _Session) -> list[Any]:
        delay_s = self.config.inter_page_delay_ms / 1000.0

        for page in range(1, session.total_pages + 1):
            if page > 1 and delay_s > 0:
                session.cancel.wait(delay_s)
            try:
                if not self._enter_page(session, page):
                    return list(session.results)
            except _Cancelled:
                session.stop_reason = STOP_CANCELLED
                break

            page_t0 = time.perf_counter()
            try:
                outcome, attempt = self._scan_page(session, page)
            except _Cancelled:
                session.stop_reason = STOP_CANCELLED
                break
            finally:
                self._cache.discard((session.generation, page))
            elapsed_ms = (time.perf_counter() - page_t0) * 1000.0
            if self.config.performance_monitoring:
                self.metrics.record_page(elapsed_ms)

            if not self._record_outcome(session, outcome, attempt):
                return list(session.results)
            self._publish_progress(session)

            if outcome.error is not None:
                if is_fatal(outcome.error.kind):
                    logger.error("fatal error on page %d, stopping: %s", page, outcome.error.message)
                    session.stop_reason = STOP_FATAL
                    break
                if session.consecutive_failures >= self.config.consecutive_failure_limit:
                    logger.error(
                        "%d consecutive page failures (last page %d), stopping",
                        session.consecutive_failures,
                        page,
                    )
                    session.stop_reason = STOP_CONSECUTIVE_FAILURES
                    break

            if page % self.config.cleanup_every_pages == 0:
                self._cleanup()

        if session.stop_reason is None and session.cancel.is_set():
            # stop arrived while the last page was in flight
            session.stop_reason = STOP_CANCELLED
        self._finish(session)
        return list(session.results)

    def _enter_page(self, session: _Session, page: int) -> bool:
        """Block while paused, then publish ``page`` as current.

        Returns False when the session was replaced; raises _Cancelled on stop.
        """
        while True:
            if session.cancel.is_set():
                raise _Cancelled()
            session.pause_gate.wait()
            if session.cancel.is_set():
                raise _Cancelled()
            # pause_scanning clears the gate under the same lock
            with self._lock:
                if session.pause_gate.is_set():
                    return self._commit(session, current_page=page)

    def _record_outcome(self, session: _Session, outcome: PageScanOutcome, attempt: _AttemptResult | None) -> bool:
        page = outcome.page_number
        with self._lock:
            if not self._is_current(session):
                return False
            session.outcomes.append(outcome)

            if outcome.error is None:
                session.consecutive_failures = 0
                results = attempt.results if attempt else ()
                session.results.extend(results)
                ok = self._commit(
                    session,
                    found_count=self._state.found_count + len(outcome.detections),
                    generated_count=self._state.generated_count + len(results),
                    metrics=self.metrics.snapshot(),
                )
                for msg in attempt.materialize_failures if attempt else ():
                    ok = self._append_error(
                        session, ScanError(ErrorKind.PROCESSING_FAILED, page, msg)
                    ) and ok
                logger.info("page %d: %d code(s)", page, len(outcome.detections))
                return ok

            session.failed_pages.append(page)
            # any successful page in between has already reset the run
            session.consecutive_failures += 1
            session.last_failed_page = page
            logger.warning("page %d failed [%s]: %s", page, outcome.error.kind.value, outcome.error.message)
            return self._append_error(session, outcome.error, metrics=self.metrics.snapshot())

    def _finish(self, session: _Session) -> None:
        verdict = None
        summary = None
        if session.failed_pages:
            success_count = sum(1 for o in session.outcomes if o.succeeded)
            verdict = partial_failure_verdict(session.failed_pages, session.total_pages, success_count)
            message = verdict.message
            if session.stop_reason == STOP_CONSECUTIVE_FAILURES:
                message = (
                    f"Scanning stopped after too many consecutive failures "
                    f"(last failed page {session.last_failed_page}). {verdict.message}"
                )
            summary = ScanError(ErrorKind.PARTIAL_FAILURE, 0, message)

        phase = ScanPhase.ABORTED if session.stop_reason == STOP_CANCELLED else ScanPhase.COMPLETED
        committed = self._commit(
            session,
            phase=phase,
            completed_at=utc_now(),
            summary=summary,
            verdict=verdict,
            stop_reason=session.stop_reason,
            metrics=self.metrics.snapshot(),
        )
        if not committed:
            return
        self._publish_progress(session, completed=True)
        state = self.get_state()
        logger.info(
            "scan %s: %d code(s) on %d/%d page(s), %d failed page(s)",
            phase.value,
            state.found_count,
            len(session.outcomes),
            session.total_pages,
            len(session.failed_pages),
        )

    def _cleanup(self) -> None:
        expired = self._cache.expire()
        trimmed = self.metrics.trim()
        collected = gc.collect()
        logger.debug("cleanup: %d cache entries expired, %d samples trimmed, %d objects collected", expired, trimmed, collected)

    # ═══════════════════════════════════════════════════════════════════════════
    # PAGE ATTEMPTS
    # ═══════════════════════════════════════════════════════════════════════════

    def _scan_page(self, session: _Session, page: int) -> tuple[PageScanOutcome, _AttemptResult | None]:
        retries = 0
        while True:
            if retries and session.cancel.is_set():
                raise _Cancelled()
            try:
                self._check_document_limit()
                self._check_memory()
                attempt = self._run_attempt(session, page)
            except _Cancelled:
                raise
            except Exception as e:
                kind = classify_error(e)
                if kind is ErrorKind.TIMEOUT:
                    self.metrics.record_timeout()
                if is_retryable(kind) and retries < self.config.max_retries:
                    backoff_s = self.config.backoff_ms(retries) / 1000.0
                    retries += 1
                    self.metrics.record_retry()
                    logger.warning(
                        "page %d attempt failed [%s], retry %d/%d in %.0fms: %s",
                        page,
                        kind.value,
                        retries,
                        self.config.max_retries,
                        backoff_s * 1000,
                        e,
                    )
                    if backoff_s > 0 and session.cancel.wait(backoff_s):
                        raise _Cancelled()
                    continue
                error = ScanError(kind=kind, page_number=page, message=str(e), retry_count=retries)
                return PageScanOutcome(page_number=page, error=error), None
            return PageScanOutcome(page_number=page, detections=attempt.detections), attempt

    def _check_document_limit(self) -> None:
        limit = self.config.max_detections_per_document
        if self.get_state().found_count >= limit:
            raise DocumentLimitError(limit)

    def _check_memory(self) -> None:
        threshold = self.config.memory_threshold_mb
        usage = self.memory.usage_mb()
        self.metrics.record_memory(usage)
        if usage <= threshold:
            return
        logger.warning("memory usage %.1fMB above %.1fMB, cleaning up", usage, threshold)
        self._cleanup()
        usage = self.memory.usage_mb()
        self.metrics.record_memory(usage)
        if usage > threshold:
            raise MemoryPressureError(usage, threshold)

    def _run_attempt(self, session: _Session, page: int) -> _AttemptResult:
        """Run one attempt on a worker thread, racing it against the page timeout.

        A stop request does not interrupt the attempt; the loop sees it at the
        next page boundary.
        """
        future: Future[_AttemptResult] = Future()

        def work() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self._attempt_unit(session, page))
            except BaseException as e:
                future.set_exception(e)

        worker = threading.Thread(target=work, name=f"qrscan-page-{page}", daemon=True)
        worker.start()

        timeout_ms = self.config.page_timeout_ms
        done, _ = wait([future], timeout=timeout_ms / 1000.0)
        if not done:
            logger.warning("page %d timed out after %dms", page, timeout_ms)
            raise PageTimeoutError(page, timeout_ms)
        return future.result()

    def _attempt_unit(self, session: _Session, page: int) -> _AttemptResult:
        key = (session.generation, page)
        buffer = self._cache.get(key)
        if buffer is None:
            try:
                buffer = session.provider(page)
            except ScanEngineError:
                raise
            except Exception as e:
                raise ImageExtractionError(page, f"{type(e).__name__}: {e}") from e
            if buffer is None:
                raise ImageExtractionError(page, "provider returned no image")
            self._cache.put(key, buffer)

        detections = tuple(self.engine.decode(buffer))

        results: list[Any] = []
        failures: list[str] = []
        for i, det in enumerate(detections):
            hint = None
            if self.context_provider is not None:
                try:
                    hint = self.context_provider(page, det.bounding_box)
                except Exception as e:
                    logger.debug("context provider failed on page %d: %s", page, e)
            try:
                results.append(self.materializer(det, page, hint))
            except Exception as e:
                logger.warning("could not materialize detection %d on page %d: %s", i + 1, page, e)
                failures.append(str(ProcessingError(f"could not create result for code {i + 1}: {e}", page)))
        return _AttemptResult(detections=detections, results=tuple(results), materialize_failures=tuple(failures))
