"""Tests for the document scan loop.

Tests cover:
1. Happy path, timeouts and the three-page scenario
2. Retry/backoff and which failures are retried
3. Consecutive-failure cutoff and fatal stops
4. Session exclusivity, pause/resume, stop, reset
5. Inter-page delay and periodic cleanup
6. Memory budget, document cap, bounded error list
7. Observer ordering and isolation
"""
from __future__ import annotations

import threading
import time

import pytest

from conftest import FakeDecoder, RecordingProvider, ScriptedReader, detection, fast_config, white_buffer
from qrscan_engine.config import DecodeConfig
from qrscan_engine.decoder import DecodeEngine
from qrscan_engine.errors import (
    ErrorKind,
    InvalidInputError,
    ScanInProgressError,
    UnsupportedEnvironmentError,
)
from qrscan_engine.metrics import MemoryMonitor
from qrscan_engine.orchestrator import ScanOrchestrator
from qrscan_engine.types import STOP_CANCELLED, STOP_CONSECUTIVE_FAILURES, STOP_FATAL, ScanPhase


def _orchestrator(decoder, memory, **config) -> ScanOrchestrator:
    return ScanOrchestrator(
        engine=decoder,
        materializer=lambda det, page, hint: (page, det.content),
        config=fast_config(**config),
        memory_monitor=memory,
    )


def _run_in_thread(orch: ScanOrchestrator, total: int, provider) -> tuple[threading.Thread, list]:
    out: list = []
    t = threading.Thread(target=lambda: out.append(orch.start_scanning(total, provider)), daemon=True)
    t.start()
    return t, out


# ═══════════════════════════════════════════════════════════════════════════════
# BASIC SESSIONS
# ═══════════════════════════════════════════════════════════════════════════════

class TestBasicSession:
    """A full pass over a healthy document."""

    def test_results_and_counts(self, no_memory_growth):
        decoder = FakeDecoder({1: [detection("a")], 3: [detection("b"), detection("c", x=60)]})
        orch = _orchestrator(decoder, no_memory_growth)

        results = orch.start_scanning(3, RecordingProvider())

        state = orch.get_state()
        assert results == [(1, "a"), (3, "b"), (3, "c")]
        assert state.phase is ScanPhase.COMPLETED
        assert state.found_count == 3
        assert state.generated_count == 3
        assert state.current_page == 3
        assert state.errors == ()
        assert state.summary is None and state.verdict is None
        assert state.started_at is not None and state.completed_at >= state.started_at

    def test_empty_document_completes(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth)
        assert orch.start_scanning(0, RecordingProvider()) == []
        assert orch.get_state().phase is ScanPhase.COMPLETED

    def test_found_count_matches_outcomes(self, no_memory_growth):
        decoder = FakeDecoder({1: [detection("a")], 2: ValueError("boom"), 3: [detection("b")]})
        orch = _orchestrator(decoder, no_memory_growth, max_retries=0)
        orch.start_scanning(3, RecordingProvider())

        progress = orch.get_progress()
        assert progress.scanned_pages == 3
        assert orch.get_state().found_count == sum(len(o.detections) for o in progress.outcomes)
        assert [p for p, _ in progress.detections] == [1, 3]

    def test_invalid_page_count_is_rejected(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth)
        with pytest.raises(InvalidInputError):
            orch.start_scanning(-1, RecordingProvider())
        assert orch.get_state().phase is ScanPhase.IDLE

    def test_unsupported_environment_raises_up_front(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(supported=False), no_memory_growth)
        provider = RecordingProvider()
        with pytest.raises(UnsupportedEnvironmentError):
            orch.start_scanning(3, provider)
        assert orch.get_state().phase is ScanPhase.IDLE
        assert provider.requests == []


# ═══════════════════════════════════════════════════════════════════════════════
# TIMEOUTS & RETRIES
# ═══════════════════════════════════════════════════════════════════════════════

class TestTimeoutsAndRetries:
    """Per-page timeout and bounded retry."""

    def test_three_page_scenario_with_timeout(self, no_memory_growth):
        decoder = FakeDecoder({1: [detection("https://example.com/one")]})
        provider = RecordingProvider(block={2})
        orch = _orchestrator(decoder, no_memory_growth, page_timeout_ms=200)
        try:
            results = orch.start_scanning(3, provider)
        finally:
            provider.release.set()

        state = orch.get_state()
        assert state.phase is ScanPhase.COMPLETED
        assert state.found_count == 1
        assert len(results) == 1
        assert len(state.errors) == 1
        err = state.errors[0]
        assert err.kind is ErrorKind.TIMEOUT
        assert err.page_number == 2
        assert err.retry_count == 0
        assert state.metrics.timeout_count == 1
        # timeouts are not retried
        assert provider.requests.count(2) == 1
        assert 3 in provider.requests
        assert state.summary is not None and state.summary.kind is ErrorKind.PARTIAL_FAILURE
        assert state.verdict.strategy == "retry"

    def test_provider_failure_is_retried(self, no_memory_growth):
        decoder = FakeDecoder({1: [detection("a")]})
        provider = RecordingProvider(fail={1: 1})
        orch = _orchestrator(decoder, no_memory_growth)

        results = orch.start_scanning(1, provider)

        assert results == [(1, "a")]
        assert provider.requests == [1, 1]
        assert orch.get_state().errors == ()
        assert orch.get_state().metrics.retry_count == 1

    def test_retries_are_bounded(self, no_memory_growth):
        provider = RecordingProvider(fail={1: 10})
        orch = _orchestrator(FakeDecoder(), no_memory_growth, max_retries=2)

        orch.start_scanning(1, provider)

        state = orch.get_state()
        assert provider.requests == [1, 1, 1]
        assert state.errors[0].kind is ErrorKind.IMAGE_EXTRACTION_FAILED
        assert state.errors[0].retry_count == 2

    def test_oversize_buffer_is_requested_once(self, no_memory_growth):
        engine = DecodeEngine(DecodeConfig(max_buffer_bytes=100), reader=ScriptedReader(lambda g, m: []))
        calls: list[int] = []

        def provider(page):
            calls.append(page)
            return white_buffer(10, 10)

        orch = ScanOrchestrator(engine=engine, config=fast_config(), memory_monitor=no_memory_growth)
        orch.start_scanning(1, provider)

        state = orch.get_state()
        assert calls == [1]
        assert state.errors[0].kind is ErrorKind.BUFFER_TOO_LARGE

    def test_retry_reuses_cached_buffer(self, no_memory_growth):
        decoder = FakeDecoder({1: ValueError("decode hiccup")})
        provider = RecordingProvider()
        orch = _orchestrator(decoder, no_memory_growth, max_retries=2)

        orch.start_scanning(1, provider)

        assert provider.requests == [1]
        assert decoder.decoded == [1, 1, 1]
        assert orch.get_state().errors[0].kind is ErrorKind.PROCESSING_FAILED


# ═══════════════════════════════════════════════════════════════════════════════
# STOP CONDITIONS
# ═══════════════════════════════════════════════════════════════════════════════

class TestStopConditions:
    """Consecutive failures and fatal errors end the session early."""

    def test_consecutive_failure_cutoff(self, no_memory_growth):
        provider = RecordingProvider(fail={4: 99, 5: 99, 6: 99})
        orch = _orchestrator(FakeDecoder(), no_memory_growth, max_retries=0)

        orch.start_scanning(10, provider)

        state = orch.get_state()
        assert state.phase is ScanPhase.COMPLETED
        assert state.stop_reason == STOP_CONSECUTIVE_FAILURES
        assert sorted(set(provider.requests)) == [1, 2, 3, 4, 5, 6]
        assert [e.page_number for e in state.errors] == [4, 5, 6]
        assert state.summary is not None
        assert "consecutive" in state.summary.message

    def test_interleaved_failures_do_not_stop(self, no_memory_growth):
        provider = RecordingProvider(fail={2: 99, 4: 99, 6: 99})
        orch = _orchestrator(FakeDecoder(), no_memory_growth, max_retries=0)

        orch.start_scanning(7, provider)

        state = orch.get_state()
        assert state.stop_reason is None
        assert state.current_page == 7
        assert len(state.errors) == 3

    def test_fatal_error_stops_scan(self, no_memory_growth):
        decoder = FakeDecoder({2: UnsupportedEnvironmentError("detector vanished")})
        provider = RecordingProvider()
        orch = _orchestrator(decoder, no_memory_growth)

        orch.start_scanning(5, provider)

        state = orch.get_state()
        assert state.phase is ScanPhase.COMPLETED
        assert state.stop_reason == STOP_FATAL
        assert provider.requests == [1, 2]
        assert state.errors[0].kind is ErrorKind.UNSUPPORTED_ENVIRONMENT


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION CONTROL
# ═══════════════════════════════════════════════════════════════════════════════

class TestSessionControl:
    """Exclusivity, pause/resume, stop and reset."""

    def test_second_start_is_rejected(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth)
        rejected: list[Exception] = []
        phases_seen: list[ScanPhase] = []

        def on_state(state):
            phases_seen.append(state.phase)
            if state.phase is ScanPhase.SCANNING and not rejected:
                try:
                    orch.start_scanning(5, RecordingProvider())
                except ScanInProgressError as e:
                    rejected.append(e)

        orch.on_state_change(on_state)
        orch.start_scanning(2, RecordingProvider())

        assert len(rejected) == 1
        assert rejected[0].kind is ErrorKind.PROCESSING_FAILED
        assert orch.get_state().total_pages == 2

    def test_pause_then_resume_continues_at_next_page(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth)
        provider = RecordingProvider()
        paused = threading.Event()

        def on_progress(progress):
            if progress.scanned_pages == 2:
                orch.pause_scanning()

        def on_state(state):
            if state.phase is ScanPhase.PAUSED:
                paused.set()

        orch.on_progress(on_progress)
        orch.on_state_change(on_state)
        t, _ = _run_in_thread(orch, 4, provider)

        assert paused.wait(5)
        # give the loop a chance to (wrongly) move on
        t.join(0.2)
        assert provider.requests == [1, 2]
        assert orch.get_state().is_paused

        orch.resume_scanning()
        t.join(5)
        assert not t.is_alive()
        assert provider.requests == [1, 2, 3, 4]
        assert orch.get_state().phase is ScanPhase.COMPLETED

    def test_stop_while_paused_aborts(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth)
        provider = RecordingProvider()
        paused = threading.Event()

        orch.on_progress(lambda p: orch.pause_scanning() if p.scanned_pages == 1 else None)
        orch.on_state_change(lambda s: paused.set() if s.phase is ScanPhase.PAUSED else None)
        t, out = _run_in_thread(orch, 5, provider)

        assert paused.wait(5)
        orch.stop_scanning()
        t.join(5)

        state = orch.get_state()
        assert state.phase is ScanPhase.ABORTED
        assert state.stop_reason == STOP_CANCELLED
        assert state.completed_at is not None
        assert provider.requests == [1]
        assert out == [[]]

    def test_stop_interrupts_backoff(self, no_memory_growth):
        provider = RecordingProvider(fail={1: 99})
        orch = _orchestrator(FakeDecoder(), no_memory_growth, backoff_base_ms=10_000, backoff_max_ms=10_000)
        t, _ = _run_in_thread(orch, 3, provider)

        # first attempt fails, the loop then sleeps 10s before retrying
        for _ in range(100):
            if provider.requests:
                break
            t.join(0.05)
        orch.stop_scanning()
        t.join(3)

        assert not t.is_alive()
        assert orch.get_state().phase is ScanPhase.ABORTED

    def test_pause_from_another_thread_holds_next_page(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth, inter_page_delay_ms=400)
        provider = RecordingProvider()
        first_done = threading.Event()
        orch.on_progress(lambda p: first_done.set() if p.scanned_pages == 1 else None)
        t, _ = _run_in_thread(orch, 3, provider)

        assert first_done.wait(5)
        # the loop is now sleeping out the inter-page delay
        t.join(0.1)
        orch.pause_scanning()
        t.join(0.8)

        state = orch.get_state()
        assert provider.requests == [1]
        assert state.phase is ScanPhase.PAUSED
        assert state.current_page == 1

        orch.resume_scanning()
        t.join(5)
        assert not t.is_alive()
        assert provider.requests == [1, 2, 3]
        assert orch.get_state().phase is ScanPhase.COMPLETED

    def test_stop_during_inter_page_delay(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth, inter_page_delay_ms=10_000)
        provider = RecordingProvider()
        first_done = threading.Event()
        orch.on_progress(lambda p: first_done.set() if p.scanned_pages == 1 else None)
        t, _ = _run_in_thread(orch, 3, provider)

        assert first_done.wait(5)
        orch.stop_scanning()
        t.join(3)

        assert not t.is_alive()
        assert orch.get_state().phase is ScanPhase.ABORTED
        assert provider.requests == [1]

    def test_stop_lets_in_flight_page_finish(self, no_memory_growth):
        provider = RecordingProvider(block={1})
        orch = _orchestrator(FakeDecoder({1: [detection("https://a.example")]}), no_memory_growth)
        t, out = _run_in_thread(orch, 3, provider)

        assert provider.requested.wait(5)
        orch.stop_scanning()
        provider.release.set()
        t.join(5)

        state = orch.get_state()
        assert out == [[(1, "https://a.example")]]
        assert state.found_count == 1
        assert state.phase is ScanPhase.ABORTED
        assert state.stop_reason == STOP_CANCELLED
        assert provider.requests == [1]

    def test_stop_during_last_page_still_aborts(self, no_memory_growth):
        provider = RecordingProvider(block={1})
        orch = _orchestrator(FakeDecoder(), no_memory_growth)
        t, _ = _run_in_thread(orch, 1, provider)

        assert provider.requested.wait(5)
        orch.stop_scanning()
        provider.release.set()
        t.join(5)

        assert orch.get_state().phase is ScanPhase.ABORTED

    def test_controls_are_noops_when_idle(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth)
        orch.pause_scanning()
        orch.resume_scanning()
        orch.stop_scanning()
        assert orch.get_state().phase is ScanPhase.IDLE

    def test_reset_during_scan_fences_old_loop(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder({1: [detection("a")], 3: [detection("b")]}), no_memory_growth)
        provider = RecordingProvider()
        orch.on_progress(lambda p: orch.reset() if p.scanned_pages == 1 else None)

        orch.start_scanning(3, provider)

        state = orch.get_state()
        assert state.phase is ScanPhase.IDLE
        assert state.found_count == 0
        assert orch.get_progress() is None
        assert provider.requests == [1]

    def test_new_session_after_completion(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder({1: [detection("a")]}), no_memory_growth)
        orch.start_scanning(1, RecordingProvider())
        orch.start_scanning(1, RecordingProvider())
        assert orch.get_state().found_count == 1

    def test_dispose_drops_observers(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth)
        seen: list = []
        orch.on_state_change(seen.append)
        orch.dispose()
        seen.clear()
        orch.start_scanning(1, RecordingProvider())
        assert seen == []


# ═══════════════════════════════════════════════════════════════════════════════
# PACING & CLEANUP
# ═══════════════════════════════════════════════════════════════════════════════

class TestPacingAndCleanup:
    """Inter-page delay and the periodic cleanup pass."""

    def test_delay_between_pages_but_not_before_first(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth, inter_page_delay_ms=300)
        provider = RecordingProvider()

        t0 = time.monotonic()
        orch.start_scanning(3, provider)

        assert provider.requests == [1, 2, 3]
        assert provider.times[0] - t0 < 0.25
        gaps = [b - a for a, b in zip(provider.times, provider.times[1:])]
        assert all(g >= 0.25 for g in gaps)

    def test_cleanup_runs_every_n_pages(self, no_memory_growth, monkeypatch):
        orch = _orchestrator(FakeDecoder(), no_memory_growth, cleanup_every_pages=2)
        cleaned_at: list[int] = []
        real_trim = orch.metrics.trim

        def trim():
            cleaned_at.append(orch.get_state().current_page)
            return real_trim()

        monkeypatch.setattr(orch.metrics, "trim", trim)
        orch.start_scanning(5, RecordingProvider())

        assert cleaned_at == [2, 4]


# ═══════════════════════════════════════════════════════════════════════════════
# RESOURCE LIMITS
# ═══════════════════════════════════════════════════════════════════════════════

class TestResourceLimits:
    """Memory budget, document cap and the bounded error list."""

    def test_memory_pressure_fails_page_without_retry(self):
        mb = 1024 * 1024
        readings = iter([0] + [500 * mb] * 100)
        memory = MemoryMonitor(sampler=lambda: next(readings))
        provider = RecordingProvider()
        orch = _orchestrator(FakeDecoder(), memory, memory_threshold_mb=150)

        orch.start_scanning(1, provider)

        state = orch.get_state()
        assert state.errors[0].kind is ErrorKind.MEMORY_PRESSURE
        assert state.errors[0].retry_count == 0
        assert provider.requests == []
        assert state.metrics.memory_usage_mb == pytest.approx(500)

    def test_cleanup_that_frees_memory_lets_page_run(self):
        mb = 1024 * 1024
        readings = iter([0, 500 * mb, 10 * mb] + [10 * mb] * 100)
        memory = MemoryMonitor(sampler=lambda: next(readings))
        orch = _orchestrator(FakeDecoder({1: [detection("a")]}), memory, memory_threshold_mb=150)

        orch.start_scanning(1, RecordingProvider())

        assert orch.get_state().found_count == 1
        assert orch.get_state().errors == ()

    def test_document_limit_fails_later_pages_fast(self, no_memory_growth):
        decoder = FakeDecoder({p: [detection(f"code-{p}")] for p in range(1, 6)})
        provider = RecordingProvider()
        orch = _orchestrator(
            decoder, no_memory_growth, max_detections_per_document=2, consecutive_failure_limit=10
        )

        results = orch.start_scanning(5, provider)

        state = orch.get_state()
        assert len(results) == 2
        assert state.found_count == 2
        assert provider.requests == [1, 2]
        assert {e.kind for e in state.errors} == {ErrorKind.DOCUMENT_LIMIT_EXCEEDED}
        assert [e.page_number for e in state.errors] == [3, 4, 5]

    def test_error_list_is_bounded(self, no_memory_growth):
        provider = RecordingProvider(fail={p: 99 for p in range(1, 6)})
        orch = _orchestrator(
            FakeDecoder(), no_memory_growth, max_retries=0, max_stored_errors=2, consecutive_failure_limit=10
        )

        orch.start_scanning(5, provider)

        state = orch.get_state()
        assert [e.page_number for e in state.errors] == [1, 2]
        assert state.dropped_errors == 3
        assert state.verdict.strategy == "stop"

    def test_materialize_failure_is_recorded_but_page_succeeds(self, no_memory_growth):
        def materializer(det, page, hint):
            if det.content == "bad":
                raise ValueError("cannot build")
            return det.content

        orch = ScanOrchestrator(
            engine=FakeDecoder({1: [detection("good"), detection("bad", x=50)]}),
            materializer=materializer,
            config=fast_config(),
            memory_monitor=no_memory_growth,
        )
        results = orch.start_scanning(1, RecordingProvider())

        state = orch.get_state()
        assert results == ["good"]
        assert state.found_count == 2
        assert state.generated_count == 1
        assert [e.kind for e in state.errors] == [ErrorKind.PROCESSING_FAILED]
        assert "QR processing failed" in state.errors[0].message
        assert state.summary is None

    def test_context_hint_reaches_materializer(self, no_memory_growth):
        hints: list = []
        orch = ScanOrchestrator(
            engine=FakeDecoder({2: [detection("a")]}),
            materializer=lambda det, page, hint: hints.append((page, hint)),
            config=fast_config(),
            context_provider=lambda page, box: f"Section on page {page}",
            memory_monitor=no_memory_growth,
        )
        orch.start_scanning(2, RecordingProvider())
        assert hints == [(2, "Section on page 2")]


# ═══════════════════════════════════════════════════════════════════════════════
# OBSERVERS
# ═══════════════════════════════════════════════════════════════════════════════

class TestObservers:
    """Snapshots delivered in order, one per mutation; bad observers are isolated."""

    def test_current_page_is_monotonic(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth)
        pages: list[int] = []
        orch.on_state_change(lambda s: pages.append(s.current_page))

        orch.start_scanning(6, RecordingProvider())

        assert pages == sorted(pages)
        assert all(0 <= p <= 6 for p in pages)
        assert pages[-1] == 6

    def test_raising_observer_is_ignored(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder({1: [detection("a")]}), no_memory_growth)
        seen: list = []

        def bad(_state):
            raise RuntimeError("observer bug")

        orch.on_state_change(bad)
        orch.on_state_change(seen.append)
        orch.on_progress(bad)

        results = orch.start_scanning(2, RecordingProvider())

        assert results == [(1, "a")]
        assert seen[-1].phase is ScanPhase.COMPLETED

    def test_unsubscribe(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth)
        seen: list = []
        unsubscribe = orch.on_state_change(seen.append)
        unsubscribe()
        orch.start_scanning(1, RecordingProvider())
        assert seen == []

    def test_progress_reports_each_page(self, no_memory_growth):
        orch = _orchestrator(FakeDecoder(), no_memory_growth)
        scanned: list[int] = []
        orch.on_progress(lambda p: scanned.append(p.scanned_pages))

        orch.start_scanning(3, RecordingProvider())

        # one per page plus the final completion snapshot
        assert scanned == [1, 2, 3, 3]
        assert orch.get_progress().completed_at is not None
