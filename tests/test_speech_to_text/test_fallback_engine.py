"""Tests for FallbackSpeechEngine and RestartPolicy."""

import asyncio
from unittest.mock import Mock

import pytest

from encounter_scribe.speech_to_text.circuit_breaker import CircuitBreaker
from encounter_scribe.speech_to_text.exceptions import (
    CriticalEngineError,
    EngineFailure,
    RecoverableEngineError,
)
from encounter_scribe.speech_to_text.fallback_engine import (
    FallbackSpeechEngine,
    RestartPolicy,
)
from encounter_scribe.speech_to_text.models import EngineError, EngineStatus, ErrorClass


class FakeService:
    """Native speech service double driven by the test."""

    def __init__(self) -> None:
        self.start_calls = 0
        self.stop_calls = 0
        self.start_error: EngineFailure | None = None
        self.on_result = None
        self.on_error = None
        self.on_end = None
        self.dispatch = None

    def start(self) -> None:
        self.start_calls += 1
        if self.start_error is not None:
            raise self.start_error

    def stop(self, wait: bool = False) -> None:
        self.stop_calls += 1


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _engine(
    restart_delay: float = 0.0, max_restarts: int = 5
) -> tuple[FallbackSpeechEngine, FakeService, FakeClock]:
    clock = FakeClock()
    breaker = CircuitBreaker(clock=clock)
    service = FakeService()
    policy = RestartPolicy(breaker, delay=restart_delay, max_restarts=max_restarts)
    engine = FallbackSpeechEngine(service=service, breaker=breaker, restart_policy=policy)
    return engine, service, clock


@pytest.mark.unit
class TestFallbackSpeechEngine:
    """Test cases for FallbackSpeechEngine."""

    @pytest.mark.asyncio
    async def test_start_binds_service_and_listens(self) -> None:
        """Test start wires service events to the engine on the running loop."""
        engine, service, _ = _engine()

        assert engine.start_transcription() is True

        assert service.start_calls == 1
        assert engine.is_active is True
        assert engine.status is EngineStatus.LISTENING
        assert service.on_error == engine.handle_error
        assert service.dispatch == asyncio.get_running_loop().call_soon_threadsafe

    @pytest.mark.asyncio
    async def test_start_force_resets_open_breaker(self) -> None:
        """Test a user start is never blocked by a stale open breaker."""
        engine, service, _ = _engine()
        engine.breaker.record_error(ErrorClass.CRITICAL)

        assert engine.start_transcription() is True
        assert engine.breaker.is_open is False

    @pytest.mark.asyncio
    async def test_automatic_start_refused_while_open(self) -> None:
        """Test a start without force reset is refused while open."""
        engine, service, _ = _engine()
        errors: list[EngineError] = []
        engine.breaker.record_error(ErrorClass.CRITICAL)

        started = engine.start_transcription(on_error=errors.append, force_reset=False)

        assert started is False
        assert service.start_calls == 0
        assert errors[0].code == "circuit-breaker-open"

    @pytest.mark.asyncio
    async def test_critical_error_halts_immediately(self) -> None:
        """Test one critical error opens the breaker and stops the service."""
        engine, service, _ = _engine()
        errors: list[EngineError] = []
        engine.start_transcription(on_error=errors.append)

        engine.handle_error("permission-denied")

        assert engine.breaker.is_open is True
        assert engine.is_active is False
        assert engine.status is EngineStatus.HALTED
        assert service.stop_calls == 1
        assert errors[-1].code == "permission-denied"
        assert errors[-1].recoverable is False

    @pytest.mark.asyncio
    async def test_recoverable_errors_never_open(self) -> None:
        """Test recoverable errors are reported without counting."""
        engine, service, _ = _engine()
        errors: list[EngineError] = []
        engine.start_transcription(on_error=errors.append)

        for code in ("network", "no-speech-detected", "aborted", "capture-glitch"):
            engine.handle_error(code)

        assert engine.breaker.is_open is False
        assert engine.breaker.state.consecutive_errors == 0
        assert all(error.recoverable for error in errors)
        assert engine.is_active is True

    @pytest.mark.asyncio
    async def test_three_unclassified_errors_open_and_cool_down(self) -> None:
        """Test the threshold trip stops the engine until the cooldown ends."""
        engine, service, clock = _engine()
        errors: list[EngineError] = []
        engine.start_transcription(on_error=errors.append)

        engine.handle_error("service-error")
        engine.handle_error("service-error")
        assert engine.breaker.is_open is False

        engine.handle_error("service-error")

        assert engine.breaker.is_open is True
        assert engine.status is EngineStatus.DEGRADED
        assert errors[-1].code == "circuit-breaker-open"
        assert engine.get_engine_state()["cooldown_remaining"] == pytest.approx(30.0)

        clock.now = 30.0
        engine._on_cooldown_elapsed()

        assert engine.breaker.is_open is False
        assert engine.status is EngineStatus.READY
        engine.cleanup()

    @pytest.mark.asyncio
    async def test_final_result_resets_error_streak(self) -> None:
        """Test a non-empty final result clears consecutive errors."""
        engine, service, _ = _engine()
        results: list[tuple] = []
        engine.start_transcription(on_transcript=lambda *args: results.append(args))
        engine.handle_error("service-error")
        engine.handle_error("service-error")

        engine.handle_result("tengo fiebre", True, 0.9)
        engine.handle_error("service-error")

        assert engine.breaker.is_open is False
        assert engine.breaker.state.consecutive_errors == 1
        assert results == [("tengo fiebre", True, 0.9)]

    @pytest.mark.asyncio
    async def test_interim_result_does_not_reset_streak(self) -> None:
        """Test interim results leave the error count alone."""
        engine, service, _ = _engine()
        engine.start_transcription()
        engine.handle_error("service-error")

        engine.handle_result("tengo", False, 0.5)

        assert engine.breaker.state.consecutive_errors == 1

    @pytest.mark.asyncio
    async def test_unexpected_end_restarts_after_delay(self) -> None:
        """Test an unexpected end while closed schedules a restart."""
        engine, service, _ = _engine()
        on_end = Mock()
        engine.start_transcription(on_end=on_end)

        engine.handle_end()
        await asyncio.sleep(0.01)

        assert service.start_calls == 2
        assert engine.breaker.state.retry_count == 1
        on_end.assert_not_called()

    @pytest.mark.asyncio
    async def test_end_while_open_fires_on_end(self) -> None:
        """Test no restart happens once the breaker is open."""
        engine, service, _ = _engine()
        on_end = Mock()
        engine.start_transcription(on_end=on_end)
        engine.handle_error("bad-config")

        engine.handle_end()
        await asyncio.sleep(0.01)

        assert service.start_calls == 1
        on_end.assert_called_once()

    @pytest.mark.asyncio
    async def test_restart_budget_is_bounded(self) -> None:
        """Test restarts stop after the budget and on_end fires."""
        engine, service, _ = _engine(max_restarts=2)
        on_end = Mock()
        errors: list[EngineError] = []
        engine.start_transcription(on_end=on_end, on_error=errors.append)

        for _ in range(3):
            engine.handle_end()
            await asyncio.sleep(0.01)

        assert service.start_calls == 3
        on_end.assert_called_once()
        assert errors[-1].code == "restart-limit"
        assert engine.is_active is False

    @pytest.mark.asyncio
    async def test_requested_stop_does_not_restart(self) -> None:
        """Test a user stop ends the session without restarting."""
        engine, service, _ = _engine()
        on_end = Mock()
        engine.start_transcription(on_end=on_end)

        engine.stop_transcription()
        engine.handle_end()
        await asyncio.sleep(0.01)

        assert service.start_calls == 1
        assert service.stop_calls == 1
        on_end.assert_called_once()

    @pytest.mark.asyncio
    async def test_critical_start_failure(self) -> None:
        """Test a critical failure while starting halts the engine."""
        engine, service, _ = _engine()
        service.start_error = CriticalEngineError("permission-denied", "denied")
        errors: list[EngineError] = []

        assert engine.start_transcription(on_error=errors.append) is False

        assert engine.breaker.is_open is True
        assert errors[-1].code == "permission-denied"

    @pytest.mark.asyncio
    async def test_other_start_failure(self) -> None:
        """Test other start failures report start-failed."""
        engine, service, _ = _engine()
        service.start_error = RecoverableEngineError("capture-glitch", "device busy")
        errors: list[EngineError] = []

        assert engine.start_transcription(on_error=errors.append) is False

        assert errors[-1].code == "start-failed"
        assert engine.status is EngineStatus.ERROR

    @pytest.mark.asyncio
    async def test_cleanup_stops_and_drops_callbacks(self) -> None:
        """Test cleanup waits for the service and forgets callbacks."""
        engine, service, _ = _engine()
        on_end = Mock()
        engine.start_transcription(on_end=on_end)

        engine.cleanup()
        engine.handle_end()

        assert engine.is_active is False
        on_end.assert_not_called()


@pytest.mark.unit
class TestRestartPolicy:
    """Test cases for RestartPolicy."""

    @pytest.mark.asyncio
    async def test_refuses_when_open(self) -> None:
        """Test no restart is scheduled while the breaker is open."""
        breaker = CircuitBreaker()
        breaker.record_error(ErrorClass.CRITICAL)
        policy = RestartPolicy(breaker, delay=0.0)
        restart = Mock()

        assert policy.request_restart(asyncio.get_running_loop(), restart) is False
        await asyncio.sleep(0.01)
        restart.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_pending_restart(self) -> None:
        """Test a cancelled restart never runs."""
        policy = RestartPolicy(CircuitBreaker(), delay=0.01)
        restart = Mock()

        policy.request_restart(asyncio.get_running_loop(), restart)
        policy.cancel()
        await asyncio.sleep(0.03)

        restart.assert_not_called()
