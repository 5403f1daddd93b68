"""Native speech recognition engine guarded by a circuit breaker."""

import asyncio
from collections.abc import Callable
from typing import Any

from .circuit_breaker import CircuitBreaker, classify_error, get_error_message
from .config import (
    AUTO_RESTART_DELAY,
    CIRCUIT_BREAKER_TIMEOUT,
    MAX_AUTO_RESTARTS,
    NATIVE_SPEECH_LANGUAGE,
)
from .exceptions import CriticalEngineError, EngineFailure
from .logging_utils import get_logger
from .models import EngineError, EngineStatus, ErrorClass
from .native_speech import NativeSpeechService

logger = get_logger(__name__)


class RestartPolicy:
    """
    Bounded, delayed restarts after the native service ends on its own.

    Restarts are counted on the breaker, so a successful final result
    refills the budget.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        delay: float = AUTO_RESTART_DELAY,
        max_restarts: int = MAX_AUTO_RESTARTS,
    ) -> None:
        self.breaker = breaker
        self.delay = delay
        self.max_restarts = max_restarts
        self._pending: asyncio.TimerHandle | None = None

    @property
    def exhausted(self) -> bool:
        return self.breaker.state.retry_count >= self.max_restarts

    def request_restart(
        self, loop: asyncio.AbstractEventLoop, restart: Callable[[], Any]
    ) -> bool:
        """
        Schedule ``restart`` after the delay.

        Returns:
            False if the breaker is open or the budget is spent
        """
        if self.breaker.is_open or self.exhausted:
            return False
        attempt = self.breaker.record_restart()
        logger.debug(
            f"Scheduling restart {attempt}/{self.max_restarts} in {self.delay}s"
        )
        self._pending = loop.call_later(self.delay, restart)
        return True

    def cancel(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None


class FallbackSpeechEngine:
    """
    Drives a native speech service and decides how to react to its failures.

    All methods run on the event loop thread; service events are hopped onto
    the loop with ``call_soon_threadsafe`` before they touch breaker state.
    """

    def __init__(
        self,
        service: Any | None = None,
        breaker: CircuitBreaker | None = None,
        restart_policy: RestartPolicy | None = None,
        language: str = NATIVE_SPEECH_LANGUAGE,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            service: Native speech service; a NativeSpeechService is built
                lazily when omitted
            breaker: Circuit breaker; a fresh one when omitted
            restart_policy: Policy consulted on unexpected ends; without one
                the engine never restarts by itself
            language: Recognition language for the default service
            loop: Event loop that owns the engine (the running loop by default)
        """
        self.language = language
        self.breaker = breaker or CircuitBreaker()
        self.restart_policy = restart_policy

        self._service = service
        self._loop = loop
        self._active = False
        self._status = EngineStatus.READY
        self._cooldown_handle: asyncio.TimerHandle | None = None

        self._on_transcript: Callable[[str, bool, float], None] | None = None
        self._on_error: Callable[[EngineError], None] | None = None
        self._on_end: Callable[[], None] | None = None

    @property
    def status(self) -> EngineStatus:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._active

    def start_transcription(
        self,
        on_transcript: Callable[[str, bool, float], None] | None = None,
        on_error: Callable[[EngineError], None] | None = None,
        on_end: Callable[[], None] | None = None,
        force_reset: bool = True,
    ) -> bool:
        """
        Start continuous recognition.

        A user-initiated start force-resets the breaker. Automatic restarts
        pass ``force_reset=False`` and are refused while the breaker is open.

        Returns:
            True if the service started
        """
        if on_transcript is not None:
            self._on_transcript = on_transcript
        if on_error is not None:
            self._on_error = on_error
        if on_end is not None:
            self._on_end = on_end

        if self._loop is None:
            self._loop = asyncio.get_running_loop()

        if force_reset:
            self._cancel_cooldown()
            self.breaker.force_reset()
        elif self.breaker.is_open:
            logger.warning("⚠️ Circuit breaker open, refusing to start recognition")
            self._report_code("circuit-breaker-open")
            return False

        service = self._get_service()
        if service is None:
            self._status = EngineStatus.ERROR
            self._report_code("not-supported")
            return False

        try:
            service.start()
        except CriticalEngineError as e:
            self._active = True
            self.handle_error(e.code, str(e))
            return False
        except EngineFailure as e:
            if e.code == "already-started":
                logger.debug("Recognition already running")
                self._active = True
                return True
            logger.error(f"❌ Failed to start recognition: {e}")
            self._status = EngineStatus.ERROR
            self._report_code("start-failed")
            return False

        self._active = True
        self._status = EngineStatus.LISTENING
        logger.info("🎤 Native speech recognition started")
        return True

    def stop_transcription(self) -> None:
        """Stop recognition on request; ``on_end`` fires when the service ends."""
        self._active = False
        if self.restart_policy is not None:
            self.restart_policy.cancel()
        if self._service is not None:
            self._service.stop()
        if self._status is EngineStatus.LISTENING:
            self._status = EngineStatus.READY

    def handle_error(self, code: str, detail: str = "") -> None:
        """Classify a service error and move the breaker accordingly."""
        classification = classify_error(code)
        opened = self.breaker.record_error(classification)
        message = get_error_message(code)

        if classification is ErrorClass.RECOVERABLE:
            logger.debug(f"Recoverable recognition error: {code} {detail}".rstrip())
            self._report(EngineError(code, True, message))
            return

        if classification is ErrorClass.CRITICAL:
            logger.error(f"❌ Critical recognition error: {code}")
            self._halt(EngineStatus.HALTED)
            self._report(EngineError(code, False, message))
            return

        state = self.breaker.state
        logger.warning(
            f"⚠️ Recognition error {code} "
            f"({state.consecutive_errors} consecutive)"
        )
        if opened:
            self._halt(EngineStatus.DEGRADED)
            self._schedule_cooldown()
            self._report_code("circuit-breaker-open")
        else:
            self._report(EngineError(code, True, message))

    def handle_result(self, text: str, is_final: bool, confidence: float) -> None:
        if is_final and text.strip():
            self.breaker.record_success()
        if self._on_transcript is not None:
            self._on_transcript(text, is_final, confidence)

    def handle_end(self) -> None:
        """React to the service ending, restarting it while the session is active."""
        if self._active and self.restart_policy is not None:
            if self.restart_policy.request_restart(self._loop, self._restart):
                return
            if self.restart_policy.exhausted and not self.breaker.is_open:
                logger.error("❌ Recognition restart limit reached")
                self._report_code("restart-limit")
                self._status = EngineStatus.HALTED

        self._active = False
        if self._status is EngineStatus.LISTENING:
            self._status = EngineStatus.READY
        logger.debug("Native speech recognition ended")
        if self._on_end is not None:
            self._on_end()

    def get_engine_state(self) -> dict[str, Any]:
        """Debug snapshot of the engine and its breaker."""
        state = self.breaker.state
        return {
            "is_active": self._active,
            "status": self._status.value,
            "circuit_state": state.state.value,
            "consecutive_errors": state.consecutive_errors,
            "retry_count": state.retry_count,
            "trip_reason": state.trip_reason.value if state.trip_reason else None,
            "cooldown_remaining": self.breaker.cooldown_remaining,
        }

    def cleanup(self) -> None:
        """Stop everything and drop callbacks."""
        self._active = False
        self._cancel_cooldown()
        if self.restart_policy is not None:
            self.restart_policy.cancel()
        if self._service is not None:
            self._service.stop(wait=True)
        self._on_transcript = None
        self._on_error = None
        self._on_end = None

    def _get_service(self) -> Any | None:
        if self._service is None:
            try:
                self._service = NativeSpeechService(language=self.language)
            except Exception as e:
                logger.error(f"❌ Native speech recognition not available: {e}")
                return None
        self._bind(self._service)
        return self._service

    def _bind(self, service: Any) -> None:
        service.dispatch = self._loop.call_soon_threadsafe
        service.on_result = self.handle_result
        service.on_error = self.handle_error
        service.on_end = self.handle_end

    def _restart(self) -> None:
        if not self._active:
            return
        logger.debug("Restarting native speech recognition")
        self.start_transcription(force_reset=False)

    def _halt(self, status: EngineStatus) -> None:
        self._active = False
        if self.restart_policy is not None:
            self.restart_policy.cancel()
        if self._service is not None:
            self._service.stop()
        self._status = status

    def _schedule_cooldown(self) -> None:
        self._cancel_cooldown()
        self._cooldown_handle = self._loop.call_later(
            CIRCUIT_BREAKER_TIMEOUT, self._on_cooldown_elapsed
        )

    def _cancel_cooldown(self) -> None:
        if self._cooldown_handle is not None:
            self._cooldown_handle.cancel()
            self._cooldown_handle = None

    def _on_cooldown_elapsed(self) -> None:
        self._cooldown_handle = None
        if self.breaker.expire_cooldown():
            self._status = EngineStatus.READY

    def _report(self, error: EngineError) -> None:
        if self._on_error is not None:
            self._on_error(error)

    def _report_code(self, code: str) -> None:
        self._report(EngineError(code, False, get_error_message(code)))
