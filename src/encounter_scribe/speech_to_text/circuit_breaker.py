"""Circuit breaker and error classification for the speech engines."""

import time
from collections.abc import Callable

from .config import CIRCUIT_BREAKER_TIMEOUT, MAX_CONSECUTIVE_ERRORS
from .exceptions import (
    CriticalEngineError,
    EngineFailure,
    RecoverableEngineError,
    UnclassifiedEngineError,
)
from .logging_utils import get_logger
from .models import CircuitBreakerState, CircuitState, ErrorClass

logger = get_logger(__name__)

CRITICAL_ERRORS = frozenset({"permission-denied", "service-unavailable", "bad-config"})
RECOVERABLE_ERRORS = frozenset(
    {"network", "capture-glitch", "no-speech-detected", "aborted"}
)

ERROR_MESSAGES = {
    "permission-denied": "Permisos de micrófono denegados. Por favor, permite el acceso al micrófono.",
    "no-speech-detected": "No se detectó voz. Por favor, habla más cerca del micrófono.",
    "capture-glitch": "Error al capturar audio. Verifica tu micrófono.",
    "network": "Error de conexión. Verifica tu conexión a internet.",
    "aborted": "Transcripción cancelada.",
    "service-unavailable": "Servicio de voz no disponible.",
    "bad-config": "Error de configuración del servicio.",
    "circuit-breaker-open": "Sistema de transcripción temporalmente no disponible",
    "not-supported": "Reconocimiento de voz no soportado en este entorno",
    "start-failed": "No se pudo iniciar el reconocimiento de voz",
    "restart-limit": "El reconocimiento de voz se detuvo tras varios reinicios",
}


def classify_error(code: str) -> ErrorClass:
    """Map an engine error code to its class."""
    if code in CRITICAL_ERRORS:
        return ErrorClass.CRITICAL
    if code in RECOVERABLE_ERRORS:
        return ErrorClass.RECOVERABLE
    return ErrorClass.UNCLASSIFIED


def get_error_message(code: str) -> str:
    """User-facing message for an engine error code."""
    return ERROR_MESSAGES.get(code, f"Error de transcripción: {code}")


def engine_failure(code: str, message: str | None = None) -> EngineFailure:
    """Build the exception matching an engine error code's classification."""
    classification = classify_error(code)
    if classification is ErrorClass.CRITICAL:
        return CriticalEngineError(code, message)
    if classification is ErrorClass.RECOVERABLE:
        return RecoverableEngineError(code, message)
    return UnclassifiedEngineError(code, message)


class CircuitBreaker:
    """
    Failure isolation for a flaky engine.

    The state is one ``CircuitBreakerState`` value, moved only by
    ``record_error``, ``record_success``, ``record_restart``, ``force_reset``
    and ``expire_cooldown``. A breaker opened by the consecutive-error
    threshold closes by itself once the cooldown has elapsed; a breaker
    opened by a critical error stays open until ``force_reset``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._state = CircuitBreakerState()

    @property
    def state(self) -> CircuitBreakerState:
        self._check_cooldown()
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state.is_open

    @property
    def cooldown_remaining(self) -> float:
        """Seconds until a threshold-opened breaker closes, 0 if not cooling down."""
        state = self._state
        if not state.is_open or state.trip_reason is not ErrorClass.UNCLASSIFIED:
            return 0.0
        return max(0.0, CIRCUIT_BREAKER_TIMEOUT - (self._clock() - state.opened_at))

    def record_error(self, classification: ErrorClass) -> bool:
        """
        Apply an error to the breaker.

        Returns:
            True if this error opened the breaker
        """
        self._check_cooldown()
        state = self._state
        was_open = state.is_open

        if classification is ErrorClass.RECOVERABLE:
            return False

        if classification is ErrorClass.CRITICAL:
            self._open(ErrorClass.CRITICAL)
            return not was_open

        state.consecutive_errors += 1
        state.last_error_at = self._clock()
        if state.consecutive_errors >= MAX_CONSECUTIVE_ERRORS and not was_open:
            self._open(ErrorClass.UNCLASSIFIED)
            return True
        return False

    def record_success(self) -> None:
        """A successful final result breaks the error streak."""
        self._state.consecutive_errors = 0
        self._state.retry_count = 0

    def record_restart(self) -> int:
        """Count one automatic restart; returns the new restart count."""
        self._state.retry_count += 1
        return self._state.retry_count

    def force_reset(self) -> None:
        """Close the breaker and clear every counter."""
        if self._state.is_open:
            logger.debug("Force resetting circuit breaker")
        self._state = CircuitBreakerState()

    def expire_cooldown(self) -> bool:
        """
        Close a threshold-opened breaker whose cooldown has elapsed.

        Returns:
            True if the breaker closed
        """
        state = self._state
        if not state.is_open or state.trip_reason is not ErrorClass.UNCLASSIFIED:
            return False
        if self._clock() - state.opened_at < CIRCUIT_BREAKER_TIMEOUT:
            return False
        logger.info("Circuit breaker timeout reached, resetting")
        self._state = CircuitBreakerState()
        return True

    def _check_cooldown(self) -> None:
        if self._state.is_open:
            self.expire_cooldown()

    def _open(self, reason: ErrorClass) -> None:
        state = self._state
        state.state = CircuitState.OPEN
        state.opened_at = self._clock()
        state.last_error_at = state.opened_at
        # A critical trip overrides a pending cooldown
        if state.trip_reason is not ErrorClass.CRITICAL:
            state.trip_reason = reason
        logger.error(
            f"❌ Circuit breaker opened ({reason.value}, "
            f"{state.consecutive_errors} consecutive errors)"
        )
