"""Continuous speech recognition service used by the fallback engine."""

import threading
from collections.abc import Callable
from typing import Any

import speech_recognition as sr

from .config import (
    DEFAULT_SAMPLE_RATE,
    NATIVE_SPEECH_ENERGY_THRESHOLD,
    NATIVE_SPEECH_LANGUAGE,
    NATIVE_SPEECH_PHRASE_TIME_LIMIT,
    WORKER_JOIN_TIMEOUT,
)
from .circuit_breaker import engine_failure
from .exceptions import EngineFailure
from .logging_utils import get_logger

logger = get_logger(__name__)

LISTEN_TIMEOUT = 0.5  # seconds - lets the loop notice stop requests


def _run_inline(callback: Callable[..., Any], *args: Any) -> None:
    callback(*args)


def request_error_code(error: Exception) -> str:
    """Map a recognizer request failure to an engine error code."""
    text = str(error).lower()
    if "connection failed" in text or "timed out" in text:
        return "network"
    if "bad request" in text:
        return "bad-config"
    if "forbidden" in text or "unauthorized" in text or "api key" in text:
        return "service-unavailable"
    return "service-error"


def microphone_error_code(error: Exception) -> str:
    """Map a microphone failure to an engine error code."""
    if isinstance(error, AttributeError):
        # speech_recognition raises AttributeError when PyAudio is missing
        return "service-unavailable"
    if "permission denied" in str(error).lower():
        return "permission-denied"
    return "capture-glitch"


class NativeSpeechService:
    """
    Event-driven wrapper around the SpeechRecognition library.

    Emits ``on_start``, ``on_result(text, is_final, confidence)``,
    ``on_error(code, detail)`` and ``on_end``. Events are raised on the
    listening thread and handed to ``dispatch``, which the engine replaces
    with a thread-safe hop onto its event loop.
    """

    def __init__(
        self,
        language: str = NATIVE_SPEECH_LANGUAGE,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        phrase_time_limit: float = NATIVE_SPEECH_PHRASE_TIME_LIMIT,
        recognizer: Any | None = None,
        microphone_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.language = language
        self.sample_rate = sample_rate
        self.phrase_time_limit = phrase_time_limit

        self._recognizer = recognizer or sr.Recognizer()
        self._recognizer.energy_threshold = NATIVE_SPEECH_ENERGY_THRESHOLD
        self._microphone_factory = microphone_factory or (
            lambda: sr.Microphone(sample_rate=self.sample_rate)
        )

        self.on_start: Callable[[], None] | None = None
        self.on_result: Callable[[str, bool, float], None] | None = None
        self.on_error: Callable[[str, str], None] | None = None
        self.on_end: Callable[[], None] | None = None
        self.dispatch: Callable[..., None] = _run_inline

        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def is_listening(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """
        Open the microphone and start listening on a background thread.

        Raises:
            EngineFailure: The service is already running
            CriticalEngineError: The microphone is denied or unavailable
            RecoverableEngineError: The microphone failed to open this time
        """
        if self.is_listening:
            raise EngineFailure("already-started", "Recognition already started")

        try:
            microphone = self._microphone_factory()
        except (AttributeError, OSError) as e:
            raise engine_failure(microphone_error_code(e), str(e)) from e

        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._listen_loop,
            args=(microphone, self._stop_event),
            name="native-speech",
            daemon=True,
        )
        self._thread.start()

    def stop(self, wait: bool = False) -> None:
        """
        Ask the listening thread to finish; ``on_end`` follows.

        Args:
            wait: Block until the thread has exited
        """
        self._stop_event.set()
        thread = self._thread
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=WORKER_JOIN_TIMEOUT)
        self._thread = None

    def _emit(self, handler: Callable[..., Any] | None, *args: Any) -> None:
        if handler is not None:
            self.dispatch(handler, *args)

    def _listen_loop(self, microphone: Any, stop_event: threading.Event) -> None:
        try:
            with microphone as source:
                self._emit(self.on_start)
                while not stop_event.is_set():
                    try:
                        audio = self._recognizer.listen(
                            source,
                            timeout=LISTEN_TIMEOUT,
                            phrase_time_limit=self.phrase_time_limit,
                        )
                    except sr.WaitTimeoutError:
                        continue
                    if stop_event.is_set():
                        break
                    self._recognize(audio)
        except (AttributeError, OSError) as e:
            logger.error(f"❌ Native speech capture failed: {e}")
            self._emit(self.on_error, microphone_error_code(e), str(e))
        except Exception as e:
            logger.error(f"❌ Native speech service error: {e}")
            self._emit(self.on_error, "service-error", str(e))
        finally:
            # A run replaced by a newer start() ends silently
            if stop_event is self._stop_event:
                self._emit(self.on_end)

    def _recognize(self, audio: Any) -> None:
        try:
            result = self._recognizer.recognize_google(
                audio, language=self.language, show_all=True
            )
        except sr.UnknownValueError:
            self._emit(self.on_error, "no-speech-detected", "Speech not understood")
            return
        except sr.RequestError as e:
            self._emit(self.on_error, request_error_code(e), str(e))
            return

        if not result or "alternative" not in result:
            self._emit(self.on_error, "no-speech-detected", "Empty recognition result")
            return

        best = result["alternative"][0]
        transcript = best.get("transcript", "")
        confidence = float(best.get("confidence", 0.0))
        logger.trace(f"Native speech result: '{transcript}' ({confidence:.2f})")
        self._emit(self.on_result, transcript, bool(result.get("final", True)), confidence)
