"""Session orchestration: capture, chunking, inference and fallback."""

import asyncio
import time
from collections.abc import Callable
from typing import Any

from .audio_capture import CaptureEngine
from .chunk_accumulator import ChunkAccumulator
from .circuit_breaker import CircuitBreaker, get_error_message
from .config import (
    DRAIN_TIMEOUT,
    MODEL_SAMPLE_RATE,
    TELEMETRY_TICK_INTERVAL,
    TranscriptionConfig,
)
from .exceptions import (
    AudioCaptureError,
    CapacityError,
    MicrophonePermissionError,
    ModelInitError,
)
from .fallback_engine import FallbackSpeechEngine, RestartPolicy
from .logging_utils import get_logger
from .models import (
    AudioChunk,
    EngineError,
    EnginePreference,
    EngineStatus,
    ErrorClass,
    SessionResult,
    SessionTelemetry,
    TranscriptionSegment,
    TranscriptionStatus,
)
from .worker import (
    ChunkError,
    ChunkProcessed,
    ChunkProcessingStart,
    ChunkProgress,
    InferenceWorker,
    ModelError,
    ModelLoadingProgress,
    ModelReady,
    ResetComplete,
    get_inference_worker,
)

logger = get_logger(__name__)


class TranscriptionOrchestrator:
    """
    Runs one transcription session at a time.

    Audio flows from the capture thread and results flow from the worker
    thread; both are hopped onto the event loop with ``call_soon_threadsafe``
    so session state is only touched on the loop thread.
    """

    def __init__(
        self,
        config: TranscriptionConfig | None = None,
        capture: CaptureEngine | None = None,
        worker: InferenceWorker | None = None,
        fallback: FallbackSpeechEngine | None = None,
        on_chunk_transcribed: Callable[[str, int], None] | None = None,
        on_session_complete: Callable[[SessionResult], None] | None = None,
        on_error: Callable[[EngineError], None] | None = None,
        on_telemetry: Callable[[SessionTelemetry], None] | None = None,
        on_model_progress: Callable[[int], None] | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: Session settings
            capture: Capture engine (built from config when omitted)
            worker: Inference worker (the process-wide one when omitted)
            fallback: Native speech engine (built lazily when omitted)
            on_chunk_transcribed: Receives (text, chunk_number) per segment
            on_session_complete: Receives the SessionResult on stop
            on_error: Receives every reported EngineError
            on_telemetry: Receives a SessionTelemetry snapshot every second
            on_model_progress: Receives model loading percentages
        """
        self.config = config or TranscriptionConfig()
        self.capture = capture or CaptureEngine(
            sample_rate=self.config.sample_rate, block_size=self.config.block_size
        )
        self._worker = worker
        self._fallback = fallback

        self.on_chunk_transcribed = on_chunk_transcribed
        self.on_session_complete = on_session_complete
        self.on_error = on_error
        self.on_telemetry = on_telemetry
        self.on_model_progress = on_model_progress

        # Chunk failures on the worker path; opening it switches AUTO to fallback
        self.worker_breaker = CircuitBreaker()
        self.restart_policy: RestartPolicy | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._status = TranscriptionStatus.IDLE
        self._engine_status = EngineStatus.READY
        self._active_engine: EnginePreference | None = None
        self._accumulator: ChunkAccumulator | None = None
        self._segments: list[TranscriptionSegment] = []
        self._in_flight: set[int] = set()
        self._drained: asyncio.Event | None = None
        self._telemetry_task: asyncio.Task | None = None
        self._switch_task: asyncio.Task | None = None
        # Bumped per session; worker messages from older sessions are dropped
        self._generation = 0
        self._started_at: float | None = None
        self._current_chunk: int | None = None
        self._current_chunk_progress = 0
        self._manual_entry_available = False

    @property
    def status(self) -> TranscriptionStatus:
        return self._status

    @property
    def engine_status(self) -> EngineStatus:
        return self._engine_status

    @property
    def active_engine(self) -> EnginePreference | None:
        return self._active_engine

    @property
    def segments(self) -> list[TranscriptionSegment]:
        """Segments ordered by chunk id."""
        return sorted(self._segments, key=lambda segment: segment.chunk_id)

    @property
    def transcript(self) -> str:
        """Non-empty segment texts in chunk order, joined by a space."""
        return " ".join(
            segment.text.strip()
            for segment in self.segments
            if segment.text and segment.text.strip()
        )

    @property
    def current_chunk(self) -> int | None:
        return self._current_chunk

    @property
    def current_chunk_progress(self) -> int:
        return self._current_chunk_progress

    @property
    def manual_entry_available(self) -> bool:
        return self._manual_entry_available

    @property
    def telemetry(self) -> SessionTelemetry:
        elapsed = time.monotonic() - self._started_at if self._started_at else 0.0
        return SessionTelemetry(
            recording_time_sec=int(elapsed),
            audio_level=self.capture.audio_level,
            engine_status=self._engine_status,
        )

    @property
    def worker(self) -> InferenceWorker:
        if self._worker is None:
            self._worker = get_inference_worker(
                model_ref=self.config.model_ref,
                device=self.config.device,
                compute_type=self.config.compute_type,
                min_chunk_samples=self.config.min_chunk_samples,
            )
        return self._worker

    @property
    def fallback(self) -> FallbackSpeechEngine:
        if self._fallback is None:
            self._fallback = FallbackSpeechEngine(language=self.config.native_language)
        return self._fallback

    async def start(self) -> bool:
        """
        Start a new session.

        Returns:
            True if recording started, False if already recording or the
            selected engine could not start
        """
        if self._status is TranscriptionStatus.RECORDING:
            logger.warning("⚠️ Session already recording, ignoring start")
            return False

        self._loop = asyncio.get_running_loop()
        self._clear_session()
        self._drained = asyncio.Event()
        self._drained.set()

        preference = EnginePreference(self.config.engine_preference)
        engine = EnginePreference.FALLBACK
        if preference is not EnginePreference.FALLBACK:
            if await self._prepare_worker(
                can_fall_back=preference is EnginePreference.AUTO
            ):
                engine = EnginePreference.WORKER
            elif preference is EnginePreference.WORKER:
                self._status = TranscriptionStatus.ERROR
                self._engine_status = EngineStatus.ERROR
                return False
            else:
                logger.warning(
                    "⚠️ Model unavailable, switching to native recognition"
                )

        self._active_engine = engine
        if engine is EnginePreference.WORKER:
            self._accumulator = ChunkAccumulator(
                self.config.chunk_size,
                on_chunk=self._on_chunk_captured,
                source_sample_rate=self.config.sample_rate,
                target_sample_rate=MODEL_SAMPLE_RATE,
            )
            self.capture.set_accumulator(self._accumulator)
        else:
            self.capture.set_accumulator(None)

        if not self._start_capture():
            return False

        if engine is EnginePreference.FALLBACK and not self._start_fallback():
            self.capture.stop()
            self._status = TranscriptionStatus.ERROR
            return False

        self._status = TranscriptionStatus.RECORDING
        if engine is EnginePreference.WORKER:
            self._engine_status = EngineStatus.LISTENING
        self._started_at = time.monotonic()
        self._telemetry_task = asyncio.create_task(self._telemetry_loop())
        logger.info(f"🎤 Session started with {engine.value} engine")
        return True

    async def stop(self) -> SessionResult | None:
        """
        Stop the session, wait for in-flight chunks and build the result.

        Returns:
            The SessionResult, or None if no session was running
        """
        halted = (
            self._status is TranscriptionStatus.ERROR and self._manual_entry_available
        )
        if self._status is not TranscriptionStatus.RECORDING and not halted:
            logger.debug("No active session to stop")
            return None

        if self._switch_task is not None and not self._switch_task.done():
            await self._switch_task

        self._status = TranscriptionStatus.PROCESSING
        self._cancel_telemetry()
        # Capture stops before the flush so no block lands after the tail chunk
        self.capture.stop()

        # Let chunk hand-offs queued by the capture thread run first
        await asyncio.sleep(0)

        if self._active_engine is EnginePreference.WORKER and self._accumulator:
            tail = self._accumulator.flush()
            if tail is not None:
                self._dispatch_chunk(tail)
        elif self._active_engine is EnginePreference.FALLBACK:
            self.fallback.stop_transcription()

        await self._wait_for_drain()

        result = SessionResult(
            transcript=self.transcript,
            segments=self.segments,
            wav_bytes=self.capture.create_wav_blob(),
            engine=self._active_engine or EnginePreference.WORKER,
        )
        self._status = TranscriptionStatus.COMPLETED
        self._engine_status = EngineStatus.READY
        logger.info(
            f"✅ Session completed: {len(result.segments)} segments, "
            f"{len(result.transcript)} characters"
        )
        if self.on_session_complete is not None:
            self.on_session_complete(result)
        return result

    def reset(self) -> None:
        """Return to idle from any state, discarding the session."""
        self._cancel_telemetry()
        if self._fallback is not None and self._fallback.is_active:
            self._fallback.stop_transcription()
        self.capture.reset()
        self._clear_session()
        if self._worker is not None:
            self._worker.reset(generation=self._generation)
        self._status = TranscriptionStatus.IDLE
        self._engine_status = EngineStatus.READY
        self._active_engine = None
        logger.debug("Session reset")

    def add_manual_entry(self, text: str) -> TranscriptionSegment | None:
        """
        Append typed text as a segment when recognition is unavailable.

        Returns:
            The new segment, or None if manual entry is not available
        """
        if not self._manual_entry_available or not text.strip():
            return None
        segment = self._append_text_segment(text.strip(), 1.0)
        logger.debug(f"Manual entry added as segment {segment.chunk_id}")
        return segment

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "status": self._status.value,
            "engine": self._active_engine.value if self._active_engine else None,
            "engine_status": self._engine_status.value,
            "segments": len(self._segments),
            "in_flight": sorted(self._in_flight),
            "capture": self.capture.get_debug_stats(),
        }
        if self._worker is not None:
            stats["worker"] = self._worker.get_stats()
        if self._fallback is not None:
            stats["fallback"] = self._fallback.get_engine_state()
        return stats

    async def _prepare_worker(self, can_fall_back: bool = False) -> bool:
        worker = self.worker
        worker.set_message_handler(self._on_worker_message)
        self._engine_status = EngineStatus.LOADING
        try:
            await asyncio.wrap_future(worker.initialize(self.config.model_ref))
        except ModelInitError as e:
            logger.error(f"❌ Model initialization failed: {e}")
            self._report(EngineError("model-init-failed", can_fall_back, str(e)))
            return False
        self._engine_status = EngineStatus.READY
        return True

    def _start_capture(self) -> bool:
        try:
            started = self.capture.start()
        except AudioCaptureError as e:
            code = (
                "permission-denied"
                if isinstance(e, MicrophonePermissionError)
                else "capture-failed"
            )
            logger.error(f"❌ Could not start capture: {e}")
            self._status = TranscriptionStatus.ERROR
            self._engine_status = EngineStatus.ERROR
            self._report(EngineError(code, False, str(e)))
            return False
        if not started:
            logger.warning("⚠️ Capture refused to start")
        return started

    def _start_fallback(self) -> bool:
        fallback = self.fallback
        policy = self.restart_policy
        if policy is None or policy.breaker is not fallback.breaker:
            self.restart_policy = RestartPolicy(fallback.breaker)
        fallback.restart_policy = self.restart_policy
        started = fallback.start_transcription(
            on_transcript=self._on_fallback_transcript,
            on_error=self._on_fallback_error,
            on_end=self._on_fallback_end,
        )
        self._engine_status = fallback.status
        return started

    async def _switch_to_fallback(self) -> None:
        if self._status is not TranscriptionStatus.RECORDING:
            return
        logger.warning("⚠️ Worker keeps failing, switching to native recognition")
        self._active_engine = EnginePreference.FALLBACK
        self.capture.set_accumulator(None)
        if not self._start_fallback():
            self._engine_status = EngineStatus.DEGRADED

    # Capture thread -> loop

    def _on_chunk_captured(self, chunk: AudioChunk) -> None:
        self._loop.call_soon_threadsafe(self._dispatch_chunk, chunk)

    def _dispatch_chunk(self, chunk: AudioChunk) -> None:
        if self._active_engine is not EnginePreference.WORKER:
            return
        self._in_flight.add(chunk.chunk_id)
        self._drained.clear()
        logger.trace(
            f"Dispatching chunk {chunk.chunk_id} ({chunk.sample_count} samples)"
        )
        self.worker.process_chunk(
            chunk,
            language=self.config.language,
            filter_language=self.config.language_filter,
            generation=self._generation,
        )

    # Worker thread -> loop

    def _on_worker_message(self, message: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._handle_worker_message, message)

    def _handle_worker_message(self, message: Any) -> None:
        if getattr(message, "generation", self._generation) != self._generation:
            logger.debug(
                f"Ignoring {message.type} for chunk {message.chunk_id} "
                "from a discarded session"
            )
            return
        if isinstance(message, ModelLoadingProgress):
            if self.on_model_progress is not None:
                self.on_model_progress(message.percent)
        elif isinstance(message, ChunkProcessingStart):
            self._current_chunk = message.chunk_id
            self._current_chunk_progress = 0
        elif isinstance(message, ChunkProgress):
            if message.chunk_id == self._current_chunk:
                self._current_chunk_progress = message.percent
        elif isinstance(message, ChunkProcessed):
            self._on_chunk_processed(message)
        elif isinstance(message, ChunkError):
            self._on_chunk_error(message)
        elif isinstance(message, (ModelReady, ModelError, ResetComplete)):
            logger.trace(f"Worker message: {message.type}")

    def _on_chunk_processed(self, message: ChunkProcessed) -> None:
        if message.chunk_id not in self._in_flight:
            logger.debug(f"Ignoring result for stale chunk {message.chunk_id}")
            return
        segment = message.to_segment()
        self._segments.append(segment)
        if segment.text:
            self.worker_breaker.record_success()
        if self.on_chunk_transcribed is not None:
            self.on_chunk_transcribed(segment.text, segment.chunk_id)
        self._finish_chunk(message.chunk_id)

    def _on_chunk_error(self, message: ChunkError) -> None:
        if message.chunk_id not in self._in_flight:
            return
        error = message.error
        if isinstance(error, CapacityError):
            self._report(EngineError("chunk-too-small", True, str(error)))
            self._finish_chunk(message.chunk_id)
            return

        opened = self.worker_breaker.record_error(ErrorClass.UNCLASSIFIED)
        self._report(EngineError("chunk-failed", True, str(error)))
        self._finish_chunk(message.chunk_id)

        if opened and self._status is TranscriptionStatus.RECORDING:
            if self.config.engine_preference == EnginePreference.AUTO:
                self._switch_task = asyncio.create_task(self._switch_to_fallback())
            else:
                self._engine_status = EngineStatus.DEGRADED
                self._report(
                    EngineError(
                        "circuit-breaker-open",
                        False,
                        get_error_message("circuit-breaker-open"),
                    )
                )

    def _finish_chunk(self, chunk_id: int) -> None:
        self._in_flight.discard(chunk_id)
        if chunk_id == self._current_chunk:
            self._current_chunk_progress = 100
        if not self._in_flight:
            self._drained.set()

    async def _wait_for_drain(self) -> None:
        if not self._in_flight:
            return
        logger.debug(f"Waiting for {len(self._in_flight)} chunks to finish")
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(
                f"⚠️ Gave up waiting for chunks {sorted(self._in_flight)} after "
                f"{DRAIN_TIMEOUT}s"
            )
            self._in_flight.clear()

    # Fallback engine callbacks (already on the loop)

    def _on_fallback_transcript(
        self, text: str, is_final: bool, confidence: float
    ) -> None:
        if not is_final or not text.strip():
            return
        segment = self._append_text_segment(text.strip(), confidence)
        logger.trace(f"✅ Native segment {segment.chunk_id}: '{segment.text}'")

    def _on_fallback_error(self, error: EngineError) -> None:
        if error.recoverable:
            logger.debug(f"Recoverable engine error: {error.code}")
            self._report(error)
            return

        self._engine_status = self.fallback.status
        self._manual_entry_available = True
        if self._status is TranscriptionStatus.RECORDING:
            self.capture.stop()
            self._cancel_telemetry()
            self._status = TranscriptionStatus.ERROR
        logger.error(f"❌ {error.message}")
        self._report(error)

    def _on_fallback_end(self) -> None:
        self._engine_status = self.fallback.status
        logger.debug("Native recognition ended")

    def _append_text_segment(
        self, text: str, confidence: float
    ) -> TranscriptionSegment:
        segment = TranscriptionSegment(
            chunk_id=self._next_segment_id(),
            text=text,
            confidence=confidence,
            processing_time_ms=0.0,
        )
        self._segments.append(segment)
        if self.on_chunk_transcribed is not None:
            self.on_chunk_transcribed(segment.text, segment.chunk_id)
        return segment

    def _next_segment_id(self) -> int:
        """Next id in the session-wide sequence shared by every engine."""
        used = [segment.chunk_id for segment in self._segments]
        used.extend(self._in_flight)
        if self._accumulator is not None:
            used.append(self._accumulator.next_chunk_id - 1)
        return max(used, default=0) + 1

    async def _telemetry_loop(self) -> None:
        while True:
            await asyncio.sleep(TELEMETRY_TICK_INTERVAL)
            if self.on_telemetry is not None:
                self.on_telemetry(self.telemetry)

    def _cancel_telemetry(self) -> None:
        if self._telemetry_task is not None:
            self._telemetry_task.cancel()
            self._telemetry_task = None

    def _cancel_switch(self) -> None:
        if self._switch_task is not None:
            self._switch_task.cancel()
            self._switch_task = None

    def _clear_session(self) -> None:
        self._cancel_switch()
        self._generation += 1
        self._segments = []
        self._in_flight = set()
        if self._drained is not None:
            self._drained.set()
        if self._accumulator is not None:
            self._accumulator.reset()
        self._accumulator = None
        self._started_at = None
        self._current_chunk = None
        self._current_chunk_progress = 0
        self._manual_entry_available = False
        self.worker_breaker.force_reset()

    def _report(self, error: EngineError) -> None:
        if self.on_error is not None:
            self.on_error(error)
