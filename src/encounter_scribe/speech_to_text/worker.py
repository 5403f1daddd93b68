"""Background inference worker that owns the ASR model."""

import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar

import numpy as np

from .config import (
    CHUNK_PROGRESS_COMPLETE,
    CHUNK_PROGRESS_PREPROCESSING,
    CHUNK_PROGRESS_TRANSCRIPTION,
    DEFAULT_COMPUTE_TYPE,
    DEFAULT_DEVICE,
    DEFAULT_LANGUAGE,
    DEFAULT_MODEL_REF,
    DEFAULT_TASK,
    EMPTY_TEXT_WARNING,
    MIN_CHUNK_SAMPLES,
    SILENCE_SAMPLE_THRESHOLD,
    WORKER_JOIN_TIMEOUT,
    WORKER_THREAD_NAME,
)
from .exceptions import (
    CapacityError,
    ModelInitError,
    SpeechToTextError,
    TranscriptionError,
)
from .language_filter import LanguageFilter
from .logging_utils import get_logger
from .models import AudioChunk, SignalStats, TranscriptionSegment
from .transcriber import WhisperRuntime

logger = get_logger(__name__)


# Inbound messages


@dataclass(frozen=True)
class Init:
    type: ClassVar[str] = "INIT"
    model_ref: str | None = None


@dataclass(frozen=True)
class ProcessChunk:
    type: ClassVar[str] = "PROCESS_CHUNK"
    audio_data: np.ndarray
    chunk_id: int
    language: str = DEFAULT_LANGUAGE
    task: str = DEFAULT_TASK
    filter_language: bool = True
    generation: int = 0


@dataclass(frozen=True)
class Reset:
    type: ClassVar[str] = "RESET"


# Outbound messages


@dataclass(frozen=True)
class ModelLoadingProgress:
    type: ClassVar[str] = "MODEL_LOADING_PROGRESS"
    percent: int


@dataclass(frozen=True)
class ModelReady:
    type: ClassVar[str] = "MODEL_READY"


@dataclass(frozen=True)
class ModelError:
    type: ClassVar[str] = "MODEL_ERROR"
    message: str


@dataclass(frozen=True)
class ChunkProcessingStart:
    type: ClassVar[str] = "CHUNK_PROCESSING_START"
    chunk_id: int
    generation: int = 0


@dataclass(frozen=True)
class ChunkProgress:
    type: ClassVar[str] = "CHUNK_PROGRESS"
    chunk_id: int
    percent: int
    stage: str
    generation: int = 0


@dataclass(frozen=True)
class ChunkProcessed:
    type: ClassVar[str] = "CHUNK_PROCESSED"
    chunk_id: int
    text: str
    confidence: float
    processing_time_ms: float
    warning: str | None = None
    stats: SignalStats | None = None
    generation: int = 0

    def to_segment(self) -> TranscriptionSegment:
        return TranscriptionSegment(
            chunk_id=self.chunk_id,
            text=self.text,
            confidence=self.confidence,
            processing_time_ms=self.processing_time_ms,
            warning=self.warning,
        )


@dataclass(frozen=True)
class ChunkError:
    type: ClassVar[str] = "CHUNK_ERROR"
    chunk_id: int
    error: SpeechToTextError
    generation: int = 0


@dataclass(frozen=True)
class ResetComplete:
    type: ClassVar[str] = "RESET_COMPLETE"


_SHUTDOWN = object()


class WorkerState(str, Enum):
    """Model lifecycle inside the worker."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


def compute_signal_stats(samples: np.ndarray) -> SignalStats:
    """
    Compute basic diagnostics for a chunk.

    Args:
        samples: Float32 samples

    Returns:
        SignalStats with min/max/mean/rms and the share of near-silent samples
    """
    if len(samples) == 0:
        return SignalStats(0, 0.0, 0.0, 0.0, 0.0, 1.0)

    data = np.asarray(samples, dtype=np.float64)
    return SignalStats(
        sample_count=len(data),
        minimum=float(data.min()),
        maximum=float(data.max()),
        mean=float(data.mean()),
        rms=float(np.sqrt(np.mean(np.square(data)))),
        silence_ratio=float(np.mean(np.abs(data) < SILENCE_SAMPLE_THRESHOLD)),
    )


class InferenceWorker:
    """
    Runs model inference on a dedicated thread.

    Communication is message passing only: callers post ``Init``,
    ``ProcessChunk`` and ``Reset`` messages and receive outbound messages
    through the handler. The model is built at most once per worker; callers
    that ask for initialization while a load is in flight wait on that load.
    """

    def __init__(
        self,
        runtime: WhisperRuntime | None = None,
        model_ref: str = DEFAULT_MODEL_REF,
        device: str = DEFAULT_DEVICE,
        compute_type: str = DEFAULT_COMPUTE_TYPE,
        min_chunk_samples: int = MIN_CHUNK_SAMPLES,
        on_message: Callable[[Any], None] | None = None,
    ) -> None:
        """
        Initialize the worker without starting its thread.

        Args:
            runtime: Model runtime to use; built from model_ref when omitted
            model_ref: Default model reference for Init messages
            device: Inference device for the default runtime
            compute_type: Compute type for the default runtime
            min_chunk_samples: Chunks smaller than this are rejected
            on_message: Receives every outbound message (on the worker thread)
        """
        self.model_ref = model_ref
        self.device = device
        self.compute_type = compute_type
        self.min_chunk_samples = min_chunk_samples

        self._runtime = runtime
        self._on_message = on_message
        self._inbox: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None

        self._state = WorkerState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._waiters: list[Future] = []

        self._min_generation = 0
        self._stats = {"total_processed": 0, "empty_results": 0, "total_time_ms": 0.0}

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is WorkerState.READY

    def set_message_handler(self, handler: Callable[[Any], None] | None) -> None:
        self._on_message = handler

    def start(self) -> None:
        """Start the worker thread if it is not running."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._run, name=WORKER_THREAD_NAME, daemon=True
        )
        self._thread.start()
        logger.debug("Inference worker thread started")

    def shutdown(self) -> None:
        """Stop the worker thread after it drains queued messages."""
        if self._thread is None:
            return
        self._inbox.put(_SHUTDOWN)
        self._thread.join(timeout=WORKER_JOIN_TIMEOUT)
        self._thread = None
        logger.debug("Inference worker thread stopped")

    def post(self, message: Any) -> None:
        """Queue a message for the worker thread."""
        self.start()
        self._inbox.put(message)

    def initialize(self, model_ref: str | None = None) -> Future:
        """
        Request model initialization.

        Returns:
            Future resolved when the model is ready, or failed with ModelInitError
        """
        future: Future = Future()

        with self._state_lock:
            if self._state is WorkerState.READY:
                future.set_result(None)
                ready = True
            else:
                ready = False
                self._waiters.append(future)
                if self._state is WorkerState.INITIALIZING:
                    logger.debug("Waiting for existing model initialization")
                    return future
                self._state = WorkerState.INITIALIZING

        if ready:
            logger.debug("Model already initialized, skipping load")
            self._emit(ModelReady())
            return future

        self.post(Init(model_ref=model_ref or self.model_ref))
        return future

    def process_chunk(
        self,
        chunk: AudioChunk,
        language: str = DEFAULT_LANGUAGE,
        filter_language: bool = True,
        generation: int = 0,
    ) -> None:
        """
        Hand a chunk over to the worker thread.

        The generation is echoed on every message about this chunk so the
        caller can drop results that belong to a discarded session.
        """
        self.post(
            ProcessChunk(
                audio_data=chunk.samples,
                chunk_id=chunk.chunk_id,
                language=language,
                filter_language=filter_language,
                generation=generation,
            )
        )

    def reset(self, generation: int | None = None) -> None:
        """
        Clear worker statistics; the model stays loaded.

        Args:
            generation: Chunks tagged with an older generation that are still
                queued are skipped instead of transcribed
        """
        if generation is not None:
            self._min_generation = max(self._min_generation, generation)
        self.post(Reset())

    def get_stats(self) -> dict[str, Any]:
        processed = self._stats["total_processed"]
        return {
            "state": self._state.value,
            "model": self._runtime.get_model_info() if self._runtime else {},
            "total_processed": processed,
            "empty_results": self._stats["empty_results"],
            "average_processing_time_ms": (
                self._stats["total_time_ms"] / processed if processed else 0.0
            ),
        }

    def _run(self) -> None:
        while True:
            message = self._inbox.get()
            if message is _SHUTDOWN:
                break
            try:
                self._handle(message)
            except Exception as e:
                logger.error(f"❌ Unhandled error in inference worker: {e}")

    def _handle(self, message: Any) -> None:
        if isinstance(message, Init):
            self._initialize_model(message)
        elif isinstance(message, ProcessChunk):
            self._process_chunk(message)
        elif isinstance(message, Reset):
            self._reset()
        else:
            logger.warning(f"⚠️ Unknown worker message: {message!r}")

    def _emit(self, message: Any) -> None:
        if self._on_message is None:
            return
        try:
            self._on_message(message)
        except Exception as e:
            logger.error(f"Error in worker message handler: {e}")

    def _initialize_model(self, message: Init) -> None:
        logger.debug(f"Starting model initialization ({message.model_ref})")
        try:
            if self._runtime is None:
                self._runtime = WhisperRuntime(
                    model_ref=message.model_ref or self.model_ref,
                    device=self.device,
                    compute_type=self.compute_type,
                )
            self._runtime.load(
                on_progress=lambda percent: self._emit(ModelLoadingProgress(percent))
            )
        except Exception as e:
            error = e if isinstance(e, ModelInitError) else ModelInitError(str(e))
            logger.error(f"❌ Failed to initialize model: {error}")
            with self._state_lock:
                self._state = WorkerState.FAILED
                waiters, self._waiters = self._waiters, []
            self._emit(ModelError(message=str(error)))
            for waiter in waiters:
                waiter.set_exception(error)
            return

        with self._state_lock:
            self._state = WorkerState.READY
            waiters, self._waiters = self._waiters, []
        logger.info("✅ Transcription model ready")
        self._emit(ModelReady())
        for waiter in waiters:
            waiter.set_result(None)

    def _process_chunk(self, message: ProcessChunk) -> None:
        chunk_id = message.chunk_id
        audio = message.audio_data
        generation = message.generation

        if generation < self._min_generation:
            logger.debug(f"Skipping chunk {chunk_id} from discarded session")
            return

        try:
            size = 0 if audio is None else len(audio)
            if size < self.min_chunk_samples:
                raise CapacityError(chunk_id, size, self.min_chunk_samples)

            if self._state is not WorkerState.READY or self._runtime is None:
                raise ModelInitError("Model not initialized")

            logger.debug(f"🎤 Processing chunk {chunk_id}: {size} samples")
            self._emit(ChunkProcessingStart(chunk_id=chunk_id, generation=generation))
            self._emit(
                ChunkProgress(
                    chunk_id, CHUNK_PROGRESS_PREPROCESSING, "preprocessing", generation
                )
            )

            stats = compute_signal_stats(audio)
            logger.debug(
                f"Chunk {chunk_id} stats: min={stats.minimum:.4f} "
                f"max={stats.maximum:.4f} mean={stats.mean:.5f} "
                f"silence={stats.silence_ratio:.1%}"
            )

            self._emit(
                ChunkProgress(
                    chunk_id, CHUNK_PROGRESS_TRANSCRIPTION, "transcription", generation
                )
            )
            span = CHUNK_PROGRESS_COMPLETE - CHUNK_PROGRESS_TRANSCRIPTION

            started = time.perf_counter()
            output = self._runtime.infer(
                audio,
                language=message.language,
                task=message.task,
                on_segment=lambda fraction: self._emit(
                    ChunkProgress(
                        chunk_id,
                        CHUNK_PROGRESS_TRANSCRIPTION + int(fraction * span * 0.9),
                        "transcription",
                        generation,
                    )
                ),
            )
            text = LanguageFilter(
                message.language, enabled=message.filter_language
            ).apply(output.text)
            processing_time_ms = (time.perf_counter() - started) * 1000

            self._emit(
                ChunkProgress(chunk_id, CHUNK_PROGRESS_COMPLETE, "complete", generation)
            )

            warning = None
            if not text:
                warning = EMPTY_TEXT_WARNING
                self._stats["empty_results"] += 1
                logger.debug(f"🔇 Chunk {chunk_id} produced no text")
            else:
                logger.trace(f"✅ Chunk {chunk_id} transcription: '{text}'")

            self._stats["total_processed"] += 1
            self._stats["total_time_ms"] += processing_time_ms

            self._emit(
                ChunkProcessed(
                    chunk_id=chunk_id,
                    text=text,
                    confidence=output.confidence if text else 0.0,
                    processing_time_ms=processing_time_ms,
                    warning=warning,
                    stats=stats,
                    generation=generation,
                )
            )

        except CapacityError as e:
            logger.warning(f"⚠️ {e}")
            self._emit(ChunkError(chunk_id=chunk_id, error=e, generation=generation))
        except SpeechToTextError as e:
            logger.error(f"❌ Error processing chunk {chunk_id}: {e}")
            self._emit(ChunkError(chunk_id=chunk_id, error=e, generation=generation))
        except Exception as e:
            logger.error(f"❌ Error processing chunk {chunk_id}: {e}")
            self._emit(
                ChunkError(
                    chunk_id=chunk_id,
                    error=TranscriptionError(str(e)),
                    generation=generation,
                )
            )

    def _reset(self) -> None:
        logger.debug("Resetting worker state")
        self._stats = {"total_processed": 0, "empty_results": 0, "total_time_ms": 0.0}
        self._emit(ResetComplete())


_global_worker: InferenceWorker | None = None


def get_inference_worker(**kwargs: Any) -> InferenceWorker:
    """Get the process-wide inference worker, creating it on first use."""
    global _global_worker
    if _global_worker is None:
        _global_worker = InferenceWorker(**kwargs)
    return _global_worker


def shutdown_inference_worker() -> None:
    """Stop and forget the process-wide inference worker."""
    global _global_worker
    if _global_worker is not None:
        _global_worker.shutdown()
        _global_worker = None
