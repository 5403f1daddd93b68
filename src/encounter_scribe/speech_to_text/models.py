"""Data models for the real-time transcription pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import numpy as np


class TranscriptionStatus(str, Enum):
    """Lifecycle of a transcription session."""

    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class EngineStatus(str, Enum):
    """Health of the active transcription engine as shown to callers."""

    LOADING = "loading"
    READY = "ready"
    LISTENING = "listening"
    DEGRADED = "degraded"
    HALTED = "halted"
    ERROR = "error"


class EnginePreference(str, Enum):
    """Which engine the orchestrator should drive."""

    WORKER = "worker"
    FALLBACK = "fallback"
    AUTO = "auto"


class CircuitState(str, Enum):
    """Circuit breaker state."""

    CLOSED = "closed"
    OPEN = "open"


class ErrorClass(str, Enum):
    """Classification applied to every engine error."""

    CRITICAL = "critical"
    RECOVERABLE = "recoverable"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class AudioChunk:
    """A fixed-size slice of float32 samples handed to inference as one unit."""

    samples: np.ndarray
    chunk_id: int
    captured_at_ms: int

    @property
    def sample_count(self) -> int:
        return len(self.samples)


@dataclass
class AudioSession:
    """One continuous recording, from start to stop or reset."""

    session_id: str
    sample_rate: int
    started_at: datetime
    is_recording: bool = True
    total_samples: int = 0
    blocks: list[np.ndarray] = field(default_factory=list)

    @property
    def duration(self) -> float:
        """Recorded duration in seconds."""
        return self.total_samples / self.sample_rate if self.sample_rate else 0.0


@dataclass
class TranscriptionSegment:
    """Transcription result for exactly one chunk."""

    chunk_id: int
    text: str
    confidence: float
    processing_time_ms: float
    warning: str | None = None


@dataclass
class EngineError:
    """An error reported by either transcription engine."""

    code: str
    recoverable: bool
    message: str


@dataclass
class CircuitBreakerState:
    """Counters and state of the circuit breaker."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_errors: int = 0
    retry_count: int = 0
    last_error_at: float | None = None
    opened_at: float | None = None
    trip_reason: ErrorClass | None = None

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN


@dataclass
class SessionTelemetry:
    """Snapshot of a recording session for UI feedback."""

    recording_time_sec: int
    audio_level: float
    engine_status: EngineStatus


@dataclass
class SignalStats:
    """Basic diagnostics computed for every chunk before inference."""

    sample_count: int
    minimum: float
    maximum: float
    mean: float
    rms: float
    silence_ratio: float


@dataclass
class SessionResult:
    """Final output of a session handed to the downstream consumer."""

    transcript: str
    segments: list[TranscriptionSegment]
    wav_bytes: bytes | None
    engine: EnginePreference
