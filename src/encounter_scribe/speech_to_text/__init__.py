"""Real-time speech-to-text pipeline for clinical encounters."""

from .audio_capture import CaptureEngine
from .chunk_accumulator import ChunkAccumulator
from .circuit_breaker import CircuitBreaker, classify_error
from .config import TranscriptionConfig
from .fallback_engine import FallbackSpeechEngine, RestartPolicy
from .models import (
    AudioChunk,
    EngineError,
    EnginePreference,
    SessionResult,
    SessionTelemetry,
    TranscriptionSegment,
    TranscriptionStatus,
)
from .orchestrator import TranscriptionOrchestrator
from .worker import InferenceWorker, get_inference_worker

__all__ = [
    "AudioChunk",
    "CaptureEngine",
    "ChunkAccumulator",
    "CircuitBreaker",
    "classify_error",
    "EngineError",
    "EnginePreference",
    "FallbackSpeechEngine",
    "InferenceWorker",
    "get_inference_worker",
    "RestartPolicy",
    "SessionResult",
    "SessionTelemetry",
    "TranscriptionConfig",
    "TranscriptionOrchestrator",
    "TranscriptionSegment",
    "TranscriptionStatus",
]
