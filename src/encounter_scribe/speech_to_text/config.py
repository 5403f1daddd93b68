"""Configuration constants for the real-time transcription pipeline."""

from dataclasses import dataclass

# Audio Configuration
DEFAULT_SAMPLE_RATE = 16000  # Hz, capture rate
MODEL_SAMPLE_RATE = 16000  # Hz, what Whisper expects
DEFAULT_BLOCK_SIZE = 4096  # frames per hardware callback
DEFAULT_CHANNELS = 1  # mono capture
DEFAULT_CHUNK_DURATION = 10.0  # seconds of audio per inference chunk
MIN_CHUNK_DURATION = 2.0  # seconds - smaller chunks are rejected
MIN_CHUNK_SAMPLES = int(MODEL_SAMPLE_RATE * MIN_CHUNK_DURATION)  # 32000

# Audio level / signal statistics
AUDIO_LEVEL_LOG_INTERVAL = 5.0  # seconds - log audio levels every 5 seconds
AUDIO_LEVEL_THRESHOLD = 0.01  # Threshold for "significant" audio activity
SILENCE_SAMPLE_THRESHOLD = 0.001  # |sample| below this counts as silent

# WAV export
WAV_HEADER_SIZE = 44  # bytes, canonical PCM header
WAV_SAMPLE_WIDTH = 2  # 16-bit
WAV_SAMPLE_MAX_VALUE = 32767  # int16 full scale, used both ways

# Model Configuration
DEFAULT_MODEL_REF = "small"
DEFAULT_DEVICE = "cpu"
DEFAULT_COMPUTE_TYPE = "int8"
DEFAULT_LANGUAGE = "es"
DEFAULT_TASK = "transcribe"
MODEL_CHUNK_LENGTH = 30  # seconds - Whisper context window hint
MODEL_NO_SPEECH_THRESHOLD = 0.3

# Confidence Rating Configuration
CONFIDENCE_LOGPROB_MIN = -2.0  # Minimum expected avg_logprob value
CONFIDENCE_LOGPROB_MAX = -0.1  # Maximum expected avg_logprob value

# Model loading progress milestones (percent)
PROGRESS_LOAD_STARTED = 0
PROGRESS_MODEL_DOWNLOADED = 50
PROGRESS_MODEL_CONSTRUCTED = 100

# Chunk progress milestones (percent)
CHUNK_PROGRESS_PREPROCESSING = 5
CHUNK_PROGRESS_TRANSCRIPTION = 30
CHUNK_PROGRESS_COMPLETE = 100

# Worker
WORKER_THREAD_NAME = "inference-worker"
WORKER_JOIN_TIMEOUT = 5.0  # seconds
EMPTY_TEXT_WARNING = "No text generated - possible silent audio"

# Circuit Breaker - fixed on purpose, not exposed as settings
MAX_CONSECUTIVE_ERRORS = 3
CIRCUIT_BREAKER_TIMEOUT = 30.0  # seconds

# Restart policy for the native speech engine
AUTO_RESTART_DELAY = 0.1  # seconds
MAX_AUTO_RESTARTS = 5

# Native speech service
NATIVE_SPEECH_LANGUAGE = "es-MX"
NATIVE_SPEECH_PHRASE_TIME_LIMIT = 10.0  # seconds
NATIVE_SPEECH_ENERGY_THRESHOLD = 300

# Orchestrator
TELEMETRY_TICK_INTERVAL = 1.0  # seconds
DRAIN_TIMEOUT = 120.0  # seconds - upper bound on waiting for in-flight chunks

# Language filter policy
LANGUAGE_FILTER_ENABLED = True


@dataclass
class TranscriptionConfig:
    """Per-session settings for the transcription pipeline."""

    sample_rate: int = DEFAULT_SAMPLE_RATE
    block_size: int = DEFAULT_BLOCK_SIZE
    chunk_duration: float = DEFAULT_CHUNK_DURATION
    language: str = DEFAULT_LANGUAGE
    model_ref: str = DEFAULT_MODEL_REF
    device: str = DEFAULT_DEVICE
    compute_type: str = DEFAULT_COMPUTE_TYPE
    engine_preference: str = "auto"
    language_filter: bool = LANGUAGE_FILTER_ENABLED
    native_language: str = NATIVE_SPEECH_LANGUAGE

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise ValueError("Sample rate must be positive")
        if self.block_size <= 0:
            raise ValueError("Block size must be positive")
        if self.chunk_duration < MIN_CHUNK_DURATION:
            raise ValueError(
                f"Chunk duration must be at least {MIN_CHUNK_DURATION} seconds"
            )
        if self.engine_preference not in ("auto", "worker", "fallback"):
            raise ValueError(f"Unknown engine preference: {self.engine_preference}")

    @property
    def chunk_size(self) -> int:
        """Number of model-rate samples per inference chunk."""
        return int(MODEL_SAMPLE_RATE * self.chunk_duration)

    @property
    def min_chunk_samples(self) -> int:
        """Smallest chunk the worker will accept, in model-rate samples."""
        return int(MODEL_SAMPLE_RATE * MIN_CHUNK_DURATION)
