"""Custom exceptions for the transcription pipeline."""


class SpeechToTextError(Exception):
    """Base exception for speech-to-text errors."""

    pass


class AudioCaptureError(SpeechToTextError):
    """Exception raised for audio capture related errors."""

    pass


class MicrophoneNotFoundError(AudioCaptureError):
    """Exception raised when no microphone is found."""

    pass


class MicrophonePermissionError(AudioCaptureError, PermissionError):
    """Exception raised when access to the microphone is denied."""

    pass


class CapacityError(SpeechToTextError):
    """Exception raised when a chunk is too small to be transcribed."""

    def __init__(self, chunk_id: int, size: int, min_size: int) -> None:
        self.chunk_id = chunk_id
        self.size = size
        self.min_size = min_size
        super().__init__(
            f"Audio chunk {chunk_id} too small to process: "
            f"received {size} samples, minimum required {min_size}"
        )


class TranscriptionError(SpeechToTextError):
    """Exception raised for transcription related errors."""

    pass


class ModelInitError(TranscriptionError):
    """Exception raised when the ASR model cannot be initialized."""

    pass


class EngineFailure(SpeechToTextError):
    """Base exception for classified speech engine errors."""

    def __init__(self, code: str, message: str | None = None) -> None:
        self.code = code
        super().__init__(message or code)


class RecoverableEngineError(EngineFailure):
    """Engine error that heals itself through a restart."""

    pass


class CriticalEngineError(EngineFailure):
    """Engine error that halts the engine until a manual restart."""

    pass


class UnclassifiedEngineError(EngineFailure):
    """Engine error counted toward the circuit breaker threshold."""

    pass
