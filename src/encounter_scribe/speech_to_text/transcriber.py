"""Whisper model runtime used by the inference worker."""

from __future__ import annotations

import re
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from .cache_utils import format_cache_size, get_cache_size, get_whisper_cache_dir
from .config import (
    CONFIDENCE_LOGPROB_MAX,
    CONFIDENCE_LOGPROB_MIN,
    DEFAULT_COMPUTE_TYPE,
    DEFAULT_DEVICE,
    DEFAULT_MODEL_REF,
    DEFAULT_TASK,
    MODEL_CHUNK_LENGTH,
    MODEL_NO_SPEECH_THRESHOLD,
    MODEL_SAMPLE_RATE,
    PROGRESS_LOAD_STARTED,
    PROGRESS_MODEL_CONSTRUCTED,
    PROGRESS_MODEL_DOWNLOADED,
)
from .exceptions import ModelInitError, TranscriptionError
from .logging_utils import get_logger

# Import faster_whisper at module level for proper mocking in tests
try:
    import faster_whisper  # type: ignore[import-untyped]
except ImportError:
    faster_whisper = None

logger = get_logger(__name__)


@dataclass
class InferenceOutput:
    """Raw output of one model invocation."""

    text: str
    confidence: float
    segments: list[Any] = field(default_factory=list)
    language: str | None = None


class WhisperRuntime:
    """Loads a faster-whisper model once and runs inference on float samples."""

    def __init__(
        self,
        model_ref: str = DEFAULT_MODEL_REF,
        device: str = DEFAULT_DEVICE,
        compute_type: str = DEFAULT_COMPUTE_TYPE,
    ) -> None:
        """
        Initialize the runtime without loading the model.

        Args:
            model_ref: Whisper model size, Hugging Face repo id, or local path
            device: Device to use for inference ("cpu" or "cuda")
            compute_type: Compute type for inference ("int8", "float16", etc.)
        """
        self.model_ref = model_ref
        self.device = device
        self.compute_type = compute_type
        self._model: Any | None = None

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def load(self, on_progress: Callable[[int], None] | None = None) -> None:
        """
        Download (if needed) and construct the model.

        Args:
            on_progress: Receives discrete loading percentages

        Raises:
            ModelInitError: The library is missing or the model cannot be built
        """
        if self._model is not None:
            return

        report = on_progress or (lambda _percent: None)

        if faster_whisper is None:
            raise ModelInitError("faster-whisper library not available")

        report(PROGRESS_LOAD_STARTED)
        try:
            model_path = self._resolve_model_path()
            report(PROGRESS_MODEL_DOWNLOADED)

            logger.debug(
                f"Loading Whisper '{self.model_ref}' on {self.device} ({self.compute_type})"
            )
            self._model = faster_whisper.WhisperModel(
                model_path,
                device=self.device,
                compute_type=self.compute_type,
            )
        except FileNotFoundError as e:
            raise ModelInitError(f"Whisper model files not found: {e}") from e
        except Exception as e:
            raise ModelInitError(f"Failed to load Whisper model: {e}") from e

        report(PROGRESS_MODEL_CONSTRUCTED)
        logger.debug(f"Successfully loaded Whisper model '{self.model_ref}'")

    def _resolve_model_path(self) -> str:
        """Return a local model directory, downloading into our cache if needed."""
        if Path(self.model_ref).is_dir():
            return self.model_ref

        return faster_whisper.download_model(
            self.model_ref, cache_dir=str(get_whisper_cache_dir())
        )

    def infer(
        self,
        samples: np.ndarray,
        language: str,
        task: str = DEFAULT_TASK,
        on_segment: Callable[[float], None] | None = None,
    ) -> InferenceOutput:
        """
        Transcribe float32 samples at 16 kHz.

        Args:
            samples: Mono float32 samples
            language: Whisper language code, e.g. "es"
            task: "transcribe" or "translate"
            on_segment: Receives the fraction of audio decoded so far

        Returns:
            InferenceOutput with joined text and confidence

        Raises:
            TranscriptionError: The model is not loaded
        """
        if self._model is None:
            raise TranscriptionError("Model not initialized")

        duration = len(samples) / MODEL_SAMPLE_RATE
        segments, info = self._model.transcribe(
            np.asarray(samples, dtype=np.float32),
            language=language,
            task=task,
            chunk_length=MODEL_CHUNK_LENGTH,
            no_speech_threshold=MODEL_NO_SPEECH_THRESHOLD,
        )

        # Segments are decoded lazily while iterating
        collected = []
        for segment in segments:
            collected.append(segment)
            if on_segment is not None and duration > 0:
                on_segment(min(1.0, getattr(segment, "end", 0.0) / duration))

        text = "".join(segment.text for segment in collected)
        logger.debug(
            f"📝 Whisper returned {len(collected)} segments, raw text length: {len(text)}"
        )

        return InferenceOutput(
            text=self._post_process_text(text),
            confidence=self._calculate_confidence(collected),
            segments=collected,
            language=getattr(info, "language", None),
        )

    def _calculate_confidence(self, segments: list) -> float:
        """
        Convert faster-whisper avg_logprob to normalized confidence score (0.0-1.0).

        avg_logprob typically ranges from -2.0 (low confidence) to -0.1 (high confidence)
        We normalize this to a 0.0-1.0 scale, weighting segments by duration.

        Args:
            segments: List of transcription segments from faster-whisper

        Returns:
            Confidence score between 0.0 and 1.0
        """
        if not segments:
            return 0.0

        total_duration = 0.0
        weighted_logprob = 0.0

        for segment in segments:
            if (
                hasattr(segment, "avg_logprob")
                and hasattr(segment, "start")
                and hasattr(segment, "end")
            ):
                duration = segment.end - segment.start
                total_duration += duration
                weighted_logprob += segment.avg_logprob * duration

        if total_duration == 0:
            return 0.0

        avg_logprob = weighted_logprob / total_duration

        return max(
            0.0,
            min(
                1.0,
                (avg_logprob - CONFIDENCE_LOGPROB_MIN)
                / (CONFIDENCE_LOGPROB_MAX - CONFIDENCE_LOGPROB_MIN),
            ),
        )

    def _post_process_text(self, text: str) -> str:
        """Collapse whitespace in the raw model output."""
        if not text or not isinstance(text, str):
            return ""
        return re.sub(r"\s+", " ", text).strip()

    def get_model_info(self) -> dict[str, Any]:
        """
        Get information about the current model.

        Returns:
            Dictionary containing model information, empty if not loaded
        """
        if self._model is None:
            return {}

        return {
            "model_ref": self.model_ref,
            "device": self.device,
            "compute_type": self.compute_type,
        }


def clear_model_cache() -> bool:
    """
    Remove downloaded Whisper models so they are fetched again on next use.

    Returns:
        True if cache was cleared successfully, False otherwise
    """
    whisper_cache_dir = get_whisper_cache_dir()
    if not whisper_cache_dir.exists():
        return True

    freed = format_cache_size(get_cache_size(whisper_cache_dir))
    try:
        logger.debug(f"Removing Whisper cache directory: {whisper_cache_dir}")
        shutil.rmtree(whisper_cache_dir)
        whisper_cache_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"🧹 Cleared {freed} of cached models at {whisper_cache_dir}")
        return True
    except OSError as e:
        logger.error(f"Failed to clear model cache: {e}")
        return False
