"""Microphone capture with a session buffer and WAV export."""

import time
import uuid
from datetime import datetime
from typing import Any

import numpy as np
import pyaudio

from .chunk_accumulator import ChunkAccumulator
from .config import (
    AUDIO_LEVEL_LOG_INTERVAL,
    AUDIO_LEVEL_THRESHOLD,
    DEFAULT_BLOCK_SIZE,
    DEFAULT_CHANNELS,
    DEFAULT_SAMPLE_RATE,
)
from .exceptions import (
    AudioCaptureError,
    MicrophoneNotFoundError,
    MicrophonePermissionError,
)
from .logging_utils import get_logger
from .models import AudioSession
from .wav import encode_wav

logger = get_logger(__name__)


class CaptureEngine:
    """Owns the microphone stream and the audio of the current session."""

    def __init__(
        self,
        accumulator: ChunkAccumulator | None = None,
        sample_rate: int | None = None,
        block_size: int | None = None,
    ) -> None:
        """
        Initialize the capture engine.

        Args:
            accumulator: Receives a copy of every captured block
            sample_rate: Session sample rate in Hz
            block_size: Frames per hardware callback
        """
        self.sample_rate = sample_rate if sample_rate is not None else DEFAULT_SAMPLE_RATE
        self.block_size = block_size if block_size is not None else DEFAULT_BLOCK_SIZE

        if self.sample_rate <= 0:
            raise ValueError("Sample rate must be positive")
        if self.block_size <= 0:
            raise ValueError("Block size must be positive")

        self._accumulator = accumulator
        self._pyaudio = None
        self._stream = None
        self._session: AudioSession | None = None
        self._audio_level = 0.0

        # Debug tracking
        self._blocks_received = 0
        self._overflow_count = 0
        self._last_audio_level_log = 0.0

    @property
    def audio_level(self) -> float:
        """RMS level of the most recent block, between 0.0 and 1.0."""
        return self._audio_level

    @property
    def session(self) -> AudioSession | None:
        return self._session

    def set_accumulator(self, accumulator: ChunkAccumulator | None) -> None:
        self._accumulator = accumulator

    def is_recording(self) -> bool:
        return self._session is not None and self._session.is_recording

    def start(self) -> bool:
        """
        Acquire the microphone and start streaming into a new session.

        Returns:
            True if a new session started, False if already recording

        Raises:
            MicrophoneNotFoundError: No input device is available
            MicrophonePermissionError: Access to the microphone was denied
            AudioCaptureError: The stream could not be opened
        """
        if self.is_recording():
            logger.warning("⚠️ Capture already running, refusing to start again")
            return False

        try:
            self._pyaudio = pyaudio.PyAudio()

            try:
                device_info = self._pyaudio.get_default_input_device_info()
                device_name = (
                    device_info.get("name", "Unknown")
                    if hasattr(device_info, "get")
                    else str(device_info)
                )
                logger.debug(f"🎤 Default input device found: {device_name}")
            except OSError as e:
                logger.error("❌ No default input device found")
                raise MicrophoneNotFoundError("No microphone found") from e

            self._session = AudioSession(
                session_id=uuid.uuid4().hex,
                sample_rate=self.sample_rate,
                started_at=datetime.now(),
            )
            self._blocks_received = 0
            self._overflow_count = 0
            self._last_audio_level_log = time.time()

            try:
                self._stream = self._pyaudio.open(
                    format=pyaudio.paFloat32,
                    channels=DEFAULT_CHANNELS,
                    rate=self.sample_rate,
                    input=True,
                    frames_per_buffer=self.block_size,
                    stream_callback=self._stream_callback,
                )
                self._stream.start_stream()
            except OSError as e:
                if "Permission denied" in str(e):
                    logger.error("❌ Microphone permission denied")
                    raise MicrophonePermissionError("Permission denied") from e
                logger.error(f"❌ Failed to open audio stream: {e}")
                raise AudioCaptureError(f"Failed to open audio stream: {e}") from e

            logger.debug(
                f"✅ Capture started (session: {self._session.session_id}, "
                f"sample_rate: {self.sample_rate}, block_size: {self.block_size})"
            )
            return True

        except Exception:
            self._session = None
            self._release_stream()
            raise

    def stop(self) -> None:
        """Release the stream and freeze the session buffer."""
        if not self.is_recording():
            return

        # Mark first so blocks still in flight are ignored
        self._session.is_recording = False
        self._release_stream()
        self._audio_level = 0.0

        logger.debug(
            f"🛑 Capture stopped after {self._session.duration:.1f}s "
            f"({self._blocks_received} blocks, {self._overflow_count} overflows)"
        )

    def reset(self) -> None:
        """Discard all buffered audio and zero telemetry."""
        self.stop()
        self._session = None
        self._audio_level = 0.0
        self._blocks_received = 0
        self._overflow_count = 0

    def get_audio_data(self) -> np.ndarray | None:
        """
        Get the complete recording of the current session.

        Returns:
            Concatenated float32 samples, or None if nothing was recorded
        """
        if self._session is None or not self._session.blocks:
            return None
        return np.concatenate(self._session.blocks)

    def create_wav_blob(self) -> bytes | None:
        """
        Encode the complete recording as 16-bit PCM WAV.

        Returns:
            WAV bytes, or None if nothing was recorded
        """
        audio = self.get_audio_data()
        if audio is None:
            return None
        return encode_wav(audio, self.sample_rate)

    def process_block(self, block: np.ndarray) -> None:
        """
        Handle one captured block: copy, forward, level, retain.

        Runs on the audio thread, so it never blocks.
        """
        if not self.is_recording():
            return

        # The platform may reuse its buffer, keep our own copy
        samples = np.array(block, dtype=np.float32, copy=True)
        if samples.size == 0:
            return

        self._session.blocks.append(samples)
        self._session.total_samples += len(samples)
        self._blocks_received += 1

        if self._accumulator is not None:
            self._accumulator.add_data(samples)

        self._audio_level = self._calculate_audio_level(samples)
        self._log_audio_level()

    def _stream_callback(
        self, in_data: bytes, frame_count: int, time_info: Any, status_flags: int
    ) -> tuple[None, int]:
        """PyAudio callback, invoked on the PortAudio thread."""
        if status_flags & pyaudio.paInputOverflow:
            self._overflow_count += 1
            logger.trace("Input overflow reported by audio device")

        if not self.is_recording():
            return None, pyaudio.paComplete

        self.process_block(np.frombuffer(in_data, dtype=np.float32))
        return None, pyaudio.paContinue

    def _release_stream(self) -> None:
        if self._stream:
            try:
                self._stream.stop_stream()
                self._stream.close()
            except OSError as e:
                logger.warning(f"⚠️ Error closing audio stream: {e}")
            self._stream = None

        if self._pyaudio:
            self._pyaudio.terminate()
            self._pyaudio = None

    def _log_audio_level(self) -> None:
        current_time = time.time()
        if current_time - self._last_audio_level_log >= AUDIO_LEVEL_LOG_INTERVAL:
            logger.trace(
                f"🔊 Blocks: {self._blocks_received}, "
                f"current level: {self._audio_level:.3f}"
            )
            self._last_audio_level_log = current_time

        if self._audio_level > AUDIO_LEVEL_THRESHOLD:
            logger.trace(f"🎵 Audio activity detected: level={self._audio_level:.3f}")

    def _calculate_audio_level(self, samples: np.ndarray) -> float:
        """
        Calculate the RMS level of float samples.

        Args:
            samples: Float32 samples in [-1, 1]

        Returns:
            Audio level as a float between 0.0 and 1.0
        """
        if len(samples) == 0:
            return 0.0
        rms = float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))
        return min(rms, 1.0)

    def get_debug_stats(self) -> dict[str, Any]:
        """
        Get debug statistics about audio capture.

        Returns:
            Dictionary with debug information
        """
        return {
            "recording": self.is_recording(),
            "sample_rate": self.sample_rate,
            "block_size": self.block_size,
            "blocks_received": self._blocks_received,
            "overflows": self._overflow_count,
            "total_samples": self._session.total_samples if self._session else 0,
            "stream_active": self._stream.is_active() if self._stream else False,
            "pyaudio_initialized": self._pyaudio is not None,
        }
