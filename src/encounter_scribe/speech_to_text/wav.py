"""16-bit PCM WAV encoding and decoding for captured sessions."""

import io
import wave

import numpy as np

from .config import DEFAULT_CHANNELS, WAV_SAMPLE_MAX_VALUE, WAV_SAMPLE_WIDTH


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """
    Convert float samples in [-1, 1] to little-endian int16.

    Values outside the range are clipped. Rounding keeps the round-trip
    error within half a quantization step.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    return np.round(clipped * WAV_SAMPLE_MAX_VALUE).astype("<i2")


def pcm16_to_float(pcm: np.ndarray) -> np.ndarray:
    """Convert int16 samples back to float32 in [-1, 1]."""
    return (np.asarray(pcm, dtype=np.float32) / WAV_SAMPLE_MAX_VALUE).astype(
        np.float32
    )


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """
    Encode mono float samples as a canonical 44-byte-header PCM WAV file.

    Args:
        samples: Float samples in [-1, 1]
        sample_rate: Sample rate in Hz written to the header

    Returns:
        WAV file bytes (44 + len(samples) * 2 bytes)
    """
    if sample_rate <= 0:
        raise ValueError("Sample rate must be positive")

    pcm = float_to_pcm16(samples)

    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav_file:
        wav_file.setnchannels(DEFAULT_CHANNELS)
        wav_file.setsampwidth(WAV_SAMPLE_WIDTH)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(pcm.tobytes())

    return buffer.getvalue()


def decode_wav(data: bytes) -> tuple[np.ndarray, int]:
    """
    Decode a mono 16-bit PCM WAV file.

    Args:
        data: WAV file bytes

    Returns:
        Tuple of (float32 samples, sample rate)
    """
    with io.BytesIO(data) as buffer:
        with wave.open(buffer, "rb") as wav_file:
            if wav_file.getsampwidth() != WAV_SAMPLE_WIDTH:
                raise ValueError("Only 16-bit PCM WAV data is supported")
            if wav_file.getnchannels() != DEFAULT_CHANNELS:
                raise ValueError("Only mono WAV data is supported")
            sample_rate = wav_file.getframerate()
            frames = wav_file.readframes(wav_file.getnframes())

    pcm = np.frombuffer(frames, dtype="<i2")
    return pcm16_to_float(pcm), sample_rate
