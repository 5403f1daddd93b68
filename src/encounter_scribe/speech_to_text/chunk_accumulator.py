"""Accumulate captured audio blocks into fixed-size inference chunks."""

import time
from collections.abc import Callable

import numpy as np

from .logging_utils import get_logger
from .models import AudioChunk

logger = get_logger(__name__)


class ChunkAccumulator:
    """
    Buffers raw samples and slices them into chunks of exactly ``chunk_size``.

    The capture callback rate is set by the hardware buffer size while the
    chunk size is set by what the model needs; this class decouples the two.
    Chunk ids start at 1 and increase by one for every emitted chunk.
    """

    def __init__(
        self,
        chunk_size: int,
        on_chunk: Callable[[AudioChunk], None],
        source_sample_rate: int | None = None,
        target_sample_rate: int | None = None,
    ) -> None:
        """
        Initialize the accumulator.

        Args:
            chunk_size: Number of samples per emitted chunk
            on_chunk: Callback invoked with every emitted AudioChunk
            source_sample_rate: Rate of incoming samples (defaults to target)
            target_sample_rate: Rate of emitted samples (defaults to source)
        """
        if chunk_size <= 0:
            raise ValueError("Chunk size must be positive")

        self.chunk_size = chunk_size
        self.source_sample_rate = source_sample_rate or target_sample_rate
        self.target_sample_rate = target_sample_rate or source_sample_rate
        self._on_chunk = on_chunk
        self._pending = np.zeros(0, dtype=np.float32)
        self._next_chunk_id = 1

    @property
    def pending_samples(self) -> int:
        """Samples buffered but not yet emitted."""
        return len(self._pending)

    @property
    def next_chunk_id(self) -> int:
        return self._next_chunk_id

    def add_data(self, samples: np.ndarray) -> int:
        """
        Append samples and emit every complete chunk now available.

        Args:
            samples: Mono float32 samples at the source sample rate

        Returns:
            Number of chunks emitted by this call
        """
        block = self._downsample(np.asarray(samples, dtype=np.float32))
        if block.size == 0:
            return 0

        self._pending = np.concatenate((self._pending, block))

        emitted = 0
        while len(self._pending) >= self.chunk_size:
            # Copy so the emitted chunk never aliases the pending buffer
            head = self._pending[: self.chunk_size].copy()
            self._pending = self._pending[self.chunk_size :].copy()
            self._emit(head)
            emitted += 1
        return emitted

    def flush(self) -> AudioChunk | None:
        """
        Emit whatever remains as a final, possibly short, chunk.

        Returns:
            The emitted chunk, or None when nothing was pending
        """
        if len(self._pending) == 0:
            return None

        remainder = self._pending
        self._pending = np.zeros(0, dtype=np.float32)
        logger.debug(f"Flushing final chunk with {len(remainder)} samples")
        return self._emit(remainder)

    def reset(self) -> None:
        """Drop pending samples and restart chunk numbering."""
        self._pending = np.zeros(0, dtype=np.float32)
        self._next_chunk_id = 1

    def _emit(self, samples: np.ndarray) -> AudioChunk:
        chunk = AudioChunk(
            samples=samples,
            chunk_id=self._next_chunk_id,
            captured_at_ms=int(time.time() * 1000),
        )
        self._next_chunk_id += 1
        logger.trace(f"Chunk {chunk.chunk_id} ready ({chunk.sample_count} samples)")
        self._on_chunk(chunk)
        return chunk

    def _downsample(self, block: np.ndarray) -> np.ndarray:
        """Nearest-sample decimation from the source to the target rate."""
        if (
            not self.source_sample_rate
            or not self.target_sample_rate
            or self.source_sample_rate == self.target_sample_rate
        ):
            return block

        ratio = self.source_sample_rate / self.target_sample_rate
        new_length = int(len(block) / ratio)
        indices = (np.arange(new_length) * ratio).astype(np.int64)
        return block[indices]
