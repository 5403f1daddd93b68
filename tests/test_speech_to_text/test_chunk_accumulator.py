"""Tests for ChunkAccumulator class."""

import numpy as np
import pytest

from encounter_scribe.speech_to_text.chunk_accumulator import ChunkAccumulator
from encounter_scribe.speech_to_text.models import AudioChunk


@pytest.mark.unit
class TestChunkAccumulator:
    """Test cases for ChunkAccumulator class."""

    def setup_method(self) -> None:
        self.chunks: list[AudioChunk] = []
        self.accumulator = ChunkAccumulator(4, on_chunk=self.chunks.append)

    def test_invalid_chunk_size(self) -> None:
        """Test a non-positive chunk size is rejected."""
        with pytest.raises(ValueError, match="Chunk size must be positive"):
            ChunkAccumulator(0, on_chunk=lambda chunk: None)

    def test_no_chunk_until_full(self) -> None:
        """Test samples are buffered until a full chunk is available."""
        emitted = self.accumulator.add_data(np.ones(3, dtype=np.float32))

        assert emitted == 0
        assert self.chunks == []
        assert self.accumulator.pending_samples == 3

    def test_exact_chunks_with_remainder(self) -> None:
        """Test 10 samples at chunk size 4 emit two chunks and keep 2."""
        samples = np.arange(10, dtype=np.float32)

        emitted = self.accumulator.add_data(samples)

        assert emitted == 2
        assert [chunk.chunk_id for chunk in self.chunks] == [1, 2]
        assert all(chunk.sample_count == 4 for chunk in self.chunks)
        np.testing.assert_array_equal(self.chunks[0].samples, [0, 1, 2, 3])
        np.testing.assert_array_equal(self.chunks[1].samples, [4, 5, 6, 7])
        assert self.accumulator.pending_samples == 2

    def test_chunks_span_multiple_blocks(self) -> None:
        """Test samples from several small blocks are joined in order."""
        for start in range(0, 12, 3):
            self.accumulator.add_data(np.arange(start, start + 3, dtype=np.float32))

        assert len(self.chunks) == 3
        joined = np.concatenate([chunk.samples for chunk in self.chunks])
        np.testing.assert_array_equal(joined, np.arange(12, dtype=np.float32))

    def test_emitted_chunk_does_not_alias_input(self) -> None:
        """Test mutating the caller's buffer leaves emitted chunks untouched."""
        block = np.ones(4, dtype=np.float32)

        self.accumulator.add_data(block)
        block[:] = 0.0

        np.testing.assert_array_equal(self.chunks[0].samples, np.ones(4))

    def test_flush_emits_short_tail(self) -> None:
        """Test flush emits the remainder even when shorter than a chunk."""
        self.accumulator.add_data(np.arange(6, dtype=np.float32))

        tail = self.accumulator.flush()

        assert tail is not None
        assert tail.chunk_id == 2
        np.testing.assert_array_equal(tail.samples, [4, 5])
        assert self.chunks[-1] is tail
        assert self.accumulator.pending_samples == 0

    def test_flush_when_empty(self) -> None:
        """Test flush emits nothing without pending samples."""
        assert self.accumulator.flush() is None
        assert self.chunks == []

    def test_reset_restarts_ids(self) -> None:
        """Test reset drops pending data and restarts numbering at 1."""
        self.accumulator.add_data(np.arange(6, dtype=np.float32))

        self.accumulator.reset()
        self.accumulator.add_data(np.arange(4, dtype=np.float32))

        assert self.accumulator.pending_samples == 0
        assert self.chunks[-1].chunk_id == 1
        assert self.accumulator.next_chunk_id == 2

    def test_empty_block_is_ignored(self) -> None:
        """Test an empty block changes nothing."""
        assert self.accumulator.add_data(np.zeros(0, dtype=np.float32)) == 0
        assert self.accumulator.pending_samples == 0

    def test_downsampling(self) -> None:
        """Test nearest-sample decimation from 48 kHz to 16 kHz."""
        chunks: list[AudioChunk] = []
        accumulator = ChunkAccumulator(
            4,
            on_chunk=chunks.append,
            source_sample_rate=48000,
            target_sample_rate=16000,
        )

        accumulator.add_data(np.arange(12, dtype=np.float32))

        assert len(chunks) == 1
        np.testing.assert_array_equal(chunks[0].samples, [0, 3, 6, 9])

    def test_same_rate_is_not_resampled(self) -> None:
        """Test matching rates pass samples through unchanged."""
        chunks: list[AudioChunk] = []
        accumulator = ChunkAccumulator(
            3, on_chunk=chunks.append, source_sample_rate=16000
        )

        accumulator.add_data(np.arange(3, dtype=np.float32))

        np.testing.assert_array_equal(chunks[0].samples, [0, 1, 2])
