"""Tests for the inference worker message protocol."""

import threading
import time
from typing import Any
from unittest.mock import Mock

import numpy as np
import pytest

from encounter_scribe.speech_to_text.exceptions import (
    CapacityError,
    ModelInitError,
    TranscriptionError,
)
from encounter_scribe.speech_to_text.models import AudioChunk
from encounter_scribe.speech_to_text.transcriber import InferenceOutput
from encounter_scribe.speech_to_text.worker import (
    ChunkError,
    ChunkProcessed,
    ChunkProcessingStart,
    ChunkProgress,
    InferenceWorker,
    ModelError,
    ModelLoadingProgress,
    ModelReady,
    ResetComplete,
    WorkerState,
    compute_signal_stats,
    get_inference_worker,
    shutdown_inference_worker,
)

TIMEOUT = 5.0


class FakeRuntime:
    """Stands in for WhisperRuntime without loading a model."""

    def __init__(self, text: str = "hola doctor", fail_load: bool = False) -> None:
        self.text = text
        self.fail_load = fail_load
        self.load_calls = 0
        self.infer_calls = 0
        self.load_gate = threading.Event()
        self.load_gate.set()
        self.infer_gate = threading.Event()
        self.infer_gate.set()
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def load(self, on_progress=None) -> None:
        self.load_calls += 1
        self.load_gate.wait(TIMEOUT)
        if self.fail_load:
            raise ModelInitError("weights missing")
        for percent in (0, 50, 100):
            if on_progress:
                on_progress(percent)
        self._loaded = True

    def infer(self, samples, language, task="transcribe", on_segment=None):
        self.infer_calls += 1
        self.infer_gate.wait(TIMEOUT)
        if on_segment:
            on_segment(1.0)
        return InferenceOutput(text=self.text, confidence=0.8)

    def get_model_info(self) -> dict[str, Any]:
        return {"model_ref": "fake"} if self._loaded else {}


class MessageLog:
    """Collects outbound worker messages from the worker thread."""

    def __init__(self) -> None:
        self.messages: list[Any] = []
        self._condition = threading.Condition()

    def __call__(self, message: Any) -> None:
        with self._condition:
            self.messages.append(message)
            self._condition.notify_all()

    def wait_for(self, message_type: type, count: int = 1) -> list[Any]:
        deadline = time.monotonic() + TIMEOUT
        with self._condition:
            while len(self.of_type(message_type)) < count:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise AssertionError(f"Timed out waiting for {message_type.__name__}")
                self._condition.wait(remaining)
        return self.of_type(message_type)

    def of_type(self, message_type: type) -> list[Any]:
        return [m for m in self.messages if isinstance(m, message_type)]


def _chunk(chunk_id: int = 1, samples: int = 32000) -> AudioChunk:
    return AudioChunk(
        samples=np.zeros(samples, dtype=np.float32),
        chunk_id=chunk_id,
        captured_at_ms=0,
    )


@pytest.mark.unit
class TestInferenceWorker:
    """Test cases for InferenceWorker."""

    def setup_method(self) -> None:
        self.runtime = FakeRuntime()
        self.log = MessageLog()
        self.worker = InferenceWorker(runtime=self.runtime, on_message=self.log)

    def teardown_method(self) -> None:
        self.worker.shutdown()

    def test_initialize_loads_and_reports_progress(self) -> None:
        """Test Init produces progress messages followed by ModelReady."""
        future = self.worker.initialize()

        future.result(TIMEOUT)
        self.log.wait_for(ModelReady)

        progress = [m.percent for m in self.log.of_type(ModelLoadingProgress)]
        assert progress == [0, 50, 100]
        assert self.worker.state is WorkerState.READY

    def test_concurrent_initialize_loads_once(self) -> None:
        """Test overlapping initialize calls share one model load."""
        self.runtime.load_gate.clear()

        first = self.worker.initialize()
        second = self.worker.initialize()
        assert self.worker.state is WorkerState.INITIALIZING
        self.runtime.load_gate.set()

        first.result(TIMEOUT)
        second.result(TIMEOUT)
        assert self.runtime.load_calls == 1

    def test_initialize_when_ready_is_immediate(self) -> None:
        """Test initialize after a successful load resolves without loading."""
        self.worker.initialize().result(TIMEOUT)

        future = self.worker.initialize()

        assert future.done()
        assert self.runtime.load_calls == 1
        assert len(self.log.wait_for(ModelReady, count=2)) == 2

    def test_failed_load_reports_model_error(self) -> None:
        """Test a failed load moves to FAILED and fails every waiter."""
        self.runtime.fail_load = True

        future = self.worker.initialize()

        with pytest.raises(ModelInitError, match="weights missing"):
            future.result(TIMEOUT)
        assert self.log.wait_for(ModelError)[0].message == "weights missing"
        assert self.worker.state is WorkerState.FAILED

    def test_failed_load_retried_on_request(self) -> None:
        """Test a new initialize after failure tries loading again."""
        self.runtime.fail_load = True
        with pytest.raises(ModelInitError):
            self.worker.initialize().result(TIMEOUT)

        self.runtime.fail_load = False
        self.worker.initialize().result(TIMEOUT)

        assert self.runtime.load_calls == 2
        assert self.worker.is_ready

    def test_process_chunk_message_sequence(self) -> None:
        """Test a chunk yields start, progress and a processed segment."""
        self.worker.initialize().result(TIMEOUT)

        self.worker.process_chunk(_chunk(chunk_id=3))
        processed = self.log.wait_for(ChunkProcessed)[0]

        assert self.log.of_type(ChunkProcessingStart)[0].chunk_id == 3
        percents = [m.percent for m in self.log.of_type(ChunkProgress)]
        assert percents[0] == 5
        assert percents[1] == 30
        assert percents[-1] == 100
        assert percents == sorted(percents)
        assert processed.chunk_id == 3
        assert processed.text == "hola doctor"
        assert processed.confidence == 0.8
        assert processed.warning is None
        assert processed.stats.sample_count == 32000

    def test_chunk_too_small_never_reaches_model(self) -> None:
        """Test undersized chunks produce a CapacityError without inference."""
        self.worker.initialize().result(TIMEOUT)

        self.worker.process_chunk(_chunk(chunk_id=7, samples=100))
        error = self.log.wait_for(ChunkError)[0]

        assert error.chunk_id == 7
        assert isinstance(error.error, CapacityError)
        assert error.error.size == 100
        assert error.error.min_size == 32000
        assert self.runtime.infer_calls == 0

    def test_chunk_before_model_ready(self) -> None:
        """Test processing without a loaded model reports ModelInitError."""
        self.worker.process_chunk(_chunk())

        error = self.log.wait_for(ChunkError)[0]

        assert isinstance(error.error, ModelInitError)
        assert self.runtime.infer_calls == 0

    def test_empty_text_is_a_warning_not_an_error(self) -> None:
        """Test silence produces an empty segment with a warning."""
        self.runtime.text = ""
        self.worker.initialize().result(TIMEOUT)

        self.worker.process_chunk(_chunk())
        processed = self.log.wait_for(ChunkProcessed)[0]

        assert processed.text == ""
        assert processed.confidence == 0.0
        assert processed.warning == "No text generated - possible silent audio"
        assert self.log.of_type(ChunkError) == []

    def test_language_filter_applied(self) -> None:
        """Test out-of-alphabet words are removed when filtering is on."""
        self.runtime.text = "fiebre 患者 alta"
        self.worker.initialize().result(TIMEOUT)

        self.worker.process_chunk(_chunk(chunk_id=1), language="es")
        self.worker.process_chunk(_chunk(chunk_id=2), language="es", filter_language=False)
        filtered, unfiltered = self.log.wait_for(ChunkProcessed, count=2)

        assert filtered.text == "fiebre alta"
        assert unfiltered.text == "fiebre 患者 alta"

    def test_inference_exception_becomes_chunk_error(self) -> None:
        """Test unexpected inference errors are posted, never raised."""
        self.worker.initialize().result(TIMEOUT)
        self.runtime.infer = Mock(side_effect=RuntimeError("decoder crashed"))

        self.worker.process_chunk(_chunk(chunk_id=4))
        error = self.log.wait_for(ChunkError)[0]

        assert error.chunk_id == 4
        assert isinstance(error.error, TranscriptionError)
        assert "decoder crashed" in str(error.error)

    def test_reset_clears_stats_and_keeps_model(self) -> None:
        """Test Reset clears statistics while the model stays loaded."""
        self.worker.initialize().result(TIMEOUT)
        self.worker.process_chunk(_chunk())
        self.log.wait_for(ChunkProcessed)
        assert self.worker.get_stats()["total_processed"] == 1

        self.worker.reset()
        self.log.wait_for(ResetComplete)

        assert self.worker.get_stats()["total_processed"] == 0
        assert self.worker.is_ready
        assert self.runtime.load_calls == 1

    def test_chunk_messages_echo_generation(self) -> None:
        """Test every message about a chunk carries its session generation."""
        self.worker.initialize().result(TIMEOUT)
        self.worker.process_chunk(_chunk(3), generation=7)
        self.log.wait_for(ChunkProcessed)

        chunk_messages = [
            m
            for m in self.log.messages
            if isinstance(m, (ChunkProcessingStart, ChunkProgress, ChunkProcessed))
        ]
        assert chunk_messages
        assert {m.generation for m in chunk_messages} == {7}

    def test_chunk_error_echoes_generation(self) -> None:
        """Test chunk errors carry the generation of the failed chunk."""
        self.worker.process_chunk(_chunk(1, samples=10), generation=2)

        error = self.log.wait_for(ChunkError)[0]

        assert error.generation == 2

    def test_reset_skips_queued_chunks_of_discarded_session(self) -> None:
        """Test chunks queued before a reset with a newer generation are skipped."""
        self.worker.initialize().result(TIMEOUT)
        self.runtime.infer_gate.clear()
        self.worker.process_chunk(_chunk(1), generation=0)
        self.worker.process_chunk(_chunk(2), generation=0)
        self.log.wait_for(ChunkProcessingStart)

        self.worker.reset(generation=1)
        self.worker.process_chunk(_chunk(1), generation=1)
        self.runtime.infer_gate.set()
        processed = self.log.wait_for(ChunkProcessed, count=2)

        assert [(m.chunk_id, m.generation) for m in processed] == [(1, 0), (1, 1)]
        assert self.runtime.infer_calls == 2

    def test_stats_include_model_info(self) -> None:
        """Test worker statistics expose the loaded model description."""
        assert self.worker.get_stats()["model"] == {}

        self.worker.initialize().result(TIMEOUT)

        assert self.worker.get_stats()["model"] == {"model_ref": "fake"}


@pytest.mark.unit
class TestSignalStats:
    """Test cases for compute_signal_stats."""

    def test_stats_values(self) -> None:
        """Test min, max, mean, rms and silence ratio."""
        stats = compute_signal_stats(np.array([0.0, 0.0, 0.5, -0.5], dtype=np.float32))

        assert stats.sample_count == 4
        assert stats.minimum == -0.5
        assert stats.maximum == 0.5
        assert stats.mean == 0.0
        assert stats.rms == pytest.approx(np.sqrt(0.125))
        assert stats.silence_ratio == 0.5

    def test_empty_samples(self) -> None:
        """Test empty input counts as fully silent."""
        stats = compute_signal_stats(np.zeros(0, dtype=np.float32))

        assert stats.sample_count == 0
        assert stats.silence_ratio == 1.0


@pytest.mark.unit
class TestWorkerSingleton:
    """Test cases for the process-wide worker."""

    def teardown_method(self) -> None:
        shutdown_inference_worker()

    def test_same_worker_returned(self) -> None:
        """Test get_inference_worker returns one shared instance."""
        first = get_inference_worker(runtime=FakeRuntime())
        second = get_inference_worker()

        assert first is second

    def test_shutdown_forgets_worker(self) -> None:
        """Test a new worker is created after shutdown."""
        first = get_inference_worker(runtime=FakeRuntime())
        shutdown_inference_worker()

        assert get_inference_worker(runtime=FakeRuntime()) is not first
