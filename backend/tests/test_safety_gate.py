"""
Tests for the generation safety gate: admission, deadlines, cleanup and
emergency stop.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest

from charachat.errors import (
    GenerationTimeoutError,
    MemoryPressureError,
    PromptTooLongError,
    TooManyConcurrentError,
    UpstreamError,
)
from charachat.services.llm.client import LLMResult
from charachat.services.llm.safety import GenerationSafetyGate, prompt_length

from conftest import FakeBackend


def _gate(backend, **overrides):
    options = dict(max_concurrent=2, max_prompt_length=500, timeout_seconds=2.0, max_tokens=256)
    options.update(overrides)
    return GenerationSafetyGate(backend, **options)


class TestAdmission:
    """Test synchronous admission against the caps."""

    def setup_method(self):
        """Set up test fixtures."""
        self.backend = FakeBackend(replies=["Hi."], delay=0.2)
        self.gate = _gate(self.backend)

    @pytest.mark.asyncio
    async def test_one_over_the_cap_is_rejected(self):
        """One request over the concurrency cap should be rejected with 429."""
        results = await asyncio.gather(
            *(self.gate.safe_generate("Say hi") for _ in range(3)),
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, TooManyConcurrentError)]
        completed = [r for r in results if not isinstance(r, Exception)]
        assert len(rejected) == 1
        assert len(completed) == 2
        assert rejected[0].status_code == 429
        assert self.gate.active_count == 0
        assert self.gate.counters["rejected"] == 1
        assert self.gate.counters["completed"] == 2

    @pytest.mark.asyncio
    async def test_check_admission_sees_in_flight_requests(self):
        """check_admission() should count in-flight requests."""
        gate = _gate(self.backend, max_concurrent=1)
        task = asyncio.create_task(gate.safe_generate("Say hi"))
        await asyncio.sleep(0)

        with pytest.raises(TooManyConcurrentError):
            gate.check_admission()

        await task
        gate.check_admission()

    def test_check_admission_refuses_under_memory_pressure(self):
        """Memory over the hard limit should refuse with 503."""
        gate = _gate(self.backend, memory_hard_mb=2048)
        with patch.object(gate, "memory_rss_mb", return_value=4096.0):
            with pytest.raises(MemoryPressureError) as excinfo:
                gate.check_admission()
        assert excinfo.value.status_code == 503

    @pytest.mark.asyncio
    async def test_long_prompt_is_rejected_before_the_backend(self):
        """An over-long prompt should be rejected before the backend is called."""
        gate = _gate(self.backend, max_prompt_length=10)

        with pytest.raises(PromptTooLongError):
            await gate.safe_generate("x" * 11)

        assert self.backend.calls == []
        assert gate.active_count == 0

    @pytest.mark.asyncio
    async def test_message_lengths_are_summed(self):
        """Message lists should be measured by their summed contents."""
        gate = _gate(self.backend, max_prompt_length=10)
        messages = [
            {"role": "system", "content": "x" * 6},
            {"role": "user", "content": "y" * 6},
        ]

        with pytest.raises(PromptTooLongError):
            await gate.safe_generate(messages)

    def test_prompt_length(self):
        """prompt_length() should handle strings and missing contents."""
        assert prompt_length("abc") == 3
        assert prompt_length([{"role": "user", "content": "ab"}, {"role": "assistant", "content": None}]) == 2


class TestGuardedGeneration:
    """Test deadlines, error wrapping and streaming."""

    @pytest.mark.asyncio
    async def test_result_carries_request_metadata(self):
        """Results should carry text, request id, tokens and duration."""
        gate = _gate(FakeBackend(replies=["The shadows whisper back."]))

        result = await gate.safe_generate("Say hi", request_id="req_fixed")

        assert result.text == "The shadows whisper back."
        assert result.request_id == "req_fixed"
        assert result.tokens_used == 4
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_timeout_frees_the_slot(self):
        """A timed-out request should free its slot."""
        gate = _gate(FakeBackend(delay=0.5), timeout_seconds=0.05)

        with pytest.raises(GenerationTimeoutError) as excinfo:
            await gate.safe_generate("Say hi")

        assert excinfo.value.request_id
        assert gate.active_count == 0
        assert gate.counters["timed_out"] == 1

    @pytest.mark.asyncio
    async def test_backend_errors_are_wrapped(self):
        """Backend exceptions should be wrapped in UpstreamError."""
        gate = _gate(FakeBackend(fail=RuntimeError("connection refused")))

        with pytest.raises(UpstreamError) as excinfo:
            await gate.safe_generate("Say hi")

        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert "connection refused" in str(excinfo.value)
        assert gate.active_count == 0
        assert gate.counters["failed"] == 1

    @pytest.mark.asyncio
    async def test_missing_text_is_an_upstream_error(self):
        """A result without text should raise UpstreamError."""
        backend = AsyncMock()
        backend.generate = AsyncMock(return_value=LLMResult(text=None))
        gate = _gate(backend)

        with pytest.raises(UpstreamError):
            await gate.safe_generate("Say hi")

    @pytest.mark.asyncio
    async def test_max_tokens_is_clamped(self):
        """Requested max_tokens should be clamped to the gate limit."""
        backend = AsyncMock()
        backend.generate = AsyncMock(return_value=LLMResult(text="ok"))
        gate = _gate(backend, max_tokens=100)

        await gate.safe_generate("Say hi", max_tokens=500)

        assert backend.generate.await_args.kwargs["max_tokens"] == 100

    @pytest.mark.asyncio
    async def test_stream_forwards_chunks(self):
        """Streaming should forward every chunk to an async callback."""
        gate = _gate(FakeBackend(replies=["Hello there, traveler."], chunk_size=5))
        received = []

        async def collect(chunk):
            received.append(chunk)

        result = await gate.safe_generate_stream("Say hi", on_chunk=collect)

        assert "".join(received) == "Hello there, traveler."
        assert result.text == "Hello there, traveler."
        assert len(received) > 1
        assert gate.active_count == 0

    @pytest.mark.asyncio
    async def test_stream_accepts_plain_callbacks(self):
        """Streaming should accept a plain callback."""
        gate = _gate(FakeBackend(replies=["abcdef"], chunk_size=2))
        received = []

        await gate.safe_generate_stream("Say hi", on_chunk=received.append)

        assert received == ["ab", "cd", "ef"]

    @pytest.mark.asyncio
    async def test_stream_timeout_frees_the_slot(self):
        """A timed-out stream should free its slot."""
        gate = _gate(FakeBackend(replies=["a long reply"], delay=0.2, chunk_size=1), timeout_seconds=0.05)

        with pytest.raises(GenerationTimeoutError):
            await gate.safe_generate_stream("Say hi")

        assert gate.active_count == 0


class TestMonitoring:
    """Test psutil memory monitoring."""

    def setup_method(self):
        """Set up test fixtures."""
        self.gate = _gate(FakeBackend(), memory_notice_mb=1024, memory_soft_mb=1536, memory_hard_mb=2048)

    def test_resource_usage_shape(self):
        """get_resource_usage() should return proper structure."""
        usage = self.gate.get_resource_usage()

        assert usage["memory"]["rss_mb"] > 0
        assert usage["active_requests"] == 0
        assert usage["limits"]["max_concurrent"] == 2
        assert "system_memory" in usage

    def test_soft_limit_logs_warning(self, caplog):
        """Memory over the soft limit should log a warning."""
        with patch.object(self.gate, "memory_rss_mb", return_value=1600.0):
            with caplog.at_level(logging.WARNING):
                self.gate.check_memory()
        assert "High memory usage" in caplog.text

    def test_notice_is_logged_once(self, caplog):
        """The notice level should be logged only once."""
        with patch.object(self.gate, "memory_rss_mb", return_value=1100.0):
            with caplog.at_level(logging.WARNING):
                self.gate.check_memory()
                self.gate.check_memory()
        assert caplog.text.count("Memory usage above") == 1


class TestEmergencyStop:
    """Test the emergency stop."""

    @pytest.mark.asyncio
    async def test_clears_active_requests(self):
        """Emergency stop should clear every active request."""
        gate = _gate(FakeBackend(delay=1.0))
        task = asyncio.create_task(gate.safe_generate("Say hi", request_id="req_stuck"))
        await asyncio.sleep(0)
        assert gate.active_count == 1

        result = await gate.emergency_stop()

        assert result["stopped"] == 1
        assert result["cleared_request_ids"] == ["req_stuck"]
        assert result["stop_command_ran"] is False
        assert gate.active_count == 0

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_exit_code_one_counts_as_success(self):
        """A stop command exiting 1 should count as success."""
        gate = _gate(FakeBackend(), stop_command="exit 1")
        result = await gate.emergency_stop()
        assert result["stop_command_ran"] is True
        assert result["errors"] == []

    @pytest.mark.asyncio
    async def test_other_exit_codes_are_reported(self):
        """Other exit codes should be reported as errors."""
        gate = _gate(FakeBackend(), stop_command="exit 3")
        result = await gate.emergency_stop()
        assert len(result["errors"]) == 1
        assert "exited with 3" in result["errors"][0]
