"""
Tests for ResilientExecutor: retry, backoff, fallback and cancellation.

asyncio.sleep is mocked so the backoff schedule can be asserted without
waiting for it.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from autonomy.errors import ExecutionFailedError
from autonomy.models.task import TaskRequest, TaskResult
from autonomy.resilience.executor import (
    MAX_PREVIOUS_OUTPUTS,
    ResilienceSettings,
    ResilientExecutor,
)
from autonomy.resilience.fallback import StringListFallbackStrategy
from autonomy.runtime.event_bus import AutonomousEventType, EventBus


class ScriptedExecutor:
    """Replays a script of results; exceptions in the script are raised."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = 0

    async def execute(self, request, on_output=None):
        self.calls += 1
        item = self.script.pop(0) if self.script else self.script_default(request)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return TaskResult(request_id=request.request_id, success=True, output=item)
        return item

    def script_default(self, request):
        return TaskResult.failure(request.request_id, "script exhausted")


def _fail(error: str = "bad") -> TaskResult:
    return TaskResult(request_id="r", success=False, error=error)


@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch):
    """Mock asyncio.sleep to avoid real delays from exponential backoff."""
    sleep = AsyncMock()
    monkeypatch.setattr("asyncio.sleep", sleep)
    return sleep


@pytest.fixture
def request_():
    return TaskRequest(prompt="do it", request_id="req_1")


# --- Settings ---


class TestResilienceSettings:
    def test_delay_schedule(self):
        settings = ResilienceSettings(initial_delay_ms=500, backoff_multiplier=2.0)
        assert settings.compute_delay(1) == 0.5
        assert settings.compute_delay(2) == 1.0
        assert settings.compute_delay(3) == 2.0

    def test_delay_capped(self):
        settings = ResilienceSettings(
            initial_delay_ms=1000, backoff_multiplier=10.0, max_delay_seconds=5.0
        )
        assert settings.compute_delay(3) == 5.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": 0},
            {"initial_delay_ms": -1},
            {"backoff_multiplier": 0.5},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            ResilienceSettings(**kwargs)


# --- Retry ---


class TestRetry:
    @pytest.mark.asyncio
    async def test_first_success_no_sleep(self, request_, fast_sleep):
        inner = ScriptedExecutor(["done"])
        executor = ResilientExecutor(inner)

        result = await executor.execute(request_)

        assert result.output == "done"
        assert inner.calls == 1
        fast_sleep.assert_not_awaited()
        assert executor.last_attempts == 1

    @pytest.mark.asyncio
    async def test_exception_then_success(self, request_, fast_sleep):
        inner = ScriptedExecutor([RuntimeError("flaky"), "recovered"])
        executor = ResilientExecutor(inner, ResilienceSettings(max_retries=3, initial_delay_ms=100))

        result = await executor.execute(request_)

        assert result.output == "recovered"
        assert inner.calls == 2
        fast_sleep.assert_awaited_once_with(0.1)

    @pytest.mark.asyncio
    async def test_blank_output_counts_as_failure(self, request_):
        inner = ScriptedExecutor(["   ", "real output"])
        executor = ResilientExecutor(inner)

        result = await executor.execute(request_)

        assert result.output == "real output"
        assert inner.calls == 2

    @pytest.mark.asyncio
    async def test_exhausted_raises_with_cause(self, request_, fast_sleep):
        boom = RuntimeError("always")
        inner = ScriptedExecutor([boom, boom, boom])
        executor = ResilientExecutor(inner, ResilienceSettings(max_retries=3, initial_delay_ms=500))

        with pytest.raises(ExecutionFailedError) as exc_info:
            await executor.execute(request_)

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_error == "always"
        assert exc_info.value.__cause__ is boom
        # Sleeps only between attempts
        assert [c.args[0] for c in fast_sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_invalid_result_exhausted_has_no_cause(self, request_):
        inner = ScriptedExecutor([_fail("nope"), _fail("nope")])
        executor = ResilientExecutor(inner, ResilienceSettings(max_retries=2))

        with pytest.raises(ExecutionFailedError) as exc_info:
            await executor.execute(request_)

        assert exc_info.value.last_error == "nope"
        assert exc_info.value.__cause__ is None

    @pytest.mark.asyncio
    async def test_cancellation_not_retried(self, request_, fast_sleep):
        inner = ScriptedExecutor([asyncio.CancelledError(), "never"])
        fallback = StringListFallbackStrategy(["substitute"])
        executor = ResilientExecutor(inner, ResilienceSettings(max_retries=3), fallback)

        with pytest.raises(asyncio.CancelledError):
            await executor.execute(request_)

        assert inner.calls == 1
        fast_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retry_events_emitted(self, request_):
        bus = EventBus()
        inner = ScriptedExecutor([_fail(), "ok"])
        executor = ResilientExecutor(
            inner, ResilienceSettings(max_retries=2), event_bus=bus, session_id="s1"
        )

        await executor.execute(request_)

        retries = bus.get_history(AutonomousEventType.RETRY_ATTEMPT)
        assert len(retries) == 1
        assert retries[0].data["attempt"] == 1
        assert retries[0].request_id == "req_1"


# --- Fallback ---


class TestFallback:
    @pytest.mark.asyncio
    async def test_fallback_used_after_retries(self, request_):
        bus = EventBus()
        inner = ScriptedExecutor([_fail(), _fail()])
        executor = ResilientExecutor(
            inner,
            ResilienceSettings(max_retries=2),
            StringListFallbackStrategy(["plan b"]),
            event_bus=bus,
            session_id="s1",
        )

        result = await executor.execute(request_)

        assert result.output == "plan b"
        assert result.metadata["fallback"] is True
        assert executor.last_used_fallback is True
        assert inner.calls == 2
        types = [e.type for e in reversed(bus.get_history())]
        assert AutonomousEventType.FALLBACK_TRIGGERED in types
        assert AutonomousEventType.FALLBACK_SUCCEEDED in types

    @pytest.mark.asyncio
    async def test_fallback_skips_previous_outputs(self, request_):
        inner = ScriptedExecutor(["alpha", _fail()])
        executor = ResilientExecutor(
            inner,
            ResilienceSettings(max_retries=1),
            StringListFallbackStrategy(["alpha", "beta"]),
        )

        await executor.execute(request_)
        result = await executor.execute(request_)

        assert result.output == "beta"

    @pytest.mark.asyncio
    async def test_exhausted_fallback_raises(self, request_):
        inner = ScriptedExecutor([_fail(), _fail()])
        executor = ResilientExecutor(
            inner,
            ResilienceSettings(max_retries=1),
            StringListFallbackStrategy(["only"]),
        )

        first = await executor.execute(request_)
        assert first.output == "only"

        with pytest.raises(ExecutionFailedError):
            await executor.execute(request_)

    @pytest.mark.asyncio
    async def test_reset_clears_memory(self, request_):
        inner = ScriptedExecutor([_fail(), _fail()])
        executor = ResilientExecutor(
            inner,
            ResilienceSettings(max_retries=1),
            StringListFallbackStrategy(["only"]),
        )

        await executor.execute(request_)
        executor.reset()
        result = await executor.execute(request_)

        assert result.output == "only"
        assert executor.previous_outputs == ("only",)

    @pytest.mark.asyncio
    async def test_output_memory_keeps_most_recent(self, request_):
        count = MAX_PREVIOUS_OUTPUTS + 10
        inner = ScriptedExecutor([f"out {i}" for i in range(count)])
        executor = ResilientExecutor(inner, ResilienceSettings(max_retries=1))

        for _ in range(count):
            await executor.execute(request_)

        assert len(executor.previous_outputs) == MAX_PREVIOUS_OUTPUTS
        assert executor.previous_outputs[0] == "out 10"
        assert executor.previous_outputs[-1] == f"out {count - 1}"
