"""Tests for the tool executor and circuit breaker."""

import asyncio
import time

import pytest

from toolrelay.config import ToolRelayConfig
from toolrelay.errors import ToolErrorKind, ToolOutcome
from toolrelay.models.schema import SchemaNode
from toolrelay.tools.base import ToolDescriptor, capability
from toolrelay.tools.builder import build_tool_descriptor
from toolrelay.tools.executor import CircuitBreaker, ToolExecutor


def raw_descriptor(name, callback):
    """Descriptor around a bare callback, bypassing the builder."""
    return ToolDescriptor(name=name, description=name, parameter_schema=SchemaNode(), callback=callback)


class TestToolExecutor:
    """Tests for ToolExecutor.execute."""

    @pytest.mark.asyncio
    async def test_success(self, executor, add_tool):
        """Test a successful execution."""
        outcome = await executor.execute(add_tool, {"a": 1, "b": 2})

        assert outcome == ToolOutcome.success({"result": 3})
        assert executor.breaker_state(add_tool) == "closed"

    @pytest.mark.asyncio
    async def test_timeout(self, executor, sleepy_tool):
        """Test that a slow tool is reported as a timeout with the budget used."""
        started = time.monotonic()
        outcome = await executor.execute(sleepy_tool, {"seconds": 0.5}, time_budget_ms=100)
        elapsed = time.monotonic() - started

        assert outcome.error.kind == ToolErrorKind.TIMEOUT
        assert outcome.error.budget_ms == 100
        assert elapsed < 0.4

    @pytest.mark.asyncio
    async def test_timeout_cancels_work(self, executor):
        """Test that the timed-out task is cancelled."""
        cancelled = []

        async def slow(args):
            try:
                await asyncio.sleep(1)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise
            return ToolOutcome.success(None)

        outcome = await executor.execute(raw_descriptor("slow", slow), {}, time_budget_ms=50)

        assert outcome.error.kind == ToolErrorKind.TIMEOUT
        assert cancelled == [True]

    @pytest.mark.asyncio
    async def test_default_budget(self, sleepy_tool):
        """Test that the configured default budget applies when none is given."""
        executor = ToolExecutor(ToolRelayConfig(default_timeout_ms=50))

        outcome = await executor.execute(sleepy_tool, {"seconds": 1})

        assert outcome.error.budget_ms == 50

    @pytest.mark.asyncio
    async def test_exception_becomes_outcome(self, executor, explode_tool):
        """Test that a raising handler produces an exception outcome."""
        outcome = await executor.execute(explode_tool, {})

        assert outcome.error.kind == ToolErrorKind.EXCEPTION
        assert outcome.error.message == "boom"

    @pytest.mark.asyncio
    async def test_exception_without_message(self, executor):
        """Test that an exception without a message is described by its type."""

        async def failing(args):
            raise KeyError()

        outcome = await executor.execute(raw_descriptor("failing", failing), {})

        assert outcome.error.message == "KeyError"

    @pytest.mark.asyncio
    async def test_raw_callback_result_is_normalized(self, executor):
        """Test that a callback returning a plain value is wrapped and sanitized."""

        async def plain(args):
            return {"pair": (1, 2)}

        outcome = await executor.execute(raw_descriptor("plain", plain), {})

        assert outcome.value == {"pair": [1, 2], "_sanitized": True}

    @pytest.mark.asyncio
    async def test_validation_failure_is_returned(self, executor, add_tool):
        """Test that validation failures are returned, not raised."""
        outcome = await executor.execute(add_tool, {"a": "x"})

        assert outcome.error.kind == ToolErrorKind.VALIDATION


class TestExecuteMany:
    """Tests for concurrent execution."""

    @pytest.mark.asyncio
    async def test_order_and_isolation(self, executor, add_tool, sleepy_tool, explode_tool):
        """Test that outcomes keep call order and one failure does not affect siblings."""
        outcomes = await executor.execute_many(
            [
                (sleepy_tool, {"seconds": 1}),
                (add_tool, {"a": 1}),
                (explode_tool, {}),
                (sleepy_tool, {"seconds": 0.01}),
            ],
            time_budget_ms=200,
        )

        assert outcomes[0].error.kind == ToolErrorKind.TIMEOUT
        assert outcomes[1].value == {"result": 1}
        assert outcomes[2].error.kind == ToolErrorKind.EXCEPTION
        assert outcomes[3].value == {"slept": 0.01}

    @pytest.mark.asyncio
    async def test_concurrency_limit(self):
        """Test that no more than max_concurrency tools run at once."""
        running = 0
        peak = 0

        @capability("probe", schema={})
        async def probe(params, context):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1
            return {}

        descriptor = build_tool_descriptor(probe)
        executor = ToolExecutor(ToolRelayConfig(max_concurrency=2))

        outcomes = await executor.execute_many([(descriptor, {})] * 6)

        assert all(outcome.ok for outcome in outcomes)
        assert peak == 2

    @pytest.mark.asyncio
    async def test_empty(self, executor):
        """Test that no calls give no outcomes."""
        assert await executor.execute_many([]) == []


class TestCircuitBreaker:
    """Tests for the circuit breaker."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, config):
        """Test that consecutive failures open the breaker and refuse further calls."""
        calls = []

        async def failing(args):
            calls.append(args)
            raise RuntimeError("down")

        executor = ToolExecutor(config)
        descriptor = raw_descriptor("flaky", failing)

        for _ in range(config.breaker_threshold):
            outcome = await executor.execute(descriptor, {})
            assert outcome.error.kind == ToolErrorKind.EXCEPTION

        assert executor.breaker_state(descriptor) == "open"

        outcome = await executor.execute(descriptor, {})
        assert outcome.error.kind == ToolErrorKind.UNAVAILABLE
        assert outcome.error.tool == "flaky"
        assert len(calls) == config.breaker_threshold

    @pytest.mark.asyncio
    async def test_success_resets_count(self, config):
        """Test that a success resets the consecutive failure count."""
        fail = True

        async def sometimes(args):
            if fail:
                raise RuntimeError("down")
            return ToolOutcome.success("up")

        executor = ToolExecutor(config)
        descriptor = raw_descriptor("sometimes", sometimes)

        await executor.execute(descriptor, {})
        await executor.execute(descriptor, {})
        assert executor.breaker.failure_count("sometimes") == 2

        fail = False
        await executor.execute(descriptor, {})
        assert executor.breaker.failure_count("sometimes") == 0
        assert executor.breaker_state(descriptor) == "closed"

    def test_half_open_trial(self):
        """Test that after cool-down a single trial is allowed."""
        breaker = CircuitBreaker(threshold=2, cooldown_s=0.05)
        breaker.record_failure("tool")
        breaker.record_failure("tool")
        assert breaker.state("tool") == "open"
        assert not breaker.allow("tool")

        time.sleep(0.06)
        assert breaker.state("tool") == "closed"
        assert breaker.allow("tool")
        # Only one trial at a time
        assert not breaker.allow("tool")
        assert breaker.state("tool") == "open"

    def test_failed_trial_reopens(self):
        """Test that a failed trial opens the breaker again."""
        breaker = CircuitBreaker(threshold=2, cooldown_s=0.05)
        breaker.record_failure("tool")
        breaker.record_failure("tool")
        time.sleep(0.06)

        assert breaker.allow("tool")
        breaker.record_failure("tool")

        assert breaker.state("tool") == "open"
        assert not breaker.allow("tool")

    def test_successful_trial_closes(self):
        """Test that a successful trial closes the breaker."""
        breaker = CircuitBreaker(threshold=1, cooldown_s=0.05)
        breaker.record_failure("tool")
        time.sleep(0.06)

        assert breaker.allow("tool")
        breaker.record_success("tool")

        assert breaker.state("tool") == "closed"
        assert breaker.failure_count("tool") == 0
        assert breaker.allow("tool")

    def test_tools_are_independent(self):
        """Test that failures of one tool do not affect another."""
        breaker = CircuitBreaker(threshold=1)
        breaker.record_failure("a")

        assert breaker.state("a") == "open"
        assert breaker.state("b") == "closed"

    def test_reset(self):
        """Test resetting one tool and all tools."""
        breaker = CircuitBreaker(threshold=1)
        breaker.record_failure("a")
        breaker.record_failure("b")

        breaker.reset("a")
        assert breaker.state("a") == "closed"
        assert breaker.state("b") == "open"

        breaker.reset()
        assert breaker.state("b") == "closed"

    @pytest.mark.asyncio
    async def test_cancelled_trial_releases_slot(self, config):
        """Test that cancelling the half-open trial lets a later call try again."""
        mode = ["fail"]
        started = asyncio.Event()

        async def flaky(args):
            if mode[0] == "fail":
                raise RuntimeError("down")
            if mode[0] == "hang":
                started.set()
                await asyncio.sleep(10)
            return ToolOutcome.success("up")

        executor = ToolExecutor(config, breaker=CircuitBreaker(threshold=1, cooldown_s=0))
        descriptor = raw_descriptor("flaky", flaky)
        await executor.execute(descriptor, {})

        mode[0] = "hang"
        trial = asyncio.create_task(executor.execute(descriptor, {}))
        await started.wait()
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        assert executor.breaker_state(descriptor) == "closed"

        mode[0] = "ok"
        outcome = await executor.execute(descriptor, {})
        assert outcome == ToolOutcome.success("up")
        assert executor.breaker.failure_count("flaky") == 0

    @pytest.mark.asyncio
    async def test_disabled(self, explode_tool):
        """Test that no breaker is used when disabled."""
        executor = ToolExecutor(ToolRelayConfig(use_breaker=False, breaker_threshold=1))

        await executor.execute(explode_tool, {})
        outcome = await executor.execute(explode_tool, {})

        assert executor.breaker is None
        assert outcome.error.kind == ToolErrorKind.EXCEPTION
        assert executor.breaker_state(explode_tool) == "closed"
