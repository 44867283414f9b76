"""Tool execution under a time budget, with failure isolation and a circuit breaker."""

import asyncio
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal

from toolrelay.config import ToolRelayConfig, get_config
from toolrelay.errors import ToolError, ToolOutcome
from toolrelay.tools.base import ToolDescriptor
from toolrelay.tools.builder import normalize_result
from toolrelay.utils.logging import get_logger
from toolrelay.utils.sanitize import sanitize

logger = get_logger(__name__)

BreakerState = Literal["closed", "open"]


@dataclass
class _BreakerEntry:
    failures: int = 0
    opened_at: float | None = None
    trial_in_flight: bool = False


class CircuitBreaker:
    """Per-tool consecutive failure counter.

    After ``threshold`` consecutive failures the breaker opens and calls are
    refused until ``cooldown_s`` has elapsed. The breaker then lets a single
    trial call through: success closes it, failure opens it again.
    """

    def __init__(self, threshold: int = 5, cooldown_s: float = 30.0):
        self.threshold = threshold
        self.cooldown_s = cooldown_s
        self._entries: dict[str, _BreakerEntry] = {}
        self._lock = threading.Lock()

    def state(self, name: str) -> BreakerState:
        """Report "open" while calls would be refused, "closed" otherwise."""
        with self._lock:
            entry = self._entries.get(name)
            if entry is None or entry.opened_at is None:
                return "closed"
            if entry.trial_in_flight or not self._cooled_down(entry):
                return "open"
            return "closed"

    def allow(self, name: str) -> bool:
        """Check whether a call may proceed, claiming the trial slot when half-open."""
        with self._lock:
            entry = self._entries.get(name)
            if entry is None or entry.opened_at is None:
                return True
            if entry.trial_in_flight or not self._cooled_down(entry):
                return False
            entry.trial_in_flight = True
            return True

    def record_success(self, name: str) -> None:
        with self._lock:
            self._entries.pop(name, None)

    def record_failure(self, name: str) -> None:
        with self._lock:
            entry = self._entries.setdefault(name, _BreakerEntry())
            entry.failures += 1
            if entry.trial_in_flight or entry.failures >= self.threshold:
                if entry.opened_at is None or entry.trial_in_flight:
                    logger.warning(f"Circuit breaker opened for tool {name} after {entry.failures} failures")
                entry.opened_at = time.monotonic()
                entry.trial_in_flight = False

    def release_trial(self, name: str) -> None:
        """Give back a claimed trial slot when the trial call never finished."""
        with self._lock:
            entry = self._entries.get(name)
            if entry is not None:
                entry.trial_in_flight = False

    def failure_count(self, name: str) -> int:
        with self._lock:
            entry = self._entries.get(name)
            return entry.failures if entry else 0

    def reset(self, name: str | None = None) -> None:
        """Forget the failure history of one tool, or of all tools."""
        with self._lock:
            if name is None:
                self._entries.clear()
            else:
                self._entries.pop(name, None)

    def _cooled_down(self, entry: _BreakerEntry) -> bool:
        return entry.opened_at is not None and time.monotonic() - entry.opened_at >= self.cooldown_s


class ToolExecutor:
    """Runs tool descriptors and turns every failure into a ToolOutcome."""

    def __init__(self, config: ToolRelayConfig | None = None, breaker: CircuitBreaker | None = None):
        """Initialize the executor.

        Args:
            config: Runtime configuration (defaults to the global instance)
            breaker: Circuit breaker to use; one is created from the config when
                ``use_breaker`` is set
        """
        self.config = config or get_config()
        if breaker is None and self.config.use_breaker:
            breaker = CircuitBreaker(self.config.breaker_threshold, self.config.breaker_cooldown_s)
        self.breaker = breaker

    async def execute(
        self,
        descriptor: ToolDescriptor,
        args: Mapping[str, Any],
        time_budget_ms: int | None = None,
    ) -> ToolOutcome:
        """Run a descriptor's callback within a time budget.

        Args:
            descriptor: The tool to run
            args: Raw arguments from the model
            time_budget_ms: Wall-clock budget, defaults to ``config.default_timeout_ms``

        Returns:
            The tool's outcome; capability faults are returned, never raised
        """
        budget_ms = time_budget_ms if time_budget_ms is not None else self.config.default_timeout_ms

        if self.breaker is not None and not self.breaker.allow(descriptor.name):
            logger.warning(f"Tool {descriptor.name} is unavailable, circuit breaker open")
            return ToolOutcome.failure(ToolError.unavailable(descriptor.name))

        logger.debug(f"Executing tool {descriptor.name} with budget {budget_ms}ms")
        started = time.monotonic()
        try:
            outcome = await self._run(descriptor, args, budget_ms)
        except asyncio.CancelledError:
            if self.breaker is not None:
                self.breaker.release_trial(descriptor.name)
            raise
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if outcome.ok:
            logger.debug(f"Tool {descriptor.name} succeeded in {elapsed_ms}ms")
            if self.breaker is not None:
                self.breaker.record_success(descriptor.name)
        else:
            logger.warning(f"Tool {descriptor.name} failed after {elapsed_ms}ms: {sanitize(outcome.error)}")
            if self.breaker is not None:
                self.breaker.record_failure(descriptor.name)

        return outcome

    async def execute_many(
        self,
        calls: Sequence[tuple[ToolDescriptor, Mapping[str, Any]]],
        time_budget_ms: int | None = None,
    ) -> list[ToolOutcome]:
        """Run several tool calls concurrently, at most ``max_concurrency`` at a time.

        Outcomes are returned in the order of ``calls``.
        """
        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrency))

        async def run_one(descriptor: ToolDescriptor, args: Mapping[str, Any]) -> ToolOutcome:
            async with semaphore:
                return await self.execute(descriptor, args, time_budget_ms)

        return list(await asyncio.gather(*(run_one(descriptor, args) for descriptor, args in calls)))

    def breaker_state(self, descriptor: ToolDescriptor) -> BreakerState:
        """Query the circuit breaker for a tool; "closed" when no breaker is in use."""
        if self.breaker is None:
            return "closed"
        return self.breaker.state(descriptor.name)

    async def _run(self, descriptor: ToolDescriptor, args: Mapping[str, Any], budget_ms: int) -> ToolOutcome:
        task = asyncio.ensure_future(descriptor.callback(args))
        try:
            result = await asyncio.wait_for(task, timeout=budget_ms / 1000)
        except TimeoutError:
            return ToolOutcome.failure(ToolError.timeout(budget_ms))
        except Exception as e:
            logger.error(f"Tool {descriptor.name} raised: {sanitize(str(e))}", exc_info=True)
            return ToolOutcome.failure(ToolError.exception(str(e) or type(e).__name__))

        return normalize_result(result)
