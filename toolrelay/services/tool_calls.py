"""Execution of the tool calls found in a model response."""

import json
import time
from collections.abc import AsyncIterable, Mapping, Sequence
from typing import Any

from toolrelay.config import ToolRelayConfig, get_config
from toolrelay.errors import ConversationNotFoundError, ToolError, ToolOutcome
from toolrelay.models.llm import AggregatedResponse, ToolCall, ToolResult
from toolrelay.services.aggregator import StreamAccumulator, aggregate
from toolrelay.services.conversation_store import ConversationStore, get_conversation_store
from toolrelay.services.streaming import chunk_field
from toolrelay.tools.base import ToolDescriptor
from toolrelay.tools.executor import ToolExecutor
from toolrelay.utils.logging import get_logger
from toolrelay.utils.sanitize import sanitize

logger = get_logger(__name__)


class ToolCallHandler:
    """Runs a response's tool calls against a conversation's tools and aggregates the result."""

    def __init__(
        self,
        store: ConversationStore | None = None,
        executor: ToolExecutor | None = None,
        config: ToolRelayConfig | None = None,
    ):
        """Initialize the handler.

        Args:
            store: Conversation store used to resolve tools (defaults to global instance)
            executor: Tool executor (one is built from the config by default)
            config: Runtime configuration (defaults to global instance)
        """
        self.config = config or get_config()
        self.store = store or get_conversation_store()
        self.executor = executor or ToolExecutor(self.config)

    async def process_response(
        self,
        raw: Any,
        conversation_id: str,
        max_tool_calls: int | None = None,
        time_budget_ms: int | None = None,
    ) -> AggregatedResponse:
        """Execute the tool calls in a complete model response, then aggregate it.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
        """
        self._require_conversation(conversation_id)
        started = time.monotonic()

        response = {
            "content": chunk_field(raw, "content"),
            "tool_calls": chunk_field(raw, "tool_calls"),
            "tool_results": chunk_field(raw, "tool_results"),
            "usage": chunk_field(raw, "usage"),
        }
        return await self._execute_and_aggregate(
            response, conversation_id, started, max_tool_calls, time_budget_ms
        )

    async def process_stream(
        self,
        chunks: AsyncIterable[Any],
        conversation_id: str,
        max_tool_calls: int | None = None,
        time_budget_ms: int | None = None,
    ) -> AggregatedResponse:
        """Consume a streamed model response, execute its tool calls, then aggregate it.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
        """
        self._require_conversation(conversation_id)
        started = time.monotonic()

        accumulator = StreamAccumulator()
        stream = aiter(chunks)
        try:
            async for chunk in stream:
                if not accumulator.add(chunk):
                    break
        finally:
            # Release the provider connection before tools run
            close = getattr(stream, "aclose", None)
            if close is not None:
                await close()

        return await self._execute_and_aggregate(
            accumulator.as_raw(), conversation_id, started, max_tool_calls, time_budget_ms
        )

    async def execute_tool_calls(
        self,
        conversation_id: str,
        tool_calls: Sequence[ToolCall],
        max_tool_calls: int | None = None,
        time_budget_ms: int | None = None,
    ) -> list[ToolResult]:
        """Execute tool calls concurrently, one result per call in call order.

        Calls beyond ``max_tool_calls`` and calls naming an unknown tool are
        answered with validation errors instead of being executed.
        """
        limit = max_tool_calls if max_tool_calls is not None else self.config.max_tool_calls
        if len(tool_calls) > limit:
            logger.warning(f"Response requested {len(tool_calls)} tool calls, executing the first {limit}")

        results: dict[str, ToolResult] = {}
        runnable: list[tuple[ToolCall, ToolDescriptor]] = []
        for index, call in enumerate(tool_calls):
            if index >= limit:
                error = ToolError.validation("tool_calls", f"exceeds the limit of {limit} tool calls per response")
                results[call.id] = render_result(call, ToolOutcome.failure(error))
                continue

            descriptor = self.store.find_tool(conversation_id, call.name)
            if descriptor is None:
                logger.error(f"Unknown tool requested: {call.name}")
                error = ToolError.validation("name", f"Unknown tool {call.name}")
                results[call.id] = render_result(call, ToolOutcome.failure(error))
                continue
            runnable.append((call, descriptor))

        outcomes = await self.executor.execute_many(
            [(descriptor, call.arguments) for call, descriptor in runnable], time_budget_ms
        )
        for (call, _), outcome in zip(runnable, outcomes, strict=True):
            results[call.id] = render_result(call, outcome)

        return [results[call.id] for call in tool_calls]

    async def _execute_and_aggregate(
        self,
        response: dict[str, Any],
        conversation_id: str,
        started: float,
        max_tool_calls: int | None,
        time_budget_ms: int | None,
    ) -> AggregatedResponse:
        context = {"conversation_id": conversation_id, "processing_start": started}

        # Normalizes the shapes of calls and results that came with the response
        parsed = aggregate(response, context)
        pending = parsed.pending_tool_calls
        if not pending:
            return parsed

        logger.info(f"Executing {len(pending)} tool calls for conversation {conversation_id}")
        results = await self.execute_tool_calls(conversation_id, pending, max_tool_calls, time_budget_ms)
        return aggregate({**response, "tool_results": [*parsed.tool_results, *results]}, context)

    def _require_conversation(self, conversation_id: str) -> None:
        if not self.store.exists(conversation_id):
            raise ConversationNotFoundError(conversation_id)


def render_result(call: ToolCall, outcome: ToolOutcome) -> ToolResult:
    """Render a tool outcome as a ToolResult with JSON content."""
    if outcome.ok:
        return ToolResult(tool_call_id=call.id, name=call.name, content=json.dumps(outcome.value))

    error = outcome.error or ToolError.exception("Tool execution failed")
    content: Mapping[str, Any] = {
        "error": True,
        "type": "tool_execution_error",
        "message": "Tool execution failed",
        "details": sanitize(error.model_dump(mode="json", exclude_none=True)),
    }
    return ToolResult(tool_call_id=call.id, name=call.name, content=json.dumps(content), error=True)
