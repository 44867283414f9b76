"""LangChain compatibility for tool descriptors."""

import json
from typing import Any

from langchain_core.tools import StructuredTool, ToolException

from toolrelay.tools.base import ToolDescriptor
from toolrelay.tools.executor import ToolExecutor


def to_structured_tool(descriptor: ToolDescriptor, executor: ToolExecutor | None = None) -> StructuredTool:
    """Expose a tool descriptor as a LangChain StructuredTool.

    Calls go through a ToolExecutor so the time budget and circuit breaker
    apply. A failed outcome surfaces as the tool's error message.
    """
    executor = executor or ToolExecutor()

    async def run(**kwargs: Any) -> str:
        outcome = await executor.execute(descriptor, kwargs)
        if not outcome.ok:
            raise ToolException(outcome.error.message if outcome.error else "Tool execution failed")
        if isinstance(outcome.value, str):
            return outcome.value
        return json.dumps(outcome.value)

    return StructuredTool.from_function(
        coroutine=run,
        name=descriptor.name,
        description=descriptor.description,
        args_schema=descriptor.parameter_schema.to_json_schema(),
        handle_tool_error=True,
    )
