"""Aggregation of model responses, streamed or complete, into one AggregatedResponse.

The aggregated response follows a consistent structure::

    AggregatedResponse(
        content="Final response content",
        tool_calls=[ToolCall(id="call_1", name="weather", arguments={...})],
        tool_results=[ToolResult(tool_call_id="call_1", name="weather", content="...")],
        usage=Usage(prompt_tokens=50, completion_tokens=25, total_tokens=75),
        conversation_id="...",
        finished=True,
        metadata=ResponseMetadata(processing_time_ms=1250, tools_executed=1, ...),
    )

A response is finished once every tool call has a result with a matching
``tool_call_id``. Failed tool results are kept as data; a redacted copy of
each goes into ``metadata.tool_errors``.
"""

import json
import time
from collections.abc import AsyncIterable, Iterable, Mapping
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ValidationError

from toolrelay.models.llm import (
    AggregatedResponse,
    ResponseMetadata,
    ResponseMetrics,
    ResponseType,
    TextBlock,
    ToolCall,
    ToolResult,
    Usage,
)
from toolrelay.services.streaming import chunk_field, continue_stream
from toolrelay.utils.logging import get_logger
from toolrelay.utils.sanitize import sanitize

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

FALLBACK_CONTENT = "I don't have any response to provide."
TOOLS_FAILED_CONTENT = (
    "I attempted to use tools to help with your request, but encountered errors. Please try again."
)

FormatStyle = Literal["integrated", "appended", "separate"]

# Fields checked, in order, when picking the headline of a structured tool result
_PRIORITY_KEYS = ("result", "answer", "value", "message", "summary", "description")
_ATTRIBUTION_PHRASES = ("based on", "according to", "the result")


def aggregate(raw: Any, context: Mapping[str, Any] | None = None) -> AggregatedResponse:
    """Normalize a complete model response.

    Args:
        raw: Mapping or object with ``content``, ``tool_calls``, ``tool_results``
            and ``usage``; any of them may be missing
        context: Optional ``conversation_id`` and ``processing_start``
            (a ``time.monotonic()`` reading)

    Returns:
        The aggregated response
    """
    context = context or {}
    started = context.get("processing_start", time.monotonic())

    base_content = extract_content(chunk_field(raw, "content"))
    tool_calls = _unique_by_id(_parse_items(chunk_field(raw, "tool_calls"), ToolCall), "id")
    tool_results = _unique_by_id(_parse_items(chunk_field(raw, "tool_results"), ToolResult), "tool_call_id")
    usage = _parse_usage(chunk_field(raw, "usage"))

    tool_errors = [sanitize(result.model_dump()) for result in tool_results if result.error]
    answered = {result.tool_call_id for result in tool_results}

    return AggregatedResponse(
        content=_final_content(base_content, tool_results),
        tool_calls=tool_calls,
        tool_results=tool_results,
        usage=usage,
        finished=all(call.id in answered for call in tool_calls),
        conversation_id=context.get("conversation_id"),
        metadata=ResponseMetadata(
            processing_time_ms=max(0, int((time.monotonic() - started) * 1000)),
            tools_executed=len(tool_results),
            has_tool_calls=bool(tool_calls),
            response_type=_response_type(base_content, tool_results),
            tool_errors=tool_errors or None,
        ),
    )


def aggregate_stream(chunks: Iterable[Any], context: Mapping[str, Any] | None = None) -> AggregatedResponse:
    """Merge a sequence of streamed chunks into one response.

    Content is concatenated in arrival order, usage is summed and tool calls
    and results repeated across chunks are kept once (first occurrence wins).
    Empty or malformed chunks are skipped. Consumption stops after the chunk
    that terminates the stream.
    """
    context = dict(context or {})
    context.setdefault("processing_start", time.monotonic())

    accumulator = StreamAccumulator()
    for chunk in chunks:
        if not accumulator.add(chunk):
            break
    return accumulator.result(context)


async def aggregate_async_stream(
    chunks: AsyncIterable[Any], context: Mapping[str, Any] | None = None
) -> AggregatedResponse:
    """Async counterpart of :func:`aggregate_stream`."""
    context = dict(context or {})
    context.setdefault("processing_start", time.monotonic())

    accumulator = StreamAccumulator()
    async for chunk in chunks:
        if not accumulator.add(chunk):
            break
    return accumulator.result(context)


class StreamAccumulator:
    """Running state while a stream is consumed."""

    def __init__(self) -> None:
        self.parts: list[str] = []
        self.tool_calls: dict[str, ToolCall] = {}
        self.tool_results: dict[str, ToolResult] = {}
        self.usage = Usage()
        self.chunks_seen = 0
        self.chunks_skipped = 0

    def add(self, chunk: Any) -> bool:
        """Fold one chunk into the running state.

        Returns:
            False once the chunk terminates the stream
        """
        if chunk is None or (isinstance(chunk, Mapping) and not chunk):
            return True
        if not isinstance(chunk, (Mapping, BaseModel)) and not hasattr(chunk, "content"):
            self._skip(chunk, "not a chunk")
            return True

        try:
            text = extract_content(chunk_field(chunk, "content"))
            calls = _parse_items(chunk_field(chunk, "tool_calls"), ToolCall)
            results = _parse_items(chunk_field(chunk, "tool_results"), ToolResult)
            usage = _parse_usage(chunk_field(chunk, "usage"))
        except (TypeError, ValueError) as e:
            self._skip(chunk, str(e))
            return True

        self.chunks_seen += 1
        self.parts.append(text)
        for call in calls:
            self.tool_calls.setdefault(call.id, call)
        for result in results:
            self.tool_results.setdefault(result.tool_call_id, result)
        self.usage = self.usage + usage

        return continue_stream(chunk)

    def as_raw(self) -> dict[str, Any]:
        """The merged stream as a single raw response."""
        return {
            "content": "".join(self.parts),
            "tool_calls": list(self.tool_calls.values()),
            "tool_results": list(self.tool_results.values()),
            "usage": self.usage,
        }

    def result(self, context: Mapping[str, Any] | None = None) -> AggregatedResponse:
        logger.debug(f"Aggregating {self.chunks_seen} stream chunks ({self.chunks_skipped} skipped)")
        return aggregate(self.as_raw(), context)

    def _skip(self, chunk: Any, reason: str) -> None:
        self.chunks_skipped += 1
        logger.warning(f"Skipping malformed stream chunk ({reason}): {str(chunk)[:100]}")


def extract_content(content: Any) -> str:
    """Flatten response content to text, keeping only text parts.

    Raises:
        TypeError: If ``content`` is a mapping or another non-text container
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, (list, tuple)):
        return "".join(_part_text(part) for part in content)
    if isinstance(content, (int, float)):
        return str(content)
    raise TypeError(f"Unsupported content payload: {type(content).__name__}")


def extract_metrics(response: AggregatedResponse) -> ResponseMetrics:
    """Extract analytics from an aggregated response."""
    executed = len(response.tool_results)
    failed = sum(1 for result in response.tool_results if result.error)
    successful = executed - failed

    return ResponseMetrics(
        processing_time_ms=response.metadata.processing_time_ms,
        total_tokens=response.usage.total_tokens,
        prompt_tokens=response.usage.prompt_tokens,
        completion_tokens=response.usage.completion_tokens,
        tools_executed=executed,
        tools_successful=successful,
        tools_failed=failed,
        tool_success_rate=success_rate(successful, executed),
        conversation_id=response.conversation_id,
        finished=response.finished,
    )


def success_rate(successful: int, executed: int) -> float:
    """Percentage of successful tool executions, rounded to one decimal."""
    if executed <= 0:
        return 0.0
    return round(successful / executed * 100, 1)


def format_for_user(
    response: AggregatedResponse, style: FormatStyle = "integrated", include_metadata: bool = False
) -> str:
    """Render a response for display.

    Args:
        response: The aggregated response
        style: ``integrated`` narrates successful tool results after the content,
            ``appended`` adds a labelled tool results block, ``separate`` shows
            the content alone
        include_metadata: Append a processing time, token and tool count footer

    Returns:
        The formatted text
    """
    successful = [result for result in response.tool_results if not result.error]

    match style:
        case "integrated":
            formatted = _integrate_results(response.content, successful)
        case "appended":
            formatted = _append_results(response.content, successful)
        case "separate":
            formatted = response.content
        case _:
            raise ValueError(f"Unknown format style: {style}")

    if include_metadata:
        formatted += (
            "\n\n---\nResponse Metadata:\n"
            f"Processing time: {response.metadata.processing_time_ms}ms\n"
            f"Tokens used: {response.usage.total_tokens}\n"
            f"Tools executed: {response.metadata.tools_executed}"
        )
    return formatted


def _final_content(base_content: str, tool_results: list[ToolResult]) -> str:
    content = base_content.strip()
    if content:
        return content
    if not tool_results:
        return FALLBACK_CONTENT

    successful = [result for result in tool_results if not result.error]
    if not successful:
        return TOOLS_FAILED_CONTENT
    return "Here are the results:\n\n" + "\n\n".join(_describe_result(result) for result in successful)


def _response_type(base_content: str, tool_results: list[ToolResult]) -> ResponseType:
    has_content = bool(base_content.strip())
    match has_content, bool(tool_results):
        case True, True:
            return "content_with_tools"
        case True, False:
            return "content_only"
        case False, True:
            return "tools_only"
    return "empty"


def _integrate_results(content: str, results: list[ToolResult]) -> str:
    if not results:
        return content
    if len(results) == 1:
        if any(phrase in content.lower() for phrase in _ATTRIBUTION_PHRASES):
            return content
        return f"{content}\n\nBased on the tool result: {_headline(results[0])}"

    summary = "; ".join(_headline(result) for result in results)
    return f"{content}\n\nBased on the tool results: {summary}"


def _append_results(content: str, results: list[ToolResult]) -> str:
    if not results:
        return content
    return content + "\n\n---\n\nTool Results:\n" + "\n".join(_describe_result(result) for result in results)


def _describe_result(result: ToolResult) -> str:
    name = result.name or "Tool"
    parsed = _decode(result.content)
    if isinstance(parsed, dict):
        fields = "\n".join(f"  {key}: {value!r}" for key, value in parsed.items())
        return f"{name} results:\n{fields}"
    if parsed is not None:
        return f"{name}: {parsed!r}"
    return f"{name}: {result.content}"


def _headline(result: ToolResult) -> str:
    parsed = _decode(result.content)
    if isinstance(parsed, dict):
        key = next((key for key in _PRIORITY_KEYS if key in parsed), None)
        return str(parsed[key]) if key is not None else repr(parsed)
    if parsed is not None:
        return str(parsed)
    return result.content


def _decode(content: str) -> Any:
    try:
        return json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return None


def _part_text(part: Any) -> str:
    if isinstance(part, str):
        return part
    if isinstance(part, TextBlock):
        return part.text
    if chunk_field(part, "type") == "text":
        text = chunk_field(part, "text")
        return text if isinstance(text, str) else ""
    return ""


def _parse_items(items: Any, model: type[M]) -> list[M]:
    if items is None:
        return []
    if isinstance(items, (str, bytes, Mapping)) or not isinstance(items, Iterable):
        raise TypeError(f"Expected a list of {model.__name__}, got {type(items).__name__}")

    parsed: list[M] = []
    for item in items:
        if isinstance(item, model):
            parsed.append(item)
            continue
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Dropping malformed {model.__name__}: {e.errors()[0].get('msg')}")
    return parsed


def _parse_usage(raw: Any) -> Usage:
    try:
        return Usage.from_raw(raw)
    except ValidationError as e:
        raise ValueError(f"Malformed usage: {e.errors()[0].get('msg')}") from e


def _unique_by_id(items: list[M], key: str) -> list[M]:
    seen: set[str] = set()
    unique: list[M] = []
    for item in items:
        identifier = getattr(item, key)
        if identifier not in seen:
            seen.add(identifier)
            unique.append(item)
    return unique
