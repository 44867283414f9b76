"""Provider-agnostic data models for model output, tool calls and aggregated responses."""

import json
from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from toolrelay.utils.logging import get_logger

logger = get_logger(__name__)

ResponseType = Literal["content_only", "tools_only", "content_with_tools", "empty"]


class TextBlock(BaseModel):
    """Text content part."""

    model_config = {"extra": "ignore"}

    type: Literal["text"] = "text"
    text: str


class ToolDefinition(BaseModel):
    """Model-facing tool definition, without the callback."""

    name: str
    description: str
    input_schema: dict[str, Any]


class ToolCall(BaseModel):
    """A tool invocation requested by the model.

    Accepts the flat ``{"id", "name", "arguments"}`` shape as well as the
    OpenAI-style ``{"id", "function": {"name", "arguments"}}`` shape and the
    Anthropic ``tool_use`` shape (``input`` instead of ``arguments``).
    JSON-encoded argument strings are decoded.
    """

    model_config = {"extra": "ignore"}

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def normalize_shape(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data

        data = dict(data)
        function = data.pop("function", None)
        if isinstance(function, Mapping):
            data.setdefault("name", function.get("name"))
            data.setdefault("arguments", function.get("arguments"))
        if "arguments" not in data and "input" in data:
            data["arguments"] = data.pop("input")

        arguments = data.get("arguments")
        if arguments is None:
            data["arguments"] = {}
        elif isinstance(arguments, str):
            data["arguments"] = _decode_arguments(arguments, data.get("name"))
        return data


class ToolResult(BaseModel):
    """Outcome of a tool call, rendered for the model."""

    model_config = {"extra": "ignore"}

    tool_call_id: str
    name: str = ""
    content: str = ""
    error: bool = False

    @field_validator("content", mode="before")
    @classmethod
    def encode_content(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        return json.dumps(value, default=repr)


class Usage(BaseModel):
    """Token accounting for one or more model responses."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @model_validator(mode="before")
    @classmethod
    def accept_aliases(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data

        prompt = data.get("prompt_tokens", data.get("input_tokens")) or 0
        completion = data.get("completion_tokens", data.get("output_tokens")) or 0
        total = data.get("total_tokens")
        return {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": total if total is not None else prompt + completion,
        }

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_raw(cls, raw: Any) -> "Usage":
        """Build usage from a mapping, an SDK object or None."""
        if raw is None:
            return cls()
        if isinstance(raw, Usage):
            return raw
        if isinstance(raw, Mapping):
            return cls.model_validate(raw)
        if hasattr(raw, "model_dump"):
            return cls.model_validate(raw.model_dump())
        raise TypeError(f"Unsupported usage payload: {raw!r}")


class ResponseMetadata(BaseModel):
    """Bookkeeping attached to an aggregated response."""

    processing_time_ms: int = 0
    tools_executed: int = 0
    has_tool_calls: bool = False
    response_type: ResponseType = "empty"
    tool_errors: list[dict[str, Any]] | None = None


class AggregatedResponse(BaseModel):
    """A model response merged with its tool calls and tool results."""

    content: str
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    finished: bool = True
    conversation_id: str | None = None
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)

    @property
    def pending_tool_calls(self) -> list[ToolCall]:
        """Tool calls that have no matching result yet."""
        answered = {result.tool_call_id for result in self.tool_results}
        return [call for call in self.tool_calls if call.id not in answered]


class ResponseMetrics(BaseModel):
    """Flat metrics derived from an aggregated response."""

    processing_time_ms: int
    total_tokens: int
    prompt_tokens: int
    completion_tokens: int
    tools_executed: int
    tools_successful: int
    tools_failed: int
    tool_success_rate: float
    conversation_id: str | None
    finished: bool


def _decode_arguments(arguments: str, tool_name: Any) -> dict[str, Any]:
    if not arguments.strip():
        return {}
    try:
        decoded = json.loads(arguments)
    except json.JSONDecodeError as e:
        logger.warning(f"Could not decode arguments for tool {tool_name}: {e}")
        return {}
    if not isinstance(decoded, dict):
        logger.warning(f"Arguments for tool {tool_name} are not an object: {arguments[:100]}")
        return {}
    return decoded
