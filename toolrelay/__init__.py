"""Tool-call orchestration and response aggregation for model conversations."""

from toolrelay.errors import ToolError, ToolErrorKind, ToolOutcome
from toolrelay.services.aggregator import aggregate, aggregate_stream, extract_metrics, format_for_user
from toolrelay.services.conversation_store import ConversationStore
from toolrelay.tools import Capability, ToolDescriptor, ToolExecutor, batch_build, build_tool_descriptor, capability

__version__ = "0.1.0"

__all__ = [
    "Capability",
    "ConversationStore",
    "ToolDescriptor",
    "ToolError",
    "ToolErrorKind",
    "ToolExecutor",
    "ToolOutcome",
    "aggregate",
    "aggregate_stream",
    "batch_build",
    "build_tool_descriptor",
    "capability",
    "extract_metrics",
    "format_for_user",
]
