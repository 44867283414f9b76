"""Capabilities, tool descriptors and their execution."""

from toolrelay.tools.base import Capability, ToolDescriptor, capability
from toolrelay.tools.builder import batch_build, build_tool_descriptor
from toolrelay.tools.executor import CircuitBreaker, ToolExecutor

__all__ = [
    "Capability",
    "CircuitBreaker",
    "ToolDescriptor",
    "ToolExecutor",
    "batch_build",
    "build_tool_descriptor",
    "capability",
]
