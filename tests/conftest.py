"""Shared fixtures for toolrelay tests."""

import asyncio

import pytest

from toolrelay.config import ToolRelayConfig
from toolrelay.errors import CapabilityFailure
from toolrelay.tools.base import Capability, capability
from toolrelay.tools.builder import build_tool_descriptor
from toolrelay.tools.executor import ToolExecutor


@pytest.fixture
def config():
    """Config with short timeouts and a low breaker threshold."""
    return ToolRelayConfig(
        default_timeout_ms=1_000,
        max_tool_calls=5,
        max_concurrency=4,
        max_turns=5,
        breaker_threshold=3,
        breaker_cooldown_s=30.0,
        conversation_ttl_s=3600,
    )


@pytest.fixture
def executor(config):
    return ToolExecutor(config)


@pytest.fixture
def add_capability() -> Capability:
    @capability(
        "add",
        schema={
            "a": {"type": "integer", "required": True, "doc": "First operand"},
            "b": {"type": "integer", "default": 0, "doc": "Second operand"},
        },
    )
    async def add(params, context):
        """Add two integers."""
        return {"result": params["a"] + params["b"]}

    return add


@pytest.fixture
def sleepy_capability() -> Capability:
    @capability("sleepy", schema={"seconds": {"type": "float", "default": 0.5}})
    async def sleepy(params, context):
        """Sleep for a while."""
        await asyncio.sleep(params["seconds"])
        return {"slept": params["seconds"]}

    return sleepy


@pytest.fixture
def explode_capability() -> Capability:
    @capability("explode", schema={})
    async def explode(params, context):
        """Always raises."""
        raise RuntimeError("boom")

    return explode


@pytest.fixture
def refuse_capability() -> Capability:
    @capability("refuse", schema={"reason": {"type": "string", "default": "no"}})
    async def refuse(params, context):
        """Reports an expected failure."""
        raise CapabilityFailure({"reason": params["reason"], "password": "hunter2"})

    return refuse


@pytest.fixture
def add_tool(add_capability):
    return build_tool_descriptor(add_capability)


@pytest.fixture
def sleepy_tool(sleepy_capability):
    return build_tool_descriptor(sleepy_capability)


@pytest.fixture
def explode_tool(explode_capability):
    return build_tool_descriptor(explode_capability)
