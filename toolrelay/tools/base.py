"""Base types for capabilities and the tool descriptors built from them."""

import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from toolrelay.errors import ToolOutcome
from toolrelay.models.llm import ToolDefinition
from toolrelay.models.schema import SchemaNode

CapabilityHandler = Callable[[Any, dict[str, Any]], Awaitable[Any]]
ToolCallback = Callable[[Mapping[str, Any]], Awaitable[ToolOutcome]]


@dataclass
class Capability:
    """A named unit of functionality the model may ask to invoke.

    ``schema`` is either a pydantic model class, in which case the handler
    receives a validated model instance, or a mapping of field specs, in which
    case it receives the coerced arguments as a dict. The handler also
    receives the context mapping given when the descriptor was built.
    """

    name: str
    description: str | None
    schema: Any
    handler: CapabilityHandler


def capability(
    name: str, description: str | None = None, schema: Any = None
) -> Callable[[CapabilityHandler], Capability]:
    """Declare an async function as a capability.

    The description defaults to the function's docstring.

        @capability("add", schema={"a": {"type": "integer", "required": True}})
        async def add(params, context):
            \"\"\"Add one to a number.\"\"\"
            return {"sum": params["a"] + 1}
    """

    def decorator(func: CapabilityHandler) -> Capability:
        return Capability(
            name=name,
            description=description or inspect.getdoc(func),
            schema=schema if schema is not None else {},
            handler=func,
        )

    return decorator


@dataclass(frozen=True)
class ToolDescriptor:
    """Immutable, model-facing representation of a capability."""

    name: str
    description: str
    parameter_schema: SchemaNode
    callback: ToolCallback = field(repr=False, compare=False)

    def definition(self) -> ToolDefinition:
        """Get the definition sent to the model provider."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            input_schema=self.parameter_schema.to_json_schema(),
        )

    async def __call__(self, args: Mapping[str, Any]) -> ToolOutcome:
        return await self.callback(args)
