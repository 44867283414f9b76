"""Building tool descriptors from capabilities."""

import inspect
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ValidationError

from toolrelay.config import get_config
from toolrelay.errors import (
    BatchBuildError,
    CapabilityFailure,
    ParameterError,
    ToolBuildError,
    ToolError,
    ToolOutcome,
)
from toolrelay.models.schema import SchemaNode
from toolrelay.tools.base import Capability, ToolCallback, ToolDescriptor
from toolrelay.tools.coercer import coerce_params
from toolrelay.tools.schema_converter import convert_schema
from toolrelay.utils.logging import get_logger
from toolrelay.utils.sanitize import ensure_json_serializable, sanitize

logger = get_logger(__name__)

DEFAULT_DESCRIPTION = "No description provided"


def build_tool_descriptor(
    capability: Any,
    *,
    context: Mapping[str, Any] | None = None,
    strict: bool | None = None,
) -> ToolDescriptor:
    """Turn a capability into a tool descriptor.

    Args:
        capability: The capability to wrap
        context: Passed to the handler on every call
        strict: Reject missing required arguments during coercion
            (defaults to ``ToolRelayConfig.strict_required``)

    Returns:
        The descriptor

    Raises:
        ToolBuildError: If the capability is missing a name, schema or async handler
    """
    _check_capability(capability)

    try:
        schema = convert_schema(capability.schema)
    except TypeError as e:
        raise ToolBuildError(ToolError.validation("schema", str(e)), capability) from e

    if strict is None:
        strict = get_config().strict_required

    return ToolDescriptor(
        name=capability.name,
        description=capability.description or DEFAULT_DESCRIPTION,
        parameter_schema=schema,
        callback=_make_callback(capability, schema, dict(context or {}), strict),
    )


def batch_build(
    capabilities: Iterable[Any],
    *,
    context: Mapping[str, Any] | None = None,
    strict: bool | None = None,
) -> list[ToolDescriptor]:
    """Build descriptors for several capabilities, tolerating partial failure.

    Returns:
        The descriptors that could be built, in input order

    Raises:
        BatchBuildError: If capabilities were given and none could be built
    """
    capabilities = list(capabilities)
    descriptors: list[ToolDescriptor] = []
    failures: list[ToolBuildError] = []

    for item in capabilities:
        try:
            descriptors.append(build_tool_descriptor(item, context=context, strict=strict))
        except ToolBuildError as e:
            failures.append(e)

    if failures:
        logger.warning(
            f"Failed to build {len(failures)} of {len(capabilities)} tools: "
            + "; ".join(failure.error.message for failure in failures)
        )
    if capabilities and not descriptors:
        raise BatchBuildError(failures)

    return descriptors


def normalize_result(result: Any) -> ToolOutcome:
    """Wrap a handler's return value as a JSON-safe ToolOutcome."""
    if isinstance(result, ToolOutcome):
        if not result.ok:
            return result
        result = result.value

    try:
        return ToolOutcome.success(ensure_json_serializable(result))
    except (ValueError, RecursionError) as e:
        return ToolOutcome.failure(ToolError.serialization(str(e)))


def _check_capability(capability: Any) -> None:
    if not isinstance(capability, Capability):
        raise ToolBuildError(
            ToolError.validation("capability", f"expected a Capability, got {type(capability).__name__}"),
            capability,
        )
    if not isinstance(capability.name, str) or not capability.name.strip():
        raise ToolBuildError(ToolError.validation("name", "capability must have a non-empty name"), capability)
    if capability.schema is None:
        raise ToolBuildError(
            ToolError.validation("schema", f"capability {capability.name} does not declare a schema"), capability
        )
    if not inspect.iscoroutinefunction(capability.handler):
        raise ToolBuildError(
            ToolError.validation("handler", f"capability {capability.name} must have an async handler"),
            capability,
        )


def _make_callback(
    capability: Capability, schema: SchemaNode, context: dict[str, Any], strict: bool
) -> ToolCallback:
    model_class = capability.schema if _is_model_class(capability.schema) else None

    async def callback(args: Mapping[str, Any]) -> ToolOutcome:
        try:
            params: Any = coerce_params(args, schema, strict=strict)
        except ParameterError as e:
            return ToolOutcome.failure(e.to_tool_error())

        if model_class is not None:
            try:
                params = model_class.model_validate(params)
            except ValidationError as e:
                return ToolOutcome.failure(_first_validation_error(e))

        try:
            result = await capability.handler(params, context)
        except CapabilityFailure as e:
            return ToolOutcome.failure(ToolError.execution(sanitize(e.detail)))

        return normalize_result(result)

    return callback


def _is_model_class(schema: Any) -> bool:
    return isinstance(schema, type) and issubclass(schema, BaseModel)


def _first_validation_error(error: ValidationError) -> ToolError:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "arguments"
    return ToolError.validation(field, first.get("msg", "invalid value"))
