"""Coercion of loosely-typed tool arguments into their schema's native types.

Model providers hand back JSON-decoded arguments: string keys and, quite
often, strings where numbers or booleans were expected. ``coerce_params``
converts such a mapping against a SchemaNode:

1. every key must name a schema field;
2. every present value is converted to the field's type;
3. absent fields take their default. A missing required field fails when
   ``strict`` is set and is left for the capability to report otherwise.

    >>> schema = convert_schema({"count": {"type": "integer"}})
    >>> coerce_params({"count": "42extra"}, schema)
    {'count': 42}
"""

import copy
import math
import re
from collections.abc import Mapping
from enum import Enum
from typing import Any

from toolrelay.errors import ParameterError
from toolrelay.models.schema import FieldType, SchemaField, SchemaNode

_INT_PREFIX = re.compile(r"\s*([+-]?\d+)")
_FLOAT_PREFIX = re.compile(r"\s*([+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)")

_TRUE_STRINGS = ("true", "1")
_FALSE_STRINGS = ("false", "0")


def coerce_params(raw: Mapping[str, Any], schema: SchemaNode, strict: bool = True) -> dict[str, Any]:
    """Convert raw arguments to the schema's types, applying defaults.

    Args:
        raw: Arguments as supplied by the model
        schema: Target schema
        strict: Fail on missing required fields instead of deferring to the capability

    Returns:
        Arguments keyed by canonical field name, in schema order

    Raises:
        ParameterError: On an unknown key, an unconvertible value or, in strict
            mode, a missing required field
    """
    return _coerce_mapping(raw, schema, strict, prefix="")


def coerce_value(value: Any, spec: SchemaField, field: str = "value", strict: bool = True) -> Any:
    """Convert a single value to the type declared by ``spec``.

    Raises:
        ParameterError: If the value cannot be converted
    """
    match spec.type:
        case FieldType.STRING:
            return _to_string(value, field)
        case FieldType.INTEGER:
            return _to_integer(value, field)
        case FieldType.FLOAT:
            return _to_float(value, field)
        case FieldType.BOOLEAN:
            return _to_boolean(value, field)
        case FieldType.ENUM:
            return _to_choice(value, spec.choices or [], field)
        case FieldType.LIST:
            return _to_list(value, spec.items, field, strict)
        case FieldType.MAP:
            if not isinstance(value, Mapping):
                raise ParameterError(field, f"Expected map, got {value!r}")
            return value
        case FieldType.OBJECT:
            if not isinstance(value, Mapping):
                raise ParameterError(field, f"Expected object, got {value!r}")
            if spec.properties is None:
                return dict(value)
            return _coerce_mapping(value, spec.properties, strict, prefix=f"{field}.")
    raise ParameterError(field, f"Unsupported type conversion: {spec.type}")


def _coerce_mapping(raw: Any, schema: SchemaNode, strict: bool, prefix: str) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        raise ParameterError(prefix.rstrip(".") or "arguments", f"Expected map, got {raw!r}")

    converted: dict[str, Any] = {}
    for key, value in raw.items():
        name = str(key)
        spec = schema.fields.get(name)
        if spec is None:
            raise ParameterError(f"{prefix}{name}", "Unknown parameter")
        converted[name] = coerce_value(value, spec, f"{prefix}{name}", strict)

    result: dict[str, Any] = {}
    for name, spec in schema.fields.items():
        if name in converted:
            result[name] = converted[name]
        elif spec.has_default:
            result[name] = copy.deepcopy(spec.default)
        elif spec.required and strict:
            raise ParameterError(f"{prefix}{name}", "required field missing")
    return result


def _to_string(value: Any, field: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (int, float)):
        return str(value)
    raise ParameterError(field, f"Cannot convert {value!r} to string")


def _to_integer(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ParameterError(field, f"Cannot convert {value!r} to integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ParameterError(field, f"Cannot convert {value!r} to integer")
        return math.trunc(value)
    if isinstance(value, str):
        match = _INT_PREFIX.match(value)
        if match is None:
            raise ParameterError(field, f"Invalid integer: {value}")
        return int(match.group(1))
    raise ParameterError(field, f"Cannot convert {value!r} to integer")


def _to_float(value: Any, field: str) -> float:
    if isinstance(value, bool):
        raise ParameterError(field, f"Cannot convert {value!r} to float")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = _FLOAT_PREFIX.match(value)
        if match is None:
            raise ParameterError(field, f"Invalid float: {value}")
        return float(match.group(1))
    raise ParameterError(field, f"Cannot convert {value!r} to float")


def _to_boolean(value: Any, field: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return value == 1
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ParameterError(field, f"Invalid boolean: {value!r}")


def _to_list(value: Any, items: SchemaField | None, field: str, strict: bool) -> list[Any]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise ParameterError(field, f"Expected list, got {value!r}")
    if items is None:
        return list(value)

    coerced = []
    for index, item in enumerate(value):
        try:
            coerced.append(coerce_value(item, items, f"{field}[{index}]", strict))
        except ParameterError as e:
            raise ParameterError(field, f"List item conversion failed: {e.reason}") from e
    return coerced


def _to_choice(value: Any, choices: list[Any], field: str) -> Any:
    for choice in choices:
        if type(value) is type(choice) and value == choice:
            return choice

    text = _choice_text(value)
    for choice in choices:
        if _choice_text(choice) == text:
            return choice

    allowed = [_choice_text(choice) for choice in choices]
    raise ParameterError(field, f"Value {value!r} not in allowed choices: {allowed}")


def _choice_text(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
