"""Conversion of capability parameter schemas into SchemaNode trees.

Two native schema shapes are accepted:

- a pydantic model class, read from its field annotations, defaults and
  ``Field(description=...)`` values;
- a mapping of field name to ``{"type", "required", "default", "doc"}`` where
  ``type`` is a Python type or annotation, or one of the type names in
  ``_NAMED_TYPES`` (``("list", inner)`` and ``("in", choices)`` tuples are
  accepted too).

Every input maps to exactly one FieldType. Anything unrecognised becomes a
string field, so every capability stays describable.
"""

import types
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Annotated, Any, Literal, Union, get_args, get_origin

from pydantic import BaseModel
from pydantic_core import PydanticUndefined

from toolrelay.models.schema import FieldType, SchemaField, SchemaNode
from toolrelay.utils.logging import get_logger

logger = get_logger(__name__)

_NAMED_TYPES = {
    "string": FieldType.STRING,
    "str": FieldType.STRING,
    "atom": FieldType.STRING,
    "integer": FieldType.INTEGER,
    "int": FieldType.INTEGER,
    "non_neg_integer": FieldType.INTEGER,
    "pos_integer": FieldType.INTEGER,
    "float": FieldType.FLOAT,
    "number": FieldType.FLOAT,
    "boolean": FieldType.BOOLEAN,
    "bool": FieldType.BOOLEAN,
    "list": FieldType.LIST,
    "array": FieldType.LIST,
    "map": FieldType.MAP,
    "dict": FieldType.MAP,
    "object": FieldType.MAP,
    "keyword_list": FieldType.MAP,
}

_PYTHON_TYPES = {
    str: FieldType.STRING,
    int: FieldType.INTEGER,
    float: FieldType.FLOAT,
    bool: FieldType.BOOLEAN,
    list: FieldType.LIST,
    tuple: FieldType.LIST,
    set: FieldType.LIST,
    dict: FieldType.MAP,
}


def convert_schema(native: Any) -> SchemaNode:
    """Convert a capability's native parameter schema into a SchemaNode.

    Args:
        native: A pydantic model class, a mapping of field specs, or None

    Returns:
        The converted schema; None converts to an empty schema

    Raises:
        TypeError: If ``native`` is neither a pydantic model class nor a mapping
    """
    if native is None:
        return SchemaNode()
    if isinstance(native, type) and issubclass(native, BaseModel):
        return _convert_model(native)
    if isinstance(native, Mapping):
        return SchemaNode(fields={str(name): _convert_field_spec(str(name), spec) for name, spec in native.items()})
    raise TypeError(f"Unsupported schema format: {native!r}")


def required_fields(node: SchemaNode) -> list[str]:
    """Flat list of required field names."""
    return node.required


def _convert_model(model: type[BaseModel]) -> SchemaNode:
    converted: dict[str, SchemaField] = {}
    for name, info in model.model_fields.items():
        has_default = info.default is not PydanticUndefined or info.default_factory is not None
        default = None
        if info.default is not PydanticUndefined:
            default = info.default
        elif info.default_factory is not None:
            default = info.default_factory()

        converted[name] = _build_field(
            info.annotation,
            required=info.is_required(),
            has_default=has_default,
            default=default,
            doc=info.description or "",
        )
    return SchemaNode(fields=converted)


def _convert_field_spec(name: str, spec: Any) -> SchemaField:
    if not isinstance(spec, Mapping):
        # Bare type, e.g. {"count": int}
        return _build_field(spec, required=False, has_default=False, default=None, doc="")

    has_default = "default" in spec
    required = bool(spec.get("required", False)) and not has_default
    if spec.get("required") and has_default:
        logger.debug(f"Field {name} is both required and defaulted; treating it as optional")

    return _build_field(
        spec.get("type"),
        required=required,
        has_default=has_default,
        default=spec.get("default"),
        doc=str(spec.get("doc", spec.get("description", "")) or ""),
    )


def _build_field(type_spec: Any, *, required: bool, has_default: bool, default: Any, doc: str) -> SchemaField:
    field_type, extras = _map_type(type_spec)
    return SchemaField(
        type=field_type,
        required=required,
        has_default=has_default,
        default=default,
        doc=doc,
        **extras,
    )


def _map_type(type_spec: Any) -> tuple[FieldType, dict[str, Any]]:
    """Map a native type declaration onto a FieldType plus its extra payload."""
    if isinstance(type_spec, FieldType):
        return type_spec, {}

    if isinstance(type_spec, str):
        named = _NAMED_TYPES.get(type_spec.lower())
        return (named if named is not None else _unknown(type_spec)), {}

    if isinstance(type_spec, tuple) and len(type_spec) == 2 and isinstance(type_spec[0], str):
        tag, payload = type_spec
        if tag == "list":
            return FieldType.LIST, {"items": _item_field(payload)}
        if tag == "in" and isinstance(payload, Sequence) and not isinstance(payload, str) and payload:
            return FieldType.ENUM, {"choices": list(payload)}
        if tag == "map":
            return FieldType.MAP, {}
        return _unknown(type_spec), {}

    if isinstance(type_spec, type):
        if issubclass(type_spec, Enum):
            return FieldType.ENUM, {"choices": list(type_spec)}
        if issubclass(type_spec, BaseModel):
            return FieldType.OBJECT, {"properties": _convert_model(type_spec)}
        for python_type, field_type in _PYTHON_TYPES.items():
            if issubclass(type_spec, python_type):
                # bool is an int subclass, so check it first
                if python_type is int and issubclass(type_spec, bool):
                    return FieldType.BOOLEAN, {}
                return field_type, {}
        return _unknown(type_spec), {}

    origin = get_origin(type_spec)
    args = get_args(type_spec)

    if origin is Annotated:
        return _map_type(args[0])

    if origin is Literal:
        return FieldType.ENUM, {"choices": list(args)}

    if origin in (Union, types.UnionType):
        non_null = [arg for arg in args if arg is not type(None)]
        if len(non_null) == 1:
            return _map_type(non_null[0])
        return _unknown(type_spec), {}

    if origin in (list, tuple, set, frozenset, Sequence):
        inner = args[0] if args else None
        return FieldType.LIST, {"items": _item_field(inner) if inner is not None else None}

    if origin in (dict, Mapping):
        return FieldType.MAP, {}

    return _unknown(type_spec), {}


def _item_field(inner: Any) -> SchemaField:
    field_type, extras = _map_type(inner)
    return SchemaField(type=field_type, **extras)


def _unknown(type_spec: Any) -> FieldType:
    if type_spec is not None:
        logger.debug(f"Unmapped parameter type {type_spec!r}, falling back to string")
    return FieldType.STRING
