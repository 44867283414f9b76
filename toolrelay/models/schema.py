"""Provider-neutral parameter schema models."""

from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


class FieldType(StrEnum):
    """Closed set of parameter types a tool schema can declare."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    ENUM = "enum"
    LIST = "list"
    MAP = "map"
    OBJECT = "object"


_JSON_SCHEMA_TYPES = {
    FieldType.STRING: "string",
    FieldType.INTEGER: "integer",
    FieldType.FLOAT: "number",
    FieldType.BOOLEAN: "boolean",
    FieldType.LIST: "array",
    FieldType.MAP: "object",
    FieldType.OBJECT: "object",
}


class SchemaField(BaseModel):
    """A single parameter in a tool schema."""

    model_config = {"frozen": True}

    type: FieldType = FieldType.STRING
    required: bool = False
    has_default: bool = False
    default: Any = None
    doc: str = ""
    choices: list[Any] | None = None
    items: Optional["SchemaField"] = None
    properties: Optional["SchemaNode"] = None

    @model_validator(mode="after")
    def check_consistency(self) -> "SchemaField":
        """Required fields have no default; enums carry choices."""
        if self.required and self.has_default:
            raise ValueError("A required field cannot declare a default")
        if self.type == FieldType.ENUM and not self.choices:
            raise ValueError("An enum field must declare its choices")
        return self

    def to_json_schema(self) -> dict[str, Any]:
        """Render this field as a JSON Schema property."""
        if self.type == FieldType.ENUM:
            choices = [getattr(choice, "value", choice) for choice in self.choices or []]
            if all(isinstance(choice, str) for choice in choices):
                prop: dict[str, Any] = {"type": "string", "enum": choices}
            else:
                prop = {"enum": choices}
        elif self.type == FieldType.OBJECT and self.properties is not None:
            prop = self.properties.to_json_schema()
        else:
            prop = {"type": _JSON_SCHEMA_TYPES[self.type]}
            if self.type == FieldType.LIST and self.items is not None:
                prop["items"] = self.items.to_json_schema()

        if self.doc:
            prop["description"] = self.doc
        if self.has_default:
            prop["default"] = getattr(self.default, "value", self.default)
        return prop


class SchemaNode(BaseModel):
    """Mapping of field name to SchemaField, in declaration order."""

    model_config = {"frozen": True}

    fields: dict[str, SchemaField] = Field(default_factory=dict)

    @property
    def required(self) -> list[str]:
        """Names of the required fields."""
        return [name for name, spec in self.fields.items() if spec.required]

    def to_json_schema(self) -> dict[str, Any]:
        """Render the node as a JSON Schema object suitable for a model provider."""
        return {
            "type": "object",
            "properties": {name: spec.to_json_schema() for name, spec in self.fields.items()},
            "required": self.required,
            "additionalProperties": False,
        }


SchemaField.model_rebuild()
