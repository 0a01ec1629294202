"""
Capability parameter schemas and typed argument values.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Union

from core.errors import TypeMismatch

SCHEMA_TYPES = ("string", "integer", "number", "boolean", "array", "object")


@dataclass(frozen=True)
class PropertySchema:
    type: str
    description: str = ""
    enum: tuple[str, ...] = ()
    items: Optional["PropertySchema"] = None
    properties: dict[str, "PropertySchema"] = field(default_factory=dict)
    required: tuple[str, ...] = ()

    def __post_init__(self):
        if self.type not in SCHEMA_TYPES:
            raise ValueError(f"unsupported schema type: {self.type}")

    def to_provider_format(self) -> dict:
        rendered: dict[str, Any] = {"type": self.type}
        if self.description:
            rendered["description"] = self.description
        if self.enum:
            rendered["enum"] = list(self.enum)
        if self.items is not None:
            rendered["items"] = self.items.to_provider_format()
        if self.properties:
            rendered["properties"] = {
                name: prop.to_provider_format() for name, prop in self.properties.items()
            }
        if self.required:
            rendered["required"] = list(self.required)
        return rendered


@dataclass(frozen=True)
class ObjectSchema:
    """Top-level parameter schema of a capability (always an object)."""

    properties: dict[str, PropertySchema] = field(default_factory=dict)
    required: tuple[str, ...] = ()

    def to_provider_format(self) -> dict:
        return {
            "type": "object",
            "properties": {
                name: prop.to_provider_format() for name, prop in self.properties.items()
            },
            "required": list(self.required),
        }


# =============================================================================
# Argument values
# =============================================================================

@dataclass(frozen=True)
class StringValue:
    value: str
    type_name = "string"


@dataclass(frozen=True)
class IntegerValue:
    value: int
    type_name = "integer"


@dataclass(frozen=True)
class NumberValue:
    value: float
    type_name = "number"


@dataclass(frozen=True)
class BooleanValue:
    value: bool
    type_name = "boolean"


@dataclass(frozen=True)
class NullValue:
    type_name = "null"

    @property
    def value(self) -> None:
        return None


@dataclass(frozen=True)
class ArrayValue:
    items: tuple["ArgValue", ...]
    type_name = "array"

    @property
    def value(self) -> list:
        return [item.value for item in self.items]


@dataclass(frozen=True)
class ObjectValue:
    fields: tuple[tuple[str, "ArgValue"], ...]
    type_name = "object"

    @property
    def value(self) -> dict:
        return {key: item.value for key, item in self.fields}


ArgValue = Union[
    StringValue,
    IntegerValue,
    NumberValue,
    BooleanValue,
    NullValue,
    ArrayValue,
    ObjectValue,
]


def to_arg_value(raw: Any) -> ArgValue:
    """Convert decoded JSON into an ArgValue."""
    if raw is None:
        return NullValue()
    if isinstance(raw, bool):
        return BooleanValue(raw)
    if isinstance(raw, int):
        return IntegerValue(raw)
    if isinstance(raw, float):
        return NumberValue(raw)
    if isinstance(raw, str):
        return StringValue(raw)
    if isinstance(raw, (list, tuple)):
        return ArrayValue(tuple(to_arg_value(item) for item in raw))
    if isinstance(raw, Mapping):
        return ObjectValue(tuple((str(key), to_arg_value(item)) for key, item in raw.items()))
    raise TypeError(f"unsupported argument value: {type(raw).__name__}")


def matches_type(value: ArgValue, declared: str) -> bool:
    if declared == "string":
        return isinstance(value, StringValue)
    if declared == "integer":
        if isinstance(value, IntegerValue):
            return True
        return isinstance(value, NumberValue) and float(value.value).is_integer()
    if declared == "number":
        return isinstance(value, (IntegerValue, NumberValue))
    if declared == "boolean":
        return isinstance(value, BooleanValue)
    if declared == "array":
        return isinstance(value, ArrayValue)
    if declared == "object":
        return isinstance(value, ObjectValue)
    return False


class ToolArguments(Mapping):
    """Validated, read-only capability arguments with typed accessors."""

    def __init__(self, values: Mapping[str, ArgValue]):
        self._values = dict(values)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "ToolArguments":
        values = {}
        for key, item in raw.items():
            try:
                values[str(key)] = to_arg_value(item)
            except TypeError as exc:
                raise TypeMismatch(str(key), "json value", type(item).__name__) from exc
        return cls(values)

    def __getitem__(self, key: str) -> ArgValue:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def _typed(self, name: str, declared: str):
        value = self._values.get(name)
        if value is None or isinstance(value, NullValue):
            return None
        if not matches_type(value, declared):
            raise TypeMismatch(name, declared, value.type_name)
        return value.value

    def get_str(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self._typed(name, "string")
        return default if value is None else value

    def get_int(self, name: str, default: Optional[int] = None) -> Optional[int]:
        value = self._typed(name, "integer")
        return default if value is None else int(value)

    def get_float(self, name: str, default: Optional[float] = None) -> Optional[float]:
        value = self._typed(name, "number")
        return default if value is None else float(value)

    def get_bool(self, name: str, default: Optional[bool] = None) -> Optional[bool]:
        value = self._typed(name, "boolean")
        return default if value is None else value

    def get_list(self, name: str) -> Optional[list]:
        return self._typed(name, "array")

    def get_object(self, name: str) -> Optional[dict]:
        return self._typed(name, "object")

    def to_dict(self) -> dict:
        return {key: item.value for key, item in self._values.items()}
