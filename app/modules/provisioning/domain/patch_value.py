"""
Tagged representation of PATCH operation values.

Raw JSON is converted once into Scalar / ObjectValue / ArrayValue so the
interpreter dispatches on the node kind instead of probing dicts ad hoc.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

ScalarType = Union[str, bool, int, float, None]


@dataclass(frozen=True, slots=True)
class Scalar:
    value: ScalarType = None

    @property
    def is_null(self) -> bool:
        return self.value is None


@dataclass(frozen=True, slots=True)
class ObjectValue:
    fields: dict[str, "PatchValue"]

    def items(self) -> list[tuple[str, "PatchValue"]]:
        return list(self.fields.items())


@dataclass(frozen=True, slots=True)
class ArrayValue:
    items: tuple["PatchValue", ...]


PatchValue = Union[Scalar, ObjectValue, ArrayValue]


def to_patch_value(raw: Any) -> PatchValue:
    if isinstance(raw, dict):
        return ObjectValue({str(key): to_patch_value(item) for key, item in raw.items()})
    if isinstance(raw, (list, tuple)):
        return ArrayValue(tuple(to_patch_value(item) for item in raw))
    if raw is None or isinstance(raw, (str, bool, int, float)):
        return Scalar(raw)
    # Anything else (e.g. a Decimal from a custom decoder) is carried as text.
    return Scalar(str(raw))


def to_plain(value: PatchValue) -> Any:
    if isinstance(value, ObjectValue):
        return {key: to_plain(item) for key, item in value.fields.items()}
    if isinstance(value, ArrayValue):
        return [to_plain(item) for item in value.items]
    return value.value


def decode_embedded_object(value: PatchValue) -> PatchValue:
    """
    Unwrap a string scalar that carries a JSON object.

    Some IdP clients send the replace document as a JSON-encoded string.
    Anything that is not such a string is returned unchanged.
    """
    if not isinstance(value, Scalar) or not isinstance(value.value, str):
        return value
    text = value.value.strip()
    if not text.startswith("{"):
        return value
    try:
        decoded = json.loads(text)
    except ValueError:
        return value
    if not isinstance(decoded, dict):
        return value
    return to_patch_value(decoded)
