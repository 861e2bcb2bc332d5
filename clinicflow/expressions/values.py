"""Typed field values collected from patient responses."""

from __future__ import annotations

import math
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class NumberValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["number"] = "number"
    value: float


class TextValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    value: str


class ListValue(BaseModel):
    """Answer to a multiple-choice question."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["list"] = "list"
    value: tuple[str, ...] = ()


FieldValue = Annotated[
    Union[NumberValue, TextValue, ListValue], Field(discriminator="kind")
]


def parse_number(raw: Any) -> Optional[float]:
    """Coerce ``raw`` to a finite float, accepting decimal commas."""

    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        number = float(raw)
    elif isinstance(raw, str):
        text = raw.strip().replace(",", ".")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def to_field_value(raw: Any) -> Optional[FieldValue]:
    """Wrap a raw response value, or return ``None`` when there is nothing to store."""

    if raw is None:
        return None
    if isinstance(raw, (NumberValue, TextValue, ListValue)):
        return raw
    if isinstance(raw, bool):
        return TextValue(value="true" if raw else "false")
    if isinstance(raw, (int, float)):
        number = parse_number(raw)
        return NumberValue(value=number) if number is not None else None
    if isinstance(raw, (list, tuple)):
        return ListValue(value=tuple(str(item) for item in raw))
    return TextValue(value=str(raw))


def as_number(value: FieldValue) -> Optional[float]:
    if isinstance(value, NumberValue):
        return value.value
    if isinstance(value, TextValue):
        return parse_number(value.value)
    if len(value.value) == 1:
        return parse_number(value.value[0])
    return None


def as_text(value: FieldValue) -> str:
    if isinstance(value, NumberValue):
        # 18.0 reads back as "18" so text comparisons match what was typed
        return str(int(value.value)) if value.value.is_integer() else str(value.value)
    if isinstance(value, TextValue):
        return value.value
    return ", ".join(value.value)
