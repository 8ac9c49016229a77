"""Typed formula results and the coercions between them and cell text."""

from __future__ import annotations

import math
import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class ValueKind(str, Enum):
    NUMBER = "NUMBER"
    BOOLEAN = "BOOLEAN"
    STRING = "STRING"
    ERROR = "ERROR"
    EMPTY = "EMPTY"
    REFERENCE = "REFERENCE"
    RANGE = "RANGE"


class FormulaValue(BaseModel):
    """A formula result tagged with its kind.

    ``value`` is a float for NUMBER, a bool for BOOLEAN, a list of
    floats and strings for RANGE, and a string otherwise (the message
    for ERROR).
    """

    model_config = ConfigDict(frozen=True)

    kind: ValueKind
    value: Any

    @property
    def is_error(self) -> bool:
        return self.kind == ValueKind.ERROR


def formula_number(x: float) -> FormulaValue:
    return FormulaValue(kind=ValueKind.NUMBER, value=float(x))


def formula_boolean(b: bool) -> FormulaValue:
    return FormulaValue(kind=ValueKind.BOOLEAN, value=bool(b))


def formula_string(s: str) -> FormulaValue:
    return FormulaValue(kind=ValueKind.STRING, value=s)


def formula_error(message: str) -> FormulaValue:
    return FormulaValue(kind=ValueKind.ERROR, value=message)


def formula_range(values: list[float | str]) -> FormulaValue:
    return FormulaValue(kind=ValueKind.RANGE, value=list(values))


EMPTY_VALUE = FormulaValue(kind=ValueKind.EMPTY, value="")


# ---------------------------------------------------------------------------
# Coercions
# ---------------------------------------------------------------------------

_NUMBER_TEXT_RE = re.compile(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?\s*$")


def parse_number(text: str) -> float | None:
    """Parse numeric-looking cell text; ``None`` when it is not a number."""
    if not _NUMBER_TEXT_RE.match(text):
        return None
    return float(text)


def scalar_from_text(text: str) -> float | str:
    """Cell text as a range member: a float when numeric, else the text."""
    number = parse_number(text)
    return text if number is None else number


def value_from_text(text: str) -> FormulaValue:
    """Cell text as a formula value: EMPTY, NUMBER or STRING."""
    if not text:
        return EMPTY_VALUE
    number = parse_number(text)
    if number is not None:
        return formula_number(number)
    return formula_string(text)


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def extract_numbers(value: FormulaValue) -> list[float]:
    """Numeric content of a value for aggregation.

    NUMBER gives itself, numeric STRING its parsed value, RANGE its
    numeric members; everything else contributes nothing.
    """
    if value.kind == ValueKind.NUMBER:
        return [value.value]
    if value.kind == ValueKind.STRING:
        number = parse_number(value.value)
        return [] if number is None else [number]
    if value.kind == ValueKind.RANGE:
        return [float(v) for v in value.value if _is_number(v)]
    return []


def is_truthy(value: FormulaValue) -> bool:
    """Condition semantics for IF: non-zero numbers, true booleans, the text "true"."""
    if value.kind == ValueKind.NUMBER:
        return value.value != 0
    if value.kind == ValueKind.BOOLEAN:
        return bool(value.value)
    if value.kind == ValueKind.STRING:
        return value.value.lower() == "true"
    return False


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------


def format_scalar(v: Any) -> str:
    """Render a single number, bool or string as cell text."""
    if isinstance(v, bool):
        return "TRUE" if v else "FALSE"
    if _is_number(v):
        if math.isnan(v):
            return "NaN"
        if math.isinf(v):
            return "Infinity" if v > 0 else "-Infinity"
        if float(v).is_integer():
            return str(int(v))
        return repr(float(v))
    return "" if v is None else str(v)


def format_value(value: FormulaValue) -> str:
    """Render a formula result as the text stored in a cell.

    A RANGE written to a single cell is joined with ``", "``.
    """
    if value.kind == ValueKind.EMPTY:
        return ""
    if value.kind == ValueKind.RANGE:
        return ", ".join(format_scalar(v) for v in value.value)
    return format_scalar(value.value)
