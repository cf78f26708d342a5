"""Cell record and value inference."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Tuple

from .references import coordinate
from .shared_strings import RichText

ERROR_CODES = (
    "#NULL!", "#DIV/0!", "#VALUE!", "#REF!", "#NAME?", "#NUM!", "#N/A",
    "#GETTING_DATA", "#SPILL!", "#CALC!",
)

_NUMERIC_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")


class CellType(str, Enum):
    """Excel cell data types (the "t" attribute)."""
    NUMBER = "n"
    SHARED_STRING = "s"  # Value is an index into the shared string table
    INLINE_STRING = "inlineStr"  # Inline string (not shared)
    BOOLEAN = "b"
    ERROR = "e"
    FORMULA_STRING = "str"  # Cached string result of a formula
    DATE = "d"  # ISO 8601 date text


@dataclass
class Cell:
    """A single populated cell.

    ``value`` depends on ``data_type``:
    NUMBER -> lexical number text ("1234.5678"), SHARED_STRING -> int index,
    INLINE_STRING -> str or RichText, BOOLEAN -> bool, ERROR -> error code,
    FORMULA_STRING / DATE -> str. For formula cells it is the cached result.
    """
    row: int  # 1-indexed row number
    column: int  # 1-indexed column number
    data_type: Optional[CellType] = None
    value: Any = None
    style_index: int = 0

    # Formula
    formula: Optional[str] = None  # Formula text without '='
    formula_type: Optional[str] = None  # None (normal), "array", "shared"
    formula_ref: Optional[str] = None  # Range for array formulas / shared masters
    shared_index: Optional[int] = None  # si attribute for shared formulas

    @property
    def coordinate(self) -> str:
        return coordinate(self.row, self.column)

    @property
    def has_formula(self) -> bool:
        return self.formula is not None or self.formula_type == "shared"

    @property
    def is_empty(self) -> bool:
        """No value and no formula (the cell may still carry a style)."""
        return self.value is None and not self.has_formula

    def clear_value(self) -> None:
        self.data_type = None
        self.value = None
        self.formula = None
        self.formula_type = None
        self.formula_ref = None
        self.shared_index = None


def number_to_lexical(value: Any) -> str:
    """Render int/float/Decimal as xsd:double-compatible text."""
    if isinstance(value, bool):
        raise TypeError("bool is not a number")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, Decimal):
        return format(value, "f")
    as_float = float(value)
    if as_float.is_integer() and abs(as_float) < 1e15:
        return str(int(as_float))
    return repr(as_float)


def lexical_to_number(text: str) -> float:
    value = float(text)
    return int(value) if value.is_integer() and "e" not in text.lower() and "." not in text else value


def infer_value(value: Any) -> Tuple[Optional[CellType], Any, bool]:
    """Classify a Python value for storage.

    Returns (data_type, stored_value, is_date). Plain strings come back as
    (INLINE_STRING, text) and are interned into the shared string table by
    the caller.

    str inputs are inspected: numeric text becomes a NUMBER (lexical form
    kept verbatim), TRUE/FALSE becomes BOOLEAN, an error code becomes ERROR.
    """
    from .number_format import to_excel_serial

    if value is None:
        return None, None, False
    if isinstance(value, bool):
        return CellType.BOOLEAN, value, False
    if isinstance(value, (int, float, Decimal)):
        return CellType.NUMBER, number_to_lexical(value), False
    if isinstance(value, (datetime, date, time)):
        return CellType.NUMBER, number_to_lexical(to_excel_serial(value)), True
    if isinstance(value, RichText):
        return CellType.INLINE_STRING, value, False
    if isinstance(value, str):
        stripped = value.strip()
        if _NUMERIC_RE.match(stripped):
            return CellType.NUMBER, stripped, False
        if stripped.upper() in ("TRUE", "FALSE"):
            return CellType.BOOLEAN, stripped.upper() == "TRUE", False
        if stripped.upper() in ERROR_CODES:
            return CellType.ERROR, stripped.upper(), False
        return CellType.INLINE_STRING, value, False
    raise TypeError(f"Unsupported cell value type: {type(value).__name__}")
