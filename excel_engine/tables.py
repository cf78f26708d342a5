"""Worksheet tables (ListObjects)."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .references import CellRange

TotalsFunction = Literal["none", "sum", "min", "max", "average", "count", "countNums", "stdDev", "var", "custom"]

_SUBTOTAL_CODES = {
    "average": 101, "count": 103, "countNums": 102, "max": 104, "min": 105,
    "stdDev": 107, "sum": 109, "var": 110,
}


class TableColumn(BaseModel):
    id: int  # 1-based
    name: str
    totals_row_function: Optional[TotalsFunction] = None
    totals_row_label: Optional[str] = None
    totals_row_formula: Optional[str] = None  # For "custom"


class TableStyleInfo(BaseModel):
    name: Optional[str] = "TableStyleMedium9"
    show_first_column: bool = False
    show_last_column: bool = False
    show_row_stripes: bool = True
    show_column_stripes: bool = False


class Table(BaseModel):
    """A structured table over a rectangular range."""
    id: int
    name: str
    display_name: str
    ref: str  # e.g. "A1:D10", includes header and totals rows
    columns: List[TableColumn] = Field(default_factory=list)
    header_row_count: int = 1
    totals_row_shown: bool = False
    style: TableStyleInfo = Field(default_factory=TableStyleInfo)
    auto_filter: bool = True

    @property
    def range(self) -> CellRange:
        return CellRange.from_string(self.ref)

    @property
    def totals_row_count(self) -> int:
        return 1 if self.totals_row_shown else 0

    @property
    def data_range(self) -> CellRange:
        """Range without header and totals rows."""
        rng = self.range
        return CellRange(
            rng.min_row + self.header_row_count,
            rng.min_col,
            rng.max_row - self.totals_row_count,
            rng.max_col,
        )

    def totals_formula(self, column: TableColumn) -> Optional[str]:
        """SUBTOTAL formula for a column's totals cell."""
        if column.totals_row_function == "custom":
            return column.totals_row_formula
        code = _SUBTOTAL_CODES.get(column.totals_row_function or "")
        if code is None:
            return None
        name = column.name.replace("'", "''").replace("[", "'[").replace("]", "']").replace("#", "'#")
        return f"SUBTOTAL({code},{self.name}[{name}])"
