"""Pivot caches and pivot table definitions.

A pivot cache snapshots a source range: one CacheField per source column,
named from the header row, with the column's distinct values. Refreshing
re-scans the source. Pivot table layout (the rendered rows and columns of
aggregated values) is never computed here; caches are written with
refreshOnLoad so the consuming application rebuilds the layout.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, List, Literal, Optional

from pydantic import BaseModel, Field

from .exceptions import DanglingReferenceError, UnsupportedFeatureError
from .references import CellRange

if TYPE_CHECKING:
    from .workbook import Workbook

logger = logging.getLogger(__name__)

AggregateFunction = Literal[
    "sum", "count", "average", "max", "min", "product", "countNums",
    "stdDev", "stdDevp", "var", "varp",
]


class CacheField(BaseModel):
    """One column of the cached source data."""
    name: str
    shared_items: List[Any] = Field(default_factory=list)  # Distinct values, None for blanks
    contains_blank: bool = False
    contains_number: bool = False
    contains_string: bool = False
    contains_integer: bool = False
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    number_format_id: int = 0

    @property
    def is_numeric(self) -> bool:
        return self.contains_number and not self.contains_string


class PivotCacheDefinition(BaseModel):
    cache_id: int
    source_sheet: str
    source_range: str  # e.g. "A1:D100", header row included
    fields: List[CacheField] = Field(default_factory=list)
    refresh_on_load: bool = True
    record_count: int = 0

    def refresh(self, workbook: "Workbook", recompute_layout: bool = False) -> None:
        """Re-scan the source range and rebuild every cache field.

        ``recompute_layout=True`` asks for the pivot tables' rendered layout
        to be rebuilt as well, which is not supported.
        """
        if recompute_layout:
            raise UnsupportedFeatureError(
                "Pivot table layout recomputation is not supported; "
                "the cache is marked refreshOnLoad instead"
            )
        fields, records = scan_source(workbook, self.source_sheet, self.source_range)
        self.fields = fields
        self.record_count = records
        logger.info(f"[PIVOT] Refreshed cache {self.cache_id} from {self.source_sheet}!{self.source_range}: "
                    f"{len(fields)} fields, {records} records")


class DataField(BaseModel):
    """An aggregated value column of a pivot table."""
    field_index: int
    function: AggregateFunction = "sum"
    name: Optional[str] = None  # Display label, e.g. "Sum of Sales"


class PivotTable(BaseModel):
    name: str
    cache_id: int
    location: str  # Top-left target cell, e.g. "F2"
    row_fields: List[int] = Field(default_factory=list)
    column_fields: List[int] = Field(default_factory=list)
    data_fields: List[DataField] = Field(default_factory=list)
    style_name: Optional[str] = "PivotStyleLight16"


def scan_source(workbook: "Workbook", sheet_name: str, source_range: str):
    """Build cache fields from a source range. Returns (fields, record_count)."""
    if not workbook.has_sheet(sheet_name):
        raise DanglingReferenceError(f"Pivot source sheet not found: {sheet_name}")
    sheet = workbook[sheet_name]
    rng = CellRange.from_string(source_range)

    fields: List[CacheField] = []
    for col in range(rng.min_col, rng.max_col + 1):
        header = sheet.get_value((rng.min_row, col))
        name = str(header) if header not in (None, "") else f"Column{col - rng.min_col + 1}"
        field = CacheField(name=name)
        seen = set()
        for row in range(rng.min_row + 1, rng.max_row + 1):
            value = sheet.get_value((row, col))
            if value is None or value == "":
                field.contains_blank = True
                value = None
            elif isinstance(value, bool):
                field.contains_string = True
            elif isinstance(value, (int, float)):
                field.contains_number = True
                if float(value).is_integer():
                    field.contains_integer = True
                field.min_value = value if field.min_value is None else min(field.min_value, value)
                field.max_value = value if field.max_value is None else max(field.max_value, value)
            else:
                field.contains_string = True
                value = str(value)
            key = (type(value).__name__, value)
            if key not in seen:
                seen.add(key)
                field.shared_items.append(value)
        fields.append(field)
    return fields, max(rng.max_row - rng.min_row, 0)
