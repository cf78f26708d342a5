"""Worksheet model.

A worksheet holds a sparse cell grid keyed by (row, column) plus everything
that hangs off a sheet in a spreadsheet package:
- row/column metadata and merged ranges
- view settings (zoom, panes, gridlines, tab color, selection)
- page setup, margins, header/footer, print options, page breaks
- comments, hyperlinks, auto filter, protection
- conditional formatting, data validation
- drawings (shapes, text boxes, connectors, pictures, charts), OLE objects
- tables and pivot tables
- elements the model does not cover, kept verbatim for round-trip

Cell-addressing methods accept either an A1 string ("B3") or a
(row, column) pair of 1-based integers. Style methods also accept ranges.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from .cells import Cell, CellType, infer_value, lexical_to_number
from .charts import Chart, ChartSeries
from .conditional_formatting import (
    DEFAULT_DATA_BAR_COLOR,
    DEFAULT_MAX_COLOR,
    DEFAULT_MID_COLOR,
    DEFAULT_MIN_COLOR,
    AboveAverageRule,
    CellIsRule,
    Cfvo,
    ColorScaleRule,
    ConditionalFormattingList,
    ConditionalFormattingRule,
    DataBarRule,
    ExpressionRule,
    IconSetRule,
    TextRule,
    Top10Rule,
    text_rule_formula,
)
from .data_validation import DataValidationList, DataValidationRule
from .drawing import (
    Connector,
    DrawingAnchor,
    OleObject,
    PartLink,
    Picture,
    RawAnchor,
    Shape,
    TextBox,
    guess_image_extension,
)
from .exceptions import DanglingReferenceError, MergeConflictError, NameConflictError
from .number_format import (
    FORMAT_DATE,
    FORMAT_DATETIME,
    FORMAT_TIME,
    format_value,
    to_excel_serial,
)
from .pivot import PivotTable
from .properties import SheetProtection
from .references import (
    CellRange,
    col_index_to_letter,
    col_letter_to_index,
    coordinate,
    parse_cell_ref,
    parse_sqref,
    quote_sheet_name,
    shift_index,
    shift_formula,
    shift_range,
    shift_sqref,
)
from .shared_strings import RichText, plain_text
from .styles import (
    BORDER_STYLES,
    PATTERN_TYPES,
    Alignment,
    Border,
    Color,
    DifferentialStyle,
    Fill,
    Font,
    GradientFill,
    GradientStop,
    Protection,
    Side,
    StyleSpec,
    as_color,
    normalize_rgb,
)
from .tables import Table, TableColumn, TableStyleInfo

if TYPE_CHECKING:
    from .workbook import Workbook

logger = logging.getLogger(__name__)

CellRef = Union[str, Tuple[int, int]]
DrawingObject = Union[Shape, TextBox, Connector, Picture, Chart, RawAnchor]

BORDER_SIDES = ("left", "right", "top", "bottom", "diagonal")


# =============================================================================
# SHEET METADATA
# =============================================================================

@dataclass
class RowDimension:
    height: Optional[float] = None  # Points
    hidden: bool = False
    custom_height: bool = False
    style_index: int = 0  # 0 = no row style
    outline_level: int = 0
    collapsed: bool = False


@dataclass
class ColumnDimension:
    width: Optional[float] = None  # Character widths
    hidden: bool = False
    best_fit: bool = False
    custom_width: bool = False
    style_index: int = 0
    outline_level: int = 0
    collapsed: bool = False


class Pane(BaseModel):
    x_split: float = 0  # Columns when frozen, twips when split
    y_split: float = 0
    top_left_cell: Optional[str] = None
    active_pane: str = "bottomRight"  # bottomRight, topRight, bottomLeft, topLeft
    state: str = "frozen"  # frozen, split, frozenSplit


class Selection(BaseModel):
    pane: Optional[str] = None
    active_cell: str = "A1"
    sqref: str = "A1"


class SheetView(BaseModel):
    """View settings (sheetViews/sheetView)."""
    tab_selected: bool = False
    show_gridlines: bool = True
    show_row_col_headers: bool = True
    show_zeros: bool = True
    right_to_left: bool = False
    view: str = "normal"  # normal, pageLayout, pageBreakPreview
    zoom_scale: int = 100
    zoom_scale_normal: Optional[int] = None
    zoom_scale_page_layout_view: Optional[int] = None
    zoom_scale_sheet_layout_view: Optional[int] = None
    top_left_cell: Optional[str] = None
    workbook_view_id: int = 0
    pane: Optional[Pane] = None
    selections: List[Selection] = Field(default_factory=list)


class SheetFormat(BaseModel):
    default_row_height: float = 15.0
    base_col_width: Optional[int] = None
    default_col_width: Optional[float] = None
    custom_height: bool = False
    zero_height: bool = False


class PageSetup(BaseModel):
    orientation: Optional[str] = None  # portrait, landscape
    paper_size: Optional[int] = None  # 1 = Letter, 9 = A4
    scale: Optional[int] = None  # 10-400
    fit_to_width: Optional[int] = None
    fit_to_height: Optional[int] = None
    first_page_number: Optional[int] = None
    use_first_page_number: bool = False
    horizontal_dpi: Optional[int] = None
    vertical_dpi: Optional[int] = None
    fit_to_page: bool = False  # sheetPr/pageSetUpPr/@fitToPage

    @property
    def is_default(self) -> bool:
        return self == PageSetup()


class PageMargins(BaseModel):
    left: float = 0.7
    right: float = 0.7
    top: float = 0.75
    bottom: float = 0.75
    header: float = 0.3
    footer: float = 0.3


class HeaderFooter(BaseModel):
    odd_header: Optional[str] = None
    odd_footer: Optional[str] = None
    even_header: Optional[str] = None
    even_footer: Optional[str] = None
    first_header: Optional[str] = None
    first_footer: Optional[str] = None
    different_odd_even: bool = False
    different_first: bool = False

    @property
    def is_empty(self) -> bool:
        return self == HeaderFooter()


class PrintOptions(BaseModel):
    horizontal_centered: bool = False
    vertical_centered: bool = False
    headings: bool = False
    grid_lines: bool = False

    @property
    def is_default(self) -> bool:
        return self == PrintOptions()


class Comment(BaseModel):
    text: str
    author: str = ""
    visible: bool = False
    rich_text: Optional[RichText] = None


class Hyperlink(BaseModel):
    target: Optional[str] = None  # External URL / file / mailto
    location: Optional[str] = None  # Internal reference, e.g. "Sheet2!A1"
    tooltip: Optional[str] = None
    display: Optional[str] = None

    @property
    def is_internal(self) -> bool:
        return self.target is None and self.location is not None


class PreservedElement(BaseModel):
    """A worksheet child element the model does not cover, kept as raw XML."""
    tag: str  # Local name, e.g. "ignoredErrors"
    xml: bytes


def _png_size(data: bytes) -> Optional[Tuple[int, int]]:
    if data.startswith(b"\x89PNG\r\n\x1a\n") and len(data) >= 24:
        width, height = struct.unpack(">II", data[16:24])
        return width, height
    return None


# =============================================================================
# WORKSHEET
# =============================================================================

class Worksheet:
    """One sheet of a workbook."""

    def __init__(self, workbook: "Workbook", title: str):
        self._workbook = workbook
        self.title = title
        self.state = "visible"  # visible, hidden, veryHidden
        self.code_name: Optional[str] = None
        self.tab_color: Optional[Color] = None

        self._cells: Dict[Tuple[int, int], Cell] = {}
        self.row_dimensions: Dict[int, RowDimension] = {}
        self.column_dimensions: Dict[int, ColumnDimension] = {}
        self.merged_ranges: List[CellRange] = []

        self.view = SheetView()
        self.sheet_format = SheetFormat()
        self.page_setup = PageSetup()
        self.page_margins = PageMargins()
        self.header_footer = HeaderFooter()
        self.print_options = PrintOptions()
        self.row_breaks: List[int] = []
        self.col_breaks: List[int] = []

        self.comments: Dict[Tuple[int, int], Comment] = {}
        self.hyperlinks: Dict[Tuple[int, int], Hyperlink] = {}
        self.auto_filter: Optional[str] = None
        self.auto_filter_criteria: List[bytes] = []  # Raw filterColumn / sortState children
        self.protection: Optional[SheetProtection] = None

        self.conditional_formatting = ConditionalFormattingList()
        self.data_validations = DataValidationList()

        self.drawings: List[DrawingObject] = []
        self.ole_objects: List[OleObject] = []
        self.tables: List[Table] = []
        self.pivot_tables: List[PivotTable] = []

        self.preserved_elements: List[PreservedElement] = []
        self.preserved_links: List[PartLink] = []  # Relationships referenced by preserved XML

        self._loader: Optional[Callable[["Worksheet"], None]] = None

    def __repr__(self) -> str:
        return f"<Worksheet {self.title!r}>"

    # -------------------------------------------------------------------------
    # Lazy loading
    # -------------------------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._loader is None

    def _set_loader(self, loader: Callable[["Worksheet"], None]) -> None:
        self._loader = loader

    def _ensure_loaded(self) -> None:
        if self._loader is None:
            return
        with self._workbook._load_lock:
            loader = self._loader
            if loader is None:
                return
            self._loader = None
            try:
                loader(self)
            except Exception:
                self._loader = loader
                raise

    # -------------------------------------------------------------------------
    # Addressing
    # -------------------------------------------------------------------------

    @staticmethod
    def _rc(ref: CellRef) -> Tuple[int, int]:
        if isinstance(ref, tuple):
            row, col = ref
            if row < 1 or col < 1:
                raise DanglingReferenceError(f"Invalid cell position: {ref}")
            return row, col
        _, col, row = parse_cell_ref(ref)
        return row, col

    @staticmethod
    def _range(ref: Union[CellRef, CellRange]) -> CellRange:
        if isinstance(ref, CellRange):
            return ref
        if isinstance(ref, tuple):
            return CellRange.from_cell(*ref)
        return CellRange.from_string(ref)

    @staticmethod
    def _col(col: Union[str, int]) -> int:
        return col if isinstance(col, int) else col_letter_to_index(col)

    @property
    def workbook(self) -> "Workbook":
        return self._workbook

    @property
    def index(self) -> int:
        return self._workbook.index_of(self.title)

    # -------------------------------------------------------------------------
    # Cells
    # -------------------------------------------------------------------------

    def get_cell(self, ref: CellRef) -> Optional[Cell]:
        return self._cells.get(self._rc(ref))

    def cell(self, ref: CellRef) -> Cell:
        """Return the cell at ``ref``, creating an empty one if needed."""
        key = self._rc(ref)
        found = self._cells.get(key)
        if found is None:
            found = Cell(row=key[0], column=key[1], style_index=self._default_style_for(*key))
            self._cells[key] = found
        return found

    def _default_style_for(self, row: int, col: int) -> int:
        row_dim = self.row_dimensions.get(row)
        if row_dim and row_dim.style_index:
            return row_dim.style_index
        col_dim = self.column_dimensions.get(col)
        if col_dim and col_dim.style_index:
            return col_dim.style_index
        return 0

    def _put_cell(self, cell: Cell) -> None:
        """Insert a fully built cell (used by the reader)."""
        self._cells[(cell.row, cell.column)] = cell

    def iter_cells(self) -> Iterator[Cell]:
        """All stored cells in row-major order."""
        for key in sorted(self._cells):
            yield self._cells[key]

    def iter_rows(
        self,
        min_row: int = 1,
        max_row: Optional[int] = None,
        min_col: int = 1,
        max_col: Optional[int] = None,
        values_only: bool = True,
    ) -> Iterator[list]:
        max_row = max_row or self.max_row
        max_col = max_col or self.max_column
        for row in range(min_row, max_row + 1):
            if values_only:
                yield [self.get_value((row, col)) for col in range(min_col, max_col + 1)]
            else:
                yield [self._cells.get((row, col)) for col in range(min_col, max_col + 1)]

    @property
    def cell_count(self) -> int:
        return len(self._cells)

    @property
    def max_row(self) -> int:
        return max((r for r, _ in self._cells), default=0)

    @property
    def max_column(self) -> int:
        return max((c for _, c in self._cells), default=0)

    @property
    def dimensions(self) -> str:
        """Used range, e.g. "A1:D20" ("A1" for an empty sheet)."""
        if not self._cells:
            return "A1"
        rows = [r for r, _ in self._cells]
        cols = [c for _, c in self._cells]
        return CellRange(min(rows), min(cols), max(rows), max(cols)).coord

    def _check_merge_origin(self, row: int, col: int) -> None:
        for rng in self.merged_ranges:
            if rng.contains(row, col) and (row, col) != rng.top_left:
                raise MergeConflictError(
                    f"{coordinate(row, col)} is inside merged range {rng.coord}; "
                    f"only {coordinate(*rng.top_left)} can hold content"
                )

    def set_cell_value(self, ref: CellRef, value: Any) -> Cell:
        """Store a value, inferring its type.

        Numeric text is stored as a number (keeping its lexical form),
        "TRUE"/"FALSE" as booleans, error codes as errors, other text as a
        shared string. Dates become serial numbers and get a date format if
        the cell has none.
        """
        row, col = self._rc(ref)
        self._check_merge_origin(row, col)
        data_type, stored, is_date = infer_value(value)
        target = self.cell((row, col))
        target.clear_value()
        if data_type is None:
            return target
        if data_type == CellType.INLINE_STRING:
            target.data_type = CellType.SHARED_STRING
            target.value = self._workbook.shared_strings.intern(stored)
        else:
            target.data_type = data_type
            target.value = stored
        if is_date and self.get_number_format((row, col)) == "General":
            if isinstance(value, datetime):
                code = FORMAT_DATETIME if (value.hour, value.minute, value.second) != (0, 0, 0) else FORMAT_DATE
            elif isinstance(value, time):
                code = FORMAT_TIME
            else:
                code = FORMAT_DATE
            self.set_number_format((row, col), code)
        return target

    def set_text(self, ref: CellRef, text: str) -> Cell:
        """Store text as a shared string without type inference."""
        row, col = self._rc(ref)
        self._check_merge_origin(row, col)
        target = self.cell((row, col))
        target.clear_value()
        target.data_type = CellType.SHARED_STRING
        target.value = self._workbook.shared_strings.intern(text)
        return target

    def set_inline_string(self, ref: CellRef, text: Union[str, RichText]) -> Cell:
        row, col = self._rc(ref)
        self._check_merge_origin(row, col)
        target = self.cell((row, col))
        target.clear_value()
        target.data_type = CellType.INLINE_STRING
        target.value = text
        return target

    def set_rich_text(self, ref: CellRef, rich: RichText) -> Cell:
        row, col = self._rc(ref)
        self._check_merge_origin(row, col)
        target = self.cell((row, col))
        target.clear_value()
        target.data_type = CellType.SHARED_STRING
        target.value = self._workbook.shared_strings.intern(rich)
        return target

    def get_rich_text(self, ref: CellRef) -> Optional[RichText]:
        found = self.get_cell(ref)
        if found is None:
            return None
        if found.data_type == CellType.SHARED_STRING:
            entry = self._workbook.shared_strings.get(found.value)
        elif found.data_type == CellType.INLINE_STRING:
            entry = found.value
        else:
            return None
        return entry if isinstance(entry, RichText) else None

    def set_formula(self, ref: CellRef, formula: str, cached_value: Any = None) -> Cell:
        """Store formula text (leading '=' optional). The result is never computed."""
        row, col = self._rc(ref)
        self._check_merge_origin(row, col)
        target = self.cell((row, col))
        target.clear_value()
        target.formula = formula[1:] if formula.startswith("=") else formula
        if cached_value is not None:
            data_type, stored, _ = infer_value(cached_value)
            if data_type == CellType.INLINE_STRING:
                data_type, stored = CellType.FORMULA_STRING, plain_text(stored)
            target.data_type = data_type
            target.value = stored
        return target

    def set_array_formula(self, ref: Union[str, CellRange], formula: str) -> Cell:
        """Store an array (CSE) formula over a range; the master is the top-left cell."""
        rng = self._range(ref)
        target = self.set_formula(rng.top_left, formula)
        target.formula_type = "array"
        target.formula_ref = rng.coord
        return target

    def get_formula(self, ref: CellRef) -> str:
        found = self.get_cell(ref)
        return found.formula or "" if found else ""

    def get_value(self, ref: CellRef) -> Any:
        """Typed value: int/float, str, bool, error code text or None."""
        found = self._cells.get(self._rc(ref))
        if found is None or found.value is None:
            return None
        if found.data_type == CellType.NUMBER:
            return lexical_to_number(found.value)
        if found.data_type == CellType.SHARED_STRING:
            return plain_text(self._workbook.shared_strings.get(found.value))
        if found.data_type == CellType.INLINE_STRING:
            return plain_text(found.value)
        return found.value

    def get_raw_value(self, ref: CellRef) -> str:
        """The stored value as text, before number formatting."""
        found = self._cells.get(self._rc(ref))
        if found is None or found.value is None:
            return ""
        if found.data_type == CellType.BOOLEAN:
            return "TRUE" if found.value else "FALSE"
        if found.data_type == CellType.SHARED_STRING:
            return plain_text(self._workbook.shared_strings.get(found.value))
        if found.data_type == CellType.INLINE_STRING:
            return plain_text(found.value)
        return str(found.value)

    def get_formatted_value(self, ref: CellRef) -> str:
        """The value as a spreadsheet application would display it."""
        value = self.get_value(ref)
        if value is None:
            return ""
        found = self._cells[self._rc(ref)]
        if found.data_type in (CellType.ERROR, CellType.DATE):
            return str(value)
        return format_value(value, self.get_number_format(ref))

    def remove_cell(self, ref: CellRef) -> bool:
        key = self._rc(ref)
        self.comments.pop(key, None)
        self.hyperlinks.pop(key, None)
        return self._cells.pop(key, None) is not None

    def clear_range(self, ref: Union[str, CellRange]) -> None:
        for key in self._range(ref).cells():
            existing = self._cells.get(key)
            if existing is not None:
                existing.clear_value()

    def move_range(self, ref: Union[str, CellRange], rows: int = 0, cols: int = 0) -> None:
        """Move the cells of a range; cells at the destination are overwritten."""
        rng = self._range(ref)
        moving = [(key, self._cells.pop(key)) for key in list(rng.cells()) if key in self._cells]
        for (row, col), moved in moving:
            new_row, new_col = row + rows, col + cols
            if new_row < 1 or new_col < 1:
                raise DanglingReferenceError(f"Move would place {coordinate(row, col)} off the sheet")
            moved.row, moved.column = new_row, new_col
            self._cells[(new_row, new_col)] = moved

    # -------------------------------------------------------------------------
    # Merges
    # -------------------------------------------------------------------------

    def merge_cells(self, ref: Union[str, CellRange]) -> CellRange:
        """Merge a range. Content outside the top-left cell is cleared."""
        rng = self._range(ref)
        for existing in self.merged_ranges:
            if existing == rng:
                return existing
            if existing.overlaps(rng):
                raise MergeConflictError(f"Merge {rng.coord} overlaps existing merge {existing.coord}")
        for key in rng.cells():
            if key != rng.top_left and key in self._cells:
                self._cells[key].clear_value()
                if self._cells[key].style_index == 0:
                    del self._cells[key]
        self.merged_ranges.append(rng)
        return rng

    def unmerge_cells(self, ref: Union[str, CellRange]) -> bool:
        rng = self._range(ref)
        before = len(self.merged_ranges)
        self.merged_ranges = [m for m in self.merged_ranges if m != rng]
        return len(self.merged_ranges) != before

    def get_merged_ranges(self) -> List[str]:
        return [m.coord for m in self.merged_ranges]

    # -------------------------------------------------------------------------
    # Rows and columns
    # -------------------------------------------------------------------------

    def _row_dim(self, row: int) -> RowDimension:
        return self.row_dimensions.setdefault(row, RowDimension())

    def _col_dim(self, col: Union[str, int]) -> ColumnDimension:
        return self.column_dimensions.setdefault(self._col(col), ColumnDimension())

    def set_row_height(self, row: int, height: float) -> None:
        dim = self._row_dim(row)
        dim.height = height
        dim.custom_height = True

    def get_row_height(self, row: int) -> float:
        dim = self.row_dimensions.get(row)
        if dim and dim.height is not None:
            return dim.height
        return self.sheet_format.default_row_height

    def set_row_hidden(self, row: int, hidden: bool = True) -> None:
        self._row_dim(row).hidden = hidden

    def get_row_hidden(self, row: int) -> bool:
        dim = self.row_dimensions.get(row)
        return bool(dim and dim.hidden)

    def set_column_width(self, col: Union[str, int], width: float) -> None:
        dim = self._col_dim(col)
        dim.width = width
        dim.custom_width = True

    def get_column_width(self, col: Union[str, int]) -> float:
        dim = self.column_dimensions.get(self._col(col))
        if dim and dim.width is not None:
            return dim.width
        return self.sheet_format.default_col_width or 8.43

    def set_column_auto_width(self, col: Union[str, int], auto: bool = True) -> None:
        """Mark a column best-fit and size it from its current formatted content."""
        index = self._col(col)
        dim = self._col_dim(index)
        dim.best_fit = auto
        if not auto:
            return
        lengths = [
            len(self.get_formatted_value((c.row, c.column)))
            for c in self._cells.values()
            if c.column == index
        ]
        if lengths:
            dim.width = min(255.0, max(8.43, max(lengths) * 1.1 + 2))
            dim.custom_width = True

    def get_column_auto_width(self, col: Union[str, int]) -> bool:
        dim = self.column_dimensions.get(self._col(col))
        return bool(dim and dim.best_fit)

    def set_column_hidden(self, col: Union[str, int], hidden: bool = True) -> None:
        self._col_dim(col).hidden = hidden

    def get_column_hidden(self, col: Union[str, int]) -> bool:
        dim = self.column_dimensions.get(self._col(col))
        return bool(dim and dim.hidden)

    def insert_rows(self, at: int, amount: int = 1) -> None:
        self._shift("row", at, amount)

    def remove_rows(self, at: int, amount: int = 1) -> None:
        self._shift("row", at, -amount)

    def insert_columns(self, at: Union[str, int], amount: int = 1) -> None:
        self._shift("col", self._col(at), amount)

    def remove_columns(self, at: Union[str, int], amount: int = 1) -> None:
        self._shift("col", self._col(at), -amount)

    def _shift(self, axis: str, at: int, amount: int) -> None:
        """Shift everything positional on the sheet for a row/column insert or delete.

        References to the sheet in formulas, defined names, hyperlink
        locations and chart series are rewritten across the workbook.
        """
        if amount == 0:
            return

        def shift_key(key: Tuple[int, int]) -> Optional[Tuple[int, int]]:
            row, col = key
            if axis == "row":
                new = shift_index(row, at, amount)
                return None if new is None else (new, col)
            new = shift_index(col, at, amount)
            return None if new is None else (row, new)

        cells: Dict[Tuple[int, int], Cell] = {}
        for key, moved in self._cells.items():
            new_key = shift_key(key)
            if new_key is not None:
                moved.row, moved.column = new_key
                cells[new_key] = moved
        self._cells = cells

        for attr in ("comments", "hyperlinks"):
            mapping = getattr(self, attr)
            setattr(self, attr, {
                shift_key(k): v for k, v in mapping.items() if shift_key(k) is not None
            })

        dims = self.row_dimensions if axis == "row" else self.column_dimensions
        shifted_dims = {}
        for idx, dim in dims.items():
            new_idx = shift_index(idx, at, amount)
            if new_idx is not None:
                shifted_dims[new_idx] = dim
        if axis == "row":
            self.row_dimensions = shifted_dims
            self.row_breaks = [b for b in (shift_index(x, at, amount) for x in self.row_breaks) if b]
        else:
            self.column_dimensions = shifted_dims
            self.col_breaks = [b for b in (shift_index(x, at, amount) for x in self.col_breaks) if b]

        self.merged_ranges = [
            m for m in (shift_range(r, axis, at, amount) for r in self.merged_ranges)
            if m is not None and m.size > 1
        ]

        kept_cf: List[ConditionalFormattingRule] = []
        for rule in self.conditional_formatting:
            rule.sqref = shift_sqref(rule.sqref, axis, at, amount)
            if rule.sqref:
                kept_cf.append(rule)
        self.conditional_formatting._rules = kept_cf

        kept_dv: List[DataValidationRule] = []
        for dv in self.data_validations:
            dv.sqref = shift_sqref(dv.sqref, axis, at, amount)
            if dv.sqref:
                kept_dv.append(dv)
        self.data_validations.replace_all(kept_dv)

        if self.auto_filter:
            shifted_filter = shift_sqref(self.auto_filter, axis, at, amount) or None
            if shifted_filter is None or (axis == "col" and shifted_filter != self.auto_filter):
                # Column ids in the criteria are relative to the old range
                self.auto_filter_criteria = []
            self.auto_filter = shifted_filter

        kept_tables: List[Table] = []
        for table in self.tables:
            shifted = shift_range(table.range, axis, at, amount)
            if shifted is None:
                logger.info(f"[SHEET] Dropped table {table.name} on {self.title}: its range was deleted")
                continue
            table.ref = shifted.coord
            kept_tables.append(table)
        self.tables = kept_tables

        for obj in self.drawings:
            anchor = getattr(obj, "anchor", None)
            if anchor is None or anchor.anchor_type == "absolute":
                continue
            for marker in (anchor.from_marker, anchor.to_marker):
                if marker is None:
                    continue
                if axis == "row":
                    marker.row = max((shift_index(marker.row + 1, at, amount) or at) - 1, 0)
                else:
                    marker.col = max((shift_index(marker.col + 1, at, amount) or at) - 1, 0)

        self._shift_references(axis, at, amount)

    def _shift_references(self, axis: str, at: int, amount: int) -> None:
        def shift(text: Optional[str], on_sheet: bool) -> Optional[str]:
            return shift_formula(text, self.title, axis, at, amount, on_sheet=on_sheet)

        for ws in self._workbook.worksheets:
            own = ws is self
            for target in ws.iter_cells():
                if target.formula:
                    target.formula = shift(target.formula, own)
                if own and target.formula_ref:
                    target.formula_ref = shift_sqref(target.formula_ref, axis, at, amount) or None
            for link in ws.hyperlinks.values():
                link.location = shift(link.location, own)
            for dv in ws.data_validations:
                dv.formula1 = shift(dv.formula1, own)
                dv.formula2 = shift(dv.formula2, own)
            for chart in ws.get_charts():
                for series in chart.series:
                    series.values = shift(series.values, False)
                    series.categories = shift(series.categories, False)
                    series.title = shift(series.title, False)
        for defined in self._workbook.defined_names:
            defined.refers_to = shift(defined.refers_to, False)

    # -------------------------------------------------------------------------
    # Styles
    # -------------------------------------------------------------------------

    def get_style(self, ref: CellRef) -> StyleSpec:
        found = self.get_cell(ref)
        index = found.style_index if found else self._default_style_for(*self._rc(ref))
        return self._workbook.styles.resolve(index)

    def set_style(self, ref: Union[CellRef, CellRange], spec: StyleSpec) -> int:
        index = self._workbook.styles.intern(spec)
        for key in self._range(ref).cells():
            self.cell(key).style_index = index
        return index

    def update_style(self, ref: Union[CellRef, CellRange], fn: Callable[[StyleSpec], StyleSpec]) -> None:
        """Apply ``fn`` to the current style of every cell in ``ref`` and intern the result."""
        registry = self._workbook.styles
        cache: Dict[int, int] = {}
        for key in self._range(ref).cells():
            target = self.cell(key)
            old = target.style_index
            if old not in cache:
                cache[old] = registry.intern(fn(registry.resolve(old)))
            target.style_index = cache[old]

    def _update_font(self, ref, **changes) -> None:
        self.update_style(ref, lambda s: s.model_copy(update={"font": s.font.model_copy(update=changes)}))

    def set_font_name(self, ref, name: str) -> None:
        self._update_font(ref, name=name)

    def set_font_size(self, ref, size: float) -> None:
        self._update_font(ref, size=float(size))

    def set_font_bold(self, ref, bold: bool = True) -> None:
        self._update_font(ref, bold=bold)

    def set_font_italic(self, ref, italic: bool = True) -> None:
        self._update_font(ref, italic=italic)

    def set_font_underline(self, ref, underline: Union[bool, str, None] = "single") -> None:
        if underline is True:
            underline = "single"
        self._update_font(ref, underline=underline or None)

    def set_font_strikethrough(self, ref, strike: bool = True) -> None:
        self._update_font(ref, strike=strike)

    def set_font_color(self, ref, color: str) -> None:
        self._update_font(ref, color=Color.from_hex(color))

    def set_font_family(self, ref, family: int) -> None:
        self._update_font(ref, family=family)

    def set_font_scheme(self, ref, scheme: Optional[str]) -> None:
        self._update_font(ref, scheme=scheme)

    def set_background_color(self, ref, color: str) -> None:
        """Solid fill in ``color``."""
        fill = Fill.solid(color)
        self.update_style(ref, lambda s: s.model_copy(update={"fill": fill}))

    def set_pattern_fill(self, ref, pattern_type: str, fg_color: Optional[str] = None, bg_color: Optional[str] = None) -> None:
        if pattern_type not in PATTERN_TYPES:
            raise ValueError(f"Unknown pattern type: {pattern_type}")
        fill = Fill(pattern_type=pattern_type, fg_color=as_color(fg_color), bg_color=as_color(bg_color))
        self.update_style(ref, lambda s: s.model_copy(update={"fill": fill}))

    def set_gradient_fill(self, ref, color1: str, color2: str, degree: float = 90.0) -> None:
        fill = Fill(gradient=GradientFill(
            gradient_type="linear",
            degree=degree,
            stops=(
                GradientStop(position=0.0, color=Color.from_hex(color1)),
                GradientStop(position=1.0, color=Color.from_hex(color2)),
            ),
        ))
        self.update_style(ref, lambda s: s.model_copy(update={"fill": fill}))

    def clear_fill(self, ref) -> None:
        self.update_style(ref, lambda s: s.model_copy(update={"fill": Fill(pattern_type="none")}))

    def set_border_style(self, ref, side: str, style: str, color: Optional[str] = None) -> None:
        """Set one border side. ``side`` may also be "all" or "outline" (range perimeter)."""
        if style not in BORDER_STYLES:
            raise ValueError(f"Unknown border style: {style}")
        edge = Side(style=style, color=as_color(color))
        rng = self._range(ref)

        def with_sides(sides: Tuple[str, ...]) -> Callable[[StyleSpec], StyleSpec]:
            def apply(spec: StyleSpec) -> StyleSpec:
                border = spec.border.model_copy(update={s: edge for s in sides})
                return spec.model_copy(update={"border": border})
            return apply

        if side == "all":
            self.update_style(rng, with_sides(("left", "right", "top", "bottom")))
        elif side == "outline":
            for row, col in rng.cells():
                sides = []
                if row == rng.min_row:
                    sides.append("top")
                if row == rng.max_row:
                    sides.append("bottom")
                if col == rng.min_col:
                    sides.append("left")
                if col == rng.max_col:
                    sides.append("right")
                if sides:
                    self.update_style((row, col), with_sides(tuple(sides)))
        elif side in BORDER_SIDES:
            self.update_style(rng, with_sides((side,)))
        else:
            raise ValueError(f"Unknown border side: {side}")

    def set_number_format(self, ref, code: str) -> None:
        self.update_style(ref, lambda s: s.model_copy(update={"number_format": code}))

    def set_cell_alignment(self, ref, horizontal: Optional[str] = None, vertical: Optional[str] = None) -> None:
        changes = {}
        if horizontal is not None:
            changes["horizontal"] = horizontal
        if vertical is not None:
            changes["vertical"] = vertical
        self._update_alignment(ref, **changes)

    def _update_alignment(self, ref, **changes) -> None:
        self.update_style(ref, lambda s: s.model_copy(update={"alignment": s.alignment.model_copy(update=changes)}))

    def set_wrap_text(self, ref, wrap: bool = True) -> None:
        self._update_alignment(ref, wrap_text=wrap)

    def set_cell_rotation(self, ref, degrees: int) -> None:
        if not (0 <= degrees <= 180 or degrees == 255):
            raise ValueError(f"Rotation must be 0-180 or 255, got {degrees}")
        self._update_alignment(ref, text_rotation=degrees)

    def set_cell_indent(self, ref, indent: int) -> None:
        self._update_alignment(ref, indent=indent)

    def set_cell_protection(self, ref, locked: bool = True, hidden: bool = False) -> None:
        protection = Protection(locked=locked, hidden=hidden)
        self.update_style(ref, lambda s: s.model_copy(update={"protection": protection}))

    def set_row_style(self, row: int, bg_color: Optional[str] = None, font_color: Optional[str] = None) -> None:
        """Give a row a default fill and font colour.

        Existing cells in the row take the same fill and font colour on top of
        their own style; their other properties are kept.
        """
        registry = self._workbook.styles

        def apply(spec: StyleSpec) -> StyleSpec:
            if bg_color:
                spec = spec.model_copy(update={"fill": Fill.solid(bg_color)})
            if font_color:
                spec = spec.model_copy(update={"font": spec.font.model_copy(update={"color": Color.from_hex(font_color)})})
            return spec

        dim = self._row_dim(row)
        dim.style_index = registry.intern(apply(registry.resolve(dim.style_index)))
        for key, target in self._cells.items():
            if key[0] == row:
                target.style_index = registry.intern(apply(registry.resolve(target.style_index)))

    def copy_row_styling(self, source_row: int, target_row: int, start_col: Optional[int] = None, end_col: Optional[int] = None) -> None:
        start_col = start_col or 1
        end_col = end_col or max(self.max_column, 1)
        for col in range(start_col, end_col + 1):
            src = self._cells.get((source_row, col))
            if src is not None:
                self.cell((target_row, col)).style_index = src.style_index
        if source_row in self.row_dimensions:
            src_dim = self.row_dimensions[source_row]
            dim = self._row_dim(target_row)
            dim.height, dim.custom_height, dim.style_index = src_dim.height, src_dim.custom_height, src_dim.style_index

    def copy_column_styling(self, source_col: Union[str, int], target_col: Union[str, int], start_row: Optional[int] = None, end_row: Optional[int] = None) -> None:
        source_col, target_col = self._col(source_col), self._col(target_col)
        start_row = start_row or 1
        end_row = end_row or max(self.max_row, 1)
        for row in range(start_row, end_row + 1):
            src = self._cells.get((row, source_col))
            if src is not None:
                self.cell((row, target_col)).style_index = src.style_index
        if source_col in self.column_dimensions:
            src_dim = self.column_dimensions[source_col]
            dim = self._col_dim(target_col)
            dim.width, dim.custom_width, dim.style_index = src_dim.width, src_dim.custom_width, src_dim.style_index

    # Style queries

    def get_font_name(self, ref: CellRef) -> str:
        return self.get_style(ref).font.name or ""

    def get_font_size(self, ref: CellRef) -> Optional[float]:
        return self.get_style(ref).font.size

    def get_font_bold(self, ref: CellRef) -> bool:
        return self.get_style(ref).font.bold

    def get_font_italic(self, ref: CellRef) -> bool:
        return self.get_style(ref).font.italic

    def get_font_underline(self, ref: CellRef) -> str:
        return self.get_style(ref).font.underline or "none"

    def get_font_strikethrough(self, ref: CellRef) -> bool:
        return self.get_style(ref).font.strike

    def get_font_color(self, ref: CellRef) -> str:
        color = self.get_style(ref).font.color
        return color.hex if color else ""

    def get_font_family(self, ref: CellRef) -> Optional[int]:
        return self.get_style(ref).font.family

    def get_font_scheme(self, ref: CellRef) -> Optional[str]:
        return self.get_style(ref).font.scheme

    def get_cell_background_color(self, ref: CellRef) -> str:
        """The visible fill color: the foreground of a solid fill, else the pattern background."""
        fill = self.get_style(ref).fill
        if fill.pattern_type == "solid" and fill.fg_color:
            return fill.fg_color.hex
        return fill.bg_color.hex if fill.bg_color else ""

    def get_cell_foreground_color(self, ref: CellRef) -> str:
        fill = self.get_style(ref).fill
        return fill.fg_color.hex if fill.fg_color else ""

    def get_cell_pattern_type(self, ref: CellRef) -> str:
        return self.get_style(ref).fill.pattern_type or "none"

    def get_border_style(self, ref: CellRef, side: str) -> str:
        if side not in BORDER_SIDES:
            raise ValueError(f"Unknown border side: {side}")
        return getattr(self.get_style(ref).border, side).style or "none"

    def get_border_color(self, ref: CellRef, side: str) -> str:
        if side not in BORDER_SIDES:
            raise ValueError(f"Unknown border side: {side}")
        color = getattr(self.get_style(ref).border, side).color
        return color.hex if color else ""

    def get_number_format(self, ref: CellRef) -> str:
        return self.get_style(ref).number_format

    def get_cell_alignment(self, ref: CellRef) -> Alignment:
        return self.get_style(ref).alignment

    def get_wrap_text(self, ref: CellRef) -> bool:
        return self.get_style(ref).alignment.wrap_text

    def get_cell_rotation(self, ref: CellRef) -> int:
        return self.get_style(ref).alignment.text_rotation

    def get_cell_indent(self, ref: CellRef) -> int:
        return self.get_style(ref).alignment.indent

    def get_cell_protection(self, ref: CellRef) -> Protection:
        return self.get_style(ref).protection

    # -------------------------------------------------------------------------
    # Comments and hyperlinks
    # -------------------------------------------------------------------------

    def add_comment(self, ref: CellRef, text: str, author: str = "", visible: bool = False) -> Comment:
        comment = Comment(text=text, author=author, visible=visible)
        self.comments[self._rc(ref)] = comment
        return comment

    def get_comment(self, ref: CellRef) -> Optional[Comment]:
        return self.comments.get(self._rc(ref))

    def update_comment(self, ref: CellRef, text: str, author: Optional[str] = None) -> Comment:
        key = self._rc(ref)
        existing = self.comments.get(key)
        if existing is None:
            raise DanglingReferenceError(f"No comment at {coordinate(*key)}")
        existing.text = text
        existing.rich_text = None
        if author is not None:
            existing.author = author
        return existing

    def remove_comment(self, ref: CellRef) -> bool:
        return self.comments.pop(self._rc(ref), None) is not None

    def has_comments(self) -> bool:
        return bool(self.comments)

    def get_comments_count(self) -> int:
        return len(self.comments)

    def add_hyperlink(self, ref: CellRef, target: str, tooltip: Optional[str] = None, internal: bool = False) -> Hyperlink:
        """Link a cell to a URL, or to a location in the workbook when ``internal``."""
        link = Hyperlink(location=target, tooltip=tooltip) if internal else Hyperlink(target=target, tooltip=tooltip)
        self.hyperlinks[self._rc(ref)] = link
        return link

    def get_hyperlink(self, ref: CellRef) -> Optional[Hyperlink]:
        return self.hyperlinks.get(self._rc(ref))

    def update_hyperlink(self, ref: CellRef, target: str, tooltip: Optional[str] = None) -> Hyperlink:
        key = self._rc(ref)
        link = self.hyperlinks.get(key)
        if link is None:
            raise DanglingReferenceError(f"No hyperlink at {coordinate(*key)}")
        if link.is_internal:
            link.location = target
        else:
            link.target = target
        if tooltip is not None:
            link.tooltip = tooltip
        return link

    def remove_hyperlink(self, ref: CellRef) -> bool:
        return self.hyperlinks.pop(self._rc(ref), None) is not None

    def has_hyperlink(self, ref: CellRef) -> bool:
        return self._rc(ref) in self.hyperlinks

    def get_hyperlinks(self) -> Dict[str, Hyperlink]:
        return {coordinate(*key): link for key, link in sorted(self.hyperlinks.items())}

    # -------------------------------------------------------------------------
    # Auto filter
    # -------------------------------------------------------------------------

    def set_auto_filter(self, ref: Union[str, CellRange]) -> None:
        self.auto_filter = self._range(ref).coord
        self.auto_filter_criteria = []

    def get_auto_filter(self) -> Optional[str]:
        return self.auto_filter

    def remove_auto_filter(self) -> None:
        self.auto_filter = None
        self.auto_filter_criteria = []

    def has_auto_filter(self) -> bool:
        return self.auto_filter is not None

    # -------------------------------------------------------------------------
    # Conditional formatting
    # -------------------------------------------------------------------------

    def add_conditional_rule(self, ref: str, payload, dxf: Optional[DifferentialStyle] = None,
                             stop_if_true: bool = False) -> ConditionalFormattingRule:
        return self.conditional_formatting.add_rule(ref, payload, dxf=dxf, stop_if_true=stop_if_true)

    def add_cell_value_rule(self, ref: str, operator: str, formula1: str, formula2: Optional[str] = None,
                            fill_color: Optional[str] = None, font_color: Optional[str] = None) -> ConditionalFormattingRule:
        formulas = [formula1] + ([formula2] if formula2 is not None else [])
        return self.add_conditional_rule(ref, CellIsRule(operator=operator, formulas=formulas),
                                         dxf=_dxf(fill_color, font_color))

    def add_cell_is_rule(self, ref: str, operator: str, text: str,
                         fill_color: Optional[str] = None, font_color: Optional[str] = None) -> ConditionalFormattingRule:
        """cellIs rule against literal text (quoted into a formula)."""
        quoted = '"' + text.replace('"', '""') + '"'
        return self.add_cell_value_rule(ref, operator, quoted, fill_color=fill_color, font_color=font_color)

    def add_text_rule(self, ref: str, operator: str, text: str,
                      fill_color: Optional[str] = None, font_color: Optional[str] = None) -> ConditionalFormattingRule:
        payload = TextRule(operator=operator, text=text, formula=text_rule_formula(operator, text, ref))
        return self.add_conditional_rule(ref, payload, dxf=_dxf(fill_color, font_color))

    def add_top_bottom_rule(self, ref: str, rank: int = 10, bottom: bool = False, percent: bool = False,
                            fill_color: Optional[str] = None, font_color: Optional[str] = None) -> ConditionalFormattingRule:
        return self.add_conditional_rule(ref, Top10Rule(rank=rank, bottom=bottom, percent=percent),
                                         dxf=_dxf(fill_color, font_color))

    def add_above_below_average_rule(self, ref: str, above: bool = True, equal_average: bool = False,
                                     std_dev: Optional[int] = None, fill_color: Optional[str] = None,
                                     font_color: Optional[str] = None) -> ConditionalFormattingRule:
        payload = AboveAverageRule(above_average=above, equal_average=equal_average, std_dev=std_dev)
        return self.add_conditional_rule(ref, payload, dxf=_dxf(fill_color, font_color))

    def add_expression_rule(self, ref: str, formula: str, fill_color: Optional[str] = None,
                            font_color: Optional[str] = None, stop_if_true: bool = False) -> ConditionalFormattingRule:
        formula = formula[1:] if formula.startswith("=") else formula
        return self.add_conditional_rule(ref, ExpressionRule(formula=formula),
                                         dxf=_dxf(fill_color, font_color), stop_if_true=stop_if_true)

    def add_color_scale(self, ref: str, min_color: str = DEFAULT_MIN_COLOR, max_color: str = DEFAULT_MAX_COLOR,
                        mid_color: Optional[str] = None, min_type: str = "min", min_value: Optional[str] = None,
                        max_type: str = "max", max_value: Optional[str] = None, mid_type: str = "percentile",
                        mid_value: str = "50") -> ConditionalFormattingRule:
        """Two-color scale, or three-color when ``mid_color`` is given."""
        cfvos = [Cfvo(type=min_type, value=min_value)]
        colors = [normalize_rgb(min_color)]
        if mid_color is not None:
            cfvos.append(Cfvo(type=mid_type, value=mid_value))
            colors.append(normalize_rgb(mid_color))
        cfvos.append(Cfvo(type=max_type, value=max_value))
        colors.append(normalize_rgb(max_color))
        return self.add_conditional_rule(ref, ColorScaleRule(cfvos=cfvos, colors=colors))

    def add_three_color_scale(self, ref: str) -> ConditionalFormattingRule:
        return self.add_color_scale(ref, DEFAULT_MIN_COLOR, DEFAULT_MAX_COLOR, mid_color=DEFAULT_MID_COLOR)

    def add_data_bar(self, ref: str, color: str = DEFAULT_DATA_BAR_COLOR, min_type: str = "min",
                     min_value: Optional[str] = None, max_type: str = "max", max_value: Optional[str] = None,
                     show_value: bool = True) -> ConditionalFormattingRule:
        payload = DataBarRule(
            min_cfvo=Cfvo(type=min_type, value=min_value),
            max_cfvo=Cfvo(type=max_type, value=max_value),
            color=normalize_rgb(color),
            show_value=show_value,
        )
        return self.add_conditional_rule(ref, payload)

    def add_icon_set(self, ref: str, icon_set: str = "3TrafficLights1", thresholds: Optional[List[str]] = None,
                     threshold_type: str = "percent", reverse: bool = False, show_value: bool = True) -> ConditionalFormattingRule:
        count = int(icon_set[0]) if icon_set[:1].isdigit() else 3
        if thresholds is None:
            step = 100 / count
            thresholds = [str(int(round(step * i))) for i in range(count)]
        cfvos = [Cfvo(type=threshold_type, value=value) for value in thresholds]
        payload = IconSetRule(icon_set=icon_set, cfvos=cfvos, reverse=reverse, show_value=show_value)
        return self.add_conditional_rule(ref, payload)

    def get_conditional_formatting_rules(self, ref: Optional[str] = None, kind: Optional[str] = None) -> List[ConditionalFormattingRule]:
        return self.conditional_formatting.get_rules(ref, kind)

    def get_cell_value_rules(self, ref: Optional[str] = None) -> List[ConditionalFormattingRule]:
        return self.conditional_formatting.get_rules(ref, "cellIs")

    def get_color_scales(self, ref: Optional[str] = None) -> List[ConditionalFormattingRule]:
        return self.conditional_formatting.get_rules(ref, "colorScale")

    def get_data_bars(self, ref: Optional[str] = None) -> List[ConditionalFormattingRule]:
        return self.conditional_formatting.get_rules(ref, "dataBar")

    def get_icon_sets(self, ref: Optional[str] = None) -> List[ConditionalFormattingRule]:
        return self.conditional_formatting.get_rules(ref, "iconSet")

    def get_top_bottom_rules(self, ref: Optional[str] = None) -> List[ConditionalFormattingRule]:
        return self.conditional_formatting.get_rules(ref, "top10")

    def get_above_below_average_rules(self, ref: Optional[str] = None) -> List[ConditionalFormattingRule]:
        return self.conditional_formatting.get_rules(ref, "aboveAverage")

    def get_text_rules(self, ref: Optional[str] = None) -> List[ConditionalFormattingRule]:
        return self.conditional_formatting.get_rules(ref, "text")

    def remove_conditional_formatting(self, ref: str) -> int:
        return self.conditional_formatting.remove_rules(ref)

    # -------------------------------------------------------------------------
    # Data validation
    # -------------------------------------------------------------------------

    def add_data_validation(self, rule: DataValidationRule) -> DataValidationRule:
        return self.data_validations.add(rule)

    def add_list_validation(self, ref: str, options: Union[List[str], str], allow_blank: bool = True,
                            error_title: Optional[str] = None, error_message: Optional[str] = None,
                            prompt_title: Optional[str] = None, prompt: Optional[str] = None) -> DataValidationRule:
        """Dropdown from literal options or from a range/formula source ("=$A$1:$A$5")."""
        if isinstance(options, str):
            formula1 = options[1:] if options.startswith("=") else options
        else:
            formula1 = '"' + ",".join(options) + '"'
        return self.add_data_validation(DataValidationRule(
            sqref=ref, validation_type="list", formula1=formula1, allow_blank=allow_blank,
            show_error_message=True, error_title=error_title, error=error_message,
            show_input_message=prompt is not None, prompt_title=prompt_title, prompt=prompt,
        ))

    def add_number_validation(self, ref: str, operator: str, value1: float, value2: Optional[float] = None,
                              allow_decimal: bool = False, allow_blank: bool = True,
                              error_title: Optional[str] = None, error_message: Optional[str] = None) -> DataValidationRule:
        return self.add_data_validation(DataValidationRule(
            sqref=ref, validation_type="decimal" if allow_decimal else "whole", operator=operator,
            formula1=str(value1), formula2=None if value2 is None else str(value2),
            allow_blank=allow_blank, error_title=error_title, error=error_message,
        ))

    def add_date_validation(self, ref: str, operator: str, date1: date, date2: Optional[date] = None,
                            allow_blank: bool = True, error_title: Optional[str] = None,
                            error_message: Optional[str] = None) -> DataValidationRule:
        def serial(value: date) -> str:
            return str(int(to_excel_serial(value)))
        return self.add_data_validation(DataValidationRule(
            sqref=ref, validation_type="date", operator=operator, formula1=serial(date1),
            formula2=None if date2 is None else serial(date2), allow_blank=allow_blank,
            error_title=error_title, error=error_message,
        ))

    def add_text_length_validation(self, ref: str, operator: str, length1: int, length2: Optional[int] = None,
                                   allow_blank: bool = True, error_title: Optional[str] = None,
                                   error_message: Optional[str] = None) -> DataValidationRule:
        return self.add_data_validation(DataValidationRule(
            sqref=ref, validation_type="textLength", operator=operator, formula1=str(length1),
            formula2=None if length2 is None else str(length2), allow_blank=allow_blank,
            error_title=error_title, error=error_message,
        ))

    def add_custom_validation(self, ref: str, formula: str, allow_blank: bool = True,
                              error_title: Optional[str] = None, error_message: Optional[str] = None) -> DataValidationRule:
        formula = formula[1:] if formula.startswith("=") else formula
        return self.add_data_validation(DataValidationRule(
            sqref=ref, validation_type="custom", formula1=formula, allow_blank=allow_blank,
            error_title=error_title, error=error_message,
        ))

    def remove_data_validation(self, ref: str) -> int:
        return self.data_validations.remove(ref)

    def get_data_validations(self, ref: Optional[str] = None) -> List[DataValidationRule]:
        return self.data_validations.get(ref)

    # -------------------------------------------------------------------------
    # Drawings, images, charts, OLE objects
    # -------------------------------------------------------------------------

    def add_shape(self, from_cell: str, to_cell: str, geometry: str = "rect", text: Optional[str] = None,
                  fill_color: Optional[str] = None, line_color: Optional[str] = None, name: str = "Shape") -> Shape:
        shape = Shape(anchor=DrawingAnchor.two_cell(from_cell, to_cell), geometry=geometry, text=text,
                      fill_color=fill_color, line_color=line_color, name=name)
        self.drawings.append(shape)
        return shape

    def add_text_box(self, from_cell: str, to_cell: str, text: str, fill_color: Optional[str] = None,
                     line_color: Optional[str] = None, name: str = "TextBox") -> TextBox:
        box = TextBox(anchor=DrawingAnchor.two_cell(from_cell, to_cell), text=text,
                      fill_color=fill_color, line_color=line_color, name=name)
        self.drawings.append(box)
        return box

    def add_connector(self, from_cell: str, to_cell: str, line_color: Optional[str] = None,
                      line_width_emu: Optional[int] = None, name: str = "Connector") -> Connector:
        connector = Connector(anchor=DrawingAnchor.two_cell(from_cell, to_cell), line_color=line_color,
                              line_width_emu=line_width_emu, name=name)
        self.drawings.append(connector)
        return connector

    def add_image(self, cell: str, data: bytes, width_px: Optional[float] = None,
                  height_px: Optional[float] = None, name: Optional[str] = None,
                  description: Optional[str] = None) -> Picture:
        """Embed an image with its top-left corner at ``cell``.

        Size defaults to the image's pixel size for PNG data, else 100x100.
        """
        if width_px is None or height_px is None:
            width_px, height_px = _png_size(data) or (100, 100)
        picture = Picture(
            anchor=DrawingAnchor.one_cell(cell, width_px, height_px),
            data=data,
            extension=guess_image_extension(data),
            name=name or f"Picture {len(self.get_images()) + 1}",
            description=description,
        )
        self.drawings.append(picture)
        return picture

    def get_images(self) -> List[Picture]:
        return [d for d in self.drawings if isinstance(d, Picture)]

    def remove_image(self, cell: str) -> bool:
        """Remove pictures anchored at ``cell``."""
        before = len(self.drawings)
        self.drawings = [
            d for d in self.drawings
            if not (isinstance(d, Picture) and d.anchor.from_marker.cell == cell.upper())
        ]
        return len(self.drawings) != before

    def add_chart(self, chart_type: str, from_cell: str, to_cell: str, series: List[ChartSeries],
                  title: Optional[str] = None, **options) -> Chart:
        chart = Chart(anchor=DrawingAnchor.two_cell(from_cell, to_cell), chart_type=chart_type,
                      series=list(series), title=title, **options)
        self.drawings.append(chart)
        return chart

    def get_charts(self) -> List[Chart]:
        return [d for d in self.drawings if isinstance(d, Chart)]

    def get_drawings(self) -> List[DrawingObject]:
        return list(self.drawings)

    def add_ole_object(self, from_cell: str, to_cell: str, data: bytes, prog_id: str = "Package",
                       extension: str = "bin", preview: Optional[bytes] = None) -> OleObject:
        obj = OleObject(anchor=DrawingAnchor.two_cell(from_cell, to_cell), data=data, prog_id=prog_id,
                        extension=extension, preview=preview)
        self.ole_objects.append(obj)
        return obj

    def get_ole_objects(self) -> List[OleObject]:
        return list(self.ole_objects)

    # -------------------------------------------------------------------------
    # Tables
    # -------------------------------------------------------------------------

    def add_table(self, name: str, ref: str, display_name: Optional[str] = None,
                  columns: Optional[List[str]] = None, style_name: Optional[str] = "TableStyleMedium9",
                  totals_row: bool = False) -> Table:
        """Create a table over ``ref``. Column names default to the header row's values."""
        self._workbook._check_table_name(name)
        rng = CellRange.from_string(ref)
        width = rng.max_col - rng.min_col + 1
        if columns is None:
            columns = []
            for offset in range(width):
                header = self.get_value((rng.min_row, rng.min_col + offset))
                columns.append(str(header) if header not in (None, "") else f"Column{offset + 1}")
        if len(columns) != width:
            raise ValueError(f"Table {name} spans {width} columns but {len(columns)} names were given")
        table = Table(
            id=self._workbook._next_table_id(),
            name=name,
            display_name=display_name or name,
            ref=rng.coord,
            columns=[TableColumn(id=i + 1, name=col) for i, col in enumerate(columns)],
            totals_row_shown=totals_row,
            style=TableStyleInfo(name=style_name),
        )
        self.tables.append(table)
        return table

    def get_tables(self) -> List[Table]:
        return list(self.tables)

    def get_table(self, name: str) -> Table:
        for table in self.tables:
            if table.name.lower() == name.lower():
                return table
        raise DanglingReferenceError(f"Table not found on {self.title}: {name}")

    def remove_table(self, name: str) -> None:
        table = self.get_table(name)
        self.tables.remove(table)

    def set_table_style(self, name: str, style_name: Optional[str], show_first_column: bool = False,
                        show_last_column: bool = False, show_row_stripes: bool = True,
                        show_column_stripes: bool = False) -> None:
        self.get_table(name).style = TableStyleInfo(
            name=style_name, show_first_column=show_first_column, show_last_column=show_last_column,
            show_row_stripes=show_row_stripes, show_column_stripes=show_column_stripes,
        )

    def add_table_column(self, name: str, column_name: str) -> TableColumn:
        """Append a column, widening the table range by one."""
        table = self.get_table(name)
        rng = table.range
        table.ref = CellRange(rng.min_row, rng.min_col, rng.max_row, rng.max_col + 1).coord
        column = TableColumn(id=max((c.id for c in table.columns), default=0) + 1, name=column_name)
        table.columns.append(column)
        if table.header_row_count:
            self.set_text((rng.min_row, rng.max_col + 1), column_name)
        return column

    def set_table_totals_row(self, name: str, show: bool, functions: Optional[Dict[str, str]] = None,
                             label: Optional[str] = "Total") -> None:
        """Toggle the totals row; ``functions`` maps column names to totals functions."""
        table = self.get_table(name)
        rng = table.range
        if show and not table.totals_row_shown:
            table.ref = CellRange(rng.min_row, rng.min_col, rng.max_row + 1, rng.max_col).coord
        elif not show and table.totals_row_shown:
            table.ref = CellRange(rng.min_row, rng.min_col, rng.max_row - 1, rng.max_col).coord
        table.totals_row_shown = show
        functions = functions or {}
        for idx, column in enumerate(table.columns):
            column.totals_row_function = functions.get(column.name) if show else None
            column.totals_row_label = label if show and idx == 0 and column.name not in functions else None
        if show:
            totals_row = table.range.max_row
            for idx, column in enumerate(table.columns):
                col = table.range.min_col + idx
                formula = table.totals_formula(column)
                if formula:
                    self.set_formula((totals_row, col), formula)
                elif column.totals_row_label:
                    self.set_text((totals_row, col), column.totals_row_label)

    # -------------------------------------------------------------------------
    # View
    # -------------------------------------------------------------------------

    def set_zoom(self, scale: int, view: str = "normal") -> None:
        """Set the zoom for a view type: normal, pageLayout or pageBreakPreview."""
        if not 10 <= scale <= 400:
            raise ValueError(f"Zoom must be between 10 and 400, got {scale}")
        if view == "normal":
            self.view.zoom_scale = scale
            self.view.zoom_scale_normal = scale
        elif view == "pageLayout":
            self.view.zoom_scale_page_layout_view = scale
        elif view == "pageBreakPreview":
            self.view.zoom_scale_sheet_layout_view = scale
        else:
            raise ValueError(f"Unknown view type: {view}")

    def set_show_gridlines(self, show: bool) -> None:
        self.view.show_gridlines = show

    def set_tab_color(self, color: Optional[str]) -> None:
        self.tab_color = Color.from_hex(color) if color else None

    def set_tab_selected(self, selected: bool = True) -> None:
        self.view.tab_selected = selected

    def set_view_type(self, view: str) -> None:
        if view not in ("normal", "pageLayout", "pageBreakPreview"):
            raise ValueError(f"Unknown view type: {view}")
        self.view.view = view

    def set_top_left_cell(self, ref: str) -> None:
        parse_cell_ref(ref)
        self.view.top_left_cell = ref.upper()

    def set_selection(self, active_cell: str, sqref: Optional[str] = None) -> None:
        parse_cell_ref(active_cell)
        pane = self.view.pane.active_pane if self.view.pane else None
        self.view.selections = [Selection(pane=pane, active_cell=active_cell.upper(), sqref=sqref or active_cell.upper())]

    def freeze_panes(self, ref: Optional[str]) -> None:
        """Freeze rows above and columns left of ``ref``; None unfreezes."""
        if ref is None or ref.upper() == "A1":
            self.view.pane = None
            self.view.selections = [s for s in self.view.selections if s.pane is None]
            return
        _, col, row = parse_cell_ref(ref)
        x_split, y_split = col - 1, row - 1
        if x_split and y_split:
            active = "bottomRight"
        elif y_split:
            active = "bottomLeft"
        else:
            active = "topRight"
        self.view.pane = Pane(x_split=x_split, y_split=y_split, top_left_cell=ref.upper(),
                              active_pane=active, state="frozen")
        self.view.selections = [Selection(pane=active, active_cell=ref.upper(), sqref=ref.upper())]

    def split_panes(self, x_split: float, y_split: float, top_left_cell: Optional[str] = None) -> None:
        """Split the window at the given offsets (twentieths of a point)."""
        self.view.pane = Pane(x_split=x_split, y_split=y_split, top_left_cell=top_left_cell,
                              active_pane="bottomRight" if x_split and y_split else ("bottomLeft" if y_split else "topRight"),
                              state="split")

    def get_freeze_panes(self) -> Optional[str]:
        pane = self.view.pane
        if pane is None or pane.state not in ("frozen", "frozenSplit"):
            return None
        return coordinate(int(pane.y_split) + 1, int(pane.x_split) + 1)

    # -------------------------------------------------------------------------
    # Page setup and printing
    # -------------------------------------------------------------------------

    def set_page_orientation(self, orientation: str) -> None:
        if orientation not in ("portrait", "landscape", "default"):
            raise ValueError(f"Unknown orientation: {orientation}")
        self.page_setup.orientation = orientation

    def set_paper_size(self, paper_size: int) -> None:
        self.page_setup.paper_size = paper_size

    def set_page_scale(self, scale: int) -> None:
        if not 10 <= scale <= 400:
            raise ValueError(f"Scale must be between 10 and 400, got {scale}")
        self.page_setup.scale = scale

    def set_fit_to_page(self, width: int = 1, height: int = 1) -> None:
        self.page_setup.fit_to_page = True
        self.page_setup.fit_to_width = width
        self.page_setup.fit_to_height = height

    def set_page_margins(self, **margins: float) -> None:
        self.page_margins = self.page_margins.model_copy(update=margins)

    def set_header(self, text: str) -> None:
        self.header_footer.odd_header = text

    def set_footer(self, text: str) -> None:
        self.header_footer.odd_footer = text

    def set_print_centered(self, horizontal: bool = False, vertical: bool = False) -> None:
        self.print_options.horizontal_centered = horizontal
        self.print_options.vertical_centered = vertical

    def set_print_area(self, ref: str) -> None:
        rng = CellRange.from_string(ref)
        absolute = f"${col_index_to_letter(rng.min_col)}${rng.min_row}:${col_index_to_letter(rng.max_col)}${rng.max_row}"
        self._workbook.set_defined_name("_xlnm.Print_Area", f"{quote_sheet_name(self.title)}!{absolute}", sheet=self.title)

    def get_print_area(self) -> Optional[str]:
        name = self._workbook.get_defined_name("_xlnm.Print_Area", sheet=self.title)
        return name.refers_to if name else None

    def set_print_titles(self, rows: Optional[str] = None, cols: Optional[str] = None) -> None:
        """Repeat rows ("1:2") and/or columns ("A:B") on every printed page."""
        quoted = quote_sheet_name(self.title)
        parts = []
        if cols:
            start, _, end = cols.partition(":")
            parts.append(f"{quoted}!${start}:${end or start}")
        if rows:
            start, _, end = rows.partition(":")
            parts.append(f"{quoted}!${start}:${end or start}")
        if not parts:
            raise ValueError("Print titles need rows, columns or both")
        self._workbook.set_defined_name("_xlnm.Print_Titles", ",".join(parts), sheet=self.title)

    def add_row_break(self, row: int) -> None:
        if row not in self.row_breaks:
            self.row_breaks.append(row)
            self.row_breaks.sort()

    def add_column_break(self, col: Union[str, int]) -> None:
        index = self._col(col)
        if index not in self.col_breaks:
            self.col_breaks.append(index)
            self.col_breaks.sort()

    def remove_row_break(self, row: int) -> bool:
        if row in self.row_breaks:
            self.row_breaks.remove(row)
            return True
        return False

    def remove_column_break(self, col: Union[str, int]) -> bool:
        index = self._col(col)
        if index in self.col_breaks:
            self.col_breaks.remove(index)
            return True
        return False

    # -------------------------------------------------------------------------
    # Protection
    # -------------------------------------------------------------------------

    def protect(self, password: Optional[str] = None, **flags: bool) -> SheetProtection:
        protection = SheetProtection(**flags)
        if password:
            protection.set_password(password)
        self.protection = protection
        return protection

    def unprotect(self) -> None:
        self.protection = None

    def is_protected(self) -> bool:
        return self.protection is not None and self.protection.sheet


def _dxf(fill_color: Optional[str], font_color: Optional[str]) -> Optional[DifferentialStyle]:
    """Differential style for the simple fill/font-color rule builders."""
    if fill_color is None and font_color is None:
        return None
    fill = None
    if fill_color:
        color = Color.from_hex(fill_color)
        fill = Fill(pattern_type="solid", fg_color=color, bg_color=color)
    font = None
    if font_color:
        font = Font(name=None, size=None, family=None, scheme=None, color=Color.from_hex(font_color))
    return DifferentialStyle(fill=fill, font=font)
