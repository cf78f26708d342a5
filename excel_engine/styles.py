"""Cell style records and the interning style registry.

A cell carries a single integer style index. The index points into the
registry's table of StyleSpec records (the cellXfs of styles.xml); each
StyleSpec in turn holds its font, fill, border, number format, alignment and
protection by value. All models are frozen so structurally equal records hash
equal, which makes interning an O(1) dictionary lookup.

At write time the registry is compacted:
- records no live cell references are dropped
- survivors are renumbered densely in first-use order (index 0 stays 0)
- fonts, fills, borders and number formats are split out into their own
  deduplicated sub-tables, with fills 0/1 reserved for none/gray125
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict

from .exceptions import DanglingReferenceError
from .number_format import BUILTIN_FORMATS, FIRST_CUSTOM_FORMAT_ID, builtin_format_id

if TYPE_CHECKING:
    from .workbook import Workbook

logger = logging.getLogger(__name__)

T = TypeVar("T")

BORDER_STYLES = (
    "none", "thin", "medium", "dashed", "dotted", "thick", "double", "hair",
    "mediumDashed", "dashDot", "mediumDashDot", "dashDotDot",
    "mediumDashDotDot", "slantDashDot",
)
PATTERN_TYPES = (
    "none", "solid", "mediumGray", "darkGray", "lightGray", "darkHorizontal",
    "darkVertical", "darkDown", "darkUp", "darkGrid", "darkTrellis",
    "lightHorizontal", "lightVertical", "lightDown", "lightUp", "lightGrid",
    "lightTrellis", "gray125", "gray0625",
)
HORIZONTAL_ALIGNMENTS = (
    "general", "left", "center", "right", "fill", "justify",
    "centerContinuous", "distributed",
)
VERTICAL_ALIGNMENTS = ("top", "center", "bottom", "justify", "distributed")
UNDERLINE_STYLES = ("single", "double", "singleAccounting", "doubleAccounting", "none")


def normalize_rgb(value: str) -> str:
    """Normalize "#RRGGBB", "RRGGBB" or "AARRGGBB" into upper-case ARGB."""
    value = value.strip().lstrip("#").upper()
    if len(value) == 6:
        return "FF" + value
    if len(value) != 8 or any(c not in "0123456789ABCDEF" for c in value):
        raise ValueError(f"Invalid color: {value!r}")
    return value


# =============================================================================
# STYLE RECORDS
# =============================================================================

class Color(BaseModel):
    """A color reference: explicit ARGB, theme slot, legacy index or auto."""
    model_config = ConfigDict(frozen=True)

    rgb: Optional[str] = None  # ARGB hex e.g. "FFFF0000"
    theme: Optional[int] = None
    tint: Optional[float] = None
    indexed: Optional[int] = None
    auto: bool = False

    @classmethod
    def from_hex(cls, value: str) -> "Color":
        return cls(rgb=normalize_rgb(value))

    @property
    def hex(self) -> str:
        """The ARGB value, or "" for theme/indexed colors."""
        return self.rgb or ""


def as_color(value) -> Optional[Color]:
    """Accept a Color, a hex string or None."""
    if value is None or isinstance(value, Color):
        return value
    return Color.from_hex(value)


class Font(BaseModel):
    """Font styling for a cell or a rich-text run."""
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = "Calibri"
    size: Optional[float] = 11.0
    bold: bool = False
    italic: bool = False
    underline: Optional[str] = None  # "single", "double", ...
    strike: bool = False
    color: Optional[Color] = None
    family: Optional[int] = 2
    scheme: Optional[str] = "minor"  # "major", "minor"
    vert_align: Optional[str] = None  # "superscript", "subscript"
    charset: Optional[int] = None


class GradientStop(BaseModel):
    model_config = ConfigDict(frozen=True)

    position: float
    color: Color


class GradientFill(BaseModel):
    model_config = ConfigDict(frozen=True)

    gradient_type: str = "linear"  # "linear", "path"
    degree: float = 0.0
    left: Optional[float] = None
    right: Optional[float] = None
    top: Optional[float] = None
    bottom: Optional[float] = None
    stops: Tuple[GradientStop, ...] = ()


class Fill(BaseModel):
    """Pattern or gradient fill."""
    model_config = ConfigDict(frozen=True)

    pattern_type: Optional[str] = None  # "solid", "none", etc.
    fg_color: Optional[Color] = None  # Foreground (the visible color of a solid fill)
    bg_color: Optional[Color] = None
    gradient: Optional[GradientFill] = None

    @classmethod
    def solid(cls, color: str) -> "Fill":
        return cls(pattern_type="solid", fg_color=Color.from_hex(color))


NO_FILL = Fill(pattern_type="none")
GRAY125_FILL = Fill(pattern_type="gray125")


class Side(BaseModel):
    """Border for a single edge."""
    model_config = ConfigDict(frozen=True)

    style: Optional[str] = None  # "thin", "medium", "thick", "dashed", etc.
    color: Optional[Color] = None


class Border(BaseModel):
    """All borders for a cell."""
    model_config = ConfigDict(frozen=True)

    left: Side = Side()
    right: Side = Side()
    top: Side = Side()
    bottom: Side = Side()
    diagonal: Side = Side()
    diagonal_up: bool = False
    diagonal_down: bool = False


class Alignment(BaseModel):
    """Text alignment in a cell."""
    model_config = ConfigDict(frozen=True)

    horizontal: Optional[str] = None  # "left", "center", "right", "justify"
    vertical: Optional[str] = None  # "top", "center", "bottom"
    wrap_text: bool = False
    text_rotation: int = 0  # 0-180 degrees, 255 = vertical text
    indent: int = 0
    shrink_to_fit: bool = False

    @property
    def is_default(self) -> bool:
        return self == Alignment()


class Protection(BaseModel):
    model_config = ConfigDict(frozen=True)

    locked: bool = True
    hidden: bool = False

    @property
    def is_default(self) -> bool:
        return self.locked and not self.hidden


class StyleSpec(BaseModel):
    """Complete, resolved cell style (one cellXfs record)."""
    model_config = ConfigDict(frozen=True)

    font: Font = Font()
    fill: Fill = NO_FILL
    border: Border = Border()
    number_format: str = "General"
    alignment: Alignment = Alignment()
    protection: Protection = Protection()


class DifferentialStyle(BaseModel):
    """Partial style overlay used by conditional formatting (a dxf record)."""
    model_config = ConfigDict(frozen=True)

    font: Optional[Font] = None
    fill: Optional[Fill] = None
    border: Optional[Border] = None
    number_format: Optional[str] = None


# =============================================================================
# INTERNING
# =============================================================================

class InternTable(Generic[T]):
    """Append-only table that returns the existing index for an equal item."""

    def __init__(self) -> None:
        self._items: List[T] = []
        self._index: Dict[T, int] = {}

    def intern(self, item: T) -> int:
        idx = self._index.get(item)
        if idx is None:
            idx = len(self._items)
            self._items.append(item)
            self._index[item] = idx
        return idx

    def get(self, index: int) -> T:
        if index < 0 or index >= len(self._items):
            raise DanglingReferenceError(f"Index {index} out of range (table size {len(self._items)})")
        return self._items[index]

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    def __contains__(self, item: T) -> bool:
        return item in self._index


@dataclass
class CellXf:
    """A cellXfs record with sub-table ids, ready for serialization."""
    font_id: int
    fill_id: int
    border_id: int
    num_fmt_id: int
    alignment: Alignment
    protection: Protection


@dataclass
class StyleTables:
    """The split-out sub-tables styles.xml is written from."""
    fonts: List[Font] = field(default_factory=list)
    fills: List[Fill] = field(default_factory=list)
    borders: List[Border] = field(default_factory=list)
    num_fmts: Dict[int, str] = field(default_factory=dict)  # custom formats only
    xfs: List[CellXf] = field(default_factory=list)


class StyleRegistry:
    """Interning table of StyleSpec records addressed by integer index.

    Index 0 is always the workbook default style.
    """

    def __init__(self, default: Optional[StyleSpec] = None):
        self._styles: InternTable[StyleSpec] = InternTable()
        self._styles.intern(default or StyleSpec())

    @classmethod
    def with_default_font(cls, name: str, size: float) -> "StyleRegistry":
        return cls(StyleSpec(font=Font(name=name, size=size)))

    @property
    def default(self) -> StyleSpec:
        return self._styles.get(0)

    def intern(self, spec: StyleSpec) -> int:
        """Return the index of a structurally equal record, appending if new."""
        return self._styles.intern(spec)

    def resolve(self, index: int) -> StyleSpec:
        try:
            return self._styles.get(index)
        except DanglingReferenceError:
            raise DanglingReferenceError(f"Style index {index} does not exist") from None

    def __len__(self) -> int:
        return len(self._styles)

    def __iter__(self) -> Iterator[StyleSpec]:
        return iter(self._styles)

    def compact(self, workbook: "Workbook") -> Dict[int, int]:
        """Drop unreferenced records and renumber survivors in first-use order.

        Returns the old -> new index mapping. Every cell, row and column style
        index in the workbook is rewritten in place.
        """
        mapping: Dict[int, int] = {0: 0}
        order: List[int] = [0]

        def visit(index: int) -> None:
            if index not in mapping:
                self.resolve(index)
                mapping[index] = len(order)
                order.append(index)

        sheets = workbook.worksheets
        for sheet in sheets:
            for col in sorted(sheet.column_dimensions):
                dim = sheet.column_dimensions[col]
                if dim.style_index:
                    visit(dim.style_index)
            for row in sorted(sheet.row_dimensions):
                dim = sheet.row_dimensions[row]
                if dim.style_index:
                    visit(dim.style_index)
            for cell in sheet.iter_cells():
                visit(cell.style_index)

        dropped = len(self._styles) - len(order)
        if dropped == 0 and order == list(range(len(order))):
            return mapping

        compacted: InternTable[StyleSpec] = InternTable()
        for old in order:
            compacted.intern(self._styles.get(old))
        self._styles = compacted

        for sheet in sheets:
            for dim in sheet.column_dimensions.values():
                if dim.style_index:
                    dim.style_index = mapping[dim.style_index]
            for dim in sheet.row_dimensions.values():
                if dim.style_index:
                    dim.style_index = mapping[dim.style_index]
            for cell in sheet.iter_cells():
                cell.style_index = mapping[cell.style_index]

        logger.info(f"[STYLE] Compacted style registry: kept {len(order)}, dropped {dropped}")
        return mapping

    def build_tables(self) -> StyleTables:
        """Split every record into deduplicated font/fill/border/numFmt tables."""
        fonts: InternTable[Font] = InternTable()
        fills: InternTable[Fill] = InternTable()
        borders: InternTable[Border] = InternTable()
        fills.intern(NO_FILL)
        fills.intern(GRAY125_FILL)

        tables = StyleTables()
        next_custom = FIRST_CUSTOM_FORMAT_ID
        custom_ids: Dict[str, int] = {}

        for spec in self._styles:
            num_fmt_id = builtin_format_id(spec.number_format)
            if num_fmt_id is None:
                num_fmt_id = custom_ids.get(spec.number_format)
                if num_fmt_id is None:
                    num_fmt_id = next_custom
                    custom_ids[spec.number_format] = num_fmt_id
                    tables.num_fmts[num_fmt_id] = spec.number_format
                    next_custom += 1
            fill = spec.fill if spec.fill.pattern_type is not None or spec.fill.gradient else NO_FILL
            tables.xfs.append(CellXf(
                font_id=fonts.intern(spec.font),
                fill_id=fills.intern(fill),
                border_id=borders.intern(spec.border),
                num_fmt_id=num_fmt_id,
                alignment=spec.alignment,
                protection=spec.protection,
            ))

        tables.fonts = list(fonts)
        tables.fills = list(fills)
        tables.borders = list(borders)
        return tables


def number_format_for_id(num_fmt_id: int, custom: Dict[int, str]) -> Optional[str]:
    """Resolve a numFmtId against custom formats, then the built-in table."""
    if num_fmt_id in custom:
        return custom[num_fmt_id]
    return BUILTIN_FORMATS.get(num_fmt_id)
