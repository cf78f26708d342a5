"""A1-style cell and range reference helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from .exceptions import DanglingReferenceError

MAX_ROW = 1048576
MAX_COLUMN = 16384

_CELL_RE = re.compile(r"^\$?([A-Z]{1,3})\$?(\d+)$")


# =============================================================================
# UTILITIES
# =============================================================================

def col_letter_to_index(col: str) -> int:
    """Convert column letter(s) to 1-indexed number. A=1, B=2, ..., Z=26, AA=27."""
    result = 0
    for char in col.upper():
        result = result * 26 + (ord(char) - ord('A') + 1)
    return result


def col_index_to_letter(index: int) -> str:
    """Convert 1-indexed column number to letter(s). 1=A, 2=B, ..., 27=AA."""
    if index < 1:
        raise DanglingReferenceError(f"Invalid column index: {index}")
    result = ""
    while index > 0:
        index -= 1
        result = chr(ord('A') + (index % 26)) + result
        index //= 26
    return result


def coordinate(row: int, col: int) -> str:
    """Build 'B3' from (3, 2)."""
    return f"{col_index_to_letter(col)}{row}"


def parse_cell_ref(ref: str) -> Tuple[str, int, int]:
    """Parse cell reference like 'A1', '$AA$100' into (col_letter, col_num, row_num)."""
    match = _CELL_RE.match(ref.strip().upper())
    if not match:
        raise DanglingReferenceError(f"Invalid cell reference: {ref}")
    col_letter = match.group(1)
    row = int(match.group(2))
    col = col_letter_to_index(col_letter)
    if not (1 <= row <= MAX_ROW and 1 <= col <= MAX_COLUMN):
        raise DanglingReferenceError(f"Cell reference out of bounds: {ref}")
    return col_letter, col, row


def parse_range_ref(ref: str) -> Tuple[int, int, int, int]:
    """Parse range like 'B2:F6' into (start_row, start_col, end_row, end_col).

    A single cell 'B2' is treated as 'B2:B2'.
    """
    parts = ref.split(':')
    if len(parts) == 1:
        parts = [parts[0], parts[0]]
    if len(parts) != 2:
        raise DanglingReferenceError(f"Invalid range reference: {ref}")

    _, start_col, start_row = parse_cell_ref(parts[0])
    _, end_col, end_row = parse_cell_ref(parts[1])

    return (
        min(start_row, end_row),
        min(start_col, end_col),
        max(start_row, end_row),
        max(start_col, end_col),
    )


def split_sheet_ref(ref: str) -> Tuple[Optional[str], str]:
    """Split "'My Sheet'!A1:B2" into ("My Sheet", "A1:B2")."""
    if "!" not in ref:
        return None, ref
    sheet, _, cells = ref.rpartition("!")
    if sheet.startswith("'") and sheet.endswith("'"):
        sheet = sheet[1:-1].replace("''", "'")
    return sheet, cells


def quote_sheet_name(name: str) -> str:
    """Quote a sheet name for use in a formula or defined name when needed."""
    if re.match(r"^[A-Za-z_][A-Za-z0-9_.]*$", name) and not _CELL_RE.match(name.upper()):
        return name
    return "'" + name.replace("'", "''") + "'"


# =============================================================================
# RANGES
# =============================================================================

@dataclass(frozen=True)
class CellRange:
    """An inclusive rectangular block of cells, 1-indexed."""
    min_row: int
    min_col: int
    max_row: int
    max_col: int

    @classmethod
    def from_string(cls, ref: str) -> "CellRange":
        return cls(*parse_range_ref(ref))

    @classmethod
    def from_cell(cls, row: int, col: int) -> "CellRange":
        return cls(row, col, row, col)

    @property
    def coord(self) -> str:
        start = coordinate(self.min_row, self.min_col)
        if self.min_row == self.max_row and self.min_col == self.max_col:
            return start
        return f"{start}:{coordinate(self.max_row, self.max_col)}"

    @property
    def top_left(self) -> Tuple[int, int]:
        return self.min_row, self.min_col

    @property
    def size(self) -> int:
        return (self.max_row - self.min_row + 1) * (self.max_col - self.min_col + 1)

    def contains(self, row: int, col: int) -> bool:
        return self.min_row <= row <= self.max_row and self.min_col <= col <= self.max_col

    def overlaps(self, other: "CellRange") -> bool:
        return not (
            other.max_row < self.min_row
            or other.min_row > self.max_row
            or other.max_col < self.min_col
            or other.min_col > self.max_col
        )

    def cells(self) -> Iterator[Tuple[int, int]]:
        """Yield (row, col) pairs in row-major order."""
        for row in range(self.min_row, self.max_row + 1):
            for col in range(self.min_col, self.max_col + 1):
                yield row, col

    def shift(self, rows: int = 0, cols: int = 0) -> "CellRange":
        return CellRange(self.min_row + rows, self.min_col + cols, self.max_row + rows, self.max_col + cols)

    def __str__(self) -> str:
        return self.coord


def parse_sqref(sqref: str) -> List[CellRange]:
    """Parse a space-separated list of ranges ("A1:B2 D4")."""
    return [CellRange.from_string(part) for part in sqref.split() if part]


def sqref_overlaps(sqref: str, other: CellRange) -> bool:
    return any(r.overlaps(other) for r in parse_sqref(sqref))


def shift_index(index: int, at: int, amount: int) -> Optional[int]:
    """Shift a row/column index for an insert (amount > 0) or delete (amount < 0) at ``at``.

    Returns None when the index falls inside a deleted block.
    """
    if index < at:
        return index
    if amount < 0 and index < at - amount:
        return None
    return index + amount


def shift_range(rng: CellRange, axis: str, at: int, amount: int) -> Optional[CellRange]:
    """Shift a range along 'row' or 'col'. Deleted ranges shrink; fully deleted ones return None."""
    lo, hi = (rng.min_row, rng.max_row) if axis == "row" else (rng.min_col, rng.max_col)
    if amount > 0:
        new_lo = lo + amount if lo >= at else lo
        new_hi = hi + amount if hi >= at else hi
    else:
        end = at - amount  # first surviving index after the deleted block
        if lo >= at and hi < end:
            return None
        new_lo = lo if lo < at else (at if lo < end else lo + amount)
        new_hi = hi if hi < at else (at - 1 if hi < end else hi + amount)
    if axis == "row":
        return CellRange(new_lo, rng.min_col, new_hi, rng.max_col)
    return CellRange(rng.min_row, new_lo, rng.max_row, new_hi)


def shift_sqref(sqref: str, axis: str, at: int, amount: int) -> str:
    shifted = [shift_range(r, axis, at, amount) for r in parse_sqref(sqref)]
    return " ".join(r.coord for r in shifted if r is not None)


# =============================================================================
# FORMULA TEXT
# =============================================================================

# A sheet prefix is only recognised at a token boundary, never after a name character or quote
_BOUNDARY = r"(?<![\w.'\]$!:])"
_SHEET_PREFIX = r"(?:'(?:[^']|'')+'|[^\W\d][\w.]*)!"
_CELL_TOKEN = r"\$?[A-Za-z]{1,3}\$?\d+"
_FORMULA_REF_RE = re.compile(
    rf"{_BOUNDARY}(?P<sheet>{_SHEET_PREFIX})?"
    rf"(?P<ref>{_CELL_TOKEN}(?::{_CELL_TOKEN})?|\$?[A-Za-z]{{1,3}}:\$?[A-Za-z]{{1,3}}|\$?\d+:\$?\d+)"
    r"(?![\w(!])"
)
_CELL_PARTS_RE = re.compile(r"^(\$?)([A-Za-z]{1,3})(\$?)(\d+)$")


def _outside_strings(text: str, func) -> str:
    """Apply ``func`` to the parts of a formula that are not string literals."""
    parts = text.split('"')
    for i in range(0, len(parts), 2):
        parts[i] = func(parts[i])
    return '"'.join(parts)


def rename_sheet_references(text: Optional[str], old: str, new: str) -> Optional[str]:
    """Rewrite ``Old!`` and ``'Old'!`` prefixes in formula text to point at ``new``.

    Only whole sheet prefixes match: ``MyOld!A1`` and ``'My Old'!A1`` are left alone.
    """
    if not text or "!" not in text:
        return text
    quoted = re.escape("'" + old.replace("'", "''") + "'!")
    patterns = [_BOUNDARY + quoted]
    if quote_sheet_name(old) == old:
        patterns.append(_BOUNDARY + re.escape(old + "!"))
    pattern = re.compile("|".join(patterns), re.IGNORECASE)
    replacement = quote_sheet_name(new) + "!"
    return _outside_strings(text, lambda part: pattern.sub(lambda m: replacement, part))


def _shift_line(token: str, axis: str, at: int, amount: int) -> Optional[str]:
    """Shift a whole-row ("$3:$5") or whole-column ("A:C") range."""
    first, _, second = token.partition(":")
    is_rows = first.lstrip("$").isdigit()
    if (axis == "row") != is_rows:
        return token

    def value(side: str) -> int:
        bare = side.lstrip("$")
        return int(bare) if is_rows else col_letter_to_index(bare)

    lo, hi = value(first), value(second)
    rng = CellRange(lo, 1, hi, 1) if is_rows else CellRange(1, lo, 1, hi)
    shifted = shift_range(rng, axis, at, amount)
    if shifted is None:
        return None
    new_lo, new_hi = (shifted.min_row, shifted.max_row) if is_rows else (shifted.min_col, shifted.max_col)

    def render(side: str, index: int) -> str:
        dollar = "$" if side.startswith("$") else ""
        return f"{dollar}{index}" if is_rows else f"{dollar}{col_index_to_letter(index)}"

    return f"{render(first, new_lo)}:{render(second, new_hi)}"


def _shift_token(token: str, axis: str, at: int, amount: int) -> Optional[str]:
    first, _, second = token.partition(":")
    a = _CELL_PARTS_RE.match(first)
    if a is None:
        return _shift_line(token, axis, at, amount)
    b = _CELL_PARTS_RE.match(second) if second else a
    rows = (int(a.group(4)), int(b.group(4)))
    cols = (col_letter_to_index(a.group(2)), col_letter_to_index(b.group(2)))
    rng = CellRange(min(rows), min(cols), max(rows), max(cols))
    shifted = shift_range(rng, axis, at, amount)
    if shifted is None:
        return None

    def render(match, row: int, col: int) -> str:
        return f"{match.group(1)}{col_index_to_letter(col)}{match.group(3)}{row}"

    start = render(a, shifted.min_row, shifted.min_col)
    if not second:
        return start
    return f"{start}:{render(b, shifted.max_row, shifted.max_col)}"


def shift_formula(text: Optional[str], sheet_title: str, axis: str, at: int, amount: int,
                  on_sheet: bool = True) -> Optional[str]:
    """Adjust A1 references in formula text for rows/columns inserted or deleted on ``sheet_title``.

    Unqualified references shift only when the formula lives on that sheet
    (``on_sheet``). References into a deleted block become ``#REF!``.
    """
    if not text or amount == 0:
        return text

    def replace(match) -> str:
        prefix = match.group("sheet")
        if prefix:
            name, _ = split_sheet_ref(prefix)
            if name is None or name.lower() != sheet_title.lower():
                return match.group(0)
        elif not on_sheet:
            return match.group(0)
        shifted = _shift_token(match.group("ref"), axis, at, amount)
        return (prefix or "") + (shifted if shifted is not None else "#REF!")

    return _outside_strings(text, lambda part: _FORMULA_REF_RE.sub(replace, part))
