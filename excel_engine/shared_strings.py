"""Shared string table with rich-text support.

Strings stored in cells of type "s" are indices into this table. Equal
entries (same text and, for rich text, the same run formatting) intern to a
single index, so a string repeated across many cells is stored once.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Tuple, Union

from lxml import etree
from pydantic import BaseModel, ConfigDict

from .exceptions import FormatError
from .styles import Color, Font, InternTable

if TYPE_CHECKING:
    from .workbook import Workbook

logger = logging.getLogger(__name__)


class TextRun(BaseModel):
    """A run of text with optional run-level font."""
    model_config = ConfigDict(frozen=True)

    text: str
    font: Optional[Font] = None  # None = inherit the cell font


class RichText(BaseModel):
    """An ordered sequence of formatted runs."""
    model_config = ConfigDict(frozen=True)

    runs: Tuple[TextRun, ...] = ()

    @property
    def plain_text(self) -> str:
        return "".join(run.text for run in self.runs)

    def __str__(self) -> str:
        return self.plain_text

    @classmethod
    def from_html(cls, markup: str) -> "RichText":
        """Build runs from simple inline markup.

        Supports <b>, <i>, <u>, <s>/<strike>, <sup>, <sub> and
        <font color="#RRGGBB" size="12" face="Arial">.
        """
        parser = etree.XMLParser(recover=True, resolve_entities=False)
        root = etree.fromstring(f"<span>{markup}</span>".encode("utf-8"), parser)
        runs: List[TextRun] = []

        def walk(el: etree._Element, font: Optional[Font]) -> None:
            tag = el.tag.lower() if isinstance(el.tag, str) else ""
            current = font
            if tag in ("b", "strong", "i", "em", "u", "s", "strike", "sup", "sub", "font"):
                current = current or Font(name=None, size=None, family=None, scheme=None)
                updates: Dict[str, object] = {}
                if tag in ("b", "strong"):
                    updates["bold"] = True
                elif tag in ("i", "em"):
                    updates["italic"] = True
                elif tag == "u":
                    updates["underline"] = "single"
                elif tag in ("s", "strike"):
                    updates["strike"] = True
                elif tag == "sup":
                    updates["vert_align"] = "superscript"
                elif tag == "sub":
                    updates["vert_align"] = "subscript"
                else:
                    if el.get("color"):
                        updates["color"] = Color.from_hex(el.get("color"))
                    if el.get("size"):
                        updates["size"] = float(el.get("size"))
                    if el.get("face"):
                        updates["name"] = el.get("face")
                current = current.model_copy(update=updates)
            if el.text:
                runs.append(TextRun(text=el.text, font=current))
            for child in el:
                walk(child, current)
                if child.tail:
                    runs.append(TextRun(text=child.tail, font=current))

        walk(root, None)
        return cls(runs=tuple(_merge_adjacent(runs)))


def _merge_adjacent(runs: List[TextRun]) -> List[TextRun]:
    merged: List[TextRun] = []
    for run in runs:
        if merged and merged[-1].font == run.font:
            merged[-1] = TextRun(text=merged[-1].text + run.text, font=run.font)
        else:
            merged.append(run)
    return merged


StringEntry = Union[str, RichText]


def plain_text(entry: StringEntry) -> str:
    return entry.plain_text if isinstance(entry, RichText) else entry


class SharedStringTable:
    """Interning table of shared string entries."""

    def __init__(self) -> None:
        self._entries: InternTable[StringEntry] = InternTable()

    def intern(self, entry: StringEntry) -> int:
        """Return the index of an equal entry, appending if new."""
        return self._entries.intern(entry)

    def get(self, index: int) -> StringEntry:
        if index < 0 or index >= len(self._entries):
            raise FormatError(f"Shared string index {index} out of range ({len(self._entries)} entries)")
        return self._entries.get(index)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[StringEntry]:
        return iter(self._entries)

    def reference_count(self, workbook: "Workbook") -> int:
        """Number of cells pointing into the table (the sst "count" attribute)."""
        return sum(1 for _ in self._referencing_cells(workbook))

    @staticmethod
    def _referencing_cells(workbook: "Workbook"):
        from .cells import CellType

        for sheet in workbook.worksheets:
            for cell in sheet.iter_cells():
                if cell.data_type == CellType.SHARED_STRING:
                    yield cell

    def compact(self, workbook: "Workbook") -> Dict[int, int]:
        """Keep referenced entries only, renumbered in first-use order.

        Returns the old -> new index mapping; cells are rewritten in place.
        """
        mapping: Dict[int, int] = {}
        compacted: InternTable[StringEntry] = InternTable()
        cells = list(self._referencing_cells(workbook))
        for cell in cells:
            old = cell.value
            if old not in mapping:
                mapping[old] = compacted.intern(self.get(old))
            cell.value = mapping[old]

        dropped = len(self._entries) - len(compacted)
        self._entries = compacted
        if dropped:
            logger.info(f"[WRITE] Compacted shared strings: kept {len(compacted)}, dropped {dropped}")
        return mapping
