"""Workbook model.

The workbook owns the ordered sheets and everything shared between them:
- style registry and shared string table
- defined names (workbook- or sheet-scoped)
- window geometry, calculation properties, workbook protection
- document properties
- pivot caches (pivot tables live on their sheets)
- theme and any package parts the model does not cover
- diagnostics collected while reading
"""

from __future__ import annotations

import copy
import logging
import re
import threading
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel

from .config import EngineSettings, get_settings
from .drawing import PartLink
from .exceptions import DanglingReferenceError, Diagnostic, NameConflictError
from .pivot import DataField, PivotCacheDefinition, PivotTable, scan_source
from .properties import DocumentProperties, WorkbookProtection
from .references import CellRange, quote_sheet_name, rename_sheet_references, shift_formula
from .shared_strings import SharedStringTable
from .styles import StyleRegistry
from .worksheet import PreservedElement, Worksheet

logger = logging.getLogger(__name__)

INVALID_SHEET_CHARS = set("[]:*?/\\")
MAX_SHEET_NAME_LENGTH = 31
SHEET_STATES = ("visible", "hidden", "veryHidden")

_NAME_RE = re.compile(r"^[A-Za-z_\\][A-Za-z0-9_.\\?]*$")
_CELL_LIKE_RE = re.compile(r"^[A-Za-z]{1,3}\d+$")


# =============================================================================
# WORKBOOK RECORDS
# =============================================================================

@dataclass
class DefinedName:
    name: str
    refers_to: str  # Formula text without '=', e.g. "Sheet1!$A$1:$B$5"
    local_sheet_id: Optional[int] = None  # Sheet index for sheet-scoped names
    hidden: bool = False
    comment: Optional[str] = None

    @property
    def is_builtin(self) -> bool:
        return self.name.startswith("_xlnm.")


class WorkbookView(BaseModel):
    """Window geometry (bookViews/workbookView). Units are twips."""
    x_window: int = 0
    y_window: int = 0
    window_width: int = 28800
    window_height: int = 12300
    active_tab: int = 0
    first_sheet: int = 0
    tab_ratio: int = 600
    show_horizontal_scroll: bool = True
    show_vertical_scroll: bool = True
    show_sheet_tabs: bool = True


class CalcProperties(BaseModel):
    calc_id: int = 191029
    full_calc_on_load: bool = False
    calc_mode: Optional[str] = None  # auto, manual, autoNoTable


@dataclass
class PreservedPart:
    """A package part the model does not cover, written back unchanged."""
    name: str  # Absolute part name without leading slash, e.g. "xl/vbaProject.bin"
    content_type: Optional[str]
    data: bytes


@dataclass
class OpaqueSheet:
    """A sheet tab that is not a worksheet (e.g. a chartsheet), written back unchanged."""
    name: str
    state: str
    rel_id: str  # Workbook relationship, carried in preserved_links
    follows: Optional[Worksheet] = None  # Worksheet it comes after; None for the front


# =============================================================================
# WORKBOOK
# =============================================================================

class Workbook:
    """An in-memory spreadsheet document."""

    def __init__(self, settings: Optional[EngineSettings] = None):
        settings = settings or get_settings()
        self.styles = StyleRegistry.with_default_font(settings.default_font_name, settings.default_font_size)
        self.shared_strings = SharedStringTable()
        self._sheets: List[Worksheet] = []

        self.defined_names: List[DefinedName] = []
        self.view = WorkbookView()
        self.calc = CalcProperties()
        self.protection: Optional[WorkbookProtection] = None
        self.properties = DocumentProperties()
        self.date1904 = False
        self.macro_enabled = False  # Package carries a VBA project
        self.code_name: Optional[str] = None

        self.pivot_caches: List[PivotCacheDefinition] = []
        self.theme_xml: Optional[bytes] = None
        self.preserved_parts: Dict[str, PreservedPart] = {}
        self.preserved_links: List[PartLink] = []  # Workbook relationships to preserved parts
        self.preserved_elements: List[PreservedElement] = []  # workbook.xml children not modelled
        self.opaque_sheets: List[OpaqueSheet] = []  # Non-worksheet tabs, full writer only
        self.diagnostics: List[Diagnostic] = []

        self._load_lock = threading.RLock()

    def __repr__(self) -> str:
        return f"<Workbook sheets={self.sheet_names}>"

    # -------------------------------------------------------------------------
    # Sheet access
    # -------------------------------------------------------------------------

    @property
    def sheet_names(self) -> List[str]:
        return [s.title for s in self._sheets]

    def get_sheet_names(self) -> List[str]:
        """Sheet titles in tab order. Does not load lazy sheets."""
        return self.sheet_names

    @property
    def worksheets(self) -> List[Worksheet]:
        """All sheets, loading any that are still pending."""
        for sheet in self._sheets:
            sheet._ensure_loaded()
        return list(self._sheets)

    def __iter__(self) -> Iterator[Worksheet]:
        return iter(self.worksheets)

    def __len__(self) -> int:
        return len(self._sheets)

    def __contains__(self, name: str) -> bool:
        return self.has_sheet(name)

    def has_sheet(self, name: str) -> bool:
        return self._find(name) is not None

    def _find(self, name: str) -> Optional[Worksheet]:
        lowered = name.lower()
        for sheet in self._sheets:
            if sheet.title.lower() == lowered:
                return sheet
        return None

    def _require(self, name: str) -> Worksheet:
        sheet = self._find(name)
        if sheet is None:
            raise DanglingReferenceError(f"Sheet not found: {name}")
        return sheet

    def __getitem__(self, name: str) -> Worksheet:
        sheet = self._require(name)
        sheet._ensure_loaded()
        return sheet

    def get_sheet_by_index(self, index: int) -> Worksheet:
        if not 0 <= index < len(self._sheets):
            raise DanglingReferenceError(f"Sheet index out of range: {index}")
        sheet = self._sheets[index]
        sheet._ensure_loaded()
        return sheet

    def index_of(self, name: str) -> int:
        return self._sheets.index(self._require(name))

    @property
    def active(self) -> Optional[Worksheet]:
        if not self._sheets:
            return None
        return self.get_sheet_by_index(min(self.view.active_tab, len(self._sheets) - 1))

    # -------------------------------------------------------------------------
    # Sheet management
    # -------------------------------------------------------------------------

    def _validate_sheet_name(self, name: str, ignore: Optional[Worksheet] = None) -> None:
        if not name or len(name) > MAX_SHEET_NAME_LENGTH:
            raise ValueError(f"Sheet name must be 1-{MAX_SHEET_NAME_LENGTH} characters: {name!r}")
        bad = INVALID_SHEET_CHARS.intersection(name)
        if bad:
            raise ValueError(f"Sheet name {name!r} contains invalid characters: {''.join(sorted(bad))}")
        if name.startswith("'") or name.endswith("'"):
            raise ValueError(f"Sheet name cannot start or end with an apostrophe: {name!r}")
        existing = self._find(name)
        if existing is not None and existing is not ignore:
            raise NameConflictError(f"Sheet already exists: {name}")
        if any(o.name.lower() == name.lower() for o in self.opaque_sheets):
            raise NameConflictError(f"Sheet already exists: {name}")

    def _unique_title(self, base: str) -> str:
        if not self.has_sheet(base):
            return base
        n = 2
        while True:
            suffix = f" ({n})"
            candidate = base[:MAX_SHEET_NAME_LENGTH - len(suffix)] + suffix
            if not self.has_sheet(candidate):
                return candidate
            n += 1

    def add_sheet(self, title: Optional[str] = None, index: Optional[int] = None) -> Worksheet:
        if title is None:
            n = len(self._sheets) + 1
            while self.has_sheet(f"Sheet{n}"):
                n += 1
            title = f"Sheet{n}"
        self._validate_sheet_name(title)
        sheet = Worksheet(self, title)
        if index is None or index >= len(self._sheets):
            self._sheets.append(sheet)
        else:
            self._insert_at(sheet, max(index, 0))
        return sheet

    def _attach_sheet(self, sheet: Worksheet) -> None:
        """Append a sheet built elsewhere (used by the reader)."""
        self._sheets.append(sheet)

    def _insert_at(self, sheet: Worksheet, index: int) -> None:
        old_order = list(self._sheets)
        self._sheets.insert(index, sheet)
        self._remap_sheet_ids(old_order)

    def _remap_sheet_ids(self, old_order: List[Worksheet]) -> None:
        """Keep sheet-scoped names and the active tab pointing at the same sheets after a reorder."""
        position = {id(s): i for i, s in enumerate(self._sheets)}
        for name in self.defined_names:
            if name.local_sheet_id is not None and name.local_sheet_id < len(old_order):
                name.local_sheet_id = position[id(old_order[name.local_sheet_id])]
        if old_order and self.view.active_tab < len(old_order):
            self.view.active_tab = position.get(id(old_order[self.view.active_tab]), 0)

    def remove_sheet(self, name: str) -> None:
        sheet = self._require(name)
        if len(self._sheets) == 1:
            raise ValueError(f"Cannot remove the only sheet: {name}")
        index = self._sheets.index(sheet)
        self.defined_names = [d for d in self.defined_names if d.local_sheet_id != index]
        for opaque in self.opaque_sheets:
            if opaque.follows is sheet:
                opaque.follows = self._sheets[index - 1] if index > 0 else None
        for defined in self.defined_names:
            if defined.local_sheet_id is not None and defined.local_sheet_id > index:
                defined.local_sheet_id -= 1
        self._sheets.remove(sheet)
        if self.view.active_tab > index:
            self.view.active_tab -= 1
        elif self.view.active_tab >= len(self._sheets):
            self.view.active_tab = max(len(self._sheets) - 1, 0)
        self._drop_unused_caches()
        logger.info(f"[SHEET] Removed sheet {name}")

    def rename_sheet(self, old: str, new: str) -> None:
        """Rename a sheet and rewrite references to it held by the workbook."""
        sheet = self._require(old)
        self._validate_sheet_name(new, ignore=sheet)
        old_title = sheet.title
        sheet.title = new
        if old_title == new:
            return

        def rewrite(text: Optional[str]) -> Optional[str]:
            return rename_sheet_references(text, old_title, new)

        for defined in self.defined_names:
            defined.refers_to = rewrite(defined.refers_to)
        for cache in self.pivot_caches:
            if cache.source_sheet == old_title:
                cache.source_sheet = new
        for ws in self.worksheets:
            for cell in ws.iter_cells():
                if cell.formula:
                    cell.formula = rewrite(cell.formula)
            for link in ws.hyperlinks.values():
                link.location = rewrite(link.location)
            for chart in ws.get_charts():
                for series in chart.series:
                    series.values = rewrite(series.values)
                    series.categories = rewrite(series.categories)
                    series.title = rewrite(series.title)
        logger.info(f"[SHEET] Renamed sheet {old_title} -> {new}")

    def clone_sheet(self, name: str, new_title: Optional[str] = None) -> Worksheet:
        """Deep-copy a sheet and insert the copy after the original.

        Tables in the copy get new ids and names, as table names are
        workbook-unique. Sheet-scoped defined names are copied as well.
        """
        source = self[name]
        title = new_title or self._unique_title(source.title)
        self._validate_sheet_name(title)
        clone = copy.deepcopy(source, memo={id(self): self})
        clone.title = title
        clone.view.tab_selected = False
        for table in clone.tables:
            table.id = self._next_table_id(extra=clone.tables)
            table.name = table.display_name = self._unique_table_name(table.name, extra=clone.tables)
        source_index = self._sheets.index(source)
        self._insert_at(clone, source_index + 1)
        clone_index = source_index + 1
        for defined in list(self.defined_names):
            if defined.local_sheet_id == source_index:
                self.defined_names.append(DefinedName(
                    name=defined.name,
                    refers_to=rename_sheet_references(defined.refers_to, source.title, title),
                    local_sheet_id=clone_index,
                    hidden=defined.hidden,
                    comment=defined.comment,
                ))
        logger.info(f"[SHEET] Cloned sheet {source.title} -> {title}")
        return clone

    def move_sheet(self, name: str, new_index: int) -> None:
        sheet = self._require(name)
        old_order = list(self._sheets)
        self._sheets.remove(sheet)
        self._sheets.insert(max(0, min(new_index, len(self._sheets))), sheet)
        self._remap_sheet_ids(old_order)

    def set_sheet_state(self, name: str, state: str) -> None:
        if state not in SHEET_STATES:
            raise ValueError(f"Unknown sheet state: {state}")
        sheet = self._require(name)
        if state != "visible":
            visible = [s for s in self._sheets if s.state == "visible" and s is not sheet]
            if not visible:
                raise ValueError("A workbook must keep at least one visible sheet")
        sheet.state = state
        if state != "visible" and self._sheets.index(sheet) == self.view.active_tab:
            self.set_active_tab(self._sheets.index(next(s for s in self._sheets if s.state == "visible")))

    def get_sheet_state(self, name: str) -> str:
        return self._require(name).state

    def set_active_tab(self, index: int) -> None:
        if not 0 <= index < len(self._sheets):
            raise DanglingReferenceError(f"Sheet index out of range: {index}")
        self.view.active_tab = index
        for i, sheet in enumerate(self._sheets):
            sheet.view.tab_selected = i == index

    # -------------------------------------------------------------------------
    # Defined names
    # -------------------------------------------------------------------------

    def _scope(self, sheet: Optional[str]) -> Optional[int]:
        return None if sheet is None else self.index_of(sheet)

    def get_defined_name(self, name: str, sheet: Optional[str] = None) -> Optional[DefinedName]:
        scope = self._scope(sheet)
        lowered = name.lower()
        for defined in self.defined_names:
            if defined.name.lower() == lowered and defined.local_sheet_id == scope:
                return defined
        return None

    def add_defined_name(self, name: str, refers_to: str, sheet: Optional[str] = None,
                         hidden: bool = False, comment: Optional[str] = None) -> DefinedName:
        """Add a name; names are unique per scope, compared case-insensitively."""
        if not name.startswith("_xlnm.") and (not _NAME_RE.match(name) or _CELL_LIKE_RE.match(name)):
            raise ValueError(f"Invalid defined name: {name!r}")
        if self.get_defined_name(name, sheet) is not None:
            where = f"sheet {sheet}" if sheet else "workbook"
            raise NameConflictError(f"Defined name {name!r} already exists in {where} scope")
        defined = DefinedName(
            name=name,
            refers_to=refers_to[1:] if refers_to.startswith("=") else refers_to,
            local_sheet_id=self._scope(sheet),
            hidden=hidden,
            comment=comment,
        )
        self.defined_names.append(defined)
        return defined

    def set_defined_name(self, name: str, refers_to: str, sheet: Optional[str] = None) -> DefinedName:
        existing = self.get_defined_name(name, sheet)
        if existing is None:
            return self.add_defined_name(name, refers_to, sheet)
        existing.refers_to = refers_to[1:] if refers_to.startswith("=") else refers_to
        return existing

    def remove_defined_name(self, name: str, sheet: Optional[str] = None) -> bool:
        existing = self.get_defined_name(name, sheet)
        if existing is None:
            return False
        self.defined_names.remove(existing)
        return True

    def get_defined_names(self) -> List[DefinedName]:
        return list(self.defined_names)

    # -------------------------------------------------------------------------
    # Workbook protection
    # -------------------------------------------------------------------------

    def set_workbook_protection(self, lock_structure: bool = True, lock_windows: bool = False,
                                password: Optional[str] = None) -> WorkbookProtection:
        protection = WorkbookProtection(lock_structure=lock_structure, lock_windows=lock_windows)
        if password:
            protection.set_password(password, get_settings().spin_count)
        self.protection = protection
        return protection

    def remove_workbook_protection(self) -> None:
        self.protection = None

    def is_workbook_protected(self) -> bool:
        return self.protection is not None and self.protection.is_protected

    def get_workbook_protection_details(self) -> Dict[str, object]:
        protection = self.protection or WorkbookProtection()
        return {
            "lock_structure": protection.lock_structure,
            "lock_windows": protection.lock_windows,
            "lock_revision": protection.lock_revision,
            "has_password": bool(protection.workbook_password or protection.workbook_hash),
            "algorithm": protection.workbook_hash.algorithm_name if protection.workbook_hash else None,
            "spin_count": protection.workbook_hash.spin_count if protection.workbook_hash else None,
        }

    # -------------------------------------------------------------------------
    # Tables
    # -------------------------------------------------------------------------

    def _all_tables(self, extra: Sequence = ()) -> list:
        tables = [t for sheet in self._sheets for t in sheet.tables]
        return tables + [t for t in extra if all(t is not x for x in tables)]

    def _check_table_name(self, name: str) -> None:
        if not _NAME_RE.match(name) or _CELL_LIKE_RE.match(name):
            raise ValueError(f"Invalid table name: {name!r}")
        lowered = name.lower()
        for table in self._all_tables():
            if table.name.lower() == lowered:
                raise NameConflictError(f"Table name already in use: {name}")
        if any(d.name.lower() == lowered for d in self.defined_names):
            raise NameConflictError(f"Table name collides with a defined name: {name}")

    def _next_table_id(self, extra: Sequence = ()) -> int:
        return max((t.id for t in self._all_tables(extra)), default=0) + 1

    def _unique_table_name(self, base: str, extra: Sequence = ()) -> str:
        taken = {t.name.lower() for t in self._all_tables(extra)}
        n = 2
        while f"{base}_{n}".lower() in taken:
            n += 1
        return f"{base}_{n}"

    # -------------------------------------------------------------------------
    # Pivot tables
    # -------------------------------------------------------------------------

    def get_pivot_cache(self, cache_id: int) -> PivotCacheDefinition:
        for cache in self.pivot_caches:
            if cache.cache_id == cache_id:
                return cache
        raise DanglingReferenceError(f"Pivot cache not found: {cache_id}")

    def add_pivot_table(
        self,
        sheet: str,
        name: str,
        source_sheet: str,
        source_range: str,
        target_cell: str,
        row_fields: Sequence[Union[str, int]] = (),
        column_fields: Sequence[Union[str, int]] = (),
        data_fields: Sequence[Union[str, int, Tuple[Union[str, int], str], DataField]] = (),
    ) -> PivotTable:
        """Create a pivot cache over the source range and a pivot table on ``sheet``.

        Fields are given by header name or zero-based index. Data fields may
        be (field, function) pairs; the function defaults to "sum".
        """
        host = self[sheet]
        if any(p.name.lower() == name.lower() for p in host.pivot_tables):
            raise NameConflictError(f"Pivot table {name} already exists on {sheet}")
        source_range = CellRange.from_string(source_range).coord
        fields, records = scan_source(self, source_sheet, source_range)
        cache = PivotCacheDefinition(
            cache_id=max((c.cache_id for c in self.pivot_caches), default=0) + 1,
            source_sheet=self._require(source_sheet).title,
            source_range=source_range,
            fields=fields,
            record_count=records,
        )

        def field_index(ref: Union[str, int]) -> int:
            if isinstance(ref, int):
                if not 0 <= ref < len(fields):
                    raise DanglingReferenceError(f"Pivot field index out of range: {ref}")
                return ref
            for i, f in enumerate(fields):
                if f.name.lower() == str(ref).lower():
                    return i
            raise DanglingReferenceError(f"Pivot field not found in {source_range}: {ref}")

        data: List[DataField] = []
        for spec in data_fields:
            if isinstance(spec, DataField):
                data.append(spec)
                continue
            ref, function = spec if isinstance(spec, tuple) else (spec, "sum")
            idx = field_index(ref)
            data.append(DataField(field_index=idx, function=function,
                                  name=f"{function[0].upper()}{function[1:]} of {fields[idx].name}"))

        pivot = PivotTable(
            name=name,
            cache_id=cache.cache_id,
            location=target_cell.upper(),
            row_fields=[field_index(f) for f in row_fields],
            column_fields=[field_index(f) for f in column_fields],
            data_fields=data,
        )
        self.pivot_caches.append(cache)
        host.pivot_tables.append(pivot)
        logger.info(f"[PIVOT] Added pivot table {name} on {sheet} from {source_sheet}!{source_range}")
        return pivot

    def get_pivot_table(self, sheet: str, name: str) -> PivotTable:
        for pivot in self[sheet].pivot_tables:
            if pivot.name.lower() == name.lower():
                return pivot
        raise DanglingReferenceError(f"Pivot table not found on {sheet}: {name}")

    def refresh_pivot_cache(self, cache_id: int, recompute_layout: bool = False) -> PivotCacheDefinition:
        cache = self.get_pivot_cache(cache_id)
        cache.refresh(self, recompute_layout=recompute_layout)
        return cache

    def refresh_all_pivot_tables(self, recompute_layout: bool = False) -> int:
        """Refresh every cache; returns how many were refreshed."""
        for cache in self.pivot_caches:
            cache.refresh(self, recompute_layout=recompute_layout)
        return len(self.pivot_caches)

    def get_pivot_table_names(self, sheet: str) -> List[str]:
        return [p.name for p in self[sheet].pivot_tables]

    def get_pivot_table_fields(self, sheet: str, name: str) -> List[str]:
        pivot = self.get_pivot_table(sheet, name)
        return [f.name for f in self.get_pivot_cache(pivot.cache_id).fields]

    def get_pivot_table_source_range(self, sheet: str, name: str) -> str:
        cache = self.get_pivot_cache(self.get_pivot_table(sheet, name).cache_id)
        return f"{quote_sheet_name(cache.source_sheet)}!{cache.source_range}"

    def get_pivot_table_target_cell(self, sheet: str, name: str) -> str:
        return self.get_pivot_table(sheet, name).location

    def get_pivot_table_info(self, sheet: str, name: str) -> Dict[str, object]:
        pivot = self.get_pivot_table(sheet, name)
        cache = self.get_pivot_cache(pivot.cache_id)
        names = [f.name for f in cache.fields]
        return {
            "name": pivot.name,
            "sheet": sheet,
            "location": pivot.location,
            "source_sheet": cache.source_sheet,
            "source_range": cache.source_range,
            "cache_id": cache.cache_id,
            "record_count": cache.record_count,
            "row_fields": [names[i] for i in pivot.row_fields if i < len(names)],
            "column_fields": [names[i] for i in pivot.column_fields if i < len(names)],
            "data_fields": [
                {"field": names[d.field_index] if d.field_index < len(names) else None,
                 "function": d.function, "name": d.name}
                for d in pivot.data_fields
            ],
        }

    def has_pivot_tables(self, sheet: Optional[str] = None) -> bool:
        return self.count_pivot_tables(sheet) > 0

    def count_pivot_tables(self, sheet: Optional[str] = None) -> int:
        if sheet is not None:
            return len(self[sheet].pivot_tables)
        return sum(len(ws.pivot_tables) for ws in self.worksheets)

    def remove_pivot_table(self, sheet: str, name: str) -> None:
        pivot = self.get_pivot_table(sheet, name)
        self[sheet].pivot_tables.remove(pivot)
        self._drop_unused_caches()

    def _drop_unused_caches(self) -> None:
        used = {p.cache_id for ws in self.worksheets for p in ws.pivot_tables}
        self.pivot_caches = [c for c in self.pivot_caches if c.cache_id in used]


def new(settings: Optional[EngineSettings] = None) -> Workbook:
    """A workbook with one empty sheet named "Sheet1"."""
    workbook = Workbook(settings)
    workbook.add_sheet("Sheet1")
    workbook.set_active_tab(0)
    return workbook


def new_empty(settings: Optional[EngineSettings] = None) -> Workbook:
    """A workbook with no sheets."""
    return Workbook(settings)
