"""Package reader.

open_workbook() turns .xlsx bytes (or an encrypted container holding them)
into a Workbook. Styles and shared strings are parsed before any worksheet.
In lazy mode only workbook-level parts are parsed up front; each sheet's
part and everything hanging off it are parsed on first access.

Parts and relationships the model does not cover are kept on the workbook
and sheets so the writer can emit them again.
"""

from __future__ import annotations

import io
import logging
import os
import posixpath
import zipfile
import zlib
from typing import BinaryIO, Dict, List, Optional, Set, Union

from ..config import EngineSettings, get_settings
from ..drawing import DrawingAnchor, OleObject, PartLink
from ..exceptions import Diagnostic, FormatError, IoError
from ..workbook import DefinedName, OpaqueSheet, PreservedPart, Workbook
from ..worksheet import Worksheet
from .crypto import decrypt_package, is_encrypted_container
from .drawing_part import read_comments, read_drawing, read_vml_visible_notes
from .namespaces import (
    CT_WORKBOOK_MACRO,
    REL_CALC_CHAIN,
    REL_COMMENTS,
    REL_CORE_PROPERTIES,
    REL_CUSTOM_PROPERTIES,
    REL_EXTENDED_PROPERTIES,
    REL_HYPERLINK,
    REL_IMAGE,
    REL_OFFICE_DOCUMENT,
    REL_PIVOT_CACHE_DEFINITION,
    REL_PIVOT_CACHE_RECORDS,
    REL_PIVOT_TABLE,
    REL_SHARED_STRINGS,
    REL_STYLES,
    REL_THEME,
    REL_WORKSHEET,
)
from .package import ContentTypes, RelationshipSet, rels_path_for
from .pivot_part import read_pivot_cache, read_pivot_table, read_table
from .sheet_part import SheetReadContext, read_worksheet
from .strings_part import read_shared_strings
from .styles_part import read_styles
from .workbook_part import (
    read_core_properties,
    read_custom_properties,
    read_extended_properties,
    read_workbook_xml,
)

logger = logging.getLogger(__name__)

Source = Union[bytes, bytearray, str, "os.PathLike[str]", BinaryIO]

CONTENT_TYPES_PART = "[Content_Types].xml"

# Workbook relationships whose parts the model rebuilds on write
_WORKBOOK_MODELLED = {REL_WORKSHEET, REL_STYLES, REL_SHARED_STRINGS, REL_THEME, REL_PIVOT_CACHE_DEFINITION}
# Worksheet relationships that are not referenced from the sheet XML
_SHEET_IMPLICIT = {REL_COMMENTS, REL_PIVOT_TABLE, REL_HYPERLINK}


def _read_source(source: Source) -> bytes:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source)
    if hasattr(source, "read"):
        return source.read()
    try:
        with open(source, "rb") as f:
            return f.read()
    except OSError as e:
        raise IoError(f"Could not read {source}: {e}") from e


class PackageReader:
    """One open package: entry lookup, consumption tracking and part parsing."""

    def __init__(self, archive: zipfile.ZipFile, workbook: Workbook):
        self.archive = archive
        self.workbook = workbook
        # OPC part names compare case-insensitively
        self._names: Dict[str, str] = {
            name.lower(): name for name in archive.namelist() if not name.endswith("/")
        }
        self._consumed: Set[str] = set()
        # Lazy sheet part -> entries only it reaches, preserved once it loads
        self._pending: Dict[str, Set[str]] = {}
        self.content_types = ContentTypes()
        self.xf_map: List[int] = [0]
        self.sst_map: List[int] = []
        self.dxfs: list = []

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    def _entry(self, part: str) -> Optional[str]:
        return self._names.get(part.lstrip("/").lower())

    def has_part(self, part: str) -> bool:
        return self._entry(part) is not None

    def load(self, part: str) -> bytes:
        """Bytes of a part, marking it consumed. Raises KeyError when absent."""
        name = self._entry(part)
        if name is None:
            raise KeyError(part)
        data = self._peek(name)
        self._consumed.add(name)
        if name in self.workbook.preserved_parts:
            del self.workbook.preserved_parts[name]
        return data

    def load_optional(self, part: str) -> Optional[bytes]:
        return self.load(part) if self.has_part(part) else None

    def consume(self, part: str) -> None:
        """Mark a part as handled without reading it."""
        name = self._entry(part)
        if name is not None:
            self._consumed.add(name)
            self.workbook.preserved_parts.pop(name, None)

    def rels(self, part: str) -> RelationshipSet:
        data = self.load_optional(rels_path_for(part))
        if data is None:
            return RelationshipSet(part)
        return RelationshipSet.from_xml(part, data)

    def require(self, part: str, what: str) -> bytes:
        try:
            return self.load(part)
        except KeyError:
            raise FormatError(f"Missing {what} part", part=part) from None

    # -------------------------------------------------------------------------
    # Workbook
    # -------------------------------------------------------------------------

    def read(self, lazy: bool) -> Workbook:
        workbook = self.workbook
        self.content_types = ContentTypes.from_xml(self.require(CONTENT_TYPES_PART, "content types"))

        root_rels = self.rels("")
        office = root_rels.by_type(REL_OFFICE_DOCUMENT)
        if not office:
            raise FormatError("Package has no officeDocument relationship", part="_rels/.rels")
        workbook_part = root_rels.resolve(office[0])
        workbook_xml = self.require(workbook_part, "workbook")
        workbook.macro_enabled = self.content_types.content_type_for(workbook_part) == CT_WORKBOOK_MACRO
        wb_rels = self.rels(workbook_part)

        self._read_styles_and_strings(wb_rels)
        entries = read_workbook_xml(workbook, workbook_xml, workbook_part)

        for rel in wb_rels.by_type(REL_THEME)[:1]:
            workbook.theme_xml = self.load(wb_rels.resolve(rel))
        for rel in wb_rels.by_type(REL_CALC_CHAIN):
            # Rebuilt by the consuming application
            self.consume(wb_rels.resolve(rel))

        for cache_id, rel_id in entries.pivot_caches:
            target = wb_rels.target_part(rel_id)
            workbook.pivot_caches.append(read_pivot_cache(self.require(target, "pivot cache"), target, cache_id))
            cache_rels = self.rels(target)
            for rel in cache_rels.by_type(REL_PIVOT_CACHE_RECORDS):
                # Caches are written with refreshOnLoad and no records
                self.consume(cache_rels.resolve(rel))

        sheet_rel_ids = set()
        worksheet_at: List[Optional[int]] = []  # File tab index -> worksheet index
        previous: Optional[Worksheet] = None
        for entry in entries.sheets:
            rel = wb_rels.get(entry.rel_id)
            target = wb_rels.resolve(rel)
            if rel.rel_type != REL_WORKSHEET:
                # Chartsheets and dialog sheets stay opaque; their parts are preserved
                workbook.opaque_sheets.append(OpaqueSheet(
                    name=entry.name, state=entry.state, rel_id=rel.rel_id, follows=previous,
                ))
                workbook.diagnostics.append(Diagnostic(
                    part=target, severity="info", message=f"Sheet {entry.name!r} is not a worksheet; kept opaque",
                    details={"rel_type": rel.rel_type},
                ))
                worksheet_at.append(None)
                continue
            sheet_rel_ids.add(rel.rel_id)
            sheet = Worksheet(workbook, entry.name)
            sheet.state = entry.state
            workbook._attach_sheet(sheet)
            worksheet_at.append(len(workbook) - 1)
            previous = sheet
            if lazy:
                sheet._set_loader(self._loader_for(target))
            else:
                self.read_sheet(sheet, target)
        if workbook.opaque_sheets:
            self._map_tab_indices(worksheet_at, workbook_part)

        for rel in wb_rels:
            if rel.rel_id in sheet_rel_ids or rel.rel_type in _WORKBOOK_MODELLED or rel.rel_type == REL_CALC_CHAIN:
                continue
            workbook.preserved_links.append(_link(wb_rels, rel))

        self._read_doc_props(root_rels)
        self._collect_preserved()
        if workbook.view.active_tab >= len(workbook):
            workbook.view.active_tab = max(len(workbook) - 1, 0)
        if workbook.diagnostics:
            logger.warning(f"[READ] {len(workbook.diagnostics)} diagnostics while reading package")
        logger.info(f"[READ] Opened workbook: {len(workbook)} sheets ({'lazy' if lazy else 'eager'}), "
                    f"{len(workbook.preserved_parts)} preserved parts")
        return workbook

    def _map_tab_indices(self, worksheet_at: List[Optional[int]], part: str) -> None:
        """Turn file tab indices in names and the view into worksheet indices."""
        workbook = self.workbook

        def nearest(index: int) -> int:
            for candidate in reversed(worksheet_at[:index + 1]):
                if candidate is not None:
                    return candidate
            return 0

        kept: List[DefinedName] = []
        for defined in workbook.defined_names:
            local = defined.local_sheet_id
            if local is not None and 0 <= local < len(worksheet_at):
                if worksheet_at[local] is None:
                    workbook.diagnostics.append(Diagnostic(
                        part=part,
                        message=f"Name {defined.name!r} is scoped to a non-worksheet sheet; dropped",
                    ))
                    continue
                defined.local_sheet_id = worksheet_at[local]
            kept.append(defined)
        workbook.defined_names = kept
        view = workbook.view
        if view.active_tab < len(worksheet_at):
            view.active_tab = nearest(view.active_tab)
        if view.first_sheet < len(worksheet_at):
            view.first_sheet = nearest(view.first_sheet)

    def _read_styles_and_strings(self, wb_rels: RelationshipSet) -> None:
        workbook = self.workbook
        for rel in wb_rels.by_type(REL_STYLES)[:1]:
            target = wb_rels.resolve(rel)
            result = read_styles(self.require(target, "styles"), workbook.diagnostics)
            workbook.styles = result.registry
            self.xf_map = result.xf_map
            self.dxfs = result.dxfs
        for rel in wb_rels.by_type(REL_SHARED_STRINGS)[:1]:
            target = wb_rels.resolve(rel)
            workbook.shared_strings, self.sst_map = read_shared_strings(self.require(target, "shared strings"))

    def _read_doc_props(self, root_rels: RelationshipSet) -> None:
        props = self.workbook.properties
        readers = (
            (REL_CORE_PROPERTIES, read_core_properties),
            (REL_EXTENDED_PROPERTIES, read_extended_properties),
            (REL_CUSTOM_PROPERTIES, read_custom_properties),
        )
        for rel_type, reader in readers:
            for rel in root_rels.by_type(rel_type)[:1]:
                target = root_rels.resolve(rel)
                data = self.load_optional(target)
                if data is not None:
                    reader(props, data, target)

    def _collect_preserved(self) -> None:
        pending = set().union(*self._pending.values())
        for name in self._names.values():
            if name not in self._consumed and name not in pending:
                self._preserve(name)

    def _preserve(self, name: str) -> None:
        self.workbook.preserved_parts[name] = PreservedPart(
            name=name,
            content_type=self.content_types.content_type_for(name),
            data=self._peek(name),
        )

    def _peek(self, name: str) -> bytes:
        """Entry bytes without marking the entry consumed."""
        try:
            return self.archive.read(name)
        except (zipfile.BadZipFile, zlib.error) as e:
            raise IoError(f"Corrupt ZIP entry: {e}", part=name) from e

    # -------------------------------------------------------------------------
    # Worksheets
    # -------------------------------------------------------------------------

    def _owned_by(self, part: str) -> Set[str]:
        """Entries reachable from ``part`` through internal relationships, including rels files."""
        found: Set[str] = set()
        stack = [part]
        while stack:
            current = stack.pop()
            name = self._entry(current)
            if name is None or name in found or name in self._consumed:
                continue
            found.add(name)
            rels_name = self._entry(rels_path_for(current))
            if rels_name is None:
                continue
            found.add(rels_name)
            rels = RelationshipSet.from_xml(current, self._peek(rels_name))
            stack.extend(rels.resolve(rel) for rel in rels if not rel.is_external)
        return found

    def _loader_for(self, part: str):
        self._pending[part] = self._owned_by(part)

        def load_sheet(sheet: Worksheet) -> None:
            self.read_sheet(sheet, part)
            owned = self._pending.pop(part, set())
            still_pending = set().union(*self._pending.values())
            for name in sorted(owned - still_pending - self._consumed):
                self._preserve(name)
        return load_sheet

    def read_sheet(self, sheet: Worksheet, part: str) -> None:
        """Parse a worksheet part and every part it relates to."""
        workbook = self.workbook
        diagnostics = workbook.diagnostics
        rels = self.rels(part)
        ctx = SheetReadContext(part=part, rels=rels, xf_map=self.xf_map, sst_map=self.sst_map,
                               dxfs=self.dxfs, diagnostics=diagnostics)
        links = read_worksheet(sheet, self.require(part, "worksheet"), ctx)
        modelled: Set[str] = set()

        if links.drawing:
            modelled.add(links.drawing)
            target = rels.target_part(links.drawing)
            sheet.drawings.extend(read_drawing(self.require(target, "drawing"), target, self.rels(target),
                                               self.load, diagnostics))

        for rel in rels.by_type(REL_COMMENTS):
            target = rels.resolve(rel)
            sheet.comments.update(read_comments(self.require(target, "comments"), target))

        if links.legacy_drawing:
            modelled.add(links.legacy_drawing)
            target = rels.target_part(links.legacy_drawing)
            for key in read_vml_visible_notes(self.require(target, "VML drawing"), target):
                if key in sheet.comments:
                    sheet.comments[key].visible = True
            vml_rels = self.rels(target)
            for rel in vml_rels.by_type(REL_IMAGE):
                # OLE previews are reloaded through the worksheet relationship
                self.consume(vml_rels.resolve(rel))

        for rel_id in links.tables:
            modelled.add(rel_id)
            target = rels.target_part(rel_id)
            sheet.tables.append(read_table(self.require(target, "table"), target, diagnostics))

        cache_ids = {c.cache_id for c in workbook.pivot_caches}
        for rel in rels.by_type(REL_PIVOT_TABLE):
            target = rels.resolve(rel)
            pivot, cache_id = read_pivot_table(self.require(target, "pivot table"), target, diagnostics)
            self.rels(target)  # Only points back at the cache definition
            if cache_id not in cache_ids:
                diagnostics.append(Diagnostic(part=target,
                                              message=f"Pivot table {pivot.name!r} refers to unknown cache {cache_id}; dropped"))
                continue
            sheet.pivot_tables.append(pivot)

        for spec in links.ole_objects:
            target = rels.target_part(spec.rel_id)
            preview = None
            preview_extension = "png"
            if spec.preview_rel_id:
                preview_part = rels.target_part(spec.preview_rel_id)
                preview = self.require(preview_part, "OLE preview")
                preview_extension = posixpath.splitext(preview_part)[1].lstrip(".").lower() or "png"
                modelled.add(spec.preview_rel_id)
            modelled.add(spec.rel_id)
            sheet.ole_objects.append(OleObject(
                anchor=spec.anchor or DrawingAnchor(),
                prog_id=spec.prog_id,
                data=self.require(target, "OLE object"),
                extension=posixpath.splitext(target)[1].lstrip(".").lower() or "bin",
                preview=preview,
                preview_extension=preview_extension,
                shape_id=spec.shape_id,
            ))

        for rel in rels:
            if rel.rel_type in _SHEET_IMPLICIT or rel.rel_id in modelled:
                continue
            sheet.preserved_links.append(_link(rels, rel))
        logger.debug(f"[READ] Loaded sheet {sheet.title} from {part}")


def _link(rels: RelationshipSet, rel) -> PartLink:
    return PartLink(rel_id=rel.rel_id, rel_type=rel.rel_type, target=rels.resolve(rel), external=rel.is_external)


# =============================================================================
# PUBLIC API
# =============================================================================

def open_workbook(source: Source, password: Optional[str] = None, lazy: Optional[bool] = None,
                  settings: Optional[EngineSettings] = None) -> Workbook:
    """Open a workbook from a path, bytes or a binary file object.

    Encrypted packages need ``password``. With ``lazy=True`` sheet parts are
    parsed on first access; the default comes from EngineSettings.lazy_read.
    """
    settings = settings or get_settings()
    lazy = settings.lazy_read if lazy is None else lazy
    data = _read_source(source)
    if is_encrypted_container(data):
        data = decrypt_package(data, password)
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise IoError(f"Not a valid ZIP package: {e}") from e
    return PackageReader(archive, Workbook(settings)).read(lazy)
