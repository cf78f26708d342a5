"""Package writer.

Two strategies behind one interface:
- FullWriter: every modelled part plus the parts and relationships kept
  opaque from a read package
- LightWriter: cells, styles, strings and sheet-level formatting only,
  with sheetData streamed row by row into its ZIP entry

Both compact the style registry and shared string table, build a PartGraph,
write a deterministic ZIP (fixed timestamps, [Content_Types].xml first),
optionally wrap it in an encrypted container, and commit atomically.
"""

from __future__ import annotations

import contextlib
import io
import logging
import os
import tempfile
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import BinaryIO, Dict, List, Optional, Tuple, Union

from ..charts import Chart
from ..config import EncryptionAlgorithm, EngineSettings, WriterMode, get_settings
from ..drawing import IMAGE_CONTENT_TYPES, Picture, RawAnchor
from ..exceptions import FormatError, IoError
from ..styles import DifferentialStyle
from ..workbook import Workbook
from ..worksheet import Worksheet
from .crypto import encrypt_package
from .drawing_part import VmlOleShape, write_chart, write_comments, write_drawing, write_vml
from .namespaces import (
    CT_CHART,
    CT_COMMENTS,
    CT_CORE_PROPERTIES,
    CT_CUSTOM_PROPERTIES,
    CT_DRAWING,
    CT_EXTENDED_PROPERTIES,
    CT_OLE_OBJECT,
    CT_PIVOT_CACHE_DEFINITION,
    CT_PIVOT_TABLE,
    CT_SHARED_STRINGS,
    CT_STYLES,
    CT_TABLE,
    CT_THEME,
    CT_VML,
    CT_WORKBOOK,
    CT_WORKBOOK_MACRO,
    CT_WORKSHEET,
    REL_CHART,
    REL_COMMENTS,
    REL_CORE_PROPERTIES,
    REL_CUSTOM_PROPERTIES,
    REL_DRAWING,
    REL_EXTENDED_PROPERTIES,
    REL_HYPERLINK,
    REL_IMAGE,
    REL_OFFICE_DOCUMENT,
    REL_OLE_OBJECT,
    REL_PACKAGE,
    REL_PIVOT_CACHE_DEFINITION,
    REL_PIVOT_TABLE,
    REL_SHARED_STRINGS,
    REL_STYLES,
    REL_TABLE,
    REL_THEME,
    REL_VML_DRAWING,
    REL_WORKSHEET,
)
from .package import PartData, PartGraph
from .pivot_part import write_pivot_cache, write_pivot_table, write_table
from .sheet_part import OleWriteSpec, SheetWriteContext, write_worksheet
from .strings_part import write_shared_strings
from .styles_part import write_styles
from .workbook_part import (
    write_core_properties,
    write_custom_properties,
    write_extended_properties,
    write_workbook_xml,
)

logger = logging.getLogger(__name__)

WORKBOOK_PART = "xl/workbook.xml"
ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)

# Embedded documents other than raw OLE streams
PACKAGE_CONTENT_TYPES = {
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
}

Target = Union[str, "os.PathLike[str]", BinaryIO]


@dataclass
class WriteOptions:
    """Per-call write parameters; unset fields fall back to EngineSettings."""
    mode: Optional[WriterMode] = None
    compression_level: Optional[int] = None  # 0 (stored) to 9
    password: Optional[str] = None
    algorithm: Optional[EncryptionAlgorithm] = None
    salt: Optional[Union[str, bytes]] = None  # base64 text or raw bytes
    spin_count: Optional[int] = None

    def resolved(self, settings: Optional[EngineSettings] = None) -> "WriteOptions":
        settings = settings or get_settings()
        options = replace(
            self,
            mode=self.mode or settings.writer_mode,
            compression_level=settings.compression_level if self.compression_level is None
            else self.compression_level,
            algorithm=self.algorithm or settings.encryption_algorithm,
            spin_count=self.spin_count or settings.spin_count,
        )
        if not 0 <= options.compression_level <= 9:
            raise ValueError(f"Compression level must be 0-9, got {options.compression_level}")
        if options.mode not in ("full", "light"):
            raise ValueError(f"Unknown writer mode: {options.mode}")
        return options


# =============================================================================
# ATOMIC COMMIT
# =============================================================================

def commit_bytes(data: bytes, target: Target) -> None:
    """Write finished bytes to a buffer, or atomically replace a file.

    File targets go through a temporary file in the destination directory
    that is renamed over the destination; on failure the temporary file is
    removed and an existing destination is left untouched.
    """
    if hasattr(target, "write"):
        target.write(data)
        return

    path = os.fspath(target)
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(prefix=".~", suffix=".tmp", dir=directory)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException as e:
        if tmp_path is not None:
            with contextlib.suppress(OSError):
                os.remove(tmp_path)
        if isinstance(e, OSError):
            raise IoError(f"Could not write {path}: {e}") from e
        raise
    logger.info(f"[WRITE] Committed {len(data)} bytes to {path}")


# =============================================================================
# ZIP
# =============================================================================

def _zip_info(name: str, level: int) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=ZIP_DATE_TIME)
    info.create_system = 0
    info.external_attr = 0o600 << 16
    info.compress_type = zipfile.ZIP_STORED if level == 0 else zipfile.ZIP_DEFLATED
    return info


def build_zip(entries: List[Tuple[str, PartData]], level: int) -> bytes:
    """Deterministic ZIP: fixed timestamps and attributes, entries in the given order."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in entries:
            if callable(data):
                rendered = io.BytesIO()
                data(rendered)
                data = rendered.getvalue()
            zf.writestr(_zip_info(name, level), data, compresslevel=level if level else None)
    return buffer.getvalue()


# =============================================================================
# WRITERS
# =============================================================================

def _collect_dxfs(sheets: List[Worksheet]) -> Tuple[List[DifferentialStyle], Dict[DifferentialStyle, int]]:
    dxfs: List[DifferentialStyle] = []
    ids: Dict[DifferentialStyle, int] = {}
    for sheet in sheets:
        for rule in sheet.conditional_formatting:
            if rule.dxf is not None and rule.dxf not in ids:
                ids[rule.dxf] = len(dxfs)
                dxfs.append(rule.dxf)
    return dxfs, ids


@dataclass
class _SheetParts:
    """Where one worksheet went in the part graph."""
    sheet: Worksheet
    part: str
    rel_id: str
    ctx: SheetWriteContext = field(default_factory=SheetWriteContext)


class WorkbookWriter(ABC):
    """Turns a Workbook into package bytes."""

    mode: WriterMode = "full"

    def __init__(self, workbook: Workbook, options: Optional[WriteOptions] = None):
        self.workbook = workbook
        self.options = (options or WriteOptions()).resolved()

    def build(self) -> bytes:
        """The finished package, encrypted when a password is set."""
        workbook = self.workbook
        if len(workbook) == 0:
            raise FormatError("Cannot write a workbook without sheets")
        sheets = workbook.worksheets
        workbook.styles.compact(workbook)
        workbook.shared_strings.compact(workbook)

        graph = PartGraph(reserved_names=self._reserved_names())
        content_type = CT_WORKBOOK_MACRO if workbook.macro_enabled else CT_WORKBOOK
        graph.add_part(WORKBOOK_PART, b"", content_type)  # Rendered last, listed first
        workbook_rels = graph.rels_for(WORKBOOK_PART)
        workbook_rels.reserve(self._preserved_workbook_rel_ids())

        dxfs, dxf_ids = _collect_dxfs(sheets)
        placed: List[_SheetParts] = []
        for sheet in sheets:
            part = graph.allocate("xl/worksheets/sheet{}.xml")
            rel_id = graph.relate(WORKBOOK_PART, REL_WORKSHEET, part)
            graph.add_part(part, b"", CT_WORKSHEET)
            placed.append(_SheetParts(sheet, part, rel_id, SheetWriteContext(dxf_ids=dxf_ids)))

        pivot_cache_rels = self._add_sheet_parts(graph, placed)
        for entry in placed:
            graph.add_part(entry.part, self._sheet_data(entry), CT_WORKSHEET)

        graph.relate(WORKBOOK_PART, REL_STYLES, "xl/styles.xml")
        graph.add_part("xl/styles.xml", write_styles(workbook.styles, dxfs), CT_STYLES)
        if len(workbook.shared_strings):
            graph.relate(WORKBOOK_PART, REL_SHARED_STRINGS, "xl/sharedStrings.xml")
            graph.add_part(
                "xl/sharedStrings.xml",
                write_shared_strings(workbook.shared_strings, workbook.shared_strings.reference_count(workbook)),
                CT_SHARED_STRINGS,
            )
        if workbook.theme_xml is not None:
            graph.relate(WORKBOOK_PART, REL_THEME, "xl/theme/theme1.xml")
            graph.add_part("xl/theme/theme1.xml", workbook.theme_xml, CT_THEME)
        self._add_preserved(graph)

        graph.add_part(WORKBOOK_PART, write_workbook_xml(
            workbook,
            [entry.rel_id for entry in placed],
            pivot_cache_rels,
            include_preserved=self.mode == "full",
        ), content_type)
        self._add_doc_props(graph)

        package = build_zip(graph.entries(), self.options.compression_level)
        logger.info(f"[WRITE] {self.mode} package: {len(sheets)} sheets, {len(graph.part_names)} parts, "
                    f"{len(package)} bytes (level {self.options.compression_level})")
        if self.options.password is not None:
            package = encrypt_package(
                package,
                self.options.password,
                algorithm=self.options.algorithm,
                salt=self.options.salt,
                spin_count=self.options.spin_count,
            )
        return package

    def write(self, target: Target) -> None:
        commit_bytes(self.build(), target)

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def _reserved_names(self) -> List[str]:
        return []

    def _preserved_workbook_rel_ids(self) -> List[str]:
        return []

    def _add_preserved(self, graph: PartGraph) -> None:
        pass

    @abstractmethod
    def _add_sheet_parts(self, graph: PartGraph, placed: List[_SheetParts]) -> List[Tuple[int, str]]:
        """Add every part hanging off the worksheets; returns (cacheId, r:id) pairs."""

    @abstractmethod
    def _sheet_data(self, entry: _SheetParts) -> PartData:
        """The worksheet part itself, as bytes or a streaming callback."""

    # -------------------------------------------------------------------------
    # Shared pieces
    # -------------------------------------------------------------------------

    @staticmethod
    def _add_hyperlinks(graph: PartGraph, entry: _SheetParts) -> None:
        for key in sorted(entry.sheet.hyperlinks):
            link = entry.sheet.hyperlinks[key]
            if link.target:
                entry.ctx.hyperlink_rels[key] = graph.relate_external(entry.part, REL_HYPERLINK, link.target)

    def _add_doc_props(self, graph: PartGraph) -> None:
        workbook = self.workbook
        graph.relate("", REL_OFFICE_DOCUMENT, WORKBOOK_PART)
        graph.relate("", REL_CORE_PROPERTIES, "docProps/core.xml")
        graph.add_part("docProps/core.xml", write_core_properties(workbook.properties), CT_CORE_PROPERTIES)
        graph.relate("", REL_EXTENDED_PROPERTIES, "docProps/app.xml")
        graph.add_part("docProps/app.xml", write_extended_properties(workbook.properties, workbook.sheet_names),
                       CT_EXTENDED_PROPERTIES)
        if workbook.properties.custom:
            graph.relate("", REL_CUSTOM_PROPERTIES, "docProps/custom.xml")
            graph.add_part("docProps/custom.xml", write_custom_properties(workbook.properties),
                           CT_CUSTOM_PROPERTIES)


class FullWriter(WorkbookWriter):
    """Writes everything the model holds plus opaque preserved content."""

    mode = "full"

    def __init__(self, workbook: Workbook, options: Optional[WriteOptions] = None):
        super().__init__(workbook, options)
        self._previews: Dict[int, str] = {}  # OLE shape id -> preview image part

    def _reserved_names(self) -> List[str]:
        return list(self.workbook.preserved_parts)

    def _preserved_workbook_rel_ids(self) -> List[str]:
        return [link.rel_id for link in self.workbook.preserved_links]

    def _sheet_data(self, entry: _SheetParts) -> PartData:
        buffer = io.BytesIO()
        write_worksheet(entry.sheet, entry.ctx, buffer)
        return buffer.getvalue()

    def _add_sheet_parts(self, graph: PartGraph, placed: List[_SheetParts]) -> List[Tuple[int, str]]:
        workbook = self.workbook
        used_caches = {p.cache_id for entry in placed for p in entry.sheet.pivot_tables}
        cache_parts: Dict[int, str] = {}
        for cache in workbook.pivot_caches:
            if cache.cache_id in used_caches:
                cache_parts[cache.cache_id] = graph.allocate("xl/pivotCache/pivotCacheDefinition{}.xml")

        for number, entry in enumerate(placed, start=1):
            sheet = entry.sheet
            graph.rels_for(entry.part).reserve(link.rel_id for link in sheet.preserved_links)
            self._add_hyperlinks(graph, entry)
            if sheet.drawings:
                self._add_drawing(graph, entry)
            self._add_tables(graph, entry)
            ole_shapes = self._add_ole_objects(graph, entry, number)
            if sheet.comments or ole_shapes:
                self._add_comments(graph, entry, number, ole_shapes)
            for pivot in sheet.pivot_tables:
                part = graph.allocate("xl/pivotTables/pivotTable{}.xml")
                graph.relate(entry.part, REL_PIVOT_TABLE, part)
                graph.relate(part, REL_PIVOT_CACHE_DEFINITION, cache_parts[pivot.cache_id])
                graph.add_part(part, write_pivot_table(pivot, workbook.get_pivot_cache(pivot.cache_id)),
                               CT_PIVOT_TABLE)
            for link in sheet.preserved_links:
                self._relate_link(graph, entry.part, link)

        pivot_cache_rels: List[Tuple[int, str]] = []
        for cache in workbook.pivot_caches:
            part = cache_parts.get(cache.cache_id)
            if part is None:
                continue
            rel_id = graph.relate(WORKBOOK_PART, REL_PIVOT_CACHE_DEFINITION, part)
            graph.add_part(part, write_pivot_cache(cache), CT_PIVOT_CACHE_DEFINITION)
            pivot_cache_rels.append((cache.cache_id, rel_id))
        dropped = len(workbook.pivot_caches) - len(pivot_cache_rels)
        if dropped:
            logger.info(f"[WRITE] Dropped {dropped} pivot caches no pivot table uses")
        return pivot_cache_rels

    @staticmethod
    def _relate_link(graph: PartGraph, source: str, link) -> str:
        if link.external:
            return graph.relate_external(source, link.rel_type, link.target, rel_id=link.rel_id)
        return graph.relate(source, link.rel_type, link.target, rel_id=link.rel_id)

    @staticmethod
    def _add_media(graph: PartGraph, data: bytes, extension: str) -> str:
        extension = extension.lower()
        part = graph.allocate(f"xl/media/image{{}}.{extension}")
        graph.add_part(part, data, IMAGE_CONTENT_TYPES.get(extension, "application/octet-stream"))
        return part

    def _add_drawing(self, graph: PartGraph, entry: _SheetParts) -> None:
        drawing = graph.allocate("xl/drawings/drawing{}.xml")
        entry.ctx.drawing_rel = graph.relate(entry.part, REL_DRAWING, drawing)
        graph.add_part(drawing, b"", CT_DRAWING)
        objects = entry.sheet.drawings

        # Ids written inside raw anchors stay as they were
        raw = [obj for obj in objects if isinstance(obj, RawAnchor)]
        graph.rels_for(drawing).reserve(link.rel_id for obj in raw for link in obj.links)
        for obj in raw:
            for link in obj.links:
                if link.rel_id not in graph.rels_for(drawing):
                    self._relate_link(graph, drawing, link)

        rel_ids: Dict[int, str] = {}
        for position, obj in enumerate(objects):
            if isinstance(obj, Picture):
                rel_ids[position] = graph.relate(drawing, REL_IMAGE, self._add_media(graph, obj.data, obj.extension))
            elif isinstance(obj, Chart):
                chart_part = graph.allocate("xl/charts/chart{}.xml")
                rel_ids[position] = graph.relate(drawing, REL_CHART, chart_part)
                graph.add_part(chart_part, write_chart(obj), CT_CHART)
                if obj.raw_xml is not None:
                    for link in obj.links:
                        self._relate_link(graph, chart_part, link)
        graph.add_part(drawing, write_drawing(objects, rel_ids), CT_DRAWING)

    def _add_tables(self, graph: PartGraph, entry: _SheetParts) -> None:
        for table in entry.sheet.tables:
            part = graph.allocate("xl/tables/table{}.xml")
            entry.ctx.table_rels.append(graph.relate(entry.part, REL_TABLE, part))
            graph.add_part(part, write_table(table), CT_TABLE)

    def _add_ole_objects(self, graph: PartGraph, entry: _SheetParts, number: int) -> List[VmlOleShape]:
        shapes: List[VmlOleShape] = []
        # OLE shapes follow the comment boxes in the sheet's shape id block
        next_id = 1024 * number + len(entry.sheet.comments) + 1
        for obj in entry.sheet.ole_objects:
            extension = obj.extension.lower()
            if extension == "bin":
                part = graph.allocate("xl/embeddings/oleObject{}.bin")
                rel_id = graph.relate(entry.part, REL_OLE_OBJECT, part)
                graph.add_part(part, obj.data, CT_OLE_OBJECT)
            else:
                part = graph.allocate(f"xl/embeddings/package{{}}.{extension}")
                rel_id = graph.relate(entry.part, REL_PACKAGE, part)
                graph.add_part(part, obj.data, PACKAGE_CONTENT_TYPES.get(extension, "application/octet-stream"))
            preview_rel = None
            if obj.preview is not None:
                preview = self._add_media(graph, obj.preview, obj.preview_extension)
                preview_rel = graph.relate(entry.part, REL_IMAGE, preview)
                self._previews[next_id] = preview
            entry.ctx.ole_objects.append(OleWriteSpec(obj=obj, rel_id=rel_id, preview_rel_id=preview_rel,
                                                      shape_id=next_id))
            shapes.append(VmlOleShape(shape_id=next_id, anchor=obj.anchor, image_rel_id=None))
            next_id += 1
        return shapes

    def _add_comments(self, graph: PartGraph, entry: _SheetParts, number: int,
                      ole_shapes: List[VmlOleShape]) -> None:
        sheet = entry.sheet
        vml = graph.allocate("xl/drawings/vmlDrawing{}.vml")
        entry.ctx.legacy_drawing_rel = graph.relate(entry.part, REL_VML_DRAWING, vml)
        for shape in ole_shapes:
            if shape.shape_id in self._previews:
                shape.image_rel_id = graph.relate(vml, REL_IMAGE, self._previews[shape.shape_id])
        graph.add_part(vml, write_vml(number, sheet.comments, ole_shapes), CT_VML)
        if sheet.comments:
            part = graph.allocate("xl/comments/comment{}.xml")
            graph.relate(entry.part, REL_COMMENTS, part)
            graph.add_part(part, write_comments(sheet.comments), CT_COMMENTS)

    def _add_preserved(self, graph: PartGraph) -> None:
        workbook = self.workbook
        for preserved in workbook.preserved_parts.values():
            graph.add_part(preserved.name, preserved.data, preserved.content_type)
        for link in workbook.preserved_links:
            self._relate_link(graph, WORKBOOK_PART, link)
        if workbook.preserved_parts:
            logger.debug(f"[WRITE] Re-emitted {len(workbook.preserved_parts)} preserved parts")


class LightWriter(WorkbookWriter):
    """Streams cells and sheet formatting; drops the drawing layer and opaque content."""

    mode = "light"

    def _sheet_data(self, entry: _SheetParts) -> PartData:
        sheet, ctx = entry.sheet, entry.ctx

        def stream(out) -> None:
            write_worksheet(sheet, ctx, out)

        return stream

    def _add_sheet_parts(self, graph: PartGraph, placed: List[_SheetParts]) -> List[Tuple[int, str]]:
        for entry in placed:
            entry.ctx.include_preserved = False
            self._add_hyperlinks(graph, entry)
            sheet = entry.sheet
            dropped = {
                "drawings": len(sheet.drawings),
                "OLE objects": len(sheet.ole_objects),
                "comments": len(sheet.comments),
                "tables": len(sheet.tables),
                "pivot tables": len(sheet.pivot_tables),
                "preserved elements": len(sheet.preserved_elements),
            }
            dropped = {k: v for k, v in dropped.items() if v}
            if dropped:
                summary = ", ".join(f"{v} {k}" for k, v in dropped.items())
                logger.warning(f"[WRITE] Light writer drops from {sheet.title}: {summary}")
        if self.workbook.preserved_parts:
            logger.warning(f"[WRITE] Light writer drops {len(self.workbook.preserved_parts)} preserved parts")
        if self.workbook.opaque_sheets:
            logger.warning(f"[WRITE] Light writer drops {len(self.workbook.opaque_sheets)} non-worksheet sheets")
        return []


# =============================================================================
# PUBLIC API
# =============================================================================

WRITERS = {"full": FullWriter, "light": LightWriter}


def get_writer(workbook: Workbook, options: Optional[WriteOptions] = None) -> WorkbookWriter:
    options = (options or WriteOptions()).resolved()
    return WRITERS[options.mode](workbook, options)


def write_bytes(workbook: Workbook, options: Optional[WriteOptions] = None) -> bytes:
    return get_writer(workbook, options).build()


def write(workbook: Workbook, target: Target, options: Optional[WriteOptions] = None) -> None:
    """Write ``workbook`` to a path (atomically) or a binary buffer."""
    get_writer(workbook, options).write(target)


def write_light(workbook: Workbook, target: Target, compression_level: Optional[int] = None) -> None:
    write(workbook, target, WriteOptions(mode="light", compression_level=compression_level))


def write_with_password(workbook: Workbook, target: Target, password: str,
                        algorithm: Optional[EncryptionAlgorithm] = None,
                        salt: Optional[Union[str, bytes]] = None,
                        spin_count: Optional[int] = None) -> None:
    write(workbook, target, WriteOptions(password=password, algorithm=algorithm, salt=salt,
                                         spin_count=spin_count))


def write_with_compression(workbook: Workbook, target: Target, compression_level: int) -> None:
    write(workbook, target, WriteOptions(compression_level=compression_level))
