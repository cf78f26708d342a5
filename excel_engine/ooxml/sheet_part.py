"""Worksheet part reader and writer.

The writer streams with lxml's incremental ``xmlfile``: sheetData goes out
row by row, every other child element is built as a small tree and written
in canonical schema order. Elements the model does not cover are kept as
raw XML when reading and re-emitted at their schema position.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, get_args

from lxml import etree

from ..cells import Cell, CellType
from ..conditional_formatting import (
    AboveAverageRule,
    CellIsRule,
    Cfvo,
    CfvoType,
    ColorScaleRule,
    DataBarRule,
    ExpressionRule,
    IconSetRule,
    OtherRule,
    TextRule,
    Top10Rule,
)
from ..data_validation import DataValidationRule, ValidationOperator, ValidationType
from ..drawing import AnchorMarker, DrawingAnchor, OleObject
from ..exceptions import Diagnostic, FormatError
from ..properties import ProtectionHash, SheetProtection
from ..references import CellRange, coordinate, parse_cell_ref
from ..styles import Color, DifferentialStyle
from ..worksheet import (
    ColumnDimension,
    Hyperlink,
    Pane,
    PreservedElement,
    RowDimension,
    Selection,
    Worksheet,
)
from .namespaces import NS_MAIN, NS_MC, NS_R, NS_X14AC, NS_XDR
from .package import RelationshipSet, parse_xml
from .strings_part import escape_text, read_rich, unescape_text, write_rich
from .styles_part import read_color, write_color

logger = logging.getLogger(__name__)

NS_X14 = "http://schemas.microsoft.com/office/spreadsheetml/2009/9/main"
ROOT_NSMAP = {None: NS_MAIN, "r": NS_R, "mc": NS_MC, "x14ac": NS_X14AC}
CHILD_NSMAP = {None: NS_MAIN, "r": NS_R}
R_ID = f"{{{NS_R}}}id"

CFVO_TYPES = get_args(CfvoType)
DV_TYPES = get_args(ValidationType)
DV_OPERATORS = get_args(ValidationOperator)
DV_ERROR_STYLES = ("stop", "warning", "information")

CANONICAL_ORDER = (
    "sheetPr", "dimension", "sheetViews", "sheetFormatPr", "cols", "sheetData",
    "sheetCalcPr", "sheetProtection", "protectedRanges", "scenarios", "autoFilter",
    "sortState", "dataConsolidate", "customSheetViews", "mergeCells", "phoneticPr",
    "conditionalFormatting", "dataValidations", "hyperlinks", "printOptions",
    "pageMargins", "pageSetup", "headerFooter", "rowBreaks", "colBreaks",
    "customProperties", "cellWatches", "ignoredErrors", "smartTags", "drawing",
    "legacyDrawing", "legacyDrawingHF", "drawingHF", "picture", "oleObjects",
    "controls", "webPublishItems", "tableParts", "extLst",
)
MODELLED = {
    "sheetPr", "dimension", "sheetViews", "sheetFormatPr", "cols", "sheetData",
    "sheetProtection", "autoFilter", "mergeCells", "conditionalFormatting",
    "dataValidations", "hyperlinks", "printOptions", "pageMargins", "pageSetup",
    "headerFooter", "rowBreaks", "colBreaks", "drawing", "legacyDrawing",
    "oleObjects", "tableParts",
}

TEXT_RULE_TYPES = {
    "containsText": ("containsText", "containsText"),
    "notContainsText": ("notContainsText", "notContains"),
    "beginsWith": ("beginsWith", "beginsWith"),
    "endsWith": ("endsWith", "endsWith"),
}
_TEXT_TYPE_TO_OPERATOR = {rule_type: op for op, (rule_type, _) in TEXT_RULE_TYPES.items()}

# (model attribute, XML attribute, schema default)
PROTECTION_FLAGS = (
    ("sheet", "sheet", False),
    ("objects", "objects", False),
    ("scenarios", "scenarios", False),
    ("format_cells", "formatCells", True),
    ("format_columns", "formatColumns", True),
    ("format_rows", "formatRows", True),
    ("insert_columns", "insertColumns", True),
    ("insert_rows", "insertRows", True),
    ("insert_hyperlinks", "insertHyperlinks", True),
    ("delete_columns", "deleteColumns", True),
    ("delete_rows", "deleteRows", True),
    ("select_locked_cells", "selectLockedCells", False),
    ("sort", "sort", True),
    ("auto_filter", "autoFilter", True),
    ("pivot_tables", "pivotTables", True),
    ("select_unlocked_cells", "selectUnlockedCells", False),
)


def _m(local: str) -> str:
    return f"{{{NS_MAIN}}}{local}"


def _local(tag) -> str:
    return etree.QName(tag).localname if isinstance(tag, str) else ""


def _bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true")


def _flag(value: bool) -> str:
    return "1" if value else "0"


def _num(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def _opt_float(value: Optional[str]) -> Optional[float]:
    return float(value) if value is not None else None


def _opt_int(value: Optional[str]) -> Optional[int]:
    return int(float(value)) if value is not None else None


# =============================================================================
# ANCHOR MARKERS (shared with drawing parts)
# =============================================================================

def read_marker(el: Optional[etree._Element]) -> AnchorMarker:
    if el is None:
        return AnchorMarker()

    def val(tag: str) -> int:
        child = el.find(f"{{{NS_XDR}}}{tag}")
        return int(child.text) if child is not None and child.text else 0

    return AnchorMarker(col=val("col"), col_offset=val("colOff"), row=val("row"), row_offset=val("rowOff"))


def write_marker(parent: etree._Element, tag: str, marker: AnchorMarker) -> etree._Element:
    el = etree.SubElement(parent, tag)
    for name, value in (("col", marker.col), ("colOff", marker.col_offset),
                        ("row", marker.row), ("rowOff", marker.row_offset)):
        etree.SubElement(el, f"{{{NS_XDR}}}{name}").text = str(value)
    return el


# =============================================================================
# WRITING
# =============================================================================

@dataclass
class OleWriteSpec:
    obj: OleObject
    rel_id: str
    preview_rel_id: Optional[str]
    shape_id: int


@dataclass
class SheetWriteContext:
    """Relationship ids and lookups a worksheet needs while being written."""
    dxf_ids: Dict[DifferentialStyle, int] = field(default_factory=dict)
    drawing_rel: Optional[str] = None
    legacy_drawing_rel: Optional[str] = None
    table_rels: List[str] = field(default_factory=list)
    hyperlink_rels: Dict[Tuple[int, int], str] = field(default_factory=dict)
    ole_objects: List[OleWriteSpec] = field(default_factory=list)
    include_preserved: bool = True


def write_worksheet(sheet: Worksheet, ctx: SheetWriteContext, out) -> None:
    """Write the worksheet XML into ``out`` (a binary file-like object)."""
    preserved: Dict[str, List[PreservedElement]] = {}
    unknown: List[PreservedElement] = []
    if ctx.include_preserved:
        for element in sheet.preserved_elements:
            if element.tag in CANONICAL_ORDER:
                preserved.setdefault(element.tag, []).append(element)
            else:
                unknown.append(element)

    with etree.xmlfile(out, encoding="UTF-8") as xf:
        xf.write_declaration(standalone=True)
        with xf.element(_m("worksheet"), nsmap=ROOT_NSMAP, attrib={f"{{{NS_MC}}}Ignorable": "x14ac"}):
            for tag in CANONICAL_ORDER:
                if tag == "extLst":
                    for element in unknown:
                        xf.write(parse_xml(element.xml))
                if tag == "sheetData":
                    _write_sheet_data(xf, sheet)
                else:
                    builder = _BUILDERS.get(tag)
                    if builder is not None:
                        for el in builder(sheet, ctx):
                            xf.write(el)
                for element in preserved.get(tag, ()):
                    xf.write(parse_xml(element.xml))


def _el(tag: str, **attrib: str) -> etree._Element:
    return etree.Element(_m(tag), nsmap=CHILD_NSMAP, **attrib)


def _write_sheet_data(xf, sheet: Worksheet) -> None:
    rows: Dict[int, List[Cell]] = {}
    for cell in sheet.iter_cells():
        rows.setdefault(cell.row, []).append(cell)
    row_numbers = sorted(set(rows) | {r for r, d in sheet.row_dimensions.items() if _row_has_attributes(d)})

    with xf.element(_m("sheetData")):
        for row_number in row_numbers:
            row_el = etree.Element(_m("row"), nsmap={None: NS_MAIN}, r=str(row_number))
            dim = sheet.row_dimensions.get(row_number)
            if dim is not None:
                if dim.style_index:
                    row_el.set("s", str(dim.style_index))
                    row_el.set("customFormat", "1")
                if dim.height is not None:
                    row_el.set("ht", _num(dim.height))
                    if dim.custom_height:
                        row_el.set("customHeight", "1")
                if dim.hidden:
                    row_el.set("hidden", "1")
                if dim.outline_level:
                    row_el.set("outlineLevel", str(dim.outline_level))
                if dim.collapsed:
                    row_el.set("collapsed", "1")
            for cell in rows.get(row_number, ()):
                _write_cell(row_el, cell)
            xf.write(row_el)


def _row_has_attributes(dim: RowDimension) -> bool:
    return bool(dim.style_index or dim.height is not None or dim.hidden or dim.outline_level or dim.collapsed)


def _write_cell(row_el: etree._Element, cell: Cell) -> None:
    c = etree.SubElement(row_el, _m("c"), r=cell.coordinate)
    if cell.style_index:
        c.set("s", str(cell.style_index))
    data_type = cell.data_type
    if data_type is not None and data_type != CellType.NUMBER and cell.value is not None:
        c.set("t", data_type.value)

    if cell.formula is not None or cell.formula_type == "shared":
        f = etree.SubElement(c, _m("f"))
        if cell.formula_type in ("array", "shared"):
            f.set("t", cell.formula_type)
        if cell.formula_ref:
            f.set("ref", cell.formula_ref)
        if cell.shared_index is not None:
            f.set("si", str(cell.shared_index))
        if cell.formula:
            f.text = escape_text(cell.formula)

    if cell.value is None:
        return
    if data_type == CellType.INLINE_STRING:
        write_rich(etree.SubElement(c, _m("is")), cell.value)
        return
    v = etree.SubElement(c, _m("v"))
    if data_type == CellType.BOOLEAN:
        v.text = "1" if cell.value else "0"
    elif data_type in (CellType.FORMULA_STRING, CellType.ERROR, CellType.DATE):
        v.text = escape_text(str(cell.value))
    else:
        v.text = str(cell.value)


def _build_sheet_pr(sheet: Worksheet, ctx: SheetWriteContext):
    if sheet.tab_color is None and not sheet.page_setup.fit_to_page and not sheet.code_name:
        return
    el = _el("sheetPr")
    if sheet.code_name:
        el.set("codeName", sheet.code_name)
    write_color(el, "tabColor", sheet.tab_color)
    if sheet.page_setup.fit_to_page:
        etree.SubElement(el, _m("pageSetUpPr"), fitToPage="1")
    yield el


def _build_dimension(sheet: Worksheet, ctx: SheetWriteContext):
    yield _el("dimension", ref=sheet.dimensions)


def _build_sheet_views(sheet: Worksheet, ctx: SheetWriteContext):
    view = sheet.view
    views = _el("sheetViews")
    el = etree.SubElement(views, _m("sheetView"))
    if view.tab_selected:
        el.set("tabSelected", "1")
    if not view.show_gridlines:
        el.set("showGridLines", "0")
    if not view.show_row_col_headers:
        el.set("showRowColHeaders", "0")
    if not view.show_zeros:
        el.set("showZeros", "0")
    if view.right_to_left:
        el.set("rightToLeft", "1")
    if view.view != "normal":
        el.set("view", view.view)
    if view.top_left_cell:
        el.set("topLeftCell", view.top_left_cell)
    if view.zoom_scale != 100:
        el.set("zoomScale", str(view.zoom_scale))
    if view.zoom_scale_normal is not None:
        el.set("zoomScaleNormal", str(view.zoom_scale_normal))
    if view.zoom_scale_sheet_layout_view is not None:
        el.set("zoomScaleSheetLayoutView", str(view.zoom_scale_sheet_layout_view))
    if view.zoom_scale_page_layout_view is not None:
        el.set("zoomScalePageLayoutView", str(view.zoom_scale_page_layout_view))
    el.set("workbookViewId", str(view.workbook_view_id))
    if view.pane is not None:
        pane = etree.SubElement(el, _m("pane"))
        if view.pane.x_split:
            pane.set("xSplit", _num(view.pane.x_split))
        if view.pane.y_split:
            pane.set("ySplit", _num(view.pane.y_split))
        if view.pane.top_left_cell:
            pane.set("topLeftCell", view.pane.top_left_cell)
        pane.set("activePane", view.pane.active_pane)
        pane.set("state", view.pane.state)
    for selection in view.selections:
        sel = etree.SubElement(el, _m("selection"))
        if selection.pane:
            sel.set("pane", selection.pane)
        sel.set("activeCell", selection.active_cell)
        sel.set("sqref", selection.sqref)
    yield views


def _build_sheet_format(sheet: Worksheet, ctx: SheetWriteContext):
    fmt = sheet.sheet_format
    el = _el("sheetFormatPr")
    if fmt.base_col_width is not None:
        el.set("baseColWidth", str(fmt.base_col_width))
    if fmt.default_col_width is not None:
        el.set("defaultColWidth", _num(fmt.default_col_width))
    el.set("defaultRowHeight", _num(fmt.default_row_height))
    if fmt.custom_height:
        el.set("customHeight", "1")
    if fmt.zero_height:
        el.set("zeroHeight", "1")
    yield el


def _build_cols(sheet: Worksheet, ctx: SheetWriteContext):
    if not sheet.column_dimensions:
        return
    cols = _el("cols")
    indices = sorted(sheet.column_dimensions)
    start = 0
    while start < len(indices):
        end = start
        dim = sheet.column_dimensions[indices[start]]
        while (end + 1 < len(indices) and indices[end + 1] == indices[end] + 1
               and sheet.column_dimensions[indices[end + 1]] == dim):
            end += 1
        col = etree.SubElement(cols, _m("col"), min=str(indices[start]), max=str(indices[end]))
        col.set("width", _num(dim.width if dim.width is not None else sheet.sheet_format.default_col_width or 9.140625))
        if dim.style_index:
            col.set("style", str(dim.style_index))
        if dim.hidden:
            col.set("hidden", "1")
        if dim.best_fit:
            col.set("bestFit", "1")
        if dim.custom_width:
            col.set("customWidth", "1")
        if dim.outline_level:
            col.set("outlineLevel", str(dim.outline_level))
        if dim.collapsed:
            col.set("collapsed", "1")
        start = end + 1
    yield cols


def _build_sheet_protection(sheet: Worksheet, ctx: SheetWriteContext):
    protection = sheet.protection
    if protection is None:
        return
    el = _el("sheetProtection")
    if protection.password:
        el.set("password", protection.password)
    if protection.password_hash is not None:
        el.set("algorithmName", protection.password_hash.algorithm_name)
        el.set("hashValue", protection.password_hash.hash_value)
        el.set("saltValue", protection.password_hash.salt_value)
        el.set("spinCount", str(protection.password_hash.spin_count))
    for attr, xml_name, default in PROTECTION_FLAGS:
        value = getattr(protection, attr)
        if value != default:
            el.set(xml_name, _flag(value))
    yield el


def _build_auto_filter(sheet: Worksheet, ctx: SheetWriteContext):
    if sheet.auto_filter:
        el = _el("autoFilter", ref=sheet.auto_filter)
        for xml in sheet.auto_filter_criteria:
            el.append(parse_xml(xml))
        yield el


def _build_merge_cells(sheet: Worksheet, ctx: SheetWriteContext):
    if not sheet.merged_ranges:
        return
    el = _el("mergeCells", count=str(len(sheet.merged_ranges)))
    for rng in sheet.merged_ranges:
        etree.SubElement(el, _m("mergeCell"), ref=rng.coord)
    yield el


def _write_cfvo(parent: etree._Element, cfvo: Cfvo) -> None:
    el = etree.SubElement(parent, _m("cfvo"), type=cfvo.type)
    if cfvo.value is not None:
        el.set("val", cfvo.value)
    if not cfvo.gte:
        el.set("gte", "0")


def _build_conditional_formatting(sheet: Worksheet, ctx: SheetWriteContext):
    for sqref, rules in sheet.conditional_formatting.by_range().items():
        block = _el("conditionalFormatting", sqref=sqref)
        for rule in rules:
            payload = rule.payload
            el = etree.SubElement(block, _m("cfRule"))
            formulas: List[str] = []
            if payload.kind == "cellIs":
                el.set("type", "cellIs")
                formulas = payload.formulas
            elif payload.kind == "colorScale":
                el.set("type", "colorScale")
            elif payload.kind == "dataBar":
                el.set("type", "dataBar")
            elif payload.kind == "iconSet":
                el.set("type", "iconSet")
            elif payload.kind == "top10":
                el.set("type", "top10")
            elif payload.kind == "aboveAverage":
                el.set("type", "aboveAverage")
            elif payload.kind == "text":
                rule_type, operator = TEXT_RULE_TYPES[payload.operator]
                el.set("type", rule_type)
                formulas = [payload.formula] if payload.formula else []
            elif payload.kind == "expression":
                el.set("type", "expression")
                formulas = [payload.formula]
            else:
                el.set("type", payload.rule_type)
                formulas = payload.formulas

            if rule.dxf is not None and rule.dxf in ctx.dxf_ids:
                el.set("dxfId", str(ctx.dxf_ids[rule.dxf]))
            el.set("priority", str(rule.priority))
            if rule.stop_if_true:
                el.set("stopIfTrue", "1")

            if payload.kind == "cellIs":
                el.set("operator", payload.operator)
            elif payload.kind == "top10":
                if payload.percent:
                    el.set("percent", "1")
                if payload.bottom:
                    el.set("bottom", "1")
                el.set("rank", str(payload.rank))
            elif payload.kind == "aboveAverage":
                if not payload.above_average:
                    el.set("aboveAverage", "0")
                if payload.equal_average:
                    el.set("equalAverage", "1")
                if payload.std_dev is not None:
                    el.set("stdDev", str(payload.std_dev))
            elif payload.kind == "text":
                el.set("operator", operator)
                el.set("text", payload.text)
            elif payload.kind == "other":
                for key, value in payload.attributes.items():
                    el.set(key, value)

            for formula in formulas:
                etree.SubElement(el, _m("formula")).text = formula

            if payload.kind == "colorScale":
                scale = etree.SubElement(el, _m("colorScale"))
                for cfvo in payload.cfvos:
                    _write_cfvo(scale, cfvo)
                for color in payload.colors:
                    etree.SubElement(scale, _m("color"), rgb=color)
            elif payload.kind == "dataBar":
                bar = etree.SubElement(el, _m("dataBar"))
                if payload.min_length is not None:
                    bar.set("minLength", str(payload.min_length))
                if payload.max_length is not None:
                    bar.set("maxLength", str(payload.max_length))
                if not payload.show_value:
                    bar.set("showValue", "0")
                _write_cfvo(bar, payload.min_cfvo)
                _write_cfvo(bar, payload.max_cfvo)
                etree.SubElement(bar, _m("color"), rgb=payload.color)
            elif payload.kind == "iconSet":
                icons = etree.SubElement(el, _m("iconSet"), iconSet=payload.icon_set)
                if not payload.show_value:
                    icons.set("showValue", "0")
                if not payload.percent:
                    icons.set("percent", "0")
                if payload.reverse:
                    icons.set("reverse", "1")
                for cfvo in payload.cfvos:
                    _write_cfvo(icons, cfvo)
        yield block


def _build_data_validations(sheet: Worksheet, ctx: SheetWriteContext):
    rules = list(sheet.data_validations)
    if not rules:
        return
    block = _el("dataValidations", count=str(len(rules)))
    for rule in rules:
        el = etree.SubElement(block, _m("dataValidation"))
        if rule.validation_type != "none":
            el.set("type", rule.validation_type)
        if rule.error_style:
            el.set("errorStyle", rule.error_style)
        if rule.operator and rule.operator != "between":
            el.set("operator", rule.operator)
        if rule.allow_blank:
            el.set("allowBlank", "1")
        # showDropDown="1" hides the in-cell arrow
        if rule.validation_type == "list" and not rule.show_dropdown:
            el.set("showDropDown", "1")
        if rule.show_input_message:
            el.set("showInputMessage", "1")
        if rule.show_error_message:
            el.set("showErrorMessage", "1")
        for attr, xml_name in (("error_title", "errorTitle"), ("error", "error"),
                               ("prompt_title", "promptTitle"), ("prompt", "prompt")):
            value = getattr(rule, attr)
            if value is not None:
                el.set(xml_name, value)
        el.set("sqref", rule.sqref)
        if rule.formula1 is not None:
            etree.SubElement(el, _m("formula1")).text = rule.formula1
        if rule.formula2 is not None:
            etree.SubElement(el, _m("formula2")).text = rule.formula2
    yield block


def _build_hyperlinks(sheet: Worksheet, ctx: SheetWriteContext):
    if not sheet.hyperlinks:
        return
    block = _el("hyperlinks")
    for key in sorted(sheet.hyperlinks):
        link = sheet.hyperlinks[key]
        el = etree.SubElement(block, _m("hyperlink"), ref=coordinate(*key))
        if key in ctx.hyperlink_rels:
            el.set(R_ID, ctx.hyperlink_rels[key])
        if link.location:
            el.set("location", link.location)
        if link.tooltip:
            el.set("tooltip", link.tooltip)
        if link.display:
            el.set("display", link.display)
    yield block


def _build_print_options(sheet: Worksheet, ctx: SheetWriteContext):
    options = sheet.print_options
    if options.is_default:
        return
    el = _el("printOptions")
    if options.horizontal_centered:
        el.set("horizontalCentered", "1")
    if options.vertical_centered:
        el.set("verticalCentered", "1")
    if options.headings:
        el.set("headings", "1")
    if options.grid_lines:
        el.set("gridLines", "1")
    yield el


def _build_page_margins(sheet: Worksheet, ctx: SheetWriteContext):
    m = sheet.page_margins
    yield _el("pageMargins", left=_num(m.left), right=_num(m.right), top=_num(m.top),
              bottom=_num(m.bottom), header=_num(m.header), footer=_num(m.footer))


def _build_page_setup(sheet: Worksheet, ctx: SheetWriteContext):
    setup = sheet.page_setup
    if setup.model_copy(update={"fit_to_page": False}).is_default:
        return
    el = _el("pageSetup")
    for attr, xml_name in (("paper_size", "paperSize"), ("scale", "scale"),
                           ("first_page_number", "firstPageNumber"), ("fit_to_width", "fitToWidth"),
                           ("fit_to_height", "fitToHeight")):
        value = getattr(setup, attr)
        if value is not None:
            el.set(xml_name, str(value))
    if setup.orientation:
        el.set("orientation", setup.orientation)
    if setup.use_first_page_number:
        el.set("useFirstPageNumber", "1")
    if setup.horizontal_dpi is not None:
        el.set("horizontalDpi", str(setup.horizontal_dpi))
    if setup.vertical_dpi is not None:
        el.set("verticalDpi", str(setup.vertical_dpi))
    yield el


def _build_header_footer(sheet: Worksheet, ctx: SheetWriteContext):
    hf = sheet.header_footer
    if hf.is_empty:
        return
    el = _el("headerFooter")
    if hf.different_odd_even:
        el.set("differentOddEven", "1")
    if hf.different_first:
        el.set("differentFirst", "1")
    for attr, tag in (("odd_header", "oddHeader"), ("odd_footer", "oddFooter"),
                      ("even_header", "evenHeader"), ("even_footer", "evenFooter"),
                      ("first_header", "firstHeader"), ("first_footer", "firstFooter")):
        value = getattr(hf, attr)
        if value is not None:
            etree.SubElement(el, _m(tag)).text = value
    yield el


def _breaks(tag: str, ids: List[int], max_value: int):
    if not ids:
        return
    el = _el(tag, count=str(len(ids)), manualBreakCount=str(len(ids)))
    for i in ids:
        etree.SubElement(el, _m("brk"), id=str(i), max=str(max_value), man="1")
    yield el


def _build_row_breaks(sheet: Worksheet, ctx: SheetWriteContext):
    yield from _breaks("rowBreaks", sheet.row_breaks, 16383)


def _build_col_breaks(sheet: Worksheet, ctx: SheetWriteContext):
    yield from _breaks("colBreaks", sheet.col_breaks, 1048575)


def _build_drawing(sheet: Worksheet, ctx: SheetWriteContext):
    if ctx.drawing_rel:
        el = _el("drawing")
        el.set(R_ID, ctx.drawing_rel)
        yield el


def _build_legacy_drawing(sheet: Worksheet, ctx: SheetWriteContext):
    if ctx.legacy_drawing_rel:
        el = _el("legacyDrawing")
        el.set(R_ID, ctx.legacy_drawing_rel)
        yield el


def _build_ole_objects(sheet: Worksheet, ctx: SheetWriteContext):
    if not ctx.ole_objects:
        return
    block = etree.Element(_m("oleObjects"), nsmap={None: NS_MAIN, "r": NS_R, "mc": NS_MC,
                                                   "x14": NS_X14, "xdr": NS_XDR})
    for spec in ctx.ole_objects:
        alternate = etree.SubElement(block, f"{{{NS_MC}}}AlternateContent")
        choice = etree.SubElement(alternate, f"{{{NS_MC}}}Choice", Requires="x14")
        ole = etree.SubElement(choice, _m("oleObject"), progId=spec.obj.prog_id, shapeId=str(spec.shape_id))
        ole.set(R_ID, spec.rel_id)
        props = etree.SubElement(ole, _m("objectPr"), defaultSize="0")
        if spec.preview_rel_id:
            props.set(R_ID, spec.preview_rel_id)
        anchor = etree.SubElement(props, _m("anchor"), moveWithCells="1")
        write_marker(anchor, _m("from"), spec.obj.anchor.from_marker)
        write_marker(anchor, _m("to"), spec.obj.anchor.to_marker or spec.obj.anchor.from_marker)
        fallback = etree.SubElement(alternate, f"{{{NS_MC}}}Fallback")
        plain = etree.SubElement(fallback, _m("oleObject"), progId=spec.obj.prog_id, shapeId=str(spec.shape_id))
        plain.set(R_ID, spec.rel_id)
    yield block


def _build_table_parts(sheet: Worksheet, ctx: SheetWriteContext):
    if not ctx.table_rels:
        return
    el = _el("tableParts", count=str(len(ctx.table_rels)))
    for rel_id in ctx.table_rels:
        part = etree.SubElement(el, _m("tablePart"))
        part.set(R_ID, rel_id)
    yield el


_BUILDERS = {
    "sheetPr": _build_sheet_pr,
    "dimension": _build_dimension,
    "sheetViews": _build_sheet_views,
    "sheetFormatPr": _build_sheet_format,
    "cols": _build_cols,
    "sheetProtection": _build_sheet_protection,
    "autoFilter": _build_auto_filter,
    "mergeCells": _build_merge_cells,
    "conditionalFormatting": _build_conditional_formatting,
    "dataValidations": _build_data_validations,
    "hyperlinks": _build_hyperlinks,
    "printOptions": _build_print_options,
    "pageMargins": _build_page_margins,
    "pageSetup": _build_page_setup,
    "headerFooter": _build_header_footer,
    "rowBreaks": _build_row_breaks,
    "colBreaks": _build_col_breaks,
    "drawing": _build_drawing,
    "legacyDrawing": _build_legacy_drawing,
    "oleObjects": _build_ole_objects,
    "tableParts": _build_table_parts,
}


# =============================================================================
# READING
# =============================================================================

@dataclass
class OleReadSpec:
    prog_id: str
    rel_id: str
    preview_rel_id: Optional[str]
    anchor: Optional[DrawingAnchor]
    shape_id: int


@dataclass
class SheetReadContext:
    part: str
    rels: RelationshipSet
    xf_map: List[int]
    sst_map: List[int]
    dxfs: List[DifferentialStyle]
    diagnostics: List[Diagnostic]

    def check(self, value: Optional[str], allowed, default: Optional[str], what: str) -> Optional[str]:
        """Return ``value`` if it is one of ``allowed``; otherwise record it and use ``default``."""
        if value is None or value in allowed:
            return value
        self.diagnostics.append(Diagnostic(
            part=self.part,
            message=f"Unknown {what} {value!r} replaced with {default!r}",
            details={"value": value, "default": default},
        ))
        logger.warning(f"[READ] Unknown {what} {value!r} in {self.part}, using {default!r}")
        return default


@dataclass
class SheetLinks:
    """Relationship ids the worksheet XML points at, resolved by the package reader."""
    drawing: Optional[str] = None
    legacy_drawing: Optional[str] = None
    tables: List[str] = field(default_factory=list)
    ole_objects: List[OleReadSpec] = field(default_factory=list)
    used_rel_ids: set = field(default_factory=set)


def read_worksheet(sheet: Worksheet, data: bytes, ctx: SheetReadContext) -> SheetLinks:
    root = parse_xml(data, ctx.part)
    links = SheetLinks()
    for child in root:
        if not isinstance(child.tag, str):
            continue
        tag = _local(child.tag)
        if child.tag != _m(tag) or tag not in MODELLED:
            sheet.preserved_elements.append(PreservedElement(tag=tag, xml=etree.tostring(child)))
            for value in _rel_ids_in(child):
                links.used_rel_ids.add(value)
            continue
        reader = _READERS.get(tag)
        if reader is not None:
            reader(sheet, child, ctx, links)
    logger.debug(f"[READ] {ctx.part}: {sheet.cell_count} cells, {len(sheet.merged_ranges)} merges, "
                 f"{len(sheet.preserved_elements)} preserved elements")
    return links


def _rel_ids_in(el: etree._Element) -> List[str]:
    found = []
    for node in el.iter():
        if not isinstance(node.tag, str):
            continue
        for key, value in node.attrib.items():
            if key.startswith(f"{{{NS_R}}}"):
                found.append(value)
    return found


def _style(ctx: SheetReadContext, raw: Optional[str]) -> int:
    if raw is None:
        return 0
    index = int(raw)
    if 0 <= index < len(ctx.xf_map):
        return ctx.xf_map[index]
    ctx.diagnostics.append(Diagnostic(part=ctx.part, message=f"Style index {index} out of range, using default"))
    return 0


def _read_sheet_pr(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    sheet.code_name = el.get("codeName")
    sheet.tab_color = read_color(el.find(_m("tabColor")))
    setup_pr = el.find(_m("pageSetUpPr"))
    if setup_pr is not None:
        sheet.page_setup.fit_to_page = _bool(setup_pr.get("fitToPage"))


def _read_dimension(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    pass  # Recomputed from the cells on write


def _read_sheet_views(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    view_el = el.find(_m("sheetView"))
    if view_el is None:
        return
    view = sheet.view
    view.tab_selected = _bool(view_el.get("tabSelected"))
    view.show_gridlines = _bool(view_el.get("showGridLines"), True)
    view.show_row_col_headers = _bool(view_el.get("showRowColHeaders"), True)
    view.show_zeros = _bool(view_el.get("showZeros"), True)
    view.right_to_left = _bool(view_el.get("rightToLeft"))
    view.view = view_el.get("view", "normal")
    view.top_left_cell = view_el.get("topLeftCell")
    view.zoom_scale = int(view_el.get("zoomScale", "100"))
    view.zoom_scale_normal = _opt_int(view_el.get("zoomScaleNormal"))
    view.zoom_scale_page_layout_view = _opt_int(view_el.get("zoomScalePageLayoutView"))
    view.zoom_scale_sheet_layout_view = _opt_int(view_el.get("zoomScaleSheetLayoutView"))
    view.workbook_view_id = int(view_el.get("workbookViewId", "0"))
    pane = view_el.find(_m("pane"))
    if pane is not None:
        view.pane = Pane(
            x_split=float(pane.get("xSplit", "0")),
            y_split=float(pane.get("ySplit", "0")),
            top_left_cell=pane.get("topLeftCell"),
            active_pane=pane.get("activePane", "topLeft"),
            state=pane.get("state", "split"),
        )
    view.selections = [
        Selection(pane=sel.get("pane"), active_cell=sel.get("activeCell", "A1"), sqref=sel.get("sqref", "A1"))
        for sel in view_el.findall(_m("selection"))
    ]


def _read_sheet_format(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    fmt = sheet.sheet_format
    fmt.default_row_height = float(el.get("defaultRowHeight", "15"))
    fmt.base_col_width = _opt_int(el.get("baseColWidth"))
    fmt.default_col_width = _opt_float(el.get("defaultColWidth"))
    fmt.custom_height = _bool(el.get("customHeight"))
    fmt.zero_height = _bool(el.get("zeroHeight"))


def _read_cols(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    for col in el.findall(_m("col")):
        low, high = int(col.get("min")), int(col.get("max"))
        for index in range(low, high + 1):
            sheet.column_dimensions[index] = ColumnDimension(
                width=_opt_float(col.get("width")),
                hidden=_bool(col.get("hidden")),
                best_fit=_bool(col.get("bestFit")),
                custom_width=_bool(col.get("customWidth")),
                style_index=_style(ctx, col.get("style")),
                outline_level=int(col.get("outlineLevel", "0")),
                collapsed=_bool(col.get("collapsed")),
            )


def _read_sheet_data(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    row_number = 0
    for row_el in el.iterchildren(_m("row")):
        row_number = int(row_el.get("r", row_number + 1))
        if any(row_el.get(a) is not None for a in ("ht", "hidden", "outlineLevel", "collapsed")) \
                or _bool(row_el.get("customFormat")):
            sheet.row_dimensions[row_number] = RowDimension(
                height=_opt_float(row_el.get("ht")),
                hidden=_bool(row_el.get("hidden")),
                custom_height=_bool(row_el.get("customHeight")),
                style_index=_style(ctx, row_el.get("s")) if _bool(row_el.get("customFormat")) else 0,
                outline_level=int(row_el.get("outlineLevel", "0")),
                collapsed=_bool(row_el.get("collapsed")),
            )
        col_number = 0
        for c in row_el.iterchildren(_m("c")):
            ref = c.get("r")
            if ref:
                _, col_number, row_from_ref = parse_cell_ref(ref)
                if row_from_ref != row_number:
                    ctx.diagnostics.append(Diagnostic(part=ctx.part, message=f"Cell {ref} listed under row {row_number}"))
                    row_number_for_cell = row_from_ref
                else:
                    row_number_for_cell = row_number
            else:
                col_number += 1
                row_number_for_cell = row_number
            sheet._put_cell(_read_cell(c, row_number_for_cell, col_number, ctx))


def _read_cell(c: etree._Element, row: int, col: int, ctx: SheetReadContext) -> Cell:
    cell = Cell(row=row, column=col, style_index=_style(ctx, c.get("s")))
    t = c.get("t", "n")

    f = c.find(_m("f"))
    if f is not None:
        cell.formula = unescape_text(f.text) if f.text else None
        formula_type = f.get("t")
        cell.formula_type = formula_type if formula_type in ("array", "shared", "dataTable") else None
        cell.formula_ref = f.get("ref")
        si = f.get("si")
        cell.shared_index = int(si) if si is not None else None
        if cell.formula is None and cell.formula_type != "shared":
            cell.formula = ""

    if t == "inlineStr":
        inline = c.find(_m("is"))
        if inline is not None:
            cell.data_type = CellType.INLINE_STRING
            cell.value = read_rich(inline)
        return cell

    v = c.find(_m("v"))
    if v is None or v.text is None:
        return cell
    text = v.text
    if t == "s":
        index = int(text)
        if not 0 <= index < len(ctx.sst_map):
            raise FormatError(
                f"Cell {coordinate(row, col)} references shared string {index}, "
                f"table has {len(ctx.sst_map)} entries",
                part=ctx.part,
            )
        cell.data_type = CellType.SHARED_STRING
        cell.value = ctx.sst_map[index]
    elif t == "b":
        cell.data_type = CellType.BOOLEAN
        cell.value = text.strip() in ("1", "true")
    elif t == "e":
        cell.data_type = CellType.ERROR
        cell.value = text
    elif t == "str":
        cell.data_type = CellType.FORMULA_STRING
        cell.value = unescape_text(text)
    elif t == "d":
        cell.data_type = CellType.DATE
        cell.value = text
    else:
        cell.data_type = CellType.NUMBER
        cell.value = text.strip()
    return cell


def _read_sheet_protection(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    values = {}
    for attr, xml_name, default in PROTECTION_FLAGS:
        values[attr] = _bool(el.get(xml_name), default)
    protection = SheetProtection(**values)
    protection.password = el.get("password")
    if el.get("hashValue"):
        protection.password_hash = ProtectionHash(
            algorithm_name=el.get("algorithmName", "SHA-512"),
            hash_value=el.get("hashValue"),
            salt_value=el.get("saltValue", ""),
            spin_count=int(el.get("spinCount", "100000")),
        )
    sheet.protection = protection


def _read_auto_filter(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    sheet.auto_filter = el.get("ref")
    sheet.auto_filter_criteria = [etree.tostring(child) for child in el if isinstance(child.tag, str)]


def _read_merge_cells(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    for merge in el.findall(_m("mergeCell")):
        rng = CellRange.from_string(merge.get("ref"))
        if any(existing.overlaps(rng) for existing in sheet.merged_ranges):
            ctx.diagnostics.append(Diagnostic(part=ctx.part, message=f"Overlapping merge {rng.coord} dropped"))
            continue
        sheet.merged_ranges.append(rng)


def _read_cfvo(el: etree._Element, ctx: SheetReadContext) -> Cfvo:
    cfvo_type = ctx.check(el.get("type", "min"), CFVO_TYPES, "num", "cfvo type")
    return Cfvo(type=cfvo_type, value=el.get("val"), gte=_bool(el.get("gte"), True))


def _read_conditional_formatting(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    sqref = el.get("sqref", "")
    for rule_el in el.findall(_m("cfRule")):
        rule_type = rule_el.get("type", "")
        formulas = [f.text or "" for f in rule_el.findall(_m("formula"))]
        if rule_type == "cellIs":
            payload = CellIsRule(operator=rule_el.get("operator", "equal"), formulas=formulas)
        elif rule_type == "colorScale":
            scale = rule_el.find(_m("colorScale"))
            payload = ColorScaleRule(
                cfvos=[_read_cfvo(c, ctx) for c in scale.findall(_m("cfvo"))],
                colors=[(read_color(c) or Color()).hex for c in scale.findall(_m("color"))],
            )
        elif rule_type == "dataBar":
            bar = rule_el.find(_m("dataBar"))
            cfvos = [_read_cfvo(c, ctx) for c in bar.findall(_m("cfvo"))]
            color = read_color(bar.find(_m("color")))
            payload = DataBarRule(
                min_cfvo=cfvos[0] if cfvos else Cfvo(type="min"),
                max_cfvo=cfvos[1] if len(cfvos) > 1 else Cfvo(type="max"),
                color=color.hex if color and color.hex else DataBarRule().color,
                show_value=_bool(bar.get("showValue"), True),
                min_length=_opt_int(bar.get("minLength")),
                max_length=_opt_int(bar.get("maxLength")),
            )
        elif rule_type == "iconSet":
            icons = rule_el.find(_m("iconSet"))
            payload = IconSetRule(
                icon_set=icons.get("iconSet", "3TrafficLights1"),
                cfvos=[_read_cfvo(c, ctx) for c in icons.findall(_m("cfvo"))],
                show_value=_bool(icons.get("showValue"), True),
                reverse=_bool(icons.get("reverse")),
                percent=_bool(icons.get("percent"), True),
            )
        elif rule_type == "top10":
            payload = Top10Rule(rank=int(rule_el.get("rank", "10")), bottom=_bool(rule_el.get("bottom")),
                                percent=_bool(rule_el.get("percent")))
        elif rule_type == "aboveAverage":
            payload = AboveAverageRule(
                above_average=_bool(rule_el.get("aboveAverage"), True),
                equal_average=_bool(rule_el.get("equalAverage")),
                std_dev=_opt_int(rule_el.get("stdDev")),
            )
        elif rule_type in _TEXT_TYPE_TO_OPERATOR:
            payload = TextRule(operator=_TEXT_TYPE_TO_OPERATOR[rule_type], text=rule_el.get("text", ""),
                               formula=formulas[0] if formulas else None)
        elif rule_type == "expression":
            payload = ExpressionRule(formula=formulas[0] if formulas else "")
        else:
            attributes = {k: v for k, v in rule_el.attrib.items()
                          if k not in ("type", "dxfId", "priority", "stopIfTrue")}
            payload = OtherRule(rule_type=rule_type, attributes=attributes, formulas=formulas)

        dxf = None
        dxf_id = rule_el.get("dxfId")
        if dxf_id is not None:
            index = int(dxf_id)
            if 0 <= index < len(ctx.dxfs):
                dxf = ctx.dxfs[index]
            else:
                ctx.diagnostics.append(Diagnostic(part=ctx.part, message=f"dxfId {index} out of range, dropped"))
        sheet.conditional_formatting.add_rule(
            sqref, payload, dxf=dxf, stop_if_true=_bool(rule_el.get("stopIfTrue")),
            priority=_opt_int(rule_el.get("priority")),
        )


def _read_data_validations(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    for dv in el.findall(_m("dataValidation")):
        f1 = dv.find(_m("formula1"))
        f2 = dv.find(_m("formula2"))
        validation_type = ctx.check(dv.get("type", "none"), DV_TYPES, "none", "validation type")
        operator = ctx.check(dv.get("operator"), DV_OPERATORS, "between", "validation operator")
        sheet.data_validations.add(DataValidationRule(
            sqref=dv.get("sqref", ""),
            validation_type=validation_type,
            operator=operator or ("between" if validation_type not in ("none", "list", "custom") else None),
            formula1=f1.text if f1 is not None else None,
            formula2=f2.text if f2 is not None else None,
            allow_blank=_bool(dv.get("allowBlank")),
            show_dropdown=not _bool(dv.get("showDropDown")),
            show_input_message=_bool(dv.get("showInputMessage")),
            show_error_message=_bool(dv.get("showErrorMessage")),
            prompt_title=dv.get("promptTitle"),
            prompt=dv.get("prompt"),
            error_title=dv.get("errorTitle"),
            error=dv.get("error"),
            error_style=ctx.check(dv.get("errorStyle"), DV_ERROR_STYLES, "stop", "validation error style"),
        ))


def _read_hyperlinks(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    for link in el.findall(_m("hyperlink")):
        rng = CellRange.from_string(link.get("ref"))
        target = None
        rel_id = link.get(R_ID)
        if rel_id:
            target = ctx.rels.get(rel_id).target
            links.used_rel_ids.add(rel_id)
        sheet.hyperlinks[rng.top_left] = Hyperlink(
            target=target,
            location=link.get("location"),
            tooltip=link.get("tooltip"),
            display=link.get("display"),
        )


def _read_print_options(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    options = sheet.print_options
    options.horizontal_centered = _bool(el.get("horizontalCentered"))
    options.vertical_centered = _bool(el.get("verticalCentered"))
    options.headings = _bool(el.get("headings"))
    options.grid_lines = _bool(el.get("gridLines"))


def _read_page_margins(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    margins = sheet.page_margins
    for name in ("left", "right", "top", "bottom", "header", "footer"):
        if el.get(name) is not None:
            setattr(margins, name, float(el.get(name)))


def _read_page_setup(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    setup = sheet.page_setup
    setup.orientation = el.get("orientation")
    setup.paper_size = _opt_int(el.get("paperSize"))
    setup.scale = _opt_int(el.get("scale"))
    setup.fit_to_width = _opt_int(el.get("fitToWidth"))
    setup.fit_to_height = _opt_int(el.get("fitToHeight"))
    setup.first_page_number = _opt_int(el.get("firstPageNumber"))
    setup.use_first_page_number = _bool(el.get("useFirstPageNumber"))
    setup.horizontal_dpi = _opt_int(el.get("horizontalDpi"))
    setup.vertical_dpi = _opt_int(el.get("verticalDpi"))


def _read_header_footer(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    hf = sheet.header_footer
    hf.different_odd_even = _bool(el.get("differentOddEven"))
    hf.different_first = _bool(el.get("differentFirst"))
    for attr, tag in (("odd_header", "oddHeader"), ("odd_footer", "oddFooter"),
                      ("even_header", "evenHeader"), ("even_footer", "evenFooter"),
                      ("first_header", "firstHeader"), ("first_footer", "firstFooter")):
        child = el.find(_m(tag))
        if child is not None:
            setattr(hf, attr, child.text or "")


def _read_row_breaks(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    sheet.row_breaks = sorted(int(b.get("id", "0")) for b in el.findall(_m("brk")))


def _read_col_breaks(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    sheet.col_breaks = sorted(int(b.get("id", "0")) for b in el.findall(_m("brk")))


def _read_drawing(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    links.drawing = el.get(R_ID)
    links.used_rel_ids.add(links.drawing)


def _read_legacy_drawing(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    links.legacy_drawing = el.get(R_ID)
    links.used_rel_ids.add(links.legacy_drawing)


def _read_ole_objects(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    seen = set()
    # The mc:Choice copy carries the anchor; the fallback copy repeats the shape id
    candidates = el.findall(f".//{{{NS_MC}}}Choice/{_m('oleObject')}") + el.findall(f".//{_m('oleObject')}")
    for ole in candidates:
        shape_id = int(ole.get("shapeId", "0"))
        if shape_id in seen:
            continue
        seen.add(shape_id)
        rel_id = ole.get(R_ID)
        if not rel_id:
            continue
        props = ole.find(_m("objectPr"))
        preview_rel = props.get(R_ID) if props is not None else None
        anchor = None
        anchor_el = props.find(_m("anchor")) if props is not None else None
        if anchor_el is not None:
            anchor = DrawingAnchor(
                anchor_type="twoCell",
                from_marker=read_marker(anchor_el.find(_m("from"))),
                to_marker=read_marker(anchor_el.find(_m("to"))),
            )
        links.ole_objects.append(OleReadSpec(
            prog_id=ole.get("progId", "Package"),
            rel_id=rel_id,
            preview_rel_id=preview_rel,
            anchor=anchor,
            shape_id=shape_id,
        ))
        links.used_rel_ids.update(r for r in (rel_id, preview_rel) if r)


def _read_table_parts(sheet: Worksheet, el, ctx: SheetReadContext, links: SheetLinks) -> None:
    for part in el.findall(_m("tablePart")):
        links.tables.append(part.get(R_ID))
        links.used_rel_ids.add(part.get(R_ID))


_READERS = {
    "sheetPr": _read_sheet_pr,
    "dimension": _read_dimension,
    "sheetViews": _read_sheet_views,
    "sheetFormatPr": _read_sheet_format,
    "cols": _read_cols,
    "sheetData": _read_sheet_data,
    "sheetProtection": _read_sheet_protection,
    "autoFilter": _read_auto_filter,
    "mergeCells": _read_merge_cells,
    "conditionalFormatting": _read_conditional_formatting,
    "dataValidations": _read_data_validations,
    "hyperlinks": _read_hyperlinks,
    "printOptions": _read_print_options,
    "pageMargins": _read_page_margins,
    "pageSetup": _read_page_setup,
    "headerFooter": _read_header_footer,
    "rowBreaks": _read_row_breaks,
    "colBreaks": _read_col_breaks,
    "drawing": _read_drawing,
    "legacyDrawing": _read_legacy_drawing,
    "oleObjects": _read_ole_objects,
    "tableParts": _read_table_parts,
}
