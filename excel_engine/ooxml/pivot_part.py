"""Table, pivot cache and pivot table parts.

Pivot caches are written without records (saveData="0") and flagged
refreshOnLoad, so the consuming application rebuilds them from the source
range. Pivot table definitions carry field placement only; the rendered
layout is left for that refresh.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple, get_args

from lxml import etree

from ..exceptions import Diagnostic
from ..pivot import AggregateFunction, CacheField, DataField, PivotCacheDefinition, PivotTable
from ..references import CellRange, coordinate, parse_cell_ref
from ..tables import Table, TableColumn, TableStyleInfo, TotalsFunction
from .namespaces import NS_MAIN, NS_R
from .package import parse_xml, serialize_xml

logger = logging.getLogger(__name__)


def _m(local: str) -> str:
    return f"{{{NS_MAIN}}}{local}"


def _bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true")


def _flag(value: bool) -> str:
    return "1" if value else "0"


def _num(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


# =============================================================================
# TABLES
# =============================================================================

def write_table(table: Table) -> bytes:
    root = etree.Element(_m("table"), nsmap={None: NS_MAIN})
    root.set("id", str(table.id))
    root.set("name", table.name)
    root.set("displayName", table.display_name)
    root.set("ref", table.ref)
    if table.header_row_count != 1:
        root.set("headerRowCount", str(table.header_row_count))
    if table.totals_row_shown:
        root.set("totalsRowCount", "1")
    else:
        root.set("totalsRowShown", "0")

    if table.auto_filter and table.header_row_count:
        rng = table.range
        filter_range = CellRange(rng.min_row, rng.min_col, rng.max_row - table.totals_row_count, rng.max_col)
        etree.SubElement(root, _m("autoFilter"), ref=filter_range.coord)

    columns = etree.SubElement(root, _m("tableColumns"), count=str(len(table.columns)))
    for column in table.columns:
        el = etree.SubElement(columns, _m("tableColumn"), id=str(column.id), name=column.name)
        if column.totals_row_function and column.totals_row_function != "none":
            el.set("totalsRowFunction", column.totals_row_function)
        if column.totals_row_label is not None:
            el.set("totalsRowLabel", column.totals_row_label)
        if column.totals_row_function == "custom" and column.totals_row_formula:
            etree.SubElement(el, _m("totalsRowFormula")).text = column.totals_row_formula

    style = table.style
    if style.name is not None:
        etree.SubElement(
            root, _m("tableStyleInfo"),
            name=style.name,
            showFirstColumn=_flag(style.show_first_column),
            showLastColumn=_flag(style.show_last_column),
            showRowStripes=_flag(style.show_row_stripes),
            showColumnStripes=_flag(style.show_column_stripes),
        )
    return serialize_xml(root)


def _known(value: Optional[str], allowed, default: str, what: str, part: str,
           diagnostics: Optional[List[Diagnostic]]) -> Optional[str]:
    if value is None or value in allowed:
        return value
    if diagnostics is not None:
        diagnostics.append(Diagnostic(
            part=part,
            message=f"Unknown {what} {value!r} replaced with {default!r}",
            details={"value": value, "default": default},
        ))
    logger.warning(f"[READ] Unknown {what} {value!r} in {part}, using {default!r}")
    return default


def read_table(data: bytes, part: str, diagnostics: Optional[List[Diagnostic]] = None) -> Table:
    root = parse_xml(data, part)
    columns = []
    for position, el in enumerate(root.findall(f"{_m('tableColumns')}/{_m('tableColumn')}"), start=1):
        formula = el.find(_m("totalsRowFormula"))
        columns.append(TableColumn(
            id=int(el.get("id", str(position))),
            name=el.get("name", f"Column{position}"),
            totals_row_function=_known(el.get("totalsRowFunction"), get_args(TotalsFunction), "none",
                                       "totals row function", part, diagnostics),
            totals_row_label=el.get("totalsRowLabel"),
            totals_row_formula=formula.text if formula is not None else None,
        ))
    style_el = root.find(_m("tableStyleInfo"))
    style = TableStyleInfo(name=None)
    if style_el is not None:
        style = TableStyleInfo(
            name=style_el.get("name"),
            show_first_column=_bool(style_el.get("showFirstColumn")),
            show_last_column=_bool(style_el.get("showLastColumn")),
            show_row_stripes=_bool(style_el.get("showRowStripes"), True),
            show_column_stripes=_bool(style_el.get("showColumnStripes")),
        )
    name = root.get("name") or root.get("displayName")
    return Table(
        id=int(root.get("id", "1")),
        name=name,
        display_name=root.get("displayName", name),
        ref=root.get("ref"),
        columns=columns,
        header_row_count=int(root.get("headerRowCount", "1")),
        totals_row_shown=int(root.get("totalsRowCount", "0")) > 0,
        style=style,
        auto_filter=root.find(_m("autoFilter")) is not None,
    )


# =============================================================================
# PIVOT CACHE
# =============================================================================

def _write_shared_items(parent: etree._Element, field: CacheField) -> None:
    items = etree.SubElement(parent, _m("sharedItems"))
    if not field.contains_string:
        items.set("containsSemiMixedTypes", "0")
        items.set("containsString", "0")
    if field.contains_number:
        if field.contains_string:
            items.set("containsMixedTypes", "1")
        items.set("containsNumber", "1")
        if field.contains_integer and all(
                v is None or isinstance(v, bool) or not isinstance(v, (int, float)) or float(v).is_integer()
                for v in field.shared_items):
            items.set("containsInteger", "1")
        if field.min_value is not None:
            items.set("minValue", _num(field.min_value))
        if field.max_value is not None:
            items.set("maxValue", _num(field.max_value))
    if field.contains_blank:
        items.set("containsBlank", "1")
    items.set("count", str(len(field.shared_items)))
    for value in field.shared_items:
        if value is None:
            etree.SubElement(items, _m("m"))
        elif isinstance(value, bool):
            etree.SubElement(items, _m("b"), v=_flag(value))
        elif isinstance(value, (int, float)):
            etree.SubElement(items, _m("n"), v=_num(value))
        else:
            etree.SubElement(items, _m("s"), v=str(value))


def write_pivot_cache(cache: PivotCacheDefinition) -> bytes:
    root = etree.Element(_m("pivotCacheDefinition"), nsmap={None: NS_MAIN, "r": NS_R})
    if cache.refresh_on_load:
        root.set("refreshOnLoad", "1")
    root.set("saveData", "0")
    root.set("createdVersion", "6")
    root.set("refreshedVersion", "6")
    root.set("minRefreshableVersion", "3")
    root.set("recordCount", str(cache.record_count))
    source = etree.SubElement(root, _m("cacheSource"), type="worksheet")
    etree.SubElement(source, _m("worksheetSource"), ref=cache.source_range, sheet=cache.source_sheet)
    fields = etree.SubElement(root, _m("cacheFields"), count=str(len(cache.fields)))
    for field in cache.fields:
        el = etree.SubElement(fields, _m("cacheField"), name=field.name, numFmtId=str(field.number_format_id))
        _write_shared_items(el, field)
    return serialize_xml(root)


def _item_value(el: etree._Element) -> Any:
    tag = etree.QName(el).localname
    value = el.get("v")
    if tag == "m":
        return None
    if tag == "n":
        number = float(value)
        return int(number) if number.is_integer() else number
    if tag == "b":
        return _bool(value)
    return value


def read_pivot_cache(data: bytes, part: str, cache_id: int) -> PivotCacheDefinition:
    root = parse_xml(data, part)
    source = root.find(f"{_m('cacheSource')}/{_m('worksheetSource')}")
    fields: List[CacheField] = []
    for el in root.findall(f"{_m('cacheFields')}/{_m('cacheField')}"):
        items_el = el.find(_m("sharedItems"))
        field = CacheField(name=el.get("name", ""), number_format_id=int(el.get("numFmtId", "0")))
        if items_el is not None:
            field.shared_items = [_item_value(item) for item in items_el if isinstance(item.tag, str)]
            field.contains_blank = _bool(items_el.get("containsBlank"))
            field.contains_number = _bool(items_el.get("containsNumber"))
            field.contains_string = _bool(items_el.get("containsString"), True)
            field.contains_integer = _bool(items_el.get("containsInteger"))
            if items_el.get("minValue") is not None:
                field.min_value = float(items_el.get("minValue"))
            if items_el.get("maxValue") is not None:
                field.max_value = float(items_el.get("maxValue"))
        fields.append(field)
    return PivotCacheDefinition(
        cache_id=cache_id,
        source_sheet=source.get("sheet", "") if source is not None else "",
        source_range=source.get("ref", "A1") if source is not None else "A1",
        fields=fields,
        refresh_on_load=_bool(root.get("refreshOnLoad")),
        record_count=int(root.get("recordCount", "0")),
    )


# =============================================================================
# PIVOT TABLE
# =============================================================================

def _location_ref(pivot: PivotTable) -> str:
    _, col, row = parse_cell_ref(pivot.location)
    width = max(len(pivot.column_fields), 1) + max(len(pivot.data_fields), 1)
    return CellRange(row, col, row + 2, col + width - 1).coord


def write_pivot_table(pivot: PivotTable, cache: PivotCacheDefinition) -> bytes:
    root = etree.Element(_m("pivotTableDefinition"), nsmap={None: NS_MAIN})
    for key, value in (
        ("name", pivot.name), ("cacheId", str(pivot.cache_id)), ("applyNumberFormats", "0"),
        ("applyBorderFormats", "0"), ("applyFontFormats", "0"), ("applyPatternFormats", "0"),
        ("applyAlignmentFormats", "0"), ("applyWidthHeightFormats", "1"), ("dataCaption", "Values"),
        ("updatedVersion", "6"), ("minRefreshableVersion", "3"), ("createdVersion", "6"),
        ("indent", "0"), ("outline", "1"), ("outlineData", "1"), ("multipleFieldFilters", "0"),
    ):
        root.set(key, value)
    etree.SubElement(root, _m("location"), ref=_location_ref(pivot), firstHeaderRow="1",
                     firstDataRow="1", firstDataCol="1")

    data_indices = {d.field_index for d in pivot.data_fields}
    fields_el = etree.SubElement(root, _m("pivotFields"), count=str(len(cache.fields)))
    for index, field in enumerate(cache.fields):
        el = etree.SubElement(fields_el, _m("pivotField"))
        axis = "axisRow" if index in pivot.row_fields else "axisCol" if index in pivot.column_fields else None
        if axis:
            el.set("axis", axis)
        if index in data_indices:
            el.set("dataField", "1")
        el.set("showAll", "0")
        if axis:
            items = etree.SubElement(el, _m("items"), count=str(len(field.shared_items) + 1))
            for item_index in range(len(field.shared_items)):
                etree.SubElement(items, _m("item"), x=str(item_index))
            etree.SubElement(items, _m("item"), t="default")

    if pivot.row_fields:
        rows = etree.SubElement(root, _m("rowFields"), count=str(len(pivot.row_fields)))
        for index in pivot.row_fields:
            etree.SubElement(rows, _m("field"), x=str(index))
    col_fields = list(pivot.column_fields)
    if len(pivot.data_fields) > 1:
        col_fields.append(-2)  # The "Values" pseudo-field
    if col_fields:
        cols = etree.SubElement(root, _m("colFields"), count=str(len(col_fields)))
        for index in col_fields:
            etree.SubElement(cols, _m("field"), x=str(index))
    if pivot.data_fields:
        data_el = etree.SubElement(root, _m("dataFields"), count=str(len(pivot.data_fields)))
        for data_field in pivot.data_fields:
            el = etree.SubElement(data_el, _m("dataField"))
            if data_field.name:
                el.set("name", data_field.name)
            el.set("fld", str(data_field.field_index))
            if data_field.function != "sum":
                el.set("subtotal", data_field.function)
            el.set("baseField", "0")
            el.set("baseItem", "0")
    if pivot.style_name:
        etree.SubElement(root, _m("pivotTableStyleInfo"), name=pivot.style_name, showRowHeaders="1",
                         showColHeaders="1", showRowStripes="0", showColStripes="0", showLastColumn="1")
    return serialize_xml(root)


def _field_list(root: etree._Element, tag: str) -> List[int]:
    return [int(f.get("x")) for f in root.findall(f"{_m(tag)}/{_m('field')}") if int(f.get("x", "-2")) >= 0]


def read_pivot_table(data: bytes, part: str, diagnostics: Optional[List[Diagnostic]] = None) -> Tuple[PivotTable, int]:
    """Returns the pivot table and its cacheId."""
    root = parse_xml(data, part)
    location = root.find(_m("location"))
    top_left = CellRange.from_string(location.get("ref", "A1")).top_left if location is not None else (1, 1)
    style = root.find(_m("pivotTableStyleInfo"))
    data_fields = [
        DataField(
            field_index=int(el.get("fld", "0")),
            function=_known(el.get("subtotal", "sum"), get_args(AggregateFunction), "sum",
                            "data field function", part, diagnostics),
            name=el.get("name"),
        )
        for el in root.findall(f"{_m('dataFields')}/{_m('dataField')}")
    ]
    cache_id = int(root.get("cacheId", "0"))
    pivot = PivotTable(
        name=root.get("name", "PivotTable"),
        cache_id=cache_id,
        location=coordinate(*top_left),
        row_fields=_field_list(root, "rowFields"),
        column_fields=_field_list(root, "colFields"),
        data_fields=data_fields,
        style_name=style.get("name") if style is not None else None,
    )
    return pivot, cache_id
