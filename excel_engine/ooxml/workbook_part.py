"""workbook.xml and the docProps parts (core, extended, custom)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple, Union

from lxml import etree

from ..exceptions import FormatError
from ..properties import CustomProperty, DocumentProperties, ProtectionHash, WorkbookProtection
from ..workbook import CalcProperties, DefinedName, OpaqueSheet, Workbook, WorkbookView
from ..worksheet import PreservedElement, Worksheet
from .namespaces import (
    NS_CP,
    NS_CUSTOM,
    NS_DC,
    NS_DCMITYPE,
    NS_DCTERMS,
    NS_EXTENDED,
    NS_MAIN,
    NS_R,
    NS_VT,
    NS_XSI,
)
from .package import parse_xml, serialize_xml

logger = logging.getLogger(__name__)

R_ID = f"{{{NS_R}}}id"

WORKBOOK_ORDER = (
    "fileVersion", "fileSharing", "workbookPr", "workbookProtection", "bookViews", "sheets",
    "functionGroups", "externalReferences", "definedNames", "calcPr", "oleSize",
    "customWorkbookViews", "pivotCaches", "smartTagPr", "smartTagTypes", "webPublishing",
    "fileRecoveryPr", "webPublishObjects", "extLst",
)
MODELLED = {"fileVersion", "workbookPr", "workbookProtection", "bookViews", "sheets", "definedNames",
            "calcPr", "pivotCaches"}

CUSTOM_FMTID = "{D5CDD505-2E9C-101B-9397-08002B2CF9AE}"
W3CDTF = "%Y-%m-%dT%H:%M:%SZ"


def _m(local: str) -> str:
    return f"{{{NS_MAIN}}}{local}"


def _bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true")


def _flag(value: bool) -> str:
    return "1" if value else "0"


# =============================================================================
# WORKBOOK.XML
# =============================================================================

@dataclass
class SheetEntry:
    name: str
    sheet_id: int
    state: str
    rel_id: str


@dataclass
class WorkbookXml:
    """What workbook.xml says, before the parts it points at are loaded."""
    sheets: List[SheetEntry] = field(default_factory=list)
    pivot_caches: List[Tuple[int, str]] = field(default_factory=list)  # (cacheId, r:id)
    preserved_rel_ids: List[str] = field(default_factory=list)


def sheet_order(workbook: Workbook) -> List[Union[Worksheet, OpaqueSheet]]:
    """Worksheets and opaque sheets in tab order."""
    order: List[Union[Worksheet, OpaqueSheet]] = [o for o in workbook.opaque_sheets if o.follows is None]
    for sheet in workbook._sheets:
        order.append(sheet)
        order.extend(o for o in workbook.opaque_sheets if o.follows is sheet)
    placed = {id(item) for item in order}
    order.extend(o for o in workbook.opaque_sheets if id(o) not in placed)
    return order


def write_workbook_xml(workbook: Workbook, sheet_rel_ids: List[str],
                       pivot_cache_rel_ids: List[Tuple[int, str]], include_preserved: bool = True) -> bytes:
    root = etree.Element(_m("workbook"), nsmap={None: NS_MAIN, "r": NS_R})
    preserved = {}
    if include_preserved:
        for element in workbook.preserved_elements:
            preserved.setdefault(element.tag, []).append(element)
    order = sheet_order(workbook) if include_preserved else list(workbook._sheets)
    rel_ids: Dict[int, str] = {id(sheet): rel_id for sheet, rel_id in zip(workbook._sheets, sheet_rel_ids)}
    position = {id(item): i for i, item in enumerate(order)}

    def file_index(index: int) -> int:
        """Tab position in the file of the worksheet at ``index``."""
        if 0 <= index < len(workbook._sheets):
            return position[id(workbook._sheets[index])]
        return index

    for tag in WORKBOOK_ORDER:
        if tag == "fileVersion":
            etree.SubElement(root, _m("fileVersion"), appName="xl", lastEdited="7", lowestEdited="7",
                             rupBuild="22228")
        elif tag == "workbookPr":
            pr = etree.SubElement(root, _m("workbookPr"))
            if workbook.date1904:
                pr.set("date1904", "1")
            if workbook.code_name:
                pr.set("codeName", workbook.code_name)
            pr.set("defaultThemeVersion", "166925")
        elif tag == "workbookProtection" and workbook.protection is not None:
            _write_protection(root, workbook.protection)
        elif tag == "bookViews":
            views = etree.SubElement(root, _m("bookViews"))
            view = workbook.view
            el = etree.SubElement(views, _m("workbookView"), xWindow=str(view.x_window), yWindow=str(view.y_window),
                                  windowWidth=str(view.window_width), windowHeight=str(view.window_height))
            if view.tab_ratio != 600:
                el.set("tabRatio", str(view.tab_ratio))
            if view.first_sheet:
                el.set("firstSheet", str(file_index(view.first_sheet)))
            if file_index(view.active_tab):
                el.set("activeTab", str(file_index(view.active_tab)))
            for attr, xml_name in (("show_horizontal_scroll", "showHorizontalScroll"),
                                   ("show_vertical_scroll", "showVerticalScroll"),
                                   ("show_sheet_tabs", "showSheetTabs")):
                if not getattr(view, attr):
                    el.set(xml_name, "0")
        elif tag == "sheets":
            sheets = etree.SubElement(root, _m("sheets"))
            for index, item in enumerate(order, start=1):
                if isinstance(item, OpaqueSheet):
                    name, state, rel_id = item.name, item.state, item.rel_id
                else:
                    name, state, rel_id = item.title, item.state, rel_ids[id(item)]
                el = etree.SubElement(sheets, _m("sheet"), name=name, sheetId=str(index))
                if state != "visible":
                    el.set("state", state)
                el.set(R_ID, rel_id)
        elif tag == "definedNames" and workbook.defined_names:
            names = etree.SubElement(root, _m("definedNames"))
            for defined in sorted(workbook.defined_names,
                                  key=lambda d: (d.name.lower(), -1 if d.local_sheet_id is None else d.local_sheet_id)):
                el = etree.SubElement(names, _m("definedName"), name=defined.name)
                if defined.local_sheet_id is not None:
                    el.set("localSheetId", str(file_index(defined.local_sheet_id)))
                if defined.hidden:
                    el.set("hidden", "1")
                if defined.comment:
                    el.set("comment", defined.comment)
                el.text = defined.refers_to
        elif tag == "calcPr":
            calc = etree.SubElement(root, _m("calcPr"), calcId=str(workbook.calc.calc_id))
            if workbook.calc.full_calc_on_load:
                calc.set("fullCalcOnLoad", "1")
            if workbook.calc.calc_mode:
                calc.set("calcMode", workbook.calc.calc_mode)
        elif tag == "pivotCaches" and pivot_cache_rel_ids:
            caches = etree.SubElement(root, _m("pivotCaches"))
            for cache_id, rel_id in pivot_cache_rel_ids:
                el = etree.SubElement(caches, _m("pivotCache"), cacheId=str(cache_id))
                el.set(R_ID, rel_id)
        for element in preserved.get(tag, ()):
            root.append(parse_xml(element.xml))
    return serialize_xml(root)


def _write_protection(root: etree._Element, protection: WorkbookProtection) -> None:
    el = etree.SubElement(root, _m("workbookProtection"))
    if protection.workbook_password:
        el.set("workbookPassword", protection.workbook_password)
    if protection.lock_structure:
        el.set("lockStructure", "1")
    if protection.lock_windows:
        el.set("lockWindows", "1")
    if protection.lock_revision:
        el.set("lockRevision", "1")
    digest = protection.workbook_hash
    if digest is not None:
        el.set("workbookAlgorithmName", digest.algorithm_name)
        el.set("workbookHashValue", digest.hash_value)
        el.set("workbookSaltValue", digest.salt_value)
        el.set("workbookSpinCount", str(digest.spin_count))


def read_workbook_xml(workbook: Workbook, data: bytes, part: str) -> WorkbookXml:
    """Fill workbook-level settings; returns the sheet and pivot cache entries to load."""
    root = parse_xml(data, part)
    result = WorkbookXml()
    for child in root:
        if not isinstance(child.tag, str):
            continue
        tag = etree.QName(child).localname
        if child.tag != _m(tag) or tag not in MODELLED:
            workbook.preserved_elements.append(PreservedElement(tag=tag, xml=etree.tostring(child)))
            result.preserved_rel_ids.extend(
                value for node in child.iter() if isinstance(node.tag, str)
                for key, value in node.attrib.items() if key.startswith(f"{{{NS_R}}}")
            )
            continue
        if tag == "workbookPr":
            workbook.date1904 = _bool(child.get("date1904"))
            workbook.code_name = child.get("codeName")
        elif tag == "workbookProtection":
            workbook.protection = _read_protection(child)
        elif tag == "bookViews":
            view_el = child.find(_m("workbookView"))
            if view_el is not None:
                workbook.view = WorkbookView(
                    x_window=int(view_el.get("xWindow", "0")),
                    y_window=int(view_el.get("yWindow", "0")),
                    window_width=int(view_el.get("windowWidth", "28800")),
                    window_height=int(view_el.get("windowHeight", "12300")),
                    active_tab=int(view_el.get("activeTab", "0")),
                    first_sheet=int(view_el.get("firstSheet", "0")),
                    tab_ratio=int(view_el.get("tabRatio", "600")),
                    show_horizontal_scroll=_bool(view_el.get("showHorizontalScroll"), True),
                    show_vertical_scroll=_bool(view_el.get("showVerticalScroll"), True),
                    show_sheet_tabs=_bool(view_el.get("showSheetTabs"), True),
                )
        elif tag == "sheets":
            for el in child.findall(_m("sheet")):
                rel_id = el.get(R_ID)
                if not rel_id:
                    raise FormatError(f"Sheet {el.get('name')!r} has no relationship id", part=part)
                result.sheets.append(SheetEntry(
                    name=el.get("name", ""),
                    sheet_id=int(el.get("sheetId", "0")),
                    state=el.get("state", "visible"),
                    rel_id=rel_id,
                ))
        elif tag == "definedNames":
            for el in child.findall(_m("definedName")):
                local = el.get("localSheetId")
                workbook.defined_names.append(DefinedName(
                    name=el.get("name", ""),
                    refers_to=el.text or "",
                    local_sheet_id=int(local) if local is not None else None,
                    hidden=_bool(el.get("hidden")),
                    comment=el.get("comment"),
                ))
        elif tag == "calcPr":
            workbook.calc = CalcProperties(
                calc_id=int(child.get("calcId", "191029")),
                full_calc_on_load=_bool(child.get("fullCalcOnLoad")),
                calc_mode=child.get("calcMode"),
            )
        elif tag == "pivotCaches":
            for el in child.findall(_m("pivotCache")):
                result.pivot_caches.append((int(el.get("cacheId", "0")), el.get(R_ID)))
    return result


def _read_protection(el: etree._Element) -> WorkbookProtection:
    protection = WorkbookProtection(
        lock_structure=_bool(el.get("lockStructure")),
        lock_windows=_bool(el.get("lockWindows")),
        lock_revision=_bool(el.get("lockRevision")),
        workbook_password=el.get("workbookPassword"),
    )
    if el.get("workbookHashValue"):
        protection.workbook_hash = ProtectionHash(
            algorithm_name=el.get("workbookAlgorithmName", "SHA-512"),
            hash_value=el.get("workbookHashValue"),
            salt_value=el.get("workbookSaltValue", ""),
            spin_count=int(el.get("workbookSpinCount", "100000")),
        )
    return protection


# =============================================================================
# DOCUMENT PROPERTIES
# =============================================================================

def _format_date(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(W3CDTF)


def _parse_date(text: Optional[str]) -> Optional[datetime]:
    if not text:
        return None
    text = text.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"[READ] Unparseable document date {text!r}")
        return None


_CORE_FIELDS = (
    ("title", NS_DC, "title"),
    ("subject", NS_DC, "subject"),
    ("creator", NS_DC, "creator"),
    ("keywords", NS_CP, "keywords"),
    ("description", NS_DC, "description"),
    ("last_modified_by", NS_CP, "lastModifiedBy"),
    ("revision", NS_CP, "revision"),
    ("category", NS_CP, "category"),
    ("content_status", NS_CP, "contentStatus"),
)


def write_core_properties(props: DocumentProperties) -> bytes:
    root = etree.Element(f"{{{NS_CP}}}coreProperties", nsmap={
        "cp": NS_CP, "dc": NS_DC, "dcterms": NS_DCTERMS, "dcmitype": NS_DCMITYPE, "xsi": NS_XSI,
    })
    for attr, ns, local in _CORE_FIELDS:
        value = getattr(props, attr)
        if value is not None:
            etree.SubElement(root, f"{{{ns}}}{local}").text = value
    for attr, local in (("created", "created"), ("modified", "modified")):
        value = getattr(props, attr) or props.created
        if value is None:
            continue
        el = etree.SubElement(root, f"{{{NS_DCTERMS}}}{local}")
        el.set(f"{{{NS_XSI}}}type", "dcterms:W3CDTF")
        el.text = _format_date(value)
    return serialize_xml(root)


def read_core_properties(props: DocumentProperties, data: bytes, part: str) -> None:
    root = parse_xml(data, part)
    for attr, ns, local in _CORE_FIELDS:
        el = root.find(f"{{{ns}}}{local}")
        if el is not None:
            setattr(props, attr, el.text or "")
    props.created = _parse_date(root.findtext(f"{{{NS_DCTERMS}}}created"))
    props.modified = _parse_date(root.findtext(f"{{{NS_DCTERMS}}}modified"))


def _vt(local: str) -> str:
    return f"{{{NS_VT}}}{local}"


def write_extended_properties(props: DocumentProperties, sheet_names: List[str]) -> bytes:
    root = etree.Element(f"{{{NS_EXTENDED}}}Properties", nsmap={None: NS_EXTENDED, "vt": NS_VT})

    def add(tag: str, text: str) -> etree._Element:
        el = etree.SubElement(root, f"{{{NS_EXTENDED}}}{tag}")
        el.text = text
        return el

    add("Application", props.application)
    add("DocSecurity", "0")
    add("ScaleCrop", "false")
    pairs = add("HeadingPairs", None)
    vector = etree.SubElement(pairs, _vt("vector"), size="2", baseType="variant")
    etree.SubElement(etree.SubElement(vector, _vt("variant")), _vt("lpstr")).text = "Worksheets"
    etree.SubElement(etree.SubElement(vector, _vt("variant")), _vt("i4")).text = str(len(sheet_names))
    titles = add("TitlesOfParts", None)
    vector = etree.SubElement(titles, _vt("vector"), size=str(len(sheet_names)), baseType="lpstr")
    for name in sheet_names:
        etree.SubElement(vector, _vt("lpstr")).text = name
    if props.manager is not None:
        add("Manager", props.manager)
    if props.company is not None:
        add("Company", props.company)
    add("LinksUpToDate", "false")
    add("SharedDoc", "false")
    add("HyperlinksChanged", "false")
    add("AppVersion", props.app_version or "16.0300")
    return serialize_xml(root)


def read_extended_properties(props: DocumentProperties, data: bytes, part: str) -> None:
    root = parse_xml(data, part)
    for attr, tag in (("application", "Application"), ("company", "Company"),
                      ("manager", "Manager"), ("app_version", "AppVersion")):
        text = root.findtext(f"{{{NS_EXTENDED}}}{tag}")
        if text is not None:
            setattr(props, attr, text)


def write_custom_properties(props: DocumentProperties) -> bytes:
    root = etree.Element(f"{{{NS_CUSTOM}}}Properties", nsmap={None: NS_CUSTOM, "vt": NS_VT})
    for pid, prop in enumerate(props.custom, start=2):
        el = etree.SubElement(root, f"{{{NS_CUSTOM}}}property", fmtid=CUSTOM_FMTID, pid=str(pid), name=prop.name)
        value = prop.value
        if isinstance(value, bool):
            etree.SubElement(el, _vt("bool")).text = "true" if value else "false"
        elif isinstance(value, int):
            etree.SubElement(el, _vt("i4")).text = str(value)
        elif isinstance(value, float):
            etree.SubElement(el, _vt("r8")).text = repr(value)
        elif isinstance(value, datetime):
            etree.SubElement(el, _vt("filetime")).text = _format_date(value)
        else:
            etree.SubElement(el, _vt("lpwstr")).text = str(value)
    return serialize_xml(root)


def read_custom_properties(props: DocumentProperties, data: bytes, part: str) -> None:
    root = parse_xml(data, part)
    for el in root.findall(f"{{{NS_CUSTOM}}}property"):
        value_el = next((child for child in el if isinstance(child.tag, str)), None)
        if value_el is None:
            continue
        kind = etree.QName(value_el).localname
        text = value_el.text or ""
        if kind == "bool":
            value = text.strip().lower() in ("true", "1")
        elif kind in ("i1", "i2", "i4", "i8", "int", "ui1", "ui2", "ui4", "ui8", "uint"):
            value = int(text)
        elif kind in ("r4", "r8", "decimal"):
            value = float(text)
        elif kind in ("filetime", "date"):
            value = _parse_date(text) or text
        else:
            value = text
        props.custom.append(CustomProperty(name=el.get("name", ""), value=value))
