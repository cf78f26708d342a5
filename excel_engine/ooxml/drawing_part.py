"""Drawing, chart, comments and legacy VML parts.

- drawing: one xdr:wsDr per worksheet holding shapes, pictures, chart frames
  and anchors kept verbatim
- chart: c:chartSpace generated from the Chart model, or the original part
  when a read chart was not edited
- comments + VML: cell notes; the VML part also carries OLE object shapes
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from lxml import etree

from ..charts import Chart, ChartSeries
from ..drawing import (
    AnchorMarker,
    Connector,
    DrawingAnchor,
    PartLink,
    Picture,
    RawAnchor,
    Shape,
    TextBox,
)
from ..exceptions import Diagnostic, FormatError
from ..shared_strings import RichText
from ..worksheet import Comment
from .namespaces import NS_A, NS_C, NS_MAIN, NS_R, NS_VML, NS_VML_EXCEL, NS_VML_OFFICE, NS_XDR
from .package import RelationshipSet, parse_xml, serialize_xml
from .sheet_part import read_marker, write_marker
from .strings_part import read_rich, write_rich

logger = logging.getLogger(__name__)

R_ID = f"{{{NS_R}}}id"
R_EMBED = f"{{{NS_R}}}embed"
ANCHOR_TYPES = ("twoCell", "oneCell", "absolute")

DRAWING_NSMAP = {"xdr": NS_XDR, "a": NS_A, "r": NS_R}
CHART_NSMAP = {"c": NS_C, "a": NS_A, "r": NS_R}

# Part loader used while reading: part name -> bytes (marks the part consumed)
PartLoader = Callable[[str], bytes]


def _x(local: str) -> str:
    return f"{{{NS_XDR}}}{local}"


def _a(local: str) -> str:
    return f"{{{NS_A}}}{local}"


def _c(local: str) -> str:
    return f"{{{NS_C}}}{local}"


def _rgb(value: str) -> str:
    """Drawing colors are RRGGBB; accept ARGB and '#RRGGBB'."""
    value = value.lstrip("#").upper()
    return value[-6:] if len(value) == 8 else value


def links_in(el: etree._Element, rels: RelationshipSet) -> List[PartLink]:
    """Relationships referenced from an element, as absolute part names."""
    found: List[PartLink] = []
    seen: Set[str] = set()
    for node in el.iter():
        if not isinstance(node.tag, str):
            continue
        for key, value in node.attrib.items():
            if not key.startswith(f"{{{NS_R}}}") or value in seen or value not in rels:
                continue
            seen.add(value)
            rel = rels.get(value)
            found.append(PartLink(rel_id=rel.rel_id, rel_type=rel.rel_type, target=rels.resolve(rel),
                                  external=rel.is_external))
    return found


# =============================================================================
# DRAWING PART
# =============================================================================

def _write_anchor(root: etree._Element, anchor: DrawingAnchor) -> etree._Element:
    if anchor.anchor_type == "oneCell":
        el = etree.SubElement(root, _x("oneCellAnchor"))
        write_marker(el, _x("from"), anchor.from_marker)
        etree.SubElement(el, _x("ext"), cx=str(anchor.ext_cx), cy=str(anchor.ext_cy))
    elif anchor.anchor_type == "absolute":
        el = etree.SubElement(root, _x("absoluteAnchor"))
        etree.SubElement(el, _x("pos"), x=str(anchor.pos_x), y=str(anchor.pos_y))
        etree.SubElement(el, _x("ext"), cx=str(anchor.ext_cx), cy=str(anchor.ext_cy))
    else:
        el = etree.SubElement(root, _x("twoCellAnchor"))
        if anchor.edit_as:
            el.set("editAs", anchor.edit_as)
        write_marker(el, _x("from"), anchor.from_marker)
        write_marker(el, _x("to"), anchor.to_marker or anchor.from_marker)
    return el


def _solid_fill(parent: etree._Element, color: str) -> None:
    fill = etree.SubElement(parent, _a("solidFill"))
    etree.SubElement(fill, _a("srgbClr"), val=_rgb(color))


def _line(parent: etree._Element, color: Optional[str], width_emu: Optional[int]) -> None:
    if color is None and width_emu is None:
        return
    ln = etree.SubElement(parent, _a("ln"))
    if width_emu is not None:
        ln.set("w", str(width_emu))
    if color is not None:
        _solid_fill(ln, color)


def _text_body(parent: etree._Element, text: str) -> None:
    body = etree.SubElement(parent, _x("txBody"))
    etree.SubElement(body, _a("bodyPr"), vertOverflow="clip", wrap="square", rtlCol="0", anchor="t")
    etree.SubElement(body, _a("lstStyle"))
    for line in text.split("\n"):
        p = etree.SubElement(body, _a("p"))
        r = etree.SubElement(p, _a("r"))
        etree.SubElement(r, _a("rPr"), lang="en-US", sz="1100")
        etree.SubElement(r, _a("t")).text = line


def _write_sp(anchor_el: etree._Element, obj, shape_id: int, text_box: bool) -> None:
    sp = etree.SubElement(anchor_el, _x("sp"), macro="", textlink="")
    nv = etree.SubElement(sp, _x("nvSpPr"))
    etree.SubElement(nv, _x("cNvPr"), id=str(shape_id), name=obj.name)
    c_nv_sp = etree.SubElement(nv, _x("cNvSpPr"))
    if text_box:
        c_nv_sp.set("txBox", "1")
    sp_pr = etree.SubElement(sp, _x("spPr"))
    geom = etree.SubElement(sp_pr, _a("prstGeom"), prst="rect" if text_box else obj.geometry)
    etree.SubElement(geom, _a("avLst"))
    if obj.fill_color:
        _solid_fill(sp_pr, obj.fill_color)
    elif text_box:
        etree.SubElement(sp_pr, _a("noFill"))
    _line(sp_pr, obj.line_color, getattr(obj, "line_width_emu", None))
    if obj.text is not None:
        _text_body(sp, obj.text)


def _write_connector(anchor_el: etree._Element, obj: Connector, shape_id: int) -> None:
    cxn = etree.SubElement(anchor_el, _x("cxnSp"), macro="")
    nv = etree.SubElement(cxn, _x("nvCxnSpPr"))
    etree.SubElement(nv, _x("cNvPr"), id=str(shape_id), name=obj.name)
    c_nv = etree.SubElement(nv, _x("cNvCxnSpPr"))
    if obj.start_shape_id is not None:
        etree.SubElement(c_nv, _a("stCxn"), id=str(obj.start_shape_id), idx="0")
    if obj.end_shape_id is not None:
        etree.SubElement(c_nv, _a("endCxn"), id=str(obj.end_shape_id), idx="0")
    sp_pr = etree.SubElement(cxn, _x("spPr"))
    geom = etree.SubElement(sp_pr, _a("prstGeom"), prst=obj.geometry)
    etree.SubElement(geom, _a("avLst"))
    _line(sp_pr, obj.line_color or "000000", obj.line_width_emu)


def _write_picture(anchor_el: etree._Element, obj: Picture, shape_id: int, rel_id: str) -> None:
    pic = etree.SubElement(anchor_el, _x("pic"))
    nv = etree.SubElement(pic, _x("nvPicPr"))
    c_nv_pr = etree.SubElement(nv, _x("cNvPr"), id=str(shape_id), name=obj.name)
    if obj.description:
        c_nv_pr.set("descr", obj.description)
    c_nv_pic = etree.SubElement(nv, _x("cNvPicPr"))
    etree.SubElement(c_nv_pic, _a("picLocks"), noChangeAspect="1")
    blip_fill = etree.SubElement(pic, _x("blipFill"))
    blip = etree.SubElement(blip_fill, _a("blip"))
    blip.set(R_EMBED, rel_id)
    stretch = etree.SubElement(blip_fill, _a("stretch"))
    etree.SubElement(stretch, _a("fillRect"))
    sp_pr = etree.SubElement(pic, _x("spPr"))
    geom = etree.SubElement(sp_pr, _a("prstGeom"), prst="rect")
    etree.SubElement(geom, _a("avLst"))


def _write_chart_frame(anchor_el: etree._Element, obj: Chart, shape_id: int, rel_id: str) -> None:
    frame = etree.SubElement(anchor_el, _x("graphicFrame"), macro="")
    nv = etree.SubElement(frame, _x("nvGraphicFramePr"))
    etree.SubElement(nv, _x("cNvPr"), id=str(shape_id), name=obj.name)
    etree.SubElement(nv, _x("cNvGraphicFramePr"))
    xfrm = etree.SubElement(frame, _x("xfrm"))
    etree.SubElement(xfrm, _a("off"), x="0", y="0")
    etree.SubElement(xfrm, _a("ext"), cx="0", cy="0")
    graphic = etree.SubElement(frame, _a("graphic"))
    data = etree.SubElement(graphic, _a("graphicData"), uri=NS_C)
    chart_ref = etree.SubElement(data, _c("chart"), nsmap={"c": NS_C})
    chart_ref.set(R_ID, rel_id)


def write_drawing(objects: Sequence, rel_ids: Dict[int, str]) -> bytes:
    """Serialize a worksheet's drawing objects.

    ``rel_ids`` maps an object's position to the relationship id of its image
    or chart part. Raw anchors are written back as they were read.
    """
    root = etree.Element(_x("wsDr"), nsmap=DRAWING_NSMAP)
    shape_id = 1
    for position, obj in enumerate(objects):
        if isinstance(obj, RawAnchor):
            root.append(parse_xml(obj.xml))
            continue
        shape_id += 1
        sid = obj.shape_id or shape_id
        anchor_el = _write_anchor(root, obj.anchor)
        if isinstance(obj, TextBox):
            _write_sp(anchor_el, obj, sid, text_box=True)
        elif isinstance(obj, Shape):
            _write_sp(anchor_el, obj, sid, text_box=False)
        elif isinstance(obj, Connector):
            _write_connector(anchor_el, obj, sid)
        elif isinstance(obj, Picture):
            _write_picture(anchor_el, obj, sid, rel_ids[position])
        elif isinstance(obj, Chart):
            _write_chart_frame(anchor_el, obj, sid, rel_ids[position])
        etree.SubElement(anchor_el, _x("clientData"))
    return serialize_xml(root)


def _read_anchor(el: etree._Element) -> DrawingAnchor:
    tag = etree.QName(el).localname
    ext = el.find(_x("ext"))
    cx = int(ext.get("cx", "0")) if ext is not None else 0
    cy = int(ext.get("cy", "0")) if ext is not None else 0
    if tag == "oneCellAnchor":
        return DrawingAnchor(anchor_type="oneCell", from_marker=read_marker(el.find(_x("from"))), ext_cx=cx, ext_cy=cy)
    if tag == "absoluteAnchor":
        pos = el.find(_x("pos"))
        return DrawingAnchor(
            anchor_type="absolute",
            pos_x=int(pos.get("x", "0")) if pos is not None else 0,
            pos_y=int(pos.get("y", "0")) if pos is not None else 0,
            ext_cx=cx,
            ext_cy=cy,
        )
    return DrawingAnchor(
        anchor_type="twoCell",
        from_marker=read_marker(el.find(_x("from"))),
        to_marker=read_marker(el.find(_x("to"))),
        edit_as=el.get("editAs") if el.get("editAs") in ANCHOR_TYPES else None,
    )


def _color_of(el: Optional[etree._Element]) -> Optional[str]:
    if el is None:
        return None
    clr = el.find(f"{_a('solidFill')}/{_a('srgbClr')}")
    return clr.get("val") if clr is not None else None


def _text_of(el: Optional[etree._Element]) -> Optional[str]:
    if el is None:
        return None
    lines = ["".join(t.text or "" for t in p.iter(_a("t"))) for p in el.findall(_a("p"))]
    return "\n".join(lines)


def _line_of(sp_pr: Optional[etree._Element]) -> Tuple[Optional[str], Optional[int]]:
    ln = sp_pr.find(_a("ln")) if sp_pr is not None else None
    if ln is None:
        return None, None
    width = ln.get("w")
    return _color_of(ln), int(width) if width is not None else None


def _read_sp(sp: etree._Element, anchor: DrawingAnchor):
    c_nv_pr = sp.find(f"{_x('nvSpPr')}/{_x('cNvPr')}")
    c_nv_sp = sp.find(f"{_x('nvSpPr')}/{_x('cNvSpPr')}")
    sp_pr = sp.find(_x("spPr"))
    geom = sp_pr.find(_a("prstGeom")) if sp_pr is not None else None
    if c_nv_pr is None or geom is None:
        return None
    line_color, line_width = _line_of(sp_pr)
    text = _text_of(sp.find(_x("txBody")))
    common = dict(
        anchor=anchor,
        name=c_nv_pr.get("name", ""),
        fill_color=_color_of(sp_pr),
        line_color=line_color,
        shape_id=int(c_nv_pr.get("id", "0")),
    )
    if c_nv_sp is not None and c_nv_sp.get("txBox") in ("1", "true"):
        return TextBox(text=text or "", **common)
    return Shape(geometry=geom.get("prst", "rect"), text=text, line_width_emu=line_width, **common)


def _read_connector(cxn: etree._Element, anchor: DrawingAnchor) -> Optional[Connector]:
    c_nv_pr = cxn.find(f"{_x('nvCxnSpPr')}/{_x('cNvPr')}")
    c_nv = cxn.find(f"{_x('nvCxnSpPr')}/{_x('cNvCxnSpPr')}")
    sp_pr = cxn.find(_x("spPr"))
    geom = sp_pr.find(_a("prstGeom")) if sp_pr is not None else None
    if c_nv_pr is None or geom is None:
        return None
    start = c_nv.find(_a("stCxn")) if c_nv is not None else None
    end = c_nv.find(_a("endCxn")) if c_nv is not None else None
    line_color, line_width = _line_of(sp_pr)
    return Connector(
        anchor=anchor,
        name=c_nv_pr.get("name", ""),
        geometry=geom.get("prst", "straightConnector1"),
        line_color=line_color,
        line_width_emu=line_width,
        start_shape_id=int(start.get("id")) if start is not None else None,
        end_shape_id=int(end.get("id")) if end is not None else None,
        shape_id=int(c_nv_pr.get("id", "0")),
    )


def read_drawing(data: bytes, part: str, rels: RelationshipSet, load: PartLoader,
                 diagnostics: List[Diagnostic]) -> list:
    """Parse a drawing part into model objects; unmodelled anchors become RawAnchor."""
    root = parse_xml(data, part)
    objects: list = []
    for anchor_el in root:
        if not isinstance(anchor_el.tag, str) or anchor_el.tag not in (
                _x("twoCellAnchor"), _x("oneCellAnchor"), _x("absoluteAnchor")):
            continue
        anchor = _read_anchor(anchor_el)
        body = [child for child in anchor_el
                if isinstance(child.tag, str) and child.tag not in (_x("from"), _x("to"), _x("ext"),
                                                                    _x("pos"), _x("clientData"))]
        obj = None
        if len(body) == 1:
            element = body[0]
            if element.tag == _x("sp"):
                obj = _read_sp(element, anchor)
            elif element.tag == _x("cxnSp"):
                obj = _read_connector(element, anchor)
            elif element.tag == _x("pic"):
                obj = _read_picture(element, anchor, rels, load)
            elif element.tag == _x("graphicFrame"):
                obj = _read_chart_frame(element, anchor, rels, load, diagnostics)
        if obj is None:
            obj = RawAnchor(xml=etree.tostring(anchor_el), links=links_in(anchor_el, rels))
        objects.append(obj)
    logger.debug(f"[READ] {part}: {len(objects)} drawing objects")
    return objects


def _read_picture(pic: etree._Element, anchor: DrawingAnchor, rels: RelationshipSet,
                  load: PartLoader) -> Optional[Picture]:
    blip = pic.find(f"{_x('blipFill')}/{_a('blip')}")
    c_nv_pr = pic.find(f"{_x('nvPicPr')}/{_x('cNvPr')}")
    rel_id = blip.get(R_EMBED) if blip is not None else None
    if not rel_id or rel_id not in rels or rels.get(rel_id).is_external:
        return None
    target = rels.target_part(rel_id)
    extension = posixpath.splitext(target)[1].lstrip(".").lower() or "png"
    return Picture(
        anchor=anchor,
        name=c_nv_pr.get("name", "Picture") if c_nv_pr is not None else "Picture",
        description=c_nv_pr.get("descr") if c_nv_pr is not None else None,
        data=load(target),
        extension=extension,
        shape_id=int(c_nv_pr.get("id", "0")) if c_nv_pr is not None else 0,
    )


def _read_chart_frame(frame: etree._Element, anchor: DrawingAnchor, rels: RelationshipSet,
                      load: PartLoader, diagnostics: List[Diagnostic]) -> Optional[Chart]:
    chart_ref = frame.find(f"{_a('graphic')}/{_a('graphicData')}/{_c('chart')}")
    if chart_ref is None or chart_ref.get(R_ID) not in rels:
        return None
    c_nv_pr = frame.find(f"{_x('nvGraphicFramePr')}/{_x('cNvPr')}")
    target = rels.target_part(chart_ref.get(R_ID))
    chart_rels = None
    rels_name = posixpath.join(posixpath.dirname(target), "_rels", posixpath.basename(target) + ".rels")
    try:
        chart_rels = RelationshipSet.from_xml(target, load(rels_name))
    except KeyError:
        pass  # Chart without relationships
    return read_chart(
        load(target), target, anchor,
        name=c_nv_pr.get("name", "Chart") if c_nv_pr is not None else "Chart",
        shape_id=int(c_nv_pr.get("id", "0")) if c_nv_pr is not None else 0,
        rels=chart_rels,
        diagnostics=diagnostics,
    )


# =============================================================================
# CHART PART
# =============================================================================

_CHART_TAGS = {
    "bar": "barChart", "column": "barChart", "line": "lineChart", "pie": "pieChart",
    "doughnut": "doughnutChart", "area": "areaChart", "scatter": "scatterChart",
}
_CAT_AXIS_ID = "500000001"
_VAL_AXIS_ID = "500000002"


def _val(parent: etree._Element, tag: str, value) -> etree._Element:
    return etree.SubElement(parent, _c(tag), val=str(value))


def _rich_title(parent: etree._Element, text: str) -> None:
    title = etree.SubElement(parent, _c("title"))
    tx = etree.SubElement(title, _c("tx"))
    rich = etree.SubElement(tx, _c("rich"))
    etree.SubElement(rich, _a("bodyPr"))
    etree.SubElement(rich, _a("lstStyle"))
    p = etree.SubElement(rich, _a("p"))
    r = etree.SubElement(p, _a("r"))
    etree.SubElement(r, _a("t")).text = text
    _val(title, "overlay", 0)


def _data_ref(parent: etree._Element, tag: str, ref_tag: str, formula: str) -> None:
    holder = etree.SubElement(parent, _c(tag))
    ref = etree.SubElement(holder, _c(ref_tag))
    etree.SubElement(ref, _c("f")).text = formula


def _series_title(parent: etree._Element, title: str) -> None:
    tx = etree.SubElement(parent, _c("tx"))
    if "!" in title:
        ref = etree.SubElement(tx, _c("strRef"))
        etree.SubElement(ref, _c("f")).text = title
    else:
        etree.SubElement(tx, _c("v")).text = title


def _write_series(chart_el: etree._Element, chart: Chart, index: int, series: ChartSeries) -> None:
    ser = etree.SubElement(chart_el, _c("ser"))
    _val(ser, "idx", index)
    _val(ser, "order", index)
    if series.title:
        _series_title(ser, series.title)
    if series.color:
        sp_pr = etree.SubElement(ser, _c("spPr"))
        if chart.chart_type in ("line", "scatter"):
            ln = etree.SubElement(sp_pr, _a("ln"))
            _solid_fill(ln, series.color)
        else:
            _solid_fill(sp_pr, series.color)
    if chart.chart_type in ("bar", "column"):
        _val(ser, "invertIfNegative", 0)
    if chart.chart_type in ("line", "scatter"):
        marker = etree.SubElement(ser, _c("marker"))
        _val(marker, "symbol", "none" if chart.chart_type == "line" else "circle")
    if chart.chart_type == "scatter":
        if series.categories:
            _data_ref(ser, "xVal", "numRef", series.categories)
        _data_ref(ser, "yVal", "numRef", series.values)
        _val(ser, "smooth", 0)
        return
    if series.categories:
        _data_ref(ser, "cat", "strRef", series.categories)
    _data_ref(ser, "val", "numRef", series.values)
    if chart.chart_type == "line":
        _val(ser, "smooth", 0)


def _data_labels(parent: etree._Element) -> None:
    labels = etree.SubElement(parent, _c("dLbls"))
    for tag, value in (("showLegendKey", 0), ("showVal", 1), ("showCatName", 0),
                       ("showSerName", 0), ("showPercent", 0), ("showBubbleSize", 0)):
        _val(labels, tag, value)


def _axis(plot: etree._Element, tag: str, ax_id: str, cross_id: str, position: str,
          title: Optional[str], gridlines: bool) -> None:
    ax = etree.SubElement(plot, _c(tag))
    _val(ax, "axId", ax_id)
    scaling = etree.SubElement(ax, _c("scaling"))
    _val(scaling, "orientation", "minMax")
    _val(ax, "delete", 0)
    _val(ax, "axPos", position)
    if gridlines:
        etree.SubElement(ax, _c("majorGridlines"))
    if title:
        _rich_title(ax, title)
    if tag == "valAx":
        etree.SubElement(ax, _c("numFmt"), formatCode="General", sourceLinked="1")
    _val(ax, "majorTickMark", "out")
    _val(ax, "minorTickMark", "none")
    _val(ax, "tickLblPos", "nextTo")
    _val(ax, "crossAx", cross_id)
    _val(ax, "crosses", "autoZero")
    if tag == "catAx":
        _val(ax, "auto", 1)
        _val(ax, "lblAlgn", "ctr")
        _val(ax, "lblOffset", 100)
    else:
        _val(ax, "crossBetween", "midCat" if plot.find(_c("scatterChart")) is not None else "between")


def write_chart(chart: Chart) -> bytes:
    """The chart part: the original XML when unchanged since reading, else generated from the model."""
    if chart.raw_xml is not None:
        return chart.raw_xml

    root = etree.Element(_c("chartSpace"), nsmap=CHART_NSMAP)
    _val(root, "roundedCorners", 1 if chart.rounded_corners else 0)
    if chart.style is not None:
        _val(root, "style", chart.style)
    chart_el = etree.SubElement(root, _c("chart"))
    if chart.title:
        _rich_title(chart_el, chart.title)
        _val(chart_el, "autoTitleDeleted", 0)
    else:
        _val(chart_el, "autoTitleDeleted", 1)
    plot = etree.SubElement(chart_el, _c("plotArea"))
    etree.SubElement(plot, _c("layout"))

    kind = chart.chart_type
    body = etree.SubElement(plot, _c(_CHART_TAGS[kind]))
    if kind in ("bar", "column"):
        _val(body, "barDir", "bar" if kind == "bar" else "col")
        _val(body, "grouping", "clustered" if chart.grouping == "standard" else chart.grouping)
    elif kind in ("line", "area"):
        _val(body, "grouping", "standard" if chart.grouping == "clustered" else chart.grouping)
    elif kind == "scatter":
        _val(body, "scatterStyle", "lineMarker")
    _val(body, "varyColors", 1 if kind in ("pie", "doughnut") else 0)
    for index, series in enumerate(chart.series):
        _write_series(body, chart, index, series)
    if chart.show_data_labels:
        _data_labels(body)

    if kind in ("pie", "doughnut"):
        _val(body, "firstSliceAng", 0)
        if kind == "doughnut":
            _val(body, "holeSize", 50)
    else:
        if kind in ("bar", "column"):
            _val(body, "gapWidth", 150)
            if chart.grouping in ("stacked", "percentStacked"):
                _val(body, "overlap", 100)
        if kind == "line":
            _val(body, "marker", 1)
        _val(body, "axId", _CAT_AXIS_ID)
        _val(body, "axId", _VAL_AXIS_ID)
        horizontal = kind == "bar"
        _axis(plot, "valAx" if kind == "scatter" else "catAx", _CAT_AXIS_ID, _VAL_AXIS_ID,
              "l" if horizontal else "b", chart.x_axis_title, gridlines=False)
        _axis(plot, "valAx", _VAL_AXIS_ID, _CAT_AXIS_ID, "b" if horizontal else "l",
              chart.y_axis_title, gridlines=True)

    if chart.legend_position:
        legend = etree.SubElement(chart_el, _c("legend"))
        _val(legend, "legendPos", chart.legend_position)
        _val(legend, "overlay", 0)
    _val(chart_el, "plotVisOnly", 1)
    _val(chart_el, "dispBlanksAs", "gap")
    return serialize_xml(root)


def _rich_text_of(title: Optional[etree._Element]) -> Optional[str]:
    if title is None:
        return None
    texts = [t.text or "" for t in title.iter(_a("t"))]
    if texts:
        return "".join(texts)
    f = title.find(f"{_c('tx')}/{_c('strRef')}/{_c('f')}")
    return f.text if f is not None else None


def _formula(parent: Optional[etree._Element]) -> Optional[str]:
    if parent is None:
        return None
    f = parent.find(f".//{_c('f')}")
    return f.text if f is not None else None


def read_chart(data: bytes, part: str, anchor: DrawingAnchor, name: str = "Chart", shape_id: int = 0,
               rels: Optional[RelationshipSet] = None,
               diagnostics: Optional[List[Diagnostic]] = None) -> Chart:
    """Build a Chart from a chart part; the original XML is kept for round-trip."""
    root = parse_xml(data, part)
    chart_el = root.find(_c("chart"))
    plot = chart_el.find(_c("plotArea")) if chart_el is not None else None
    chart_type = "column"
    grouping = "clustered"
    series: List[ChartSeries] = []
    body = None
    if plot is not None:
        for kind, tag in _CHART_TAGS.items():
            body = plot.find(_c(tag))
            if body is None:
                continue
            chart_type = kind
            if tag == "barChart":
                bar_dir = body.find(_c("barDir"))
                chart_type = "bar" if bar_dir is not None and bar_dir.get("val") == "bar" else "column"
            break
        else:
            if diagnostics is not None:
                diagnostics.append(Diagnostic(part=part, severity="info",
                                              message="Chart type not modelled; kept as original XML"))
    if body is not None:
        group_el = body.find(_c("grouping"))
        if group_el is not None and group_el.get("val") in ("clustered", "stacked", "percentStacked", "standard"):
            grouping = group_el.get("val")
        for ser in body.findall(_c("ser")):
            tx = ser.find(_c("tx"))
            title = None
            if tx is not None:
                v = tx.find(_c("v"))
                title = v.text if v is not None else _formula(tx)
            values = _formula(ser.find(_c("yVal") if chart_type == "scatter" else _c("val"))) or ""
            categories = _formula(ser.find(_c("xVal") if chart_type == "scatter" else _c("cat")))
            color = None
            sp_pr = ser.find(_c("spPr"))
            if sp_pr is not None:
                color = _color_of(sp_pr) or _color_of(sp_pr.find(_a("ln")))
            series.append(ChartSeries(values=values, categories=categories, title=title, color=color))

    legend_pos = None
    legend = chart_el.find(_c("legend")) if chart_el is not None else None
    if legend is not None:
        pos = legend.find(_c("legendPos"))
        legend_pos = pos.get("val", "r") if pos is not None else "r"
        if legend_pos not in ("r", "l", "t", "b", "tr"):
            legend_pos = "r"
    style = root.find(_c("style"))
    rounded = root.find(_c("roundedCorners"))
    axes = plot.findall(f"{_c('catAx')}") + plot.findall(f"{_c('valAx')}") if plot is not None else []

    chart = Chart(
        anchor=anchor,
        chart_type=chart_type,
        series=series,
        title=_rich_text_of(chart_el.find(_c("title"))) if chart_el is not None else None,
        name=name,
        legend_position=legend_pos,
        show_data_labels=body is not None and body.find(f"{_c('dLbls')}/{_c('showVal')}[@val='1']") is not None,
        x_axis_title=_rich_text_of(axes[0].find(_c("title"))) if len(axes) > 0 else None,
        y_axis_title=_rich_text_of(axes[1].find(_c("title"))) if len(axes) > 1 else None,
        grouping=grouping,
        style=int(style.get("val")) if style is not None and style.get("val", "").isdigit() else None,
        rounded_corners=rounded is not None and rounded.get("val") in ("1", "true"),
        shape_id=shape_id,
    )
    chart.raw_xml = data
    if rels is not None:
        chart.links = [PartLink(rel_id=r.rel_id, rel_type=r.rel_type, target=rels.resolve(r), external=r.is_external)
                       for r in rels]
    return chart


# =============================================================================
# COMMENTS
# =============================================================================

def _m(local: str) -> str:
    return f"{{{NS_MAIN}}}{local}"


def write_comments(comments: Dict[Tuple[int, int], Comment]) -> bytes:
    from ..references import coordinate

    root = etree.Element(_m("comments"), nsmap={None: NS_MAIN})
    authors_el = etree.SubElement(root, _m("authors"))
    authors: Dict[str, int] = {}
    for key in sorted(comments):
        author = comments[key].author
        if author not in authors:
            authors[author] = len(authors)
            etree.SubElement(authors_el, _m("author")).text = author
    comment_list = etree.SubElement(root, _m("commentList"))
    for key in sorted(comments):
        comment = comments[key]
        el = etree.SubElement(comment_list, _m("comment"), ref=coordinate(*key),
                              authorId=str(authors[comment.author]))
        write_rich(etree.SubElement(el, _m("text")), comment.rich_text or comment.text)
    return serialize_xml(root)


def read_comments(data: bytes, part: str) -> Dict[Tuple[int, int], Comment]:
    from ..references import CellRange

    root = parse_xml(data, part)
    authors = [a.text or "" for a in root.findall(f"{_m('authors')}/{_m('author')}")]
    comments: Dict[Tuple[int, int], Comment] = {}
    for el in root.findall(f"{_m('commentList')}/{_m('comment')}"):
        author_id = int(el.get("authorId", "0"))
        text_el = el.find(_m("text"))
        entry = read_rich(text_el) if text_el is not None else ""
        rich = entry if isinstance(entry, RichText) else None
        comments[CellRange.from_string(el.get("ref")).top_left] = Comment(
            text=rich.plain_text if rich is not None else entry,
            author=authors[author_id] if 0 <= author_id < len(authors) else "",
            rich_text=rich,
        )
    return comments


# =============================================================================
# LEGACY VML (comment boxes and OLE object shapes)
# =============================================================================

VML_NSMAP = {"v": NS_VML, "o": NS_VML_OFFICE, "x": NS_VML_EXCEL}


def _v(local: str) -> str:
    return f"{{{NS_VML}}}{local}"


def _o(local: str) -> str:
    return f"{{{NS_VML_OFFICE}}}{local}"


def _xl(local: str) -> str:
    return f"{{{NS_VML_EXCEL}}}{local}"


@dataclass
class VmlOleShape:
    shape_id: int
    anchor: DrawingAnchor
    image_rel_id: Optional[str]


def _marker_anchor(anchor: DrawingAnchor) -> str:
    start = anchor.from_marker
    end = anchor.to_marker or AnchorMarker(col=start.col + 2, row=start.row + 3)
    return ", ".join(str(v) for v in (
        start.col, start.col_offset // 9525, start.row, start.row_offset // 9525,
        end.col, end.col_offset // 9525, end.row, end.row_offset // 9525,
    ))


def write_vml(sheet_number: int, comments: Dict[Tuple[int, int], Comment],
              ole_shapes: Sequence[VmlOleShape] = ()) -> bytes:
    """The legacy drawing for a worksheet.

    Shape ids come from the sheet's 1024-wide block: comment boxes take
    ``1024 * sheet_number + 1`` onward, OLE shapes use their own ids.
    """
    root = etree.Element("xml", nsmap=VML_NSMAP)
    layout = etree.SubElement(root, _o("shapelayout"))
    layout.set(_v("ext"), "edit")
    idmap = etree.SubElement(layout, _o("idmap"), data=str(sheet_number))
    idmap.set(_v("ext"), "edit")

    if comments:
        shapetype = etree.SubElement(root, _v("shapetype"), id="_x0000_t202", coordsize="21600,21600",
                                     path="m,l,21600r21600,l21600,xe")
        shapetype.set(_o("spt"), "202")
        etree.SubElement(shapetype, _v("stroke"), joinstyle="miter")
        path = etree.SubElement(shapetype, _v("path"), gradientshapeok="t")
        path.set(_o("connecttype"), "rect")

    for n, key in enumerate(sorted(comments), start=1):
        row, col = key
        comment = comments[key]
        visibility = "visible" if comment.visible else "hidden"
        shape = etree.SubElement(
            root, _v("shape"), id=f"_x0000_s{1024 * sheet_number + n}", type="#_x0000_t202",
            style=(f"position:absolute;margin-left:59.25pt;margin-top:1.5pt;width:108pt;height:59.25pt;"
                   f"z-index:{n};visibility:{visibility}"),
            fillcolor="#ffffe1",
        )
        shape.set(_o("insetmode"), "auto")
        etree.SubElement(shape, _v("fill"), color2="#ffffe1")
        etree.SubElement(shape, _v("shadow"), on="t", color="black", obscured="t")
        path = etree.SubElement(shape, _v("path"))
        path.set(_o("connecttype"), "none")
        textbox = etree.SubElement(shape, _v("textbox"), style="mso-direction-alt:auto")
        etree.SubElement(textbox, "div", style="text-align:left")
        client = etree.SubElement(shape, _xl("ClientData"), ObjectType="Note")
        etree.SubElement(client, _xl("MoveWithCells"))
        etree.SubElement(client, _xl("SizeWithCells"))
        etree.SubElement(client, _xl("Anchor")).text = f"{col}, 15, {row - 1}, 10, {col + 2}, 15, {row + 3}, 4"
        etree.SubElement(client, _xl("AutoFill")).text = "False"
        etree.SubElement(client, _xl("Row")).text = str(row - 1)
        etree.SubElement(client, _xl("Column")).text = str(col - 1)
        if comment.visible:
            etree.SubElement(client, _xl("Visible"))

    if ole_shapes:
        shapetype = etree.SubElement(root, _v("shapetype"), id="_x0000_t75", coordsize="21600,21600",
                                     filled="f", stroked="f", path="m@4@5l@4@11@9@11@9@5xe")
        shapetype.set(_o("spt"), "75")
        shapetype.set(_o("preferrelative"), "t")
        etree.SubElement(shapetype, _v("stroke"), joinstyle="miter")
        path = etree.SubElement(shapetype, _v("path"), gradientshapeok="t", extrusionok="f")
        path.set(_o("connecttype"), "rect")
        lock = etree.SubElement(shapetype, _o("lock"), aspectratio="t")
        lock.set(_v("ext"), "edit")
    for n, ole in enumerate(ole_shapes, start=1):
        shape = etree.SubElement(
            root, _v("shape"), id=f"_x0000_s{ole.shape_id}", type="#_x0000_t75",
            style=f"position:absolute;margin-left:0;margin-top:0;width:96pt;height:48pt;z-index:{len(comments) + n}",
            filled="t", fillcolor="window [65]", stroked="t", strokecolor="windowText [64]",
        )
        if ole.image_rel_id:
            image = etree.SubElement(shape, _v("imagedata"))
            image.set(_o("relid"), ole.image_rel_id)
            image.set(_o("title"), "")
        client = etree.SubElement(shape, _xl("ClientData"), ObjectType="Pict")
        etree.SubElement(client, _xl("SizeWithCells"))
        etree.SubElement(client, _xl("Anchor")).text = _marker_anchor(ole.anchor)
        etree.SubElement(client, _xl("CF")).text = "Pict"
        etree.SubElement(client, _xl("AutoPict"))
    return serialize_xml(root)


def read_vml_visible_notes(data: bytes, part: str) -> Set[Tuple[int, int]]:
    """Cells whose comment box is shown permanently."""
    try:
        root = parse_xml(data, part)
    except FormatError:
        # VML written by older tools is often not well-formed XML
        logger.warning(f"[READ] {part}: unparseable VML, comment visibility defaults to hidden")
        return set()
    visible: Set[Tuple[int, int]] = set()
    for client in root.iter(_xl("ClientData")):
        if client.get("ObjectType") != "Note" or client.find(_xl("Visible")) is None:
            continue
        row = client.find(_xl("Row"))
        col = client.find(_xl("Column"))
        if row is not None and col is not None:
            visible.add((int(row.text) + 1, int(col.text) + 1))
    return visible
