"""styles.xml reader and writer.

Reading turns every cellXfs record into a resolved StyleSpec and interns it,
so the returned xf map translates file indices into registry indices
(duplicate records collapse). Unknown enumerated values are normalised and
reported as diagnostics rather than raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from lxml import etree

from ..exceptions import Diagnostic
from ..number_format import FIRST_CUSTOM_FORMAT_ID, builtin_format_id
from ..styles import (
    BORDER_STYLES,
    HORIZONTAL_ALIGNMENTS,
    NO_FILL,
    PATTERN_TYPES,
    UNDERLINE_STYLES,
    VERTICAL_ALIGNMENTS,
    Alignment,
    Border,
    Color,
    DifferentialStyle,
    Fill,
    Font,
    GradientFill,
    GradientStop,
    Protection,
    Side,
    StyleRegistry,
    StyleSpec,
    number_format_for_id,
)
from .namespaces import NS_MAIN, NS_MC, NS_X14AC
from .package import parse_xml, serialize_xml

logger = logging.getLogger(__name__)

PART = "xl/styles.xml"
BORDER_SIDE_TAGS = (("left", "left"), ("right", "right"), ("top", "top"), ("bottom", "bottom"), ("diagonal", "diagonal"))


def _m(local: str) -> str:
    return f"{{{NS_MAIN}}}{local}"


def _bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true")


def _val_flag(el: Optional[etree._Element]) -> bool:
    """<b/>, <b val="1"/> -> True; <b val="0"/> or missing -> False."""
    if el is None:
        return False
    return _bool(el.get("val"), True)


# =============================================================================
# READING
# =============================================================================

@dataclass
class StylesReadResult:
    registry: StyleRegistry
    xf_map: List[int]  # File xf index -> registry index
    dxfs: List[DifferentialStyle] = field(default_factory=list)
    custom_formats: Dict[int, str] = field(default_factory=dict)


class _Normalizer:
    """Collects diagnostics for unknown enumerated values."""

    def __init__(self, diagnostics: List[Diagnostic]):
        self.diagnostics = diagnostics

    def check(self, value: Optional[str], allowed, default: Optional[str], what: str) -> Optional[str]:
        if value is None or value in allowed:
            return value
        self.diagnostics.append(Diagnostic(
            part=PART,
            message=f"Unknown {what} {value!r} replaced with {default!r}",
            details={"value": value, "default": default},
        ))
        logger.warning(f"[READ] Unknown {what} {value!r} in styles, using {default!r}")
        return default


def read_color(el: Optional[etree._Element]) -> Optional[Color]:
    if el is None:
        return None
    tint = el.get("tint")
    theme = el.get("theme")
    indexed = el.get("indexed")
    rgb = el.get("rgb")
    return Color(
        rgb=rgb.upper() if rgb else None,
        theme=int(theme) if theme is not None else None,
        tint=float(tint) if tint is not None else None,
        indexed=int(indexed) if indexed is not None else None,
        auto=_bool(el.get("auto")),
    )


def read_font(el: etree._Element, norm: Optional[_Normalizer] = None, name_tag: str = "name") -> Font:
    """Parse <font> (or a rich-text <rPr>, whose name element is <rFont>)."""
    def child(tag: str) -> Optional[etree._Element]:
        return el.find(_m(tag))

    def val(tag: str) -> Optional[str]:
        found = child(tag)
        return found.get("val") if found is not None else None

    underline = None
    u = child("u")
    if u is not None:
        underline = u.get("val", "single")
        if norm is not None:
            underline = norm.check(underline, UNDERLINE_STYLES, "single", "underline style")
        if underline == "none":
            underline = None
    size = val("sz")
    family = val("family")
    charset = val("charset")
    return Font(
        name=val(name_tag),
        size=float(size) if size is not None else None,
        bold=_val_flag(child("b")),
        italic=_val_flag(child("i")),
        underline=underline,
        strike=_val_flag(child("strike")),
        color=read_color(child("color")),
        family=int(family) if family is not None else None,
        scheme=val("scheme"),
        vert_align=val("vertAlign"),
        charset=int(charset) if charset is not None else None,
    )


def _read_fill(el: etree._Element, norm: _Normalizer) -> Fill:
    gradient = el.find(_m("gradientFill"))
    if gradient is not None:
        def opt(name: str) -> Optional[float]:
            raw = gradient.get(name)
            return float(raw) if raw is not None else None
        stops = tuple(
            GradientStop(position=float(stop.get("position", "0")), color=read_color(stop.find(_m("color"))) or Color())
            for stop in gradient.findall(_m("stop"))
        )
        return Fill(gradient=GradientFill(
            gradient_type=gradient.get("type", "linear"),
            degree=float(gradient.get("degree", "0")),
            left=opt("left"), right=opt("right"), top=opt("top"), bottom=opt("bottom"),
            stops=stops,
        ))
    pattern = el.find(_m("patternFill"))
    if pattern is None:
        return NO_FILL
    pattern_type = norm.check(pattern.get("patternType", "none"), PATTERN_TYPES, "none", "pattern type")
    return Fill(
        pattern_type=pattern_type,
        fg_color=read_color(pattern.find(_m("fgColor"))),
        bg_color=read_color(pattern.find(_m("bgColor"))),
    )


def _read_border(el: etree._Element, norm: _Normalizer) -> Border:
    sides = {}
    for attr, tag in BORDER_SIDE_TAGS:
        side_el = el.find(_m(tag))
        if side_el is None and tag in ("left", "right"):
            side_el = el.find(_m("start" if tag == "left" else "end"))
        if side_el is None:
            sides[attr] = Side()
            continue
        style = norm.check(side_el.get("style"), BORDER_STYLES, None, "border style")
        if style == "none":
            style = None
        sides[attr] = Side(style=style, color=read_color(side_el.find(_m("color"))))
    return Border(
        diagonal_up=_bool(el.get("diagonalUp")),
        diagonal_down=_bool(el.get("diagonalDown")),
        **sides,
    )


def _read_alignment(el: Optional[etree._Element], norm: _Normalizer) -> Alignment:
    if el is None:
        return Alignment()
    horizontal = norm.check(el.get("horizontal"), HORIZONTAL_ALIGNMENTS, None, "horizontal alignment")
    if horizontal == "general":
        horizontal = None
    return Alignment(
        horizontal=horizontal,
        vertical=norm.check(el.get("vertical"), VERTICAL_ALIGNMENTS, None, "vertical alignment"),
        wrap_text=_bool(el.get("wrapText")),
        text_rotation=int(el.get("textRotation", "0")),
        indent=int(el.get("indent", "0")),
        shrink_to_fit=_bool(el.get("shrinkToFit")),
    )


def _read_protection(el: Optional[etree._Element]) -> Protection:
    if el is None:
        return Protection()
    return Protection(locked=_bool(el.get("locked"), True), hidden=_bool(el.get("hidden")))


def read_styles(data: Optional[bytes], diagnostics: List[Diagnostic],
                default_font: Optional[Font] = None) -> StylesReadResult:
    """Parse styles.xml into a fresh registry (a default registry when the part is absent)."""
    if data is None:
        registry = StyleRegistry(StyleSpec(font=default_font) if default_font else None)
        return StylesReadResult(registry=registry, xf_map=[0])

    root = parse_xml(data, PART)
    norm = _Normalizer(diagnostics)

    custom: Dict[int, str] = {}
    for el in root.findall(f"{_m('numFmts')}/{_m('numFmt')}"):
        custom[int(el.get("numFmtId"))] = el.get("formatCode", "General")

    fonts = [read_font(el, norm) for el in root.findall(f"{_m('fonts')}/{_m('font')}")]
    fills = [_read_fill(el, norm) for el in root.findall(f"{_m('fills')}/{_m('fill')}")]
    borders = [_read_border(el, norm) for el in root.findall(f"{_m('borders')}/{_m('border')}")]

    def pick(items: list, index: Optional[str], fallback, what: str):
        i = int(index or 0)
        if 0 <= i < len(items):
            return items[i]
        diagnostics.append(Diagnostic(part=PART, message=f"{what} index {i} out of range, using default"))
        return fallback

    specs: List[StyleSpec] = []
    for xf in root.findall(f"{_m('cellXfs')}/{_m('xf')}"):
        num_fmt_id = int(xf.get("numFmtId", "0"))
        code = number_format_for_id(num_fmt_id, custom)
        if code is None:
            diagnostics.append(Diagnostic(part=PART, message=f"Unknown numFmtId {num_fmt_id}, using General"))
            code = "General"
        specs.append(StyleSpec(
            font=pick(fonts, xf.get("fontId"), Font(), "Font"),
            fill=pick(fills, xf.get("fillId"), NO_FILL, "Fill"),
            border=pick(borders, xf.get("borderId"), Border(), "Border"),
            number_format=code,
            alignment=_read_alignment(xf.find(_m("alignment")), norm),
            protection=_read_protection(xf.find(_m("protection"))),
        ))

    registry = StyleRegistry(specs[0] if specs else None)
    xf_map = [registry.intern(spec) for spec in specs] or [0]

    dxfs: List[DifferentialStyle] = []
    for el in root.findall(f"{_m('dxfs')}/{_m('dxf')}"):
        font_el = el.find(_m("font"))
        fill_el = el.find(_m("fill"))
        border_el = el.find(_m("border"))
        num_el = el.find(_m("numFmt"))
        dxfs.append(DifferentialStyle(
            font=read_font(font_el, norm) if font_el is not None else None,
            fill=_read_fill(fill_el, norm) if fill_el is not None else None,
            border=_read_border(border_el, norm) if border_el is not None else None,
            number_format=num_el.get("formatCode") if num_el is not None else None,
        ))

    logger.info(f"[READ] styles: {len(specs)} xfs -> {len(registry)} distinct, {len(dxfs)} dxfs")
    return StylesReadResult(registry=registry, xf_map=xf_map, dxfs=dxfs, custom_formats=custom)


# =============================================================================
# WRITING
# =============================================================================

def write_color(parent: etree._Element, tag: str, color: Optional[Color]) -> None:
    if color is None:
        return
    el = etree.SubElement(parent, _m(tag))
    if color.auto:
        el.set("auto", "1")
    if color.indexed is not None:
        el.set("indexed", str(color.indexed))
    if color.rgb:
        el.set("rgb", color.rgb)
    if color.theme is not None:
        el.set("theme", str(color.theme))
    if color.tint is not None:
        el.set("tint", repr(color.tint))


def _number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def write_font(parent: etree._Element, font: Font, tag: str = "font", name_tag: str = "name") -> etree._Element:
    el = etree.SubElement(parent, _m(tag))
    if font.bold:
        etree.SubElement(el, _m("b"))
    if font.italic:
        etree.SubElement(el, _m("i"))
    if font.strike:
        etree.SubElement(el, _m("strike"))
    if font.underline:
        u = etree.SubElement(el, _m("u"))
        if font.underline != "single":
            u.set("val", font.underline)
    if font.vert_align:
        etree.SubElement(el, _m("vertAlign"), val=font.vert_align)
    if font.size is not None:
        etree.SubElement(el, _m("sz"), val=_number(font.size))
    write_color(el, "color", font.color)
    if font.name is not None:
        etree.SubElement(el, _m(name_tag), val=font.name)
    if font.family is not None:
        etree.SubElement(el, _m("family"), val=str(font.family))
    if font.charset is not None:
        etree.SubElement(el, _m("charset"), val=str(font.charset))
    if font.scheme is not None:
        etree.SubElement(el, _m("scheme"), val=font.scheme)
    return el


def _write_fill(parent: etree._Element, fill: Fill) -> None:
    el = etree.SubElement(parent, _m("fill"))
    if fill.gradient is not None:
        g = fill.gradient
        grad = etree.SubElement(el, _m("gradientFill"))
        if g.gradient_type != "linear":
            grad.set("type", g.gradient_type)
        if g.degree:
            grad.set("degree", _number(g.degree))
        for name in ("left", "right", "top", "bottom"):
            value = getattr(g, name)
            if value is not None:
                grad.set(name, _number(value))
        for stop in g.stops:
            stop_el = etree.SubElement(grad, _m("stop"), position=_number(stop.position))
            write_color(stop_el, "color", stop.color)
        return
    pattern = etree.SubElement(el, _m("patternFill"))
    if fill.pattern_type:
        pattern.set("patternType", fill.pattern_type)
    write_color(pattern, "fgColor", fill.fg_color)
    write_color(pattern, "bgColor", fill.bg_color)


def _write_border(parent: etree._Element, border: Border) -> None:
    el = etree.SubElement(parent, _m("border"))
    if border.diagonal_up:
        el.set("diagonalUp", "1")
    if border.diagonal_down:
        el.set("diagonalDown", "1")
    for attr, tag in BORDER_SIDE_TAGS:
        side: Side = getattr(border, attr)
        side_el = etree.SubElement(el, _m(tag))
        if side.style:
            side_el.set("style", side.style)
        write_color(side_el, "color", side.color)


def _write_alignment(parent: etree._Element, alignment: Alignment) -> None:
    el = etree.SubElement(parent, _m("alignment"))
    if alignment.horizontal:
        el.set("horizontal", alignment.horizontal)
    if alignment.vertical:
        el.set("vertical", alignment.vertical)
    if alignment.text_rotation:
        el.set("textRotation", str(alignment.text_rotation))
    if alignment.wrap_text:
        el.set("wrapText", "1")
    if alignment.indent:
        el.set("indent", str(alignment.indent))
    if alignment.shrink_to_fit:
        el.set("shrinkToFit", "1")


def write_styles(registry: StyleRegistry, dxfs: List[DifferentialStyle]) -> bytes:
    """Render styles.xml from a (compacted) registry and the dxf table."""
    tables = registry.build_tables()
    root = etree.Element(_m("styleSheet"), nsmap={None: NS_MAIN, "mc": NS_MC, "x14ac": NS_X14AC})
    root.set(f"{{{NS_MC}}}Ignorable", "x14ac")

    dxf_formats = {d.number_format for d in dxfs if d.number_format and builtin_format_id(d.number_format) is None}
    custom = dict(tables.num_fmts)
    next_id = max(custom, default=FIRST_CUSTOM_FORMAT_ID - 1) + 1
    dxf_format_ids: Dict[str, int] = {code: fid for fid, code in custom.items()}
    for code in sorted(dxf_formats - set(dxf_format_ids)):
        custom[next_id] = code
        dxf_format_ids[code] = next_id
        next_id += 1

    if custom:
        num_fmts = etree.SubElement(root, _m("numFmts"), count=str(len(custom)))
        for fid in sorted(custom):
            etree.SubElement(num_fmts, _m("numFmt"), numFmtId=str(fid), formatCode=custom[fid])

    fonts = etree.SubElement(root, _m("fonts"), count=str(len(tables.fonts)))
    for font in tables.fonts:
        write_font(fonts, font)

    fills = etree.SubElement(root, _m("fills"), count=str(len(tables.fills)))
    for fill in tables.fills:
        _write_fill(fills, fill)

    borders = etree.SubElement(root, _m("borders"), count=str(len(tables.borders)))
    for border in tables.borders:
        _write_border(borders, border)

    style_xfs = etree.SubElement(root, _m("cellStyleXfs"), count="1")
    etree.SubElement(style_xfs, _m("xf"), numFmtId="0", fontId="0", fillId="0", borderId="0")

    cell_xfs = etree.SubElement(root, _m("cellXfs"), count=str(len(tables.xfs)))
    for i, xf in enumerate(tables.xfs):
        el = etree.SubElement(cell_xfs, _m("xf"), numFmtId=str(xf.num_fmt_id), fontId=str(xf.font_id),
                              fillId=str(xf.fill_id), borderId=str(xf.border_id), xfId="0")
        if i:
            if xf.num_fmt_id:
                el.set("applyNumberFormat", "1")
            if xf.font_id:
                el.set("applyFont", "1")
            if xf.fill_id:
                el.set("applyFill", "1")
            if xf.border_id:
                el.set("applyBorder", "1")
        if not xf.alignment.is_default:
            el.set("applyAlignment", "1")
            _write_alignment(el, xf.alignment)
        if not xf.protection.is_default:
            el.set("applyProtection", "1")
            prot = etree.SubElement(el, _m("protection"))
            if not xf.protection.locked:
                prot.set("locked", "0")
            if xf.protection.hidden:
                prot.set("hidden", "1")

    cell_styles = etree.SubElement(root, _m("cellStyles"), count="1")
    etree.SubElement(cell_styles, _m("cellStyle"), name="Normal", xfId="0", builtinId="0")

    dxfs_el = etree.SubElement(root, _m("dxfs"), count=str(len(dxfs)))
    for dxf in dxfs:
        el = etree.SubElement(dxfs_el, _m("dxf"))
        if dxf.font is not None:
            write_font(el, dxf.font)
        if dxf.number_format is not None:
            fid = builtin_format_id(dxf.number_format)
            if fid is None:
                fid = dxf_format_ids[dxf.number_format]
            etree.SubElement(el, _m("numFmt"), numFmtId=str(fid), formatCode=dxf.number_format)
        if dxf.fill is not None:
            _write_fill(el, dxf.fill)
        if dxf.border is not None:
            _write_border(el, dxf.border)

    etree.SubElement(root, _m("tableStyles"), count="0",
                     defaultTableStyle="TableStyleMedium9", defaultPivotStyle="PivotStyleLight16")

    logger.debug(f"[WRITE] styles: {len(tables.xfs)} xfs, {len(tables.fonts)} fonts, "
                 f"{len(tables.fills)} fills, {len(tables.borders)} borders, {len(dxfs)} dxfs")
    return serialize_xml(root)
