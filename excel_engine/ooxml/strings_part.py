"""sharedStrings.xml reader and writer, plus the rich-text (CT_Rst) helpers
shared with inline strings and comments."""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Tuple

from lxml import etree

from ..shared_strings import RichText, SharedStringTable, StringEntry, TextRun
from .namespaces import NS_MAIN
from .package import parse_xml, serialize_xml
from .styles_part import read_font, write_font

logger = logging.getLogger(__name__)

PART = "xl/sharedStrings.xml"
XML_SPACE = "{http://www.w3.org/XML/1998/namespace}space"

_ESCAPED_RE = re.compile(r"_x([0-9A-Fa-f]{4})_")
_NEEDS_ESCAPE_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]|_x[0-9A-Fa-f]{4}_")


def _m(local: str) -> str:
    return f"{{{NS_MAIN}}}{local}"


def unescape_text(text: str) -> str:
    """Decode OOXML _xHHHH_ escapes."""
    if "_x" not in text:
        return text
    return _ESCAPED_RE.sub(lambda m: chr(int(m.group(1), 16)), text)


def escape_text(text: str) -> str:
    """Encode characters XML 1.0 cannot carry (and literal escape lookalikes) as _xHHHH_."""
    def encode(match: "re.Match") -> str:
        found = match.group(0)
        if len(found) == 1:
            return f"_x{ord(found):04X}_"
        return "_x005F_" + found[1:]
    return _NEEDS_ESCAPE_RE.sub(encode, text)


def _set_text(el: etree._Element, text: str) -> None:
    el.text = escape_text(text)
    if text != text.strip() or "\n" in text:
        el.set(XML_SPACE, "preserve")


def read_rich(el: etree._Element) -> StringEntry:
    """Parse an <si>, <is> or comment <text> element."""
    runs = el.findall(_m("r"))
    if not runs:
        t = el.find(_m("t"))
        return unescape_text(t.text or "") if t is not None else ""
    parsed: List[TextRun] = []
    for run in runs:
        t = run.find(_m("t"))
        props = run.find(_m("rPr"))
        parsed.append(TextRun(
            text=unescape_text(t.text or "") if t is not None else "",
            font=read_font(props, name_tag="rFont") if props is not None else None,
        ))
    return RichText(runs=tuple(parsed))


def write_rich(parent: etree._Element, entry: StringEntry) -> None:
    """Fill ``parent`` with a <t> or a run list."""
    if isinstance(entry, RichText):
        for run in entry.runs:
            r = etree.SubElement(parent, _m("r"))
            if run.font is not None:
                write_font(r, run.font, tag="rPr", name_tag="rFont")
            _set_text(etree.SubElement(r, _m("t")), run.text)
    else:
        _set_text(etree.SubElement(parent, _m("t")), entry)


def read_shared_strings(data: Optional[bytes]) -> Tuple[SharedStringTable, List[int]]:
    """Build the table and the file index -> table index map.

    Duplicate entries in the file collapse to one table entry; the map lets
    cell indices from the file be translated while worksheets are parsed.
    """
    table = SharedStringTable()
    if data is None:
        return table, []
    root = parse_xml(data, PART)
    index_map = [table.intern(read_rich(si)) for si in root.findall(_m("si"))]
    logger.info(f"[READ] sharedStrings: {len(index_map)} entries, {len(table)} distinct")
    return table, index_map


def write_shared_strings(table: SharedStringTable, reference_count: int) -> bytes:
    root = etree.Element(_m("sst"), nsmap={None: NS_MAIN})
    root.set("count", str(reference_count))
    root.set("uniqueCount", str(len(table)))
    for entry in table:
        write_rich(etree.SubElement(root, _m("si")), entry)
    return serialize_xml(root)
