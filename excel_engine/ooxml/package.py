"""OPC package plumbing: content types, relationships and the part graph.

- ContentTypes: [Content_Types].xml defaults and overrides
- RelationshipSet: one .rels file, with stable id allocation
- PartGraph: the set of parts being written, their names and relationships
- parse_xml / serialize_xml: safe lxml parsing and canonical output
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from lxml import etree

from ..exceptions import FormatError
from .namespaces import (
    CT_RELATIONSHIPS,
    CT_XML,
    NS_CT,
    NS_PKG_REL,
    normalize_rel_type,
)

# Parts written through a callback (streamed) instead of from bytes
PartWriter = Callable[[object], None]
PartData = Union[bytes, PartWriter]

_RID_RE = re.compile(r"^rId(\d+)$")

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)


def parse_xml(data: bytes, part: Optional[str] = None) -> etree._Element:
    """Parse a part. Entities are never resolved; malformed XML raises FormatError."""
    try:
        return etree.fromstring(data, parser=_PARSER)
    except etree.XMLSyntaxError as e:
        raise FormatError(f"Malformed XML: {e}", part=part) from e


def serialize_xml(root: etree._Element) -> bytes:
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8", standalone=True)


# =============================================================================
# PART NAMES
# =============================================================================

def resolve_target(source_part: str, target: str) -> str:
    """Absolute part name (no leading slash) for a relationship target."""
    if target.startswith("/"):
        return posixpath.normpath(target.lstrip("/"))
    base = posixpath.dirname(source_part)
    return posixpath.normpath(posixpath.join(base, target))


def relative_target(source_part: str, target_part: str) -> str:
    base = posixpath.dirname(source_part) or "."
    return posixpath.relpath(target_part, base)


def rels_path_for(part: str) -> str:
    """xl/worksheets/sheet1.xml -> xl/worksheets/_rels/sheet1.xml.rels ("" -> _rels/.rels)."""
    directory, name = posixpath.split(part)
    return posixpath.join(directory, "_rels", f"{name}.rels")


# =============================================================================
# CONTENT TYPES
# =============================================================================

class ContentTypes:
    def __init__(self) -> None:
        self.defaults: Dict[str, str] = {}  # extension -> content type
        self.overrides: Dict[str, str] = {}  # part name (no leading slash) -> content type

    @classmethod
    def standard(cls) -> "ContentTypes":
        types = cls()
        types.defaults["rels"] = CT_RELATIONSHIPS
        types.defaults["xml"] = CT_XML
        return types

    @classmethod
    def from_xml(cls, data: bytes) -> "ContentTypes":
        root = parse_xml(data, "[Content_Types].xml")
        types = cls()
        for el in root.findall(f"{{{NS_CT}}}Default"):
            types.defaults[el.get("Extension", "").lower()] = el.get("ContentType", "")
        for el in root.findall(f"{{{NS_CT}}}Override"):
            types.overrides[el.get("PartName", "").lstrip("/")] = el.get("ContentType", "")
        return types

    def content_type_for(self, part: str) -> Optional[str]:
        if part in self.overrides:
            return self.overrides[part]
        ext = posixpath.splitext(part)[1].lstrip(".").lower()
        return self.defaults.get(ext)

    def register(self, part: str, content_type: Optional[str]) -> None:
        """Record a part's content type, as an override unless the extension default matches."""
        if not content_type:
            return
        ext = posixpath.splitext(part)[1].lstrip(".").lower()
        if self.defaults.get(ext) == content_type:
            return
        if ext and ext not in self.defaults and ext not in ("xml", "rels") and not content_type.endswith("+xml"):
            self.defaults[ext] = content_type
            return
        self.overrides[part] = content_type

    def to_xml(self) -> bytes:
        root = etree.Element(f"{{{NS_CT}}}Types", nsmap={None: NS_CT})
        for ext in sorted(self.defaults):
            etree.SubElement(root, f"{{{NS_CT}}}Default", Extension=ext, ContentType=self.defaults[ext])
        for part, content_type in self.overrides.items():
            etree.SubElement(root, f"{{{NS_CT}}}Override", PartName=f"/{part}", ContentType=content_type)
        return serialize_xml(root)


# =============================================================================
# RELATIONSHIPS
# =============================================================================

@dataclass
class Relationship:
    rel_id: str
    rel_type: str
    target: str  # As written in the .rels file
    target_mode: Optional[str] = None  # "External" for URLs

    @property
    def is_external(self) -> bool:
        return self.target_mode == "External"


class RelationshipSet:
    """Relationships of one source part ("" for the package root)."""

    def __init__(self, source_part: str = ""):
        self.source_part = source_part
        self._rels: Dict[str, Relationship] = {}
        self._reserved: set = set()

    @classmethod
    def from_xml(cls, source_part: str, data: bytes) -> "RelationshipSet":
        rels = cls(source_part)
        root = parse_xml(data, rels_path_for(source_part))
        for el in root.findall(f"{{{NS_PKG_REL}}}Relationship"):
            rel = Relationship(
                rel_id=el.get("Id", ""),
                rel_type=normalize_rel_type(el.get("Type", "")),
                target=el.get("Target", ""),
                target_mode=el.get("TargetMode"),
            )
            rels._rels[rel.rel_id] = rel
        return rels

    def __iter__(self) -> Iterator[Relationship]:
        return iter(self._rels.values())

    def __len__(self) -> int:
        return len(self._rels)

    def __contains__(self, rel_id: str) -> bool:
        return rel_id in self._rels

    def get(self, rel_id: str) -> Relationship:
        rel = self._rels.get(rel_id)
        if rel is None:
            raise FormatError(f"Unresolvable relationship id {rel_id!r}", part=rels_path_for(self.source_part))
        return rel

    def by_type(self, rel_type: str) -> List[Relationship]:
        return [r for r in self._rels.values() if r.rel_type == rel_type]

    def resolve(self, rel: Relationship) -> str:
        return rel.target if rel.is_external else resolve_target(self.source_part, rel.target)

    def target_part(self, rel_id: str) -> str:
        return self.resolve(self.get(rel_id))

    def reserve(self, rel_ids: Iterable[str]) -> None:
        """Keep ids used by preserved XML away from newly allocated ones."""
        self._reserved.update(rel_ids)

    def _next_id(self) -> str:
        taken = set(self._rels) | self._reserved
        n = len(self._rels) + 1
        while f"rId{n}" in taken:
            n += 1
        return f"rId{n}"

    def add(self, rel_type: str, target: str, target_mode: Optional[str] = None,
            rel_id: Optional[str] = None) -> str:
        if rel_id is None:
            rel_id = self._next_id()
        elif rel_id in self._rels:
            raise FormatError(f"Duplicate relationship id {rel_id!r}", part=rels_path_for(self.source_part))
        self._rels[rel_id] = Relationship(rel_id, rel_type, target, target_mode)
        return rel_id

    def to_xml(self) -> bytes:
        root = etree.Element(f"{{{NS_PKG_REL}}}Relationships", nsmap={None: NS_PKG_REL})
        for rel in self._rels.values():
            el = etree.SubElement(root, f"{{{NS_PKG_REL}}}Relationship", Id=rel.rel_id, Type=rel.rel_type,
                                  Target=rel.target)
            if rel.target_mode:
                el.set("TargetMode", rel.target_mode)
        return serialize_xml(root)


# =============================================================================
# PART GRAPH (write side)
# =============================================================================

class PartGraph:
    """Parts to be written, with stable names and the relationships between them."""

    def __init__(self, reserved_names: Iterable[str] = ()):
        self.content_types = ContentTypes.standard()
        self._parts: Dict[str, PartData] = {}
        self._rels: Dict[str, RelationshipSet] = {}
        self._reserved = set(reserved_names)

    def allocate(self, template: str) -> str:
        """Next free name for a numbered part, e.g. "xl/worksheets/sheet{}.xml"."""
        n = 1
        while template.format(n) in self._parts or template.format(n) in self._reserved:
            n += 1
        name = template.format(n)
        self._reserved.add(name)
        return name

    def add_part(self, name: str, data: PartData, content_type: Optional[str] = None) -> str:
        self._parts[name] = data
        self._reserved.add(name)
        self.content_types.register(name, content_type)
        return name

    def has_part(self, name: str) -> bool:
        return name in self._parts

    def rels_for(self, source_part: str) -> RelationshipSet:
        if source_part not in self._rels:
            self._rels[source_part] = RelationshipSet(source_part)
        return self._rels[source_part]

    def relate(self, source_part: str, rel_type: str, target_part: str, rel_id: Optional[str] = None) -> str:
        target = f"/{target_part}" if source_part == "" else relative_target(source_part, target_part)
        return self.rels_for(source_part).add(rel_type, target, rel_id=rel_id)

    def relate_external(self, source_part: str, rel_type: str, uri: str, rel_id: Optional[str] = None) -> str:
        return self.rels_for(source_part).add(rel_type, uri, target_mode="External", rel_id=rel_id)

    @property
    def part_names(self) -> List[str]:
        return list(self._parts)

    def entries(self) -> List[Tuple[str, PartData]]:
        """Zip entries in write order: content types, root rels, then each part followed by its rels."""
        ordered: List[Tuple[str, PartData]] = [("[Content_Types].xml", self.content_types.to_xml())]
        if "" in self._rels:
            ordered.append((rels_path_for(""), self._rels[""].to_xml()))
        for name, data in self._parts.items():
            ordered.append((name, data))
            rels = self._rels.get(name)
            if rels is not None and len(rels):
                ordered.append((rels_path_for(name), rels.to_xml()))
        return ordered
