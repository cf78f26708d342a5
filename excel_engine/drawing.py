"""Drawing objects anchored to worksheet cells.

Shapes, text boxes, connectors and pictures all carry a DrawingAnchor and
are written into one drawing part per worksheet. Charts (see charts.py) use
the same anchors. OLE objects live beside the drawing layer in the sheet's
oleObjects element.
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .references import parse_cell_ref

EMU_PER_INCH = 914400
EMU_PER_PIXEL = 9525
EMU_PER_POINT = 12700

DEFAULT_COLUMN_WIDTH_PX = 64
DEFAULT_ROW_HEIGHT_PX = 20


def pixels_to_emu(pixels: float) -> int:
    return int(round(pixels * EMU_PER_PIXEL))


def emu_to_pixels(emu: int) -> float:
    return emu / EMU_PER_PIXEL


class AnchorMarker(BaseModel):
    """A cell corner plus an EMU offset. Row and column are zero-based."""
    col: int = 0
    col_offset: int = 0
    row: int = 0
    row_offset: int = 0

    @classmethod
    def from_cell(cls, ref: str, col_offset: int = 0, row_offset: int = 0) -> "AnchorMarker":
        _, col, row = parse_cell_ref(ref)
        return cls(col=col - 1, col_offset=col_offset, row=row - 1, row_offset=row_offset)

    @property
    def cell(self) -> str:
        from .references import coordinate
        return coordinate(self.row + 1, self.col + 1)


class DrawingAnchor(BaseModel):
    """Where a drawing object sits on the sheet."""
    anchor_type: Literal["twoCell", "oneCell", "absolute"] = "twoCell"
    from_marker: AnchorMarker = Field(default_factory=AnchorMarker)
    to_marker: Optional[AnchorMarker] = None  # twoCell only
    ext_cx: int = 0  # Extent in EMU (oneCell / absolute)
    ext_cy: int = 0
    pos_x: int = 0  # Absolute position in EMU
    pos_y: int = 0
    edit_as: Optional[Literal["twoCell", "oneCell", "absolute"]] = None

    @classmethod
    def two_cell(cls, from_cell: str, to_cell: str, edit_as: Optional[str] = None) -> "DrawingAnchor":
        return cls(
            anchor_type="twoCell",
            from_marker=AnchorMarker.from_cell(from_cell),
            to_marker=AnchorMarker.from_cell(to_cell),
            edit_as=edit_as,
        )

    @classmethod
    def one_cell(cls, from_cell: str, width_px: float, height_px: float) -> "DrawingAnchor":
        return cls(
            anchor_type="oneCell",
            from_marker=AnchorMarker.from_cell(from_cell),
            ext_cx=pixels_to_emu(width_px),
            ext_cy=pixels_to_emu(height_px),
        )

    @classmethod
    def absolute(cls, x_px: float, y_px: float, width_px: float, height_px: float) -> "DrawingAnchor":
        return cls(
            anchor_type="absolute",
            pos_x=pixels_to_emu(x_px),
            pos_y=pixels_to_emu(y_px),
            ext_cx=pixels_to_emu(width_px),
            ext_cy=pixels_to_emu(height_px),
        )

    def extent_emu(self) -> tuple:
        """Approximate (cx, cy) for anchors that only carry cell markers."""
        if self.anchor_type != "twoCell" or self.to_marker is None:
            return self.ext_cx, self.ext_cy
        cols = self.to_marker.col - self.from_marker.col
        rows = self.to_marker.row - self.from_marker.row
        cx = cols * pixels_to_emu(DEFAULT_COLUMN_WIDTH_PX) + self.to_marker.col_offset - self.from_marker.col_offset
        cy = rows * pixels_to_emu(DEFAULT_ROW_HEIGHT_PX) + self.to_marker.row_offset - self.from_marker.row_offset
        return max(cx, 0), max(cy, 0)


class Shape(BaseModel):
    """A preset-geometry shape with optional text."""
    kind: Literal["shape"] = "shape"
    anchor: DrawingAnchor
    name: str = "Shape"
    geometry: str = "rect"  # DrawingML preset: rect, ellipse, roundRect, triangle, ...
    text: Optional[str] = None
    fill_color: Optional[str] = None  # RRGGBB
    line_color: Optional[str] = None
    line_width_emu: Optional[int] = None
    shape_id: int = 0  # Assigned at write time when 0


class TextBox(BaseModel):
    kind: Literal["textBox"] = "textBox"
    anchor: DrawingAnchor
    name: str = "TextBox"
    text: str = ""
    fill_color: Optional[str] = None
    line_color: Optional[str] = None
    shape_id: int = 0


class Connector(BaseModel):
    """A line between two points, optionally glued to shapes."""
    kind: Literal["connector"] = "connector"
    anchor: DrawingAnchor
    name: str = "Connector"
    geometry: str = "straightConnector1"
    line_color: Optional[str] = None
    line_width_emu: Optional[int] = None
    start_shape_id: Optional[int] = None
    end_shape_id: Optional[int] = None
    shape_id: int = 0


class Picture(BaseModel):
    """An embedded raster image."""
    kind: Literal["picture"] = "picture"
    anchor: DrawingAnchor
    name: str = "Picture"
    data: bytes
    extension: str = "png"  # png, jpeg, gif, bmp, emf, wmf, tiff
    description: Optional[str] = None
    shape_id: int = 0


class PartLink(BaseModel):
    """A relationship kept from a read package; ``target`` is an absolute part name or external URI."""
    rel_id: str
    rel_type: str
    target: str
    external: bool = False


class RawAnchor(BaseModel):
    """A drawing anchor kept verbatim because it is not modelled (group shapes, ...)."""
    kind: Literal["raw"] = "raw"
    xml: bytes
    links: List[PartLink] = Field(default_factory=list)  # Drawing relationships it references


class OleObject(BaseModel):
    """An embedded OLE object with a preview image."""
    anchor: DrawingAnchor
    prog_id: str = "Package"
    data: bytes
    extension: str = "bin"  # bin, xlsx, docx, ...
    preview: Optional[bytes] = None  # PNG/EMF shown in the cell area
    preview_extension: str = "png"
    shape_id: int = 0


IMAGE_CONTENT_TYPES = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "tiff": "image/tiff",
    "emf": "image/x-emf",
    "wmf": "image/x-wmf",
}


def guess_image_extension(data: bytes) -> str:
    """Sniff the image format from its magic bytes."""
    if data.startswith(b"\x89PNG"):
        return "png"
    if data.startswith(b"\xff\xd8"):
        return "jpeg"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "gif"
    if data.startswith(b"BM"):
        return "bmp"
    if data[:4] in (b"II*\x00", b"MM\x00*"):
        return "tiff"
    if data[40:44] == b" EMF":
        return "emf"
    return "png"
