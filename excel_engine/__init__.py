"""Excel Engine - in-memory spreadsheet documents with a round-trip .xlsx reader and writer.

This package handles:
1. Building workbooks in memory (sheets, cells, styles, strings, names, drawings, pivots)
2. Reading .xlsx packages, eagerly or lazily, including password-encrypted ones
3. Writing .xlsx packages deterministically, with optional Agile encryption
4. Exporting a sheet's formatted values to CSV
"""

from .cells import Cell, CellType
from .charts import Chart, ChartSeries
from .config import EngineSettings, get_settings, reload_settings
from .csv_export import CsvWriterOptions, render_csv, write_csv
from .drawing import AnchorMarker, Connector, DrawingAnchor, OleObject, Picture, Shape, TextBox
from .exceptions import (
    DanglingReferenceError,
    Diagnostic,
    EncryptionError,
    ExcelEngineError,
    FormatError,
    IoError,
    MergeConflictError,
    NameConflictError,
    UnsupportedFeatureError,
)
from .ooxml.parser import open_workbook
from .ooxml.writer import (
    FullWriter,
    LightWriter,
    WorkbookWriter,
    WriteOptions,
    write,
    write_bytes,
    write_light,
    write_with_compression,
    write_with_password,
)
from .references import CellRange
from .shared_strings import RichText, TextRun
from .styles import Alignment, Border, Color, DifferentialStyle, Fill, Font, Protection, Side, StyleSpec
from .workbook import DefinedName, Workbook, new, new_empty
from .worksheet import Worksheet

__all__ = [
    # Documents
    "Workbook",
    "Worksheet",
    "Cell",
    "CellType",
    "DefinedName",
    "new",
    "new_empty",
    # Read / write
    "open_workbook",
    "write",
    "write_bytes",
    "write_light",
    "write_with_password",
    "write_with_compression",
    "WriteOptions",
    "WorkbookWriter",
    "FullWriter",
    "LightWriter",
    "CsvWriterOptions",
    "render_csv",
    "write_csv",
    # Styles and text
    "StyleSpec",
    "Font",
    "Fill",
    "Border",
    "Side",
    "Alignment",
    "Protection",
    "Color",
    "DifferentialStyle",
    "RichText",
    "TextRun",
    "CellRange",
    # Drawing layer
    "DrawingAnchor",
    "AnchorMarker",
    "Shape",
    "TextBox",
    "Connector",
    "Picture",
    "Chart",
    "ChartSeries",
    "OleObject",
    # Errors
    "ExcelEngineError",
    "IoError",
    "FormatError",
    "DanglingReferenceError",
    "UnsupportedFeatureError",
    "EncryptionError",
    "MergeConflictError",
    "NameConflictError",
    "Diagnostic",
    # Configuration
    "EngineSettings",
    "get_settings",
    "reload_settings",
]
