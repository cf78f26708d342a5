"""Error taxonomy for the Excel engine.

Every error raised by the engine derives from ExcelEngineError and carries a
machine-readable ``kind`` so callers can branch without string matching:
- io: filesystem or ZIP container failures
- format: missing required parts, malformed XML, unresolvable relationships
- reference: dangling style, string, sheet or range references
- unsupported: valid constructs the engine does not model
- encryption: wrong password or unsupported cipher parameters
- merge_conflict: overlapping merges or writes into a merged area
- name_conflict: duplicate sheet, table or defined names

Recoverable problems found while reading are not raised; they are collected
as Diagnostic records on the workbook.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional


class ExcelEngineError(Exception):
    """Base class for all engine errors."""
    kind = "engine"

    def __init__(self, message: str, *, part: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.part = part  # Package part the error relates to, if any

    def __str__(self) -> str:
        if self.part:
            return f"{self.message} (part: {self.part})"
        return self.message


class IoError(ExcelEngineError):
    """Filesystem or ZIP container failure."""
    kind = "io"


class FormatError(ExcelEngineError):
    """The package is structurally invalid."""
    kind = "format"


class DanglingReferenceError(ExcelEngineError):
    """An index or name points at nothing."""
    kind = "reference"


class UnsupportedFeatureError(ExcelEngineError):
    """A valid construct the engine does not model or compute."""
    kind = "unsupported"


class EncryptionError(ExcelEngineError):
    """Bad password or unsupported encryption parameters."""
    kind = "encryption"


class MergeConflictError(ExcelEngineError):
    """Overlapping merge ranges or content outside a merge origin."""
    kind = "merge_conflict"


class NameConflictError(ExcelEngineError):
    """Duplicate sheet, table or defined name."""
    kind = "name_conflict"


@dataclass
class Diagnostic:
    """A recoverable inconsistency normalised while reading a package."""
    part: str  # e.g. "xl/styles.xml"
    message: str
    severity: str = "warning"  # "warning", "info"
    details: Optional[Dict] = None
