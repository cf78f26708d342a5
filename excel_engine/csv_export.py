"""CSV export of one worksheet.

Values only: every cell is written as its formatted value (number formats
applied, no styles). Rows and columns run from A1 to the sheet's used
extent so empty leading cells keep their positions.
"""

from __future__ import annotations

import csv
import io
import logging
import os
from dataclasses import dataclass
from typing import BinaryIO, Optional, Union

from .config import get_settings
from .workbook import Workbook

logger = logging.getLogger(__name__)

# Short encoding names accepted in addition to Python codec names
ENCODING_ALIASES = {
    "utf8": "utf-8",
    "shift_jis": "shift_jis",
    "koi8u": "koi8_u",
    "koi8r": "koi8_r",
    "iso88598i": "iso8859_8",
    "gbk": "gbk",
}


@dataclass
class CsvWriterOptions:
    encoding: Optional[str] = None  # Defaults to settings.csv_encoding
    delimiter: str = ","
    do_trim: bool = False  # Strip surrounding whitespace from each value
    wrap_with_char: str = ""  # Quote every value with this character when set

    @property
    def codec(self) -> str:
        name = self.encoding or get_settings().csv_encoding
        return ENCODING_ALIASES.get(name.lower(), name)


def render_csv(workbook: Workbook, sheet_name: str, options: Optional[CsvWriterOptions] = None) -> str:
    options = options or CsvWriterOptions()
    if len(options.delimiter) != 1:
        raise ValueError(f"CSV delimiter must be a single character, got {options.delimiter!r}")
    sheet = workbook[sheet_name]

    buffer = io.StringIO()
    if options.wrap_with_char:
        writer = csv.writer(buffer, delimiter=options.delimiter, quotechar=options.wrap_with_char,
                            quoting=csv.QUOTE_ALL, lineterminator="\r\n")
    else:
        writer = csv.writer(buffer, delimiter=options.delimiter, lineterminator="\r\n")

    for row in range(1, sheet.max_row + 1):
        values = []
        for col in range(1, sheet.max_column + 1):
            text = sheet.get_formatted_value((row, col))
            values.append(text.strip() if options.do_trim else text)
        writer.writerow(values)
    return buffer.getvalue()


def write_csv(workbook: Workbook, sheet_name: str, target: Union[str, os.PathLike, BinaryIO],
              options: Optional[CsvWriterOptions] = None) -> None:
    """Export ``sheet_name`` to a CSV file path or binary buffer."""
    from .ooxml.writer import commit_bytes

    options = options or CsvWriterOptions()
    text = render_csv(workbook, sheet_name, options)
    try:
        data = text.encode(options.codec)
    except LookupError as e:
        raise ValueError(f"Unknown CSV encoding: {options.encoding}") from e
    commit_bytes(data, target)
    logger.info(f"[CSV] Exported sheet {sheet_name} ({len(data)} bytes, {options.codec})")
