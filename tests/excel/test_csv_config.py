"""Tests for CSV export and environment configuration."""

import io
import sys
from pathlib import Path

# Add project root to path (tests/excel/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

from excel_engine import CsvWriterOptions, DanglingReferenceError, WriteOptions, new, render_csv, reload_settings, write_csv

ENV_VARS = [
    "EXCEL_ENGINE_COMPRESSION_LEVEL",
    "EXCEL_ENGINE_WRITER_MODE",
    "EXCEL_ENGINE_LAZY_READ",
    "EXCEL_ENGINE_ENCRYPTION_ALGORITHM",
    "EXCEL_ENGINE_SPIN_COUNT",
    "EXCEL_ENGINE_DEFAULT_FONT_NAME",
    "EXCEL_ENGINE_DEFAULT_FONT_SIZE",
    "EXCEL_ENGINE_CSV_ENCODING",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear engine variables and restore the settings singleton afterwards."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield monkeypatch
    monkeypatch.undo()
    reload_settings()


def report_workbook():
    wb = new()
    ws = wb["Sheet1"]
    ws.set_cell_value("A1", "Item")
    ws.set_cell_value("B1", "Price")
    ws.set_cell_value("A2", "  Tea  ")
    ws.set_cell_value("B2", "1234.5")
    ws.set_number_format("B2", "#,##0.00")
    ws.set_cell_value("A3", "Milk")
    ws.set_cell_value("C3", "0.25")
    ws.set_number_format("C3", "0%")
    return wb


class TestCsvExport:
    """Test formatted-value CSV export."""

    def test_render_formatted_values(self):
        """Cells render with their number formats; empty cells stay in place."""
        text = render_csv(report_workbook(), "Sheet1")

        assert text == 'Item,Price,\r\n  Tea  ,"1,234.50",\r\nMilk,,25%\r\n'

        print("\n✓ CSV rendered with formatted values")

    def test_delimiter_and_trim(self):
        options = CsvWriterOptions(delimiter=";", do_trim=True)

        text = render_csv(report_workbook(), "Sheet1", options)

        assert text.splitlines()[1] == "Tea;1,234.50;"

        print("\n✓ Semicolon delimiter with trimmed values")

    def test_wrap_with_char(self):
        """Every value is quoted when a wrap character is set."""
        options = CsvWriterOptions(wrap_with_char="'")

        text = render_csv(report_workbook(), "Sheet1", options)

        assert text.splitlines()[0] == "'Item','Price',''"

        print("\n✓ Values wrapped with quote character")

    def test_invalid_delimiter(self):
        with pytest.raises(ValueError):
            render_csv(report_workbook(), "Sheet1", CsvWriterOptions(delimiter=";;"))

        print("\n✓ Multi-character delimiter rejected")

    def test_write_to_path(self, tmp_path):
        target = tmp_path / "report.csv"

        write_csv(report_workbook(), "Sheet1", target)

        assert target.read_bytes().startswith(b"Item,Price,\r\n")

        print(f"\n✓ CSV written to {target.name}")

    def test_encoding_alias(self):
        """Short encoding names map to Python codecs."""
        wb = new()
        wb["Sheet1"].set_cell_value("A1", "Привет")
        buffer = io.BytesIO()

        write_csv(wb, "Sheet1", buffer, CsvWriterOptions(encoding="koi8u"))

        assert buffer.getvalue() == "Привет\r\n".encode("koi8_u")

        print("\n✓ koi8u alias encoded through koi8_u")

    def test_unknown_encoding(self):
        with pytest.raises(ValueError):
            write_csv(report_workbook(), "Sheet1", io.BytesIO(), CsvWriterOptions(encoding="no-such-codec"))

        print("\n✓ Unknown encoding rejected")

    def test_missing_sheet(self):
        with pytest.raises(DanglingReferenceError):
            render_csv(report_workbook(), "Nope")

        print("\n✓ Missing sheet raised DanglingReferenceError")


class TestConfig:
    """Test settings loaded from environment variables."""

    def test_defaults(self, clean_env):
        settings = reload_settings()

        assert settings.compression_level == 6
        assert settings.writer_mode == "full"
        assert settings.lazy_read is False
        assert settings.encryption_algorithm == "default"
        assert settings.spin_count == 100000
        assert settings.default_font_name == "Calibri"
        assert settings.csv_encoding == "utf-8"

        print("\n✓ Default settings loaded")

    def test_env_overrides(self, clean_env):
        clean_env.setenv("EXCEL_ENGINE_COMPRESSION_LEVEL", "9")
        clean_env.setenv("EXCEL_ENGINE_WRITER_MODE", "light")
        clean_env.setenv("EXCEL_ENGINE_LAZY_READ", "true")
        clean_env.setenv("EXCEL_ENGINE_ENCRYPTION_ALGORITHM", "AES128")
        clean_env.setenv("EXCEL_ENGINE_SPIN_COUNT", "5000")
        clean_env.setenv("EXCEL_ENGINE_DEFAULT_FONT_NAME", "Arial")
        clean_env.setenv("EXCEL_ENGINE_DEFAULT_FONT_SIZE", "10")

        settings = reload_settings()

        assert settings.compression_level == 9
        assert settings.writer_mode == "light"
        assert settings.lazy_read is True
        assert settings.encryption_algorithm == "AES128"
        assert settings.spin_count == 5000
        assert new().styles.default.font.name == "Arial"
        assert new().styles.default.font.size == 10.0

        print("\n✓ Environment variables override defaults")

    def test_invalid_values_ignored(self, clean_env):
        """Out-of-range or unknown values keep the defaults."""
        clean_env.setenv("EXCEL_ENGINE_COMPRESSION_LEVEL", "12")
        clean_env.setenv("EXCEL_ENGINE_WRITER_MODE", "turbo")

        settings = reload_settings()

        assert settings.compression_level == 6
        assert settings.writer_mode == "full"

        print("\n✓ Invalid environment values ignored")

    def test_write_options_fall_back_to_settings(self, clean_env):
        clean_env.setenv("EXCEL_ENGINE_COMPRESSION_LEVEL", "0")
        reload_settings()

        options = WriteOptions().resolved()
        explicit = WriteOptions(compression_level=3).resolved()

        assert options.compression_level == 0
        assert explicit.compression_level == 3

        print("\n✓ Explicit write options win over settings")
