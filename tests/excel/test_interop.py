"""Interoperability tests against openpyxl.

Validates that:
- Packages written by the engine open in openpyxl with values, merges and fonts intact
- Packages written by openpyxl open in the engine
"""

import io
import sys
from pathlib import Path

# Add project root to path (tests/excel/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

openpyxl = pytest.importorskip("openpyxl")
from openpyxl.styles import Font as OpenpyxlFont

from excel_engine import Fill, Font, StyleSpec, new, open_workbook, write_bytes


class TestEngineToOpenpyxl:
    """Test engine output opened by openpyxl."""

    def test_values_merges_fonts(self):
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("A1", "Region")
        ws.set_cell_value("B1", "Total")
        ws.set_cell_value("A2", "North")
        ws.set_cell_value("B2", "1234.5")
        ws.set_cell_value("C2", True)
        ws.set_formula("B3", "SUM(B2:B2)", cached_value=1234.5)
        ws.set_style("A1:B1", StyleSpec(font=Font(bold=True), fill=Fill.solid("FFFF00")))
        ws.merge_cells("D1:E2")
        wb.add_sheet("Second").set_cell_value("A1", "x")

        other = openpyxl.load_workbook(io.BytesIO(write_bytes(wb)))

        assert other.sheetnames == ["Sheet1", "Second"]
        sheet = other["Sheet1"]
        assert sheet["A1"].value == "Region"
        assert sheet["B2"].value == 1234.5
        assert sheet["C2"].value is True
        assert sheet["B3"].value == "=SUM(B2:B2)"
        assert sheet["A1"].font.b is True
        assert sheet["A2"].font.b is not True
        assert [str(rng) for rng in sheet.merged_cells.ranges] == ["D1:E2"]

        print("\n✓ openpyxl read values, formula, bold font and merge")

    def test_defined_names_and_validation(self):
        wb = new()
        ws = wb["Sheet1"]
        ws.add_list_validation("A1:A5", ["Yes", "No"])
        wb.add_defined_name("Choices", "Sheet1!$A$1:$A$5")

        other = openpyxl.load_workbook(io.BytesIO(write_bytes(wb)))

        assert "Choices" in other.defined_names
        validations = other["Sheet1"].data_validations.dataValidation
        assert len(validations) == 1
        assert validations[0].type == "list"
        assert str(validations[0].sqref) == "A1:A5"

        print("\n✓ openpyxl read defined name and list validation")


class TestOpenpyxlToEngine:
    """Test openpyxl output opened by the engine."""

    def test_read_openpyxl_package(self):
        source = openpyxl.Workbook()
        sheet = source.active
        sheet.title = "Report"
        sheet["A1"] = "Label"
        sheet["B1"] = 42
        sheet["B2"] = 0.5
        sheet["B2"].number_format = "0%"
        sheet["A1"].font = OpenpyxlFont(bold=True)
        sheet.merge_cells("C1:D3")
        buffer = io.BytesIO()
        source.save(buffer)

        wb = open_workbook(buffer.getvalue())

        assert wb.get_sheet_names() == ["Report"]
        ws = wb["Report"]
        assert ws.get_value("A1") == "Label"
        assert ws.get_value("B1") == 42
        assert ws.get_formatted_value("B2") == "50%"
        assert ws.get_font_bold("A1") is True
        assert ws.get_merged_ranges() == ["C1:D3"]

        print("\n✓ Engine read openpyxl values, format, font and merge")

    def test_engine_rewrites_openpyxl_package(self):
        """An openpyxl package survives a read/write cycle through the engine."""
        source = openpyxl.Workbook()
        source.active["A1"] = "kept"
        buffer = io.BytesIO()
        source.save(buffer)

        rewritten = write_bytes(open_workbook(buffer.getvalue()))
        other = openpyxl.load_workbook(io.BytesIO(rewritten))

        assert other.active["A1"].value == "kept"

        print("\n✓ openpyxl package rewritten by the engine")
