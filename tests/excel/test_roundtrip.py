"""Round-trip tests for the XLSX reader and writers.

Validates that a workbook written by the engine reads back with:
- Values, styles, merges and defined names
- Conditional formatting and data validation
- Comments, hyperlinks, tables
- Images, charts, shapes and OLE objects
- Pivot tables
- Unknown parts preserved byte for byte
"""

import io
import re
import struct
import sys
import zipfile
import zlib
from pathlib import Path

# Add project root to path (tests/excel/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

from excel_engine import (
    ChartSeries,
    FormatError,
    IoError,
    NameConflictError,
    StyleSpec,
    Font,
    Fill,
    WriteOptions,
    new,
    new_empty,
    open_workbook,
    write,
    write_bytes,
    write_light,
    write_with_compression,
)


def make_png(width: int = 4, height: int = 3) -> bytes:
    """A valid RGB PNG of the given size."""
    def chunk(tag: bytes, body: bytes) -> bytes:
        return struct.pack(">I", len(body)) + tag + body + struct.pack(">I", zlib.crc32(tag + body) & 0xFFFFFFFF)

    raw = b"".join(b"\x00" + b"\xff\x00\x00" * width for _ in range(height))
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0))
        + chunk(b"IDAT", zlib.compress(raw))
        + chunk(b"IEND", b"")
    )


def snapshot(wb) -> dict:
    """Everything a reader can observe about cells, styles and structure."""
    sheets = {}
    for ws in wb.worksheets:
        sheets[ws.title] = {
            "cells": [
                (c.coordinate, ws.get_raw_value(c.coordinate), c.formula, ws.get_style(c.coordinate))
                for c in ws.iter_cells()
            ],
            "merges": ws.get_merged_ranges(),
            "cf": [(r.sqref, r.priority, r.payload, r.dxf) for r in ws.get_conditional_formatting_rules()],
            "dv": [(d.sqref, d.validation_type, d.formula1) for d in ws.get_data_validations()],
        }
    names = sorted((d.name, d.refers_to, d.local_sheet_id) for d in wb.get_defined_names())
    return {"sheets": sheets, "names": names}


def patch_package(package: bytes, changes=None, additions=None) -> bytes:
    """Rewrite entries of a package; ``changes`` maps names to bytes -> bytes functions."""
    changes = changes or {}
    buffer = io.BytesIO()
    with zipfile.ZipFile(io.BytesIO(package)) as src, zipfile.ZipFile(buffer, "w") as dst:
        for info in src.infolist():
            data = src.read(info.filename)
            if info.filename in changes:
                data = changes[info.filename](data)
            dst.writestr(info, data)
        for name, data in (additions or {}).items():
            dst.writestr(name, data)
    return buffer.getvalue()


def sample_workbook():
    wb = new()
    ws = wb["Sheet1"]
    ws.set_cell_value("A1", "Name")
    ws.set_cell_value("B1", "Amount")
    ws.set_cell_value("A2", "Widget")
    ws.set_cell_value("B2", "1234.5678")
    ws.set_cell_value("A3", "Gadget")
    ws.set_cell_value("B3", 99)
    ws.set_formula("B4", "SUM(B2:B3)", cached_value=1333.5678)
    ws.set_number_format("B2:B4", "#,##0.00")
    ws.set_style("A1:B1", StyleSpec(font=Font(bold=True), fill=Fill.solid("DDEBF7")))
    ws.merge_cells("D1:F2")
    ws.set_cell_value("D1", "Merged")
    ws.add_cell_value_rule("B2:B3", "greaterThan", "100", fill_color="FFC7CE")
    ws.add_color_scale("B2:B3")
    ws.add_list_validation("C2:C3", ["Yes", "No"])
    wb.add_defined_name("Amounts", "Sheet1!$B$2:$B$3")
    data = wb.add_sheet("Data")
    data.set_cell_value("A1", "Other")
    return wb


class TestRoundTrip:
    """Test writing and reading back the same workbook."""

    def test_values_styles_merges_names(self):
        """The model survives a write/read cycle."""
        wb = sample_workbook()
        expected = snapshot(wb)

        restored = open_workbook(write_bytes(wb))

        assert restored.get_sheet_names() == ["Sheet1", "Data"]
        assert snapshot(restored) == expected
        ws = restored["Sheet1"]
        assert ws.get_formatted_value("B2") == "1,234.57"
        assert ws.get_raw_value("B2") == "1234.5678"
        assert ws.get_font_bold("A1") is True
        assert ws.get_formula("B4") == "SUM(B2:B3)"

        print(f"\n✓ Round-tripped {sum(len(s['cells']) for s in expected['sheets'].values())} cells")

    def test_compression_levels_give_identical_models(self):
        """Level 0 and level 9 packages differ in size but not in content."""
        stored = write_bytes(sample_workbook(), WriteOptions(compression_level=0))
        deflated = write_bytes(sample_workbook(), WriteOptions(compression_level=9))

        assert len(stored) > len(deflated)
        assert snapshot(open_workbook(stored)) == snapshot(open_workbook(deflated))
        with zipfile.ZipFile(io.BytesIO(stored)) as zf:
            assert all(i.compress_type == zipfile.ZIP_STORED for i in zf.infolist())

        print(f"\n✓ Level 0: {len(stored)} bytes, level 9: {len(deflated)} bytes, same model")

    def test_level_applies_to_sheet_parts(self):
        """The requested level reaches the streamed worksheet entries."""
        wb = new()
        ws = wb["Sheet1"]
        for row in range(1, 2001):
            ws.set_cell_value((row, 1), f"Item {row % 37}")
            ws.set_cell_value((row, 2), row * 3)

        fast = write_bytes(wb, WriteOptions(compression_level=1))
        best = write_bytes(wb, WriteOptions(compression_level=9))

        sizes = []
        for package in (fast, best):
            with zipfile.ZipFile(io.BytesIO(package)) as zf:
                info = zf.getinfo("xl/worksheets/sheet1.xml")
                assert info.compress_type == zipfile.ZIP_DEFLATED
                sizes.append(info.compress_size)
        assert sizes[1] < sizes[0]

        print(f"\n✓ Sheet part: level 1 {sizes[0]} bytes, level 9 {sizes[1]} bytes")

    def test_output_is_deterministic(self):
        """Writing the same workbook twice gives the same bytes."""
        wb = sample_workbook()
        assert write_bytes(wb) == write_bytes(wb)

        with zipfile.ZipFile(io.BytesIO(write_bytes(wb))) as zf:
            names = zf.namelist()
            assert names[0] == "[Content_Types].xml"
            assert names[1] == "_rels/.rels"
            assert all(i.date_time == (1980, 1, 1, 0, 0, 0) for i in zf.infolist())

        print(f"\n✓ Deterministic package with {len(names)} entries")

    def test_shared_strings_deduplicated_on_disk(self):
        """Repeated text is written once to the shared string table."""
        wb = new()
        ws = wb["Sheet1"]
        for row in range(1, 10001):
            ws.set_cell_value((row, 1), "repeat" if row % 2 else "again")

        package = write_bytes(wb)
        with zipfile.ZipFile(io.BytesIO(package)) as zf:
            sst = zf.read("xl/sharedStrings.xml").decode("utf-8")
        assert 'uniqueCount="2"' in sst
        assert 'count="10000"' in sst

        restored = open_workbook(package)
        assert len(restored.shared_strings) == 2
        assert restored["Sheet1"].get_value("A10000") == "again"

        print("\n✓ 10000 cells written with 2 shared strings")

    def test_drawings_comments_tables(self):
        """Drawing objects, comments, hyperlinks and tables survive."""
        png = make_png()
        wb = sample_workbook()
        ws = wb["Sheet1"]
        ws.add_comment("A2", "Check this", author="Reviewer")
        ws.add_hyperlink("A3", "https://example.com", tooltip="Example")
        ws.add_hyperlink("A1", "Data!A1", internal=True)
        ws.add_table("Sales", "A1:B3")
        ws.add_image("H2", png)
        ws.add_chart("bar", "H10", "N20", [ChartSeries(values="Sheet1!$B$2:$B$3", title="Amount")],
                     title="Amounts")
        ws.add_shape("P2", "R6", geometry="ellipse", text="Note")
        ws.add_ole_object("P10", "R14", b"payload-bytes", prog_id="Package", extension="bin", preview=png)

        restored = open_workbook(write_bytes(wb))
        rs = restored["Sheet1"]

        comment = rs.get_comment("A2")
        assert comment.text == "Check this"
        assert comment.author == "Reviewer"
        assert rs.get_hyperlink("A3").target == "https://example.com"
        assert rs.get_hyperlink("A1").location == "Data!A1"
        assert [t.name for t in rs.get_tables()] == ["Sales"]
        assert rs.get_table("Sales").ref == "A1:B3"
        assert rs.get_images()[0].data == png
        chart = rs.get_charts()[0]
        assert chart.chart_type == "bar"
        assert chart.series[0].values == "Sheet1!$B$2:$B$3"
        assert len(rs.get_drawings()) == 3
        ole = rs.get_ole_objects()[0]
        assert ole.data == b"payload-bytes"
        assert ole.preview == png

        print(f"\n✓ Round-tripped {len(rs.get_drawings())} drawings, 1 OLE object, 1 table")

    def test_pivot_table(self):
        """Pivot definitions are written with a refresh-on-load cache."""
        wb = sample_workbook()
        wb.add_pivot_table("Data", "Pivot1", "Sheet1", "A1:B3", "C3",
                           row_fields=["Name"], data_fields=[("Amount", "sum")])

        package = write_bytes(wb)
        with zipfile.ZipFile(io.BytesIO(package)) as zf:
            cache = zf.read("xl/pivotCache/pivotCacheDefinition1.xml").decode("utf-8")
        assert 'refreshOnLoad="1"' in cache

        restored = open_workbook(package)
        info = restored.get_pivot_table_info("Data", "Pivot1")
        assert info["row_fields"] == ["Name"]
        assert info["source_range"] == "A1:B3"

        print("\n✓ Pivot table round-tripped")

    def test_protection_and_view(self):
        """Sheet protection, frozen panes and workbook protection survive."""
        wb = sample_workbook()
        ws = wb["Sheet1"]
        ws.protect("secret", format_cells=False)
        ws.freeze_panes("B2")
        wb.set_workbook_protection(lock_structure=True)

        restored = open_workbook(write_bytes(wb))
        rs = restored["Sheet1"]
        assert rs.is_protected()
        assert rs.protection.format_cells is False
        assert rs.get_freeze_panes() == "B2"
        assert restored.is_workbook_protected()

        print("\n✓ Protection and frozen panes round-tripped")


class TestPreservation:
    """Test that content outside the model is carried through."""

    def test_unknown_part_preserved(self):
        """A part the model does not know is written back unchanged."""
        package = write_bytes(sample_workbook())
        custom = b'<?xml version="1.0"?><root xmlns="urn:example"><item>42</item></root>'

        buffer = io.BytesIO()
        with zipfile.ZipFile(io.BytesIO(package)) as src, zipfile.ZipFile(buffer, "w") as dst:
            for info in src.infolist():
                dst.writestr(info, src.read(info.filename))
            dst.writestr("customXml/item1.xml", custom)

        wb = open_workbook(buffer.getvalue())
        assert "customXml/item1.xml" in wb.preserved_parts

        with zipfile.ZipFile(io.BytesIO(write_bytes(wb))) as zf:
            assert zf.read("customXml/item1.xml") == custom

        print("\n✓ Unknown part preserved byte for byte")

    def test_light_writer_drops_opaque_content(self):
        """The light writer keeps cells and formatting only."""
        wb = sample_workbook()
        ws = wb["Sheet1"]
        ws.add_comment("A2", "dropped")
        ws.add_image("H2", make_png())

        buffer = io.BytesIO()
        write_light(wb, buffer)
        restored = open_workbook(buffer.getvalue())
        rs = restored["Sheet1"]

        assert rs.get_value("A2") == "Widget"
        assert rs.get_merged_ranges() == ["D1:F2"]
        assert rs.get_images() == []
        assert rs.get_comment("A2") is None
        with zipfile.ZipFile(io.BytesIO(buffer.getvalue())) as zf:
            assert not any(n.startswith("xl/media/") for n in zf.namelist())

        print("\n✓ Light writer output has values but no drawings")

    def test_lazy_read(self):
        """Lazy sheets load on first access."""
        wb = open_workbook(write_bytes(sample_workbook()), lazy=True)

        assert wb.get_sheet_names() == ["Sheet1", "Data"]
        assert all(not s.is_loaded for s in wb._sheets)
        assert wb["Data"].get_value("A1") == "Other"
        assert wb._sheets[1].is_loaded
        assert not wb._sheets[0].is_loaded

        restored = open_workbook(write_bytes(wb))
        assert restored["Sheet1"].get_value("A2") == "Widget"

        print("\n✓ Sheets loaded on demand")


    def test_lazy_read_keeps_sheet_parts_out_of_preserved(self):
        """Parts owned by a sheet are parsed on load, not carried as opaque copies."""
        wb = sample_workbook()
        wb["Sheet1"].add_image("H2", make_png())

        lazy = open_workbook(write_bytes(wb), lazy=True)

        assert not any(name.startswith(("xl/worksheets/", "xl/drawings/", "xl/media/"))
                       for name in lazy.preserved_parts)

        output = write_bytes(lazy)
        with zipfile.ZipFile(io.BytesIO(output)) as zf:
            media = [n for n in zf.namelist() if n.startswith("xl/media/")]
        assert len(media) == 1
        assert len(open_workbook(output)["Sheet1"].get_images()) == 1

        print("\n✓ Lazy read left sheet parts to the sheet loader")

    def test_filter_criteria_preserved(self):
        """filterColumn children of autoFilter survive a read/write cycle."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("A1", "Region")
        ws.set_cell_value("B1", "Total")
        ws.set_auto_filter("A1:B3")
        criteria = (b'<autoFilter ref="A1:B3"><filterColumn colId="0"><filters>'
                    b'<filter val="North"/></filters></filterColumn></autoFilter>')
        package = patch_package(write_bytes(wb), {
            "xl/worksheets/sheet1.xml": lambda data: re.sub(rb'<autoFilter[^>]*/>', criteria, data),
        })

        restored = open_workbook(package)
        assert len(restored["Sheet1"].auto_filter_criteria) == 1
        assert not [d for d in restored.diagnostics if "Filter" in d.message]

        with zipfile.ZipFile(io.BytesIO(write_bytes(restored))) as zf:
            sheet_xml = zf.read("xl/worksheets/sheet1.xml")
        assert b'colId="0"' in sheet_xml
        assert b'<filter val="North"/>' in sheet_xml

        restored["Sheet1"].set_auto_filter("A1:C3")
        assert restored["Sheet1"].auto_filter_criteria == []

        print("\n✓ Filter criteria written back with the auto filter")

    def test_chartsheet_kept_in_place(self):
        """A chartsheet tab is written back at its position with its part unchanged."""
        wb = sample_workbook()
        wb.add_defined_name("Local", "Data!$A$1", sheet="Data")
        wb.set_active_tab(1)
        chartsheet = (b'<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
                      b'<chartsheet xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main">'
                      b'<sheetViews><sheetView workbookViewId="0"/></sheetViews></chartsheet>')
        rel = (b'<Relationship Id="rId90" Type="http://schemas.openxmlformats.org/officeDocument/2006/'
               b'relationships/chartsheet" Target="chartsheets/sheet1.xml"/></Relationships>')
        override = (b'<Override PartName="/xl/chartsheets/sheet1.xml" ContentType="application/'
                    b'vnd.openxmlformats-officedocument.spreadsheetml.chartsheet+xml"/></Types>')

        def add_tab(data: bytes) -> bytes:
            data = re.sub(rb'(<sheet name="Sheet1"[^>]*/>)', rb'\1<sheet name="Chart1" sheetId="9" r:id="rId90"/>', data)
            data = data.replace(b'localSheetId="1"', b'localSheetId="2"')
            return re.sub(rb'activeTab="1"', b'activeTab="2"', data)

        package = patch_package(write_bytes(wb), {
            "xl/workbook.xml": add_tab,
            "xl/_rels/workbook.xml.rels": lambda data: data.replace(b"</Relationships>", rel),
            "[Content_Types].xml": lambda data: data.replace(b"</Types>", override),
        }, {"xl/chartsheets/sheet1.xml": chartsheet})

        restored = open_workbook(package)
        assert restored.get_sheet_names() == ["Sheet1", "Data"]
        assert [o.name for o in restored.opaque_sheets] == ["Chart1"]
        assert restored.get_defined_name("Local", sheet="Data").refers_to == "Data!$A$1"
        assert restored.active.title == "Data"
        with pytest.raises(NameConflictError):
            restored.add_sheet("chart1")

        with zipfile.ZipFile(io.BytesIO(write_bytes(restored))) as zf:
            workbook_xml = zf.read("xl/workbook.xml")
            assert zf.read("xl/chartsheets/sheet1.xml") == chartsheet
            assert b"chartsheet+xml" in zf.read("[Content_Types].xml")
        assert re.findall(rb'<sheet name="([^"]+)"', workbook_xml) == [b"Sheet1", b"Chart1", b"Data"]
        assert b'localSheetId="2"' in workbook_xml
        assert b'activeTab="2"' in workbook_xml

        print("\n✓ Chartsheet written back between Sheet1 and Data")


class TestSheetSettings:
    """Test views, page setup, filters and document properties."""

    def test_view_and_page_setup(self):
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("A1", "Header")
        ws.set_auto_filter("A1:B3")
        ws.set_zoom(150)
        ws.set_show_gridlines(False)
        ws.set_tab_color("FF0000")
        ws.set_page_orientation("landscape")
        ws.set_page_margins(left=0.5, right=0.5)
        ws.set_header("&CQuarterly report")
        ws.set_print_centered(horizontal=True)
        ws.set_print_area("A1:B4")
        ws.add_row_break(10)

        restored = open_workbook(write_bytes(wb))["Sheet1"]

        assert restored.get_auto_filter() == "A1:B3"
        assert restored.view.zoom_scale == 150
        assert restored.view.show_gridlines is False
        assert restored.tab_color == ws.tab_color
        assert restored.page_setup.orientation == "landscape"
        assert restored.page_margins.left == 0.5
        assert restored.header_footer.odd_header == "&CQuarterly report"
        assert restored.print_options.horizontal_centered is True
        assert restored.get_print_area() == "Sheet1!$A$1:$B$4"
        assert restored.row_breaks == [10]

        print("\n✓ Views, page setup, print area and auto filter round-tripped")

    def test_document_properties(self):
        wb = new()
        props = wb.properties
        props.title = "Budget"
        props.creator = "Finance"
        props.company = "Example Ltd"
        props.set_custom("Version", 3)
        props.set_custom("Reviewed", True)
        props.set_custom("Ratio", 0.5)
        props.set_custom("Owner", "ops")

        restored = open_workbook(write_bytes(wb)).properties

        assert restored.title == "Budget"
        assert restored.creator == "Finance"
        assert restored.company == "Example Ltd"
        assert restored.get_custom("Version") == 3
        assert restored.get_custom("Reviewed") is True
        assert restored.get_custom("Ratio") == 0.5
        assert restored.get_custom("Owner") == "ops"

        print("\n✓ Core, extended and custom properties round-tripped")


class TestFailures:
    """Test error reporting and atomic writes."""

    def test_zero_sheets_rejected(self):
        with pytest.raises(FormatError):
            write_bytes(new_empty())

    def test_corrupt_zip(self):
        with pytest.raises(IoError):
            open_workbook(b"definitely not a zip file")

    def test_missing_workbook_part(self):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr("[Content_Types].xml",
                        '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types"/>')
        with pytest.raises(FormatError):
            open_workbook(buffer.getvalue())

    def test_missing_file(self, tmp_path):
        with pytest.raises(IoError):
            open_workbook(tmp_path / "missing.xlsx")

    def test_failed_write_leaves_destination(self, tmp_path):
        """A failed write never touches an existing file."""
        target = tmp_path / "book.xlsx"
        target.write_bytes(b"original")

        with pytest.raises(FormatError):
            write(new_empty(), target)

        assert target.read_bytes() == b"original"
        assert [p.name for p in tmp_path.iterdir()] == ["book.xlsx"]

        print("\n✓ Destination untouched after a failed write")

    def test_unwritable_directory(self, tmp_path):
        with pytest.raises(IoError):
            write(sample_workbook(), tmp_path / "missing" / "book.xlsx")

    def test_atomic_replace(self, tmp_path):
        """A successful write replaces the file and leaves no temp files."""
        target = tmp_path / "book.xlsx"
        target.write_bytes(b"original")
        write_with_compression(sample_workbook(), target, 9)

        assert zipfile.is_zipfile(target)
        assert [p.name for p in tmp_path.iterdir()] == ["book.xlsx"]
        assert open_workbook(target)["Sheet1"].get_value("A2") == "Widget"

    def test_invalid_compression_level(self):
        with pytest.raises(ValueError):
            write_bytes(sample_workbook(), WriteOptions(compression_level=10))

    def test_unknown_enumerations_become_diagnostics(self):
        """Unknown enumerated attributes fall back to defaults instead of failing the read."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("A1", "X")
        ws.add_list_validation("C2:C3", ["Yes", "No"])
        ws.add_color_scale("B2:B3")
        ws.add_table("Sales", "A1:A3", columns=["X"])

        def sheet(data: bytes) -> bytes:
            data = data.replace(b'<dataValidation type="list"', b'<dataValidation type="dropdown" errorStyle="fatal"')
            return data.replace(b'<cfvo type="min"', b'<cfvo type="lowest"')

        package = patch_package(write_bytes(wb), {
            "xl/worksheets/sheet1.xml": sheet,
            "xl/tables/table1.xml": lambda data: data.replace(
                b'<tableColumn id="1" name="X"', b'<tableColumn id="1" name="X" totalsRowFunction="median"'),
        })

        restored = open_workbook(package)
        rs = restored["Sheet1"]
        rule = rs.get_data_validations()[0]
        assert rule.validation_type == "none"
        assert rule.error_style == "stop"
        assert rs.get_color_scales()[0].payload.cfvos[0].type == "num"
        assert rs.get_table("Sales").columns[0].totals_row_function == "none"
        messages = [d.message for d in restored.diagnostics]
        for value in ("'dropdown'", "'fatal'", "'lowest'", "'median'"):
            assert any(value in m for m in messages)

        print(f"\n✓ {len(messages)} diagnostics for unknown enumerated values")

    def test_shared_string_index_out_of_range(self):
        wb = new()
        wb["Sheet1"].set_cell_value("A1", "only string")
        package = patch_package(write_bytes(wb), {
            "xl/worksheets/sheet1.xml": lambda data: re.sub(
                rb'(<c r="A1"[^>]*t="s"[^>]*><v>)\d+', rb"\g<1>999", data),
        })

        with pytest.raises(FormatError):
            open_workbook(package)

        print("\n✓ Shared string index past the table raised FormatError")

    def test_unresolvable_relationship_id(self):
        package = patch_package(write_bytes(sample_workbook()), {
            "xl/workbook.xml": lambda data: re.sub(
                rb'(<sheet name="Data"[^>]*r:id=")[^"]+', rb"\g<1>rId99", data),
        })

        with pytest.raises(FormatError, match="relationship"):
            open_workbook(package)

        print("\n✓ Sheet pointing at a missing relationship raised FormatError")

    def test_malformed_part(self):
        package = patch_package(write_bytes(sample_workbook()), {
            "xl/styles.xml": lambda data: data[: len(data) // 2],
        })

        with pytest.raises(FormatError):
            open_workbook(package)

        print("\n✓ Truncated styles part raised FormatError")
