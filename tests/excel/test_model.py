"""Tests for the in-memory workbook model.

Covers:
- Cell values, type inference and formatted values
- Merged ranges
- Style interning and compaction
- Shared string deduplication
- Conditional formatting priorities
- Sheet management and defined names
- Pivot tables
"""

import sys
from datetime import date
from pathlib import Path

# Add project root to path (tests/excel/ -> tests/ -> project root)
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

from excel_engine import (
    CellRange,
    CellType,
    DanglingReferenceError,
    Fill,
    Font,
    MergeConflictError,
    NameConflictError,
    RichText,
    StyleSpec,
    TextRun,
    UnsupportedFeatureError,
    new,
    new_empty,
)
from excel_engine.number_format import format_value, from_excel_serial, to_excel_serial
from excel_engine.references import (
    col_index_to_letter,
    col_letter_to_index,
    parse_range_ref,
    quote_sheet_name,
    split_sheet_ref,
)


class TestCellValues:
    """Test value storage and the value queries."""

    def test_formatted_and_raw_value(self):
        """Number format changes the display, never the stored text."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("A1", "1234.5678")
        ws.set_number_format("A1", "#,##0.00")

        assert ws.get_formatted_value("A1") == "1,234.57"
        assert ws.get_raw_value("A1") == "1234.5678"
        assert ws.get_cell("A1").data_type == CellType.NUMBER

        print("\n✓ Formatted 1234.5678 as 1,234.57 and kept the raw text")

    def test_type_inference(self):
        """Test numeric, boolean, error and text inference from strings."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("A1", "42")
        ws.set_cell_value("A2", "true")
        ws.set_cell_value("A3", "#N/A")
        ws.set_cell_value("A4", "hello")
        ws.set_cell_value("A5", 3.5)

        assert ws.get_value("A1") == 42
        assert ws.get_value("A2") is True
        assert ws.get_cell("A3").data_type == CellType.ERROR
        assert ws.get_value("A4") == "hello"
        assert ws.get_cell("A4").data_type == CellType.SHARED_STRING
        assert ws.get_value("A5") == 3.5

        print("\n✓ Inferred number, boolean, error and text cells")

    def test_date_gets_date_format(self):
        """Dates are stored as serials with a date format."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("B2", date(2024, 1, 15))

        assert ws.get_number_format("B2") == "yyyy-mm-dd"
        assert ws.get_formatted_value("B2") == "2024-01-15"
        assert ws.get_value("B2") == 45306

        print(f"\n✓ Date stored as serial {ws.get_value('B2')}")

    def test_formula_keeps_cached_value(self):
        """Formulas are stored as text with an optional cached result."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_formula("C1", "=SUM(A1:B1)", cached_value=7)

        assert ws.get_formula("C1") == "SUM(A1:B1)"
        assert ws.get_value("C1") == 7

        print("\n✓ Formula stored without the leading '='")

    def test_remove_and_clear(self):
        """Test clearing values and removing cells."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("A1", 1)
        ws.set_cell_value("A2", 2)
        ws.clear_range("A1:A2")

        assert ws.get_value("A1") is None
        assert ws.remove_cell("A2") is True
        assert ws.remove_cell("A2") is False

        print("\n✓ Cleared and removed cells")

    def test_invalid_reference(self):
        """Out-of-bounds references raise DanglingReferenceError."""
        wb = new()
        ws = wb["Sheet1"]
        with pytest.raises(DanglingReferenceError):
            ws.set_cell_value("XFE1", 1)
        with pytest.raises(DanglingReferenceError):
            ws.set_cell_value("A0", 1)

        print("\n✓ Rejected out-of-bounds references")


class TestMerges:
    """Test merged range handling."""

    def test_merge_keeps_only_top_left(self):
        """Merging clears everything but the top-left cell."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("B2", "gone")
        ws.merge_cells("A1:C3")
        ws.set_cell_value("A1", "X")

        populated = [c.coordinate for c in ws.iter_cells() if not c.is_empty]
        assert populated == ["A1"]
        assert ws.get_merged_ranges() == ["A1:C3"]

        print(f"\n✓ Merge A1:C3 holds {populated}")

    def test_write_inside_merge_rejected(self):
        """Only the top-left cell of a merge can hold content."""
        wb = new()
        ws = wb["Sheet1"]
        ws.merge_cells("A1:C3")
        with pytest.raises(MergeConflictError):
            ws.set_cell_value("B2", "no")

        print("\n✓ Rejected a value inside a merged range")

    def test_overlapping_merge_rejected(self):
        """Test that overlapping merges raise MergeConflictError."""
        wb = new()
        ws = wb["Sheet1"]
        ws.merge_cells("A1:B2")
        with pytest.raises(MergeConflictError):
            ws.merge_cells("B2:C3")
        assert ws.unmerge_cells("A1:B2") is True
        ws.merge_cells("B2:C3")

        print("\n✓ Overlapping merge rejected, unmerge then merge accepted")

    def test_insert_rows_shifts_merges(self):
        """Row inserts move cells and merges below the insertion point."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("A3", "moved")
        ws.merge_cells("A3:B4")
        ws.insert_rows(2, 2)

        assert ws.get_value("A5") == "moved"
        assert ws.get_merged_ranges() == ["A5:B6"]

        ws.remove_rows(5, 1)
        assert ws.get_merged_ranges() == ["A5:B5"]

        print("\n✓ Inserted and removed rows around a merge")


class TestShifts:
    """Test reference rewriting on row and column inserts and deletes."""

    def test_insert_rows_rewrites_formulas_and_names(self):
        """Formulas and defined names follow the cells they point at."""
        wb = new()
        ws = wb["Sheet1"]
        other = wb.add_sheet("Other")
        ws.set_cell_value("A5", 7)
        ws.set_formula("B1", "=A5*2")
        ws.set_formula("C1", 'SUM(A1:A10)&"A5"')
        other.set_formula("A1", "Sheet1!A5+A5")
        wb.add_defined_name("Seven", "Sheet1!$A$5")
        ws.set_print_area("A1:C6")

        ws.insert_rows(2, 3)

        assert ws.get_value("A8") == 7
        assert ws.get_formula("B1") == "A8*2"
        assert ws.get_formula("C1") == 'SUM(A1:A13)&"A5"'
        assert other.get_formula("A1") == "Sheet1!A8+A5"
        assert wb.get_defined_name("Seven").refers_to == "Sheet1!$A$8"
        assert ws.get_print_area() == "Sheet1!$A$1:$C$9"

        print("\n✓ Formulas, names and print area shifted with the rows")

    def test_delete_columns_gives_ref_error(self):
        """References into a deleted block become #REF!."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_formula("A1", "C1+D1")
        wb.add_defined_name("Gone", "Sheet1!$C$1:$C$4")

        ws.remove_columns("C", 1)

        assert ws.get_formula("A1") == "#REF!+C1"
        assert wb.get_defined_name("Gone").refers_to == "Sheet1!#REF!"

        print("\n✓ Deleted column references became #REF!")

    def test_deleted_table_is_dropped(self):
        """A table whose whole range is deleted no longer exists."""
        wb = new()
        ws = wb["Sheet1"]
        ws.add_table("Kept", "A1:B3", columns=["X", "Y"])
        ws.add_table("Dropped", "A6:B7", columns=["P", "Q"])

        ws.remove_rows(5, 4)

        assert [t.name for t in ws.get_tables()] == ["Kept"]
        assert ws.get_tables()[0].ref == "A1:B3"

        print("\n✓ Table over deleted rows dropped")


class TestStyles:
    """Test style interning and compaction."""

    def test_equal_styles_share_an_index(self):
        """Structurally equal style records intern to one index."""
        wb = new()
        ws = wb["Sheet1"]
        spec = StyleSpec(font=Font(name="Arial", size=10, bold=True), fill=Fill.solid("FFFF00"))
        first = ws.set_style("A1", spec)
        second = ws.set_style("B2", StyleSpec(font=Font(name="Arial", size=10, bold=True),
                                              fill=Fill.solid("FFFF00")))

        assert first == second
        assert len(wb.styles) == 2

        print(f"\n✓ Two equal styles share index {first}")

    def test_single_property_setters(self):
        """Setters derive a new record from the cell's current one."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_font_bold("A1")
        ws.set_background_color("A1", "#00FF00")

        assert ws.get_font_bold("A1") is True
        assert ws.get_cell_background_color("A1").endswith("00FF00")
        assert ws.get_font_bold("A2") is False

        print("\n✓ Bold and background color applied to A1 only")

    def test_row_style_keeps_cell_styles(self):
        """A row fill lands on existing cells without resetting their font or format."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("A1", 0.5)
        ws.set_font_bold("A1")
        ws.set_number_format("A1", "0.00%")

        ws.set_row_style(1, bg_color="FFFF00")

        assert ws.get_font_bold("A1") is True
        assert ws.get_number_format("A1") == "0.00%"
        assert ws.get_cell_background_color("A1").endswith("FFFF00")
        assert ws.get_cell_background_color("B1").endswith("FFFF00")
        assert ws.get_font_bold("B1") is False

        print("\n✓ Row fill merged into the existing cell style")

    def test_compaction_drops_unused(self):
        """Compaction keeps referenced records and rewrites cell indices."""
        wb = new()
        ws = wb["Sheet1"]
        for size in (9, 10, 12, 13, 14):
            wb.styles.intern(StyleSpec(font=Font(name="Calibri", size=size)))
        kept = ws.set_style("A1", StyleSpec(font=Font(name="Calibri", size=20)))
        before = len(wb.styles)

        mapping = wb.styles.compact(wb)

        assert len(wb.styles) == 2
        assert before > len(wb.styles)
        assert ws.get_cell("A1").style_index == mapping[kept] == 1
        assert ws.get_font_size("A1") == 20

        print(f"\n✓ Compacted styles from {before} to {len(wb.styles)}")


class TestSharedStrings:
    """Test the shared string table."""

    def test_dedup_over_many_cells(self):
        """Ten thousand cells with three distinct strings give three entries."""
        wb = new()
        ws = wb["Sheet1"]
        words = ["alpha", "beta", "gamma"]
        for row in range(1, 10001):
            ws.set_cell_value((row, 1), words[row % 3])

        assert len(wb.shared_strings) == 3
        assert wb.shared_strings.reference_count(wb) == 10000

        print(f"\n✓ {ws.cell_count} cells share {len(wb.shared_strings)} strings")

    def test_rich_text_is_distinct_from_plain(self):
        """Rich text with the same plain text is a separate entry."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("A1", "Hello")
        ws.set_rich_text("A2", RichText(runs=[TextRun(text="Hel", font=Font(bold=True)), TextRun(text="lo")]))

        assert len(wb.shared_strings) == 2
        assert ws.get_value("A2") == "Hello"
        assert ws.get_rich_text("A2").runs[0].font.bold is True
        assert ws.get_rich_text("A1") is None

        print("\n✓ Rich and plain 'Hello' stored as two entries")

    def test_compaction_renumbers(self):
        """Unreferenced strings are dropped on compaction."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("A1", "old")
        ws.set_cell_value("A1", "new")

        assert len(wb.shared_strings) == 2
        wb.shared_strings.compact(wb)
        assert len(wb.shared_strings) == 1
        assert ws.get_value("A1") == "new"

        print("\n✓ Dropped the orphaned string")


class TestConditionalFormatting:
    """Test conditional formatting rule ordering."""

    def test_priority_follows_insertion(self):
        """Rules on the same range come back in insertion order."""
        wb = new()
        ws = wb["Sheet1"]
        ws.add_cell_value_rule("A1:A10", "greaterThan", "100", fill_color="FF0000")
        ws.add_color_scale("A1:A10")
        ws.add_cell_value_rule("A1:A10", "between", "1", "10", font_color="0000FF")

        rules = ws.get_conditional_formatting_rules("A1:A10")
        assert [r.priority for r in rules] == [1, 2, 3]
        assert [r.payload.kind for r in rules] == ["cellIs", "colorScale", "cellIs"]
        assert rules[2].payload.formulas == ["1", "10"]

        print(f"\n✓ {len(rules)} rules in priority order")

    def test_query_by_overlap(self):
        """Queries match rules whose range overlaps the requested one."""
        wb = new()
        ws = wb["Sheet1"]
        ws.add_data_bar("B1:B5")
        ws.add_expression_rule("D1:D5", "$D1>0", fill_color="00FF00")

        assert len(ws.get_conditional_formatting_rules("B3")) == 1
        assert ws.get_conditional_formatting_rules("C1") == []
        assert ws.remove_conditional_formatting("D2") == 1

        print("\n✓ Overlap queries and removal work")


class TestSheets:
    """Test sheet management."""

    def test_add_rename_remove(self):
        """Test sheet lifecycle and name validation."""
        wb = new()
        wb.add_sheet("Data")
        wb.add_defined_name("Totals", "Data!$A$1:$A$10")
        wb.rename_sheet("Data", "Raw Data")

        assert wb.get_sheet_names() == ["Sheet1", "Raw Data"]
        assert wb.get_defined_name("Totals").refers_to == "'Raw Data'!$A$1:$A$10"

        with pytest.raises(NameConflictError):
            wb.add_sheet("raw data")
        with pytest.raises(ValueError):
            wb.add_sheet("bad/name")

        wb.remove_sheet("Raw Data")
        assert wb.get_sheet_names() == ["Sheet1"]

        print("\n✓ Added, renamed and removed a sheet")

    def test_rename_rewrites_whole_sheet_prefixes(self):
        """Only references to the renamed sheet change, quoted or not."""
        wb = new()
        wb.add_sheet("MySheet1")
        ws = wb.add_sheet("Summary")
        ws.set_formula("A1", "MySheet1!B2+Sheet1!C3")
        ws.set_formula("A2", "'Sheet1'!B2*2")
        ws.set_formula("A3", 'CONCAT("Sheet1!",Sheet1!A1)')
        wb.add_defined_name("Both", "'Sheet1'!$A$1,MySheet1!$A$1")

        wb.rename_sheet("Sheet1", "Data")

        assert ws.get_formula("A1") == "MySheet1!B2+Data!C3"
        assert ws.get_formula("A2") == "Data!B2*2"
        assert ws.get_formula("A3") == 'CONCAT("Sheet1!",Data!A1)'
        assert wb.get_defined_name("Both").refers_to == "Data!$A$1,MySheet1!$A$1"

        wb.rename_sheet("Data", "Q1 Data")
        assert ws.get_formula("A1") == "MySheet1!B2+'Q1 Data'!C3"

        print("\n✓ Rename rewrote only whole sheet prefixes")

    def test_remove_sheet_keeps_active_tab(self):
        """Removing a sheet before the active one keeps the same sheet active."""
        wb = new()
        wb.add_sheet("Second")
        wb.add_sheet("Third")
        wb.set_active_tab(2)

        wb.remove_sheet("Sheet1")

        assert wb.view.active_tab == 1
        assert wb.active.title == "Third"

        print("\n✓ Active tab followed the active sheet")

    def test_cannot_remove_only_sheet(self):
        wb = new()

        with pytest.raises(ValueError):
            wb.remove_sheet("Sheet1")
        assert wb.get_sheet_names() == ["Sheet1"]

        print("\n✓ Removing the only sheet rejected")

    def test_clone_sheet(self):
        """Clones get a unique title and independent cells."""
        wb = new()
        ws = wb["Sheet1"]
        ws.set_cell_value("A1", "original")
        clone = wb.clone_sheet("Sheet1")
        clone.set_cell_value("A1", "copy")

        assert wb.get_sheet_names() == ["Sheet1", "Sheet1 (2)"]
        assert ws.get_value("A1") == "original"

        print(f"\n✓ Cloned to {clone.title}")

    def test_scoped_defined_names(self):
        """Names are unique per scope."""
        wb = new()
        wb.add_defined_name("Rate", "0.2")
        wb.add_defined_name("Rate", "0.3", sheet="Sheet1")
        with pytest.raises(NameConflictError):
            wb.add_defined_name("rate", "0.4")

        assert wb.get_defined_name("Rate").refers_to == "0.2"
        assert wb.get_defined_name("Rate", sheet="Sheet1").refers_to == "0.3"

        print("\n✓ Workbook and sheet scoped names coexist")

    def test_missing_sheet(self):
        """Unknown sheets raise DanglingReferenceError."""
        wb = new_empty()
        assert len(wb) == 0
        with pytest.raises(DanglingReferenceError):
            wb["Nope"]

        print("\n✓ Missing sheet lookup raised")


class TestPivot:
    """Test pivot table definitions."""

    def _workbook(self):
        wb = new()
        ws = wb["Sheet1"]
        rows = [("Region", "Product", "Sales"), ("East", "A", 10), ("West", "B", 20), ("East", "B", 30)]
        for r, row in enumerate(rows, start=1):
            for c, value in enumerate(row, start=1):
                ws.set_cell_value((r, c), value)
        wb.add_pivot_table("Sheet1", "Pivot1", "Sheet1", "A1:C4", "F2",
                           row_fields=["Region"], data_fields=[("Sales", "sum")])
        return wb

    def test_add_pivot_table(self):
        """Test cache fields and pivot info."""
        wb = self._workbook()
        info = wb.get_pivot_table_info("Sheet1", "Pivot1")

        assert info["row_fields"] == ["Region"]
        assert info["record_count"] == 3
        assert info["data_fields"][0]["name"] == "Sum of Sales"
        assert wb.get_pivot_table_fields("Sheet1", "Pivot1") == ["Region", "Product", "Sales"]

        print(f"\n✓ Pivot over {info['source_range']} with {info['record_count']} records")

    def test_refresh(self):
        """Refreshing re-scans the source; layout recomputation is unsupported."""
        wb = self._workbook()
        ws = wb["Sheet1"]
        ws.set_cell_value("C2", "n/a")

        cache = wb.refresh_pivot_cache(1)
        assert cache.fields[2].contains_string is True
        with pytest.raises(UnsupportedFeatureError):
            wb.refresh_all_pivot_tables(recompute_layout=True)

        print("\n✓ Refreshed cache; layout recomputation rejected")

    def test_unknown_field(self):
        """Unknown field names raise DanglingReferenceError."""
        wb = self._workbook()
        with pytest.raises(DanglingReferenceError):
            wb.add_pivot_table("Sheet1", "Pivot2", "Sheet1", "A1:C4", "J2", row_fields=["Missing"])

        print("\n✓ Unknown pivot field rejected")


class TestNumberFormats:
    """Test number format rendering."""

    @pytest.mark.parametrize("value,code,expected", [
        (1234.5678, "#,##0.00", "1,234.57"),
        (0.25, "0%", "25%"),
        (3.14159, "0.00", "3.14"),
        (-5, "0;(0)", "(5)"),
        (42, "General", "42"),
        (1234567, "#,##0", "1,234,567"),
    ])
    def test_format_value(self, value, code, expected):
        """Test common number formats."""
        assert format_value(value, code) == expected

    def test_date_serial_round_trip(self):
        """Test the 1900 date system conversion."""
        serial = to_excel_serial(date(2024, 2, 29))
        assert from_excel_serial(serial).date() == date(2024, 2, 29)
        assert to_excel_serial(date(1900, 1, 1)) == 1

        print(f"\n✓ 2024-02-29 is serial {serial}")


class TestReferences:
    """Test A1 reference helpers."""

    def test_columns(self):
        assert col_letter_to_index("A") == 1
        assert col_letter_to_index("AA") == 27
        assert col_index_to_letter(16384) == "XFD"

    def test_ranges(self):
        assert parse_range_ref("C5:A1") == (1, 1, 5, 3)
        assert CellRange.from_string("$B$2:$D$4").coord == "B2:D4"
        assert CellRange.from_string("A1:B2").overlaps(CellRange.from_string("B2:C3"))

    def test_sheet_names(self):
        assert quote_sheet_name("Sheet1") == "Sheet1"
        assert quote_sheet_name("My Sheet") == "'My Sheet'"
        assert split_sheet_ref("'It''s'!A1:B2") == ("It's", "A1:B2")

        print("\n✓ Sheet names quoted and split")
