import importlib.util
from datetime import datetime
from decimal import Decimal
from io import BytesIO

import pytest

from shared.models.dose_response import BoundingBox
from shared.services.sheet_grid_parser import SheetGridParseOptions, SheetGridParser


def _workbook_bytes():
    from openpyxl import Workbook

    wb = Workbook()
    ws = wb.active
    ws.title = "Plate1"

    ws["A1"] = "Dose (nM)"
    ws["B1"] = "Inhibition"
    ws["A2"] = 1000
    ws["B2"] = 95.5
    ws["A3"] = 100
    ws["B3"] = 60
    ws["A4"] = 10
    ws["B4"] = 12
    ws["D1"] = "Notes"
    ws["D2"] = "merged note"
    ws["F1"] = "Plate ID"
    ws.merge_cells("D2:E3")

    other = wb.create_sheet("Plate2")
    other["A1"] = "empty-ish"

    bio = BytesIO()
    wb.save(bio)
    return bio.getvalue()


class TestSheetGridParser:
    def test_values_normalize_and_trim_trailing(self):
        values = [
            ["A", "B", None],
            [1, 2],
            ["", "  "],
            [3, 4, ""],
            [None, None, None],  # trailing empty row -> trimmed
        ]

        out = SheetGridParser.from_values(values, sheet_name="manual")
        assert out.source == "unknown"
        assert out.sheet_name == "manual"
        assert out.metadata["rows"] == 4
        assert out.metadata["cols"] == 2
        # Internal empty row stays, blanks become None
        assert out.grid[2] == [None, None]
        assert out.warnings == ["Trailing empty rows/cols trimmed"]

    def test_native_values_are_kept(self):
        stamp = datetime(2024, 3, 1, 12, 0)
        out = SheetGridParser.from_values([[Decimal("1.5"), stamp, "x"]])
        assert out.grid == [[1.5, stamp, "x"]]
        assert out.warnings == []

    def test_limits_and_no_trim(self):
        values = [[1, 2, 3], [4, 5, 6], [None, None, None]]
        opts = SheetGridParseOptions(trim_trailing_empty=False, max_rows=3, max_cols=2)

        out = SheetGridParser.from_values(values, options=opts)
        assert out.grid == [[1, 2], [4, 5], [None, None]]

    def test_all_empty_grid(self):
        out = SheetGridParser.from_values([[None, ""], ["", None]])
        assert out.grid == []
        assert out.metadata["rows"] == 0

    def test_csv_text(self):
        out = SheetGridParser.from_csv_text("Conc;Resp\n10;1.5\n1;0.5\n", delimiter=";")
        assert out.source == "csv"
        # the cell classifier decides what is numeric
        assert out.grid == [["Conc", "Resp"], ["10", "1.5"], ["1", "0.5"]]

    def test_merge_ranges_are_clipped(self):
        merges = [
            BoundingBox(start_row=0, end_row=10, start_col=0, end_col=10),
            BoundingBox(start_row=1, end_row=1, start_col=1, end_col=1),
            BoundingBox(start_row=20, end_row=21, start_col=0, end_col=0),
        ]
        clipped = SheetGridParser._clip_merge_ranges(merges, rows=2, cols=2)
        assert clipped == [BoundingBox(start_row=0, end_row=1, start_col=0, end_col=1)]

    @pytest.mark.filterwarnings(
        "ignore:datetime\\.datetime\\.utcnow\\(\\) is deprecated.*:DeprecationWarning:openpyxl\\..*"
    )
    def test_excel_parser_extracts_values_and_merges(self):
        if importlib.util.find_spec("openpyxl") is None:
            pytest.skip("openpyxl not installed")

        out = SheetGridParser.from_excel_bytes(_workbook_bytes())

        assert out.source == "excel"
        assert out.sheet_name == "Plate1"
        assert out.grid[0][:2] == ["Dose (nM)", "Inhibition"]
        assert out.grid[1][1] == 95.5
        # only the anchor of a merged range carries the value
        assert out.grid[1][3] == "merged note"
        assert out.grid[1][4] is None
        assert out.grid[2][3] is None
        assert BoundingBox(start_row=1, end_row=2, start_col=3, end_col=4) in out.merged_cells

    @pytest.mark.filterwarnings(
        "ignore:datetime\\.datetime\\.utcnow\\(\\) is deprecated.*:DeprecationWarning:openpyxl\\..*"
    )
    def test_excel_sheet_selection(self):
        if importlib.util.find_spec("openpyxl") is None:
            pytest.skip("openpyxl not installed")

        data = _workbook_bytes()
        out = SheetGridParser.from_excel_bytes(data, sheet_name="Plate2")
        assert out.sheet_name == "Plate2"
        assert out.grid == [["empty-ish"]]

        with pytest.raises(ValueError):
            SheetGridParser.from_excel_bytes(data, sheet_name="Missing")

    @pytest.mark.filterwarnings(
        "ignore:datetime\\.datetime\\.utcnow\\(\\) is deprecated.*:DeprecationWarning:openpyxl\\..*"
    )
    def test_excel_workbook_parses_every_sheet(self):
        if importlib.util.find_spec("openpyxl") is None:
            pytest.skip("openpyxl not installed")

        data = _workbook_bytes()
        sheets = SheetGridParser.from_excel_workbook(data)
        assert [s.sheet_name for s in sheets] == ["Plate1", "Plate2"]
        assert sheets[0].grid[0][:2] == ["Dose (nM)", "Inhibition"]
        assert sheets[1].grid == [["empty-ish"]]

        # workbook order wins over request order
        selected = SheetGridParser.from_excel_workbook(data, sheet_names=["Plate2", "Plate1"])
        assert [s.sheet_name for s in selected] == ["Plate1", "Plate2"]

        with pytest.raises(ValueError):
            SheetGridParser.from_excel_workbook(data, sheet_names=["Plate1", "Missing"])
