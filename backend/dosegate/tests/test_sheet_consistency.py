import pytest

from dosegate.services.orchestrator import analyze
from dosegate.services.sheet_consistency import SheetConsistencyAnalyzer
from shared.models.dose_response import DetectionResult, Orientation, SheetPattern


def _pattern(name, *, header=0, conc=0, responses=3, orientation=Orientation.VERTICAL, confidence=0.8):
    return SheetPattern(
        sheet_name=name,
        header_index=header,
        concentration_index=conc,
        response_count=responses,
        orientation=orientation,
        confidence=confidence,
    )


class TestSheetPatterns:
    def test_pattern_from_best_candidate(self, tce_grid):
        pattern = SheetConsistencyAnalyzer.pattern_for("Plate1", analyze(tce_grid))

        assert pattern.sheet_name == "Plate1"
        assert pattern.header_index == 0
        assert pattern.concentration_index == 0
        assert pattern.response_count == 3
        assert pattern.orientation == Orientation.VERTICAL
        assert pattern.confidence > 0.7

    def test_pattern_without_candidates(self):
        pattern = SheetConsistencyAnalyzer.pattern_for("Blank", analyze([]))
        assert pattern.confidence == 0.0
        assert pattern.issues == ["Sheet is empty"]

        quiet = SheetConsistencyAnalyzer.pattern_for("Quiet", DetectionResult())
        assert quiet.issues == ["No dose-response dataset detected"]


class TestConsistency:
    def test_no_sheets(self):
        result = SheetConsistencyAnalyzer.compare([])
        assert not result.is_consistent
        assert result.explanations == ["No reliable data patterns detected in the selected sheets."]

    def test_single_sheet_is_consistent(self):
        only = _pattern("Only", confidence=0.35)
        result = SheetConsistencyAnalyzer.compare([only])

        assert result.is_consistent
        assert result.confidence == pytest.approx(0.35)
        assert result.common_pattern == only

    def test_small_drift_is_tolerated(self):
        result = SheetConsistencyAnalyzer.compare(
            [_pattern("A"), _pattern("B", header=1, conc=1), _pattern("C", confidence=0.9)]
        )

        assert result.is_consistent
        assert result.reference_sheet == "C"
        assert result.differences == []
        assert result.explanations == ["All sheets have consistent data patterns and can be processed together."]

    def test_one_outlier_in_five_is_still_consistent(self):
        sheets = [_pattern(f"P{i}") for i in range(4)] + [_pattern("Odd", responses=6)]
        result = SheetConsistencyAnalyzer.compare(sheets)

        assert result.is_consistent
        assert result.common_pattern.sheet_name == "P0"
        assert [d.sheet_name for d in result.differences] == ["Odd"]
        assert result.differences[0].issues == ["Different number of response columns: 6 vs 3"]

    def test_differences_are_explained(self):
        result = SheetConsistencyAnalyzer.compare(
            [
                _pattern("A"),
                _pattern("B", header=5, conc=4),
                _pattern("C", orientation=Orientation.HORIZONTAL, confidence=0.2),
            ]
        )

        assert not result.is_consistent
        assert result.common_pattern is None
        by_sheet = {d.sheet_name: d.issues for d in result.differences}
        assert by_sheet["B"] == ["Header row differs: 5 vs 0", "Concentration column differs: 4 vs 0"]
        assert by_sheet["C"] == ["Different layout: horizontal vs vertical", "Low confidence: 0.20"]
        assert result.explanations == [
            "Sheets have headers in different rows.",
            "Concentration data is in different columns across sheets.",
            "Sheets have different data layouts (vertical vs horizontal).",
            "Some sheets have unclear or ambiguous data patterns.",
            "Each sheet will need individual pattern configuration.",
        ]

    def test_unreliable_reference(self):
        result = SheetConsistencyAnalyzer.compare([_pattern("A", confidence=0.2), _pattern("B", confidence=0.1)])

        assert not result.is_consistent
        assert result.confidence == 0.0
        assert [d.issues for d in result.differences] == [["Low confidence pattern detection"]] * 2
