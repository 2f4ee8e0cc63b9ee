import pytest

from dosegate.services.cell_classifier import CellClassifier
from dosegate.services.detection_trace import TraceEmitter, TraceRecorder
from dosegate.services.layout_detector import BlockView, LayoutDetector
from shared.config.settings import get_detection_settings
from shared.config.vocabulary import DEFAULT_VOCABULARY
from shared.models.dose_response import BoundingBox, DilutionPatternType, Orientation


def _full_box(rows):
    return BoundingBox(start_row=0, end_row=len(rows) - 1, start_col=0, end_col=len(rows[0]) - 1)


class TestVerticalLayout:
    def test_tce_block(self, tce_grid):
        grid = CellClassifier.classify_grid(tce_grid)
        detection = LayoutDetector.detect(grid, _full_box(tce_grid))
        candidate = detection.candidate

        assert candidate.orientation == Orientation.VERTICAL
        assert candidate.header_index == 0
        assert candidate.concentration_axis.index == 0
        assert candidate.concentration_axis.unit == "nM"
        assert candidate.response_axes == [1, 2, 3]
        assert (candidate.data_start, candidate.data_end) == (1, 4)
        assert candidate.dilution_pattern.type == DilutionPatternType.LOG_SCALE
        assert candidate.name == "TCE"
        assert candidate.confidence > 0.7

    def test_scores_are_reported(self, tce_grid):
        grid = CellClassifier.classify_grid(tce_grid)
        candidate = LayoutDetector.detect(grid, _full_box(tce_grid)).candidate

        assert candidate.scores["header"] == 1.0
        assert candidate.scores["layout"] == 0.8
        assert set(candidate.scores) >= {"concentration", "pattern", "response", "orientation"}

    def test_header_row_scoring(self):
        cells = CellClassifier.classify_grid([["Dose (nM)", "Inhibition", "Signal"]]).row_cells(0)
        # 3 text cells, concentration keyword, two response keywords
        assert LayoutDetector.header_row_score(cells, 0, DEFAULT_VOCABULARY) == 2 * 3 + 10 + 3 * 2

        numeric = CellClassifier.classify_grid([["x", 1, 2]]).row_cells(0)
        assert LayoutDetector.header_row_score(numeric, 2, DEFAULT_VOCABULARY) == 2 - 5 - 1

    def test_micromolar_header_unit(self):
        rows = [["Dose (uM)", "Resp"], [10, 90], [1, 60], [0.1, 20]]
        grid = CellClassifier.classify_grid(rows)
        result = LayoutDetector.detect_orientation(grid, _full_box(rows), Orientation.VERTICAL)

        assert result.concentration.unit == "uM"
        assert result.concentration.series.values == (10000.0, 1000.0, 100.0)

    def test_block_offset_is_mapped_to_grid_coordinates(self, tce_grid):
        rows = [[None] * 7 for _ in range(3)] + [[None, None, None, *r] for r in tce_grid]
        grid = CellClassifier.classify_grid(rows)
        box = BoundingBox(start_row=3, end_row=7, start_col=3, end_col=6)
        candidate = LayoutDetector.detect(grid, box).candidate

        assert candidate.header_index == 3
        assert candidate.concentration_axis.index == 3
        assert candidate.response_axes == [4, 5, 6]
        assert (candidate.data_start, candidate.data_end) == (4, 7)


class TestHorizontalLayout:
    def test_transposed_tce_block(self, horizontal_tce_grid):
        grid = CellClassifier.classify_grid(horizontal_tce_grid)
        detection = LayoutDetector.detect(grid, _full_box(horizontal_tce_grid))
        candidate = detection.candidate

        assert candidate.orientation == Orientation.HORIZONTAL
        assert candidate.concentration_axis.index == 0
        assert candidate.concentration_axis.orientation == Orientation.HORIZONTAL
        assert candidate.response_axes == [1, 2, 3]
        assert candidate.header_index == 0
        assert (candidate.data_start, candidate.data_end) == (1, 4)
        assert candidate.dilution_pattern.type == DilutionPatternType.LOG_SCALE
        assert candidate.id.endswith("-h")

    def test_both_orientations_are_scored(self, tce_grid):
        grid = CellClassifier.classify_grid(tce_grid)
        detection = LayoutDetector.detect(grid, _full_box(tce_grid))

        assert detection.vertical.orientation == Orientation.VERTICAL
        assert detection.horizontal.orientation == Orientation.HORIZONTAL
        preference = get_detection_settings().horizontal_preference
        assert detection.best is detection.vertical
        assert detection.vertical.orientation_score > detection.horizontal.orientation_score * preference

    def test_block_view_transposes(self, tce_grid):
        grid = CellClassifier.classify_grid(tce_grid)
        view = BlockView(grid, _full_box(tce_grid), Orientation.HORIZONTAL)

        assert (view.n_rows, view.n_cols) == (4, 5)
        assert view.cell(0, 1).number == 100.0
        assert view.grid_line(2) == 2
        assert view.grid_axis(3) == 3


class TestEdgeCases:
    def test_block_without_numbers(self):
        rows = [["a", "b"], ["c", "d"], ["e", "f"]]
        candidate = LayoutDetector.detect(CellClassifier.classify_grid(rows), _full_box(rows)).candidate

        assert candidate.concentration_axis is None
        assert candidate.response_axes == []
        assert candidate.dilution_pattern is None

    def test_identical_columns_prefer_the_first(self):
        rows = [["", ""], [1000, 1000], [100, 100], [10, 10], [1, 1]]
        grid = CellClassifier.classify_grid(rows)
        result = LayoutDetector.detect_orientation(grid, _full_box(rows), Orientation.VERTICAL)
        assert result.concentration.index == 0

    def test_trace_events(self, tce_grid):
        recorder = TraceRecorder()
        grid = CellClassifier.classify_grid(tce_grid)
        LayoutDetector.detect(grid, _full_box(tce_grid), trace=TraceEmitter(recorder))

        assert recorder.of("axis.scored")
        selected = recorder.of("orientation.selected")
        assert len(selected) == 1
        assert selected[0].payload["orientation"] == "vertical"

    @pytest.mark.parametrize("orientation", list(Orientation))
    def test_confidence_is_bounded(self, tce_grid, orientation):
        grid = CellClassifier.classify_grid(tce_grid)
        result = LayoutDetector.detect_orientation(grid, _full_box(tce_grid), orientation)
        assert 0.0 <= result.candidate.confidence <= 1.0
