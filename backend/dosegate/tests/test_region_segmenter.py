import pytest

from dosegate.services.cell_classifier import CellClassifier
from dosegate.services.detection_trace import TraceEmitter, TraceRecorder
from dosegate.services.region_segmenter import DensityMap, RegionSegmenter
from shared.config.settings import get_detection_settings
from shared.models.dose_response import BoundaryPatternType, BoundingBox, SheetLayoutType


def _segment(rows, recorder=None):
    grid = CellClassifier.classify_grid(rows)
    return RegionSegmenter.segment(grid, trace=TraceEmitter(recorder))


def _side_by_side():
    left = [["Dose", "R1"], [100, 5], [10, 7], [1, 9]]
    right = [["Dose", "R1", "R2"], [50, 1, 2], [5, 3, 4], [0.5, 5, 6]]
    return [[*a, None, None, *b] for a, b in zip(left, right)]


class TestRegionSegmentation:
    def test_two_blocks_separated_by_empty_rows(self, two_block_grid):
        result = _segment(two_block_grid)

        boxes = [r.bounding_box for r in result.regions]
        assert boxes == [
            BoundingBox(start_row=0, end_row=5, start_col=0, end_col=3),
            BoundingBox(start_row=8, end_row=13, start_col=0, end_col=3),
        ]
        assert not boxes[0].overlaps(boxes[1])
        for row in (6, 7):
            assert not any(box.contains(row, 0) for box in boxes)
        assert result.layout_type == SheetLayoutType.VERTICAL

    def test_side_by_side_blocks(self):
        result = _segment(_side_by_side())

        assert [r.bounding_box for r in result.regions] == [
            BoundingBox(start_row=0, end_row=3, start_col=0, end_col=1),
            BoundingBox(start_row=0, end_row=3, start_col=4, end_col=6),
        ]
        assert result.layout_type == SheetLayoutType.HORIZONTAL

    def test_single_block_with_interior_hole_is_not_fragmented(self, tce_grid):
        rows = [list(r) for r in tce_grid]
        rows[2][2] = None
        result = _segment(rows)

        assert len(result.regions) == 1
        assert result.regions[0].bounding_box == BoundingBox(start_row=0, end_row=4, start_col=0, end_col=3)
        assert result.layout_type == SheetLayoutType.SINGLE

    def test_leading_blank_rows_and_columns_are_excluded(self, tce_grid):
        rows = [[None] * 6, [None] * 6] + [[None, None, *r] for r in tce_grid]
        result = _segment(rows)

        assert result.regions[0].bounding_box == BoundingBox(start_row=2, end_row=6, start_col=2, end_col=5)

    def test_tiny_fragments_are_rejected(self, tce_grid):
        rows = [list(r) + [None, None, None] for r in tce_grid]
        rows += [[None] * 7, [None] * 7, ["note", None, None, None, None, None, None]]
        recorder = TraceRecorder()
        result = _segment(rows, recorder)

        assert len(result.regions) == 1
        assert recorder.of("region.rejected")
        assert len(recorder.of("region.found")) == 1

    def test_empty_grid_has_no_regions(self):
        assert _segment([]).regions == []
        assert _segment([[None, ""], ["", None]]).regions == []

    def test_region_confidence_is_bounded(self, two_block_grid):
        for region in _segment(two_block_grid).regions:
            assert 0.0 <= region.confidence <= 1.0
            assert region.density == 1.0


class TestBoundaries:
    def test_clean_separator_is_natural(self, two_block_grid):
        result = _segment(two_block_grid)

        assert len(result.boundaries) == 1
        boundary = result.boundaries[0]
        assert (boundary.first, boundary.second) == (0, 1)
        assert boundary.row_gap == 2
        assert boundary.col_gap == 0
        assert boundary.gap_consistency == 1.0
        assert boundary.is_natural_boundary
        assert boundary.pattern_type == BoundaryPatternType.DATASET_SEPARATOR
        assert boundary.separation_confidence == pytest.approx(0.85)

    def test_no_region_issues_for_clean_layout(self, two_block_grid):
        messages = [issue.message for issue in _segment(two_block_grid).issues]
        assert "Some dataset boundaries are unclear" not in messages


class TestAdaptiveThresholds:
    def test_threshold_follows_observed_gaps(self):
        rows = []
        for block in range(3):
            rows += [["h", "h"], [1, 2], [3, 4]]
            rows += [[None, None]] * (2 if block < 2 else 0)
        grid = CellClassifier.classify_grid(rows)
        density = DensityMap(grid)
        extent = density.tighten((0, grid.n_rows - 1, 0, grid.n_cols - 1))

        row_threshold, col_threshold = RegionSegmenter.adaptive_gap_thresholds(
            density, extent, get_detection_settings()
        )
        assert row_threshold == 2
        assert col_threshold == 1

    def test_classify_layout_grid(self):
        boxes = [
            BoundingBox(start_row=0, end_row=3, start_col=0, end_col=2),
            BoundingBox(start_row=0, end_row=3, start_col=5, end_col=7),
            BoundingBox(start_row=6, end_row=9, start_col=0, end_col=2),
            BoundingBox(start_row=6, end_row=9, start_col=5, end_col=7),
        ]
        layout, confidence = RegionSegmenter.classify_layout(boxes)
        assert layout == SheetLayoutType.GRID
        assert 0.0 < confidence <= 1.0
