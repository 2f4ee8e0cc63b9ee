import pytest

from dosegate.services.cell_classifier import CellClassifier
from dosegate.services.data_extraction import extract_data_points
from dosegate.services.layout_detector import LayoutDetector
from shared.models.dose_response import BoundingBox, ConcentrationAxis, DatasetCandidate, Orientation


def _detect(rows):
    box = BoundingBox(start_row=0, end_row=len(rows) - 1, start_col=0, end_col=len(rows[0]) - 1)
    return LayoutDetector.detect(CellClassifier.classify_grid(rows), box).candidate


class TestExtractDataPoints:
    def test_vertical_points(self, tce_grid):
        points = extract_data_points(tce_grid, _detect(tce_grid))

        assert [p.concentration for p in points] == [100.0, 10.0, 1.0, 0.1]
        assert points[0].responses == [90.0, 85.0, 88.0]
        assert points[-1].responses == [10.0, 8.0, 12.0]

    def test_horizontal_points_match_vertical(self, tce_grid, horizontal_tce_grid):
        vertical = extract_data_points(tce_grid, _detect(tce_grid))
        horizontal = extract_data_points(horizontal_tce_grid, _detect(horizontal_tce_grid))
        assert horizontal == vertical

    def test_header_unit_is_applied(self):
        rows = [["Dose [uM]", "Signal"], [10, 1.5], [1, 1.0], ["n/a", 0.5]]
        candidate = DatasetCandidate(
            id="manual",
            bounding_box=BoundingBox(start_row=0, end_row=3, start_col=0, end_col=1),
            orientation=Orientation.VERTICAL,
            header_index=0,
            concentration_axis=ConcentrationAxis(index=0, unit="uM"),
            response_axes=[1],
            data_start=1,
            data_end=3,
        )
        points = extract_data_points(rows, candidate)

        # the "n/a" line has no valid concentration and is skipped
        assert [p.concentration for p in points] == [pytest.approx(10000.0), pytest.approx(1000.0)]

    def test_non_numeric_responses_are_none(self, tce_grid):
        rows = [list(r) for r in tce_grid]
        candidate = _detect(rows)
        rows[2][2] = "#N/A"
        points = extract_data_points(rows, candidate)
        assert points[1].responses == [70.0, None, 72.0]

    def test_candidate_without_axis_yields_nothing(self, tce_grid):
        candidate = DatasetCandidate(
            id="empty", bounding_box=BoundingBox(start_row=0, end_row=4, start_col=0, end_col=3)
        )
        assert extract_data_points(tce_grid, candidate) == []

    def test_out_of_range_indices_are_ignored(self, tce_grid):
        candidate = _detect(tce_grid).model_copy(update={"data_end": 40, "response_axes": [1, 9]})
        points = extract_data_points(tce_grid, candidate)
        assert len(points) == 4
        assert points[0].responses == [90.0, None]
