import pytest

from dosegate.services.biological_segmenter import BiologicalSegmenter
from dosegate.services.cell_classifier import CellClassifier
from dosegate.services.detection_trace import TraceEmitter, TraceRecorder
from dosegate.services.layout_detector import LayoutDetector
from shared.config.settings import get_detection_settings
from shared.models.dose_response import BoundingBox, IssueSeverity, Orientation


def _block(rows):
    grid = CellClassifier.classify_grid(rows)
    box = BoundingBox(start_row=0, end_row=len(rows) - 1, start_col=0, end_col=len(rows[0]) - 1)
    return grid, LayoutDetector.detect(grid, box).candidate


class TestBiologicalConfidence:
    @pytest.mark.parametrize(
        "samples,concentrations,expected",
        [
            (1, 10, 1.0),
            (3, 10, 0.8),
            (6, 7, 0.44),
            (9, 10, 0.2),
            (1, 4, 0.1),
            (1, 20, 0.5),
        ],
    )
    def test_confidence_table(self, samples, concentrations, expected):
        cfg = get_detection_settings()
        assert BiologicalSegmenter.biological_confidence(samples, concentrations, cfg) == pytest.approx(expected)

    def test_oversized_rule(self):
        cfg = get_detection_settings()
        assert BiologicalSegmenter.is_oversized(51, 10, cfg)
        assert BiologicalSegmenter.is_oversized(1, 16, cfg)
        assert not BiologicalSegmenter.is_oversized(8, 15, cfg)

    def test_relevance_issues(self):
        cfg = get_detection_settings()
        issues = BiologicalSegmenter.relevance_issues(12, 4, cfg)
        messages = [i.message for i in issues]

        assert "Dataset contains 12 samples (more than 8 per curve)" in messages
        assert "Only 4 concentration points (6 or more recommended for curve fitting)" in messages
        assert all(i.severity == IssueSeverity.WARNING for i in issues)

        high = BiologicalSegmenter.relevance_issues(1, 20, cfg)
        assert [(i.severity, i.message) for i in high] == [
            (IssueSeverity.INFO, "Unusually high number of concentration points (20)")
        ]


class TestBaseNames:
    @pytest.mark.parametrize(
        "label,base",
        [
            ("A_1", "A"),
            ("Sample Rep2", "Sample"),
            ("Drug_r3", "Drug"),
            ("Compound 12", "Compound"),
            ("X-b", "X"),
            ("Staurosporine", "Staurosporine"),
        ],
    )
    def test_extract_base_name(self, label, base):
        assert BiologicalSegmenter.extract_base_name(label) == base


class TestSegmentation:
    def test_large_matrix_splits_into_individual_curves(self, large_matrix_grid):
        grid, candidate = _block(large_matrix_grid)
        recorder = TraceRecorder()
        result = BiologicalSegmenter.segment(grid, candidate, trace=TraceEmitter(recorder))

        assert len(result.candidates) == 51
        assert result.rejected == []
        assert result.stats.original_count == 1
        assert result.stats.segmented_count == 51
        assert result.stats.strategy == "vertical-individual"
        assert len(recorder.of("candidate.segmented")) == 51

        first = result.candidates[0]
        assert first.name == "Cmpd1"
        assert first.response_axes == [1]
        assert first.biological_confidence == pytest.approx(1.0)
        assert first.id == f"{candidate.id}-s1"
        assert first.confidence == pytest.approx(candidate.confidence * 0.9)

        boxes = [c.bounding_box for c in result.candidates]
        for i, box in enumerate(boxes):
            assert all(not box.overlaps(other) for other in boxes[i + 1 :])

    def test_replicates_are_grouped(self, replicate_grid):
        grid, candidate = _block(replicate_grid)
        result = BiologicalSegmenter.segment(grid, candidate)

        assert [c.name for c in result.candidates] == ["A", "B", "C"]
        assert [c.response_axes for c in result.candidates] == [[1, 2, 3], [4, 5, 6], [7, 8, 9]]
        assert all(c.biological_confidence == pytest.approx(0.8) for c in result.candidates)
        assert result.stats.strategy == "vertical-replicate-groups"

    def test_interleaved_replicates_stay_single(self, make_matrix):
        labels = ["A_1", "B_1", "A_2", "B_2", "C_1", "C_2"]
        grid, candidate = _block(make_matrix(6, 10, labels))
        groups = BiologicalSegmenter.group_samples(grid, candidate, get_detection_settings())

        assert [g.axes for g in groups] == [(1,), (2,), (3,), (4,), (5, 6)]
        assert groups[-1].base_name == "C"

    def test_packing_when_individual_curves_are_not_preferred(self, large_matrix_grid):
        cfg = get_detection_settings({"prefer_individual_curves": False, "quality_threshold": 0.1})
        grid, candidate = _block(large_matrix_grid)
        result = BiologicalSegmenter.segment(grid, candidate, settings=cfg)

        assert result.stats.strategy == "vertical-chunked"
        assert all(c.sample_count <= cfg.max_samples for c in result.candidates)
        assert sum(c.sample_count for c in result.candidates) == 51

    def test_insufficient_concentrations_are_rejected(self, make_matrix):
        grid, candidate = _block(make_matrix(20, 4))
        result = BiologicalSegmenter.segment(grid, candidate)

        assert result.candidates == []
        assert len(result.rejected) == 1
        rejected = result.rejected[0]
        assert rejected.reason == (
            "Insufficient concentration points (n < 6) - cannot fit dose-response curve"
        )
        assert rejected.original_size == "20 samples × 4 concentrations"

    def test_disabled_segmentation_rejects_oversized(self, large_matrix_grid):
        cfg = get_detection_settings({"enable_matrix_segmentation": False})
        grid, candidate = _block(large_matrix_grid)
        result = BiologicalSegmenter.segment(grid, candidate, settings=cfg)

        assert result.candidates == []
        assert result.rejected[0].reason == BiologicalSegmenter.OVERSIZED
        assert result.rejected[0].original_size == "51 samples × 10 concentrations"
        assert result.stats.rejected_count == 1

    def test_small_candidate_is_kept_whole(self, make_matrix):
        grid, candidate = _block(make_matrix(3, 8))
        result = BiologicalSegmenter.segment(grid, candidate)

        assert len(result.candidates) == 1
        assert result.candidates[0].id == candidate.id
        assert result.candidates[0].biological_confidence == pytest.approx(0.8)

    def test_min_samples_rejects_small_segments(self, large_matrix_grid, replicate_grid):
        cfg = get_detection_settings({"min_samples": 2})

        grid, candidate = _block(large_matrix_grid)
        singles = BiologicalSegmenter.segment(grid, candidate, settings=cfg)
        assert singles.candidates == []
        assert len(singles.rejected) == 51
        assert singles.rejected[0].reason == "Too few samples (n < 2) - no response data to fit"
        assert singles.rejected[0].original_size == "1 samples × 10 concentrations"
        assert singles.stats.rejected_count == 51

        grid, candidate = _block(replicate_grid)
        groups = BiologicalSegmenter.segment(grid, candidate, settings=cfg)
        assert [c.name for c in groups.candidates] == ["A", "B", "C"]

    def test_candidate_without_samples_is_rejected(self, tce_grid):
        grid, candidate = _block(tce_grid)
        bare = candidate.model_copy(update={"response_axes": []})
        result = BiologicalSegmenter.segment(grid, bare)

        assert result.candidates == []
        assert result.rejected[0].reason == "Too few samples (n < 1) - no response data to fit"
        assert result.rejected[0].original_size == "0 samples × 4 concentrations"
        assert BiologicalSegmenter.reject_if_too_few_samples(candidate, 4, get_detection_settings()) is None


class TestOrientationChoice:
    def _assert_disjoint(self, candidates):
        boxes = [c.bounding_box for c in candidates]
        for i, box in enumerate(boxes):
            assert all(not box.overlaps(other) for other in boxes[i + 1 :])

    def test_horizontal_matrix_is_split_by_rows(self, make_matrix):
        rows = [list(col) for col in zip(*make_matrix(51, 10))]
        grid, candidate = _block(rows)
        assert candidate.orientation == Orientation.HORIZONTAL

        result = BiologicalSegmenter.segment(grid, candidate)

        assert len(result.candidates) == 51
        assert result.stats.strategy == "horizontal-individual"
        first = result.candidates[0]
        assert first.name == "Cmpd1"
        assert first.response_axes == [1]
        assert first.bounding_box == BoundingBox(
            start_row=1, end_row=1, start_col=candidate.data_start, end_col=candidate.data_end
        )
        self._assert_disjoint(result.candidates)

    def test_ambiguous_block_keeps_reading_with_higher_biological_confidence(self, replicate_grid):
        grid, candidate = _block(replicate_grid)
        # same columns walked right to left: no replicate run lines up any more
        alternative = candidate.model_copy(
            update={"id": "alt", "response_axes": list(reversed(candidate.response_axes))}
        )

        result = BiologicalSegmenter.segment(grid, candidate, alternative=alternative)

        assert len(result.candidates) == 9
        assert all(c.id.startswith("alt-s") for c in result.candidates)
        assert all(c.biological_confidence == pytest.approx(1.0) for c in result.candidates)
        assert result.stats.strategy == "vertical-individual"
        self._assert_disjoint(result.candidates)

    def test_ambiguous_tie_keeps_primary_reading(self, replicate_grid):
        grid, candidate = _block(replicate_grid)
        twin = candidate.model_copy(update={"id": "twin"})

        result = BiologicalSegmenter.segment(grid, candidate, alternative=twin)

        assert [c.name for c in result.candidates] == ["A", "B", "C"]
        assert all(c.id.startswith(f"{candidate.id}-s") for c in result.candidates)
        assert result.stats.strategy == "vertical-replicate-groups"
        self._assert_disjoint(result.candidates)
