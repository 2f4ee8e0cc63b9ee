import math

import pytest

from dosegate.services.dilution_pattern import ConcentrationSeries, DilutionPatternAnalyzer
from shared.config.settings import get_detection_settings
from shared.models.dose_response import DilutionPatternType


class TestCanonicalDilutions:
    def test_three_fold_serial(self):
        pattern = DilutionPatternAnalyzer.analyze([1000, 333.33, 111.11, 37.04, 12.35])
        assert pattern.type == DilutionPatternType.SERIAL
        assert pattern.factor == pytest.approx(3, abs=0.1)
        assert pattern.confidence > 0.8
        assert pattern.irregularities == []

    def test_two_fold_serial(self):
        pattern = DilutionPatternAnalyzer.analyze([64, 32, 16, 8, 4, 2, 1])
        assert pattern.type == DilutionPatternType.SERIAL
        assert pattern.factor == 2.0
        assert pattern.missing_points == []

    def test_log_scale(self):
        pattern = DilutionPatternAnalyzer.analyze([10000, 1000, 100, 10, 1])
        assert pattern.type == DilutionPatternType.LOG_SCALE
        assert pattern.factor == 10
        assert pattern.confidence > 0.9
        assert pattern.range.order_of_magnitude == pytest.approx(4.0)
        assert pattern.consistency == pytest.approx(1.0)

    def test_half_log_is_not_read_as_three_fold(self):
        pattern = DilutionPatternAnalyzer.analyze([100, 31.62, 10, 3.162, 1])
        assert pattern.type == DilutionPatternType.HALF_LOG
        assert pattern.factor == pytest.approx(3.162, abs=0.01)

    def test_ascending_order_is_classified_the_same(self):
        descending = DilutionPatternAnalyzer.analyze([10000, 1000, 100, 10, 1])
        ascending = DilutionPatternAnalyzer.analyze([1, 10, 100, 1000, 10000])
        assert ascending.type == descending.type
        assert ascending.confidence == descending.confidence

    def test_constant_custom_ratio(self):
        pattern = DilutionPatternAnalyzer.analyze([1000, 250 * 1.6, 160, 64, 25.6])
        assert pattern.type == DilutionPatternType.CUSTOM
        assert pattern.factor is None
        assert pattern.detected_ratio == pytest.approx(2.5)


class TestDegenerateSeries:
    def test_two_points_are_insufficient(self):
        pattern = DilutionPatternAnalyzer.analyze([100, 10])
        assert pattern.type == DilutionPatternType.UNKNOWN
        assert pattern.confidence == 0
        assert pattern.detected_ratio == pytest.approx(10)
        assert any("insufficient" in issue.lower() for issue in pattern.irregularities)

    @pytest.mark.parametrize("values", [[], [5], [None, "x", -1, 0, 7]])
    def test_fewer_than_two_points(self, values):
        pattern = DilutionPatternAnalyzer.analyze(values)
        assert pattern.type == DilutionPatternType.UNKNOWN
        assert pattern.confidence == 0

    @pytest.mark.parametrize("length", [0, 1, 2])
    def test_short_series_never_claims_a_dilution(self, length):
        pattern = DilutionPatternAnalyzer.analyze([1000, 100][:length])
        assert pattern.type not in (DilutionPatternType.SERIAL, DilutionPatternType.LOG_SCALE)

    def test_invalid_entries_are_dropped_not_coerced(self):
        series = ConcentrationSeries.from_values([100, math.nan, 10, -5, 0, 1, math.inf], indices=range(10, 17))
        assert series.values == (100.0, 10.0, 1.0)
        assert series.indices == (10, 12, 15)

    def test_two_point_confidence_is_configurable(self):
        cfg = get_detection_settings({"two_point_confidence": 0.1})
        assert DilutionPatternAnalyzer.analyze([100, 10], settings=cfg).confidence == pytest.approx(0.1)


class TestIrregularSeries:
    def test_scattered_ratios_are_irregular(self):
        pattern = DilutionPatternAnalyzer.analyze([1000, 500, 300, 50, 5])
        assert pattern.type == DilutionPatternType.IRREGULAR
        assert pattern.confidence < 0.5
        assert pattern.irregularities
        assert pattern.irregularities[0].startswith("High variation in dilution ratios")

    def test_flat_series_is_irregular(self):
        pattern = DilutionPatternAnalyzer.analyze([90, 88, 85, 87])
        assert pattern.type == DilutionPatternType.IRREGULAR
        assert "Concentrations barely change between consecutive points" in pattern.irregularities

    def test_direction_change_is_reported(self):
        pattern = DilutionPatternAnalyzer.analyze([100, 10, 1000, 1])
        assert "Some concentrations increase instead of decrease" in pattern.irregularities

    def test_analysis_is_deterministic(self):
        values = [1000, 500, 300, 50, 5]
        assert DilutionPatternAnalyzer.analyze(values) == DilutionPatternAnalyzer.analyze(values)


class TestMissingPoints:
    def test_gap_in_two_fold_series(self):
        missing = DilutionPatternAnalyzer.find_missing_points([1000, 500, 125, 62.5], 2.0)
        assert missing == [2]

    def test_complete_series_has_no_missing_points(self):
        assert DilutionPatternAnalyzer.find_missing_points([8, 4, 2, 1], 2.0) == []
        assert DilutionPatternAnalyzer.find_missing_points([1000, 100, 10, 1], 10.0) == []
