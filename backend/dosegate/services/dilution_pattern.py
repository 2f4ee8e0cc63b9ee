"""
Dilution series classification.

Given the concentrations of one axis (already normalized to nM), decide which
dilution scheme produced them: serial (2x/3x/5x), log-scale (10x), half-log
(sqrt(10)x), custom constant ratio, irregular, or unknown. Besides the type,
report ratio statistics, the covered range, points that look missing from the
geometric sequence, and human readable irregularities.

Pure and deterministic: identical input always yields an identical pattern.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
import statistics
from typing import Any, List, Optional, Sequence, Tuple, Union

from shared.config.settings import DetectionSettings, get_detection_settings
from shared.models.dose_response import ConcentrationRange, DilutionPattern, DilutionPatternType


# Hard stop for the expected-sequence generator
_MAX_EXPECTED_POINTS = 512


@dataclass(frozen=True)
class ConcentrationSeries:
    """Positive finite nM values in axis order, plus the grid indices they came from."""

    values: Tuple[float, ...]
    indices: Tuple[int, ...]

    @classmethod
    def from_values(
        cls,
        values: Sequence[Any],
        indices: Optional[Sequence[int]] = None,
    ) -> "ConcentrationSeries":
        """Drop NaN, infinite, zero and negative entries instead of coercing them."""
        source_indices = list(indices) if indices is not None else list(range(len(values)))
        kept_values: List[float] = []
        kept_indices: List[int] = []
        for value, index in zip(values, source_indices):
            if _is_positive_finite(value):
                kept_values.append(float(value))
                kept_indices.append(index)
        return cls(values=tuple(kept_values), indices=tuple(kept_indices))

    def __len__(self) -> int:
        return len(self.values)


def _is_positive_finite(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(number) and number > 0


class DilutionPatternAnalyzer:
    """Classifies concentration series into dilution schemes."""

    INSUFFICIENT_POINTS = "Insufficient valid data points for pattern analysis"
    TWO_POINTS = "Insufficient data points for pattern analysis (only 2 available, at least 3 required)"

    @classmethod
    def analyze(
        cls,
        concentrations: Union[ConcentrationSeries, Sequence[Any]],
        *,
        settings: Optional[DetectionSettings] = None,
    ) -> DilutionPattern:
        cfg = settings or get_detection_settings()
        series = (
            concentrations
            if isinstance(concentrations, ConcentrationSeries)
            else ConcentrationSeries.from_values(concentrations)
        )
        ordered = list(series.values)
        values = sorted(ordered, reverse=True)

        if len(values) < 2:
            return DilutionPattern(
                type=DilutionPatternType.UNKNOWN,
                confidence=0.0,
                irregularities=[cls.INSUFFICIENT_POINTS],
            )

        value_range = cls._range(values)
        if len(values) == 2:
            return DilutionPattern(
                type=DilutionPatternType.UNKNOWN,
                confidence=cfg.two_point_confidence,
                detected_ratio=values[0] / values[1],
                range=value_range,
                irregularities=[cls.TWO_POINTS],
            )

        ratios = [values[i] / values[i + 1] for i in range(len(values) - 1)]
        mean_ratio = statistics.fmean(ratios)
        cv = statistics.pstdev(ratios) / mean_ratio if mean_ratio > 0 else math.inf
        consistency = max(0.0, 1.0 - cv) if math.isfinite(cv) else 0.0

        pattern_type, factor, confidence = cls._classify(ratios, mean_ratio, cv, value_range, cfg)

        missing: List[int] = []
        if factor is not None and pattern_type in (DilutionPatternType.SERIAL, DilutionPatternType.LOG_SCALE):
            missing = cls.find_missing_points(values, factor, tolerance=cfg.dilution_tolerance)

        irregularities: List[str] = []
        if cv > cfg.high_variation_cv:
            irregularities.append(f"High variation in dilution ratios (CV: {cv * 100:.1f}%)")
        if mean_ratio < 1.0 + cfg.dilution_tolerance:
            irregularities.append("Concentrations barely change between consecutive points")
        if cls._changes_direction(ordered):
            irregularities.append("Some concentrations increase instead of decrease")

        return DilutionPattern(
            type=pattern_type,
            factor=factor,
            confidence=_clamp(confidence),
            detected_ratio=mean_ratio,
            range=value_range,
            consistency=_clamp(consistency),
            missing_points=missing,
            irregularities=irregularities,
        )

    @classmethod
    def _classify(
        cls,
        ratios: List[float],
        mean_ratio: float,
        cv: float,
        value_range: ConcentrationRange,
        cfg: DetectionSettings,
    ) -> Tuple[DilutionPatternType, Optional[float], float]:
        # A scattered ratio sequence never counts as a constant-factor dilution,
        # even when its mean happens to land near a canonical factor.
        if cv >= cfg.custom_cv_threshold:
            return DilutionPatternType.IRREGULAR, None, cfg.irregular_confidence
        if mean_ratio < 1.0 + cfg.dilution_tolerance:
            return DilutionPatternType.IRREGULAR, None, cfg.irregular_confidence

        match = cls._match_canonical_ratio(mean_ratio, cfg)
        if match is not None:
            ratio, deviation = match
            confidence = 1.0 - deviation / cfg.dilution_tolerance
            return cls._type_for_ratio(ratio), ratio, confidence

        if value_range.order_of_magnitude >= 2:
            mean_log_step = statistics.fmean(math.log10(r) for r in ratios)
            distance = abs(mean_log_step - 1.0)
            if distance < cfg.log_ratio_tolerance:
                return DilutionPatternType.LOG_SCALE, 10.0, 1.0 - distance / cfg.log_ratio_tolerance

        return DilutionPatternType.CUSTOM, None, 1.0 - cv / cfg.custom_cv_threshold

    @staticmethod
    def _match_canonical_ratio(mean_ratio: float, cfg: DetectionSettings) -> Optional[Tuple[float, float]]:
        """Closest canonical factor within tolerance; ties keep list order."""
        best: Optional[Tuple[float, float]] = None
        for ratio in cfg.common_dilution_ratios:
            deviation = abs(mean_ratio - ratio) / ratio
            if deviation >= cfg.dilution_tolerance:
                continue
            if best is None or deviation < best[1]:
                best = (ratio, deviation)
        return best

    @staticmethod
    def _type_for_ratio(ratio: float) -> DilutionPatternType:
        if ratio == 10:
            return DilutionPatternType.LOG_SCALE
        if abs(ratio - math.sqrt(10.0)) < 0.01:
            return DilutionPatternType.HALF_LOG
        return DilutionPatternType.SERIAL

    @staticmethod
    def _range(values: Sequence[float]) -> ConcentrationRange:
        low, high = min(values), max(values)
        return ConcentrationRange(min=low, max=high, order_of_magnitude=math.log10(high / low))

    @staticmethod
    def _changes_direction(ordered: Sequence[float]) -> bool:
        """True when the series (in axis order) steps both up and down."""
        falling = rising = False
        for current, following in zip(ordered, ordered[1:]):
            if following < current:
                falling = True
            elif following > current:
                rising = True
        return falling and rising

    @staticmethod
    def find_missing_points(values: Sequence[float], factor: float, *, tolerance: float = 0.15) -> List[int]:
        """Indices of the expected geometric sequence (max down to min at
        ``factor``) that no observed value matches within ``tolerance``."""
        if not values or factor <= 1:
            return []
        high, low = max(values), min(values)
        missing: List[int] = []
        current = high
        index = 0
        while current >= low * (1.0 - tolerance) and index < _MAX_EXPECTED_POINTS:
            if not any(abs(observed - current) / current <= tolerance for observed in values):
                missing.append(index)
            current /= factor
            index += 1
        return missing


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if not math.isfinite(value):
        return low
    return max(low, min(high, value))
