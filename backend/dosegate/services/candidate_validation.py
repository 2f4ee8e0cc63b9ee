"""
Candidate validation.

Every candidate passes through ``CandidateValidator.validate`` before final
ranking. Validation never rejects a candidate on its own; it appends issues
and scales the confidence down with a fixed multiplier per issue class.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from shared.models.dose_response import (
    CellKind,
    DatasetCandidate,
    DetectionIssue,
    DilutionPatternType,
    IssueSeverity,
)

from dosegate.services.cell_classifier import ClassifiedGrid
from dosegate.services.data_extraction import axis_cell, data_lines

MIN_DATA_ROWS = 3
NARROW_RANGE_ORDERS = 2.0
WIDE_RANGE_ORDERS = 6.0


@dataclass
class ValidationOutcome:
    issues: List[DetectionIssue] = field(default_factory=list)
    multiplier: float = 1.0

    def add(self, severity: IssueSeverity, message: str, suggestion: str, factor: float = 1.0) -> None:
        self.issues.append(DetectionIssue(severity=severity, message=message, suggestion=suggestion))
        self.multiplier *= factor


class CandidateValidator:
    @classmethod
    def check(cls, grid: ClassifiedGrid, candidate: DatasetCandidate) -> ValidationOutcome:
        outcome = ValidationOutcome()

        if candidate.concentration_axis is None:
            outcome.add(
                IssueSeverity.ERROR,
                "Could not detect concentration axis",
                'Give the concentration column a clear header with units (e.g. "Concentration [nM]") '
                "or use a recognizable dilution series",
                0.3,
            )
        if not candidate.response_axes:
            outcome.add(
                IssueSeverity.ERROR,
                "Could not detect any response axes",
                "Make sure response columns have headers and contain numeric data",
                0.3,
            )

        rows = candidate.concentration_count
        if rows < MIN_DATA_ROWS:
            outcome.add(
                IssueSeverity.WARNING,
                f"Only {rows} data rows detected. Need at least {MIN_DATA_ROWS} concentration points for curve fitting",
                "Add more concentration points for better curve fitting",
                0.8,
            )

        pattern = candidate.dilution_pattern
        if pattern is not None:
            if pattern.confidence < 0.5:
                outcome.add(
                    IssueSeverity.WARNING,
                    f"Low confidence in dilution pattern detection ({pattern.confidence * 100:.1f}%)",
                    "Verify that concentrations follow a consistent dilution scheme",
                    0.9,
                )
            if pattern.type == DilutionPatternType.IRREGULAR:
                outcome.add(
                    IssueSeverity.WARNING,
                    "Irregular dilution pattern detected",
                    "Standard dilution ratios (2-fold, 3-fold, 10-fold) give more reliable analysis",
                    0.8,
                )
            if pattern.missing_points:
                outcome.add(
                    IssueSeverity.INFO,
                    f"{len(pattern.missing_points)} expected concentration points appear to be missing",
                    "Add the missing concentration points for complete dose-response coverage",
                )
            if pattern.irregularities:
                for irregularity in pattern.irregularities:
                    outcome.add(
                        IssueSeverity.WARNING,
                        f"Pattern irregularity: {irregularity}",
                        "Review concentration values for consistency",
                    )
                outcome.multiplier *= 0.9

            orders = pattern.range.order_of_magnitude
            if pattern.detected_ratio is not None and orders < NARROW_RANGE_ORDERS:
                outcome.add(
                    IssueSeverity.INFO,
                    f"Narrow concentration range detected ({orders:.1f} orders of magnitude)",
                    "A wider concentration range characterizes the dose-response better",
                )
            if orders > WIDE_RANGE_ORDERS:
                outcome.add(
                    IssueSeverity.WARNING,
                    f"Very wide concentration range detected ({orders:.1f} orders of magnitude)",
                    "Verify concentration values; extremely wide ranges often mean data entry errors",
                    0.95,
                )

        missing = cls.count_missing_concentrations(grid, candidate)
        if missing:
            outcome.add(
                IssueSeverity.WARNING,
                f"{missing} missing concentration values detected",
                "Fill in missing concentration values or remove incomplete rows",
                0.9,
            )
        return outcome

    @staticmethod
    def count_missing_concentrations(grid: ClassifiedGrid, candidate: DatasetCandidate) -> int:
        axis = candidate.concentration_axis
        if axis is None:
            return 0
        missing = 0
        for line in data_lines(candidate):
            cell = axis_cell(grid, candidate, line, axis.index)
            if cell is None or cell.kind in (CellKind.EMPTY, CellKind.ERROR):
                missing += 1
        return missing

    @classmethod
    def validate(cls, grid: ClassifiedGrid, candidate: DatasetCandidate) -> DatasetCandidate:
        """Return ``candidate`` with validation issues appended and confidence scaled."""
        outcome = cls.check(grid, candidate)
        if not outcome.issues:
            return candidate
        return candidate.model_copy(
            update={
                "issues": [*candidate.issues, *outcome.issues],
                "confidence": max(0.0, min(1.0, candidate.confidence * outcome.multiplier)),
            }
        )
