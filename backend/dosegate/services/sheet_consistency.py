"""
Layout consistency across the sheets of one workbook.

Plate exports often repeat the same layout on every sheet (one plate per
sheet). Each sheet is reduced to the pattern of its best candidate, the most
confident pattern becomes the reference, and every sheet is compared with it:

- header and concentration axis positions may drift by one line
- response count and orientation must match exactly
- a pattern below the reliability floor is flagged on its own

The workbook counts as consistent when at least 80% of the sheets match and
the mean confidence reaches 0.4.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from shared.models.dose_response import (
    DetectionResult,
    SheetPattern,
    SheetPatternDifference,
    WorkbookConsistency,
)
from shared.utils.app_logger import get_logger

logger = get_logger(__name__)

RELIABLE_CONFIDENCE = 0.3
CONSISTENT_RATIO = 0.8
CONSISTENT_CONFIDENCE = 0.4
POSITION_TOLERANCE = 1


class SheetConsistencyAnalyzer:
    """Compares per-sheet detection results."""

    @classmethod
    def pattern_for(cls, sheet_name: str, result: DetectionResult) -> SheetPattern:
        if not result.candidates:
            issues = [issue.message for issue in result.issues] or ["No dose-response dataset detected"]
            return SheetPattern(sheet_name=sheet_name, issues=issues)

        best = result.candidates[0]
        return SheetPattern(
            sheet_name=sheet_name,
            header_index=best.header_index,
            concentration_index=best.concentration_axis.index if best.concentration_axis else None,
            response_count=best.sample_count,
            orientation=best.orientation,
            confidence=best.confidence,
            issues=[issue.message for issue in best.issues],
        )

    @classmethod
    def compare(cls, patterns: Sequence[SheetPattern]) -> WorkbookConsistency:
        if not patterns:
            return cls._explained(WorkbookConsistency())

        if len(patterns) == 1:
            only = patterns[0]
            return cls._explained(
                WorkbookConsistency(
                    is_consistent=True,
                    confidence=only.confidence,
                    reference_sheet=only.sheet_name,
                    common_pattern=only,
                )
            )

        # first sheet wins ties
        reference = patterns[0]
        for pattern in patterns[1:]:
            if pattern.confidence > reference.confidence:
                reference = pattern

        if reference.confidence < RELIABLE_CONFIDENCE:
            return cls._explained(
                WorkbookConsistency(
                    reference_sheet=reference.sheet_name,
                    differences=[
                        SheetPatternDifference(
                            sheet_name=p.sheet_name,
                            pattern=p,
                            issues=p.issues or ["Low confidence pattern detection"],
                        )
                        for p in patterns
                    ],
                )
            )

        differences: List[SheetPatternDifference] = []
        consistent = 0
        for pattern in patterns:
            issues = cls._differences(pattern, reference)
            if issues:
                differences.append(SheetPatternDifference(sheet_name=pattern.sheet_name, pattern=pattern, issues=issues))
            else:
                consistent += 1

        mean_confidence = sum(p.confidence for p in patterns) / len(patterns)
        is_consistent = consistent / len(patterns) >= CONSISTENT_RATIO and mean_confidence >= CONSISTENT_CONFIDENCE
        logger.info(
            f"Workbook consistency: {consistent}/{len(patterns)} sheets match {reference.sheet_name!r} "
            f"(mean confidence {mean_confidence:.2f})"
        )
        return cls._explained(
            WorkbookConsistency(
                is_consistent=is_consistent,
                confidence=mean_confidence,
                reference_sheet=reference.sheet_name,
                common_pattern=reference if is_consistent else None,
                differences=differences,
            )
        )

    @staticmethod
    def _position(value: Optional[int]) -> int:
        return -1 if value is None else value

    @classmethod
    def _differences(cls, pattern: SheetPattern, reference: SheetPattern) -> List[str]:
        issues: List[str] = []
        header, ref_header = cls._position(pattern.header_index), cls._position(reference.header_index)
        if abs(header - ref_header) > POSITION_TOLERANCE:
            issues.append(f"Header row differs: {header} vs {ref_header}")

        conc, ref_conc = cls._position(pattern.concentration_index), cls._position(reference.concentration_index)
        if abs(conc - ref_conc) > POSITION_TOLERANCE:
            issues.append(f"Concentration column differs: {conc} vs {ref_conc}")

        if pattern.response_count != reference.response_count:
            issues.append(
                f"Different number of response columns: {pattern.response_count} vs {reference.response_count}"
            )

        if pattern.orientation != reference.orientation:
            mine = pattern.orientation.value if pattern.orientation else "unknown"
            theirs = reference.orientation.value if reference.orientation else "unknown"
            issues.append(f"Different layout: {mine} vs {theirs}")

        if pattern.confidence < RELIABLE_CONFIDENCE:
            issues.append(f"Low confidence: {pattern.confidence:.2f}")
        return issues

    @classmethod
    def _explained(cls, consistency: WorkbookConsistency) -> WorkbookConsistency:
        consistency.explanations = cls.explain(consistency)
        return consistency

    @staticmethod
    def explain(consistency: WorkbookConsistency) -> List[str]:
        """User-facing summary of why sheets cannot share one layout."""
        if consistency.is_consistent:
            return ["All sheets have consistent data patterns and can be processed together."]
        if not consistency.differences:
            return ["No reliable data patterns detected in the selected sheets."]

        issues = [issue for diff in consistency.differences for issue in diff.issues]
        explanations: List[str] = []
        if any("Header row" in issue for issue in issues):
            explanations.append("Sheets have headers in different rows.")
        if any("Concentration column" in issue for issue in issues):
            explanations.append("Concentration data is in different columns across sheets.")
        if any("response columns" in issue for issue in issues):
            explanations.append("Sheets have different numbers of response columns.")
        if any("layout" in issue for issue in issues):
            explanations.append("Sheets have different data layouts (vertical vs horizontal).")
        if any("confidence" in issue.lower() for issue in issues):
            explanations.append("Some sheets have unclear or ambiguous data patterns.")
        explanations.append("Each sheet will need individual pattern configuration.")
        return explanations
