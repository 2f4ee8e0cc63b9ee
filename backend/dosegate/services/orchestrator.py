"""
🔥 THINK ULTRA! Dose-response detection orchestrator

Runs the whole inference pipeline over one sheet:

    classify cells -> segment regions -> detect layout per region (both
    orientations) -> split oversized matrices -> validate -> rank ->
    drop overlapping candidates -> cap the result

``DoseResponseDetector.analyze`` is the single entry point and never raises
for malformed input. Failures inside one block are converted into a
zero-confidence fallback candidate with an error issue; other blocks are
unaffected.

``analyze_workbook`` runs the same pipeline per sheet and reports whether
the sheets share one layout.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from shared.config.settings import DetectionSettings, get_detection_settings
from shared.config.vocabulary import DEFAULT_VOCABULARY, DetectionVocabulary
from shared.models.dose_response import (
    BoundingBox,
    DatasetCandidate,
    DetectionIssue,
    DetectionResult,
    IssueSeverity,
    RegionSegmentation,
    RejectedDataset,
    SegmentationStats,
    SheetDetectionResult,
    WorkbookDetectionResult,
)
from shared.utils.app_logger import get_logger

from dosegate.services.biological_segmenter import BiologicalSegmenter
from dosegate.services.candidate_validation import CandidateValidator
from dosegate.services.cell_classifier import CellClassifier, ClassifiedGrid
from dosegate.services.data_extraction import concentration_points
from dosegate.services.detection_trace import DetectionObserver, TraceEmitter
from dosegate.services.layout_detector import LayoutDetection, LayoutDetector
from dosegate.services.region_segmenter import RegionSegmenter
from dosegate.services.sheet_consistency import SheetConsistencyAnalyzer

logger = get_logger(__name__)

# Orientation scores closer than this are treated as ambiguous when splitting
# an oversized block; both readings are then segmented and compared.
AMBIGUITY_MARGIN = 0.05


class DoseResponseDetector:
    """Entry points of the layout inference engine."""

    @classmethod
    def analyze(
        cls,
        grid: Any,
        *,
        settings: Optional[DetectionSettings] = None,
        vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
        observer: Optional[DetectionObserver] = None,
    ) -> DetectionResult:
        """Find every dose-response dataset in ``grid``.

        Args:
            grid: Rows of raw cell values (numbers, strings, dates, None).
                Jagged rows are padded with empty cells.
            settings: Detection thresholds. Defaults to the configured ones.
            vocabulary: Keywords, unit table and label patterns.
            observer: Optional callable receiving ``TraceEvent`` objects.

        Returns:
            DetectionResult with candidates ranked by confidence.
        """
        cfg = settings or get_detection_settings()
        trace = TraceEmitter(observer)

        try:
            classified = CellClassifier.classify_grid(grid, vocabulary)
        except Exception as e:
            logger.warning(f"Rejected malformed grid: {e}")
            return cls._finish(
                DetectionResult(
                    issues=[
                        DetectionIssue(
                            severity=IssueSeverity.ERROR,
                            message=f"Invalid grid: {e}",
                            suggestion="Pass the sheet as a list of rows",
                        )
                    ]
                ),
                trace,
            )

        if not any(classified.filled(r, c) for r in range(classified.n_rows) for c in range(classified.n_cols)):
            return cls._finish(
                DetectionResult(
                    issues=[
                        DetectionIssue(
                            severity=IssueSeverity.ERROR,
                            message="Sheet is empty",
                            suggestion="Upload a sheet that contains dose-response data",
                        )
                    ]
                ),
                trace,
            )

        try:
            segmentation = RegionSegmenter.segment(classified, settings=cfg, trace=trace)
        except Exception as e:
            logger.exception("Region segmentation failed")
            box = BoundingBox(
                start_row=0,
                end_row=max(classified.n_rows - 1, 0),
                start_col=0,
                end_col=max(classified.n_cols - 1, 0),
            )
            return cls._finish(
                DetectionResult(
                    candidates=[cls._fallback_candidate("sheet", box, e)],
                    issues=[cls._failure_issue("Region segmentation", e)],
                ),
                trace,
            )

        candidates: List[DatasetCandidate] = []
        rejected: List[RejectedDataset] = []
        issues: List[DetectionIssue] = list(segmentation.issues)
        stats = SegmentationStats()
        strategies: List[str] = []

        for index, region in enumerate(segmentation.regions):
            base_id = f"region-{index + 1}"
            try:
                block, block_rejected, block_stats = cls._analyze_block(
                    classified, region.bounding_box, base_id, cfg, vocabulary, trace
                )
            except Exception as e:
                logger.exception(f"Layout detection failed for {base_id}")
                candidates.append(cls._fallback_candidate(base_id, region.bounding_box, e))
                issues.append(cls._failure_issue(f"Block {base_id}", e))
                continue
            candidates.extend(block)
            rejected.extend(block_rejected)
            if block_stats is not None:
                stats.original_count += block_stats.original_count
                stats.segmented_count += block_stats.segmented_count
                stats.rejected_count += block_stats.rejected_count
                if block_stats.strategy not in strategies:
                    strategies.append(block_stats.strategy)
        stats.strategy = ",".join(strategies) if strategies else "none"

        ranked = cls.rank_and_filter(candidates, cfg, trace)
        if not ranked:
            issues.append(
                DetectionIssue(
                    severity=IssueSeverity.WARNING,
                    message="No dose-response datasets detected",
                    suggestion="Check that the sheet has a concentration column and numeric response columns",
                )
            )

        result = DetectionResult(
            candidates=ranked,
            issues=issues,
            rejected=rejected,
            layout_type=segmentation.layout_type,
            boundaries=segmentation.boundaries,
            metadata=cls._metadata(classified, segmentation, stats, len(candidates)),
        )
        return cls._finish(result, trace)

    @classmethod
    def analyze_gate(
        cls,
        grid: Any,
        gate: BoundingBox,
        *,
        settings: Optional[DetectionSettings] = None,
        vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
        observer: Optional[DetectionObserver] = None,
    ) -> DetectionResult:
        """Detect one dataset inside a user-drawn gate.

        Region segmentation and matrix splitting are skipped; the gate is the
        block. A gate outside the grid yields an empty result with an error.
        """
        cfg = settings or get_detection_settings()
        trace = TraceEmitter(observer)

        try:
            classified = CellClassifier.classify_grid(grid, vocabulary)
        except Exception as e:
            logger.warning(f"Rejected malformed grid: {e}")
            return cls._finish(DetectionResult(issues=[cls._failure_issue("Grid parsing", e)]), trace)

        if gate.end_row >= classified.n_rows or gate.end_col >= classified.n_cols:
            return cls._finish(
                DetectionResult(
                    issues=[
                        DetectionIssue(
                            severity=IssueSeverity.ERROR,
                            message=(
                                f"Gate {gate.model_dump()} lies outside the "
                                f"{classified.n_rows}x{classified.n_cols} grid"
                            ),
                            suggestion="Draw the gate inside the sheet",
                        )
                    ]
                ),
                trace,
            )

        try:
            detection = LayoutDetector.detect(
                classified, gate, settings=cfg, vocabulary=vocabulary, trace=trace, candidate_id="gate"
            )
            concentrations = len(concentration_points(classified, detection.candidate, vocabulary))
            too_few = BiologicalSegmenter.reject_if_too_few_samples(detection.candidate, concentrations, cfg)
            candidate = (
                None
                if too_few is not None
                else cls._finalize_unsegmented(classified, detection.candidate, cfg, vocabulary)
            )
        except Exception as e:
            logger.exception("Gate analysis failed")
            return cls._finish(
                DetectionResult(
                    candidates=[cls._fallback_candidate("gate", gate, e)],
                    issues=[cls._failure_issue("Gate analysis", e)],
                    metadata={"gate": gate.model_dump()},
                ),
                trace,
            )

        metadata = {"gate": gate.model_dump(), "grid_rows": classified.n_rows, "grid_cols": classified.n_cols}
        if candidate is None:
            trace.emit("biology", "candidate.rejected", name=too_few.name, reason=too_few.reason)
            return cls._finish(
                DetectionResult(
                    rejected=[too_few],
                    issues=[
                        DetectionIssue(
                            severity=IssueSeverity.WARNING,
                            message="No dose-response datasets detected",
                            suggestion="Include the response columns in the gate",
                        )
                    ],
                    metadata=metadata,
                ),
                trace,
            )

        candidate = cls._named([candidate])[0]
        trace.emit("orchestrator", "candidate.accepted", candidate=candidate.id, confidence=candidate.confidence)
        return cls._finish(DetectionResult(candidates=[candidate], metadata=metadata), trace)

    @classmethod
    def analyze_workbook(
        cls,
        sheets: Sequence[Tuple[str, Any]],
        *,
        gate: Optional[BoundingBox] = None,
        settings: Optional[DetectionSettings] = None,
        vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
        observer: Optional[DetectionObserver] = None,
    ) -> WorkbookDetectionResult:
        """Analyze every ``(sheet_name, grid)`` pair and compare their layouts.

        With ``gate`` the same gate is applied to each sheet, clipped to the
        sheet's extent. Candidate names are prefixed with the sheet name so
        they stay unique across the workbook.
        """
        cfg = settings or get_detection_settings()
        trace = TraceEmitter(observer)

        sheet_results: List[SheetDetectionResult] = []
        for sheet_name, grid in sheets:
            if gate is None:
                result = cls.analyze(grid, settings=cfg, vocabulary=vocabulary, observer=observer)
            else:
                result = cls._analyze_sheet_gate(grid, gate, cfg, vocabulary, observer)
            result.candidates = [
                c.model_copy(update={"name": f"{sheet_name} - {c.name}"}) for c in result.candidates
            ]
            trace.emit("orchestrator", "sheet.analyzed", sheet=sheet_name, candidates=len(result.candidates))
            sheet_results.append(SheetDetectionResult(sheet_name=sheet_name, result=result))

        consistency = SheetConsistencyAnalyzer.compare(
            [SheetConsistencyAnalyzer.pattern_for(s.sheet_name, s.result) for s in sheet_results]
        )
        issues: List[DetectionIssue] = []
        if not sheet_results:
            issues.append(
                DetectionIssue(
                    severity=IssueSeverity.ERROR,
                    message="Workbook has no sheets to analyze",
                    suggestion="Select at least one sheet",
                )
            )
        elif not consistency.is_consistent and len(sheet_results) > 1:
            issues.append(
                DetectionIssue(
                    severity=IssueSeverity.WARNING,
                    message=(
                        f"Sheet layouts differ from {consistency.reference_sheet!r} in "
                        f"{len(consistency.differences)} of {len(sheet_results)} sheets"
                    ),
                    suggestion="Each sheet will need individual pattern configuration",
                )
            )

        logger.info(
            f"Workbook analysis: {len(sheet_results)} sheets, consistent={consistency.is_consistent}"
        )
        return WorkbookDetectionResult(
            sheets=sheet_results,
            consistency=consistency,
            issues=issues,
            metadata={
                "sheet_count": len(sheet_results),
                "candidate_count": sum(len(s.result.candidates) for s in sheet_results),
                "gate": gate.model_dump() if gate is not None else None,
            },
        )

    @classmethod
    def _analyze_sheet_gate(
        cls,
        grid: Any,
        gate: BoundingBox,
        cfg: DetectionSettings,
        vocabulary: DetectionVocabulary,
        observer: Optional[DetectionObserver],
    ) -> DetectionResult:
        rows = len(grid) if isinstance(grid, (list, tuple)) else 0
        cols = max((len(r) for r in grid if isinstance(r, (list, tuple))), default=0) if rows else 0
        if rows == 0 or cols == 0:
            return DetectionResult(
                issues=[
                    DetectionIssue(
                        severity=IssueSeverity.ERROR,
                        message="Sheet is empty",
                        suggestion="Remove the sheet from the selection",
                    )
                ]
            )
        clipped = BoundingBox(
            start_row=min(gate.start_row, rows - 1),
            end_row=min(gate.end_row, rows - 1),
            start_col=min(gate.start_col, cols - 1),
            end_col=min(gate.end_col, cols - 1),
        )
        return cls.analyze_gate(grid, clipped, settings=cfg, vocabulary=vocabulary, observer=observer)

    # ---------------------------
    # Per block
    # ---------------------------

    @classmethod
    def _analyze_block(
        cls,
        grid: ClassifiedGrid,
        box: BoundingBox,
        base_id: str,
        cfg: DetectionSettings,
        vocabulary: DetectionVocabulary,
        trace: TraceEmitter,
    ) -> Tuple[List[DatasetCandidate], List[RejectedDataset], Optional[SegmentationStats]]:
        detection = LayoutDetector.detect(
            grid, box, settings=cfg, vocabulary=vocabulary, trace=trace, candidate_id=base_id
        )
        best = detection.candidate
        concentrations = len(concentration_points(grid, best, vocabulary))

        too_few = BiologicalSegmenter.reject_if_too_few_samples(best, concentrations, cfg)
        if too_few is not None:
            trace.emit("biology", "candidate.rejected", name=too_few.name, reason=too_few.reason)
            return [], [too_few], None

        if best.concentration_axis is None or not BiologicalSegmenter.is_oversized(
            best.sample_count, concentrations, cfg
        ):
            return [cls._finalize_unsegmented(grid, best, cfg, vocabulary)], [], None

        alternative = cls._ambiguous_alternative(detection)
        segmentation = BiologicalSegmenter.segment(
            grid,
            best,
            alternative=alternative,
            settings=cfg,
            vocabulary=vocabulary,
            trace=trace,
        )
        kept = []
        for segment in segmentation.candidates:
            validated = CandidateValidator.validate(grid, segment)
            relevance = BiologicalSegmenter.relevance_issues(segment.sample_count, concentrations, cfg)
            if relevance:
                validated = validated.model_copy(update={"issues": [*validated.issues, *relevance]})
            kept.append(validated)
        return kept, segmentation.rejected, segmentation.stats

    @staticmethod
    def _ambiguous_alternative(detection: LayoutDetection) -> Optional[DatasetCandidate]:
        best = detection.best
        other = detection.horizontal if best is detection.vertical else detection.vertical
        if other.concentration is None:
            return None
        if abs(best.orientation_score - other.orientation_score) >= AMBIGUITY_MARGIN:
            return None
        return other.candidate

    @classmethod
    def _finalize_unsegmented(
        cls,
        grid: ClassifiedGrid,
        candidate: DatasetCandidate,
        cfg: DetectionSettings,
        vocabulary: DetectionVocabulary,
    ) -> DatasetCandidate:
        """Validate a candidate that is kept whole; caps its response axes."""
        concentrations = len(concentration_points(grid, candidate, vocabulary))
        extra: List[DetectionIssue] = BiologicalSegmenter.relevance_issues(
            candidate.sample_count, concentrations, cfg
        )
        update: Dict[str, Any] = {
            "biological_confidence": BiologicalSegmenter.biological_confidence(
                candidate.sample_count, concentrations, cfg
            )
        }
        if candidate.sample_count > cfg.max_response_axes:
            extra.append(
                DetectionIssue(
                    severity=IssueSeverity.WARNING,
                    message=(
                        f"{candidate.sample_count} response axes detected; "
                        f"keeping the first {cfg.max_response_axes}"
                    ),
                    suggestion="Gate a smaller block to analyze the remaining samples",
                )
            )
            update["response_axes"] = list(candidate.response_axes[: cfg.max_response_axes])

        validated = CandidateValidator.validate(grid, candidate.model_copy(update=update))
        if extra:
            validated = validated.model_copy(update={"issues": [*validated.issues, *extra]})
        return validated

    # ---------------------------
    # Ranking
    # ---------------------------

    @classmethod
    def rank_and_filter(
        cls,
        candidates: Sequence[DatasetCandidate],
        cfg: DetectionSettings,
        trace: Optional[TraceEmitter] = None,
    ) -> List[DatasetCandidate]:
        """Sort by confidence, drop candidates mostly covered by a better one, cap the count."""
        emitter = trace or TraceEmitter()
        ordered = sorted(
            candidates,
            key=lambda c: (-c.confidence, c.bounding_box.start_row, c.bounding_box.start_col, c.id),
        )

        kept: List[DatasetCandidate] = []
        for candidate in ordered:
            own_area = candidate.bounding_box.area
            covered_by = next(
                (
                    k
                    for k in kept
                    if own_area and k.bounding_box.intersection_area(candidate.bounding_box) / own_area
                    > cfg.overlap_threshold
                ),
                None,
            )
            if covered_by is not None:
                emitter.emit(
                    "orchestrator",
                    "candidate.rejected",
                    candidate=candidate.id,
                    reason=f"overlaps {covered_by.id}",
                )
                continue
            if len(kept) >= cfg.max_candidates:
                emitter.emit("orchestrator", "candidate.rejected", candidate=candidate.id, reason="candidate limit")
                continue
            kept.append(candidate)

        named = cls._named(kept)
        for candidate in named:
            emitter.emit(
                "orchestrator",
                "candidate.accepted",
                candidate=candidate.id,
                confidence=candidate.confidence,
                orientation=candidate.orientation.value,
            )
        return named

    @staticmethod
    def _named(candidates: Sequence[DatasetCandidate]) -> List[DatasetCandidate]:
        """Fill missing names positionally; repeated names get " 2", " 3", ..."""
        seen: Dict[str, int] = {}
        named: List[DatasetCandidate] = []
        for position, candidate in enumerate(candidates, start=1):
            name = candidate.name or f"Dataset {position}"
            count = seen.get(name, 0)
            seen[name] = count + 1
            if count:
                name = f"{name} {count + 1}"
            named.append(candidate if name == candidate.name else candidate.model_copy(update={"name": name}))
        return named

    # ---------------------------
    # Helpers
    # ---------------------------

    @staticmethod
    def _fallback_candidate(base_id: str, box: BoundingBox, error: Exception) -> DatasetCandidate:
        return DatasetCandidate(
            id=f"{base_id}-fallback",
            bounding_box=box,
            confidence=0.0,
            issues=[
                DetectionIssue(
                    severity=IssueSeverity.ERROR,
                    message=f"Analysis failed for this block: {error}",
                    suggestion="Select the dataset manually with a gate",
                )
            ],
        )

    @staticmethod
    def _failure_issue(stage: str, error: Exception) -> DetectionIssue:
        return DetectionIssue(
            severity=IssueSeverity.ERROR,
            message=f"{stage} failed: {error}",
            suggestion="Check the sheet layout or select the dataset manually",
        )

    @staticmethod
    def _metadata(
        grid: ClassifiedGrid,
        segmentation: RegionSegmentation,
        stats: SegmentationStats,
        raw_candidates: int,
    ) -> Dict[str, Any]:
        return {
            "grid_rows": grid.n_rows,
            "grid_cols": grid.n_cols,
            "region_count": len(segmentation.regions),
            "raw_candidate_count": raw_candidates,
            "row_gap_threshold": segmentation.row_gap_threshold,
            "col_gap_threshold": segmentation.col_gap_threshold,
            "segmentation": stats.model_dump(),
        }

    @staticmethod
    def _finish(result: DetectionResult, trace: TraceEmitter) -> DetectionResult:
        trace.emit(
            "orchestrator",
            "analysis.completed",
            candidates=len(result.candidates),
            rejected=len(result.rejected),
            issues=len(result.issues),
        )
        logger.info(
            f"Dose-response analysis: {len(result.candidates)} candidates, "
            f"{len(result.rejected)} rejected, {len(result.issues)} issues"
        )
        return result


def analyze(
    grid: Any,
    *,
    settings: Optional[DetectionSettings] = None,
    vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
    observer: Optional[DetectionObserver] = None,
) -> DetectionResult:
    return DoseResponseDetector.analyze(grid, settings=settings, vocabulary=vocabulary, observer=observer)
