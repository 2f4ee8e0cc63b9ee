"""
Per-block layout detection.

For one bounding box, find the header line, the concentration axis and the
response axes. The scoring pass is written once for the vertical layout
(concentrations down a column, samples as columns) and runs on a transposed
view of the block for the horizontal layout (concentrations across a row,
samples as rows). Both passes are scored and the better orientation wins,
with a fixed preference multiplier toward horizontal plate layouts.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
import math
import re
from typing import Dict, List, Optional, Tuple

from shared.config.settings import DetectionSettings, get_detection_settings
from shared.config.vocabulary import DEFAULT_VOCABULARY, DetectionVocabulary
from shared.models.dose_response import (
    BoundingBox,
    CellKind,
    ConcentrationAxis,
    DatasetCandidate,
    DilutionPattern,
    Orientation,
)
from shared.utils.app_logger import get_logger

from dosegate.services.cell_classifier import Cell, CellClassifier, ClassifiedGrid
from dosegate.services.detection_trace import TraceEmitter
from dosegate.services.dilution_pattern import ConcentrationSeries, DilutionPatternAnalyzer

logger = get_logger(__name__)

_UNIT_DECORATION_RE = re.compile(r"[\(\[][^\)\]]*[\)\]]")


class BlockView:
    """Oriented, read-only view of one block.

    View rows run along the concentration series and view columns are the
    candidate axes. Vertical views map 1:1 onto the block; horizontal views
    are the block transposed.
    """

    def __init__(self, grid: ClassifiedGrid, box: BoundingBox, orientation: Orientation):
        self.grid = grid
        self.box = box
        self.orientation = orientation
        if orientation == Orientation.VERTICAL:
            self.n_rows, self.n_cols = box.height, box.width
        else:
            self.n_rows, self.n_cols = box.width, box.height

    def cell(self, row: int, col: int) -> Cell:
        if self.orientation == Orientation.VERTICAL:
            return self.grid.cell(self.box.start_row + row, self.box.start_col + col)
        return self.grid.cell(self.box.start_row + col, self.box.start_col + row)

    def row(self, row: int) -> List[Cell]:
        return [self.cell(row, c) for c in range(self.n_cols)]

    def grid_line(self, view_row: int) -> int:
        """Grid row (vertical) or grid column (horizontal) of a view row."""
        base = self.box.start_row if self.orientation == Orientation.VERTICAL else self.box.start_col
        return base + view_row

    def grid_axis(self, view_col: int) -> int:
        """Grid column (vertical) or grid row (horizontal) of a view column."""
        base = self.box.start_col if self.orientation == Orientation.VERTICAL else self.box.start_row
        return base + view_col


@dataclass(frozen=True)
class HeaderScore:
    index: Optional[int]
    score: float
    confidence: float


@dataclass(frozen=True)
class AxisScore:
    index: int
    score: float
    confidence: float
    pattern: DilutionPattern
    series: ConcentrationSeries
    unit: str
    label: str


@dataclass(frozen=True)
class ResponseScore:
    index: int
    score: float
    label: str


@dataclass(frozen=True)
class OrientationResult:
    orientation: Orientation
    candidate: DatasetCandidate
    header: HeaderScore
    concentration: Optional[AxisScore]
    responses: Tuple[ResponseScore, ...]
    orientation_score: float
    scores: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class LayoutDetection:
    best: OrientationResult
    vertical: OrientationResult
    horizontal: OrientationResult

    @property
    def candidate(self) -> DatasetCandidate:
        return self.best.candidate


class LayoutDetector:
    """Scores header, concentration and response axes inside one block."""

    @classmethod
    def detect(
        cls,
        grid: ClassifiedGrid,
        box: BoundingBox,
        *,
        settings: Optional[DetectionSettings] = None,
        vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
        trace: Optional[TraceEmitter] = None,
        candidate_id: Optional[str] = None,
    ) -> LayoutDetection:
        cfg = settings or get_detection_settings()
        emitter = trace or TraceEmitter()
        base_id = candidate_id or f"dataset-r{box.start_row}c{box.start_col}"

        vertical = cls.detect_orientation(
            grid, box, Orientation.VERTICAL, settings=cfg, vocabulary=vocabulary, trace=emitter, candidate_id=base_id
        )
        horizontal = cls.detect_orientation(
            grid, box, Orientation.HORIZONTAL, settings=cfg, vocabulary=vocabulary, trace=emitter, candidate_id=base_id
        )

        weighted_horizontal = horizontal.orientation_score * cfg.horizontal_preference
        best = horizontal if weighted_horizontal >= vertical.orientation_score else vertical

        emitter.emit(
            "layout",
            "orientation.selected",
            bounding_box=box.model_dump(),
            orientation=best.orientation.value,
            vertical_score=vertical.orientation_score,
            horizontal_score=weighted_horizontal,
        )
        logger.debug(
            f"Layout {box.model_dump()}: vertical={vertical.orientation_score:.3f} "
            f"horizontal={weighted_horizontal:.3f} -> {best.orientation.value}"
        )
        return LayoutDetection(best=best, vertical=vertical, horizontal=horizontal)

    @classmethod
    def detect_orientation(
        cls,
        grid: ClassifiedGrid,
        box: BoundingBox,
        orientation: Orientation,
        *,
        settings: Optional[DetectionSettings] = None,
        vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
        trace: Optional[TraceEmitter] = None,
        candidate_id: Optional[str] = None,
    ) -> OrientationResult:
        cfg = settings or get_detection_settings()
        emitter = trace or TraceEmitter()
        view = BlockView(grid, box, orientation)

        header = cls.score_header(view, cfg, vocabulary)
        data_start = header.index + 1 if header.index is not None else 0
        data_end = view.n_rows - 1

        concentration = cls.score_concentration_axes(view, header, data_start, data_end, cfg, vocabulary)
        if concentration is not None:
            emitter.emit(
                "layout",
                "axis.scored",
                orientation=orientation.value,
                axis=view.grid_axis(concentration.index),
                score=concentration.score,
                confidence=concentration.confidence,
                pattern=concentration.pattern.type.value,
            )

        responses = cls.score_response_axes(
            view,
            header,
            data_start,
            data_end,
            None if concentration is None else concentration.index,
            cfg,
            vocabulary,
        )

        response_confidence = 0.0
        if responses:
            total = sum(r.score for r in responses)
            response_confidence = min(total / (len(responses) * cfg.response_score_scale), 1.0)

        layout_score = 0.8 if concentration is not None and concentration.index == 0 and responses else 0.2

        concentration_confidence = concentration.confidence if concentration else 0.0
        pattern = concentration.pattern if concentration else None
        pattern_confidence = pattern.confidence if pattern else 0.0

        confidence = (
            0.3 * header.confidence
            + 0.4 * (0.6 * concentration_confidence + 0.4 * pattern_confidence)
            + 0.2 * response_confidence
            + 0.1 * layout_score
        )

        block_density = cls._block_density(grid, box)
        structural = block_density * 0.5 + 0.5
        log_range = min(pattern.range.order_of_magnitude, 6.0) if pattern else 0.0
        orientation_score = (
            0.5 * confidence
            + 0.2 * (pattern.consistency if pattern else 0.0)
            + 0.2 * structural
            + 0.1 * log_range
        )

        scores = {
            "header": round(header.confidence, 6),
            "concentration": round(concentration_confidence, 6),
            "pattern": round(pattern_confidence, 6),
            "response": round(response_confidence, 6),
            "layout": layout_score,
            "structural": round(structural, 6),
            "orientation": round(orientation_score, 6),
        }

        axis = None
        name = ""
        if concentration is not None:
            axis = ConcentrationAxis(
                index=view.grid_axis(concentration.index),
                orientation=orientation,
                unit=concentration.unit,
                label=concentration.label or None,
            )
            name = _UNIT_DECORATION_RE.sub("", concentration.label).strip()

        candidate = DatasetCandidate(
            id=f"{candidate_id or 'dataset'}-{orientation.value[0]}",
            name=name,
            bounding_box=box,
            orientation=orientation,
            header_index=view.grid_line(header.index) if header.index is not None else None,
            concentration_axis=axis,
            response_axes=[view.grid_axis(r.index) for r in responses],
            data_start=view.grid_line(data_start) if data_start <= data_end else None,
            data_end=view.grid_line(data_end) if data_start <= data_end else None,
            dilution_pattern=pattern,
            confidence=max(0.0, min(1.0, confidence)),
            scores=scores,
        )
        return OrientationResult(
            orientation=orientation,
            candidate=candidate,
            header=header,
            concentration=concentration,
            responses=tuple(responses),
            orientation_score=orientation_score,
            scores=scores,
        )

    # ---------------------------
    # Header
    # ---------------------------

    @classmethod
    def score_header(cls, view: BlockView, cfg: DetectionSettings, vocabulary: DetectionVocabulary) -> HeaderScore:
        best_index: Optional[int] = None
        best_score = 0.0
        for r in range(min(cfg.header_scan_rows, view.n_rows)):
            score = cls.header_row_score(view.row(r), r, vocabulary)
            if score > best_score:
                best_index, best_score = r, score
        return HeaderScore(
            index=best_index,
            score=best_score,
            confidence=min(best_score / cfg.header_score_scale, 1.0),
        )

    @staticmethod
    def header_row_score(cells: List[Cell], row_index: int, vocabulary: DetectionVocabulary) -> float:
        texts = [c.text for c in cells if c.kind == CellKind.TEXT]
        numeric = sum(1 for c in cells if c.kind == CellKind.NUMBER)
        has_concentration = any(vocabulary.has_concentration_keyword(t) for t in texts)
        response_hits = sum(vocabulary.response_keyword_count(t) for t in texts)

        score = 2.0 * len(texts)
        score += 10.0 if has_concentration else 0.0
        score += 3.0 * response_hits
        score -= 5.0 if numeric > len(texts) else 0.0
        score -= 0.5 * row_index
        return score

    # ---------------------------
    # Concentration axis
    # ---------------------------

    @classmethod
    def score_concentration_axes(
        cls,
        view: BlockView,
        header: HeaderScore,
        data_start: int,
        data_end: int,
        cfg: DetectionSettings,
        vocabulary: DetectionVocabulary,
    ) -> Optional[AxisScore]:
        best: Optional[AxisScore] = None
        for c in range(view.n_cols):
            label = view.cell(header.index, c).text if header.index is not None else ""
            axis = cls.score_concentration_axis(view, c, label, data_start, data_end, cfg, vocabulary)
            if axis is None:
                continue
            # Strict comparison keeps the lower index on ties
            if best is None or axis.score > best.score:
                best = axis
        return best

    @classmethod
    def score_concentration_axis(
        cls,
        view: BlockView,
        col: int,
        label: str,
        data_start: int,
        data_end: int,
        cfg: DetectionSettings,
        vocabulary: DetectionVocabulary,
    ) -> Optional[AxisScore]:
        header_unit = vocabulary.find_unit(label) if label else None
        cells = [view.cell(r, col) for r in range(data_start, data_end + 1)]
        unit = header_unit or cls._dominant_cell_unit(cells, vocabulary) or vocabulary.default_unit

        values = [
            CellClassifier.to_nanomolar(cell.value, unit=unit, vocabulary=vocabulary)
            if cell.kind == CellKind.NUMBER
            else math.nan
            for cell in cells
        ]
        series = ConcentrationSeries.from_values(
            values, indices=[view.grid_line(r) for r in range(data_start, data_end + 1)]
        )
        if len(series) < 2:
            return None

        pattern = DilutionPatternAnalyzer.analyze(series, settings=cfg)
        numeric_below = sum(1 for cell in cells[: cfg.numeric_scan_rows] if cell.kind == CellKind.NUMBER)

        score = 20.0 * pattern.confidence
        score += 8.0 if label and vocabulary.has_concentration_keyword(label) else 0.0
        score += 6.0 if header_unit else 0.0
        score += 0.5 * numeric_below
        score += 3.0 if col == 0 else 0.0
        score += 10.0 if pattern.is_recognized else 0.0
        score += 5.0 * pattern.consistency

        return AxisScore(
            index=col,
            score=score,
            confidence=min(score / cfg.concentration_score_scale, 1.0),
            pattern=pattern,
            series=series,
            unit=unit,
            label=label,
        )

    @staticmethod
    def _dominant_cell_unit(cells: List[Cell], vocabulary: DetectionVocabulary) -> Optional[str]:
        units = Counter()
        for cell in cells:
            if isinstance(cell.value, str):
                info = CellClassifier.parse_concentration(cell.value, vocabulary)
                if info.is_valid and vocabulary.find_unit(cell.value):
                    units[info.unit] += 1
        if not units:
            return None
        # most_common keeps first-seen order on ties
        return units.most_common(1)[0][0]

    # ---------------------------
    # Response axes
    # ---------------------------

    @classmethod
    def score_response_axes(
        cls,
        view: BlockView,
        header: HeaderScore,
        data_start: int,
        data_end: int,
        concentration_col: Optional[int],
        cfg: DetectionSettings,
        vocabulary: DetectionVocabulary,
    ) -> List[ResponseScore]:
        scan_end = min(data_end, data_start + cfg.numeric_scan_rows - 1)
        scanned = scan_end - data_start + 1
        accepted: List[ResponseScore] = []
        if scanned <= 0:
            return accepted

        for c in range(view.n_cols):
            if c == concentration_col:
                continue
            label = view.cell(header.index, c).text if header.index is not None else ""
            numeric = sum(1 for r in range(data_start, scan_end + 1) if view.cell(r, c).kind == CellKind.NUMBER)
            if numeric == 0:
                continue

            score = 10.0 if label and vocabulary.has_response_keyword(label) else 0.0
            score += 8.0 if label and vocabulary.matches_sample_name(label) else 0.0
            score += 10.0 * numeric / scanned
            if score >= cfg.response_accept_score:
                accepted.append(ResponseScore(index=c, score=score, label=label))
        return accepted

    @staticmethod
    def _block_density(grid: ClassifiedGrid, box: BoundingBox) -> float:
        filled = sum(
            1
            for r in range(box.start_row, box.end_row + 1)
            for c in range(box.start_col, box.end_col + 1)
            if grid.filled(r, c)
        )
        return filled / box.area if box.area else 0.0
