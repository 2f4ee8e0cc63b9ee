"""
Region segmentation: split one sheet into independent data blocks.

Two complementary passes:

1) Gap-band partitioning. Rows/columns that are mostly empty (gap lines) are
   grouped into bands; bands of sufficient length cut the sheet into
   rectangular partitions. Cutting is applied recursively so nested layouts
   (a row of blocks stacked over another row of blocks) are found too.
2) Density flood fill inside each partition. An 8-connected fill over the
   filled-cell map, tolerant of isolated blanks (an empty cell stays "in" when
   its local density is high enough), separates blocks that share rows or
   columns without a full gap line between them.

Separator sizes are judged against adaptive thresholds derived from the gap
sizes actually observed on the sheet (mean + k * stddev), not fixed constants.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
import statistics
from typing import List, Optional, Sequence, Tuple

from shared.config.settings import DetectionSettings, get_detection_settings
from shared.models.dose_response import (
    BoundaryAnalysis,
    BoundaryPatternType,
    BoundingBox,
    DetectionIssue,
    IssueSeverity,
    RegionCandidate,
    RegionSegmentation,
    SheetLayoutType,
)
from shared.utils.app_logger import get_logger

from dosegate.services.cell_classifier import ClassifiedGrid
from dosegate.services.detection_trace import TraceEmitter

logger = get_logger(__name__)

# (top, bottom, left, right), inclusive
_Box = Tuple[int, int, int, int]

_DIRECTIONS = ((-1, -1), (-1, 0), (-1, 1), (0, -1), (0, 1), (1, -1), (1, 0), (1, 1))


class DensityMap:
    """Binary filled-cell map with a summed-area table for O(1) window counts."""

    def __init__(self, grid: ClassifiedGrid):
        self.n_rows = grid.n_rows
        self.n_cols = grid.n_cols
        self.filled = [[grid.filled(r, c) for c in range(self.n_cols)] for r in range(self.n_rows)]

        sat = [[0] * (self.n_cols + 1) for _ in range(self.n_rows + 1)]
        for r in range(self.n_rows):
            running = 0
            row = self.filled[r]
            for c in range(self.n_cols):
                running += 1 if row[c] else 0
                sat[r + 1][c + 1] = sat[r][c + 1] + running
        self._sat = sat

    def count(self, box: _Box) -> int:
        top, bottom, left, right = box
        if top > bottom or left > right:
            return 0
        s = self._sat
        return s[bottom + 1][right + 1] - s[top][right + 1] - s[bottom + 1][left] + s[top][left]

    def density(self, box: _Box) -> float:
        area = _area(box)
        return self.count(box) / area if area > 0 else 0.0

    def local_density(self, row: int, col: int, radius: int, bounds: _Box) -> float:
        top, bottom, left, right = bounds
        window = (
            max(top, row - radius),
            min(bottom, row + radius),
            max(left, col - radius),
            min(right, col + radius),
        )
        return self.density(window)

    def row_emptiness(self, row: int, left: int, right: int) -> float:
        width = right - left + 1
        return 1.0 - self.count((row, row, left, right)) / width if width > 0 else 1.0

    def col_emptiness(self, col: int, top: int, bottom: int) -> float:
        height = bottom - top + 1
        return 1.0 - self.count((top, bottom, col, col)) / height if height > 0 else 1.0

    def tighten(self, box: _Box) -> Optional[_Box]:
        """Shrink ``box`` to its filled extent; None when it holds nothing."""
        top, bottom, left, right = box
        if self.count(box) == 0:
            return None
        while top <= bottom and self.count((top, top, left, right)) == 0:
            top += 1
        while bottom >= top and self.count((bottom, bottom, left, right)) == 0:
            bottom -= 1
        while left <= right and self.count((top, bottom, left, left)) == 0:
            left += 1
        while right >= left and self.count((top, bottom, right, right)) == 0:
            right -= 1
        return (top, bottom, left, right)


@dataclass
class _Component:
    visited: int = 0
    filled: int = 0
    density_sum: float = 0.0
    connectivity_sum: float = 0.0
    box: Optional[_Box] = None

    def absorb(self, other: "_Component") -> None:
        self.visited += other.visited
        self.filled += other.filled
        self.density_sum += other.density_sum
        self.connectivity_sum += other.connectivity_sum
        self.box = _union(self.box, other.box)

    @property
    def avg_density(self) -> float:
        return self.density_sum / self.visited if self.visited else 0.0

    @property
    def avg_connectivity(self) -> float:
        return self.connectivity_sum / self.visited if self.visited else 0.0


class RegionSegmenter:
    """Partitions a classified grid into disjoint rectangular data regions."""

    @classmethod
    def segment(
        cls,
        grid: ClassifiedGrid,
        *,
        settings: Optional[DetectionSettings] = None,
        trace: Optional[TraceEmitter] = None,
    ) -> RegionSegmentation:
        cfg = settings or get_detection_settings()
        emitter = trace or TraceEmitter()
        density = DensityMap(grid)

        extent = density.tighten((0, grid.n_rows - 1, 0, grid.n_cols - 1)) if grid.n_rows and grid.n_cols else None
        if extent is None:
            logger.debug("Region segmentation: sheet has no filled cells")
            return RegionSegmentation()

        row_threshold, col_threshold = cls.adaptive_gap_thresholds(density, extent, cfg)

        partitions = cls._partition_by_gap_bands(density, extent, row_threshold, col_threshold, cfg)

        regions: List[RegionCandidate] = []
        for partition in partitions:
            for component in cls._components_in(density, partition, row_threshold, col_threshold, cfg):
                box = component.box
                if box is None:
                    continue
                if not cls._is_viable(box, component.filled, cfg):
                    emitter.emit(
                        "region",
                        "region.rejected",
                        bounding_box=_to_bbox(box).model_dump(),
                        filled_cells=component.filled,
                    )
                    continue
                region = RegionCandidate(
                    bounding_box=_to_bbox(box),
                    confidence=_clamp(0.6 * component.avg_density + 0.4 * component.avg_connectivity),
                    density=_clamp(density.density(box)),
                    connectivity=_clamp(component.avg_connectivity),
                    point_count=component.filled,
                )
                regions.append(region)

        regions.sort(key=lambda r: (r.bounding_box.start_row, r.bounding_box.start_col))
        for index, region in enumerate(regions):
            emitter.emit(
                "region",
                "region.found",
                index=index,
                bounding_box=region.bounding_box.model_dump(),
                confidence=region.confidence,
            )

        boundaries = cls.analyze_boundaries(density, regions)
        layout_type, layout_confidence = cls.classify_layout([r.bounding_box for r in regions])
        issues = cls._region_issues(regions, boundaries, layout_confidence)

        logger.debug(
            f"Region segmentation: {len(partitions)} partitions, {len(regions)} regions, "
            f"gap thresholds rows={row_threshold} cols={col_threshold}"
        )
        return RegionSegmentation(
            regions=regions,
            boundaries=boundaries,
            layout_type=layout_type,
            row_gap_threshold=row_threshold,
            col_gap_threshold=col_threshold,
            issues=issues,
        )

    # ---------------------------
    # Adaptive thresholds
    # ---------------------------

    @classmethod
    def adaptive_gap_thresholds(cls, density: DensityMap, extent: _Box, cfg: DetectionSettings) -> Tuple[int, int]:
        top, bottom, left, right = extent
        row_gaps = _empty_runs([density.count((r, r, left, right)) == 0 for r in range(top, bottom + 1)])
        col_gaps = _empty_runs([density.count((top, bottom, c, c)) == 0 for c in range(left, right + 1)])
        row_threshold = _outlier_threshold(
            row_gaps, cfg.gap_outlier_sigma, cfg.min_row_gap_threshold, cfg.max_row_gap_threshold
        )
        col_threshold = _outlier_threshold(
            col_gaps, cfg.gap_outlier_sigma, cfg.min_col_gap_threshold, cfg.max_col_gap_threshold
        )
        return row_threshold, col_threshold

    # ---------------------------
    # Pass 1: gap bands
    # ---------------------------

    @classmethod
    def _partition_by_gap_bands(
        cls,
        density: DensityMap,
        extent: _Box,
        row_threshold: int,
        col_threshold: int,
        cfg: DetectionSettings,
    ) -> List[_Box]:
        partitions: List[_Box] = []
        stack: List[_Box] = [extent]
        while stack:
            box = density.tighten(stack.pop())
            if box is None:
                continue
            pieces = cls._split_rows(density, box, row_threshold, cfg)
            if len(pieces) == 1:
                pieces = cls._split_cols(density, box, col_threshold, cfg)
            if len(pieces) == 1:
                partitions.append(box)
            else:
                stack.extend(reversed(pieces))
        partitions.sort()
        return partitions

    @classmethod
    def _split_rows(cls, density: DensityMap, box: _Box, threshold: int, cfg: DetectionSettings) -> List[_Box]:
        top, bottom, left, right = box
        emptiness = [density.row_emptiness(r, left, right) for r in range(top, bottom + 1)]
        spans = cls._split_spans(emptiness, threshold, cfg)
        return [(top + start, top + end, left, right) for start, end in spans]

    @classmethod
    def _split_cols(cls, density: DensityMap, box: _Box, threshold: int, cfg: DetectionSettings) -> List[_Box]:
        top, bottom, left, right = box
        emptiness = [density.col_emptiness(c, top, bottom) for c in range(left, right + 1)]
        spans = cls._split_spans(emptiness, threshold, cfg)
        return [(top, bottom, left + start, left + end) for start, end in spans]

    @staticmethod
    def _split_spans(emptiness: Sequence[float], threshold: int, cfg: DetectionSettings) -> List[Tuple[int, int]]:
        """Cut [0, len) at separating gap bands.

        A band separates when it is at least ``min_gap_band`` long and either
        fully empty or at least as long as the adaptive threshold. Bands that
        touch either end never separate anything.
        """
        n = len(emptiness)
        spans: List[Tuple[int, int]] = []
        start = 0
        i = 0
        while i < n:
            if emptiness[i] < cfg.gap_emptiness_threshold:
                i += 1
                continue
            j = i
            while j + 1 < n and emptiness[j + 1] >= cfg.gap_emptiness_threshold:
                j += 1
            length = j - i + 1
            interior = i > 0 and j < n - 1
            fully_empty = all(emptiness[k] >= 1.0 for k in range(i, j + 1))
            if interior and length >= cfg.min_gap_band and (fully_empty or length >= threshold):
                spans.append((start, i - 1))
                start = j + 1
            i = j + 1
        spans.append((start, n - 1))
        return spans

    # ---------------------------
    # Pass 2: density flood fill
    # ---------------------------

    @classmethod
    def _components_in(
        cls,
        density: DensityMap,
        partition: _Box,
        row_threshold: int,
        col_threshold: int,
        cfg: DetectionSettings,
    ) -> List[_Component]:
        components = cls._flood_fill(density, partition, cfg)
        viable = [c for c in components if c.filled >= cfg.min_region_points]
        if not viable:
            # Nothing dense enough to flood; keep the partition itself
            return [cls._partition_component(density, partition, cfg)]
        return cls._merge_components(viable, row_threshold, col_threshold)

    @classmethod
    def _flood_fill(cls, density: DensityMap, bounds: _Box, cfg: DetectionSettings) -> List[_Component]:
        top, bottom, left, right = bounds
        filled = density.filled
        visited = set()
        components: List[_Component] = []

        for seed_r in range(top, bottom + 1):
            for seed_c in range(left, right + 1):
                if not filled[seed_r][seed_c] or (seed_r, seed_c) in visited:
                    continue
                component = _Component()
                stack = [(seed_r, seed_c)]
                while stack:
                    r, c = stack.pop()
                    if (r, c) in visited or r < top or r > bottom or c < left or c > right:
                        continue
                    local = density.local_density(r, c, cfg.local_density_radius, bounds)
                    if not filled[r][c] and local < cfg.local_density_threshold:
                        continue
                    visited.add((r, c))

                    neighbours = 0
                    for dr, dc in _DIRECTIONS:
                        nr, nc = r + dr, c + dc
                        if top <= nr <= bottom and left <= nc <= right:
                            if filled[nr][nc]:
                                neighbours += 1
                            if (nr, nc) not in visited:
                                stack.append((nr, nc))

                    component.visited += 1
                    component.density_sum += local
                    component.connectivity_sum += neighbours / len(_DIRECTIONS)
                    if filled[r][c]:
                        component.filled += 1
                        component.box = _union(component.box, (r, r, c, c))
                components.append(component)
        return components

    @staticmethod
    def _partition_component(density: DensityMap, partition: _Box, cfg: DetectionSettings) -> _Component:
        top, bottom, left, right = partition
        component = _Component(box=partition)
        for r in range(top, bottom + 1):
            for c in range(left, right + 1):
                component.visited += 1
                component.density_sum += density.local_density(r, c, cfg.local_density_radius, partition)
                neighbours = sum(
                    1
                    for dr, dc in _DIRECTIONS
                    if top <= r + dr <= bottom and left <= c + dc <= right and density.filled[r + dr][c + dc]
                )
                component.connectivity_sum += neighbours / len(_DIRECTIONS)
                if density.filled[r][c]:
                    component.filled += 1
        return component

    @staticmethod
    def _merge_components(components: List[_Component], row_threshold: int, col_threshold: int) -> List[_Component]:
        """Merge components whose boxes overlap or sit closer than the adaptive
        gap threshold while sharing rows/columns. Repeats until stable."""
        merged = list(components)
        changed = True
        while changed:
            changed = False
            for i in range(len(merged)):
                for j in range(i + 1, len(merged)):
                    a, b = merged[i].box, merged[j].box
                    if a is None or b is None:
                        continue
                    row_gap, col_gap = _gaps(a, b)
                    share_cols = col_gap == 0
                    share_rows = row_gap == 0
                    if (share_rows and share_cols) or (share_cols and row_gap < row_threshold) or (
                        share_rows and col_gap < col_threshold
                    ):
                        merged[i].absorb(merged[j])
                        del merged[j]
                        changed = True
                        break
                if changed:
                    break
        return merged

    @staticmethod
    def _is_viable(box: _Box, filled: int, cfg: DetectionSettings) -> bool:
        top, bottom, left, right = box
        return (
            bottom - top + 1 >= cfg.min_region_rows
            and right - left + 1 >= cfg.min_region_cols
            and filled >= min(cfg.min_region_points, cfg.min_region_rows * cfg.min_region_cols)
        )

    # ---------------------------
    # Boundaries + layout
    # ---------------------------

    @classmethod
    def analyze_boundaries(cls, density: DensityMap, regions: Sequence[RegionCandidate]) -> List[BoundaryAnalysis]:
        boundaries: List[BoundaryAnalysis] = []
        boxes = [_from_bbox(r.bounding_box) for r in regions]
        for i in range(len(boxes)):
            for j in range(i + 1, len(boxes)):
                a, b = boxes[i], boxes[j]
                row_gap, col_gap = _gaps(a, b)
                # Only neighbours that share a row span or a column span
                if row_gap > 0 and col_gap > 0:
                    continue
                gap_box = _gap_box(a, b)
                gap_consistency = 1.0 - density.density(gap_box) if gap_box else 0.0
                d1, d2 = density.density(a), density.density(b)
                separation = (
                    0.4 * gap_consistency + 0.3 * min(d1, d2) + 0.3 * min(max(row_gap, col_gap), 4) / 4
                )
                natural = gap_consistency > 0.7 and d1 > 0.4 and d2 > 0.4 and (row_gap >= 2 or col_gap >= 1)
                if natural:
                    pattern = BoundaryPatternType.DATASET_SEPARATOR
                elif separation > 0.4:
                    pattern = BoundaryPatternType.MISSING_DATA
                else:
                    pattern = BoundaryPatternType.UNCLEAR
                boundaries.append(
                    BoundaryAnalysis(
                        first=i,
                        second=j,
                        row_gap=row_gap,
                        col_gap=col_gap,
                        gap_consistency=_clamp(gap_consistency),
                        separation_confidence=_clamp(separation),
                        is_natural_boundary=natural,
                        pattern_type=pattern,
                    )
                )
        return boundaries

    @staticmethod
    def classify_layout(boxes: Sequence[BoundingBox]) -> Tuple[SheetLayoutType, float]:
        if len(boxes) < 2:
            return SheetLayoutType.SINGLE, 1.0

        side_by_side = stacked = pairs = 0
        for i in range(len(boxes) - 1):
            for j in range(i + 1, len(boxes)):
                a, b = boxes[i], boxes[j]
                row_overlap = min(a.end_row, b.end_row) - max(a.start_row, b.start_row) + 1
                col_overlap = min(a.end_col, b.end_col) - max(a.start_col, b.start_col) + 1
                pairs += 1
                if row_overlap > 0 and col_overlap <= 0:
                    side_by_side += 1
                elif col_overlap > 0 and row_overlap <= 0:
                    stacked += 1

        horizontal_ratio = side_by_side / pairs
        vertical_ratio = stacked / pairs
        if horizontal_ratio > 0.7:
            return SheetLayoutType.HORIZONTAL, horizontal_ratio
        if vertical_ratio > 0.7:
            return SheetLayoutType.VERTICAL, vertical_ratio
        if horizontal_ratio > 0.3 and vertical_ratio > 0.3:
            return SheetLayoutType.GRID, min(horizontal_ratio, vertical_ratio)
        return SheetLayoutType.MIXED, 1.0 - max(horizontal_ratio, vertical_ratio)

    @staticmethod
    def _region_issues(
        regions: Sequence[RegionCandidate],
        boundaries: Sequence[BoundaryAnalysis],
        layout_confidence: float,
    ) -> List[DetectionIssue]:
        issues: List[DetectionIssue] = []
        low = sum(1 for region in regions if region.confidence < 0.5)
        if low:
            issues.append(
                DetectionIssue(
                    severity=IssueSeverity.WARNING,
                    message=f"{low} datasets have low confidence scores",
                    suggestion="Review these datasets manually and consider improving data formatting",
                )
            )
        if any(b.pattern_type == BoundaryPatternType.UNCLEAR for b in boundaries):
            issues.append(
                DetectionIssue(
                    severity=IssueSeverity.WARNING,
                    message="Some dataset boundaries are unclear",
                    suggestion="Consider adding clearer separation between datasets (empty rows/columns)",
                )
            )
        if len(regions) > 1 and layout_confidence < 0.5:
            issues.append(
                DetectionIssue(
                    severity=IssueSeverity.INFO,
                    message="Complex or mixed dataset layout detected",
                    suggestion="Consider organizing datasets in a more consistent pattern",
                )
            )
        return issues


def _empty_runs(flags: Sequence[bool]) -> List[int]:
    """Lengths of interior runs of True (runs touching either end are ignored)."""
    runs: List[int] = []
    i = 0
    n = len(flags)
    while i < n:
        if not flags[i]:
            i += 1
            continue
        j = i
        while j + 1 < n and flags[j + 1]:
            j += 1
        if i > 0 and j < n - 1:
            runs.append(j - i + 1)
        i = j + 1
    return runs


def _outlier_threshold(gaps: Sequence[int], sigma: float, low: int, high: int) -> int:
    if not gaps:
        return low
    mean = statistics.fmean(gaps)
    spread = statistics.pstdev(gaps) if len(gaps) > 1 else 0.0
    return max(low, min(high, math.floor(mean + sigma * spread)))


def _gaps(a: _Box, b: _Box) -> Tuple[int, int]:
    """Empty rows/cols strictly between two boxes (0 when their spans overlap or touch)."""
    row_gap = max(0, max(b[0] - a[1], a[0] - b[1]) - 1)
    col_gap = max(0, max(b[2] - a[3], a[2] - b[3]) - 1)
    return row_gap, col_gap


def _gap_box(a: _Box, b: _Box) -> Optional[_Box]:
    if a[1] < b[0]:
        rows = (a[1] + 1, b[0] - 1)
    elif b[1] < a[0]:
        rows = (b[1] + 1, a[0] - 1)
    else:
        rows = (max(a[0], b[0]), min(a[1], b[1]))

    if a[3] < b[2]:
        cols = (a[3] + 1, b[2] - 1)
    elif b[3] < a[2]:
        cols = (b[3] + 1, a[2] - 1)
    else:
        cols = (max(a[2], b[2]), min(a[3], b[3]))

    if rows[0] > rows[1] or cols[0] > cols[1]:
        return None
    return (rows[0], rows[1], cols[0], cols[1])


def _union(a: Optional[_Box], b: Optional[_Box]) -> Optional[_Box]:
    if a is None:
        return b
    if b is None:
        return a
    return (min(a[0], b[0]), max(a[1], b[1]), min(a[2], b[2]), max(a[3], b[3]))


def _area(box: _Box) -> int:
    return max(0, box[1] - box[0] + 1) * max(0, box[3] - box[2] + 1)


def _to_bbox(box: _Box) -> BoundingBox:
    return BoundingBox(start_row=box[0], end_row=box[1], start_col=box[2], end_col=box[3])


def _from_bbox(bbox: BoundingBox) -> _Box:
    return (bbox.start_row, bbox.end_row, bbox.start_col, bbox.end_col)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))
