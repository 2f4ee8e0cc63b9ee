"""
Biological segmentation of oversized matrices.

Curve fitting downstream expects one sample (or one small replicate set) per
curve. A block such as 51 samples x 10 concentrations is therefore split into
individually plausible datasets:

- replicate labels ("CmpdA_1", "CmpdA_2", "CmpdA Rep3") are reduced to a base
  name and contiguous runs of 2-4 matching labels stay together;
- every other sample becomes its own one-sample candidate.

Each output is scored for biological relevance (sample-count term times
concentration-count term); weak segments are dropped but kept in the result
as rejected datasets with their reason and original size.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re
import statistics
from typing import List, Optional, Sequence, Tuple

from shared.config.settings import DetectionSettings, get_detection_settings
from shared.config.vocabulary import DEFAULT_VOCABULARY, DetectionVocabulary
from shared.models.dose_response import (
    BoundingBox,
    DatasetCandidate,
    DetectionIssue,
    IssueSeverity,
    Orientation,
    RejectedDataset,
    SegmentationStats,
)
from shared.utils.app_logger import get_logger

from dosegate.services.cell_classifier import ClassifiedGrid
from dosegate.services.data_extraction import axis_label, concentration_points
from dosegate.services.detection_trace import TraceEmitter

logger = get_logger(__name__)

REPLICATE_GROUP_MIN = 2
REPLICATE_GROUP_MAX = 4


@dataclass
class BiologicalSegmentation:
    candidates: List[DatasetCandidate] = field(default_factory=list)
    rejected: List[RejectedDataset] = field(default_factory=list)
    stats: SegmentationStats = field(default_factory=SegmentationStats)


@dataclass(frozen=True)
class _SampleGroup:
    axes: Tuple[int, ...]
    labels: Tuple[str, ...]
    base_name: str

    @property
    def is_replicate_set(self) -> bool:
        return len(self.axes) >= REPLICATE_GROUP_MIN


class BiologicalSegmenter:
    """Applies assay size constraints to candidates and splits oversized ones."""

    INSUFFICIENT_CONCENTRATIONS = "Insufficient concentration points (n < {min}) - cannot fit dose-response curve"
    OVERSIZED = "Oversized matrix not suitable for individual dose-response analysis"
    TOO_FEW_SAMPLES = "Too few samples (n < {min}) - no response data to fit"

    # ---------------------------
    # Size rules
    # ---------------------------

    @staticmethod
    def is_oversized(sample_count: int, concentration_count: int, cfg: DetectionSettings) -> bool:
        return (
            sample_count > cfg.max_samples
            or concentration_count > cfg.max_concentrations
            or (sample_count > cfg.max_samples and concentration_count > 3)
        )

    @staticmethod
    def size_label(sample_count: int, concentration_count: int) -> str:
        return f"{sample_count} samples × {concentration_count} concentrations"

    @staticmethod
    def biological_confidence(sample_count: int, concentration_count: int, cfg: DetectionSettings) -> float:
        if sample_count <= 0:
            sample_term = 0.1
        elif sample_count == 1:
            sample_term = 1.0
        elif sample_count <= 4:
            sample_term = 0.9 - (sample_count - 2) * 0.1
        elif sample_count <= cfg.max_samples:
            sample_term = 0.6 - (sample_count - 5) * 0.05
        else:
            sample_term = 0.2

        if 8 <= concentration_count <= 12:
            concentration_term = 1.0
        elif 6 <= concentration_count <= 15:
            concentration_term = 0.8
        elif concentration_count >= cfg.min_concentrations:
            concentration_term = 0.5
        else:
            concentration_term = 0.1

        return max(0.1, min(1.0, sample_term * concentration_term))

    @classmethod
    def relevance_issues(
        cls,
        sample_count: int,
        concentration_count: int,
        cfg: DetectionSettings,
    ) -> List[DetectionIssue]:
        issues: List[DetectionIssue] = []
        if sample_count > cfg.max_samples:
            issues.append(
                DetectionIssue(
                    severity=IssueSeverity.WARNING,
                    message=f"Dataset contains {sample_count} samples (more than {cfg.max_samples} per curve)",
                    suggestion="Split the matrix into individual dose-response datasets",
                )
            )
        if concentration_count < cfg.min_concentrations:
            issues.append(
                DetectionIssue(
                    severity=IssueSeverity.WARNING,
                    message=(
                        f"Only {concentration_count} concentration points "
                        f"({cfg.min_concentrations} or more recommended for curve fitting)"
                    ),
                    suggestion="Add concentration points or confirm the detected concentration axis",
                )
            )
        if concentration_count > cfg.max_concentrations:
            issues.append(
                DetectionIssue(
                    severity=IssueSeverity.INFO,
                    message=f"Unusually high number of concentration points ({concentration_count})",
                    suggestion="Check whether several dilution series were stacked together",
                )
            )
        return issues

    @classmethod
    def reject_if_too_few_samples(
        cls,
        candidate: DatasetCandidate,
        concentration_count: int,
        cfg: DetectionSettings,
    ) -> Optional[RejectedDataset]:
        """Rejection record for a candidate with fewer than ``min_samples`` response axes."""
        if candidate.sample_count >= cfg.min_samples:
            return None
        return RejectedDataset(
            name=candidate.name or candidate.id,
            bounding_box=candidate.bounding_box,
            reason=cls.TOO_FEW_SAMPLES.format(min=cfg.min_samples),
            original_size=cls.size_label(candidate.sample_count, concentration_count),
        )

    # ---------------------------
    # Segmentation
    # ---------------------------

    @classmethod
    def segment(
        cls,
        grid: ClassifiedGrid,
        candidate: DatasetCandidate,
        *,
        alternative: Optional[DatasetCandidate] = None,
        settings: Optional[DetectionSettings] = None,
        vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
        trace: Optional[TraceEmitter] = None,
    ) -> BiologicalSegmentation:
        """Split ``candidate`` when it is oversized.

        ``alternative`` is the same block read in the other orientation; when
        given (ambiguous block), both readings are segmented and the one with
        the higher mean biological confidence is kept.
        """
        cfg = settings or get_detection_settings()
        emitter = trace or TraceEmitter()

        primary = cls._segment_one(grid, candidate, cfg, vocabulary)
        chosen = primary
        if alternative is not None and alternative.concentration_axis is not None:
            other = cls._segment_one(grid, alternative, cfg, vocabulary)
            # Horizontal wins only on a strictly higher mean
            if cls._prefer(other, primary):
                chosen = other

        for segment in chosen.candidates:
            emitter.emit(
                "biology",
                "candidate.segmented",
                parent=candidate.id,
                candidate=segment.id,
                samples=segment.sample_count,
                biological_confidence=segment.biological_confidence,
            )
        for rejected in chosen.rejected:
            emitter.emit("biology", "candidate.rejected", name=rejected.name, reason=rejected.reason)

        logger.debug(
            f"Biological segmentation of {candidate.id}: {len(chosen.candidates)} kept, "
            f"{len(chosen.rejected)} rejected ({chosen.stats.strategy})"
        )
        return chosen

    @staticmethod
    def _prefer(other: BiologicalSegmentation, primary: BiologicalSegmentation) -> bool:
        if not other.candidates:
            return False
        if not primary.candidates:
            return True
        other_mean = statistics.fmean(c.biological_confidence or 0.0 for c in other.candidates)
        primary_mean = statistics.fmean(c.biological_confidence or 0.0 for c in primary.candidates)
        if other_mean == primary_mean:
            return False
        return other_mean > primary_mean

    @classmethod
    def _segment_one(
        cls,
        grid: ClassifiedGrid,
        candidate: DatasetCandidate,
        cfg: DetectionSettings,
        vocabulary: DetectionVocabulary,
    ) -> BiologicalSegmentation:
        samples = candidate.sample_count
        concentrations = len(concentration_points(grid, candidate, vocabulary))
        size = cls.size_label(samples, concentrations)
        name = candidate.name or candidate.id
        stats = SegmentationStats(original_count=1)

        too_few = cls.reject_if_too_few_samples(candidate, concentrations, cfg)
        if too_few is not None:
            stats.rejected_count = 1
            stats.strategy = "rejected"
            return BiologicalSegmentation(rejected=[too_few], stats=stats)

        if concentrations < cfg.min_concentrations:
            stats.rejected_count = 1
            stats.strategy = "rejected"
            return BiologicalSegmentation(
                rejected=[
                    RejectedDataset(
                        name=name,
                        bounding_box=candidate.bounding_box,
                        reason=cls.INSUFFICIENT_CONCENTRATIONS.format(min=cfg.min_concentrations),
                        original_size=size,
                    )
                ],
                stats=stats,
            )

        if not cls.is_oversized(samples, concentrations, cfg):
            kept = candidate.model_copy(
                update={"biological_confidence": cls.biological_confidence(samples, concentrations, cfg)}
            )
            stats.segmented_count = 1
            return BiologicalSegmentation(candidates=[kept], stats=stats)

        if not cfg.enable_matrix_segmentation:
            stats.rejected_count = 1
            stats.strategy = "rejected"
            return BiologicalSegmentation(
                rejected=[
                    RejectedDataset(
                        name=name,
                        bounding_box=candidate.bounding_box,
                        reason=cls.OVERSIZED,
                        original_size=size,
                    )
                ],
                stats=stats,
            )

        groups = cls.group_samples(grid, candidate, cfg, vocabulary)
        strategy = "replicate-groups" if any(g.is_replicate_set for g in groups) else "individual"
        if not cfg.prefer_individual_curves:
            strategy = "chunked"

        result = BiologicalSegmentation(stats=stats)
        stats.strategy = f"{candidate.orientation.value}-{strategy}"
        for number, group in enumerate(groups, start=1):
            segment = cls._make_segment(candidate, group, number, concentrations, cfg)
            too_few = cls.reject_if_too_few_samples(segment, concentrations, cfg)
            if too_few is not None:
                result.rejected.append(too_few)
                stats.rejected_count += 1
                continue
            bio = segment.biological_confidence or 0.0
            if bio < cfg.segment_keep_threshold or bio < cfg.quality_threshold:
                threshold = cfg.segment_keep_threshold if bio < cfg.segment_keep_threshold else cfg.quality_threshold
                result.rejected.append(
                    RejectedDataset(
                        name=segment.name,
                        bounding_box=segment.bounding_box,
                        reason=f"Biological confidence {bio:.2f} below threshold {threshold:.2f}",
                        original_size=cls.size_label(len(group.axes), concentrations),
                    )
                )
                stats.rejected_count += 1
                continue
            result.candidates.append(segment)
            stats.segmented_count += 1
        return result

    @classmethod
    def group_samples(
        cls,
        grid: ClassifiedGrid,
        candidate: DatasetCandidate,
        cfg: DetectionSettings,
        vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
    ) -> List[_SampleGroup]:
        """Contiguous runs of 2-4 samples sharing a base name form replicate
        sets; everything else is a single-sample group. With
        ``prefer_individual_curves`` off, neighbouring groups are packed
        together up to ``max_samples``."""
        axes = list(candidate.response_axes)
        labels = [axis_label(grid, candidate, axis) for axis in axes]
        bases = [cls.extract_base_name(label, vocabulary) for label in labels]

        groups: List[_SampleGroup] = []
        i = 0
        while i < len(axes):
            j = i
            while j + 1 < len(axes) and bases[i] and bases[j + 1] == bases[i] and axes[j + 1] == axes[j] + 1:
                j += 1
            run = j - i + 1
            if REPLICATE_GROUP_MIN <= run <= REPLICATE_GROUP_MAX:
                groups.append(_SampleGroup(tuple(axes[i : j + 1]), tuple(labels[i : j + 1]), bases[i]))
            else:
                for k in range(i, j + 1):
                    groups.append(_SampleGroup((axes[k],), (labels[k],), bases[k] or labels[k]))
            i = j + 1

        if cfg.prefer_individual_curves:
            return groups
        return cls._pack_groups(groups, cfg.max_samples)

    @staticmethod
    def _pack_groups(groups: Sequence[_SampleGroup], max_samples: int) -> List[_SampleGroup]:
        packed: List[_SampleGroup] = []
        axes: List[int] = []
        labels: List[str] = []
        for group in groups:
            contiguous = not axes or group.axes[0] == axes[-1] + 1
            if axes and (len(axes) + len(group.axes) > max_samples or not contiguous):
                packed.append(_SampleGroup(tuple(axes), tuple(labels), labels[0]))
                axes, labels = [], []
            axes.extend(group.axes)
            labels.extend(group.labels)
        if axes:
            packed.append(_SampleGroup(tuple(axes), tuple(labels), labels[0]))
        return packed

    @staticmethod
    def extract_base_name(label: str, vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY) -> str:
        """Strip replicate decoration ("_1", "Rep2", trailing A/B/C) from a label.

        A pattern that would strip the whole label is skipped, so "A_1" has
        base name "A" rather than "".
        """
        base = label.strip()
        for pattern in vocabulary.replicate_suffix_patterns:
            stripped = re.sub(pattern, "", base, flags=re.IGNORECASE).strip()
            if stripped:
                base = stripped
        return base

    @classmethod
    def _make_segment(
        cls,
        parent: DatasetCandidate,
        group: _SampleGroup,
        number: int,
        concentrations: int,
        cfg: DetectionSettings,
    ) -> DatasetCandidate:
        first, last = min(group.axes), max(group.axes)
        box = parent.bounding_box
        data_start = parent.data_start if parent.data_start is not None else 0
        data_end = parent.data_end if parent.data_end is not None else data_start
        if parent.orientation == Orientation.HORIZONTAL:
            segment_box = BoundingBox(start_row=first, end_row=last, start_col=data_start, end_col=data_end)
        else:
            segment_box = BoundingBox(start_row=data_start, end_row=data_end, start_col=first, end_col=last)

        if group.is_replicate_set:
            name = group.base_name or f"{parent.name or 'Dataset'} group {number}"
            confidence = parent.confidence * 0.95
        else:
            name = group.labels[0] or f"{parent.name or 'Dataset'} sample {number}"
            confidence = parent.confidence * 0.9

        bio = cls.biological_confidence(len(group.axes), concentrations, cfg)
        return parent.model_copy(
            update={
                "id": f"{parent.id}-s{number}",
                "name": name,
                "bounding_box": segment_box if segment_box.area <= box.area else box,
                "response_axes": list(group.axes),
                "confidence": max(0.0, min(1.0, confidence)),
                "biological_confidence": bio,
                "issues": [],
            }
        )
