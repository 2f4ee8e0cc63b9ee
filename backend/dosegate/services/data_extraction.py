"""
Reading concrete values back out of a grid for a detected candidate.

A ``DatasetCandidate`` only carries indices: header line, concentration axis,
response axes and the data range along the concentration direction. These
helpers turn those indices into (concentration, responses) rows.
"""

from __future__ import annotations

import math
from typing import Any, List, Optional, Sequence, Tuple, Union

from shared.config.vocabulary import DEFAULT_VOCABULARY, DetectionVocabulary
from shared.models.dose_response import CellKind, DatasetCandidate, DosePoint, Orientation

from dosegate.services.cell_classifier import Cell, CellClassifier, ClassifiedGrid


def _as_classified(
    grid: Union[ClassifiedGrid, Sequence[Sequence[Any]]],
    vocabulary: DetectionVocabulary,
) -> ClassifiedGrid:
    if isinstance(grid, ClassifiedGrid):
        return grid
    return CellClassifier.classify_grid(grid, vocabulary)


def _in_bounds(grid: ClassifiedGrid, row: int, col: int) -> bool:
    return 0 <= row < grid.n_rows and 0 <= col < grid.n_cols


def axis_cell(grid: ClassifiedGrid, candidate: DatasetCandidate, line: int, axis: int) -> Optional[Cell]:
    """Cell at position ``line`` along the concentration direction on ``axis``."""
    if candidate.orientation == Orientation.VERTICAL:
        row, col = line, axis
    else:
        row, col = axis, line
    return grid.cell(row, col) if _in_bounds(grid, row, col) else None


def axis_label(grid: ClassifiedGrid, candidate: DatasetCandidate, axis: int) -> str:
    if candidate.header_index is None:
        return ""
    cell = axis_cell(grid, candidate, candidate.header_index, axis)
    return cell.text if cell is not None and cell.kind != CellKind.EMPTY else ""


def data_lines(candidate: DatasetCandidate) -> range:
    if candidate.data_start is None or candidate.data_end is None:
        return range(0)
    return range(candidate.data_start, candidate.data_end + 1)


def concentration_points(
    grid: ClassifiedGrid,
    candidate: DatasetCandidate,
    vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
) -> List[Tuple[int, float]]:
    """(line, nM) pairs for every data line whose concentration parses as valid."""
    axis = candidate.concentration_axis
    if axis is None:
        return []
    points: List[Tuple[int, float]] = []
    for line in data_lines(candidate):
        cell = axis_cell(grid, candidate, line, axis.index)
        if cell is None or cell.kind != CellKind.NUMBER:
            continue
        value = CellClassifier.to_nanomolar(cell.value, unit=axis.unit, vocabulary=vocabulary)
        if math.isfinite(value):
            points.append((line, value))
    return points


def extract_data_points(
    grid: Union[ClassifiedGrid, Sequence[Sequence[Any]]],
    candidate: DatasetCandidate,
    vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
) -> List[DosePoint]:
    """Concrete dose points for a candidate.

    Lines whose concentration is missing or invalid are skipped. Response cells
    that are not numbers come back as None so replicate positions line up.
    """
    classified = _as_classified(grid, vocabulary)
    points: List[DosePoint] = []
    for line, concentration in concentration_points(classified, candidate, vocabulary):
        responses: List[Optional[float]] = []
        for axis in candidate.response_axes:
            cell = axis_cell(classified, candidate, line, axis)
            responses.append(cell.number if cell is not None and cell.kind == CellKind.NUMBER else None)
        points.append(DosePoint(concentration=concentration, responses=responses))
    return points
