from __future__ import annotations

from typing import Any, List

import pytest


def tce_rows() -> List[List[Any]]:
    return [
        ["TCE [nM]", "Sample A", "Sample B", "Sample C"],
        [100, 90, 85, 88],
        [10, 70, 65, 72],
        [1, 30, 25, 35],
        [0.1, 10, 8, 12],
    ]


def matrix_rows(samples: int, concentrations: int, labels: List[str] | None = None) -> List[List[Any]]:
    """Vertical matrix: 3-fold concentrations down column 0, one column per sample."""
    names = labels or [f"Cmpd{j + 1}" for j in range(samples)]
    rows: List[List[Any]] = [["Concentration (nM)", *names]]
    for k in range(concentrations):
        rows.append([10000 / 3**k, *[100 - 5 * k + (j % 7) for j in range(samples)]])
    return rows


@pytest.fixture
def tce_grid() -> List[List[Any]]:
    return tce_rows()


@pytest.fixture
def horizontal_tce_grid() -> List[List[Any]]:
    rows = tce_rows()
    return [list(col) for col in zip(*rows)]


@pytest.fixture
def two_block_grid() -> List[List[Any]]:
    block = [
        ["Dose (nM)", "Inhibition 1", "Inhibition 2", "Inhibition 3"],
        [1000, 95, 92, 97],
        [100, 80, 78, 83],
        [10, 45, 50, 41],
        [1, 12, 15, 10],
        [0.1, 3, 4, 2],
    ]
    empty = [None, None, None, None]
    return [*block, list(empty), list(empty), *[list(r) for r in block]]


@pytest.fixture
def large_matrix_grid() -> List[List[Any]]:
    return matrix_rows(51, 10)


@pytest.fixture
def replicate_grid() -> List[List[Any]]:
    labels = [f"{name}_{rep}" for name in ("A", "B", "C") for rep in (1, 2, 3)]
    return matrix_rows(9, 10, labels)


@pytest.fixture
def make_matrix():
    return matrix_rows
