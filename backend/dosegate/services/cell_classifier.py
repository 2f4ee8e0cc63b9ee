"""
Cell classification for dose-response layout detection.

Every raw grid value is classified exactly once into a closed set of kinds
(number / text / date / empty / error). Downstream stages read the classified
grid and never re-inspect raw Python types.

Concentration literals ("10 nM", "1e-6 M", 250) are parsed into a magnitude
and a unit, then normalized to nanomolar through the vocabulary unit table.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
import math
import re
from typing import Any, List, Optional, Sequence

from shared.config.vocabulary import DEFAULT_VOCABULARY, DetectionVocabulary
from shared.models.dose_response import CellKind, ConcentrationInfo


_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")
_LEADING_NUMBER_RE = re.compile(
    r"^\s*([+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?)\s*(.*?)\s*$"
)
_THOUSANDS_RE = re.compile(r"(?<=\d),(?=\d{3}(?:\D|$))")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2})?)?$")
_ERROR_LITERAL_RE = re.compile(r"^#(?:DIV/0!|N/A|VALUE!|REF!|NAME\?|NUM!|NULL!|SPILL!|CALC!)$", re.IGNORECASE)
# Starts like a number but is not one ("1.2.3", "5..6")
_NUMERIC_LOOKING_RE = re.compile(r"^[+-]?[\d.]+[\d.eE+-]*$")


@dataclass(frozen=True)
class Cell:
    value: Any
    kind: CellKind
    row: int
    col: int
    number: Optional[float] = None
    text: str = ""

    @property
    def is_empty(self) -> bool:
        return self.kind == CellKind.EMPTY

    @property
    def is_number(self) -> bool:
        return self.kind == CellKind.NUMBER


class ClassifiedGrid:
    """Rectangular, read-only view over a raw grid with one Cell per position.

    Jagged input rows are padded with empty cells so every row has ``n_cols``
    entries. The raw grid is never mutated.
    """

    def __init__(self, cells: List[List[Cell]], raw: Sequence[Sequence[Any]]):
        self._cells = cells
        self.raw = raw
        self.n_rows = len(cells)
        self.n_cols = len(cells[0]) if cells else 0

    def cell(self, row: int, col: int) -> Cell:
        return self._cells[row][col]

    def kind(self, row: int, col: int) -> CellKind:
        return self._cells[row][col].kind

    def filled(self, row: int, col: int) -> bool:
        return self._cells[row][col].kind != CellKind.EMPTY

    def number(self, row: int, col: int) -> Optional[float]:
        return self._cells[row][col].number

    def text(self, row: int, col: int) -> str:
        return self._cells[row][col].text

    def value(self, row: int, col: int) -> Any:
        return self._cells[row][col].value

    def row_cells(self, row: int, start_col: int = 0, end_col: Optional[int] = None) -> List[Cell]:
        end = self.n_cols - 1 if end_col is None else end_col
        return self._cells[row][start_col : end + 1]

    def column_cells(self, col: int, start_row: int = 0, end_row: Optional[int] = None) -> List[Cell]:
        end = self.n_rows - 1 if end_row is None else end_row
        return [self._cells[r][col] for r in range(start_row, end + 1)]

    def transposed(self) -> "ClassifiedGrid":
        """Swap rows and columns (cell coordinates follow the swap)."""
        cells = [
            [
                Cell(
                    value=self._cells[r][c].value,
                    kind=self._cells[r][c].kind,
                    row=c,
                    col=r,
                    number=self._cells[r][c].number,
                    text=self._cells[r][c].text,
                )
                for r in range(self.n_rows)
            ]
            for c in range(self.n_cols)
        ]
        raw = [[cell.value for cell in row] for row in cells]
        return ClassifiedGrid(cells, raw)


class CellClassifier:
    """Classifies raw spreadsheet values and parses concentration literals."""

    # ---------------------------
    # Classification
    # ---------------------------

    @classmethod
    def classify(cls, value: Any, vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY) -> CellKind:
        return cls._classify(value, vocabulary)[0]

    @classmethod
    def classify_cell(
        cls,
        value: Any,
        row: int,
        col: int,
        vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
    ) -> Cell:
        kind, number = cls._classify(value, vocabulary)
        text = "" if value is None else str(value).strip()
        return Cell(value=value, kind=kind, row=row, col=col, number=number, text=text)

    @classmethod
    def classify_grid(
        cls,
        grid: Sequence[Sequence[Any]],
        vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
    ) -> ClassifiedGrid:
        if not isinstance(grid, (list, tuple)):
            raise TypeError(f"grid must be a sequence of rows, got {type(grid).__name__}")

        rows: List[List[Any]] = []
        for raw_row in grid:
            if raw_row is None:
                rows.append([])
            elif isinstance(raw_row, (list, tuple)):
                rows.append(list(raw_row))
            else:
                # A bare scalar row is a one-cell row
                rows.append([raw_row])

        width = max((len(r) for r in rows), default=0)
        cells = [
            [
                cls.classify_cell(row[c] if c < len(row) else None, r, c, vocabulary)
                for c in range(width)
            ]
            for r, row in enumerate(rows)
        ]
        return ClassifiedGrid(cells, grid)

    @classmethod
    def _classify(cls, value: Any, vocabulary: DetectionVocabulary):
        if value is None:
            return CellKind.EMPTY, None
        if isinstance(value, bool):
            return CellKind.TEXT, None
        if isinstance(value, (int, float, Decimal)):
            number = float(value)
            if math.isfinite(number):
                return CellKind.NUMBER, number
            return CellKind.ERROR, None
        if isinstance(value, (datetime, date, time)):
            return CellKind.DATE, None
        if not isinstance(value, str):
            return CellKind.ERROR, None

        text = value.strip()
        if not text:
            return CellKind.EMPTY, None
        if _ERROR_LITERAL_RE.match(text):
            return CellKind.ERROR, None
        if _ISO_DATE_RE.match(text):
            return CellKind.DATE, None

        number = cls._parse_decorated_number(text, vocabulary)
        if number is not None:
            if math.isfinite(number):
                return CellKind.NUMBER, number
            return CellKind.ERROR, None
        if _NUMERIC_LOOKING_RE.match(text):
            return CellKind.ERROR, None
        return CellKind.TEXT, None

    @classmethod
    def _parse_decorated_number(cls, text: str, vocabulary: DetectionVocabulary) -> Optional[float]:
        """Parse ``text`` as a float after stripping thousands separators, a
        percent sign and a trailing unit token. Anything else stays text."""
        candidate = _THOUSANDS_RE.sub("", text).strip()
        if candidate.endswith("%"):
            candidate = candidate[:-1].strip()
        if _NUMBER_RE.match(candidate):
            return float(candidate)

        match = _LEADING_NUMBER_RE.match(candidate)
        if not match:
            return None
        suffix = match.group(2).strip("()[] ")
        if suffix and suffix in vocabulary.unit_factors:
            return float(match.group(1))
        return None

    # ---------------------------
    # Concentrations
    # ---------------------------

    @classmethod
    def parse_concentration(
        cls,
        value: Any,
        vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
    ) -> ConcentrationInfo:
        """Parse a concentration literal into magnitude + unit.

        Numbers are valid when finite and non-negative. Strings must start with
        a numeric literal (sign and scientific notation allowed) optionally
        followed by a unit token; a missing unit means the default unit.
        Negative magnitudes are never valid.
        """
        default_unit = vocabulary.default_unit
        if value is None or isinstance(value, bool):
            return ConcentrationInfo(value=math.nan, unit=default_unit, is_valid=False)

        if isinstance(value, (int, float, Decimal)):
            number = float(value)
            return ConcentrationInfo(
                value=number,
                unit=default_unit,
                is_valid=math.isfinite(number) and number >= 0,
            )

        if not isinstance(value, str):
            return ConcentrationInfo(value=math.nan, unit=default_unit, is_valid=False)

        text = _THOUSANDS_RE.sub("", value.strip())
        match = _LEADING_NUMBER_RE.match(text)
        if not match:
            return ConcentrationInfo(value=math.nan, unit=default_unit, is_valid=False)

        number = float(match.group(1))
        unit_text = match.group(2).strip("()[] ")
        if not unit_text:
            unit = default_unit
        else:
            if " " in unit_text or not re.match(r"^[A-Za-zμµ]+$", unit_text):
                return ConcentrationInfo(value=number, unit=unit_text, is_valid=False)
            unit = cls._canonical_unit(unit_text, vocabulary)

        return ConcentrationInfo(
            value=number,
            unit=unit,
            is_valid=math.isfinite(number) and number >= 0,
        )

    @staticmethod
    def _canonical_unit(unit_text: str, vocabulary: DetectionVocabulary) -> str:
        if unit_text in vocabulary.unit_factors:
            return unit_text
        for known in vocabulary.unit_factors:
            if len(known) > 1 and known.lower() == unit_text.lower():
                return known
        return unit_text

    @classmethod
    def normalize(
        cls,
        info: ConcentrationInfo,
        vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
    ) -> float:
        """Convert a parsed concentration to nanomolar; NaN when invalid."""
        if not info.is_valid:
            return math.nan
        return info.value * vocabulary.unit_factor(info.unit)

    @classmethod
    def to_nanomolar(
        cls,
        value: Any,
        *,
        unit: Optional[str] = None,
        vocabulary: DetectionVocabulary = DEFAULT_VOCABULARY,
    ) -> float:
        """Parse + normalize in one step.

        ``unit`` is the unit written in the axis header; it applies when the
        cell itself carries no unit.
        """
        info = cls.parse_concentration(value, vocabulary)
        if info.is_valid and unit and info.unit == vocabulary.default_unit and not cls._has_own_unit(value):
            info = ConcentrationInfo(value=info.value, unit=unit, is_valid=True)
        return cls.normalize(info, vocabulary)

    @staticmethod
    def _has_own_unit(value: Any) -> bool:
        if not isinstance(value, str):
            return False
        match = _LEADING_NUMBER_RE.match(_THOUSANDS_RE.sub("", value.strip()))
        return bool(match and match.group(2).strip("()[] "))
