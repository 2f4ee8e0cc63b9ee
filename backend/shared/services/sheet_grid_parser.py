"""
Sheet grid parser/extractor.

Converts spreadsheet sources into the raw grid the detection engine reads:
- grid: rectangular 2D array (rows x cols), starting at A1 (0,0)
- merged_cells: list of BoundingBox (0-based, inclusive)

Design principles:
- Keep parsing (I/O + format-specific quirks) separate from detection.
- Cells keep their native values (numbers, strings, datetimes); blanks are None.
- Merged ranges keep only their anchor value. The other cells of the range
  stay empty, so the engine sees merged blocks as sparse rather than
  duplicated.
- Trim only trailing empty rows/cols (bottom/right) so coordinates stay stable.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from decimal import Decimal
from io import BytesIO, StringIO
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shared.models.dose_response import BoundingBox
from shared.models.sheet_grid import SheetGrid
from shared.utils.app_logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SheetGridParseOptions:
    """Options shared across parsers."""

    trim_trailing_empty: bool = True
    max_rows: Optional[int] = None
    max_cols: Optional[int] = None

    # Excel-specific
    excel_data_only: bool = True


class SheetGridParser:
    """Parsers for Excel workbooks, CSV text and in-memory rows into SheetGrid."""

    @classmethod
    def from_values(
        cls,
        values: Sequence[Sequence[Any]],
        *,
        sheet_name: Optional[str] = None,
        options: Optional[SheetGridParseOptions] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SheetGrid:
        """Build a SheetGrid from ragged rows (normalized to rectangular)."""
        opts = options or SheetGridParseOptions()
        grid = cls._normalize_grid(values, max_rows=opts.max_rows, max_cols=opts.max_cols)
        return cls._build(grid, [], source="unknown", sheet_name=sheet_name, opts=opts, metadata=metadata)

    @classmethod
    def from_csv_text(
        cls,
        text: str,
        *,
        delimiter: str = ",",
        options: Optional[SheetGridParseOptions] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SheetGrid:
        """Parse CSV text. Numeric-looking cells stay strings; the engine's
        cell classifier decides what is a number."""
        opts = options or SheetGridParseOptions()
        rows = [list(row) for row in csv.reader(StringIO(text), delimiter=delimiter)]
        grid = cls._normalize_grid(rows, max_rows=opts.max_rows, max_cols=opts.max_cols)
        return cls._build(grid, [], source="csv", sheet_name=None, opts=opts, metadata=metadata)

    @classmethod
    def from_excel_bytes(
        cls,
        xlsx_bytes: bytes,
        *,
        sheet_name: Optional[str] = None,
        options: Optional[SheetGridParseOptions] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SheetGrid:
        """
        Parse one sheet of an .xlsx/.xlsm file into SheetGrid (first sheet by default).

        Raises:
            RuntimeError: openpyxl is not installed
            ValueError: ``sheet_name`` does not exist in the workbook
        """
        opts = options or SheetGridParseOptions()
        wb = cls._load_workbook(xlsx_bytes, opts)
        if sheet_name:
            if sheet_name not in wb.sheetnames:
                raise ValueError(f"Sheet '{sheet_name}' not found (available: {wb.sheetnames})")
            ws = wb[sheet_name]
        else:
            ws = wb[wb.sheetnames[0]]
        return cls._parse_worksheet(ws, opts, metadata)

    @classmethod
    def from_excel_workbook(
        cls,
        xlsx_bytes: bytes,
        *,
        sheet_names: Optional[Sequence[str]] = None,
        options: Optional[SheetGridParseOptions] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[SheetGrid]:
        """
        Parse several sheets of one workbook, in workbook order (all sheets by default).

        Raises:
            RuntimeError: openpyxl is not installed
            ValueError: a requested sheet does not exist in the workbook
        """
        opts = options or SheetGridParseOptions()
        wb = cls._load_workbook(xlsx_bytes, opts)
        if sheet_names:
            missing = [name for name in sheet_names if name not in wb.sheetnames]
            if missing:
                raise ValueError(f"Sheets {missing} not found (available: {wb.sheetnames})")
            selected = [name for name in wb.sheetnames if name in set(sheet_names)]
        else:
            selected = list(wb.sheetnames)
        return [cls._parse_worksheet(wb[name], opts, metadata) for name in selected]

    @staticmethod
    def _load_workbook(xlsx_bytes: bytes, opts: SheetGridParseOptions) -> Any:
        try:
            from openpyxl import load_workbook  # type: ignore
        except ImportError as e:  # pragma: no cover
            raise RuntimeError(
                "Excel parsing requires 'openpyxl'. Install it to enable .xlsx support."
            ) from e

        return load_workbook(
            filename=BytesIO(xlsx_bytes),
            data_only=bool(opts.excel_data_only),
            read_only=False,
        )

    @classmethod
    def _parse_worksheet(
        cls,
        ws: Any,
        opts: SheetGridParseOptions,
        metadata: Optional[Dict[str, Any]],
    ) -> SheetGrid:
        # Bounds
        max_row = int(ws.max_row or 0)
        max_col = int(ws.max_column or 0)
        if opts.max_rows is not None:
            max_row = min(max_row, int(opts.max_rows))
        if opts.max_cols is not None:
            max_col = min(max_col, int(opts.max_cols))

        if max_row <= 0 or max_col <= 0:
            return SheetGrid(
                source="excel",
                sheet_name=str(ws.title),
                metadata={"rows": 0, "cols": 0, **(metadata or {})},
            )

        # Merged ranges (1-based in openpyxl)
        merges: List[BoundingBox] = [
            BoundingBox(
                start_row=int(cr.min_row) - 1,
                end_row=int(cr.max_row) - 1,
                start_col=int(cr.min_col) - 1,
                end_col=int(cr.max_col) - 1,
            )
            for cr in ws.merged_cells.ranges
        ]

        # openpyxl already reports None for non-anchor cells of a merged range
        grid: List[List[Any]] = []
        for row in ws.iter_rows(min_row=1, max_row=max_row, min_col=1, max_col=max_col, values_only=True):
            grid.append([cls._native_cell(v) for v in row])

        return cls._build(grid, merges, source="excel", sheet_name=str(ws.title), opts=opts, metadata=metadata)

    # -------------------------
    # Normalization helpers
    # -------------------------

    @classmethod
    def _build(
        cls,
        grid: List[List[Any]],
        merges: List[BoundingBox],
        *,
        source: str,
        sheet_name: Optional[str],
        opts: SheetGridParseOptions,
        metadata: Optional[Dict[str, Any]],
    ) -> SheetGrid:
        warnings: List[str] = []
        if opts.trim_trailing_empty:
            grid, trim_meta = cls._trim_trailing_empty(grid)
            if trim_meta.get("trimmed"):
                warnings.append("Trailing empty rows/cols trimmed")

        rows = len(grid)
        cols = max((len(r) for r in grid), default=0)
        merges = cls._clip_merge_ranges(merges, rows=rows, cols=cols)
        logger.debug(f"Parsed {source} sheet {sheet_name!r}: {rows}x{cols}, {len(merges)} merged ranges")

        return SheetGrid(
            source=source,
            sheet_name=sheet_name,
            grid=grid,
            merged_cells=merges,
            metadata={"rows": rows, "cols": cols, **(metadata or {})},
            warnings=warnings,
        )

    @classmethod
    def _normalize_grid(
        cls, grid: Sequence[Sequence[Any]], *, max_rows: Optional[int], max_cols: Optional[int]
    ) -> List[List[Any]]:
        if not grid:
            return []

        rows = grid[: max_rows] if max_rows is not None else grid
        width = max((len(r) for r in rows), default=0)
        if max_cols is not None:
            width = min(width, int(max_cols))

        out: List[List[Any]] = []
        for row in rows:
            sliced = [cls._native_cell(v) for v in list(row)[:width]]
            if len(sliced) < width:
                sliced.extend([None] * (width - len(sliced)))
            out.append(sliced)
        return out

    @staticmethod
    def _native_cell(value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            return value if value.strip() else None
        if isinstance(value, Decimal):
            return float(value)
        return value

    @classmethod
    def _trim_trailing_empty(cls, grid: List[List[Any]]) -> Tuple[List[List[Any]], Dict[str, Any]]:
        if not grid:
            return grid, {"trimmed": False}

        rows = len(grid)
        cols = max((len(r) for r in grid), default=0)

        bottom = rows - 1
        while bottom >= 0 and all(v is None for v in grid[bottom]):
            bottom -= 1

        right = cols - 1
        while right >= 0 and all(grid[r][right] is None for r in range(0, bottom + 1)):
            right -= 1

        if bottom < 0 or right < 0:
            return [], {"trimmed": True, "rows": 0, "cols": 0}

        trimmed = (bottom != rows - 1) or (right != cols - 1)
        new_grid = [row[: right + 1] for row in grid[: bottom + 1]]
        return new_grid, {"trimmed": trimmed, "rows": bottom + 1, "cols": right + 1}

    @classmethod
    def _clip_merge_ranges(cls, merges: List[BoundingBox], *, rows: int, cols: int) -> List[BoundingBox]:
        if not merges or rows <= 0 or cols <= 0:
            return []
        out: List[BoundingBox] = []
        for m in merges:
            if m.start_row >= rows or m.start_col >= cols:
                continue
            clipped = BoundingBox(
                start_row=m.start_row,
                end_row=min(rows - 1, m.end_row),
                start_col=m.start_col,
                end_col=min(cols - 1, m.end_col),
            )
            # Ignore "merges" that are effectively single cells
            if clipped.area == 1:
                continue
            out.append(clipped)
        return out
