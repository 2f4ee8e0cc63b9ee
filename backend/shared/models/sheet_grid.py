"""
Sheet grid extraction models.

Goal: represent a worksheet as a grid of native cell values (numbers, strings,
datetimes, None) plus merged-cell ranges, so the detection engine operates on
one standard format regardless of where the sheet came from.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models.dose_response import BoundingBox


class SheetGrid(BaseModel):
    """Normalized sheet representation (0-based coordinates)."""

    source: Literal["excel", "csv", "unknown"] = "unknown"
    sheet_name: Optional[str] = None

    grid: List[List[Any]] = Field(default_factory=list, description="Rectangular 2D grid")
    merged_cells: List[BoundingBox] = Field(
        default_factory=list, description="Merged cell ranges (0-based, inclusive)"
    )

    metadata: Dict[str, Any] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")
