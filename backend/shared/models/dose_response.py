"""
Dose-response detection models for dosegate.

These models represent the output of the layout inference engine: where
dose-response experiments live inside a raw spreadsheet grid, how their
concentration and response axes are laid out, and how confident the engine
is about each of them.

All coordinates are 0-based and inclusive.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CellKind(str, Enum):
    """Closed set of cell kinds decided once by the cell classifier."""

    NUMBER = "number"
    TEXT = "text"
    DATE = "date"
    EMPTY = "empty"
    ERROR = "error"


class Orientation(str, Enum):
    """Direction in which the concentration series runs.

    vertical: concentrations go down a column, samples are columns.
    horizontal: concentrations go across a row, samples are rows.
    """

    VERTICAL = "vertical"
    HORIZONTAL = "horizontal"


class DilutionPatternType(str, Enum):
    SERIAL = "serial"
    LOG_SCALE = "log-scale"
    HALF_LOG = "half-log"
    CUSTOM = "custom"
    IRREGULAR = "irregular"
    UNKNOWN = "unknown"


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class SheetLayoutType(str, Enum):
    """Arrangement of the regions found on one sheet."""

    SINGLE = "single"
    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"
    GRID = "grid"
    MIXED = "mixed"


class BoundaryPatternType(str, Enum):
    DATASET_SEPARATOR = "dataset_separator"
    MISSING_DATA = "missing_data"
    UNCLEAR = "unclear"


class BoundingBox(BaseModel):
    """0-based inclusive bounding box."""

    start_row: int = Field(..., ge=0)
    end_row: int = Field(..., ge=0)
    start_col: int = Field(..., ge=0)
    end_col: int = Field(..., ge=0)

    model_config = ConfigDict(extra="ignore", frozen=True)

    @model_validator(mode="after")
    def validate_order(self) -> "BoundingBox":
        if self.end_row < self.start_row:
            raise ValueError("end_row must be >= start_row")
        if self.end_col < self.start_col:
            raise ValueError("end_col must be >= start_col")
        return self

    @property
    def height(self) -> int:
        return self.end_row - self.start_row + 1

    @property
    def width(self) -> int:
        return self.end_col - self.start_col + 1

    @property
    def area(self) -> int:
        return self.height * self.width

    def contains(self, row: int, col: int) -> bool:
        return self.start_row <= row <= self.end_row and self.start_col <= col <= self.end_col

    def intersection_area(self, other: "BoundingBox") -> int:
        rows = min(self.end_row, other.end_row) - max(self.start_row, other.start_row) + 1
        cols = min(self.end_col, other.end_col) - max(self.start_col, other.start_col) + 1
        if rows <= 0 or cols <= 0:
            return 0
        return rows * cols

    def overlaps(self, other: "BoundingBox") -> bool:
        return self.intersection_area(other) > 0


class ConcentrationInfo(BaseModel):
    """A parsed concentration literal (magnitude + unit)."""

    value: float
    unit: str = "nM"
    is_valid: bool = False

    model_config = ConfigDict(extra="ignore", frozen=True)


class ConcentrationRange(BaseModel):
    min: float = 0.0
    max: float = 0.0
    order_of_magnitude: float = 0.0

    model_config = ConfigDict(extra="ignore", frozen=True)


class DilutionPattern(BaseModel):
    """Classification of one concentration series."""

    type: DilutionPatternType = DilutionPatternType.UNKNOWN
    factor: Optional[float] = Field(default=None, description="Canonical dilution factor, when matched")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    detected_ratio: Optional[float] = Field(
        default=None, description="Mean consecutive ratio (None when it cannot be computed)"
    )
    range: ConcentrationRange = Field(default_factory=ConcentrationRange)
    consistency: float = Field(default=0.0, ge=0.0, le=1.0)
    missing_points: List[int] = Field(
        default_factory=list, description="Indices into the expected geometric sequence with no observed value"
    )
    irregularities: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore", frozen=True)

    @property
    def is_recognized(self) -> bool:
        return self.type not in (DilutionPatternType.UNKNOWN, DilutionPatternType.IRREGULAR)


class ConcentrationAxis(BaseModel):
    """Where the concentration series lives: a column (vertical) or a row (horizontal)."""

    index: int = Field(..., ge=0, description="Grid column for vertical, grid row for horizontal")
    orientation: Orientation = Orientation.VERTICAL
    unit: str = Field(default="nM", description="Unit written in the axis label, or the default unit")
    label: Optional[str] = None

    model_config = ConfigDict(extra="ignore", frozen=True)


class DetectionIssue(BaseModel):
    severity: IssueSeverity
    message: str
    suggestion: Optional[str] = None

    model_config = ConfigDict(extra="ignore", frozen=True)


class DatasetCandidate(BaseModel):
    """One candidate dose-response dataset inside a sheet.

    ``header_index`` is the grid row holding axis labels for vertical layouts
    and the grid column holding sample labels for horizontal layouts.
    ``data_start``/``data_end`` bound the concentration series along its axis
    (grid rows for vertical, grid columns for horizontal).
    ``response_axes`` are grid columns (vertical) or grid rows (horizontal).
    """

    id: str
    name: str = ""
    bounding_box: BoundingBox
    orientation: Orientation = Orientation.VERTICAL
    header_index: Optional[int] = None
    concentration_axis: Optional[ConcentrationAxis] = None
    response_axes: List[int] = Field(default_factory=list)
    data_start: Optional[int] = None
    data_end: Optional[int] = None
    dilution_pattern: Optional[DilutionPattern] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    biological_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    issues: List[DetectionIssue] = Field(default_factory=list)
    scores: Dict[str, float] = Field(
        default_factory=dict, description="Component scores that produced the confidence"
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

    @property
    def sample_count(self) -> int:
        return len(self.response_axes)

    @property
    def concentration_count(self) -> int:
        if self.data_start is None or self.data_end is None:
            return 0
        return self.data_end - self.data_start + 1


class RegionCandidate(BaseModel):
    """A spatial block found by the region segmenter."""

    bounding_box: BoundingBox
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    density: float = Field(default=0.0, ge=0.0, le=1.0)
    connectivity: float = Field(default=0.0, ge=0.0, le=1.0)
    point_count: int = Field(default=0, ge=0)

    model_config = ConfigDict(extra="ignore", frozen=True)


class BoundaryAnalysis(BaseModel):
    """How cleanly two neighbouring regions are separated."""

    first: int = Field(..., ge=0, description="Index of the first region")
    second: int = Field(..., ge=0, description="Index of the second region")
    row_gap: int = 0
    col_gap: int = 0
    gap_consistency: float = Field(default=0.0, ge=0.0, le=1.0)
    separation_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    is_natural_boundary: bool = False
    pattern_type: BoundaryPatternType = BoundaryPatternType.UNCLEAR

    model_config = ConfigDict(extra="ignore", frozen=True)


class RegionSegmentation(BaseModel):
    regions: List[RegionCandidate] = Field(default_factory=list)
    boundaries: List[BoundaryAnalysis] = Field(default_factory=list)
    layout_type: SheetLayoutType = SheetLayoutType.SINGLE
    row_gap_threshold: int = 2
    col_gap_threshold: int = 1
    issues: List[DetectionIssue] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore", frozen=True)


class RejectedDataset(BaseModel):
    name: str
    bounding_box: Optional[BoundingBox] = None
    reason: str
    original_size: str = Field(..., description='e.g. "51 samples × 10 concentrations"')

    model_config = ConfigDict(extra="ignore", frozen=True)


class SegmentationStats(BaseModel):
    original_count: int = 0
    segmented_count: int = 0
    rejected_count: int = 0
    strategy: str = "none"

    model_config = ConfigDict(extra="ignore")


class DosePoint(BaseModel):
    """One extracted (concentration, responses) row."""

    concentration: float = Field(..., description="Concentration in nM")
    responses: List[Optional[float]] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore", frozen=True)


class DetectionResult(BaseModel):
    candidates: List[DatasetCandidate] = Field(default_factory=list)
    issues: List[DetectionIssue] = Field(default_factory=list)
    rejected: List[RejectedDataset] = Field(default_factory=list)
    layout_type: SheetLayoutType = SheetLayoutType.SINGLE
    boundaries: List[BoundaryAnalysis] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Workbooks
# ---------------------------------------------------------------------------


class SheetPattern(BaseModel):
    """Layout of the best dataset found on one sheet, used to compare sheets."""

    sheet_name: str
    header_index: Optional[int] = None
    concentration_index: Optional[int] = None
    response_count: int = 0
    orientation: Optional[Orientation] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    issues: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore", frozen=True)


class SheetPatternDifference(BaseModel):
    sheet_name: str
    pattern: SheetPattern
    issues: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore", frozen=True)


class WorkbookConsistency(BaseModel):
    """Whether every sheet of a workbook shares one layout."""

    is_consistent: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0, description="Mean pattern confidence")
    reference_sheet: Optional[str] = None
    common_pattern: Optional[SheetPattern] = Field(
        default=None, description="Reference layout, set only when the sheets are consistent"
    )
    differences: List[SheetPatternDifference] = Field(default_factory=list)
    explanations: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class SheetDetectionResult(BaseModel):
    sheet_name: str
    result: DetectionResult

    model_config = ConfigDict(extra="ignore")


class WorkbookDetectionResult(BaseModel):
    sheets: List[SheetDetectionResult] = Field(default_factory=list)
    consistency: WorkbookConsistency = Field(default_factory=WorkbookConsistency)
    issues: List[DetectionIssue] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# API requests
# ---------------------------------------------------------------------------


class DoseResponseAnalysisRequest(BaseModel):
    """Request for whole-sheet dose-response layout detection."""

    grid: List[List[Any]] = Field(..., description="Raw 2D grid (rows of scalar values)")
    options: Dict[str, Any] = Field(
        default_factory=dict, description="Detection setting overrides (field name -> value)"
    )

    model_config = ConfigDict(extra="ignore")


class GateAnalysisRequest(DoseResponseAnalysisRequest):
    """Request for detection inside a user-drawn gate (skips region segmentation)."""

    gate: BoundingBox


class DataPointExtractionRequest(BaseModel):
    grid: List[List[Any]]
    candidate: DatasetCandidate

    model_config = ConfigDict(extra="ignore")


class DataPointExtractionResponse(BaseModel):
    candidate_id: str
    points: List[DosePoint] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")
