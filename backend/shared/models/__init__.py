"""
Shared model definitions for dosegate
"""

from .dose_response import (
    BoundingBox,
    CellKind,
    ConcentrationAxis,
    DatasetCandidate,
    DetectionIssue,
    DetectionResult,
    DilutionPattern,
    DilutionPatternType,
    IssueSeverity,
    Orientation,
)

__all__ = [
    "BoundingBox",
    "CellKind",
    "ConcentrationAxis",
    "DatasetCandidate",
    "DetectionIssue",
    "DetectionResult",
    "DilutionPattern",
    "DilutionPatternType",
    "IssueSeverity",
    "Orientation",
]
