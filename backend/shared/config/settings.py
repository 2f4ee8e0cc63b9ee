"""
Centralized Configuration System for dosegate

This module provides type-safe configuration using Pydantic Settings. Every
empirically tuned constant of the detection engine lives here as a named,
overridable field so that deployments and tests can adjust thresholds
without code changes.

Features:
- Environment variable binding with defaults (``DOSEGATE_`` prefix for the engine)
- ``.env`` support outside containers
- Hierarchical configuration structure
- Test-friendly reload
"""

import math
import os
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file():
    return ".env" if not os.getenv("DOCKER_CONTAINER") else None


class Environment(str, Enum):
    """Application environment types"""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class DetectionSettings(BaseSettings):
    """Dose-response detection engine thresholds"""

    model_config = SettingsConfigDict(
        env_prefix="DOSEGATE_",
        env_file=_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Region segmentation
    gap_emptiness_threshold: float = Field(
        default=0.8, ge=0.0, le=1.0,
        description="Fraction of empty cells that turns a row/column into a gap line"
    )
    min_gap_band: int = Field(
        default=2, ge=1,
        description="Consecutive gap lines needed to form a separating gap band"
    )
    min_region_rows: int = Field(default=3, ge=1, description="Smallest viable region height")
    min_region_cols: int = Field(default=2, ge=1, description="Smallest viable region width")
    local_density_radius: int = Field(
        default=2, ge=0,
        description="Window radius used when measuring local density during flood fill"
    )
    local_density_threshold: float = Field(
        default=0.3, ge=0.0, le=1.0,
        description="Local density that keeps an empty cell inside a region"
    )
    min_region_points: int = Field(
        default=6, ge=1,
        description="Minimum filled cells for a flood-filled component"
    )
    gap_outlier_sigma: float = Field(
        default=1.5, ge=0.0,
        description="Standard deviations above the mean gap size for the adaptive separator threshold"
    )
    min_row_gap_threshold: int = Field(default=2, ge=1)
    max_row_gap_threshold: int = Field(default=6, ge=1)
    min_col_gap_threshold: int = Field(default=1, ge=1)
    max_col_gap_threshold: int = Field(default=4, ge=1)

    # Dilution pattern analysis
    dilution_tolerance: float = Field(
        default=0.15, gt=0.0,
        description="Relative tolerance when matching a canonical dilution ratio"
    )
    common_dilution_ratios: List[float] = Field(
        default_factory=lambda: [2.0, 3.0, 5.0, 10.0, math.sqrt(10.0)],
        description="Canonical dilution factors, checked in order"
    )
    log_ratio_tolerance: float = Field(
        default=0.2, gt=0.0,
        description="Allowed distance of the mean log10 step from 1.0 for the log-scale fallback"
    )
    custom_cv_threshold: float = Field(
        default=0.3, gt=0.0,
        description="Ratio coefficient of variation below which a series is a custom dilution"
    )
    high_variation_cv: float = Field(
        default=0.2, ge=0.0,
        description="Ratio coefficient of variation reported as high variation"
    )
    two_point_confidence: float = Field(
        default=0.0, ge=0.0, le=1.0,
        description="Pattern confidence for a series with exactly two points"
    )
    irregular_confidence: float = Field(default=0.1, ge=0.0, le=1.0)

    # Layout detection
    header_scan_rows: int = Field(default=10, ge=1, description="Rows scanned for a header")
    numeric_scan_rows: int = Field(
        default=20, ge=1,
        description="Rows below the header sampled when measuring numeric fill"
    )
    header_score_scale: float = Field(default=15.0, gt=0.0)
    concentration_score_scale: float = Field(default=35.0, gt=0.0)
    response_score_scale: float = Field(default=15.0, gt=0.0)
    response_accept_score: float = Field(default=5.0, ge=0.0)
    max_response_axes: int = Field(default=12, ge=1)
    horizontal_preference: float = Field(
        default=1.1, gt=0.0,
        description="Multiplier applied to the horizontal orientation score"
    )

    # Biological constraints
    max_samples: int = Field(default=8, ge=1, description="Most samples a single curve dataset may hold")
    max_concentrations: int = Field(default=15, ge=1)
    min_samples: int = Field(default=1, ge=1)
    min_concentrations: int = Field(
        default=6, ge=1,
        description="Fewest concentration points that still allow a curve fit"
    )
    prefer_individual_curves: bool = Field(default=True)
    enable_matrix_segmentation: bool = Field(default=True)
    segment_keep_threshold: float = Field(
        default=0.3, ge=0.0, le=1.0,
        description="Biological confidence below which a segment is dropped"
    )
    quality_threshold: float = Field(
        default=0.5, ge=0.0, le=1.0,
        description="Global biological confidence needed to keep a segmented dataset"
    )

    # Orchestration
    overlap_threshold: float = Field(
        default=0.7, ge=0.0, le=1.0,
        description="Intersection over own area above which a lower ranked candidate is dropped"
    )
    max_candidates: int = Field(default=15, ge=1, description="Cap on returned candidates")

    @field_validator("common_dilution_ratios")
    @classmethod
    def validate_ratios(cls, v: List[float]) -> List[float]:
        if not v or any(ratio <= 1.0 for ratio in v):
            raise ValueError("dilution ratios must be non-empty and greater than 1")
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> "DetectionSettings":
        if self.min_row_gap_threshold > self.max_row_gap_threshold:
            raise ValueError("min_row_gap_threshold must not exceed max_row_gap_threshold")
        if self.min_col_gap_threshold > self.max_col_gap_threshold:
            raise ValueError("min_col_gap_threshold must not exceed max_col_gap_threshold")
        if self.min_concentrations > self.max_concentrations:
            raise ValueError("min_concentrations must not exceed max_concentrations")
        return self


class ServiceSettings(BaseSettings):
    """Service configuration settings"""

    model_config = SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    dosegate_host: str = Field(
        default="localhost",
        description="dosegate service host"
    )
    dosegate_port: int = Field(
        default=8004,
        description="dosegate service port"
    )

    # CORS Configuration
    cors_enabled: bool = Field(
        default=True,
        description="Enable CORS"
    )
    cors_origins: str = Field(
        default='["http://localhost:3000", "http://localhost:5173"]',
        description="CORS allowed origins (JSON array string)"
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from JSON string"""
        import json

        try:
            origins = json.loads(self.cors_origins)
        except (json.JSONDecodeError, TypeError):
            return ["*"]
        return origins if isinstance(origins, list) else ["*"]


class ApplicationSettings(BaseSettings):
    """Main application settings - aggregates all other settings"""

    model_config = SettingsConfigDict(
        env_file=_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment"
    )
    log_level: str = Field(
        default="INFO",
        description="Root log level"
    )

    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    services: ServiceSettings = Field(default_factory=ServiceSettings)

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == Environment.PRODUCTION

    @property
    def is_test(self) -> bool:
        """Check if running in test mode"""
        return self.environment == Environment.TEST


settings = ApplicationSettings()


def get_settings() -> ApplicationSettings:
    """
    Get the global settings instance

    Usable with FastAPI's Depends() for dependency injection.
    """
    return settings


def reload_settings() -> ApplicationSettings:
    """
    Reload settings from environment (useful for testing)

    Returns:
        ApplicationSettings: New settings instance with reloaded values
    """
    global settings
    settings = ApplicationSettings()
    return settings


def get_detection_settings(overrides: Optional[Dict[str, Any]] = None) -> DetectionSettings:
    """
    Detection thresholds with optional per-request overrides applied on top.

    Unknown keys are ignored; invalid values raise ``pydantic.ValidationError``.
    """
    base = settings.detection
    if not overrides:
        return base
    return DetectionSettings(**{**base.model_dump(), **overrides})
