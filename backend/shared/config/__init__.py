"""
Unified configuration access point for dosegate.

    from shared.config import get_settings, DEFAULT_VOCABULARY

    thresholds = get_settings().detection
"""

from .settings import (
    ApplicationSettings,
    DetectionSettings,
    Environment,
    ServiceSettings,
    get_detection_settings,
    get_settings,
    reload_settings,
)
from .vocabulary import DEFAULT_VOCABULARY, DetectionVocabulary

__all__ = [
    "ApplicationSettings",
    "DetectionSettings",
    "Environment",
    "ServiceSettings",
    "get_detection_settings",
    "get_settings",
    "reload_settings",
    "DEFAULT_VOCABULARY",
    "DetectionVocabulary",
]
