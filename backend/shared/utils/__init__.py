"""
Utility functions for dosegate services
"""

from .app_logger import configure_logging, get_logger

__all__ = ["configure_logging", "get_logger"]
