"""
Shared services module

Import services by their direct path so only what a module uses gets loaded:
- shared.services.service_factory
- shared.services.sheet_grid_parser
"""

__all__ = []
