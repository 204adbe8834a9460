"""
Utilities package for the Census ingest engine.

Exports shared helpers for logging and profiling. Keep this package
lightweight and free of scheduling or validation logic.
"""

from census_ingest.utils.logging import configure_logging, get_logger
from census_ingest.utils.profiler import ProfileStats, profile_block

__all__ = [
    "configure_logging",
    "get_logger",
    "ProfileStats",
    "profile_block",
]
