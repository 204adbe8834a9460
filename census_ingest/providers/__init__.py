"""
Providers package for the Census ingest engine.

Re-exports the fetch contract and the bundled file-backed provider so callers
can import from ``census_ingest.providers`` directly.
"""

from census_ingest.providers.abstract import (
    AbstractStatisticsProvider,
    BatchSpec,
    Record,
    StatisticsProvider,
    variable_column,
)
from census_ingest.providers.fixture import FixtureProvider

__all__ = [
    "AbstractStatisticsProvider",
    "BatchSpec",
    "Record",
    "StatisticsProvider",
    "FixtureProvider",
    "variable_column",
]
