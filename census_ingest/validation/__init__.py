"""
Validation package for the Census ingest engine.

Exports the stateless batch scorer and its data-driven rule set.
"""

from census_ingest.validation.engine import ValidationEngine
from census_ingest.validation.rules import (
    GeographyRule,
    ValidationRules,
    ValueRange,
    default_rules,
)

__all__ = [
    "ValidationEngine",
    "GeographyRule",
    "ValidationRules",
    "ValueRange",
    "default_rules",
]
