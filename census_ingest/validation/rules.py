"""
Validation rules as data.

Required fields, geography code shapes, numeric fields and expected value
ranges are declared here rather than coded into the engine, so adding a
variable or a geography level is a configuration change.
"""
from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from census_ingest.domain.models import GeographyLevel


class GeographyRule(BaseModel):
    code_format: str = Field(..., description="Regular expression the full code must match.")
    required_fields: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class ValueRange(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _ordered(self) -> "ValueRange":
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"range min {self.min} exceeds max {self.max}")
        return self


class ValidationRules(BaseModel):
    required_fields: List[str] = Field(
        default_factory=lambda: ["dataset", "year", "geography_level", "geography_code", "name"]
    )
    numeric_fields: List[str] = Field(default_factory=list)
    geography_rules: Dict[GeographyLevel, GeographyRule] = Field(default_factory=dict)
    data_ranges: Dict[str, ValueRange] = Field(default_factory=dict)

    model_config = {"frozen": True}


def default_rules() -> ValidationRules:
    """Rules for ACS-style records keyed by lower-cased ``var_<id>`` columns."""
    return ValidationRules(
        numeric_fields=["var_b01003_001e", "var_b25001_001e", "var_b19013_001e"],
        geography_rules={
            GeographyLevel.NATION: GeographyRule(code_format=r"^1$"),
            GeographyLevel.STATE: GeographyRule(
                code_format=r"^\d{2}$",
                required_fields=["name", "geography_code"],
            ),
            GeographyLevel.METRO: GeographyRule(
                code_format=r"^\d{5}$", required_fields=["name", "geography_code"]
            ),
            GeographyLevel.COUNTY: GeographyRule(
                code_format=r"^\d{5}$", required_fields=["name", "geography_code"]
            ),
            GeographyLevel.PLACE: GeographyRule(
                code_format=r"^\d{7}$", required_fields=["name", "geography_code"]
            ),
            GeographyLevel.ZCTA: GeographyRule(
                code_format=r"^\d{5}$", required_fields=["geography_code"]
            ),
            GeographyLevel.TRACT: GeographyRule(
                code_format=r"^\d{11}$", required_fields=["geography_code"]
            ),
            GeographyLevel.BLOCK_GROUP: GeographyRule(
                code_format=r"^\d{12}$", required_fields=["geography_code"]
            ),
        },
        data_ranges={
            "var_b01003_001e": ValueRange(min=0, max=10_000_000),  # total population
            "var_b25001_001e": ValueRange(min=0, max=5_000_000),  # housing units
            "var_b19013_001e": ValueRange(min=0, max=500_000),  # median household income
        },
    )


__all__ = ["GeographyRule", "ValueRange", "ValidationRules", "default_rules"]
