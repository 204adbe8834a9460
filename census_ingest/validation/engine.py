"""
Batch quality scoring.

``ValidationEngine.validate`` is a pure function of a record batch and a
geography level: it never mutates its input and performs no I/O, so
re-validating stored records always reproduces the same result.

Per record it checks required fields, the geography code shape and
level-specific fields, and numeric fields against their expected ranges. A
record with any issue is invalid. Issues are aggregated by ``(type, message)``
with summed record counts and ordered error > warning > info, then by record
count descending, so the most impactful problems come first.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from census_ingest.config import ValidationSettings
from census_ingest.domain.models import (
    GeographyLevel,
    IssueType,
    Severity,
    ValidationIssue,
    ValidationMetrics,
    ValidationResult,
)
from census_ingest.errors import ValidationFailure
from census_ingest.validation.rules import ValidationRules, default_rules

MAX_SAMPLE_RECORDS = 5


@dataclass
class _Accumulator:
    type: IssueType
    severity: Severity
    message: str
    order: int
    record_count: int = 0
    samples: List[int] = field(default_factory=list)


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


class ValidationEngine:
    def __init__(
        self,
        settings: Optional[ValidationSettings] = None,
        rules: Optional[ValidationRules] = None,
    ) -> None:
        self.settings = settings or ValidationSettings()
        self.rules = rules or default_rules()
        self._code_formats: Dict[GeographyLevel, "re.Pattern[str]"] = {
            level: re.compile(rule.code_format)
            for level, rule in self.rules.geography_rules.items()
        }

    @property
    def accuracy_threshold(self) -> float:
        return self.settings.quality_thresholds.accuracy

    def check_record(
        self, record: Mapping[str, Any], level: GeographyLevel
    ) -> List[Tuple[IssueType, Severity, str]]:
        """Issues for a single record as ``(type, severity, message)`` triples."""
        issues: List[Tuple[IssueType, Severity, str]] = []

        for name in self.rules.required_fields:
            if _is_missing(record.get(name)):
                issues.append(
                    (IssueType.MISSING_DATA, Severity.ERROR, f"Missing required field: {name}")
                )

        geo_rule = self.rules.geography_rules.get(level)
        if geo_rule is not None:
            for name in geo_rule.required_fields:
                if name in self.rules.required_fields:
                    continue
                if _is_missing(record.get(name)):
                    issues.append(
                        (
                            IssueType.INCONSISTENT_GEOGRAPHY,
                            Severity.ERROR,
                            f"Missing {name} required for {level.value} geography",
                        )
                    )
            code = record.get("geography_code")
            if not _is_missing(code) and not self._code_formats[level].fullmatch(str(code)):
                issues.append(
                    (
                        IssueType.INCONSISTENT_GEOGRAPHY,
                        Severity.ERROR,
                        f"Invalid geography code format for {level.value}",
                    )
                )

        for name in self.rules.numeric_fields:
            raw = record.get(name)
            if raw is None:
                continue
            value = _as_number(raw)
            if value is None:
                issues.append(
                    (IssueType.INVALID_RANGE, Severity.ERROR, f"Non-numeric value in field: {name}")
                )
                continue
            bounds = self.rules.data_ranges.get(name)
            if bounds is None:
                continue
            if bounds.min is not None and value < bounds.min:
                issues.append(
                    (IssueType.OUTLIER, Severity.WARNING, f"Value below expected range in {name}")
                )
            if bounds.max is not None and value > bounds.max:
                issues.append(
                    (IssueType.OUTLIER, Severity.WARNING, f"Value above expected range in {name}")
                )

        return issues

    def validate(
        self, records: Sequence[Mapping[str, Any]], level: GeographyLevel | str
    ) -> ValidationResult:
        level = GeographyLevel(level)
        aggregated: Dict[Tuple[IssueType, str], _Accumulator] = {}
        valid = invalid = missing = outliers = 0

        for index, record in enumerate(records):
            record_issues = self.check_record(record, level)
            if not record_issues:
                valid += 1
                continue
            invalid += 1
            for issue_type, severity, message in record_issues:
                if issue_type is IssueType.MISSING_DATA:
                    missing += 1
                elif issue_type is IssueType.OUTLIER:
                    outliers += 1
                key = (issue_type, message)
                acc = aggregated.get(key)
                if acc is None:
                    acc = aggregated[key] = _Accumulator(
                        issue_type, severity, message, order=len(aggregated)
                    )
                acc.record_count += 1
                if len(acc.samples) < MAX_SAMPLE_RECORDS:
                    acc.samples.append(index)

        total = len(records)
        score = valid / total if total else 1.0
        ordered = sorted(
            aggregated.values(),
            key=lambda a: (-a.severity.rank, -a.record_count, a.order),
        )
        return ValidationResult(
            passed=score >= self.accuracy_threshold,
            score=score,
            issues=[
                ValidationIssue(
                    type=a.type,
                    severity=a.severity,
                    message=a.message,
                    record_count=a.record_count,
                    sample_records=list(a.samples),
                )
                for a in ordered
            ],
            metrics=ValidationMetrics(
                total_records=total,
                valid_records=valid,
                invalid_records=invalid,
                missing_data=missing,
                outliers=outliers,
            ),
        )

    def validate_or_raise(
        self,
        records: Sequence[Mapping[str, Any]],
        level: GeographyLevel | str,
        job_id: Optional[str] = None,
    ) -> ValidationResult:
        """Validate and raise ValidationFailure when the batch does not pass."""
        result = self.validate(records, level)
        if not result.passed:
            raise ValidationFailure(
                f"Quality score {result.score:.3f} below accuracy threshold "
                f"{self.accuracy_threshold:.3f}",
                result=result,
                job_id=job_id,
            )
        return result


__all__ = ["ValidationEngine", "MAX_SAMPLE_RECORDS"]
