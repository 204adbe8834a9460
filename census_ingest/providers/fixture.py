"""
File-backed statistics provider.

Serves records from ``<root>/<level>.json`` (a JSON array of row objects), the
layout written by ``scripts/generate_fixtures.py``. Used for dry runs, demos
and tests where the live statistics API is out of reach.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Dict, List

from census_ingest.domain.models import GeographyLevel
from census_ingest.errors import FatalError, TransientError
from census_ingest.providers.abstract import (
    AbstractStatisticsProvider,
    BatchSpec,
    Record,
    variable_column,
)

# Columns always carried through regardless of the requested variables.
IDENTITY_FIELDS = ("dataset", "year", "geography_level", "geography_code", "name")


class FixtureProvider(AbstractStatisticsProvider):
    name: str = "fixture"

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self._cache: Dict[GeographyLevel, List[Record]] = {}
        self._lock = threading.Lock()
        self.calls = 0

    def _load(self, level: GeographyLevel) -> List[Record]:
        with self._lock:
            if level in self._cache:
                return self._cache[level]
            path = self.root / f"{level.value}.json"
            if not path.exists():
                raise FatalError(f"No fixture file for geography level {level.value}: {path}")
            try:
                with path.open("r", encoding="utf-8") as f:
                    rows = json.load(f)
            except (OSError, json.JSONDecodeError) as exc:
                raise TransientError(f"Could not read fixture {path}: {exc}") from exc
            if not isinstance(rows, list):
                raise FatalError(f"Fixture {path} must contain a JSON array")
            self._cache[level] = rows
            return rows

    def fetch(self, spec: BatchSpec) -> List[Record]:
        with self._lock:
            self.calls += 1
        rows = self._load(spec.level)
        wanted = set(spec.codes)
        keep = set(IDENTITY_FIELDS) | {variable_column(v) for v in spec.variables}

        out: List[Record] = []
        for row in rows:
            if wanted and str(row.get("geography_code")) not in wanted:
                continue
            projected = {k: v for k, v in row.items() if k in keep}
            projected.setdefault("dataset", spec.dataset)
            projected.setdefault("year", spec.year)
            out.append(projected)
        return out


__all__ = ["FixtureProvider", "IDENTITY_FIELDS"]
