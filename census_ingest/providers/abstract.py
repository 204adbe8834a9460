"""
Statistics provider contract.

The scheduler only ever sees ``fetch(spec) -> records``: one call per batch of
geography codes and variables, each call charged against the API quota whether
it succeeds or not. Concrete providers should raise TransientError for
retryable upstream failures and FatalError for requests that can never succeed;
anything else is treated as transient by the scheduler.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Dict, List, Protocol, Tuple, runtime_checkable

from census_ingest.domain.models import GeographyLevel

Record = Dict[str, Any]


def variable_column(variable: str) -> str:
    """Column name a variable id is stored under, e.g. ``B01003_001E -> var_b01003_001e``."""
    return f"var_{variable.lower()}"


@dataclass(frozen=True)
class BatchSpec:
    """
    One upstream call.

    Attributes
    ----------
    dataset, year : str
        Dataset identifier (e.g. ``acs5``) and vintage.
    level : GeographyLevel
        Geography granularity of the request.
    codes : tuple[str, ...]
        Geography codes to fetch; empty means every area of the level.
    variables : tuple[str, ...]
        Variable identifiers, at most ``max_variables_per_call``.
    """

    dataset: str
    year: str
    level: GeographyLevel
    codes: Tuple[str, ...]
    variables: Tuple[str, ...]


@runtime_checkable
class StatisticsProvider(Protocol):
    """
    Common interface every statistics provider must implement.

    Attributes
    ----------
    name : str
        A short machine-friendly identifier.
    """

    name: str

    def fetch(self, spec: BatchSpec) -> List[Record]:
        """
        Fetch raw rows for one batch.

        Returns
        -------
        list[dict]
            One mapping per geography area, keyed by field name.
        """
        ...


class AbstractStatisticsProvider(abc.ABC):
    """
    Optional ABC helper for class-based providers.

    Subclasses set ``name`` and implement ``fetch``; ``close`` is a no-op hook
    for providers holding connections.
    """

    name: str

    @abc.abstractmethod
    def fetch(self, spec: BatchSpec) -> List[Record]:  # pragma: no cover - interface only
        raise NotImplementedError

    def close(self) -> None:
        return None


__all__ = [
    "AbstractStatisticsProvider",
    "BatchSpec",
    "Record",
    "StatisticsProvider",
    "variable_column",
]
