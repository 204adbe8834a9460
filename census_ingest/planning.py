"""
Job planning: turning a geography/variable request into queueable jobs.

- ``calculate_job_priority`` blends business value of the geography level with
  the mean priority of the requested variables.
- ``chunk_request`` splits a request so that no job exceeds the upstream
  per-call variable cap and each job's codes fit the level's batch size.
- ``split_batches`` / ``call_cost`` describe how one job maps onto upstream
  calls; the queue reserves quota with the same arithmetic the scheduler uses
  to dispatch.
"""

from __future__ import annotations

import math
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from census_ingest.config import LoadingConfig
from census_ingest.domain.models import GeographyLevel, GeographySpec, Job, JobKind
from census_ingest.providers.abstract import BatchSpec

VARIABLE_PRIORITIES: Dict[str, int] = {
    # core
    "B01003_001E": 100,  # total population
    "B25001_001E": 95,  # housing units
    "B19013_001E": 95,  # median household income
    # demographics
    "B01001_001E": 85,
    "B02001_001E": 85,
    "B15003_001E": 80,
    # economics and housing
    "B23025_001E": 85,
    "B17001_001E": 80,
    "B08303_001E": 75,
    "B25077_001E": 80,
    "B25003_001E": 75,
    "B25010_001E": 70,
    "B25064_001E": 65,
    # secondary
    "B08301_001E": 60,
    "B12001_001E": 55,
    "B11001_001E": 55,
    "B27001_001E": 45,
    "B24010_001E": 40,
    "B09001_001E": 35,
}
UNKNOWN_VARIABLE_PRIORITY = 30

# Approximate number of areas nationwide, used when a job targets every area.
AREA_COUNTS: Dict[GeographyLevel, int] = {
    GeographyLevel.NATION: 1,
    GeographyLevel.STATE: 51,
    GeographyLevel.METRO: 384,
    GeographyLevel.COUNTY: 3143,
    GeographyLevel.PLACE: 19495,
    GeographyLevel.ZCTA: 33120,
    GeographyLevel.TRACT: 74001,
    GeographyLevel.BLOCK_GROUP: 220740,
}


def _chunks(items: Sequence[str], size: int) -> List[Tuple[str, ...]]:
    return [tuple(items[i : i + size]) for i in range(0, len(items), size)]


def calculate_job_priority(
    level: GeographyLevel, variables: Iterable[str], config: LoadingConfig
) -> int:
    variables = list(variables)
    geo = config.priority_for(level)
    if not variables:
        return geo
    var = sum(VARIABLE_PRIORITIES.get(v, UNKNOWN_VARIABLE_PRIORITY) for v in variables) / len(
        variables
    )
    return max(0, min(100, round(geo * 0.7 + var * 0.3)))


def estimate_record_count(level: GeographyLevel, codes: Iterable[str] = ()) -> int:
    count = len(set(codes))
    return count if count else AREA_COUNTS[level]


def split_batches(job: Job, config: LoadingConfig) -> List[BatchSpec]:
    """Upstream calls needed for ``job``: code batches x variable chunks."""
    level = job.geography.level
    codes = job.geography.sorted_codes()
    code_batches: List[Tuple[str, ...]] = (
        _chunks(codes, config.batch_size_for(level)) if codes else [()]
    )
    var_batches = _chunks(list(job.variables), config.max_variables_per_call) or [()]
    return [
        BatchSpec(
            dataset=job.dataset,
            year=job.year,
            level=level,
            codes=code_batch,
            variables=var_batch,
        )
        for var_batch in var_batches
        for code_batch in code_batches
    ]


def call_cost(job: Job, config: LoadingConfig) -> int:
    codes = len(job.geography.codes)
    code_batches = max(1, math.ceil(codes / config.batch_size_for(job.geography.level)))
    var_batches = max(1, math.ceil(len(job.variables) / config.max_variables_per_call))
    return code_batches * var_batches


def chunk_request(
    geography: GeographySpec, variables: Sequence[str], config: LoadingConfig
) -> List[Tuple[GeographySpec, List[str]]]:
    """Split a request into (geography, variables) pieces sized for one job each."""
    var_chunks = _chunks(list(variables), config.max_variables_per_call)
    codes = geography.sorted_codes()
    code_chunks = _chunks(codes, config.batch_size_for(geography.level)) if codes else [()]
    return [
        (GeographySpec(level=geography.level, codes=set(code_chunk)), list(var_chunk))
        for var_chunk in var_chunks
        for code_chunk in code_chunks
    ]


def plan_jobs(
    geography: GeographySpec,
    variables: Sequence[str],
    config: LoadingConfig,
    kind: JobKind = JobKind.BULK,
    dataset: str = "acs5",
    year: str = "2022",
    phase: Optional[str] = None,
    priority: Optional[int] = None,
) -> List[Job]:
    """
    Build one pending Job per chunk of the request, highest priority first.

    ``priority`` overrides the computed priority for every job.
    """
    pieces = chunk_request(geography, variables, config)
    jobs: List[Job] = []
    for index, (geo, chunk_vars) in enumerate(pieces):
        metadata: Dict[str, Any] = {"chunk_index": index, "total_chunks": len(pieces)}
        if phase:
            metadata["phase"] = phase
        jobs.append(
            Job(
                id=f"job_{uuid.uuid4().hex[:12]}",
                kind=kind,
                priority=(
                    priority
                    if priority is not None
                    else calculate_job_priority(geo.level, chunk_vars, config)
                ),
                geography=geo,
                variables=chunk_vars,
                dataset=dataset,
                year=year,
                estimated_records=estimate_record_count(geo.level, geo.codes),
                max_retries=config.max_retries,
                metadata=metadata,
            )
        )
    return sorted(jobs, key=lambda j: -j.priority)


__all__ = [
    "AREA_COUNTS",
    "VARIABLE_PRIORITIES",
    "calculate_job_priority",
    "call_cost",
    "chunk_request",
    "estimate_record_count",
    "plan_jobs",
    "split_batches",
]
