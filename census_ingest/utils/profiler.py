"""
Lightweight per-batch profiling for the scheduler workers.

Each dispatched job runs inside ``profile_block`` to capture wall-clock
duration, process RSS before/after and a CPU snapshot. Only point-in-time
counters are read, so many workers can profile concurrently.

Usage:
    from census_ingest.utils.profiler import profile_block

    with profile_block(job.id) as stats:
        records = provider.fetch(spec)
    log.info("fetched", extra={"duration": stats.duration_seconds})
"""

from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass, field
from typing import Any, Generator, Optional

import psutil


@dataclass
class ProfileStats:
    """
    Measurements for one profiled block.
    """

    label: str
    start_ts: float = field(default=0.0)
    end_ts: float = field(default=0.0)
    duration_seconds: float = field(default=0.0)
    rss_start_bytes: Optional[int] = field(default=None)
    rss_end_bytes: Optional[int] = field(default=None)
    cpu_percent: Optional[float] = field(default=None)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def rss_delta_bytes(self) -> Optional[int]:
        if self.rss_start_bytes is None or self.rss_end_bytes is None:
            return None
        return self.rss_end_bytes - self.rss_start_bytes

    def as_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "duration_seconds": round(self.duration_seconds, 4),
            "rss_delta_bytes": self.rss_delta_bytes,
            "cpu_percent": self.cpu_percent,
            **self.extra,
        }


def _rss(process: psutil.Process) -> Optional[int]:
    try:
        return process.memory_info().rss
    except psutil.Error:
        return None


@contextlib.contextmanager
def profile_block(label: str) -> Generator[ProfileStats, None, None]:
    """
    Profile a block of code.

    Parameters
    ----------
    label : str
        Identifier for the block, typically the job id.
    """
    stats = ProfileStats(label=label)
    process = psutil.Process()
    stats.rss_start_bytes = _rss(process)
    process.cpu_percent(interval=None)

    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.end_ts = time.perf_counter()
        stats.duration_seconds = stats.end_ts - stats.start_ts
        stats.rss_end_bytes = _rss(process)
        try:
            stats.cpu_percent = process.cpu_percent(interval=None)
        except psutil.Error:
            stats.cpu_percent = None


__all__ = ["ProfileStats", "profile_block"]
