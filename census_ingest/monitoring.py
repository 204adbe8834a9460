"""
Advisory load monitoring.

``LoadMonitor.snapshot`` joins the queue metrics, the quota snapshot and host
memory usage, and compares them against ``monitoring.alert_thresholds``. Alerts
are data for an operator or an external alerting system: the monitor never
pauses jobs or touches the queue.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import psutil

from census_ingest.config import AlertThresholds
from census_ingest.scheduling.job_queue import JobQueue
from census_ingest.utils.logging import get_logger

log = get_logger(__name__)


def _memory_usage() -> Optional[float]:
    try:
        return psutil.virtual_memory().percent / 100.0
    except (OSError, psutil.Error):
        return None


class LoadMonitor:
    def __init__(self, queue: JobQueue, thresholds: Optional[AlertThresholds] = None) -> None:
        self.queue = queue
        self.thresholds = thresholds or queue.config.monitoring.alert_thresholds

    @staticmethod
    def error_rate(queue_metrics: Dict[str, Any]) -> float:
        finished = queue_metrics["completedJobs"] + queue_metrics["failedJobs"]
        return queue_metrics["failedJobs"] / finished if finished else 0.0

    @staticmethod
    def api_usage(quota_snapshot: Dict[str, Any]) -> float:
        budget = quota_snapshot["dailyBudget"]
        return quota_snapshot["consumedToday"] / budget if budget else 1.0

    def alerts(
        self, error_rate: float, api_usage: float, memory_usage: Optional[float]
    ) -> List[Dict[str, Any]]:
        checks = [
            ("error_rate", error_rate, self.thresholds.error_rate),
            ("api_usage", api_usage, self.thresholds.api_usage),
            ("memory_usage", memory_usage, self.thresholds.memory_usage),
        ]
        return [
            {"metric": metric, "value": round(value, 4), "threshold": threshold}
            for metric, value, threshold in checks
            if value is not None and value >= threshold
        ]

    def snapshot(self) -> Dict[str, Any]:
        queue_metrics = self.queue.metrics()
        quota = self.queue.quota.snapshot()
        memory = _memory_usage()
        error_rate = self.error_rate(queue_metrics)
        api_usage = self.api_usage(quota)
        return {
            "queue": queue_metrics,
            "quota": quota,
            "errorRate": round(error_rate, 4),
            "apiUsage": round(api_usage, 4),
            "memoryUsage": round(memory, 4) if memory is not None else None,
            "alerts": self.alerts(error_rate, api_usage, memory),
        }

    def log_snapshot(self) -> Dict[str, Any]:
        snap = self.snapshot()
        queue_metrics = snap["queue"]
        log.info(
            f"[MONITOR] {queue_metrics['pendingJobs']} pending, "
            f"{queue_metrics['runningJobs']} running, "
            f"{snap['quota']['remainingToday']} calls left today",
            extra={
                "queue": queue_metrics,
                "quota": snap["quota"],
                "error_rate": snap["errorRate"],
                "api_usage": snap["apiUsage"],
                "memory_usage": snap["memoryUsage"],
            },
        )
        for alert in snap["alerts"]:
            log.warning(
                f"[ALERT] {alert['metric']} at {alert['value']:.2%} "
                f"(threshold {alert['threshold']:.2%})",
                extra=alert,
            )
        return snap


__all__ = ["LoadMonitor"]
