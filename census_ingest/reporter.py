from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from rich import box
from rich.console import Console
from rich.table import Table

from census_ingest.domain.models import Job, Severity, ValidationResult

_SEVERITY_STYLES = {
    Severity.ERROR: "bold red",
    Severity.WARNING: "yellow",
    Severity.INFO: "dim",
}


def print_queue_metrics(metrics: Dict[str, Any], console: Optional[Console] = None) -> None:
    """
    Render a JobQueue metrics snapshot as two rich tables: status counts and
    pending depth per priority.
    """
    console = console or Console()

    table = Table(title="Job Queue", box=box.ROUNDED)
    table.add_column("Status", style="cyan", no_wrap=True)
    table.add_column("Jobs", justify="right", style="magenta")
    for label, key in (
        ("Pending", "pendingJobs"),
        ("Running", "runningJobs"),
        ("Paused", "pausedJobs"),
        ("Completed", "completedJobs"),
        ("Failed", "failedJobs"),
        ("Total", "totalJobs"),
    ):
        table.add_row(label, f"{metrics.get(key, 0):,}")
    table.caption = f"Average wait {metrics.get('averageWaitSeconds', 0.0):.2f}s"
    console.print(table)

    depth = metrics.get("queueDepthByPriority") or {}
    if depth:
        depth_table = Table(title="Pending by Priority", box=box.SIMPLE)
        depth_table.add_column("Priority", justify="right", style="cyan")
        depth_table.add_column("Jobs", justify="right", style="magenta")
        for priority, count in depth.items():
            depth_table.add_row(str(priority), f"{count:,}")
        console.print(depth_table)


def print_validation_result(
    result: ValidationResult, title: str = "Validation", console: Optional[Console] = None
) -> None:
    """
    Render a ValidationResult: a one-line verdict followed by its aggregated
    issues in severity order.
    """
    console = console or Console()
    m = result.metrics
    verdict = "[bold green]PASSED[/bold green]" if result.passed else "[bold red]FAILED[/bold red]"
    console.print(
        f"{title}: {verdict} score={result.score:.3f} "
        f"({m.valid_records:,}/{m.total_records:,} valid, "
        f"{m.missing_data:,} missing, {m.outliers:,} outliers)"
    )
    if not result.issues:
        return

    table = Table(box=box.ROUNDED, caption="Most impactful first")
    table.add_column("Severity", no_wrap=True)
    table.add_column("Type", style="cyan")
    table.add_column("Message")
    table.add_column("Records", justify="right", style="magenta")
    table.add_column("Samples", style="dim")
    for issue in result.issues:
        style = _SEVERITY_STYLES[issue.severity]
        table.add_row(
            f"[{style}]{issue.severity.value}[/{style}]",
            issue.type.value,
            issue.message,
            f"{issue.record_count:,}",
            ", ".join(str(i) for i in issue.sample_records),
        )
    console.print(table)


def print_jobs(jobs: Iterable[Job], title: str = "Jobs", console: Optional[Console] = None) -> None:
    console = console or Console()
    table = Table(title=title, box=box.ROUNDED, caption="Sorted by priority (descending)")
    table.add_column("Job", style="cyan", no_wrap=True)
    table.add_column("Priority", justify="right", style="magenta")
    table.add_column("Level")
    table.add_column("Codes", justify="right")
    table.add_column("Variables", justify="right")
    table.add_column("Status", style="green")
    table.add_column("Retries", justify="right", style="yellow")
    table.add_column("Last error", style="red")
    for job in sorted(jobs, key=lambda j: (-j.priority, j.created_at)):
        table.add_row(
            job.id,
            str(job.priority),
            job.geography.level.value,
            str(len(job.geography.codes)) if job.geography.codes else "all",
            str(len(job.variables)),
            job.status.value,
            f"{job.retry_count}/{job.max_retries}",
            job.last_error or "",
        )
    console.print(table)


__all__ = ["print_jobs", "print_queue_metrics", "print_validation_result"]
