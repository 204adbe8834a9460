from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError
from rich.console import Console

from census_ingest.config import build_loading_config, get_settings
from census_ingest.domain.models import GeographyLevel, GeographySpec, Job, JobKind
from census_ingest.errors import CensusIngestError
from census_ingest.infrastructure.persistence import MemorySink, PostgresSink, ResultSink
from census_ingest.planning import plan_jobs
from census_ingest.providers.fixture import FixtureProvider
from census_ingest.reporter import print_jobs, print_queue_metrics, print_validation_result
from census_ingest.scheduler import Scheduler
from census_ingest.scheduling.job_queue import JobQueue
from census_ingest.utils.logging import configure_logging
from census_ingest.validation.engine import ValidationEngine

app = typer.Typer(help="Census ingest engine CLI.")


def _split(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _load_json_array(path: Path) -> list:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        typer.echo(f"Could not read {path}: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    if not isinstance(data, list):
        typer.echo(f"{path} must contain a JSON array", err=True)
        raise typer.Exit(code=2)
    return data


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    config = build_loading_config(settings)
    limits = config.api_rate_limit
    typer.echo(
        f"env={settings.app_env} DB={settings.db_user}@{settings.db_host}:"
        f"{settings.db_port}/{settings.db_name} | "
        f"concurrency={config.max_concurrent_jobs} retries={config.max_retries} "
        f"retry_delay_ms={config.retry_delay_ms} | "
        f"quota daily={limits.daily_limit} burst={limits.burst_limit} "
        f"reserve={limits.reserve_for_users} | "
        f"strict={config.validation.strict_mode} "
        f"accuracy={config.validation.quality_thresholds.accuracy}"
    )


@app.command()
def validate(
    file: Path = typer.Argument(..., help="JSON array of records to score."),
    level: GeographyLevel = typer.Option(..., "--level", "-l", help="Geography level."),
) -> None:
    """
    Score a record file and list its aggregated issues. Exits 1 when it fails.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    records = _load_json_array(file)
    engine = ValidationEngine(build_loading_config(settings).validation)
    result = engine.validate(records, level)
    print_validation_result(result, title=file.name)
    if not result.passed:
        raise typer.Exit(code=1)


@app.command()
def plan(
    level: GeographyLevel = typer.Option(..., "--level", "-l", help="Geography level."),
    variables: str = typer.Option(..., "--variables", "-v", help="Comma-separated variable ids."),
    codes: str = typer.Option("", "--codes", "-c", help="Comma-separated codes (empty = all)."),
    kind: JobKind = typer.Option(JobKind.BULK, "--kind", help="Job kind."),
    phase: Optional[str] = typer.Option(None, "--phase", help="Phase label stored in metadata."),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Write the planned jobs to this JSON file."
    ),
) -> None:
    """
    Split a request into prioritized jobs sized for the upstream API.
    """
    config = build_loading_config(get_settings())
    var_list = _split(variables)
    if not var_list:
        typer.echo("At least one variable is required.", err=True)
        raise typer.Exit(code=2)
    jobs = plan_jobs(
        GeographySpec(level=level, codes=set(_split(codes))),
        var_list,
        config,
        kind=kind,
        phase=phase,
    )
    print_jobs(jobs, title=f"Planned {len(jobs)} job(s)")
    if output is not None:
        with output.open("w", encoding="utf-8") as f:
            json.dump([job.model_dump(mode="json") for job in jobs], f, indent=2)
        typer.echo(f"Wrote {len(jobs)} job(s) to {output}")


@app.command()
def run(
    jobs_file: Path = typer.Argument(..., help="JSON array of job definitions."),
    fixtures: Optional[Path] = typer.Option(
        None, "--fixtures", "-f", help="Fixture directory (default from settings)."
    ),
    persist: bool = typer.Option(
        False, "--persist/--dry-run", help="Write accepted records to PostgreSQL."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", "-t", help="Stop after this many seconds."
    ),
) -> None:
    """
    Queue the jobs in JOBS_FILE and run the scheduler until the queue drains.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    config = build_loading_config(settings)

    queue = JobQueue(config)
    for item in _load_json_array(jobs_file):
        try:
            queue.add(Job.model_validate(item))
        except (ValidationError, CensusIngestError) as exc:
            job_id = item.get("id", "?") if isinstance(item, dict) else "?"
            typer.echo(f"Rejected job {job_id}: {exc}", err=True)
    if not len(queue):
        typer.echo("No jobs to run.", err=True)
        raise typer.Exit(code=2)

    sink: ResultSink
    if persist:
        postgres = PostgresSink()
        postgres.ensure_schema()
        sink = postgres
    else:
        sink = MemorySink()

    provider = FixtureProvider(fixtures or Path(settings.fixtures_dir))
    scheduler = Scheduler(queue, provider=provider, sink=sink, config=config)
    summary = scheduler.run_until_idle(timeout=timeout)

    console = Console()
    print_queue_metrics(queue.metrics(), console=console)
    typer.echo(json.dumps(summary.as_dict(), indent=2))
    if summary.failed:
        raise typer.Exit(code=1)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
