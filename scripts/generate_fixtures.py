"""
Fixture generation script for the Census ingest engine.

Writes deterministic pseudo-random records to ``<output>/<level>.json``, the
layout FixtureProvider reads. A fraction of rows can be made defective (missing
name, malformed code, out-of-range population) to exercise validation and the
retry path.
"""

from __future__ import annotations

import json
import random
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from census_ingest.domain.models import GeographyLevel
from census_ingest.planning import VARIABLE_PRIORITIES
from census_ingest.providers.abstract import variable_column

app = typer.Typer(help="Generate synthetic census fixtures for FixtureProvider.")

CODE_WIDTHS: Dict[GeographyLevel, int] = {
    GeographyLevel.STATE: 2,
    GeographyLevel.METRO: 5,
    GeographyLevel.COUNTY: 5,
    GeographyLevel.PLACE: 7,
    GeographyLevel.ZCTA: 5,
    GeographyLevel.TRACT: 11,
    GeographyLevel.BLOCK_GROUP: 12,
}


def _code(level: GeographyLevel, index: int) -> str:
    if level is GeographyLevel.NATION:
        return "1"
    return f"{index + 1:0{CODE_WIDTHS[level]}d}"


def _values(rng: random.Random) -> Dict[str, Any]:
    population = rng.randint(500, 2_000_000)
    values: Dict[str, Any] = {
        "B01003_001E": population,
        "B25001_001E": int(population * rng.uniform(0.3, 0.5)),
        "B19013_001E": rng.randint(20_000, 150_000),
    }
    for variable in VARIABLE_PRIORITIES:
        values.setdefault(variable, rng.randint(0, population))
    return {variable_column(k): v for k, v in values.items()}


def _defect(row: Dict[str, Any], rng: random.Random) -> None:
    kind = rng.choice(["name", "code", "range"])
    if kind == "name":
        row["name"] = None
    elif kind == "code":
        row["geography_code"] = f"X{row['geography_code']}"
    else:
        row[variable_column("B01003_001E")] = -1


def generate_level(
    level: GeographyLevel,
    areas: int,
    rng: random.Random,
    defect_rate: float = 0.0,
    dataset: str = "acs5",
    year: str = "2022",
) -> List[Dict[str, Any]]:
    count = 1 if level is GeographyLevel.NATION else areas
    rows = []
    for i in range(count):
        code = _code(level, i)
        row: Dict[str, Any] = {
            "dataset": dataset,
            "year": year,
            "geography_level": level.value,
            "geography_code": code,
            "name": f"{level.value.replace('_', ' ').title()} {code}",
            **_values(rng),
        }
        if defect_rate and rng.random() < defect_rate:
            _defect(row, rng)
        rows.append(row)
    return rows


@app.command()
def main(
    output: Path = typer.Option(
        Path("fixtures"),
        "--output",
        "-o",
        help="Directory to write <level>.json files into.",
    ),
    areas: int = typer.Option(
        100,
        "--areas",
        "-n",
        help="Areas per geography level (nation always has one).",
    ),
    defect_rate: float = typer.Option(
        0.0,
        "--defect-rate",
        help="Fraction of rows made defective, between 0 and 1.",
    ),
    seed: int = typer.Option(
        42,
        "--seed",
        help="Deterministic RNG seed.",
    ),
    level: Optional[GeographyLevel] = typer.Option(
        None,
        "--level",
        "-l",
        help="Only generate this level (default: all levels).",
    ),
) -> None:
    """
    Generate synthetic fixture files for one or all geography levels.
    """
    if not 0.0 <= defect_rate <= 1.0:
        typer.echo("--defect-rate must be between 0 and 1", err=True)
        raise typer.Exit(code=2)

    start = time.perf_counter()
    rng = random.Random(seed)
    output.mkdir(parents=True, exist_ok=True)
    levels = [level] if level is not None else list(GeographyLevel)
    total = 0
    for lvl in levels:
        rows = generate_level(lvl, areas, rng, defect_rate=defect_rate)
        path = output / f"{lvl.value}.json"
        with path.open("w", encoding="utf-8") as f:
            json.dump(rows, f, indent=1)
        total += len(rows)
        typer.echo(f"{lvl.value:<12} {len(rows):>7,} rows -> {path}")

    typer.echo(f"Generated {total:,} rows in {time.perf_counter() - start:.2f}s")


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
