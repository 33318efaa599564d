"""Command-line interface for sop_engine using Click.

Commands:
  init-db    -> Create the SQLite schema
  resolve    -> Print the flattened step sequence of a procedure
  expand     -> Expand a recurring procedure over a date window (optionally persist)
  analytics  -> Show or rebuild a procedure's analytics summary

Usage examples:
  python -m sop_engine.cli --db sop_engine.db init-db
  python -m sop_engine.cli resolve <procedure_id> --json-out resolved.json
  python -m sop_engine.cli expand <procedure_id> --start 2025-01-05 --end 2025-01-18 --persist
  python -m sop_engine.cli analytics <procedure_id> --rebuild
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from typing import Optional

import click

from .db import _init_db
from .engine import SOPEngine
from .errors import SOPEngineError
from .recurrence import StaticHolidays
from .store import SQLiteStore

# --------------------- helpers ---------------------


def _parse_date(value: str, name: str):
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise click.BadParameter(f"{name} must be YYYY-MM-DD")


def _engine(ctx, holidays=None) -> SOPEngine:
    return SOPEngine(SQLiteStore(ctx.obj["db"]), holidays=holidays)


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


# --------------------- CLI group ---------------------


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging (DEBUG).")
@click.option(
    "--db",
    "db_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="SQLite database path (defaults to SOP_ENGINE_DB).",
)
@click.version_option("0.1.0")
@click.pass_context
def cli(ctx, verbose: bool, db_path: Optional[str]):
    """sop_engine CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")
    logging.debug("Verbose logging enabled." if verbose else "Logging level INFO.")
    ctx.ensure_object(dict)
    ctx.obj["db"] = db_path


# --------------------- init-db ---------------------


@cli.command("init-db")
@click.pass_context
def cmd_init_db(ctx):
    """Create the database schema (idempotent)."""
    _init_db(ctx.obj["db"])
    click.echo("Database initialized.")


# --------------------- resolve ---------------------


@cli.command("resolve")
@click.argument("procedure_id")
@click.option("--version", "version", default=None, type=int, help="Pinned version.")
@click.option(
    "--json-out",
    default=None,
    type=click.Path(dir_okay=False),
    help="Optional JSON output for the effective steps.",
)
@click.pass_context
def cmd_resolve(ctx, procedure_id: str, version: Optional[int], json_out: Optional[str]):
    """Flatten a procedure into its effective step sequence."""
    try:
        resolved = _engine(ctx).resolve(procedure_id, version=version)
    except SOPEngineError as e:
        _fail(str(e))
    for step in resolved.steps:
        indent = "  " * step.depth
        click.echo(
            f"{indent}{step.id}\t{step.title}\t{step.duration:g} min\t{step.assignee or '-'}"
        )
    click.echo(
        f"{len(resolved.steps)} steps, {resolved.total_duration:g} minutes "
        f"({resolved.procedure.execution_order.value})"
    )
    if json_out:
        with open(json_out, "w", encoding="utf-8") as f:
            json.dump([s.to_dict() for s in resolved.steps], f, indent=2)
        click.echo(f"Steps written: JSON={json_out}")


# --------------------- expand ---------------------


@cli.command("expand")
@click.argument("procedure_id")
@click.option("--start", "start", required=True, help="Window start YYYY-MM-DD.")
@click.option("--end", "end", required=True, help="Window end YYYY-MM-DD (inclusive).")
@click.option(
    "--holiday",
    multiple=True,
    help="Holiday date YYYY-MM-DD (repeatable); honoured when the rule skips holidays.",
)
@click.option(
    "--persist", is_flag=True, help="Create scheduled completions for the candidates."
)
@click.pass_context
def cmd_expand(ctx, procedure_id: str, start: str, end: str, holiday, persist: bool):
    """Expand a recurring procedure into dated occurrences."""
    start_d = _parse_date(start, "start")
    end_d = _parse_date(end, "end")
    holidays = StaticHolidays(_parse_date(h, "holiday") for h in holiday)
    engine = _engine(ctx, holidays=holidays)
    try:
        if persist:
            created = engine.scheduler.schedule(procedure_id, start_d, end_d)
            for c in created:
                click.echo(f"{c.scheduled_date.isoformat()} {c.scheduled_time}\t{c.id}")
            click.echo(f"Created {len(created)} occurrences.")
        else:
            occurrences = engine.scheduler.preview(procedure_id, start_d, end_d)
            for o in occurrences:
                click.echo(f"{o.date.isoformat()} {o.time}\t{o.assigned_to or '-'}")
            click.echo(f"Expanded {len(occurrences)} occurrences.")
    except SOPEngineError as e:
        _fail(str(e))


# --------------------- analytics ---------------------


@cli.command("analytics")
@click.argument("procedure_id")
@click.option("--rebuild", is_flag=True, help="Replay the full completion history.")
@click.pass_context
def cmd_analytics(ctx, procedure_id: str, rebuild: bool):
    """Show a procedure's analytics summary."""
    engine = _engine(ctx)
    try:
        if rebuild:
            engine.aggregator.rebuild(procedure_id)
        analytics = engine.store.get_procedure(procedure_id).analytics
    except SOPEngineError as e:
        _fail(str(e))
    click.echo(f"average_completion_time: {analytics.average_completion_time}")
    click.echo(f"completion_rate: {analytics.completion_rate}")
    click.echo(f"last_optimized: {analytics.last_optimized}")


# --------------------- entry ---------------------


def main():  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
