"""Command line interface for maintenance and local serving."""

from __future__ import annotations

import json
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import Settings, load_settings
from .logger import configure_logging, get_logger

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()
log = get_logger(__name__)


@app.callback()
def main(
    ctx: typer.Context,
    config: str = typer.Option(None, "--config", "-c", help="Path to settings.yaml"),
    log_level: str = typer.Option(None, "--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)"),
) -> None:
    """Civic Triage - classify, prioritize and track civic issue reports."""
    configure_logging(level=log_level)
    ctx.obj = {"config": config}


def _settings(ctx: typer.Context) -> Settings:
    path = ctx.obj.get("config") if ctx.obj else None
    return load_settings(path)


@app.command("init-db")
def init_db_cmd(ctx: typer.Context) -> None:
    """Create tables and seed the default departments."""
    from .db import init_db
    from .departments import seed_departments

    s = _settings(ctx)
    init_db(s.app.database_path)
    count = seed_departments(s.app.database_path, s.app.departments)
    console.print(f"✅ Database ready at {s.app.database_path} ({count} departments)")


@app.command("seed-departments")
def seed_departments_cmd(ctx: typer.Context) -> None:
    """Insert any configured departments that are missing."""
    from .departments import seed_departments

    s = _settings(ctx)
    count = seed_departments(s.app.database_path, s.app.departments)
    console.print(f"✅ {count} departments present")


@app.command()
def classify(
    ctx: typer.Context,
    issue_id: str = typer.Argument(..., help="Issue id to classify"),
) -> None:
    """Classify a single stored issue and print the result."""
    from .classifier import classify_issue
    from .errors import IssueNotFoundError

    s = _settings(ctx)
    try:
        result = classify_issue(s.app.database_path, issue_id, settings=s)
    except IssueNotFoundError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)
    console.print_json(json.dumps(result.to_response(), default=str))


@app.command()
def reclassify(
    ctx: typer.Context,
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Max issues per status"),
) -> None:
    """Reclassify every open issue."""
    from .classifier import reclassify_open_issues

    s = _settings(ctx)
    count = reclassify_open_issues(s.app.database_path, settings=s, limit=limit)
    console.print(f"Reclassified {count} issues")


@app.command()
def escalate(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Overdue threshold in days"),
) -> None:
    """Escalate open issues older than the overdue threshold."""
    from .issues import escalate_overdue

    s = _settings(ctx)
    threshold = days if days is not None else s.app.escalation.overdue_days
    ids = escalate_overdue(s.app.database_path, threshold)
    console.print(f"Escalated {len(ids)} issues")
    for issue_id in ids:
        console.print(f"  • {issue_id}")


@app.command()
def stats(
    ctx: typer.Context,
    refresh: bool = typer.Option(False, "--refresh", help="Persist department transparency scores first"),
) -> None:
    """Show transparency metrics."""
    from .transparency import compute_city_stats, compute_department_stats, refresh_department_scores

    s = _settings(ctx)
    if refresh:
        refresh_department_scores(s.app.database_path)

    city = compute_city_stats(s.app.database_path)
    console.print(
        f"📊 Issues: {city['total_issues']} total, {city['resolved_issues']} resolved "
        f"({city['resolution_rate']}%) | avg {city['avg_resolution_days']} days | "
        f"trust score {city['city_trust_score']}"
    )

    table = Table(title="Departments")
    table.add_column("Department", style="cyan")
    table.add_column("Issues", justify="right")
    table.add_column("Resolved", justify="right")
    table.add_column("Rate %", justify="right")
    table.add_column("Avg days", justify="right")
    table.add_column("Feedback", justify="right")
    for d in compute_department_stats(s.app.database_path):
        table.add_row(
            d["name"],
            str(d["issue_count"]),
            str(d["resolved_count"]),
            str(d["resolution_rate"]),
            f"{d['avg_resolution_days']:.1f}",
            f"{d['avg_feedback_rating']:.1f}",
        )
    console.print(table)


@app.command()
def api(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host", "-h", help="Host to bind to"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to bind to"),
) -> None:
    """Run the API server."""
    import uvicorn

    from .api import create_app

    config = ctx.obj.get("config") if ctx.obj else None
    uvicorn.run(create_app(settings_path=config), host=host, port=port)


if __name__ == "__main__":
    app()
