import asyncio
import logging

import typer

from ghtrends.config import ConfigError, get_settings
from ghtrends.core.seeder import seed_tasks
from ghtrends.db import create_schema, create_store_engine
from ghtrends.runtime import build_store, run_discovery, run_scoring, seed_config

app = typer.Typer()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("init-db")
def init_db():
    """Create all tables."""
    create_schema(create_store_engine(get_settings().db_url))
    typer.echo("Schema ready.")


@app.command()
def seed():
    """Insert missing (month × star band) search tasks."""
    settings = get_settings()
    result = seed_tasks(build_store(settings), seed_config(settings))
    typer.echo(f"Created {result.created} tasks, skipped {result.skipped}.")


@app.command()
def discover():
    """Claim tasks and crawl GitHub search into repositories and snapshots."""
    settings = get_settings()
    try:
        summary = asyncio.run(run_discovery(settings, build_store(settings)))
    except ConfigError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=2)
    typer.echo(summary.as_dict())
    if not summary.ok:
        raise typer.Exit(code=1)


@app.command()
def score():
    """Recompute 14-day growth trends from snapshots."""
    settings = get_settings()
    summary = run_scoring(settings, build_store(settings))
    typer.echo(summary.as_dict())
    if not summary.ok:
        raise typer.Exit(code=1)


@app.command()
def trends(
    max_stars: int = typer.Option(2000, help="Only repos with at most this many stars."),
    min_growth: int = typer.Option(20, help="Minimum absolute 14-day star growth."),
    limit: int = 50,
):
    """Print the current ranking."""
    settings = get_settings()
    rows = build_store(settings).list_trends(
        max_stars=max_stars, min_growth=min_growth, limit=limit
    )
    for row in rows:
        pct = f"{row.pct_growth_14d * 100:+.1f}%" if row.pct_growth_14d is not None else "-"
        typer.echo(
            f"{row.score or 0:10.2f}  {row.stars_now:>7}  {row.abs_growth_14d or 0:+6}  "
            f"{pct:>8}  {row.full_name}"
        )


if __name__ == "__main__":
    app()
