"""CLI entry point for job execution."""

import asyncio
import logging
import sys

import click

from attempt_engine.core.logging import setup_logging
from attempt_engine.db.session import SessionLocal
from attempt_engine.services.completion import get_completion_notifier
from attempt_engine.services.timer import sweep_expired_attempts

logger = logging.getLogger(__name__)


@click.group()
def cli():
    """Quiz attempt engine command line."""
    setup_logging()


@cli.group()
def jobs():
    """Scheduled jobs."""


@jobs.command("expire-sweep")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max attempts to close in this run")
def expire_sweep(limit: int | None):
    """
    Close every in-progress attempt whose time budget is spent.

    Example:
        attempt-engine jobs expire-sweep --limit 500
    """

    async def run_async() -> int:
        db = SessionLocal()
        try:
            return await sweep_expired_attempts(db, get_completion_notifier(), limit=limit)
        finally:
            db.close()

    try:
        closed = asyncio.run(run_async())
    except Exception as e:
        logger.error(f"Job failed: {e}", exc_info=True)
        click.echo(f"Job failed: {e}", err=True)
        sys.exit(1)

    click.echo(f"Job completed: {closed} attempt(s) expired")


if __name__ == "__main__":
    cli()
