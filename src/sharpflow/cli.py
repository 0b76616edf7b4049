"""sharpflow command line.

Examples:
    sharpflow serve                 # API on settings host/port
    sharpflow workers               # task workers + maintenance crons
    sharpflow reconcile             # re-enqueue stranded pending jobs once
    sharpflow archive --days 30     # archive idle conversation sessions once
"""

import asyncio

import typer

from sharpflow.config import Settings
from sharpflow.db import Database
from sharpflow.jobs import create_broker
from sharpflow.jobs.store import JobStore
from sharpflow.jobs.submission import JobSubmissionService
from sharpflow.logging import configure_logging
from sharpflow.memory import ConversationMemoryManager

app = typer.Typer(
    name="sharpflow",
    help="SharpFlow - multi-agent job orchestration",
    add_completion=False,
    no_args_is_help=True,
)


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on"),
) -> None:
    """Start the HTTP/WebSocket API."""
    from sharpflow.main import run_api

    run_api(host=host, port=port)


@app.command()
def workers(
    maintenance: bool = typer.Option(
        True, "--maintenance/--no-maintenance", help="Also run the maintenance cron worker"
    ),
) -> None:
    """Start the task worker process."""
    from sharpflow.main import run_workers

    run_workers(maintenance=maintenance)


@app.command()
def reconcile(
    grace: float | None = typer.Option(None, "--grace", help="Seconds a job may sit pending"),
) -> None:
    """Re-enqueue committed jobs whose enqueue was lost."""
    settings = Settings()
    configure_logging(service_name="cli", level=settings.log_level)

    async def _run() -> int:
        db = Database.from_settings(settings)
        broker = create_broker(settings)
        try:
            service = JobSubmissionService(settings, JobStore(db), broker)
            return await service.reconcile_pending(grace)
        finally:
            await broker.close()
            await db.close()

    count = asyncio.run(_run())
    typer.echo(f"Re-enqueued {count} job(s)")


@app.command()
def archive(
    days: int = typer.Option(30, "--days", "-d", min=0, help="Idle days before archiving"),
    owner: str | None = typer.Option(None, "--owner", help="Only this owner's sessions"),
) -> None:
    """Archive conversation sessions idle longer than --days."""
    settings = Settings()
    configure_logging(service_name="cli", level=settings.log_level)

    async def _run() -> int:
        db = Database.from_settings(settings)
        try:
            return await ConversationMemoryManager(settings, db).archive_old_sessions(owner, days)
        finally:
            await db.close()

    count = asyncio.run(_run())
    typer.echo(f"Archived {count} session(s)")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
