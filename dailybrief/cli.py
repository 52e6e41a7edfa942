"""
Daily brief CLI.

Usage:
    dailybrief --help                       Show all commands
    dailybrief serve                        Run the API with the scheduler
    dailybrief sync                         Show the triggers a sync would install
    dailybrief convert 08:00 America/New_York
    dailybrief trigger USER_ID              Send a brief now (ignores dedup)
    dailybrief preview USER_ID              Print a brief without sending it
    dailybrief enqueue                      Enqueue due users (fallback queue)
    dailybrief poll                         Process one batch of queued jobs
"""

import asyncio
from datetime import UTC, datetime

import typer

app = typer.Typer(
    name="dailybrief",
    help="Daily brief scheduler - triggers, previews and queue tools",
    no_args_is_help=True,
)


def _print_success(message: str) -> None:
    typer.echo(f"  ✅ {message}")


def _print_warning(message: str) -> None:
    typer.echo(f"  ⚠️ {message}")


def _print_error(message: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"❌ {message}", err=True)


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address"),
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes"),
):
    """Run the HTTP API; the scheduler starts with it."""
    import uvicorn

    from dailybrief.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "dailybrief.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


@app.command()
def convert(
    delivery_time: str = typer.Argument(..., help="Local delivery time, HH:MM"),
    timezone: str = typer.Argument(..., help="IANA timezone, e.g. America/New_York"),
    on: str | None = typer.Option(None, "--on", help="Reference date YYYY-MM-DD (default today)"),
):
    """Show the UTC trigger a local delivery time maps to."""
    from dailybrief.core.exceptions import ConfigurationError
    from dailybrief.services.trigger_converter import convert_to_utc_schedule

    now = None
    if on:
        try:
            now = datetime.fromisoformat(on).replace(hour=12, tzinfo=UTC)
        except ValueError:
            _print_error(f"Invalid date: {on}")
            raise typer.Exit(1)

    try:
        schedule = convert_to_utc_schedule(delivery_time, timezone, now)
    except ConfigurationError as e:
        _print_error(str(e))
        raise typer.Exit(1)

    typer.echo(f"{delivery_time} {timezone} on {schedule.local_date}")
    typer.echo(f"  UTC time: {schedule.utc_time}")
    typer.echo(f"  Cron:     {schedule.cron_expression}")
    typer.echo(f"  Offset:   {schedule.utc_offset}")
    if schedule.adjustment:
        _print_warning(f"DST {schedule.adjustment} local time, resolved to {schedule.utc_time} UTC")


@app.command()
def sync():
    """Read the registry and print the trigger table a sync would produce."""
    from dailybrief.core.database import AsyncSessionLocal
    from dailybrief.core.logging import setup_logging
    from dailybrief.core.scheduler import plan_schedules
    from dailybrief.services.registry import fetch_active_entries

    setup_logging()

    async def _run() -> None:
        async with AsyncSessionLocal() as db:
            entries = await fetch_active_entries(db)
        desired, skipped = plan_schedules(entries)

        typer.echo(f"\n{len(entries)} registry entries, {len(desired)} triggers, {skipped} skipped\n")
        for user_id, (entry, schedule) in sorted(desired.items()):
            typer.echo(
                f"  {user_id:<36} {entry.delivery_time_local[:5]} {entry.timezone:<24} "
                f"-> {schedule.utc_time} UTC ({schedule.cron_expression})"
            )

    asyncio.run(_run())


@app.command()
def trigger(user_id: str = typer.Argument(..., help="Registry user id")):
    """Generate and deliver a brief now, ignoring dedup (recorded as manual)."""
    from dailybrief.core.exceptions import ConfigurationError, UserNotFoundError
    from dailybrief.core.logging import setup_logging
    from dailybrief.core.scheduler import BriefScheduler

    setup_logging()

    try:
        success = asyncio.run(BriefScheduler().trigger_once(user_id))
    except (UserNotFoundError, ConfigurationError) as e:
        _print_error(str(e))
        raise typer.Exit(1)

    if not success:
        _print_error(f"Brief delivery failed for {user_id}")
        raise typer.Exit(1)
    _print_success(f"Brief delivered to {user_id}")


@app.command()
def preview(user_id: str = typer.Argument(..., help="Registry user id")):
    """Print a user's brief without delivering or recording it."""
    from dailybrief.core.database import AsyncSessionLocal
    from dailybrief.core.logging import setup_logging
    from dailybrief.services.brief_generator import get_brief_generator
    from dailybrief.services.registry import get_entry

    setup_logging()

    async def _run() -> str | None:
        async with AsyncSessionLocal() as db:
            entry = await get_entry(db, user_id)
        if entry is None:
            return None
        return await get_brief_generator().produce(
            entry.user_id, entry.contact_address, entry.timezone
        )

    content = asyncio.run(_run())
    if content is None:
        _print_error(f"User {user_id} not found in active users")
        raise typer.Exit(1)
    typer.echo(content)


@app.command()
def enqueue():
    """Enqueue pending jobs for users due this minute."""
    from dailybrief.core.database import AsyncSessionLocal
    from dailybrief.core.logging import setup_logging
    from dailybrief.services.job_queue import enqueue_due_jobs
    from dailybrief.services.registry import fetch_active_entries

    setup_logging()

    async def _run() -> int:
        async with AsyncSessionLocal() as db:
            entries = await fetch_active_entries(db)
            return await enqueue_due_jobs(db, entries)

    inserted = asyncio.run(_run())
    _print_success(f"{inserted} job(s) enqueued")


@app.command()
def poll(
    limit: int | None = typer.Option(None, "--limit", "-l", help="Max jobs to process"),
):
    """Process one batch of due queue jobs."""
    from dailybrief.core.database import AsyncSessionLocal
    from dailybrief.core.logging import setup_logging
    from dailybrief.services.brief_dispatch import BriefDispatcher
    from dailybrief.services.brief_generator import get_brief_generator
    from dailybrief.services.job_queue import process_pending_jobs

    setup_logging()

    dispatcher = BriefDispatcher(AsyncSessionLocal, get_brief_generator())
    stats = asyncio.run(process_pending_jobs(AsyncSessionLocal, dispatcher, limit=limit))
    _print_success(
        f"claimed {stats['claimed']}, completed {stats['completed']}, failed {stats['failed']}"
    )


if __name__ == "__main__":
    app()
