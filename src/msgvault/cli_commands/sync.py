"""Sync CLI commands - run one backup cycle or keep the scheduler running."""

import asyncio
import json
import signal

import typer

from msgvault.config import Settings, get_settings
from msgvault.engine import SyncPipeline, SyncScheduler
from msgvault.errors import StateStoreCorruption
from msgvault.logging import setup_logging
from msgvault.models import CycleOutcome, CycleReport
from msgvault.sync import Transmitter

sync_app = typer.Typer(
    name="sync",
    help="Backup cycles - run once or on a schedule.",
    no_args_is_help=True,
)


def _output(data: dict, as_json: bool, human_message: str) -> None:
    """Output data as JSON or human-readable format."""
    if as_json:
        typer.echo(json.dumps(data))
    else:
        typer.echo(human_message)


def _describe(report: CycleReport) -> str:
    lines = [
        f"Cycle {report.outcome.value}" + (f" ({report.reason})" if report.reason else ""),
        f"Checkpoint: {report.checkpoint_before} -> {report.checkpoint_after}",
        f"Read: {report.read}, malformed: {report.malformed}, "
        f"excluded: {report.excluded}, already backed up: {report.duplicates}",
        f"Acknowledged: {report.acknowledged}, rejected: {report.rejected}, "
        f"pending retry: {report.failed}",
    ]
    return "\n".join(lines)


def _open_pipeline(settings: Settings, as_json: bool) -> SyncPipeline:
    setup_logging(settings.log_level, settings.log_file, device_id=settings.device_id)
    try:
        return SyncPipeline.from_settings(settings)
    except StateStoreCorruption as e:
        _output(
            {"status": "error", "reason": "state_store_corruption", "message": str(e)},
            as_json,
            f"Sync state is corrupted and needs recovery: {e}",
        )
        raise typer.Exit(2)


async def _run_once(pipeline: SyncPipeline) -> CycleReport:
    try:
        return await pipeline.run_cycle()
    finally:
        await pipeline.close()


@sync_app.command()
def run(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Run a single backup cycle and report the result."""
    settings = get_settings()
    pipeline = _open_pipeline(settings, output_json)

    try:
        report = asyncio.run(_run_once(pipeline))
    except StateStoreCorruption as e:
        _output(
            {"status": "error", "reason": "state_store_corruption", "message": str(e)},
            output_json,
            f"Sync state is corrupted and needs recovery: {e}",
        )
        raise typer.Exit(2)

    _output(report.to_dict(), output_json, _describe(report))
    if report.outcome == CycleOutcome.FAILED:
        raise typer.Exit(1)


@sync_app.command()
def start(
    interval: int = typer.Option(
        None,
        "--interval",
        "-i",
        help="Seconds between cycles (default: from config)",
    ),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Run backup cycles on a schedule until interrupted.

    Press Ctrl+C to stop. An interrupted cycle leaves its unacknowledged
    messages pending; they are sent again on the next run.
    """
    settings = get_settings()
    cycle_interval = interval or settings.cycle_interval
    pipeline = _open_pipeline(settings, output_json)
    scheduler = SyncScheduler(pipeline, interval=cycle_interval)

    _output(
        {"status": "starting", "interval": cycle_interval, "device_id": settings.device_id},
        output_json,
        f"Starting msgvault sync (interval: {cycle_interval}s). Press Ctrl+C to stop.",
    )

    async def _main() -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(scheduler.stop()))
        try:
            await scheduler.run()
        finally:
            await pipeline.close()

    try:
        asyncio.run(_main())
    except StateStoreCorruption as e:
        _output(
            {"status": "error", "reason": "state_store_corruption", "message": str(e)},
            output_json,
            f"Sync state is corrupted and needs recovery: {e}",
        )
        raise typer.Exit(2)

    _output(
        {"status": "stopped", "cycles_run": scheduler.cycles_run},
        output_json,
        f"Stopped after {scheduler.cycles_run} cycle(s).",
    )


@sync_app.command()
def check(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Check that the backup service is reachable."""
    settings = get_settings()

    async def _reachable() -> bool:
        async with Transmitter(
            settings.api_base_url,
            settings.device_id,
            auth_token=settings.auth_token,
            health_url=settings.health_url,
        ) as transmitter:
            return await transmitter.check_server()

    reachable = asyncio.run(_reachable())
    _output(
        {"server_url": settings.server_url, "reachable": reachable},
        output_json,
        f"Backup service {settings.server_url}: {'reachable' if reachable else 'unreachable'}",
    )
    if not reachable:
        raise typer.Exit(1)
