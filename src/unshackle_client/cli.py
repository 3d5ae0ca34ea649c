"""Command-line interface for inspecting and driving an unshackle serve instance."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import traceback
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.table import Table

from .client import UnshackleClient
from .config import ClientConfig, load_config_from_environment
from .errors import AuthError, UnshackleError
from .models import (
    ConnectionScope,
    ConnectionState,
    JobRecord,
    ServiceDescriptor,
    StreamEvent,
    StreamEventKind,
)
from .streams import StreamListener

LOG_LEVELS: Final[dict[str, int]] = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


@dataclass(frozen=True, slots=True)
class CliOptions:
    """Parsed command-line options."""

    command: str
    dotenv_path: Path | None
    log_level: int
    job_id: str | None = None
    service: str | None = None
    title_id: str | None = None
    quality: str | None = None
    output_path: str | None = None
    subtitles: bool = True
    include_full_details: bool = True


CommandHandler = Callable[[UnshackleClient, CliOptions, Console], Awaitable[int]]


async def run_async(options: CliOptions, *, console: Console | None = None) -> int:
    """Execute the selected command and return the process exit code."""
    logger = _setup_logging(options.log_level)
    console = console or Console()

    dotenv_file = (
        str(options.dotenv_path) if options.dotenv_path is not None else find_dotenv(usecwd=True)
    )
    if dotenv_file:
        load_dotenv(dotenv_file, override=True)
        logger.info("Loaded environment from %s (override=True)", dotenv_file)
    else:
        logger.debug("No .env file found; relying on process environment only")

    try:
        config = load_config_from_environment()
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    handler = _COMMANDS[options.command]
    client = _build_client(config)
    try:
        return await handler(client, options, console)
    except AuthError as exc:
        logger.error("Authentication failed: %s", exc)
        print("Authentication failed. Check UNSHACKLE_API_KEY.", file=sys.stderr)
        return 1
    except UnshackleError as exc:
        logger.error("Unshackle client error: %s", exc)
        print(f"Unshackle client error: {exc}", file=sys.stderr)
        return 1
    finally:
        await client.close()


def _build_client(config: ClientConfig) -> UnshackleClient:
    return UnshackleClient(config)


def _setup_logging(log_level: int) -> logging.Logger:
    """Configure logging and return the CLI logger.

    Reduces noise from network libraries at non-DEBUG levels.
    """
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("websockets").setLevel(logging.WARNING)
    return logging.getLogger("unshackle_client.cli")


def parse_cli_args(argv: Sequence[str] | None = None) -> CliOptions:
    """Parse command-line arguments into :class:`CliOptions`."""
    parser = argparse.ArgumentParser(
        prog="unshackle-client",
        description="Inspect jobs, queue downloads, and follow events on an unshackle server.",
    )
    parser.add_argument(
        "--dotenv",
        type=Path,
        default=None,
        help="Optional path to a .env file containing UNSHACKLE_API_URL and UNSHACKLE_API_KEY",
    )
    parser.add_argument(
        "--log-level",
        choices=tuple(LOG_LEVELS.keys()),
        default="WARNING",
        help="Log level for diagnostic output",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    jobs = commands.add_parser("jobs", help="List jobs")
    jobs.add_argument(
        "--summary",
        action="store_true",
        help="Skip full job details (errors, progress history)",
    )

    job = commands.add_parser("job", help="Show a single job")
    job.add_argument("job_id")

    start = commands.add_parser("start", help="Queue a download job")
    start.add_argument("--service", required=True, help="Service tag, e.g. NF")
    start.add_argument("--title-id", required=True, help="Title identifier or full title URL")
    start.add_argument("--quality", default=None, help="Requested resolution, e.g. 1080p")
    start.add_argument("--output-path", default=None, help="Server-side output directory")
    start.add_argument("--no-subtitles", action="store_true", help="Do not fetch subtitles")

    cancel = commands.add_parser("cancel", help="Cancel a job")
    cancel.add_argument("job_id")

    commands.add_parser("services", help="List upstream services")

    for name, help_text in (("title", "Show title metadata"), ("tracks", "Show track metadata")):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("service")
        sub.add_argument("title_id")

    watch = commands.add_parser("watch", help="Follow server events until interrupted")
    watch.add_argument(
        "--job-id", default=None, help="Follow a single job instead of the global feed"
    )

    namespace = parser.parse_args(argv)
    job_id: str | None = getattr(namespace, "job_id", None)
    if job_id is not None and not job_id.strip():
        parser.error("job id must not be empty")

    return CliOptions(
        command=namespace.command,
        dotenv_path=namespace.dotenv,
        log_level=LOG_LEVELS[namespace.log_level],
        job_id=job_id,
        service=getattr(namespace, "service", None),
        title_id=getattr(namespace, "title_id", None),
        quality=getattr(namespace, "quality", None),
        output_path=getattr(namespace, "output_path", None),
        subtitles=not getattr(namespace, "no_subtitles", False),
        include_full_details=not getattr(namespace, "summary", False),
    )


def build_jobs_table(jobs: Sequence[JobRecord]) -> Table:
    """Return a Rich table summarising *jobs*."""
    table = Table(title="Jobs", expand=True)
    table.add_column("Job", no_wrap=True)
    table.add_column("Service", no_wrap=True)
    table.add_column("Title", ratio=3, overflow="ellipsis")
    table.add_column("Status", no_wrap=True)
    table.add_column("Progress", justify="right", no_wrap=True)
    for job in jobs:
        progress = job.get("progress")
        table.add_row(
            str(job.get("job_id", "?")),
            str(job.get("service", "")),
            str(job.get("title_id", "")),
            str(job.get("status", "")),
            f"{float(progress):.0f}%" if isinstance(progress, (int, float)) else "",
        )
    return table


def build_services_table(services: Sequence[ServiceDescriptor]) -> Table:
    """Return a Rich table listing upstream *services*."""
    table = Table(title="Services", expand=True)
    table.add_column("Tag", no_wrap=True)
    table.add_column("Name", ratio=2)
    table.add_column("Aliases", ratio=2, overflow="ellipsis")
    for service in services:
        aliases = service.get("aliases")
        table.add_row(
            str(service.get("tag", "")),
            str(service.get("name", service.get("tag", ""))),
            ", ".join(str(alias) for alias in aliases) if isinstance(aliases, list) else "",
        )
    return table


def format_stream_event(event: StreamEvent) -> str:
    """Return a single-line, markup-free summary of *event*."""
    if event.kind is StreamEventKind.MESSAGE:
        payload = event.payload
        if isinstance(payload, Mapping):
            event_type = payload.get("type", "event")
            return f"[{event.scope}] {event_type}: {json.dumps(payload, default=str)}"
        return f"[{event.scope}] message: {json.dumps(payload, default=str)}"
    if event.kind is StreamEventKind.CLOSE:
        reason = f" ({event.reason})" if event.reason else ""
        return f"[{event.scope}] closed with code {event.close_code}{reason}"
    if event.kind is StreamEventKind.ERROR:
        return f"[{event.scope}] error: {event.error}"
    if event.kind is StreamEventKind.AUTH_ERROR:
        return f"[{event.scope}] authentication rejected; not reconnecting"
    if event.kind is StreamEventKind.NOT_FOUND:
        return f"[{event.scope}] job not found; not reconnecting"
    return f"[{event.scope}] connected"


async def _list_jobs(client: UnshackleClient, options: CliOptions, console: Console) -> int:
    jobs = await client.list_jobs(include_full_details=options.include_full_details)
    console.print(build_jobs_table(jobs))
    return 0


async def _show_job(client: UnshackleClient, options: CliOptions, console: Console) -> int:
    assert options.job_id is not None
    console.print_json(data=dict(await client.get_job(options.job_id)), default=str)
    return 0


async def _start_job(client: UnshackleClient, options: CliOptions, console: Console) -> int:
    request: dict[str, Any] = {
        "service": options.service,
        "title_id": options.title_id,
        "subtitles": options.subtitles,
    }
    if options.quality is not None:
        request["quality"] = options.quality
    if options.output_path is not None:
        request["output_path"] = options.output_path
    job_id = await client.start_job(request)
    console.print(f"Queued job {job_id}", markup=False)
    return 0


async def _cancel_job(client: UnshackleClient, options: CliOptions, console: Console) -> int:
    assert options.job_id is not None
    await client.cancel_job(options.job_id)
    console.print(f"Cancellation requested for job {options.job_id}", markup=False)
    return 0


async def _list_services(client: UnshackleClient, options: CliOptions, console: Console) -> int:
    console.print(build_services_table(await client.list_services()))
    return 0


async def _show_title(client: UnshackleClient, options: CliOptions, console: Console) -> int:
    assert options.service is not None and options.title_id is not None
    title = await client.get_title_info(options.service, options.title_id)
    if title is None:
        console.print("No matching title", markup=False)
        return 1
    console.print_json(data=dict(title), default=str)
    return 0


async def _show_tracks(client: UnshackleClient, options: CliOptions, console: Console) -> int:
    assert options.service is not None and options.title_id is not None
    tracks = await client.get_track_info(options.service, options.title_id)
    console.print_json(data=dict(tracks), default=str)
    return 0


async def _watch(client: UnshackleClient, options: CliOptions, console: Console) -> int:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    exit_code = 0

    def _check_stream(scope: ConnectionScope) -> None:
        nonlocal exit_code
        # Idle after a close means the manager gave up reconnecting.
        if not stop_event.is_set() and client.connection_state(scope) is ConnectionState.IDLE:
            console.print(f"[{scope}] gave up reconnecting", markup=False, highlight=False)
            exit_code = 1
            stop_event.set()

    def _on_event(event: StreamEvent) -> None:
        nonlocal exit_code
        console.print(format_stream_event(event), markup=False, highlight=False)
        if event.terminal:
            exit_code = 1
            stop_event.set()
        elif event.kind is StreamEventKind.CLOSE:
            loop.call_soon(_check_stream, event.scope)

    listener = StreamListener(on_event=_on_event)
    if options.job_id is not None:
        client.connect_job_events(options.job_id, listener)
    else:
        client.connect_global_events(listener)
    await _wait_for_shutdown_signal(stop_event)
    await client.disconnect()
    return exit_code


_COMMANDS: Final[dict[str, CommandHandler]] = {
    "jobs": _list_jobs,
    "job": _show_job,
    "start": _start_job,
    "cancel": _cancel_job,
    "services": _list_services,
    "title": _show_title,
    "tracks": _show_tracks,
    "watch": _watch,
}


async def _wait_for_shutdown_signal(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    registered: list[signal.Signals] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            continue
        registered.append(signum)
    try:
        await stop_event.wait()
    finally:
        for signum in registered:
            loop.remove_signal_handler(signum)


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for the ``unshackle-client`` console script."""
    options = parse_cli_args(argv)
    try:
        exit_code = asyncio.run(run_async(options))
    except KeyboardInterrupt:
        exit_code = 130
    except Exception:  # noqa: BLE001
        traceback.print_exc(limit=1)
        exit_code = 1
    raise SystemExit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
