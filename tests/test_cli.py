"""Tests for the unshackle-client CLI helpers."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import httpx
import pytest
from rich.console import Console

from unshackle_client import (
    GLOBAL_SCOPE,
    ClientConfig,
    JobScope,
    StreamEvent,
    StreamEventKind,
    UnshackleClient,
    UnshackleClientDependencies,
    UnshackleHttpClient,
)
from unshackle_client import cli
from unshackle_client.cli import format_stream_event, parse_cli_args, run_async
from unshackle_client.models import NORMAL_CLOSURE_CODE
from unshackle_client.stream_transport import StreamClosed

TEST_API_KEY = "cli-key"


class RejectingConnection:
    """Stream connection that reports an authentication rejection on first read."""

    async def receive(self) -> str:
        """Raise the auth-rejected close."""
        raise StreamClosed(4001, "unauthorized")

    async def close(self, code: int = NORMAL_CLOSURE_CODE, reason: str = "") -> None:
        """Nothing to release."""


class RejectingTransport:
    """Transport whose connections are rejected by the server."""

    async def connect(self, url: str) -> RejectingConnection:
        """Return a connection that closes with 4001."""
        return RejectingConnection()


class RefusingTransport:
    """Transport whose handshakes are always refused."""

    async def connect(self, url: str) -> RejectingConnection:
        """Fail the handshake."""
        raise OSError("connection refused")


async def no_wait(delay: float) -> None:
    """Skip reconnect delays."""


@pytest.fixture
def empty_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("UNSHACKLE_API_KEY", TEST_API_KEY)
    monkeypatch.setenv("UNSHACKLE_API_URL", "http://unshackle.test:8888")
    for name in ("UNSHACKLE_REQUEST_TIMEOUT", "UNSHACKLE_MAX_RETRIES", "UNSHACKLE_STREAM_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / ".env"
    path.write_text("")
    return path


def test_parse_cli_defaults() -> None:
    options = parse_cli_args(["jobs"])
    assert options.command == "jobs"
    assert options.dotenv_path is None
    assert options.log_level == logging.WARNING
    assert options.include_full_details is True


def test_parse_cli_start_options(tmp_path: Path) -> None:
    dotenv = tmp_path / "custom.env"
    options = parse_cli_args(
        [
            "--dotenv",
            str(dotenv),
            "--log-level",
            "DEBUG",
            "start",
            "--service",
            "NF",
            "--title-id",
            "81234567",
            "--quality",
            "2160p",
            "--no-subtitles",
        ]
    )
    assert options.command == "start"
    assert options.dotenv_path == dotenv
    assert options.log_level == logging.DEBUG
    assert (options.service, options.title_id, options.quality) == ("NF", "81234567", "2160p")
    assert options.subtitles is False
    assert options.output_path is None


def test_parse_cli_watch_job_and_summary() -> None:
    assert parse_cli_args(["watch", "--job-id", "abc"]).job_id == "abc"
    assert parse_cli_args(["watch"]).job_id is None
    assert parse_cli_args(["jobs", "--summary"]).include_full_details is False


def test_parse_cli_requires_command() -> None:
    with pytest.raises(SystemExit):
        parse_cli_args([])


def test_format_stream_event_summaries() -> None:
    message = StreamEvent(
        kind=StreamEventKind.MESSAGE,
        scope=JobScope("abc"),
        payload={"type": "job_progress", "progress": 10},
    )
    assert format_stream_event(message).startswith("[job:abc] job_progress: ")
    closed = StreamEvent(
        kind=StreamEventKind.CLOSE, scope=GLOBAL_SCOPE, close_code=1006, reason="reset"
    )
    assert format_stream_event(closed) == "[global] closed with code 1006 (reset)"
    rejected = StreamEvent(kind=StreamEventKind.AUTH_ERROR, scope=GLOBAL_SCOPE)
    assert "authentication rejected" in format_stream_event(rejected)


@pytest.mark.asyncio
async def test_run_async_missing_key_returns_error(
    empty_dotenv: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.delenv("UNSHACKLE_API_KEY", raising=False)
    options = parse_cli_args(["--dotenv", str(empty_dotenv), "services"])

    exit_code = await run_async(options, console=Console(record=True))

    assert exit_code == 1
    assert "UNSHACKLE_API_KEY" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_run_async_lists_jobs(
    empty_dotenv: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == f"Bearer {TEST_API_KEY}"
        return httpx.Response(
            200,
            json={"status": "success", "data": {"jobs": [{"job_id": "a1", "status": "queued"}]}},
        )

    def build(config: ClientConfig) -> UnshackleClient:
        http_client = UnshackleHttpClient(config.api, transport=httpx.MockTransport(handler))
        return UnshackleClient(
            config, dependencies=UnshackleClientDependencies(http_client=http_client)
        )

    monkeypatch.setattr(cli, "_build_client", build)
    console = Console(record=True, width=120)
    options = parse_cli_args(["--dotenv", str(empty_dotenv), "jobs"])

    exit_code = await run_async(options, console=console)

    assert exit_code == 0
    output = console.export_text()
    assert "a1" in output
    assert "queued" in output


@pytest.mark.asyncio
async def test_run_async_reports_auth_failure(
    empty_dotenv: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"detail": "bad key"})

    def build(config: ClientConfig) -> UnshackleClient:
        http_client = UnshackleHttpClient(config.api, transport=httpx.MockTransport(handler))
        return UnshackleClient(
            config, dependencies=UnshackleClientDependencies(http_client=http_client)
        )

    monkeypatch.setattr(cli, "_build_client", build)
    options = parse_cli_args(["--dotenv", str(empty_dotenv), "services"])

    exit_code = await run_async(options, console=Console(record=True))

    assert exit_code == 1
    assert "Authentication failed" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_watch_stops_on_terminal_event(
    empty_dotenv: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def build(config: ClientConfig) -> UnshackleClient:
        return UnshackleClient(
            config,
            dependencies=UnshackleClientDependencies(stream_transport=RejectingTransport()),
        )

    monkeypatch.setattr(cli, "_build_client", build)
    console = Console(record=True, width=120)
    options = parse_cli_args(["--dotenv", str(empty_dotenv), "watch", "--job-id", "abc"])

    exit_code = await run_async(options, console=console)

    assert exit_code == 1
    output = console.export_text()
    assert "[job:abc] connected" in output
    assert "[job:abc] closed with code 4001 (unauthorized)" in output
    assert "authentication rejected" in output


@pytest.mark.asyncio
async def test_watch_stops_after_reconnects_are_exhausted(
    empty_dotenv: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def build(config: ClientConfig) -> UnshackleClient:
        return UnshackleClient(
            config,
            dependencies=UnshackleClientDependencies(
                stream_transport=RefusingTransport(), sleep=no_wait
            ),
        )

    monkeypatch.setattr(cli, "_build_client", build)
    console = Console(record=True, width=120)
    options = parse_cli_args(["--dotenv", str(empty_dotenv), "watch"])

    async with asyncio.timeout(2.0):
        exit_code = await run_async(options, console=console)

    assert exit_code == 1
    output = console.export_text()
    assert output.count("[global] closed with code 1006") == 6
    assert "[global] gave up reconnecting" in output
