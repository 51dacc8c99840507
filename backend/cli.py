"""Command-line interface for ZipLink.

Commands:
- relay: Run the signaling relay server
- send: Create a session and send files to whoever joins it
- receive: Join a session by code and save the files it delivers
"""

import asyncio
import contextlib
import logging
import os
import sys
from pathlib import Path

import click

from config import API_HOST, API_PORT, LOG_FORMAT, LOG_LEVEL, NEGOTIATION_TIMEOUT, SIGNALING_URL
from signaling.client import SignalingClient
from transfer.errors import TransferError
from transfer.manager import TransferManager
from transfer.models import (
    ConnectionRequested,
    FileReceived,
    OutgoingFile,
    Progress,
    ReceivedFile,
    StatusChanged,
    TransferCompleted,
    TransferEvent,
    TransferStatus,
)

logger = logging.getLogger(__name__)

_TERMINAL = {
    TransferStatus.REJECTED,
    TransferStatus.DISCONNECTED,
    TransferStatus.FAILED,
    TransferStatus.ERROR,
}


def save_received_file(file: ReceivedFile, output_dir: Path) -> Path:
    """Write a received file without overwriting anything already there."""
    output_dir.mkdir(parents=True, exist_ok=True)
    name = os.path.basename(file.name) or file.id
    stem, suffix = os.path.splitext(name)
    target = output_dir / name
    counter = 1
    while target.exists():
        target = output_dir / f"{stem} ({counter}){suffix}"
        counter += 1
    target.write_bytes(file.data)
    return target


class _Progress:
    """Prints one line per file per 10% step."""

    def __init__(self) -> None:
        self._last: dict[str, int] = {}

    def update(self, event: Progress) -> None:
        step = event.percent // 10
        if self._last.get(event.file_id) == step:
            return
        self._last[event.file_id] = step
        click.echo(f"  {event.name}: {event.percent}%")


@click.group()
@click.version_option(package_name="ziplink")
@click.option("--log-level", default=LOG_LEVEL, show_default=True, help="Logging level.")
def cli(log_level: str) -> None:
    """ZipLink - peer-to-peer file transfer paired by a short code."""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@cli.command()
@click.option("--host", default=API_HOST, show_default=True)
@click.option("--port", default=API_PORT, show_default=True, type=int)
def relay(host: str, port: int) -> None:
    """Run the signaling relay server."""
    import uvicorn

    uvicorn.run("main:app", host=host, port=port, log_level="info")


@cli.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--server", "server_url", default=SIGNALING_URL, show_default=True,
              help="Signaling WebSocket URL.")
@click.option("--code", default=None, help="Use this session code instead of a random one.")
@click.option("--yes", "-y", is_flag=True, help="Accept the first receiver without asking.")
@click.option("--timeout", default=NEGOTIATION_TIMEOUT, show_default=True, type=float,
              help="Seconds to wait for the direct channel.")
def send(files: tuple[str, ...], server_url: str, code: str | None, yes: bool, timeout: float) -> None:
    """Send FILES to the peer that joins the session.

    Examples:

        ziplink send report.pdf photo.jpg

        ziplink send --server wss://relay.example.com/ws --yes data.csv
    """
    outgoing = [OutgoingFile.from_path(path) for path in files]
    sys.exit(asyncio.run(_send(outgoing, server_url, code, yes, timeout)))


async def _send(
    files: list[OutgoingFile], server_url: str, code: str | None, yes: bool, timeout: float
) -> int:
    signaling = SignalingClient(server_url)
    manager = TransferManager(signaling)
    progress = _Progress()
    finished = asyncio.Event()

    async def on_event(event: TransferEvent) -> None:
        if isinstance(event, ConnectionRequested):
            accepted = yes or await asyncio.to_thread(
                click.confirm, f"Receiver {event.receiver_id} wants to connect. Accept?",
                default=True,
            )
            if accepted:
                await manager.accept(event.receiver_id)
            else:
                await manager.reject(event.receiver_id)
        elif isinstance(event, Progress):
            progress.update(event)
        elif isinstance(event, StatusChanged):
            click.echo(f"[{event.status.value}] {event.message or ''}".rstrip())
            if event.status in _TERMINAL - {TransferStatus.REJECTED}:
                finished.set()

    manager.on_event(on_event)
    try:
        await signaling.connect()
        session_code = await manager.create_session(code)
        click.echo(f"Session code: {session_code}")
        click.echo("Waiting for a receiver...")

        waiter = asyncio.create_task(manager.wait_until_ready(timeout))
        stopper = asyncio.create_task(finished.wait())
        done, _ = await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        stopper.cancel()
        if waiter not in done:
            waiter.cancel()
            return 1
        waiter.result()

        sent = await manager.send_files(files)
        click.echo(f"Sent {len(sent)} file(s).")
        # Let the receiver hang up first so nothing in flight is cut off
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(finished.wait(), timeout)
        return 0
    except (TransferError, ConnectionError) as e:
        click.echo(f"Error: {e}", err=True)
        return 1
    finally:
        await manager.close()


@cli.command()
@click.argument("code")
@click.option("--server", "server_url", default=SIGNALING_URL, show_default=True,
              help="Signaling WebSocket URL.")
@click.option("--output", "-o", "output_dir", default=".", show_default=True,
              type=click.Path(file_okay=False), help="Directory to save files into.")
def receive(code: str, server_url: str, output_dir: str) -> None:
    """Join session CODE and save the files it delivers."""
    sys.exit(asyncio.run(_receive(code, server_url, Path(output_dir))))


async def _receive(code: str, server_url: str, output_dir: Path) -> int:
    signaling = SignalingClient(server_url)
    manager = TransferManager(signaling)
    progress = _Progress()
    outcome: asyncio.Future = asyncio.get_running_loop().create_future()

    async def on_event(event: TransferEvent) -> None:
        if isinstance(event, Progress):
            progress.update(event)
        elif isinstance(event, FileReceived):
            path = await asyncio.to_thread(save_received_file, event.file, output_dir)
            click.echo(f"Saved {path} ({event.file.size} bytes)")
        elif isinstance(event, TransferCompleted):
            if not outcome.done():
                outcome.set_result(0)
        elif isinstance(event, StatusChanged):
            click.echo(f"[{event.status.value}] {event.message or ''}".rstrip())
            if event.status in _TERMINAL and not outcome.done():
                outcome.set_result(1)

    manager.on_event(on_event)
    try:
        await signaling.connect()
        await manager.join_session(code)
        click.echo("Waiting for the sender to approve...")
        return await outcome
    except (TransferError, ConnectionError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        return 1
    finally:
        await manager.end_session()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
