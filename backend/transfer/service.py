"""
Chunked file transfer over an open direct channel.

Handles the wire protocol for sending and receiving a batch of files:
JSON control frames announce and close each file, binary frames carry
the bytes in between. The sender paces itself on the channel's
buffered amount; the receiver reassembles one file at a time.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Iterable

from pydantic import ValidationError

from config import BACKPRESSURE_POLL_INTERVAL, BUFFER_HIGH_WATER, CHUNK_SIZE
from transfer.errors import ChannelClosed, ReadError, TransferProtocolError
from transfer.models import (
    ControlMessage,
    FileCompleteMessage,
    FileDescriptor,
    FileStartMessage,
    IncomingFile,
    OutgoingFile,
    ReceivedFile,
    TransferCompleteMessage,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[FileDescriptor, int], Awaitable[None]]

_CONTROL_TYPES = {
    "file-start": FileStartMessage,
    "file-complete": FileCompleteMessage,
    "transfer-complete": TransferCompleteMessage,
}


def percent(done: int, total: int) -> int:
    """Whole-number percentage, rounding halves up. Empty files are 100%."""
    if total <= 0:
        return 100
    return (done * 200 + total) // (total * 2)


# --- Wire protocol helpers ---

def encode_control(message: ControlMessage) -> str:
    return json.dumps(message.model_dump(by_alias=True))


def decode_control(text: str) -> ControlMessage | None:
    """Parse a control frame. Returns None for well-formed but unknown types."""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise TransferProtocolError(f"Malformed control message: {e}") from e
    if not isinstance(payload, dict):
        raise TransferProtocolError("Control message must be a JSON object")

    model = _CONTROL_TYPES.get(payload.get("type"))
    if model is None:
        logger.warning(f"Unknown control message: {payload.get('type')!r}")
        return None
    try:
        return model(**payload)
    except ValidationError as e:
        raise TransferProtocolError(f"Invalid {payload['type']} message: {e}") from e


def _ensure_open(channel) -> None:
    if channel is None or channel.readyState != "open":
        raise ChannelClosed("Data channel not ready")


def _send(channel, data: str | bytes) -> None:
    _ensure_open(channel)
    channel.send(data)


def send_control(channel, message: ControlMessage) -> None:
    logger.debug(f"Control message out: {message.type}")
    _send(channel, encode_control(message))


async def wait_for_drain(
    channel,
    high_water: int = BUFFER_HIGH_WATER,
    poll_interval: float = BACKPRESSURE_POLL_INTERVAL,
) -> None:
    """Sleep until the channel's unsent backlog is at or below the high-water mark."""
    while channel.bufferedAmount > high_water:
        _ensure_open(channel)
        await asyncio.sleep(poll_interval)


# --- Sender ---

async def send_file(
    channel,
    file: OutgoingFile,
    index: int,
    progress_callback: ProgressCallback | None = None,
    chunk_size: int = CHUNK_SIZE,
    high_water: int = BUFFER_HIGH_WATER,
    poll_interval: float = BACKPRESSURE_POLL_INTERVAL,
) -> FileDescriptor:
    """
    Send a single file: file-start, its chunks in order, file-complete.

    Args:
        channel: An open data channel (send(), bufferedAmount, readyState).
        file: The file to send.
        index: Position of the file in the batch.
        progress_callback: async fn(descriptor, percent) called after every chunk.
    """
    descriptor = file.describe(index)
    logger.info(f"Sending file: {descriptor.name} ({descriptor.size} bytes)")

    send_control(
        channel,
        FileStartMessage(
            id=descriptor.id,
            name=descriptor.name,
            size=descriptor.size,
            mime_type=descriptor.mime_type,
            index=index,
        ),
    )

    try:
        source = await asyncio.to_thread(file.open)
    except OSError as e:
        raise ReadError(f"Cannot open {descriptor.name}: {e}") from e

    offset = 0
    try:
        while offset < descriptor.size:
            await wait_for_drain(channel, high_water, poll_interval)

            try:
                chunk = await asyncio.to_thread(
                    source.read, min(chunk_size, descriptor.size - offset)
                )
            except OSError as e:
                raise ReadError(f"File read error in {descriptor.name}: {e}") from e
            if not chunk:
                raise ReadError(
                    f"{descriptor.name} ended after {offset} of {descriptor.size} bytes"
                )

            _send(channel, chunk)
            offset += len(chunk)

            if progress_callback:
                await progress_callback(descriptor, percent(offset, descriptor.size))
    finally:
        source.close()

    if descriptor.size == 0 and progress_callback:
        await progress_callback(descriptor, 100)

    send_control(channel, FileCompleteMessage(id=descriptor.id, index=index))
    logger.info(f"File {descriptor.name} sent completely")
    return descriptor


async def send_files(
    channel,
    files: Iterable[OutgoingFile],
    progress_callback: ProgressCallback | None = None,
    **options,
) -> list[FileDescriptor]:
    """Send a batch strictly one file at a time, then transfer-complete."""
    _ensure_open(channel)
    files = list(files)
    logger.info(f"Starting to send {len(files)} files")

    sent = []
    for index, file in enumerate(files):
        sent.append(await send_file(channel, file, index, progress_callback, **options))

    send_control(channel, TransferCompleteMessage())
    logger.info("All files sent")
    return sent


# --- Receiver ---

class FileReceiver:
    """
    Reassembles files from the direct channel's message stream.

    Binary frames always belong to the most recently started file that
    has not completed yet; the sender's one-file-at-a-time discipline
    and the channel's ordered delivery make that attribution correct.
    """

    def __init__(
        self,
        on_progress: ProgressCallback | None = None,
        on_file: Callable[[ReceivedFile], Awaitable[None]] | None = None,
        on_transfer_complete: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._on_progress = on_progress
        self._on_file = on_file
        self._on_transfer_complete = on_transfer_complete
        self._current: IncomingFile | None = None

    @property
    def current(self) -> IncomingFile | None:
        return self._current

    def reset(self) -> None:
        """Discard any partially received file."""
        if self._current is not None:
            logger.info(f"Discarding partial file {self._current.descriptor.name}")
        self._current = None

    async def handle_message(self, message: str | bytes) -> None:
        if isinstance(message, str):
            control = decode_control(message)
            if control is not None:
                await self._handle_control(control)
        else:
            await self._handle_chunk(message)

    async def _handle_control(self, message: ControlMessage) -> None:
        logger.debug(f"Control message in: {message.type}")
        if isinstance(message, FileStartMessage):
            self._start_file(message)
        elif isinstance(message, FileCompleteMessage):
            await self._complete_file(message)
        elif isinstance(message, TransferCompleteMessage):
            logger.info("All files transferred")
            if self._on_transfer_complete:
                await self._on_transfer_complete()

    def _start_file(self, message: FileStartMessage) -> None:
        if self._current is not None:
            logger.warning(
                f"File {self._current.descriptor.name} superseded before completion"
            )
        descriptor = FileDescriptor(
            id=message.id,
            name=message.name,
            size=message.size,
            mime_type=message.mime_type,
            index=message.index,
        )
        logger.info(f"Starting to receive file: {descriptor.name} ({descriptor.size} bytes)")
        self._current = IncomingFile(descriptor=descriptor)

    async def _handle_chunk(self, data: bytes) -> None:
        current = self._current
        if current is None:
            logger.warning(f"Dropping {len(data)}-byte chunk with no file in progress")
            return

        descriptor = current.descriptor
        if current.received_bytes + len(data) > descriptor.size:
            self._current = None
            raise TransferProtocolError(
                f"{descriptor.name} exceeds its declared size of {descriptor.size} bytes"
            )

        current.chunks.append(bytes(data))
        current.received_bytes += len(data)

        if self._on_progress:
            await self._on_progress(descriptor, percent(current.received_bytes, descriptor.size))

    async def _complete_file(self, message: FileCompleteMessage) -> None:
        current = self._current
        if current is None or current.descriptor.id != message.id:
            logger.warning(f"file-complete for unknown file {message.id}")
            return

        self._current = None
        descriptor = current.descriptor
        if current.received_bytes != descriptor.size:
            raise TransferProtocolError(
                f"{descriptor.name} completed with {current.received_bytes} "
                f"of {descriptor.size} bytes"
            )
        if descriptor.size == 0 and self._on_progress:
            await self._on_progress(descriptor, 100)

        received = ReceivedFile(
            id=descriptor.id,
            name=descriptor.name,
            size=descriptor.size,
            mime_type=descriptor.mime_type,
            data=b"".join(current.chunks),
        )
        logger.info(f"File transfer complete: {descriptor.name}")
        if self._on_file:
            await self._on_file(received)
