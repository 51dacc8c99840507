"""Pydantic models for the peer-to-peer file transfer."""

import io
import mimetypes
import os
from enum import Enum
from typing import BinaryIO, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class ChannelState(str, Enum):
    """States of the negotiation and direct channel."""
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CHANNEL_OPEN = "channel_open"
    CLOSED = "closed"
    FAILED = "failed"


class Role(str, Enum):
    INITIATOR = "initiator"  # the sender, who created the session
    RESPONDER = "responder"


class TransferStatus(str, Enum):
    """Session status as reported to the caller."""
    WAITING = "waiting"
    PENDING = "pending"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REJECTED = "rejected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class FileDescriptor(BaseModel):
    """What the receiver learns about a file before its bytes arrive."""
    id: str
    name: str
    size: int = Field(ge=0)
    mime_type: str = "application/octet-stream"
    index: int = 0


class OutgoingFile:
    """A file to send. Bytes are read chunk by chunk from the source."""

    def __init__(
        self,
        name: str,
        size: int,
        opener: Callable[[], BinaryIO],
        mime_type: str | None = None,
    ) -> None:
        self.name = name
        self.size = size
        self.mime_type = mime_type or _guess_mime_type(name)
        self._opener = opener

    @classmethod
    def from_path(cls, path: str, mime_type: str | None = None) -> "OutgoingFile":
        return cls(
            name=os.path.basename(path),
            size=os.path.getsize(path),
            opener=lambda: open(path, "rb"),
            mime_type=mime_type,
        )

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: str | None = None) -> "OutgoingFile":
        return cls(
            name=name,
            size=len(data),
            opener=lambda: io.BytesIO(data),
            mime_type=mime_type,
        )

    def open(self) -> BinaryIO:
        return self._opener()

    def describe(self, index: int) -> FileDescriptor:
        return FileDescriptor(
            id=f"file_{index}",
            name=self.name,
            size=self.size,
            mime_type=self.mime_type,
            index=index,
        )

    def __repr__(self) -> str:
        return f"OutgoingFile(name={self.name!r}, size={self.size})"


def _guess_mime_type(name: str) -> str:
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


class IncomingFile(BaseModel):
    """Receive-side accumulator for the file currently in flight."""
    descriptor: FileDescriptor
    chunks: list[bytes] = Field(default_factory=list)
    received_bytes: int = 0


class ReceivedFile(BaseModel):
    """A completely reassembled file, handed over to the caller."""
    id: str
    name: str
    size: int
    mime_type: str
    data: bytes


# --- Wire protocol control messages ---

class FileStartMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["file-start"] = "file-start"
    id: str
    name: str
    size: int = Field(ge=0)
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")
    index: int = 0


class FileCompleteMessage(BaseModel):
    type: Literal["file-complete"] = "file-complete"
    id: str
    index: int = 0


class TransferCompleteMessage(BaseModel):
    type: Literal["transfer-complete"] = "transfer-complete"


ControlMessage = Union[FileStartMessage, FileCompleteMessage, TransferCompleteMessage]


# --- Events reported to the caller ---

class StatusChanged(BaseModel):
    kind: Literal["status"] = "status"
    status: TransferStatus
    message: str | None = None


class Progress(BaseModel):
    kind: Literal["progress"] = "progress"
    file_id: str
    name: str
    percent: int


class FileReceived(BaseModel):
    kind: Literal["file_received"] = "file_received"
    file: ReceivedFile


class ChannelReady(BaseModel):
    kind: Literal["channel_ready"] = "channel_ready"


class TransferCompleted(BaseModel):
    kind: Literal["transfer_completed"] = "transfer_completed"


class ConnectionRequested(BaseModel):
    kind: Literal["connection_requested"] = "connection_requested"
    receiver_id: str


TransferEvent = Union[
    StatusChanged,
    Progress,
    FileReceived,
    ChannelReady,
    TransferCompleted,
    ConnectionRequested,
]
