"""
Transfer Manager: the Peer Transfer Engine of one participant.

Drives one pairing session end to end: pairing commands through the
relay, negotiation of the direct channel, then the chunked send or
receive pipeline. Everything the caller needs to know is reported
as TransferEvent values to the callbacks registered with on_event().
"""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Iterable

from config import ICE_SERVERS, NEGOTIATION_TIMEOUT
from session.models import (
    generate_session_code,
    is_valid_session_code,
    normalize_session_code,
)
from signaling.client import DISCONNECT, SignalingClient
from transfer.errors import ChannelClosed, NegotiationFailed, TransferError
from transfer.models import (
    ChannelReady,
    ChannelState,
    ConnectionRequested,
    FileDescriptor,
    FileReceived,
    OutgoingFile,
    Progress,
    ReceivedFile,
    Role,
    StatusChanged,
    TransferCompleted,
    TransferEvent,
    TransferStatus,
)
from transfer.negotiation import Negotiator
from transfer.service import FileReceiver, send_files, wait_for_drain

logger = logging.getLogger(__name__)

EventCallback = Callable[[TransferEvent], Awaitable[None]]


class TransferManager:
    """One participant's side of one session."""

    def __init__(
        self,
        signaling: SignalingClient,
        ice_servers: list[str] = ICE_SERVERS,
        peer_connection_factory=None,
    ) -> None:
        self._signaling = signaling
        self._ice_servers = ice_servers
        self._pc_factory = peer_connection_factory
        self._event_callbacks: list[EventCallback] = []
        self._role: Role | None = None
        self._session_code: str | None = None
        self._negotiator: Negotiator | None = None
        self._receiver = FileReceiver(
            on_progress=self._on_progress,
            on_file=self._on_file,
            on_transfer_complete=self._on_transfer_complete,
        )
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._inbox_task: asyncio.Task | None = None
        self._failure_cleanup: asyncio.Task | None = None
        self._pending: asyncio.Future | None = None
        self._negotiation_started = asyncio.Event()
        self._closing = False
        self._bind_signals()

    @property
    def session_code(self) -> str | None:
        return self._session_code

    @property
    def role(self) -> Role | None:
        return self._role

    @property
    def channel_state(self) -> ChannelState:
        return self._negotiator.state if self._negotiator else ChannelState.IDLE

    def on_event(self, callback: EventCallback) -> None:
        """Register callback: async fn(event: TransferEvent)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event: TransferEvent) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def _status(self, status: TransferStatus, message: str | None = None) -> None:
        await self._emit(StatusChanged(status=status, message=message))

    # --- Relay wiring ---

    def _bind_signals(self) -> None:
        on = self._signaling.on
        on("session-created", self._on_session_created)
        on("session-error", self._on_session_error)
        on("connection-request", self._on_connection_request)
        on("waiting-for-approval", self._on_waiting_for_approval)
        on("connection-accepted", self._on_connection_accepted)
        on("connection-rejected", self._on_connection_rejected)
        on("webrtc-offer", self._on_offer)
        on("webrtc-answer", self._on_answer)
        on("webrtc-ice-candidate", self._on_ice_candidate)
        on("transfer-complete", self._on_session_transfer_complete)
        on("peer-disconnected", self._on_peer_gone)
        on("session-ended", self._on_peer_gone)
        on(DISCONNECT, self._on_relay_lost)

    def _expect_reply(self) -> asyncio.Future:
        self._pending = asyncio.get_running_loop().create_future()
        return self._pending

    def _resolve_reply(self, error: str | None = None) -> None:
        pending, self._pending = self._pending, None
        if pending is None or pending.done():
            return
        if error:
            pending.set_exception(TransferError(error))
        else:
            pending.set_result(None)

    async def _relay(self, kind: str, payload: dict) -> None:
        event = {
            "offer": "webrtc-offer",
            "answer": "webrtc-answer",
            "candidate": "webrtc-ice-candidate",
        }[kind]
        await self._signaling.send(event, {"sessionCode": self._session_code, kind: payload})

    # --- Commands ---

    async def create_session(self, code: str | None = None, timeout: float = 10.0) -> str:
        """Sender: register a new session. Returns its code."""
        code = normalize_session_code(code) if code else generate_session_code()
        if not is_valid_session_code(code):
            raise ValueError(f"Invalid session code: {code!r}")
        self._role = Role.INITIATOR
        self._session_code = code

        reply = self._expect_reply()
        await self._signaling.send("create-session", {"sessionCode": code})
        await asyncio.wait_for(reply, timeout)
        return code

    async def join_session(self, code: str, timeout: float = 10.0) -> None:
        """Receiver: ask to join. Returns once the sender has been asked."""
        code = normalize_session_code(code)
        if not is_valid_session_code(code):
            raise ValueError(f"Invalid session code: {code!r}")
        self._role = Role.RESPONDER
        self._session_code = code

        reply = self._expect_reply()
        await self._signaling.send("join-session", {"sessionCode": code})
        await asyncio.wait_for(reply, timeout)

    async def accept(self, receiver_id: str) -> None:
        await self._signaling.send(
            "accept-connection",
            {"sessionCode": self._session_code, "receiverId": receiver_id},
        )

    async def reject(self, receiver_id: str) -> None:
        await self._signaling.send(
            "reject-connection",
            {"sessionCode": self._session_code, "receiverId": receiver_id},
        )

    async def wait_until_ready(
        self, timeout: float = NEGOTIATION_TIMEOUT, start_timeout: float | None = None
    ) -> None:
        """
        Wait for the direct channel. Raises NegotiationFailed.

        start_timeout bounds the wait for negotiation to begin (None waits
        until the peer has been accepted); timeout bounds the handshake itself.
        """
        try:
            await asyncio.wait_for(self._negotiation_started.wait(), start_timeout)
        except asyncio.TimeoutError:
            raise NegotiationFailed("Negotiation never started") from None
        if self._negotiator is None:
            raise NegotiationFailed("Session was closed")
        await self._negotiator.wait_open(timeout)

    async def send_files(self, files: Iterable[OutgoingFile]) -> list[FileDescriptor]:
        """Sender: push the batch over the open channel, then tell the relay."""
        channel = self._negotiator.channel if self._negotiator else None
        if channel is None or self.channel_state != ChannelState.CHANNEL_OPEN:
            raise ChannelClosed("Data channel not ready")

        try:
            sent = await send_files(channel, files, self._on_progress)
            await wait_for_drain(channel, high_water=0)
        except TransferError as e:
            logger.error(f"Transfer error: {e}")
            await self._status(TransferStatus.FAILED, str(e))
            raise

        await self._status(TransferStatus.COMPLETED)
        with contextlib.suppress(ConnectionError):
            await self._signaling.send(
                "transfer-complete", {"sessionCode": self._session_code}
            )
        return sent

    async def end_session(self) -> None:
        """Leave on purpose: tell the relay, then release everything."""
        if self._session_code and self._signaling.connected:
            with contextlib.suppress(ConnectionError):
                await self._signaling.send("end-session", {"sessionCode": self._session_code})
        await self.close()

    async def cancel(self) -> None:
        """Abandon the session and its transfer at any point."""
        await self.close()
        await self._status(TransferStatus.CANCELLED)

    async def close(self) -> None:
        """Discard partial files, release the channel and leave the relay."""
        if self._closing:
            return
        self._closing = True
        logger.info("Cleaning up transfer session")
        self._receiver.reset()
        self._resolve_reply("Session closed")
        self._negotiation_started.set()

        if self._inbox_task is not None:
            self._inbox_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._inbox_task
            self._inbox_task = None
        if self._negotiator is not None:
            await self._negotiator.close()
        await self._signaling.close()

    # --- Negotiation ---

    def _new_negotiator(self, role: Role) -> Negotiator:
        self._negotiator = Negotiator(
            role=role,
            relay=self._relay,
            on_state_change=self._on_channel_state,
            on_message=self._inbox.put_nowait,
            ice_servers=self._ice_servers,
            peer_connection_factory=self._pc_factory,
        )
        self._negotiation_started.set()
        return self._negotiator

    async def _on_channel_state(self, state: ChannelState, reason: str | None) -> None:
        if state == ChannelState.CHANNEL_OPEN:
            self._inbox_task = asyncio.create_task(self._drain_inbox())
            await self._status(TransferStatus.CONNECTED)
            await self._emit(ChannelReady())
        elif state == ChannelState.FAILED:
            await self._status(TransferStatus.FAILED, reason)
        elif state == ChannelState.CLOSED and not self._closing:
            self._receiver.reset()
            await self._status(TransferStatus.DISCONNECTED, reason)

    async def _drain_inbox(self) -> None:
        """Feed channel messages to the receiver strictly in arrival order."""
        while True:
            message = await self._inbox.get()
            try:
                await self._receiver.handle_message(message)
            except TransferError as e:
                logger.error(f"Receive error: {e}")
                self._receiver.reset()
                await self._status(TransferStatus.FAILED, str(e))
                # Terminal: nothing after the failure may reach the caller
                self._failure_cleanup = asyncio.create_task(self.close())
                return

    # --- Relay events ---

    async def _on_session_created(self, data: dict) -> None:
        await self._status(TransferStatus.WAITING)
        self._resolve_reply()

    async def _on_session_error(self, data: dict) -> None:
        message = data.get("message", "Session error")
        logger.error(f"Session error: {message}")
        await self._status(TransferStatus.ERROR, message)
        self._resolve_reply(message)

    async def _on_connection_request(self, data: dict) -> None:
        await self._status(TransferStatus.PENDING)
        await self._emit(ConnectionRequested(receiver_id=data["receiverId"]))

    async def _on_waiting_for_approval(self, data: dict) -> None:
        await self._status(TransferStatus.PENDING)
        self._resolve_reply()

    async def _on_connection_accepted(self, data: dict) -> None:
        await self._status(TransferStatus.CONNECTING)
        if self._role == Role.INITIATOR:
            try:
                await self._new_negotiator(Role.INITIATOR).start_offer()
            except NegotiationFailed as e:
                logger.error(f"Could not start negotiation: {e}")

    async def _on_connection_rejected(self, data: dict) -> None:
        await self._status(TransferStatus.REJECTED)

    async def _on_offer(self, data: dict) -> None:
        logger.info("Received WebRTC offer")
        if self._role != Role.RESPONDER:
            return
        try:
            await self._new_negotiator(Role.RESPONDER).handle_offer(data["offer"])
        except NegotiationFailed as e:
            logger.error(f"Could not answer offer: {e}")

    async def _on_answer(self, data: dict) -> None:
        logger.info("Received WebRTC answer")
        if self._negotiator is None:
            return
        with contextlib.suppress(NegotiationFailed):
            await self._negotiator.handle_answer(data["answer"])

    async def _on_ice_candidate(self, data: dict) -> None:
        if self._negotiator is None:
            logger.warning("Dropping ICE candidate received before negotiation started")
            return
        await self._negotiator.handle_ice_candidate(data.get("candidate"))

    async def _on_session_transfer_complete(self, data: dict) -> None:
        logger.info("Transfer completed")

    async def _on_peer_gone(self, data: dict) -> None:
        logger.info("Peer disconnected")
        await self.close()
        await self._status(TransferStatus.DISCONNECTED, "Peer disconnected")

    async def _on_relay_lost(self, data: dict) -> None:
        if self._closing:
            return
        logger.info("Disconnected from signaling server")
        self._resolve_reply("Disconnected from signaling server")
        # An open direct channel keeps working without the relay
        if self.channel_state != ChannelState.CHANNEL_OPEN:
            await self._status(TransferStatus.DISCONNECTED, "Signaling connection lost")

    # --- Transfer callbacks ---

    async def _on_progress(self, descriptor: FileDescriptor, percent: int) -> None:
        await self._emit(Progress(file_id=descriptor.id, name=descriptor.name, percent=percent))

    async def _on_file(self, file: ReceivedFile) -> None:
        await self._emit(FileReceived(file=file))

    async def _on_transfer_complete(self) -> None:
        await self._emit(TransferCompleted())
