"""
Negotiation of the direct channel between the two peers.

Wraps an aiortc RTCPeerConnection in an explicit state machine:
idle -> negotiating -> channel_open -> closed, with failed reachable
from any state that is not closed. Descriptions and connectivity
candidates travel through the relay via the `relay` callback.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from config import DATA_CHANNEL_LABEL, ICE_SERVERS, NEGOTIATION_TIMEOUT
from transfer.errors import NegotiationFailed
from transfer.models import ChannelState, Role

logger = logging.getLogger(__name__)

Relay = Callable[[str, dict], Awaitable[None]]
StateCallback = Callable[[ChannelState, str | None], Awaitable[None]]


def default_peer_connection(ice_servers: list[str] = ICE_SERVERS) -> RTCPeerConnection:
    configuration = RTCConfiguration(
        iceServers=[RTCIceServer(urls=url) for url in ice_servers]
    )
    return RTCPeerConnection(configuration=configuration)


def description_to_json(description: RTCSessionDescription) -> dict:
    return {"type": description.type, "sdp": description.sdp}


def description_from_json(payload: dict) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=payload["sdp"], type=payload["type"])


def candidate_to_json(candidate) -> dict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_json(payload: dict):
    """Parse a browser-style candidate init. Returns None for end-of-candidates."""
    sdp = payload.get("candidate") or ""
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    if not sdp:
        return None
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


class Negotiator:
    """Owns the peer connection and data channel of one session."""

    def __init__(
        self,
        role: Role,
        relay: Relay,
        on_state_change: StateCallback | None = None,
        on_message: Callable[[str | bytes], None] | None = None,
        ice_servers: list[str] = ICE_SERVERS,
        peer_connection_factory: Callable[[], RTCPeerConnection] | None = None,
    ) -> None:
        self.role = role
        self._relay = relay
        self._on_state_change = on_state_change
        self._on_message = on_message
        self._factory = peer_connection_factory or (
            lambda: default_peer_connection(ice_servers)
        )
        self._state = ChannelState.IDLE
        self._pc: RTCPeerConnection | None = None
        self._channel = None
        self._local_description_ready = False
        self._pending_local_candidates: list = []
        self._ready: asyncio.Future | None = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def channel(self):
        return self._channel

    def _ready_future(self) -> asyncio.Future:
        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
            # Nobody may be waiting when negotiation fails
            self._ready.add_done_callback(
                lambda f: f.cancelled() or f.exception()
            )
        return self._ready

    async def _set_state(self, state: ChannelState, reason: str | None = None) -> None:
        if self._state == state:
            return
        if self._state in (ChannelState.CLOSED, ChannelState.FAILED):
            return
        logger.info(f"Negotiation state: {self._state.value} -> {state.value}")
        self._state = state

        ready = self._ready_future()
        if not ready.done():
            if state == ChannelState.CHANNEL_OPEN:
                ready.set_result(self._channel)
            elif state in (ChannelState.FAILED, ChannelState.CLOSED):
                ready.set_exception(
                    NegotiationFailed(reason or f"Negotiation ended: {state.value}")
                )

        if self._on_state_change:
            try:
                await self._on_state_change(state, reason)
            except Exception as e:
                logger.error(f"State callback error: {e}")

    async def fail(self, reason: str) -> None:
        logger.error(f"Negotiation failed: {reason}")
        await self._set_state(ChannelState.FAILED, reason)

    # --- Peer connection setup ---

    def _create_peer_connection(self) -> RTCPeerConnection:
        logger.info("Creating peer connection")
        pc = self._factory()

        @pc.on("icecandidate")
        async def on_icecandidate(candidate):
            await self._local_candidate(candidate)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            state = pc.connectionState
            logger.info(f"Connection state changed to: {state}")
            if state == "failed":
                await self.fail("Peer connection failed")
            elif state == "closed":
                await self._set_state(ChannelState.CLOSED, "Peer connection closed")

        @pc.on("datachannel")
        def on_datachannel(channel):
            logger.info("Data channel received")
            self._setup_channel(channel)

        self._pc = pc
        return pc

    def _setup_channel(self, channel) -> None:
        self._channel = channel

        @channel.on("open")
        def on_open():
            asyncio.ensure_future(self._channel_opened())

        @channel.on("message")
        def on_message(message):
            if self._on_message:
                self._on_message(message)

        @channel.on("close")
        def on_close():
            logger.info("Data channel closed")
            asyncio.ensure_future(self._set_state(ChannelState.CLOSED, "Data channel closed"))

        # A channel announced by the remote side may already be open
        if channel.readyState == "open":
            asyncio.ensure_future(self._channel_opened())

    async def _channel_opened(self) -> None:
        logger.info("Data channel opened")
        await self._set_state(ChannelState.CHANNEL_OPEN)

    async def _local_description_set(self) -> None:
        self._local_description_ready = True
        pending, self._pending_local_candidates = self._pending_local_candidates, []
        for candidate in pending:
            await self._local_candidate(candidate)

    async def _local_candidate(self, candidate) -> None:
        if candidate is None:
            logger.debug("ICE candidate gathering complete")
            return
        if not self._local_description_ready:
            self._pending_local_candidates.append(candidate)
            return
        logger.debug("Sending ICE candidate")
        await self._relay("candidate", candidate_to_json(candidate))

    # --- Handshake steps ---

    async def start_offer(self) -> None:
        """Initiator: open the data channel and send an offer."""
        if self.role != Role.INITIATOR:
            raise NegotiationFailed("Only the initiator sends the offer")
        await self._set_state(ChannelState.NEGOTIATING)
        pc = self._create_peer_connection()
        self._setup_channel(pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))
        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            logger.info("Sending WebRTC offer")
            await self._relay("offer", description_to_json(pc.localDescription))
            await self._local_description_set()
        except Exception as e:
            await self.fail(f"Error creating offer: {e}")
            raise NegotiationFailed(str(e)) from e

    async def handle_offer(self, payload: dict) -> None:
        """Responder: answer the initiator's offer."""
        if self.role != Role.RESPONDER:
            logger.warning("Ignoring offer received by the initiator")
            return
        await self._set_state(ChannelState.NEGOTIATING)
        pc = self._create_peer_connection()
        try:
            await pc.setRemoteDescription(description_from_json(payload))
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
            logger.info("Sending WebRTC answer")
            await self._relay("answer", description_to_json(pc.localDescription))
            await self._local_description_set()
        except Exception as e:
            await self.fail(f"Error handling offer: {e}")
            raise NegotiationFailed(str(e)) from e

    async def handle_answer(self, payload: dict) -> None:
        if self._pc is None or self.role != Role.INITIATOR:
            logger.warning("Ignoring answer without a pending offer")
            return
        try:
            await self._pc.setRemoteDescription(description_from_json(payload))
            logger.info("WebRTC answer processed")
        except Exception as e:
            await self.fail(f"Error handling answer: {e}")
            raise NegotiationFailed(str(e)) from e

    async def handle_ice_candidate(self, payload: dict | None) -> bool:
        """Apply a remote candidate. Returns False if it had to be dropped."""
        # TODO: queue candidates that arrive before the remote description and
        # replay them after setRemoteDescription instead of dropping them.
        if self._pc is None or self._pc.remoteDescription is None:
            logger.warning("Dropping ICE candidate received before the remote description")
            return False
        if not payload:
            return False
        try:
            candidate = candidate_from_json(payload)
            if candidate is None:
                return False
            await self._pc.addIceCandidate(candidate)
            logger.debug("ICE candidate added")
            return True
        except Exception as e:
            logger.error(f"Error adding ICE candidate: {e}")
            return False

    async def wait_open(self, timeout: float = NEGOTIATION_TIMEOUT):
        """Wait for the data channel. Raises NegotiationFailed on failure or timeout."""
        ready = self._ready_future()
        try:
            return await asyncio.wait_for(asyncio.shield(ready), timeout)
        except asyncio.TimeoutError:
            await self.fail(f"Timed out after {timeout:g}s waiting for the data channel")
            raise NegotiationFailed("Negotiation timed out") from None

    async def close(self) -> None:
        """Release the data channel and peer connection."""
        channel, self._channel = self._channel, None
        pc, self._pc = self._pc, None
        if channel is not None and channel.readyState not in ("closing", "closed"):
            channel.close()
        if pc is not None:
            await pc.close()
        await self._set_state(ChannelState.CLOSED, "Closed locally")
