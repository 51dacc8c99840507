"""Shared fixtures and fakes for the ZipLink tests."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any

import pytest
from aiortc import RTCSessionDescription

from api.websocket import SignalingHandler
from session.registry import SessionRegistry
from signaling.client import DISCONNECT


class FakeEmitter:
    """Minimal stand-in for the pyee emitter used by aiortc objects."""

    def __init__(self) -> None:
        self._handlers: dict[str, list] = {}

    def on(self, event: str, f=None):
        def register(fn):
            self._handlers.setdefault(event, []).append(fn)
            return fn

        return register(f) if f is not None else register

    async def fire(self, event: str, *args: Any) -> None:
        for fn in list(self._handlers.get(event, [])):
            result = fn(*args)
            if asyncio.iscoroutine(result):
                await result


class FakeChannel(FakeEmitter):
    """A data channel that records what is sent on it."""

    def __init__(self, ready_state: str = "open") -> None:
        super().__init__()
        self.readyState = ready_state
        self.bufferedAmount = 0
        self.sent: list[str | bytes] = []
        self.peer: FakeChannel | None = None

    def send(self, data: str | bytes) -> None:
        if self.readyState != "open":
            raise RuntimeError("channel is not open")
        self.sent.append(data)
        if self.peer is not None:
            for fn in self.peer._handlers.get("message", []):
                fn(data)

    def close(self) -> None:
        self.readyState = "closed"


class FakePeerConnection(FakeEmitter):
    """Records the handshake calls an RTCPeerConnection would receive."""

    _ids = itertools.count()

    def __init__(self, network: LoopbackNetwork | None = None) -> None:
        super().__init__()
        self.id = next(self._ids)
        self.network = network
        self.connectionState = "new"
        self.localDescription: RTCSessionDescription | None = None
        self.remoteDescription: RTCSessionDescription | None = None
        self.added_candidates: list = []
        self.channel: FakeChannel | None = None
        self.closed = False

    def createDataChannel(self, label: str, ordered: bool = True) -> FakeChannel:
        self.channel = FakeChannel(ready_state="connecting")
        self.channel.label = label
        self.channel.ordered = ordered
        return self.channel

    async def createOffer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=f"offer-from-{self.id}", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=f"answer-from-{self.id}", type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        self.localDescription = description

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        self.remoteDescription = description
        if self.network is not None and description.type == "answer":
            await self.network.link(self, description)

    async def addIceCandidate(self, candidate) -> None:
        self.added_candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True
        self.connectionState = "closed"


class LoopbackNetwork:
    """Connects fake peer connections to each other by their descriptions."""

    def __init__(self) -> None:
        self.connections: dict[int, FakePeerConnection] = {}

    def factory(self) -> FakePeerConnection:
        pc = FakePeerConnection(self)
        self.connections[pc.id] = pc
        return pc

    async def link(self, offerer: FakePeerConnection, answer: RTCSessionDescription) -> None:
        answerer = self.connections[int(answer.sdp.rsplit("-", 1)[1])]
        local = offerer.channel
        remote = FakeChannel(ready_state="open")
        local.peer, remote.peer = remote, local
        local.readyState = "open"
        await local.fire("open")
        await answerer.fire("datachannel", remote)


class FakeSignaling:
    """In-process signaling client: frames are queued and dispatched in order."""

    def __init__(self, relay: LocalRelay, connection_id: str) -> None:
        self._relay = relay
        self.connection_id = connection_id
        self.connected = True
        self.sent: list[tuple[str, dict]] = []
        self._handlers: dict[str, list] = {}
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._listener = asyncio.create_task(self._listen())

    def on(self, event: str, handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def send(self, event: str, data: dict) -> None:
        if not self.connected:
            raise ConnectionError("Not connected to the signaling server")
        self.sent.append((event, data))
        await self._relay.handler.handle(self.connection_id, event, data)

    def deliver(self, event: str, data: dict) -> None:
        self._inbox.put_nowait((event, data))

    async def _listen(self) -> None:
        while True:
            event, data = await self._inbox.get()
            for handler in list(self._handlers.get(event, [])):
                await handler(data)

    async def close(self) -> None:
        if not self.connected:
            return
        self.connected = False
        await self._relay.handler.handle_disconnect(self.connection_id)
        if self._listener is not asyncio.current_task():
            self._listener.cancel()


class LocalRelay:
    """The real registry and signaling handler, without a network in between."""

    def __init__(self) -> None:
        self.registry = SessionRegistry()
        self.handler = SignalingHandler(self.registry, self)
        self.clients: dict[str, FakeSignaling] = {}

    def client(self, connection_id: str) -> FakeSignaling:
        signaling = FakeSignaling(self, connection_id)
        self.clients[connection_id] = signaling
        return signaling

    # ConnectionManager interface used by the registry and the handler
    async def send(self, connection_id: str, event: str, data: dict) -> None:
        client = self.clients.get(connection_id)
        if client is not None and client.connected:
            client.deliver(event, data)

    async def disconnect(self, connection_id: str) -> None:
        client = self.clients.pop(connection_id, None)
        if client is not None:
            client.deliver(DISCONNECT, {})


@pytest.fixture
def relay() -> LocalRelay:
    relay = LocalRelay()
    relay.registry.set_notifier(relay.send)
    return relay


@pytest.fixture
def network() -> LoopbackNetwork:
    return LoopbackNetwork()


class Recorder:
    """Collects notifications sent by the registry."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str, dict]] = []

    async def __call__(self, connection_id: str, event: str, data: dict) -> None:
        self.messages.append((connection_id, event, data))

    def to(self, connection_id: str) -> list[tuple[str, dict]]:
        return [(e, d) for c, e, d in self.messages if c == connection_id]

    def events(self, connection_id: str) -> list[str]:
        return [e for e, _ in self.to(connection_id)]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
