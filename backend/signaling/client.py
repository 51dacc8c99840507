"""
WebSocket client for the relay's signaling endpoint.

Frames are JSON objects {"event": <name>, "data": {...}} in both
directions. Inbound events are dispatched one at a time, in arrival
order, to the handlers registered with on().
"""

import asyncio
import contextlib
import json
import logging
from typing import Awaitable, Callable

import websockets
from websockets.exceptions import WebSocketException

from config import SIGNALING_URL

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[None]]

# Local pseudo-event fired when the relay connection goes away
DISCONNECT = "disconnect"


class SignalingClient:
    """A single connection to the relay. There is no automatic reconnect."""

    def __init__(self, url: str = SIGNALING_URL, open_timeout: float = 10.0) -> None:
        self.url = url
        self._open_timeout = open_timeout
        self._ws = None
        self._handlers: dict[str, list[Handler]] = {}
        self._listener: asyncio.Task | None = None
        self._connection_id: str | None = None
        self._identified: asyncio.Event | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def connection_id(self) -> str | None:
        """Our id as assigned by the relay (receiverId in connection requests)."""
        return self._connection_id

    def on(self, event: str, handler: Handler) -> None:
        """Register handler: async fn(data: dict)."""
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str) -> None:
        self._handlers.pop(event, None)

    async def connect(self) -> None:
        logger.info(f"Connecting to signaling server at: {self.url}")
        self._identified = asyncio.Event()
        try:
            self._ws = await websockets.connect(
                self.url,
                open_timeout=self._open_timeout,
                close_timeout=5,
            )
        except (WebSocketException, OSError) as e:
            logger.error(f"Socket connection error: {e}")
            raise ConnectionError(f"Cannot reach signaling server at {self.url}") from e

        self._listener = asyncio.create_task(self._listen())
        try:
            await asyncio.wait_for(self._identified.wait(), self._open_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise ConnectionError("Signaling server did not identify the connection") from None
        logger.info(f"Connected to signaling server as {self._connection_id}")

    async def send(self, event: str, data: dict) -> None:
        if self._ws is None:
            raise ConnectionError("Not connected to the signaling server")
        await self._ws.send(json.dumps({"event": event, "data": data}))
        logger.debug(f"Signal out: {event}")

    async def _listen(self) -> None:
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8")
                await self._handle_frame(raw)
        except websockets.ConnectionClosed:
            logger.info("Connection closed by server")
        finally:
            self._ws = None
            logger.info("Disconnected from signaling server")
            await self._dispatch(DISCONNECT, {})

    async def _handle_frame(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Invalid message received: {raw[:100]}")
            return

        event = message.get("event")
        data = message.get("data") or {}
        logger.debug(f"Signal in: {event}")

        if event == "connected":
            self._connection_id = data.get("connectionId")
            if self._identified:
                self._identified.set()
        await self._dispatch(event, data)

    async def _dispatch(self, event: str, data: dict) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                await handler(data)
            except Exception as e:
                logger.error(f"Signal handler error for '{event}': {e}", exc_info=True)

    async def close(self) -> None:
        ws, listener = self._ws, self._listener
        self._listener = None
        if ws is not None:
            with contextlib.suppress(WebSocketException, OSError):
                await ws.close()
        if listener is not None and listener is not asyncio.current_task():
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener
        self._ws = None
