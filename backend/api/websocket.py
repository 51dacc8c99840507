"""WebSocket signaling: connection bookkeeping and event dispatch."""

import asyncio
import json
import logging
import uuid

from fastapi import WebSocket
from pydantic import ValidationError

from session.models import (
    AnswerBody,
    ConnectionDecisionBody,
    IceCandidateBody,
    OfferBody,
    SessionCodeBody,
)
from session.registry import SessionError, SessionRegistry

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks signaling sockets by connection id and delivers events to them."""

    def __init__(self) -> None:
        self._connections: dict[str, WebSocket] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        async with self._lock:
            self._connections[connection_id] = websocket
        logger.info(f"Client connected: {connection_id}. Total: {len(self._connections)}")
        await self.send(connection_id, "connected", {"connectionId": connection_id})
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            self._connections.pop(connection_id, None)
        logger.info(f"Client disconnected: {connection_id}. Total: {len(self._connections)}")

    def __len__(self) -> int:
        return len(self._connections)

    async def send(self, connection_id: str, event: str, data: dict) -> None:
        """Send one event to one connection. Unknown ids are ignored."""
        websocket = self._connections.get(connection_id)
        if websocket is None:
            logger.debug(f"Dropping '{event}' for unknown connection {connection_id}")
            return
        message = json.dumps({"event": event, "data": data})
        try:
            await websocket.send_text(message)
        except Exception:
            async with self._lock:
                self._connections.pop(connection_id, None)
            raise


class SignalingHandler:
    """Maps inbound signaling events onto registry operations."""

    def __init__(self, registry: SessionRegistry, connections: ConnectionManager) -> None:
        self._registry = registry
        self._connections = connections
        self._handlers = {
            "create-session": self._create_session,
            "join-session": self._join_session,
            "accept-connection": self._accept_connection,
            "reject-connection": self._reject_connection,
            "webrtc-offer": self._offer,
            "webrtc-answer": self._answer,
            "webrtc-ice-candidate": self._ice_candidate,
            "transfer-complete": self._transfer_complete,
            "end-session": self._end_session,
        }

    async def _error(self, connection_id: str, message: str) -> None:
        await self._connections.send(connection_id, "session-error", {"message": message})

    async def handle_text(self, connection_id: str, text: str) -> None:
        """Handle one raw frame as received from the socket."""
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            await self._error(connection_id, "Malformed message")
            return
        if not isinstance(message, dict):
            await self._error(connection_id, "Malformed message")
            return
        data = message.get("data")
        await self.handle(connection_id, message.get("event"), {} if data is None else data)

    async def handle(self, connection_id: str, event: str | None, data: dict) -> None:
        handler = self._handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            logger.warning(f"Unknown signaling event from {connection_id}: {event!r}")
            await self._error(connection_id, f"Unknown event: {event}")
            return
        if not isinstance(data, dict):
            logger.info(f"Rejected '{event}' from {connection_id}: data is not an object")
            await self._error(connection_id, "Malformed message")
            return

        try:
            await handler(connection_id, data)
        except ValidationError as e:
            error = e.errors()[0]
            logger.info(f"Rejected '{event}' from {connection_id}: {error['msg']}")
            if error["loc"] and error["loc"][0] == "sessionCode":
                await self._error(connection_id, "Invalid session code")
            else:
                await self._error(connection_id, "Malformed message")
        except SessionError as e:
            await self._error(connection_id, e.message)

    async def handle_disconnect(self, connection_id: str) -> None:
        await self._connections.disconnect(connection_id)
        await self._registry.disconnect(connection_id)

    # --- Event handlers ---

    async def _create_session(self, connection_id: str, data: dict) -> None:
        body = SessionCodeBody(**data)
        logger.info(f"Attempting to create session: {body.sessionCode}")
        await self._registry.create_session(body.sessionCode, connection_id)

    async def _join_session(self, connection_id: str, data: dict) -> None:
        body = SessionCodeBody(**data)
        logger.info(f"Receiver attempting to join session: {body.sessionCode}")
        await self._registry.join_session(body.sessionCode, connection_id)

    async def _accept_connection(self, connection_id: str, data: dict) -> None:
        body = ConnectionDecisionBody(**data)
        await self._registry.accept_connection(body.sessionCode, connection_id)

    async def _reject_connection(self, connection_id: str, data: dict) -> None:
        body = ConnectionDecisionBody(**data)
        await self._registry.reject_connection(body.sessionCode, connection_id)

    async def _offer(self, connection_id: str, data: dict) -> None:
        body = OfferBody(**data)
        await self._registry.relay_offer(body.sessionCode, connection_id, body.offer)

    async def _answer(self, connection_id: str, data: dict) -> None:
        body = AnswerBody(**data)
        await self._registry.relay_answer(body.sessionCode, connection_id, body.answer)

    async def _ice_candidate(self, connection_id: str, data: dict) -> None:
        body = IceCandidateBody(**data)
        await self._registry.relay_ice_candidate(
            body.sessionCode, connection_id, body.candidate
        )

    async def _transfer_complete(self, connection_id: str, data: dict) -> None:
        body = SessionCodeBody(**data)
        await self._registry.notify_transfer_complete(body.sessionCode, data)

    async def _end_session(self, connection_id: str, data: dict) -> None:
        body = SessionCodeBody(**data)
        await self._registry.end_session(body.sessionCode, connection_id)
