"""
Session Registry: the pairing state machine run by the relay.

Holds every live pairing session, decides who may join, accept or
reject, relays negotiation payloads between the two participants and
expires stale sessions. It never sees file contents.
"""

import asyncio
import contextlib
import logging
import time
from enum import Enum
from typing import Awaitable, Callable

from config import SESSION_TTL, SWEEP_INTERVAL
from session.models import Session, SessionStatus, is_valid_session_code

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str, dict], Awaitable[None]]


class ErrorKind(str, Enum):
    CODE_EXISTS = "code_exists"
    NOT_FOUND = "not_found"
    ALREADY_HAS_RECEIVER = "already_has_receiver"
    UNAUTHORIZED = "unauthorized"
    INVALID_CODE = "invalid_code"


class SessionError(Exception):
    """A registry operation was refused. The caller may retry with new input."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message


class NegotiationKind(str, Enum):
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "candidate"


class SessionRegistry:
    """In-memory store of pairing sessions, serialized per session code."""

    def __init__(
        self,
        store: dict[str, Session] | None = None,
        notify: Notifier | None = None,
        clock: Callable[[], float] = time.time,
        ttl: float = SESSION_TTL,
    ) -> None:
        self._sessions = store if store is not None else {}
        self._notify = notify
        self._clock = clock
        self._ttl = ttl
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._sweeper: asyncio.Task | None = None

    def set_notifier(self, notify: Notifier) -> None:
        """Set the outbound notification callback (for late binding)."""
        self._notify = notify

    @contextlib.asynccontextmanager
    async def _locked(self, code: str):
        """Hold the lock of one code. Locks of codes with no session are dropped."""
        lock = self._locks.get(code)
        if lock is None:
            lock = self._locks[code] = asyncio.Lock()
        self._lock_users[code] = self._lock_users.get(code, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[code] -= 1
            if not self._lock_users[code]:
                del self._lock_users[code]
                if code not in self._sessions:
                    del self._locks[code]

    async def _send(self, connection_id: str | None, event: str, data: dict) -> None:
        """Fire a notification at one connection. Delivery errors are logged."""
        if not connection_id or self._notify is None:
            return
        try:
            await self._notify(connection_id, event, data)
        except Exception as e:
            logger.error(f"Failed to deliver '{event}' to {connection_id}: {e}")

    # --- Inspection ---

    def get(self, code: str) -> Session | None:
        """Return a copy of the session, or None if it does not exist."""
        session = self._sessions.get(code)
        return session.model_copy() if session else None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, code: str) -> bool:
        return code in self._sessions

    # --- Pairing ---

    @staticmethod
    def _check_code(code: str) -> None:
        if not isinstance(code, str) or not is_valid_session_code(code):
            raise SessionError(ErrorKind.INVALID_CODE, "Invalid session code")

    async def create_session(self, code: str, caller_id: str) -> Session:
        self._check_code(code)
        async with self._locked(code):
            if code in self._sessions:
                logger.info(f"Session code {code} already exists")
                raise SessionError(ErrorKind.CODE_EXISTS, "Session code already exists")

            session = Session(
                code=code,
                sender_ref=caller_id,
                created_at=self._clock(),
            )
            self._sessions[code] = session
            logger.info(f"Session created: {code} by {caller_id}")
            await self._send(caller_id, "session-created", {"sessionCode": code})
            return session.model_copy()

    async def join_session(self, code: str, caller_id: str) -> Session:
        self._check_code(code)
        async with self._locked(code):
            session = self._sessions.get(code)
            if session is None:
                logger.info(f"Session {code} not found")
                raise SessionError(ErrorKind.NOT_FOUND, "Session not found")
            if session.receiver_ref:
                logger.info(f"Session {code} already has a receiver")
                raise SessionError(
                    ErrorKind.ALREADY_HAS_RECEIVER, "Session already has a receiver"
                )

            session.receiver_ref = caller_id
            session.status = SessionStatus.PENDING
            logger.info(f"Receiver {caller_id} joined session: {code}")

            await self._send(
                session.sender_ref,
                "connection-request",
                {"receiverId": caller_id, "sessionCode": code},
            )
            await self._send(caller_id, "waiting-for-approval", {"sessionCode": code})
            return session.model_copy()

    def _require_sender(self, code: str, caller_id: str) -> Session:
        """The caller must be the sender of a session with a receiver awaiting approval."""
        session = self._sessions.get(code)
        if (
            session is None
            or session.sender_ref != caller_id
            or session.status != SessionStatus.PENDING
        ):
            raise SessionError(ErrorKind.UNAUTHORIZED, "Invalid session or permission")
        return session

    async def accept_connection(self, code: str, caller_id: str) -> Session:
        async with self._locked(code):
            session = self._require_sender(code, caller_id)
            session.status = SessionStatus.CONNECTED
            logger.info(f"Connection accepted for session: {code}")

            for member in session.participants():
                await self._send(member, "connection-accepted", {"sessionCode": code})
            return session.model_copy()

    async def reject_connection(self, code: str, caller_id: str) -> Session:
        async with self._locked(code):
            session = self._require_sender(code, caller_id)
            rejected = session.receiver_ref

            session.receiver_ref = None
            session.status = SessionStatus.WAITING
            logger.info(f"Connection rejected for session: {code}")

            await self._send(rejected, "connection-rejected", {"sessionCode": code})
            return session.model_copy()

    # --- Negotiation relay ---

    async def relay_negotiation(
        self, kind: NegotiationKind, code: str, caller_id: str, payload
    ) -> bool:
        """
        Forward an opaque negotiation payload to the other participant.

        Offers travel sender -> receiver, answers receiver -> sender and
        ICE candidates to whoever is not the caller. Anything else is a
        silent no-op. Returns True if the payload was forwarded.
        """
        async with self._locked(code):
            session = self._sessions.get(code)
            if session is None:
                return False

            if kind == NegotiationKind.OFFER:
                target = session.receiver_ref if caller_id == session.sender_ref else None
            elif kind == NegotiationKind.ANSWER:
                target = session.sender_ref if caller_id == session.receiver_ref else None
            else:
                target = session.counterpart(caller_id)

            if not target:
                logger.debug(f"Dropping {kind.value} for session {code} from {caller_id}")
                return False

            await self._send(target, f"webrtc-{_EVENT_SUFFIX[kind]}", {kind.value: payload})
            return True

    async def relay_offer(self, code: str, caller_id: str, offer) -> bool:
        return await self.relay_negotiation(NegotiationKind.OFFER, code, caller_id, offer)

    async def relay_answer(self, code: str, caller_id: str, answer) -> bool:
        return await self.relay_negotiation(NegotiationKind.ANSWER, code, caller_id, answer)

    async def relay_ice_candidate(self, code: str, caller_id: str, candidate) -> bool:
        return await self.relay_negotiation(
            NegotiationKind.ICE_CANDIDATE, code, caller_id, candidate
        )

    # --- Teardown ---

    async def notify_transfer_complete(self, code: str, data: dict | None = None) -> bool:
        """Tell every member the transfer finished, then drop the session."""
        async with self._locked(code):
            session = self._sessions.pop(code, None)
            if session is None:
                return False

            payload = dict(data or {})
            payload["sessionCode"] = code
            for member in session.participants():
                await self._send(member, "transfer-complete", payload)
            logger.info(f"Transfer completed and session {code} cleaned up")
            return True

    async def end_session(self, code: str, caller_id: str) -> bool:
        """A participant leaves on purpose; the other side is told."""
        async with self._locked(code):
            session = self._sessions.get(code)
            if session is None or caller_id not in session.participants():
                return False

            del self._sessions[code]
            await self._send(
                session.counterpart(caller_id), "session-ended", {"sessionCode": code}
            )
            logger.info(f"Session {code} ended by {caller_id}")
            return True

    async def disconnect(self, caller_id: str) -> list[str]:
        """Tear down every session the connection took part in."""
        codes = [
            code
            for code, session in list(self._sessions.items())
            if caller_id in session.participants()
        ]
        removed = []
        for code in codes:
            async with self._locked(code):
                session = self._sessions.get(code)
                # Re-check: the session may have changed while we waited
                if session is None or caller_id not in session.participants():
                    continue

                del self._sessions[code]
                removed.append(code)
                await self._send(
                    session.counterpart(caller_id),
                    "peer-disconnected",
                    {"sessionCode": code},
                )
                logger.info(f"Session {code} cleaned up due to disconnect")
        return removed

    # --- Expiry ---

    async def sweep_expired(self) -> list[str]:
        """Destroy every session older than the TTL, whatever its status."""
        now = self._clock()
        expired = [
            code
            for code, session in list(self._sessions.items())
            if now - session.created_at > self._ttl
        ]
        removed = []
        for code in expired:
            async with self._locked(code):
                session = self._sessions.get(code)
                if session is None or now - session.created_at <= self._ttl:
                    continue
                del self._sessions[code]
                removed.append(code)
                logger.info(f"Session {code} expired and removed")
        return removed

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_expired()
            except Exception as e:
                logger.error(f"Session sweep failed: {e}", exc_info=True)

    def start(self, interval: float = SWEEP_INTERVAL) -> None:
        """Start the background expiry sweep."""
        if self._sweeper and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval))
        logger.info(f"Session sweeper started (every {interval:g}s, ttl {self._ttl:g}s)")

    async def stop(self) -> None:
        """Stop the background sweeper."""
        if self._sweeper:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        logger.info("Session registry stopped")


_EVENT_SUFFIX = {
    NegotiationKind.OFFER: "offer",
    NegotiationKind.ANSWER: "answer",
    NegotiationKind.ICE_CANDIDATE: "ice-candidate",
}
