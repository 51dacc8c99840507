"""Pydantic models for pairing sessions."""

import re
import secrets
import time
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from config import SESSION_CODE_ALPHABET, SESSION_CODE_LENGTH

SESSION_CODE_PATTERN = re.compile(rf"^[A-Z0-9]{{{SESSION_CODE_LENGTH}}}$")


class SessionStatus(str, Enum):
    """All possible states of a pairing session."""
    WAITING = "waiting"
    PENDING = "pending"
    CONNECTED = "connected"


class Session(BaseModel):
    """One pairing attempt between a sender and at most one receiver."""
    code: str
    sender_ref: str
    receiver_ref: str | None = None
    status: SessionStatus = SessionStatus.WAITING
    created_at: float = Field(default_factory=time.time)

    def participants(self) -> list[str]:
        return [ref for ref in (self.sender_ref, self.receiver_ref) if ref]

    def counterpart(self, connection_id: str) -> str | None:
        """Return the other participant's connection id, if there is one."""
        if connection_id == self.sender_ref:
            return self.receiver_ref
        if connection_id == self.receiver_ref:
            return self.sender_ref
        return None


def normalize_session_code(code: str) -> str:
    """Uppercase and strip a user-entered code. Does not validate."""
    return code.strip().upper()


def is_valid_session_code(code: str) -> bool:
    return bool(SESSION_CODE_PATTERN.match(code))


def generate_session_code() -> str:
    """Generate a random session code from the configured alphabet."""
    return "".join(
        secrets.choice(SESSION_CODE_ALPHABET) for _ in range(SESSION_CODE_LENGTH)
    )


# --- Signaling message bodies ---

class SessionCodeBody(BaseModel):
    """Inbound body carrying a session code, normalized to uppercase."""
    sessionCode: str

    @field_validator("sessionCode", mode="before")
    @classmethod
    def _normalize(cls, value):
        if not isinstance(value, str):
            raise ValueError("Session code must be a string")
        value = normalize_session_code(value)
        if not is_valid_session_code(value):
            raise ValueError("Invalid session code")
        return value


class ConnectionDecisionBody(SessionCodeBody):
    receiverId: str | None = None


class OfferBody(SessionCodeBody):
    offer: dict


class AnswerBody(SessionCodeBody):
    answer: dict


class IceCandidateBody(SessionCodeBody):
    candidate: dict | None = None
