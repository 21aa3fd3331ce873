"""Session data models.

Ownership contract:
- A Session is created by the lifecycle controller and mutated only by it
- Request handlers read SessionSnapshot copies, never the live Session
- The backend handle belongs to exactly one Session
- Persisted records never leave the process with a raw token except through
  the explicit credential endpoints
"""

from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Linking session lifecycle states."""
    INITIALIZING = "Initializing"
    AWAITING_CODE = "AwaitingCode"    # Linking code issued, waiting for the user
    AWAITING_SCAN = "AwaitingScan"    # QR fallback issued, waiting for a scan
    AUTHENTICATED = "Authenticated"
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"     # Terminal
    FAILED = "Failed"                 # Terminal

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.DISCONNECTED, SessionState.FAILED)

    @property
    def is_linking(self) -> bool:
        """Still waiting for the user to complete linking."""
        return self in (
            SessionState.INITIALIZING,
            SessionState.AWAITING_CODE,
            SessionState.AWAITING_SCAN,
        )


class LinkingMethod(str, Enum):
    """How the user authorizes the new device."""
    PAIRING_CODE = "pairing-code"
    QR_CODE = "qr-code"


def iso(ts: float | None) -> str | None:
    """Epoch seconds -> ISO-8601 UTC string."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass
class Session:
    """One identity's current connection attempt or active connection.

    The backend handle and the runtime bookkeeping (event queue, pending
    reply) are owned by the controller; everything else here is plain state.
    """
    identity: str
    session_id: str
    method: LinkingMethod = LinkingMethod.PAIRING_CODE
    state: SessionState = SessionState.INITIALIZING
    backend: Any = None
    linking_code: str | None = None
    linking_code_expires_at: float | None = None
    qr_payload: str | None = None
    qr_expires_at: float | None = None
    qr_attempts: int = 0
    created_at: float = 0.0
    last_event_at: float = 0.0
    connected_at: float | None = None
    last_error: dict[str, Any] | None = None
    resumed: bool = False
    loading_percent: int | None = None
    loading_message: str | None = None

    @property
    def age(self) -> float:
        return time.time() - self.created_at

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            identity=self.identity,
            session_id=self.session_id,
            method=self.method,
            state=self.state,
            linking_code=self.linking_code,
            linking_code_expires_at=self.linking_code_expires_at,
            qr_payload=self.qr_payload,
            qr_expires_at=self.qr_expires_at,
            qr_attempts=self.qr_attempts,
            created_at=self.created_at,
            last_event_at=self.last_event_at,
            connected_at=self.connected_at,
            last_error=dict(self.last_error) if self.last_error else None,
            resumed=self.resumed,
            loading_percent=self.loading_percent,
            loading_message=self.loading_message,
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only copy of a Session for status and listing endpoints."""
    identity: str
    session_id: str
    method: LinkingMethod
    state: SessionState
    linking_code: str | None
    linking_code_expires_at: float | None
    qr_payload: str | None
    qr_expires_at: float | None
    qr_attempts: int
    created_at: float
    last_event_at: float
    connected_at: float | None
    last_error: dict[str, Any] | None
    resumed: bool
    loading_percent: int | None = None
    loading_message: str | None = None

    @property
    def connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    @property
    def linking_code_expired(self) -> bool:
        return self.linking_code_expires_at is not None and time.time() > self.linking_code_expires_at

    @property
    def qr_expired(self) -> bool:
        return self.qr_expires_at is not None and time.time() > self.qr_expires_at

    def to_dict(self, include_codes: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "phoneNumber": self.identity,
            "sessionId": self.session_id,
            "method": self.method.value,
            "state": self.state.value,
            "connected": self.connected,
            "createdAt": iso(self.created_at),
            "lastEventAt": iso(self.last_event_at),
            "connectedAt": iso(self.connected_at),
            "lastError": self.last_error,
            "resumed": self.resumed,
            "loadingPercent": self.loading_percent,
            "loadingMessage": self.loading_message,
        }
        if include_codes:
            data.update({
                "linkingCode": self.linking_code,
                "linkingCodeExpired": self.linking_code_expired,
                "qrPayload": self.qr_payload,
                "qrAttempts": self.qr_attempts,
                "qrExpired": self.qr_expired,
            })
        return data


def create_session(identity: str, method: LinkingMethod = LinkingMethod.PAIRING_CODE) -> Session:
    """Create a new Session in Initializing with a fresh session id."""
    now = time.time()
    return Session(
        identity=identity,
        session_id=uuid.uuid4().hex,
        method=method,
        state=SessionState.INITIALIZING,
        created_at=now,
        last_event_at=now,
    )


# ── Persisted records ─────────────────────────────────────────────────────


@dataclass
class CredentialRecord:
    """Opaque reconnection token issued by the backend after Connected."""
    identity: str
    session_id: str
    token: Any
    issued_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "sessionId": self.session_id,
            "token": self.token,
            "issuedAt": self.issued_at,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> CredentialRecord:
        return CredentialRecord(
            identity=d["identity"],
            session_id=d["sessionId"],
            token=d.get("token"),
            issued_at=d.get("issuedAt", ""),
        )


@dataclass
class ConnectionRecord:
    """Audit record written once per successful connection."""
    identity: str
    session_id: str
    connected_at: str = ""
    server_context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "identity": data["identity"],
            "sessionId": data["session_id"],
            "connectedAt": data["connected_at"],
            "serverContext": data["server_context"],
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> ConnectionRecord:
        return ConnectionRecord(
            identity=d["identity"],
            session_id=d["sessionId"],
            connected_at=d.get("connectedAt", ""),
            server_context=d.get("serverContext") or {},
        )
