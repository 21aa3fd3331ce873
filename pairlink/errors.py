"""Error taxonomy shared by the session core and the HTTP layer.

Every error carries a stable ``code`` (rendered as the ``error`` field of
JSON error bodies) and the HTTP status the API layer should answer with.
"""

from __future__ import annotations

from typing import Any


class PairlinkError(Exception):
    """Base exception for all session broker errors."""

    code = "InternalError"
    status_code = 500

    def __init__(self, message: str = "", details: Any = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(PairlinkError):
    """Bad or missing input, rejected before any Session is created."""

    code = "ValidationError"
    status_code = 400


class IdentityAlreadyActive(PairlinkError):
    """A non-terminal Session already holds the identity."""

    code = "IdentityAlreadyActive"
    status_code = 409

    def __init__(self, identity: str, current_state: str):
        super().__init__(
            "A session is already active for this phone number",
            details={"currentState": current_state},
        )
        self.identity = identity
        self.current_state = current_state


class BackendInitError(PairlinkError):
    """The backend adapter could not be constructed or launched."""

    code = "BackendInitError"
    status_code = 500


class LinkingTimeout(PairlinkError):
    """No linking code, QR or ready event arrived before the deadline."""

    code = "LinkingTimeout"
    status_code = 408


class BackendAuthFailure(PairlinkError):
    """The backend explicitly rejected the authentication attempt."""

    code = "BackendAuthFailure"
    status_code = 500


class NotFound(PairlinkError):
    """Unknown identity, session or persisted record."""

    code = "NotFound"
    status_code = 404


class PersistenceError(PairlinkError):
    """Record store read or write failure."""

    code = "PersistenceError"
    status_code = 500


class SessionNotConnected(PairlinkError):
    """Operation requires a Connected session."""

    code = "SessionNotConnected"
    status_code = 409
