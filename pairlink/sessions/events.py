"""Typed backend events delivered to the lifecycle controller.

Adapters report what happened through an EventSink; the controller queues
each BackendEvent on the owning Session's inbox and applies them one at a
time in arrival order. TIMEOUT and INIT_FAILED are raised by the controller
itself and travel through the same inbox so they are ordered with the rest.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    LINKING_CODE = "linking_code"
    QR = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    LOADING = "loading"
    AUTH_FAILED = "auth_failed"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    # Controller-internal
    TIMEOUT = "timeout"
    INIT_FAILED = "init_failed"


@dataclass(frozen=True)
class BackendEvent:
    kind: EventKind
    value: Any = None  # code, QR payload, reason or error text
    at: float = field(default_factory=time.time)

    # Convenience constructors mirroring the adapter contract

    @classmethod
    def linking_code(cls, code: str) -> BackendEvent:
        return cls(EventKind.LINKING_CODE, code)

    @classmethod
    def qr(cls, payload: str) -> BackendEvent:
        return cls(EventKind.QR, payload)

    @classmethod
    def authenticated(cls) -> BackendEvent:
        return cls(EventKind.AUTHENTICATED)

    @classmethod
    def ready(cls) -> BackendEvent:
        return cls(EventKind.READY)

    @classmethod
    def loading(cls, percent: int, message: str = "") -> BackendEvent:
        return cls(EventKind.LOADING, {"percent": percent, "message": message})

    @classmethod
    def auth_failed(cls, reason: str = "") -> BackendEvent:
        return cls(EventKind.AUTH_FAILED, reason)

    @classmethod
    def disconnected(cls, reason: str = "") -> BackendEvent:
        return cls(EventKind.DISCONNECTED, reason)

    @classmethod
    def error(cls, err: Any) -> BackendEvent:
        return cls(EventKind.ERROR, str(err))
