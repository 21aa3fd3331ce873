"""Backend adapter protocol — what the lifecycle controller needs from a backend.

An adapter drives one external messaging client for one session. It is
constructed with a BackendConfig and an EventSink, reports what happens
through the sink (from any thread, at any time), and exposes a handful of
commands. The controller owns the adapter exclusively and is the only caller
of destroy().

Event contract (see pairlink.sessions.events):
- linking_code(code), authenticated(), ready(), auth_failed(reason):
  at most once each
- qr(payload): zero or more times (each refresh)
- loading(percent, message): zero or more times while chats sync
- disconnected(reason), error(err): may recur
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol, runtime_checkable

from pairlink.errors import BackendInitError
from pairlink.sessions.events import BackendEvent
from pairlink.sessions.models import LinkingMethod

logger = logging.getLogger(__name__)

EventSink = Callable[[BackendEvent], None]


@dataclass(frozen=True)
class BackendConfig:
    """Everything an adapter needs to start one session."""
    identity: str
    session_id: str
    profile_dir: Path
    cache_dir: Path
    resume_token: Any = None
    method: LinkingMethod = LinkingMethod.PAIRING_CODE


@runtime_checkable
class BackendAdapter(Protocol):
    """Protocol for messaging backends."""

    async def start(self) -> None:
        """Launch the client. May run for seconds; events can fire before it returns."""
        ...

    async def get_session_token(self) -> Any:
        """Opaque JSON-serializable token for reconnection, or None."""
        ...

    async def send_text(self, chat_id: str, body: str) -> bool:
        """Send a text message. Returns True on success."""
        ...

    async def is_connected(self) -> bool:
        ...

    async def destroy(self) -> None:
        """Tear down the client. Idempotent: later calls are no-ops."""
        ...


BackendFactory = Callable[[BackendConfig, EventSink], BackendAdapter]


def load_backend_factory(path: str) -> BackendFactory:
    """Resolve a ``module:attribute`` import path to a backend factory."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise BackendInitError(
            "Backend factory must be given as 'module:attribute'",
            details={"backendFactory": path},
        )
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise BackendInitError(
            "Backend factory could not be loaded",
            details={"backendFactory": path, "reason": str(e)},
        ) from e
    if not callable(factory):
        raise BackendInitError("Backend factory is not callable", details={"backendFactory": path})
    logger.info("Backend factory loaded: %s", path)
    return factory
