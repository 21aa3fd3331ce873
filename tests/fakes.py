"""Test doubles and polling helpers shared by the pairlink tests.

FakeBackend stands in for the browser adapter: it replays a scripted list of
events from start() and lets tests push further events through emit().
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Callable

from pairlink.backends.protocol import BackendConfig, EventSink
from pairlink.sessions.events import BackendEvent
from pairlink.storage.allocator import ResourceAllocator

DEFAULT_CODE = "ABCD1234"
DEFAULT_TOKEN = {"cookies": [], "origins": [], "marker": "tok-1"}


class FakeBackend:
    """Scripted BackendAdapter."""

    def __init__(
        self,
        config: BackendConfig,
        emit: EventSink,
        on_start: list[BackendEvent] | None = None,
        start_error: Exception | None = None,
        token: Any = DEFAULT_TOKEN,
        connected: bool = True,
        send_ok: bool = True,
        start_delay: float = 0.0,
        destroy_delay: float = 0.0,
    ):
        self.config = config
        self._emit = emit
        self.on_start = list(on_start or [])
        self.start_error = start_error
        self.token = token
        self.connected = connected
        self.send_ok = send_ok
        self.start_delay = start_delay
        self.destroy_delay = destroy_delay
        self.sent: list[tuple[str, str]] = []
        self.started = False
        self.destroy_calls = 0
        self.destroyed = False

    def emit(self, event: BackendEvent) -> None:
        self._emit(event)

    async def start(self) -> None:
        self.started = True
        if self.start_error is not None:
            raise self.start_error
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        for event in self.on_start:
            self._emit(event)

    async def get_session_token(self) -> Any:
        return self.token

    async def send_text(self, chat_id: str, body: str) -> bool:
        self.sent.append((chat_id, body))
        return self.send_ok

    async def is_connected(self) -> bool:
        return self.connected and self.destroy_calls == 0

    async def destroy(self) -> None:
        self.destroy_calls += 1
        if self.destroy_delay:
            await asyncio.sleep(self.destroy_delay)
        self.destroyed = True


class FakeBackendFactory:
    """Builds FakeBackends; program() queues constructor kwargs for the next one."""

    def __init__(self):
        self.backends: list[FakeBackend] = []
        self._queue: list[dict[str, Any]] = []
        self.default: dict[str, Any] = {"on_start": [BackendEvent.linking_code(DEFAULT_CODE)]}

    def program(self, **kwargs: Any) -> None:
        self._queue.append(kwargs)

    def __call__(self, config: BackendConfig, emit: EventSink) -> FakeBackend:
        kwargs = self._queue.pop(0) if self._queue else dict(self.default)
        backend = FakeBackend(config, emit, **kwargs)
        self.backends.append(backend)
        return backend

    @property
    def last(self) -> FakeBackend:
        return self.backends[-1]


class CountingAllocator(ResourceAllocator):
    """ResourceAllocator that counts effective allocations and releases."""

    def __init__(self, root: Path, release_grace_seconds: float = 0.0):
        super().__init__(root, release_grace_seconds)
        self.allocations = 0
        self.releases = 0

    def allocate(self, session_id: str):
        paths = super().allocate(session_id)
        self.allocations += 1
        return paths

    async def release(self, session_id: str, grace: float | None = None) -> bool:
        released = await super().release(session_id, grace)
        if released:
            self.releases += 1
        return released


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* on the running loop until it holds."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def poll_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    """Blocking variant of wait_until for TestClient-driven tests."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        time.sleep(0.02)


