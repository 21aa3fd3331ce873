"""One-shot reply slot for a pending start-linking request.

The first outcome to arrive (code, QR, already connected, failure, timeout)
settles the slot; every later attempt is refused and reported as False.
Settling may be attempted from any thread; the future is completed on its
own event loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkingOutcome:
    """Successful answer to a start-linking request."""
    kind: str  # linking_code | qr | connected
    linking_code: str | None = None
    qr_payload: str | None = None
    message: str = ""


class ReplySlot:
    """Exactly-once settle primitive backed by an asyncio future."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        self._loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future[LinkingOutcome] = self._loop.create_future()
        self._lock = threading.Lock()
        self._settled = False

    @property
    def settled(self) -> bool:
        return self._settled

    def resolve(self, outcome: LinkingOutcome) -> bool:
        """Settle with a success outcome. Returns False if already settled."""
        return self._settle(outcome, None)

    def fail(self, exc: BaseException) -> bool:
        """Settle with an error. Returns False if already settled."""
        return self._settle(None, exc)

    def _settle(self, outcome: LinkingOutcome | None, exc: BaseException | None) -> bool:
        with self._lock:
            if self._settled:
                logger.debug("Reply already settled, dropping %s", outcome or exc)
                return False
            self._settled = True
        self._loop.call_soon_threadsafe(self._complete, outcome, exc)
        return True

    def _complete(self, outcome: LinkingOutcome | None, exc: BaseException | None) -> None:
        if self._future.done():
            return
        if exc is not None:
            self._future.set_exception(exc)
        else:
            self._future.set_result(outcome)

    async def wait(self) -> LinkingOutcome:
        return await self._future

    def cancel(self) -> None:
        """Abandon the slot (the waiting request went away)."""
        with self._lock:
            self._settled = True
        self._loop.call_soon_threadsafe(self._future.cancel)
