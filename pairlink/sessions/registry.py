"""Session registry — the single source of truth for "is this identity busy".

Concurrency contract:
- One Session per identity key at any instant
- try_acquire is an atomic check-and-insert (threading.Lock, safe from any
  thread including backend callback threads)
- remove only deletes the Session whose session_id matches, so a stale
  caller can never evict a Session that superseded the one it knew about
- No resource teardown happens here; that is the controller's job
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from pairlink.errors import IdentityAlreadyActive, NotFound
from pairlink.sessions.identity import mask_identity
from pairlink.sessions.models import LinkingMethod, Session, SessionSnapshot, create_session

logger = logging.getLogger(__name__)


@dataclass
class Acquired:
    """Result of a successful try_acquire."""
    session: Session
    replaced: Session | None = None  # Terminal Session evicted from the slot


class SessionRegistry:
    """In-memory identity -> Session map with atomic acquire/remove."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def try_acquire(
        self,
        identity: str,
        method: LinkingMethod = LinkingMethod.PAIRING_CODE,
    ) -> Acquired:
        """Insert a new Initializing Session for *identity*.

        Raises:
            IdentityAlreadyActive: a non-terminal Session already holds the slot.
        """
        with self._lock:
            current = self._sessions.get(identity)
            if current is not None and not current.state.is_terminal:
                raise IdentityAlreadyActive(identity, current.state.value)
            session = create_session(identity, method)
            self._sessions[identity] = session
        logger.info(
            "Session acquired: identity=%s session=%s replaced=%s",
            mask_identity(identity),
            session.session_id[:8],
            current.session_id[:8] if current else None,
        )
        return Acquired(session=session, replaced=current)

    def get(self, identity: str) -> Session:
        """Live Session for *identity* (controller use only).

        Raises:
            NotFound: no Session is registered for the identity.
        """
        with self._lock:
            session = self._sessions.get(identity)
        if session is None:
            raise NotFound("No session for this phone number", details={"phoneNumber": identity})
        return session

    def find_by_session_id(self, session_id: str) -> Session:
        with self._lock:
            for session in self._sessions.values():
                if session.session_id == session_id:
                    return session
        raise NotFound("Session not found", details={"sessionId": session_id})

    def remove(self, identity: str, session_id: str) -> bool:
        """Remove the Session only if its session_id matches. Returns True if removed."""
        with self._lock:
            current = self._sessions.get(identity)
            if current is None or current.session_id != session_id:
                return False
            del self._sessions[identity]
        logger.info(
            "Session removed: identity=%s session=%s", mask_identity(identity), session_id[:8]
        )
        return True

    def list_all(self) -> list[SessionSnapshot]:
        """Read-only snapshots of every registered Session."""
        with self._lock:
            sessions = list(self._sessions.values())
        return [s.snapshot() for s in sessions]

    def session_ids(self) -> set[str]:
        with self._lock:
            return {s.session_id for s in self._sessions.values()}

    @property
    def active_count(self) -> int:
        """Count of non-terminal Sessions."""
        with self._lock:
            return sum(1 for s in self._sessions.values() if not s.state.is_terminal)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
