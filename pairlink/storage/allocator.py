"""Resource directory allocator — isolated working dirs per session id.

Layout under the allocator root:

    <root>/<session_id>/profile   browser profile (user data dir)
    <root>/<session_id>/cache     browser disk cache

Contract:
- allocate() is idempotent and returns absolute paths
- release() is effective exactly once per allocation; later calls are no-ops
- release() waits a grace delay before deleting so a browser process that is
  still exiting does not lose files it holds open
- release_stale() removes directories no live session owns (crash recovery)
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from pairlink.errors import ValidationError

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{8,64}$")

PROFILE_DIR_NAME = "profile"
CACHE_DIR_NAME = "cache"


@dataclass(frozen=True)
class ResourcePaths:
    profile_dir: Path
    cache_dir: Path


class ResourceAllocator:
    """Owns the per-session directory arena under *root*."""

    def __init__(self, root: Path, release_grace_seconds: float = 2.0):
        self._root = Path(root).resolve()
        self._grace = release_grace_seconds
        self._lock = threading.Lock()
        self._allocated: set[str] = set()

    @property
    def root(self) -> Path:
        return self._root

    def _session_root(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.fullmatch(session_id or ""):
            raise ValidationError("Invalid session id", details={"sessionId": session_id})
        return self._root / session_id

    def allocate(self, session_id: str) -> ResourcePaths:
        """Create (or reuse) the profile and cache dirs for *session_id*."""
        base = self._session_root(session_id)
        paths = ResourcePaths(
            profile_dir=base / PROFILE_DIR_NAME,
            cache_dir=base / CACHE_DIR_NAME,
        )
        paths.profile_dir.mkdir(parents=True, exist_ok=True)
        paths.cache_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._allocated.add(session_id)
        logger.debug("Allocated resources for session %s", session_id[:8])
        return paths

    def is_allocated(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._allocated

    async def release(self, session_id: str, grace: float | None = None) -> bool:
        """Remove the session's directories after the grace delay.

        Returns True if this call performed the release, False if the
        allocation was already released (or never made by this allocator).
        """
        with self._lock:
            if session_id not in self._allocated:
                return False
            self._allocated.discard(session_id)

        delay = self._grace if grace is None else grace
        if delay > 0:
            await asyncio.sleep(delay)
        base = self._session_root(session_id)
        await asyncio.to_thread(self._remove_tree, base)
        logger.info("Released resources for session %s", session_id[:8])
        return True

    def release_stale(self, max_age: float, live_session_ids: set[str]) -> int:
        """Delete allocator-owned dirs not backing a live session.

        Only directories whose mtime is older than *max_age* seconds are
        touched. Returns the number of directories removed.
        """
        if not self._root.exists():
            return 0
        cutoff = time.time() - max_age
        removed = 0
        with self._lock:
            owned = set(self._allocated)
        for child in self._root.iterdir():
            if not child.is_dir() or not _SESSION_ID_RE.fullmatch(child.name):
                continue
            if child.name in live_session_ids or child.name in owned:
                continue
            try:
                if child.stat().st_mtime > cutoff:
                    continue
            except FileNotFoundError:
                continue
            self._remove_tree(child)
            removed += 1
        if removed:
            logger.info("Removed %d stale session directories from %s", removed, self._root)
        return removed

    @staticmethod
    def _remove_tree(path: Path) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove %s", path, exc_info=True)
