"""Tests for the session registry: atomic acquire, guarded remove."""

from __future__ import annotations

import threading

import pytest

from pairlink.errors import IdentityAlreadyActive, NotFound
from pairlink.sessions.models import LinkingMethod, SessionState
from pairlink.sessions.registry import SessionRegistry

IDENTITY = "15551234567"


@pytest.fixture
def registry():
    return SessionRegistry()


class TestAcquire:

    def test_acquire_creates_initializing_session(self, registry):
        acquired = registry.try_acquire(IDENTITY, LinkingMethod.QR_CODE)
        assert acquired.replaced is None
        assert acquired.session.state == SessionState.INITIALIZING
        assert acquired.session.method == LinkingMethod.QR_CODE
        assert registry.get(IDENTITY) is acquired.session

    def test_second_acquire_conflicts(self, registry):
        registry.try_acquire(IDENTITY).session.state = SessionState.AWAITING_CODE
        with pytest.raises(IdentityAlreadyActive) as exc_info:
            registry.try_acquire(IDENTITY)
        assert exc_info.value.current_state == "AwaitingCode"
        assert exc_info.value.status_code == 409

    @pytest.mark.parametrize("terminal", [SessionState.FAILED, SessionState.DISCONNECTED])
    def test_terminal_session_is_replaced(self, registry, terminal):
        first = registry.try_acquire(IDENTITY).session
        first.state = terminal
        acquired = registry.try_acquire(IDENTITY)
        assert acquired.replaced is first
        assert acquired.session.session_id != first.session_id
        assert len(registry) == 1

    def test_concurrent_acquire_single_winner(self, registry):
        barrier = threading.Barrier(16)
        wins: list[str] = []
        conflicts: list[IdentityAlreadyActive] = []

        def attempt():
            barrier.wait()
            try:
                wins.append(registry.try_acquire(IDENTITY).session.session_id)
            except IdentityAlreadyActive as e:
                conflicts.append(e)

        threads = [threading.Thread(target=attempt) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert len(conflicts) == 15
        assert registry.get(IDENTITY).session_id == wins[0]


class TestRemove:

    def test_remove_matching_session(self, registry):
        session = registry.try_acquire(IDENTITY).session
        assert registry.remove(IDENTITY, session.session_id)
        with pytest.raises(NotFound):
            registry.get(IDENTITY)

    def test_stale_remove_does_not_evict_successor(self, registry):
        first = registry.try_acquire(IDENTITY).session
        first.state = SessionState.FAILED
        second = registry.try_acquire(IDENTITY).session
        assert not registry.remove(IDENTITY, first.session_id)
        assert registry.get(IDENTITY) is second

    def test_remove_unknown(self, registry):
        assert not registry.remove(IDENTITY, "0" * 32)


class TestQueries:

    def test_find_by_session_id(self, registry):
        session = registry.try_acquire(IDENTITY).session
        assert registry.find_by_session_id(session.session_id) is session
        with pytest.raises(NotFound):
            registry.find_by_session_id("f" * 32)

    def test_counts(self, registry):
        registry.try_acquire(IDENTITY)
        registry.try_acquire("15559876543").session.state = SessionState.FAILED
        assert len(registry) == 2
        assert registry.active_count == 1
        assert {s.identity for s in registry.list_all()} == {IDENTITY, "15559876543"}
