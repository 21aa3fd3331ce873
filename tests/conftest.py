"""Shared fixtures for the pairlink test suite."""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from fakes import CountingAllocator, FakeBackendFactory
from pairlink.config import Settings
from pairlink.sessions.controller import SessionController
from pairlink.sessions.registry import SessionRegistry
from pairlink.storage.store import JsonFileStore


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        data_dir=tmp_path / "data",
        linking_timeout_seconds=0.5,
        failed_grace_seconds=60.0,
        release_grace_seconds=0.0,
        session_retention_seconds=4 * 60 * 60,
        reaper_interval_seconds=3600,
        rate_limit_connect="1000/minute",
        server_context={"environment": "test"},
    )


@pytest.fixture()
def factory() -> FakeBackendFactory:
    return FakeBackendFactory()


@pytest.fixture()
def store(settings: Settings) -> JsonFileStore:
    return JsonFileStore(settings.data_dir)


@pytest.fixture()
def allocator(settings: Settings) -> CountingAllocator:
    return CountingAllocator(settings.profiles_dir)


@pytest_asyncio.fixture()
async def controller(settings, store, allocator, factory):
    ctrl = SessionController(
        settings=settings,
        registry=SessionRegistry(),
        store=store,
        allocator=allocator,
        backend_factory=factory,
    )
    yield ctrl
    await ctrl.shutdown()
