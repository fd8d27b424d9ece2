from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
import structlog

from flair_census.checkpoint import CheckpointStore
from flair_census.config import Settings
from flair_census.page_source import Member, Page, TransportError
from flair_census.racer import QuickScanRacer
from flair_census.runner import ChunkRunner
from flair_census.state import ScanController
from flair_census.storage import StorageBackend

COMMUNITY = "testcommunity"

MEDAL_PAGES = [
    [("alice", "gold"), ("bob", "gold"), ("carol", "silver")],
    [("dave", "gold"), ("erin", "silver"), ("frank", "silver")],
]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePageSource:
    """Serves fixed pages; the cursor of page i is "c{i}"."""

    def __init__(
        self,
        pages: list[list[tuple[str | None, str | None]]],
        fail_on: int | None = None,
        on_fetch: Callable[[int], None] | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.pages = pages
        self.fail_on = fail_on
        self.on_fetch = on_fetch
        self.gate = gate
        self.cursors: list[str | None] = []

    async def fetch_page(self, cursor: str | None, limit: int = 1000) -> Page:
        self.cursors.append(cursor)
        index = 0 if cursor is None else int(cursor[1:])
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_on == index:
            raise TransportError(f"listing unavailable at page {index + 1}")
        if self.on_fetch is not None:
            self.on_fetch(index)
        members = [Member(identifier=i, label=label) for i, label in self.pages[index]]
        nxt = f"c{index + 1}" if index + 1 < len(self.pages) else None
        return Page(members=members, next=nxt)


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        storage_path=str(tmp_path / "data"),
        page_delay_ms=0,
        quick_scan_ms=200,
        execution_timeout_seconds=30,
        app_version="1.0.0",
    )


@pytest.fixture
def storage(settings) -> StorageBackend:
    return StorageBackend.from_settings(settings)


@pytest.fixture
def store(storage, settings) -> CheckpointStore:
    return CheckpointStore(storage, settings, COMMUNITY)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_runner(store, settings, clock):
    def factory(source, **overrides) -> ChunkRunner:
        return ChunkRunner(store, source, overrides.pop("settings", settings), clock=clock, **overrides)

    return factory


@pytest.fixture
def make_controller(storage, settings, clock):
    def factory(source, **setting_overrides) -> ScanController:
        cfg = settings.model_copy(update=setting_overrides) if setting_overrides else settings
        store = CheckpointStore(storage, cfg, COMMUNITY)
        runner = ChunkRunner(store, source, cfg, clock=clock)
        racer = QuickScanRacer(store, runner, cfg)
        return ScanController(store, runner, racer, cfg)

    return factory
