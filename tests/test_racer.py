import asyncio

import pytest

from flair_census.checkpoint import ScanCheckpoint, ScanKey
from flair_census.page_source import TransportError
from flair_census.racer import QuickScanRacer

from .conftest import MEDAL_PAGES, FakePageSource


@pytest.fixture
def make_racer(store, settings, make_runner):
    def factory(source, quick_scan_ms=200) -> QuickScanRacer:
        cfg = settings.model_copy(update={"quick_scan_ms": quick_scan_ms})
        return QuickScanRacer(store, make_runner(source), cfg)

    return factory


async def test_fast_chunk_answers_synchronously(make_racer, store):
    racer = make_racer(FakePageSource(MEDAL_PAGES))

    result = await racer.quick_scan()

    assert result.completed
    assert result.scanned_count == 6
    assert racer.pending == 0
    assert store.load_checkpoint(ScanKey.RESULT) == result


async def test_chunk_that_stops_early_still_wins_the_race(make_racer, store, clock):
    source = FakePageSource(MEDAL_PAGES, on_fetch=lambda index: clock.advance(1000))
    racer = make_racer(source, quick_scan_ms=5000)

    result = await racer.quick_scan()

    assert not result.completed
    assert result.cursor == "c1"
    assert result.scanned_count == 3
    assert result.last_page_number == 1
    assert racer.pending == 0
    assert store.load_checkpoint(ScanKey.PARTIAL) == result
    assert store.load_checkpoint(ScanKey.RESULT) is None
    assert store.read(ScanKey.IN_PROGRESS) is True


async def test_deadline_returns_initial_partial_and_scan_continues(make_racer, store):
    gate = asyncio.Event()
    source = FakePageSource(MEDAL_PAGES, gate=gate)
    racer = make_racer(source, quick_scan_ms=20)

    initial = await racer.quick_scan()

    assert not initial.completed
    assert initial.cursor is None
    assert initial.scanned_count == 0
    assert initial.generation_id == store.current_generation()
    assert store.load_checkpoint(ScanKey.PARTIAL) == initial
    assert store.read(ScanKey.IN_PROGRESS) is True
    assert racer.pending == 1

    gate.set()
    await racer.wait_background()

    final = store.load_checkpoint(ScanKey.RESULT)
    assert final is not None and final.completed
    assert final.scanned_count == 6
    assert final.generation_started_at == initial.generation_started_at
    assert store.load_checkpoint(ScanKey.PARTIAL) is None
    assert racer.pending == 0


async def test_deadline_with_existing_partial_returns_it(make_racer, store):
    store.begin_generation()
    existing = store.load_checkpoint(ScanKey.PARTIAL)
    existing.cursor = "c1"
    existing.groups = {"gold": ["alice"]}
    existing.scanned_count = 1
    existing.last_page_number = 1
    store.save_checkpoint(ScanKey.PARTIAL, existing)

    gate = asyncio.Event()
    source = FakePageSource(MEDAL_PAGES, gate=gate)
    racer = make_racer(source, quick_scan_ms=20)

    returned = await racer.quick_scan()
    assert returned == existing

    gate.set()
    await racer.wait_background()
    assert source.cursors == ["c1"]
    final = store.load_checkpoint(ScanKey.RESULT)
    assert final.scanned_count == 4
    assert final.last_page_number == 2


async def test_completed_result_is_not_rescanned(make_racer, store, storage, settings):
    completed = ScanCheckpoint(groups={"gold": ["a"]}, completed=True, scanned_count=1, last_page_number=1)
    store.save_checkpoint(ScanKey.RESULT, completed)
    path = settings.key_path(store.community, "scanResult")
    before = storage.read_bytes(path)
    source = FakePageSource(MEDAL_PAGES)

    returned = await make_racer(source).quick_scan()

    assert returned == completed
    assert source.cursors == []
    assert storage.read_bytes(path) == before


async def test_failure_in_winning_chunk_propagates(make_racer, store):
    with pytest.raises(TransportError):
        await make_racer(FakePageSource(MEDAL_PAGES, fail_on=0)).quick_scan()
    assert store.read(ScanKey.FAILED) is True


async def test_background_failure_is_recorded_not_raised(make_racer, store):
    gate = asyncio.Event()
    racer = make_racer(FakePageSource(MEDAL_PAGES, fail_on=0, gate=gate), quick_scan_ms=20)

    await racer.quick_scan()
    gate.set()
    await racer.wait_background()

    assert store.read(ScanKey.FAILED) is True
    assert store.read(ScanKey.IN_PROGRESS) is False
    assert store.read(ScanKey.FAILED_MESSAGE)
