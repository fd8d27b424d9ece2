"""Scan state classification and operator transitions.

States are derived from stored flags on every call; nothing is cached between
invocations. Operator actions:

    start     NoScan            -> Running   (fresh generation, quick scan)
    continue  Running/Partial   -> Running   (one chunk from the partial)
    refresh   Completed         -> Running   (fresh generation, result kept)
    retry     Failed            -> Running   (flags cleared, fresh generation)
    cancel    any               -> NoScan    (generation keys deleted)

A change of deployed version forces NoScan before anything else is evaluated.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from flair_census.checkpoint import CheckpointStore, ScanCheckpoint, ScanKey
from flair_census.config import Settings
from flair_census.page_source import PageSource
from flair_census.racer import QuickScanRacer
from flair_census.runner import ChunkRunner
from flair_census.storage import StorageBackend


class ScanState(StrEnum):
    NO_SCAN = "no_scan"
    RUNNING = "running"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ScanStatus:
    state: ScanState
    result: ScanCheckpoint | None = None
    partial: ScanCheckpoint | None = None
    failure_message: str | None = None
    completed_at: str | None = None
    heartbeat: str | None = None
    show_long_run_notice: bool = False


def classify(store: CheckpointStore) -> ScanState:
    if store.flag(ScanKey.FAILED):
        return ScanState.FAILED
    if store.flag(ScanKey.IN_PROGRESS):
        return ScanState.RUNNING
    if store.read(ScanKey.PARTIAL) is not None:
        return ScanState.PARTIAL
    result = store.load_checkpoint(ScanKey.RESULT)
    if result is not None and result.completed:
        return ScanState.COMPLETED
    return ScanState.NO_SCAN


class ScanController:
    """Drives one community's scan across invocations."""

    def __init__(
        self,
        store: CheckpointStore,
        runner: ChunkRunner,
        racer: QuickScanRacer,
        settings: Settings,
        logger: Any = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._racer = racer
        self._settings = settings
        self._logger = (logger or structlog.get_logger()).bind(community=store.community)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        community: str,
        source: PageSource,
        storage: StorageBackend | None = None,
        logger: Any = None,
    ) -> ScanController:
        storage = storage or StorageBackend.from_settings(settings)
        store = CheckpointStore(storage, settings, community, logger=logger)
        runner = ChunkRunner(store, source, settings, logger=logger)
        racer = QuickScanRacer(store, runner, settings, logger=logger)
        return cls(store, runner, racer, settings, logger=logger)

    @property
    def store(self) -> CheckpointStore:
        return self._store

    @property
    def racer(self) -> QuickScanRacer:
        return self._racer

    def state(self) -> ScanState:
        return classify(self._store)

    def status(self) -> ScanStatus:
        message = self._store.read(ScanKey.FAILED_MESSAGE)
        return ScanStatus(
            state=self.state(),
            result=self._store.load_checkpoint(ScanKey.RESULT),
            partial=self._store.load_checkpoint(ScanKey.PARTIAL),
            failure_message=message if isinstance(message, str) else None,
            completed_at=self._store.read(ScanKey.COMPLETED_AT),
            heartbeat=self._store.read(ScanKey.HEARTBEAT),
        )

    def inspect(self) -> dict[str, Any]:
        return self._store.snapshot()

    # --- Version guard ---

    def reset_if_version_changed(self, current_version: str | None = None) -> bool:
        current_version = current_version or self._settings.app_version
        last_version = self._store.read(ScanKey.APP_VERSION)
        if last_version == current_version:
            return False
        self._store.clear_generation(f"app version change: {last_version} -> {current_version}")
        self._store.write(ScanKey.APP_VERSION, current_version)
        self._logger.info("scan_reset_for_version", previous=last_version, current=current_version)
        return True

    # --- Operator actions ---

    async def open(self, current_version: str | None = None) -> ScanStatus:
        """Entry point when the operator opens the scan view.

        Starts a scan automatically when none exists.
        """
        self.reset_if_version_changed(current_version)
        status = self.status()

        if status.state is ScanState.NO_SCAN:
            self._logger.info("scan_auto_start")
            await self.start()
            return self.status()

        if status.state is ScanState.RUNNING and status.partial and not status.partial.toast_shown:
            status.partial.toast_shown = True
            self._store.save_checkpoint(ScanKey.PARTIAL, status.partial)
            status.show_long_run_notice = True
        return status

    async def accept(self) -> ScanCheckpoint:
        state = self.state()
        self._logger.info("scan_accept", state=str(state))
        if state in (ScanState.RUNNING, ScanState.PARTIAL):
            return await self.continue_scan()
        if state is ScanState.FAILED:
            return await self.retry()
        if state is ScanState.COMPLETED:
            return await self.refresh()
        return await self.start()

    async def start(self) -> ScanCheckpoint:
        self._store.begin_generation()
        return await self._racer.quick_scan()

    async def refresh(self) -> ScanCheckpoint:
        return await self.start()

    async def retry(self) -> ScanCheckpoint:
        self._store.delete(ScanKey.FAILED)
        self._store.delete(ScanKey.FAILED_MESSAGE)
        self._store.delete(ScanKey.PARTIAL)
        return await self.start()

    async def continue_scan(self) -> ScanCheckpoint:
        partial = self._store.load_checkpoint(ScanKey.PARTIAL)
        if partial is None:
            partial = ScanCheckpoint.fresh(self._store.current_generation())
        return await self._runner.run_chunk(
            partial.cursor,
            partial.groups,
            partial.scanned_count,
            partial.last_page_number,
            partial.generation_id or self._store.current_generation(),
        )

    def cancel(self, reason: str = "operator cancelled") -> None:
        self._store.clear_generation(reason)
