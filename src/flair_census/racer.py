"""Quick scan: answer synchronously when a chunk finishes fast enough.

The chunk runs as an asyncio task raced against a short deadline. When the
deadline wins, the caller gets the partial checkpoint immediately while the
task keeps scanning in the background and persists its own result.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from flair_census.checkpoint import CheckpointStore, ScanCheckpoint, ScanKey
from flair_census.config import Settings
from flair_census.runner import ChunkRunner


class QuickScanRacer:
    def __init__(
        self,
        store: CheckpointStore,
        runner: ChunkRunner,
        settings: Settings,
        logger: Any = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._settings = settings
        self._logger = (logger or structlog.get_logger()).bind(community=store.community)
        self._background: set[asyncio.Task[ScanCheckpoint]] = set()

    @property
    def pending(self) -> int:
        return len(self._background)

    async def quick_scan(self) -> ScanCheckpoint:
        partial = self._store.load_checkpoint(ScanKey.PARTIAL)

        if partial is None and not self._store.flag(ScanKey.IN_PROGRESS):
            result = self._store.load_checkpoint(ScanKey.RESULT)
            if result is not None and result.completed:
                self._logger.info("quick_scan_already_completed", scanned=result.scanned_count)
                return result

        if partial is not None:
            generation_id = partial.generation_id or self._store.current_generation()
            started_at = partial.generation_started_at
            task = asyncio.create_task(
                self._runner.run_chunk(
                    partial.cursor,
                    partial.groups,
                    partial.scanned_count,
                    partial.last_page_number,
                    generation_id,
                )
            )
        else:
            generation_id, started_at = self._store.open_generation()
            task = asyncio.create_task(self._runner.run_chunk(None, {}, 0, 0, generation_id))

        done, _ = await asyncio.wait({task}, timeout=self._settings.quick_scan_seconds)
        if task in done:
            result = task.result()
            self._logger.info(
                "quick_scan_finished",
                completed=result.completed,
                scanned=result.scanned_count,
            )
            return result

        self._track(task)
        self._logger.info("quick_scan_backgrounded", deadline_ms=self._settings.quick_scan_ms)

        if partial is not None:
            return partial

        initial = ScanCheckpoint.fresh(generation_id, started_at)
        self._store.save_checkpoint(ScanKey.PARTIAL, initial)
        self._store.write(ScanKey.IN_PROGRESS, True)
        return initial

    async def wait_background(self) -> None:
        """Wait for chunks that lost the race; their outcomes are only logged."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _track(self, task: asyncio.Task[ScanCheckpoint]) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[ScanCheckpoint]) -> None:
        self._background.discard(task)
        if task.cancelled():
            self._logger.warning("background_chunk_cancelled")
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("background_chunk_failed", error=str(exc))
            return
        result = task.result()
        self._logger.info(
            "background_chunk_finished",
            completed=result.completed,
            scanned=result.scanned_count,
        )
