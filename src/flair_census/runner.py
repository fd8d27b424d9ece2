"""Chunked, resumable flair scan.

One chunk pulls pages from the page source until the time budget runs out,
the listing ends, or a page fails. Progress is merged into the aggregate
handed in by the caller (which is never mutated) and persisted as either
the partial checkpoint or the final result.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

import structlog

from flair_census.budget import Clock, TimeBudget, format_count, format_duration
from flair_census.checkpoint import CheckpointStore, ScanCheckpoint, ScanKey, now_iso
from flair_census.config import Settings
from flair_census.page_source import Page, PageSource, PageSourceError, ShapeError, TransportError

UNKNOWN_MEMBER = "Unknown"


class ChunkRunner:
    def __init__(
        self,
        store: CheckpointStore,
        source: PageSource,
        settings: Settings,
        logger: Any = None,
        clock: Clock = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._source = source
        self._settings = settings
        self._logger = (logger or structlog.get_logger()).bind(community=store.community)
        self._clock = clock
        self._sleep = sleep

    async def run_chunk(
        self,
        cursor: str | None,
        groups: Mapping[str, Sequence[str]] | None,
        scanned_count: int = 0,
        start_page: int = 0,
        generation_id: str | None = None,
    ) -> ScanCheckpoint:
        """Scan pages from ``cursor`` until done or out of time.

        Raises TransportError or ShapeError after marking the generation
        failed; every other storage problem is logged and absorbed.
        """
        merged = {label: list(members) for label, members in (groups or {}).items()}
        count = scanned_count or 0
        page_number = start_page or 0
        current = cursor
        completed = False

        if generation_id is None:
            generation_id = self._store.current_generation()
        if generation_id is None:
            generation_id, _ = self._store.open_generation()

        budget = TimeBudget(
            self._settings.execution_timeout_seconds,
            self._settings.timeout_fraction,
            self._clock,
        )
        log = self._logger.bind(chunk=max(1, start_page), generation=generation_id)
        log.info("chunk_started", cursor=cursor, page=page_number, scanned=count)

        while True:
            if not budget.remaining():
                log.info(
                    "chunk_budget_reached",
                    page=page_number,
                    elapsed=format_duration(budget.elapsed()),
                )
                break

            # a fetch, retries included, may only use what is left of the budget
            try:
                async with asyncio.timeout(budget.remaining_seconds()):
                    page = await self._fetch(current, page_number + 1, generation_id, log)
            except TimeoutError:
                log.info(
                    "chunk_budget_reached",
                    page=page_number,
                    elapsed=format_duration(budget.elapsed()),
                    during_fetch=True,
                )
                break
            page_number += 1

            for member in page.members:
                label = (member.label or "").strip()
                if not label:
                    continue
                merged.setdefault(label, []).append(member.identifier or UNKNOWN_MEMBER)
                count += 1

            current = page.next or None
            log.info(
                "page_scanned",
                page=page_number,
                cursor=current,
                scanned=format_count(count),
                groups=format_count(len(merged)),
            )

            if self._store.owns(generation_id):
                self._store.write(ScanKey.HEARTBEAT, now_iso())
            await self._sleep(self._settings.page_delay_seconds)

            if current is None:
                completed = True
                break

        started_at = self._store.read(ScanKey.STARTED_AT)
        result = ScanCheckpoint(
            groups=merged,
            cursor=current,
            generation_started_at=started_at if isinstance(started_at, str) else now_iso(),
            completed=completed,
            scanned_count=count,
            last_page_number=page_number,
            generation_id=generation_id,
        )
        self._persist(result, log)
        return result

    async def _fetch(self, cursor: str | None, page_number: int, generation_id: str, log: Any) -> Page:
        try:
            page = await self._source.fetch_page(cursor, limit=self._settings.page_size)
        except PageSourceError as exc:
            self._fail(str(exc) or type(exc).__name__, page_number, generation_id, log)
            raise
        except Exception as exc:
            err = TransportError(str(exc) or type(exc).__name__)
            self._fail(str(err), page_number, generation_id, log)
            raise err from exc

        if not isinstance(getattr(page, "members", None), (list, tuple)):
            err = ShapeError("Invalid page response: missing member list")
            self._fail(str(err), page_number, generation_id, log)
            raise err
        return page

    def _fail(self, message: str, page_number: int, generation_id: str, log: Any) -> None:
        log.error("page_fetch_failed", page=page_number, error=message)
        if not self._store.owns(generation_id):
            log.warning("stale_generation_discarded", phase="failure")
            return
        self._store.write(ScanKey.FAILED, True)
        self._store.write(ScanKey.FAILED_MESSAGE, message)
        self._store.write(ScanKey.IN_PROGRESS, False)

    def _persist(self, result: ScanCheckpoint, log: Any) -> None:
        if not self._store.owns(result.generation_id):
            log.warning("stale_generation_discarded", phase="persist", scanned=result.scanned_count)
            return

        if result.completed:
            self._store.save_checkpoint(ScanKey.RESULT, result)
            self._store.write(ScanKey.COMPLETED_AT, now_iso())
            self._store.write(ScanKey.IN_PROGRESS, False)
            self._store.write(ScanKey.FAILED, False)
            self._store.delete(ScanKey.FAILED_MESSAGE)
            self._store.delete(ScanKey.PARTIAL)
            log.info(
                "scan_completed",
                pages=result.last_page_number,
                scanned=format_count(result.scanned_count),
                groups=format_count(result.group_count),
            )
            return

        self._store.save_checkpoint(ScanKey.PARTIAL, result)
        self._store.write(ScanKey.IN_PROGRESS, True)
        log.info(
            "chunk_paused",
            cursor=result.cursor,
            pages=result.last_page_number,
            scanned=format_count(result.scanned_count),
        )
