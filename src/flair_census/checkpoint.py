"""Checkpoint persistence for resumable flair scans.

Every scan key lives in its own JSON document under the community's folder.
Reads, writes and deletes are failure-contained: storage errors are logged
and reported through return values, never raised.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from flair_census.storage import StorageBackend, StorageError

if TYPE_CHECKING:
    from flair_census.config import Settings


class ScanKey(StrEnum):
    RESULT = "scanResult"
    PARTIAL = "scanPartial"
    IN_PROGRESS = "scanInProgress"
    FAILED = "scanFailed"
    FAILED_MESSAGE = "scanFailedMessage"
    STARTED_AT = "scanStartedAt"
    COMPLETED_AT = "scanCompletedAt"
    HEARTBEAT = "scanHeartbeat"
    GENERATION = "scanGeneration"
    APP_VERSION = "appVersion"


GENERATION_KEYS: tuple[ScanKey, ...] = tuple(k for k in ScanKey if k is not ScanKey.APP_VERSION)


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class ScanCheckpoint:
    groups: dict[str, list[str]] = field(default_factory=dict)
    cursor: str | None = None
    generation_started_at: str | None = None
    completed: bool = False
    scanned_count: int = 0
    last_page_number: int = 0
    toast_shown: bool = False
    generation_id: str | None = None

    @classmethod
    def fresh(cls, generation_id: str | None, started_at: str | None = None) -> ScanCheckpoint:
        return cls(generation_id=generation_id, generation_started_at=started_at or now_iso())

    @property
    def group_count(self) -> int:
        return len(self.groups)

    def to_dict(self) -> dict[str, Any]:
        # asdict copies nested dicts and lists, so the result never aliases self.groups
        return asdict(self)

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScanCheckpoint:
        if not isinstance(data, dict):
            raise ValueError("checkpoint must be a JSON object")
        groups = data.get("groups") or {}
        if not isinstance(groups, dict) or not all(isinstance(v, list) for v in groups.values()):
            raise ValueError("checkpoint groups must map labels to lists")
        return cls(
            groups={str(k): [str(m) for m in v] for k, v in groups.items()},
            cursor=data.get("cursor"),
            generation_started_at=data.get("generation_started_at"),
            completed=bool(data.get("completed", False)),
            scanned_count=int(data.get("scanned_count", 0)),
            last_page_number=int(data.get("last_page_number", 0)),
            toast_shown=bool(data.get("toast_shown", False)),
            generation_id=data.get("generation_id"),
        )


class CheckpointStore:
    """Key/value view over one community's scan state."""

    def __init__(
        self,
        storage: StorageBackend,
        settings: Settings,
        community: str,
        logger: Any = None,
    ) -> None:
        self._storage = storage
        self._settings = settings
        self._community = community
        self._logger = (logger or structlog.get_logger()).bind(community=community)

    @property
    def community(self) -> str:
        return self._community

    def _path(self, key: ScanKey) -> str:
        return self._settings.key_path(self._community, key)

    # --- Raw key access ---

    def read(self, key: ScanKey) -> Any:
        path = self._path(key)
        try:
            if not self._storage.exists(path):
                return None
            return json.loads(self._storage.read_bytes(path))
        except (StorageError, FileNotFoundError, ValueError) as exc:
            self._logger.error("checkpoint_read_failed", key=str(key), error=str(exc))
            return None

    def write(self, key: ScanKey, value: Any) -> bool:
        try:
            data = json.dumps(value, indent=2, ensure_ascii=False).encode("utf-8")
            self._storage.write_bytes(self._path(key), data)
        except (StorageError, TypeError, ValueError) as exc:
            self._logger.error("checkpoint_write_failed", key=str(key), error=str(exc))
            return False
        return True

    def delete(self, key: ScanKey) -> bool:
        try:
            self._storage.delete(self._path(key))
        except StorageError as exc:
            self._logger.error("checkpoint_delete_failed", key=str(key), error=str(exc))
            return False
        return True

    def flag(self, key: ScanKey) -> bool:
        return bool(self.read(key))

    # --- Typed checkpoint access ---

    def load_checkpoint(self, key: ScanKey) -> ScanCheckpoint | None:
        raw = self.read(key)
        if raw is None:
            return None
        try:
            return ScanCheckpoint.from_dict(raw)
        except (TypeError, ValueError) as exc:
            self._logger.warning("checkpoint_malformed", key=str(key), error=str(exc))
            return None

    def save_checkpoint(self, key: ScanKey, checkpoint: ScanCheckpoint) -> bool:
        return self.write(key, checkpoint.to_dict())

    # --- Generation lifecycle ---

    def current_generation(self) -> str | None:
        value = self.read(ScanKey.GENERATION)
        return value if isinstance(value, str) else None

    def owns(self, generation_id: str | None) -> bool:
        """Whether a chunk of ``generation_id`` may still write scan state.

        Without strict generations every writer wins.
        """
        if not self._settings.strict_generation:
            return True
        return generation_id is not None and self.current_generation() == generation_id

    def open_generation(self) -> tuple[str, str]:
        """Record a new generation id and start instant; returns both."""
        generation_id = uuid.uuid4().hex
        started_at = now_iso()
        self.write(ScanKey.GENERATION, generation_id)
        self.write(ScanKey.STARTED_AT, started_at)
        return generation_id, started_at

    def begin_generation(self) -> ScanCheckpoint:
        """Start a brand-new generation with an empty partial checkpoint.

        A completed result of the previous generation is kept until the new
        one completes.
        """
        self.delete(ScanKey.FAILED)
        self.delete(ScanKey.FAILED_MESSAGE)
        self.delete(ScanKey.HEARTBEAT)
        generation_id, started_at = self.open_generation()
        initial = ScanCheckpoint.fresh(generation_id, started_at)
        self.save_checkpoint(ScanKey.PARTIAL, initial)
        self.write(ScanKey.IN_PROGRESS, True)
        self._logger.info("generation_started", generation=generation_id)
        return initial

    def clear_generation(self, reason: str = "") -> None:
        for key in GENERATION_KEYS:
            self.delete(key)
        self._logger.info("scan_cleared", reason=reason)

    def snapshot(self) -> dict[str, Any]:
        """Every key's stored value, with checkpoints summarized."""
        out: dict[str, Any] = {}
        for key in ScanKey:
            value = self.read(key)
            if isinstance(value, dict) and "groups" in value:
                groups = value.get("groups") or {}
                value = {
                    "groups": len(groups),
                    "scanned_count": value.get("scanned_count", 0),
                    "last_page_number": value.get("last_page_number", 0),
                    "completed": value.get("completed", False),
                }
            out[str(key)] = value
        return out
