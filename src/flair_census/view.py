"""Presentation-neutral rendering of scan state.

``render`` is a pure function of a ScanStatus; presenters (the CLI, a web
page) only ever consume the returned ViewModel.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from flair_census.budget import format_count, format_duration
from flair_census.state import ScanState, ScanStatus

MAX_PREVIEW_LINES = 25

TITLES = {
    ScanState.RUNNING: "Flair Scan: In Progress",
    ScanState.PARTIAL: "Flair Scan: Paused",
    ScanState.FAILED: "Flair Scan: Failed",
    ScanState.COMPLETED: "Flair Scan: Results",
    ScanState.NO_SCAN: "Flair Scan: No Scan Yet",
}

ACCEPT_LABELS = {
    ScanState.RUNNING: "Continue Scan",
    ScanState.PARTIAL: "Continue Scan",
    ScanState.FAILED: "Retry Scan",
    ScanState.COMPLETED: "Refresh",
    ScanState.NO_SCAN: "Start Scan",
}


@dataclass(frozen=True)
class ViewModel:
    state: ScanState
    title: str
    accept_label: str
    preview: str
    notice: str | None = None


def _elapsed_since(started_at: str | None, now: datetime) -> float:
    if not started_at:
        return 0.0
    try:
        started = datetime.fromisoformat(started_at)
    except ValueError:
        return 0.0
    if started.tzinfo is None:
        started = started.replace(tzinfo=UTC)
    return (now - started).total_seconds()


def format_group_counts(groups: Mapping[str, Sequence[str]], max_lines: int = MAX_PREVIEW_LINES) -> str:
    """One line per label, largest group first."""
    if not groups:
        return "No flair data available yet."
    ordered = sorted(groups.items(), key=lambda kv: len(kv[1]), reverse=True)
    lines = [
        f"• {label}: {format_count(len(members))} user{'' if len(members) == 1 else 's'}"
        for label, members in ordered
    ]
    if len(lines) <= max_lines:
        return "\n".join(lines)
    return "\n".join(lines[:max_lines]) + f"\n…and {len(lines) - max_lines} more flairs"


def filter_groups(groups: Mapping[str, Sequence[str]], text: str = "") -> dict[str, list[str]]:
    """Groups whose label contains ``text``, case-insensitively."""
    needle = text.strip().lower()
    return {label: list(members) for label, members in groups.items() if needle in label.lower()}


def format_breakdown(groups: Mapping[str, Sequence[str]]) -> str:
    """Every label with the members that carry it."""
    blocks = []
    for label, members in groups.items():
        count = len(members)
        names = "\n".join(f"• u/{m}" for m in members)
        blocks.append(f"{label} ({count} user{'' if count == 1 else 's'}):\n{names}")
    return "\n\n".join(blocks)


def render(status: ScanStatus, now: datetime | None = None) -> ViewModel:
    now = now or datetime.now(UTC)
    state = status.state

    if state is ScanState.FAILED:
        preview = f"Scan failed: {status.failure_message or 'Unknown error'}"
    elif state in (ScanState.RUNNING, ScanState.PARTIAL) and status.partial is not None:
        partial = status.partial
        elapsed = _elapsed_since(partial.generation_started_at, now)
        preview = f"{format_duration(elapsed)}, {format_count(partial.scanned_count)} users scanned so far."
        if status.heartbeat:
            preview += f"\nLast page fetched {format_duration(_elapsed_since(status.heartbeat, now))} ago."
    elif status.result is not None and status.result.completed:
        result = status.result
        elapsed = _elapsed_since(result.generation_started_at, now)
        preview = (
            f"Total flairs: {format_count(result.group_count)}\n"
            f"Total users: {format_count(result.scanned_count)}\n"
            f"Flair Breakdown ({format_duration(elapsed)}):\n"
            f"{format_group_counts(result.groups)}"
        )
        if status.completed_at:
            preview += f"\n\nFinished {format_duration(_elapsed_since(status.completed_at, now))} ago."
    elif state is ScanState.RUNNING:
        preview = "Scan starting."
    else:
        preview = "No scan yet. Opening will start a scan."

    notice = None
    if status.show_long_run_notice:
        notice = "This scan may take multiple chunks. Press Continue Scan to proceed."

    return ViewModel(
        state=state,
        title=TITLES[state],
        accept_label=ACCEPT_LABELS[state],
        preview=preview,
        notice=notice,
    )
