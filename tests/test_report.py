import pytest

from flair_census.checkpoint import ScanCheckpoint
from flair_census.report import ReportWriter, groups_to_table, label_counts


def _result() -> ScanCheckpoint:
    return ScanCheckpoint(
        groups={"gold": ["alice", "bob", "alice"], "silver": ["carol"]},
        completed=True,
        scanned_count=4,
        generation_started_at="2026-03-01T12:00:00+00:00",
    )


def test_one_row_per_member_in_discovery_order():
    table = groups_to_table(_result())

    assert table.num_rows == 4
    assert table.column("member").to_pylist() == ["alice", "bob", "alice", "carol"]
    assert table.column("position").to_pylist() == [0, 1, 2, 0]
    assert label_counts(table) == {"gold": 3, "silver": 1}


def test_report_written_through_storage(storage, settings):
    path = settings.report_path("testcommunity")
    writer = ReportWriter(storage, path)

    writer.save(_result())

    assert storage.exists(path)
    loaded = writer.load()
    assert loaded.num_rows == 4
    assert set(loaded.column("generation_started_at").to_pylist()) == {"2026-03-01T12:00:00+00:00"}


def test_incomplete_scan_is_not_exported(storage, settings):
    writer = ReportWriter(storage, settings.report_path("testcommunity"))
    with pytest.raises(ValueError):
        writer.save(ScanCheckpoint(groups={"gold": ["a"]}, cursor="c1"))


def test_empty_table_has_no_counts():
    assert label_counts(groups_to_table(ScanCheckpoint(completed=True))) == {}
