"""Parquet export of a completed flair scan.

One row per (label, member) in discovery order, plus the generation it came
from so reports of different scans can be told apart.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.parquet as pq

from flair_census.checkpoint import ScanCheckpoint

if TYPE_CHECKING:
    from flair_census.storage import StorageBackend

REPORT_SCHEMA = pa.schema(
    [
        pa.field("label", pa.string(), nullable=False),
        pa.field("member", pa.string(), nullable=False),
        pa.field("position", pa.int64(), nullable=False),
        pa.field("generation_started_at", pa.string()),
    ]
)


def groups_to_table(checkpoint: ScanCheckpoint) -> pa.Table:
    rows: dict[str, list] = {f.name: [] for f in REPORT_SCHEMA}
    for label, members in checkpoint.groups.items():
        for position, member in enumerate(members):
            rows["label"].append(label)
            rows["member"].append(member)
            rows["position"].append(position)
            rows["generation_started_at"].append(checkpoint.generation_started_at)

    arrays = {f.name: pa.array(rows[f.name], type=f.type) for f in REPORT_SCHEMA}
    return pa.table(arrays, schema=REPORT_SCHEMA)


def label_counts(table: pa.Table) -> dict[str, int]:
    if table.num_rows == 0:
        return {}
    counts = pc.value_counts(table.column("label"))
    return {item["values"].as_py(): item["counts"].as_py() for item in counts}


class ReportWriter:
    def __init__(self, storage: StorageBackend, report_path: str) -> None:
        self._storage = storage
        self._report_path = report_path

    def save(self, checkpoint: ScanCheckpoint) -> pa.Table:
        if not checkpoint.completed:
            raise ValueError("only completed scans can be exported")
        table = groups_to_table(checkpoint)
        sink = io.BytesIO()
        pq.write_table(table, sink, compression="zstd")
        self._storage.write_bytes(self._report_path, sink.getvalue())
        return table

    def load(self) -> pa.Table:
        raw = self._storage.read_bytes(self._report_path)
        table = pq.read_table(pa.BufferReader(raw))
        return table.select([f.name for f in REPORT_SCHEMA]).cast(REPORT_SCHEMA)
