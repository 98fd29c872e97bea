"""
Pydantic data models for snapshot sync.

Covers the merge side (source files, merged records, history) and the publish
side (checkpoints, snapshots, staging areas, run summaries).
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Row = List[str]


class SourceFile(BaseModel):
    """A snapshot file on disk. Rows are loaded lazily by the merger."""

    path: Path
    name: str
    size: int = 0
    modified: int = 0  # epoch ms
    file_timestamp: int  # epoch ms, from the name or falling back to mtime
    from_name: bool = True


class HistoryEntry(BaseModel):
    timestamp: int
    source: str
    action: Literal["created", "updated"] = "created"
    changed_fields: List[int] = Field(default_factory=list)


class MergedRecord(BaseModel):
    """Winning row for one primary key plus its append-only history."""

    key: str
    fields: Row
    timestamp: int
    provenance: str
    source_file: str
    history: List[HistoryEntry] = Field(default_factory=list)

    @property
    def update_count(self) -> int:
        return len(self.history) - 1


class MergeStats(BaseModel):
    total_files: int = 0
    total_records: int = 0
    unique_records: int = 0
    duplicates: int = 0
    updates: int = 0

    @property
    def compression_rate(self) -> float:
        """Share of input rows that did not survive as unique records."""
        if not self.total_records:
            return 0.0
        return 1.0 - self.unique_records / self.total_records


class MergeResult(BaseModel):
    header: Row
    records: List[MergedRecord]
    stats: MergeStats
    files: List[SourceFile]

    def rows(self) -> List[Row]:
        """Header followed by every record's fields, in output order."""
        return [list(self.header)] + [list(r.fields) for r in self.records]


class Checkpoint(BaseModel):
    """Durable progress marker for one publish target."""

    target_id: str
    rows_processed: int = 0
    batch_index: int = 0
    current_batch_size: int
    errors: List[dict] = Field(default_factory=list)
    saved_at: str
    source_fingerprint: Optional[str] = None
    staging_target: Optional[str] = None
    snapshot_path: Optional[str] = None  # snapshot taken before the first write of the run

    @field_validator("rows_processed", "batch_index")
    @classmethod
    def _non_negative(cls, v):
        if v < 0:
            raise ValueError("progress counters must be >= 0")
        return v


class Snapshot(BaseModel):
    """Remote content captured before a run mutates anything."""

    target_id: str
    captured_at: str
    row_count: int
    rows: List[Row] = Field(default_factory=list)
    protected: bool = False


class StagingArea(BaseModel):
    name: str
    structure_id: str
    base_name: str


class PublishResult(BaseModel):
    target_id: str
    rows_processed: int
    batches: int
    initial_batch_size: int
    final_batch_size: int
    fallback_occurred: bool = False
    resumed_from: int = 0
    snapshot_path: Optional[Path] = None
    staged: bool = False
    api_calls: int = 0
    duration_ms: int = 0
    errors: List[dict] = Field(default_factory=list)
