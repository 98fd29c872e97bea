"""
Source record merger.

Folds many tab-delimited snapshot files into one record set keyed by the
primary key column, newest row wins. Files are replayed oldest first so a
newer row always lands on top; every overwrite is recorded in the record's
history together with the field indexes that changed.

Usage:
    files = discover_source_files("data/txt-backup")
    result = SourceRecordMerger().merge(files)
    write_merged(result, "merged.txt")
    write_report(result, "merged.txt")
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Literal, Optional, Sequence, Tuple, Union

from loguru import logger

from .errors import MergeError
from .models import HistoryEntry, MergedRecord, MergeResult, MergeStats, Row, SourceFile
from .timestamps import extract_timestamp, format_timestamp
from .utils import iso_now

TieBreak = Literal["first", "last"]

KEY_INDEX = 1
PROVENANCE_INDEX = 23
REPORT_SUFFIX = "_merge_report.json"


def load_source_file(path: Union[str, Path]) -> SourceFile:
    """Describe a snapshot file; the timestamp comes from its name, else its mtime."""
    p = Path(path)
    try:
        st = p.stat()
    except OSError as e:
        raise MergeError(f"cannot stat source file {p}: {e}") from e
    modified = int(st.st_mtime * 1000)
    ts = extract_timestamp(p.name)
    return SourceFile(
        path=p,
        name=p.name,
        size=st.st_size,
        modified=modified,
        file_timestamp=ts if ts is not None else modified,
        from_name=ts is not None,
    )


def discover_source_files(directory: Union[str, Path], pattern: str = "*.txt") -> List[SourceFile]:
    """All snapshot files under `directory` matching `pattern` (non-recursive)."""
    d = Path(directory)
    if not d.is_dir():
        raise MergeError(f"source directory not found: {d}")
    return [
        load_source_file(p)
        for p in sorted(d.glob(pattern))
        if p.is_file() and not p.name.endswith(REPORT_SUFFIX)
    ]


def read_rows(path: Path) -> List[Row]:
    """Non-blank lines of a tab-delimited file, split into fields."""
    try:
        with open(path, "r", encoding="utf-8", errors="replace", newline="") as f:
            text = f.read()
    except OSError as e:
        raise MergeError(f"cannot read source file {path}: {e}") from e
    return [line.rstrip("\r").split("\t") for line in text.split("\n") if line.strip()]


def _key_order(key: str) -> Tuple[int, int, str]:
    try:
        return (1, int(key), key)
    except ValueError:
        return (0, 0, key)


@dataclass
class _FileOutcome:
    total: int = 0
    new: int = 0
    updated: int = 0
    skipped: int = 0


class SourceRecordMerger:
    """
    Last-write-wins merge over snapshot files.

    The ordering value of a row is the timestamp in its provenance marker when
    that marker is present and parseable, otherwise the timestamp of the file
    it was read from. That rule holds for every row of every run.

    Args:
        key_index: Column holding the primary key
        provenance_index: Column holding the originating file name
        tie_break: "first" keeps the earlier-processed row on equal ordering
            values; "last" lets the later-processed row replace it
    """

    def __init__(
        self,
        key_index: int = KEY_INDEX,
        provenance_index: int = PROVENANCE_INDEX,
        tie_break: TieBreak = "first",
    ):
        if tie_break not in ("first", "last"):
            raise ValueError(f"Invalid tie_break: {tie_break}. Must be 'first' or 'last'")
        self.key_index = key_index
        self.provenance_index = provenance_index
        self.tie_break = tie_break

    # --------------------------- public API

    def merge(self, files: Sequence[SourceFile]) -> MergeResult:
        if not files:
            raise MergeError("no source files to merge")

        ordered = sorted(files, key=lambda f: f.file_timestamp)
        stats = MergeStats()
        records: Dict[str, MergedRecord] = {}
        header: Optional[Row] = None

        for source in ordered:
            rows = read_rows(source.path)
            if not rows:
                logger.warning(f"Skipping empty source file {source.name}")
                stats.total_files += 1
                continue
            if header is None:
                header = list(rows[0])
            header_key = header[self.key_index] if len(header) > self.key_index else None

            logger.info(
                f"Merging {source.name} (timestamp {format_timestamp(source.file_timestamp)}"
                f"{'' if source.from_name else ', from mtime'})"
            )
            outcome = self._process_rows(source, rows[1:], records, stats, header_key)
            logger.info(
                f"  → {outcome.total} rows (new {outcome.new}, "
                f"updated {outcome.updated}, skipped {outcome.skipped})"
            )
            stats.total_files += 1
            stats.total_records += outcome.total

        merged = sorted(records.values(), key=lambda r: _key_order(r.key), reverse=True)
        for record in merged:
            self._backfill_provenance(record)
        stats.unique_records = len(merged)

        return MergeResult(header=header or [], records=merged, stats=stats, files=ordered)

    def row_timestamp(self, fields: Row, source: SourceFile) -> Tuple[int, str]:
        """Ordering value and provenance for one row."""
        marker = self._provenance(fields)
        if marker:
            ts = extract_timestamp(marker)
            if ts is not None:
                return ts, marker
            return source.file_timestamp, marker
        return source.file_timestamp, source.name

    # --------------------------- internals

    def _provenance(self, fields: Row) -> Optional[str]:
        if len(fields) > self.provenance_index:
            marker = fields[self.provenance_index].strip()
            return marker or None
        return None

    def _process_rows(
        self,
        source: SourceFile,
        rows: Sequence[Row],
        records: Dict[str, MergedRecord],
        stats: MergeStats,
        header_key: Optional[str],
    ) -> _FileOutcome:
        outcome = _FileOutcome()
        for fields in rows:
            if len(fields) <= self.key_index:
                continue
            key = fields[self.key_index].strip()
            if not key or key == header_key:
                continue
            outcome.total += 1

            ts, provenance = self.row_timestamp(fields, source)
            existing = records.get(key)

            if existing is None:
                records[key] = MergedRecord(
                    key=key,
                    fields=list(fields),
                    timestamp=ts,
                    provenance=provenance,
                    source_file=source.name,
                    history=[HistoryEntry(timestamp=ts, source=provenance, action="created")],
                )
                outcome.new += 1
                continue

            newer = ts > existing.timestamp or (
                self.tie_break == "last" and ts == existing.timestamp
            )
            if not newer:
                outcome.skipped += 1
                stats.duplicates += 1
                logger.debug(
                    f"key {key}: kept {existing.provenance} over {provenance} "
                    f"({existing.timestamp} >= {ts})"
                )
                continue

            changed = diff_fields(existing.fields, fields)
            existing.history.append(
                HistoryEntry(
                    timestamp=ts, source=provenance, action="updated", changed_fields=changed
                )
            )
            existing.fields = list(fields)
            existing.timestamp = ts
            existing.provenance = provenance
            existing.source_file = source.name
            outcome.updated += 1
            stats.updates += 1
            if any(i <= 2 for i in changed):
                logger.debug(f"key {key}: identifying fields changed {changed} ({provenance})")
        return outcome

    def _backfill_provenance(self, record: MergedRecord) -> None:
        fields = record.fields
        if len(fields) > self.provenance_index:
            if not fields[self.provenance_index].strip():
                fields[self.provenance_index] = record.provenance
            return
        fields.extend([""] * (self.provenance_index - len(fields)))
        fields.append(record.provenance)


def diff_fields(old: Row, new: Row) -> List[int]:
    """Indexes whose values differ; missing trailing fields count as empty."""
    width = max(len(old), len(new))
    return [
        i
        for i in range(width)
        if (old[i] if i < len(old) else "") != (new[i] if i < len(new) else "")
    ]


# --------------------------- output


def render_merged(result: MergeResult) -> str:
    return "".join("\t".join(row) + "\n" for row in result.rows())


def write_merged(result: MergeResult, output_path: Union[str, Path]) -> Path:
    """Write the merged record set, primary-key descending, tab-delimited."""
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, "w", encoding="utf-8", newline="") as f:
        f.write(render_merged(result))
    logger.success(f"Merged {result.stats.unique_records} unique records → {out}")
    return out


def top_updates(result: MergeResult, limit: int = 10) -> List[dict]:
    updated = [r for r in result.records if r.update_count > 0]
    updated.sort(key=lambda r: r.update_count, reverse=True)
    out = []
    for r in updated[:limit]:
        sources = list(dict.fromkeys(h.source for h in r.history))
        out.append(
            {
                "key": r.key,
                "updateCount": r.update_count,
                "lastUpdate": r.history[-1].model_dump(),
                "sources": sources,
            }
        )
    return out


def build_report(result: MergeResult, limit: int = 10) -> dict:
    s = result.stats
    return {
        "timestamp": iso_now(),
        "summary": {
            "totalFiles": s.total_files,
            "totalRecords": s.total_records,
            "uniqueRecords": s.unique_records,
            "duplicates": s.duplicates,
            "updates": s.updates,
        },
        "files": [
            {"name": f.name, "timestamp": format_timestamp(f.file_timestamp), "size": f.size}
            for f in result.files
        ],
        "topUpdates": top_updates(result, limit),
        "conflictResolution": "latest_wins",
    }


def report_path_for(output_path: Union[str, Path]) -> Path:
    out = Path(output_path)
    return out.with_name(out.stem + REPORT_SUFFIX)


def write_report(result: MergeResult, output_path: Union[str, Path]) -> Path:
    path = report_path_for(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(build_report(result), f, ensure_ascii=False, indent=2)
    logger.info(f"Merge report: {path}")
    return path


def log_statistics(stats: MergeStats) -> None:
    logger.info(
        f"Merge stats: files={stats.total_files} records={stats.total_records} "
        f"unique={stats.unique_records} duplicates={stats.duplicates} "
        f"updates={stats.updates} compression={stats.compression_rate:.1%}"
    )


def merge_files(
    files: Sequence[SourceFile],
    output_path: Union[str, Path],
    *,
    merger: Optional[SourceRecordMerger] = None,
) -> MergeResult:
    """Merge `files` and write both the merged file and its report.

    A source that is the output file itself is skipped.
    """
    out = Path(output_path).resolve()
    files = [f for f in files if f.path.resolve() != out]
    if not files:
        raise MergeError(f"no source files to merge into {output_path}")
    result = (merger or SourceRecordMerger()).merge(files)
    write_merged(result, output_path)
    write_report(result, output_path)
    log_statistics(result.stats)
    return result


def merge_directory(
    directory: Union[str, Path],
    output_path: Union[str, Path],
    *,
    pattern: str = "*.txt",
    merger: Optional[SourceRecordMerger] = None,
) -> MergeResult:
    """Discover snapshot files in `directory` and merge them into `output_path`."""
    files = discover_source_files(directory, pattern)
    logger.info(f"Found {len(files)} source files in {directory}")
    return merge_files(files, output_path, merger=merger)


def analyze(files: Sequence[SourceFile], merger: Optional[SourceRecordMerger] = None) -> MergeResult:
    """Merge without writing anything; logs the statistics a real merge would produce."""
    result = (merger or SourceRecordMerger()).merge(files)
    log_statistics(result.stats)
    return result
