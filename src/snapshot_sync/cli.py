from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

import typer
from loguru import logger

from .checkpoint import CheckpointStore
from .config import get_settings
from .errors import SyncOperationalError
from .merge import (
    SourceRecordMerger,
    analyze as analyze_files,
    discover_source_files,
    load_source_file,
    merge_directory,
    merge_files,
    read_rows,
    report_path_for,
)
from .publisher import PublishConfig, ResilientPublisher
from .remote import JsonFileStore
from .snapshot import SnapshotManager

app = typer.Typer(help="snapshot-sync operational CLI (merge, publish, snapshots)")

# ---------------------------
# Common options
# ---------------------------


def store_opt() -> str:
    return typer.Option(..., "--store", envvar="SNAPSYNC_STORE", help="JSON store file")


def target_opt() -> str:
    return typer.Option(..., "--target", help="Target structure name (e.g. Profiles)")


def pattern_opt() -> str:
    return typer.Option("*.txt", "--pattern", help="Glob for snapshot files in a directory")


def checkpoint_dir_opt() -> Optional[str]:
    return typer.Option(None, "--checkpoint-dir", envvar="SNAPSYNC_CHECKPOINT_DIR")


def snapshot_dir_opt() -> Optional[str]:
    return typer.Option(None, "--snapshot-dir", envvar="SNAPSYNC_SNAPSHOT_DIR")


def _merger(tie_break: Optional[str]) -> SourceRecordMerger:
    s = get_settings()
    return SourceRecordMerger(
        key_index=s.KEY_INDEX,
        provenance_index=s.PROVENANCE_INDEX,
        tie_break=tie_break or s.TIE_BREAK,
    )


# ---------------------------
# Merge
# ---------------------------


@app.command("merge")
def merge(
    sources: List[Path] = typer.Argument(..., help="A directory, or snapshot files"),
    output: Path = typer.Option(..., "--output", "-o", help="Merged output file"),
    pattern: str = pattern_opt(),
    tie_break: Optional[str] = typer.Option(None, "--tie-break", help="first | last"),
):
    """Merge snapshot files into one record set plus a JSON report."""
    try:
        merger = _merger(tie_break)
        if len(sources) == 1 and sources[0].is_dir():
            result = merge_directory(sources[0], output, pattern=pattern, merger=merger)
        else:
            result = merge_files([load_source_file(p) for p in sources], output, merger=merger)
    except (SyncOperationalError, ValueError) as e:
        logger.error(f"Merge failed: {e}")
        sys.exit(1)
    typer.echo(
        json.dumps(
            {"output": str(output), "report": str(report_path_for(output)), **result.stats.model_dump()},
            indent=2,
        )
    )


@app.command("analyze")
def analyze(
    directory: Path = typer.Argument(..., help="Directory of snapshot files"),
    pattern: str = pattern_opt(),
    tie_break: Optional[str] = typer.Option(None, "--tie-break", help="first | last"),
):
    """Dry-run merge: statistics only, nothing written."""
    try:
        result = analyze_files(discover_source_files(directory, pattern), _merger(tie_break))
    except (SyncOperationalError, ValueError) as e:
        logger.error(f"Analyze failed: {e}")
        sys.exit(1)
    stats = result.stats
    typer.echo(
        json.dumps(
            {
                **stats.model_dump(),
                "compression_rate": round(stats.compression_rate, 4),
                "files": [f.name for f in result.files],
            },
            indent=2,
        )
    )


# ---------------------------
# Publish
# ---------------------------


@app.command("publish")
def publish(
    source: Path = typer.Argument(..., help="Merged tab-delimited file (header first)"),
    target: str = target_opt(),
    store: str = store_opt(),
    no_staging: bool = typer.Option(False, "--no-staging", help="Write directly into the target"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Publish only the first N records"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries"),
    rate_limit_ms: Optional[int] = typer.Option(None, "--rate-limit-ms"),
    checkpoint_dir: Optional[str] = checkpoint_dir_opt(),
    snapshot_dir: Optional[str] = snapshot_dir_opt(),
):
    """Publish a merged file into a target of a JSON store."""
    settings = get_settings()
    overrides = {}
    if no_staging:
        overrides["use_staging"] = False
    if max_retries is not None:
        overrides["max_retries"] = max_retries
    if rate_limit_ms is not None:
        overrides["rate_limit_delay_ms"] = rate_limit_ms

    publisher = ResilientPublisher(
        JsonFileStore(store),
        PublishConfig.from_settings(settings, **overrides),
        checkpoints=CheckpointStore(checkpoint_dir or settings.CHECKPOINT_DIR),
        snapshots=SnapshotManager(
            snapshot_dir or settings.SNAPSHOT_DIR, settings.SNAPSHOT_RETENTION_DAYS
        ),
    )
    try:
        result = asyncio.run(publisher.publish(read_rows(source), target, limit=limit))
    except SyncOperationalError as e:
        typer.echo(
            json.dumps(
                {
                    "ok": False,
                    "error": type(e).__name__,
                    "message": str(e),
                    "state": e.state,
                    "snapshot_path": str(e.snapshot_path) if e.snapshot_path else None,
                },
                indent=2,
            )
        )
        sys.exit(1)
    typer.echo(json.dumps({"ok": True, **result.model_dump(mode="json")}, indent=2))


@app.command("status")
def status(
    target: str = target_opt(),
    store: str = store_opt(),
    checkpoint_dir: Optional[str] = checkpoint_dir_opt(),
):
    """Show the resume checkpoint for a target, if any."""
    settings = get_settings()
    target_id = f"{JsonFileStore(store).container_id}/{target}"
    cp = CheckpointStore(checkpoint_dir or settings.CHECKPOINT_DIR).load(target_id)
    typer.echo(
        json.dumps(
            {"target_id": target_id, "checkpoint": cp.model_dump(mode="json") if cp else None},
            indent=2,
        )
    )


# ---------------------------
# Snapshots
# ---------------------------


@app.command("cleanup-snapshots")
def cleanup_snapshots(
    retention_days: Optional[float] = typer.Option(None, "--retention-days"),
    snapshot_dir: Optional[str] = snapshot_dir_opt(),
):
    """Delete unprotected snapshots older than the retention window."""
    settings = get_settings()
    manager = SnapshotManager(
        snapshot_dir or settings.SNAPSHOT_DIR,
        retention_days if retention_days is not None else settings.SNAPSHOT_RETENTION_DAYS,
    )
    deleted = manager.cleanup()
    typer.echo(json.dumps({"deleted": [p.name for p in deleted]}, indent=2))


@app.command("protect-snapshot")
def protect_snapshot(path: Path = typer.Argument(..., help="Snapshot file")):
    """Exempt a snapshot from retention cleanup."""
    try:
        SnapshotManager(path.parent).protect(path)
    except SyncOperationalError as e:
        logger.error(f"Cannot protect {path}: {e}")
        sys.exit(1)
    typer.echo(json.dumps({"protected": str(path)}, indent=2))


if __name__ == "__main__":
    app()
