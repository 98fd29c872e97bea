"""
Snapshot Sync

Merges many tab-delimited snapshot files into one deduplicated, newest-wins
record set and publishes it into a remote tabular store with adaptive batches,
resumable checkpoints, a staged cut-over and snapshot rollback.

Usage:
    from snapshot_sync import SourceRecordMerger, ResilientPublisher, discover_source_files

    result = SourceRecordMerger().merge(discover_source_files("data/txt-backup"))

    publisher = ResilientPublisher(store)
    await publisher.publish(result, "Profiles")
"""

from .batch import BatchConfig, BatchPlan, plan_batch
from .checkpoint import CheckpointStore
from .merge import (
    SourceRecordMerger,
    discover_source_files,
    load_source_file,
    merge_directory,
    merge_files,
)
from .models import Checkpoint, MergedRecord, MergeResult, PublishResult, Snapshot
from .publisher import PublishConfig, PublishState, ResilientPublisher
from .remote import JsonFileStore, MemoryStore, RemoteStore
from .snapshot import SnapshotManager
from .staging import StagingCoordinator
from .timestamps import extract_timestamp

__version__ = "1.0.0"
__all__ = [
    "BatchConfig",
    "BatchPlan",
    "plan_batch",
    "CheckpointStore",
    "SourceRecordMerger",
    "discover_source_files",
    "load_source_file",
    "merge_directory",
    "merge_files",
    "Checkpoint",
    "MergedRecord",
    "MergeResult",
    "PublishResult",
    "Snapshot",
    "PublishConfig",
    "PublishState",
    "ResilientPublisher",
    "JsonFileStore",
    "MemoryStore",
    "RemoteStore",
    "SnapshotManager",
    "StagingCoordinator",
    "extract_timestamp",
]
