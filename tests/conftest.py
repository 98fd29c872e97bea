"""
Pytest configuration and fixtures for snapshot-sync.

Provides cross-platform event loop configuration, row/file builders and a
publisher factory wired to temp directories and a recording sleep.
"""

import asyncio
import sys

import pytest

from snapshot_sync.checkpoint import CheckpointStore
from snapshot_sync.publisher import PublishConfig, ResilientPublisher
from snapshot_sync.snapshot import SnapshotManager

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


HEADER = ["name", "id"] + [f"f{i}" for i in range(2, 23)] + ["source"]


@pytest.fixture
def header():
    return list(HEADER)


@pytest.fixture
def make_rows():
    """Build a header plus `n` 24-field profile rows with ids 1000.. (and optional tag)."""

    def _make(n: int, tag: str = "v1"):
        rows = [list(HEADER)]
        for i in range(n):
            rows.append([f"user{i}", str(1000 + i)] + [f"{tag}-{i}-{c}" for c in range(2, 23)] + [""])
        return rows

    return _make


@pytest.fixture
def write_snapshot_file(tmp_path):
    """Write a tab-delimited snapshot file into tmp_path/src and return its path."""
    src = tmp_path / "src"
    src.mkdir(exist_ok=True)

    def _write(name: str, rows):
        path = src / name
        path.write_text("".join("\t".join(r) + "\n" for r in rows), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def recorded_sleep():
    """Awaitable sleep that returns immediately and records requested delays."""
    calls = []

    async def _sleep(seconds: float) -> None:
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep


@pytest.fixture
def small_config():
    """Batches of 10 rows (floor 2), fast checkpoints, rate limit 1s, backoff 1s base."""
    return PublishConfig(
        min_batch_size=2,
        max_batch_size=10,
        max_retries=3,
        retry_delay_ms=1000,
        rate_limit_delay_ms=1000,
        checkpoint_every=1,
        checkpoint_min_batches=0,
    )


@pytest.fixture
def make_publisher(tmp_path, recorded_sleep, small_config):
    """ResilientPublisher factory using tmp dirs and the recording sleep."""

    def _make(store, config=None, **kwargs):
        return ResilientPublisher(
            store,
            config or small_config,
            checkpoints=kwargs.pop("checkpoints", CheckpointStore(tmp_path / "checkpoints")),
            snapshots=kwargs.pop("snapshots", SnapshotManager(tmp_path / "snapshots")),
            sleep=kwargs.pop("sleep", recorded_sleep),
            **kwargs,
        )

    return _make
