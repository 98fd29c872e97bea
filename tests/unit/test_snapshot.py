"""
Unit tests for snapshot capture, restore and retention.
"""

import os
import time

import pytest

from snapshot_sync.batch import BatchConfig
from snapshot_sync.errors import SnapshotError
from snapshot_sync.remote import MemoryStore
from snapshot_sync.snapshot import PROTECTED_MARKER, SnapshotManager


@pytest.fixture
def manager(tmp_path):
    return SnapshotManager(tmp_path / "snapshots", retention_days=7)


@pytest.mark.asyncio
async def test_capture_reads_full_target(manager):
    store = MemoryStore("sheet-1", {"Profiles": [["id", "name"], ["1", "a"], ["2", "b"]]})
    snap, path = await manager.capture(store, "Profiles")

    assert path.exists()
    assert path.name.startswith("snapshot_Profiles_")
    assert snap.target_id == "sheet-1/Profiles"
    assert snap.row_count == 3
    assert manager.load(path).rows == [["id", "name"], ["1", "a"], ["2", "b"]]


@pytest.mark.asyncio
async def test_capture_of_missing_target_is_empty(manager):
    snap, _ = await manager.capture(MemoryStore(), "Profiles")
    assert snap.row_count == 0
    assert snap.rows == []


@pytest.mark.asyncio
async def test_capture_failure_raises(manager):
    class BrokenStore(MemoryStore):
        async def list_structures(self):
            raise ConnectionError("reset by peer")

    with pytest.raises(SnapshotError):
        await manager.capture(BrokenStore(), "Profiles")
    assert manager.list_snapshots() == []


@pytest.mark.asyncio
async def test_restore_replaces_content_in_batches(manager, recorded_sleep):
    original = [["id"]] + [[str(i)] for i in range(25)]
    store = MemoryStore("sheet-1", {"Profiles": original})
    snap, _ = await manager.capture(store, "Profiles")

    await store.clear_range("Profiles", "A:Z")
    await store.update_range("Profiles", "A1", [["garbage"]] * 40)

    written = await manager.restore(
        store,
        "Profiles",
        snap,
        batch_config=BatchConfig(min_batch_size=2, max_batch_size=10),
        rate_limit_delay=0.5,
        sleep=recorded_sleep,
    )

    assert written == 26
    assert store.rows_of("Profiles") == original
    assert recorded_sleep.calls == [0.5, 0.5]  # 3 batches, pause between them


class TestRetention:
    def _age(self, path, days):
        old = time.time() - days * 86400
        os.utime(path, (old, old))

    @pytest.mark.asyncio
    async def test_cleanup_deletes_only_expired_unprotected(self, manager):
        store = MemoryStore("sheet-1", {"Profiles": [["1"]]})
        _, fresh = await manager.capture(store, "Profiles")
        _, expired = await manager.capture(store, "Orders")
        _, kept = await manager.capture(store, "Accounts")
        self._age(expired, 8)
        self._age(kept, 30)
        manager.protect(kept)
        self._age(kept, 30)

        deleted = manager.cleanup()

        assert deleted == [expired]
        assert fresh.exists() and kept.exists()

    def test_name_and_marker_protection(self, manager, tmp_path):
        manager.directory.mkdir(parents=True)
        named = manager.directory / "snapshot_x.protected.json"
        named.write_text("{}", encoding="utf-8")
        assert manager.is_protected(named)

        locked = tmp_path / "locked"
        locked.mkdir()
        (locked / PROTECTED_MARKER).write_text("", encoding="utf-8")
        assert manager.is_protected(locked / "snapshot_y.json")

        plain = manager.directory / "snapshot_z.json"
        plain.write_text('{"protected": false}', encoding="utf-8")
        assert not manager.is_protected(plain)

    @pytest.mark.asyncio
    async def test_list_and_latest(self, manager):
        store = MemoryStore("sheet-1", {"Profiles": [["1"]]})
        _, first = await manager.capture(store, "Profiles")
        time.sleep(0.002)
        _, second = await manager.capture(store, "Profiles")
        await manager.capture(store, "Orders")

        assert manager.list_snapshots("Profiles") == [first, second]
        assert manager.latest("Profiles") == second
        assert manager.latest("Missing") is None
