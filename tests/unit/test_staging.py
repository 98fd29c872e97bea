"""
Unit tests for staging structures and the atomic cut-over.
"""

import pytest

from snapshot_sync.errors import StructuralFailure
from snapshot_sync.remote import MemoryStore
from snapshot_sync.staging import StagingCoordinator, is_staging_name


class FailingStructuralStore(MemoryStore):
    """Store whose structural batches always fail (after the first `allow` calls)."""

    def __init__(self, *args, allow: int = 0, **kwargs):
        super().__init__(*args, **kwargs)
        self._allow = allow

    async def batch_structural_update(self, ops):
        if self._allow <= 0:
            raise RuntimeError("503 backend error")
        self._allow -= 1
        return await super().batch_structural_update(ops)


def test_staging_names():
    assert is_staging_name("Profiles_temp_1700000000000", "Profiles")
    assert not is_staging_name("Profiles", "Profiles")
    assert not is_staging_name("Orders_temp_1", "Profiles")


@pytest.mark.asyncio
async def test_create_then_promote_replaces_original():
    store = MemoryStore("sheet-1", {"Profiles": [["old"]]})
    coordinator = StagingCoordinator(store, "Profiles")

    area = await coordinator.create()
    assert is_staging_name(area.name, "Profiles")
    await store.update_range(area.name, "A1", [["new"]])

    await coordinator.promote(area)

    assert store.names() == ["Profiles"]
    assert store.rows_of("Profiles") == [["new"]]


@pytest.mark.asyncio
async def test_promote_without_original_is_plain_rename():
    store = MemoryStore("sheet-1")
    coordinator = StagingCoordinator(store, "Profiles")
    area = await coordinator.create()
    await coordinator.promote(area)
    assert store.names() == ["Profiles"]


@pytest.mark.asyncio
async def test_failed_cut_over_leaves_both_structures():
    store = FailingStructuralStore("sheet-1", {"Profiles": [["old"]]}, allow=1)
    coordinator = StagingCoordinator(store, "Profiles")
    area = await coordinator.create()

    with pytest.raises(StructuralFailure):
        await coordinator.promote(area)

    assert sorted(store.names()) == sorted(["Profiles", area.name])
    assert store.rows_of("Profiles") == [["old"]]


@pytest.mark.asyncio
async def test_create_failure_is_structural():
    coordinator = StagingCoordinator(FailingStructuralStore("sheet-1"), "Profiles")
    with pytest.raises(StructuralFailure):
        await coordinator.create()


@pytest.mark.asyncio
async def test_cleanup_orphans_keeps_requested():
    store = MemoryStore(
        "sheet-1",
        {
            "Profiles": [["1"]],
            "Profiles_temp_1": [],
            "Profiles_temp_2": [],
            "Orders_temp_3": [],
        },
    )
    removed = await StagingCoordinator(store, "Profiles").cleanup_orphans(keep=["Profiles_temp_2"])

    assert removed == ["Profiles_temp_1"]
    assert sorted(store.names()) == ["Orders_temp_3", "Profiles", "Profiles_temp_2"]


@pytest.mark.asyncio
async def test_cleanup_orphans_is_best_effort():
    store = FailingStructuralStore("sheet-1", {"Profiles_temp_1": []})
    assert await StagingCoordinator(store, "Profiles").cleanup_orphans() == []
    assert store.names() == ["Profiles_temp_1"]


@pytest.mark.asyncio
async def test_adopt_and_discard():
    store = MemoryStore("sheet-1", {"Profiles_temp_5": [["partial"]]})
    coordinator = StagingCoordinator(store, "Profiles")

    assert await coordinator.adopt("Profiles_temp_9") is None
    area = await coordinator.adopt("Profiles_temp_5")
    assert area.structure_id

    assert await coordinator.discard(area) is True
    assert store.names() == []


@pytest.mark.asyncio
async def test_ensure_target_creates_missing():
    store = MemoryStore("sheet-1")
    coordinator = StagingCoordinator(store, "Profiles")
    created = await coordinator.ensure_target()
    again = await coordinator.ensure_target()
    assert created.id == again.id
    assert store.names() == ["Profiles"]
