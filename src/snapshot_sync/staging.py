"""
Staging targets and the atomic cut-over.

Uploads go to a disposable `<target>_temp_<epoch ms>` structure. Once it is
complete and validated, one structural call deletes the original and renames
the staging structure over it, so the target name never resolves to zero or
two structures.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from loguru import logger

from .errors import StructuralFailure
from .models import StagingArea
from .remote import AddStructure, DeleteStructure, RemoteStore, RenameStructure, Structure
from .utils import now_ms

STAGING_INFIX = "_temp_"


def staging_prefix(base_name: str) -> str:
    return f"{base_name}{STAGING_INFIX}"


def is_staging_name(name: str, base_name: str) -> bool:
    return name.startswith(staging_prefix(base_name))


class StagingCoordinator:
    """Creates, promotes and discards staging structures for one target."""

    def __init__(self, store: RemoteStore, base_name: str):
        self.store = store
        self.base_name = base_name

    async def _structures(self) -> List[Structure]:
        return await self.store.list_structures()

    async def find(self, name: str) -> Optional[Structure]:
        for s in await self._structures():
            if s.name == name:
                return s
        return None

    async def cleanup_orphans(self, keep: Iterable[str] = ()) -> List[str]:
        """
        Delete staging structures left behind by a crashed run.

        Best-effort: a failure here is logged and the run carries on.
        """
        keep = set(keep)
        try:
            orphans = [
                s
                for s in await self._structures()
                if is_staging_name(s.name, self.base_name) and s.name not in keep
            ]
            if not orphans:
                return []
            logger.warning(f"Found {len(orphans)} orphaned staging structures for {self.base_name}")
            await self.store.batch_structural_update(
                [DeleteStructure(structure_id=s.id) for s in orphans]
            )
        except Exception as e:
            logger.warning(f"Orphan staging cleanup failed (ignored): {e}")
            return []
        names = [s.name for s in orphans]
        logger.info(f"Removed orphaned staging structures: {', '.join(names)}")
        return names

    async def create(self) -> StagingArea:
        name = f"{staging_prefix(self.base_name)}{now_ms()}"
        try:
            replies = await self.store.batch_structural_update([AddStructure(name=name)])
        except Exception as e:
            raise StructuralFailure(f"could not create staging structure {name}: {e}") from e
        created = replies[0] if replies else None
        if created is None:
            created = await self.find(name)
        if created is None:
            raise StructuralFailure(f"staging structure {name} missing after creation")
        logger.info(f"Staging structure created: {name}")
        return StagingArea(name=name, structure_id=created.id, base_name=self.base_name)

    async def adopt(self, name: str) -> Optional[StagingArea]:
        """Reattach to an existing staging structure (resume), if it still exists."""
        found = await self.find(name)
        if found is None:
            return None
        return StagingArea(name=found.name, structure_id=found.id, base_name=self.base_name)

    async def ensure_target(self) -> Structure:
        """The base target, created empty if it does not exist yet."""
        found = await self.find(self.base_name)
        if found is not None:
            return found
        try:
            replies = await self.store.batch_structural_update([AddStructure(name=self.base_name)])
        except Exception as e:
            raise StructuralFailure(f"could not create target {self.base_name}: {e}") from e
        logger.info(f"Created missing target {self.base_name}")
        return replies[0] or await self.find(self.base_name)

    async def promote(self, area: StagingArea) -> None:
        """Replace the original with the staging structure in one structural call."""
        structures = await self._structures()
        original = next((s for s in structures if s.name == self.base_name), None)
        staged = next((s for s in structures if s.id == area.structure_id), None)
        if staged is None:
            raise StructuralFailure(f"staging structure {area.name} not found for cut-over")

        ops = []
        if original is not None:
            ops.append(DeleteStructure(structure_id=original.id))
        ops.append(RenameStructure(structure_id=staged.id, name=self.base_name))
        try:
            await self.store.batch_structural_update(ops)
        except Exception as e:
            raise StructuralFailure(f"cut-over of {area.name} → {self.base_name} failed: {e}") from e
        logger.success(f"Cut-over complete: {area.name} → {self.base_name}")

    async def discard(self, area: StagingArea) -> bool:
        """Drop the staging structure; the original was never touched. Best-effort."""
        try:
            await self.store.batch_structural_update([DeleteStructure(structure_id=area.structure_id)])
        except Exception as e:
            logger.warning(f"Could not discard staging structure {area.name}: {e}")
            return False
        logger.info(f"Staging structure discarded: {area.name}")
        return True
