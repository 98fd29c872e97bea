"""
Pre-publish snapshots of remote content.

A snapshot is captured once per run before anything is mutated, kept on disk
for a retention window, and replayed into the target when a direct (non-staged)
run has to roll back. It is also the manual recovery path an operator gets
with every fatal publish error.
"""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from loguru import logger

from .batch import BatchConfig, iter_batches, plan_batch
from .errors import SnapshotError
from .models import Snapshot
from .remote import RemoteStore, anchor
from .utils import atomic_write_json, iso_now, safe_name

PROTECTED_MARKER = ".protectedfolder"
PROTECTED_NAME_HINTS = (".protected.", "DO_NOT_DELETE")
PROTECTED_DIR_HINTS = ("backup_completed",)

Sleep = Callable[[float], Awaitable[None]]


class SnapshotManager:
    def __init__(self, directory: Union[str, Path] = "backups/snapshots", retention_days: float = 7):
        self.directory = Path(directory)
        self.retention_days = retention_days

    # --------------------------- capture / load

    async def capture(
        self, store: RemoteStore, target: str, column_span: str = "A:Z"
    ) -> Tuple[Snapshot, Path]:
        """Read the whole target and write it to a new snapshot file."""
        target_id = f"{store.container_id}/{target}"
        try:
            names = [s.name for s in await store.list_structures()]
            rows = await store.get_range(target, column_span) if target in names else []
        except Exception as e:
            raise SnapshotError(f"snapshot capture failed for {target_id}: {e}") from e

        captured_at = iso_now()
        snap = Snapshot(
            target_id=target_id, captured_at=captured_at, row_count=len(rows), rows=rows
        )
        stamp = captured_at.replace(":", "-").replace(".", "-").replace("+", "_")
        path = self.directory / f"snapshot_{safe_name(target)}_{stamp}.json"
        try:
            atomic_write_json(path, snap.model_dump(mode="json"))
        except OSError as e:
            raise SnapshotError(f"cannot write snapshot {path}: {e}") from e
        logger.success(f"Snapshot captured: {target_id} ({len(rows)} rows) → {path}")
        return snap, path

    def load(self, path: Union[str, Path]) -> Snapshot:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return Snapshot.model_validate(json.load(f))
        except (OSError, ValueError) as e:
            raise SnapshotError(f"cannot load snapshot {path}: {e}") from e

    def list_snapshots(self, target: Optional[str] = None) -> List[Path]:
        """Snapshot files, oldest first (names sort by capture time)."""
        if not self.directory.is_dir():
            return []
        prefix = f"snapshot_{safe_name(target)}_" if target else "snapshot_"
        return sorted(
            p for p in self.directory.glob("snapshot_*.json") if p.name.startswith(prefix)
        )

    def latest(self, target: str) -> Optional[Path]:
        found = self.list_snapshots(target)
        return found[-1] if found else None

    # --------------------------- restore

    async def restore(
        self,
        store: RemoteStore,
        target: str,
        snapshot: Snapshot,
        *,
        column_span: str = "A:Z",
        batch_config: Optional[BatchConfig] = None,
        rate_limit_delay: float = 0.0,
        sleep: Sleep = asyncio.sleep,
    ) -> int:
        """Clear the target and replay the snapshot rows, batched like a forward upload."""
        logger.warning(f"Restoring {snapshot.row_count} rows into {target} from snapshot")
        try:
            await store.clear_range(target, column_span)
            if not snapshot.rows:
                return 0
            plan = plan_batch(snapshot.rows, batch_config)
            written = 0
            for offset, batch in iter_batches(snapshot.rows, plan.batch_size):
                if offset:
                    await sleep(rate_limit_delay)
                result = await store.update_range(target, anchor(offset), batch)
                written += result.updated_rows
        except Exception as e:
            raise SnapshotError(f"snapshot restore into {target} failed: {e}") from e
        logger.success(f"Restored {written} rows into {target}")
        return written

    # --------------------------- retention

    def is_protected(self, path: Union[str, Path]) -> bool:
        p = Path(path)
        if any(h in p.name for h in PROTECTED_NAME_HINTS):
            return True
        if any(h in part for part in p.parent.parts for h in PROTECTED_DIR_HINTS):
            return True
        if (p.parent / PROTECTED_MARKER).exists():
            return True
        try:
            with open(p, "r", encoding="utf-8") as f:
                return bool(json.load(f).get("protected", False))
        except (OSError, ValueError):
            return False

    def protect(self, path: Union[str, Path]) -> Path:
        """Exempt a snapshot from retention cleanup."""
        snap = self.load(path)
        snap.protected = True
        atomic_write_json(Path(path), snap.model_dump(mode="json"))
        logger.info(f"Snapshot protected: {path}")
        return Path(path)

    def cleanup(self, now: Optional[float] = None) -> List[Path]:
        """Delete unprotected snapshots older than the retention window."""
        now = time.time() if now is None else now
        max_age = self.retention_days * 24 * 60 * 60
        deleted: List[Path] = []
        for path in self.list_snapshots():
            if self.is_protected(path):
                logger.info(f"Skipping protected snapshot {path.name}")
                continue
            try:
                if now - path.stat().st_mtime > max_age:
                    path.unlink()
                    deleted.append(path)
                    logger.info(f"Deleted expired snapshot {path.name}")
            except OSError as e:
                logger.warning(f"Could not remove snapshot {path.name}: {e}")
        return deleted
