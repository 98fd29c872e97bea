"""
File-based checkpoint store.

One JSON file per publish target identity. A checkpoint always describes a
fully committed prefix of the upload: it is written only after a batch has been
written and its row count confirmed, and removed only when the run commits.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Union

from loguru import logger
from pydantic import ValidationError

from .models import Checkpoint
from .utils import atomic_write_json, iso_now, safe_name


class CheckpointStore:
    """
    Durable resume markers, keyed by target id.

    Example:
        store = CheckpointStore("checkpoints")
        cp = store.load("sheet-123/Profiles")
        if cp:
            start = cp.rows_processed
    """

    def __init__(self, directory: Union[str, Path] = "checkpoints"):
        self.directory = Path(directory)

    def path_for(self, target_id: str) -> Path:
        return self.directory / f"checkpoint_{safe_name(target_id)}.json"

    def load(self, target_id: str) -> Optional[Checkpoint]:
        """Checkpoint for `target_id`, or None (absent or unreadable means start fresh)."""
        path = self.path_for(target_id)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                cp = Checkpoint.model_validate(json.load(f))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable checkpoint {path}: {e}")
            return None
        if cp.target_id != target_id:
            logger.warning(f"Checkpoint {path} belongs to {cp.target_id}, ignoring")
            return None
        return cp

    def save(self, checkpoint: Checkpoint) -> Path:
        checkpoint.saved_at = iso_now()
        path = self.path_for(checkpoint.target_id)
        atomic_write_json(path, checkpoint.model_dump(mode="json"))
        logger.debug(
            f"Checkpoint saved: {checkpoint.target_id} rows={checkpoint.rows_processed} "
            f"batch={checkpoint.batch_index} size={checkpoint.current_batch_size}"
        )
        return path

    def delete(self, target_id: str) -> bool:
        """Remove the checkpoint. Returns True if a file was deleted."""
        path = self.path_for(target_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug(f"Checkpoint deleted: {path}")
        return True

    def exists(self, target_id: str) -> bool:
        return self.path_for(target_id).exists()
