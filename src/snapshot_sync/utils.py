"""
Utility functions for snapshot sync.

Includes time helpers, payload sizing, fingerprinting, retry delays and
atomic JSON file writes.
"""

import hashlib
import json
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Sequence


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(utc_now().timestamp() * 1000)


def iso_now() -> str:
    return utc_now().isoformat()


def row_payload_bytes(row: Any) -> int:
    """Serialized size of a row the way it goes over the wire (compact JSON, UTF-8)."""
    return len(json.dumps(row, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))


def fingerprint_rows(rows: Sequence[Sequence[str]]) -> str:
    """
    Stable SHA-256 over a row set.

    Used to make sure a checkpoint is only resumed against the same data it was
    written for.
    """
    h = hashlib.sha256()
    for row in rows:
        h.update("\t".join(row).encode("utf-8"))
        h.update(b"\n")
    return h.hexdigest()


def even_stride_indices(total: int, count: int) -> List[int]:
    """`count` indices spread evenly across `range(total)`."""
    count = min(count, total)
    if count <= 0:
        return []
    return [(i * total) // count for i in range(count)]


def calculate_retry_delay(attempt: int, base_delay_ms: int = 5000) -> float:
    """
    Exponential backoff delay for a failed attempt.

    Args:
        attempt: Failed attempt number (1-based)
        base_delay_ms: Delay after the first failure

    Returns:
        Delay in seconds: base * 2^(attempt-1)
    """
    attempt = max(1, attempt)
    return (base_delay_ms * (2 ** (attempt - 1))) / 1000.0


_SAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(val: str, default: str = "target") -> str:
    """Make a string usable as a file name component."""
    if not val:
        return default
    return _SAFE.sub("_", val).strip("_") or default


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON through a temp file and `os.replace`, so readers never see a torn file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)
