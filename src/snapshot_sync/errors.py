"""
Custom exceptions for the snapshot sync engine.

Provides structured error handling for the publish pipeline: what is retried,
what shrinks the batch, and what ends a run.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional


class SyncOperationalError(Exception):
    """Base operational error for snapshot sync."""

    def __init__(
        self,
        message: str = "",
        *,
        snapshot_path: Optional[Path] = None,
        state: Optional[str] = None,
    ):
        super().__init__(message)
        self.snapshot_path = snapshot_path
        self.state = state


class RetryableError(SyncOperationalError):
    """Temporary errors that should be retried on the same row range."""

    pass


class TransientOverload(RetryableError):
    """Store capacity signal (5xx / throttling). The batch must shrink."""

    pass


class TransientNetwork(RetryableError):
    """Timeouts and connection resets."""

    pass


class InlineCountMismatch(RetryableError):
    """Write response reported a different row count than was sent."""

    def __init__(self, sent: int, written: int):
        super().__init__(f"row count mismatch: sent {sent}, written {written}")
        self.sent = sent
        self.written = written


class ValidationFailure(SyncOperationalError):
    """Post-upload count or sample mismatch. Never retried."""

    pass


class StructuralFailure(SyncOperationalError):
    """Staging creation, cut-over or structure listing failed."""

    pass


class ExhaustedRetries(SyncOperationalError):
    """Retries used up on a batch. A checkpoint was persisted."""

    def __init__(self, message: str, *, rows_processed: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.rows_processed = rows_processed


class SnapshotError(SyncOperationalError):
    """Capturing or restoring a snapshot failed."""

    pass


class PublishInProgress(SyncOperationalError):
    """A publish run is already active on this publisher."""

    pass


class MergeError(SyncOperationalError):
    """No usable source files, or a source file could not be read."""

    pass


_OVERLOAD_CODES = ("500", "502", "503", "504")
_THROTTLE_CODES = ("429",)
# Only an explicit "HTTP <code>" or "<code> <reason phrase>" counts as a status.
_STATUS_RE = re.compile(
    r"\bhttp(?:/[\d.]+)?\s*(\d{3})\b"
    r"|\b(\d{3})\s+(?:too many requests|internal server error|bad gateway"
    r"|service unavailable|gateway time-?out)\b"
)
_OVERLOAD_HINTS = ("overload", "backend error", "server error")
_NETWORK_HINTS = (
    "timeout",
    "timed out",
    "reset",
    "connection",
    "unavailable",
    "temporar",
    "rate limit",
    "quota",
    "too many requests",
)


def _status_of(e: Exception, text: str) -> Optional[str]:
    status = getattr(e, "status_code", None) or getattr(e, "status", None)
    if status is not None:
        return str(status)
    m = _STATUS_RE.search(text)
    if m:
        return m.group(1) or m.group(2)
    return None


def map_store_error(e: Exception) -> SyncOperationalError:
    """Classify a raw store exception into the sync error taxonomy.

    Capacity signals (5xx) become TransientOverload so the batch shrinks.
    Throttling (429, quota, rate limit) becomes TransientNetwork so the
    batch keeps its size and only backs off.
    """
    if isinstance(e, SyncOperationalError):
        return e

    text = str(e).lower()
    status = _status_of(e, text)

    if status in _THROTTLE_CODES:
        return TransientNetwork(str(e))
    if status in _OVERLOAD_CODES or any(h in text for h in _OVERLOAD_HINTS):
        return TransientOverload(str(e))
    if isinstance(e, (TimeoutError, ConnectionError)):
        return TransientNetwork(str(e))
    if any(h in text for h in _NETWORK_HINTS):
        return TransientNetwork(str(e))
    return SyncOperationalError(str(e))
