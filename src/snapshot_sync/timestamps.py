"""
Ordering keys from snapshot file names.

Snapshot files and provenance markers carry their capture time in the name, in
one of three shapes:

    profiles_2025_09_10_16_13_00_status.txt     underscore, full precision
    backup_2025_09_10.txt / x_2025_09_10_16_13  underscore, date with optional HH_MM
    merged_2025-09-10T16-13-00.txt              ISO-like, possibly repeated

Times are interpreted as UTC and returned as epoch milliseconds.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional

_STRICT = re.compile(r"(\d{4})_(\d{2})_(\d{2})_(\d{2})_(\d{2})_(\d{2})")
_LOOSE = re.compile(r"(\d{4})_(\d{2})_(\d{2})(?:_(\d{2})_(\d{2}))?")
_ISO = re.compile(r"(\d{4})-(\d{2})-(\d{2})T(\d{2})-(\d{2})-(\d{2})")


def _to_ms(*parts: Optional[str]) -> Optional[int]:
    values = [int(p) if p else 0 for p in parts]
    while len(values) < 6:
        values.append(0)
    try:
        dt = datetime(*values, tzinfo=timezone.utc)
    except ValueError:
        return None
    return int(dt.timestamp() * 1000)


def _first_valid(pattern: re.Pattern, text: str) -> Optional[int]:
    for match in pattern.finditer(text):
        ms = _to_ms(*match.groups())
        if ms is not None:
            return ms
    return None


def extract_timestamp(text: Any) -> Optional[int]:
    """
    Derive an ordering instant from a file name or provenance marker.

    Returns epoch milliseconds, or None when nothing usable is found (callers
    fall back to the file modification time). Never raises.
    """
    if not isinstance(text, str) or not text:
        return None

    ms = _first_valid(_STRICT, text)
    if ms is not None:
        return ms

    ms = _first_valid(_LOOSE, text)
    if ms is not None:
        return ms

    iso = [_to_ms(*m.groups()) for m in _ISO.finditer(text)]
    iso = [v for v in iso if v is not None]
    if iso:
        return max(iso)
    return None


def format_timestamp(ms: Optional[int]) -> Optional[str]:
    """Render epoch ms as ISO-8601 UTC."""
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat()
