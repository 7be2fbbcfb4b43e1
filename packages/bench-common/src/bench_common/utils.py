"""
Shared utility functions for ASR Bench Lab.

Contains general-purpose helpers used across packages: timestamp
formatting, identifier generation and cache-key building.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from urllib.parse import quote


def utc_now() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with milliseconds."""
    return utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z")


def epoch_ms() -> int:
    """Milliseconds since the Unix epoch."""
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    """Return ``{prefix}-{epoch_ms}-{6 hex chars}``."""
    return f"{prefix}-{epoch_ms()}-{uuid.uuid4().hex[:6]}"


def cache_key(prefix: str, *parts: object) -> str:
    """Build a cache key from URL-quoted *parts* joined with ``::``."""
    return prefix + "::".join(quote(str(part), safe="") for part in parts)
