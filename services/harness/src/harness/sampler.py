"""
Seeded row sampler for ASR Bench Lab.

Reproducible selection of distinct dataset row offsets. A seed string is
hashed with 32-bit FNV-1a over its UTF-16 code units and feeds a
Mulberry32 generator, so the same seed draws the same rows as the
browser harness did. Without a seed the draw is non-deterministic.

Offsets are drawn with replacement and collisions are re-drawn, bounded
by ``min(3 * total, total + 20 * wanted)`` attempts so the loop always
terminates even when ``wanted`` approaches ``total``.
"""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

logger = structlog.get_logger()

_MASK32 = 0xFFFFFFFF
_FNV_OFFSET = 2166136261
_FNV_PRIME = 16777619


def _imul(a: int, b: int) -> int:
    """32-bit wrapping multiply."""
    return (a * b) & _MASK32


def hash_seed(seed: Any) -> int | None:
    """FNV-1a hash of ``str(seed)`` over UTF-16 code units.

    Returns:
        An unsigned 32-bit integer, or ``None`` for an absent/empty seed.
    """
    if seed is None or seed == "":
        return None
    data = str(seed).encode("utf-16-le", "surrogatepass")
    h = _FNV_OFFSET
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = _imul(h, _FNV_PRIME)
    return h


class Mulberry32:
    """Mulberry32 PRNG producing floats in ``[0, 1)``.

    Args:
        seed: Unsigned 32-bit seed.
    """

    def __init__(self, seed: int) -> None:
        self._state = seed & _MASK32

    def __call__(self) -> float:
        self._state = (self._state + 0x6D2B79F5) & _MASK32
        t = self._state
        x = _imul(t ^ (t >> 15), t | 1)
        x ^= (x + _imul(x ^ (x >> 7), x | 61)) & _MASK32
        return ((x ^ (x >> 14)) & _MASK32) / 4294967296


def make_rng(seed: Any) -> tuple[Callable[[], float], int | None]:
    """Return ``(rand, seed_used)`` for *seed* (system randomness when absent)."""
    seed_used = hash_seed(seed)
    if seed_used is None:
        return random.random, None
    return Mulberry32(seed_used), seed_used


def max_attempts(total: int, wanted: int) -> int:
    return min(total * 3, total + wanted * 20)


def _bounds(total: int, wanted: int) -> tuple[int, int]:
    total = max(0, int(total))
    wanted = min(max(1, int(wanted)), total)
    return total, wanted


@dataclass(frozen=True)
class SampleDraw:
    """Distinct offsets in draw order."""

    indices: list[int]
    seed_used: int | None
    attempts: int


def sample_indices(total: int, wanted: int, seed: Any = None) -> SampleDraw:
    """Draw up to *wanted* distinct offsets in ``[0, total)``.

    Args:
        total: Number of rows available. An empty or negative total
            yields an empty draw.
        wanted: Number of offsets requested (clamped to ``[1, total]``).
        seed: Seed string; ``None`` or ``""`` draws non-deterministically.

    Returns:
        A :class:`SampleDraw`. Fewer than *wanted* indices are returned
        only when the attempt budget runs out.
    """
    total, wanted = _bounds(total, wanted)
    rand, seed_used = make_rng(seed)
    budget = max_attempts(total, wanted)
    seen: set[int] = set()
    indices: list[int] = []
    attempts = 0
    while len(indices) < wanted and attempts < budget and len(seen) < total:
        attempts += 1
        offset = int(rand() * total)
        if offset in seen:
            continue
        seen.add(offset)
        indices.append(offset)
    return SampleDraw(indices=indices, seed_used=seed_used, attempts=attempts)


@dataclass
class RowDraw:
    """Rows fetched for a random draw, with the shortfall report."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    offsets: list[int] = field(default_factory=list)
    failed_offsets: list[int] = field(default_factory=list)
    total_rows: int = 0
    seed_used: int | None = None
    requested_count: int = 0
    attempts: int = 0

    @property
    def shortfall(self) -> int:
        return self.requested_count - len(self.rows)


async def draw_rows(
    fetch_row: Callable[[int], Awaitable[dict[str, Any] | None]],
    total: int,
    wanted: int,
    seed: Any = None,
) -> RowDraw:
    """Fetch one row per drawn offset until *wanted* rows arrive.

    Offsets whose fetch raises or returns nothing are recorded in
    ``failed_offsets`` and another offset is drawn, within the same
    attempt budget as :func:`sample_indices`.

    Args:
        fetch_row: Coroutine returning the row at an offset (or ``None``).
        total: Number of rows in the split.
        wanted: Number of rows requested.
        seed: Seed string.

    Returns:
        A :class:`RowDraw`.
    """
    total, wanted = _bounds(total, wanted)
    rand, seed_used = make_rng(seed)
    budget = max_attempts(total, wanted)
    result = RowDraw(total_rows=total, seed_used=seed_used, requested_count=wanted)
    seen: set[int] = set()

    while len(result.rows) < wanted and result.attempts < budget and len(seen) < total:
        result.attempts += 1
        offset = int(rand() * total)
        if offset in seen:
            continue
        seen.add(offset)
        try:
            row = await fetch_row(offset)
        except Exception as exc:  # noqa: BLE001
            logger.warning("sample_row_fetch_failed", offset=offset, error=str(exc))
            result.failed_offsets.append(offset)
            continue
        if not row:
            result.failed_offsets.append(offset)
            continue
        result.rows.append(row)
        result.offsets.append(offset)

    if result.shortfall:
        logger.warning(
            "sample_draw_shortfall",
            requested=wanted,
            fetched=len(result.rows),
            failed=len(result.failed_offsets),
        )
    return result
