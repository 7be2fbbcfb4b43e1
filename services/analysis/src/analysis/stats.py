"""
Numeric and text statistics kernel for ASR Bench Lab.

Pure functions over sequences of numbers: central tendency, nearest-rank
percentiles, sample standard deviation, ordinary least squares with R²,
fixed-width histograms, and Levenshtein-based text similarity over
normalized transcriptions. Callers filter ``None``/NaN before calling
the numeric helpers; :func:`finite_values` does that filtering.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

_NON_WORD = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")


def safe_number(value: Any) -> float | None:
    """Return *value* as a finite float, or ``None``."""
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def finite_values(values: Iterable[Any]) -> list[float]:
    """Keep only the finite numbers of *values*, in order."""
    out: list[float] = []
    for value in values:
        num = safe_number(value)
        if num is not None:
            out.append(num)
    return out


# ── central tendency / dispersion ──


def mean(values: Sequence[float]) -> float | None:
    if not values:
        return None
    return math.fsum(values) / len(values)


def median(values: Sequence[float]) -> float | None:
    if not values:
        return None
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def percentile(values: Sequence[float], p: float) -> float | None:
    """Nearest-rank percentile: ``sorted[ceil(p/100 * n) - 1]`` clamped to range."""
    if not values:
        return None
    ordered = sorted(values)
    index = math.ceil((p / 100.0) * len(ordered)) - 1
    index = min(len(ordered) - 1, max(0, index))
    return ordered[index]


def stddev(values: Sequence[float]) -> float | None:
    """Sample (n-1) standard deviation; 0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    avg = math.fsum(values) / len(values)
    variance = math.fsum((v - avg) ** 2 for v in values) / (len(values) - 1)
    return math.sqrt(variance)


@dataclass(frozen=True)
class Summary:
    """Distribution summary of one metric."""

    count: int = 0
    min: float | None = None
    max: float | None = None
    mean: float | None = None
    median: float | None = None
    p90: float | None = None
    stddev: float | None = None


def summarize(values: Iterable[Any]) -> Summary:
    """Summarize the finite values of *values* (empty summary if none)."""
    numeric = finite_values(values)
    if not numeric:
        return Summary()
    return Summary(
        count=len(numeric),
        min=min(numeric),
        max=max(numeric),
        mean=mean(numeric),
        median=median(numeric),
        p90=percentile(numeric, 90),
        stddev=stddev(numeric),
    )


# ── regression ──


@dataclass(frozen=True)
class LinearFit:
    """Least-squares line ``y = a * x + b`` with coefficient of determination."""

    a: float = 0.0
    b: float = 0.0
    r2: float = 0.0
    n: int = 0

    @property
    def slope(self) -> float:
        return self.a

    @property
    def intercept(self) -> float:
        return self.b


def linear_fit(xs: Sequence[float], ys: Sequence[float]) -> LinearFit:
    """Ordinary least squares of *ys* on *xs*.

    Returns the degenerate ``LinearFit(0, 0, 0)`` when there are fewer than
    two points or *xs* has no variance. ``r2`` is 0 when *ys* has no
    variance.

    Raises:
        ValueError: If *xs* and *ys* differ in length.
    """
    if len(xs) != len(ys):
        raise ValueError(f"length mismatch: {len(xs)} x values, {len(ys)} y values")
    n = len(xs)
    if n < 2:
        return LinearFit(n=n)

    x = np.asarray(xs, dtype=np.float64)
    y = np.asarray(ys, dtype=np.float64)
    dx = x - x.mean()
    dy = y - y.mean()
    den = float(np.dot(dx, dx))
    if den == 0.0:
        return LinearFit(n=n)

    a = float(np.dot(dx, dy)) / den
    b = float(y.mean()) - a * float(x.mean())
    residuals = y - (a * x + b)
    ss_res = float(np.dot(residuals, residuals))
    ss_tot = float(np.dot(dy, dy))
    r2 = 0.0 if ss_tot == 0.0 else 1.0 - ss_res / ss_tot
    return LinearFit(a=a, b=b, r2=r2, n=n)


# ── histogram ──


@dataclass(frozen=True)
class Histogram:
    """Fixed-width bins with aligned labels, counts and lower edges."""

    labels: list[str] = field(default_factory=list)
    counts: list[int] = field(default_factory=list)
    edges: list[float] = field(default_factory=list)
    bin_width: float = 1.0


def _fmt_edge(value: float) -> str:
    return f"{value:g}"


def histogram(values: Iterable[Any], bin_width: float) -> Histogram:
    """Bin the finite *values* into ``[floor(min/w)*w, ceil(max/w)*w)``.

    A maximum lying exactly on the upper edge gets its own trailing bin so
    every bin stays half-open.

    Raises:
        ValueError: If *bin_width* is not positive.
    """
    if not bin_width > 0:
        raise ValueError("bin_width must be positive")
    numeric = finite_values(values)
    if not numeric:
        return Histogram(bin_width=bin_width)

    lo = math.floor(min(numeric) / bin_width) * bin_width
    hi = math.ceil(max(numeric) / bin_width) * bin_width
    n_bins = max(1, round((hi - lo) / bin_width))
    if max(numeric) >= lo + n_bins * bin_width:
        n_bins += 1

    counts = [0] * n_bins
    for value in numeric:
        index = min(n_bins - 1, int((value - lo) // bin_width))
        counts[index] += 1

    edges = [lo + i * bin_width for i in range(n_bins)]
    labels = [f"{_fmt_edge(e)}-{_fmt_edge(e + bin_width)}" for e in edges]
    return Histogram(labels=labels, counts=counts, edges=edges, bin_width=bin_width)


# ── text ──


def normalize_text(value: Any) -> str:
    """Lowercase, replace punctuation with spaces and collapse whitespace."""
    text = "" if value is None else str(value)
    text = _NON_WORD.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def levenshtein_distance(a: str, b: str) -> int:
    """Classic dynamic-programming edit distance (two-row variant)."""
    left = a or ""
    right = b or ""
    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)

    prev = list(range(len(right) + 1))
    for i, lc in enumerate(left, start=1):
        curr = [i] + [0] * len(right)
        for j, rc in enumerate(right, start=1):
            cost = 0 if lc == rc else 1
            curr[j] = min(prev[j] + 1, curr[j - 1] + 1, prev[j - 1] + cost)
        prev = curr
    return prev[len(right)]


def text_similarity(a: Any, b: Any) -> float:
    """``1 - distance / max_len`` over normalized texts; 1.0 when both are empty."""
    left = normalize_text(a)
    right = normalize_text(b)
    max_len = max(len(left), len(right))
    if not max_len:
        return 1.0
    return 1.0 - levenshtein_distance(left, right) / max_len
