"""
Prometheus metrics helpers for ASR Bench Lab.

Provides shared metric definitions updated by the trial executor:
trial outcome counters, sample failure counters, a per-trial latency
histogram and a batch outcome counter. Nothing is served over HTTP; the
default registry can be scraped or dumped by the embedding process.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

TRIALS_TOTAL = Counter(
    "bench_trials_total",
    "Measured trials executed, by outcome.",
    ["outcome"],
)
SAMPLE_FAILURES_TOTAL = Counter(
    "bench_sample_failures_total",
    "Samples whose audio could not be fetched or decoded.",
)
TRIAL_TOTAL_SECONDS = Histogram(
    "bench_trial_total_seconds",
    "End-to-end latency of measured trials reported by the backend.",
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
BATCHES_TOTAL = Counter(
    "bench_batches_total",
    "Benchmark batches finished, by status.",
    ["status"],
)


def observe_trial(outcome: str, total_ms: float | None = None) -> None:
    """Count one measured trial and record its latency when known."""
    TRIALS_TOTAL.labels(outcome=outcome).inc()
    if total_ms is not None:
        TRIAL_TOTAL_SECONDS.observe(total_ms / 1000.0)
