"""
Aggregation and bottleneck analysis for ASR Bench Lab.

Derives every statistical view of a run log: global stage summaries,
repeatability, per-sample and per-configuration breakdowns, duration
buckets, stage-vs-duration scaling fits and the bottleneck report. All
functions are pure; callers invoke :func:`recompute` after mutating the
run log instead of subscribing to it.

Both full :class:`~bench_common.models.Run` records and the
:class:`~bench_common.models.CompactRun` records kept in snapshots are
accepted.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

import structlog

from analysis.stats import (
    LinearFit,
    Summary,
    finite_values,
    linear_fit,
    mean,
    normalize_text,
    safe_number,
    stddev,
    summarize,
)
from bench_common.models import TIMED_STAGES, BatchSummary, CompactRun, Run, calc_rtfx

logger = structlog.get_logger()

RunLike = Union[Run, CompactRun]

SUMMARY_STAGES: tuple[str, ...] = (
    "preprocess_ms",
    "encode_ms",
    "decode_ms",
    "tokenize_ms",
    "total_ms",
    "rtf",
    "preprocess_rtfx",
    "encode_rtfx",
    "decode_rtfx",
)
FIT_STAGES: tuple[str, ...] = ("preprocess_ms", "encode_ms", "decode_ms", "total_ms")
BOTTLENECK_STAGES: tuple[str, ...] = ("preprocess_ms", "encode_ms", "decode_ms")
SECONDARY_VARIABLE = "token_count"

DEFAULT_BUCKET_WIDTH_S = 2.0
DEFAULT_R2_THRESHOLD = 0.85


# ── result records ──


@dataclass(frozen=True)
class Repeatability:
    """Agreement of repeated transcriptions with their sample baseline."""

    exact_rate: float | None = None
    similarity_mean: float | None = None
    similarity_std: float | None = None
    count: int = 0


@dataclass(frozen=True)
class SampleStats:
    """Statistics of the successful runs of one sample."""

    sample_key: str
    run_count: int
    unique_outputs: int
    exact_rate: float | None
    similarity_mean: float | None
    stage_means: dict[str, float | None] = field(default_factory=dict)
    stage_stddevs: dict[str, float | None] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfigStats:
    """Per-stage means and shares of one ``(preprocessor backend, backend)`` pair."""

    key: str
    run_count: int
    stage_means: dict[str, float | None] = field(default_factory=dict)
    shares: dict[str, float | None] = field(default_factory=dict)

    @property
    def total_mean(self) -> float | None:
        return self.stage_means.get("total_ms")

    @property
    def dominant_stage(self) -> str | None:
        """Stage with the largest share of total time."""
        ranked = [(s, v) for s, v in self.shares.items() if v is not None]
        if not ranked:
            return None
        return max(ranked, key=lambda item: item[1])[0]


@dataclass(frozen=True)
class DurationBucket:
    """Runs whose audio duration falls in ``[start_s, end_s)``."""

    start_s: float
    end_s: float
    run_count: int
    stage_means: dict[str, float | None] = field(default_factory=dict)
    stage_ranges: dict[str, tuple[float, float] | None] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return f"{self.start_s:g}-{self.end_s:g}"


@dataclass(frozen=True)
class ScalingFit:
    """Linear fit of a stage time against an explanatory variable."""

    stage: str
    variable: str
    slope: float
    intercept: float
    r2: float
    n: int

    @classmethod
    def from_fit(cls, stage: str, variable: str, fit: LinearFit) -> ScalingFit:
        return cls(stage=stage, variable=variable, slope=fit.a, intercept=fit.b, r2=fit.r2, n=fit.n)


class BottleneckVerdict(str, enum.Enum):
    """Qualitative explanation of the dominant stage's cost."""

    DURATION_BOUND = "duration_bound"
    OUTPUT_LENGTH_BOUND = "output_length_bound"
    INSUFFICIENT_DATA = "insufficient_data"


@dataclass(frozen=True)
class BottleneckReport:
    """Dominant stage and whether input duration explains its cost.

    Attributes:
        stage: Stage with the largest mean time (``None`` without data).
        verdict: Duration-bound, output-length-bound or insufficient data.
        ranking: ``(stage, mean_ms)`` sorted by descending mean.
        shares: Stage mean divided by total mean.
        duration_fit: Fit of the dominant stage against audio duration.
        secondary_fit: Fit against ``metrics.token_count`` when runs carry it.
        r2_threshold: R² under which a stage is not duration-bound.
        explanation: Human-readable summary.
    """

    stage: str | None
    verdict: BottleneckVerdict
    ranking: list[tuple[str, float]] = field(default_factory=list)
    shares: dict[str, float | None] = field(default_factory=dict)
    duration_fit: ScalingFit | None = None
    secondary_fit: ScalingFit | None = None
    r2_threshold: float = DEFAULT_R2_THRESHOLD
    explanation: str = ""


@dataclass(frozen=True)
class RepeatTrendPoint:
    """Mean stage times of every run with a given repeat index."""

    repeat_index: int
    run_count: int
    decode_mean: float | None
    total_mean: float | None


@dataclass(frozen=True)
class AnalysisView:
    """Caller-owned view parameters for :func:`recompute`.

    Attributes:
        sample_key: Restrict analysis to one sample.
        config_key: Restrict analysis to one ``"{preprocessor} | {backend}"`` key.
        bucket_width_s: Duration bucket width.
        r2_threshold: R² under which a stage is not duration-bound.
    """

    sample_key: str | None = None
    config_key: str | None = None
    bucket_width_s: float = DEFAULT_BUCKET_WIDTH_S
    r2_threshold: float = DEFAULT_R2_THRESHOLD


@dataclass(frozen=True)
class DerivedStats:
    """Every derived view of a run log."""

    run_count: int
    successful_count: int
    error_count: int
    stage_summaries: dict[str, Summary]
    repeatability: Repeatability
    per_sample: list[SampleStats]
    per_config: list[ConfigStats]
    buckets: list[DurationBucket]
    fits: dict[str, ScalingFit]
    bottleneck: BottleneckReport
    repeat_trend: list[RepeatTrendPoint]
    summary: BatchSummary


# ── helpers ──


def _stage(run: RunLike, stage: str) -> float | None:
    """Stage value of *run*; ``*_rtfx`` is derived from duration when not stored."""
    value = run.stage_value(stage)
    if value is None and stage.endswith("_rtfx") and run.metrics is not None:
        value = calc_rtfx(run.audio_duration_sec, run.metrics.get(stage[: -len("_rtfx")] + "_ms"))
    return value


def _metric_extra(run: RunLike, key: str) -> float | None:
    if run.metrics is None:
        return None
    return safe_number(run.metrics.get(key))


def _share(part: float | None, total: float | None) -> float | None:
    if part is None or total is None or total <= 0:
        return None
    return part / total


def _stage_mean(runs: Iterable[RunLike], stage: str) -> float | None:
    return mean(finite_values(_stage(r, stage) for r in runs))


def config_key(run: RunLike) -> str:
    """``"{preprocessor_backend} | {backend}"`` grouping key of *run*."""
    preprocessor_backend = getattr(run, "preprocessor_backend", "") or ""
    if not preprocessor_backend and run.metrics is not None:
        preprocessor_backend = run.metrics.preprocessor_backend or ""
    backend = getattr(run, "backend", "") or ""
    return f"{preprocessor_backend} | {backend}"


# ── derivations ──


def successful_runs(runs: Iterable[RunLike]) -> list[RunLike]:
    """Runs without an error whose ``total_ms`` is finite, in log order."""
    return [r for r in runs if r.error is None and r.metrics is not None and safe_number(r.metrics.total_ms) is not None]


def stage_summaries(runs: Sequence[RunLike], stages: Sequence[str] = SUMMARY_STAGES) -> dict[str, Summary]:
    """Distribution summary of each stage (including derived RTFx) over *runs*."""
    return {stage: summarize(_stage(r, stage) for r in runs) for stage in stages}


def repeatability(runs: Sequence[RunLike]) -> Repeatability:
    """Exact-match rate and similarity statistics against sample baselines."""
    exact = [r.exact_match_to_first for r in runs if isinstance(r.exact_match_to_first, bool)]
    similarity = finite_values(r.similarity_to_first for r in runs)
    return Repeatability(
        exact_rate=(sum(exact) / len(exact)) if exact else None,
        similarity_mean=mean(similarity),
        similarity_std=stddev(similarity) if similarity else None,
        count=len(exact),
    )


def per_sample_stats(
    runs: Sequence[RunLike],
    stages: Sequence[str] = ("preprocess_ms", "encode_ms", "decode_ms", "total_ms", "encode_rtfx", "decode_rtfx"),
) -> list[SampleStats]:
    """Group *runs* by sample, worst repeatability first.

    Samples without exact-match information sort as fully repeatable.
    """
    groups: dict[str, list[RunLike]] = {}
    for run in runs:
        groups.setdefault(run.sample_key, []).append(run)

    out: list[SampleStats] = []
    for key, group in groups.items():
        exact = [1.0 if r.exact_match_to_first else 0.0 for r in group if isinstance(r.exact_match_to_first, bool)]
        texts = {normalize_text(getattr(r, "transcription", "") or "") for r in group}
        means: dict[str, float | None] = {}
        stds: dict[str, float | None] = {}
        for stage in stages:
            values = finite_values(_stage(r, stage) for r in group)
            means[stage] = mean(values)
            stds[stage] = stddev(values) if values else None
        out.append(
            SampleStats(
                sample_key=key,
                run_count=len(finite_values(_stage(r, "total_ms") for r in group)),
                unique_outputs=len(texts),
                exact_rate=mean(exact),
                similarity_mean=mean(finite_values(r.similarity_to_first for r in group)),
                stage_means=means,
                stage_stddevs=stds,
            )
        )
    out.sort(key=lambda s: 1.0 if s.exact_rate is None else s.exact_rate)
    return out


def per_config_stats(runs: Sequence[RunLike]) -> list[ConfigStats]:
    """Group *runs* by configuration key, fastest total mean first."""
    groups: dict[str, list[RunLike]] = {}
    for run in runs:
        groups.setdefault(config_key(run), []).append(run)

    out: list[ConfigStats] = []
    for key, group in groups.items():
        means = {stage: _stage_mean(group, stage) for stage in (*TIMED_STAGES, "total_ms")}
        shares = {stage: _share(means[stage], means["total_ms"]) for stage in TIMED_STAGES}
        out.append(ConfigStats(key=key, run_count=len(group), stage_means=means, shares=shares))
    out.sort(key=lambda c: math.inf if c.total_mean is None else c.total_mean)
    return out


def duration_buckets(
    runs: Sequence[RunLike],
    width_s: float = DEFAULT_BUCKET_WIDTH_S,
    stages: Sequence[str] = ("preprocess_ms", "encode_ms", "decode_ms", "total_ms"),
) -> list[DurationBucket]:
    """Group *runs* by ``floor(duration / width) * width``.

    Runs without a finite duration are left out.

    Raises:
        ValueError: If *width_s* is not positive.
    """
    if not width_s > 0:
        raise ValueError("bucket width must be positive")
    groups: dict[float, list[RunLike]] = {}
    for run in runs:
        duration = safe_number(run.audio_duration_sec)
        if duration is None:
            continue
        start = math.floor(duration / width_s) * width_s
        groups.setdefault(start, []).append(run)

    out: list[DurationBucket] = []
    for start in sorted(groups):
        group = groups[start]
        means: dict[str, float | None] = {}
        ranges: dict[str, tuple[float, float] | None] = {}
        for stage in stages:
            values = finite_values(_stage(r, stage) for r in group)
            means[stage] = mean(values)
            ranges[stage] = (min(values), max(values)) if values else None
        out.append(
            DurationBucket(
                start_s=start,
                end_s=start + width_s,
                run_count=len(group),
                stage_means=means,
                stage_ranges=ranges,
            )
        )
    return out


def _pairs(runs: Iterable[RunLike], x_of: Any, stage: str) -> tuple[list[float], list[float]]:
    xs: list[float] = []
    ys: list[float] = []
    for run in runs:
        x = x_of(run)
        y = _stage(run, stage)
        if x is not None and y is not None:
            xs.append(x)
            ys.append(y)
    return xs, ys


def _duration(run: RunLike) -> float | None:
    return safe_number(run.audio_duration_sec)


def scaling_fits(runs: Sequence[RunLike], stages: Sequence[str] = (*FIT_STAGES, "rtf")) -> dict[str, ScalingFit]:
    """Fit each stage time against audio duration (slope in ms per second of audio)."""
    fits: dict[str, ScalingFit] = {}
    for stage in stages:
        xs, ys = _pairs(runs, _duration, stage)
        fits[stage] = ScalingFit.from_fit(stage, "audio_duration_sec", linear_fit(xs, ys))
    return fits


def _explain(
    stage: str,
    share: float | None,
    fit: ScalingFit,
    secondary: ScalingFit | None,
    threshold: float,
    verdict: BottleneckVerdict,
) -> str:
    share_text = f" ({share * 100:.1f}% of total)" if share is not None else ""
    head = f"{stage} dominates{share_text}; {fit.slope:.2f} ms per second of audio (R² = {fit.r2:.3f})."
    if verdict is BottleneckVerdict.DURATION_BOUND:
        return f"{head} R² ≥ {threshold:.2f}: cost scales with input duration."
    text = (
        f"{head} R² < {threshold:.2f}: time is not purely linear in audio length; "
        "influenced by output length (tokens) or variance."
    )
    if secondary is not None:
        text += f" Against {secondary.variable}: R² = {secondary.r2:.3f}."
    return text


def bottleneck(runs: Sequence[RunLike], r2_threshold: float = DEFAULT_R2_THRESHOLD) -> BottleneckReport:
    """Rank stages by mean time and explain the dominant one.

    The dominant stage is fitted against audio duration. An R² below
    *r2_threshold* marks it as output-length-bound. When runs carry
    ``metrics.token_count`` the stage is also fitted against it.
    """
    total_mean = _stage_mean(runs, "total_ms")
    ranking: list[tuple[str, float]] = []
    for stage in BOTTLENECK_STAGES:
        value = _stage_mean(runs, stage)
        if value is not None:
            ranking.append((stage, value))
    ranking.sort(key=lambda item: item[1], reverse=True)
    shares = {stage: _share(value, total_mean) for stage, value in ranking}

    if not ranking:
        return BottleneckReport(
            stage=None,
            verdict=BottleneckVerdict.INSUFFICIENT_DATA,
            r2_threshold=r2_threshold,
            explanation="No successful runs with stage timings.",
        )

    top = ranking[0][0]
    xs, ys = _pairs(runs, _duration, top)
    duration_fit = ScalingFit.from_fit(top, "audio_duration_sec", linear_fit(xs, ys))

    tx, ty = _pairs(runs, lambda r: _metric_extra(r, SECONDARY_VARIABLE), top)
    secondary_fit = (
        ScalingFit.from_fit(top, SECONDARY_VARIABLE, linear_fit(tx, ty)) if len(tx) >= 2 else None
    )

    if len(set(xs)) < 2:
        verdict = BottleneckVerdict.INSUFFICIENT_DATA
        explanation = f"{top} dominates; fewer than two distinct audio durations, no scaling fit."
    else:
        verdict = (
            BottleneckVerdict.DURATION_BOUND
            if duration_fit.r2 >= r2_threshold
            else BottleneckVerdict.OUTPUT_LENGTH_BOUND
        )
        explanation = _explain(top, shares.get(top), duration_fit, secondary_fit, r2_threshold, verdict)

    logger.debug("bottleneck_computed", stage=top, verdict=verdict.value, r2=duration_fit.r2)
    return BottleneckReport(
        stage=top,
        verdict=verdict,
        ranking=ranking,
        shares=shares,
        duration_fit=duration_fit,
        secondary_fit=secondary_fit,
        r2_threshold=r2_threshold,
        explanation=explanation,
    )


def repeat_trend(runs: Sequence[RunLike]) -> list[RepeatTrendPoint]:
    """Mean decode and total time per repeat index, ascending."""
    groups: dict[int, list[RunLike]] = {}
    for run in runs:
        groups.setdefault(run.repeat_index, []).append(run)
    return [
        RepeatTrendPoint(
            repeat_index=index,
            run_count=len(groups[index]),
            decode_mean=_stage_mean(groups[index], "decode_ms"),
            total_mean=_stage_mean(groups[index], "total_ms"),
        )
        for index in sorted(groups)
    ]


def batch_summary(runs: Sequence[RunLike]) -> BatchSummary:
    """Headline numbers of a full run log (errors included in the count)."""
    good = successful_runs(runs)
    rep = repeatability(good)
    means = {stage: _stage_mean(good, stage) for stage in (*TIMED_STAGES, "total_ms")}
    encode_rtfx = summarize(_stage(r, "encode_rtfx") for r in good)
    decode_rtfx = summarize(_stage(r, "decode_rtfx") for r in good)
    return BatchSummary(
        run_count=len(good),
        error_count=len(runs) - len(good),
        preprocess_mean=means["preprocess_ms"],
        encode_mean=means["encode_ms"],
        decode_mean=means["decode_ms"],
        tokenize_mean=means["tokenize_ms"],
        total_mean=means["total_ms"],
        rtf_median=summarize(_stage(r, "rtf") for r in good).median,
        encode_rtfx_median=encode_rtfx.median,
        decode_rtfx_median=decode_rtfx.median,
        encode_rtfx_std=encode_rtfx.stddev,
        decode_rtfx_std=decode_rtfx.stddev,
        exact_rate=rep.exact_rate,
        similarity_mean=rep.similarity_mean,
        preprocess_share=_share(means["preprocess_ms"], means["total_ms"]),
        decode_share=_share(means["decode_ms"], means["total_ms"]),
    )


def recompute(view: AnalysisView, runs: Sequence[RunLike]) -> DerivedStats:
    """Derive every view of *runs* under *view*'s filters and parameters."""
    selected = list(runs)
    if view.sample_key is not None:
        selected = [r for r in selected if r.sample_key == view.sample_key]
    if view.config_key is not None:
        selected = [r for r in selected if config_key(r) == view.config_key]
    good = successful_runs(selected)

    return DerivedStats(
        run_count=len(selected),
        successful_count=len(good),
        error_count=len(selected) - len(good),
        stage_summaries=stage_summaries(good),
        repeatability=repeatability(good),
        per_sample=per_sample_stats(good),
        per_config=per_config_stats(good),
        buckets=duration_buckets(good, view.bucket_width_s),
        fits=scaling_fits(good),
        bottleneck=bottleneck(good, view.r2_threshold),
        repeat_trend=repeat_trend(good),
        summary=batch_summary(selected),
    )
