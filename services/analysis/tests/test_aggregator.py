"""
Tests for the run-log aggregator and bottleneck analyzer.

Uses synthetic run logs to check stage summaries, repeatability,
per-sample and per-configuration grouping, duration buckets, scaling
fits and the duration-bound vs output-length-bound attribution.
"""

from __future__ import annotations

import pytest

from analysis.aggregator import (
    AnalysisView,
    BottleneckVerdict,
    batch_summary,
    bottleneck,
    config_key,
    duration_buckets,
    per_config_stats,
    per_sample_stats,
    recompute,
    repeat_trend,
    repeatability,
    scaling_fits,
    stage_summaries,
    successful_runs,
)
from bench_common.models import CompactRun, StageMetrics
from run_builders import make_run

# Decode follows a synthetic token count; preprocess follows duration.
_DURATIONS = [5.0, 10.0, 15.0, 20.0, 25.0, 25.0]
_TOKENS = [40, 12, 60, 20, 38, 80]
_NOISE = [0.1, -0.2, 0.15, -0.1, 0.05, -0.05]


def _token_bound_runs() -> list:
    runs = []
    for i, (duration, tokens, noise) in enumerate(zip(_DURATIONS, _TOKENS, _NOISE)):
        runs.append(
            make_run(
                f"test:{i}",
                1,
                duration=duration,
                preprocess=1.3 * duration + noise,
                encode=2.0 * duration + 5.0,
                decode=2.5 * tokens,
                tokenize=1.0,
                token_count=tokens,
            )
        )
    return runs


def _duration_bound_runs() -> list:
    return [
        make_run(
            f"test:{i}",
            1,
            duration=d,
            preprocess=5.0,
            encode=10.0,
            decode=8.0 * d + noise,
            tokenize=1.0,
        )
        for i, (d, noise) in enumerate(zip(_DURATIONS[:5], _NOISE))
    ]


# ---------------------------------------------------------------------------
# Filtering and summaries
# ---------------------------------------------------------------------------


class TestSuccessfulRuns:

    def test_excludes_errors(self) -> None:
        runs = [make_run(), make_run(repeat_index=0, error="Decode error: 404", duration=None)]
        assert successful_runs(runs) == [runs[0]]


class TestStageSummaries:

    def test_includes_derived_rtfx(self) -> None:
        runs = [make_run(duration=10.0, encode=100.0), make_run(repeat_index=2, duration=10.0, encode=50.0)]
        summaries = stage_summaries(runs)
        assert summaries["encode_ms"].mean == pytest.approx(75.0)
        assert summaries["encode_rtfx"].count == 2
        assert summaries["encode_rtfx"].max == pytest.approx(200.0)

    def test_missing_stage_is_excluded(self) -> None:
        runs = [make_run(tokenize=None), make_run(repeat_index=2, tokenize=4.0)]
        assert stage_summaries(runs)["tokenize_ms"].count == 1

    def test_compact_runs_use_stored_rtfx(self) -> None:
        compact = CompactRun(
            id="r1",
            sample_key="test:1",
            repeat_index=1,
            audio_duration_sec=10.0,
            metrics=StageMetrics(total_ms=200.0, decode_ms=100.0, decode_rtfx=100.0),
        )
        assert stage_summaries([compact])["decode_rtfx"].mean == pytest.approx(100.0)


class TestRepeatability:

    def test_rates(self) -> None:
        runs = [
            make_run(exact=True, similarity=1.0),
            make_run(repeat_index=2, exact=False, similarity=0.8),
            make_run(repeat_index=3, exact=None, similarity=None),
        ]
        rep = repeatability(runs)
        assert rep.exact_rate == pytest.approx(0.5)
        assert rep.similarity_mean == pytest.approx(0.9)
        assert rep.count == 2

    def test_empty(self) -> None:
        rep = repeatability([])
        assert rep.exact_rate is None
        assert rep.similarity_mean is None


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------


class TestPerSampleStats:

    def test_worst_repeatability_first(self) -> None:
        runs = [
            make_run("test:a", 1, transcription="hello world", exact=True),
            make_run("test:a", 2, transcription="hello word", exact=False, similarity=0.9),
            make_run("test:a", 3, transcription="Hello, world!", exact=True),
            make_run("test:b", 1, exact=True),
            make_run("test:c", 1, exact=None, similarity=None),
        ]
        stats = per_sample_stats(runs)
        assert stats[0].sample_key == "test:a"
        assert stats[0].exact_rate == pytest.approx(2 / 3)
        assert stats[0].unique_outputs == 2
        assert stats[0].run_count == 3
        assert {s.sample_key for s in stats[1:]} == {"test:b", "test:c"}

    def test_stage_means_and_stddevs(self) -> None:
        runs = [make_run(decode=100.0), make_run(repeat_index=2, decode=200.0)]
        (stats,) = per_sample_stats(runs)
        assert stats.stage_means["decode_ms"] == pytest.approx(150.0)
        assert stats.stage_stddevs["decode_ms"] == pytest.approx(70.7106781)


class TestPerConfigStats:

    def test_sorted_by_total_and_shares(self) -> None:
        runs = [
            make_run(backend="webgpu-hybrid", preprocessor_backend="js"),
            make_run(backend="wasm", preprocessor_backend="onnx", decode=50.0),
        ]
        stats = per_config_stats(runs)
        assert [s.key for s in stats] == ["onnx | wasm", "js | webgpu-hybrid"]
        slow = stats[1]
        assert slow.total_mean == pytest.approx(272.0)
        assert slow.shares["decode_ms"] == pytest.approx(150.0 / 272.0)
        assert slow.dominant_stage == "decode_ms"

    def test_compact_run_key_falls_back_to_metrics(self) -> None:
        compact = CompactRun(
            id="r",
            sample_key="k",
            repeat_index=1,
            metrics=StageMetrics(total_ms=1.0, preprocessor_backend="onnx"),
        )
        assert config_key(compact) == "onnx | "


class TestDurationBuckets:

    def test_same_duration_divergent_decode(self) -> None:
        buckets = duration_buckets(_token_bound_runs(), 2.0)
        assert [b.label for b in buckets] == ["4-6", "10-12", "14-16", "20-22", "24-26"]
        last = buckets[-1]
        assert last.run_count == 2
        assert last.stage_ranges["decode_ms"] == (95.0, 200.0)
        assert last.stage_means["decode_ms"] == pytest.approx(147.5)

    def test_skips_runs_without_duration(self) -> None:
        runs = [make_run(duration=None), make_run(repeat_index=2, duration=3.0)]
        assert [b.run_count for b in duration_buckets(runs, 4.0)] == [1]

    def test_invalid_width(self) -> None:
        with pytest.raises(ValueError):
            duration_buckets([make_run()], 0.0)


# ---------------------------------------------------------------------------
# Scaling fits and bottleneck attribution
# ---------------------------------------------------------------------------


class TestScalingFits:

    def test_decode_is_not_duration_linear(self) -> None:
        fits = scaling_fits(_token_bound_runs())
        assert fits["preprocess_ms"].r2 > 0.99
        assert fits["preprocess_ms"].slope == pytest.approx(1.3, abs=0.05)
        assert fits["decode_ms"].r2 < 0.5
        assert fits["decode_ms"].r2 < fits["preprocess_ms"].r2 - 0.4


class TestBottleneck:

    def test_output_length_bound(self) -> None:
        report = bottleneck(_token_bound_runs(), r2_threshold=0.85)
        assert report.stage == "decode_ms"
        assert report.verdict is BottleneckVerdict.OUTPUT_LENGTH_BOUND
        assert [stage for stage, _ in report.ranking] == ["decode_ms", "encode_ms", "preprocess_ms"]
        assert report.duration_fit is not None and report.duration_fit.r2 < 0.85
        assert report.secondary_fit is not None
        assert report.secondary_fit.variable == "token_count"
        assert report.secondary_fit.r2 == pytest.approx(1.0)
        assert "R² < 0.85" in report.explanation

    def test_duration_bound(self) -> None:
        report = bottleneck(_duration_bound_runs())
        assert report.stage == "decode_ms"
        assert report.verdict is BottleneckVerdict.DURATION_BOUND
        assert report.secondary_fit is None

    def test_threshold_is_a_parameter(self) -> None:
        report = bottleneck(_token_bound_runs(), r2_threshold=0.1)
        assert report.verdict is BottleneckVerdict.DURATION_BOUND

    def test_single_duration_is_insufficient(self) -> None:
        runs = [make_run(repeat_index=i, duration=25.0, decode=d) for i, d in ((1, 95.0), (2, 200.0))]
        report = bottleneck(runs)
        assert report.stage == "decode_ms"
        assert report.verdict is BottleneckVerdict.INSUFFICIENT_DATA

    def test_no_runs(self) -> None:
        report = bottleneck([])
        assert report.stage is None
        assert report.verdict is BottleneckVerdict.INSUFFICIENT_DATA


# ---------------------------------------------------------------------------
# Trend, summary and recompute
# ---------------------------------------------------------------------------


class TestRepeatTrend:

    def test_means_per_repeat(self) -> None:
        runs = [
            make_run("test:1", 1, decode=200.0),
            make_run("test:2", 1, decode=100.0),
            make_run("test:1", 2, decode=120.0),
        ]
        trend = repeat_trend(runs)
        assert [p.repeat_index for p in trend] == [1, 2]
        assert trend[0].decode_mean == pytest.approx(150.0)
        assert trend[1].run_count == 1


class TestBatchSummary:

    def test_counts_errors_from_full_log(self) -> None:
        runs = [
            make_run(),
            make_run(repeat_index=2, exact=False, similarity=0.5),
            make_run("test:2", 0, duration=None, error="Decode error: timeout"),
        ]
        summary = batch_summary(runs)
        assert summary.run_count == 2
        assert summary.error_count == 1
        assert summary.total_mean == pytest.approx(272.0)
        assert summary.decode_share == pytest.approx(150.0 / 272.0)
        assert summary.exact_rate == pytest.approx(0.5)
        assert summary.similarity_mean == pytest.approx(0.75)
        assert summary.encode_rtfx_median == pytest.approx(100.0)

    def test_empty_log(self) -> None:
        summary = batch_summary([])
        assert summary.run_count == 0
        assert summary.total_mean is None


class TestRecompute:

    def test_full_view(self) -> None:
        runs = [*_token_bound_runs(), make_run("test:9", 0, duration=None, error="Decode error: x")]
        stats = recompute(AnalysisView(), runs)
        assert stats.run_count == 7
        assert stats.successful_count == 6
        assert stats.error_count == 1
        assert stats.bottleneck.verdict is BottleneckVerdict.OUTPUT_LENGTH_BOUND
        assert len(stats.buckets) == 5
        assert stats.summary.error_count == 1

    def test_sample_filter(self) -> None:
        runs = _token_bound_runs()
        stats = recompute(AnalysisView(sample_key="test:0"), runs)
        assert stats.run_count == 1
        assert [s.sample_key for s in stats.per_sample] == ["test:0"]

    def test_is_pure(self) -> None:
        runs = _token_bound_runs()
        first = recompute(AnalysisView(), runs)
        second = recompute(AnalysisView(), runs)
        assert first == second
        assert len(runs) == 6
