"""
Plain-text analysis report for ASR Bench Lab batch exports.

Reads a JSON batch export and prints a timing breakdown: phase times,
share of total, scaling against audio duration, RTF, duration buckets
showing same-length clips with divergent decode cost, and the bottleneck
summary.

Usage:
    python -m analysis.report metrics/benchmark-1772221557947.json
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from pathlib import Path

import structlog
from pydantic import ValidationError

from analysis.aggregator import (
    DEFAULT_BUCKET_WIDTH_S,
    DEFAULT_R2_THRESHOLD,
    bottleneck,
    duration_buckets,
    scaling_fits,
    successful_runs,
)
from analysis.stats import finite_values, linear_fit, percentile, safe_number, summarize
from bench_common.models import BatchExport, Run

logger = structlog.get_logger()

_PHASES: tuple[tuple[str, str], ...] = (
    ("Preprocess", "preprocess_ms"),
    ("Encode", "encode_ms"),
    ("Decode", "decode_ms"),
    ("Tokenize", "tokenize_ms"),
    ("Total", "total_ms"),
)


def _fmt(value: float | None, digits: int = 1) -> str:
    return "-" if value is None else f"{value:.{digits}f}"


def load_export(path: str | Path) -> BatchExport:
    """Parse a JSON batch export file.

    Raises:
        OSError: If the file cannot be read.
        ValueError: If the document is not a valid batch export.
    """
    raw = Path(path).read_text(encoding="utf-8")
    try:
        return BatchExport.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise ValueError(f"invalid batch export {path}: {exc}") from exc


def _phase_line(name: str, runs: Sequence[Run], stage: str) -> str:
    values = finite_values(r.stage_value(stage) for r in runs)
    s = summarize(values)
    return (
        f"{name.ljust(12)}: mean {_fmt(s.mean)}  min {_fmt(s.min)}  max {_fmt(s.max)}"
        f"  p50 {_fmt(s.median)}  p95 {_fmt(percentile(values, 95))}  std {_fmt(s.stddev)}"
    )


def build_report(
    export: BatchExport,
    *,
    bucket_width_s: float = DEFAULT_BUCKET_WIDTH_S,
    r2_threshold: float = DEFAULT_R2_THRESHOLD,
) -> str:
    """Render the text report of *export*.

    Args:
        export: Parsed batch export.
        bucket_width_s: Width of the duration buckets.
        r2_threshold: R² under which a stage is reported as not duration-bound.

    Returns:
        The report as a single string.

    Raises:
        ValueError: If the export has no successful runs.
    """
    runs = successful_runs(export.runs)
    if not runs:
        raise ValueError("no successful runs in export")

    settings = export.settings
    durations = summarize(r.audio_duration_sec for r in runs)
    lines = [
        "=== ASR benchmark analysis ===",
        "",
        f"Config: {settings.model_key} {settings.backend} e:{settings.encoder_quant} d:{settings.decoder_quant}",
        f"Runs: {len(runs)} successful of {len(export.runs)}",
    ]
    if export.skipped_runs:
        lines.append(f"Skipped: {export.skipped_runs} runs without valid timings")
    lines += [
        f"Audio duration: {_fmt(durations.min, 2)}-{_fmt(durations.max, 2)} s (mean {_fmt(durations.mean, 2)} s)",
        "",
        "--- 1. Phase time (ms) ---",
    ]
    lines += [_phase_line(name, runs, stage) for name, stage in _PHASES]

    report = bottleneck(runs, r2_threshold)
    lines += ["", "--- 2. Share of total time ---"]
    for name, stage in _PHASES[:-1]:
        total = summarize(r.stage_value("total_ms") for r in runs).mean
        part = summarize(r.stage_value(stage) for r in runs).mean
        share = None if part is None or not total else 100.0 * part / total
        lines.append(f"{name.ljust(12)}: {_fmt(share)}%")

    fits = scaling_fits(runs)
    lines += ["", "--- 3. Scaling vs audio duration (time_ms = a * duration_sec + b) ---"]
    for name, stage in (("Preprocess", "preprocess_ms"), ("Encode", "encode_ms"), ("Decode", "decode_ms"), ("Total", "total_ms")):
        fit = fits[stage]
        lines.append(f"{name.ljust(12)}: {fit.slope:.2f} * duration_sec + {fit.intercept:.1f}   R² = {fit.r2:.3f}  (n={fit.n})")

    rtf = summarize(r.stage_value("rtf") for r in runs)
    rtf_fit = fits["rtf"]
    lines += [
        "",
        "--- 4. RTF (real-time factor; higher = faster than realtime) ---",
        f"RTF: mean {_fmt(rtf.mean, 2)}  min {_fmt(rtf.min, 2)}  max {_fmt(rtf.max, 2)}"
        f"  p50 {_fmt(rtf.median, 2)}  std {_fmt(rtf.stddev, 2)}",
        f"RTF vs duration: slope {rtf_fit.slope:.4f} (R² = {rtf_fit.r2:.3f}); "
        "negative slope = longer clips get lower RTF",
    ]

    lines += [
        "",
        "--- 5. Decode variance (same duration bucket, different decode time) ---",
        "Duration bucket (s)  count  decode_ms (min-max)   encode_ms (min-max)",
    ]
    for bucket in duration_buckets(runs, bucket_width_s):
        dec = bucket.stage_ranges.get("decode_ms")
        enc = bucket.stage_ranges.get("encode_ms")
        dec_text = f"{_fmt(dec[0])}-{_fmt(dec[1])}" if dec else "-"
        enc_text = f"{_fmt(enc[0])}-{_fmt(enc[1])}" if enc else "-"
        lines.append(bucket.label.ljust(21) + str(bucket.run_count).ljust(7) + dec_text.ljust(22) + enc_text)

    lines += ["", "--- 6. Bottleneck summary ---"]
    if report.ranking:
        ranked = ", then ".join(
            f"{stage} ({_fmt(100.0 * (report.shares.get(stage) or 0.0))}%)" for stage, _ in report.ranking
        )
        lines.append(f"Largest share: {ranked}")
    for stage in ("decode_ms", "encode_ms"):
        fit = fits[stage]
        lines.append(f"{stage}: {fit.slope:.2f} ms per second of audio (R² = {fit.r2:.3f})")
    lines.append(report.explanation)
    if report.stage != "decode_ms":
        pairs = [
            (tokens, decode)
            for r in runs
            if (tokens := safe_number(r.metrics.get("token_count") if r.metrics else None)) is not None
            and (decode := r.stage_value("decode_ms")) is not None
        ]
        if len(pairs) >= 2:
            fit = linear_fit([p[0] for p in pairs], [p[1] for p in pairs])
            lines.append(f"decode_ms vs token_count: R² = {fit.r2:.3f}")
    return "\n".join(lines)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments for the report."""
    parser = argparse.ArgumentParser(description="Analyze an ASR benchmark JSON export")
    parser.add_argument("export", type=str, help="Path to the JSON batch export")
    parser.add_argument("--bucket-width", type=float, default=DEFAULT_BUCKET_WIDTH_S, help="Duration bucket width (s)")
    parser.add_argument("--r2-threshold", type=float, default=DEFAULT_R2_THRESHOLD, help="Duration-bound R² threshold")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Print the analysis report of a batch export."""
    args = parse_args(argv)
    try:
        export = load_export(args.export)
        text = build_report(export, bucket_width_s=args.bucket_width, r2_threshold=args.r2_threshold)
    except (OSError, ValueError) as exc:
        logger.error("report_failed", path=args.export, error=str(exc))
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
