"""
Snapshot and export models for ASR Bench Lab.

Defines :class:`BatchSummary` (headline numbers of a run set),
:class:`CompactRun` (reduced run kept inside snapshots),
:class:`Snapshot` (a versioned, self-contained copy of a benchmark batch)
and :class:`BatchExport` (the JSON export document).
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import ConfigDict, Field, ValidationError, model_validator

from bench_common.config import BenchmarkSettings
from bench_common.models.base import CamelModel
from bench_common.models.hardware import HardwareSummary
from bench_common.models.run import Run, StageMetrics

logger = structlog.get_logger()


class BatchSummary(CamelModel):
    """Headline statistics of a run set.

    Attributes:
        run_count: Successful runs.
        error_count: Failed runs (including decode placeholders).
        preprocess_mean: Mean preprocessing time (ms).
        encode_mean: Mean encoder time (ms).
        decode_mean: Mean decoder time (ms).
        tokenize_mean: Mean tokenization time (ms).
        total_mean: Mean end-to-end time (ms).
        rtf_median: Median real-time factor.
        encode_rtfx_median: Median encoder RTFx.
        decode_rtfx_median: Median decoder RTFx.
        encode_rtfx_std: Encoder RTFx sample standard deviation.
        decode_rtfx_std: Decoder RTFx sample standard deviation.
        exact_rate: Fraction of runs matching their sample's baseline.
        similarity_mean: Mean similarity to the baseline.
        preprocess_share: ``preprocess_mean / total_mean``.
        decode_share: ``decode_mean / total_mean``.
    """

    run_count: int = 0
    error_count: int = 0
    preprocess_mean: float | None = None
    encode_mean: float | None = None
    decode_mean: float | None = None
    tokenize_mean: float | None = None
    total_mean: float | None = None
    rtf_median: float | None = None
    encode_rtfx_median: float | None = None
    decode_rtfx_median: float | None = None
    encode_rtfx_std: float | None = None
    decode_rtfx_std: float | None = None
    exact_rate: float | None = None
    similarity_mean: float | None = None
    preprocess_share: float | None = None
    decode_share: float | None = None


class CompactRun(CamelModel):
    """Run reduced to identity, outcome and timings for snapshot storage."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    sample_key: str
    repeat_index: int
    exact_match_to_first: bool | None = None
    similarity_to_first: float | None = None
    audio_duration_sec: float | None = None
    metrics: StageMetrics | None = None
    error: str | None = None

    @property
    def is_successful(self) -> bool:
        return self.error is None and self.metrics is not None and self.metrics.total_ms is not None

    def stage_value(self, stage: str) -> float | None:
        """Return a stored timing, ``rtf`` or ``*_rtfx`` value."""
        if self.metrics is None:
            return None
        value = self.metrics.get(stage)
        return value if isinstance(value, (int, float)) and not isinstance(value, bool) else None


class Snapshot(CamelModel):
    """Point-in-time copy of a benchmark batch.

    Attributes:
        id: Snapshot identifier.
        created_at: ISO creation timestamp.
        label: Display label.
        settings: Benchmark settings the runs were produced with.
        summary: Headline statistics of the runs.
        hardware_profile: Raw hardware probe record.
        hardware_summary: Hardware labels.
        runs: Compacted runs.
    """

    id: str
    created_at: str
    label: str
    settings: BenchmarkSettings = Field(default_factory=BenchmarkSettings)
    summary: BatchSummary = Field(default_factory=BatchSummary)
    hardware_profile: dict[str, Any] | None = None
    hardware_summary: HardwareSummary | None = None
    runs: list[CompactRun] = Field(default_factory=list)


class BatchExport(CamelModel):
    """JSON export document of a run log.

    Exports written elsewhere may hold runs that are not valid
    :class:`Run` records, typically successful trials recorded with
    profiling off (no ``total_ms``). Such runs are dropped on input and
    counted in :attr:`skipped_runs`; the rest of the document loads.
    """

    generated_at: str
    settings: BenchmarkSettings = Field(default_factory=BenchmarkSettings)
    hardware_profile: dict[str, Any] | None = None
    hardware_summary: HardwareSummary | None = None
    runs: list[Run] = Field(default_factory=list)
    skipped_runs: int = Field(default=0, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_invalid_runs(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(data.get("runs"), list):
            return data
        kept: list[Any] = []
        skipped = 0
        for index, item in enumerate(data["runs"]):
            if isinstance(item, Run):
                kept.append(item)
                continue
            try:
                kept.append(Run.model_validate(item))
            except ValidationError as exc:
                skipped += 1
                logger.warning(
                    "export_run_skipped",
                    index=index,
                    run_id=item.get("id") if isinstance(item, dict) else None,
                    error=exc.errors()[0]["msg"],
                )
        return {**data, "runs": kept, "skipped_runs": skipped}
