"""
Snapshot store for ASR Bench Lab.

A snapshot freezes a run log together with the settings and hardware it
was produced with. Runs are compacted (identity, outcome and timings
only) and the list is persisted newest-first through a
:class:`~bench_common.storage.KeyValueStore`, capped at
``max_snapshots`` entries. Snapshots can also be synthesized from a JSON
batch export, and compared pairwise or across several at once.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError

from analysis.aggregator import batch_summary
from analysis.stats import mean
from bench_common.config import BenchmarkSettings
from bench_common.models import (
    BatchExport,
    CompactRun,
    HardwareProfile,
    HardwareSummary,
    Run,
    Snapshot,
    StageMetrics,
)
from bench_common.storage import KeyValueStore
from bench_common.utils import new_id, utc_now_iso

logger = structlog.get_logger()


class SnapshotNotFoundError(KeyError):
    """No snapshot with the requested id exists."""


class SnapshotImportError(ValueError):
    """The payload is not a usable batch export."""


# ── comparison metrics ──


@dataclass(frozen=True)
class CompareMetric:
    key: str
    label: str
    lower_is_better: bool
    # Per-run field averaged per repeat index in multi-compare, if any.
    repeat_stage: str | None = None


COMPARE_METRICS: tuple[CompareMetric, ...] = (
    CompareMetric("total_mean", "Total mean", True, "total_ms"),
    CompareMetric("preprocess_mean", "Preprocess mean", True, "preprocess_ms"),
    CompareMetric("encode_mean", "Encode mean", True, "encode_ms"),
    CompareMetric("decode_mean", "Decode mean", True, "decode_ms"),
    CompareMetric("rtf_median", "RTF median", False, "rtf"),
    CompareMetric("encode_rtfx_median", "Encoder RTFx median", False, "encode_rtfx"),
    CompareMetric("decode_rtfx_median", "Decoder RTFx median", False, "decode_rtfx"),
    CompareMetric("exact_rate", "Exact repeatability", False),
    CompareMetric("similarity_mean", "Similarity mean", False),
)
_METRICS_BY_KEY = {m.key: m for m in COMPARE_METRICS}


def delta_percent(base: float | None, new: float | None) -> float | None:
    """Percent change from *base* to *new* (``None`` if undefined)."""
    if base is None or new is None or not math.isfinite(base) or not math.isfinite(new) or base == 0:
        return None
    return (new - base) / base * 100.0


@dataclass(frozen=True)
class MetricDelta:
    """One row of an A/B comparison."""

    metric: str
    label: str
    value_a: float | None
    value_b: float | None
    delta_percent: float | None
    lower_is_better: bool

    @property
    def better(self) -> bool | None:
        """Whether B improves on A (``None`` when the delta is undefined)."""
        if self.delta_percent is None:
            return None
        return self.delta_percent < 0 if self.lower_is_better else self.delta_percent > 0

    def describe(self) -> str:
        """``"+12.3% worse"`` style text, ``"-"`` when undefined."""
        if self.delta_percent is None:
            return "-"
        sign = "+" if self.delta_percent > 0 else ""
        return f"{sign}{self.delta_percent:.1f}% {'better' if self.better else 'worse'}"


@dataclass
class MultiCompare:
    """Grouped series across several snapshots.

    Attributes:
        snapshot_ids: Snapshots in the order given.
        labels: Their labels.
        metrics: Metric keys compared.
        series: Metric key to one summary value per snapshot.
        repeat_indices: Union of repeat indices seen in the snapshots.
        repeat_series: Metric key to snapshot id to per-repeat means
            aligned with ``repeat_indices`` (per-run metrics only).
    """

    snapshot_ids: list[str]
    labels: list[str]
    metrics: list[str]
    series: dict[str, list[float | None]] = field(default_factory=dict)
    repeat_indices: list[int] = field(default_factory=list)
    repeat_series: dict[str, dict[str, list[float | None]]] = field(default_factory=dict)


def compare_snapshots(a: Snapshot, b: Snapshot) -> list[MetricDelta]:
    """Compare the summaries of *a* (base) and *b*."""
    rows = []
    for metric in COMPARE_METRICS:
        value_a = getattr(a.summary, metric.key)
        value_b = getattr(b.summary, metric.key)
        rows.append(
            MetricDelta(
                metric=metric.key,
                label=metric.label,
                value_a=value_a,
                value_b=value_b,
                delta_percent=delta_percent(value_a, value_b),
                lower_is_better=metric.lower_is_better,
            )
        )
    return rows


def _repeat_means(runs: Iterable[CompactRun], stage: str, indices: Sequence[int]) -> list[float | None]:
    groups: dict[int, list[float]] = {}
    for run in runs:
        if not run.is_successful:
            continue
        value = run.stage_value(stage)
        if value is not None:
            groups.setdefault(run.repeat_index, []).append(value)
    return [mean(groups.get(index, [])) for index in indices]


def multi_compare(snapshots: Sequence[Snapshot], metric_keys: Sequence[str] | None = None) -> MultiCompare:
    """Build grouped summary and per-repeat series for two or more snapshots.

    Raises:
        ValueError: With fewer than two snapshots or an unknown metric key.
    """
    if len(snapshots) < 2:
        raise ValueError("multi-compare needs at least two snapshots")
    keys = list(metric_keys) if metric_keys else [m.key for m in COMPARE_METRICS]
    unknown = [k for k in keys if k not in _METRICS_BY_KEY]
    if unknown:
        raise ValueError(f"unknown metric keys: {unknown}")

    indices = sorted({run.repeat_index for snap in snapshots for run in snap.runs if run.repeat_index > 0})
    result = MultiCompare(
        snapshot_ids=[s.id for s in snapshots],
        labels=[s.label for s in snapshots],
        metrics=keys,
        repeat_indices=indices,
    )
    for key in keys:
        result.series[key] = [getattr(s.summary, key) for s in snapshots]
        stage = _METRICS_BY_KEY[key].repeat_stage
        if stage is not None:
            result.repeat_series[key] = {s.id: _repeat_means(s.runs, stage, indices) for s in snapshots}
    return result


# ── building snapshots ──


def compact_run(run: Run) -> CompactRun:
    """Reduce *run* to what snapshots keep, storing per-stage RTFx."""
    metrics = None
    if run.metrics is not None:
        m = run.metrics
        extras = {"token_count": m.get("token_count")} if m.get("token_count") is not None else {}
        metrics = StageMetrics(
            preprocess_ms=m.preprocess_ms,
            encode_ms=m.encode_ms,
            decode_ms=m.decode_ms,
            tokenize_ms=m.tokenize_ms,
            total_ms=m.total_ms,
            rtf=m.rtf,
            encode_rtfx=run.rtfx("encode_ms"),
            decode_rtfx=run.rtfx("decode_ms"),
            preprocessor_backend=m.preprocessor_backend,
            **extras,
        )
    return CompactRun(
        id=run.id,
        sample_key=run.sample_key,
        repeat_index=run.repeat_index,
        exact_match_to_first=run.exact_match_to_first,
        similarity_to_first=run.similarity_to_first,
        audio_duration_sec=run.audio_duration_sec,
        metrics=metrics,
        error=run.error,
    )


def default_label(settings: BenchmarkSettings, now: datetime | None = None) -> str:
    """``model | backend | e:q d:q | preproc:x | seed:s | YYYY-MM-DD HH:MM``."""
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M")
    seed = settings.random_seed if settings.randomize else "off"
    return (
        f"{settings.model_key} | {settings.backend} | e:{settings.encoder_quant} d:{settings.decoder_quant}"
        f" | preproc:{settings.preprocessor_backend} | seed:{seed} | {stamp}"
    )


def build_snapshot(
    runs: Sequence[Run],
    settings: BenchmarkSettings,
    *,
    hardware_profile: Mapping[str, Any] | HardwareProfile | None = None,
    hardware_summary: HardwareSummary | None = None,
    label: str | None = None,
) -> Snapshot:
    """Summarize and compact *runs* into a new, detached snapshot."""
    profile = hardware_profile.to_json_dict() if isinstance(hardware_profile, HardwareProfile) else hardware_profile
    return Snapshot(
        id=new_id("snap"),
        created_at=utc_now_iso(),
        label=(label or "").strip() or default_label(settings),
        settings=settings.model_copy(deep=True),
        summary=batch_summary(runs),
        hardware_profile=dict(profile) if profile is not None else None,
        hardware_summary=hardware_summary.model_copy(deep=True) if hardware_summary else None,
        runs=[compact_run(run) for run in runs],
    )


class SnapshotStore:
    """Bounded, newest-first snapshot list in a key/value store.

    Args:
        kv: Backing store.
        key: Key the list is persisted under.
        max_snapshots: Capacity; the oldest snapshots are evicted.
    """

    def __init__(self, kv: KeyValueStore, key: str, max_snapshots: int = 20) -> None:
        if max_snapshots < 1:
            raise ValueError("max_snapshots must be >= 1")
        self.kv = kv
        self.key = key
        self.max_snapshots = max_snapshots

    async def load(self) -> list[Snapshot]:
        """Read the stored list; unreadable entries are skipped."""
        raw = await self.kv.get(self.key)
        if not isinstance(raw, list):
            return []
        snapshots = []
        for item in raw:
            try:
                snapshots.append(Snapshot.model_validate(item))
            except ValidationError as exc:
                logger.warning("snapshot_unreadable", error=str(exc).splitlines()[0])
        return snapshots

    async def _persist(self, snapshots: Sequence[Snapshot]) -> None:
        await self.kv.set(self.key, [s.to_json_dict() for s in snapshots])

    async def list(self) -> list[Snapshot]:
        return await self.load()

    async def get(self, snapshot_id: str) -> Snapshot:
        """Return the snapshot with *snapshot_id*.

        Raises:
            SnapshotNotFoundError: If it does not exist.
        """
        for snapshot in await self.load():
            if snapshot.id == snapshot_id:
                return snapshot
        raise SnapshotNotFoundError(snapshot_id)

    async def add(self, snapshot: Snapshot) -> Snapshot:
        """Prepend *snapshot*, evicting beyond capacity."""
        snapshots = [snapshot, *await self.load()][: self.max_snapshots]
        await self._persist(snapshots)
        logger.info("snapshot_saved", snapshot_id=snapshot.id, label=snapshot.label, runs=len(snapshot.runs))
        return snapshot.model_copy(deep=True)

    async def save(
        self,
        runs: Sequence[Run],
        settings: BenchmarkSettings,
        *,
        hardware_profile: Mapping[str, Any] | HardwareProfile | None = None,
        hardware_summary: HardwareSummary | None = None,
        label: str | None = None,
    ) -> Snapshot:
        """Snapshot *runs* and store it.

        Raises:
            ValueError: If *runs* is empty.
        """
        if not runs:
            raise ValueError("No runs to snapshot")
        snapshot = build_snapshot(
            runs,
            settings,
            hardware_profile=hardware_profile,
            hardware_summary=hardware_summary,
            label=label,
        )
        return await self.add(snapshot)

    async def delete(self, snapshot_id: str) -> bool:
        """Remove *snapshot_id*; ``False`` if it was not stored."""
        snapshots = await self.load()
        kept = [s for s in snapshots if s.id != snapshot_id]
        if len(kept) == len(snapshots):
            return False
        await self._persist(kept)
        logger.info("snapshot_deleted", snapshot_id=snapshot_id)
        return True

    async def compare(self, a_id: str, b_id: str) -> list[MetricDelta]:
        return compare_snapshots(await self.get(a_id), await self.get(b_id))

    async def multi_compare(self, snapshot_ids: Sequence[str], metric_keys: Sequence[str] | None = None) -> MultiCompare:
        return multi_compare([await self.get(i) for i in snapshot_ids], metric_keys)

    async def import_export(self, payload: Mapping[str, Any] | BatchExport, label: str | None = None) -> Snapshot:
        """Store a snapshot synthesized from a JSON batch export.

        Raises:
            SnapshotImportError: If *payload* is not a valid export or has no runs.
        """
        if isinstance(payload, BatchExport):
            export = payload
        else:
            try:
                export = BatchExport.model_validate(payload)
            except ValidationError as exc:
                raise SnapshotImportError(f"invalid batch export: {exc}") from exc
        if not export.runs:
            raise SnapshotImportError("batch export has no runs")
        if export.skipped_runs:
            logger.warning("import_runs_skipped", skipped=export.skipped_runs, kept=len(export.runs))
        snapshot = build_snapshot(
            export.runs,
            export.settings,
            hardware_profile=export.hardware_profile,
            hardware_summary=export.hardware_summary,
            label=label or f"imported | {default_label(export.settings)}",
        )
        return await self.add(snapshot)
