"""
Command-line entry point for ASR Bench Lab.

Subcommands:

* ``run`` prepares samples, loads and verifies the model, executes one
  batch, writes the JSON (and optionally CSV) export and prints the
  analysis report.
* ``analyze`` prints the report of an existing JSON export.
* ``export-csv`` converts a JSON export to CSV.
* ``snapshot`` lists, saves, imports, deletes and compares snapshots.
* ``models`` lists the quantizations a model repository publishes.
* ``hardware`` prints the host hardware profile.

Benchmark settings persist between invocations in the configured
key/value store; flags given to ``run`` update them.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from analysis.report import build_report, load_export
from bench_common.config import BenchmarkSettings, Settings, get_settings
from bench_common.logging import configure_logging
from bench_common.storage import FileKeyValueStore, KeyValueStore, RedisKeyValueStore

from harness.audio import AudioLoader
from harness.dataset_client import DatasetClient, DatasetRequestError
from harness.executor import BatchPreconditionError, Progress, TrialExecutor
from harness.export import build_export, default_filename, write_csv, write_json
from harness.hardware import probe_hardware, summarize_hardware_profile
from harness.model_selection import ModelFileIndex, available_quant_modes, pick_preferred_quant
from harness.registry import BackendNotFoundError, get_backend_class, register_builtin_backends
from harness.run_log import RunLog
from harness.session import ModelLoadError, ModelSession
from harness.snapshots import (
    SnapshotImportError,
    SnapshotNotFoundError,
    SnapshotStore,
    build_snapshot,
    compare_snapshots,
    multi_compare,
)

logger = structlog.get_logger()

# CLI flag destination → BenchmarkSettings field.
_RUN_OVERRIDES = (
    "model_key",
    "backend",
    "encoder_quant",
    "decoder_quant",
    "preprocessor_backend",
    "cpu_threads",
    "dataset_id",
    "dataset_config",
    "dataset_split",
    "offset",
    "sample_count",
    "repeat_count",
    "warmups",
    "randomize",
    "random_seed",
    "enable_profiling",
)


# ── wiring ──


async def open_store(settings: Settings) -> KeyValueStore:
    """Build the configured key/value store."""
    if settings.kv_backend == "redis":
        store = RedisKeyValueStore(settings.redis_url)
        await store.connect()
        return store
    return FileKeyValueStore(Path(settings.data_dir) / "store.json")


async def load_benchmark_settings(store: KeyValueStore, key: str) -> BenchmarkSettings:
    """Read persisted benchmark settings; defaults when absent or invalid."""
    raw = await store.get(key)
    if not isinstance(raw, dict):
        return BenchmarkSettings()
    try:
        return BenchmarkSettings.model_validate(raw)
    except ValidationError as exc:
        logger.warning("benchmark_settings_invalid", error=str(exc).splitlines()[0])
        return BenchmarkSettings()


def apply_overrides(current: BenchmarkSettings, args: argparse.Namespace) -> BenchmarkSettings:
    """Merge non-``None`` CLI values into *current* (values are re-clamped)."""
    updates = {name: getattr(args, name) for name in _RUN_OVERRIDES if getattr(args, name, None) is not None}
    return BenchmarkSettings.model_validate({**current.model_dump(), **updates})


def _print_progress(progress: Progress) -> None:
    print(f"[{progress.current}/{progress.total}] {progress.stage}", file=sys.stderr)


@contextlib.contextmanager
def _stop_on_interrupt(executor: TrialExecutor) -> Iterator[None]:
    """Turn SIGINT into a cooperative stop request while a batch runs."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, executor.request_stop)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


# ── commands ──


async def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    store = await open_store(settings)
    try:
        bench = apply_overrides(await load_benchmark_settings(store, settings.settings_key), args)
        register_builtin_backends()
        backend_cls = get_backend_class(args.engine or settings.engine)

        async with DatasetClient(settings, store=store) as dataset:
            metadata = await dataset.load_metadata(
                bench.dataset_id, bench.dataset_config, bench.dataset_split, force_refresh=args.refresh
            )
            bench = bench.model_copy(update={"dataset_config": metadata.config, "dataset_split": metadata.split})
            await store.set(settings.settings_key, bench.model_dump(mode="json", by_alias=True))
            prepared = await dataset.prepare_samples(bench, metadata)

        profile = await probe_hardware()
        hardware = summarize_hardware_profile(profile)
        audio_loader = AudioLoader(settings)
        session = ModelSession(backend_cls, audio_loader, settings)
        run_log = RunLog()
        try:
            await session.load(bench)
            executor = TrialExecutor(
                session,
                audio_loader,
                run_log,
                bench,
                hardware=hardware,
                on_progress=None if args.quiet else _print_progress,
            )
            with _stop_on_interrupt(executor):
                result = await executor.run_batch(prepared.samples)
        finally:
            await session.close()
            await audio_loader.close()

        print(
            f"{'Stopped' if result.stopped else 'Completed'}. Added {len(result.runs)} rows "
            f"({result.completed_trials}/{result.planned_trials} trials, {result.error_count} errors).",
            file=sys.stderr,
        )

        export = build_export(run_log, bench, profile, hardware)
        json_path = Path(args.output) if args.output else Path(settings.data_dir) / "exports" / default_filename("json")
        write_json(export, json_path)
        if args.csv:
            write_csv(run_log.snapshot(), args.csv)
        if args.snapshot is not None:
            snapshots = SnapshotStore(store, settings.snapshots_key, settings.max_snapshots)
            saved = await snapshots.add(
                build_snapshot(
                    run_log.snapshot(),
                    bench,
                    hardware_profile=profile,
                    hardware_summary=hardware,
                    label=args.snapshot,
                )
            )
            print(f"Saved snapshot: {saved.label}", file=sys.stderr)

        if any(run.is_successful for run in run_log):
            print(
                build_report(
                    export,
                    bucket_width_s=settings.bucket_width_s,
                    r2_threshold=settings.duration_r2_threshold,
                )
            )
        return 0
    finally:
        await store.close()


def cmd_analyze(args: argparse.Namespace, settings: Settings) -> int:
    export = load_export(args.export)
    print(
        build_report(
            export,
            bucket_width_s=args.bucket_width or settings.bucket_width_s,
            r2_threshold=args.r2_threshold if args.r2_threshold is not None else settings.duration_r2_threshold,
        )
    )
    return 0


def cmd_export_csv(args: argparse.Namespace, settings: Settings) -> int:
    export = load_export(args.export)
    target = args.output or str(Path(args.export).with_suffix(".csv"))
    write_csv(export.runs, target)
    print(target)
    return 0


def _format_value(value: float | None) -> str:
    return "-" if value is None else f"{value:.3f}"


async def cmd_snapshot(args: argparse.Namespace, settings: Settings) -> int:
    store = await open_store(settings)
    snapshots = SnapshotStore(store, settings.snapshots_key, settings.max_snapshots)
    try:
        if args.snapshot_command == "list":
            for snap in await snapshots.list():
                s = snap.summary
                print(
                    f"{snap.id}  {snap.created_at}  runs={s.run_count} errors={s.error_count}"
                    f"  total={_format_value(s.total_mean)}  {snap.label}"
                )
        elif args.snapshot_command == "save":
            export = load_export(args.export)
            saved = await snapshots.add(
                build_snapshot(
                    export.runs,
                    export.settings,
                    hardware_profile=export.hardware_profile,
                    hardware_summary=export.hardware_summary,
                    label=args.label,
                )
            )
            print(saved.id)
        elif args.snapshot_command == "import":
            payload = json.loads(Path(args.export).read_text(encoding="utf-8"))
            saved = await snapshots.import_export(payload, label=args.label)
            print(saved.id)
        elif args.snapshot_command == "delete":
            if not await snapshots.delete(args.id):
                raise SnapshotNotFoundError(args.id)
        elif args.snapshot_command == "compare":
            selected = [await snapshots.get(i) for i in args.ids]
            if len(selected) == 2:
                a, b = selected
                print(f"A: {a.label}\nB: {b.label}")
                for row in compare_snapshots(a, b):
                    print(
                        f"{row.label.ljust(22)} {_format_value(row.value_a).rjust(10)}"
                        f" {_format_value(row.value_b).rjust(10)}  {row.describe()}"
                    )
            else:
                metrics = args.metrics.split(",") if args.metrics else None
                grouped = multi_compare(selected, metrics)
                for key in grouped.metrics:
                    values = "  ".join(_format_value(v) for v in grouped.series[key])
                    print(f"{key.ljust(22)} {values}")
                    for snap_id, series in grouped.repeat_series.get(key, {}).items():
                        points = " ".join(_format_value(v) for v in series)
                        print(f"  {snap_id}: {points}")
        return 0
    finally:
        await store.close()


_COMPONENTS = (("encoder", "encoder-model"), ("decoder", "decoder_joint-model"))


async def cmd_models(args: argparse.Namespace, settings: Settings) -> int:
    index = ModelFileIndex(settings)
    try:
        revisions = await index.list_revisions(args.repo)
        revision = args.revision or revisions[0]
        files = await index.list_files(args.repo, revision)
    finally:
        await index.close()
    print(f"{args.repo}@{revision}  ({len(files)} files; revisions: {', '.join(revisions)})")
    for component, base_name in _COMPONENTS:
        modes = available_quant_modes(files, base_name)
        preferred = pick_preferred_quant(modes, args.backend, component)
        print(f"{component.ljust(8)} {', '.join(modes).ljust(18)} default: {preferred}")
    return 0


async def cmd_hardware(args: argparse.Namespace, settings: Settings) -> int:
    profile = await probe_hardware()
    payload: dict[str, Any] = {
        "summary": summarize_hardware_profile(profile).to_json_dict(),
        "profile": profile.to_json_dict(),
    }
    print(json.dumps(payload, indent=2))
    return 0


# ── argument parsing ──


def _add_run_parser(sub: Any) -> None:
    run = sub.add_parser("run", help="Run one benchmark batch")
    run.add_argument("--engine", type=str, default=None, help="Backend name or module:Class")
    run.add_argument("--model", dest="model_key", type=str, default=None, help="Model key")
    run.add_argument("--backend", type=str, default=None, help="Runtime backend (e.g. webgpu-hybrid, wasm)")
    run.add_argument("--encoder-quant", type=str, default=None, choices=["fp32", "fp16", "int8"])
    run.add_argument("--decoder-quant", type=str, default=None, choices=["fp32", "fp16", "int8"])
    run.add_argument("--preprocessor-backend", type=str, default=None, help="Preprocessor implementation")
    run.add_argument("--cpu-threads", type=int, default=None)
    run.add_argument("--dataset", dest="dataset_id", type=str, default=None, help="Dataset id")
    run.add_argument("--config", dest="dataset_config", type=str, default=None, help="Dataset config")
    run.add_argument("--split", dest="dataset_split", type=str, default=None, help="Dataset split")
    run.add_argument("--offset", type=int, default=None, help="First row (sequential mode)")
    run.add_argument("--samples", dest="sample_count", type=int, default=None, help="Rows to benchmark")
    run.add_argument("--repeats", dest="repeat_count", type=int, default=None, help="Measured runs per row")
    run.add_argument("--warmups", type=int, default=None, help="Discarded runs per row")
    run.add_argument("--seed", dest="random_seed", type=str, default=None, help="Random sampling seed")
    run.add_argument("--randomize", dest="randomize", action="store_true", default=None)
    run.add_argument("--sequential", dest="randomize", action="store_false")
    run.add_argument("--no-profiling", dest="enable_profiling", action="store_false", default=None)
    run.add_argument("--refresh", action="store_true", help="Bypass the dataset metadata cache")
    run.add_argument("--output", type=str, default=None, help="JSON export path")
    run.add_argument("--csv", type=str, default=None, help="Also write a CSV export")
    run.add_argument("--snapshot", nargs="?", const="", default=None, metavar="LABEL", help="Save a snapshot")
    run.add_argument("--quiet", action="store_true", help="No progress lines")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="asr-bench", description="Benchmark ASR pipelines stage by stage")
    sub = parser.add_subparsers(dest="command", required=True)

    _add_run_parser(sub)

    analyze = sub.add_parser("analyze", help="Print the analysis report of a JSON export")
    analyze.add_argument("export", type=str)
    analyze.add_argument("--bucket-width", type=float, default=None, help="Duration bucket width (s)")
    analyze.add_argument("--r2-threshold", type=float, default=None, help="Duration-bound R² threshold")

    export_csv = sub.add_parser("export-csv", help="Convert a JSON export to CSV")
    export_csv.add_argument("export", type=str)
    export_csv.add_argument("-o", "--output", type=str, default=None)

    snapshot = sub.add_parser("snapshot", help="Manage snapshots")
    snap_sub = snapshot.add_subparsers(dest="snapshot_command", required=True)
    snap_sub.add_parser("list", help="List stored snapshots")
    save = snap_sub.add_parser("save", help="Snapshot the runs of a JSON export")
    save.add_argument("export", type=str)
    save.add_argument("--label", type=str, default=None)
    imp = snap_sub.add_parser("import", help="Import a JSON export produced elsewhere")
    imp.add_argument("export", type=str)
    imp.add_argument("--label", type=str, default=None)
    delete = snap_sub.add_parser("delete", help="Delete a snapshot")
    delete.add_argument("id", type=str)
    compare = snap_sub.add_parser("compare", help="Compare two or more snapshots")
    compare.add_argument("ids", nargs="+")
    compare.add_argument("--metrics", type=str, default=None, help="Comma-separated metric keys")

    models = sub.add_parser("models", help="List published quantizations of a model repository")
    models.add_argument("repo", type=str, help="Hub repository id")
    models.add_argument("--revision", type=str, default=None)
    models.add_argument("--backend", type=str, default="webgpu-hybrid", help="Runtime the defaults are picked for")

    sub.add_parser("hardware", help="Print the host hardware profile")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, configure logging and dispatch the subcommand."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json, service="asr-bench")

    try:
        if args.command == "run":
            return asyncio.run(cmd_run(args, settings))
        if args.command == "analyze":
            return cmd_analyze(args, settings)
        if args.command == "export-csv":
            return cmd_export_csv(args, settings)
        if args.command == "snapshot":
            if args.snapshot_command == "compare" and len(args.ids) < 2:
                raise ValueError("compare needs at least two snapshot ids")
            return asyncio.run(cmd_snapshot(args, settings))
        if args.command == "models":
            return asyncio.run(cmd_models(args, settings))
        return asyncio.run(cmd_hardware(args, settings))
    except (
        BackendNotFoundError,
        BatchPreconditionError,
        DatasetRequestError,
        ModelLoadError,
        SnapshotImportError,
        SnapshotNotFoundError,
        OSError,
        ValueError,
    ) as exc:
        logger.error("command_failed", command=args.command, error=str(exc))
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
