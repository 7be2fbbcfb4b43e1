"""
Run log export for ASR Bench Lab.

JSON exports carry the settings, the hardware probe and every run with
camelCase keys. CSV exports flatten each run to a fixed, versioned
column order (:data:`RUN_CSV_COLUMNS`) shared with the browser harness,
so spreadsheets built on either stay compatible.
"""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

import structlog

from bench_common.config import BenchmarkSettings
from bench_common.models import BatchExport, HardwareProfile, HardwareSummary, Run
from bench_common.utils import epoch_ms, utc_now_iso

logger = structlog.get_logger()

RUN_CSV_COLUMNS: tuple[str, ...] = (
    "batch_id",
    "started_at",
    "finished_at",
    "run_id",
    "sample_key",
    "sample_order",
    "sample_row_index",
    "repeat_index",
    "audio_duration_sec",
    "speaker",
    "gender",
    "speed",
    "volume",
    "transcription",
    "reference_text",
    "exact_match_first",
    "similarity_first",
    "preprocess_ms",
    "encode_ms",
    "decode_ms",
    "tokenize_ms",
    "total_ms",
    "rtf",
    "preprocessor_backend",
    "error",
    "model_key",
    "backend",
    "encoder_quant",
    "decoder_quant",
    "preprocessor",
    "preprocessor_backend_setting",
    "hardware_cpu",
    "hardware_gpu",
    "hardware_gpu_model",
    "hardware_gpu_cores",
    "hardware_vram",
    "hardware_memory",
    "hardware_webgpu",
)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def csv_escape(value: Any) -> str:
    """Render one cell; quote it when it holds ``"``, ``,``, ``\\n`` or ``\\r``."""
    text = _cell(value)
    if any(ch in text for ch in '",\n\r'):
        return '"' + text.replace('"', '""') + '"'
    return text


def flatten_run(run: Run) -> dict[str, Any]:
    """Map a run to the :data:`RUN_CSV_COLUMNS` layout."""
    m = run.metrics
    return {
        "batch_id": run.batch_id,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
        "run_id": run.id,
        "sample_key": run.sample_key,
        "sample_order": run.sample_order,
        "sample_row_index": run.row_index,
        "repeat_index": run.repeat_index,
        "audio_duration_sec": run.audio_duration_sec,
        "speaker": run.speaker,
        "gender": run.gender,
        "speed": run.speed,
        "volume": run.volume,
        "transcription": run.transcription,
        "reference_text": run.reference_text,
        "exact_match_first": run.exact_match_to_first,
        "similarity_first": run.similarity_to_first,
        "preprocess_ms": m.preprocess_ms if m else None,
        "encode_ms": m.encode_ms if m else None,
        "decode_ms": m.decode_ms if m else None,
        "tokenize_ms": m.tokenize_ms if m else None,
        "total_ms": m.total_ms if m else None,
        "rtf": m.rtf if m else None,
        "preprocessor_backend": m.preprocessor_backend if m else None,
        "error": run.error or "",
        "model_key": run.model_key,
        "backend": run.backend,
        "encoder_quant": run.encoder_quant,
        "decoder_quant": run.decoder_quant,
        "preprocessor": run.preprocessor,
        "preprocessor_backend_setting": run.preprocessor_backend,
        "hardware_cpu": run.hardware_cpu,
        "hardware_gpu": run.hardware_gpu,
        "hardware_gpu_model": run.hardware_gpu_model,
        "hardware_gpu_cores": run.hardware_gpu_cores,
        "hardware_vram": run.hardware_vram,
        "hardware_memory": run.hardware_memory,
        "hardware_webgpu": run.hardware_accelerator,
    }


def to_csv(rows: Iterable[Mapping[str, Any]], columns: Sequence[str] = RUN_CSV_COLUMNS) -> str:
    """Header line plus one line per row, ``\\n``-separated, no trailing newline."""
    lines = [",".join(columns)]
    lines.extend(",".join(csv_escape(row.get(col)) for col in columns) for row in rows)
    return "\n".join(lines)


def runs_to_csv(runs: Iterable[Run]) -> str:
    return to_csv(flatten_run(run) for run in runs)


def parse_csv(text: str) -> list[dict[str, str]]:
    """Parse CSV text produced by :func:`to_csv` into string-valued rows."""
    reader = csv.DictReader(io.StringIO(text, newline=""))
    return [dict(row) for row in reader]


def build_export(
    runs: Iterable[Run],
    settings: BenchmarkSettings,
    hardware_profile: HardwareProfile | None = None,
    hardware_summary: HardwareSummary | None = None,
) -> BatchExport:
    return BatchExport(
        generated_at=utc_now_iso(),
        settings=settings,
        hardware_profile=hardware_profile.to_json_dict() if hardware_profile else None,
        hardware_summary=hardware_summary,
        runs=list(runs),
    )


def default_filename(extension: str) -> str:
    return f"parakeet-benchmark-{epoch_ms()}.{extension}"


def write_json(export: BatchExport, path: str | Path) -> Path:
    """Write *export* as indented JSON to *path*."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(export.to_json_dict(), indent=2), encoding="utf-8")
    logger.info("export_written", path=str(target), format="json", runs=len(export.runs))
    return target


def write_csv(runs: Sequence[Run], path: str | Path) -> Path:
    """Write *runs* as CSV to *path*."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(runs_to_csv(runs), encoding="utf-8", newline="")
    logger.info("export_written", path=str(target), format="csv", runs=len(runs))
    return target
