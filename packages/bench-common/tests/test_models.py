"""
Tests for bench-common shared data models.

Validates Pydantic model serialization, the run outcome invariant,
camelCase aliasing and derived RTFx values.
"""

from __future__ import annotations

import math

import pytest
from pydantic import ValidationError

from bench_common.models import (
    BatchExport,
    CompactRun,
    HardwareSummary,
    Run,
    Sample,
    StageMetrics,
    calc_rtfx,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _metrics(**overrides: float) -> StageMetrics:
    base = {
        "preprocess_ms": 20.0,
        "encode_ms": 100.0,
        "decode_ms": 150.0,
        "tokenize_ms": 2.0,
        "total_ms": 272.0,
        "rtf": 36.0,
    }
    base.update(overrides)
    return StageMetrics(**base)


def _ok_run(**overrides: object) -> Run:
    fields: dict[str, object] = {
        "id": "b-test:1-run-1",
        "batch_id": "b",
        "sample_key": "test:1",
        "repeat_index": 1,
        "audio_duration_sec": 10.0,
        "metrics": _metrics(),
    }
    fields.update(overrides)
    return Run(**fields)


# ===========================================================================
# StageMetrics
# ===========================================================================


class TestStageMetrics:

    def test_non_finite_values_become_none(self) -> None:
        m = StageMetrics(encode_ms=float("nan"), decode_ms="fast", total_ms=float("inf"))
        assert m.encode_ms is None
        assert m.decode_ms is None
        assert m.total_ms is None

    def test_extra_fields_are_kept(self) -> None:
        m = StageMetrics(total_ms=1.0, token_count=42)
        assert m.get("token_count") == 42
        assert m.get("missing") is None

    def test_is_frozen(self) -> None:
        m = _metrics()
        with pytest.raises(ValidationError):
            m.encode_ms = 1.0  # type: ignore[misc]


# ===========================================================================
# Run
# ===========================================================================


class TestRun:

    def test_successful_run(self) -> None:
        run = _ok_run()
        assert run.is_successful is True
        assert run.stage_value("decode_ms") == 150.0

    def test_failed_run_without_metrics(self) -> None:
        run = _ok_run(metrics=None, error="Decode error: boom", repeat_index=0)
        assert run.is_successful is False
        assert run.stage_value("decode_ms") is None

    def test_error_and_metrics_are_exclusive(self) -> None:
        with pytest.raises(ValidationError, match="cannot carry metrics"):
            _ok_run(error="Transcribe error: x")

    def test_success_requires_finite_total(self) -> None:
        with pytest.raises(ValidationError, match="finite total_ms"):
            _ok_run(metrics=StageMetrics(encode_ms=1.0))

    def test_blank_error_means_success(self) -> None:
        assert _ok_run(error="").error is None

    def test_negative_repeat_index_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _ok_run(repeat_index=-1)

    def test_rtfx_is_derived(self) -> None:
        run = _ok_run()
        assert run.rtfx("encode_ms") == pytest.approx(100.0)
        assert run.stage_value("decode_rtfx") == pytest.approx(10_000 / 150)

    def test_runs_are_immutable(self) -> None:
        run = _ok_run()
        with pytest.raises(ValidationError):
            run.transcription = "changed"  # type: ignore[misc]

    def test_camel_case_round_trip(self) -> None:
        run = _ok_run(hardware_accelerator="Yes")
        dumped = run.to_json_dict()
        assert dumped["batchId"] == "b"
        assert dumped["audioDurationSec"] == 10.0
        assert dumped["metrics"]["decode_ms"] == 150.0
        assert Run.model_validate(dumped) == run

    def test_accepts_browser_export_keys(self) -> None:
        run = Run.model_validate(
            {
                "id": "x",
                "batchId": "b",
                "sampleKey": "test:3",
                "repeatIndex": 2,
                "metrics": {"total_ms": 5, "preprocessor_backend": "js"},
                "error": None,
                "hardwareWebgpu": "Yes",
                "speed": None,
            }
        )
        assert run.hardware_accelerator == "Yes"
        assert run.metrics is not None and run.metrics.preprocessor_backend == "js"


# ===========================================================================
# Helpers and other records
# ===========================================================================


class TestCalcRtfx:

    def test_basic(self) -> None:
        assert calc_rtfx(2.0, 500.0) == pytest.approx(4.0)

    @pytest.mark.parametrize(
        ("duration", "stage_ms"),
        [(None, 10.0), (2.0, None), (0.0, 10.0), (2.0, 0.0), (math.nan, 1.0)],
    )
    def test_undefined(self, duration: float | None, stage_ms: float | None) -> None:
        assert calc_rtfx(duration, stage_ms) is None


class TestSample:

    def test_key(self) -> None:
        assert Sample(row_index=12, audio_url="u").key("test") == "test:12"

    def test_raw_excluded_from_dump(self) -> None:
        s = Sample(row_index=1, raw={"audio": "x"})
        assert "raw" not in s.model_dump()


class TestSnapshotRecords:

    def test_compact_run_stage_value(self) -> None:
        c = CompactRun(
            id="r",
            sample_key="k",
            repeat_index=1,
            metrics=StageMetrics(total_ms=10.0, encode_rtfx=3.5),
        )
        assert c.is_successful is True
        assert c.stage_value("encode_rtfx") == 3.5

    def test_hardware_summary_accepts_browser_label(self) -> None:
        h = HardwareSummary.model_validate({"cpuLabel": "8 logical cores", "webgpuLabel": "Yes"})
        assert h.accelerator_label == "Yes"

    def test_export_parses_runs(self) -> None:
        export = BatchExport.model_validate(
            {"generatedAt": "2026-01-01T00:00:00Z", "runs": [_ok_run().to_json_dict()]}
        )
        assert len(export.runs) == 1
        assert export.settings.repeat_count == 5
