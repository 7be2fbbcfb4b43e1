"""
Tests for the trial executor.

A scripted backend is loaded through a real :class:`ModelSession`; the
first scripted output is always consumed by verification.
"""

from __future__ import annotations

from typing import Any

import pytest

from harness_fakes import FakeAudioLoader, make_backend_class, make_samples

from bench_common.config import DEFAULT_VERIFICATION_PHRASE, BenchmarkSettings, Settings
from bench_common.models import HardwareSummary, StageMetrics
from harness.backend import TranscriptionResult
from harness.executor import (
    BatchPreconditionError,
    ExecutorState,
    Progress,
    TrialExecutor,
)
from harness.run_log import RunLog
from harness.session import ModelSession


async def _executor(
    settings: Settings,
    bench: BenchmarkSettings,
    script: list[Any] | None = None,
    loader: FakeAudioLoader | None = None,
    **backend_attrs: Any,
) -> TrialExecutor:
    backend_cls = make_backend_class(script=[DEFAULT_VERIFICATION_PHRASE, *(script or [])], **backend_attrs)
    session = ModelSession(backend_cls, FakeAudioLoader(), settings)
    await session.load(bench)
    return TrialExecutor(session, loader or FakeAudioLoader(), RunLog(), bench)


# ---------------------------------------------------------------------------
# Batch loop
# ---------------------------------------------------------------------------


class TestRunBatch:

    async def test_full_batch(self, settings: Settings, bench_settings: BenchmarkSettings) -> None:
        executor = await _executor(settings, bench_settings)
        result = await executor.run_batch(make_samples(3))

        assert result.status == "complete"
        assert result.planned_trials == 9
        assert result.completed_trials == 9
        assert result.error_count == 0
        assert len(result.runs) == 9
        assert list(executor.run_log) == result.runs
        first = result.runs[0]
        assert first.id == f"{result.batch_id}-test:0-run-1"
        assert first.batch_id == result.batch_id
        assert first.sample_order == 0
        assert first.audio_duration_sec == pytest.approx(2.0)
        assert first.reference_text == "reference 0"
        assert first.encoder_quant == "int8"
        assert all(run.exact_match_to_first for run in result.runs)
        assert [run.repeat_index for run in result.runs[:3]] == [1, 2, 3]
        assert executor.state is ExecutorState.IDLE

    async def test_warmups_are_discarded(self, settings: Settings, bench_settings: BenchmarkSettings) -> None:
        executor = await _executor(settings, bench_settings, script=[RuntimeError("warm-up oom")])
        result = await executor.run_batch(make_samples(1), repeat_count=2, warmup_count=1)

        model = executor.session.model
        assert len(model.calls) == 1 + 1 + 2
        warmup_options = model.calls[1]
        assert warmup_options.return_timestamps is False
        assert model.calls[2].return_timestamps is True
        assert [run.repeat_index for run in result.runs] == [1, 2]
        assert result.error_count == 0

    async def test_runs_carry_hardware_labels(self, settings: Settings, bench_settings: BenchmarkSettings) -> None:
        executor = await _executor(settings, bench_settings)
        executor.hardware = HardwareSummary(cpu_label="Test CPU (8 logical cores)", accelerator_label="Yes (cuda)")
        result = await executor.run_batch(make_samples(1), repeat_count=1)
        assert result.runs[0].hardware_cpu == "Test CPU (8 logical cores)"
        assert result.runs[0].hardware_accelerator == "Yes (cuda)"

    async def test_log_accumulates_across_batches(self, settings: Settings, bench_settings: BenchmarkSettings) -> None:
        """Every run of every batch lands in the shared log, in emission order."""
        executor = await _executor(settings, bench_settings)
        first = await executor.run_batch(make_samples(2), repeat_count=2)
        second = await executor.run_batch(make_samples(3), repeat_count=1, warmup_count=0)

        log = executor.run_log
        assert len(first.runs) == 4
        assert len(second.runs) == 3
        assert len(log) == len(first.runs) + len(second.runs)
        assert list(log) == first.runs + second.runs

        log.clear()
        assert len(log) == 0
        assert list(log) == []


class TestBaseline:

    async def test_scored_against_first_repeat(self, settings: Settings, bench_settings: BenchmarkSettings) -> None:
        script = ["warm", "Hello world", "hello, world!", "hello word"]
        executor = await _executor(settings, bench_settings, script=script)
        result = await executor.run_batch(make_samples(1))

        assert [run.exact_match_to_first for run in result.runs] == [True, True, False]
        assert result.runs[0].similarity_to_first == 1.0
        assert result.runs[2].similarity_to_first == pytest.approx(1 - 1 / 11)
        assert result.runs[1].transcription == "hello, world!"

    async def test_baseline_skips_failed_first_repeat(
        self, settings: Settings, bench_settings: BenchmarkSettings
    ) -> None:
        script = ["warm", RuntimeError("device lost"), "second try", "second try"]
        executor = await _executor(settings, bench_settings, script=script)
        result = await executor.run_batch(make_samples(1))

        failed, second, third = result.runs
        assert failed.id.endswith("-run-1-error")
        assert failed.error == "Transcribe error: device lost"
        assert failed.metrics is None
        assert second.exact_match_to_first is True
        assert third.exact_match_to_first is True


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


class TestIsolation:

    async def test_decode_failure_yields_placeholder(
        self, settings: Settings, bench_settings: BenchmarkSettings
    ) -> None:
        samples = make_samples(3)
        loader = FakeAudioLoader(failing={samples[1].audio_url})
        executor = await _executor(settings, bench_settings, loader=loader)
        result = await executor.run_batch(samples)

        placeholders = [run for run in result.runs if run.repeat_index == 0]
        assert len(placeholders) == 1
        placeholder = placeholders[0]
        assert placeholder.id == f"{result.batch_id}-test:1-decode-error"
        assert placeholder.error.startswith("Decode error: cannot decode")
        assert placeholder.audio_duration_sec is None
        assert len([run for run in result.runs if run.sample_key == "test:2"]) == 3
        assert result.completed_trials == 6
        assert result.error_count == 1
        assert executor.progress.current == executor.progress.total == 9

    async def test_transcribe_failure_does_not_stop_sample(
        self, settings: Settings, bench_settings: BenchmarkSettings
    ) -> None:
        script = ["warm", "a", RuntimeError("oom"), "a"]
        executor = await _executor(settings, bench_settings, script=script)
        result = await executor.run_batch(make_samples(2))

        ids = [run.id.removeprefix(result.batch_id + "-") for run in result.runs]
        assert ids[:3] == ["test:0-run-1", "test:0-run-2-error", "test:0-run-3"]
        assert len(ids) == 6
        assert result.error_count == 1
        assert result.completed_trials == 6

    async def test_missing_total_is_measured(self, settings: Settings, bench_settings: BenchmarkSettings) -> None:
        script = [
            "warm",
            TranscriptionResult(text="ok", metrics=StageMetrics(decode_ms=5.0)),
            TranscriptionResult(text="ok"),
        ]
        executor = await _executor(settings, bench_settings, script=script)
        result = await executor.run_batch(make_samples(1), repeat_count=2)

        for run in result.runs:
            assert run.error is None
            assert run.metrics is not None
            assert run.metrics.total_ms is not None
            assert run.metrics.total_ms >= 0.0
        assert result.runs[0].metrics.decode_ms == 5.0


# ---------------------------------------------------------------------------
# Progress and stop
# ---------------------------------------------------------------------------


class TestProgress:

    async def test_monotonic_and_complete(self, settings: Settings, bench_settings: BenchmarkSettings) -> None:
        seen: list[Progress] = []
        samples = make_samples(3)
        loader = FakeAudioLoader(failing={samples[0].audio_url})
        executor = await _executor(settings, bench_settings, loader=loader)
        executor.on_progress = seen.append
        await executor.run_batch(samples)

        currents = [p.current for p in seen]
        assert currents == sorted(currents)
        assert all(p.total == 9 for p in seen)
        assert seen[-1] == Progress(9, 9, "Complete")
        stages = [p.stage for p in seen]
        assert "Skipped test:0" in stages
        assert "Warmup 1/1 for test:1" in stages
        assert "Run 3/3 for test:2" in stages


class TestStop:

    async def test_stop_finishes_current_trial(self, settings: Settings, bench_settings: BenchmarkSettings) -> None:
        holder: dict[str, TrialExecutor] = {}

        def stop_after_first_measured(backend, options) -> None:
            if options.return_timestamps:
                holder["executor"].request_stop()

        executor = await _executor(settings, bench_settings, on_transcribe=stop_after_first_measured)
        holder["executor"] = executor
        seen: list[Progress] = []
        executor.on_progress = seen.append
        result = await executor.run_batch(make_samples(3))

        assert result.stopped is True
        assert result.status == "stopped"
        assert len(result.runs) == 1
        assert result.runs[0].error is None
        assert result.completed_trials == 1
        assert executor.state is ExecutorState.STOPPED
        assert seen[-1].stage == "Stopped"
        assert not executor.is_running

    async def test_stop_when_idle_is_ignored(self, settings: Settings, bench_settings: BenchmarkSettings) -> None:
        executor = await _executor(settings, bench_settings)
        executor.request_stop()
        result = await executor.run_batch(make_samples(1), repeat_count=1)
        assert result.stopped is False


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


class TestPreconditions:

    async def test_requires_loaded_model(
        self, backend_cls, settings: Settings, bench_settings: BenchmarkSettings
    ) -> None:
        session = ModelSession(backend_cls, FakeAudioLoader(), settings)
        executor = TrialExecutor(session, FakeAudioLoader(), RunLog(), bench_settings)
        with pytest.raises(BatchPreconditionError, match="Load and verify model first"):
            await executor.run_batch(make_samples(1))

    async def test_changed_runtime_settings_invalidate(
        self, settings: Settings, bench_settings: BenchmarkSettings
    ) -> None:
        executor = await _executor(settings, bench_settings)
        executor.settings = bench_settings.model_copy(update={"backend": "webgpu-hybrid"})
        with pytest.raises(BatchPreconditionError):
            await executor.run_batch(make_samples(1))
        assert executor.session.model is None

    @pytest.mark.parametrize(
        ("kwargs", "message"),
        [
            ({"repeat_count": 0}, "repeat_count"),
            ({"warmup_count": -1}, "warmup_count"),
        ],
    )
    async def test_invalid_counts(
        self, settings: Settings, bench_settings: BenchmarkSettings, kwargs: dict, message: str
    ) -> None:
        executor = await _executor(settings, bench_settings)
        with pytest.raises(BatchPreconditionError, match=message):
            await executor.run_batch(make_samples(1), **kwargs)
        assert len(executor.run_log) == 0

    async def test_no_samples(self, settings: Settings, bench_settings: BenchmarkSettings) -> None:
        executor = await _executor(settings, bench_settings)
        with pytest.raises(BatchPreconditionError, match="No samples"):
            await executor.run_batch([])
