"""
Trial executor for ASR Bench Lab.

Runs one benchmark batch: for each prepared sample, acquire the audio
once, run the warm-up inferences (results discarded), then the measured
repeats. The first successful repeat's normalized transcription is the
sample's baseline; every repeat is scored against it.

Failures are isolated. A sample whose audio cannot be acquired yields a
single error run with ``repeat_index == 0``; a failed repeat yields an
error run and the remaining repeats still execute. Stop requests are
honoured before each sample, warm-up and repeat; an inference that is
already running is allowed to finish.
"""

from __future__ import annotations

import enum
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from analysis.stats import normalize_text, text_similarity
from bench_common.config import BenchmarkSettings
from bench_common.metrics import BATCHES_TOTAL, SAMPLE_FAILURES_TOTAL, observe_trial
from bench_common.models import HardwareSummary, Run, Sample, StageMetrics
from bench_common.utils import epoch_ms, utc_now_iso

from harness.audio import AudioDecodeError, AudioFetchError, AudioLoader, DecodedAudio
from harness.backend import ASRBackend, TranscribeOptions, TranscriptionResult
from harness.run_log import RunLog
from harness.session import ModelSession, SessionNotReadyError

logger = structlog.get_logger()


class BatchPreconditionError(Exception):
    """The batch cannot start (no verified model, bad counts, no samples)."""


class BatchAlreadyRunningError(Exception):
    """A batch is already in progress on this executor."""


class ExecutorState(str, enum.Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    FETCHING = "fetching"
    WARMING_UP = "warming_up"
    MEASURING = "measuring"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Progress:
    """Progress of the running batch in measured trials."""

    current: int
    total: int
    stage: str


@dataclass
class BatchResult:
    """Outcome of :meth:`TrialExecutor.run_batch`.

    Attributes:
        batch_id: Identifier shared by the batch's runs.
        runs: Runs emitted by this batch, in completion order.
        planned_trials: ``len(samples) * repeat_count``.
        completed_trials: Measured trials attempted (successful or not).
        error_count: Error runs, decode placeholders included.
        stopped: ``True`` if a stop request ended the batch early.
    """

    batch_id: str
    runs: list[Run] = field(default_factory=list)
    planned_trials: int = 0
    completed_trials: int = 0
    error_count: int = 0
    stopped: bool = False

    @property
    def status(self) -> str:
        return "stopped" if self.stopped else "complete"


ProgressCallback = Callable[[Progress], None]


class TrialExecutor:
    """Executes benchmark batches against a verified model session.

    Args:
        session: Model session; must be ready when a batch starts.
        audio_loader: Clip loader (decoded clips are cached by URL and rate).
        run_log: Log the batch's runs are appended to.
        settings: Benchmark settings copied onto every run.
        hardware: Hardware labels copied onto every run.
        on_progress: Called with a :class:`Progress` after each unit of work.
    """

    def __init__(
        self,
        session: ModelSession,
        audio_loader: AudioLoader,
        run_log: RunLog,
        settings: BenchmarkSettings,
        *,
        hardware: HardwareSummary | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.session = session
        self.audio_loader = audio_loader
        self.run_log = run_log
        self.settings = settings
        self.hardware = hardware or HardwareSummary()
        self.on_progress = on_progress
        self.state = ExecutorState.IDLE
        self.progress = Progress(0, 0, "")
        self._stop_requested = False
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def request_stop(self) -> None:
        """Ask the running batch to stop before its next unit of work."""
        if self._running:
            self._stop_requested = True
            logger.info("batch_stop_requested")

    def _report(self, current: int, total: int, stage: str) -> None:
        self.progress = Progress(max(current, self.progress.current), total, stage)
        if self.on_progress is not None:
            self.on_progress(self.progress)

    # ── run records ──

    def _common_fields(self, batch_id: str, sample: Sample, order: int, split: str) -> dict[str, Any]:
        s = self.settings
        hw = self.hardware
        return {
            "batch_id": batch_id,
            "sample_key": sample.key(split),
            "sample_order": order,
            "row_index": sample.row_index,
            "speaker": sample.speaker,
            "gender": sample.gender,
            "speed": sample.speed,
            "volume": sample.volume,
            "reference_text": sample.reference_text,
            "model_key": s.model_key,
            "backend": s.backend,
            "encoder_quant": s.encoder_quant,
            "decoder_quant": s.decoder_quant,
            "preprocessor": s.preprocessor,
            "preprocessor_backend": s.preprocessor_backend,
            "hardware_cpu": hw.cpu_label,
            "hardware_gpu": hw.gpu_label,
            "hardware_gpu_model": hw.gpu_model_label,
            "hardware_gpu_cores": hw.gpu_cores_label,
            "hardware_vram": hw.vram_label,
            "hardware_memory": hw.system_memory_label,
            "hardware_accelerator": hw.accelerator_label,
        }

    @staticmethod
    def _complete_metrics(
        metrics: StageMetrics | None,
        elapsed_ms: float,
        duration_sec: float,
    ) -> StageMetrics:
        """Fill ``total_ms`` from wall-clock time and ``rtf`` when the backend omitted them."""
        metrics = metrics or StageMetrics()
        update: dict[str, Any] = {}
        total = metrics.total_ms
        if total is None:
            total = elapsed_ms
            update["total_ms"] = total
        if metrics.rtf is None and total > 0 and duration_sec > 0:
            update["rtf"] = duration_sec * 1000.0 / total
        return metrics.model_copy(update=update) if update else metrics

    # ── batch loop ──

    def _check_preconditions(self, samples: Sequence[Sample], repeat_count: int, warmup_count: int) -> ASRBackend:
        if self._running:
            raise BatchAlreadyRunningError("A benchmark batch is already running")
        self.session.invalidate(self.settings)
        try:
            model = self.session.require_ready()
        except SessionNotReadyError as exc:
            raise BatchPreconditionError(str(exc)) from exc
        if repeat_count < 1:
            raise BatchPreconditionError("repeat_count must be at least 1")
        if warmup_count < 0:
            raise BatchPreconditionError("warmup_count must not be negative")
        if not samples:
            raise BatchPreconditionError("No samples prepared")
        return model

    async def _acquire(self, sample: Sample) -> DecodedAudio:
        if not sample.audio_url:
            raise AudioFetchError("sample has no audio URL")
        return await self.audio_loader.load(sample.audio_url)

    async def run_batch(
        self,
        samples: Sequence[Sample],
        repeat_count: int | None = None,
        warmup_count: int | None = None,
        split: str | None = None,
    ) -> BatchResult:
        """Run warm-ups and measured repeats over *samples*.

        Args:
            samples: Prepared samples, processed in order.
            repeat_count: Measured trials per sample (settings default).
            warmup_count: Discarded trials per sample (settings default).
            split: Split name used in sample keys (settings default).

        Returns:
            A :class:`BatchResult`; its runs are also in :attr:`run_log`.

        Raises:
            BatchAlreadyRunningError: If a batch is in progress.
            BatchPreconditionError: If no verified model is loaded or the
                counts are invalid.
        """
        repeat_count = self.settings.repeat_count if repeat_count is None else repeat_count
        warmup_count = self.settings.warmups if warmup_count is None else warmup_count
        split = split or self.settings.dataset_split

        model = self._check_preconditions(samples, repeat_count, warmup_count)
        self._running = True
        self._stop_requested = False
        self.state = ExecutorState.PREPARING

        batch_id = f"batch-{epoch_ms()}"
        total = len(samples) * repeat_count
        result = BatchResult(batch_id=batch_id, planned_trials=total)
        self.progress = Progress(0, total, "")
        log = logger.bind(batch_id=batch_id)
        log.info("batch_started", samples=len(samples), repeats=repeat_count, warmups=warmup_count, planned=total)

        # Trials skipped because their sample's audio failed; progress only.
        skipped = 0

        def emit(run: Run) -> None:
            result.runs.append(run)
            self.run_log.append(run)
            if run.error is not None:
                result.error_count += 1

        try:
            for order, sample in enumerate(samples):
                if self._stop_requested:
                    break
                common = self._common_fields(batch_id, sample, order, split)
                sample_key = common["sample_key"]
                sample_log = log.bind(sample_key=sample_key)

                self.state = ExecutorState.FETCHING
                self._report(result.completed_trials + skipped, total, f"Decoding {sample_key}")
                try:
                    audio = await self._acquire(sample)
                except (AudioFetchError, AudioDecodeError) as exc:
                    sample_log.warning("sample_audio_failed", error=str(exc))
                    SAMPLE_FAILURES_TOTAL.inc()
                    now = utc_now_iso()
                    emit(
                        Run(
                            id=f"{batch_id}-{sample_key}-decode-error",
                            repeat_index=0,
                            audio_duration_sec=None,
                            error=f"Decode error: {exc}",
                            started_at=now,
                            finished_at=now,
                            **common,
                        )
                    )
                    skipped += repeat_count
                    self._report(result.completed_trials + skipped, total, f"Skipped {sample_key}")
                    continue

                self.state = ExecutorState.WARMING_UP
                warm_options = TranscribeOptions(enable_profiling=self.settings.enable_profiling)
                for w in range(1, warmup_count + 1):
                    if self._stop_requested:
                        break
                    self._report(
                        result.completed_trials + skipped, total, f"Warmup {w}/{warmup_count} for {sample_key}"
                    )
                    try:
                        await model.transcribe(audio.pcm, audio.sample_rate, warm_options)
                    except Exception as exc:  # noqa: BLE001
                        sample_log.warning("warmup_failed", warmup=w, error=str(exc))

                self.state = ExecutorState.MEASURING
                measure_options = TranscribeOptions(
                    enable_profiling=self.settings.enable_profiling,
                    return_confidences=True,
                    return_timestamps=True,
                )
                baseline: str | None = None
                for r in range(1, repeat_count + 1):
                    if self._stop_requested:
                        break
                    self._report(result.completed_trials + skipped, total, f"Run {r}/{repeat_count} for {sample_key}")
                    started_at = utc_now_iso()
                    t0 = time.perf_counter()
                    try:
                        output: TranscriptionResult = await model.transcribe(
                            audio.pcm, audio.sample_rate, measure_options
                        )
                        elapsed_ms = (time.perf_counter() - t0) * 1000.0
                        metrics = self._complete_metrics(output.metrics, elapsed_ms, audio.duration_sec)
                        normalized = normalize_text(output.text)
                        if baseline is None:
                            baseline = normalized
                        run = Run(
                            id=f"{batch_id}-{sample_key}-run-{r}",
                            repeat_index=r,
                            audio_duration_sec=audio.duration_sec,
                            transcription=output.text,
                            exact_match_to_first=baseline == normalized,
                            similarity_to_first=text_similarity(baseline, normalized),
                            metrics=metrics,
                            started_at=started_at,
                            finished_at=utc_now_iso(),
                            **common,
                        )
                        observe_trial("success", metrics.total_ms)
                    except Exception as exc:  # noqa: BLE001
                        sample_log.warning("trial_failed", repeat=r, error=str(exc))
                        run = Run(
                            id=f"{batch_id}-{sample_key}-run-{r}-error",
                            repeat_index=r,
                            audio_duration_sec=audio.duration_sec,
                            error=f"Transcribe error: {exc}",
                            started_at=started_at,
                            finished_at=utc_now_iso(),
                            **common,
                        )
                        observe_trial("error")
                    emit(run)
                    result.completed_trials += 1
                    self._report(result.completed_trials + skipped, total, f"Run {r}/{repeat_count} for {sample_key}")

            result.stopped = self._stop_requested
        finally:
            self._running = False
            self._stop_requested = False
            self.state = ExecutorState.STOPPED if result.stopped else ExecutorState.IDLE

        self._report(result.completed_trials + skipped, total, "Stopped" if result.stopped else "Complete")
        BATCHES_TOTAL.labels(status=result.status).inc()
        log.info(
            "batch_finished",
            status=result.status,
            completed=result.completed_trials,
            planned=total,
            errors=result.error_count,
            runs=len(result.runs),
        )
        return result
