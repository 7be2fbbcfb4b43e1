"""
Run data models for ASR Bench Lab.

Defines :class:`StageMetrics` (per-stage timings reported by the ASR
backend) and :class:`Run` (one measured trial outcome, or the placeholder
recorded when a sample's audio could not be acquired).
"""

from __future__ import annotations

from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from bench_common.models.base import CamelModel, finite_or_none

# Timed pipeline stages, in pipeline order.
TIMED_STAGES: tuple[str, ...] = ("preprocess_ms", "encode_ms", "decode_ms", "tokenize_ms")
STAGES: tuple[str, ...] = (*TIMED_STAGES, "total_ms", "rtf")
RTFX_STAGES: tuple[str, ...] = ("preprocess_ms", "encode_ms", "decode_ms")


def calc_rtfx(audio_duration_sec: float | None, stage_ms: float | None) -> float | None:
    """Return ``duration * 1000 / stage_ms`` or ``None`` when undefined."""
    duration = finite_or_none(audio_duration_sec)
    latency = finite_or_none(stage_ms)
    if duration is None or latency is None or duration <= 0 or latency <= 0:
        return None
    return duration * 1000.0 / latency


class StageMetrics(BaseModel):
    """Per-stage timing record returned by the ASR backend.

    Missing or non-finite timings are stored as ``None`` so aggregates can
    exclude them. Unknown keys (e.g. ``token_count``) are kept.

    Attributes:
        preprocess_ms: Feature extraction time.
        encode_ms: Encoder time.
        decode_ms: Autoregressive decoder/joiner time.
        tokenize_ms: Detokenization time.
        total_ms: End-to-end time.
        rtf: Real-time factor (audio duration / total time).
        preprocessor_backend: Preprocessor implementation that ran.
        encode_rtfx: Encoder-only real-time factor.
        decode_rtfx: Decoder-only real-time factor.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    preprocess_ms: float | None = None
    encode_ms: float | None = None
    decode_ms: float | None = None
    tokenize_ms: float | None = None
    total_ms: float | None = None
    rtf: float | None = None
    preprocessor_backend: str | None = None
    encode_rtfx: float | None = None
    decode_rtfx: float | None = None

    @field_validator(
        "preprocess_ms",
        "encode_ms",
        "decode_ms",
        "tokenize_ms",
        "total_ms",
        "rtf",
        "encode_rtfx",
        "decode_rtfx",
        mode="before",
    )
    @classmethod
    def _finite(cls, value: Any) -> float | None:
        return finite_or_none(value)

    def get(self, key: str) -> Any:
        """Return a timing or extra field by name (``None`` if absent)."""
        if key in type(self).model_fields:
            return getattr(self, key)
        return (self.model_extra or {}).get(key)


class Run(CamelModel):
    """One benchmark trial outcome.

    A run either failed (``error`` set, ``metrics`` ``None``) or succeeded
    (``error`` ``None``, ``metrics`` present with a finite ``total_ms``).
    Runs are immutable once created.

    Attributes:
        id: Unique run identifier, stable within its batch.
        batch_id: Batch that produced the run.
        sample_key: Source row as ``{split}:{row_index}``.
        sample_order: Position of the sample in the prepared list.
        row_index: Dataset row index.
        repeat_index: 1-based measured ordinal; 0 for decode-failure placeholders.
        audio_duration_sec: Clip duration, ``None`` when audio acquisition failed.
        reference_text: Dataset transcription.
        transcription: Backend output text (empty on failure).
        exact_match_to_first: Normalized output equals the baseline transcription.
        similarity_to_first: Edit-distance similarity to the baseline.
        metrics: Stage timings.
        error: Failure description.
        started_at: ISO timestamp when the trial started.
        finished_at: ISO timestamp when the trial finished.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    batch_id: str
    sample_key: str
    sample_order: int | None = None
    row_index: int | None = None
    repeat_index: int = Field(..., ge=0)
    audio_duration_sec: float | None = None
    speaker: str = ""
    gender: str = ""
    speed: Any = None
    volume: Any = None
    reference_text: str = ""
    transcription: str = ""
    exact_match_to_first: bool | None = None
    similarity_to_first: float | None = Field(default=None, ge=0.0, le=1.0)
    metrics: StageMetrics | None = None
    error: str | None = None

    # ── configuration snapshot ──
    model_key: str = ""
    backend: str = ""
    encoder_quant: str = ""
    decoder_quant: str = ""
    preprocessor: str = ""
    preprocessor_backend: str = ""

    # ── hardware snapshot ──
    hardware_cpu: str = ""
    hardware_gpu: str = ""
    hardware_gpu_model: str = ""
    hardware_gpu_cores: str = ""
    hardware_vram: str = ""
    hardware_memory: str = ""
    hardware_accelerator: str = Field(
        default="",
        validation_alias=AliasChoices("hardwareAccelerator", "hardware_accelerator", "hardwareWebgpu"),
    )

    started_at: str = ""
    finished_at: str = ""

    @field_validator("audio_duration_sec", mode="before")
    @classmethod
    def _finite_duration(cls, value: Any) -> float | None:
        return finite_or_none(value)

    @field_validator(
        "speaker",
        "gender",
        "reference_text",
        "transcription",
        "model_key",
        "backend",
        "encoder_quant",
        "decoder_quant",
        "preprocessor",
        "preprocessor_backend",
        "hardware_cpu",
        "hardware_gpu",
        "hardware_gpu_model",
        "hardware_gpu_cores",
        "hardware_vram",
        "hardware_memory",
        "hardware_accelerator",
        "started_at",
        "finished_at",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("error", mode="before")
    @classmethod
    def _blank_error(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value)

    @model_validator(mode="after")
    def _check_outcome(self) -> Run:
        if self.error is not None:
            if self.metrics is not None:
                raise ValueError("a failed run cannot carry metrics")
        elif self.metrics is None or self.metrics.total_ms is None:
            raise ValueError("a successful run needs metrics with a finite total_ms")
        return self

    @property
    def is_successful(self) -> bool:
        """``True`` when the trial produced finite timings."""
        return self.error is None and self.metrics is not None and self.metrics.total_ms is not None

    def stage_value(self, stage: str) -> float | None:
        """Return a stage timing, ``rtf`` or a derived ``*_rtfx`` value."""
        if self.metrics is None:
            return None
        if stage.endswith("_rtfx"):
            return self.rtfx(stage[: -len("_rtfx")] + "_ms")
        return finite_or_none(self.metrics.get(stage))

    def rtfx(self, stage: str) -> float | None:
        """Real-time factor of a single stage (``None`` when undefined)."""
        if self.metrics is None:
            return None
        return calc_rtfx(self.audio_duration_sec, self.metrics.get(stage))
