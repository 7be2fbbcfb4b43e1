"""
Abstract base class for ASR backends in ASR Bench Lab.

Defines the :class:`ASRBackend` interface every implementation provides.
Loading is split in two steps so the session can retry with fp32 weights
when fp16 assets are missing or fail to compile: :meth:`fetch_assets`
resolves and downloads model files, :meth:`compile` builds a runnable
instance from them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any

import numpy as np

from bench_common.config import BenchmarkSettings
from bench_common.models import StageMetrics

FP16 = "fp16"
FP32 = "fp32"


@dataclass(frozen=True)
class ModelSpec:
    """What to load: model, runtime device and quantization."""

    model_key: str
    backend: str
    encoder_quant: str = FP32
    decoder_quant: str = FP32
    preprocessor: str = "nemo128"
    preprocessor_backend: str = "js"
    cpu_threads: int = 4

    @classmethod
    def from_settings(cls, settings: BenchmarkSettings) -> ModelSpec:
        return cls(
            model_key=settings.model_key,
            backend=settings.backend,
            encoder_quant=settings.encoder_quant,
            decoder_quant=settings.decoder_quant,
            preprocessor=settings.preprocessor,
            preprocessor_backend=settings.preprocessor_backend,
            cpu_threads=settings.cpu_threads,
        )

    @property
    def uses_fp16(self) -> bool:
        return FP16 in (self.encoder_quant, self.decoder_quant)

    def without_fp16(self) -> ModelSpec:
        """Return a copy with every fp16 component switched to fp32."""
        return replace(
            self,
            encoder_quant=FP32 if self.encoder_quant == FP16 else self.encoder_quant,
            decoder_quant=FP32 if self.decoder_quant == FP16 else self.decoder_quant,
        )


@dataclass
class ModelAssets:
    """Downloaded model files, with the quantization actually resolved.

    Attributes:
        spec: The request the assets were fetched for.
        encoder_quant: Resolved encoder quantization.
        decoder_quant: Resolved decoder quantization.
        files: Component name to local path or URL.
    """

    spec: ModelSpec
    encoder_quant: str
    decoder_quant: str
    files: dict[str, str] = field(default_factory=dict)

    @property
    def uses_fp16(self) -> bool:
        return FP16 in (self.encoder_quant, self.decoder_quant)


@dataclass(frozen=True)
class TranscribeOptions:
    enable_profiling: bool = True
    return_confidences: bool = False
    return_timestamps: bool = False


@dataclass(frozen=True)
class TranscriptionResult:
    """Backend output: utterance text and per-stage timings."""

    text: str
    metrics: StageMetrics | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TranscriptionResult:
        """Build from a loose ``{"utterance_text"|"text", "metrics"}`` payload."""
        text = payload.get("utterance_text", payload.get("text")) or ""
        metrics = payload.get("metrics")
        if isinstance(metrics, dict):
            metrics = StageMetrics.model_validate(metrics)
        return cls(text=str(text), metrics=metrics)


class ASRBackend(ABC):
    """Abstract base class that every ASR backend must implement.

    Subclasses provide the two loading classmethods plus
    :meth:`transcribe` and :meth:`release`. The :attr:`name` property
    returns the identifier used by the registry.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the backend identifier string (e.g. ``'synthetic'``)."""
        ...  # pragma: no cover

    @classmethod
    @abstractmethod
    async def fetch_assets(cls, spec: ModelSpec) -> ModelAssets:
        """Resolve and download the files for *spec*.

        Raises:
            Exception: Any failure; the session decides whether to retry.
        """
        ...  # pragma: no cover

    @classmethod
    @abstractmethod
    async def compile(cls, assets: ModelAssets) -> ASRBackend:
        """Build a ready-to-run instance from downloaded *assets*."""
        ...  # pragma: no cover

    @abstractmethod
    async def transcribe(
        self,
        pcm: np.ndarray,
        sample_rate: int,
        options: TranscribeOptions,
    ) -> TranscriptionResult:
        """Transcribe mono float32 *pcm* sampled at *sample_rate*.

        Raises:
            Exception: On inference failure; the executor records it.
        """
        ...  # pragma: no cover

    @abstractmethod
    async def release(self) -> None:
        """Free runtime resources (sessions, device buffers)."""
        ...  # pragma: no cover
