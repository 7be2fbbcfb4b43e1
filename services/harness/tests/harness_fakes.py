"""Fake backend and audio loader shared by the harness tests."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

import numpy as np

from bench_common.config import DEFAULT_VERIFICATION_PHRASE
from bench_common.models import Run, Sample, StageMetrics

from harness.audio import AudioDecodeError, DecodedAudio
from harness.backend import ASRBackend, ModelAssets, ModelSpec, TranscribeOptions, TranscriptionResult

SAMPLE_RATE = 16000


class FakeBackend(ASRBackend):
    """Scriptable backend. Use :func:`make_backend_class` for isolated state."""

    backend_name = "fake"
    fetch_failures: set[str] = set()
    compile_failures: set[str] = set()
    fetch_calls: list[ModelSpec] = []
    compile_calls: list[ModelAssets] = []
    instances: list[FakeBackend] = []
    script: list[Any] = []
    default_text: str = DEFAULT_VERIFICATION_PHRASE
    release_error: Exception | None = None
    on_transcribe: Callable[[FakeBackend, TranscribeOptions], None] | None = None

    def __init__(self, assets: ModelAssets) -> None:
        self.assets = assets
        self.calls: list[TranscribeOptions] = []
        self.released = 0
        self._script = list(type(self).script)

    @property
    def name(self) -> str:
        return self.backend_name

    @classmethod
    async def fetch_assets(cls, spec: ModelSpec) -> ModelAssets:
        cls.fetch_calls.append(spec)
        for quant in (spec.encoder_quant, spec.decoder_quant):
            if quant in cls.fetch_failures:
                raise RuntimeError(f"{quant} download failed")
        return ModelAssets(spec=spec, encoder_quant=spec.encoder_quant, decoder_quant=spec.decoder_quant)

    @classmethod
    async def compile(cls, assets: ModelAssets) -> FakeBackend:
        cls.compile_calls.append(assets)
        for quant in (assets.encoder_quant, assets.decoder_quant):
            if quant in cls.compile_failures:
                raise RuntimeError(f"{quant} compile failed")
        instance = cls(assets)
        cls.instances.append(instance)
        return instance

    async def transcribe(
        self,
        pcm: np.ndarray,
        sample_rate: int,
        options: TranscribeOptions,
    ) -> TranscriptionResult:
        self.calls.append(options)
        hook = type(self).on_transcribe
        if hook is not None:
            hook(self, options)
        outcome: Any = self._script.pop(0) if self._script else self.default_text
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, TranscriptionResult):
            return outcome
        duration = len(pcm) / sample_rate
        metrics = StageMetrics(
            preprocess_ms=1.3 * duration,
            encode_ms=2.0 * duration,
            decode_ms=5.0,
            tokenize_ms=0.5,
            total_ms=3.3 * duration + 5.5,
            rtf=duration * 1000.0 / (3.3 * duration + 5.5),
        )
        return TranscriptionResult(text=str(outcome), metrics=metrics)

    async def release(self) -> None:
        self.released += 1
        if type(self).release_error is not None:
            raise type(self).release_error


def make_backend_class(**overrides: Any) -> type[FakeBackend]:
    """Return a fresh :class:`FakeBackend` subclass with its own state."""
    attrs: dict[str, Any] = {
        "fetch_failures": set(),
        "compile_failures": set(),
        "fetch_calls": [],
        "compile_calls": [],
        "instances": [],
        "script": [],
    }
    attrs.update(overrides)
    return type("ScriptedBackend", (FakeBackend,), attrs)


class FakeAudioLoader:
    """Stands in for :class:`harness.audio.AudioLoader`.

    Every URL decodes to a clip of ``durations.get(url, 2.0)`` seconds;
    URLs listed in *failing* raise :class:`AudioDecodeError`.
    """

    def __init__(self, durations: dict[str, float] | None = None, failing: Iterable[str] = ()) -> None:
        self.durations = durations or {}
        self.failing = set(failing)
        self.loaded: list[str] = []

    async def load(self, url: str, target_rate: int | None = None) -> DecodedAudio:
        self.loaded.append(url)
        if url in self.failing:
            raise AudioDecodeError(f"cannot decode {url}")
        seconds = self.durations.get(url, 2.0)
        pcm = np.zeros(int(seconds * SAMPLE_RATE), dtype=np.float32)
        return DecodedAudio(pcm=pcm, sample_rate=SAMPLE_RATE)

    async def close(self) -> None:
        pass


def make_samples(count: int, prefix: str = "https://audio.test/clip") -> list[Sample]:
    return [
        Sample(row_index=i, audio_url=f"{prefix}{i}.wav", reference_text=f"reference {i}")
        for i in range(count)
    ]


def build_run(
    sample_key: str = "test:0",
    repeat_index: int = 1,
    *,
    duration: float | None = 4.0,
    encode: float = 80.0,
    decode: float = 40.0,
    error: str | None = None,
    **fields: Any,
) -> Run:
    """A finished run with fixed preprocess/tokenize timings, or a failed one."""
    metrics = None
    if error is None:
        total = 10.0 + encode + decode + 1.0
        metrics = StageMetrics(
            preprocess_ms=10.0,
            encode_ms=encode,
            decode_ms=decode,
            tokenize_ms=1.0,
            total_ms=total,
            rtf=duration * 1000.0 / total if duration else None,
        )
    values: dict[str, Any] = {
        "id": f"batch-7-{sample_key}-run-{repeat_index}" + ("-error" if error else ""),
        "batch_id": "batch-7",
        "sample_key": sample_key,
        "repeat_index": repeat_index,
        "audio_duration_sec": duration,
        "transcription": "" if error else "hello world",
        "exact_match_to_first": None if error else True,
        "similarity_to_first": None if error else 1.0,
        "metrics": metrics,
        "error": error,
    }
    return Run(**{**values, **fields})
