"""
Synthetic ASR backend for ASR Bench Lab.

Produces plausible stage timings without running a model, for dry runs
of the harness and for exercising the analyzer. Preprocessing and
encoding scale with audio duration; decoding scales with a pseudo token
count derived from the audio content, so decode time is deliberately
not a linear function of duration. The transcript is fixed.
"""

from __future__ import annotations

import asyncio
import zlib

import numpy as np

from bench_common.config import DEFAULT_VERIFICATION_PHRASE
from bench_common.models import StageMetrics

from harness.backend import ASRBackend, ModelAssets, ModelSpec, TranscribeOptions, TranscriptionResult

# Relative cost of each quantization against fp32.
_QUANT_COST = {"fp32": 1.0, "fp16": 0.6, "int8": 0.75}


def _cost(quant: str) -> float:
    return _QUANT_COST.get(quant, 1.0)


class SyntheticBackend(ASRBackend):
    """Timing model standing in for a real ASR runtime.

    Args:
        assets: Assets the instance was compiled from.
        transcript: Text returned for every clip.
        jitter: Relative standard deviation of per-call timing noise.
    """

    backend_name = "synthetic"

    def __init__(
        self,
        assets: ModelAssets,
        transcript: str = DEFAULT_VERIFICATION_PHRASE,
        jitter: float = 0.03,
    ) -> None:
        self.assets = assets
        self.transcript = transcript
        self.jitter = jitter
        self._noise = np.random.default_rng()
        self._released = False

    @property
    def name(self) -> str:
        return self.backend_name

    @classmethod
    async def fetch_assets(cls, spec: ModelSpec) -> ModelAssets:
        def _file(component: str, quant: str) -> str:
            suffix = "" if quant == "fp32" else f".{quant}"
            return f"synthetic://{spec.model_key}/{component}-model{suffix}.onnx"

        return ModelAssets(
            spec=spec,
            encoder_quant=spec.encoder_quant,
            decoder_quant=spec.decoder_quant,
            files={
                "encoder": _file("encoder", spec.encoder_quant),
                "decoder": _file("decoder_joint", spec.decoder_quant),
            },
        )

    @classmethod
    async def compile(cls, assets: ModelAssets) -> SyntheticBackend:
        return cls(assets)

    def _token_count(self, pcm: np.ndarray, duration: float) -> int:
        # Same audio, same count: repeated trials stay comparable.
        seed = zlib.crc32(np.ascontiguousarray(pcm, dtype=np.float32).tobytes())
        rate = np.random.default_rng(seed).uniform(0.5, 4.0)
        return max(1, int(round(rate * duration)))

    def _scale(self) -> float:
        return float(max(0.5, self._noise.normal(1.0, self.jitter)))

    async def transcribe(
        self,
        pcm: np.ndarray,
        sample_rate: int,
        options: TranscribeOptions,
    ) -> TranscriptionResult:
        if self._released:
            raise RuntimeError("backend has been released")
        if sample_rate <= 0 or len(pcm) == 0:
            raise ValueError("empty audio")
        await asyncio.sleep(0)

        duration = len(pcm) / float(sample_rate)
        tokens = self._token_count(pcm, duration)
        preprocess = 13.0 * duration * self._scale()
        encode = (20.0 * duration * _cost(self.assets.encoder_quant) + 5.0) * self._scale()
        decode = 2.5 * tokens * _cost(self.assets.decoder_quant) * self._scale()
        tokenize = 0.02 * tokens + 0.5
        total = preprocess + encode + decode + tokenize

        if not options.enable_profiling:
            metrics = StageMetrics(total_ms=total, rtf=duration * 1000.0 / total)
        else:
            metrics = StageMetrics(
                preprocess_ms=preprocess,
                encode_ms=encode,
                decode_ms=decode,
                tokenize_ms=tokenize,
                total_ms=total,
                rtf=duration * 1000.0 / total,
                preprocessor_backend=self.assets.spec.preprocessor_backend,
                token_count=tokens,
            )
        return TranscriptionResult(text=self.transcript, metrics=metrics)

    async def release(self) -> None:
        self._released = True
