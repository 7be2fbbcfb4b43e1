"""
Model session lifecycle for ASR Bench Lab.

A :class:`ModelSession` owns at most one loaded backend instance. Loading
downloads and compiles the model, falling back to fp32 weights when fp16
assets are unavailable or fail to compile, then verifies the instance by
transcribing a reference clip. Changing any runtime-affecting setting
invalidates the instance.

Released instances go through a :class:`ReleaseQueue`, which runs
releases one after another in submission order so a new model never
allocates while the previous one is still being torn down. Release
failures are logged and never propagate.
"""

from __future__ import annotations

import asyncio
import enum
from collections import deque
from dataclasses import replace

import structlog

from analysis.stats import normalize_text
from bench_common.config import BenchmarkSettings, Settings, get_settings

from harness.audio import AudioDecodeError, AudioFetchError, AudioLoader, DecodedAudio
from harness.backend import FP16, FP32, ASRBackend, ModelAssets, ModelSpec, TranscribeOptions

logger = structlog.get_logger()


class ModelLoadError(Exception):
    """The model could not be downloaded, compiled or verified."""


class VerificationError(ModelLoadError):
    """The reference transcription could not be run."""


class VerificationMismatchError(VerificationError):
    """The reference transcription did not contain the expected phrase."""


class SessionNotReadyError(RuntimeError):
    """No verified model is loaded."""


class SessionStatus(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    VERIFYING = "verifying"
    READY = "ready"
    FAILED = "failed"


async def release_model(model: ASRBackend) -> None:
    """Release *model*, logging instead of raising on failure."""
    try:
        await model.release()
    except Exception as exc:  # noqa: BLE001
        logger.warning("model_release_failed", backend=model.name, error=str(exc))


class ReleaseQueue:
    """FIFO of pending model releases, drained by a single worker task.

    Only one release runs at a time, in submission order. The worker is
    started on demand and exits once the queue is empty.
    """

    def __init__(self) -> None:
        self._pending: deque[tuple[ASRBackend | None, asyncio.Future[None]]] = deque()
        self._worker: asyncio.Task[None] | None = None
        self._last: asyncio.Future[None] | None = None

    def __len__(self) -> int:
        return len(self._pending)

    def submit(self, model: ASRBackend | None) -> asyncio.Future[None]:
        """Queue *model* for release after every earlier submission.

        Returns:
            A future resolved once this release has finished. Submitting
            ``None`` resolves after everything queued before it.
        """
        loop = asyncio.get_running_loop()
        done: asyncio.Future[None] = loop.create_future()
        self._pending.append((model, done))
        self._last = done
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain())
        return done

    async def _drain(self) -> None:
        while self._pending:
            model, done = self._pending.popleft()
            try:
                if model is not None:
                    await release_model(model)
            finally:
                if not done.done():
                    done.set_result(None)

    async def drain(self) -> None:
        """Wait for every queued release to finish."""
        if self._last is not None:
            await self._last


class ModelSession:
    """Load, verify, hold and release one backend instance.

    Args:
        backend_cls: Backend implementation to load.
        audio_loader: Loader for the verification clip.
        settings: Application settings (verification phrase and clips).
        release_queue: Shared release queue; a private one when ``None``.
    """

    def __init__(
        self,
        backend_cls: type[ASRBackend],
        audio_loader: AudioLoader,
        settings: Settings | None = None,
        *,
        release_queue: ReleaseQueue | None = None,
    ) -> None:
        self.backend_cls = backend_cls
        self.audio_loader = audio_loader
        self.settings = settings or get_settings()
        self.release_queue = release_queue or ReleaseQueue()
        self.status = SessionStatus.IDLE
        self.message = ""
        self.spec: ModelSpec | None = None
        self.assets: ModelAssets | None = None
        self.notes: list[str] = []
        self._model: ASRBackend | None = None
        self._session_key: tuple | None = None

    # ── state ──

    @property
    def model(self) -> ASRBackend | None:
        return self._model

    @property
    def is_ready(self) -> bool:
        return self.status is SessionStatus.READY and self._model is not None

    def require_ready(self) -> ASRBackend:
        """Return the loaded model or raise :class:`SessionNotReadyError`."""
        if not self.is_ready or self._model is None:
            raise SessionNotReadyError("Load and verify model first")
        return self._model

    @property
    def resolved_info(self) -> str:
        """One-line description of what was actually loaded."""
        if self.assets is None:
            return ""
        parts = [f"resolved e:{self.assets.encoder_quant} d:{self.assets.decoder_quant}"]
        files = [self.assets.files[k] for k in ("encoder", "decoder") if k in self.assets.files]
        if files:
            parts.append(", ".join(files))
        if self.assets.spec.backend.startswith("webgpu"):
            parts.append("decoder executes on WASM in webgpu modes")
        return " | ".join([*parts, *self.notes])

    def _detach(self) -> ASRBackend | None:
        model, self._model = self._model, None
        self._session_key = None
        self.assets = None
        return model

    def invalidate(self, settings: BenchmarkSettings) -> bool:
        """Drop the model if *settings* no longer match what was loaded.

        Returns:
            ``True`` when a loaded model was invalidated.
        """
        if self._session_key is None or self._session_key == settings.session_key:
            return False
        logger.info("model_invalidated", model_key=self.spec.model_key if self.spec else None)
        self.release_queue.submit(self._detach())
        self.status = SessionStatus.IDLE
        self.message = ""
        return True

    # ── loading ──

    async def _download(self, spec: ModelSpec) -> tuple[ModelSpec, ModelAssets]:
        try:
            return spec, await self.backend_cls.fetch_assets(spec)
        except Exception as exc:
            if not spec.uses_fp16:
                raise
            logger.warning("fp16_assets_unavailable", model_key=spec.model_key, error=str(exc))
            retry = spec.without_fp16()
            assets = await self.backend_cls.fetch_assets(retry)
            self.notes.append("fp16 assets unavailable, retried with fp32")
            return retry, assets

    async def _compile(self, spec: ModelSpec, assets: ModelAssets) -> tuple[ModelAssets, ASRBackend]:
        try:
            return assets, await self.backend_cls.compile(assets)
        except Exception as first:
            if not assets.uses_fp16:
                raise
            logger.warning("fp16_compile_failed", model_key=spec.model_key, error=str(first))
            retry = replace(
                spec,
                encoder_quant=FP32 if assets.encoder_quant == FP16 else spec.encoder_quant,
                decoder_quant=FP32 if assets.decoder_quant == FP16 else spec.decoder_quant,
            )
            try:
                retry_assets = await self.backend_cls.fetch_assets(retry)
            except Exception as exc:
                raise ModelLoadError(
                    f"Initial compile failed ({first}). FP32 retry download failed ({exc})."
                ) from exc
            try:
                model = await self.backend_cls.compile(retry_assets)
            except Exception as exc:
                raise ModelLoadError(
                    f"Initial compile failed ({first}). FP32 retry compile failed ({exc})."
                ) from exc
            self.notes.append(f"fp16 compile retry -> e:{retry.encoder_quant} d:{retry.decoder_quant}")
            return retry_assets, model

    async def load(self, settings: BenchmarkSettings) -> ASRBackend:
        """Release any previous model, then load and verify a new one.

        Raises:
            ModelLoadError: If loading or verification fails. The session
                is left without a model and ``status`` is ``FAILED``.
        """
        self.status = SessionStatus.LOADING
        self.message = "Loading model..."
        self.notes = []
        await self.release_queue.submit(self._detach())

        spec = ModelSpec.from_settings(settings)
        self.spec = spec
        log = logger.bind(model_key=spec.model_key, backend=spec.backend)
        log.info("model_load_started", encoder_quant=spec.encoder_quant, decoder_quant=spec.decoder_quant)
        try:
            spec, assets = await self._download(spec)
            assets, self._model = await self._compile(spec, assets)
            self.assets = assets

            self.status = SessionStatus.VERIFYING
            self.message = "Verifying model..."
            await self.verify(self._model)
        except Exception as exc:
            failed = self._detach()
            await self.release_queue.submit(failed)
            self.status = SessionStatus.FAILED
            self.message = f"Load failed: {exc}"
            log.error("model_load_failed", error=str(exc))
            if isinstance(exc, ModelLoadError):
                raise
            raise ModelLoadError(str(exc)) from exc

        self._session_key = settings.session_key
        self.status = SessionStatus.READY
        self.message = "Model ready (verified)"
        log.info("model_ready", resolved=self.resolved_info)
        return self._model

    async def _reference_audio(self) -> DecodedAudio:
        last_error: Exception | None = None
        for source in self.settings.verification_audio:
            try:
                return await self.audio_loader.load(source)
            except (AudioFetchError, AudioDecodeError) as exc:
                logger.debug("verification_audio_unavailable", source=source, error=str(exc))
                last_error = exc
        raise VerificationError(str(last_error) if last_error else "Verification audio could not be loaded")

    async def verify(self, model: ASRBackend) -> None:
        """Transcribe the reference clip and check the expected phrase.

        Raises:
            VerificationError: If no reference clip can be loaded.
            VerificationMismatchError: If the phrase is missing from the output.
        """
        audio = await self._reference_audio()
        result = await model.transcribe(
            audio.pcm,
            audio.sample_rate,
            TranscribeOptions(enable_profiling=False, return_confidences=False, return_timestamps=False),
        )
        got = normalize_text(result.text)
        expected = normalize_text(self.settings.verification_phrase)
        if expected not in got:
            raise VerificationMismatchError(
                f'Verification mismatch. Expected phrase not found. Got: "{result.text}"'
            )

    async def close(self) -> None:
        """Release the model and wait for the queue to drain."""
        self.release_queue.submit(self._detach())
        await self.release_queue.drain()
        self.status = SessionStatus.IDLE
