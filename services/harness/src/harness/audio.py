"""
Audio acquisition for ASR Bench Lab.

Fetches a clip (HTTP via :mod:`httpx`, or a local path), decodes it with
:mod:`soundfile`, downmixes to mono and resamples to the target rate with
linear interpolation. Decoded clips are kept in a caller-owned
:class:`~bench_common.storage.TTLCache` keyed by ``{url}::{rate}``.
"""

from __future__ import annotations

import asyncio
import io
from dataclasses import dataclass
from pathlib import Path

import httpx
import numpy as np
import soundfile as sf
import structlog

from bench_common.config import Settings, get_settings
from bench_common.storage import TTLCache

logger = structlog.get_logger()


class AudioFetchError(Exception):
    """The clip could not be downloaded or read."""


class AudioDecodeError(Exception):
    """The clip bytes could not be decoded."""


@dataclass(frozen=True)
class DecodedAudio:
    """Mono float32 PCM at ``sample_rate``."""

    pcm: np.ndarray
    sample_rate: int

    @property
    def duration_sec(self) -> float:
        return len(self.pcm) / float(self.sample_rate) if self.sample_rate else 0.0


def to_mono(audio: np.ndarray) -> np.ndarray:
    """Average channels of a ``(frames, channels)`` array."""
    if audio.ndim == 2:
        return audio.mean(axis=1)
    return audio


def resample_linear(audio: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Resample *audio* by linear interpolation."""
    if source_rate == target_rate or len(audio) == 0:
        return audio.astype(np.float32, copy=False)
    target_length = int(len(audio) * target_rate / source_rate)
    x_original = np.linspace(0, 1, len(audio), endpoint=False)
    x_target = np.linspace(0, 1, target_length, endpoint=False)
    return np.interp(x_target, x_original, audio).astype(np.float32)


def decode_audio(data: bytes, target_rate: int) -> DecodedAudio:
    """Decode container bytes to mono float32 PCM at *target_rate*.

    Raises:
        AudioDecodeError: If soundfile cannot read the bytes.
    """
    try:
        audio, source_rate = sf.read(io.BytesIO(data), dtype="float32")
    except (sf.LibsndfileError, RuntimeError, TypeError, ValueError) as exc:
        raise AudioDecodeError(str(exc)) from exc
    pcm = resample_linear(to_mono(np.asarray(audio)), int(source_rate), target_rate)
    return DecodedAudio(pcm=pcm, sample_rate=target_rate)


class AudioLoader:
    """Fetch, decode and cache benchmark clips.

    Args:
        settings: Application settings (defaults to :func:`get_settings`).
        cache: Decoded-clip cache; built from settings when ``None``.
        client: Pre-built ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        cache: TTLCache[str, DecodedAudio] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.cache: TTLCache[str, DecodedAudio] = cache or TTLCache(
            max_entries=self.settings.audio_cache_max_entries,
            ttl_s=self.settings.audio_cache_ttl_s,
        )
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.settings.http_timeout_s,
                follow_redirects=True,
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def fetch_bytes(self, url: str) -> bytes:
        """Return the raw bytes at *url* (``http(s)://`` or a filesystem path).

        Raises:
            AudioFetchError: On HTTP errors, transport failures or unreadable files.
        """
        if url.startswith(("http://", "https://")):
            client = await self._get_client()
            try:
                resp = await client.get(url)
                resp.raise_for_status()
            except (httpx.HTTPStatusError, httpx.TransportError) as exc:
                raise AudioFetchError(f"Audio fetch failed: {exc}") from exc
            return resp.content

        path = Path(url.removeprefix("file://"))
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise AudioFetchError(f"Audio fetch failed: {exc}") from exc

    async def load(self, url: str, target_rate: int | None = None) -> DecodedAudio:
        """Fetch and decode *url* at *target_rate*, through the cache.

        Raises:
            AudioFetchError: If the clip cannot be acquired.
            AudioDecodeError: If the clip cannot be decoded.
        """
        rate = target_rate or self.settings.target_sample_rate
        key = f"{url}::{rate}"
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("audio_cache_hit", url=url, sample_rate=rate)
            return cached

        data = await self.fetch_bytes(url)
        decoded = await asyncio.to_thread(decode_audio, data, rate)
        self.cache.put(key, decoded)
        logger.debug("audio_loaded", url=url, sample_rate=rate, duration_sec=round(decoded.duration_sec, 3))
        return decoded
