"""
Dataset row client for ASR Bench Lab.

Talks to the Hugging Face datasets-server (``/splits``, ``/info``,
``/rows``) with :mod:`httpx`. Requests answered with 5xx or 429, and
transport failures, are retried through :mod:`tenacity` with a linearly
growing delay, or the server's ``Retry-After`` when it sends one.

Split and info metadata go through the key/value read-through cache, so
a warm cache keeps the harness usable offline (flagged as stale).
Raw rows are normalized into :class:`~bench_common.models.Sample` records.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from bench_common.config import BenchmarkSettings, Settings, get_settings
from bench_common.models import Sample
from bench_common.storage import CacheResult, KeyValueStore, read_through_cache
from bench_common.utils import cache_key, utc_now
from harness.sampler import RowDraw, draw_rows

logger = structlog.get_logger()

MAX_PAGE_LENGTH = 100
DEFAULT_SPLITS = ["train", "validation", "test"]


class DatasetRequestError(Exception):
    """A datasets-server request failed after the retry budget."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RetryableStatusError(DatasetRequestError):
    """A 5xx or 429 response, eligible for retry."""

    def __init__(self, message: str, status_code: int, retry_after_s: float | None = None) -> None:
        super().__init__(message, status_code)
        self.retry_after_s = retry_after_s


class NoPlayableRowsError(DatasetRequestError):
    """The selected slice produced no rows with audio."""


def parse_retry_after(value: str | None) -> float | None:
    """Seconds to wait from a ``Retry-After`` header (delta or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, (when - utc_now()).total_seconds())


# ── row normalization ──


def extract_audio_url(audio: Any) -> str | None:
    """Return the playable URL of a dataset ``audio`` cell.

    Accepts a plain string, a list of strings or ``{src|url|path}``
    dicts (first usable entry wins), or a single such dict.
    """
    if not audio:
        return None
    if isinstance(audio, str):
        return audio
    if isinstance(audio, list):
        for item in audio:
            if not item:
                continue
            if isinstance(item, str):
                return item
            if isinstance(item, dict):
                found = _url_from_dict(item)
                if found:
                    return found
    if isinstance(audio, dict):
        return _url_from_dict(audio)
    return None


def _url_from_dict(item: dict[str, Any]) -> str | None:
    for key in ("src", "url", "path"):
        if item.get(key):
            return str(item[key])
    return None


_SPACE_BEFORE_NL = re.compile(r"\s+\n")
_SPACE_AFTER_NL = re.compile(r"\n\s+")


def normalize_reference_text(value: Any) -> str:
    """Expand ``PARAGRAPH``/``NEWLINE`` markers and trim whitespace around breaks."""
    text = str(value or "")
    text = text.replace("PARAGRAPH", "\n\n").replace("NEWLINE", "\n")
    text = _SPACE_BEFORE_NL.sub("\n", text)
    text = _SPACE_AFTER_NL.sub("\n", text)
    return text.strip()


def normalize_dataset_row(wrapper: Any, fallback_index: int = 0) -> Sample:
    """Build a :class:`Sample` from a ``/rows`` entry (``{row_idx, row}``) or a bare row."""
    wrapper = wrapper or {}
    row = wrapper.get("row") or wrapper
    row_index = wrapper.get("row_idx")
    if row_index is None:
        row_index = fallback_index
    try:
        sample_rate = int(row.get("sample_rate") or 0) or 16000
    except (TypeError, ValueError):
        sample_rate = 16000
    return Sample(
        row_index=row_index,
        audio_url=extract_audio_url(row.get("audio")),
        reference_text=normalize_reference_text(
            row.get("transcription") or row.get("text") or row.get("transcript") or ""
        ),
        speaker=str(row.get("speaker") or ""),
        gender=str(row.get("gender") or ""),
        speed=row.get("speed"),
        volume=row.get("volume"),
        sample_rate=sample_rate,
        raw=row,
    )


def configs_and_splits(split_items: Iterable[dict[str, Any]]) -> dict[str, list[str]]:
    """Map each config to its splits, in first-seen order."""
    by_config: dict[str, list[str]] = {}
    for item in split_items or []:
        config = (item or {}).get("config")
        split = (item or {}).get("split")
        if not config or not split:
            continue
        splits = by_config.setdefault(config, [])
        if split not in splits:
            splits.append(split)
    return by_config


@dataclass
class DatasetMetadata:
    """Resolved dataset configuration, splits and row counts."""

    dataset: str
    config: str
    split: str
    configs: list[str] = field(default_factory=list)
    splits: list[str] = field(default_factory=list)
    split_counts: dict[str, Any] = field(default_factory=dict)
    features: list[str] = field(default_factory=list)
    from_cache: bool = False
    stale: bool = False

    @property
    def mode(self) -> str:
        if self.stale:
            return "cache-stale"
        return "cache" if self.from_cache else "live"

    def num_rows(self, split: str | None = None) -> int | None:
        entry = self.split_counts.get(split or self.split) or {}
        value = entry.get("num_examples") if isinstance(entry, dict) else None
        return value if isinstance(value, int) else None


@dataclass
class PreparedSamples:
    """Samples ready for the executor, plus the random draw report."""

    samples: list[Sample]
    draw: RowDraw | None = None
    total_rows: int | None = None


class DatasetClient:
    """Async client for the datasets-server API.

    Args:
        settings: Application settings (defaults to :func:`get_settings`).
        store: Key/value store for the metadata cache; no caching when ``None``.
        client: Pre-built ``httpx.AsyncClient`` (tests inject a mock transport).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: KeyValueStore | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.base_url = self.settings.hf_dataset_api.rstrip("/")
        self.retries = self.settings.http_retries
        self.retry_delay_s = self.settings.http_retry_delay_s
        self.store = store
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Return (and lazily create) the shared ``httpx.AsyncClient``."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.settings.http_timeout_s)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> DatasetClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ── transport ──

    def _wait(self, retry_state: RetryCallState) -> float:
        """Back-off: ``Retry-After`` when sent, else ``delay * attempt``."""
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if isinstance(exc, RetryableStatusError) and exc.retry_after_s is not None:
            return exc.retry_after_s
        return self.retry_delay_s * retry_state.attempt_number

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        query = {k: str(v) for k, v in params.items() if v is not None and v != ""}

        async def _once() -> Any:
            client = await self._get_client()
            resp = await client.get(url, params=query)
            if resp.status_code >= 400:
                message = f"Request failed ({resp.status_code}): {resp.text}"
                if resp.status_code >= 500 or resp.status_code == 429:
                    raise RetryableStatusError(
                        message,
                        resp.status_code,
                        parse_retry_after(resp.headers.get("Retry-After")),
                    )
                raise DatasetRequestError(message, resp.status_code)
            return resp.json()

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retries + 1),
                wait=self._wait,
                retry=retry_if_exception_type((RetryableStatusError, httpx.TransportError)),
                reraise=True,
            ):
                with attempt:
                    return await _once()
        except httpx.TransportError as exc:
            logger.error("dataset_request_failed", path=path, error=str(exc))
            raise DatasetRequestError(f"Request failed: {exc}") from exc
        except DatasetRequestError as exc:
            logger.error("dataset_request_failed", path=path, status=exc.status_code, error=str(exc))
            raise
        raise DatasetRequestError("Request failed")  # pragma: no cover

    # ── endpoints ──

    async def fetch_splits(self, dataset: str) -> list[dict[str, Any]]:
        data = await self._get_json("/splits", {"dataset": dataset})
        return list(data.get("splits") or [])

    async def fetch_info(self, dataset: str, config: str) -> dict[str, Any]:
        return await self._get_json("/info", {"dataset": dataset, "config": config})

    async def fetch_rows(
        self,
        dataset: str,
        config: str,
        split: str,
        offset: int = 0,
        length: int = MAX_PAGE_LENGTH,
    ) -> dict[str, Any]:
        """Fetch one page of rows; *length* is clamped to ``[1, 100]``."""
        safe_length = max(1, min(MAX_PAGE_LENGTH, int(length or 1)))
        safe_offset = max(0, int(offset or 0))
        return await self._get_json(
            "/rows",
            {
                "dataset": dataset,
                "config": config,
                "split": split,
                "offset": safe_offset,
                "length": safe_length,
            },
        )

    async def fetch_sequential_rows(
        self,
        dataset: str,
        config: str,
        split: str,
        start_offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[dict[str, Any]], int | None]:
        """Page through rows from *start_offset* until *limit* rows or the end.

        Returns:
            ``(rows, total_rows)``; ``total_rows`` is ``None`` if the server
            never reported it.
        """
        rows: list[dict[str, Any]] = []
        cursor = max(0, int(start_offset or 0))
        total_rows: int | None = None
        while len(rows) < limit:
            page_length = min(MAX_PAGE_LENGTH, limit - len(rows))
            page = await self.fetch_rows(dataset, config, split, cursor, page_length)
            page_rows = page.get("rows") or []
            total_rows = page.get("num_rows_total", total_rows)
            if not page_rows:
                break
            rows.extend(page_rows)
            cursor += len(page_rows)
            if len(page_rows) < page_length:
                break
        return rows, total_rows

    async def fetch_random_rows(
        self,
        dataset: str,
        config: str,
        split: str,
        total_rows: int,
        sample_count: int,
        seed: Any = None,
    ) -> RowDraw:
        """Fetch *sample_count* seeded-random rows, one request per offset."""

        async def _fetch(offset: int) -> dict[str, Any] | None:
            page = await self.fetch_rows(dataset, config, split, offset, 1)
            rows = page.get("rows") or []
            return rows[0] if rows else None

        return await draw_rows(_fetch, total_rows, sample_count, seed)

    # ── cached metadata ──

    async def _cached(self, key: str, fetcher: Any, force_refresh: bool) -> CacheResult:
        if self.store is None:
            return CacheResult(data=await fetcher(), from_cache=False, stale=False)
        return await read_through_cache(
            self.store,
            key,
            fetcher,
            ttl_s=self.settings.dataset_meta_ttl_s,
            force_refresh=force_refresh,
        )

    async def load_metadata(
        self,
        dataset: str,
        config: str = "",
        split: str = "",
        *,
        force_refresh: bool = False,
    ) -> DatasetMetadata:
        """Resolve configs, splits and row counts for *dataset*.

        Unknown *config*/*split* values fall back to the first available.
        """
        prefix = self.settings.dataset_cache_prefix
        splits_result = await self._cached(
            cache_key(prefix + "splits.v1:", dataset),
            lambda: self.fetch_splits(dataset),
            force_refresh,
        )
        by_config = configs_and_splits(splits_result.data or [])
        configs = list(by_config) or ["default"]
        safe_config = config if config in by_config else (configs[0] if by_config else "default")
        splits = by_config.get(safe_config) or list(DEFAULT_SPLITS)
        safe_split = split if split in splits else splits[0]

        info_result = await self._cached(
            cache_key(prefix + "info.v1:", dataset, safe_config),
            lambda: self.fetch_info(dataset, safe_config),
            force_refresh,
        )
        dataset_info = (info_result.data or {}).get("dataset_info") or {}
        metadata = DatasetMetadata(
            dataset=dataset,
            config=safe_config,
            split=safe_split,
            configs=configs,
            splits=splits,
            split_counts=dict(dataset_info.get("splits") or {}),
            features=list((dataset_info.get("features") or {}).keys()),
            from_cache=splits_result.from_cache or info_result.from_cache,
            stale=splits_result.stale or info_result.stale,
        )
        logger.info("dataset_metadata_loaded", dataset=dataset, config=safe_config, split=safe_split, mode=metadata.mode)
        return metadata

    async def prepare_samples(
        self,
        settings: BenchmarkSettings,
        metadata: DatasetMetadata | None = None,
    ) -> PreparedSamples:
        """Fetch and normalize the sample rows selected by *settings*.

        Random mode draws seeded offsets over the split (row count from
        *metadata*, else probed); sequential mode pages from
        ``settings.offset``. Rows without audio are dropped.

        Raises:
            NoPlayableRowsError: If no row with audio was found.
            DatasetRequestError: If a required request failed.
        """
        dataset, config, split = settings.dataset_id, settings.dataset_config, settings.dataset_split
        draw: RowDraw | None = None
        if settings.randomize:
            total_rows = metadata.num_rows(split) if metadata is not None else None
            if total_rows is None:
                probe = await self.fetch_rows(dataset, config, split, 0, 1)
                total_rows = probe.get("num_rows_total") or 1
            draw = await self.fetch_random_rows(
                dataset, config, split, total_rows, settings.sample_count, settings.random_seed
            )
            raw_rows = draw.rows
        else:
            raw_rows, total_rows = await self.fetch_sequential_rows(
                dataset, config, split, settings.offset, settings.sample_count
            )

        samples = [normalize_dataset_row(item, idx) for idx, item in enumerate(raw_rows)]
        samples = [s for s in samples if s.audio_url]
        if not samples:
            raise NoPlayableRowsError("No playable rows found in the selected slice.")
        logger.info(
            "samples_prepared",
            dataset=dataset,
            split=split,
            count=len(samples),
            randomized=settings.randomize,
            seed_used=draw.seed_used if draw else None,
        )
        return PreparedSamples(samples=samples, draw=draw, total_rows=total_rows)
