"""
Model file discovery and quantization selection for ASR Bench Lab.

Lists the files of a model repository on the hub (recursive tree
listing, falling back to the repository metadata ``siblings``), derives
which quantizations are published for a component and picks a default
for the chosen runtime. Listings are cached in a caller-owned
:class:`~bench_common.storage.TTLCache`; failed listings are not cached.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from bench_common.config import Settings, get_settings
from bench_common.storage import TTLCache

logger = structlog.get_logger()

QUANTIZATION_ORDER: tuple[str, ...] = ("fp16", "int8", "fp32")
DEFAULT_MODEL_REVISIONS: tuple[str, ...] = ("main",)

_LEADING_DOT_SLASH = re.compile(r"^\./+")


def format_repo_path(repo_id: str) -> str:
    """URL-quote each ``/``-separated part of *repo_id*."""
    return "/".join(quote(part, safe="") for part in str(repo_id or "").split("/"))


def normalize_repo_path(path: Any) -> str:
    return _LEADING_DOT_SLASH.sub("", str(path or "")).replace("\\", "/")


def parse_model_files(payload: Any) -> list[str]:
    """Extract file paths from a tree listing or a metadata document."""
    if isinstance(payload, list):
        return [
            normalize_repo_path(entry["path"])
            for entry in payload
            if isinstance(entry, dict) and entry.get("type") == "file" and isinstance(entry.get("path"), str)
        ]
    if isinstance(payload, dict) and isinstance(payload.get("siblings"), list):
        files = [
            normalize_repo_path(entry.get("rfilename") if isinstance(entry, dict) else None)
            for entry in payload["siblings"]
        ]
        return [path for path in files if path]
    return []


def has_model_file(files: Sequence[str], filename: str) -> bool:
    target = normalize_repo_path(filename)
    return any(path == target or path.endswith(f"/{target}") for path in files)


def available_quant_modes(files: Sequence[str], base_name: str) -> list[str]:
    """Quantizations published for *base_name*, in preference order.

    ``{base}.onnx`` is fp32, ``{base}.fp16.onnx`` fp16 and
    ``{base}.int8.onnx`` int8. Falls back to ``["fp32"]`` when none match.
    """
    suffix = {"fp32": ".onnx", "fp16": ".fp16.onnx", "int8": ".int8.onnx"}
    options = [quant for quant in QUANTIZATION_ORDER if has_model_file(files, base_name + suffix[quant])]
    return options or ["fp32"]


def pick_preferred_quant(available: Sequence[str], backend: str, component: str = "encoder") -> str:
    """Choose a default quantization for *component* on *backend*.

    The decoder prefers int8. The encoder prefers fp16 on WebGPU-style
    runtimes and int8 elsewhere.
    """
    if component == "decoder":
        preferred = ("int8", "fp32", "fp16")
    elif str(backend or "").startswith("webgpu"):
        preferred = ("fp16", "fp32", "int8")
    else:
        preferred = ("int8", "fp32", "fp16")
    for quant in preferred:
        if quant in available:
            return quant
    return available[0] if available else "fp32"


class ModelFileIndex:
    """Cached hub listings of model files and revisions.

    Args:
        settings: Application settings (hub base URL, timeout).
        cache: Listing cache keyed by ``repo@revision``.
        client: Pre-built ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        cache: TTLCache[str, list[str]] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.cache: TTLCache[str, list[str]] = cache or TTLCache(max_entries=32, ttl_s=3600.0)
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.settings.http_timeout_s, follow_redirects=True)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _get_json(self, url: str) -> Any:
        client = await self._get_client()
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.json()

    async def list_revisions(self, repo_id: str) -> list[str]:
        """Branch names of *repo_id* (``["main"]`` on any failure)."""
        if not repo_id:
            return list(DEFAULT_MODEL_REVISIONS)
        url = f"{self.settings.hf_hub_api}/models/{format_repo_path(repo_id)}/refs"
        try:
            payload = await self._get_json(url)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("model_revisions_unavailable", repo_id=repo_id, error=str(exc))
            return list(DEFAULT_MODEL_REVISIONS)
        branches = payload.get("branches") if isinstance(payload, dict) else None
        names = [b.get("name") for b in branches or [] if isinstance(b, dict) and b.get("name")]
        return names or list(DEFAULT_MODEL_REVISIONS)

    async def list_files(self, repo_id: str, revision: str = "main") -> list[str]:
        """Files of *repo_id* at *revision* (empty when both listings fail)."""
        if not repo_id:
            return []
        key = f"{repo_id}@{revision}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        base = f"{self.settings.hf_hub_api}/models/{format_repo_path(repo_id)}"
        rev = quote(revision, safe="")
        for url, source in (
            (f"{base}/tree/{rev}?recursive=1", "tree"),
            (f"{base}?revision={rev}", "metadata"),
        ):
            try:
                files = parse_model_files(await self._get_json(url))
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("model_listing_failed", repo_id=repo_id, revision=revision, source=source, error=str(exc))
                continue
            self.cache.put(key, files)
            return files
        return []
