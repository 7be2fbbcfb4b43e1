"""
Environment-based configuration management for ASR Bench Lab.

Uses pydantic-settings to load configuration values from environment
variables and .env files. The harness, the analyzer and the CLI all read
their settings from this module to keep configuration handling consistent.

All environment variables are prefixed with ``BENCH_`` to avoid collisions.

The user-facing benchmark settings (model, backend, dataset slice, repeat
protocol) are a separate persisted record, :class:`BenchmarkSettings`,
stored through the key/value store under ``Settings.settings_key``.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_VERIFICATION_PHRASE = "it is not life as we know or understand it"


def clamp(value: Any, fallback: float, minimum: float, maximum: float) -> float:
    """Coerce *value* to a number inside ``[minimum, maximum]``.

    Non-numeric input yields *fallback* unchanged.
    """
    try:
        num = float(value)
    except (TypeError, ValueError):
        return fallback
    if num != num or num in (float("inf"), float("-inf")):
        return fallback
    return max(minimum, min(maximum, num))


class Settings(BaseSettings):
    """Central configuration loaded from ``BENCH_``-prefixed environment variables.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_json: Render log lines as JSON (``False`` for console output).
        data_dir: Directory holding the file-backed key/value store.
        kv_backend: Persistence backend for settings and snapshots.
        redis_url: Redis connection URL when ``kv_backend == "redis"``.
        settings_key: Versioned key of the persisted benchmark settings.
        snapshots_key: Versioned key of the persisted snapshot list.
        dataset_cache_prefix: Key prefix of dataset metadata cache entries.
        max_snapshots: Snapshot history cap (oldest evicted).
        dataset_meta_ttl_s: Freshness window of dataset metadata entries.
        hf_dataset_api: Base URL of the datasets-server API.
        hf_hub_api: Base URL of the model hub API.
        http_timeout_s: Per-request timeout for outbound HTTP.
        http_retries: Retries after the first attempt on 5xx/429.
        http_retry_delay_s: Base back-off delay between retries.
        target_sample_rate: Sample rate audio is resampled to.
        audio_cache_max_entries: Decoded-audio cache capacity.
        audio_cache_ttl_s: Decoded-audio cache entry lifetime.
        bucket_width_s: Duration bucket width for breakdowns.
        duration_r2_threshold: R² under which a stage is not duration-bound.
        verification_phrase: Phrase expected in the verification transcript.
        verification_audio: Candidate verification clips, tried in order.
        engine: Registered backend name, or a ``module:Class`` path.
    """

    model_config = SettingsConfigDict(
        env_prefix="BENCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Logging ──
    log_level: str = Field(default="INFO", description="Logging level.")
    log_json: bool = Field(default=True, description="Render log lines as JSON.")

    # ── Persistence ──
    data_dir: str = Field(default=".bench", description="Directory of the file store.")
    kv_backend: str = Field(default="file", description="Key/value backend (file or redis).")
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL.",
    )
    settings_key: str = Field(
        default="parakeet.benchmark.settings.v1",
        description="Key of the persisted benchmark settings.",
    )
    snapshots_key: str = Field(
        default="parakeet.benchmark.snapshots.v1",
        description="Key of the persisted snapshot list.",
    )
    dataset_cache_prefix: str = Field(
        default="parakeet.benchmark.dataset.",
        description="Key prefix of dataset metadata cache entries.",
    )
    max_snapshots: int = Field(default=20, ge=1, description="Snapshot history cap.")
    dataset_meta_ttl_s: float = Field(
        default=12 * 60 * 60,
        gt=0,
        description="Dataset metadata freshness window in seconds.",
    )

    # ── HTTP ──
    hf_dataset_api: str = Field(
        default="https://datasets-server.huggingface.co",
        description="datasets-server base URL.",
    )
    hf_hub_api: str = Field(
        default="https://huggingface.co/api",
        description="Model hub API base URL.",
    )
    http_timeout_s: float = Field(default=30.0, gt=0, description="HTTP request timeout.")
    http_retries: int = Field(default=2, ge=0, description="Retries on 5xx/429.")
    http_retry_delay_s: float = Field(default=0.22, ge=0, description="Base retry delay.")

    # ── Audio ──
    target_sample_rate: int = Field(default=16000, ge=8000, description="Target sample rate.")
    audio_cache_max_entries: int = Field(default=64, ge=1, description="Audio cache capacity.")
    audio_cache_ttl_s: float = Field(default=3600.0, gt=0, description="Audio cache TTL.")

    # ── Analysis ──
    bucket_width_s: float = Field(default=2.0, gt=0, description="Duration bucket width.")
    duration_r2_threshold: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="R² under which a stage is not explained by duration.",
    )

    # ── Engine ──
    engine: str = Field(
        default="synthetic",
        description="ASR backend implementation (registry name or module:Class).",
    )

    # ── Verification ──
    verification_phrase: str = Field(
        default=DEFAULT_VERIFICATION_PHRASE,
        description="Phrase expected in the verification transcript.",
    )
    verification_audio: list[str] = Field(
        default_factory=lambda: [
            "assets/life_Jim.wav",
            "https://raw.githubusercontent.com/ysdede/parakeet.js/master/examples/demo/public/assets/life_Jim.wav",
        ],
        description="Verification clips tried in order.",
    )

    @field_validator("kv_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("file", "redis"):
            raise ValueError("kv_backend must be 'file' or 'redis'")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    Returns:
        The global ``Settings`` instance.
    """
    return Settings()


class BenchmarkSettings(BaseModel):
    """User-facing benchmark configuration, persisted between sessions.

    Serialized with camelCase keys so exports stay compatible with
    batches produced by the browser harness.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    model_key: str = "parakeet-tdt-0.6b-v2"
    backend: str = "webgpu-hybrid"
    encoder_quant: str = "fp16"
    decoder_quant: str = "int8"
    preprocessor: str = "nemo128"
    preprocessor_backend: str = "js"
    cpu_threads: int = 4
    enable_profiling: bool = True
    dataset_id: str = "MLCommons/peoples_speech"
    dataset_config: str = "clean"
    dataset_split: str = "test"
    offset: int = 0
    sample_count: int = 6
    repeat_count: int = 5
    warmups: int = 1
    randomize: bool = True
    random_seed: str = "42"

    @field_validator("sample_count", mode="before")
    @classmethod
    def _clamp_samples(cls, value: Any) -> int:
        return int(clamp(value, 6, 1, 100))

    @field_validator("repeat_count", mode="before")
    @classmethod
    def _clamp_repeats(cls, value: Any) -> int:
        return int(clamp(value, 5, 1, 100))

    @field_validator("warmups", mode="before")
    @classmethod
    def _clamp_warmups(cls, value: Any) -> int:
        return int(clamp(value, 1, 0, 10))

    @field_validator("cpu_threads", mode="before")
    @classmethod
    def _clamp_threads(cls, value: Any) -> int:
        return int(clamp(value, 4, 1, 64))

    @field_validator("offset", mode="before")
    @classmethod
    def _clamp_offset(cls, value: Any) -> int:
        return int(clamp(value, 0, 0, 10**9))

    @field_validator("random_seed", mode="before")
    @classmethod
    def _seed_to_str(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @property
    def session_key(self) -> tuple[str, str, str, str, str, int]:
        """Fields whose change invalidates a loaded model."""
        return (
            self.model_key,
            self.backend,
            self.encoder_quant,
            self.decoder_quant,
            self.preprocessor_backend,
            self.cpu_threads,
        )
