"""Shared fixtures for harness tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Make helpers in this directory importable from test files
# (needed with --import-mode=importlib).
sys.path.append(str(Path(__file__).resolve().parent))

from harness_fakes import FakeAudioLoader, make_backend_class  # noqa: E402

from bench_common.config import BenchmarkSettings, Settings  # noqa: E402
from bench_common.storage import MemoryKeyValueStore  # noqa: E402


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from the environment, with instant retries."""
    return Settings(
        data_dir=str(tmp_path / "bench"),
        http_retry_delay_s=0.0,
        verification_audio=["local/ref.wav", "https://audio.test/ref.wav"],
        log_json=False,
    )


@pytest.fixture()
def bench_settings() -> BenchmarkSettings:
    return BenchmarkSettings(
        model_key="parakeet-tdt-0.6b-v2",
        backend="wasm",
        encoder_quant="int8",
        decoder_quant="int8",
        sample_count=3,
        repeat_count=3,
        warmups=1,
    )


@pytest.fixture()
def kv_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture()
def audio_loader() -> FakeAudioLoader:
    return FakeAudioLoader()


@pytest.fixture()
def backend_cls():
    """A fresh scriptable backend class."""
    return make_backend_class()
