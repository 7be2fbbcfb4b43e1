"""
bench-common: Shared library for ASR Bench Lab.

Provides common data models, configuration management, structured
logging, Prometheus metrics helpers and key/value persistence used by
the harness and analysis packages.
"""

from bench_common.config import BenchmarkSettings, Settings, get_settings

__all__ = [
    "BenchmarkSettings",
    "Settings",
    "get_settings",
]
