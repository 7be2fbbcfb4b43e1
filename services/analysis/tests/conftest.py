"""Shared fixtures for analysis tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Make helpers in this directory importable from test files
# (needed with --import-mode=importlib).
sys.path.append(str(Path(__file__).resolve().parent))

from run_builders import make_run  # noqa: E402


@pytest.fixture()
def run_factory():
    """The :func:`run_builders.make_run` builder."""
    return make_run
