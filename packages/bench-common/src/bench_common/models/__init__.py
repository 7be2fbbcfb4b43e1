"""
Shared Pydantic data models for ASR Bench Lab.

This package contains the cross-package records: runs and their stage
metrics, prepared samples, hardware profiles, snapshots and exports.
"""

from bench_common.models.hardware import GpuInfo, HardwareProfile, HardwareSummary
from bench_common.models.run import (
    RTFX_STAGES,
    STAGES,
    TIMED_STAGES,
    Run,
    StageMetrics,
    calc_rtfx,
)
from bench_common.models.sample import Sample
from bench_common.models.snapshot import BatchExport, BatchSummary, CompactRun, Snapshot

__all__ = [
    "RTFX_STAGES",
    "STAGES",
    "TIMED_STAGES",
    "BatchExport",
    "BatchSummary",
    "CompactRun",
    "GpuInfo",
    "HardwareProfile",
    "HardwareSummary",
    "Run",
    "Sample",
    "Snapshot",
    "StageMetrics",
    "calc_rtfx",
]
