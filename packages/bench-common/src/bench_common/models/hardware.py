"""
Hardware profile models for ASR Bench Lab.

:class:`HardwareProfile` is the raw probe record captured on the host;
:class:`HardwareSummary` holds the short labels copied onto every run.
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, ConfigDict, Field

from bench_common.models.base import CamelModel

UNAVAILABLE = "Unavailable"


class GpuInfo(CamelModel):
    """One GPU reported by the probe."""

    name: str = ""
    vendor: str = ""
    memory_bytes: int | None = None
    cores: int | None = None


class HardwareProfile(CamelModel):
    """Host capabilities captured before a batch.

    Attributes:
        captured_at: ISO timestamp of the probe.
        system: OS name, release and machine architecture.
        python: Interpreter implementation and version.
        cpu_model: Processor description.
        logical_cores: Logical CPU count.
        physical_cores: Physical CPU count.
        memory_bytes: Total system memory.
        gpus: Detected GPUs.
        accelerators: Names of usable inference accelerators.
        errors: Probe steps that failed, with their messages.
    """

    model_config = ConfigDict(extra="allow")

    captured_at: str = ""
    system: dict[str, Any] = Field(default_factory=dict)
    python: str = ""
    cpu_model: str = ""
    logical_cores: int | None = None
    physical_cores: int | None = None
    memory_bytes: int | None = None
    gpus: list[GpuInfo] = Field(default_factory=list)
    accelerators: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)


class HardwareSummary(CamelModel):
    """Human-readable hardware labels stored with runs and snapshots."""

    model_config = ConfigDict(extra="ignore")

    cpu_label: str = "-"
    gpu_label: str = "-"
    gpu_model_label: str = "-"
    gpu_cores_label: str = UNAVAILABLE
    vram_label: str = UNAVAILABLE
    system_memory_label: str = "-"
    accelerator_label: str = Field(
        default="No",
        validation_alias=AliasChoices("acceleratorLabel", "accelerator_label", "webgpuLabel"),
    )
