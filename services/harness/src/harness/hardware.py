"""
Host hardware probe for ASR Bench Lab.

Captures the CPU, memory and GPU description of the benchmarking host
(via :mod:`platform`, :mod:`psutil` and ``nvidia-smi`` when present) and
condenses it into the short labels stored with every run.
"""

from __future__ import annotations

import asyncio
import platform
import re
import shutil
import subprocess
from pathlib import Path

import psutil
import structlog

from bench_common.models import GpuInfo, HardwareProfile, HardwareSummary
from bench_common.models.hardware import UNAVAILABLE
from bench_common.utils import utc_now_iso

logger = structlog.get_logger()

_GPU_MODEL_PATTERNS = [
    re.compile(r"NVIDIA\s+GeForce\s+([A-Za-z0-9 .\-]+)", re.IGNORECASE),
    re.compile(r"(GeForce\s+[A-Za-z0-9 .\-]+)", re.IGNORECASE),
    re.compile(r"(Radeon\s+[A-Za-z0-9 .\-]+)", re.IGNORECASE),
    re.compile(r"(RX\s*\d{3,4}[A-Za-z0-9 ]*)", re.IGNORECASE),
    re.compile(r"(Arc\s+[A-Za-z0-9 .\-]+)", re.IGNORECASE),
    re.compile(r"(Intel\(R\)\s+[A-Za-z0-9 .\-]+Graphics)", re.IGNORECASE),
    re.compile(r"(Apple\s+[A-Za-z0-9 .\-]+)", re.IGNORECASE),
    re.compile(r"NVIDIA\s+([A-Za-z0-9 .\-]+)", re.IGNORECASE),
]


def format_bytes(value: int | None) -> str | None:
    """Render a byte count as ``"x.y GB"`` (``None`` when unknown)."""
    if value is None or value <= 0:
        return None
    return f"{value / 1024 ** 3:.1f} GB"


def parse_gpu_model(text: str) -> str:
    """Extract a marketing model name from a GPU description, or ``"-"``."""
    if not text:
        return "-"
    for pattern in _GPU_MODEL_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1):
            model = re.sub(r"\s+Direct3D.*$", "", match.group(1), flags=re.IGNORECASE)
            return re.sub(r"\s*\(0x[0-9A-F]+\).*$", "", model, flags=re.IGNORECASE).strip()
    return "-"


# ── probing ──


def _cpu_model() -> str:
    cpuinfo = Path("/proc/cpuinfo")
    if cpuinfo.exists():
        for line in cpuinfo.read_text(encoding="utf-8", errors="replace").splitlines():
            if line.lower().startswith("model name"):
                return line.split(":", 1)[1].strip()
    return platform.processor() or platform.machine()


def _nvidia_gpus() -> list[GpuInfo]:
    exe = shutil.which("nvidia-smi")
    if exe is None:
        return []
    out = subprocess.run(
        [exe, "--query-gpu=name,memory.total", "--format=csv,noheader,nounits"],
        capture_output=True,
        text=True,
        timeout=10,
        check=True,
    ).stdout
    gpus = []
    for line in out.splitlines():
        name, _, memory_mib = line.partition(",")
        if not name.strip():
            continue
        try:
            memory = int(float(memory_mib.strip()) * 1024 * 1024)
        except ValueError:
            memory = None
        gpus.append(GpuInfo(name=name.strip(), vendor="NVIDIA", memory_bytes=memory))
    return gpus


def collect_hardware_profile() -> HardwareProfile:
    """Probe the host synchronously. Individual probe failures are recorded, not raised."""
    uname = platform.uname()
    profile = HardwareProfile(
        captured_at=utc_now_iso(),
        system={"os": uname.system, "release": uname.release, "machine": uname.machine},
        python=f"{platform.python_implementation()} {platform.python_version()}",
    )

    try:
        profile.cpu_model = _cpu_model()
    except OSError as exc:
        profile.errors["cpu_model"] = str(exc)
    profile.logical_cores = psutil.cpu_count(logical=True)
    profile.physical_cores = psutil.cpu_count(logical=False)
    try:
        profile.memory_bytes = int(psutil.virtual_memory().total)
    except (OSError, RuntimeError) as exc:
        profile.errors["memory"] = str(exc)

    try:
        profile.gpus = _nvidia_gpus()
    except (OSError, subprocess.SubprocessError) as exc:
        profile.errors["gpu"] = str(exc)
    if profile.gpus:
        profile.accelerators.append("cuda")
    if uname.system == "Darwin" and uname.machine == "arm64":
        profile.accelerators.append("metal")
    return profile


async def probe_hardware() -> HardwareProfile:
    """Run :func:`collect_hardware_profile` off the event loop."""
    profile = await asyncio.to_thread(collect_hardware_profile)
    logger.info(
        "hardware_probed",
        cpu=profile.cpu_model,
        logical_cores=profile.logical_cores,
        gpus=[gpu.name for gpu in profile.gpus],
        errors=profile.errors or None,
    )
    return profile


# ── summary ──


def summarize_hardware_profile(profile: HardwareProfile | None) -> HardwareSummary:
    """Condense *profile* into run labels (placeholders when ``None``)."""
    if profile is None:
        return HardwareSummary()

    if profile.cpu_model and profile.logical_cores:
        cpu = f"{profile.cpu_model} ({profile.logical_cores} logical cores)"
    elif profile.logical_cores:
        cpu = f"{profile.logical_cores} logical cores"
    else:
        cpu = profile.cpu_model or "Unknown CPU"

    gpu = profile.gpus[0] if profile.gpus else None
    return HardwareSummary(
        cpu_label=cpu,
        gpu_label=gpu.name if gpu else "No GPU info",
        gpu_model_label=parse_gpu_model(gpu.name) if gpu else "-",
        gpu_cores_label=str(gpu.cores) if gpu and gpu.cores else UNAVAILABLE,
        vram_label=(format_bytes(gpu.memory_bytes) if gpu else None) or UNAVAILABLE,
        system_memory_label=format_bytes(profile.memory_bytes) or "-",
        accelerator_label=f"Yes ({', '.join(profile.accelerators)})" if profile.accelerators else "No",
    )
