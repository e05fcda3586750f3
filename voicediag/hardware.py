from __future__ import annotations
import platform
from typing import Callable, List

import psutil

from .errors import ShellError
from .shell import run_powershell_json

_GB = 1024 ** 3


def _cim_names(cls_name: str) -> List[str]:
    rows = run_powershell_json(f"Get-CimInstance {cls_name} | Select-Object Name")
    return [str(r.get("Name")) for r in rows if r.get("Name")]


def collect_hardware_report(cim: Callable[[str], List[str]] = _cim_names) -> List[str]:
    """Read-only inventory lines: CPU, RAM, storage, GPU, audio."""
    lines: List[str] = []

    try:
        freq = psutil.cpu_freq()
    except (NotImplementedError, OSError):
        freq = None
    lines.append(
        f"CPU: {platform.processor() or platform.machine()} "
        f"({psutil.cpu_count(logical=False) or '?'} cores / {psutil.cpu_count(logical=True) or '?'} threads"
        + (f", {freq.max or freq.current:.0f} MHz)" if freq else ")")
    )

    mem = psutil.virtual_memory()
    lines.append(f"RAM: {mem.total / _GB:.1f} GB total, {mem.available / _GB:.1f} GB available")

    for part in psutil.disk_partitions(all=False):
        try:
            usage = psutil.disk_usage(part.mountpoint)
        except (PermissionError, OSError):
            lines.append(f"Disk {part.device}: unavailable")
            continue
        lines.append(
            f"Disk {part.device} ({part.fstype or '?'}): {usage.total / _GB:.1f} GB, "
            f"{usage.percent:.0f}% used"
        )

    for label, cls_name in (("GPU", "Win32_VideoController"), ("Audio", "Win32_SoundDevice")):
        try:
            names = cim(cls_name)
        except (ShellError, OSError):
            lines.append(f"{label}: unavailable")
            continue
        if not names:
            lines.append(f"{label}: none found")
        for name in names:
            lines.append(f"{label}: {name}")

    return lines
