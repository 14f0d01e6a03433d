"""CPUID queries through the kernel's per-CPU cpuid device."""

from __future__ import annotations

import logging
import struct
from pathlib import Path

from .errors import HardwareError

log = logging.getLogger(__name__)

DEFAULT_CPUID_DEVICE = Path("/dev/cpu/0/cpuid")
_REGISTERS = struct.Struct("<4I")


def cpuid(
    leaf: int, subleaf: int = 0, device: str | Path | None = None
) -> tuple[int, int, int, int]:
    """Return ``(eax, ebx, ecx, edx)`` for a CPUID leaf.

    All registers are zero when the cpuid device is unavailable.
    """
    path = DEFAULT_CPUID_DEVICE if device is None else Path(device)
    offset = ((subleaf & 0xFFFFFFFF) << 32) | (leaf & 0xFFFFFFFF)
    try:
        with open(path, "rb", buffering=0) as handle:
            handle.seek(offset)
            data = handle.read(_REGISTERS.size)
    except OSError as exc:
        log.debug("cpuid device %s unavailable: %s", path, exc)
        return (0, 0, 0, 0)
    if data is None or len(data) != _REGISTERS.size:
        raise HardwareError(
            f"short read of CPUID leaf 0x{leaf:X} subleaf 0x{subleaf:X} from {path}"
        )
    eax, ebx, ecx, edx = _REGISTERS.unpack(data)
    return eax, ebx, ecx, edx


def mbm_scaling_factor(device: str | Path | None = None) -> int:
    """Return the memory bandwidth monitoring upscaling factor (at least 1)."""
    _, ebx, _, _ = cpuid(0x0F, 0x1, device)
    if ebx == 0:
        log.warning("MBM scaling factor is 0, defaulting to 1")
        return 1
    log.info("MBM scaling factor: %d", ebx)
    return ebx