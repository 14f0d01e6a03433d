"""CPU micro-architecture detection and per-architecture event tables."""

from __future__ import annotations

import functools
import logging
from enum import Enum

from .cpuid import cpuid
from .errors import UncflowError

log = logging.getLogger(__name__)

_SKYLAKE_EVICTION = ((0xF2, 0x01, "L2OutSilent"), (0xF2, 0x02, "L2OutNonSilent"))
_HASWELL_EVICTION = ((0xF2, 0x05, "L2OutClean"), (0xF2, 0x06, "L2OutDirty"))
_SKYLAKE_PREFETCH = ((0x24, 0x38, "L2PrefetchMiss"), (0x24, 0xD8, "L2PrefetchHit"))
_HASWELL_PREFETCH = ((0x24, 0x30, "L2PrefetchMiss"), (0x24, 0x50, "L2PrefetchHit"))


class CpuArchitecture(Enum):
    """Known Intel server micro-architectures; the value is the display name."""

    SKYLAKE = "Skylake"
    HASWELL = "Haswell"
    BROADWELL = "Broadwell"
    CASCADE_LAKE = "Cascade Lake"
    ICE_LAKE = "Ice Lake"
    UNKNOWN = "Unknown"

    @property
    def display_name(self) -> str:
        return self.value

    def _is_haswell_family(self) -> bool:
        return self in (CpuArchitecture.HASWELL, CpuArchitecture.BROADWELL)

    def l2_eviction_events(self) -> list[tuple[int, int, str]]:
        """Return ``(event, umask, name)`` for the L2 eviction events."""
        return list(_HASWELL_EVICTION if self._is_haswell_family() else _SKYLAKE_EVICTION)

    def l2_prefetch_events(self) -> list[tuple[int, int, str]]:
        """Return ``(event, umask, name)`` for the L2 prefetch events."""
        return list(_HASWELL_PREFETCH if self._is_haswell_family() else _SKYLAKE_PREFETCH)

    def supports_offcore_response(self) -> bool:
        return self is not CpuArchitecture.UNKNOWN

    def cha_count(self) -> int | None:
        """Return the number of CHA boxes, or None if unknown."""
        return _CHA_COUNTS.get(self)


_CHA_COUNTS = {
    CpuArchitecture.SKYLAKE: 14,
    CpuArchitecture.CASCADE_LAKE: 26,
    CpuArchitecture.HASWELL: 18,
    CpuArchitecture.BROADWELL: 14,
    CpuArchitecture.ICE_LAKE: 24,
}


def classify(eax: int) -> CpuArchitecture:
    """Classify the architecture from the EAX value of CPUID leaf 1."""
    stepping = eax & 0xF
    model = (eax >> 4) & 0xF
    family = (eax >> 8) & 0xF
    extended_model = (eax >> 16) & 0xF
    extended_family = (eax >> 20) & 0xFF

    display_family = family + extended_family if family == 0xF else family
    display_model = (extended_model << 4) + model if family in (0x6, 0xF) else model

    log.info(
        "CPU: Family %X, Model %X, Stepping %X", display_family, display_model, stepping
    )

    if display_family != 0x6:
        log.warning("Non-Intel or very old Intel CPU detected")
        return CpuArchitecture.UNKNOWN

    if display_model in (0x3C, 0x45, 0x46):
        arch = CpuArchitecture.HASWELL
    elif display_model in (0x3D, 0x47, 0x4F, 0x56):
        arch = CpuArchitecture.BROADWELL
    elif display_model in (0x4E, 0x5E):
        arch = CpuArchitecture.SKYLAKE
    elif display_model == 0x55:
        arch = CpuArchitecture.CASCADE_LAKE if stepping >= 5 else CpuArchitecture.SKYLAKE
    elif display_model in (0x7D, 0x7E, 0x6A, 0x6C):
        arch = CpuArchitecture.ICE_LAKE
    else:
        log.warning("Unknown Intel CPU model: %X", display_model)
        if display_model >= 0x4E:
            log.info("Defaulting to Skylake architecture for compatibility")
            arch = CpuArchitecture.SKYLAKE
        else:
            arch = CpuArchitecture.UNKNOWN

    log.info("Detected CPU architecture: %s", arch.display_name)
    return arch


def detect_architecture() -> CpuArchitecture:
    """Query CPUID leaf 1 of this machine and classify the result."""
    eax, _, _, _ = cpuid(1, 0)
    return classify(eax)


@functools.lru_cache(maxsize=None)
def cpu_arch() -> CpuArchitecture:
    """Return the architecture of this machine, detected once."""
    try:
        return detect_architecture()
    except UncflowError:
        return CpuArchitecture.UNKNOWN