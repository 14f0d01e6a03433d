"""Core PMU event definitions and register addresses."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .arch import CpuArchitecture, cpu_arch

INST_RETIRED = "InstructionsRetired"
CPU_CLK_UNHALTED = "UnhaltedCoreCycles"
REF_CPU_CYCLES = "UnhaltedReferenceCycles"

IA32_PERF_GLOBAL_CTRL = 0x38F
IA32_FIXED_CTR_CTRL = 0x38D
IA32_PERF_GLOBAL_STATUS = 0x38E
IA32_PERF_GLOBAL_OVF_CTRL = 0x390

IA32_FIXED_CTR0 = 0x309
IA32_FIXED_CTR1 = 0x30A
IA32_FIXED_CTR2 = 0x30B

IA32_PERFEVTSEL0 = 0x186
IA32_PERFEVTSEL1 = 0x187
IA32_PERFEVTSEL2 = 0x188
IA32_PERFEVTSEL3 = 0x189

IA32_PMC0 = 0xC1
IA32_PMC1 = 0xC2
IA32_PMC2 = 0xC3
IA32_PMC3 = 0xC4

IA32_TIME_STAMP_COUNTER = 0x10
MSR_PLATFORM_INFO = 0xCE


@dataclass(frozen=True)
class PmuEvent:
    """A programmable counter event: event select, unit mask and name."""

    event: int
    umask: int
    name: str

    def encode_for_perfevtsel(self, user: bool, kernel: bool) -> int:
        """Return the IA32_PERFEVTSELx value that enables this event."""
        value = self.event & 0xFF
        value |= (self.umask & 0xFF) << 8
        if user:
            value |= 1 << 16
        if kernel:
            value |= 1 << 17
        return value | (1 << 22)


COMMON_EVENTS: tuple[PmuEvent, ...] = (
    PmuEvent(0x2E, 0x4F, "LLCReference"),
    PmuEvent(0x2E, 0x41, "LLCMisses"),
    PmuEvent(0x24, 0x3F, "L2RequestMisses"),
    PmuEvent(0x24, 0xFF, "L2RequestReference"),
    PmuEvent(0xF1, 0x1F, "L2In"),
    PmuEvent(0xF0, 0x40, "L2Writeback"),
)


def architecture_events(arch: Optional[CpuArchitecture] = None) -> list[PmuEvent]:
    """Common events plus the L2 prefetch and eviction events of ``arch``."""
    target = cpu_arch() if arch is None else arch
    events = list(COMMON_EVENTS)
    events.extend(PmuEvent(e, u, n) for e, u, n in target.l2_prefetch_events())
    events.extend(PmuEvent(e, u, n) for e, u, n in target.l2_eviction_events())
    return events


def default_event_set() -> list[PmuEvent]:
    """The four events programmed into the general-purpose counters."""
    return list(COMMON_EVENTS[:4])