"""Per-core performance monitoring with the fixed and programmable PMU counters."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from .arch import cpu_arch
from .config import ExportConfig
from .core_events import (
    IA32_FIXED_CTR0,
    IA32_FIXED_CTR1,
    IA32_FIXED_CTR2,
    IA32_FIXED_CTR_CTRL,
    IA32_PERF_GLOBAL_CTRL,
    IA32_PERFEVTSEL0,
    IA32_PMC0,
    IA32_PMC1,
    IA32_PMC2,
    IA32_PMC3,
    IA32_TIME_STAMP_COUNTER,
    MSR_PLATFORM_INFO,
    default_event_set,
)
from .errors import UncflowError
from .msr import Msr

log = logging.getLogger(__name__)

FIXED_CTR_USER_MODE = 0x333
GLOBAL_CTRL_ENABLE_ALL = (0x7 << 32) | 0xF
PROGRAMMABLE_COUNTERS = 4
_HZ_PER_RATIO = 100_000_000.0


class RegisterAccess(Protocol):
    def read(self, cpu: int, addr: int) -> int: ...

    def write(self, cpu: int, addr: int, value: int) -> None: ...


@dataclass
class CoreMetrics:
    """Raw counter values read from one core."""

    instructions: int = 0
    cycles: int = 0
    ref_cycles: int = 0
    llc_ref: int = 0
    llc_miss: int = 0
    l2_ref: int = 0
    l2_miss: int = 0
    l2_prefetch_miss: int = 0
    l2_prefetch_hit: int = 0
    l2_out_silent: int = 0
    l2_out_non_silent: int = 0
    l2_in: int = 0
    l2_writeback: int = 0
    tsc_start: int = 0
    tsc_end: int = 0


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def _hit_ratio(misses: int, references: int) -> float:
    return 1.0 - misses / references if references > 0 else 0.0


class CoreMonitor:
    """Programs the core PMU of the configured cores and derives cache metrics."""

    def __init__(self, config: ExportConfig, msr: Optional[RegisterAccess] = None) -> None:
        self.config = config
        self._msr: RegisterAccess = Msr.instance() if msr is None else msr
        self.cpu_frequency = self._read_frequency()
        log.info("Detected CPU frequency: %.2f GHz", self.cpu_frequency / 1e9)
        self.programmable_events = default_event_set()
        log.info(
            "Selected %d PMU events for architecture: %s",
            len(self.programmable_events),
            cpu_arch().display_name,
        )
        self._metrics: dict[int, CoreMetrics] = {}

    def _read_frequency(self) -> float:
        platform_info = self._msr.read(0, MSR_PLATFORM_INFO)
        max_non_turbo_ratio = (platform_info >> 8) & 0xFF
        return max_non_turbo_ratio * _HZ_PER_RATIO

    def initialize(self) -> None:
        """Program and start the counters on every configured core."""
        for core in self.config.cores:
            self._initialize_core(core)
            log.info("Initialized PMU for core %d", core)

    def _initialize_core(self, core: int) -> None:
        write = self._msr.write
        write(core, IA32_PERF_GLOBAL_CTRL, 0)
        write(core, IA32_FIXED_CTR_CTRL, FIXED_CTR_USER_MODE)
        for offset, event in enumerate(self.programmable_events):
            write(core, IA32_PERFEVTSEL0 + offset, event.encode_for_perfevtsel(True, False))
        for counter in (IA32_FIXED_CTR0, IA32_FIXED_CTR1, IA32_FIXED_CTR2):
            write(core, counter, 0)
        for offset in range(PROGRAMMABLE_COUNTERS):
            write(core, IA32_PMC0 + offset, 0)
        write(core, IA32_PERF_GLOBAL_CTRL, GLOBAL_CTRL_ENABLE_ALL)

    def _read_core(self, core: int) -> CoreMetrics:
        read = self._msr.read
        tsc = read(core, IA32_TIME_STAMP_COUNTER)
        instructions = read(core, IA32_FIXED_CTR0)
        cycles = read(core, IA32_FIXED_CTR1)
        ref_cycles = read(core, IA32_FIXED_CTR2)
        llc_ref = read(core, IA32_PMC0)
        llc_miss = read(core, IA32_PMC1)
        l2_miss = read(core, IA32_PMC2)
        l2_ref = read(core, IA32_PMC3)
        return CoreMetrics(
            instructions=instructions,
            cycles=cycles,
            ref_cycles=ref_cycles,
            llc_ref=llc_ref,
            llc_miss=llc_miss,
            l2_ref=l2_ref,
            l2_miss=l2_miss,
            tsc_start=tsc,
            tsc_end=tsc,
        )

    def collect(self) -> None:
        """Read the counters of every configured core."""
        for core in self.config.cores:
            self._metrics[core] = self._read_core(core)

    def get_metrics(self, core: int) -> dict[str, float]:
        """Return the derived metrics of ``core``; empty if it was never collected."""
        m = self._metrics.get(core)
        if m is None:
            return {}
        elapsed = m.ref_cycles / self.cpu_frequency if self.cpu_frequency > 0.0 else 0.0
        return {
            "instructions": float(m.instructions),
            "cycles": float(m.cycles),
            "IPC": _ratio(m.instructions, m.cycles),
            "L3CacheMissNum": float(m.llc_miss),
            "L3CacheRef": float(m.llc_ref),
            "L3CacheHitRatio": _hit_ratio(m.llc_miss, m.llc_ref),
            "L3MPI": _ratio(m.llc_miss, m.instructions),
            "L2CacheMissNum": float(m.l2_miss),
            "L2CacheRef": float(m.l2_ref),
            "L2CacheHitRatio": _hit_ratio(m.l2_miss, m.l2_ref),
            "L2MPI": _ratio(m.l2_miss, m.instructions),
            "elapsedTime": elapsed,
            "L2PrefetchMiss": float(m.l2_prefetch_miss),
            "L2PrefetchHit": float(m.l2_prefetch_hit),
            "L2OutSilent": float(m.l2_out_silent),
            "L2OutNonSilent": float(m.l2_out_non_silent),
            "L2In": float(m.l2_in),
            "L2Writeback": float(m.l2_writeback),
        }

    def close(self) -> None:
        """Disable the counters on every configured core, ignoring failures."""
        for core in self.config.cores:
            try:
                self._msr.write(core, IA32_PERF_GLOBAL_CTRL, 0)
            except (UncflowError, OSError) as exc:
                log.debug("Failed to disable counters on core %d: %s", core, exc)

    def __enter__(self) -> "CoreMonitor":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()