"""IO request processing (IRP) uncore monitoring: IO bandwidth, occupancy and latency."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Sequence

from .arch import CpuArchitecture, cpu_arch
from .errors import InvalidConfiguration, PciError, UnsupportedArchitecture
from .msr import Msr
from .pci import INTEL_VENDOR_ID, Pci, PciConfigAddress

log = logging.getLogger(__name__)

# MSR-based IRP boxes (Skylake and newer), three per socket.
IRP_UNIT_CTRL = (0x0A78, 0x0A98, 0x0AB8)
IRP_UNIT_STATUS = (0x0A7F, 0x0A9F, 0x0ABF)
IRP_CTR0 = (0x0A79, 0x0A99, 0x0AB9)
IRP_CTR1 = (0x0A7A, 0x0A9A, 0x0ABA)
IRP_CTRL0 = (0x0A7B, 0x0A9B, 0x0ABB)
IRP_CTRL1 = (0x0A7C, 0x0A9C, 0x0ABC)

# PCI-based IRP box (Haswell and Broadwell).
IRP_DEVICE = 5
IRP_FUNCTION = 6
IRP_DEVICE_ID = 0x6F39
IRP_UNIT_STATUS_ADDR = 0xF8
IRP_UNIT_CTL_ADDR = 0xF4
IRP_CTR_ADDR = (0xA0, 0xB0, 0xB8, 0xC0)
IRP_CTL_ADDR = (0xD8, 0xDC, 0xE0, 0xE4)

UNCORE_COUNTER_WIDTH = 48
IRP_PCI_COUNTER_WIDTH = 32
CACHELINE_SIZE = 64

BOX_FREEZE = 0x100
BOX_RESET = 0x102
COUNTER_ENABLE = 1 << 22
_MSR_UNITS_PER_SOCKET = 3
_CORES_PER_SOCKET = 16


class RegisterAccess(Protocol):
    def read(self, cpu: int, addr: int) -> int: ...

    def write(self, cpu: int, addr: int, value: int) -> None: ...


class PciAccess(Protocol):
    def read32(self, config_addr: PciConfigAddress, offset: int) -> int: ...

    def write32(self, config_addr: PciConfigAddress, offset: int, value: int) -> None: ...


class IrpMetric(Enum):
    """Metrics derived from the IRP counters."""

    IRP_FREQUENCY = "IRPFrequency"
    IRP_ANY_OCCUPANCY = "IRPAnyOccupancy"
    IRP_LATENCY = "IRPLatency"
    IRP_ALL_BANDWIDTH = "IRPAllBandwidth"
    IRP_PCIE_READ_BANDWIDTH = "IRPPCIeReadBandwidth"
    IRP_RFO_BANDWIDTH = "IRPRFOBandwidth"
    IRP_PCI_ITOM_BANDWIDTH = "IRPPCIItoMBandwidth"
    IRP_WBMTOI_BANDWIDTH = "IRPWbMtoIBandwidth"
    IRP_CLFLUSH_BANDWIDTH = "IRPCLFlushBandwidth"


@dataclass(frozen=True)
class IrpEventConfig:
    """Events for the two counters of an IRP box."""

    name: str
    event0: int
    umask0: int
    event1: int
    umask1: int

    @property
    def control0(self) -> int:
        return _control(self.event0, self.umask0)

    @property
    def control1(self) -> int:
        return _control(self.event1, self.umask1)


def _control(event: int, umask: int) -> int:
    return (umask << 8) | event | COUNTER_ENABLE


IRP_EVENTS: tuple[IrpEventConfig, ...] = (
    IrpEventConfig("All", 0x0F, 0x01, 0x10, 0xFF),
    IrpEventConfig("Clockticks", 0x0F, 0x01, 0x01, 0x00),
    IrpEventConfig("PCIeRead", 0x0F, 0x01, 0x10, 0x01),
    IrpEventConfig("RFO", 0x0F, 0x01, 0x10, 0x08),
    IrpEventConfig("PCIItoM", 0x0F, 0x01, 0x10, 0x10),
    IrpEventConfig("WbMtoI", 0x0F, 0x01, 0x10, 0x40),
    IrpEventConfig("CLFlush", 0x0F, 0x01, 0x10, 0x80),
)

_BANDWIDTH_METRICS = {
    "All": IrpMetric.IRP_ALL_BANDWIDTH,
    "PCIeRead": IrpMetric.IRP_PCIE_READ_BANDWIDTH,
    "RFO": IrpMetric.IRP_RFO_BANDWIDTH,
    "PCIItoM": IrpMetric.IRP_PCI_ITOM_BANDWIDTH,
    "WbMtoI": IrpMetric.IRP_WBMTOI_BANDWIDTH,
    "CLFlush": IrpMetric.IRP_CLFLUSH_BANDWIDTH,
}

_MSR_ARCHS = (CpuArchitecture.SKYLAKE, CpuArchitecture.CASCADE_LAKE, CpuArchitecture.ICE_LAKE)
_PCI_ARCHS = (CpuArchitecture.HASWELL, CpuArchitecture.BROADWELL)


def _div(numerator: float, denominator: float) -> float:
    """Floating-point division that yields inf or nan instead of raising."""
    if denominator == 0:
        return math.copysign(math.inf, numerator) if numerator else math.nan
    return numerator / denominator


class _MsrUnit:
    def __init__(self, msr: RegisterAccess, core: int, index: int) -> None:
        self._msr = msr
        self.core = core
        self.index = index

    def program(self, config: IrpEventConfig) -> None:
        ctrl = IRP_UNIT_CTRL[self.index]
        self._msr.write(self.core, ctrl, BOX_FREEZE)
        self._msr.write(self.core, ctrl, BOX_RESET)
        self._msr.write(self.core, IRP_CTRL0[self.index], config.control0)
        self._msr.write(self.core, IRP_CTRL1[self.index], config.control1)
        self._msr.write(self.core, ctrl, 0)

    def read_counters(self) -> tuple[int, int]:
        mask = (1 << UNCORE_COUNTER_WIDTH) - 1
        ctr0 = self._msr.read(self.core, IRP_CTR0[self.index]) & mask
        ctr1 = self._msr.read(self.core, IRP_CTR1[self.index]) & mask
        return ctr0, ctr1


class _PciUnit:
    def __init__(self, pci: PciAccess, socket: int) -> None:
        self._pci = pci
        self.address = PciConfigAddress(socket, IRP_DEVICE, IRP_FUNCTION, IRP_DEVICE_ID)
        value = pci.read32(self.address, 0)
        vendor = value & 0xFFFF
        device = (value >> 16) & 0xFFFF
        if vendor != INTEL_VENDOR_ID:
            raise PciError(
                f"IRP device not found for socket {socket}: invalid vendor {vendor:04X}"
            )
        if device != IRP_DEVICE_ID:
            raise PciError(
                f"IRP device ID mismatch for socket {socket}: "
                f"expected {IRP_DEVICE_ID:04X}, got {device:04X}"
            )

    def program(self, first: IrpEventConfig, second: IrpEventConfig) -> None:
        write = self._pci.write32
        write(self.address, IRP_UNIT_CTL_ADDR, BOX_FREEZE)
        write(self.address, IRP_UNIT_CTL_ADDR, BOX_RESET)
        controls = (first.control0, first.control1, second.control0, second.control1)
        for offset, value in zip(IRP_CTL_ADDR, controls):
            write(self.address, offset, value)
        write(self.address, IRP_UNIT_CTL_ADDR, 0)

    def read_counters(self) -> tuple[int, int, int, int]:
        status = self._pci.read32(self.address, IRP_UNIT_STATUS_ADDR)
        if status & 0xF:
            self._pci.write32(self.address, IRP_UNIT_STATUS_ADDR, status & 0xF)
        mask = (1 << IRP_PCI_COUNTER_WIDTH) - 1
        c0, c1, c2, c3 = (self._pci.read32(self.address, off) & mask for off in IRP_CTR_ADDR)
        return c0, c1, c2, c3


class IrpMonitor:
    """Cycles through the IRP events of one socket and derives IO metrics."""

    def __init__(
        self,
        socket: int,
        arch: Optional[CpuArchitecture] = None,
        msr: Optional[RegisterAccess] = None,
        pci: Optional[PciAccess] = None,
        measure_duration: float = 1.0,
    ) -> None:
        self.socket = socket
        self.arch = cpu_arch() if arch is None else arch
        self.measure_duration = measure_duration
        self._event_results: dict[str, tuple[int, int]] = {}
        self._msr_units: list[_MsrUnit] = []
        self._pci_units: list[_PciUnit] = []

        if self.arch in _MSR_ARCHS:
            access: RegisterAccess = Msr.instance() if msr is None else msr
            core = socket * _CORES_PER_SOCKET
            self._msr_units = [_MsrUnit(access, core, i) for i in range(_MSR_UNITS_PER_SOCKET)]
        elif self.arch in _PCI_ARCHS:
            pci_access: PciAccess = Pci.instance() if pci is None else pci
            self._pci_units = [_PciUnit(pci_access, socket)]
        else:
            raise UnsupportedArchitecture(
                f"IRP monitoring not supported on {self.arch.name}"
            )

    def collect_metrics(self) -> dict[IrpMetric, float]:
        """Measure every event group for ``measure_duration`` seconds each."""
        metrics: dict[IrpMetric, float] = {}
        if self._msr_units:
            self._collect_msr(metrics)
        elif self._pci_units:
            self._collect_pci(metrics)
        else:
            raise InvalidConfiguration("No IRP units available")
        return metrics

    def _collect_msr(self, metrics: dict[IrpMetric, float]) -> None:
        for config in IRP_EVENTS:
            for unit in self._msr_units:
                unit.program(config)
            start = time.monotonic()
            time.sleep(self.measure_duration)
            readings = [unit.read_counters() for unit in self._msr_units]
            aggregated = (sum(r[0] for r in readings), sum(r[1] for r in readings))
            elapsed = time.monotonic() - start
            self._event_results[config.name] = aggregated
            self.calculate_event_metrics(config.name, aggregated, elapsed, metrics)

    def _collect_pci(self, metrics: dict[IrpMetric, float]) -> None:
        # Events are measured in pairs; an unpaired trailing event is not measured.
        for first, second in zip(IRP_EVENTS[0::2], IRP_EVENTS[1::2]):
            for unit in self._pci_units:
                unit.program(first, second)
            start = time.monotonic()
            time.sleep(self.measure_duration)
            for unit in self._pci_units:
                values = unit.read_counters()
                elapsed = time.monotonic() - start
                for config, pair in ((first, values[0:2]), (second, values[2:4])):
                    result = (pair[0], pair[1])
                    self._event_results[config.name] = result
                    self.calculate_event_metrics(config.name, result, elapsed, metrics)

    def calculate_event_metrics(
        self,
        event_name: str,
        values: Sequence[int],
        duration: float,
        metrics: dict[IrpMetric, float],
    ) -> None:
        """Add the metrics derived from ``values`` measured over ``duration`` seconds."""
        elapsed_s = float(duration)
        elapsed_ns = elapsed_s * 1e9

        if event_name == "Clockticks":
            frequency = _div(_div(values[1], elapsed_s), 1e9)
            metrics[IrpMetric.IRP_FREQUENCY] = frequency
            occupancy_values = self._event_results.get("All")
            if occupancy_values is not None:
                metrics[IrpMetric.IRP_ANY_OCCUPANCY] = _div(
                    occupancy_values[0], frequency * 1e9 * elapsed_s
                )
            return

        if event_name == "All":
            clockticks = self._event_results.get("Clockticks")
            if clockticks is not None:
                if values[1] > 0:
                    latency = values[0] / values[1] * _div(clockticks[1], elapsed_ns)
                else:
                    latency = 0.0
                metrics[IrpMetric.IRP_LATENCY] = latency

        metric = _BANDWIDTH_METRICS.get(event_name)
        if metric is not None:
            metrics[metric] = _div(_div(values[1] * CACHELINE_SIZE, elapsed_s), 1e9)