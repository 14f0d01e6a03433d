"""Memory bandwidth, queue occupancy and latency from the integrated memory controller."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from .errors import InvalidConfiguration, UncflowError
from .pci import INTEL_VENDOR_ID, Pci, PciConfigAddress

log = logging.getLogger(__name__)

# (device, function, device id) of each memory channel.
IMC_CHANNELS: tuple[tuple[int, int, int], ...] = (
    (0x0A, 2, 0x2042),
    (0x0A, 6, 0x2046),
    (0x0B, 2, 0x204A),
    (0x0C, 2, 0x2042),
    (0x0C, 6, 0x2046),
    (0x0D, 2, 0x204A),
)

IMC_CTR0 = 0x0A0
IMC_CTR1 = 0x0A8
IMC_CTR2 = 0x0B0
IMC_CTR3 = 0x0B8
IMC_CTL0 = 0x0D8
IMC_CTL1 = 0x0DC
IMC_CTL2 = 0x0E0
IMC_CTL3 = 0x0E4
IMC_BOX_CTL = 0x0F4
IMC_DCLK_CTR = 0x0A4
IMC_DCLK_CTL = 0x0A4

IMC_CAS_COUNT_RD = 0x04
IMC_CAS_COUNT_WR = 0x04
IMC_CAS_COUNT_RD_UMASK = 0x03
IMC_CAS_COUNT_WR_UMASK = 0x0C
IMC_RPQ_OCCUPANCY = 0x80
IMC_WPQ_OCCUPANCY = 0x81

FREEZE_BIT = 1 << 8
RESET_BIT = 1 << 16
ENABLE_BIT = 1 << 22
DCLK_ENABLE_BIT = 1 << 22
DCLK_RESET_BIT = 1 << 19

CACHE_LINE_SIZE = 64
FALLBACK_CHANNELS = (0, 1)
_ASSUMED_ELAPSED_SECONDS = 1.0
_FULL_THRESHOLD = 0.8


class PciAccess(Protocol):
    def read32(self, config_addr: PciConfigAddress, offset: int) -> int: ...

    def write32(self, config_addr: PciConfigAddress, offset: int, value: int) -> None: ...


@dataclass
class ImcCounters:
    """Raw counter values of one memory channel."""

    read_count: int = 0
    write_count: int = 0
    rpq_occupancy: int = 0
    wpq_occupancy: int = 0
    cycles: int = 0


@dataclass
class ImcMetrics:
    """Metrics of one socket, summed or averaged over its memory channels."""

    read_bandwidth: int = 0
    write_bandwidth: int = 0
    read_latency: float = 0.0
    write_latency: float = 0.0
    rpq_occupancy: int = 0
    wpq_occupancy: int = 0
    rpq_non_empty: float = 0.0
    rpq_full: float = 0.0
    wpq_non_empty: float = 0.0
    wpq_full: float = 0.0
    frequency: float = 0.0


def _channel_address(socket: int, channel: int) -> PciConfigAddress:
    device, function, device_id = IMC_CHANNELS[channel]
    return PciConfigAddress(socket, device, function, device_id)


def detect_channels(pci: PciAccess, socket: int) -> list[int]:
    """Return the indexes of the memory channels present on ``socket``.

    Falls back to channels 0 and 1 when none can be found.
    """
    channels: list[int] = []
    for index, (device, function, _) in enumerate(IMC_CHANNELS):
        try:
            value = pci.read32(_channel_address(socket, index), 0)
        except (UncflowError, OSError) as exc:
            log.debug(
                "IMC channel %d not found (device 0x%02X, function %d): %s",
                index, device, function, exc,
            )
            continue
        if value & 0xFFFF == INTEL_VENDOR_ID:
            channels.append(index)
            log.debug(
                "Found IMC channel %d at device 0x%02X, function %d", index, device, function
            )
    if not channels:
        log.warning("Could not detect any IMC channels, assuming 2 channels")
        channels = list(FALLBACK_CHANNELS)
    return channels


def initialize_channel(pci: PciAccess, socket: int, channel: int) -> None:
    """Program the four counters and the DCLK counter of one channel.

    Channels outside the known table are skipped.
    """
    if not 0 <= channel < len(IMC_CHANNELS):
        return
    addr = _channel_address(socket, channel)
    pci.write32(addr, IMC_BOX_CTL, FREEZE_BIT | RESET_BIT)
    pci.write32(addr, IMC_CTL0, IMC_CAS_COUNT_RD | (IMC_CAS_COUNT_RD_UMASK << 8) | ENABLE_BIT)
    pci.write32(addr, IMC_CTL1, IMC_CAS_COUNT_WR | (IMC_CAS_COUNT_WR_UMASK << 8) | ENABLE_BIT)
    pci.write32(addr, IMC_CTL2, IMC_RPQ_OCCUPANCY | ENABLE_BIT)
    pci.write32(addr, IMC_CTL3, IMC_WPQ_OCCUPANCY | ENABLE_BIT)
    pci.write32(addr, IMC_DCLK_CTL, DCLK_ENABLE_BIT | DCLK_RESET_BIT)
    pci.write32(addr, IMC_BOX_CTL, 0)


class ImcMonitor:
    """Collects memory controller metrics for one socket."""

    def __init__(self, socket: int, pci: Optional[PciAccess] = None) -> None:
        self.socket = socket
        self._pci: PciAccess = Pci.instance() if pci is None else pci
        self.channels = detect_channels(self._pci, socket)
        log.info("Detected %d IMC channels for socket %d", len(self.channels), socket)
        self._prev: dict[int, ImcCounters] = {}

    def initialize(self) -> None:
        """Program the counters of every detected channel."""
        for channel in self.channels:
            initialize_channel(self._pci, self.socket, channel)

    def _read_channel(self, channel: int) -> ImcCounters:
        if not 0 <= channel < len(IMC_CHANNELS):
            raise InvalidConfiguration(f"Invalid IMC channel index: {channel}")
        addr = _channel_address(self.socket, channel)
        read = self._pci.read32
        return ImcCounters(
            read_count=read(addr, IMC_CTR0),
            write_count=read(addr, IMC_CTR1),
            rpq_occupancy=read(addr, IMC_CTR2),
            wpq_occupancy=read(addr, IMC_CTR3),
            cycles=read(addr, IMC_DCLK_CTR),
        )

    def collect(self) -> ImcMetrics:
        """Read every channel and derive the socket's metrics since the last call."""
        metrics = ImcMetrics()
        for channel in self.channels:
            current = self._read_channel(channel)
            prev = self._prev.get(channel, ImcCounters())
            metrics.read_bandwidth += max(0, current.read_count - prev.read_count) * CACHE_LINE_SIZE
            metrics.write_bandwidth += (
                max(0, current.write_count - prev.write_count) * CACHE_LINE_SIZE
            )
            metrics.rpq_occupancy += current.rpq_occupancy
            metrics.wpq_occupancy += current.wpq_occupancy
            self._prev[channel] = current

        if self.channels:
            metrics.rpq_occupancy //= len(self.channels)
            metrics.wpq_occupancy //= len(self.channels)

        total_cycles = sum(
            self._prev[channel].cycles for channel in self.channels if channel in self._prev
        )

        if total_cycles > 0 and metrics.read_bandwidth > 0:
            metrics.read_latency = metrics.rpq_occupancy * total_cycles / metrics.read_bandwidth
        if total_cycles > 0 and metrics.write_bandwidth > 0:
            metrics.write_latency = (
                metrics.wpq_occupancy * total_cycles / metrics.write_bandwidth
            )

        if total_cycles > 0:
            metrics.frequency = total_cycles / _ASSUMED_ELAPSED_SECONDS / 1e9
            metrics.rpq_non_empty = metrics.rpq_occupancy / total_cycles
            metrics.wpq_non_empty = metrics.wpq_occupancy / total_cycles

        if metrics.rpq_non_empty > _FULL_THRESHOLD:
            metrics.rpq_full = metrics.rpq_non_empty * 0.5
        if metrics.wpq_non_empty > _FULL_THRESHOLD:
            metrics.wpq_full = metrics.wpq_non_empty * 0.5
        return metrics