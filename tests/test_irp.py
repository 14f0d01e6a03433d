import pytest

from uncflow.arch import CpuArchitecture
from uncflow.errors import PciError, UnsupportedArchitecture
from uncflow.irp import (
    IRP_CTR0,
    IRP_CTR1,
    IRP_CTRL0,
    IRP_EVENTS,
    IRP_UNIT_CTRL,
    IRP_UNIT_STATUS_ADDR,
    IrpEventConfig,
    IrpMetric,
    IrpMonitor,
)
from uncflow.pci import PciConfigAddress


class FakeMsr:
    def __init__(self, values=None):
        self.values = values or {}
        self.writes = []

    def read(self, cpu, addr):
        return self.values.get((cpu, addr), 0)

    def write(self, cpu, addr, value):
        self.writes.append((cpu, addr, value))


class FakePci:
    def __init__(self, ident=0x6F398086, values=None):
        self.values = {0: ident}
        self.values.update(values or {})
        self.writes = []
        self.addresses = set()

    def read32(self, config_addr, offset):
        self.addresses.add(config_addr)
        return self.values.get(offset, 0)

    def write32(self, config_addr, offset, value):
        self.addresses.add(config_addr)
        self.writes.append((offset, value))


def skylake_monitor(msr=None, socket=0):
    return IrpMonitor(socket, CpuArchitecture.SKYLAKE, msr or FakeMsr(), None, 0.0)


def test_unknown_architecture_is_rejected():
    with pytest.raises(UnsupportedArchitecture):
        IrpMonitor(0, CpuArchitecture.UNKNOWN, FakeMsr(), FakePci(), 0.0)


def test_event_config_control_values():
    config = IrpEventConfig("All", 0x0F, 0x01, 0x10, 0xFF)
    assert config.control0 == (0x01 << 8) | 0x0F | (1 << 22)
    assert config.control1 == (0xFF << 8) | 0x10 | (1 << 22)


def test_event_table_order():
    assert [c.name for c in IRP_EVENTS] == [
        "All", "Clockticks", "PCIeRead", "RFO", "PCIItoM", "WbMtoI", "CLFlush",
    ]
    msr = FakeMsr()
    skylake_monitor(msr).collect_metrics()
    programmed = [value for cpu, addr, value in msr.writes if addr == 0x0A7C]
    assert [(value >> 8) & 0xFF for value in programmed] == [
        0xFF, 0x00, 0x01, 0x08, 0x10, 0x40, 0x80,
    ]
    assert [value & 0xFF for value in programmed] == [0x10, 0x01, 0x10, 0x10, 0x10, 0x10, 0x10]


def test_msr_programming_sequence_uses_socket_core():
    msr = FakeMsr()
    monitor = skylake_monitor(msr, socket=1)
    monitor.collect_metrics()
    all_config = IRP_EVENTS[0]
    first_unit = [w for w in msr.writes[:5]]
    assert first_unit == [
        (16, IRP_UNIT_CTRL[0], 0x100),
        (16, IRP_UNIT_CTRL[0], 0x102),
        (16, IRP_CTRL0[0], all_config.control0),
        (16, 0x0A7C, all_config.control1),
        (16, IRP_UNIT_CTRL[0], 0),
    ]
    # 7 events x 3 units x 5 writes
    assert len(msr.writes) == len(IRP_EVENTS) * 3 * 5


def test_msr_first_collection_has_no_latency_second_does():
    values = {}
    for index in range(3):
        values[(0, IRP_CTR0[index])] = 100
        values[(0, IRP_CTR1[index])] = 50
    monitor = skylake_monitor(FakeMsr(values))
    first = monitor.collect_metrics()
    assert IrpMetric.IRP_LATENCY not in first
    assert IrpMetric.IRP_FREQUENCY in first
    assert IrpMetric.IRP_ANY_OCCUPANCY in first
    assert IrpMetric.IRP_CLFLUSH_BANDWIDTH in first
    second = monitor.collect_metrics()
    assert second[IrpMetric.IRP_LATENCY] > 0


def test_msr_counters_are_masked_to_48_bits():
    values = {}
    for index in range(3):
        values[(0, IRP_CTR0[index])] = 1 << 48
        values[(0, IRP_CTR1[index])] = 1 << 48
    metrics = skylake_monitor(FakeMsr(values)).collect_metrics()
    assert metrics[IrpMetric.IRP_PCIE_READ_BANDWIDTH] == 0.0
    assert metrics[IrpMetric.IRP_ALL_BANDWIDTH] == 0.0


def test_bandwidth_scales_with_counts_and_duration():
    monitor = skylake_monitor()
    base, doubled, slower = {}, {}, {}
    monitor.calculate_event_metrics("RFO", (0, 1000), 1.0, base)
    monitor.calculate_event_metrics("RFO", (0, 2000), 1.0, doubled)
    monitor.calculate_event_metrics("RFO", (0, 1000), 2.0, slower)
    key = IrpMetric.IRP_RFO_BANDWIDTH
    assert doubled[key] == pytest.approx(2 * base[key])
    assert slower[key] == pytest.approx(base[key] / 2)


def test_clockticks_frequency_in_ghz():
    metrics = {}
    skylake_monitor().calculate_event_metrics("Clockticks", (0, 2_000_000_000), 1.0, metrics)
    assert metrics[IrpMetric.IRP_FREQUENCY] == pytest.approx(2.0)
    assert IrpMetric.IRP_ANY_OCCUPANCY not in metrics


def test_unknown_event_adds_nothing():
    metrics = {}
    skylake_monitor().calculate_event_metrics("Other", (5, 5), 1.0, metrics)
    assert metrics == {}


def test_pci_wrong_vendor_rejected():
    with pytest.raises(PciError):
        IrpMonitor(0, CpuArchitecture.HASWELL, None, FakePci(ident=0x6F391234), 0.0)


def test_pci_wrong_device_rejected():
    with pytest.raises(PciError):
        IrpMonitor(0, CpuArchitecture.BROADWELL, None, FakePci(ident=0x12348086), 0.0)


def test_pci_collection_skips_unpaired_event_and_clears_overflow():
    pci = FakePci(values={IRP_UNIT_STATUS_ADDR: 0x13, 0xA0: 10, 0xB0: 20})
    monitor = IrpMonitor(2, CpuArchitecture.HASWELL, None, pci, 0.0)
    metrics = monitor.collect_metrics()
    assert IrpMetric.IRP_CLFLUSH_BANDWIDTH not in metrics
    assert IrpMetric.IRP_WBMTOI_BANDWIDTH in metrics
    assert IrpMetric.IRP_FREQUENCY in metrics
    assert (IRP_UNIT_STATUS_ADDR, 0x3) in pci.writes
    assert pci.addresses == {PciConfigAddress(2, 5, 6, 0x6F39)}
    # 3 pairs x (freeze, reset, 4 controls, unfreeze) + 3 status clears
    assert len(pci.writes) == 3 * 7 + 3