import pytest

from uncflow.config import ExportConfig
from uncflow.errors import RaplError
from uncflow.rapl import (
    MSR_DRAM_ENERGY_STATUS,
    MSR_PKG_ENERGY_STATUS,
    MSR_PP0_ENERGY_STATUS,
    MSR_RAPL_POWER_UNIT,
    RaplData,
    RaplMonitor,
    find_first_cpu_for_socket,
)


class FakeMsr:
    def __init__(self, values=None):
        self.values = dict(values or {})

    def read(self, cpu, addr):
        return self.values.get((cpu, addr), 0)

    def write(self, cpu, addr, value):
        self.values[(cpu, addr)] = value


def make_topology(root, mapping):
    for cpu, package in mapping.items():
        topo = root / f"cpu{cpu}" / "topology"
        topo.mkdir(parents=True)
        (topo / "physical_package_id").write_text(f"{package}\n")
    return root


def test_find_cpu_by_topology(tmp_path):
    make_topology(tmp_path, {0: 0, 1: 1, 2: 1})
    config = ExportConfig([0, 1], [0, 1, 2])
    assert find_first_cpu_for_socket(config, 1, tmp_path) == 1
    assert find_first_cpu_for_socket(config, 0, tmp_path) == 0


def test_find_cpu_falls_back_to_first_core(tmp_path):
    config = ExportConfig([3], [5, 6])
    assert find_first_cpu_for_socket(config, 3, tmp_path) == 5


def test_find_cpu_without_cores_is_zero(tmp_path):
    assert find_first_cpu_for_socket(ExportConfig([1], []), 1, tmp_path) == 0


def test_energy_with_unit_exponent_zero(tmp_path):
    make_topology(tmp_path, {0: 0})
    msr = FakeMsr(
        {
            (0, MSR_RAPL_POWER_UNIT): 0,
            (0, MSR_PKG_ENERGY_STATUS): 500,
            (0, MSR_PP0_ENERGY_STATUS): 300,
            (0, MSR_DRAM_ENERGY_STATUS): 70,
        }
    )
    monitor = RaplMonitor(ExportConfig([0], [0]), msr, tmp_path)
    assert monitor.energy_units[0] == 1.0
    assert monitor.current_energy(0) == RaplData(500.0, 300.0, 70.0)


def test_energy_unit_scales_raw_counter(tmp_path):
    make_topology(tmp_path, {0: 0})
    msr = FakeMsr({(0, MSR_RAPL_POWER_UNIT): 4 << 8, (0, MSR_PKG_ENERGY_STATUS): 32})
    monitor = RaplMonitor(ExportConfig([0], [0]), msr, tmp_path)
    assert monitor.current_energy(0).package_energy == pytest.approx(2.0)


def test_power_consumption_is_delta(tmp_path):
    make_topology(tmp_path, {0: 0, 1: 1})
    msr = FakeMsr({(1, MSR_PKG_ENERGY_STATUS): 1000, (1, MSR_DRAM_ENERGY_STATUS): 40})
    monitor = RaplMonitor(ExportConfig([1], [0, 1]), msr, tmp_path)
    assert monitor.socket_to_cpu == {1: 1}
    assert monitor.power_consumption(1) == RaplData()
    msr.values[(1, MSR_PKG_ENERGY_STATUS)] = 1010
    msr.values[(1, MSR_DRAM_ENERGY_STATUS)] = 45
    delta = monitor.power_consumption(1)
    assert delta.package_energy == 1010 - 1000
    assert delta.dram_energy == 45 - 40
    assert delta.core_energy == 0.0
    assert monitor.power_consumption(1) == RaplData()


def test_unknown_socket_raises(tmp_path):
    make_topology(tmp_path, {0: 0})
    monitor = RaplMonitor(ExportConfig([0], [0]), FakeMsr(), tmp_path)
    with pytest.raises(RaplError):
        monitor.current_energy(9)
    with pytest.raises(RaplError):
        monitor.power_consumption(9)


def test_rapl_data_subtraction():
    assert RaplData(5.0, 3.0, 1.0) - RaplData(2.0, 1.0, 1.0) == RaplData(3.0, 2.0, 0.0)