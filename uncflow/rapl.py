"""Package, core and DRAM energy from the RAPL counters."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from .config import DEFAULT_CPU_ROOT, ExportConfig
from .errors import RaplError
from .msr import Msr

log = logging.getLogger(__name__)

MSR_RAPL_POWER_UNIT = 0x606
MSR_PKG_ENERGY_STATUS = 0x611
MSR_PP0_ENERGY_STATUS = 0x639
MSR_DRAM_ENERGY_STATUS = 0x619


class RegisterAccess(Protocol):
    def read(self, cpu: int, addr: int) -> int: ...

    def write(self, cpu: int, addr: int, value: int) -> None: ...


@dataclass(frozen=True)
class RaplData:
    """Energy in joules for the package, the cores and DRAM."""

    package_energy: float = 0.0
    core_energy: float = 0.0
    dram_energy: float = 0.0

    def __sub__(self, other: "RaplData") -> "RaplData":
        return RaplData(
            self.package_energy - other.package_energy,
            self.core_energy - other.core_energy,
            self.dram_energy - other.dram_energy,
        )


def find_first_cpu_for_socket(
    config: ExportConfig, socket_id: int, root: str | Path | None = None
) -> int:
    """Return a configured CPU on ``socket_id``, else the first configured CPU, else 0."""
    base = DEFAULT_CPU_ROOT if root is None else Path(root)
    for cpu in config.cores:
        path = base / f"cpu{cpu}" / "topology" / "physical_package_id"
        try:
            package_id = int(path.read_text().strip())
        except (OSError, ValueError):
            continue
        if package_id == socket_id:
            log.debug("Found CPU %d for socket %d (package_id=%d)", cpu, socket_id, package_id)
            return cpu
    log.warning(
        "Could not find CPU for socket %d using topology info, using fallback", socket_id
    )
    return config.cores[0] if config.cores else 0


class RaplMonitor:
    """Reads the RAPL energy counters of every configured socket."""

    def __init__(
        self,
        config: ExportConfig,
        msr: Optional[RegisterAccess] = None,
        root: str | Path | None = None,
    ) -> None:
        self.config = config
        self._msr: RegisterAccess = Msr.instance() if msr is None else msr
        self.energy_units: dict[int, float] = {}
        self.socket_to_cpu: dict[int, int] = {}
        for socket_id in config.sockets:
            cpu = find_first_cpu_for_socket(config, socket_id, root)
            power_unit = self._msr.read(cpu, MSR_RAPL_POWER_UNIT)
            self.energy_units[socket_id] = 1.0 / (1 << ((power_unit >> 8) & 0x1F))
            self.socket_to_cpu[socket_id] = cpu
        self._last: dict[int, RaplData] = {
            socket_id: self.current_energy(socket_id) for socket_id in config.sockets
        }

    def _cpu(self, socket: int) -> int:
        try:
            return self.socket_to_cpu[socket]
        except KeyError:
            raise RaplError(f"Socket {socket} is not monitored") from None

    def _energy(self, socket: int, addr: int) -> float:
        raw = self._msr.read(self._cpu(socket), addr)
        return raw * self.energy_units[socket]

    def current_energy(self, socket: int) -> RaplData:
        """Return the cumulative energy counters of ``socket`` in joules."""
        return RaplData(
            package_energy=self._energy(socket, MSR_PKG_ENERGY_STATUS),
            core_energy=self._energy(socket, MSR_PP0_ENERGY_STATUS),
            dram_energy=self._energy(socket, MSR_DRAM_ENERGY_STATUS),
        )

    def power_consumption(self, socket: int) -> RaplData:
        """Return the energy used by ``socket`` since the previous call."""
        current = self.current_energy(socket)
        delta = current - self._last[socket]
        self._last[socket] = current
        return delta