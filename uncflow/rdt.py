"""Cache occupancy and memory bandwidth monitoring with resource monitoring IDs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

from .config import DEFAULT_CPU_ROOT, ExportConfig
from .cpuid import mbm_scaling_factor
from .errors import RdtError, UncflowError
from .msr import Msr

log = logging.getLogger(__name__)

IA32_PQR_ASSOC = 0xC8F
IA32_QM_EVTSEL = 0xC8D
IA32_QM_CTR = 0xC8E

LLC_OCCUPANCY_EVENT = 0x01
LOCAL_MEM_BW_EVENT = 0x02
REMOTE_MEM_BW_EVENT = 0x03

RMID_MAX = 256
_RMID_MASK = 0x3FF


class RegisterAccess(Protocol):
    def read(self, cpu: int, addr: int) -> int: ...

    def write(self, cpu: int, addr: int, value: int) -> None: ...


@dataclass
class _SocketInfo:
    socket_id: int
    cores: list[int] = field(default_factory=list)
    last_local_bw: int = 0
    last_remote_bw: int = 0


def _counter_delta(current: int, previous: int) -> int:
    return current - previous if current >= previous else current


class RdtMonitor:
    """Per-core and per-socket LLC occupancy and memory bandwidth."""

    def __init__(
        self,
        config: ExportConfig,
        msr: Optional[RegisterAccess] = None,
        scaling_factor: Optional[int] = None,
        root: str | Path | None = None,
    ) -> None:
        self.config = config
        self._msr: RegisterAccess = Msr.instance() if msr is None else msr
        self.scaling_factor = mbm_scaling_factor() if scaling_factor is None else scaling_factor
        if any(core < 0 for core in config.cores):
            raise RdtError("Negative core IDs are not supported")
        self._root = DEFAULT_CPU_ROOT if root is None else Path(root)

        self._local_bw = dict.fromkeys(config.cores, 0)
        self._remote_bw = dict.fromkeys(config.cores, 0)
        self._llc = dict.fromkeys(config.cores, 0)
        self._prev_local = dict.fromkeys(config.cores, 0)
        self._prev_remote = dict.fromkeys(config.cores, 0)
        self._core_to_rmid: dict[int, int] = {}
        self._used_rmids: set[int] = set()
        self._sockets = self._group_by_socket()

    def _socket_of(self, core: int) -> int:
        path = self._root / f"cpu{core}" / "topology" / "physical_package_id"
        try:
            text = path.read_text()
        except OSError as exc:
            raise RdtError(f"Cannot read CPU topology for core {core}: {exc}") from exc
        try:
            return int(text.strip())
        except ValueError as exc:
            raise RdtError(f"Invalid socket ID for core {core}: {exc}") from exc

    def _group_by_socket(self) -> list[_SocketInfo]:
        sockets: dict[int, _SocketInfo] = {}
        for core in self.config.cores:
            socket_id = self._socket_of(core)
            sockets.setdefault(socket_id, _SocketInfo(socket_id)).cores.append(core)
        return list(sockets.values())

    def _allocate_rmid(self) -> int:
        for rmid in range(1, RMID_MAX):
            if rmid not in self._used_rmids:
                self._used_rmids.add(rmid)
                return rmid
        raise RdtError("No free RMIDs available")

    def _free_rmid(self, rmid: int) -> None:
        if 0 < rmid < RMID_MAX:
            self._used_rmids.discard(rmid)

    def _assign_rmid(self, core: int, rmid: int) -> None:
        current = self._msr.read(core, IA32_PQR_ASSOC)
        self._msr.write(core, IA32_PQR_ASSOC, (current & ~_RMID_MASK) | rmid)
        self._core_to_rmid[core] = rmid

    def initialize(self) -> None:
        """Give every configured core its own RMID."""
        for core in self.config.cores:
            rmid = self._allocate_rmid()
            self._assign_rmid(core, rmid)
            label = self.config.core_labels.get(core, "unknown")
            log.info(
                "Initialized MBM monitoring for core %d (%s) with RMID %d", core, label, rmid
            )

    def _query(self, cpu: int, rmid: int, event: int) -> int:
        self._msr.write(cpu, IA32_QM_EVTSEL, (rmid << 32) | event)
        return self._msr.read(cpu, IA32_QM_CTR)

    def _update_socket(self, socket: _SocketInfo) -> None:
        monitoring_core = socket.cores[0]
        scale = self.scaling_factor
        local_total = 0
        remote_total = 0
        for core in socket.cores:
            rmid = self._core_to_rmid.get(core, 0)
            self._llc[core] = self._query(monitoring_core, rmid, LLC_OCCUPANCY_EVENT) * scale
            local = self._query(monitoring_core, rmid, LOCAL_MEM_BW_EVENT)
            remote = self._query(monitoring_core, rmid, REMOTE_MEM_BW_EVENT)

            self._local_bw[core] = _counter_delta(local, self._prev_local[core]) * scale
            self._remote_bw[core] = _counter_delta(remote, self._prev_remote[core]) * scale
            self._prev_local[core] = local
            self._prev_remote[core] = remote

            local_total += self._local_bw[core]
            remote_total += self._remote_bw[core]
        socket.last_local_bw = local_total
        socket.last_remote_bw = remote_total

    def update(self) -> None:
        """Refresh the metrics of every socket; failures are logged per socket."""
        for socket in self._sockets:
            try:
                self._update_socket(socket)
            except UncflowError as exc:
                log.error("Failed to update socket %d metrics: %s", socket.socket_id, exc)

    def refresh_rmids(self) -> None:
        """Write the assigned RMIDs to their cores again."""
        for core in self.config.cores:
            rmid = self._core_to_rmid.get(core, 0)
            if rmid != 0:
                self._assign_rmid(core, rmid)

    def get_metrics(self, core_id: int) -> dict[str, float]:
        """Return the metrics of a configured core; empty for any other core."""
        if core_id not in self.config.cores:
            return {}
        local = self._local_bw[core_id]
        remote = self._remote_bw[core_id]
        return {
            "LocalMemoryBandwidth": float(local),
            "RemoteMemoryBandwidth": float(remote),
            "TotalMemoryBandwidth": float(local + remote),
            "CMTLLCOccupancy": float(self._llc[core_id]),
        }

    def get_socket_metrics(self, socket_id: int) -> dict[str, float]:
        """Return metrics summed over the cores of a socket; empty if unknown."""
        socket = next((s for s in self._sockets if s.socket_id == socket_id), None)
        if socket is None:
            return {}
        return {
            "LocalMemoryBandwidth": float(socket.last_local_bw),
            "RemoteMemoryBandwidth": float(socket.last_remote_bw),
            "TotalMemoryBandwidth": float(socket.last_local_bw + socket.last_remote_bw),
            "CMTLLCOccupancy": float(sum(self._llc[core] for core in socket.cores)),
        }

    def close(self) -> None:
        """Release the RMIDs held by the configured cores."""
        for core in self.config.cores:
            rmid = self._core_to_rmid.pop(core, 0)
            if rmid != 0:
                self._free_rmid(rmid)

    def __enter__(self) -> "RdtMonitor":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()