"""Access to PCI configuration space of uncore devices."""

from __future__ import annotations

import logging
import os
import struct
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Iterable

from .errors import PciError

log = logging.getLogger(__name__)

INTEL_VENDOR_ID = 0x8086
_HEADER = struct.Struct("<4sIBB6s8sIII8s")
_RECORD = struct.Struct("<QHBB4x")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")


@dataclass(frozen=True)
class PciConfigAddress:
    """A device identified by socket, device, function and expected device id."""

    socket: int
    device: int
    function: int
    device_id: int


@dataclass(frozen=True)
class PciAddress:
    """A concrete PCI location: segment group, bus, device and function."""

    group_number: int
    bus: int
    device: int
    function: int


@dataclass(frozen=True)
class McfgRecord:
    """One memory-mapped configuration space allocation of the MCFG table."""

    base_address: int
    pci_segment_group: int
    start_bus: int
    end_bus: int


def _in_docker() -> bool:
    return "DOCKER_RUNNING" in os.environ


def default_proc_base() -> Path:
    """Return the directory holding the PCI configuration space files."""
    return Path("/pcm/proc/bus/pci" if _in_docker() else "/proc/bus/pci")


def _default_mcfg_path() -> Path:
    if _in_docker():
        return Path("/pcm/sys/firmware/acpi/tables/MCFG")
    return Path("/sys/firmware/acpi/tables/MCFG")


def pci_path(address: PciAddress, base: str | Path | None = None) -> Path:
    """Return the configuration space file of ``address``."""
    root = default_proc_base() if base is None else Path(base)
    if address.group_number > 0:
        bus_dir = f"{address.group_number:04x}:{address.bus:02x}"
    else:
        bus_dir = f"{address.bus:02x}"
    return root / bus_dir / f"{address.device:02x}.{address.function}"


def parse_mcfg(data: bytes) -> list[McfgRecord]:
    """Parse the records of a raw ACPI MCFG table."""
    if len(data) < _HEADER.size:
        raise PciError("Failed to read MCFG header: table is truncated")
    length = _HEADER.unpack_from(data)[1]
    if length < _HEADER.size:
        raise PciError(f"Invalid MCFG table length: {length}")
    count = (length - _HEADER.size) // _RECORD.size
    end = _HEADER.size + count * _RECORD.size
    if len(data) < end:
        raise PciError("Failed to read MCFG record: table is truncated")
    return [
        McfgRecord(*_RECORD.unpack_from(data, offset))
        for offset in range(_HEADER.size, end, _RECORD.size)
    ]


class PciHandle:
    """An open configuration space file of one PCI function."""

    def __init__(self, address: PciAddress, base: str | Path | None = None) -> None:
        self.address = address
        self.path = pci_path(address, base)
        self._lock = threading.Lock()
        try:
            self._file = open(self.path, "r+b", buffering=0)
        except OSError as exc:
            raise PciError(
                f"Failed to open PCI device {address.group_number:04X}:{address.bus:02X}:"
                f"{address.device:02X}.{address.function}: {exc}"
            ) from exc

    def _read(self, offset: int, layout: struct.Struct) -> int:
        with self._lock:
            try:
                self._file.seek(offset)
            except (OSError, ValueError, OverflowError) as exc:
                raise PciError(f"Failed to seek to offset {offset}: {exc}") from exc
            try:
                data = self._file.read(layout.size)
            except OSError as exc:
                raise PciError(f"Failed to read at offset {offset}: {exc}") from exc
        if data is None or len(data) != layout.size:
            raise PciError(f"Failed to read at offset {offset}: short read")
        return layout.unpack(data)[0]

    def read32(self, offset: int) -> int:
        return self._read(offset, _U32)

    def read64(self, offset: int) -> int:
        return self._read(offset, _U64)

    def write32(self, offset: int, value: int) -> None:
        if not 0 <= value < 1 << 32:
            raise ValueError(f"PCI value out of range: {value}")
        payload = _U32.pack(value)
        with self._lock:
            try:
                self._file.seek(offset)
            except (OSError, ValueError, OverflowError) as exc:
                raise PciError(f"Failed to seek to offset {offset}: {exc}") from exc
            try:
                written = self._file.write(payload)
            except OSError as exc:
                raise PciError(f"Failed to write at offset {offset}: {exc}") from exc
        if written != len(payload):
            raise PciError(f"Failed to write at offset {offset}: short write")

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> "PciHandle":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class Mcfg:
    """The MCFG table, used to locate uncore devices by socket."""

    def __init__(
        self, records: Iterable[McfgRecord], base: str | Path | None = None
    ) -> None:
        self.records = tuple(records)
        self._base = base
        self._found: dict[PciConfigAddress, PciAddress] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_bytes(cls, data: bytes, base: str | Path | None = None) -> "Mcfg":
        return cls(parse_mcfg(data), base)

    @classmethod
    def load(cls, path: str | Path | None = None, base: str | Path | None = None) -> "Mcfg":
        """Read the MCFG table from ``path`` (the firmware table by default)."""
        table = _default_mcfg_path() if path is None else Path(path)
        try:
            data = table.read_bytes()
        except OSError as exc:
            raise PciError(f"Failed to open MCFG table: {exc}") from exc
        return cls.from_bytes(data, base)

    def _matches(self, address: PciAddress, device_id: int) -> bool:
        try:
            with PciHandle(address, self._base) as handle:
                value = handle.read32(0)
        except PciError:
            return False
        return value & 0xFFFF == INTEL_VENDOR_ID and (value >> 16) & 0xFFFF == device_id

    def find_group_bus(self, config_addr: PciConfigAddress) -> PciAddress:
        """Return the location of the device for the socket in ``config_addr``."""
        with self._lock:
            cached = self._found.get(config_addr)
        if cached is not None:
            return cached

        candidates: list[PciAddress] = []
        for record in self.records:
            for bus in range(record.start_bus, record.end_bus + 1):
                address = PciAddress(
                    record.pci_segment_group, bus, config_addr.device, config_addr.function
                )
                if self._matches(address, config_addr.device_id):
                    log.warning(
                        "Located PCI device %04X:%02X:%02X.%d",
                        record.pci_segment_group,
                        bus,
                        config_addr.device,
                        config_addr.function,
                    )
                    candidates.append(address)

        if 0 <= config_addr.socket < len(candidates):
            address = candidates[config_addr.socket]
            with self._lock:
                self._found[config_addr] = address
            return address

        raise PciError(
            f"Cannot find PCI device for socket {config_addr.socket} "
            f"device {config_addr.device} function {config_addr.function}"
        )


class Pci:
    """Registry of PCI handles keyed by configuration address."""

    _instance: ClassVar["Pci | None"] = None
    _instance_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self, mcfg: Mcfg | None = None, base: str | Path | None = None) -> None:
        self._mcfg = mcfg
        self._base = base
        self._handles: dict[PciConfigAddress, PciHandle] = {}
        self._lock = threading.Lock()

    @classmethod
    def instance(cls) -> "Pci":
        """Return the process-wide registry."""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def _table(self) -> Mcfg:
        with self._lock:
            if self._mcfg is None:
                self._mcfg = Mcfg.load(base=self._base)
            return self._mcfg

    def _handle(self, config_addr: PciConfigAddress) -> PciHandle:
        with self._lock:
            handle = self._handles.get(config_addr)
        if handle is not None:
            return handle
        address = self._table().find_group_bus(config_addr)
        handle = PciHandle(address, self._base)
        with self._lock:
            existing = self._handles.setdefault(config_addr, handle)
        if existing is not handle:
            handle.close()
        return existing

    def read32(self, config_addr: PciConfigAddress, offset: int) -> int:
        return self._handle(config_addr).read32(offset)

    def write32(self, config_addr: PciConfigAddress, offset: int, value: int) -> None:
        self._handle(config_addr).write32(offset, value)

    def read64(self, config_addr: PciConfigAddress, offset: int) -> int:
        return self._handle(config_addr).read64(offset)


def device_exists(
    group: int, bus: int, device: int, function: int, base: str | Path | None = None
) -> bool:
    """Return whether the configuration space of the function can be opened."""
    try:
        PciHandle(PciAddress(group, bus, device, function), base).close()
    except PciError:
        return False
    return True