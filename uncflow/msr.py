"""Access to model-specific registers through the kernel msr device."""

from __future__ import annotations

import contextlib
import logging
import struct
import threading
from pathlib import Path
from typing import ClassVar

from .affinity import AffinityGuard
from .errors import MsrError

log = logging.getLogger(__name__)

DEFAULT_PATH_TEMPLATE = "/dev/cpu/{cpu}/msr"
_VALUE = struct.Struct("=Q")


class MsrHandle:
    """An open msr device of one CPU."""

    def __init__(self, cpu: int, path: str | Path | None = None, pin: bool = True) -> None:
        self.cpu_id = cpu
        self.path = Path(path) if path is not None else Path(
            DEFAULT_PATH_TEMPLATE.format(cpu=cpu)
        )
        self._pin = pin
        self._lock = threading.Lock()
        try:
            self._file = open(self.path, "r+b", buffering=0)
        except OSError as exc:
            raise MsrError(f"Failed to open {self.path} for CPU {cpu}: {exc}") from exc
        log.info("Opened MSR handle %d for core %d", self._file.fileno(), cpu)

    def _pinned(self) -> contextlib.AbstractContextManager:
        return AffinityGuard(self.cpu_id) if self._pin else contextlib.nullcontext()

    def _seek(self, addr: int) -> None:
        try:
            self._file.seek(addr)
        except (OSError, ValueError, OverflowError) as exc:
            raise MsrError(
                f"Failed to seek to MSR 0x{addr:X} on CPU {self.cpu_id}: {exc}"
            ) from exc

    def read(self, addr: int) -> int:
        """Read the 64-bit register at ``addr``."""
        with self._pinned(), self._lock:
            self._seek(addr)
            try:
                data = self._file.read(_VALUE.size)
            except OSError as exc:
                raise MsrError(
                    f"Failed to read MSR 0x{addr:X} on CPU {self.cpu_id}: {exc}"
                ) from exc
        if data is None or len(data) != _VALUE.size:
            raise MsrError(f"Failed to read MSR 0x{addr:X} on CPU {self.cpu_id}: short read")
        (value,) = _VALUE.unpack(data)
        log.debug("MSR read: CPU %d MSR 0x%08x = 0x%016x", self.cpu_id, addr, value)
        return value

    def write(self, addr: int, value: int) -> None:
        """Write the 64-bit ``value`` to the register at ``addr``."""
        if not 0 <= value < 1 << 64:
            raise ValueError(f"MSR value out of range: {value}")
        payload = _VALUE.pack(value)
        with self._pinned(), self._lock:
            self._seek(addr)
            try:
                written = self._file.write(payload)
            except OSError as exc:
                raise MsrError(
                    f"Failed to write MSR 0x{addr:X} on CPU {self.cpu_id}: {exc}"
                ) from exc
        if written != len(payload):
            raise MsrError(
                f"Failed to write MSR 0x{addr:X} on CPU {self.cpu_id}: short write"
            )

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> "MsrHandle":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class Msr:
    """Registry of msr device handles, opened lazily per CPU."""

    _instance: ClassVar["Msr | None"] = None
    _instance_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self, path_template: str = DEFAULT_PATH_TEMPLATE, pin: bool = True) -> None:
        self._template = path_template
        self._pin = pin
        self._handles: dict[int, MsrHandle] = {}
        self._lock = threading.Lock()

    @classmethod
    def instance(cls) -> "Msr":
        """Return the process-wide registry."""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def _handle(self, cpu: int) -> MsrHandle:
        with self._lock:
            handle = self._handles.get(cpu)
            if handle is None:
                handle = MsrHandle(cpu, self._template.format(cpu=cpu), self._pin)
                self._handles[cpu] = handle
            return handle

    def read(self, cpu: int, addr: int) -> int:
        return self._handle(cpu).read(addr)

    def write(self, cpu: int, addr: int, value: int) -> None:
        self._handle(cpu).write(addr, value)

    def close(self) -> None:
        """Close every open handle."""
        with self._lock:
            handles, self._handles = self._handles, {}
        for handle in handles.values():
            handle.close()


def read_msr(cpu: int, addr: int) -> int:
    """Read a register through the process-wide registry."""
    return Msr.instance().read(cpu, addr)


def write_msr(cpu: int, addr: int, value: int) -> None:
    """Write a register through the process-wide registry."""
    Msr.instance().write(cpu, addr, value)