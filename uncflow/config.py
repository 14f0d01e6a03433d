"""Selection of sockets and cores to export metrics for."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

log = logging.getLogger(__name__)

DEFAULT_CPU_ROOT = Path("/sys/devices/system/cpu")
_FALLBACK_CPU_COUNT = 8
_INT = re.compile(r"\+?[0-9]+")


def _root(root: str | Path | None) -> Path:
    return DEFAULT_CPU_ROOT if root is None else Path(root)


def _parse_int(text: str) -> int:
    if not _INT.fullmatch(text):
        raise ValueError(f"invalid CPU number: {text!r}")
    return int(text)


def parse_cpu_list(text: str) -> list[int]:
    """Parse a kernel CPU list such as ``"0-3,8-11"``; raise ValueError if malformed."""
    cpus: list[int] = []
    for part in text.strip().split(","):
        start, sep, end = part.partition("-")
        if sep:
            cpus.extend(range(_parse_int(start), _parse_int(end) + 1))
        else:
            cpus.append(_parse_int(part))
    return cpus


def detect_online_cpus(root: str | Path | None = None) -> list[int]:
    """Return the online CPUs, or CPUs 0-7 when they cannot be determined."""
    try:
        return parse_cpu_list((_root(root) / "online").read_text())
    except (OSError, ValueError):
        log.warning("Failed to detect online CPUs, using default: 0-7")
        return list(range(_FALLBACK_CPU_COUNT))


def detect_sockets(cores: Iterable[int], root: str | Path | None = None) -> list[int]:
    """Return the sorted sockets the given cores belong to, or ``[0]`` if unknown."""
    base = _root(root)
    sockets: set[int] = set()
    for core in cores:
        path = base / f"cpu{core}" / "topology" / "physical_package_id"
        try:
            sockets.add(int(path.read_text().strip()))
        except (OSError, ValueError):
            continue
    return sorted(sockets) or [0]


@dataclass
class ExportConfig:
    """Sockets and cores to monitor, with a label per core."""

    sockets: list[int]
    cores: list[int]
    core_labels: dict[int, str] = field(default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.core_labels is None:
            self.core_labels = {core: f"core_{core}" for core in self.cores}

    @classmethod
    def auto_detect(cls, root: str | Path | None = None) -> "ExportConfig":
        """Build a configuration covering every online CPU of the system."""
        cores = detect_online_cpus(root)
        sockets = detect_sockets(cores, root)
        log.info("Auto-detected %d sockets, %d cores", len(sockets), len(cores))
        return cls(sockets, cores)