"""Temporarily pin the current process to a single CPU."""

from __future__ import annotations

import contextlib
import os

from .errors import AffinityError


class AffinityGuard:
    """Context manager that pins the process to one CPU and restores the old mask."""

    def __init__(self, cpu: int) -> None:
        if cpu < 0:
            raise AffinityError(f"Invalid CPU ID: {cpu}")
        self.cpu = cpu
        self._old: set[int] | None = None

    def __enter__(self) -> "AffinityGuard":
        get_affinity = getattr(os, "sched_getaffinity", None)
        set_affinity = getattr(os, "sched_setaffinity", None)
        if get_affinity is None or set_affinity is None:
            raise AffinityError("CPU affinity is not supported on this platform")
        try:
            old = set(get_affinity(0))
        except OSError as exc:
            raise AffinityError(f"Failed to get affinity: {exc}") from exc
        try:
            set_affinity(0, {self.cpu})
        except (OSError, ValueError, OverflowError) as exc:
            raise AffinityError(
                f"Failed to set affinity to CPU {self.cpu}: {exc}"
            ) from exc
        self._old = old
        return self

    def __exit__(self, *args: object) -> None:
        if self._old is None:
            return
        old, self._old = self._old, None
        with contextlib.suppress(OSError, ValueError):
            os.sched_setaffinity(0, old)