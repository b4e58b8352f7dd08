"""
FlatPage - Timer Utilities

Named wall-clock timings for pipeline phases, collected into the
per-call diagnostics.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager


class PhaseTimer:
    """Track elapsed time of named phases and of the whole run.

    Each call owns its own timer; nothing is shared between runs.
    """

    def __init__(self) -> None:
        """Initialize the timer at the current instant."""
        self._start = time.perf_counter()
        self._timings: dict[str, float] = {}

    @contextmanager
    def phase(self, name: str) -> Iterator[None]:
        """Time a block and record it under *name*.

        Repeated phases (e.g. text and line detection) accumulate.
        """
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self._timings[name] = self._timings.get(name, 0.0) + time.perf_counter() - t0

    def elapsed(self) -> float:
        """Seconds since the timer was created."""
        return time.perf_counter() - self._start

    def timings(self) -> dict[str, float]:
        """Return a copy of the recorded phase timings (seconds)."""
        return dict(self._timings)
