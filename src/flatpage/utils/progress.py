"""
FlatPage - Progress Reporting Module

Progress events emitted between pipeline phases. Reporting is advisory:
a failing callback is logged and never changes the dewarp result.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, str], None]


@dataclass(frozen=True)
class ProgressEvent:
    """A single progress notification.

    Attributes:
        phase: Pipeline phase name (e.g. "detect", "optimize")
        percent: Overall completion, 0-100
        message: Human-readable description
    """

    phase: str
    percent: int
    message: str = ""


@dataclass
class ProgressReporter:
    """Forward progress events to an optional host callback.

    Tracks the last reported percentage so that progress never moves
    backwards, and keeps the history of emitted events for diagnostics.

    Attributes:
        callback: Host callback taking (phase, percent, message), or None
        last_percent: Last percentage that was reported
        events: Events emitted so far
    """

    callback: ProgressCallback | None = None
    last_percent: int = 0
    events: list[ProgressEvent] = field(default_factory=list)

    def report(self, phase: str, percent: int, message: str = "") -> ProgressEvent:
        """Emit a progress event.

        Args:
            phase: Pipeline phase name
            percent: Completion percentage (clamped to 0-100, monotonic)
            message: Human-readable description

        Returns:
            The event that was emitted
        """
        percent = max(self.last_percent, min(100, max(0, int(percent))))
        event = ProgressEvent(phase, percent, message)
        self.last_percent = percent
        self.events.append(event)

        if self.callback is not None:
            try:
                self.callback(event.phase, event.percent, event.message)
            except Exception as e:
                logger.warning(f"Progress callback failed during '{phase}': {e}")
        return event
