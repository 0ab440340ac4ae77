"""Ephemeral state of one scan run."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field


@dataclass(slots=True)
class ScanSession:
    """Counters and the cancellation token for a single walk or cache load.

    ``cancel_event`` is the only attribute touched by both the caller and
    the worker thread; everything else is written by the worker alone.
    """

    target: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    entries_visited: int = 0
    bytes_accumulated: int = 0
    current_dir: str = ""
    started_at: float = field(default_factory=time.monotonic)

    def cancel(self) -> None:
        """Request that the walk stop at the next check."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def elapsed(self) -> float:
        """Seconds since the session was created."""
        return time.monotonic() - self.started_at
