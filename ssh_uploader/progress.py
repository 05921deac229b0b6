"""Aggregates byte-level progress from every unit into one percentage.

Units report in different ways: a single file reports the bytes sent so far,
a directory tree reports each finished file, a batch reports compression bytes
and then transfer bytes for every archive. `ProgressAggregator` folds all of
these into a single, monotonically non-decreasing byte counter measured
against a total computed once before any work starts.
"""
import logging
import math
import threading
from typing import Callable, Optional

from .models import ProgressEvent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


def compute_percentage(transferred: int, total: int) -> int:
    """Rounds `transferred / total` to a whole percentage clamped to [0, 100]."""
    if total <= 0:
        return 0
    percentage = math.floor(transferred / total * 100 + 0.5)
    return max(0, min(100, percentage))


class ProgressAggregator:
    """Thread-safe accumulator emitting `ProgressEvent`s to a callback.

    Two counters are kept:

    - ``committed``: bytes of work that is finished (a whole file of a
      directory tree, a verified archive). Only ever grows.
    - ``reported``: what the caller sees. It is the largest value ever
      offered, so restarting a unit (e.g. falling back to a second transfer
      strategy) or switching from compression to transfer never moves it
      backwards.

    Attributes:
        total (int): The fixed byte total snapshot.
    """
    def __init__(self, total: int, callback: Optional[ProgressCallback] = None):
        self.total = max(0, int(total))
        self._callback = callback
        self._lock = threading.RLock()
        self._committed = 0
        self._reported = 0
        self._completed = False
        self._last_event: Optional[ProgressEvent] = None

    @property
    def transferred(self) -> int:
        with self._lock:
            return self._reported

    @property
    def committed(self) -> int:
        with self._lock:
            return self._committed

    @property
    def last_event(self) -> Optional[ProgressEvent]:
        return self._last_event

    # Events are emitted while holding the lock so that concurrent reporters
    # can never deliver them out of order.

    def advance(self, nbytes: int) -> None:
        """Commits `nbytes` of finished work."""
        with self._lock:
            self._committed += max(0, nbytes)
            self._emit(self._offer(self._committed))

    def report_partial(self, in_flight: int, limit: Optional[int] = None) -> None:
        """Reports `in_flight` bytes of the unit currently being processed.

        Args:
            in_flight: Bytes processed so far for the current unit.
            limit: The unit's share of the total. Larger reports, such as an
                archive that came out bigger than its source, are cut to it.
        """
        in_flight = max(0, in_flight)
        if limit is not None:
            in_flight = min(in_flight, max(0, limit))
        with self._lock:
            self._emit(self._offer(self._committed + in_flight))

    def complete(self) -> None:
        """Marks the whole request as finished and emits the final 100% event."""
        with self._lock:
            self._completed = True
            self._reported = max(self._reported, self.total)
            event = self._build_event()
            self._last_event = event
            self._emit(event)

    def _offer(self, candidate: int) -> Optional[ProgressEvent]:
        if candidate <= self._reported:
            return None
        self._reported = candidate
        event = self._build_event()
        self._last_event = event
        return event

    def _build_event(self) -> ProgressEvent:
        if self.total == 0:
            percentage = 100 if self._completed else 0
        else:
            percentage = compute_percentage(self._reported, self.total)
        return ProgressEvent(uploaded=self._reported, total=self.total, percentage=percentage)

    def _emit(self, event: Optional[ProgressEvent]) -> None:
        if event is None or self._callback is None:
            return
        try:
            self._callback(event)
        except Exception as e:
            logger.warning(f"Progress callback raised an error: {e}")
