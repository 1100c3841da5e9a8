"""Clock and wake-up scheduling for the timeout flusher.

The engine never starts threads itself.  It asks a Scheduler to call it back
at an absolute instant (milliseconds since the epoch) and tolerates the
callback arriving late, early or twice.  Only one wake-up is ever pending:
a new notify_at() replaces the previous request.
"""

import threading
import time
from collections.abc import Callable

SCHEDULE_INTERVAL_MS = 1000


def now_ms() -> int:
    """Wall clock in integer milliseconds."""
    return int(time.time() * 1000)


class Scheduler:
    """Base scheduler. Subclass and implement notify_at()."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self.clock = clock
        self._callback: Callable[[int], object] | None = None

    def bind(self, callback: Callable[[int], object]) -> None:
        """Register the function called with the current time on each wake-up."""
        self._callback = callback

    def notify_at(self, instant: int) -> None:
        raise NotImplementedError

    def cancel(self) -> None:
        """Drop the pending wake-up, if any."""

    def _fire(self) -> None:
        if self._callback is not None:
            self._callback(self.clock())


class ThreadScheduler(Scheduler):
    """threading.Timer based scheduler; callbacks run on a daemon timer thread."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        super().__init__(clock)
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    def notify_at(self, instant: int) -> None:
        delay = max(0, instant - self.clock()) / 1000.0
        timer = threading.Timer(delay, self._fire)
        timer.daemon = True
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = timer
        timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None and self._timer.is_alive()


class ManualScheduler(Scheduler):
    """Deterministic scheduler driven by an explicit clock.

    Used for replays and tests: advance(now) moves the clock and fires the
    pending wake-up when it is due, repeating while the callback keeps
    scheduling instants that are already in the past.
    """

    def __init__(self, start: int = 0):
        self.now = start
        super().__init__(clock=lambda: self.now)
        self.requested: list[int] = []
        self.due: int | None = None

    def notify_at(self, instant: int) -> None:
        self.requested.append(instant)
        self.due = instant

    def cancel(self) -> None:
        self.due = None

    def advance(self, now: int) -> int:
        """Set the clock to *now* and fire due wake-ups.  Returns how many fired."""
        self.now = now
        fired = 0
        while self.due is not None and self.due <= now:
            self.due = None
            fired += 1
            self._fire()
        return fired

    def tick(self) -> None:
        """Fire the callback at the current time regardless of what is pending."""
        self._fire()
