"""K-Slack reorder engine: buffers out-of-order events, emits them sorted.

Pure stream logic, no Kafka dependency.  The reorder service feeds decoded
events in and publishes whatever the engine hands to its sink.

Arrivals go to the active tier.  Whenever an event raises the greatest
timestamp seen, K is widened to the observed disorder (capped at max_k), the
active tier is folded into the expired tier, and expired buckets are released
in ascending order while key + K <= greatest timestamp.  With a timeout
configured, a timer additionally forces out anything older than the timeout,
about once a second.

State: EngineState scalars + two TimestampBuckets tiers, all guarded by one
lock shared by the arrival and timer paths.  The sink is called inside that
lock, so batches reach it in the order their calls acquired it.
"""

import threading
from collections.abc import Callable, Iterable

from reorder.buckets import TimestampBuckets
from reorder.config import KSlackConfig, parse_arguments
from reorder.scheduler import SCHEDULE_INTERVAL_MS, Scheduler, ThreadScheduler, now_ms
from reorder.state import EngineState, SchedulingStatus, Snapshot


class KSlackEngine:

    def __init__(self, config: KSlackConfig, sink: Callable[[list], object] | None = None,
                 scheduler: Scheduler | None = None,
                 clock: Callable[[], int] | None = None):
        self.config = config
        self.sink = sink
        if scheduler is None and config.timer_enabled:
            scheduler = ThreadScheduler(clock or now_ms)
        self.scheduler = scheduler
        self.clock = clock or (scheduler.clock if scheduler is not None else now_ms)
        if self.scheduler is not None:
            self.scheduler.bind(self.on_timer)

        self._lock = threading.Lock()
        self._state = EngineState()
        self._active = TimestampBuckets()
        self._expired = TimestampBuckets()
        self._started = False

        self.dropped_late = 0

    @classmethod
    def from_arguments(cls, *args, sink=None, scheduler=None, clock=None) -> "KSlackEngine":
        """Build an engine straight from reorder:kslack()-style arguments."""
        return cls(parse_arguments(*args), sink=sink, scheduler=scheduler, clock=clock)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Arm the first timeout wake-up.  No-op without a timeout."""
        with self._lock:
            self._started = True
            if self.config.timer_enabled:
                self._arm_timer()

    def stop(self) -> None:
        with self._lock:
            self._started = False
            if self.scheduler is not None:
                self.scheduler.cancel()

    # ------------------------------------------------------------------
    # Arrival path
    # ------------------------------------------------------------------

    def on_event(self, event) -> list:
        """Feed one event, get back the batch it released (possibly empty)."""
        return self.on_events((event,))

    def on_events(self, events: Iterable) -> list:
        """Feed an ordered batch of events under one lock, emit one combined batch."""
        with self._lock:
            batch = []
            try:
                for event in events:
                    self._insert(event, batch)
            finally:
                # events released before a failing extraction still go out
                self._emit(batch)
            return batch

    def _insert(self, event, batch: list) -> None:
        state = self._state
        timestamp = self.config.timestamp.extract(event)

        # strictly older than the last released key: unrecoverably late
        if self.config.discard_late_arrival and timestamp < state.last_sent_timestamp:
            self.dropped_late += 1
            return

        if self._started and state.scheduling is SchedulingStatus.RESCHEDULE_ON_ARRIVAL:
            # next whole interval at or after now, on the existing 1 s grid
            elapsed = self.clock() - state.last_scheduled_timestamp
            state.last_scheduled_timestamp += -(-elapsed // SCHEDULE_INTERVAL_MS) * SCHEDULE_INTERVAL_MS
            self._request_wakeup()

        self._active.add(timestamp, event)

        if timestamp <= state.greatest_timestamp:
            return

        state.greatest_timestamp = timestamp
        gap = timestamp - self._active.first_key()
        if gap > state.k:
            state.k = min(gap, self.config.max_k)

        self._expired.absorb(self._active)
        self._active = TimestampBuckets()

        horizon = state.greatest_timestamp - state.k
        for key, bucket in self._expired.pop_while(lambda key: key <= horizon):
            # a late key (flag off) may sit below what was already sent
            if key > state.last_sent_timestamp:
                state.last_sent_timestamp = key
            batch.extend(bucket)

    # ------------------------------------------------------------------
    # Timer path
    # ------------------------------------------------------------------

    def on_timer(self, now: int) -> list:
        """Force out expired buckets with key < timeout + now, then reschedule."""
        with self._lock:
            if not self.config.timer_enabled or not self._started:
                return []
            state = self._state
            batch = []

            cutoff = self.config.timeout + now
            for _, bucket in self._expired.pop_while(lambda key: key < cutoff):
                batch.extend(bucket)

            # schedule before emitting so a failing sink cannot stall the timer
            if self._expired:
                early = (state.scheduling is SchedulingStatus.PENDING
                         and now < state.last_scheduled_timestamp)
                if not early:
                    state.last_scheduled_timestamp += SCHEDULE_INTERVAL_MS
                # an early fire consumed the only pending wake-up; ask again
                self._request_wakeup()
            else:
                state.scheduling = SchedulingStatus.RESCHEDULE_ON_ARRIVAL

            self._emit(batch)
            return batch

    def _arm_timer(self) -> None:
        state = self._state
        if state.last_scheduled_timestamp < 0 or state.scheduling is SchedulingStatus.IDLE:
            state.last_scheduled_timestamp = self.clock() + self.config.timeout
            self._request_wakeup()
        elif state.scheduling is SchedulingStatus.PENDING:
            # restored state: whatever timer requested this instant is gone
            self._request_wakeup()

    def _request_wakeup(self) -> None:
        self._state.scheduling = SchedulingStatus.PENDING
        self.scheduler.notify_at(self._state.last_scheduled_timestamp)

    # ------------------------------------------------------------------
    # Draining, snapshots, introspection
    # ------------------------------------------------------------------

    def drain(self) -> list:
        """Emit every buffered event, both tiers, in ascending timestamp order."""
        with self._lock:
            self._expired.absorb(self._active)
            self._active = TimestampBuckets()
            batch = []
            for key, bucket in self._expired.pop_while(lambda key: True):
                if key > self._state.last_sent_timestamp:
                    self._state.last_sent_timestamp = key
                batch.extend(bucket)
            self._emit(batch)
            return batch

    def capture(self) -> Snapshot:
        """Copy the scalars and both tiers into a Snapshot."""
        with self._lock:
            return Snapshot(
                state=self._state.copy(),
                active=tuple((ts, tuple(ev)) for ts, ev in self._active.items()),
                expired=tuple((ts, tuple(ev)) for ts, ev in self._expired.items()),
            )

    def apply(self, snapshot: Snapshot) -> None:
        """Replace live state and buffers with *snapshot* (no merging)."""
        with self._lock:
            self._state = snapshot.state.copy()
            self._active = TimestampBuckets.from_items(snapshot.active)
            self._expired = TimestampBuckets.from_items(snapshot.expired)
            if not self.config.timer_enabled:
                self._state.scheduling = SchedulingStatus.IDLE
            elif self._started:
                self._arm_timer()

    @property
    def state(self) -> EngineState:
        """A copy of the current scalars."""
        with self._lock:
            return self._state.copy()

    @property
    def k(self) -> int:
        with self._lock:
            return self._state.k

    @property
    def buffered(self) -> int:
        """Events currently held in either tier."""
        with self._lock:
            return self._active.event_count + self._expired.event_count

    def stats(self) -> dict:
        with self._lock:
            state = self._state
            return {
                "k": state.k,
                "greatest_timestamp": state.greatest_timestamp,
                "last_sent_timestamp": state.last_sent_timestamp,
                "active_events": self._active.event_count,
                "expired_events": self._expired.event_count,
                "expired_keys": len(self._expired),
                "dropped_late": self.dropped_late,
                "scheduling": state.scheduling.value,
            }

    def _emit(self, batch: list) -> None:
        if batch and self.sink is not None:
            self.sink(batch)
