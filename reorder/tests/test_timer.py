"""Tests for the timeout flusher, the schedulers, and concurrent callers."""

import random
import threading
import time
from unittest.mock import patch

import pytest

from reorder.engine import KSlackEngine
from reorder.scheduler import ManualScheduler, ThreadScheduler, now_ms
from reorder.state import SchedulingStatus


def _event(ts, name=None):
    return {"timestamp": ts, "id": name}


def _timestamps(batch):
    return [e["timestamp"] for e in batch]


class _Collector:
    def __init__(self):
        self.batches = []

    def __call__(self, batch):
        self.batches.append(list(batch))

    @property
    def events(self):
        return [e for b in self.batches for e in b]


class _FlakySink:
    """Raises like a full producer queue when fail_next is set."""

    def __init__(self):
        self.fail_next = False
        self.events = []

    def __call__(self, batch):
        if self.fail_next:
            self.fail_next = False
            raise BufferError("Local: Queue full")
        self.events.extend(batch)


# ---------------------------------------------------------------------------
# Timeout flush with a manual clock
# ---------------------------------------------------------------------------

class TestTimeoutFlush:
    def setup_method(self):
        self.sched = ManualScheduler(start=0)
        self.out = _Collector()
        self.engine = KSlackEngine.from_arguments(
            "timestamp", 5000, scheduler=self.sched, sink=self.out,
        )
        self.engine.start()

    def _hold_one(self, ts_hi=110):
        """100 goes at once, 40 goes once K widens, ts_hi stays expired."""
        for ts in (100, 40, ts_hi):
            self.engine.on_event(_event(ts))

    def test_start_schedules_now_plus_timeout(self):
        assert self.sched.requested == [5000]
        assert self.engine.state.scheduling is SchedulingStatus.PENDING

    def test_stuck_event_is_forced_out(self):
        """No larger timestamp ever arrives; the timer still releases 110."""
        self._hold_one()
        assert self.engine.buffered == 1
        self.sched.advance(5000)
        assert _timestamps(self.out.batches[-1]) == [110]
        assert self.engine.buffered == 0

    def test_cutoff_is_strictly_below_timeout_plus_now(self):
        for ts in (20000, 12000, 21000):
            self.engine.on_event(_event(ts))
        batches_before = len(self.out.batches)

        self.sched.advance(5000)      # cutoff 10000
        assert self.sched.advance(15999) == 10
        self.sched.advance(16000)     # cutoff 21000, key 21000 not < 21000
        assert len(self.out.batches) == batches_before
        assert self.engine.buffered == 1

        self.sched.advance(17000)     # cutoff 22000
        assert _timestamps(self.out.batches[-1]) == [21000]

    def test_nonempty_buffer_reschedules_one_interval_later(self):
        for ts in (20000, 12000, 21000):
            self.engine.on_event(_event(ts))
        self.sched.advance(5000)
        assert self.sched.requested == [5000, 6000]
        assert self.engine.state.last_scheduled_timestamp == 6000

    def test_empty_buffer_defers_scheduling_to_next_arrival(self):
        self.sched.advance(5000)
        state = self.engine.state
        assert state.scheduling is SchedulingStatus.RESCHEDULE_ON_ARRIVAL
        assert self.sched.requested == [5000]

        self.sched.advance(7300)      # nothing pending, nothing fires
        self.engine.on_event(_event(1))
        # next whole second on the 5000 + n*1000 grid at or after 7300
        assert self.sched.requested == [5000, 8000]
        assert self.engine.state.scheduling is SchedulingStatus.PENDING

    def test_reschedule_on_grid_point_uses_current_instant(self):
        self.sched.advance(5000)
        self.sched.advance(7000)
        self.engine.on_event(_event(1))
        assert self.sched.requested[-1] == 7000

    def test_dropped_late_event_does_not_reschedule(self):
        sched = ManualScheduler(start=0)
        engine = KSlackEngine.from_arguments("timestamp", 5000, True, scheduler=sched)
        engine.start()
        engine.on_event(_event(100))
        sched.advance(5000)
        engine.on_event(_event(50))   # dropped before the scheduling check
        assert sched.requested == [5000]

    def test_active_tier_is_left_to_the_arrival_path(self):
        self._hold_one()
        self.engine.on_event(_event(60))   # below greatest: stays active
        self.sched.advance(5000)
        assert self.engine.buffered == 1
        assert self.engine.stats()["active_events"] == 1

    def test_early_wakeup_keeps_the_pending_instant(self):
        for ts in (20000, 12000, 21000):
            self.engine.on_event(_event(ts))
        self.sched.tick()             # spurious, clock still at 0
        assert self.sched.requested == [5000, 5000]
        assert self.sched.due == 5000
        assert self.engine.state.last_scheduled_timestamp == 5000

    def test_clock_stepping_back_does_not_stop_the_timer(self):
        for ts in (20000, 12000, 21000):
            self.engine.on_event(_event(ts))
        # the only pending wake-up fires, but the wall clock now reads
        # earlier than the instant it was requested for
        self.sched.cancel()
        self.sched.now = 4000
        self.sched.tick()
        assert self.sched.due == 5000

        self.sched.advance(17000)
        assert self.engine.buffered == 0
        assert _timestamps(self.out.batches[-1]) == [21000]

    def test_failing_sink_does_not_skip_rescheduling(self):
        sink = _FlakySink()
        sched = ManualScheduler(start=0)
        engine = KSlackEngine.from_arguments("timestamp", 5000, scheduler=sched, sink=sink)
        engine.start()
        for ts in (20000, 12000, 21000, 25000):
            engine.on_event(_event(ts))

        sink.fail_next = True
        with pytest.raises(BufferError):
            sched.advance(17000)      # flushes 21000, 25000 stays expired
        assert sched.due == 6000
        assert engine.state.scheduling is SchedulingStatus.PENDING

        sched.advance(21000)
        assert engine.buffered == 0
        assert _timestamps(sink.events)[-1] == 25000

    def test_failing_sink_on_last_flush_leaves_reschedule_on_arrival(self):
        sink = _FlakySink()
        sched = ManualScheduler(start=0)
        engine = KSlackEngine.from_arguments("timestamp", 5000, scheduler=sched, sink=sink)
        engine.start()
        for ts in (100, 40, 110):
            engine.on_event(_event(ts))

        sink.fail_next = True
        with pytest.raises(BufferError):
            sched.advance(5000)
        assert engine.state.scheduling is SchedulingStatus.RESCHEDULE_ON_ARRIVAL

        sched.advance(7300)
        engine.on_event(_event(1))
        assert sched.requested[-1] == 8000

    def test_timer_ignored_before_start_and_after_stop(self):
        self._hold_one()
        self.engine.stop()
        assert self.sched.due is None
        assert self.engine.on_timer(10_000) == []
        assert self.engine.buffered == 1

    def test_timer_disabled_engine_never_schedules(self):
        sched = ManualScheduler(start=0)
        engine = KSlackEngine.from_arguments("timestamp", scheduler=sched)
        engine.start()
        engine.on_event(_event(10))
        assert sched.requested == []
        assert engine.on_timer(99_999) == []
        assert engine.state.scheduling is SchedulingStatus.IDLE


# ---------------------------------------------------------------------------
# Schedulers
# ---------------------------------------------------------------------------

class TestClock:
    def test_now_ms_truncates_to_integer_milliseconds(self):
        with patch("reorder.scheduler.time") as mock_time:
            mock_time.time.return_value = 1700000000.5
            assert now_ms() == 1700000000500


class TestThreadScheduler:
    def setup_method(self):
        self.fired = threading.Event()
        self.seen = []
        self.sched = ThreadScheduler()
        self.sched.bind(self._callback)

    def teardown_method(self):
        self.sched.cancel()

    def _callback(self, now):
        self.seen.append(now)
        self.fired.set()

    def test_fires_with_current_time(self):
        before = now_ms()
        self.sched.notify_at(before + 20)
        assert self.fired.wait(2.0)
        assert self.seen[0] >= before

    def test_new_request_replaces_pending_one(self):
        self.sched.notify_at(now_ms() + 60_000)
        self.sched.notify_at(now_ms() + 10)
        assert self.fired.wait(2.0)
        time.sleep(0.1)
        assert len(self.seen) == 1
        assert not self.sched.pending

    def test_cancel(self):
        self.sched.notify_at(now_ms() + 50)
        self.sched.cancel()
        time.sleep(0.2)
        assert self.seen == []
        assert not self.sched.pending

    def test_engine_with_timeout_gets_a_thread_scheduler(self):
        engine = KSlackEngine.from_arguments("timestamp", 1000)
        assert isinstance(engine.scheduler, ThreadScheduler)

    def test_real_timer_flushes_held_event(self):
        """Epoch-millisecond clock, tiny timestamps: key < 0 + now on any tick."""
        released = threading.Event()

        def sink(batch):
            if any(e["timestamp"] == 110 for e in batch):
                released.set()

        engine = KSlackEngine.from_arguments("timestamp", 0, sink=sink)
        engine.start()
        try:
            for ts in (100, 40, 110):
                engine.on_event(_event(ts))
            assert released.wait(3.0)
        finally:
            engine.stop()


# ---------------------------------------------------------------------------
# Concurrent arrival and timer callers
# ---------------------------------------------------------------------------

class TestConcurrency:
    def test_no_loss_no_duplicates_no_overlapping_batches(self):
        sched = ManualScheduler(start=0)
        emitted = []
        overlaps = []
        busy = threading.Event()

        def sink(batch):
            if busy.is_set():
                overlaps.append(batch)
            busy.set()
            emitted.extend(batch)
            busy.clear()

        # cutoff timeout + now is above every key, so ticks flush the expired tier
        engine = KSlackEngine.from_arguments(
            "timestamp", 1_000_000, scheduler=sched, sink=sink,
        )
        engine.start()

        def feed(worker):
            rng = random.Random(worker)
            for i in range(500):
                engine.on_event(_event(rng.randint(1, 100_000), (worker, i)))

        def tick():
            for _ in range(200):
                sched.tick()

        threads = [threading.Thread(target=feed, args=(w,)) for w in range(4)]
        threads.append(threading.Thread(target=tick))
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        engine.drain()

        ids = [e["id"] for e in emitted]
        assert len(ids) == 2000
        assert len(set(ids)) == 2000
        assert overlaps == []
