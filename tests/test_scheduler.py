"""
Unit Tests for the Named Timer Scheduler

Test coverage for:
- One-shot and repeating timers on the virtual clock
- Re-registration semantics (same interval keeps phase)
- Cancellation and disposal
- Callback failure isolation
- AsyncioScheduler on a real event loop
"""

import asyncio

from zyra_sync.scheduler import (
    AsyncioScheduler,
    VirtualScheduler,
    DETECTION_POLL,
    STATS_POLL,
    WATCHDOG_RUNNING,
)
from tests.conftest import async_test


class TestVirtualScheduler:
    """Tests for the manual clock."""

    def test_call_later_fires_once_when_due(self):
        scheduler = VirtualScheduler()
        fired = []
        scheduler.call_later(WATCHDOG_RUNNING, 1000, lambda: fired.append(scheduler.now_ms()))
        scheduler.advance(999)
        assert fired == []
        scheduler.advance(1)
        assert fired == [1000]
        scheduler.advance(5000)
        assert fired == [1000]
        assert not scheduler.is_scheduled(WATCHDOG_RUNNING)

    def test_call_every_repeats(self):
        scheduler = VirtualScheduler()
        fired = []
        scheduler.call_every(STATS_POLL, 5000, lambda: fired.append(scheduler.now_ms()))
        scheduler.advance(15000)
        assert fired == [5000, 10000, 15000]
        assert scheduler.interval_of(STATS_POLL) == 5000

    def test_same_interval_keeps_phase(self):
        scheduler = VirtualScheduler()
        scheduler.call_every(DETECTION_POLL, 5000, lambda: None)
        scheduler.advance(3000)
        scheduler.call_every(DETECTION_POLL, 5000, lambda: None)
        assert scheduler.due_at(DETECTION_POLL) == 5000

    def test_changed_interval_rearms(self):
        scheduler = VirtualScheduler()
        scheduler.call_every(DETECTION_POLL, 5000, lambda: None)
        scheduler.advance(3000)
        scheduler.call_every(DETECTION_POLL, 1000, lambda: None)
        assert scheduler.due_at(DETECTION_POLL) == 4000
        assert scheduler.interval_of(DETECTION_POLL) == 1000

    def test_cancel(self):
        scheduler = VirtualScheduler()
        fired = []
        scheduler.call_every(STATS_POLL, 100, lambda: fired.append(1))
        assert scheduler.cancel(STATS_POLL) is True
        assert scheduler.cancel(STATS_POLL) is False
        scheduler.advance(1000)
        assert fired == []
        assert scheduler.interval_of(STATS_POLL) is None

    def test_callback_may_cancel_its_own_interval(self):
        scheduler = VirtualScheduler()
        fired = []

        def once():
            fired.append(scheduler.now_ms())
            scheduler.cancel(STATS_POLL)

        scheduler.call_every(STATS_POLL, 100, once)
        scheduler.advance(1000)
        assert fired == [100]

    def test_ties_fire_in_registration_order(self):
        scheduler = VirtualScheduler()
        order = []
        scheduler.call_later("b", 500, lambda: order.append("b"))
        scheduler.call_later("a", 500, lambda: order.append("a"))
        scheduler.advance(500)
        assert order == ["b", "a"]

    def test_failing_callback_does_not_stop_others(self):
        scheduler = VirtualScheduler()
        fired = []

        def boom():
            raise RuntimeError("boom")

        scheduler.call_later("first", 100, boom)
        scheduler.call_later("second", 100, lambda: fired.append("second"))
        assert scheduler.advance(100) == 2
        assert fired == ["second"]

    def test_dispose_cancels_everything_and_ignores_new_timers(self):
        scheduler = VirtualScheduler()
        fired = []
        scheduler.call_every(STATS_POLL, 100, lambda: fired.append("poll"))
        scheduler.call_later(WATCHDOG_RUNNING, 100, lambda: fired.append("watchdog"))
        scheduler.dispose()
        assert scheduler.scheduled_names() == []
        scheduler.call_later("late", 10, lambda: fired.append("late"))
        scheduler.call_every("late-poll", 10, lambda: fired.append("late-poll"))
        scheduler.advance(1000)
        assert fired == []
        assert scheduler.disposed

    def test_advance_to_never_moves_backwards(self):
        scheduler = VirtualScheduler(start_ms=500)
        scheduler.advance_to(100)
        assert scheduler.now_ms() == 500


class TestAsyncioScheduler:
    """Tests for real timers on the running loop."""

    @async_test
    async def test_call_later_fires(self):
        scheduler = AsyncioScheduler()
        done = asyncio.Event()
        scheduler.call_later(WATCHDOG_RUNNING, 10, done.set)
        await asyncio.wait_for(done.wait(), timeout=1.0)
        assert not scheduler.is_scheduled(WATCHDOG_RUNNING)

    @async_test
    async def test_call_every_and_dispose(self):
        scheduler = AsyncioScheduler()
        ticks = []
        scheduler.call_every(STATS_POLL, 5, lambda: ticks.append(1))
        await asyncio.sleep(0.05)
        assert len(ticks) >= 2
        assert scheduler.interval_of(STATS_POLL) == 5
        scheduler.dispose()
        count = len(ticks)
        await asyncio.sleep(0.03)
        assert len(ticks) == count
        assert scheduler.scheduled_names() == []
