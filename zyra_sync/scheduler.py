"""
Named Timer Scheduler

Every timer, poll interval and watchdog in the loop session is registered
here under a purpose key. Start/stop decisions are made by the session from
recomputed state; nothing else owns a timer.

Two implementations share one interface:
- AsyncioScheduler: real timers on the running event loop
- VirtualScheduler: manual clock for deterministic replay and tests

CRITICAL: after dispose() no callback fires and new registrations are
ignored. A disposed session must never mutate state.
"""

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

logger = logging.getLogger("sync_scheduler")

Callback = Callable[[], None]

# -----------------------------------------------------------------------------
# Timer Keys
# -----------------------------------------------------------------------------
DETECTION_POLL = "detection-poll"
STATS_POLL = "stats-poll"
ACTIVITY_POLL = "activity-poll"
EXECUTION_POLL = "execution-poll"
READINESS_POLL = "readiness-poll"
WATCHDOG_RUNNING = "watchdog-running"
WATCHDOG_APPROVAL = "watchdog-approval"
DETECTION_WATCHDOG = "detection-watchdog"
LIFECYCLE_DWELL = "lifecycle-dwell"
LIFECYCLE_RESET = "lifecycle-reset"
STAGE_ADVANCE = "stage-advance"
NARRATION_ROTATE = "narration-rotate"


class TimerScheduler:
    """
    Base interface for named timers.

    Registering a key that is already scheduled replaces the previous timer,
    except call_every() with an unchanged interval, which keeps the running
    timer so repeated recomputes do not reset its phase.
    """

    def __init__(self):
        self._disposed = False
        self._intervals: Dict[str, int] = {}

    @property
    def disposed(self) -> bool:
        return self._disposed

    def now_ms(self) -> int:
        raise NotImplementedError

    def call_later(self, name: str, delay_ms: int, callback: Callback) -> None:
        raise NotImplementedError

    def call_every(self, name: str, interval_ms: int, callback: Callback) -> None:
        if self._disposed:
            return
        if self._intervals.get(name) == interval_ms and self.is_scheduled(name):
            return
        self._intervals[name] = interval_ms

        def tick():
            self._intervals.pop(name, None)
            # Re-arm before running so a callback may cancel its own interval
            self.call_every(name, interval_ms, callback)
            callback()

        self._schedule(name, interval_ms, tick)
        logger.debug(f"Interval {name} every {interval_ms}ms")

    def cancel(self, name: str) -> bool:
        raise NotImplementedError

    def is_scheduled(self, name: str) -> bool:
        raise NotImplementedError

    def scheduled_names(self) -> List[str]:
        raise NotImplementedError

    def interval_of(self, name: str) -> Optional[int]:
        return self._intervals.get(name) if self.is_scheduled(name) else None

    def dispose(self) -> None:
        """Cancel every timer and refuse new ones."""
        for name in list(self.scheduled_names()):
            self.cancel(name)
        self._intervals.clear()
        self._disposed = True
        logger.info("Scheduler disposed")

    def _schedule(self, name: str, delay_ms: int, callback: Callback) -> None:
        raise NotImplementedError

    def _run(self, name: str, callback: Callback) -> None:
        if self._disposed:
            return
        try:
            callback()
        except Exception as e:
            # A failing callback must not kill the loop's other timers
            logger.error(f"Timer {name} callback failed: {e}", exc_info=True)


# -----------------------------------------------------------------------------
# Asyncio Implementation
# -----------------------------------------------------------------------------
class AsyncioScheduler(TimerScheduler):
    """Timers backed by loop.call_later on the running event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        super().__init__()
        self._loop = loop
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now_ms(self) -> int:
        return int(time.monotonic() * 1000)

    def call_later(self, name: str, delay_ms: int, callback: Callback) -> None:
        if self._disposed:
            return
        self._intervals.pop(name, None)
        self._schedule(name, delay_ms, callback)

    def _schedule(self, name: str, delay_ms: int, callback: Callback) -> None:
        self.cancel_handle(name)

        def fire():
            self._handles.pop(name, None)
            self._run(name, callback)

        self._handles[name] = self._get_loop().call_later(delay_ms / 1000.0, fire)

    def cancel_handle(self, name: str) -> bool:
        handle = self._handles.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel(self, name: str) -> bool:
        self._intervals.pop(name, None)
        return self.cancel_handle(name)

    def is_scheduled(self, name: str) -> bool:
        return name in self._handles

    def scheduled_names(self) -> List[str]:
        return sorted(self._handles)


# -----------------------------------------------------------------------------
# Virtual Implementation
# -----------------------------------------------------------------------------
@dataclass(order=True)
class _VirtualTimer:
    due_ms: int
    seq: int
    name: str = field(compare=False)
    callback: Callback = field(compare=False)
    cancelled: bool = field(default=False, compare=False)


class VirtualScheduler(TimerScheduler):
    """
    Manual clock. Time only moves on advance()/advance_to().

    Timers due at the same instant fire in registration order.
    """

    def __init__(self, start_ms: int = 0):
        super().__init__()
        self._now = start_ms
        self._queue: List[_VirtualTimer] = []
        self._active: Dict[str, _VirtualTimer] = {}
        self._seq = itertools.count()

    def now_ms(self) -> int:
        return self._now

    def call_later(self, name: str, delay_ms: int, callback: Callback) -> None:
        if self._disposed:
            return
        self._intervals.pop(name, None)
        self._schedule(name, delay_ms, callback)

    def _schedule(self, name: str, delay_ms: int, callback: Callback) -> None:
        self._cancel_timer(name)
        timer = _VirtualTimer(self._now + delay_ms, next(self._seq), name, callback)
        self._active[name] = timer
        heapq.heappush(self._queue, timer)

    def _cancel_timer(self, name: str) -> bool:
        timer = self._active.pop(name, None)
        if timer is None:
            return False
        timer.cancelled = True
        return True

    def cancel(self, name: str) -> bool:
        self._intervals.pop(name, None)
        return self._cancel_timer(name)

    def is_scheduled(self, name: str) -> bool:
        return name in self._active

    def scheduled_names(self) -> List[str]:
        return sorted(self._active)

    def due_at(self, name: str) -> Optional[int]:
        timer = self._active.get(name)
        return timer.due_ms if timer else None

    def advance(self, delta_ms: int) -> int:
        """Move the clock forward, firing due timers. Returns fired count."""
        return self.advance_to(self._now + delta_ms)

    def advance_to(self, target_ms: int) -> int:
        fired = 0
        while self._queue and self._queue[0].due_ms <= target_ms and not self._disposed:
            timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._now = timer.due_ms
            if self._active.get(timer.name) is timer:
                del self._active[timer.name]
            self._run(timer.name, timer.callback)
            fired += 1
        if not self._disposed:
            self._now = max(self._now, target_ms)
        return fired
