"""
Execution Lifecycle Controller

Local optimistic post-approval lifecycle plus the fail-safe watchdogs.

State machine:
  IDLE -> EXECUTE -> PROVE -> LEARN -> COMPLETE -> (IDLE on reset)

Each of EXECUTE/PROVE/LEARN dwells for a fixed time (default 3000ms) and
then advances. The lifecycle is only consulted by the resolver when the
backend has no authoritative execution phase.

Watchdogs:
- FailsafeWatchdog: RUNNING > 30s or AWAITING_APPROVAL > 120s forces a
  refresh of all sources and surfaces a non-fatal notice
- DetectionWatchdog: a detection cycle that does not complete within 10s
  is completed locally (the UI never blocks on a hung backend)
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from .config import (
    CompletionPolicy,
    LIFECYCLE_DWELL_MS,
    LIFECYCLE_RESET_DELAY_MS,
    FAILSAFE_RUNNING_TIMEOUT_MS,
    FAILSAFE_APPROVAL_TIMEOUT_MS,
    DETECTION_TIMEOUT_MS,
)
from .models import ExecutionStatus, LifecycleState
from .scheduler import (
    TimerScheduler,
    LIFECYCLE_DWELL,
    LIFECYCLE_RESET,
    WATCHDOG_RUNNING,
    WATCHDOG_APPROVAL,
    DETECTION_WATCHDOG,
)

logger = logging.getLogger("lifecycle_controller")

TransitionListener = Callable[[LifecycleState, LifecycleState], None]

# -----------------------------------------------------------------------------
# Transition Rules
# -----------------------------------------------------------------------------
NEXT_STATE: Dict[LifecycleState, LifecycleState] = {
    LifecycleState.EXECUTE: LifecycleState.PROVE,
    LifecycleState.PROVE: LifecycleState.LEARN,
    LifecycleState.LEARN: LifecycleState.COMPLETE,
}

VALID_TRANSITIONS: Dict[LifecycleState, List[LifecycleState]] = {
    LifecycleState.IDLE: [LifecycleState.EXECUTE],
    LifecycleState.EXECUTE: [LifecycleState.PROVE, LifecycleState.IDLE],
    LifecycleState.PROVE: [LifecycleState.LEARN, LifecycleState.IDLE],
    LifecycleState.LEARN: [LifecycleState.COMPLETE, LifecycleState.IDLE],
    LifecycleState.COMPLETE: [LifecycleState.IDLE],
}


class ExecutionLifecycleController:
    """
    Drives the local lifecycle on dwell timers.

    On COMPLETE the completion policy decides:
    - HOLD: stay in COMPLETE until reset()
    - AUTO_RESET: after reset_delay_ms go to IDLE and call on_refresh
    """

    def __init__(
        self,
        scheduler: TimerScheduler,
        dwell_ms: int = LIFECYCLE_DWELL_MS,
        completion_policy: CompletionPolicy = CompletionPolicy.AUTO_RESET,
        reset_delay_ms: int = LIFECYCLE_RESET_DELAY_MS,
        on_refresh: Optional[Callable[[str], None]] = None,
    ):
        self.scheduler = scheduler
        self.dwell_ms = dwell_ms
        self.completion_policy = completion_policy
        self.reset_delay_ms = reset_delay_ms
        self.on_refresh = on_refresh
        self.state = LifecycleState.IDLE
        self.action_id: Optional[str] = None
        self.history: List[Tuple[int, LifecycleState]] = []
        self._listeners: List[TransitionListener] = []

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def can_transition(self, current: LifecycleState, target: LifecycleState) -> Tuple[bool, str]:
        valid_targets = VALID_TRANSITIONS.get(current, [])
        if target in valid_targets:
            return True, f"Transition {current.value} -> {target.value} allowed"
        return False, f"Invalid transition: {current.value} -> {target.value}. Valid targets: {[t.value for t in valid_targets]}"

    def _transition(self, target: LifecycleState, reason: str) -> None:
        old = self.state
        can_do, message = self.can_transition(old, target)
        if not can_do:
            raise ValueError(message)
        self.state = target
        self.history.append((self.scheduler.now_ms(), target))
        logger.info(f"Lifecycle {old.value} -> {target.value} ({reason}, action={self.action_id})")
        for listener in list(self._listeners):
            listener(old, target)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def start(self, action_id: str) -> None:
        """Enter EXECUTE after an approval. Restarts a lifecycle left over from a prior action."""
        if self.state != LifecycleState.IDLE:
            logger.info(f"Restarting lifecycle from {self.state.value} for new action {action_id}")
            self._cancel_timers()
            self._transition(LifecycleState.IDLE, "superseded")
        self.action_id = action_id
        self._transition(LifecycleState.EXECUTE, "approved")
        self._arm_dwell()

    def reset(self, reason: str = "new cycle") -> None:
        """Return to IDLE (new detection cycle or external reset)."""
        self._cancel_timers()
        if self.state != LifecycleState.IDLE:
            self._transition(LifecycleState.IDLE, reason)
        self.action_id = None

    def dispose(self) -> None:
        self._cancel_timers()
        self._listeners.clear()

    def _cancel_timers(self) -> None:
        self.scheduler.cancel(LIFECYCLE_DWELL)
        self.scheduler.cancel(LIFECYCLE_RESET)

    def _arm_dwell(self) -> None:
        self.scheduler.call_later(LIFECYCLE_DWELL, self.dwell_ms, self._advance)

    def _advance(self) -> None:
        target = NEXT_STATE.get(self.state)
        if target is None:
            return
        self._transition(target, f"dwell {self.dwell_ms}ms elapsed")
        if target.is_active:
            self._arm_dwell()
        elif target == LifecycleState.COMPLETE:
            self._on_complete()

    def _on_complete(self) -> None:
        if self.completion_policy == CompletionPolicy.HOLD:
            logger.info("Lifecycle complete, holding until external reset")
            return
        self.scheduler.call_later(LIFECYCLE_RESET, self.reset_delay_ms, self._auto_reset)

    def _auto_reset(self) -> None:
        self._transition(LifecycleState.IDLE, f"auto reset after {self.reset_delay_ms}ms")
        self.action_id = None
        if self.on_refresh:
            self.on_refresh("lifecycle-complete")


# -----------------------------------------------------------------------------
# Fail-safe Watchdog
# -----------------------------------------------------------------------------
WATCHED_STATUSES: Dict[ExecutionStatus, str] = {
    ExecutionStatus.RUNNING: WATCHDOG_RUNNING,
    ExecutionStatus.AWAITING_APPROVAL: WATCHDOG_APPROVAL,
}


class FailsafeWatchdog:
    """
    Forces a refresh when the derived execution status is stuck.

    The timer restarts whenever the observed status changes and fires at
    most once per continuous stretch of one status.
    """

    def __init__(
        self,
        scheduler: TimerScheduler,
        on_stuck: Callable[[ExecutionStatus, int], None],
        running_timeout_ms: int = FAILSAFE_RUNNING_TIMEOUT_MS,
        approval_timeout_ms: int = FAILSAFE_APPROVAL_TIMEOUT_MS,
    ):
        self.scheduler = scheduler
        self.on_stuck = on_stuck
        self.timeouts: Dict[ExecutionStatus, int] = {
            ExecutionStatus.RUNNING: running_timeout_ms,
            ExecutionStatus.AWAITING_APPROVAL: approval_timeout_ms,
        }
        self.status: Optional[ExecutionStatus] = None
        self.entered_at: Optional[int] = None
        self.fired_count = 0

    def observe(self, status: ExecutionStatus) -> None:
        if status == self.status:
            return
        self._cancel_all()
        self.status = status
        self.entered_at = self.scheduler.now_ms()
        key = WATCHED_STATUSES.get(status)
        if key is None:
            return
        timeout = self.timeouts[status]
        self.scheduler.call_later(key, timeout, lambda: self._fire(status, timeout))
        logger.debug(f"Watchdog armed: {status.value} for {timeout}ms")

    def _fire(self, status: ExecutionStatus, timeout: int) -> None:
        self.fired_count += 1
        logger.warning(f"Fail-safe: {status.value} stuck for {timeout // 1000}s - forcing refresh")
        self.on_stuck(status, timeout)

    def _cancel_all(self) -> None:
        for key in WATCHED_STATUSES.values():
            self.scheduler.cancel(key)

    def dispose(self) -> None:
        self._cancel_all()
        self.status = None
        self.entered_at = None


# -----------------------------------------------------------------------------
# Detection Watchdog
# -----------------------------------------------------------------------------
class DetectionWatchdog:
    """Completes a detection cycle locally if the backend does not within the timeout."""

    def __init__(
        self,
        scheduler: TimerScheduler,
        on_timeout: Callable[[], None],
        timeout_ms: int = DETECTION_TIMEOUT_MS,
    ):
        self.scheduler = scheduler
        self.on_timeout = on_timeout
        self.timeout_ms = timeout_ms
        self.started_at: Optional[int] = None

    @property
    def armed(self) -> bool:
        return self.scheduler.is_scheduled(DETECTION_WATCHDOG)

    def arm(self) -> None:
        self.started_at = self.scheduler.now_ms()
        self.scheduler.call_later(DETECTION_WATCHDOG, self.timeout_ms, self._fire)

    def disarm(self) -> None:
        self.scheduler.cancel(DETECTION_WATCHDOG)
        self.started_at = None

    def _fire(self) -> None:
        logger.warning(f"Detection did not complete within {self.timeout_ms // 1000}s - forcing local completion")
        self.started_at = None
        self.on_timeout()

    def dispose(self) -> None:
        self.disarm()
