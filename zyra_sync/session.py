"""
Loop Session

Owns every moving part of the reconciled loop and the ONE recomputation
path that turns source updates into a ResolvedPhase.

Data flow:
  poll/stream/local change -> apply to its source -> recompute()
  recompute() -> reconciler (resolve + monotonicity)
              -> watchdog observation
              -> timer start/stop (polling cadence, stage advance)

Sources are "last write wins" individually; across sources the resolver's
rule table is the only precedence. Timers are started and stopped ONLY from
recompute(), never from ad hoc callbacks.

Disposal tears down every timer, poll task, stream reader and the HTTP
client. A disposed session never mutates state again.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Dict, List, Optional, Set, Tuple

from .adapters import (
    PollingAdapter,
    StreamChannel,
    detection_poll_interval,
    stats_poll_interval,
    activity_poll_interval,
    execution_poll_interval,
)
from .client import ZyraApiClient, ZyraApiError, ApprovalResponse
from .config import SyncConfig
from .lifecycle import ExecutionLifecycleController, FailsafeWatchdog, DetectionWatchdog
from .models import (
    LoopPhase,
    DetectionPhase,
    DetectionStatus,
    ExecutionStatus,
    LifecycleState,
    StoreReadiness,
    DetectionSnapshot,
    LiveStatsSnapshot,
    ActivityItem,
    ExecutionResult,
    FoundationalAction,
    LocalContext,
    ResolvedPhase,
    StreamState,
    StreamEvent,
)
from .narrator import Narration, ProgressNarrator, StageTracker, default_stage_for
from .notices import NoticeCenter, NoticeKind, NoticeSeverity
from .resolver import (
    PhaseReconciler,
    derive_execution_status,
    effective_detection_phase,
    effective_detection_status,
    is_actively_detecting,
    committed_action_id,
)
from .scheduler import (
    TimerScheduler,
    AsyncioScheduler,
    DETECTION_POLL,
    STATS_POLL,
    ACTIVITY_POLL,
    EXECUTION_POLL,
    READINESS_POLL,
)

logger = logging.getLogger("loop_session")


class ApprovalError(Exception):
    """Approve-action failed. Surfaced to the user; never retried automatically."""

    def __init__(self, action_id: str, message: str):
        super().__init__(message)
        self.action_id = action_id


class ApprovalInProgressError(ApprovalError):
    """A second approval arrived while one is still in flight."""


@dataclass
class SessionState:
    """Read-only view of the reconciled loop for a UI shell."""
    resolved: ResolvedPhase
    narration: Narration
    execution_status: ExecutionStatus
    detection_phase: DetectionPhase
    detection_status: DetectionStatus
    is_detection_complete: bool
    is_actively_detecting: bool
    lifecycle: LifecycleState
    committed_action_id: Optional[str]
    foundational_action: Optional[FoundationalAction]
    readiness: StoreReadiness
    stream_connected: bool
    stream_reconnecting: bool
    is_approving: bool
    cycle: int
    execution_result: Optional[ExecutionResult] = None
    execution_activities: List[ActivityItem] = field(default_factory=list)
    stale_sources: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.resolved.phase.value,
            "isComplete": self.resolved.is_complete,
            "rule": self.resolved.rule,
            "narration": self.narration.to_dict(),
            "executionStatus": self.execution_status.value,
            "detectionPhase": self.detection_phase.value,
            "detectionStatus": self.detection_status.value,
            "isDetectionComplete": self.is_detection_complete,
            "isActivelyDetecting": self.is_actively_detecting,
            "lifecycle": self.lifecycle.value,
            "committedActionId": self.committed_action_id,
            "foundationalAction": self.foundational_action.to_dict() if self.foundational_action else None,
            "readiness": self.readiness.value,
            "streamConnected": self.stream_connected,
            "streamReconnecting": self.stream_reconnecting,
            "isApproving": self.is_approving,
            "cycle": self.cycle,
            "executionResult": self.execution_result.to_dict() if self.execution_result else None,
            "executionActivities": [a.to_dict() for a in self.execution_activities],
            "staleSources": list(self.stale_sources),
        }


class LoopSession:
    """
    Reconciled ZYRA loop for one merchant session.

    Usage:
        session = LoopSession(config)
        await session.start()
        ...
        state = session.state()
        await session.approve_action("opp-42")
        ...
        await session.close()
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        client: Optional[ZyraApiClient] = None,
        scheduler: Optional[TimerScheduler] = None,
        notices: Optional[NoticeCenter] = None,
    ):
        self.config = config or SyncConfig()
        self.client = client or ZyraApiClient(self.config)
        self.scheduler = scheduler or AsyncioScheduler()
        self.notices = notices or NoticeCenter(self.config.max_notice_history)

        # Signal sources
        self.readiness = PollingAdapter("store-readiness", self.client.get_store_readiness)
        self.detection = PollingAdapter("detection-status", self.client.get_detection_status)
        self.stats = PollingAdapter("live-stats", self.client.get_live_stats)
        self.activity = PollingAdapter("activity-feed", self.client.get_activity_feed)
        self.execution_activities = PollingAdapter(
            "execution-activities", self.client.get_execution_activities
        )
        self.stream: Optional[StreamChannel] = None
        if self.config.stream_enabled:
            self.stream = StreamChannel(
                self.client,
                on_event=self._on_stream_event,
                on_status=self.recompute,
                reconnect_delay_ms=self.config.stream_reconnect_delay_ms,
            )

        # Local state
        self.is_detecting = False
        self.detection_forced_complete = False
        self.is_approving = False
        self.execution_result: Optional[ExecutionResult] = None
        self.completed_action_ids: Set[str] = set()

        # Controllers
        self.reconciler = PhaseReconciler()
        self.lifecycle = ExecutionLifecycleController(
            self.scheduler,
            dwell_ms=self.config.lifecycle_dwell_ms,
            completion_policy=self.config.completion_policy,
            reset_delay_ms=self.config.lifecycle_reset_delay_ms,
            on_refresh=self.request_refresh,
        )
        self.lifecycle.add_listener(self._on_lifecycle_transition)
        self.failsafe = FailsafeWatchdog(
            self.scheduler,
            on_stuck=self._on_stuck,
            running_timeout_ms=self.config.failsafe_running_timeout_ms,
            approval_timeout_ms=self.config.failsafe_approval_timeout_ms,
        )
        self.detection_watchdog = DetectionWatchdog(
            self.scheduler,
            on_timeout=self._on_detection_timeout,
            timeout_ms=self.config.detection_timeout_ms,
        )
        self.stage_tracker = StageTracker(self.scheduler, self.config.stage_auto_advance_ms)
        self.narrator = ProgressNarrator(self.scheduler, self.config.narration_rotate_ms)

        self.resolved: Optional[ResolvedPhase] = None
        self.refresh_reasons: List[str] = []
        self._tasks: Set[asyncio.Task] = set()
        self._disposed = False
        self._started = False

    # -------------------------------------------------------------------------
    # Lifecycle of the session itself
    # -------------------------------------------------------------------------

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def start(self) -> ResolvedPhase:
        """Fetch readiness once, then let recompute() arm the polls."""
        if self._started:
            return self.recompute()
        self._started = True
        self.scheduler.call_every(READINESS_POLL, self.config.readiness_poll_ms, self._poll_readiness)
        self.narrator.start()
        if self.stream is not None:
            self.stream.start()
        await self.refresh_all()
        logger.info(f"Loop session started (readiness={self.readiness_value().value})")
        return self.recompute()

    def dispose(self) -> None:
        """Synchronous teardown: timers, controllers and in-flight tasks."""
        if self._disposed:
            return
        self._disposed = True
        self.lifecycle.dispose()
        self.failsafe.dispose()
        self.detection_watchdog.dispose()
        self.stage_tracker.reset()
        self.narrator.stop()
        self.scheduler.dispose()
        for task in list(self._tasks):
            task.cancel()
        logger.info("Loop session disposed")

    async def close(self) -> None:
        """Full teardown including the stream reader and the HTTP client."""
        self.dispose()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()
        if self.stream is not None:
            await self.stream.close()
        await self.client.aclose()

    # -------------------------------------------------------------------------
    # Task spawning
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> Optional[asyncio.Task]:
        if self._disposed:
            coro.close()
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Driven synchronously (virtual clock replay): no network I/O
            coro.close()
            logger.debug("No running event loop, skipping fetch")
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -------------------------------------------------------------------------
    # Source updates (last write wins per source)
    # -------------------------------------------------------------------------

    def apply_readiness(self, readiness: StoreReadiness) -> ResolvedPhase:
        if self._disposed:
            return self.resolved
        self.readiness.value = readiness
        return self.recompute()

    def apply_detection(self, snapshot: DetectionSnapshot) -> ResolvedPhase:
        if self._disposed:
            return self.resolved
        self.detection.value = snapshot
        return self.recompute()

    def apply_stats(self, snapshot: LiveStatsSnapshot) -> ResolvedPhase:
        if self._disposed:
            return self.resolved
        self.stats.value = snapshot
        return self.recompute()

    def apply_activity(self, items: List[ActivityItem]) -> ResolvedPhase:
        if self._disposed:
            return self.resolved
        self.activity.value = list(items)
        return self.recompute()

    def apply_stream_event(self, event: StreamEvent) -> ResolvedPhase:
        if self.stream is None:
            raise ValueError("Stream is disabled for this session")
        self.stream.accept(event)
        return self.resolved

    def apply_stream_status(self, connected: bool, reconnecting: bool = False) -> ResolvedPhase:
        if self.stream is None:
            raise ValueError("Stream is disabled for this session")
        self.stream.set_status(connected=connected, reconnecting=reconnecting)
        return self.recompute()

    def _on_stream_event(self, event: StreamEvent) -> None:
        logger.debug(f"Stream event {event.event_type} ({event.status})")
        self.recompute()

    async def _refresh(self, adapter: PollingAdapter) -> None:
        if await adapter.refresh():
            self.recompute()

    def _poll_readiness(self) -> None:
        self._spawn(self._refresh(self.readiness))

    def _poll_detection(self) -> None:
        self._spawn(self._refresh(self.detection))

    def _poll_stats(self) -> None:
        self._spawn(self._refresh(self.stats))

    def _poll_activity(self) -> None:
        self._spawn(self._refresh(self.activity))

    def _poll_execution(self) -> None:
        self._spawn(self._refresh(self.execution_activities))

    async def refresh_all(self) -> ResolvedPhase:
        """Refetch every enabled source concurrently, then recompute once."""
        await self.readiness.refresh()
        adapters = []
        if self.readiness_value() == StoreReadiness.READY:
            adapters = [self.detection, self.stats, self.activity]
        if self._execution_active():
            adapters.append(self.execution_activities)
        if adapters:
            await asyncio.gather(*(a.refresh() for a in adapters))
        return self.recompute()

    def request_refresh(self, reason: str) -> None:
        """Force a refetch of all sources (watchdogs, lifecycle completion)."""
        if self._disposed:
            return
        self.refresh_reasons.append(reason)
        logger.info(f"Refresh requested: {reason}")
        self._spawn(self.refresh_all())

    # -------------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------------

    def readiness_value(self) -> StoreReadiness:
        return self.readiness.value or StoreReadiness.UNKNOWN

    def detection_snapshot(self) -> Optional[DetectionSnapshot]:
        """Detection polling is disabled unless the store is ready."""
        if self.readiness_value() != StoreReadiness.READY:
            return None
        return self.detection.value

    def stats_snapshot(self) -> Optional[LiveStatsSnapshot]:
        if self.readiness_value() != StoreReadiness.READY:
            return None
        return self.stats.value

    def stream_state(self) -> StreamState:
        return self.stream.state() if self.stream is not None else StreamState()

    def local_context(self) -> LocalContext:
        return LocalContext(
            lifecycle=self.lifecycle.state,
            is_detecting=self.is_detecting,
            detection_forced_complete=self.detection_forced_complete,
            execution_result=self.execution_result,
            completed_action_ids=frozenset(self.completed_action_ids),
            activity_history=tuple(self.activity.value or ()),
        )

    def _inputs(self) -> Tuple[Optional[DetectionSnapshot], Optional[LiveStatsSnapshot], StreamState, LocalContext]:
        return self.detection_snapshot(), self.stats_snapshot(), self.stream_state(), self.local_context()

    def _execution_active(self) -> bool:
        detection, stats, _, local = self._inputs()
        status = derive_execution_status(detection, stats, local)
        return status == ExecutionStatus.RUNNING or self.lifecycle.state.is_active

    # -------------------------------------------------------------------------
    # The single recomputation path
    # -------------------------------------------------------------------------

    def recompute(self) -> Optional[ResolvedPhase]:
        if self._disposed:
            return self.resolved
        detection, stats, stream, local = self._inputs()

        if self.is_detecting and detection is not None and detection.complete:
            # Server finished the cycle: drop the local flag and its watchdog
            self.is_detecting = False
            self.detection_watchdog.disarm()
            local = self.local_context()

        resolved = self.reconciler.reconcile(detection, stats, stream, local)
        self.resolved = resolved

        execution_status = derive_execution_status(detection, stats, local)
        self.failsafe.observe(execution_status)

        actively_detecting = is_actively_detecting(detection, stats, local)
        self._sync_polling(actively_detecting, execution_status)
        self.stage_tracker.update(
            effective_detection_phase(detection, stats),
            detecting=actively_detecting,
            complete=resolved.is_complete,
        )
        return resolved

    def _set_interval(self, name: str, interval_ms: Optional[int], callback: Callable[[], None]) -> None:
        if interval_ms is None:
            if self.scheduler.cancel(name):
                logger.debug(f"Polling {name} stopped")
            return
        self.scheduler.call_every(name, interval_ms, callback)

    def _sync_polling(self, actively_detecting: bool, execution_status: ExecutionStatus) -> None:
        if not self._started:
            return
        readiness = self.readiness_value()
        execution_active = (
            execution_status == ExecutionStatus.RUNNING or self.lifecycle.state.is_active
        )
        self._set_interval(
            DETECTION_POLL,
            detection_poll_interval(self.config, readiness, actively_detecting),
            self._poll_detection,
        )
        self._set_interval(STATS_POLL, stats_poll_interval(self.config, readiness), self._poll_stats)
        self._set_interval(
            ACTIVITY_POLL,
            activity_poll_interval(self.config, readiness, actively_detecting),
            self._poll_activity,
        )
        self._set_interval(
            EXECUTION_POLL,
            execution_poll_interval(self.config, execution_active),
            self._poll_execution,
        )

    # -------------------------------------------------------------------------
    # Cycle control
    # -------------------------------------------------------------------------

    def begin_cycle(self) -> int:
        """
        Start a new detection cycle.

        Snapshots from the previous cycle are discarded, the local lifecycle
        is reset, and the reconciler's high-water mark and completion latch
        start over.
        """
        cycle = self.reconciler.begin_cycle()
        self.lifecycle.reset("new detection cycle")
        self.detection.clear()
        self.stats.clear()
        self.execution_result = None
        self.detection_forced_complete = False
        self.stage_tracker.reset()
        return cycle

    async def trigger_detection(self) -> Optional[Dict[str, Any]]:
        """
        Start a detection cycle on the backend.

        The response only clears the local detecting flag; progress comes
        from polling and the stream.
        """
        if self._disposed:
            return None
        self.begin_cycle()
        self.is_detecting = True
        self.detection_watchdog.arm()
        self.recompute()
        try:
            data = await self.client.trigger_detection()
        except ZyraApiError as e:
            logger.error(f"Detection trigger failed: {e}")
            self.is_detecting = False
            self.detection_watchdog.disarm()
            self.notices.post(
                NoticeKind.DETECTION_FAILED,
                "Detection Failed",
                "Could not start detection. ZYRA will keep showing the last known state.",
                NoticeSeverity.WARNING,
            )
            self.recompute()
            return None
        if self._disposed:
            return data
        self.is_detecting = False
        self.detection_watchdog.disarm()
        self.request_refresh("detection-triggered")
        self.recompute()
        return data

    async def approve_action(self, action_id: str) -> ApprovalResponse:
        """
        Approve the committed (or foundational) action.

        On success the local lifecycle enters EXECUTE. On failure a blocking
        error notice is posted and ApprovalError raised; no automatic retry.
        """
        if self._disposed:
            raise ApprovalError(action_id, "Session is closed")
        if self.is_approving:
            raise ApprovalInProgressError(action_id, "An approval is already in progress")
        self.is_approving = True
        self.recompute()
        try:
            response = await self.client.approve_action(action_id)
        except ZyraApiError as e:
            self.notices.post(
                NoticeKind.APPROVAL_FAILED,
                "Approval Failed",
                "Could not approve the action. Please try again.",
                NoticeSeverity.ERROR,
                action_id=action_id,
            )
            raise ApprovalError(action_id, f"Approval failed: {e}") from e
        finally:
            self.is_approving = False

        if self._disposed:
            return response
        self.record_approval(action_id, response)
        if await self.execution_activities.refresh():
            self.recompute()
        return response

    def record_approval(self, action_id: str, response: ApprovalResponse) -> ResolvedPhase:
        """Apply a successful approve-action response: result, notice, local lifecycle."""
        self.execution_result = response.result
        if response.success:
            title = "Optimization Complete"
            kind = NoticeKind.OPTIMIZATION_COMPLETE
        else:
            title = "Action Approved"
            kind = NoticeKind.ACTION_APPROVED
        self.notices.post(
            kind,
            title,
            response.message or "ZYRA has applied the improvements",
            action_id=action_id,
        )
        self.reconciler.restart_phase_mark()
        self.lifecycle.start(action_id)
        self.request_refresh("action-approved")
        return self.recompute()

    # -------------------------------------------------------------------------
    # Controller callbacks
    # -------------------------------------------------------------------------

    def _on_lifecycle_transition(self, old: LifecycleState, new: LifecycleState) -> None:
        if new == LifecycleState.COMPLETE and self.lifecycle.action_id:
            self.completed_action_ids.add(self.lifecycle.action_id)
        self.recompute()

    def _on_stuck(self, status: ExecutionStatus, timeout_ms: int) -> None:
        if status == ExecutionStatus.RUNNING:
            self.notices.post(
                NoticeKind.EXECUTION_CHECK,
                "Execution Check",
                "Refreshing status - action may have completed",
                NoticeSeverity.WARNING,
                timeout_ms=timeout_ms,
            )
        else:
            self.notices.post(
                NoticeKind.APPROVAL_CHECK,
                "Approval Check",
                "Still waiting for your approval - refreshing status",
                timeout_ms=timeout_ms,
            )
        self.request_refresh(f"watchdog-{status.value}")

    def _on_detection_timeout(self) -> None:
        self.is_detecting = False
        self.detection_forced_complete = True
        self.notices.post(
            NoticeKind.DETECTION_TIMEOUT,
            "Detection Check",
            "Detection is taking longer than expected - showing latest results",
        )
        self.request_refresh("detection-timeout")
        self.recompute()

    # -------------------------------------------------------------------------
    # State view
    # -------------------------------------------------------------------------

    def narration(self) -> Narration:
        resolved = self.resolved or self.recompute()
        if resolved.phase == LoopPhase.DETECT:
            return self.narrator.render(resolved.phase, self.stage_tracker.stage)
        return self.narrator.render(resolved.phase, default_stage_for(resolved.phase))

    def state(self) -> SessionState:
        resolved = self.resolved or self.recompute()
        detection, stats, stream, local = self._inputs()
        foundational = None
        if detection is not None and detection.foundational_action:
            foundational = detection.foundational_action
        elif stats is not None:
            foundational = stats.foundational_action
        stale = [
            a.name for a in (self.readiness, self.detection, self.stats, self.activity, self.execution_activities)
            if a.is_stale
        ]
        return SessionState(
            resolved=resolved,
            narration=self.narration(),
            execution_status=derive_execution_status(detection, stats, local),
            detection_phase=effective_detection_phase(detection, stats),
            detection_status=effective_detection_status(detection, stats),
            is_detection_complete=resolved.is_complete,
            is_actively_detecting=is_actively_detecting(detection, stats, local),
            lifecycle=self.lifecycle.state,
            committed_action_id=committed_action_id(detection, stats),
            foundational_action=foundational,
            readiness=self.readiness_value(),
            stream_connected=stream.is_connected,
            stream_reconnecting=stream.is_reconnecting,
            is_approving=self.is_approving,
            cycle=self.reconciler.cycle,
            execution_result=self.execution_result,
            execution_activities=list(self.execution_activities.value or []),
            stale_sources=stale,
        )
