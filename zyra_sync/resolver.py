"""
Phase Resolver

Deterministically computes ONE loop phase from every signal source:
detection snapshot, live stats snapshot, live stream and local context.

CRITICAL CONSTRAINTS:
- PURE: resolve() has no hidden state; same inputs = same ResolvedPhase
- EXPLICIT PRECEDENCE: an ordered rule table, first match wins
- LIVE STREAM IS AUTHORITATIVE: rule 1 overrides every polled/derived source
- NO FALSE SUCCESS: an unvalidated execution result never reaches LEARN

Monotonicity is NOT a property of resolve() (it would need memory). It is
enforced by PhaseReconciler, the single stateful wrapper the session uses:
within one cycle the reported phase never regresses, except for live stream
results, and the completion flag is latched.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, List, Tuple

from .models import (
    LoopPhase,
    DetectionPhase,
    DetectionStatus,
    ExecutionStatus,
    BackendExecutionPhase,
    LifecycleState,
    DetectionSnapshot,
    LiveStatsSnapshot,
    StreamEvent,
    StreamState,
    LocalContext,
    ResolvedPhase,
    BACKEND_PHASE_TO_LOOP,
    LIFECYCLE_TO_LOOP,
    has_validated_result,
    parse_loop_phase,
)

logger = logging.getLogger("phase_resolver")

# -----------------------------------------------------------------------------
# Stream event prefixes
# -----------------------------------------------------------------------------
EVENT_PREFIX_TO_PHASE: Tuple[Tuple[str, LoopPhase], ...] = (
    ("DETECT_", LoopPhase.DETECT),
    ("DECIDE_", LoopPhase.DECIDE),
    ("EXECUTE_", LoopPhase.EXECUTE),
    ("PROVE_", LoopPhase.PROVE),
    ("LEARN_", LoopPhase.LEARN),
)

# Detection outcomes that leave a decision waiting for the merchant
DECISION_STATUSES = (DetectionStatus.FRICTION_FOUND, DetectionStatus.FOUNDATIONAL_ACTION)


def phase_for_event(event: StreamEvent) -> Optional[LoopPhase]:
    """Map a stream event to a loop phase: eventType prefix, then explicit phase."""
    for prefix, phase in EVENT_PREFIX_TO_PHASE:
        if event.event_type.startswith(prefix):
            return phase
    return parse_loop_phase(event.phase)


# -----------------------------------------------------------------------------
# Source selection
# -----------------------------------------------------------------------------
def effective_detection_phase(
    detection: Optional[DetectionSnapshot],
    stats: Optional[LiveStatsSnapshot],
) -> DetectionPhase:
    """Detection snapshot wins; stats is the fallback when detection is absent."""
    if detection is not None:
        return detection.phase
    if stats is not None:
        return stats.detection_phase
    return DetectionPhase.IDLE


def effective_detection_status(
    detection: Optional[DetectionSnapshot],
    stats: Optional[LiveStatsSnapshot],
) -> DetectionStatus:
    """
    Strict status. Never defaults to NO_FRICTION.

    Without a detection snapshot, a completed stats cycle reads as
    INSUFFICIENT_DATA, anything else as DETECTING.
    """
    if detection is not None:
        return detection.status
    if stats is not None and stats.detection_complete:
        return DetectionStatus.INSUFFICIENT_DATA
    return DetectionStatus.DETECTING


def backend_execution_phase(
    detection: Optional[DetectionSnapshot],
    stats: Optional[LiveStatsSnapshot],
) -> BackendExecutionPhase:
    if detection is not None and detection.execution_phase is not None:
        return detection.execution_phase
    if stats is not None:
        return stats.execution_phase
    return BackendExecutionPhase.IDLE


def backend_execution_status(
    detection: Optional[DetectionSnapshot],
    stats: Optional[LiveStatsSnapshot],
) -> ExecutionStatus:
    if detection is not None and detection.execution_status is not None:
        return detection.execution_status
    if stats is not None:
        return stats.execution_status
    return ExecutionStatus.IDLE


def committed_action_id(
    detection: Optional[DetectionSnapshot],
    stats: Optional[LiveStatsSnapshot],
) -> Optional[str]:
    if detection is not None and detection.committed_action_id:
        return detection.committed_action_id
    if stats is not None and stats.committed_action_id:
        return stats.committed_action_id
    return None


# -----------------------------------------------------------------------------
# Sub-algorithms
# -----------------------------------------------------------------------------
def is_detection_complete(
    detection: Optional[DetectionSnapshot],
    stats: Optional[LiveStatsSnapshot],
    local: LocalContext,
) -> bool:
    """
    Logical OR across independently updating sources.

    Any single disjunct completes the cycle.
    """
    if effective_detection_status(detection, stats) != DetectionStatus.DETECTING:
        return True
    if detection is not None and detection.complete:
        return True
    if stats is not None and stats.detection_complete:
        return True
    if effective_detection_phase(detection, stats) == DetectionPhase.DECISION_READY:
        return True
    return local.detection_forced_complete


def is_actively_detecting(
    detection: Optional[DetectionSnapshot],
    stats: Optional[LiveStatsSnapshot],
    local: LocalContext,
) -> bool:
    if local.is_detecting:
        return True
    return (
        effective_detection_phase(detection, stats) != DetectionPhase.IDLE
        and not is_detection_complete(detection, stats, local)
    )


def derive_execution_status(
    detection: Optional[DetectionSnapshot],
    stats: Optional[LiveStatsSnapshot],
    local: LocalContext,
) -> ExecutionStatus:
    """Backend execution state takes priority over the local fallback."""
    action_id = committed_action_id(detection, stats)
    if action_id is not None and action_id in local.completed_action_ids:
        return ExecutionStatus.COMPLETED
    if local.lifecycle == LifecycleState.COMPLETE:
        return ExecutionStatus.COMPLETED
    if backend_execution_phase(detection, stats).is_active:
        return ExecutionStatus.RUNNING
    if local.lifecycle.is_active:
        return ExecutionStatus.RUNNING
    return backend_execution_status(detection, stats)


def has_decision_ready(
    detection: Optional[DetectionSnapshot],
    stats: Optional[LiveStatsSnapshot],
    local: LocalContext,
) -> bool:
    """A completed cycle that left something for the merchant to decide on."""
    if not is_detection_complete(detection, stats, local):
        return False
    action_id = committed_action_id(detection, stats)
    if action_id is not None and action_id in local.completed_action_ids:
        # The cycle's decision was already carried out
        return False
    if effective_detection_status(detection, stats) in DECISION_STATUSES:
        return True
    if effective_detection_phase(detection, stats) == DetectionPhase.DECISION_READY:
        return True
    return action_id is not None


# -----------------------------------------------------------------------------
# Rule Table
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ResolutionInputs:
    """All four snapshot inputs, bundled so rules share one signature."""
    detection: Optional[DetectionSnapshot]
    stats: Optional[LiveStatsSnapshot]
    stream: StreamState
    local: LocalContext


RuleFn = Callable[[ResolutionInputs], Optional[LoopPhase]]


def _rule_live_stream(inputs: ResolutionInputs) -> Optional[LoopPhase]:
    stream = inputs.stream
    if not stream.is_connected or stream.last_event is None:
        return None
    # The LAST received event is authoritative, even if it describes an
    # earlier phase than its predecessors.
    return phase_for_event(stream.last_event)


def _rule_validated_result(inputs: ResolutionInputs) -> Optional[LoopPhase]:
    # "Prior" result: one the local lifecycle is no longer animating
    if inputs.local.lifecycle.is_active:
        return None
    if has_validated_result(inputs.local.execution_result):
        return LoopPhase.LEARN
    return None


def _rule_backend_execution_active(inputs: ResolutionInputs) -> Optional[LoopPhase]:
    phase = backend_execution_phase(inputs.detection, inputs.stats)
    return BACKEND_PHASE_TO_LOOP.get(phase)


def _rule_backend_execution_completed(inputs: ResolutionInputs) -> Optional[LoopPhase]:
    if backend_execution_phase(inputs.detection, inputs.stats) != BackendExecutionPhase.COMPLETED:
        return None
    if has_validated_result(inputs.local.execution_result):
        return LoopPhase.LEARN
    return LoopPhase.PROVE


def _rule_local_lifecycle_active(inputs: ResolutionInputs) -> Optional[LoopPhase]:
    return LIFECYCLE_TO_LOOP.get(inputs.local.lifecycle)


def _rule_local_lifecycle_completed(inputs: ResolutionInputs) -> Optional[LoopPhase]:
    if inputs.local.lifecycle != LifecycleState.COMPLETE:
        return None
    if has_validated_result(inputs.local.execution_result):
        return LoopPhase.LEARN
    return LoopPhase.PROVE


def _rule_execution_running(inputs: ResolutionInputs) -> Optional[LoopPhase]:
    status = derive_execution_status(inputs.detection, inputs.stats, inputs.local)
    return LoopPhase.EXECUTE if status == ExecutionStatus.RUNNING else None


def _rule_awaiting_approval(inputs: ResolutionInputs) -> Optional[LoopPhase]:
    status = derive_execution_status(inputs.detection, inputs.stats, inputs.local)
    return LoopPhase.DECIDE if status == ExecutionStatus.AWAITING_APPROVAL else None


def _rule_detection_running(inputs: ResolutionInputs) -> Optional[LoopPhase]:
    status = derive_execution_status(inputs.detection, inputs.stats, inputs.local)
    if status == ExecutionStatus.PENDING:
        return LoopPhase.DETECT
    if is_actively_detecting(inputs.detection, inputs.stats, inputs.local):
        return LoopPhase.DETECT
    return None


def _rule_decision_ready(inputs: ResolutionInputs) -> Optional[LoopPhase]:
    if has_decision_ready(inputs.detection, inputs.stats, inputs.local):
        return LoopPhase.DECIDE
    return None


def _rule_activity_history(inputs: ResolutionInputs) -> Optional[LoopPhase]:
    history = inputs.local.activity_history
    return history[-1].phase if history else None


def _rule_default(inputs: ResolutionInputs) -> Optional[LoopPhase]:
    return LoopPhase.DETECT


RULE_LIVE_STREAM = "live_stream"

# A completed run without validated content lands on PROVE from these rules;
# the reconciler lets that pass over a higher mark left by the LEARN dwell.
COMPLETION_RULES = frozenset({"backend_execution_completed", "local_lifecycle_completed"})

# Ordered precedence table. DO NOT reorder without updating tests.
RESOLUTION_RULES: Tuple[Tuple[str, RuleFn], ...] = (
    (RULE_LIVE_STREAM, _rule_live_stream),
    ("validated_result", _rule_validated_result),
    ("backend_execution_active", _rule_backend_execution_active),
    ("backend_execution_completed", _rule_backend_execution_completed),
    ("local_lifecycle_active", _rule_local_lifecycle_active),
    ("local_lifecycle_completed", _rule_local_lifecycle_completed),
    ("execution_running", _rule_execution_running),
    ("awaiting_approval", _rule_awaiting_approval),
    ("detection_running", _rule_detection_running),
    ("decision_ready", _rule_decision_ready),
    ("activity_history", _rule_activity_history),
    ("default", _rule_default),
)

RULE_NAMES: Tuple[str, ...] = tuple(name for name, _ in RESOLUTION_RULES)


def resolve(
    detection: Optional[DetectionSnapshot],
    stats: Optional[LiveStatsSnapshot],
    stream: Optional[StreamState],
    local: Optional[LocalContext],
) -> ResolvedPhase:
    """
    Resolve the current loop phase.

    Args:
        detection: latest detection-status snapshot (None when polling is off)
        stats: latest live-stats snapshot
        stream: live stream state (events, connection flags)
        local: client-local context (lifecycle, result, history)

    Returns:
        ResolvedPhase with the matched rule name
    """
    inputs = ResolutionInputs(
        detection=detection,
        stats=stats,
        stream=stream or StreamState(),
        local=local or LocalContext(),
    )
    is_complete = is_detection_complete(inputs.detection, inputs.stats, inputs.local)
    for name, rule in RESOLUTION_RULES:
        phase = rule(inputs)
        if phase is not None:
            return ResolvedPhase(phase=phase, is_complete=is_complete, rule=name)
    # Unreachable: the default rule always matches
    return ResolvedPhase(phase=LoopPhase.DETECT, is_complete=is_complete, rule="default")


def explain(
    detection: Optional[DetectionSnapshot],
    stats: Optional[LiveStatsSnapshot],
    stream: Optional[StreamState],
    local: Optional[LocalContext],
) -> List[Tuple[str, Optional[str]]]:
    """Evaluate every rule (not just the first match). For diagnostics."""
    inputs = ResolutionInputs(detection, stats, stream or StreamState(), local or LocalContext())
    results = []
    for name, rule in RESOLUTION_RULES:
        phase = rule(inputs)
        results.append((name, phase.value if phase else None))
    return results


# -----------------------------------------------------------------------------
# Phase Reconciler (monotonicity + completion latch)
# -----------------------------------------------------------------------------
class PhaseReconciler:
    """
    Stateful wrapper applying per-cycle monotonicity to resolve() output.

    - Reported phase order never drops below the cycle's high-water mark
    - Live stream results always pass and move the mark to their phase
    - A completed run without validated content moves the mark back to PROVE
    - Completion is latched: once complete, the cycle stays complete
    - begin_cycle() resets both (explicit new detection cycle)
    """

    def __init__(self):
        self.cycle = 0
        self._high_water: Optional[LoopPhase] = None
        self._complete_latched = False
        self._last: Optional[ResolvedPhase] = None

    @property
    def last(self) -> Optional[ResolvedPhase]:
        return self._last

    @property
    def high_water(self) -> Optional[LoopPhase]:
        return self._high_water

    def begin_cycle(self) -> int:
        self.cycle += 1
        self._high_water = None
        self._complete_latched = False
        logger.info(f"Begin detection cycle {self.cycle}")
        return self.cycle

    def restart_phase_mark(self) -> None:
        """
        Clear the high-water mark but keep the completion latch.

        Used when a newly approved action starts its own execute/prove/learn
        run inside the same detection cycle.
        """
        self._high_water = None

    def apply(self, resolved: ResolvedPhase) -> ResolvedPhase:
        is_complete = resolved.is_complete or self._complete_latched
        if is_complete and not self._complete_latched:
            self._complete_latched = True
            logger.info(f"Cycle {self.cycle} detection complete (rule={resolved.rule})")

        phase = resolved.phase
        rule = resolved.rule
        if rule == RULE_LIVE_STREAM or self._high_water is None:
            self._high_water = phase
        elif rule in COMPLETION_RULES and phase == LoopPhase.PROVE:
            if self._high_water != phase:
                logger.info(f"Unvalidated result: {self._high_water.value} -> prove (rule={rule})")
            self._high_water = phase
        elif phase.order() < self._high_water.order():
            logger.debug(
                f"Holding {self._high_water.value} over regressing {phase.value} (rule={rule})"
            )
            phase = self._high_water
            rule = f"{rule}:held"
        else:
            self._high_water = phase

        result = ResolvedPhase(phase=phase, is_complete=is_complete, rule=rule)
        if self._last is None or self._last.phase != result.phase:
            logger.info(f"Loop phase -> {result.phase.value} (rule={result.rule})")
        self._last = result
        return result

    def reconcile(
        self,
        detection: Optional[DetectionSnapshot],
        stats: Optional[LiveStatsSnapshot],
        stream: Optional[StreamState],
        local: Optional[LocalContext],
    ) -> ResolvedPhase:
        return self.apply(resolve(detection, stats, stream, local))
