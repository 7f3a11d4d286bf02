"""
Unit Tests for the Phase Resolver

Test coverage for:
- Each rule of the ordered precedence table
- Live stream override
- No false success (unvalidated results stay in PROVE)
- Each detection-completion disjunct independently
- Purity / idempotence
- PhaseReconciler monotonicity and completion latch
"""

import pytest

from zyra_sync.models import (
    LoopPhase,
    DetectionStatus,
    ExecutionStatus,
    LifecycleState,
    DetectionSnapshot,
    LiveStatsSnapshot,
    StreamEvent,
    StreamState,
    ActivityItem,
    ExecutionResult,
    LocalContext,
    ResolvedPhase,
)
from zyra_sync.resolver import (
    RULE_NAMES,
    PhaseReconciler,
    resolve,
    explain,
    phase_for_event,
    is_detection_complete,
    effective_detection_status,
    derive_execution_status,
)
from tests.conftest import VALIDATED_RESULT, EMPTY_RESULT, FRICTION_FOUND_DETECTION


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def detection(**kwargs) -> DetectionSnapshot:
    return DetectionSnapshot.from_dict(kwargs)


def stats(**kwargs) -> LiveStatsSnapshot:
    return LiveStatsSnapshot.from_dict(kwargs)


def event(event_id: str, event_type: str, phase: str = "", status: str = "in_progress") -> StreamEvent:
    return StreamEvent(
        id=event_id,
        timestamp=None,
        event_type=event_type,
        phase=phase,
        status=status,
        message=event_type,
    )


def live(*events: StreamEvent, connected: bool = True) -> StreamState:
    return StreamState.of(events, is_connected=connected)


VALIDATED = ExecutionResult.from_dict(VALIDATED_RESULT)
UNVALIDATED = ExecutionResult.from_dict(EMPTY_RESULT)
FRICTION_FOUND = DetectionSnapshot.from_dict(FRICTION_FOUND_DETECTION)


class TestRuleTable:
    """The precedence table itself."""

    def test_rule_order(self):
        assert RULE_NAMES == (
            "live_stream",
            "validated_result",
            "backend_execution_active",
            "backend_execution_completed",
            "local_lifecycle_active",
            "local_lifecycle_completed",
            "execution_running",
            "awaiting_approval",
            "detection_running",
            "decision_ready",
            "activity_history",
            "default",
        )

    def test_default_with_no_inputs(self):
        resolved = resolve(None, None, None, None)
        assert resolved == ResolvedPhase(LoopPhase.DETECT, False, "default")

    def test_explain_lists_every_rule(self):
        results = dict(explain(FRICTION_FOUND, None, None, None))
        assert list(results) == list(RULE_NAMES)
        assert results["decision_ready"] == "decide"
        assert results["default"] == "detect"
        assert results["live_stream"] is None


class TestLiveStream:
    """Rule 1: the live stream overrides every other source."""

    def test_execute_event_overrides_awaiting_approval(self):
        snapshot = detection(status="friction_found", complete=True, executionStatus="awaiting_approval")
        resolved = resolve(snapshot, None, live(event("e1", "EXECUTE_APPLY")), None)
        assert resolved.phase == LoopPhase.EXECUTE
        assert resolved.rule == "live_stream"

    def test_last_event_wins_even_if_earlier_phase(self):
        stream = live(event("e1", "EXECUTE_APPLY"), event("e2", "DETECT_STARTED"))
        assert resolve(None, None, stream, None).phase == LoopPhase.DETECT

    def test_disconnected_stream_ignored(self):
        snapshot = detection(executionStatus="awaiting_approval")
        resolved = resolve(snapshot, None, live(event("e1", "EXECUTE_APPLY"), connected=False), None)
        assert resolved.phase == LoopPhase.DECIDE
        assert resolved.rule == "awaiting_approval"

    def test_explicit_phase_when_no_prefix(self):
        assert phase_for_event(event("e1", "CUSTOM", phase="prove")) == LoopPhase.PROVE

    def test_standby_event_falls_through(self):
        stream = live(event("e1", "LOOP_COMPLETED", phase="standby", status="completed"))
        resolved = resolve(FRICTION_FOUND, None, stream, None)
        assert resolved.phase == LoopPhase.DECIDE
        assert resolved.rule == "decision_ready"


class TestExecutionResults:
    """Rules 2, 4, 6: validated results reach LEARN, unvalidated stay in PROVE."""

    def test_validated_prior_result_is_learn(self):
        resolved = resolve(None, None, None, LocalContext(execution_result=VALIDATED))
        assert resolved.phase == LoopPhase.LEARN
        assert resolved.rule == "validated_result"

    def test_validated_result_waits_for_active_lifecycle(self):
        local = LocalContext(lifecycle=LifecycleState.EXECUTE, execution_result=VALIDATED)
        resolved = resolve(None, None, None, local)
        assert resolved.phase == LoopPhase.EXECUTE
        assert resolved.rule == "local_lifecycle_active"

    def test_empty_after_value_never_learn(self):
        local = LocalContext(lifecycle=LifecycleState.COMPLETE, execution_result=UNVALIDATED)
        resolved = resolve(None, None, None, local)
        assert resolved.phase == LoopPhase.PROVE
        assert resolved.rule == "local_lifecycle_completed"

    def test_backend_completed_without_validation_is_prove(self):
        snapshot = detection(executionPhase="completed")
        local = LocalContext(execution_result=UNVALIDATED)
        resolved = resolve(snapshot, None, None, local)
        assert resolved.phase == LoopPhase.PROVE
        assert resolved.rule == "backend_execution_completed"

    def test_backend_completed_with_validation_is_learn(self):
        snapshot = detection(executionPhase="completed")
        resolved = resolve(snapshot, None, None, LocalContext(execution_result=VALIDATED))
        assert resolved.phase == LoopPhase.LEARN


class TestBackendExecution:
    """Rules 3, 7, 8: backend execution state."""

    @pytest.mark.parametrize("backend_phase,expected", [
        ("executing", LoopPhase.EXECUTE),
        ("proving", LoopPhase.PROVE),
        ("learning", LoopPhase.LEARN),
    ])
    def test_backend_phase_maps(self, backend_phase, expected):
        resolved = resolve(detection(executionPhase=backend_phase), None, None, None)
        assert resolved.phase == expected
        assert resolved.rule == "backend_execution_active"

    def test_backend_phase_beats_local_lifecycle(self):
        local = LocalContext(lifecycle=LifecycleState.EXECUTE)
        resolved = resolve(detection(executionPhase="proving"), None, None, local)
        assert resolved.phase == LoopPhase.PROVE

    def test_stats_fill_in_missing_detection_phase(self):
        assert detection().execution_phase is None
        resolved = resolve(detection(), stats(executionPhase="learning"), None, None)
        assert resolved.phase == LoopPhase.LEARN
        assert resolved.rule == "backend_execution_active"

    def test_explicit_idle_detection_phase_beats_stats(self):
        snapshot = detection(status="no_friction", complete=True, executionPhase="idle")
        resolved = resolve(snapshot, stats(executionPhase="executing"), None, None)
        assert resolved.phase != LoopPhase.EXECUTE
        assert resolved.rule not in ("backend_execution_active", "execution_running")

    def test_explicit_idle_detection_status_beats_stats(self):
        snapshot = detection(status="no_friction", complete=True, executionStatus="idle")
        resolved = resolve(snapshot, stats(executionStatus="running"), None, None)
        assert resolved.rule != "execution_running"

    def test_running_status_is_execute(self):
        resolved = resolve(detection(executionStatus="running"), None, None, None)
        assert resolved.phase == LoopPhase.EXECUTE
        assert resolved.rule == "execution_running"

    def test_awaiting_approval_is_decide(self):
        resolved = resolve(None, stats(executionStatus="awaiting_approval"), None, None)
        assert resolved.phase == LoopPhase.DECIDE
        assert resolved.rule == "awaiting_approval"

    def test_completed_action_id_overrides_stale_running(self):
        snapshot = detection(executionStatus="running", committedActionId="opp-42")
        local = LocalContext(completed_action_ids=frozenset({"opp-42"}))
        assert derive_execution_status(snapshot, None, local) == ExecutionStatus.COMPLETED


class TestLocalLifecycle:
    """Rule 5: local lifecycle when the backend has no authoritative phase."""

    @pytest.mark.parametrize("state,expected", [
        (LifecycleState.EXECUTE, LoopPhase.EXECUTE),
        (LifecycleState.PROVE, LoopPhase.PROVE),
        (LifecycleState.LEARN, LoopPhase.LEARN),
    ])
    def test_lifecycle_maps(self, state, expected):
        resolved = resolve(FRICTION_FOUND, None, None, LocalContext(lifecycle=state))
        assert resolved.phase == expected
        assert resolved.rule == "local_lifecycle_active"


class TestDetection:
    """Rules 9-12: detection, decision, history, default."""

    def test_pending_status_is_detect(self):
        resolved = resolve(detection(executionStatus="pending", status="no_friction"), None, None, None)
        assert resolved.phase == LoopPhase.DETECT
        assert resolved.rule == "detection_running"

    def test_local_detecting_flag_is_detect(self):
        resolved = resolve(None, None, None, LocalContext(is_detecting=True))
        assert resolved.rule == "detection_running"

    def test_server_detecting_is_detect(self):
        resolved = resolve(detection(phase="cache_loaded", status="detecting"), None, None, None)
        assert resolved.phase == LoopPhase.DETECT
        assert resolved.rule == "detection_running"
        assert resolved.is_complete is False

    def test_friction_found_is_decide(self):
        resolved = resolve(FRICTION_FOUND, None, None, None)
        assert resolved == ResolvedPhase(LoopPhase.DECIDE, True, "decision_ready")

    def test_foundational_action_is_decide(self):
        snapshot = detection(status="foundational_action", complete=True, foundationalAction={"type": "seo"})
        assert resolve(snapshot, None, None, None).phase == LoopPhase.DECIDE

    def test_completed_action_not_decided_again(self):
        snapshot = detection(status="no_friction", complete=True, committedActionId="opp-42")
        local = LocalContext(completed_action_ids=frozenset({"opp-42"}))
        resolved = resolve(snapshot, None, None, local)
        assert resolved.phase == LoopPhase.DETECT
        assert resolved.rule == "default"

    def test_carried_out_decision_not_offered_again(self):
        local = LocalContext(completed_action_ids=frozenset({"opp-42"}))
        resolved = resolve(FRICTION_FOUND, None, None, local)
        assert resolved.phase == LoopPhase.DETECT
        assert resolved.rule == "default"

    def test_activity_history_last_item(self):
        history = (
            ActivityItem(id="a1", timestamp=None, phase=LoopPhase.EXECUTE, message="Applied"),
            ActivityItem(id="a2", timestamp=None, phase=LoopPhase.PROVE, message="Measuring"),
        )
        snapshot = detection(status="no_friction", complete=True)
        resolved = resolve(snapshot, None, None, LocalContext(activity_history=history))
        assert resolved.phase == LoopPhase.PROVE
        assert resolved.rule == "activity_history"


class TestDetectionCompletion:
    """Each completion disjunct completes the cycle on its own."""

    def test_nothing_complete(self):
        snapshot = detection(phase="detect_started", status="detecting")
        assert not is_detection_complete(snapshot, None, LocalContext())

    def test_status_not_detecting(self):
        snapshot = detection(phase="detect_started", status="no_friction")
        assert is_detection_complete(snapshot, None, LocalContext())

    def test_detection_complete_flag(self):
        snapshot = detection(phase="detect_started", status="detecting", complete=True)
        assert is_detection_complete(snapshot, None, LocalContext())

    def test_stats_complete_flag(self):
        snapshot = detection(phase="detect_started", status="detecting")
        assert is_detection_complete(snapshot, stats(detection={"complete": True}), LocalContext())

    def test_decision_ready_phase(self):
        snapshot = detection(phase="decision_ready", status="detecting")
        assert is_detection_complete(snapshot, None, LocalContext())

    def test_forced_complete_by_watchdog(self):
        snapshot = detection(phase="detect_started", status="detecting")
        assert is_detection_complete(snapshot, None, LocalContext(detection_forced_complete=True))

    def test_stats_only_complete_is_insufficient_data_never_no_friction(self):
        status = effective_detection_status(None, stats(detection={"phase": "decision_ready", "complete": True}))
        assert status == DetectionStatus.INSUFFICIENT_DATA
        assert effective_detection_status(None, None) == DetectionStatus.DETECTING


class TestPurity:
    """resolve() is a pure function."""

    def test_identical_inputs_identical_output(self):
        args = (
            detection(phase="friction_identified", status="detecting", executionStatus="running"),
            stats(executionPhase="executing"),
            live(event("e1", "DECIDE_READY")),
            LocalContext(lifecycle=LifecycleState.PROVE, execution_result=UNVALIDATED),
        )
        assert resolve(*args) == resolve(*args)


class TestPhaseReconciler:
    """Monotonicity and completion latch within a cycle."""

    def test_completion_latched_until_new_cycle(self):
        reconciler = PhaseReconciler()
        reconciler.begin_cycle()
        assert reconciler.reconcile(FRICTION_FOUND, None, None, None).is_complete
        regressed = detection(phase="detect_started", status="detecting")
        assert reconciler.reconcile(regressed, None, None, None).is_complete
        reconciler.begin_cycle()
        assert not reconciler.reconcile(regressed, None, None, None).is_complete

    def test_phase_never_regresses(self):
        reconciler = PhaseReconciler()
        reconciler.reconcile(FRICTION_FOUND, None, None, None)
        held = reconciler.reconcile(detection(phase="detect_started", status="detecting"), None, None, None)
        assert held.phase == LoopPhase.DECIDE
        assert held.rule == "detection_running:held"

    def test_forward_progress_moves_mark(self):
        reconciler = PhaseReconciler()
        reconciler.reconcile(FRICTION_FOUND, None, None, None)
        resolved = reconciler.reconcile(FRICTION_FOUND, None, None, LocalContext(lifecycle=LifecycleState.EXECUTE))
        assert resolved.phase == LoopPhase.EXECUTE
        assert reconciler.high_water == LoopPhase.EXECUTE

    def test_live_stream_may_regress(self):
        reconciler = PhaseReconciler()
        reconciler.reconcile(None, None, live(event("e1", "LEARN_UPDATE")), None)
        resolved = reconciler.reconcile(None, None, live(event("e1", "LEARN_UPDATE"), event("e2", "DETECT_STARTED")), None)
        assert resolved.phase == LoopPhase.DETECT
        assert resolved.rule == "live_stream"
        assert reconciler.high_water == LoopPhase.DETECT

    def test_unvalidated_completion_drops_back_to_prove(self):
        reconciler = PhaseReconciler()
        learning = LocalContext(lifecycle=LifecycleState.LEARN, execution_result=UNVALIDATED)
        assert reconciler.reconcile(None, None, None, learning).phase == LoopPhase.LEARN

        done = LocalContext(lifecycle=LifecycleState.COMPLETE, execution_result=UNVALIDATED)
        resolved = reconciler.reconcile(None, None, None, done)
        assert resolved.phase == LoopPhase.PROVE
        assert resolved.rule == "local_lifecycle_completed"
        assert reconciler.high_water == LoopPhase.PROVE

        # After the lifecycle resets, the mark keeps the run in PROVE
        idle = LocalContext(execution_result=UNVALIDATED)
        resolved = reconciler.reconcile(None, None, None, idle)
        assert resolved.phase == LoopPhase.PROVE
        assert resolved.rule.endswith(":held")

    def test_backend_unvalidated_completion_drops_back_to_prove(self):
        reconciler = PhaseReconciler()
        reconciler.reconcile(detection(executionPhase="learning"), None, None, None)
        resolved = reconciler.reconcile(
            detection(executionPhase="completed"), None, None, LocalContext(execution_result=UNVALIDATED)
        )
        assert resolved.phase == LoopPhase.PROVE
        assert resolved.rule == "backend_execution_completed"

    def test_validated_completion_stays_learn(self):
        reconciler = PhaseReconciler()
        reconciler.reconcile(None, None, None, LocalContext(lifecycle=LifecycleState.LEARN, execution_result=VALIDATED))
        resolved = reconciler.reconcile(None, None, None, LocalContext(lifecycle=LifecycleState.COMPLETE, execution_result=VALIDATED))
        assert resolved.phase == LoopPhase.LEARN

    def test_restart_phase_mark_keeps_latch(self):
        reconciler = PhaseReconciler()
        reconciler.reconcile(FRICTION_FOUND, None, None, LocalContext(execution_result=VALIDATED))
        reconciler.restart_phase_mark()
        resolved = reconciler.reconcile(FRICTION_FOUND, None, None, LocalContext(lifecycle=LifecycleState.EXECUTE))
        assert resolved.phase == LoopPhase.EXECUTE
        assert resolved.is_complete

    def test_begin_cycle_counts(self):
        reconciler = PhaseReconciler()
        assert reconciler.begin_cycle() == 1
        assert reconciler.begin_cycle() == 2
        assert reconciler.high_water is None
