"""
Loop Sync Data Model

Snapshot shapes for every signal source plus the derived ResolvedPhase.

All snapshots are frozen dataclasses: once received they are never mutated,
a newer snapshot replaces the older one. Parsing accepts the camelCase JSON
the backend emits and maps unknown enum values to the neutral member
instead of failing (stale-but-available beats crashing the loop).
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Sequence, Tuple, FrozenSet, Type, TypeVar

logger = logging.getLogger("sync_models")

E = TypeVar("E", bound=Enum)


# -----------------------------------------------------------------------------
# Loop Phase Enum (LOCKED - EXACTLY 5 VALUES, ORDERED)
# -----------------------------------------------------------------------------
class LoopPhase(str, Enum):
    """
    The five user-visible phases of the revenue loop.

    Declaration order IS the phase order; order() is used by the
    monotonicity rule.
    """
    DETECT = "detect"
    DECIDE = "decide"
    EXECUTE = "execute"
    PROVE = "prove"
    LEARN = "learn"

    def order(self) -> int:
        return PHASE_ORDER.index(self)


PHASE_ORDER: Tuple[LoopPhase, ...] = tuple(LoopPhase)


# -----------------------------------------------------------------------------
# Backend Enums (LOCKED)
# -----------------------------------------------------------------------------
class DetectionPhase(str, Enum):
    """Server-reported detection progress."""
    IDLE = "idle"
    DETECT_STARTED = "detect_started"
    CACHE_LOADED = "cache_loaded"
    FRICTION_IDENTIFIED = "friction_identified"
    DECISION_READY = "decision_ready"
    PREPARING = "preparing"


class DetectionStatus(str, Enum):
    """
    Strict detection outcome.

    NEVER defaulted to NO_FRICTION: missing data means DETECTING.
    """
    DETECTING = "detecting"
    FRICTION_FOUND = "friction_found"
    NO_FRICTION = "no_friction"
    INSUFFICIENT_DATA = "insufficient_data"
    FOUNDATIONAL_ACTION = "foundational_action"


class ExecutionStatus(str, Enum):
    """Execution status as reported by the backend or derived locally."""
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"


class BackendExecutionPhase(str, Enum):
    """Backend execution phase (real-time sync)."""
    IDLE = "idle"
    EXECUTING = "executing"
    PROVING = "proving"
    LEARNING = "learning"
    COMPLETED = "completed"

    @property
    def is_active(self) -> bool:
        return self not in (BackendExecutionPhase.IDLE, BackendExecutionPhase.COMPLETED)


class LifecycleState(str, Enum):
    """Local optimistic post-approval lifecycle."""
    IDLE = "idle"
    EXECUTE = "execute"
    PROVE = "prove"
    LEARN = "learn"
    COMPLETE = "complete"

    @property
    def is_active(self) -> bool:
        return self not in (LifecycleState.IDLE, LifecycleState.COMPLETE)


class EventStatus(str, Enum):
    """Status carried by stream events and activity items."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    WARNING = "warning"


class StoreReadiness(str, Enum):
    """Store connection state. Polling only runs when READY."""
    READY = "ready"
    NOT_CONNECTED = "not_connected"
    SYNCING = "syncing"
    UNKNOWN = "unknown"


BACKEND_PHASE_TO_LOOP: Dict[BackendExecutionPhase, LoopPhase] = {
    BackendExecutionPhase.EXECUTING: LoopPhase.EXECUTE,
    BackendExecutionPhase.PROVING: LoopPhase.PROVE,
    BackendExecutionPhase.LEARNING: LoopPhase.LEARN,
}

LIFECYCLE_TO_LOOP: Dict[LifecycleState, LoopPhase] = {
    LifecycleState.EXECUTE: LoopPhase.EXECUTE,
    LifecycleState.PROVE: LoopPhase.PROVE,
    LifecycleState.LEARN: LoopPhase.LEARN,
}


def parse_enum(enum_cls: Type[E], value: Any, default: E) -> E:
    """Parse an enum value, falling back to `default` on missing/unknown input."""
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning(f"Unknown {enum_cls.__name__} value {value!r}, using {default.value}")
        return default


def parse_optional_enum(enum_cls: Type[E], value: Any) -> Optional[E]:
    """Like parse_enum, but a missing or unknown value stays None (field absent)."""
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning(f"Unknown {enum_cls.__name__} value {value!r}, treating as absent")
        return None


def parse_loop_phase(value: Any) -> Optional[LoopPhase]:
    """Parse a loop phase; None for anything outside the five phases (e.g. 'standby')."""
    if isinstance(value, LoopPhase):
        return value
    try:
        return LoopPhase(value)
    except ValueError:
        return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # Backend emits epoch milliseconds for numeric timestamps
        return datetime.utcfromtimestamp(value / 1000.0)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"Unparseable timestamp {value!r}")
        return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# -----------------------------------------------------------------------------
# Foundational Action
# -----------------------------------------------------------------------------
FOUNDATIONAL_PREFIX = "foundational_"


@dataclass(frozen=True)
class FoundationalAction:
    """Pre-set low-risk action for stores without enough data for detection."""
    type: str
    title: str = ""
    description: str = ""
    expected_impact: str = ""

    @property
    def action_id(self) -> str:
        return f"{FOUNDATIONAL_PREFIX}{self.type}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "expectedImpact": self.expected_impact,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["FoundationalAction"]:
        if not data or not data.get("type"):
            return None
        return cls(
            type=data["type"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            expected_impact=data.get("expectedImpact", ""),
        )


# -----------------------------------------------------------------------------
# Detection Snapshot
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DetectionSnapshot:
    """
    Server-reported detection progress (GET detection-status).

    `complete=True` is monotonic for a detection cycle; the reconciler
    latches it so a regressing snapshot cannot un-complete a cycle.
    """
    phase: DetectionPhase = DetectionPhase.IDLE
    status: DetectionStatus = DetectionStatus.DETECTING
    complete: bool = False
    committed_action_id: Optional[str] = None
    # None when the backend omitted the key; live stats fills in only then
    execution_status: Optional[ExecutionStatus] = None
    execution_phase: Optional[BackendExecutionPhase] = None
    reason: Optional[str] = None
    next_action: Optional[str] = None
    is_new_store: bool = False
    foundational_action: Optional[FoundationalAction] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "status": self.status.value,
            "complete": self.complete,
            "committedActionId": self.committed_action_id,
            "executionStatus": self.execution_status.value if self.execution_status else None,
            "executionPhase": self.execution_phase.value if self.execution_phase else None,
            "reason": self.reason,
            "nextAction": self.next_action,
            "isNewStore": self.is_new_store,
            "foundationalAction": self.foundational_action.to_dict() if self.foundational_action else None,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectionSnapshot":
        return cls(
            phase=parse_enum(DetectionPhase, data.get("phase"), DetectionPhase.IDLE),
            status=parse_enum(DetectionStatus, data.get("status"), DetectionStatus.DETECTING),
            complete=bool(data.get("complete", False)),
            committed_action_id=data.get("committedActionId"),
            execution_status=parse_optional_enum(ExecutionStatus, data.get("executionStatus")),
            execution_phase=parse_optional_enum(BackendExecutionPhase, data.get("executionPhase")),
            reason=data.get("reason"),
            next_action=data.get("nextAction"),
            is_new_store=bool(data.get("isNewStore", False)),
            foundational_action=FoundationalAction.from_dict(data.get("foundationalAction")),
            timestamp=_parse_timestamp(data.get("timestamp")),
        )


# -----------------------------------------------------------------------------
# Live Stats Snapshot
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class LiveStatsSnapshot:
    """
    Secondary source (GET live-stats) overlapping the detection snapshot.

    Lower priority than DetectionSnapshot; sole source when detection
    polling is disabled.
    """
    detection_phase: DetectionPhase = DetectionPhase.IDLE
    detection_complete: bool = False
    execution_status: ExecutionStatus = ExecutionStatus.IDLE
    execution_phase: BackendExecutionPhase = BackendExecutionPhase.IDLE
    committed_action_id: Optional[str] = None
    foundational_action: Optional[FoundationalAction] = None
    today_revenue_delta: float = 0.0
    today_optimizations: int = 0
    pending_approvals: int = 0
    success_rate: float = 0.0
    is_new_store: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detection": {
                "phase": self.detection_phase.value,
                "complete": self.detection_complete,
            },
            "executionStatus": self.execution_status.value,
            "executionPhase": self.execution_phase.value,
            "committedActionId": self.committed_action_id,
            "foundationalAction": self.foundational_action.to_dict() if self.foundational_action else None,
            "todayRevenueDelta": self.today_revenue_delta,
            "todayOptimizations": self.today_optimizations,
            "pendingApprovals": self.pending_approvals,
            "successRate": self.success_rate,
            "isNewStore": self.is_new_store,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LiveStatsSnapshot":
        detection = data.get("detection") or {}
        return cls(
            detection_phase=parse_enum(DetectionPhase, detection.get("phase"), DetectionPhase.IDLE),
            detection_complete=bool(detection.get("complete", False)),
            execution_status=parse_enum(ExecutionStatus, data.get("executionStatus"), ExecutionStatus.IDLE),
            execution_phase=parse_enum(
                BackendExecutionPhase, data.get("executionPhase"), BackendExecutionPhase.IDLE
            ),
            committed_action_id=data.get("committedActionId"),
            foundational_action=FoundationalAction.from_dict(data.get("foundationalAction")),
            today_revenue_delta=float(data.get("todayRevenueDelta") or 0.0),
            today_optimizations=int(data.get("todayOptimizations") or 0),
            pending_approvals=int(data.get("pendingApprovals") or 0),
            success_rate=float(data.get("successRate") or 0.0),
            is_new_store=bool(data.get("isNewStore", False)),
        )


# -----------------------------------------------------------------------------
# Stream Events
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class EventMetric:
    label: str
    value: Any


@dataclass(frozen=True)
class StreamEvent:
    """
    Push event from the activity stream.

    `event_type` is prefixed by the phase name (DETECT_STARTED,
    EXECUTE_PROGRESS, ...). `phase` may also be 'standby' for loop-level
    events, which maps to no loop phase.
    """
    id: str
    timestamp: Optional[datetime]
    event_type: str
    phase: str
    status: str
    message: str
    detail: Optional[str] = None
    metrics: Tuple[EventMetric, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "eventType": self.event_type,
            "phase": self.phase,
            "status": self.status,
            "message": self.message,
            "detail": self.detail,
            "metrics": [{"label": m.label, "value": m.value} for m in self.metrics],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StreamEvent":
        return cls(
            id=str(data["id"]),
            timestamp=_parse_timestamp(data.get("timestamp")),
            event_type=str(data.get("eventType", "")),
            phase=str(data.get("phase", "")),
            status=str(data.get("status", EventStatus.IN_PROGRESS.value)),
            message=str(data.get("message", "")),
            detail=data.get("detail"),
            metrics=tuple(
                EventMetric(label=str(m.get("label", "")), value=m.get("value"))
                for m in (data.get("metrics") or [])
            ),
        )


@dataclass(frozen=True)
class StreamState:
    """
    What the stream adapter exposes to the resolver.

    Only the newest event decides a phase, so the view carries that event and
    a count instead of a copy of the whole event log.
    """
    last_event: Optional[StreamEvent] = None
    event_count: int = 0
    is_connected: bool = False
    is_reconnecting: bool = False

    @classmethod
    def of(cls, events: Sequence[StreamEvent], is_connected: bool = False, is_reconnecting: bool = False) -> "StreamState":
        return cls(
            last_event=events[-1] if events else None,
            event_count=len(events),
            is_connected=is_connected,
            is_reconnecting=is_reconnecting,
        )


# -----------------------------------------------------------------------------
# Activity Items
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ActivityItem:
    """Historical activity-feed row or in-flight execution step."""
    id: str
    timestamp: Optional[datetime]
    phase: LoopPhase
    message: str
    status: EventStatus = EventStatus.COMPLETED
    details: Optional[str] = None
    product_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "phase": self.phase.value,
            "message": self.message,
            "status": self.status.value,
            "details": self.details,
            "productName": self.product_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["ActivityItem"]:
        phase = parse_loop_phase(data.get("phase"))
        if phase is None:
            return None
        return cls(
            id=str(data.get("id", "")),
            timestamp=_parse_timestamp(data.get("timestamp")),
            phase=phase,
            message=str(data.get("message", "")),
            status=parse_enum(EventStatus, data.get("status"), EventStatus.COMPLETED),
            details=data.get("details"),
            product_name=data.get("productName"),
        )


# -----------------------------------------------------------------------------
# Execution Result
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ContentChange:
    field: str
    before: str
    after: str
    reason: str = ""


@dataclass(frozen=True)
class OptimizedProduct:
    product_id: str
    product_name: str
    changes: Tuple[ContentChange, ...] = ()
    impact_explanation: str = ""


@dataclass(frozen=True)
class ExecutionResult:
    """
    Payload returned by approve-action.

    A result is VALIDATED only when at least one optimized product carries a
    change with a non-empty `after` value. Unvalidated results never claim
    success: the loop stays in PROVE.
    """
    success: bool
    action_label: str = ""
    products_optimized: Tuple[OptimizedProduct, ...] = ()
    total_changes: int = 0
    estimated_impact: str = ""
    execution_time_ms: int = 0

    def is_validated(self) -> bool:
        return any(
            change.after.strip()
            for product in self.products_optimized
            for change in product.changes
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "actionLabel": self.action_label,
            "productsOptimized": [
                {
                    "productId": p.product_id,
                    "productName": p.product_name,
                    "changes": [
                        {"field": c.field, "before": c.before, "after": c.after, "reason": c.reason}
                        for c in p.changes
                    ],
                    "impactExplanation": p.impact_explanation,
                }
                for p in self.products_optimized
            ],
            "totalChanges": self.total_changes,
            "estimatedImpact": self.estimated_impact,
            "executionTimeMs": self.execution_time_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionResult":
        products = []
        for p in data.get("productsOptimized") or []:
            changes = tuple(
                ContentChange(
                    field=str(c.get("field", "")),
                    before=str(c.get("before") or ""),
                    after=str(c.get("after") or ""),
                    reason=str(c.get("reason") or ""),
                )
                for c in (p.get("changes") or [])
            )
            products.append(OptimizedProduct(
                product_id=str(p.get("productId", "")),
                product_name=str(p.get("productName", "")),
                changes=changes,
                impact_explanation=str(p.get("impactExplanation") or ""),
            ))
        return cls(
            success=bool(data.get("success", False)),
            action_label=str(data.get("actionLabel") or ""),
            products_optimized=tuple(products),
            total_changes=int(data.get("totalChanges") or 0),
            estimated_impact=str(data.get("estimatedImpact") or ""),
            execution_time_ms=int(data.get("executionTimeMs") or 0),
        )


def has_validated_result(result: Optional[ExecutionResult]) -> bool:
    return result is not None and result.is_validated()


# -----------------------------------------------------------------------------
# Local Context (resolver input)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class LocalContext:
    """
    Client-local inputs of the resolver.

    Everything the session holds that did not come from a polled snapshot
    or the live stream.
    """
    lifecycle: LifecycleState = LifecycleState.IDLE
    is_detecting: bool = False
    detection_forced_complete: bool = False
    execution_result: Optional[ExecutionResult] = None
    completed_action_ids: FrozenSet[str] = frozenset()
    activity_history: Tuple[ActivityItem, ...] = ()


# -----------------------------------------------------------------------------
# Resolved Phase (derived, never persisted)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ResolvedPhase:
    phase: LoopPhase
    is_complete: bool
    rule: str = "default"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "isComplete": self.is_complete,
            "rule": self.rule,
        }


def parse_activity_list(items: List[Dict[str, Any]]) -> List[ActivityItem]:
    """Parse activity rows, dropping rows whose phase is not a loop phase."""
    parsed = []
    for raw in items:
        item = ActivityItem.from_dict(raw)
        if item is not None:
            parsed.append(item)
    return parsed
