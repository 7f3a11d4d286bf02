"""
Progress Narrator

Maps (phase, stage index, variant index) to display copy.

PRESENTATION ONLY: nothing here is read by the resolver. The rotating
description variants exist purely for perceived liveliness.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .config import STAGE_AUTO_ADVANCE_MS, NARRATION_ROTATE_MS
from .models import LoopPhase, DetectionPhase
from .scheduler import TimerScheduler, STAGE_ADVANCE, NARRATION_ROTATE

logger = logging.getLogger("progress_narrator")


@dataclass(frozen=True)
class PhaseCopy:
    label: str
    primary_text: str
    secondary_text: str
    status_message: str


@dataclass(frozen=True)
class ProgressStage:
    id: int
    title: str
    descriptions: Tuple[str, ...]
    base_time_ms: int


# Trust-first language per phase
PHASE_COPY: Dict[LoopPhase, PhaseCopy] = {
    LoopPhase.DETECT: PhaseCopy(
        label="Finding Friction",
        primary_text="ZYRA is identifying revenue friction",
        secondary_text="Analyzing where buyers hesitate before purchasing",
        status_message="Scanning your store for revenue opportunities...",
    ),
    LoopPhase.DECIDE: PhaseCopy(
        label="Deciding Next Move",
        primary_text="ZYRA is deciding the next best revenue move",
        secondary_text="Evaluating impact, confidence, and risk",
        status_message="Analyzing the best action to take...",
    ),
    LoopPhase.EXECUTE: PhaseCopy(
        label="Applying Fix",
        primary_text="Applying approved revenue optimization",
        secondary_text="Changes are being published safely",
        status_message="Publishing changes to your store...",
    ),
    LoopPhase.PROVE: PhaseCopy(
        label="Proving Results",
        primary_text="Measuring revenue impact",
        secondary_text="Comparing before and after results",
        status_message="Tracking the impact of changes...",
    ),
    LoopPhase.LEARN: PhaseCopy(
        label="Improving",
        primary_text="ZYRA is improving future decisions",
        secondary_text="Learning what converts better for your store",
        status_message="Updating strategies based on results...",
    ),
}

PROGRESS_STAGES: Tuple[ProgressStage, ...] = (
    ProgressStage(1, "Checking store performance", (
        "Reviewing your recent sales data and conversion rates",
        "Analyzing your store's revenue patterns",
        "Looking at what's working well in your store",
    ), 3000),
    ProgressStage(2, "Identifying where buyers hesitate", (
        "Finding the moments where potential customers leave without buying",
        "Spotting drop-off points in the buying journey",
        "Discovering where interest doesn't convert to sales",
    ), 5000),
    ProgressStage(3, "Estimating lost revenue", (
        "Calculating how much money these friction points cost your store",
        "Measuring the revenue impact of each issue",
        "Quantifying the opportunity for improvement",
    ), 5000),
    ProgressStage(4, "Selecting highest-impact opportunity", (
        "Prioritizing the change that will recover the most revenue",
        "Finding the quick win with the biggest payoff",
        "Choosing the improvement that matters most",
    ), 5000),
    ProgressStage(5, "Next revenue move ready", (
        "Your recommended improvement is ready for review",
        "A high-impact optimization has been prepared",
        "Your next revenue opportunity is waiting",
    ), 4000),
    ProgressStage(6, "Applying approved improvement", (
        "Publishing your optimization to the store safely",
        "Making the approved changes live",
        "Implementing the revenue improvement",
    ), 4000),
    ProgressStage(7, "Measuring revenue impact", (
        "Comparing before and after performance to prove results",
        "Tracking the improvement in real-time",
        "Monitoring the revenue change",
    ), 4000),
    ProgressStage(8, "Improving future decisions", (
        "Learning what works best for your specific store",
        "Building smarter recommendations for next time",
        "Getting better at finding revenue opportunities",
    ), 3000),
)

FINAL_STAGE = len(PROGRESS_STAGES) - 1

# Minimum stage index implied by the server's detection phase
PHASE_TO_MIN_STAGE: Dict[DetectionPhase, int] = {
    DetectionPhase.IDLE: 0,
    DetectionPhase.DETECT_STARTED: 1,
    DetectionPhase.PREPARING: 2,
    DetectionPhase.CACHE_LOADED: 3,
    DetectionPhase.FRICTION_IDENTIFIED: 5,
    DetectionPhase.DECISION_READY: 7,
}


@dataclass(frozen=True)
class Narration:
    phase: LoopPhase
    label: str
    primary_text: str
    secondary_text: str
    status_message: str
    stage_index: int
    stage_title: str
    description: str
    progress_percent: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "phase": self.phase.value,
            "label": self.label,
            "primaryText": self.primary_text,
            "secondaryText": self.secondary_text,
            "statusMessage": self.status_message,
            "stageIndex": self.stage_index,
            "stageTitle": self.stage_title,
            "description": self.description,
            "progressPercent": self.progress_percent,
        }


def narrate(phase: LoopPhase, stage_index: int = 0, variant_index: int = 0) -> Narration:
    """Pure mapping to display copy. Out-of-range stage indexes are clamped."""
    copy = PHASE_COPY[phase]
    index = max(0, min(stage_index, FINAL_STAGE))
    stage = PROGRESS_STAGES[index]
    return Narration(
        phase=phase,
        label=copy.label,
        primary_text=copy.primary_text,
        secondary_text=copy.secondary_text,
        status_message=copy.status_message,
        stage_index=index,
        stage_title=stage.title,
        description=stage.descriptions[variant_index % len(stage.descriptions)],
        progress_percent=round((index + 1) / len(PROGRESS_STAGES) * 100),
    )


class StageTracker:
    """
    Progress stage index during a detection cycle.

    - Jumps forward to the minimum stage the detection phase implies
    - Auto-advances every 2.5s while detecting, capped before the final stage
    - Jumps to the final stage on completion
    - Never moves backward within a cycle
    """

    def __init__(self, scheduler: TimerScheduler, advance_ms: int = STAGE_AUTO_ADVANCE_MS):
        self.scheduler = scheduler
        self.advance_ms = advance_ms
        self.stage = 0

    def update(self, detection_phase: DetectionPhase, detecting: bool, complete: bool) -> int:
        if complete:
            self.scheduler.cancel(STAGE_ADVANCE)
            self.stage = FINAL_STAGE
            return self.stage
        self.stage = max(self.stage, PHASE_TO_MIN_STAGE.get(detection_phase, 0))
        if detecting:
            self.scheduler.call_every(STAGE_ADVANCE, self.advance_ms, self._auto_advance)
        else:
            self.scheduler.cancel(STAGE_ADVANCE)
        return self.stage

    def _auto_advance(self) -> None:
        self.stage = min(self.stage + 1, FINAL_STAGE - 1)

    def reset(self) -> None:
        self.scheduler.cancel(STAGE_ADVANCE)
        self.stage = 0


class ProgressNarrator:
    """Rotates the description variant on a timer and renders narrations."""

    def __init__(self, scheduler: TimerScheduler, rotate_ms: int = NARRATION_ROTATE_MS):
        self.scheduler = scheduler
        self.rotate_ms = rotate_ms
        self.variant_index = 0

    def start(self) -> None:
        self.scheduler.call_every(NARRATION_ROTATE, self.rotate_ms, self._rotate)

    def stop(self) -> None:
        self.scheduler.cancel(NARRATION_ROTATE)

    def _rotate(self) -> None:
        self.variant_index = (self.variant_index + 1) % 3

    def render(self, phase: LoopPhase, stage_index: Optional[int] = None) -> Narration:
        if stage_index is None:
            stage_index = default_stage_for(phase)
        return narrate(phase, stage_index, self.variant_index)


# Stage shown for a phase when no detection stage is tracked
DEFAULT_PHASE_STAGE: Dict[LoopPhase, int] = {
    LoopPhase.DETECT: 0,
    LoopPhase.DECIDE: 4,
    LoopPhase.EXECUTE: 5,
    LoopPhase.PROVE: 6,
    LoopPhase.LEARN: 7,
}


def default_stage_for(phase: LoopPhase) -> int:
    return DEFAULT_PHASE_STAGE[phase]
