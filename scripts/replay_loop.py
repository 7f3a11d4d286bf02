#!/usr/bin/env python3
"""
Loop Replay

Replays a timed scenario against a LoopSession on a virtual clock.

No network I/O: every source update is applied directly and every timer
(lifecycle dwell, auto reset, watchdogs) fires from VirtualScheduler.advance.

Scenario format (YAML):

    name: approve-to-learn
    steps:
      - at_ms: 0
        readiness: ready
      - at_ms: 0
        detection: {status: friction_found, complete: true}
        expect: decide
      - at_ms: 1000
        approve:
          action_id: opp-42
          response: {success: true, result: {...}}
        expect: execute
      - at_ms: 4000
        expect: prove

Exit code is 1 when any `expect` is not met.
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import yaml

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from zyra_sync.client import ApprovalResponse, ZyraApiClient
from zyra_sync.config import SyncConfig, load_config
from zyra_sync.models import (
    StoreReadiness,
    DetectionSnapshot,
    LiveStatsSnapshot,
    StreamEvent,
    parse_activity_list,
)
from zyra_sync.scheduler import VirtualScheduler
from zyra_sync.session import LoopSession

logger = logging.getLogger("loop_replay")

STEP_ACTIONS = (
    "begin_cycle",
    "readiness",
    "detection",
    "stats",
    "activity",
    "stream_status",
    "stream_event",
    "approve",
)

BUILTIN_SCENARIO: Dict[str, Any] = {
    "name": "approve-to-learn",
    "steps": [
        {"at_ms": 0, "readiness": "ready"},
        {
            "at_ms": 0,
            "detection": {
                "phase": "decision_ready",
                "status": "friction_found",
                "complete": True,
                "committedActionId": "opp-42",
                "executionStatus": "awaiting_approval",
            },
            "expect": "decide",
        },
        {
            "at_ms": 1000,
            "approve": {
                "action_id": "opp-42",
                "response": {
                    "success": True,
                    "message": "Product descriptions updated",
                    "result": {
                        "success": True,
                        "actionLabel": "Rewrite product description",
                        "productsOptimized": [{
                            "productId": "p-1",
                            "productName": "Linen Shirt",
                            "changes": [{
                                "field": "description",
                                "before": "Shirt.",
                                "after": "Breathable linen shirt cut for summer.",
                            }],
                        }],
                        "totalChanges": 1,
                    },
                },
            },
            "expect": "execute",
        },
        {"at_ms": 4000, "expect": "prove"},
        {"at_ms": 7000, "expect": "learn"},
        {"at_ms": 10000, "expect": "learn"},
        {"at_ms": 12000, "expect": "learn"},
    ],
}


@dataclass
class StepResult:
    at_ms: int
    action: str
    phase: str
    rule: str
    lifecycle: str
    is_complete: bool
    expected: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def passed(self) -> bool:
        return self.expected is None or self.expected == self.phase

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at_ms": self.at_ms,
            "action": self.action,
            "phase": self.phase,
            "rule": self.rule,
            "lifecycle": self.lifecycle,
            "is_complete": self.is_complete,
            "expected": self.expected,
            "passed": self.passed,
        }


def _offline(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("replay runs offline", request=request)


class LoopReplayer:
    """Drives one LoopSession through scenario steps on a virtual clock."""

    def __init__(self, config: Optional[SyncConfig] = None):
        self.scheduler = VirtualScheduler()
        config = config or SyncConfig()
        self.client = ZyraApiClient(config, transport=httpx.MockTransport(_offline))
        self.session = LoopSession(config, client=self.client, scheduler=self.scheduler)
        self.results: List[StepResult] = []

    def apply_step(self, step: Dict[str, Any]) -> StepResult:
        at_ms = int(step.get("at_ms", self.scheduler.now_ms()))
        if at_ms < self.scheduler.now_ms():
            raise ValueError(f"Step at {at_ms}ms is earlier than the clock ({self.scheduler.now_ms()}ms)")
        self.scheduler.advance_to(at_ms)

        actions = [name for name in STEP_ACTIONS if name in step]
        if len(actions) > 1:
            raise ValueError(f"Step at {at_ms}ms has more than one action: {actions}")
        action = actions[0] if actions else "advance"
        session = self.session

        if action == "begin_cycle":
            session.begin_cycle()
            session.recompute()
        elif action == "readiness":
            session.apply_readiness(StoreReadiness(step["readiness"]))
        elif action == "detection":
            session.apply_detection(DetectionSnapshot.from_dict(step["detection"]))
        elif action == "stats":
            session.apply_stats(LiveStatsSnapshot.from_dict(step["stats"]))
        elif action == "activity":
            session.apply_activity(parse_activity_list(step["activity"]))
        elif action == "stream_status":
            status = step["stream_status"]
            session.apply_stream_status(
                connected=bool(status.get("connected", False)),
                reconnecting=bool(status.get("reconnecting", False)),
            )
        elif action == "stream_event":
            session.apply_stream_event(StreamEvent.from_dict(step["stream_event"]))
        elif action == "approve":
            approve = step["approve"]
            session.record_approval(approve["action_id"], ApprovalResponse(approve.get("response") or {}))
        else:
            session.recompute()

        resolved = session.resolved or session.recompute()
        result = StepResult(
            at_ms=at_ms,
            action=action,
            phase=resolved.phase.value,
            rule=resolved.rule,
            lifecycle=session.lifecycle.state.value,
            is_complete=resolved.is_complete,
            expected=step.get("expect"),
        )
        self.results.append(result)
        return result

    def run(self, scenario: Dict[str, Any]) -> List[StepResult]:
        try:
            for step in scenario.get("steps") or []:
                self.apply_step(step)
        finally:
            self.session.dispose()
            asyncio.run(self.client.aclose())
        return self.results

    def generate_report(self, name: str) -> str:
        report = [f"# Loop Replay: {name}", ""]
        report.append("| t (ms) | action | phase | rule | lifecycle | complete | check |")
        report.append("|---|---|---|---|---|---|---|")
        for r in self.results:
            if r.expected is None:
                check = ""
            else:
                check = "ok" if r.passed else f"FAIL (expected {r.expected})"
            report.append(
                f"| {r.at_ms} | {r.action} | {r.phase} | {r.rule} | {r.lifecycle} | {r.is_complete} | {check} |"
            )
        failed = [r for r in self.results if not r.passed]
        report.append("")
        report.append(f"**{len(self.results) - len(failed)}/{len(self.results)} steps passed**")
        notices = self.session.notices.recent()
        if notices:
            report.append("")
            report.append("## Notices")
            for n in notices:
                report.append(f"- [{n.severity.value}] {n.title}: {n.message}")
        return "\n".join(report)


def load_scenario(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return BUILTIN_SCENARIO
    with open(path) as f:
        scenario = yaml.safe_load(f) or {}
    if not isinstance(scenario, dict) or not isinstance(scenario.get("steps"), list):
        raise ValueError(f"Scenario {path} must be a mapping with a 'steps' list")
    return scenario


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Replay a ZYRA loop scenario on a virtual clock")
    parser.add_argument("scenario", nargs="?", type=Path, help="scenario YAML (default: built-in)")
    parser.add_argument("--config", type=Path, help="sync config YAML")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    scenario = load_scenario(args.scenario)
    name = scenario.get("name") or (args.scenario.stem if args.scenario else "scenario")
    replayer = LoopReplayer(load_config(args.config))
    results = replayer.run(scenario)
    print(replayer.generate_report(name))

    failed = [r for r in results if not r.passed]
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
