"""
ZYRA Loop Sync Module

Client-side reconciliation of the ZYRA revenue loop:
DETECT -> DECIDE -> EXECUTE -> PROVE -> LEARN

The backend decision engine (friction detection, action selection, Shopify
publishing, rollback) is consumed as a set of opaque JSON endpoints. This
package merges the signals it exposes into ONE deterministic phase.

Signal Sources:
- Detection status polling (1s while detecting, 5s otherwise)
- Live stats polling (5s, fallback when detection polling is off)
- Activity feed polling (3s while detecting, 15s otherwise)
- Execution activity polling (800ms while an execution is active)
- Server-sent event stream of lifecycle events (authoritative when connected)

Phase Resolver:
  * Pure function: same inputs = same ResolvedPhase
  * Explicit ordered rule table, first match wins
  * Live stream events override every polled or derived source
  * Monotonic within a cycle (except live stream), completion latched

Execution Lifecycle Controller:
  * Local optimistic lifecycle: idle -> execute -> prove -> learn -> complete
  * Fixed dwell timers (3s each) when the backend has no authoritative phase
  * Completion policy: HOLD or AUTO_RESET (2s, then refetch)
  * Fail-safe watchdogs: running > 30s, awaiting_approval > 120s,
    detection > 10s

Progress Narrator:
  * Presentation only, never feeds back into the resolver
  * Rotating copy variants every 3s

CRITICAL CONSTRAINTS:
- Nothing is fatal: every failure degrades to the last good state
- Invalid execution results NEVER advance to LEARN (stay in PROVE)
- Every timer, poll and stream reader is torn down on dispose
"""

__version__ = "0.4.0"

SERVICE_NAME = "ZYRA Loop Sync"
