"""
Pytest configuration for ZYRA Loop Sync tests.

This module provides:
1. Async test support without pytest-asyncio
2. A fake backend on httpx.MockTransport
3. Session fixtures on the virtual clock
"""

import asyncio
import functools
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from zyra_sync.client import ZyraApiClient
from zyra_sync.config import SyncConfig
from zyra_sync.scheduler import VirtualScheduler
from zyra_sync.session import LoopSession


# -----------------------------------------------------------------------------
# Async Test Support
# -----------------------------------------------------------------------------
def async_test(func):
    """
    Decorator to run async tests without pytest-asyncio.

    Usage:
        @async_test
        async def test_something(self):
            result = await some_async_function()
            assert result is not None
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


async def drain(session: LoopSession) -> None:
    """Wait until every fetch task the session spawned has finished."""
    for _ in range(20):
        await asyncio.sleep(0)
        pending = [t for t in session._tasks if not t.done()]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)


# -----------------------------------------------------------------------------
# Fake Backend
# -----------------------------------------------------------------------------
Handler = Callable[[httpx.Request], httpx.Response]


class FakeBackend:
    """
    Route table served through httpx.MockTransport.

    Each route is (status, body). A body may also be a callable taking the
    request, for raising transport errors or returning raw responses.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Tuple[int, Any]] = {}
        self.requests: List[httpx.Request] = []

    def set(self, method: str, path: str, body: Any = None, status: int = 200) -> None:
        self.routes[(method.upper(), path)] = (status, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"error": f"no route for {key}"})
        status, body = self.routes[key]
        if callable(body):
            return body(request)
        return httpx.Response(status, json=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def last_json(self, method: str, path: str) -> Optional[Dict[str, Any]]:
        calls = self.calls(method, path)
        return json.loads(calls[-1].content) if calls else None


# -----------------------------------------------------------------------------
# Sample Payloads
# -----------------------------------------------------------------------------
FRICTION_FOUND_DETECTION = {
    "phase": "decision_ready",
    "status": "friction_found",
    "complete": True,
    "committedActionId": "opp-42",
    "reason": "High cart abandonment on product pages",
    "nextAction": "rewrite_descriptions",
}

VALIDATED_RESULT = {
    "success": True,
    "actionLabel": "Rewrite product description",
    "productsOptimized": [{
        "productId": "p-1",
        "productName": "Linen Shirt",
        "changes": [{
            "field": "description",
            "before": "Shirt.",
            "after": "Breathable linen shirt cut for warm days.",
            "reason": "Vague copy",
        }],
        "impactExplanation": "Clearer copy reduces hesitation",
    }],
    "totalChanges": 1,
    "estimatedImpact": "+4% conversion",
    "executionTimeMs": 1800,
}

EMPTY_RESULT = {
    "success": True,
    "actionLabel": "Rewrite product description",
    "productsOptimized": [{
        "productId": "p-1",
        "productName": "Linen Shirt",
        "changes": [{"field": "description", "before": "Shirt.", "after": ""}],
    }],
    "totalChanges": 1,
}


def ready_backend(detection: Optional[Dict[str, Any]] = None) -> FakeBackend:
    """Backend for a connected store with a completed friction_found cycle."""
    backend = FakeBackend()
    backend.set("GET", "/api/store-readiness", {"state": "ready"})
    backend.set("GET", "/api/zyra/detection-status", detection or FRICTION_FOUND_DETECTION)
    backend.set("GET", "/api/zyra/live-stats", {
        "detection": {"phase": "decision_ready", "complete": True},
        "todayRevenueDelta": 120.5,
        "todayOptimizations": 3,
        "pendingApprovals": 1,
        "successRate": 0.92,
    })
    backend.set("GET", "/api/revenue-loop/activity-feed", {"activities": []})
    backend.set("GET", "/api/zyra/execution-activities", {"activities": []})
    backend.set("POST", "/api/zyra/detect", {"status": "started"})
    backend.set("POST", "/api/revenue-opportunities/opp-42/approve", {
        "success": True,
        "message": "Product descriptions updated",
        "result": VALIDATED_RESULT,
    })
    return backend


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def config() -> SyncConfig:
    """Defaults with the live stream off (tests drive stream state directly)."""
    return SyncConfig(base_url="http://zyra.test", stream_enabled=False)


@pytest.fixture
def scheduler() -> VirtualScheduler:
    return VirtualScheduler()


@pytest.fixture
def backend() -> FakeBackend:
    return ready_backend()


@pytest.fixture
def client(config, backend) -> ZyraApiClient:
    return ZyraApiClient(config, transport=backend.transport())


@pytest.fixture
def session(config, client, scheduler) -> LoopSession:
    return LoopSession(config, client=client, scheduler=scheduler)


# -----------------------------------------------------------------------------
# Session Configuration
# -----------------------------------------------------------------------------
def pytest_configure(config):
    """Configure pytest session."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async (custom implementation)"
    )
