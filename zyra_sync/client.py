"""
ZYRA Backend API Client

Thin async HTTP client over the backend endpoints the loop consumes.
The backend is a black box: this client owns no contract beyond decoding
JSON and routing approvals.

No retries here: polled sources simply try again on their next tick, and
approval failures are surfaced to the user (who must re-invoke).
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .config import SyncConfig
from .models import (
    DetectionSnapshot,
    LiveStatsSnapshot,
    ActivityItem,
    ExecutionResult,
    StoreReadiness,
    FOUNDATIONAL_PREFIX,
    parse_enum,
    parse_activity_list,
)

logger = logging.getLogger("zyra_client")


class ZyraApiError(Exception):
    """Transport or HTTP failure talking to the backend."""

    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class ApprovalResponse:
    """Decoded approve-action response."""

    def __init__(self, data: Dict[str, Any]):
        self.raw = data
        self.success = bool(data.get("success", False))
        self.message = data.get("message") or ""
        result = data.get("result")
        self.result: Optional[ExecutionResult] = ExecutionResult.from_dict(result) if result else None


def is_foundational(action_id: str) -> bool:
    return action_id.startswith(FOUNDATIONAL_PREFIX)


class ZyraApiClient:
    """Async client for the ZYRA backend."""

    def __init__(
        self,
        config: SyncConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.config = config
        self.paths = config.endpoints
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=config.request_timeout_seconds,
            transport=transport,
            headers=headers,
        )

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Make one HTTP request and decode the JSON body.

        Raises:
            ZyraApiError on timeout, connection failure, HTTP error status,
            or a body that is not JSON.
        """
        try:
            if method.upper() == "GET":
                response = await self._client.get(endpoint, params=params)
            elif method.upper() == "POST":
                response = await self._client.post(endpoint, json=data or {})
            else:
                raise ValueError(f"Unsupported method: {method}")
            response.raise_for_status()
            return response.json()

        except httpx.TimeoutException as e:
            logger.warning(f"Timeout on {method} {endpoint}: {e}")
            raise ZyraApiError(f"Timeout: {e}", endpoint=endpoint) from e

        except httpx.ConnectError as e:
            logger.warning(f"Connection error on {method} {endpoint}: {e}")
            raise ZyraApiError(f"Connection refused: {e}", endpoint=endpoint) from e

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"HTTP error from backend: {status} on {method} {endpoint}")
            raise ZyraApiError(f"HTTP {status}", status_code=status, endpoint=endpoint) from e

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON from {endpoint}: {e}")
            raise ZyraApiError(f"Invalid JSON: {e}", endpoint=endpoint) from e

        except httpx.HTTPError as e:
            logger.error(f"Transport error on {method} {endpoint}: {e}")
            raise ZyraApiError(str(e), endpoint=endpoint) from e

    # -------------------------------------------------------------------------
    # Polled sources
    # -------------------------------------------------------------------------

    async def get_store_readiness(self) -> StoreReadiness:
        data = await self._request("GET", self.paths.store_readiness)
        return parse_enum(StoreReadiness, (data or {}).get("state"), StoreReadiness.UNKNOWN)

    async def get_detection_status(self) -> DetectionSnapshot:
        data = await self._request("GET", self.paths.detection_status)
        return DetectionSnapshot.from_dict(data or {})

    async def get_live_stats(self) -> LiveStatsSnapshot:
        data = await self._request("GET", self.paths.live_stats)
        return LiveStatsSnapshot.from_dict(data or {})

    async def get_activity_feed(self) -> List[ActivityItem]:
        """Activity feed in chronological order (the backend sends newest first)."""
        data = await self._request("GET", self.paths.activity_feed)
        items = parse_activity_list((data or {}).get("activities") or [])
        items.reverse()
        return items

    async def get_execution_activities(self) -> List[ActivityItem]:
        data = await self._request("GET", self.paths.execution_activities)
        return parse_activity_list((data or {}).get("activities") or [])

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def trigger_detection(self) -> Dict[str, Any]:
        """Fire-and-forget trigger for a new detection cycle."""
        data = await self._request("POST", self.paths.detect)
        logger.info(f"Detection triggered: {(data or {}).get('status', 'unknown')}")
        return data or {}

    async def approve_action(self, action_id: str) -> ApprovalResponse:
        """
        Approve an action.

        `foundational_*` ids route to the foundational executor with the
        prefix stripped; anything else approves a revenue opportunity.
        """
        if is_foundational(action_id):
            data = await self._request(
                "POST",
                self.paths.execute_foundational,
                data={"type": action_id[len(FOUNDATIONAL_PREFIX):]},
            )
        else:
            data = await self._request(
                "POST",
                self.paths.approve_opportunity.format(action_id=action_id),
            )
        return ApprovalResponse(data or {})

    # -------------------------------------------------------------------------
    # Stream
    # -------------------------------------------------------------------------

    async def stream_lines(self) -> AsyncIterator[str]:
        """Yield raw lines from the SSE activity stream until it closes."""
        try:
            async with self._client.stream(
                "GET",
                self.paths.activity_stream,
                headers={"Accept": "text/event-stream"},
                timeout=httpx.Timeout(self.config.request_timeout_seconds, read=None),
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    yield line
        except httpx.HTTPStatusError as e:
            raise ZyraApiError(
                f"HTTP {e.response.status_code}",
                status_code=e.response.status_code,
                endpoint=self.paths.activity_stream,
            ) from e
        except httpx.HTTPError as e:
            raise ZyraApiError(str(e), endpoint=self.paths.activity_stream) from e
