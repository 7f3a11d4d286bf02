"""
Signal Source Adapters

Normalize the heterogeneous input channels into typed snapshots:
- PollingAdapter: one per polled endpoint, keeps the LAST GOOD snapshot
- StreamChannel: long-lived SSE consumer, append-only event list
- Cadence functions: polling interval per source from current state

FAILURE POLICY:
- A failed refresh leaves the previous snapshot in place (stale-but-available)
- No retries here; the next scheduled poll is the retry
- Updates within one source apply in arrival order
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar

from .client import ZyraApiClient, ZyraApiError
from .config import SyncConfig, STREAM_RECONNECT_DELAY_MS
from .models import StreamEvent, StreamState, StoreReadiness

logger = logging.getLogger("signal_adapters")

T = TypeVar("T")


# -----------------------------------------------------------------------------
# Polling Cadence
# -----------------------------------------------------------------------------
def detection_poll_interval(
    config: SyncConfig, readiness: StoreReadiness, actively_detecting: bool
) -> Optional[int]:
    """1s while a detection cycle runs, 5s otherwise, None unless the store is ready."""
    if readiness != StoreReadiness.READY:
        return None
    return config.detection_poll_active_ms if actively_detecting else config.detection_poll_idle_ms


def stats_poll_interval(config: SyncConfig, readiness: StoreReadiness) -> Optional[int]:
    if readiness != StoreReadiness.READY:
        return None
    return config.stats_poll_ms


def activity_poll_interval(
    config: SyncConfig, readiness: StoreReadiness, actively_detecting: bool
) -> Optional[int]:
    if readiness != StoreReadiness.READY:
        return None
    return config.activity_poll_active_ms if actively_detecting else config.activity_poll_idle_ms


def execution_poll_interval(config: SyncConfig, execution_active: bool) -> Optional[int]:
    return config.execution_poll_ms if execution_active else None


# -----------------------------------------------------------------------------
# Polling Adapter
# -----------------------------------------------------------------------------
class PollingAdapter(Generic[T]):
    """
    Wraps one fetch coroutine and holds its last good value.

    refresh() returns True when the value was replaced. Overlapping
    refreshes are skipped so results apply in arrival order.
    """

    def __init__(self, name: str, fetch: Callable[[], Awaitable[T]]):
        self.name = name
        self._fetch = fetch
        self.value: Optional[T] = None
        self.last_error: Optional[str] = None
        self.failure_count = 0
        self.success_count = 0
        self._in_flight = False

    @property
    def is_stale(self) -> bool:
        return self.last_error is not None

    async def refresh(self) -> bool:
        if self._in_flight:
            logger.debug(f"{self.name}: refresh already in flight, skipping")
            return False
        self._in_flight = True
        try:
            value = await self._fetch()
        except ZyraApiError as e:
            self.failure_count += 1
            self.last_error = str(e)
            logger.warning(f"{self.name}: refresh failed, keeping last snapshot ({e})")
            return False
        finally:
            self._in_flight = False
        self.value = value
        self.last_error = None
        self.success_count += 1
        return True

    def clear(self) -> None:
        self.value = None
        self.last_error = None


# -----------------------------------------------------------------------------
# SSE parsing
# -----------------------------------------------------------------------------
class SSEParser:
    """
    Incremental server-sent-events parser.

    Feed lines; a blank line dispatches the accumulated `data:` payload.
    Comment lines (':' prefix, used for keep-alives) are ignored.
    """

    def __init__(self):
        self._data: List[str] = []
        self.event_name: Optional[str] = None

    def feed(self, line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if line == "":
            if not self._data:
                self.event_name = None
                return None
            payload = "\n".join(self._data)
            self._data = []
            return payload
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self.event_name = value
        return None


def decode_stream_event(payload: str) -> Optional[StreamEvent]:
    """Decode one SSE data payload. Malformed payloads are dropped and logged."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        logger.warning(f"Dropping malformed stream payload: {e}")
        return None
    if not isinstance(data, dict) or "id" not in data:
        # Connection handshakes ({"type": "connected"}) carry no event id
        return None
    try:
        return StreamEvent.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Dropping invalid stream event: {e}")
        return None


# -----------------------------------------------------------------------------
# Stream Channel
# -----------------------------------------------------------------------------
class StreamChannel:
    """
    Long-lived SSE consumer.

    Exposes `events` (append-only, never truncated), `is_connected` and
    `is_reconnecting`. While open, a dropped connection is retried after a
    fixed delay. close() cancels the reader task. state() hands the resolver
    only the newest event and a count.
    """

    def __init__(
        self,
        client: ZyraApiClient,
        on_event: Optional[Callable[[StreamEvent], None]] = None,
        on_status: Optional[Callable[[], None]] = None,
        reconnect_delay_ms: int = STREAM_RECONNECT_DELAY_MS,
    ):
        self.client = client
        self.on_event = on_event
        self.on_status = on_status
        self.reconnect_delay_ms = reconnect_delay_ms
        self.events: List[StreamEvent] = []
        self.is_connected = False
        self.is_reconnecting = False
        self._seen_ids = set()
        self._task: Optional[asyncio.Task] = None
        self._open = False

    def state(self) -> StreamState:
        return StreamState.of(self.events, self.is_connected, self.is_reconnecting)

    def start(self) -> None:
        if self._open:
            return
        self._open = True
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Activity stream started")

    async def close(self) -> None:
        self._open = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.set_status(connected=False, reconnecting=False)
        logger.info("Activity stream closed")

    def accept(self, event: StreamEvent) -> bool:
        """Append an event in arrival order. Duplicate ids are ignored."""
        if event.id in self._seen_ids:
            return False
        self._seen_ids.add(event.id)
        self.events.append(event)
        if self.on_event:
            self.on_event(event)
        return True

    def set_status(self, connected: bool, reconnecting: bool) -> None:
        changed = (connected, reconnecting) != (self.is_connected, self.is_reconnecting)
        self.is_connected = connected
        self.is_reconnecting = reconnecting
        if changed and self.on_status:
            self.on_status()

    async def _consume_once(self) -> None:
        parser = SSEParser()
        async for line in self.client.stream_lines():
            if not self.is_connected:
                self.set_status(connected=True, reconnecting=False)
                logger.info("Activity stream connected")
            payload = parser.feed(line)
            if payload is None:
                continue
            event = decode_stream_event(payload)
            if event is not None:
                self.accept(event)

    async def _run(self) -> None:
        while self._open:
            try:
                await self._consume_once()
                logger.info("Activity stream ended by server")
            except asyncio.CancelledError:
                raise
            except ZyraApiError as e:
                logger.warning(f"Activity stream error: {e}")
            if not self._open:
                break
            self.set_status(connected=False, reconnecting=True)
            await asyncio.sleep(self.reconnect_delay_ms / 1000.0)
