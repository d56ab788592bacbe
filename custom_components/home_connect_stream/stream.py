"""Home Connect event stream connection manager."""

import asyncio
import codecs
import enum
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import aiohttp
from homeassistant.core import HomeAssistant

from .api import HomeConnectApiClient
from .auth import TokenStore
from .const import (
    API_BASE_URL,
    API_REQUEST_TIMEOUT,
    BACKOFF_BASE,
    BACKOFF_MAX,
    BACKOFF_RESET_AFTER,
    ENDPOINT_EVENTS,
    EVENT_CONNECTED,
    EVENT_DISCONNECTED,
    EVENT_KEEP_ALIVE,
    IDLE_RECONNECT_DELAY,
    IDLE_TIMEOUT,
    MAX_RECONNECT_ATTEMPTS,
    RATE_LIMIT_BUFFER,
    STREAM_DEVICE_ID,
)

_LOGGER: logging.Logger = logging.getLogger(__package__)

RATE_LIMIT_MARKERS = ['"key": "429"', '"key":"429"', "rate limit"]
RATE_LIMIT_SECONDS_PATTERN = re.compile(r"(\d+) seconds")


class ConnectionState(enum.Enum):
    """Lifecycle of the single event stream connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RATE_LIMITED = "rate_limited"
    BACKOFF = "backoff"


class _Outcome(enum.Enum):
    """How one connection attempt ended."""

    IDLE = "idle"
    CLOSED = "closed"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    STOPPED = "stopped"


@dataclass
class StreamStatus:
    """Snapshot of the connection state for observers."""

    state: ConnectionState
    message: str
    attempt: int = 0
    next_attempt_at: float | None = None
    rate_limited_until: float | None = None
    connected_since: float | None = None
    last_event_received: float | None = None
    rate_limit_remaining: int | None = None
    rate_limit_limit: int | None = None


@dataclass
class SSEMessage:
    """One server-sent event."""

    event: str | None = None
    data: str | None = None
    id: str | None = None


@dataclass
class ApplianceEvent:
    """A single status, event or notify item addressed to one appliance."""

    ha_id: str
    key: str
    value: Any = None
    displayvalue: str | None = None
    unit: str | None = None
    event_type: str | None = None


def backoff_delay(attempt: int) -> int:
    """Return the reconnect delay for the given consecutive failure count."""
    if attempt < 1:
        attempt = 1
    return min(BACKOFF_MAX, BACKOFF_BASE * 2 ** (attempt - 1))


def next_utc_midnight(now: float) -> float:
    """Return the epoch time of the next UTC midnight after now."""
    current = datetime.fromtimestamp(now, tz=timezone.utc)
    midnight = (current + timedelta(days=1)).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    return midnight.timestamp()


def is_rate_limit_payload(text: str) -> bool:
    """Return True if stream data signals an exhausted call budget."""
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def parse_rate_limit_until(
    text: str | None, now: float, retry_after: str | None = None
) -> float:
    """Work out when the provider rate limit ends.

    "...remaining period of 86400 seconds" yields now + 86400 plus the
    buffer. A Retry-After header is used as given. Without a hint the
    limit is assumed to reset at the next UTC midnight.
    """
    match = RATE_LIMIT_SECONDS_PATTERN.search(text or "")
    if match:
        return now + int(match.group(1)) + RATE_LIMIT_BUFFER
    if retry_after and retry_after.strip().isdigit():
        return now + int(retry_after.strip())
    return next_utc_midnight(now)


def format_timestamp(timestamp: float | None) -> str | None:
    """Format an epoch time as an ISO 8601 UTC string."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def parse_sse_message(raw: str) -> SSEMessage | None:
    """Parse the lines of one event block."""
    message = SSEMessage()
    data_lines = []
    for line in raw.split("\n"):
        if line.startswith("event:"):
            message.event = line[6:].strip()
        elif line.startswith("data:"):
            data_lines.append(line[5:].strip())
        elif line.startswith("id:"):
            message.id = line[3:].strip()
    if data_lines:
        message.data = "\n".join(data_lines)
    if message.event is None and message.data is None:
        return None
    return message


class SSEParser:
    """Buffers stream chunks and yields complete messages."""

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """Text received after the last complete message."""
        return self._buffer

    def decode(self, chunk: bytes) -> str:
        """Decode a chunk, holding back a character split across chunks."""
        return self._decoder.decode(chunk)

    def feed(self, text: str) -> list[SSEMessage]:
        """Add a chunk and return every message it completed."""
        self._buffer += text.replace("\r\n", "\n")
        messages = []
        while "\n\n" in self._buffer:
            raw, self._buffer = self._buffer.split("\n\n", 1)
            message = parse_sse_message(raw)
            if message:
                messages.append(message)
        return messages


class EventStreamManager:
    """Owns the account-wide event stream and its reconnect policy."""

    device_id = STREAM_DEVICE_ID

    def __init__(
        self,
        hass: HomeAssistant,
        session: aiohttp.ClientSession,
        token_store: TokenStore,
        api: HomeConnectApiClient,
    ) -> None:
        """Initialize the manager."""
        self.hass = hass
        self._session = session
        self.token_store = token_store
        self.api = api
        self.state = ConnectionState.DISCONNECTED
        self.message = "disconnected"
        self.attempts = 0
        self.next_attempt_at: float | None = None
        self.rate_limited_until: float | None = None
        self.connected_since: float | None = None
        self.last_event_received: float | None = None
        self._has_connected = False
        self._limit_reported = False
        self._stopped = True
        self._task: asyncio.Task | None = None
        self._status_listeners: list[Callable[[StreamStatus], None]] = []
        self.on_event: Callable[[ApplianceEvent], None] | None = None
        self.on_connection_event: Callable[[str, str], None] | None = None
        self.on_reconnect: Callable[[], Awaitable[None]] | None = None

    @property
    def status(self) -> StreamStatus:
        """Return a snapshot of the connection state."""
        return StreamStatus(
            state=self.state,
            message=self.message,
            attempt=self.attempts,
            next_attempt_at=self.next_attempt_at,
            rate_limited_until=self.rate_limited_until,
            connected_since=self.connected_since,
            last_event_received=self.last_event_received,
            rate_limit_remaining=self.api.rate_limit.remaining,
            rate_limit_limit=self.api.rate_limit.limit,
        )

    @property
    def is_running(self) -> bool:
        """Return True while the connection loop is alive."""
        return self._task is not None and not self._task.done()

    def is_rate_limited(self, now: float | None = None) -> bool:
        """Return True while the provider limit is in force."""
        if self.rate_limited_until is None:
            return False
        if now is None:
            now = time.time()
        return now < self.rate_limited_until

    def add_status_listener(
        self, listener: Callable[[StreamStatus], None]
    ) -> Callable[[], None]:
        """Register a status listener and return its remover."""
        self._status_listeners.append(listener)

        def _remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return _remove

    def _set_state(self, state: ConnectionState, message: str) -> None:
        self.state = state
        self.message = message
        status = self.status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                _LOGGER.exception("Stream status listener failed")

    def _clear_expired_rate_limit(self) -> None:
        if self.rate_limited_until is not None and not self.is_rate_limited():
            _LOGGER.info("Rate limit expired - cleared")
            self.rate_limited_until = None
            self.attempts = 0

    async def connect(self) -> bool:
        """Start the connection loop unless rate limited."""
        if self.is_rate_limited():
            until = format_timestamp(self.rate_limited_until)
            _LOGGER.warning("Cannot connect - rate limited until %s", until)
            self._set_state(ConnectionState.RATE_LIMITED, f"rate limited until {until}")
            return False
        self._clear_expired_rate_limit()

        if self.is_running:
            _LOGGER.debug("Event stream already running")
            return True

        self._stopped = False
        self._task = self.hass.async_create_background_task(
            self._run(), name=f"{STREAM_DEVICE_ID} event stream"
        )
        return True

    async def disconnect(self) -> None:
        """Stop the connection loop and close the stream."""
        _LOGGER.info("Disconnecting from Home Connect event stream")
        self._stopped = True
        task = self._task
        self._task = None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                _LOGGER.debug("Event stream task was cancelled during disconnect")
            except Exception:
                _LOGGER.debug("Event stream task finished with exception during disconnect")
        self.connected_since = None
        self.next_attempt_at = None
        self._set_state(ConnectionState.DISCONNECTED, "disconnected")

    async def reconnect(self) -> bool:
        """Restart the stream with a fresh attempt counter."""
        await self.disconnect()
        self.attempts = 0
        self._limit_reported = False
        return await self.connect()

    async def clear_rate_limit(self) -> bool:
        """Manually drop the rate limit and reconnect."""
        _LOGGER.info("Clearing rate limit state manually")
        self.rate_limited_until = None
        self.api.rate_limit.rest_blocked_until = 0
        return await self.reconnect()

    async def _run(self) -> None:
        while not self._stopped:
            try:
                outcome = await self._connect_once()
            except Exception:
                _LOGGER.exception("Unexpected error in event stream")
                outcome = _Outcome.FAILED
            if outcome is _Outcome.STOPPED or self._stopped:
                break
            delay = self._schedule_after(outcome)
            await asyncio.sleep(delay)
            self.next_attempt_at = None
            self._clear_expired_rate_limit()

    def _schedule_after(self, outcome: _Outcome, now: float | None = None) -> float:
        """Move to the waiting state for an outcome and return the delay."""
        if now is None:
            now = time.time()

        if outcome is _Outcome.RATE_LIMITED and self.rate_limited_until is not None:
            delay = max(0.0, self.rate_limited_until - now)
            self.next_attempt_at = self.rate_limited_until
            until = format_timestamp(self.rate_limited_until)
            _LOGGER.info("Scheduling automatic reconnect at %s", until)
            self._set_state(ConnectionState.RATE_LIMITED, f"rate limited until {until}")
            return delay

        if outcome is _Outcome.IDLE:
            self.next_attempt_at = now + IDLE_RECONNECT_DELAY
            self._set_state(
                ConnectionState.DISCONNECTED, "idle timeout - reconnecting"
            )
            return IDLE_RECONNECT_DELAY

        self.attempts += 1
        delay = backoff_delay(self.attempts)
        self.next_attempt_at = now + delay
        if self.attempts >= MAX_RECONNECT_ATTEMPTS:
            if not self._limit_reported:
                _LOGGER.error(
                    "Max reconnect attempts (%s) reached - retrying every %ss",
                    MAX_RECONNECT_ATTEMPTS,
                    BACKOFF_MAX,
                )
                self._limit_reported = True
            message = f"failed - retrying every {BACKOFF_MAX}s"
        else:
            _LOGGER.warning(
                "Connection failed - scheduling reconnect in %ss (attempt %s/%s)",
                delay,
                self.attempts,
                MAX_RECONNECT_ATTEMPTS,
            )
            message = f"backoff - retry in {delay}s (attempt {self.attempts})"
        self._set_state(ConnectionState.BACKOFF, message)
        return delay

    def _mark_connected(self, now: float) -> None:
        reconnected = self._has_connected
        self._has_connected = True
        self.connected_since = now
        self._set_state(ConnectionState.CONNECTED, "connected")
        _LOGGER.info("Connected to Home Connect event stream")
        if reconnected and self.on_reconnect:
            _LOGGER.info("Stream reconnected - refreshing device status")
            self.hass.async_create_task(
                self.on_reconnect(), name=f"{STREAM_DEVICE_ID} reconnect refresh"
            )

    def _mark_disconnected(self, now: float) -> None:
        if self.connected_since is None:
            return
        if now - self.connected_since > BACKOFF_RESET_AFTER:
            self.attempts = 0
            self._limit_reported = False
        self.connected_since = None

    def enter_rate_limit(
        self, text: str | None, retry_after: str | None = None
    ) -> float:
        """Record a provider rate limit and return when it ends."""
        now = time.time()
        self.rate_limited_until = parse_rate_limit_until(text, now, retry_after)
        self.attempts = 0
        self.api.rate_limit.remaining = 0
        _LOGGER.error(
            "Rate limited until %s", format_timestamp(self.rate_limited_until)
        )
        return self.rate_limited_until

    async def _connect_once(self) -> _Outcome:
        self._set_state(ConnectionState.CONNECTING, "connecting")
        token = await self.token_store.get_valid_token()
        if not token:
            _LOGGER.error("No OAuth token available - cannot connect")
            return _Outcome.FAILED

        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "text/event-stream",
            "Accept-Language": self.api.language,
        }
        parser = SSEParser()
        connected = False
        try:
            async with self._session.get(
                f"{API_BASE_URL}{ENDPOINT_EVENTS}",
                headers=headers,
                timeout=aiohttp.ClientTimeout(
                    total=None, sock_connect=API_REQUEST_TIMEOUT
                ),
            ) as response:
                self.api.rate_limit.update_from_headers(response.headers)
                if response.status == 429:
                    self.enter_rate_limit(
                        await response.text(), response.headers.get("Retry-After")
                    )
                    return _Outcome.RATE_LIMITED
                if response.status == 401:
                    _LOGGER.warning("Event stream 401 Unauthorized - refreshing token")
                    await self.token_store.force_refresh_and_retry()
                    return _Outcome.FAILED
                if response.status != 200:
                    _LOGGER.error(
                        "Event stream connect failed with status %s", response.status
                    )
                    return _Outcome.FAILED

                while not self._stopped:
                    try:
                        chunk = await asyncio.wait_for(
                            response.content.readany(), timeout=IDLE_TIMEOUT
                        )
                    except asyncio.TimeoutError:
                        _LOGGER.info(
                            "No stream data for %ss - reconnecting", IDLE_TIMEOUT
                        )
                        return _Outcome.IDLE
                    if not chunk:
                        _LOGGER.info("Event stream closed by server")
                        return _Outcome.CLOSED if connected else _Outcome.FAILED

                    now = time.time()
                    if not connected:
                        connected = True
                        self._mark_connected(now)
                    if self.handle_data(chunk, parser):
                        return _Outcome.RATE_LIMITED
                return _Outcome.STOPPED
        except aiohttp.ClientError as ex:
            _LOGGER.warning("Event stream error: %s", ex)
            return _Outcome.CLOSED if connected else _Outcome.FAILED
        finally:
            self._mark_disconnected(time.time())

    def handle_data(self, chunk: bytes, parser: SSEParser) -> bool:
        """Process raw stream data; return True if it signalled a rate limit."""
        text = parser.decode(chunk)
        _LOGGER.debug("Raw SSE data: %s", text[:200])
        self.last_event_received = time.time()

        buffered = parser.pending + text
        if is_rate_limit_payload(buffered):
            _LOGGER.error("Rate limit detected in SSE stream - stopping reconnects")
            self.enter_rate_limit(buffered)
            return True

        for message in parser.feed(text):
            self.process_message(message)
        return False

    def process_message(self, message: SSEMessage) -> None:
        """Route one complete event to the registered listeners."""
        if message.event == EVENT_KEEP_ALIVE:
            _LOGGER.debug("Keep-alive received")
            return
        if not message.data or not message.data.startswith("{"):
            if message.event in (EVENT_CONNECTED, EVENT_DISCONNECTED) and message.id:
                self._emit_connection_event(message.id, message.event)
            return

        try:
            payload = json.loads(message.data)
        except ValueError as ex:
            _LOGGER.error("Error parsing event payload: %s", ex)
            return
        if not isinstance(payload, dict):
            return

        ha_id = payload.get("haId") or message.id
        if not ha_id:
            _LOGGER.warning("Event payload missing haId - ignoring")
            return

        if message.event in (EVENT_CONNECTED, EVENT_DISCONNECTED):
            self._emit_connection_event(ha_id, message.event)
            return

        items = payload.get("items")
        if not isinstance(items, list):
            return
        for item in items:
            if not isinstance(item, dict) or not item.get("key"):
                continue
            value = item.get("value")
            event = ApplianceEvent(
                ha_id=ha_id,
                key=item["key"],
                value=value,
                displayvalue=item.get("displayvalue")
                or (str(value) if value is not None else None),
                unit=item.get("unit"),
                event_type=message.event,
            )
            _LOGGER.debug("Routing event to handle: %s = %s", event.key, value)
            if self.on_event:
                try:
                    self.on_event(event)
                except Exception:
                    _LOGGER.exception("Event listener failed for %s", ha_id)

    def _emit_connection_event(self, ha_id: str, event_type: str) -> None:
        _LOGGER.info("Appliance %s is now %s", ha_id, event_type)
        if self.on_connection_event:
            try:
                self.on_connection_event(ha_id, event_type)
            except Exception:
                _LOGGER.exception("Connection listener failed for %s", ha_id)
