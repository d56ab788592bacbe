"""Test the event stream manager."""

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from custom_components.home_connect_stream.api import RateLimitInfo
from custom_components.home_connect_stream.stream import (
    ApplianceEvent,
    ConnectionState,
    EventStreamManager,
    SSEMessage,
    SSEParser,
    _Outcome,
    backoff_delay,
    next_utc_midnight,
    parse_rate_limit_until,
)

HA_ID = "BOSCH-WAT28400-123456"
NOW = 1_700_000_000.0


def _status_message(items, event="STATUS", ha_id=HA_ID):
    return SSEMessage(
        event=event, data=json.dumps({"haId": ha_id, "items": items}), id=ha_id
    )


@pytest.fixture
def mock_hass():
    """Create a mock hass."""
    hass = MagicMock()
    hass.async_create_task = MagicMock()
    hass.async_create_background_task = MagicMock()
    return hass


@pytest.fixture
def manager(mock_hass):
    """Create the stream manager under test."""
    token_store = MagicMock()
    token_store.get_valid_token = AsyncMock(return_value="token")
    token_store.force_refresh_and_retry = AsyncMock(return_value=True)
    api = MagicMock()
    api.language = "en-GB"
    api.rate_limit = RateLimitInfo()
    return EventStreamManager(mock_hass, MagicMock(), token_store, api)


def _stream_response(status=200, chunks=None, text="", headers=None):
    response = MagicMock()
    response.status = status
    response.headers = headers or {}
    response.text = AsyncMock(return_value=text)
    response.content.readany = AsyncMock(side_effect=chunks or [b""])
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


class TestHelpers:
    """Test the pure helpers."""

    @pytest.mark.parametrize(
        ("attempt", "delay"),
        [(0, 60), (1, 60), (2, 120), (3, 240), (4, 300), (10, 300)],
    )
    def test_backoff_delay(self, attempt, delay):
        """Backoff doubles from 60 s and caps at 300 s."""
        assert backoff_delay(attempt) == delay

    def test_next_utc_midnight(self):
        """The next midnight is computed in UTC."""
        now = datetime(2024, 3, 10, 22, 15, tzinfo=timezone.utc).timestamp()

        midnight = next_utc_midnight(now)

        assert datetime.fromtimestamp(midnight, tz=timezone.utc) == datetime(
            2024, 3, 11, tzinfo=timezone.utc
        )

    def test_rate_limit_seconds_hint(self):
        """A seconds hint gets the safety buffer added."""
        text = '{"key": "429", "description": "remaining period of 3600 seconds"}'

        assert parse_rate_limit_until(text, NOW) == NOW + 3600 + 300

    def test_rate_limit_retry_after(self):
        """Retry-After is used when the body has no hint."""
        assert parse_rate_limit_until("Too many", NOW, "120") == NOW + 120

    def test_rate_limit_defaults_to_midnight(self):
        """Without any hint the limit ends at the next UTC midnight."""
        assert parse_rate_limit_until(None, NOW) == next_utc_midnight(NOW)


class TestSSEParser:
    """Test event stream framing."""

    def test_message_split_across_chunks(self):
        """A message is emitted once its blank line arrives."""
        parser = SSEParser()

        assert parser.feed("event: STATUS\ndata: {\"a\"") == []
        messages = parser.feed(": 1}\nid: X\n\n")

        assert messages == [SSEMessage(event="STATUS", data='{"a": 1}', id="X")]

    def test_multiple_messages_and_crlf(self):
        """Several messages in one chunk and CRLF line ends are handled."""
        parser = SSEParser()

        messages = parser.feed(
            "event: KEEP-ALIVE\r\n\r\nevent: CONNECTED\r\nid: A\r\n\r\n"
        )

        assert [message.event for message in messages] == ["KEEP-ALIVE", "CONNECTED"]
        assert messages[1].id == "A"

    def test_comment_only_block_is_skipped(self):
        """Blocks without event or data produce nothing."""
        assert SSEParser().feed(": comment\n\n") == []


class TestProcessMessage:
    """Test routing of complete messages."""

    def test_status_items_are_routed(self, manager):
        """Each item of a STATUS message becomes an event."""
        received = []
        manager.on_event = received.append

        manager.process_message(
            _status_message(
                [
                    {"key": "BSH.Common.Status.DoorState",
                     "value": "BSH.Common.EnumType.DoorState.Open"},
                    {"key": "BSH.Common.Option.RemainingProgramTime",
                     "value": 3600, "unit": "seconds"},
                    {"value": "no key"},
                ]
            )
        )

        assert received == [
            ApplianceEvent(
                HA_ID,
                "BSH.Common.Status.DoorState",
                "BSH.Common.EnumType.DoorState.Open",
                "BSH.Common.EnumType.DoorState.Open",
                None,
                "STATUS",
            ),
            ApplianceEvent(
                HA_ID,
                "BSH.Common.Option.RemainingProgramTime",
                3600,
                "3600",
                "seconds",
                "STATUS",
            ),
        ]

    def test_keep_alive_is_ignored(self, manager):
        """Keep-alives reach no listener."""
        manager.on_event = MagicMock()
        manager.on_connection_event = MagicMock()

        manager.process_message(SSEMessage(event="KEEP-ALIVE"))

        manager.on_event.assert_not_called()
        manager.on_connection_event.assert_not_called()

    def test_connection_event_without_payload(self, manager):
        """CONNECTED with only an id reports the appliance connection."""
        manager.on_connection_event = MagicMock()

        manager.process_message(SSEMessage(event="CONNECTED", data="", id=HA_ID))

        manager.on_connection_event.assert_called_once_with(HA_ID, "CONNECTED")

    def test_disconnected_event_with_payload(self, manager):
        """DISCONNECTED with a JSON payload reports the haId."""
        manager.on_connection_event = MagicMock()
        manager.on_event = MagicMock()

        manager.process_message(_status_message([], event="DISCONNECTED"))

        manager.on_connection_event.assert_called_once_with(HA_ID, "DISCONNECTED")
        manager.on_event.assert_not_called()

    def test_invalid_json_is_dropped(self, manager):
        """Malformed payloads are logged and dropped."""
        manager.on_event = MagicMock()

        manager.process_message(SSEMessage(event="STATUS", data="{broken"))

        manager.on_event.assert_not_called()

    def test_listener_failure_is_isolated(self, manager):
        """A failing listener does not stop the remaining items."""
        manager.on_event = MagicMock(side_effect=[RuntimeError("boom"), None])

        manager.process_message(
            _status_message([{"key": "a", "value": 1}, {"key": "b", "value": 2}])
        )

        assert manager.on_event.call_count == 2

    def test_rate_limit_payload(self, manager):
        """A 429 error in the stream enters the rate limited state."""
        parser = SSEParser()
        text = (
            'data: {"error": {"key": "429", "description": '
            '"remaining period of 600 seconds"}}\n\n'
        )

        with patch(
            "custom_components.home_connect_stream.stream.time.time", return_value=NOW
        ):
            assert manager.handle_data(text.encode(), parser)

        assert manager.rate_limited_until == NOW + 600 + 300
        assert manager.api.rate_limit.remaining == 0

    def test_rate_limit_marker_split_across_chunks(self, manager):
        """A 429 error split between two chunks is still detected."""
        parser = SSEParser()

        with patch(
            "custom_components.home_connect_stream.stream.time.time", return_value=NOW
        ):
            assert not manager.handle_data(b'data: {"error": {"key": "4', parser)
            assert manager.handle_data(
                b'29", "description": "remaining period of 600 seconds"}}\n\n',
                parser,
            )

        assert manager.rate_limited_until == NOW + 600 + 300

    def test_character_split_across_chunks(self, manager):
        """A multi-byte character split between chunks is decoded intact."""
        received = []
        manager.on_event = received.append
        parser = SSEParser()
        payload = {
            "haId": HA_ID,
            "items": [
                {"key": "BSH.Common.Root.SelectedProgram",
                 "value": "Cooking.Oven.Program.HeatingMode.PreHeating",
                 "displayvalue": "Schnell 45°"},
            ],
        }
        raw = (
            "event: STATUS\ndata: "
            + json.dumps(payload, ensure_ascii=False)
            + f"\nid: {HA_ID}\n\n"
        ).encode()
        split = raw.index("°".encode()) + 1

        assert not manager.handle_data(raw[:split], parser)
        assert not manager.handle_data(raw[split:], parser)

        assert received[0].displayvalue == "Schnell 45°"


class TestReconnectPolicy:
    """Test backoff and reconnect bookkeeping."""

    def test_failure_increments_attempts(self, manager):
        """Failures back off exponentially."""
        delays = [manager._schedule_after(_Outcome.FAILED, NOW) for _ in range(4)]

        assert delays == [60, 120, 240, 300]
        assert manager.attempts == 4
        assert manager.state is ConnectionState.BACKOFF
        assert manager.next_attempt_at == NOW + 300

    def test_idle_timeout_does_not_count(self, manager):
        """An idle timeout reconnects after 5 s without a failure."""
        delay = manager._schedule_after(_Outcome.IDLE, NOW)

        assert delay == 5
        assert manager.attempts == 0
        assert manager.state is ConnectionState.DISCONNECTED

    def test_attempt_limit_keeps_retrying(self, manager, caplog):
        """After ten attempts the stream keeps retrying every 300 s."""
        for _ in range(12):
            delay = manager._schedule_after(_Outcome.FAILED, NOW)

        assert delay == 300
        assert manager.message == "failed - retrying every 300s"
        assert caplog.text.count("Max reconnect attempts") == 1

    def test_rate_limited_waits_until_reset(self, manager):
        """A rate limit waits until its end."""
        manager.rate_limited_until = NOW + 1000

        delay = manager._schedule_after(_Outcome.RATE_LIMITED, NOW)

        assert delay == 1000
        assert manager.state is ConnectionState.RATE_LIMITED

    def test_long_connection_resets_attempts(self, manager):
        """Staying connected over ten minutes resets the counter."""
        manager.attempts = 5
        manager.connected_since = NOW

        manager._mark_disconnected(NOW + 601)

        assert manager.attempts == 0
        assert manager.connected_since is None

    def test_short_connection_keeps_attempts(self, manager):
        """A short connection keeps the counter."""
        manager.attempts = 5
        manager.connected_since = NOW

        manager._mark_disconnected(NOW + 60)

        assert manager.attempts == 5

    def test_reconnect_triggers_refresh(self, manager, mock_hass):
        """Only a reconnect schedules the status refresh."""
        manager.on_reconnect = MagicMock()

        manager._mark_connected(NOW)
        mock_hass.async_create_task.assert_not_called()

        manager._mark_disconnected(NOW + 10)
        manager._mark_connected(NOW + 20)
        mock_hass.async_create_task.assert_called_once()
        manager.on_reconnect.assert_called_once()

    def test_status_listener(self, manager):
        """Status listeners see every state change until removed."""
        listener = MagicMock()
        remove = manager.add_status_listener(listener)

        manager._set_state(ConnectionState.CONNECTING, "connecting")
        remove()
        manager._set_state(ConnectionState.CONNECTED, "connected")

        listener.assert_called_once()
        assert listener.call_args[0][0].state is ConnectionState.CONNECTING


class TestConnection:
    """Test connect and a single connection attempt."""

    @pytest.mark.asyncio
    async def test_connect_refused_while_rate_limited(self, manager, mock_hass):
        """No connection starts inside the rate limit window."""
        manager.rate_limited_until = NOW + 100

        with patch(
            "custom_components.home_connect_stream.stream.time.time", return_value=NOW
        ):
            assert not await manager.connect()

        assert manager.state is ConnectionState.RATE_LIMITED
        mock_hass.async_create_background_task.assert_not_called()

    @pytest.mark.asyncio
    async def test_connect_starts_loop(self, manager, mock_hass):
        """connect starts the background connection loop."""
        mock_hass.async_create_background_task.side_effect = (
            lambda coro, name: coro.close() or MagicMock(done=MagicMock(return_value=False))
        )

        assert await manager.connect()

        mock_hass.async_create_background_task.assert_called_once()
        assert manager.is_running

    @pytest.mark.asyncio
    async def test_clear_rate_limit(self, manager):
        """The manual override clears the limit and reconnects."""
        manager.rate_limited_until = NOW + 1000
        manager.api.rate_limit.rest_blocked_until = NOW + 60
        manager.attempts = 3
        manager.connect = AsyncMock(return_value=True)

        assert await manager.clear_rate_limit()

        assert manager.rate_limited_until is None
        assert manager.api.rate_limit.rest_blocked_until == 0
        assert manager.attempts == 0
        manager.connect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_events_are_delivered(self, manager):
        """Stream data is parsed and delivered until the server closes."""
        received = []
        manager.on_event = received.append
        manager._stopped = False
        chunk = (
            "event: NOTIFY\ndata: "
            + json.dumps(
                {"haId": HA_ID,
                 "items": [{"key": "BSH.Common.Option.ProgramProgress", "value": 40}]}
            )
            + f"\nid: {HA_ID}\n\n"
        ).encode()
        manager._session.get = MagicMock(
            return_value=_stream_response(chunks=[chunk, b""])
        )

        outcome = await manager._connect_once()

        assert outcome is _Outcome.CLOSED
        assert received[0].key == "BSH.Common.Option.ProgramProgress"
        assert received[0].value == 40
        headers = manager._session.get.call_args.kwargs["headers"]
        assert headers["Accept"] == "text/event-stream"
        assert headers["Accept-Language"] == "en-GB"

    @pytest.mark.asyncio
    async def test_429_enters_rate_limit(self, manager):
        """A 429 on connect records the limit."""
        manager._stopped = False
        manager._session.get = MagicMock(
            return_value=_stream_response(
                status=429, text="limit of 1000 calls, 86400 seconds"
            )
        )

        with patch(
            "custom_components.home_connect_stream.stream.time.time", return_value=NOW
        ):
            outcome = await manager._connect_once()

        assert outcome is _Outcome.RATE_LIMITED
        assert manager.rate_limited_until == NOW + 86400 + 300

    @pytest.mark.asyncio
    async def test_401_refreshes_token(self, manager):
        """A 401 on connect forces a refresh and counts as a failure."""
        manager._stopped = False
        manager._session.get = MagicMock(return_value=_stream_response(status=401))

        outcome = await manager._connect_once()

        assert outcome is _Outcome.FAILED
        manager.token_store.force_refresh_and_retry.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_idle_timeout(self, manager):
        """No data within the idle window ends the attempt as idle."""
        manager._stopped = False
        manager._session.get = MagicMock(
            return_value=_stream_response(chunks=[asyncio.TimeoutError()])
        )

        assert await manager._connect_once() is _Outcome.IDLE

    @pytest.mark.asyncio
    async def test_no_token_fails(self, manager):
        """Without a token no request is made."""
        manager.token_store.get_valid_token = AsyncMock(return_value=None)
        manager._session.get = MagicMock()

        assert await manager._connect_once() is _Outcome.FAILED
        manager._session.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_error_backs_off(self, manager):
        """An unexpected error ends the attempt but not the loop."""
        manager._stopped = False
        manager.token_store.get_valid_token = AsyncMock(side_effect=TypeError("boom"))

        async def stop_after_sleep(delay):
            manager._stopped = True

        with patch(
            "custom_components.home_connect_stream.stream.asyncio.sleep",
            new=AsyncMock(side_effect=stop_after_sleep),
        ) as sleep:
            await manager._run()

        sleep.assert_awaited_once_with(60)
        assert manager.attempts == 1
        assert manager.state is ConnectionState.BACKOFF

    @pytest.mark.asyncio
    async def test_client_error_before_data_fails(self, manager):
        """A transport error before any data counts as a failure."""
        manager._stopped = False
        manager._session.get = MagicMock(
            side_effect=aiohttp.ClientConnectionError("refused")
        )

        assert await manager._connect_once() is _Outcome.FAILED
