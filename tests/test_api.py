"""Test the Home Connect REST client."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from custom_components.home_connect_stream.api import (
    ApplianceDescriptor,
    HomeConnectApiClient,
    RateLimitInfo,
)
from custom_components.home_connect_stream.util import (
    ApplianceOfflineError,
    AuthenticationError,
    CommandError,
    CommandValidationError,
    NetworkError,
    RateLimitError,
    RemoteControlDisabledError,
)

HA_ID = "SIEMENS-HCS02DWH1-123456"
NOW = 1_700_000_000.0


def _response(status, payload=None, headers=None):
    response = MagicMock()
    response.status = status
    response.headers = headers or {}
    response.text = AsyncMock(
        return_value=json.dumps(payload) if payload is not None else ""
    )
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


@pytest.fixture
def mock_token_store():
    """Create a token store that always has a valid token."""
    store = MagicMock()
    store.get_valid_token = AsyncMock(return_value="token")
    store.force_refresh_and_retry = AsyncMock(return_value=True)
    return store


@pytest.fixture
def mock_session():
    """Create a mock aiohttp session."""
    return MagicMock()


@pytest.fixture
def client(mock_session, mock_token_store):
    """Create the API client under test."""
    return HomeConnectApiClient(mock_session, mock_token_store, "de-DE")


class TestRequests:
    """Test request construction."""

    @pytest.mark.asyncio
    async def test_get_sends_language_and_bearer(self, client, mock_session):
        """GET requests carry the token and Accept-Language."""
        mock_session.request = MagicMock(
            return_value=_response(200, {"data": {"status": []}})
        )

        await client.get_status(HA_ID)

        args, kwargs = mock_session.request.call_args
        assert args[0] == "GET"
        assert args[1].endswith(f"/api/homeappliances/{HA_ID}/status")
        assert kwargs["headers"]["Authorization"] == "Bearer token"
        assert kwargs["headers"]["Accept-Language"] == "de-DE"
        assert kwargs["data"] is None

    @pytest.mark.asyncio
    async def test_put_sends_json_body(self, client, mock_session):
        """PUT bodies are JSON in the Home Connect media type."""
        mock_session.request = MagicMock(return_value=_response(204))

        await client.set_power_state(HA_ID, True)

        kwargs = mock_session.request.call_args.kwargs
        assert kwargs["headers"]["Content-Type"] == "application/vnd.bsh.sdk.v1+json"
        assert json.loads(kwargs["data"]) == {
            "data": {
                "key": "BSH.Common.Setting.PowerState",
                "value": "BSH.Common.EnumType.PowerState.On",
            }
        }

    @pytest.mark.asyncio
    async def test_start_program_with_options(self, client, mock_session):
        """Program options are passed through."""
        mock_session.request = MagicMock(return_value=_response(204))
        options = [{"key": "BSH.Common.Option.StartInRelative", "value": 1800}]

        await client.start_program(HA_ID, "Dishcare.Dishwasher.Program.Eco50", options)

        args, kwargs = mock_session.request.call_args
        assert args[0] == "PUT"
        assert args[1].endswith("/programs/active")
        assert json.loads(kwargs["data"]) == {
            "data": {"key": "Dishcare.Dishwasher.Program.Eco50", "options": options}
        }

    @pytest.mark.asyncio
    async def test_send_command(self, client, mock_session):
        """Commands are sent with value true."""
        mock_session.request = MagicMock(return_value=_response(204))

        await client.send_command(HA_ID, "BSH.Common.Command.PauseProgram")

        args, kwargs = mock_session.request.call_args
        assert args[1].endswith("/commands/BSH.Common.Command.PauseProgram")
        assert json.loads(kwargs["data"])["data"]["value"] is True

    @pytest.mark.asyncio
    async def test_get_appliances(self, client, mock_session):
        """The appliance list is turned into descriptors."""
        mock_session.request = MagicMock(
            return_value=_response(
                200,
                {
                    "data": {
                        "homeappliances": [
                            {
                                "haId": HA_ID,
                                "name": "Dishwasher",
                                "type": "Dishwasher",
                                "brand": "Siemens",
                                "vib": "SN658X06TE",
                                "connected": True,
                            },
                            {"name": "broken"},
                        ]
                    }
                },
            )
        )

        appliances = await client.get_appliances()

        assert appliances == [
            ApplianceDescriptor(
                HA_ID, "Dishwasher", "Dishwasher", "Siemens", "SN658X06TE", True
            )
        ]

    @pytest.mark.asyncio
    async def test_selected_program(self, client, mock_session):
        """The selected program is returned, or None when nothing is selected."""
        program = {"key": "Dishcare.Dishwasher.Program.Eco50", "options": []}
        mock_session.request = MagicMock(
            side_effect=[_response(200, {"data": program}), _response(200, {})]
        )

        assert await client.get_selected_program(HA_ID) == program
        assert await client.get_selected_program(HA_ID) is None
        assert mock_session.request.call_args[0][1].endswith("/programs/selected")

    @pytest.mark.asyncio
    async def test_no_token_raises(self, client, mock_token_store):
        """Requests without a token fail with AuthenticationError."""
        mock_token_store.get_valid_token = AsyncMock(return_value=None)

        with pytest.raises(AuthenticationError):
            await client.get_status(HA_ID)

    @pytest.mark.asyncio
    async def test_network_error(self, client, mock_session):
        """Transport errors become NetworkError."""
        mock_session.request = MagicMock(
            side_effect=aiohttp.ClientConnectionError("reset")
        )

        with pytest.raises(NetworkError):
            await client.get_status(HA_ID)


class TestUnauthorizedRetry:
    """Test the refresh and retry on 401."""

    @pytest.mark.asyncio
    async def test_retry_once_after_refresh(
        self, client, mock_session, mock_token_store
    ):
        """A 401 forces a refresh and the request is retried."""
        mock_session.request = MagicMock(
            side_effect=[
                _response(401, {"error": {"key": "invalid_token"}}),
                _response(200, {"data": {"settings": [{"key": "k", "value": 1}]}}),
            ]
        )

        settings = await client.get_settings(HA_ID)

        assert settings == [{"key": "k", "value": 1}]
        mock_token_store.force_refresh_and_retry.assert_awaited_once()
        assert mock_session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_second_401_is_not_retried(self, client, mock_session):
        """A 401 after the retry raises AuthenticationError."""
        mock_session.request = MagicMock(
            side_effect=[_response(401), _response(401)]
        )

        with pytest.raises(AuthenticationError):
            await client.stop_program(HA_ID)
        assert mock_session.request.call_count == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_is_not_retried(
        self, client, mock_session, mock_token_store
    ):
        """When the refresh fails the 401 is raised at once."""
        mock_token_store.force_refresh_and_retry = AsyncMock(return_value=False)
        mock_session.request = MagicMock(return_value=_response(401))

        with pytest.raises(AuthenticationError):
            await client.get_status(HA_ID)
        assert mock_session.request.call_count == 1


class TestErrorMapping:
    """Test status to exception mapping."""

    @pytest.mark.asyncio
    async def test_no_active_program_returns_none(self, client, mock_session):
        """404 on programs/active means the appliance is idle."""
        mock_session.request = MagicMock(
            return_value=_response(
                404, {"error": {"key": "SDK.Error.NoProgramActive"}}
            )
        )

        assert await client.get_active_program(HA_ID) is None

    @pytest.mark.asyncio
    async def test_409_is_validation_error(self, client, mock_session):
        """409 means the command cannot run in the current state."""
        mock_session.request = MagicMock(
            return_value=_response(
                409,
                {"error": {"key": "SDK.Error.WrongOperationState",
                           "description": "Door open"}},
            )
        )

        with pytest.raises(CommandValidationError) as err:
            await client.start_program(HA_ID, "Program")
        assert err.value.description == "Door open"

    @pytest.mark.asyncio
    async def test_remote_control_error(self, client, mock_session):
        """Remote control phrases are recognized."""
        mock_session.request = MagicMock(
            return_value=_response(
                403,
                {"error": {"key": "BSH.Common.Error.RemoteControlNotActive",
                           "description": "Remote control not active"}},
            )
        )

        with pytest.raises(RemoteControlDisabledError):
            await client.start_program(HA_ID, "Program")

    @pytest.mark.asyncio
    async def test_503_is_offline(self, client, mock_session):
        """503 means the appliance is offline."""
        mock_session.request = MagicMock(return_value=_response(503))

        with pytest.raises(ApplianceOfflineError):
            await client.get_status(HA_ID)

    @pytest.mark.asyncio
    async def test_other_status_is_command_error(self, client, mock_session):
        """Other failures raise the base error."""
        mock_session.request = MagicMock(return_value=_response(500))

        with pytest.raises(CommandError) as err:
            await client.get_status(HA_ID)
        assert err.value.status == 500

    @pytest.mark.asyncio
    async def test_429_blocks_writes(self, client, mock_session):
        """A REST 429 suspends PUT and DELETE for a minute."""
        mock_session.request = MagicMock(return_value=_response(429))

        with patch(
            "custom_components.home_connect_stream.api.time.time", return_value=NOW
        ):
            with pytest.raises(RateLimitError):
                await client.get_status(HA_ID)
            assert client.rate_limit.rest_blocked_until == NOW + 60
            assert client.rate_limit.remaining == 0

            with pytest.raises(RateLimitError):
                await client.stop_program(HA_ID)
        assert mock_session.request.call_count == 1

    @pytest.mark.asyncio
    async def test_reads_pass_while_blocked(self, client, mock_session):
        """GET requests are not suspended by the REST block."""
        client.rate_limit.rest_blocked_until = NOW + 60
        mock_session.request = MagicMock(
            return_value=_response(200, {"data": {"status": []}})
        )

        with patch(
            "custom_components.home_connect_stream.api.time.time", return_value=NOW
        ):
            assert await client.get_status(HA_ID) == []


class TestRateLimitInfo:
    """Test rate limit header tracking."""

    def test_headers_are_tracked(self):
        """Remaining and limit are stored."""
        info = RateLimitInfo()

        info.update_from_headers(
            {"X-RateLimit-Remaining": "950", "X-RateLimit-Limit": "1000"}
        )

        assert info.remaining == 950
        assert info.limit == 1000

    def test_low_budget_warns(self, caplog):
        """Fewer than 100 remaining calls log a warning."""
        info = RateLimitInfo()

        info.update_from_headers({"X-RateLimit-Remaining": "42"})

        assert "only 42 API calls remaining" in caplog.text

    def test_garbage_headers_are_ignored(self):
        """Unparseable headers leave the values alone."""
        info = RateLimitInfo(remaining=10, limit=1000)

        info.update_from_headers({"X-RateLimit-Remaining": "lots"})

        assert info.remaining == 10
