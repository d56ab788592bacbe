"""Home Connect REST API client."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

import aiohttp

from .auth import TokenStore
from .const import (
    API_BASE_URL,
    API_CONTENT_TYPE,
    API_REQUEST_TIMEOUT,
    DEFAULT_LANGUAGE,
    ENDPOINT_APPLIANCES,
    KEY_POWER_STATE,
    POWER_STATE_OFF,
    POWER_STATE_ON,
    RATE_LIMIT_WARNING_THRESHOLD,
    REST_RATE_LIMIT_BACKOFF,
)
from .util import (
    ApplianceOfflineError,
    AuthenticationError,
    CommandError,
    CommandValidationError,
    NetworkError,
    NoActiveProgramError,
    RateLimitError,
    RemoteControlDisabledError,
    is_remote_control_error,
    parse_error_body,
)

_LOGGER: logging.Logger = logging.getLogger(__package__)


@dataclass
class ApplianceDescriptor:
    """An appliance as listed by the account."""

    appliance_id: str
    name: str
    appliance_type: str
    brand: str | None = None
    vib: str | None = None
    connected: bool | None = None

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> "ApplianceDescriptor":
        """Build a descriptor from a homeappliances list item."""
        return cls(
            appliance_id=data["haId"],
            name=data.get("name") or data["haId"],
            appliance_type=data.get("type") or "Unknown",
            brand=data.get("brand"),
            vib=data.get("vib"),
            connected=data.get("connected"),
        )


@dataclass
class RateLimitInfo:
    """Provider rate limit bookkeeping shared by REST and stream."""

    remaining: int | None = None
    limit: int | None = None
    rest_blocked_until: float = 0

    @property
    def rest_blocked(self) -> bool:
        """Return True while PUT and DELETE calls are suspended."""
        return time.time() < self.rest_blocked_until

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """Track the X-RateLimit headers of a response."""
        remaining = headers.get("X-RateLimit-Remaining")
        limit = headers.get("X-RateLimit-Limit")
        try:
            if remaining is not None:
                self.remaining = int(remaining)
                _LOGGER.debug("Rate limit remaining: %s", self.remaining)
                if self.remaining < RATE_LIMIT_WARNING_THRESHOLD:
                    _LOGGER.warning(
                        "Rate limit warning: only %s API calls remaining",
                        self.remaining,
                    )
            if limit is not None:
                self.limit = int(limit)
        except ValueError:
            _LOGGER.debug("Could not parse rate limit headers: %s", dict(headers))


class HomeConnectApiClient:
    """REST client that refreshes the token and retries once on 401."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token_store: TokenStore,
        language: str = DEFAULT_LANGUAGE,
        rate_limit: RateLimitInfo | None = None,
    ) -> None:
        """Initialize the API client."""
        self._session = session
        self.token_store = token_store
        self.language = language or DEFAULT_LANGUAGE
        self.rate_limit = rate_limit or RateLimitInfo()

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": API_CONTENT_TYPE,
            "Accept-Language": self.language,
        }

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        retry_on_unauthorized: bool = True,
    ) -> Any:
        """Perform a request and map failure statuses to CommandError types."""
        if method in ("PUT", "DELETE") and self.rate_limit.rest_blocked:
            _LOGGER.warning("API %s blocked - rate limited", method)
            raise RateLimitError(f"API {method} blocked - rate limited", status=429)

        token = await self.token_store.get_valid_token()
        if not token:
            raise AuthenticationError(f"No OAuth token for API {method}")

        headers = self._headers(token)
        body = None
        if payload is not None:
            headers["Content-Type"] = API_CONTENT_TYPE
            body = json.dumps(payload)

        _LOGGER.debug("API %s: %s", method, path)
        try:
            async with self._session.request(
                method,
                f"{API_BASE_URL}{path}",
                headers=headers,
                data=body,
                timeout=aiohttp.ClientTimeout(total=API_REQUEST_TIMEOUT),
            ) as response:
                status = response.status
                self.rate_limit.update_from_headers(response.headers)
                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as ex:
            _LOGGER.error("API %s error: %s - path: %s", method, ex, path)
            raise NetworkError(
                f"API {method} {path} failed: {ex or type(ex).__name__}"
            ) from ex

        _LOGGER.debug("API %s response status: %s", method, status)
        try:
            data = json.loads(text) if text else None
        except ValueError:
            data = None

        if status < 400:
            return data

        if status == 401 and retry_on_unauthorized:
            _LOGGER.warning("API %s 401 Unauthorized - refreshing token", method)
            if await self.token_store.force_refresh_and_retry():
                _LOGGER.info("Retrying API %s after token refresh", method)
                return await self._request(
                    method, path, payload, retry_on_unauthorized=False
                )

        raise self._error_for_status(method, path, status, data, text)

    def _error_for_status(
        self, method: str, path: str, status: int, data: Any, text: str
    ) -> CommandError:
        error_key, description = parse_error_body(data)
        message = f"API {method} {path} failed with {status}: {description or text}"

        if status == 401:
            return AuthenticationError(message, status, error_key, description)
        if status == 404 and path.endswith("/programs/active"):
            return NoActiveProgramError(
                "No active program", status, error_key, description
            )
        if status == 429:
            _LOGGER.error("API %s 429 Rate Limited", method)
            self.rate_limit.remaining = 0
            self.rate_limit.rest_blocked_until = time.time() + REST_RATE_LIMIT_BACKOFF
            return RateLimitError(message, status, error_key, description)
        if status == 503:
            _LOGGER.warning(
                "API %s 503 Service Unavailable - appliance may be offline", method
            )
            return ApplianceOfflineError(message, status, error_key, description)
        if is_remote_control_error(error_key, description):
            return RemoteControlDisabledError(message, status, error_key, description)
        if status == 409:
            _LOGGER.warning(
                "API %s 409 Conflict - command cannot be executed in current state",
                method,
            )
            return CommandValidationError(message, status, error_key, description)
        if status == 404:
            _LOGGER.warning("API %s 404 Not Found: %s", method, path)
        else:
            _LOGGER.error(
                "API %s error %s: %s - path: %s", method, status, text, path
            )
        return CommandError(message, status, error_key, description)

    @staticmethod
    def _data(response: Any) -> dict[str, Any]:
        if isinstance(response, dict) and isinstance(response.get("data"), dict):
            return response["data"]
        return {}

    async def get_appliances(self) -> list[ApplianceDescriptor]:
        """Return the appliances registered to the account."""
        _LOGGER.debug("Retrieving all home appliances")
        response = await self._request("GET", ENDPOINT_APPLIANCES)
        appliances = []
        for item in self._data(response).get("homeappliances") or []:
            if not item.get("haId"):
                continue
            appliances.append(ApplianceDescriptor.from_api(item))
        return appliances

    async def get_status(self, ha_id: str) -> list[dict[str, Any]]:
        """Return the status items of an appliance."""
        response = await self._request("GET", f"{ENDPOINT_APPLIANCES}/{ha_id}/status")
        return self._data(response).get("status") or []

    async def get_settings(self, ha_id: str) -> list[dict[str, Any]]:
        """Return the settings of an appliance."""
        response = await self._request(
            "GET", f"{ENDPOINT_APPLIANCES}/{ha_id}/settings"
        )
        return self._data(response).get("settings") or []

    async def set_setting(self, ha_id: str, key: str, value: Any) -> None:
        """Write a setting."""
        _LOGGER.info("Setting %s=%s on %s", key, value, ha_id)
        await self._request(
            "PUT",
            f"{ENDPOINT_APPLIANCES}/{ha_id}/settings/{key}",
            {"data": {"key": key, "value": value}},
        )

    async def set_power_state(self, ha_id: str, on: bool) -> None:
        """Switch the appliance on or off."""
        await self.set_setting(
            ha_id, KEY_POWER_STATE, POWER_STATE_ON if on else POWER_STATE_OFF
        )

    async def get_active_program(self, ha_id: str) -> dict[str, Any] | None:
        """Return the running program, or None when the appliance is idle."""
        try:
            response = await self._request(
                "GET", f"{ENDPOINT_APPLIANCES}/{ha_id}/programs/active"
            )
        except NoActiveProgramError:
            _LOGGER.debug("No active program on %s", ha_id)
            return None
        return self._data(response) or None

    @staticmethod
    def _program_payload(
        key: str, options: list[dict[str, Any]] | None
    ) -> dict[str, Any]:
        data: dict[str, Any] = {"key": key}
        if options:
            data["options"] = options
        return {"data": data}

    async def start_program(
        self, ha_id: str, key: str, options: list[dict[str, Any]] | None = None
    ) -> None:
        """Start a program."""
        _LOGGER.info("Starting program %s on %s", key, ha_id)
        await self._request(
            "PUT",
            f"{ENDPOINT_APPLIANCES}/{ha_id}/programs/active",
            self._program_payload(key, options),
        )

    async def stop_program(self, ha_id: str) -> None:
        """Stop the running program."""
        _LOGGER.info("Stopping program on %s", ha_id)
        await self._request("DELETE", f"{ENDPOINT_APPLIANCES}/{ha_id}/programs/active")

    async def get_selected_program(self, ha_id: str) -> dict[str, Any] | None:
        """Return the selected but not started program."""
        response = await self._request(
            "GET", f"{ENDPOINT_APPLIANCES}/{ha_id}/programs/selected"
        )
        return self._data(response) or None

    async def set_selected_program(
        self, ha_id: str, key: str, options: list[dict[str, Any]] | None = None
    ) -> None:
        """Select a program without starting it."""
        _LOGGER.debug("Setting selected program %s on %s", key, ha_id)
        await self._request(
            "PUT",
            f"{ENDPOINT_APPLIANCES}/{ha_id}/programs/selected",
            self._program_payload(key, options),
        )

    async def set_selected_program_option(
        self, ha_id: str, key: str, value: Any
    ) -> None:
        """Set an option of the selected program."""
        _LOGGER.debug("Setting program option %s=%s on %s", key, value, ha_id)
        await self._request(
            "PUT",
            f"{ENDPOINT_APPLIANCES}/{ha_id}/programs/selected/options/{key}",
            {"data": {"key": key, "value": value}},
        )

    async def get_available_programs(self, ha_id: str) -> list[dict[str, Any]]:
        """Return the programs the appliance can run right now."""
        response = await self._request(
            "GET", f"{ENDPOINT_APPLIANCES}/{ha_id}/programs/available"
        )
        return self._data(response).get("programs") or []

    async def get_available_program_options(
        self, ha_id: str, key: str
    ) -> list[dict[str, Any]]:
        """Return the options of one available program."""
        response = await self._request(
            "GET", f"{ENDPOINT_APPLIANCES}/{ha_id}/programs/available/{key}"
        )
        return self._data(response).get("options") or []

    async def send_command(self, ha_id: str, key: str) -> None:
        """Send a command such as BSH.Common.Command.PauseProgram."""
        _LOGGER.debug("Sending command %s to %s", key, ha_id)
        await self._request(
            "PUT",
            f"{ENDPOINT_APPLIANCES}/{ha_id}/commands/{key}",
            {"data": {"key": key, "value": True}},
        )
