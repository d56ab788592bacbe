"""Home Connect Stream coordinator."""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Mapping

import aiohttp
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import ConfigEntryAuthFailed, ConfigEntryNotReady
from homeassistant.helpers import device_registry as dr
from homeassistant.helpers import issue_registry
from homeassistant.helpers.dispatcher import async_dispatcher_send
from homeassistant.helpers.update_coordinator import DataUpdateCoordinator, UpdateFailed

from .api import HomeConnectApiClient
from .appliance import ApplianceHandle
from .auth import Credentials, RefreshFailure, TokenStore
from .const import (
    CONF_ACCESS_TOKEN,
    CONF_APPLIANCES,
    CONF_LANGUAGE,
    CONF_REFRESH_TOKEN,
    CONF_TOKEN_EXPIRES_AT,
    DEFAULT_LANGUAGE,
    DOMAIN,
    ISSUE_INVALID_REFRESH_TOKEN,
    SIGNAL_APPLIANCE_ADDED,
    SIGNAL_STREAM_STATUS,
    STREAM_DEVICE_ID,
)
from .reconciler import DeviceReconciler, ReconciliationPlan
from .router import EventRouter
from .stream import ApplianceEvent, EventStreamManager, StreamStatus, format_timestamp
from .util import AuthenticationError, CommandError, NetworkError

_LOGGER: logging.Logger = logging.getLogger(__package__)

HEALTH_CHECK_INTERVAL_MINUTES = 30
FIRST_REFRESH_TIMEOUT = 15.0  # seconds
STREAM_DISCONNECT_TIMEOUT = 5.0  # seconds


class HomeConnectCoordinator(DataUpdateCoordinator):
    """Owns the token store, the stream and the appliance handles."""

    def __init__(
        self,
        hass: HomeAssistant,
        session: aiohttp.ClientSession,
        token_store: TokenStore,
        language: str = DEFAULT_LANGUAGE,
        config_entry: ConfigEntry | None = None,
    ) -> None:
        """Initialize."""
        self.hass = hass
        self.token_store = token_store
        self.api = HomeConnectApiClient(session, token_store, language)
        self.stream = EventStreamManager(hass, session, token_store, self.api)
        self.handles: dict[str, ApplianceHandle] = {}
        self.router = EventRouter(self.handles, self.api)
        self.reconciler = DeviceReconciler(hass, self.api, self.handles)
        self.applied_options: dict[str, Any] | None = None
        self._auth_failed = False

        self.stream.on_event = self._handle_event
        self.stream.on_connection_event = self.router.route_connection_status
        self.stream.on_reconnect = self.router.route_reconnect_refresh
        self.stream.add_status_listener(self._handle_stream_status)
        self.reconciler.connect = self.stream.connect
        self.reconciler.on_created = self._handle_created
        self.reconciler.on_removed = self._handle_removed

        super().__init__(
            hass,
            _LOGGER,
            name=DOMAIN,
            config_entry=config_entry,
            update_interval=timedelta(minutes=HEALTH_CHECK_INTERVAL_MINUTES),
        )

    async def async_login(self) -> bool:
        """Check the credentials by fetching the appliance list."""
        try:
            await self.reconciler.async_refresh_descriptors()
            return True
        except AuthenticationError as ex:
            if self.token_store.last_refresh_failure is RefreshFailure.TRANSIENT:
                _LOGGER.warning("Token refresh failed temporarily: %s", ex)
                raise ConfigEntryNotReady from ex
            _LOGGER.error("Authentication failed - invalid credentials: %s", ex)
            raise ConfigEntryAuthFailed("Invalid credentials") from ex
        except NetworkError as ex:
            _LOGGER.error("Network error during authentication: %s", ex)
            raise ConfigEntryNotReady from ex
        except CommandError as ex:
            _LOGGER.error("Unexpected error during authentication: %s", ex)
            raise ConfigEntryNotReady from ex

    def setup_token_refresh_callback(self) -> None:
        """Persist refreshed tokens to the config entry."""
        if self.config_entry is None:
            _LOGGER.warning("No config_entry available, cannot persist tokens")
            return
        config_entry = self.config_entry

        def on_token_update(credentials: Credentials) -> None:
            new_data = dict(config_entry.data)
            new_data[CONF_ACCESS_TOKEN] = credentials.access_token
            new_data[CONF_REFRESH_TOKEN] = credentials.refresh_token
            new_data[CONF_TOKEN_EXPIRES_AT] = credentials.expires_at
            self.hass.config_entries.async_update_entry(config_entry, data=new_data)
            _LOGGER.info(
                "Tokens persisted (valid for %.1fh)",
                (credentials.expires_at - time.time()) / 3600,
            )

        self.token_store.set_token_update_callback(on_token_update)
        self.token_store.set_auth_error_callback(self._trigger_reauth)

    async def _trigger_reauth(self, message: str) -> None:
        """Open a repair issue and let the next refresh start reauthentication."""
        self._auth_failed = True
        self._report_token_refresh_error(message)
        self.hass.async_create_task(
            self.async_request_refresh(), name=f"{DOMAIN} reauth refresh"
        )

    def _report_token_refresh_error(self, message: str) -> None:
        issue_id = ISSUE_INVALID_REFRESH_TOKEN
        if self.config_entry is not None:
            issue_id = f"{ISSUE_INVALID_REFRESH_TOKEN}_{self.config_entry.entry_id}"
        _LOGGER.warning("Token refresh failed: %s. Creating HA issue.", message)
        issue_registry.async_create_issue(
            self.hass,
            DOMAIN,
            issue_id,
            is_fixable=True,
            is_persistent=True,
            severity=issue_registry.IssueSeverity.CRITICAL,
            translation_key=ISSUE_INVALID_REFRESH_TOKEN,
            translation_placeholders={"message": message},
        )

    def _handle_event(self, event: ApplianceEvent) -> None:
        self.router.route_event(event)

    def _handle_stream_status(self, status: StreamStatus) -> None:
        async_dispatcher_send(self.hass, SIGNAL_STREAM_STATUS, status)

    def _handle_created(self, handles: list[ApplianceHandle]) -> None:
        for handle in handles:
            handle.on_update = self.async_update_listeners
        async_dispatcher_send(self.hass, SIGNAL_APPLIANCE_ADDED, handles)

    def _handle_removed(self, device_ids: list[str]) -> None:
        registry = dr.async_get(self.hass)
        for device_id in device_ids:
            device = registry.async_get_device(identifiers={(DOMAIN, device_id)})
            if device:
                _LOGGER.debug("Removing device %s from registry", device_id)
                registry.async_remove_device(device.id)

    def remove_stale_devices(self) -> None:
        """Remove registry devices with no handle, keeping the stream device."""
        if self.config_entry is None:
            return
        registry = dr.async_get(self.hass)
        for device in dr.async_entries_for_config_entry(
            registry, self.config_entry.entry_id
        ):
            device_ids = {
                identifier for domain, identifier in device.identifiers if domain == DOMAIN
            }
            if STREAM_DEVICE_ID in device_ids or device_ids & set(self.handles):
                continue
            _LOGGER.info("Removing stale device %s", device.name)
            registry.async_remove_device(device.id)

    async def async_apply_options(self, options: Mapping[str, Any]) -> ReconciliationPlan:
        """Apply the appliance selection and language of the options."""
        language = options.get(CONF_LANGUAGE) or DEFAULT_LANGUAGE
        language_changed = language != self.api.language
        self.api.language = language
        self.applied_options = dict(options)

        if language_changed and self.stream.is_running:
            _LOGGER.info("Language changed to %s - reconnecting stream", language)
            await self.stream.reconnect()

        plan = await self.reconciler.async_reconcile(options.get(CONF_APPLIANCES) or [])
        _LOGGER.info(
            "Reconciled appliances: %s created, %s retained, %s deleted",
            len(plan.create),
            len(plan.retain),
            len(plan.delete),
        )
        return plan

    async def _async_update_data(self) -> dict[str, Any]:
        """Check token and stream health."""
        if self._auth_failed:
            raise ConfigEntryAuthFailed("Authentication failed - please reauthenticate")

        token = await self.token_store.get_valid_token()
        if not token:
            if self.token_store.last_refresh_failure is RefreshFailure.TRANSIENT:
                raise UpdateFailed("Token refresh failed - will retry")
            raise ConfigEntryAuthFailed("Token expired or invalid - please reauthenticate")

        if not self.stream.is_running and not self.stream.is_rate_limited():
            if self.applied_options is not None:
                _LOGGER.info("Event stream not running - reconnecting")
                await self.stream.connect()
        return self.get_health_status()

    async def close_stream(self) -> None:
        """Stop the stream and pending appliance work."""
        await self.reconciler.async_cancel_pending()
        for handle in list(self.handles.values()):
            await handle.async_shutdown()
        try:
            await asyncio.wait_for(
                self.stream.disconnect(), timeout=STREAM_DISCONNECT_TIMEOUT
            )
        except asyncio.TimeoutError:
            _LOGGER.warning("Timed out closing the event stream")

    async def async_clear_rate_limit(self) -> None:
        """Service handler for clear_rate_limit."""
        await self.stream.clear_rate_limit()

    async def async_reconnect(self) -> None:
        """Service handler for reconnect."""
        await self.stream.reconnect()

    def get_health_status(self) -> dict[str, Any]:
        """Return integration health status for diagnostics."""
        status = self.stream.status
        return {
            "stream_state": status.state.value,
            "stream_status": status.message,
            "reconnect_attempts": status.attempt,
            "rate_limited_until": format_timestamp(status.rate_limited_until),
            "rate_limit_remaining": status.rate_limit_remaining,
            "rate_limit_limit": status.rate_limit_limit,
            "appliances_count": len(self.handles),
            "auth_failed": self._auth_failed,
            "last_update_success": self.last_update_success,
        }
