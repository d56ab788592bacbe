"""Home Connect Stream integration."""

import asyncio
import logging

from homeassistant.config_entries import ConfigEntry
from homeassistant.const import EVENT_HOMEASSISTANT_STARTED, EVENT_HOMEASSISTANT_STOP
from homeassistant.core import HomeAssistant, ServiceCall
from homeassistant.exceptions import (
    ConfigEntryAuthFailed,
    ConfigEntryError,
    ConfigEntryNotReady,
)
from homeassistant.helpers import config_validation as cv
from homeassistant.helpers import issue_registry
from homeassistant.helpers.aiohttp_client import async_get_clientsession
from homeassistant.helpers.typing import ConfigType

from .auth import Credentials, TokenStore
from .const import (
    CONF_ACCESS_TOKEN,
    CONF_CLIENT_ID,
    CONF_CLIENT_SECRET,
    CONF_LANGUAGE,
    CONF_REFRESH_TOKEN,
    CONF_TOKEN_EXPIRES_AT,
    DEFAULT_LANGUAGE,
    DOMAIN,
    ISSUE_INVALID_REFRESH_TOKEN,
    PLATFORMS,
    SERVICE_CLEAR_RATE_LIMIT,
    SERVICE_RECONNECT,
)
from .coordinator import FIRST_REFRESH_TIMEOUT, HomeConnectCoordinator

_LOGGER: logging.Logger = logging.getLogger(__package__)

CONFIG_SCHEMA = cv.config_entry_only_config_schema(DOMAIN)


def _validate_config(entry: ConfigEntry) -> None:
    """Validate configuration parameters."""
    if not entry.data.get(CONF_CLIENT_ID) or not entry.data.get(CONF_CLIENT_SECRET):
        raise ConfigEntryError("Client ID and client secret are required")


def _loaded_coordinators(hass: HomeAssistant) -> list[HomeConnectCoordinator]:
    return list(hass.data.get(DOMAIN, {}).values())


async def async_setup(hass: HomeAssistant, config: ConfigType) -> bool:
    """Set up this integration using YAML is not supported."""

    async def _clear_rate_limit(call: ServiceCall) -> None:
        for coordinator in _loaded_coordinators(hass):
            await coordinator.async_clear_rate_limit()

    async def _reconnect(call: ServiceCall) -> None:
        for coordinator in _loaded_coordinators(hass):
            await coordinator.async_reconnect()

    hass.services.async_register(DOMAIN, SERVICE_CLEAR_RATE_LIMIT, _clear_rate_limit)
    hass.services.async_register(DOMAIN, SERVICE_RECONNECT, _reconnect)
    return True


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up this integration using UI."""
    _validate_config(entry)
    hass.data.setdefault(DOMAIN, {})

    token_store = TokenStore(
        async_get_clientsession(hass),
        entry.data[CONF_CLIENT_ID],
        entry.data[CONF_CLIENT_SECRET],
        Credentials(
            access_token=entry.data.get(CONF_ACCESS_TOKEN),
            refresh_token=entry.data.get(CONF_REFRESH_TOKEN),
            expires_at=entry.data.get(CONF_TOKEN_EXPIRES_AT) or 0,
        ),
    )
    coordinator = HomeConnectCoordinator(
        hass,
        async_get_clientsession(hass),
        token_store,
        language=entry.options.get(CONF_LANGUAGE) or DEFAULT_LANGUAGE,
        config_entry=entry,
    )
    coordinator.setup_token_refresh_callback()

    _LOGGER.debug("Home Connect Stream starting authentication process")
    try:
        await coordinator.async_login()
    except ConfigEntryAuthFailed:
        issue_registry.async_create_issue(
            hass,
            DOMAIN,
            f"{ISSUE_INVALID_REFRESH_TOKEN}_{entry.entry_id}",
            is_fixable=True,
            severity=issue_registry.IssueSeverity.ERROR,
            translation_key=ISSUE_INVALID_REFRESH_TOKEN,
            translation_placeholders={"message": "Stored credentials were rejected"},
        )
        raise

    hass.data[DOMAIN][entry.entry_id] = coordinator

    try:
        await asyncio.wait_for(
            coordinator.async_config_entry_first_refresh(),
            timeout=FIRST_REFRESH_TIMEOUT,
        )
    except ConfigEntryAuthFailed:
        hass.data[DOMAIN].pop(entry.entry_id, None)
        raise
    except (asyncio.TimeoutError, ConfigEntryNotReady) as err:
        _LOGGER.warning(
            "Home Connect Stream first refresh failed or timed out (%s); will retry in background",
            err,
        )

    if not coordinator.last_update_success:
        hass.data[DOMAIN].pop(entry.entry_id, None)
        raise ConfigEntryNotReady

    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)

    async def start_stream(event=None) -> None:
        _LOGGER.debug("Applying options and starting the event stream")
        await coordinator.async_apply_options(entry.options)
        coordinator.remove_stale_devices()

    # Start the stream after HA has fully started to prevent blocking startup
    if hass.is_running:
        entry.async_create_background_task(
            hass, start_stream(), name=f"{DOMAIN} start - {entry.title}"
        )
    else:
        entry.async_on_unload(
            hass.bus.async_listen_once(EVENT_HOMEASSISTANT_STARTED, start_stream)
        )

    async def _close_coordinator(event) -> None:
        """Close coordinator resources on HA shutdown."""
        await coordinator.close_stream()

    entry.async_on_unload(
        hass.bus.async_listen_once(EVENT_HOMEASSISTANT_STOP, _close_coordinator)
    )
    entry.async_on_unload(entry.add_update_listener(update_listener))
    return True


async def update_listener(hass: HomeAssistant, config_entry: ConfigEntry) -> None:
    """Apply changed options without reloading.

    Token persistence also updates the entry, so only an options change
    triggers reconciliation.
    """
    coordinator: HomeConnectCoordinator | None = hass.data.get(DOMAIN, {}).get(
        config_entry.entry_id
    )
    if coordinator is None:
        return
    if coordinator.applied_options == dict(config_entry.options):
        return
    _LOGGER.info("Options changed - reconciling appliances")
    await coordinator.async_apply_options(config_entry.options)


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Handle removal of an entry."""
    coordinator: HomeConnectCoordinator | None = hass.data.get(DOMAIN, {}).get(
        entry.entry_id
    )
    if coordinator:
        await coordinator.close_stream()

    unload_ok = await hass.config_entries.async_unload_platforms(entry, PLATFORMS)
    if unload_ok:
        hass.data[DOMAIN].pop(entry.entry_id, None)
    return unload_ok


async def async_reload_entry(hass: HomeAssistant, entry: ConfigEntry) -> None:
    """Reload config entry."""
    _LOGGER.debug("Home Connect Stream async_reload_entry %s", entry.entry_id)
    await async_unload_entry(hass, entry)
    await async_setup_entry(hass, entry)
