"""Switch platform for Home Connect Stream."""

import logging
from typing import Any

from homeassistant.components.switch import SwitchEntity
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import HomeAssistantError
from homeassistant.helpers.entity_platform import AddEntitiesCallback

from .appliance import HomeApplianceHandle
from .const import DOMAIN, ICON_POWER, SWITCH
from .coordinator import HomeConnectCoordinator
from .entity import HomeConnectStreamEntity, async_setup_appliance_entities
from .util import CommandError, map_command_error_to_home_assistant_error

_LOGGER: logging.Logger = logging.getLogger(__package__)


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Configure switch platform."""
    coordinator: HomeConnectCoordinator = hass.data[DOMAIN][entry.entry_id]
    async_setup_appliance_entities(
        hass,
        entry,
        coordinator,
        async_add_entities,
        lambda handle: [HomeConnectPowerSwitch(coordinator, handle)],
        SWITCH,
    )


class HomeConnectPowerSwitch(HomeConnectStreamEntity, SwitchEntity):
    """Power state of an appliance."""

    _attr_name = "Power"
    _attr_icon = ICON_POWER

    def __init__(
        self, coordinator: HomeConnectCoordinator, handle: HomeApplianceHandle
    ) -> None:
        super().__init__(coordinator, handle, "power")

    @property
    def is_on(self) -> bool | None:
        """Return true if the appliance is powered on."""
        return self.handle.power_on

    async def switch(self, value: bool) -> None:
        """Control switch state."""
        if not self.handle.connected:
            _LOGGER.warning(
                "Appliance %s is not connected, cannot set power", self.handle.name
            )
            raise HomeAssistantError(
                "Appliance is offline. Please check that the appliance is "
                "plugged in and has network connectivity."
            )

        try:
            await self.handle.set_power_state(value)
        except CommandError as ex:
            raise map_command_error_to_home_assistant_error(
                ex, "power on" if value else "power off", _LOGGER
            ) from ex
        # State will be updated via the event stream

    async def async_turn_on(self, **kwargs: Any) -> None:
        """Turn the entity on."""
        await self.switch(True)

    async def async_turn_off(self, **kwargs: Any) -> None:
        """Turn the entity off."""
        await self.switch(False)
