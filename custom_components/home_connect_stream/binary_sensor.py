"""Binary sensor platform for Home Connect Stream."""

import logging
from dataclasses import dataclass
from typing import Callable

from homeassistant.components.binary_sensor import (
    BinarySensorDeviceClass,
    BinarySensorEntity,
    BinarySensorEntityDescription,
)
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.helpers.entity_platform import AddEntitiesCallback

from .appliance import HomeApplianceHandle
from .const import BINARY_SENSOR, DOMAIN, ICON_REMOTE
from .coordinator import HomeConnectCoordinator
from .entity import HomeConnectStreamEntity, async_setup_appliance_entities

_LOGGER: logging.Logger = logging.getLogger(__package__)


@dataclass(frozen=True, kw_only=True)
class HomeConnectBinarySensorDescription(BinarySensorEntityDescription):
    """Describes a handle backed binary sensor."""

    value_fn: Callable[[HomeApplianceHandle], bool | None]


BINARY_SENSORS: tuple[HomeConnectBinarySensorDescription, ...] = (
    HomeConnectBinarySensorDescription(
        key="door",
        name="Door",
        device_class=BinarySensorDeviceClass.DOOR,
        value_fn=lambda handle: handle.door_open,
    ),
    HomeConnectBinarySensorDescription(
        key="remote_control_start_allowed",
        name="Remote start allowed",
        icon=ICON_REMOTE,
        value_fn=lambda handle: handle.remote_control_start_allowed,
    ),
    HomeConnectBinarySensorDescription(
        key="remote_control_active",
        name="Remote control active",
        icon=ICON_REMOTE,
        value_fn=lambda handle: handle.remote_control_active,
    ),
    HomeConnectBinarySensorDescription(
        key="local_control_active",
        name="Local control active",
        value_fn=lambda handle: handle.local_control_active,
    ),
)


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Configure binary sensor platform."""
    coordinator: HomeConnectCoordinator = hass.data[DOMAIN][entry.entry_id]
    async_setup_appliance_entities(
        hass,
        entry,
        coordinator,
        async_add_entities,
        lambda handle: [
            HomeConnectBinarySensor(coordinator, handle, description)
            for description in BINARY_SENSORS
        ],
        BINARY_SENSOR,
    )


class HomeConnectBinarySensor(HomeConnectStreamEntity, BinarySensorEntity):
    """Home Connect binary_sensor class."""

    entity_description: HomeConnectBinarySensorDescription

    def __init__(
        self,
        coordinator: HomeConnectCoordinator,
        handle: HomeApplianceHandle,
        description: HomeConnectBinarySensorDescription,
    ) -> None:
        super().__init__(coordinator, handle, description.key)
        self.entity_description = description

    @property
    def is_on(self) -> bool | None:
        """Return true if the binary_sensor is on."""
        return self.entity_description.value_fn(self.handle)
