"""Sensor platform for Home Connect Stream."""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from homeassistant.components.sensor import (
    SensorDeviceClass,
    SensorEntity,
    SensorEntityDescription,
)
from homeassistant.config_entries import ConfigEntry
from homeassistant.const import PERCENTAGE, UnitOfTime
from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.dispatcher import async_dispatcher_connect
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .appliance import HomeApplianceHandle
from .const import (
    DOMAIN,
    ICON_INFORMATION,
    ICON_PROGRESS,
    ICON_STATE_MACHINE,
    ICON_STREAM,
    ICON_TIMELAPSE,
    SENSOR,
    SIGNAL_STREAM_STATUS,
    STREAM_DEVICE_ID,
)
from .coordinator import HomeConnectCoordinator
from .entity import (
    HomeConnectStreamEntity,
    async_setup_appliance_entities,
    stream_device_info,
)
from .stream import ConnectionState, StreamStatus, format_timestamp

_LOGGER: logging.Logger = logging.getLogger(__package__)


@dataclass(frozen=True, kw_only=True)
class HomeConnectSensorDescription(SensorEntityDescription):
    """Describes a handle backed sensor."""

    value_fn: Callable[[HomeApplianceHandle], Any]


APPLIANCE_SENSORS: tuple[HomeConnectSensorDescription, ...] = (
    HomeConnectSensorDescription(
        key="operation_state",
        name="Operation state",
        icon=ICON_STATE_MACHINE,
        value_fn=lambda handle: handle.operation_state,
    ),
    HomeConnectSensorDescription(
        key="remaining_program_time",
        name="Remaining program time",
        icon=ICON_TIMELAPSE,
        device_class=SensorDeviceClass.DURATION,
        native_unit_of_measurement=UnitOfTime.SECONDS,
        value_fn=lambda handle: handle.remaining_program_time,
    ),
    HomeConnectSensorDescription(
        key="program_progress",
        name="Program progress",
        icon=ICON_PROGRESS,
        native_unit_of_measurement=PERCENTAGE,
        value_fn=lambda handle: handle.program_progress,
    ),
    HomeConnectSensorDescription(
        key="active_program",
        name="Active program",
        icon=ICON_INFORMATION,
        value_fn=lambda handle: handle.active_program,
    ),
    HomeConnectSensorDescription(
        key="last_command_status",
        name="Last command status",
        icon=ICON_INFORMATION,
        value_fn=lambda handle: handle.last_command_status,
    ),
)


def _build_sensors(
    coordinator: HomeConnectCoordinator, handle: HomeApplianceHandle
) -> list[SensorEntity]:
    entities: list[SensorEntity] = [
        HomeConnectSensor(coordinator, handle, description)
        for description in APPLIANCE_SENSORS
    ]
    entities.extend(
        HomeConnectAttributeSensor(coordinator, handle, attribute, label)
        for attribute, label in handle.value_attributes.items()
    )
    return entities


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Configure sensor platform."""
    coordinator: HomeConnectCoordinator = hass.data[DOMAIN][entry.entry_id]
    async_add_entities([HomeConnectStreamStatusSensor(coordinator)])
    async_setup_appliance_entities(
        hass,
        entry,
        coordinator,
        async_add_entities,
        lambda handle: _build_sensors(coordinator, handle),
        SENSOR,
    )


class HomeConnectSensor(HomeConnectStreamEntity, SensorEntity):
    """Sensor reading one field of an appliance handle."""

    entity_description: HomeConnectSensorDescription

    def __init__(
        self,
        coordinator: HomeConnectCoordinator,
        handle: HomeApplianceHandle,
        description: HomeConnectSensorDescription,
    ) -> None:
        super().__init__(coordinator, handle, description.key)
        self.entity_description = description

    @property
    def native_value(self) -> Any:
        """Return the state of the sensor."""
        return self.entity_description.value_fn(self.handle)

    @property
    def extra_state_attributes(self) -> dict[str, Any] | None:
        attributes = super().extra_state_attributes or {}
        if self.entity_description.key == "remaining_program_time":
            attributes["formatted"] = self.handle.remaining_program_time_formatted
        return attributes


class HomeConnectAttributeSensor(HomeConnectStreamEntity, SensorEntity):
    """Sensor for a type specific value such as a temperature or a counter."""

    _attr_icon = ICON_INFORMATION

    def __init__(
        self,
        coordinator: HomeConnectCoordinator,
        handle: HomeApplianceHandle,
        attribute: str,
        label: str,
    ) -> None:
        super().__init__(coordinator, handle, attribute)
        self.attribute = attribute
        self._attr_name = label

    @property
    def native_value(self) -> Any:
        """Return the state of the sensor."""
        return self.handle.attributes.get(self.attribute)

    @property
    def native_unit_of_measurement(self) -> str | None:
        """Return the unit reported by the appliance."""
        return self.handle.units.get(self.attribute)


class HomeConnectStreamStatusSensor(CoordinatorEntity, SensorEntity):
    """Connection state of the event stream."""

    _attr_has_entity_name = True
    _attr_name = "Stream status"
    _attr_icon = ICON_STREAM
    _attr_device_class = SensorDeviceClass.ENUM
    _attr_options = [state.value for state in ConnectionState]

    def __init__(self, coordinator: HomeConnectCoordinator) -> None:
        super().__init__(coordinator)
        self._attr_unique_id = f"{STREAM_DEVICE_ID}-status"
        self._attr_device_info = stream_device_info()
        self._status: StreamStatus = coordinator.stream.status

    @property
    def available(self) -> bool:
        """The stream sensor reports every state, including disconnected."""
        return True

    async def async_added_to_hass(self) -> None:
        """Subscribe to stream status changes."""
        await super().async_added_to_hass()
        self.async_on_remove(
            async_dispatcher_connect(
                self.hass, SIGNAL_STREAM_STATUS, self._handle_stream_status
            )
        )

    @callback
    def _handle_stream_status(self, status: StreamStatus) -> None:
        self._status = status
        self.async_write_ha_state()

    @callback
    def _handle_coordinator_update(self) -> None:
        coordinator: HomeConnectCoordinator = self.coordinator  # type: ignore[assignment]
        self._status = coordinator.stream.status
        super()._handle_coordinator_update()

    @property
    def native_value(self) -> str:
        """Return the connection state."""
        return self._status.state.value

    @property
    def extra_state_attributes(self) -> dict[str, Any]:
        status = self._status
        return {
            "status": status.message,
            "rate_limit_remaining": status.rate_limit_remaining,
            "rate_limit_limit": status.rate_limit_limit,
            "rate_limited_until": format_timestamp(status.rate_limited_until),
            "reconnect_attempts": status.attempt,
            "next_attempt_at": format_timestamp(status.next_attempt_at),
            "last_event_received": format_timestamp(status.last_event_received),
            "connected_since": format_timestamp(status.connected_since),
        }
