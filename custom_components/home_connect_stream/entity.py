"""Base entities for Home Connect Stream."""

import logging
from typing import Any, Callable, Iterable

from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.device_registry import DeviceInfo
from homeassistant.helpers.dispatcher import async_dispatcher_connect
from homeassistant.helpers.entity import Entity
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .appliance import ApplianceHandle, HomeApplianceHandle
from .const import DOMAIN, NAME, SIGNAL_APPLIANCE_ADDED, STREAM_DEVICE_ID
from .coordinator import HomeConnectCoordinator

_LOGGER: logging.Logger = logging.getLogger(__package__)


def stream_device_info() -> DeviceInfo:
    """Device info of the stream driver singleton."""
    return DeviceInfo(
        identifiers={(DOMAIN, STREAM_DEVICE_ID)},
        manufacturer="BSH",
        model="Event stream",
        name=NAME,
    )


class HomeConnectStreamEntity(CoordinatorEntity):
    """Entity bound to one appliance handle."""

    _attr_has_entity_name = True

    def __init__(
        self,
        coordinator: HomeConnectCoordinator,
        handle: HomeApplianceHandle,
        entity_key: str,
    ) -> None:
        super().__init__(coordinator)
        self.handle = handle
        self.entity_key = entity_key
        self._attr_unique_id = f"{handle.device_id}-{entity_key}"
        self._attr_device_info = DeviceInfo(
            identifiers={(DOMAIN, handle.device_id)},
            manufacturer=handle.brand,
            model=handle.vib or handle.appliance_type,
            name=handle.name,
        )

    @property
    def available(self) -> bool:
        """An entity is available while its handle is live and connected."""
        coordinator: HomeConnectCoordinator = self.coordinator  # type: ignore[assignment]
        if coordinator.handles.get(self.handle.device_id) is not self.handle:
            return False
        return bool(self.handle.connected)

    @property
    def extra_state_attributes(self) -> dict[str, Any] | None:
        return {"appliance_id": self.handle.appliance_id}


def async_setup_appliance_entities(
    hass: HomeAssistant,
    entry: ConfigEntry,
    coordinator: HomeConnectCoordinator,
    async_add_entities: AddEntitiesCallback,
    build_entities: Callable[[HomeApplianceHandle], Iterable[Entity]],
    platform: str,
) -> None:
    """Add entities for current handles and for handles created later."""

    @callback
    def _add_handles(handles: Iterable[ApplianceHandle]) -> None:
        entities: list[Entity] = []
        for handle in handles:
            if isinstance(handle, HomeApplianceHandle):
                entities.extend(build_entities(handle))
        _LOGGER.debug("Adding %d %s entities", len(entities), platform)
        if entities:
            async_add_entities(entities)

    _add_handles(list(coordinator.handles.values()))
    entry.async_on_unload(
        async_dispatcher_connect(hass, SIGNAL_APPLIANCE_ADDED, _add_handles)
    )
