"""Routes stream events to appliance handles."""

import logging

from .api import HomeConnectApiClient
from .appliance import ApplianceHandle, async_fetch_state, device_id_for
from .const import STREAM_DEVICE_ID
from .stream import ApplianceEvent

_LOGGER: logging.Logger = logging.getLogger(__package__)


class EventRouter:
    """Resolves the handle of an event and isolates handle failures."""

    def __init__(
        self, handles: dict[str, ApplianceHandle], api: HomeConnectApiClient
    ) -> None:
        """Initialize the router over the shared handle map."""
        self.handles = handles
        self.api = api

    def _resolve(self, appliance_id: str | None) -> ApplianceHandle | None:
        if not appliance_id:
            return None
        return self.handles.get(device_id_for(appliance_id))

    def route_event(self, event: ApplianceEvent) -> bool:
        """Forward an event to its handle; return False if it was dropped."""
        if not event.ha_id or not event.key:
            _LOGGER.warning("route_event: missing haId or key")
            return False

        handle = self._resolve(event.ha_id)
        if handle is None:
            _LOGGER.debug("No handle for haId %s, dropping %s", event.ha_id, event.key)
            return False

        _LOGGER.debug("Routing event: %s = %s for %s", event.key, event.value, event.ha_id)
        try:
            handle.parse_event(event)
        except Exception as ex:
            _LOGGER.warning("Error routing event to %s: %s", handle.name, ex)
            return False
        return True

    def route_connection_status(self, appliance_id: str, status: str) -> bool:
        """Forward an appliance CONNECTED or DISCONNECTED event."""
        _LOGGER.debug("Appliance %s connection status: %s", appliance_id, status)
        handle = self._resolve(appliance_id)
        if handle is None:
            return False
        try:
            handle.update_connection_status(status)
        except Exception as ex:
            _LOGGER.warning(
                "Error updating connection status of %s: %s", handle.name, ex
            )
            return False
        return True

    async def route_reconnect_refresh(self) -> None:
        """Refresh every appliance after the stream reconnects.

        The stream does not replay missed events. The active program is
        skipped to save API calls.
        """
        _LOGGER.info("Refreshing status for all devices after reconnect")
        for device_id, handle in list(self.handles.items()):
            if device_id == STREAM_DEVICE_ID:
                continue
            try:
                await async_fetch_state(self.api, handle, check_active_program=False)
            except Exception as ex:
                _LOGGER.warning("Failed to refresh %s: %s", handle.name, ex)
