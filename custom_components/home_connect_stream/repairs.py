"""Repair flows for Home Connect Stream issues."""

import logging
from typing import Any

import voluptuous as vol
from homeassistant.components.repairs import RepairsFlow
from homeassistant.core import HomeAssistant
from homeassistant.data_entry_flow import FlowResult

from .const import ISSUE_INVALID_REFRESH_TOKEN

_LOGGER: logging.Logger = logging.getLogger(__package__)


async def async_create_fix_flow(
    hass: HomeAssistant,
    issue_id: str,
    data: dict[str, str | int | float | None] | None,
) -> RepairsFlow:
    """Create fix flow for Home Connect Stream repair issues."""
    return HomeConnectStreamRepairFlow()


class HomeConnectStreamRepairFlow(RepairsFlow):
    """Starts reauthorization for a rejected refresh token."""

    async def async_step_init(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Handle the first step of a repair flow."""
        return await self.async_step_confirm_repair(user_input)

    async def async_step_confirm_repair(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Ask the user to authorize again."""
        entry_id = self.issue_id.replace(f"{ISSUE_INVALID_REFRESH_TOKEN}_", "")
        entry = self.hass.config_entries.async_get_entry(entry_id)
        if entry is None:
            _LOGGER.error("Config entry %s not found", entry_id)
            return self.async_abort(reason="entry_not_found")

        if user_input is None:
            return self.async_show_form(
                step_id="confirm_repair",
                data_schema=vol.Schema({}),
                description_placeholders={"title": entry.title},
            )

        _LOGGER.info("Starting reauthorization for entry %s", entry_id)
        entry.async_start_reauth(self.hass)
        return self.async_create_entry(title="", data={})
