"""Appliance handles and the appliance type registry."""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from homeassistant.core import HomeAssistant

from .api import ApplianceDescriptor, HomeConnectApiClient
from .const import (
    DEVICE_ID_PREFIX,
    EVENT_CONNECTED,
    KEY_ACTIVE_PROGRAM,
    KEY_DOOR_STATE,
    KEY_ELAPSED_PROGRAM_TIME,
    KEY_LOCAL_CONTROL_ACTIVE,
    KEY_OPERATION_STATE,
    KEY_POWER_STATE,
    KEY_PROGRAM_PROGRESS,
    KEY_REMAINING_PROGRAM_TIME,
    KEY_REMOTE_CONTROL_ACTIVE,
    KEY_REMOTE_START_ALLOWED,
    KEY_SELECTED_PROGRAM,
    KEY_START_IN_RELATIVE,
    PROGRAMS_FETCH_DELAY,
)
from .stream import ApplianceEvent
from .util import CommandError, extract_enum_value, seconds_to_time

_LOGGER: logging.Logger = logging.getLogger(__package__)

PROGRAM_END_STATES = ["Ready", "Inactive", "Finished"]
SPURIOUS_ZERO_THRESHOLD = 60  # seconds


def device_id_for(appliance_id: str) -> str:
    """Return the local device id of an appliance."""
    return f"{DEVICE_ID_PREFIX}{appliance_id}"


def appliance_id_from(device_id: str) -> str | None:
    """Return the appliance id of a local device id, None if not an appliance."""
    if not device_id.startswith(DEVICE_ID_PREFIX):
        return None
    return device_id[len(DEVICE_ID_PREFIX) :]


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _normalize(value: Any) -> Any:
    if isinstance(value, str) and ".EnumType." in value:
        return extract_enum_value(value)
    return value


class ApplianceHandle:
    """Capability interface between the stream and one appliance.

    parse_event and initialize are mandatory. The other hooks are optional
    and do nothing unless a handle overrides them.
    """

    def __init__(
        self,
        hass: HomeAssistant,
        api: HomeConnectApiClient,
        descriptor: ApplianceDescriptor,
    ) -> None:
        """Initialize the handle."""
        self.hass = hass
        self.api = api
        self.appliance_id = descriptor.appliance_id
        self.device_id = device_id_for(descriptor.appliance_id)
        self.name = descriptor.name
        self.appliance_type = descriptor.appliance_type
        self.brand = descriptor.brand
        self.vib = descriptor.vib
        self.connected = descriptor.connected
        self.on_update: Callable[[], None] | None = None

    def parse_event(self, event: ApplianceEvent) -> None:
        """Apply one stream event."""
        raise NotImplementedError

    async def initialize(self) -> None:
        """Fetch the initial state of the appliance."""
        raise NotImplementedError

    def update_connection_status(self, status: str) -> None:
        """Record an appliance CONNECTED or DISCONNECTED event."""

    def parse_status(self, items: list[dict[str, Any]]) -> None:
        """Apply a status snapshot."""

    def parse_settings(self, items: list[dict[str, Any]]) -> None:
        """Apply a settings snapshot."""

    def parse_active_program(self, program: dict[str, Any]) -> None:
        """Apply the active program."""

    def parse_available_programs(self, programs: list[dict[str, Any]]) -> None:
        """Apply the available program list."""

    def parse_available_options(self, options: list[dict[str, Any]]) -> None:
        """Apply the options of one available program."""

    async def async_shutdown(self) -> None:
        """Cancel pending work before the handle is dropped."""

    def _notify(self) -> None:
        if self.on_update:
            self.on_update()


async def async_fetch_state(
    api: HomeConnectApiClient,
    handle: ApplianceHandle,
    check_active_program: bool = True,
) -> None:
    """Fetch status, settings and optionally the active program into a handle.

    Skipping the active program is the reduced-cost variant used after a
    stream reconnect.
    """
    _LOGGER.debug("Initializing status for %s", handle.appliance_id)
    handle.parse_status(await api.get_status(handle.appliance_id))
    handle.parse_settings(await api.get_settings(handle.appliance_id))
    if not check_active_program:
        return
    try:
        program = await api.get_active_program(handle.appliance_id)
    except CommandError as ex:
        _LOGGER.debug("No active program for %s: %s", handle.appliance_id, ex)
        return
    if program:
        handle.parse_active_program(program)


class HomeApplianceHandle(ApplianceHandle):
    """Tracks the common BSH keys and forwards commands to the REST client."""

    key_prefixes: tuple[str, ...] = ()
    program_namespace: str | None = None
    supports_programs = True
    value_attributes: dict[str, str] = {}

    def __init__(
        self,
        hass: HomeAssistant,
        api: HomeConnectApiClient,
        descriptor: ApplianceDescriptor,
    ) -> None:
        """Initialize the handle."""
        super().__init__(hass, api, descriptor)
        self.connection_status: str | None = None
        self.operation_state: str | None = None
        self.door_state: str | None = None
        self.remote_control_start_allowed: bool | None = None
        self.remote_control_active: bool | None = None
        self.local_control_active: bool | None = None
        self.power_state: str | None = None
        self.remaining_program_time: int | None = None
        self.elapsed_program_time: int | None = None
        self.program_progress: int | None = None
        self.start_in_relative: int | None = None
        self.active_program: str | None = None
        self.selected_program: str | None = None
        self.program_map: dict[str, str] = {}
        self.available_programs: list[str] = []
        self.available_options: list[str] = []
        self.attributes: dict[str, Any] = {}
        self.units: dict[str, str] = {}
        self.last_command_status: str | None = None
        self.last_unhandled_event: str | None = None
        self._programs_task: asyncio.Task | None = None

    @property
    def door_open(self) -> bool | None:
        """Return True when the door is open."""
        if self.door_state is None:
            return None
        return self.door_state == "Open"

    @property
    def power_on(self) -> bool | None:
        """Return True when the appliance is powered on."""
        if self.power_state is None:
            return None
        return self.power_state == "On"

    @property
    def remaining_program_time_formatted(self) -> str:
        """Return the remaining time as HH:MM."""
        return seconds_to_time(self.remaining_program_time)

    def parse_event(self, event: ApplianceEvent) -> None:
        """Apply one stream event."""
        self._apply_item(event.key, event.value, event.displayvalue, event.unit)
        self._notify()

    def _apply_items(self, items: list[dict[str, Any]]) -> None:
        for item in items or []:
            if isinstance(item, dict) and item.get("key"):
                self._apply_item(
                    item["key"],
                    item.get("value"),
                    item.get("displayvalue"),
                    item.get("unit"),
                )
        self._notify()

    def _apply_item(
        self, key: str, value: Any, displayvalue: str | None, unit: str | None
    ) -> None:
        _LOGGER.debug("%s event: %s = %s", self.name, key, value)

        if key == KEY_OPERATION_STATE:
            previous = self.operation_state
            self.operation_state = extract_enum_value(value)
            if self.operation_state == "Finished" and previous == "Run":
                _LOGGER.info("%s: program finished", self.name)
            if self.operation_state in PROGRAM_END_STATES:
                self._reset_program_state()
        elif key == KEY_DOOR_STATE:
            self.door_state = extract_enum_value(value)
        elif key == KEY_REMOTE_START_ALLOWED:
            self.remote_control_start_allowed = bool(value)
        elif key == KEY_REMOTE_CONTROL_ACTIVE:
            self.remote_control_active = bool(value)
        elif key == KEY_LOCAL_CONTROL_ACTIVE:
            self.local_control_active = bool(value)
        elif key == KEY_POWER_STATE:
            self.power_state = extract_enum_value(value)
        elif key == KEY_REMAINING_PROGRAM_TIME:
            seconds = _as_int(value)
            if self._should_update_timing(seconds):
                self.remaining_program_time = seconds
        elif key == KEY_ELAPSED_PROGRAM_TIME:
            self.elapsed_program_time = _as_int(value)
        elif key == KEY_PROGRAM_PROGRESS:
            self.program_progress = _as_int(value)
        elif key == KEY_START_IN_RELATIVE:
            self.start_in_relative = _as_int(value)
        elif key == KEY_ACTIVE_PROGRAM:
            self.active_program = displayvalue or extract_enum_value(value)
        elif key == KEY_SELECTED_PROGRAM:
            self.selected_program = displayvalue or extract_enum_value(value)
        elif self._is_tracked_key(key):
            attribute = key.rsplit(".", 1)[-1]
            self.attributes[attribute] = _normalize(value)
            if unit:
                self.units[attribute] = unit
        else:
            _LOGGER.debug("Unhandled event: %s = %s", key, value)
            self.last_unhandled_event = f"{key}={value}"[:200]

    def _is_tracked_key(self, key: str) -> bool:
        if any(key.startswith(prefix) for prefix in self.key_prefixes):
            return True
        return ".Option." in key or ".Event." in key

    def _should_update_timing(self, seconds: int | None) -> bool:
        """Filter the spurious zero remaining time some appliances send mid-run."""
        if seconds == 0 and self.operation_state == "Run":
            current = self.remaining_program_time
            if current and current > SPURIOUS_ZERO_THRESHOLD:
                _LOGGER.debug("Ignoring spurious zero remaining time during Run")
                return False
        return True

    def _reset_program_state(self) -> None:
        _LOGGER.debug("Resetting program state for %s", self.name)
        self.remaining_program_time = 0
        self.elapsed_program_time = 0
        self.program_progress = 0
        self.start_in_relative = None

    async def initialize(self) -> None:
        """Fetch the initial state and schedule the program list fetch."""
        await async_fetch_state(self.api, self, check_active_program=True)
        if self.supports_programs:
            self._programs_task = self.hass.async_create_task(
                self._delayed_fetch_programs(),
                name=f"{self.device_id} available programs",
            )

    async def _delayed_fetch_programs(self) -> None:
        await asyncio.sleep(PROGRAMS_FETCH_DELAY)
        try:
            await self.fetch_available_programs()
        except CommandError as ex:
            # Some appliances expose no programs at all
            _LOGGER.debug("Cannot fetch programs for %s: %s", self.appliance_id, ex)

    async def async_shutdown(self) -> None:
        """Cancel the pending program list fetch."""
        if self._programs_task and not self._programs_task.done():
            self._programs_task.cancel()
        self._programs_task = None

    def update_connection_status(self, status: str) -> None:
        """Record an appliance CONNECTED or DISCONNECTED event."""
        self.connection_status = status
        self.connected = status == EVENT_CONNECTED
        self._notify()

    def parse_status(self, items: list[dict[str, Any]]) -> None:
        """Apply a status snapshot."""
        self._apply_items(items)

    def parse_settings(self, items: list[dict[str, Any]]) -> None:
        """Apply a settings snapshot."""
        self._apply_items(items)

    def parse_active_program(self, program: dict[str, Any]) -> None:
        """Apply the active program and its options."""
        name = program.get("name") or extract_enum_value(program.get("key"))
        if name:
            self.active_program = name
        options = program.get("options")
        if isinstance(options, list):
            self._apply_items(options)
        else:
            self._notify()

    def parse_available_programs(self, programs: list[dict[str, Any]]) -> None:
        """Apply the available program list."""
        program_map = {}
        for program in programs or []:
            key = program.get("key")
            if not key:
                continue
            program_map[program.get("name") or extract_enum_value(key)] = key
        self.program_map = program_map
        self.available_programs = list(program_map)
        _LOGGER.info(
            "Found %s available programs for %s: %s",
            len(self.available_programs),
            self.name,
            ", ".join(self.available_programs),
        )
        self._notify()

    def parse_available_options(self, options: list[dict[str, Any]]) -> None:
        """Apply the options of one available program."""
        self.available_options = [
            option.get("name") or extract_enum_value(option.get("key"))
            for option in options or []
            if option.get("key")
        ]
        self._notify()

    def build_program_key(self, program: str) -> str:
        """Return the full program key for a short or display name."""
        if "." in program:
            return program
        if program in self.program_map:
            return self.program_map[program]
        if self.program_namespace:
            return f"{self.program_namespace}.{program}"
        return program

    async def _command(self, call: Awaitable[Any], success: str) -> None:
        try:
            await call
        except CommandError as ex:
            self.last_command_status = f"Failed: {ex}"
            self._notify()
            raise
        self.last_command_status = success
        self._notify()

    async def start_program(
        self, program: str, options: list[dict[str, Any]] | None = None
    ) -> None:
        """Start a program by key or name."""
        key = self.build_program_key(program)
        await self._command(
            self.api.start_program(self.appliance_id, key, options),
            f"Program started: {key}",
        )

    async def stop_program(self) -> None:
        """Stop the running program."""
        await self._command(
            self.api.stop_program(self.appliance_id), "Program stopped"
        )

    async def set_power_state(self, on: bool) -> None:
        """Switch the appliance on or off."""
        await self._command(
            self.api.set_power_state(self.appliance_id, on),
            f"Power {'on' if on else 'off'}",
        )

    async def set_selected_program(
        self, program: str, options: list[dict[str, Any]] | None = None
    ) -> None:
        """Select a program without starting it."""
        key = self.build_program_key(program)
        await self._command(
            self.api.set_selected_program(self.appliance_id, key, options),
            f"Program selected: {key}",
        )

    async def set_selected_program_option(self, key: str, value: Any) -> None:
        """Set an option of the selected program."""
        await self._command(
            self.api.set_selected_program_option(self.appliance_id, key, value),
            f"Option set: {key}",
        )

    async def set_setting(self, key: str, value: Any) -> None:
        """Write a setting."""
        await self._command(
            self.api.set_setting(self.appliance_id, key, value),
            f"Setting changed: {key}",
        )

    async def send_command(self, key: str) -> None:
        """Send a command such as PauseProgram."""
        await self._command(
            self.api.send_command(self.appliance_id, key), f"Command sent: {key}"
        )

    async def fetch_available_programs(self) -> None:
        """Fetch and store the available programs."""
        self.parse_available_programs(
            await self.api.get_available_programs(self.appliance_id)
        )

    async def fetch_available_program_options(self, program: str) -> None:
        """Fetch and store the options of one available program."""
        key = self.build_program_key(program)
        self.parse_available_options(
            await self.api.get_available_program_options(self.appliance_id, key)
        )


class CleaningRobotHandle(HomeApplianceHandle):
    """CleaningRobot handle."""

    key_prefixes = (
        "ConsumerProducts.CleaningRobot.",
        "BSH.Common.Status.BatteryLevel",
        "BSH.Common.Status.BatteryChargingState",
    )
    program_namespace = "ConsumerProducts.CleaningRobot.Program.Cleaning"
    value_attributes = {"BatteryLevel": "Battery level"}


class CoffeeMakerHandle(HomeApplianceHandle):
    """CoffeeMaker handle."""

    key_prefixes = ("ConsumerProducts.CoffeeMaker.",)
    program_namespace = "ConsumerProducts.CoffeeMaker.Program.Beverage"
    value_attributes = {"BeverageCounterCoffee": "Coffee counter"}


class CookProcessorHandle(HomeApplianceHandle):
    """CookProcessor handle."""

    key_prefixes = ("ConsumerProducts.CookProcessor.",)
    program_namespace = "ConsumerProducts.CookProcessor.Program"


class CooktopHandle(HomeApplianceHandle):
    """Cooktop handle."""

    key_prefixes = ("Cooking.Hob.",)
    supports_programs = False


class DishwasherHandle(HomeApplianceHandle):
    """Dishwasher handle."""

    key_prefixes = ("Dishcare.Dishwasher.",)
    program_namespace = "Dishcare.Dishwasher.Program"
    value_attributes = {
        "RinseAidNearlyEmpty": "Rinse aid nearly empty",
        "SaltNearlyEmpty": "Salt nearly empty",
    }


class DryerHandle(HomeApplianceHandle):
    """Dryer handle."""

    key_prefixes = ("LaundryCare.Dryer.", "LaundryCare.Common.")
    program_namespace = "LaundryCare.Dryer.Program"
    value_attributes = {"DryingTarget": "Drying target"}


class FridgeFreezerHandle(HomeApplianceHandle):
    """FridgeFreezer handle."""

    key_prefixes = ("Refrigeration.",)
    supports_programs = False
    value_attributes = {
        "TemperatureRefrigerator": "Refrigerator temperature",
        "TemperatureFreezer": "Freezer temperature",
        "SetpointTemperatureRefrigerator": "Refrigerator setpoint",
        "SetpointTemperatureFreezer": "Freezer setpoint",
    }


class HoodHandle(HomeApplianceHandle):
    """Hood handle."""

    key_prefixes = ("Cooking.Hood.", "Cooking.Common.")
    program_namespace = "Cooking.Common.Program.Hood"
    value_attributes = {"VentingLevel": "Venting level"}


class OvenHandle(HomeApplianceHandle):
    """Oven handle."""

    key_prefixes = ("Cooking.Oven.",)
    program_namespace = "Cooking.Oven.Program.HeatingMode"
    value_attributes = {
        "CurrentCavityTemperature": "Cavity temperature",
        "SetpointTemperature": "Setpoint temperature",
    }


class WarmingDrawerHandle(HomeApplianceHandle):
    """WarmingDrawer handle."""

    key_prefixes = ("Cooking.Oven.Option.WarmingLevel",)
    program_namespace = "Cooking.Oven.Program.WarmingDrawer"
    value_attributes = {"WarmingLevel": "Warming level"}


class WasherHandle(HomeApplianceHandle):
    """Washer handle."""

    key_prefixes = ("LaundryCare.Washer.", "LaundryCare.Common.")
    program_namespace = "LaundryCare.Washer.Program"
    value_attributes = {"Temperature": "Temperature", "SpinSpeed": "Spin speed"}


class WasherDryerHandle(HomeApplianceHandle):
    """WasherDryer handle."""

    key_prefixes = (
        "LaundryCare.WasherDryer.",
        "LaundryCare.Washer.",
        "LaundryCare.Dryer.",
        "LaundryCare.Common.",
    )
    program_namespace = "LaundryCare.WasherDryer.Program"
    value_attributes = {
        "Temperature": "Temperature",
        "SpinSpeed": "Spin speed",
        "DryingTarget": "Drying target",
    }


APPLIANCE_HANDLERS: dict[str, type[HomeApplianceHandle]] = {
    "CleaningRobot": CleaningRobotHandle,
    "CoffeeMaker": CoffeeMakerHandle,
    "CookProcessor": CookProcessorHandle,
    "Cooktop": CooktopHandle,
    "Dishwasher": DishwasherHandle,
    "Dryer": DryerHandle,
    "Freezer": FridgeFreezerHandle,
    "FridgeFreezer": FridgeFreezerHandle,
    "Hob": CooktopHandle,
    "Hood": HoodHandle,
    "Oven": OvenHandle,
    "Refrigerator": FridgeFreezerHandle,
    "Washer": WasherHandle,
    "WasherDryer": WasherDryerHandle,
    "WarmingDrawer": WarmingDrawerHandle,
    "WineCooler": FridgeFreezerHandle,
}


def create_handle(
    hass: HomeAssistant,
    api: HomeConnectApiClient,
    descriptor: ApplianceDescriptor,
) -> HomeApplianceHandle | None:
    """Create the handle for a descriptor, None if the type is unsupported."""
    handler = APPLIANCE_HANDLERS.get(descriptor.appliance_type)
    if handler is None:
        return None
    return handler(hass, api, descriptor)
