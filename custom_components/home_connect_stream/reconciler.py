"""Keeps the local appliance handles in line with the selected appliances."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Mapping

from homeassistant.core import HomeAssistant

from .api import ApplianceDescriptor, HomeConnectApiClient
from .appliance import (
    APPLIANCE_HANDLERS,
    ApplianceHandle,
    create_handle,
    device_id_for,
)
from .const import INITIALIZE_DELAY, STREAM_DEVICE_ID
from .util import CommandError

_LOGGER: logging.Logger = logging.getLogger(__package__)


@dataclass
class ReconciliationPlan:
    """Operations needed to reach the desired appliance set."""

    create: list[ApplianceDescriptor] = field(default_factory=list)
    retain: list[str] = field(default_factory=list)
    delete: list[str] = field(default_factory=list)
    unsupported: list[ApplianceDescriptor] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        """Return True when nothing has to be created or deleted."""
        return not self.create and not self.delete


def plan_reconciliation(
    desired_ids: Iterable[str],
    descriptors: Mapping[str, ApplianceDescriptor],
    existing_ids: Iterable[str],
    supported_types: Iterable[str] = APPLIANCE_HANDLERS,
) -> ReconciliationPlan:
    """Diff the desired appliances against the existing handles.

    Retained handles are never touched and the stream singleton is never
    deleted.
    """
    supported = set(supported_types)
    remaining = {
        device_id for device_id in existing_ids if device_id != STREAM_DEVICE_ID
    }
    plan = ReconciliationPlan()

    for appliance_id in dict.fromkeys(desired_ids):
        device_id = device_id_for(appliance_id)
        if device_id in remaining:
            remaining.discard(device_id)
            plan.retain.append(device_id)
            continue
        descriptor = descriptors.get(appliance_id)
        if descriptor is None:
            plan.missing.append(appliance_id)
        elif descriptor.appliance_type not in supported:
            plan.unsupported.append(descriptor)
        else:
            plan.create.append(descriptor)

    plan.delete = sorted(remaining)
    return plan


class DeviceReconciler:
    """Applies reconciliation plans to the shared handle map."""

    def __init__(
        self,
        hass: HomeAssistant,
        api: HomeConnectApiClient,
        handles: dict[str, ApplianceHandle],
    ) -> None:
        """Initialize the reconciler."""
        self.hass = hass
        self.api = api
        self.handles = handles
        self.descriptors: dict[str, ApplianceDescriptor] = {}
        self.on_created: Callable[[list[ApplianceHandle]], None] | None = None
        self.on_removed: Callable[[list[str]], None] | None = None
        self.connect: Callable[[], Awaitable[bool]] | None = None
        self._init_tasks: set[asyncio.Task] = set()

    async def async_refresh_descriptors(self) -> dict[str, ApplianceDescriptor]:
        """Fetch the appliance list of the account."""
        appliances = await self.api.get_appliances()
        self.descriptors = {
            descriptor.appliance_id: descriptor for descriptor in appliances
        }
        _LOGGER.debug("Populated descriptors with %s appliance(s)", len(appliances))
        return self.descriptors

    async def async_reconcile(self, desired_ids: Iterable[str]) -> ReconciliationPlan:
        """Create, keep and remove handles to match the selection."""
        desired = list(desired_ids)
        if not self.descriptors and desired:
            _LOGGER.debug("Descriptor cache is empty - fetching appliance list")
            try:
                await self.async_refresh_descriptors()
            except CommandError as ex:
                _LOGGER.warning("Could not fetch appliance list: %s", ex)

        plan = plan_reconciliation(desired, self.descriptors, self.handles)

        for descriptor in plan.unsupported:
            _LOGGER.error(
                "Unsupported appliance type %s for %s - skipping",
                descriptor.appliance_type,
                descriptor.name,
            )
        for appliance_id in plan.missing:
            _LOGGER.warning(
                "Could not find device info for %s - skipping", appliance_id
            )

        created: list[ApplianceHandle] = []
        for descriptor in plan.create:
            try:
                handle = create_handle(self.hass, self.api, descriptor)
            except Exception as ex:
                _LOGGER.error("Failed to create handle for %s: %s", descriptor.name, ex)
                continue
            if handle is None:
                continue
            _LOGGER.info("Creating %s device %s", descriptor.appliance_type, handle.name)
            self.handles[handle.device_id] = handle
            created.append(handle)

        removed: list[str] = []
        for device_id in plan.delete:
            handle = self.handles.pop(device_id, None)
            if handle is None:
                continue
            _LOGGER.info("Removing device: %s", handle.name)
            await handle.async_shutdown()
            removed.append(device_id)

        if removed and self.on_removed:
            self.on_removed(removed)
        if created and self.on_created:
            self.on_created(created)

        if self.connect:
            await self.connect()

        if created:
            self.schedule_initialization(created)
        return plan

    def schedule_initialization(self, handles: list[ApplianceHandle]) -> asyncio.Task:
        """Initialize new handles once the stream had time to attach."""
        task = self.hass.async_create_task(
            self._initialize_later(handles), name=f"{STREAM_DEVICE_ID} initialize"
        )
        self._init_tasks.add(task)
        task.add_done_callback(self._init_tasks.discard)
        return task

    async def _initialize_later(self, handles: list[ApplianceHandle]) -> None:
        await asyncio.sleep(INITIALIZE_DELAY)
        _LOGGER.info("Initializing %s new device(s)", len(handles))
        for handle in handles:
            if self.handles.get(handle.device_id) is not handle:
                continue
            try:
                await handle.initialize()
            except Exception as ex:
                _LOGGER.warning("Failed to initialize %s: %s", handle.name, ex)

    async def async_cancel_pending(self) -> None:
        """Cancel scheduled initializations."""
        tasks = list(self._init_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._init_tasks.clear()
