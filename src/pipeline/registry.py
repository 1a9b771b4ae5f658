"""Per-session device registry.

One ``DeviceRegistry`` is created per user session.  It caches the device
resolved for each device class so repeated syncs in the same session do not
hit storage, and it is never shared between users.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from src.pipeline.base import (
    DEFAULT_DEVICE_TYPE,
    DEVICE_CLASS_TYPES,
    Device,
    DeviceClass,
    new_id,
)
from src.pipeline.errors import DeviceNotFound
from src.pipeline.store import HealthStore
from src.pipeline.units import ensure_utc

logger = logging.getLogger("healthsync.pipeline.registry")

# Display names for lazily created devices
_PLACEHOLDER_NAMES: dict[DeviceClass, str] = {
    DeviceClass.PHONE: "Mobile Device",
    DeviceClass.WEARABLE: "Wear OS Device",
    DeviceClass.OTHER: "Other Device",
}


class DeviceRegistry:
    """Resolve and lazily create the devices a user's data is attributed to.

    Args:
        store:   Persistence backend.
        user_id: The session's user.  Every lookup is scoped to this user.
    """

    def __init__(self, store: HealthStore, user_id: UUID) -> None:
        self._store = store
        self.user_id = user_id
        self._cache: dict[DeviceClass, Device] = {}

    async def ensure_device(self, device_class: DeviceClass | str) -> Device:
        """Return the user's device of ``device_class``, creating one if needed.

        Resolution order: session cache, then the user's stored devices whose
        type belongs to the class, then a new placeholder device.  Calling
        this twice for the same class never creates two devices.
        """
        device_class = DeviceClass(device_class)
        cached = self._cache.get(device_class)
        if cached is not None:
            return cached

        accepted = DEVICE_CLASS_TYPES[device_class]
        for device in await self._store.list_devices(self.user_id):
            if device.device_type in accepted and device.is_active:
                logger.debug(
                    "Found existing %s device %s for user %s",
                    device_class.value, device.id, self.user_id,
                )
                self._cache[device_class] = device
                return device

        device = await self._store.insert_device(
            Device(
                id=new_id(),
                user_id=self.user_id,
                device_type=DEFAULT_DEVICE_TYPE[device_class],
                device_name=_PLACEHOLDER_NAMES[device_class],
            )
        )
        logger.info(
            "Created %s device %s for user %s", device_class.value, device.id, self.user_id
        )
        self._cache[device_class] = device
        return device

    async def touch_last_sync(self, device_id: UUID, at: datetime) -> Device:
        """Advance the device's ``last_sync`` to ``at``.

        An ``at`` older than the stored value leaves it unchanged.

        Raises:
            DeviceNotFound: If the device does not belong to this user.
        """
        device = await self.get_device(device_id)
        at = ensure_utc(at)
        if device.last_sync is not None and at <= device.last_sync:
            logger.debug(
                "Ignoring stale last_sync %s for device %s (current %s)",
                at, device_id, device.last_sync,
            )
            return device

        updated = await self._store.update_last_sync(device_id, at)
        if updated is None:
            raise DeviceNotFound(f"Device {device_id} not found")
        for device_class, cached in self._cache.items():
            if cached.id == device_id:
                self._cache[device_class] = updated
        return updated

    async def get_device(self, device_id: UUID) -> Device:
        """Return one of the user's devices.

        Raises:
            DeviceNotFound: If absent or owned by another user.
        """
        device = await self._store.get_device(device_id)
        if device is None or device.user_id != self.user_id:
            raise DeviceNotFound(f"Device {device_id} not found")
        return device

    async def list_devices(self) -> list[Device]:
        return await self._store.list_devices(self.user_id)

    def cached(self, device_class: DeviceClass) -> Device | None:
        return self._cache.get(device_class)

    def clear(self) -> None:
        """Drop the session cache."""
        self._cache.clear()
