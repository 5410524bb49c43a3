"""
Device registry capability used by the listener reconciler.

The reconciler only needs to resolve a device id, inspect its capabilities,
subscribe to one kind of event on it and read its current value. This module
defines that contract and an in-memory registry that satisfies it.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from overlay_model import SENSOR_DEVICE_FILTER

EventCallback = Callable[[Any], Awaitable[None]]


class Capability(str, Enum):
    """Device capabilities (event kinds) an overlay can listen to."""

    THERMOMETER = "Thermometer"
    HUMIDITY_SENSOR = "HumiditySensor"
    OBJECT_DETECTION = "ObjectDetection"


class UnresolvedDeviceError(LookupError):
    """Raised when a device id is not present in the registry."""

    def __init__(self, device_id: Optional[str]):
        self.device_id = device_id
        super().__init__(f"Device {device_id} not found")


class Subscription(Protocol):
    """Cancelable event subscription. ``release()`` must be idempotent."""

    def release(self) -> None: ...


class DeviceHandle(Protocol):
    id: str
    name: str
    temperature_unit: Optional[str]

    @property
    def capabilities(self) -> frozenset: ...

    def subscribe(self, capability: Capability, callback: EventCallback) -> Subscription: ...

    async def read_value(self, capability: Capability) -> Any: ...


class DeviceRegistry(Protocol):
    def resolve(self, device_id: Optional[str]) -> Optional[DeviceHandle]: ...


def get_device(registry: DeviceRegistry, device_id: Optional[str]) -> DeviceHandle:
    """
    Resolve a device or raise.

    Raises:
        UnresolvedDeviceError: If the id is empty or unknown to the registry
    """
    device = registry.resolve(device_id) if device_id else None
    if device is None:
        raise UnresolvedDeviceError(device_id)
    return device


# ============================================================================
# In-memory registry
# ============================================================================


class InMemorySubscription:
    """Subscription handle returned by InMemoryDevice.subscribe."""

    def __init__(self, device: "InMemoryDevice", capability: Capability, callback: EventCallback):
        self.device = device
        self.capability = capability
        self.callback = callback
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.device._detach(self)
        logging.debug(
            f"Released {self.capability.value} subscription on device '{self.device.name}'"
        )


class InMemoryDevice:
    """
    Device whose values are pushed in by the host application.

    Attributes:
        id: Device identifier
        name: Human-readable name (used in logs)
        capabilities: Capabilities the device exposes
        temperature_unit: Unit reported for temperature readings (e.g. "C")
    """

    def __init__(
        self,
        id: str,
        name: Optional[str] = None,
        capabilities: Iterable[Capability] = (),
        temperature_unit: Optional[str] = None,
        values: Optional[dict[Capability, Any]] = None,
    ):
        self.id = id
        self.name = name or id
        self._capabilities = frozenset(Capability(c) for c in capabilities)
        self.temperature_unit = temperature_unit
        self._values: dict[Capability, Any] = dict(values or {})
        self._subscriptions: list[InMemorySubscription] = []

    @property
    def capabilities(self) -> frozenset:
        return self._capabilities

    def redefine(
        self,
        name: Optional[str] = None,
        capabilities: Optional[Iterable[Capability]] = None,
        temperature_unit: Optional[str] = None,
    ) -> None:
        """Update name, capabilities and unit in place; live subscriptions are kept."""
        if name:
            self.name = name
        if capabilities is not None:
            self._capabilities = frozenset(Capability(c) for c in capabilities)
        self.temperature_unit = temperature_unit

    def is_supported_sensor(self) -> bool:
        """True if the device can feed a Device overlay."""
        return any(c.value in SENSOR_DEVICE_FILTER for c in self._capabilities)

    def subscribe(self, capability: Capability, callback: EventCallback) -> InMemorySubscription:
        subscription = InMemorySubscription(self, Capability(capability), callback)
        self._subscriptions.append(subscription)
        return subscription

    def _detach(self, subscription: InMemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def read_value(self, capability: Capability) -> Any:
        return self._values.get(Capability(capability))

    async def emit(self, capability: Capability, data: Any) -> None:
        """
        Record a new value and deliver it to every live subscriber.

        Subscriptions released before delivery starts do not receive it.
        """
        capability = Capability(capability)
        self._values[capability] = data
        targets = [s for s in self._subscriptions if s.capability == capability]
        results = await asyncio.gather(
            *(s.callback(data) for s in targets),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logging.error(
                    f"Event callback for {capability.value} on device '{self.name}' failed: {result}"
                )


class InMemoryDeviceRegistry:
    """Registry of InMemoryDevice instances keyed by id."""

    def __init__(self, devices: Iterable[InMemoryDevice] = ()):
        self._devices: dict[str, InMemoryDevice] = {}
        for device in devices:
            self.add(device)

    def add(self, device: InMemoryDevice) -> InMemoryDevice:
        self._devices[device.id] = device
        return device

    def remove(self, device_id: str) -> Optional[InMemoryDevice]:
        return self._devices.pop(device_id, None)

    def resolve(self, device_id: Optional[str]) -> Optional[InMemoryDevice]:
        if device_id is None:
            return None
        return self._devices.get(device_id)

    def devices(self) -> list[InMemoryDevice]:
        return list(self._devices.values())

    def sensor_devices(self) -> list[InMemoryDevice]:
        """Devices selectable as the source of a Device overlay."""
        return [d for d in self._devices.values() if d.is_supported_sensor()]

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)
