"""Unit tests for the in-memory device registry."""

import pytest

from device_registry import (
    Capability,
    InMemoryDevice,
    InMemoryDeviceRegistry,
    UnresolvedDeviceError,
    get_device,
)


class TestGetDevice:
    def test_resolves_known_device(self, registry):
        assert get_device(registry, "thermo-a").name == "Thermometer A"

    @pytest.mark.parametrize("device_id", ["missing", None, ""])
    def test_unknown_device_raises(self, registry, device_id):
        with pytest.raises(UnresolvedDeviceError) as exc_info:
            get_device(registry, device_id)
        assert exc_info.value.device_id == device_id


class TestInMemoryDevice:
    @pytest.mark.asyncio
    async def test_emit_updates_value_and_notifies(self):
        device = InMemoryDevice("t", capabilities=[Capability.THERMOMETER])
        received = []

        async def callback(data):
            received.append(data)

        device.subscribe(Capability.THERMOMETER, callback)
        await device.emit(Capability.THERMOMETER, 18.5)

        assert received == [18.5]
        assert await device.read_value(Capability.THERMOMETER) == 18.5

    @pytest.mark.asyncio
    async def test_emit_only_reaches_matching_capability(self):
        device = InMemoryDevice(
            "t", capabilities=[Capability.THERMOMETER, Capability.HUMIDITY_SENSOR]
        )
        received = []

        async def callback(data):
            received.append(data)

        device.subscribe(Capability.HUMIDITY_SENSOR, callback)
        await device.emit(Capability.THERMOMETER, 18.5)

        assert received == []

    @pytest.mark.asyncio
    async def test_release_is_idempotent_and_stops_delivery(self):
        device = InMemoryDevice("t", capabilities=[Capability.THERMOMETER])
        received = []

        async def callback(data):
            received.append(data)

        subscription = device.subscribe(Capability.THERMOMETER, callback)
        subscription.release()
        subscription.release()
        await device.emit(Capability.THERMOMETER, 18.5)

        assert received == []
        assert device.subscription_count == 0

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_others(self):
        device = InMemoryDevice("t", capabilities=[Capability.THERMOMETER])
        received = []

        async def broken(data):
            raise RuntimeError("boom")

        async def callback(data):
            received.append(data)

        device.subscribe(Capability.THERMOMETER, broken)
        device.subscribe(Capability.THERMOMETER, callback)
        await device.emit(Capability.THERMOMETER, 1)

        assert received == [1]

    def test_capabilities_accept_names(self):
        device = InMemoryDevice("t", capabilities=["HumiditySensor"])
        assert device.capabilities == frozenset({Capability.HUMIDITY_SENSOR})

    def test_redefine_keeps_subscriptions(self):
        device = InMemoryDevice("t", capabilities=[Capability.THERMOMETER])

        async def callback(data):
            pass

        device.subscribe(Capability.THERMOMETER, callback)
        device.redefine(name="Renamed", capabilities=[Capability.HUMIDITY_SENSOR])

        assert device.name == "Renamed"
        assert device.capabilities == frozenset({Capability.HUMIDITY_SENSOR})
        assert device.subscription_count == 1


class TestInMemoryDeviceRegistry:
    def test_sensor_devices_filter(self, registry):
        ids = {device.id for device in registry.sensor_devices()}
        assert ids == {"thermo-a", "thermo-b", "hygro", "combo"}

    def test_add_and_remove(self):
        registry = InMemoryDeviceRegistry()
        registry.add(InMemoryDevice("x"))

        assert "x" in registry
        assert registry.remove("x").id == "x"
        assert registry.resolve("x") is None
        assert registry.remove("x") is None

    def test_devices_lists_every_device(self, registry):
        ids = {device.id for device in registry.devices()}
        assert ids == {"thermo-a", "thermo-b", "hygro", "combo", "doorbell", "camera-1"}
