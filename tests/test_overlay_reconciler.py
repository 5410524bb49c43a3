"""Unit tests for the listener reconciler."""

import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import CAMERA_ID, RecordingSink
from device_registry import Capability, InMemoryDevice, InMemoryDeviceRegistry
from overlay_model import ListenerKind, OverlaySlot, OverlayType
from overlay_reconciler import ListenerReconciler


class CallLog:
    """Wraps registry devices so subscribe/release calls are recorded in order."""

    def __init__(self, registry: InMemoryDeviceRegistry):
        self.calls = []
        self._registry = registry

    def resolve(self, device_id):
        device = self._registry.resolve(device_id)
        if device is None:
            return None
        log = self

        class RecordedDevice:
            id = device.id
            name = device.name
            temperature_unit = device.temperature_unit
            capabilities = device.capabilities

            @staticmethod
            def subscribe(capability, callback):
                log.calls.append(("subscribe", device.id, capability))
                subscription = device.subscribe(capability, callback)
                original_release = subscription.release

                def release():
                    log.calls.append(("release", device.id, capability))
                    original_release()

                subscription.release = release
                return subscription

            @staticmethod
            async def read_value(capability):
                return await device.read_value(capability)

        return RecordedDevice()

    def count(self, kind):
        return sum(1 for call in self.calls if call[0] == kind)


@pytest.fixture
def call_log(registry) -> CallLog:
    return CallLog(registry)


@pytest.fixture
def logged_reconciler(call_log, sink) -> ListenerReconciler:
    return ListenerReconciler(CAMERA_ID, call_log, sink)


class TestDesiredBinding:
    def test_static_text_needs_no_listener(self, reconciler):
        binding, device = reconciler.desired_binding(OverlaySlot("1", text="Hello"))
        assert binding is None
        assert device is None

    def test_temperature_device(self, reconciler):
        binding, device = reconciler.desired_binding(
            OverlaySlot("1", type=OverlayType.DEVICE, device_id="thermo-a")
        )
        assert binding.listener_kind == ListenerKind.TEMPERATURE
        assert binding.source_device_id == "thermo-a"
        assert binding.device_id == "thermo-a"
        assert device.id == "thermo-a"

    def test_humidity_device(self, reconciler):
        binding, _ = reconciler.desired_binding(
            OverlaySlot("1", type=OverlayType.DEVICE, device_id="hygro")
        )
        assert binding.listener_kind == ListenerKind.HUMIDITY

    def test_temperature_takes_precedence_over_humidity(self, reconciler):
        binding, _ = reconciler.desired_binding(
            OverlaySlot("1", type=OverlayType.DEVICE, device_id="combo")
        )
        assert binding.listener_kind == ListenerKind.TEMPERATURE

    def test_device_without_sensor_capability(self, reconciler):
        binding, _ = reconciler.desired_binding(
            OverlaySlot("1", type=OverlayType.DEVICE, device_id="doorbell")
        )
        assert binding is None

    def test_face_detection_listens_on_own_camera(self, reconciler):
        binding, device = reconciler.desired_binding(
            OverlaySlot("1", type=OverlayType.FACE_DETECTION, device_id="thermo-a")
        )
        assert binding.listener_kind == ListenerKind.FACE
        assert binding.source_device_id == CAMERA_ID
        assert binding.device_id is None
        assert device.id == CAMERA_ID


class TestReconcile:
    @pytest.mark.asyncio
    async def test_static_text_is_pushed_once(self, reconciler, settings, sink):
        settings.put("overlay:1:text", "Hello")

        first = await reconciler.reconcile(["1"], settings)
        second = await reconciler.reconcile(["1"], settings)

        assert first["pushed"] == 1
        assert second == {"subscribed": 0, "released": 0, "pushed": 0, "failed": 0}
        assert len(sink.updates) == 1
        update = sink.updates[0]
        assert update.listener_kind is None
        assert update.raw_data == "Hello"
        assert update.suppress_log is True

    @pytest.mark.asyncio
    async def test_static_text_edit_is_pushed(self, reconciler, settings, sink):
        settings.put("overlay:1:text", "Hello")
        await reconciler.reconcile(["1"], settings)

        settings.put("overlay:1:text", "Goodbye")
        result = await reconciler.reconcile(["1"], settings)

        assert result["pushed"] == 1
        assert sink.updates[-1].raw_data == "Goodbye"

    @pytest.mark.asyncio
    async def test_switch_from_text_to_device(self, logged_reconciler, call_log, settings, sink):
        settings.put("overlay:1:text", "Hello")
        await logged_reconciler.reconcile(["1"], settings)
        sink.updates.clear()

        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "thermo-a")
        result = await logged_reconciler.reconcile(["1"], settings)

        assert call_log.calls == [("subscribe", "thermo-a", Capability.THERMOMETER)]
        assert result["subscribed"] == 1
        assert len(sink.updates) == 1
        update = sink.updates[0]
        assert update.listener_kind == ListenerKind.TEMPERATURE
        assert update.raw_data == 21.456
        assert update.source_device.temperature_unit == "C"

    @pytest.mark.asyncio
    async def test_idempotent_for_every_overlay_type(self, logged_reconciler, call_log, settings, sink):
        settings.put("overlay:1:text", "Hello")
        settings.put("overlay:2:type", "Device")
        settings.put("overlay:2:device", "thermo-a")
        settings.put("overlay:3:type", "Device")
        settings.put("overlay:3:device", "hygro")
        settings.put("overlay:4:type", "FaceDetection")
        ids = ["1", "2", "3", "4"]

        await logged_reconciler.reconcile(ids, settings)
        calls_after_first = list(call_log.calls)
        updates_after_first = len(sink.updates)
        second = await logged_reconciler.reconcile(ids, settings)

        assert call_log.count("subscribe") == 3
        assert call_log.calls == calls_after_first
        assert len(sink.updates) == updates_after_first
        assert second == {"subscribed": 0, "released": 0, "pushed": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_device_change_releases_then_subscribes(self, logged_reconciler, call_log, settings, sink):
        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "thermo-a")
        await logged_reconciler.reconcile(["1"], settings)
        call_log.calls.clear()
        sink.updates.clear()

        settings.put("overlay:1:device", "thermo-b")
        result = await logged_reconciler.reconcile(["1"], settings)

        assert call_log.calls == [
            ("release", "thermo-a", Capability.THERMOMETER),
            ("subscribe", "thermo-b", Capability.THERMOMETER),
        ]
        assert result["released"] == 1
        assert result["subscribed"] == 1
        assert sink.updates[0].raw_data == 70
        assert logged_reconciler.bindings["1"].device_id == "thermo-b"

    @pytest.mark.asyncio
    async def test_formatting_changes_do_not_resubscribe(self, logged_reconciler, call_log, settings):
        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "thermo-a")
        await logged_reconciler.reconcile(["1"], settings)

        settings.put("overlay:1:maxDecimals", 3)
        settings.put("overlay:1:regex", "${value} degrees")
        await logged_reconciler.reconcile(["1"], settings)

        assert call_log.count("subscribe") == 1
        assert call_log.count("release") == 0

    @pytest.mark.asyncio
    async def test_revert_to_text_releases_and_pushes(self, logged_reconciler, call_log, settings, sink):
        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "thermo-a")
        settings.put("overlay:1:text", "Hello")
        await logged_reconciler.reconcile(["1"], settings)
        sink.updates.clear()

        settings.put("overlay:1:type", "Text")
        result = await logged_reconciler.reconcile(["1"], settings)

        assert call_log.calls[-1] == ("release", "thermo-a", Capability.THERMOMETER)
        assert result["released"] == 1
        assert "1" not in logged_reconciler.bindings
        assert [u.raw_data for u in sink.updates] == ["Hello"]
        assert sink.updates[0].suppress_log is True

    @pytest.mark.asyncio
    async def test_missing_device_is_not_fatal(self, reconciler, settings, sink):
        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "does-not-exist")

        result = await reconciler.reconcile(["1"], settings)

        assert result == {"subscribed": 0, "released": 0, "pushed": 0, "failed": 0}
        assert reconciler.bindings == {}
        assert sink.updates == []

    @pytest.mark.asyncio
    async def test_unset_device_is_not_fatal(self, reconciler, settings):
        settings.put("overlay:1:type", "Device")

        result = await reconciler.reconcile(["1"], settings)

        assert result["failed"] == 0
        assert reconciler.bindings == {}

    @pytest.mark.asyncio
    async def test_device_disappearing_releases_and_recovers(self, reconciler, registry, settings, thermometer):
        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "thermo-a")
        await reconciler.reconcile(["1"], settings)
        assert thermometer.subscription_count == 1

        registry.remove("thermo-a")
        result = await reconciler.reconcile(["1"], settings)
        assert result["released"] == 1
        assert thermometer.subscription_count == 0
        assert "1" not in reconciler.bindings

        registry.add(thermometer)
        result = await reconciler.reconcile(["1"], settings)
        assert result["subscribed"] == 1
        assert thermometer.subscription_count == 1

    @pytest.mark.asyncio
    async def test_capability_change_on_same_device_resubscribes(self, reconciler, settings, thermometer):
        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "thermo-a")
        await reconciler.reconcile(["1"], settings)

        thermometer.redefine(capabilities=[Capability.HUMIDITY_SENSOR])
        result = await reconciler.reconcile(["1"], settings)

        assert result["released"] == 1
        assert result["subscribed"] == 1
        assert reconciler.bindings["1"].listener_kind == ListenerKind.HUMIDITY
        assert thermometer.subscription_count == 1

    @pytest.mark.asyncio
    async def test_face_detection_event(self, reconciler, registry, settings, sink):
        settings.put("overlay:1:type", "FaceDetection")
        settings.put("overlay:1:regex", "${value}")
        result = await reconciler.reconcile(["1"], settings)

        # Face detection has no current value to push
        assert result["subscribed"] == 1
        assert result["pushed"] == 0

        data = {"detections": [{"className": "face", "label": "Alice"}]}
        await registry.resolve(CAMERA_ID).emit(Capability.OBJECT_DETECTION, data)

        assert len(sink.updates) == 1
        assert sink.updates[0].listener_kind == ListenerKind.FACE
        assert sink.updates[0].raw_data == data

    @pytest.mark.asyncio
    async def test_events_are_forwarded_to_sink(self, reconciler, settings, sink, thermometer):
        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "thermo-a")
        await reconciler.reconcile(["1"], settings)

        await thermometer.emit(Capability.THERMOMETER, 23.0)

        assert [u.raw_data for u in sink.updates] == [21.456, 23.0]

    @pytest.mark.asyncio
    async def test_stale_callbacks_are_dropped(self, reconciler, settings, sink, thermometer):
        captured = []
        original_subscribe = thermometer.subscribe

        def capturing_subscribe(capability, callback):
            captured.append(callback)
            return original_subscribe(capability, callback)

        thermometer.subscribe = capturing_subscribe
        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "thermo-a")
        await reconciler.reconcile(["1"], settings)

        settings.put("overlay:1:device", "thermo-b")
        await reconciler.reconcile(["1"], settings)
        sink.updates.clear()

        # A registry that keeps delivering after release must not reach the sink
        await captured[0](99.9)

        assert sink.updates == []

    @pytest.mark.asyncio
    async def test_failure_in_one_slot_does_not_abort_others(self, registry, settings, sink):
        broken = InMemoryDevice("broken", capabilities=[Capability.THERMOMETER])
        broken.subscribe = MagicMock(side_effect=RuntimeError("registry unavailable"))
        registry.add(broken)
        reconciler = ListenerReconciler(CAMERA_ID, registry, sink)

        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "broken")
        settings.put("overlay:2:type", "Device")
        settings.put("overlay:2:device", "thermo-a")
        settings.put("overlay:3:text", "Hello")

        result = await reconciler.reconcile(["1", "2", "3"], settings)

        assert result["failed"] == 1
        assert result["subscribed"] == 1
        assert set(reconciler.bindings) == {"2"}
        assert {u.overlay_id for u in sink.updates} == {"2", "3"}

    @pytest.mark.asyncio
    async def test_sink_errors_are_contained(self, registry, settings):
        class FailingSink:
            async def on_update(self, update):
                raise ConnectionError("camera offline")

        reconciler = ListenerReconciler(CAMERA_ID, registry, FailingSink())
        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "thermo-a")

        result = await reconciler.reconcile(["1"], settings)

        assert result["subscribed"] == 1
        assert result["pushed"] == 0
        assert result["failed"] == 0

    @pytest.mark.asyncio
    async def test_dropped_updates_are_not_counted(self, registry, settings):
        class DroppingSink(RecordingSink):
            async def on_update(self, update):
                await super().on_update(update)
                return False

        sink = DroppingSink()
        reconciler = ListenerReconciler(CAMERA_ID, registry, sink)
        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "thermo-a")
        settings.put("overlay:2:text", "Hello")

        result = await reconciler.reconcile(["1", "2"], settings)

        assert len(sink.updates) == 2
        assert result["subscribed"] == 1
        assert result["pushed"] == 0
        assert result["failed"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_passes_do_not_leak_subscriptions(self, registry, settings, thermometer):
        class SlowSink(RecordingSink):
            async def on_update(self, update):
                await asyncio.sleep(0.01)
                await super().on_update(update)

        reconciler = ListenerReconciler(CAMERA_ID, registry, SlowSink())
        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "thermo-a")

        results = await asyncio.gather(
            reconciler.reconcile(["1"], settings),
            reconciler.reconcile(["1"], settings),
        )

        assert sum(r["subscribed"] for r in results) == 1
        assert thermometer.subscription_count == 1

    @pytest.mark.asyncio
    async def test_release_all(self, reconciler, settings, thermometer, registry):
        settings.put("overlay:1:type", "Device")
        settings.put("overlay:1:device", "thermo-a")
        settings.put("overlay:2:type", "FaceDetection")
        await reconciler.reconcile(["1", "2"], settings)

        assert reconciler.release_all() == 2
        assert reconciler.bindings == {}
        assert thermometer.subscription_count == 0
        assert registry.resolve(CAMERA_ID).subscription_count == 0

    @pytest.mark.asyncio
    async def test_release_overlay_forgets_static_text(self, reconciler, settings, sink):
        settings.put("overlay:1:text", "Hello")
        await reconciler.reconcile(["1"], settings)

        assert reconciler.release_overlay("1") is False
        await reconciler.reconcile(["1"], settings)

        assert [u.raw_data for u in sink.updates] == ["Hello", "Hello"]
