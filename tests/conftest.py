"""Shared pytest fixtures for the overlay sync manager test suite."""

import sys
from pathlib import Path

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from device_registry import Capability, InMemoryDevice, InMemoryDeviceRegistry  # noqa: E402
from overlay_model import DictSettingsStore  # noqa: E402
from overlay_reconciler import ListenerReconciler  # noqa: E402

CAMERA_ID = "camera-1"


class RecordingSink:
    """Update sink that records every update it receives."""

    def __init__(self):
        self.updates = []

    async def on_update(self, update):
        self.updates.append(update)

    def for_overlay(self, overlay_id):
        return [u for u in self.updates if u.overlay_id == overlay_id]


@pytest.fixture
def thermometer() -> InMemoryDevice:
    return InMemoryDevice(
        "thermo-a",
        name="Thermometer A",
        capabilities=[Capability.THERMOMETER],
        temperature_unit="C",
        values={Capability.THERMOMETER: 21.456},
    )


@pytest.fixture
def registry(thermometer) -> InMemoryDeviceRegistry:
    return InMemoryDeviceRegistry(
        [
            thermometer,
            InMemoryDevice(
                "thermo-b",
                name="Thermometer B",
                capabilities=[Capability.THERMOMETER],
                temperature_unit="F",
                values={Capability.THERMOMETER: 70},
            ),
            InMemoryDevice(
                "hygro",
                name="Hygrometer",
                capabilities=[Capability.HUMIDITY_SENSOR],
                values={Capability.HUMIDITY_SENSOR: 55.55},
            ),
            InMemoryDevice(
                "combo",
                name="Combo sensor",
                capabilities=[Capability.HUMIDITY_SENSOR, Capability.THERMOMETER],
                temperature_unit="C",
                values={Capability.THERMOMETER: 19.0, Capability.HUMIDITY_SENSOR: 40},
            ),
            InMemoryDevice("doorbell", name="Doorbell button"),
            InMemoryDevice(CAMERA_ID, capabilities=[Capability.OBJECT_DETECTION]),
        ]
    )


@pytest.fixture
def settings() -> DictSettingsStore:
    return DictSettingsStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def reconciler(registry, sink) -> ListenerReconciler:
    return ListenerReconciler(CAMERA_ID, registry, sink)
