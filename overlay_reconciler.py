"""
Listener Reconciler

Keeps one live event subscription per overlay slot in line with the current
overlay settings. Each pass computes the desired listener for every slot,
diffs it against the current binding and performs the minimal
release/subscribe operations to converge. Raw event data is forwarded to an
update sink, which formats and pushes it to the camera.
"""

import asyncio
import itertools
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol

from device_registry import (
    Capability,
    DeviceHandle,
    DeviceRegistry,
    Subscription,
    UnresolvedDeviceError,
    get_device,
)
from overlay_model import ListenerKind, OverlaySlot, OverlayType, SettingsStore, resolve_slot

LISTENER_CAPABILITIES = {
    ListenerKind.TEMPERATURE: Capability.THERMOMETER,
    ListenerKind.HUMIDITY: Capability.HUMIDITY_SENSOR,
    ListenerKind.FACE: Capability.OBJECT_DETECTION,
}

# Listener kinds whose current value is pushed as soon as the subscription opens
READABLE_KINDS = (ListenerKind.TEMPERATURE, ListenerKind.HUMIDITY)

_NOT_PUSHED = object()


@dataclass
class OverlayUpdate:
    """
    Update event handed to the sink.

    Attributes:
        overlay_id: Overlay the update is for
        listener_kind: Listener that produced the data (None for static text)
        raw_data: Raw event data, or the static text for Text overlays
        source_device: Device the data came from
        suppress_log: True for updates that are not event driven
    """

    overlay_id: str
    listener_kind: Optional[ListenerKind]
    raw_data: Any
    source_device: Optional[DeviceHandle] = None
    suppress_log: bool = False


class UpdateSink(Protocol):
    async def on_update(self, update: OverlayUpdate) -> Optional[bool]:
        """Apply an update; returning False means it was dropped or not applied."""


@dataclass
class ListenerBinding:
    """
    Desired or current pairing of an overlay slot to a listener.

    Attributes:
        listener_kind: Kind of events feeding the slot
        source_device_id: Device the subscription is opened on
        device_id: Bound device stamp of a Device overlay (None otherwise)
        subscription: Live subscription (current bindings only)
        generation: Token identifying the subscription that feeds the slot
    """

    listener_kind: ListenerKind
    source_device_id: str
    device_id: Optional[str] = None
    subscription: Optional[Subscription] = None
    generation: int = 0


class ListenerReconciler:
    """
    Owns the listener bindings of one camera's overlay set.

    Args:
        self_device_id: Device id of the camera itself (source of face detections)
        registry: Device registry used to resolve and subscribe to devices
        sink: Receiver of overlay updates
        name: Name used in log messages
    """

    def __init__(
        self,
        self_device_id: str,
        registry: DeviceRegistry,
        sink: UpdateSink,
        name: Optional[str] = None,
    ):
        self.self_device_id = self_device_id
        self.registry = registry
        self.sink = sink
        self.name = name or self_device_id
        self.bindings: dict[str, ListenerBinding] = {}
        self._static_text: dict[str, Any] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._generations = itertools.count(1)

    def desired_binding(self, slot: OverlaySlot) -> tuple[Optional[ListenerBinding], Optional[DeviceHandle]]:
        """
        Compute the listener a slot should currently have.

        Returns:
            Tuple of (binding, source device), or (None, None) when the slot
            needs no listener

        Raises:
            UnresolvedDeviceError: If the bound (or own) device is not in the registry
        """
        if slot.type == OverlayType.DEVICE:
            device = get_device(self.registry, slot.device_id)
            capabilities = device.capabilities
            # Temperature always wins over humidity
            if Capability.THERMOMETER in capabilities:
                kind = ListenerKind.TEMPERATURE
            elif Capability.HUMIDITY_SENSOR in capabilities:
                kind = ListenerKind.HUMIDITY
            else:
                logging.warning(
                    f"[{self.name}] Overlay {slot.overlay_id}: device '{device.name}' "
                    f"exposes no temperature or humidity capability"
                )
                return None, None
            return ListenerBinding(kind, device.id, device_id=slot.device_id), device

        if slot.type == OverlayType.FACE_DETECTION:
            device = get_device(self.registry, self.self_device_id)
            return ListenerBinding(ListenerKind.FACE, device.id), device

        return None, None

    @staticmethod
    def binding_changed(
        slot: OverlaySlot, current: Optional[ListenerBinding], desired: ListenerBinding
    ) -> bool:
        """Template and decimal changes never count, only kind and bound device."""
        if current is None or current.listener_kind != desired.listener_kind:
            return True
        if slot.type == OverlayType.DEVICE:
            return current.device_id != slot.device_id
        return False

    async def reconcile(self, overlay_ids: Iterable[str], settings: SettingsStore) -> dict[str, int]:
        """
        Run one reconciliation pass over all overlay slots.

        Slots are reconciled concurrently and independently; a failure in one
        slot is logged and does not affect the others.

        Args:
            overlay_ids: Overlays to reconcile
            settings: Current overlay settings

        Returns:
            Counts of 'subscribed', 'released', 'pushed' and 'failed' operations
        """
        overlay_ids = list(overlay_ids)
        results = await asyncio.gather(
            *(self._reconcile_overlay(overlay_id, settings) for overlay_id in overlay_ids),
            return_exceptions=True,
        )

        totals: Counter = Counter(subscribed=0, released=0, pushed=0, failed=0)
        for overlay_id, result in zip(overlay_ids, results):
            if isinstance(result, Exception):
                logging.error(f"[{self.name}] Failed to reconcile overlay {overlay_id}: {result}")
                totals["failed"] += 1
            else:
                totals.update(result)

        return dict(totals)

    def _lock_for(self, overlay_id: str) -> asyncio.Lock:
        lock = self._locks.get(overlay_id)
        if lock is None:
            lock = self._locks[overlay_id] = asyncio.Lock()
        return lock

    async def _reconcile_overlay(self, overlay_id: str, settings: SettingsStore) -> Counter:
        counts: Counter = Counter()

        async with self._lock_for(overlay_id):
            slot = resolve_slot(settings, overlay_id)
            try:
                desired, device = self.desired_binding(slot)
            except UnresolvedDeviceError as e:
                logging.warning(f"[{self.name}] Overlay {overlay_id}: {e}")
                desired, device = None, None

            current = self.bindings.get(overlay_id)

            if desired is not None:
                self._static_text.pop(overlay_id, None)
                if not self.binding_changed(slot, current, desired):
                    return counts
                if current is not None:
                    self._drop_binding(overlay_id)
                    counts["released"] += 1
                counts.update(await self._open_binding(overlay_id, desired, device))
                return counts

            if current is not None:
                self._drop_binding(overlay_id)
                counts["released"] += 1

            if slot.type != OverlayType.TEXT:
                self._static_text.pop(overlay_id, None)
                return counts

            if current is None and self._static_text.get(overlay_id, _NOT_PUSHED) == slot.text:
                return counts

            self._static_text[overlay_id] = slot.text
            if await self._push(
                OverlayUpdate(overlay_id, None, slot.text, suppress_log=True)
            ):
                counts["pushed"] += 1

        return counts

    async def _open_binding(
        self, overlay_id: str, binding: ListenerBinding, device: DeviceHandle
    ) -> Counter:
        counts: Counter = Counter()
        kind = binding.listener_kind
        capability = LISTENER_CAPABILITIES[kind]
        generation = binding.generation = next(self._generations)

        async def on_event(data: Any) -> None:
            current = self.bindings.get(overlay_id)
            if current is None or current.generation != generation:
                logging.debug(
                    f"[{self.name}] Overlay {overlay_id}: dropped {kind.value} event "
                    f"from released subscription"
                )
                return
            await self._push(OverlayUpdate(overlay_id, kind, data, source_device=device))

        logging.info(
            f"[{self.name}] Overlay {overlay_id}: starting device '{device.name}' listener "
            f"for type {kind.value} on interface {capability.value}"
        )
        binding.subscription = device.subscribe(capability, on_event)
        self.bindings[overlay_id] = binding
        counts["subscribed"] += 1

        if kind in READABLE_KINDS:
            try:
                value = await device.read_value(capability)
            except Exception as e:
                logging.error(
                    f"[{self.name}] Overlay {overlay_id}: could not read current "
                    f"{kind.value.lower()} of device '{device.name}': {e}"
                )
                return counts
            if await self._push(OverlayUpdate(overlay_id, kind, value, source_device=device)):
                counts["pushed"] += 1

        return counts

    def _drop_binding(self, overlay_id: str) -> None:
        binding = self.bindings.pop(overlay_id, None)
        if binding is None or binding.subscription is None:
            return
        try:
            binding.subscription.release()
        except Exception as e:
            logging.error(
                f"[{self.name}] Overlay {overlay_id}: error releasing "
                f"{binding.listener_kind.value} listener: {e}"
            )
        else:
            logging.info(
                f"[{self.name}] Overlay {overlay_id}: released {binding.listener_kind.value} "
                f"listener on device {binding.source_device_id}"
            )

    async def _push(self, update: OverlayUpdate) -> bool:
        try:
            return await self.sink.on_update(update) is not False
        except Exception as e:
            logging.error(f"[{self.name}] Overlay {update.overlay_id}: update failed: {e}")
            return False

    def release_overlay(self, overlay_id: str) -> bool:
        """Forget an overlay that is no longer configured, releasing its listener."""
        self._static_text.pop(overlay_id, None)
        self._locks.pop(overlay_id, None)
        if overlay_id not in self.bindings:
            return False
        self._drop_binding(overlay_id)
        return True

    def release_all(self) -> int:
        """
        Release every live subscription (camera removed or shutting down).

        Returns:
            Number of bindings released
        """
        overlay_ids = list(self.bindings)
        for overlay_id in overlay_ids:
            self._drop_binding(overlay_id)
        self._static_text.clear()
        return len(overlay_ids)
