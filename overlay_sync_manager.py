#!/usr/bin/env python3
"""
Overlay Sync Manager

Keeps Hikvision camera text overlays in sync with sensor readings, face
detections and static text. Each camera's overlay slots are bound to a data
source through its overlay settings; a reconciliation pass runs at startup,
whenever the configuration file changes and at a configurable interval.

Usage:
    overlay_sync_manager.py config.json                   # Start daemon
    overlay_sync_manager.py --validate config.json        # Validate configuration
    overlay_sync_manager.py --once config.json            # Run single reconciliation pass
    overlay_sync_manager.py --print-settings config.json  # Dump editable overlay settings
"""

import argparse
import asyncio
import json
import logging
import math
import signal
import sys
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional
from xml.sax.saxutils import escape

import httpx
import requests
import urllib3
from requests.auth import HTTPDigestAuth

from device_registry import Capability, InMemoryDevice, InMemoryDeviceRegistry
from overlay_model import (
    DictSettingsStore,
    OverlayKey,
    build_settings_view,
    resolve_slot,
)
from overlay_reconciler import ListenerReconciler, OverlayUpdate
from overlay_template import format_overlay_text

# Suppress SSL warnings for cameras with self-signed certificates
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

# Hikvision cameras reject overlay text longer than this
MAX_OVERLAY_TEXT_LENGTH = 44


# ============================================================================
# Configuration Data Classes
# ============================================================================


@dataclass
class DeviceConfig:
    """
    Configuration for a sensor device made available to overlays.

    Attributes:
        id: Device identifier referenced by overlay:{id}:device settings
        name: Human-readable name (used in logs)
        capabilities: Capability names (Thermometer, HumiditySensor, ObjectDetection)
        temperature: Current temperature reading
        temperature_unit: Unit of the temperature reading (e.g. "C" or "F")
        humidity: Current relative humidity reading
    """

    id: str
    name: str
    capabilities: List[str]
    temperature: Optional[float] = None
    temperature_unit: Optional[str] = None
    humidity: Optional[float] = None


@dataclass
class CameraConfig:
    """
    Configuration for a single Hikvision camera.

    Attributes:
        name: Camera identifier (used in logs and as the face detection source id)
        ip: Camera IP address or hostname
        username: Camera admin username
        password: Camera admin password
        overlay_ids: Overlay slots managed on this camera (typically "1"-"8")
        settings: Overlay settings keyed as overlay:{id}:{field}
        port: Camera HTTP port
        channel: Video channel number
    """

    name: str
    ip: str
    username: str
    password: str
    overlay_ids: List[str]
    settings: dict[str, Any] = field(default_factory=dict)
    port: int = 80
    channel: int = 1


@dataclass
class ConfigurationRoot:
    """
    Top-level configuration object.

    Attributes:
        sync_interval: Seconds between reconciliation passes
        cameras: List of camera configurations
        devices: Sensor devices available to Device overlays
        timeout: HTTP request timeout in seconds
        log_level: Python logging level (DEBUG, INFO, WARNING, ERROR)
        stats_interval: Seconds between statistics reports (None to disable, 0 for auto)
    """

    sync_interval: int
    cameras: List[CameraConfig]
    devices: List[DeviceConfig] = field(default_factory=list)
    timeout: int = 10
    log_level: str = "INFO"
    stats_interval: Optional[int] = None


# ============================================================================
# Configuration Loading and Validation
# ============================================================================


def load_config(config_path: Path) -> ConfigurationRoot:
    """
    Load and parse JSON configuration file.

    Args:
        config_path: Path to JSON configuration file

    Returns:
        Parsed ConfigurationRoot object

    Raises:
        FileNotFoundError: If config file doesn't exist
        json.JSONDecodeError: If JSON is invalid
        KeyError: If required fields are missing
    """
    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    devices = [
        DeviceConfig(
            id=dev["id"],
            name=dev.get("name", dev["id"]),
            capabilities=list(dev.get("capabilities", [])),
            temperature=dev.get("temperature"),
            temperature_unit=dev.get("temperature_unit"),
            humidity=dev.get("humidity"),
        )
        for dev in data.get("devices", [])
    ]

    cameras = [
        CameraConfig(
            name=cam_data["name"],
            ip=cam_data["ip"],
            username=cam_data["username"],
            password=cam_data["password"],
            overlay_ids=[str(oid) for oid in cam_data["overlay_ids"]],
            settings=dict(cam_data.get("settings", {})),
            port=cam_data.get("port", 80),
            channel=cam_data.get("channel", 1),
        )
        for cam_data in data["cameras"]
    ]

    return ConfigurationRoot(
        sync_interval=data["sync_interval"],
        cameras=cameras,
        devices=devices,
        timeout=data.get("timeout", 10),
        log_level=data.get("log_level", "INFO"),
        stats_interval=data.get("stats_interval"),
    )


def validate_config(config: ConfigurationRoot) -> tuple[bool, List[str]]:
    """
    Validate configuration.

    Args:
        config: Configuration to validate

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors = []

    if config.sync_interval <= 0:
        errors.append(f"sync_interval must be > 0, got: {config.sync_interval}")

    if config.timeout <= 0:
        errors.append(f"timeout must be > 0, got: {config.timeout}")

    if config.timeout > config.sync_interval:
        logging.warning(
            f"timeout ({config.timeout}s) is greater than sync_interval ({config.sync_interval}s). "
            f"Pushes may still be pending when the next pass starts."
        )

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if config.log_level not in valid_log_levels:
        errors.append(
            f"log_level must be one of {valid_log_levels}, got: '{config.log_level}'"
        )

    # Devices
    device_ids = [dev.id for dev in config.devices]
    if len(device_ids) != len(set(device_ids)):
        duplicates = [did for did in device_ids if device_ids.count(did) > 1]
        errors.append(f"Duplicate device IDs found: {set(duplicates)}")

    valid_capabilities = [c.value for c in Capability]
    for device in config.devices:
        if not device.id:
            errors.append("Device id must not be empty")
        for capability in device.capabilities:
            if capability not in valid_capabilities:
                errors.append(
                    f"Device '{device.id}': unknown capability '{capability}', "
                    f"expected one of {valid_capabilities}"
                )

    # Cameras
    if not config.cameras:
        errors.append("cameras list must not be empty")

    camera_names = [cam.name for cam in config.cameras]
    if len(camera_names) != len(set(camera_names)):
        duplicates = [name for name in camera_names if camera_names.count(name) > 1]
        errors.append(f"Duplicate camera names found: {set(duplicates)}")

    for camera in config.cameras:
        if not camera.name:
            errors.append("Camera name must not be empty")
        elif camera.name in device_ids:
            errors.append(
                f"Camera '{camera.name}': name collides with a device id "
                f"(camera names identify the face detection source)"
            )
        if not camera.ip:
            errors.append(f"Camera '{camera.name}': IP address must not be empty")
        if not camera.username:
            errors.append(f"Camera '{camera.name}': username must not be empty")
        if not camera.password:
            errors.append(f"Camera '{camera.name}': password must not be empty")

        if not (1 <= camera.port <= 65535):
            errors.append(
                f"Camera '{camera.name}': port must be 1-65535, got: {camera.port}"
            )

        if camera.channel < 1:
            errors.append(
                f"Camera '{camera.name}': channel must be >= 1, got: {camera.channel}"
            )

        if not camera.overlay_ids:
            errors.append(f"Camera '{camera.name}': overlay_ids list must not be empty")

        overlay_ids = camera.overlay_ids
        if len(overlay_ids) != len(set(overlay_ids)):
            duplicates = [oid for oid in overlay_ids if overlay_ids.count(oid) > 1]
            errors.append(
                f"Camera '{camera.name}': Duplicate overlay IDs found: {set(duplicates)}"
            )

        for overlay_id in overlay_ids:
            if not overlay_id or ":" in overlay_id:
                errors.append(
                    f"Camera '{camera.name}': invalid overlay ID '{overlay_id}'"
                )

        for key in camera.settings:
            try:
                overlay_key = OverlayKey.parse(key)
            except ValueError as e:
                errors.append(f"Camera '{camera.name}': {e}")
                continue
            if overlay_key.overlay_id not in overlay_ids:
                errors.append(
                    f"Camera '{camera.name}': setting '{key}' refers to "
                    f"unconfigured overlay '{overlay_key.overlay_id}'"
                )

    is_valid = len(errors) == 0
    return is_valid, errors


# ============================================================================
# Logging Setup
# ============================================================================


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure Python logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce httpx logging noise (hide digest auth 401 challenges)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def camera_address(camera: CameraConfig) -> str:
    """Return host:port for a camera, honouring a port embedded in the ip field."""
    if ":" in camera.ip:
        return camera.ip
    return f"{camera.ip}:{camera.port}"


# ============================================================================
# Hikvision ISAPI Clients
# ============================================================================


def overlay_url(address: str, channel: int, overlay_id: str) -> str:
    return f"http://{address}/ISAPI/System/Video/inputs/channels/{channel}/overlays/text/{overlay_id}"


class HikvisionOverlayAsync:
    """
    Async client for Hikvision camera ISAPI text overlay endpoints.
    Uses httpx for non-blocking requests with digest auth support.

    Meant to be kept open across reconciliation passes for connection reuse.
    """

    _XML_TEMPLATE = '<?xml version="1.0" encoding="UTF-8"?>\n<TextOverlay version="2.0" xmlns="http://www.hikvision.com/ver20/XMLSchema">\n    <id>{}</id>\n    <enabled>{}</enabled>\n    <displayText>{}</displayText>\n</TextOverlay>'

    def __init__(self, address: str, username: str, password: str, channel: int = 1):
        """
        Initialize async Hikvision Overlay client.

        Args:
            address: Camera host with port (e.g. "192.168.1.64:80")
            username: Camera username
            password: Camera password
            channel: Video channel number (default: 1)
        """
        self.address = address
        self.username = username
        self.password = password
        self.channel = channel
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def initialize(self):
        """Create the underlying httpx client. Safe to call more than once."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                auth=httpx.DigestAuth(self.username, self.password),
                verify=False,
                timeout=30.0,
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    def build_overlay_xml(self, overlay_id: str, text: str, enable: bool = True) -> str:
        return self._XML_TEMPLATE.format(
            escape(overlay_id), "true" if enable else "false", escape(text)
        )

    async def update_overlay_text_fast(
        self,
        overlay_id: str,
        new_text: str,
        enable: bool = True,
        timeout: int = 10,
    ) -> bool:
        """
        Replace an overlay's text with a minimal TextOverlay document.

        Args:
            overlay_id: Overlay ID
            new_text: New text to display
            enable: Enable the overlay if True
            timeout: Request timeout in seconds

        Returns:
            True on success, False on error
        """
        await self.initialize()

        try:
            response = await self._client.put(
                overlay_url(self.address, self.channel, overlay_id),
                content=self.build_overlay_xml(overlay_id, new_text, enable),
                headers={"Content-Type": "application/xml"},
                timeout=timeout,
            )
            response.raise_for_status()
            return True

        except httpx.HTTPStatusError as e:
            if e.response.status_code == 401:
                # 401 after digest auth means wrong credentials
                logging.error(
                    f"Authentication failed for overlay {overlay_id} - check credentials"
                )
            else:
                logging.error(
                    f"HTTP {e.response.status_code} updating overlay {overlay_id}: {e}"
                )
            return False
        except httpx.HTTPError as e:
            logging.error(f"Error updating overlay {overlay_id}: {e}")
            return False


class HikvisionOverlay:
    """
    Blocking client used for the startup connection test.
    """

    def __init__(self, address: str, username: str, password: str, channel: int = 1):
        self.address = address
        self.channel = channel
        self.session = requests.Session()
        self.session.auth = HTTPDigestAuth(username, password)
        self.session.verify = False

    def get_overlay_text(
        self, overlay_id: str, timeout: int = 10
    ) -> Optional[ET.Element]:
        """
        Get current text overlay configuration.

        Args:
            overlay_id: Overlay ID (e.g., "1", "2", etc.)
            timeout: Request timeout in seconds

        Returns:
            XML Element tree of the overlay, or None on error
        """
        try:
            response = self.session.get(
                overlay_url(self.address, self.channel, overlay_id),
                headers={"Content-Type": "application/xml"},
                timeout=timeout,
            )
            response.raise_for_status()
            return ET.fromstring(response.text)

        except requests.exceptions.RequestException as e:
            logging.error(f"Error getting overlay: {e}")
            return None
        except ET.ParseError as e:
            logging.error(f"Camera returned unexpected XML for overlay {overlay_id}: {e}")
            return None


def check_camera_connection(camera: CameraConfig, timeout: int) -> bool:
    """
    Test if camera is reachable before starting the sync loop.

    Args:
        camera: Camera configuration to test
        timeout: Connection timeout in seconds

    Returns:
        True if camera responds, False otherwise
    """
    client = HikvisionOverlay(
        camera_address(camera), camera.username, camera.password, camera.channel
    )
    if not camera.overlay_ids:
        return False
    return client.get_overlay_text(camera.overlay_ids[0], timeout) is not None


def check_all_cameras(config: ConfigurationRoot) -> tuple[int, int]:
    """
    Test connection to all cameras.

    Returns:
        Tuple of (reachable_count, total_count)
    """
    reachable = 0
    total = len(config.cameras)

    logging.info("Testing camera connections...")
    for camera in config.cameras:
        if check_camera_connection(camera, config.timeout):
            logging.info(f"  ✓ Camera '{camera.name}' is reachable")
            reachable += 1
        else:
            logging.warning(f"  ✗ Camera '{camera.name}' is not reachable")

    return reachable, total


# ============================================================================
# Update Sink
# ============================================================================


class OverlayTextPublisher:
    """
    Update sink that formats overlay updates and pushes them to a camera.

    Updates for the same overlay are applied in order; an update that is
    superseded by a newer one while waiting for the previous push is dropped.
    """

    def __init__(
        self,
        camera_name: str,
        settings: DictSettingsStore,
        client: Optional[HikvisionOverlayAsync] = None,
        timeout: int = 10,
        dry_run: bool = False,
    ):
        self.camera_name = camera_name
        self.settings = settings
        self.client = client
        self.timeout = timeout
        self.dry_run = dry_run or client is None
        self.pushed_text: dict[str, str] = {}
        self._sequence: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def render(self, update: OverlayUpdate) -> Optional[str]:
        """Turn an update into display text; None means nothing to show."""
        if update.listener_kind is None:
            return None if update.raw_data is None else str(update.raw_data)
        slot = resolve_slot(self.settings, update.overlay_id)
        return format_overlay_text(
            update.listener_kind, update.raw_data, slot, update.source_device
        )

    async def on_update(self, update: OverlayUpdate) -> bool:
        """Push an update to the camera; False when it was superseded, empty or failed."""
        overlay_id = update.overlay_id
        sequence = self._sequence[overlay_id] = self._sequence.get(overlay_id, 0) + 1
        lock = self._locks.setdefault(overlay_id, asyncio.Lock())

        async with lock:
            if self._sequence[overlay_id] != sequence:
                logging.debug(
                    f"Overlay {overlay_id} on '{self.camera_name}': update superseded, skipping"
                )
                return False

            text = self.render(update)
            if text is None:
                logging.debug(f"Overlay {overlay_id} on '{self.camera_name}': nothing to display")
                return False

            if len(text) > MAX_OVERLAY_TEXT_LENGTH:
                logging.warning(
                    f"Overlay text for '{self.camera_name}' overlay {overlay_id} truncated "
                    f"from {len(text)} to {MAX_OVERLAY_TEXT_LENGTH} characters"
                )
                text = text[:MAX_OVERLAY_TEXT_LENGTH]

            if self.dry_run:
                logging.info(f"[dry-run] Overlay {overlay_id} on '{self.camera_name}': \"{text}\"")
                self.pushed_text[overlay_id] = text
                return True

            start_time = time.time()
            success = await self.client.update_overlay_text_fast(
                overlay_id=overlay_id, new_text=text, timeout=self.timeout
            )
            duration = time.time() - start_time

            if not success:
                logging.error(
                    f"✗ Failed to update overlay {overlay_id} on '{self.camera_name}' ({duration * 1000:.0f}ms)"
                )
                return False

            self.pushed_text[overlay_id] = text
            if not update.suppress_log:
                preview = text[:30] + "..." if len(text) > 30 else text
                logging.info(
                    f"✓ Updated overlay {overlay_id} on '{self.camera_name}': \"{preview}\" ({duration * 1000:.0f}ms)"
                )


# ============================================================================
# Per-camera Overlay Manager
# ============================================================================


def build_device(device: DeviceConfig) -> InMemoryDevice:
    values = {}
    if device.temperature is not None:
        values[Capability.THERMOMETER] = device.temperature
    if device.humidity is not None:
        values[Capability.HUMIDITY_SENSOR] = device.humidity
    return InMemoryDevice(
        device.id,
        name=device.name,
        capabilities=[Capability(c) for c in device.capabilities],
        temperature_unit=device.temperature_unit,
        values=values,
    )


def build_registry(config: ConfigurationRoot) -> InMemoryDeviceRegistry:
    """Registry holding the configured sensors plus one detection device per camera."""
    registry = InMemoryDeviceRegistry(build_device(dev) for dev in config.devices)
    for camera in config.cameras:
        registry.add(
            InMemoryDevice(camera.name, capabilities=[Capability.OBJECT_DETECTION])
        )
    return registry


class CameraOverlayManager:
    """
    Binds one camera's overlay settings to its listener reconciler and sink.
    """

    def __init__(
        self,
        camera: CameraConfig,
        registry: InMemoryDeviceRegistry,
        client: Optional[HikvisionOverlayAsync] = None,
        timeout: int = 10,
        dry_run: bool = False,
    ):
        self.camera = camera
        self.overlay_ids = list(camera.overlay_ids)
        self.settings = DictSettingsStore(camera.settings)
        self.publisher = OverlayTextPublisher(
            camera.name, self.settings, client, timeout=timeout, dry_run=dry_run
        )
        self.reconciler = ListenerReconciler(
            camera.name, registry, self.publisher, name=camera.name
        )

    async def reconcile(self) -> dict[str, int]:
        return await self.reconciler.reconcile(self.overlay_ids, self.settings)

    async def put_setting(self, key: str, value: Any) -> dict[str, int]:
        """
        Store one overlay setting and reconcile immediately.

        Raises:
            ValueError: If key is not a valid overlay setting key
        """
        overlay_key = OverlayKey.parse(key)
        if overlay_key.overlay_id not in self.overlay_ids:
            raise ValueError(
                f"Overlay '{overlay_key.overlay_id}' is not configured on '{self.camera.name}'"
            )
        self.settings.put(overlay_key.key, value)
        return await self.reconcile()

    def apply_settings(self, camera: CameraConfig) -> None:
        """
        Replace overlay ids and settings with a reloaded camera configuration.

        Listeners of overlays that were dropped are released right away; the
        remaining changes are picked up by the next reconciliation pass.
        """
        for overlay_id in self.overlay_ids:
            if overlay_id not in camera.overlay_ids:
                self.reconciler.release_overlay(overlay_id)
        self.overlay_ids = list(camera.overlay_ids)

        for key in self.settings.snapshot():
            if key not in camera.settings:
                self.settings.put(key, None)
        for key, value in camera.settings.items():
            self.settings.put(key, value)

    def settings_view(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in build_settings_view(self.settings, self.overlay_ids)]

    def stop(self) -> int:
        return self.reconciler.release_all()


async def refresh_devices(registry: InMemoryDeviceRegistry, config: ConfigurationRoot) -> None:
    """
    Apply reloaded device definitions to the registry.

    Changed readings are emitted as events to live listeners. Added, removed
    and redefined devices are picked up by the next reconciliation pass.
    """
    configured = {dev.id for dev in config.devices}
    cameras = {camera.name for camera in config.cameras}
    for device_config in config.devices:
        device = registry.resolve(device_config.id)
        if device is None:
            logging.info(f"Device '{device_config.name}' added to configuration")
            registry.add(build_device(device_config))
            continue

        device.redefine(
            name=device_config.name,
            capabilities=[Capability(c) for c in device_config.capabilities],
            temperature_unit=device_config.temperature_unit,
        )
        for capability, value in (
            (Capability.THERMOMETER, device_config.temperature),
            (Capability.HUMIDITY_SENSOR, device_config.humidity),
        ):
            if value is not None and value != await device.read_value(capability):
                await device.emit(capability, value)

    for device in registry.devices():
        if device.id not in configured and device.id not in cameras:
            logging.info(f"Device '{device.name}' removed from configuration")
            registry.remove(device.id)


def combine_results(results: List[Any], managers: List[CameraOverlayManager]) -> dict[str, Any]:
    totals = {"subscribed": 0, "released": 0, "pushed": 0, "failed": 0}
    cameras = {}
    for manager, result in zip(managers, results):
        if isinstance(result, Exception):
            logging.error(f"Failed to reconcile camera '{manager.camera.name}': {result}")
            result = {"failed": len(manager.overlay_ids)}
        cameras[manager.camera.name] = result
        for name in totals:
            totals[name] += result.get(name, 0)
    return {**totals, "cameras": cameras}


async def run_once(config: ConfigurationRoot, dry_run: bool = False) -> dict[str, Any]:
    """
    Run a single reconciliation pass for every camera and release all listeners.

    Returns:
        Totals plus per-camera results
    """
    registry = build_registry(config)
    clients = {} if dry_run else await create_async_clients(config)
    managers = [
        CameraOverlayManager(
            camera, registry, clients.get(camera.name), config.timeout, dry_run
        )
        for camera in config.cameras
    ]
    try:
        results = await asyncio.gather(
            *(manager.reconcile() for manager in managers), return_exceptions=True
        )
        return combine_results(results, managers)
    finally:
        for manager in managers:
            manager.stop()
        for client in clients.values():
            await client.close()


async def create_async_clients(config: ConfigurationRoot) -> dict[str, HikvisionOverlayAsync]:
    """
    Create persistent async clients for each camera.

    Returns:
        Dictionary mapping camera name to HikvisionOverlayAsync client
    """
    clients = {}
    for camera in config.cameras:
        client = HikvisionOverlayAsync(
            camera_address(camera), camera.username, camera.password, camera.channel
        )
        await client.initialize()
        clients[camera.name] = client
    return clients


# ============================================================================
# SyncManager Class (Daemon Loop & Signal Handling)
# ============================================================================


class SyncManager:
    """
    Runs reconciliation passes for all cameras at a fixed interval.

    The configuration file is re-read when it changes on disk, so overlay
    settings and sensor readings can be updated without a restart.
    """

    def __init__(
        self,
        config: ConfigurationRoot,
        config_path: Optional[Path] = None,
        dry_run: bool = False,
    ):
        self.config = config
        self.config_path = config_path
        self.dry_run = dry_run
        self.running = False
        self.syncing = False
        self.cycle_count = 0
        self.registry = build_registry(config)
        self.managers: dict[str, CameraOverlayManager] = {}
        self.async_clients: dict[str, HikvisionOverlayAsync] = {}
        self._config_mtime = self._read_mtime()
        self._cycle_task: Optional[asyncio.Task] = None

        self.start_time: Optional[float] = None
        self.last_stats_time: Optional[float] = None
        if config.stats_interval is None:
            self.stats_interval: Optional[float] = None
        elif config.stats_interval == 0:
            self.stats_interval = min(60.0, self.config.sync_interval)
        else:
            self.stats_interval = float(config.stats_interval)

        self.totals = {"subscribed": 0, "released": 0, "pushed": 0, "failed": 0}

    def _read_mtime(self) -> Optional[float]:
        if self.config_path is None:
            return None
        try:
            return self.config_path.stat().st_mtime
        except OSError:
            return None

    async def start(self) -> dict[str, Any]:
        """Create clients and managers, then run the eager startup pass."""
        if not self.dry_run:
            self.async_clients = await create_async_clients(self.config)
            logging.info(f"Initialized {len(self.async_clients)} persistent async clients")

        for camera in self.config.cameras:
            self.managers[camera.name] = CameraOverlayManager(
                camera,
                self.registry,
                self.async_clients.get(camera.name),
                timeout=self.config.timeout,
                dry_run=self.dry_run,
            )

        return await self.reconcile_all()

    async def stop(self) -> None:
        """Release every listener and close all clients."""
        if self._cycle_task is not None and not self._cycle_task.done():
            await asyncio.gather(self._cycle_task, return_exceptions=True)

        released = sum(manager.stop() for manager in self.managers.values())
        logging.info(f"Released {released} listener(s)")

        logging.info("Closing async clients...")
        for client in self.async_clients.values():
            await client.close()
        self.async_clients = {}

    async def reconcile_all(self) -> dict[str, Any]:
        managers = list(self.managers.values())
        results = await asyncio.gather(
            *(manager.reconcile() for manager in managers), return_exceptions=True
        )
        results = combine_results(results, managers)
        for name in self.totals:
            self.totals[name] += results[name]
        return results

    async def reload_config_if_changed(self) -> bool:
        """
        Re-read the configuration file if its modification time changed.

        Returns:
            True if a new configuration was applied
        """
        mtime = self._read_mtime()
        if mtime is None or mtime == self._config_mtime:
            return False
        self._config_mtime = mtime

        try:
            config = load_config(self.config_path)
        except (OSError, ValueError, KeyError) as e:
            logging.error(f"Could not reload configuration, keeping current one: {e}")
            return False

        is_valid, errors = validate_config(config)
        if not is_valid:
            logging.error(
                f"Reloaded configuration is invalid, keeping current one: {'; '.join(errors)}"
            )
            return False

        if {c.name for c in config.cameras} != set(self.managers):
            logging.warning("Camera list changed; adding or removing cameras requires a restart")

        logging.info("Configuration changed, applying new overlay settings")
        await refresh_devices(self.registry, config)
        for camera in config.cameras:
            manager = self.managers.get(camera.name)
            if manager is not None:
                manager.apply_settings(camera)
        self.config.devices = config.devices
        return True

    @staticmethod
    def _format_uptime(seconds: float) -> str:
        """Render seconds as e.g. "2h 15m 30s", dropping leading zero units."""
        minutes, secs = divmod(int(seconds), 60)
        hours, minutes = divmod(minutes, 60)
        parts = [(hours, "h"), (minutes, "m"), (secs, "s")]
        while len(parts) > 1 and parts[0][0] == 0:
            parts.pop(0)
        return " ".join(f"{value}{unit}" for value, unit in parts)

    def _print_statistics(self, label: str = "Statistics"):
        if self.start_time is None:
            return

        uptime = time.time() - self.start_time
        live = sum(len(m.reconciler.bindings) for m in self.managers.values())
        logging.info(
            f"{label}: up {self._format_uptime(uptime)}, {self.cycle_count} passes, "
            f"{live} live listener(s); lifetime {self.totals['subscribed']} subscribed, "
            f"{self.totals['released']} released, {self.totals['pushed']} pushed, "
            f"{self.totals['failed']} failed"
        )
        for name, manager in sorted(self.managers.items()):
            listeners = ", ".join(
                f"{oid}={b.listener_kind.value}@{b.source_device_id}"
                for oid, b in sorted(manager.reconciler.bindings.items())
            )
            logging.info(f"  {name}: {listeners or 'no listeners'}")

    def _shutdown(self, signum, frame):
        logging.info(f"Received {signal.Signals(signum).name}, releasing listeners and shutting down")
        self.running = False

    async def _run_cycle(self):
        self.syncing = True
        try:
            start_time = time.time()
            reloaded = await self.reload_config_if_changed()
            results = await self.reconcile_all()
            duration = time.time() - start_time

            changed = results["subscribed"] or results["released"] or results["pushed"]
            message = (
                f"Pass {self.cycle_count} completed in {duration:.3f}s. "
                f"Subscribed: {results['subscribed']}, Released: {results['released']}, "
                f"Pushed: {results['pushed']}, Failed: {results['failed']}."
            )
            if results["failed"]:
                logging.warning(message)
            elif changed or reloaded:
                logging.info(message)
            else:
                logging.debug(message)

            if (
                self.stats_interval is not None
                and time.time() - self.last_stats_time >= self.stats_interval
            ):
                self._print_statistics()
                self.last_stats_time = time.time()

        except Exception as e:
            logging.error(f"Error during pass {self.cycle_count}: {e}")
        finally:
            self.syncing = False

    async def _run_async(self):
        self.start_time = time.time()
        self.last_stats_time = self.start_time

        results = await self.start()
        logging.info(
            f"Startup pass: {results['subscribed']} listener(s) started, "
            f"{results['pushed']} overlay(s) pushed, {results['failed']} failed"
        )

        if self.stats_interval is None:
            logging.info("Statistics reporting: disabled")
        else:
            logging.info(f"Statistics will be reported every {self.stats_interval:.0f}s")

        # Align passes to interval boundaries
        next_sync_time = math.ceil(time.time() / self.config.sync_interval) * self.config.sync_interval

        try:
            while self.running:
                current_time = time.time()
                if current_time < next_sync_time:
                    await asyncio.sleep(min(next_sync_time - current_time, 0.05))
                    continue

                self.cycle_count += 1
                next_sync_time += self.config.sync_interval

                if self.syncing:
                    logging.warning(
                        f"Pass {self.cycle_count}: previous pass still in progress, skipping. "
                        f"Consider increasing sync_interval or reducing timeout."
                    )
                    continue

                self._cycle_task = asyncio.create_task(self._run_cycle())

        finally:
            await self.stop()
            if self.stats_interval is not None and self.cycle_count > 0:
                self._print_statistics("Final statistics")

    def run(self):
        """
        Main loop - runs continuously until interrupted.
        """
        signal.signal(signal.SIGINT, self._shutdown)
        signal.signal(signal.SIGTERM, self._shutdown)

        self.running = True
        logging.info(f"Starting sync loop (interval: {self.config.sync_interval}s)")

        try:
            asyncio.run(self._run_async())
        except KeyboardInterrupt:
            logging.info("Received interrupt during async loop")
        finally:
            logging.info("Sync loop stopped. Goodbye!")


# ============================================================================
# Main Entry Point
# ============================================================================

VERSION = "1.0.0"


def _config_error(message: str, *details: str) -> int:
    print(f"✗ {message}", file=sys.stderr)
    for detail in details:
        print(f"  - {detail}", file=sys.stderr)
    return 1


def main(argv: Optional[List[str]] = None):
    """Main entry point for CLI usage."""
    parser = argparse.ArgumentParser(
        description="Overlay Sync Manager - Keep Hikvision text overlays bound to\n"
        "sensor readings, face detections and static text.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  overlay_sync_manager.py config.json                   Start daemon with config
  overlay_sync_manager.py --validate config.json        Validate configuration
  overlay_sync_manager.py --once config.json            Run single reconciliation pass
  overlay_sync_manager.py --once --dry-run config.json  Log overlay text without pushing
  overlay_sync_manager.py --print-settings config.json  Show editable overlay settings

Configuration:
  See config.example.json for configuration format and options.
  Overlay settings use keys of the form overlay:{id}:{field} where field is
  one of type, text, device, regex, maxDecimals.

Signals:
  SIGINT/SIGTERM - Graceful shutdown, releasing all listeners
        """,
    )

    parser.add_argument(
        "-v",
        "--validate",
        action="store_true",
        help="Validate configuration and exit (don't start daemon)",
    )

    parser.add_argument(
        "-V", "--version", action="store_true", help="Show version and exit"
    )

    parser.add_argument(
        "-1",
        "--once",
        action="store_true",
        help="Run one reconciliation pass and exit (no daemon mode)",
    )

    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Log overlay text instead of pushing it to cameras",
    )

    parser.add_argument(
        "--print-settings",
        action="store_true",
        help="Print the editable overlay settings of every camera as JSON and exit",
    )

    parser.add_argument(
        "config_file",
        metavar="CONFIG_FILE",
        type=str,
        nargs="?",
        help="Path to JSON configuration file",
    )

    args = parser.parse_args(argv)

    if args.version:
        print(f"Overlay Sync Manager v{VERSION}")
        print(f"Python {sys.version.split()[0]}")
        return 0

    if not args.config_file:
        parser.error("CONFIG_FILE is required (unless using --version)")
        return 1

    config_path = Path(args.config_file)

    try:
        config = load_config(config_path)
    except FileNotFoundError:
        return _config_error(
            f"Configuration file not found: {config_path}",
            "See config.example.json for an example configuration.",
        )
    except json.JSONDecodeError as e:
        return _config_error(
            f"Invalid JSON in {config_path} (line {e.lineno}, column {e.colno})", e.msg
        )
    except KeyError as e:
        return _config_error(
            f"Missing required field {e} in {config_path}",
            "See config.example.json for the complete configuration structure.",
        )
    except (OSError, TypeError, ValueError) as e:
        return _config_error(f"Could not load {config_path}", str(e))

    is_valid, errors = validate_config(config)

    if not is_valid:
        hint = [] if args.validate else ["Fix the errors above, or run with --validate."]
        return _config_error(f"Configuration {config_path} is invalid", *errors, *hint)

    if args.validate:
        overlays = sum(len(cam.overlay_ids) for cam in config.cameras)
        print(
            f"✓ {config_path}: {len(config.cameras)} camera(s), {overlays} overlay(s), "
            f"{len(config.devices)} device(s), reconcile every {config.sync_interval}s"
        )
        return 0

    if args.print_settings:
        registry = build_registry(config)
        view = {
            camera.name: CameraOverlayManager(camera, registry, dry_run=True).settings_view()
            for camera in config.cameras
        }
        print(json.dumps(view, indent=2))
        return 0

    setup_logging(config.log_level)
    logging.info(f"Starting Overlay Sync Manager v{VERSION}")
    logging.info(
        f"Loaded configuration: {len(config.cameras)} camera(s), "
        f"{len(config.devices)} device(s), reconcile every {config.sync_interval}s"
    )

    if not args.dry_run:
        reachable, total = check_all_cameras(config)
        if reachable == 0:
            logging.error(
                f"All {total} camera(s) are unreachable. "
                f"Check network connectivity, camera IP addresses, and credentials."
            )
            return 2
        elif reachable < total:
            logging.warning(
                f"Only {reachable}/{total} camera(s) are reachable. "
                f"Sync manager will start but some cameras may be offline."
            )
        else:
            logging.info(f"All {total} camera(s) are reachable.")

    if args.once:
        logging.info("One-shot mode: running single reconciliation pass")
        start_time = time.time()

        results = asyncio.run(run_once(config, dry_run=args.dry_run))

        duration = time.time() - start_time
        logging.info(
            f"Pass completed in {duration:.1f}s. "
            f"Subscribed: {results['subscribed']}, Pushed: {results['pushed']}, "
            f"Failed: {results['failed']}"
        )
        return 0 if results["failed"] == 0 else 1

    manager = SyncManager(config, config_path=config_path, dry_run=args.dry_run)
    manager.run()

    return 0


if __name__ == "__main__":
    sys.exit(main())
