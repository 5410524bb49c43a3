"""
Overlay Model

Turns flat key/value overlay settings into typed overlay slots and into the
editable settings list shown to the user. Everything here is pure: no I/O,
no subscriptions.

Settings keys are namespaced as ``overlay:{overlay_id}:{field}``.
"""

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, List, Optional, Protocol


DEFAULT_TEMPLATE = "${value} ${unit}"
DEFAULT_MAX_DECIMALS = 1
MAX_DECIMALS_LIMIT = 100
KEY_PREFIX = "overlay"

# Devices selectable for a Device overlay must expose one of these capabilities
SENSOR_DEVICE_FILTER = ("Thermometer", "HumiditySensor")


class OverlayType(str, Enum):
    """Source an overlay slot takes its text from."""

    TEXT = "Text"
    DEVICE = "Device"
    FACE_DETECTION = "FaceDetection"


class ListenerKind(str, Enum):
    """Category of live event source feeding a slot."""

    TEMPERATURE = "Temperature"
    HUMIDITY = "Humidity"
    FACE = "Face"


class SettingField(str, Enum):
    """Per-overlay setting fields, valued by their storage suffix."""

    TEXT = "text"
    TYPE = "type"
    REGEX = "regex"
    DEVICE = "device"
    MAX_DECIMALS = "maxDecimals"


@dataclass(frozen=True)
class OverlayKey:
    """
    Typed settings key for one overlay field.

    Attributes:
        overlay_id: Overlay identifier (must be non-empty and contain no ':')
        field: Which overlay setting this key addresses
    """

    overlay_id: str
    field: SettingField

    def __post_init__(self):
        if not self.overlay_id:
            raise ValueError("overlay_id must not be empty")
        if ":" in self.overlay_id:
            raise ValueError(f"overlay_id must not contain ':', got: '{self.overlay_id}'")
        if not isinstance(self.field, SettingField):
            raise ValueError(f"Unknown overlay setting field: {self.field!r}")

    @property
    def key(self) -> str:
        return f"{KEY_PREFIX}:{self.overlay_id}:{self.field.value}"

    @classmethod
    def parse(cls, key: str) -> "OverlayKey":
        """
        Parse a raw storage key back into an OverlayKey.

        Raises:
            ValueError: If the key is not of the form overlay:{id}:{field}
        """
        parts = key.split(":")
        if len(parts) != 3 or parts[0] != KEY_PREFIX:
            raise ValueError(f"Not an overlay setting key: '{key}'")
        try:
            setting_field = SettingField(parts[2])
        except ValueError:
            raise ValueError(
                f"Unknown overlay setting field '{parts[2]}' in key '{key}'"
            ) from None
        return cls(parts[1], setting_field)

    def __str__(self) -> str:
        return self.key


class SettingsStore(Protocol):
    """Flat string-keyed settings storage."""

    def get(self, key: str) -> Any: ...

    def put(self, key: str, value: Any) -> None: ...


class DictSettingsStore:
    """In-memory settings store backed by a plain dict."""

    def __init__(self, values: Optional[dict[str, Any]] = None):
        self._values: dict[str, Any] = dict(values or {})

    def get(self, key: str) -> Any:
        return self._values.get(str(key))

    def put(self, key: str, value: Any) -> None:
        if value is None:
            self._values.pop(str(key), None)
        else:
            self._values[str(key)] = value

    def snapshot(self) -> dict[str, Any]:
        return dict(self._values)


def read_setting(settings: SettingsStore, overlay_id: str, setting: SettingField) -> Any:
    """Read one overlay field through its typed key."""
    return settings.get(OverlayKey(overlay_id, setting).key)


@dataclass
class OverlaySlot:
    """
    Typed descriptor of one overlay slot, derived fresh from settings.

    Only the fields relevant to ``type`` are meaningful; stale values left
    over from a previous type are carried but ignored.

    Attributes:
        overlay_id: Overlay identifier
        type: Where the text comes from
        template: Text template with ${value} and ${unit} placeholders
        text: Static text (Text overlays)
        device_id: Bound sensor device (Device overlays)
        max_decimals: Fractional digits for numeric values (Device overlays)
    """

    overlay_id: str
    type: OverlayType = OverlayType.TEXT
    template: str = DEFAULT_TEMPLATE
    text: Optional[str] = None
    device_id: Optional[str] = None
    max_decimals: int = DEFAULT_MAX_DECIMALS


def _parse_type(overlay_id: str, raw: Any) -> OverlayType:
    if raw is None or raw == "":
        return OverlayType.TEXT
    try:
        return OverlayType(raw)
    except ValueError:
        logging.warning(
            f"Overlay {overlay_id}: unknown overlay type '{raw}', using {OverlayType.TEXT.value}"
        )
        return OverlayType.TEXT


def _parse_max_decimals(overlay_id: str, raw: Any) -> int:
    if raw is None or raw == "":
        return DEFAULT_MAX_DECIMALS
    try:
        value = int(float(raw))
    except (TypeError, ValueError, OverflowError):
        logging.warning(
            f"Overlay {overlay_id}: invalid maxDecimals '{raw}', using {DEFAULT_MAX_DECIMALS}"
        )
        return DEFAULT_MAX_DECIMALS
    if value > MAX_DECIMALS_LIMIT:
        logging.warning(
            f"Overlay {overlay_id}: maxDecimals {value} exceeds {MAX_DECIMALS_LIMIT}, "
            f"using {MAX_DECIMALS_LIMIT}"
        )
        return MAX_DECIMALS_LIMIT
    return max(0, value)


def resolve_slot(settings: SettingsStore, overlay_id: str) -> OverlaySlot:
    """
    Build the OverlaySlot for an overlay from the current settings.

    Args:
        settings: Settings store to read from
        overlay_id: Overlay identifier

    Returns:
        OverlaySlot with defaults applied for missing fields
    """
    device = read_setting(settings, overlay_id, SettingField.DEVICE)
    text = read_setting(settings, overlay_id, SettingField.TEXT)

    return OverlaySlot(
        overlay_id=overlay_id,
        type=_parse_type(overlay_id, read_setting(settings, overlay_id, SettingField.TYPE)),
        template=read_setting(settings, overlay_id, SettingField.REGEX) or DEFAULT_TEMPLATE,
        text=None if text is None else str(text),
        device_id=str(device) if device else None,
        max_decimals=_parse_max_decimals(
            overlay_id, read_setting(settings, overlay_id, SettingField.MAX_DECIMALS)
        ),
    )


# ============================================================================
# Settings View
# ============================================================================


@dataclass
class SettingDescriptor:
    """One editable field rendered by the settings UI."""

    key: str
    title: str
    type: str
    subgroup: str
    value: Any = None
    description: Optional[str] = None
    placeholder: Optional[str] = None
    choices: Optional[List[str]] = None
    device_filter: Optional[List[str]] = None
    immediate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {name: value for name, value in asdict(self).items() if value is not None}


def build_settings_view(
    settings: SettingsStore, overlay_ids: List[str]
) -> List[SettingDescriptor]:
    """
    Build the editable settings list for a set of overlays.

    The type selector is always present; the remaining fields depend on the
    currently selected type. Has no side effects.

    Args:
        settings: Settings store to read current values from
        overlay_ids: Overlays to describe, in display order

    Returns:
        List of setting descriptors
    """
    view: List[SettingDescriptor] = []

    for overlay_id in overlay_ids:
        subgroup = f"Overlay {overlay_id}"
        overlay_type = _parse_type(
            overlay_id, read_setting(settings, overlay_id, SettingField.TYPE)
        )

        view.append(
            SettingDescriptor(
                key=OverlayKey(overlay_id, SettingField.TYPE).key,
                title="Overlay type",
                type="string",
                subgroup=subgroup,
                value=overlay_type.value,
                choices=[t.value for t in OverlayType],
                immediate=True,
            )
        )

        if overlay_type == OverlayType.TEXT:
            view.append(
                SettingDescriptor(
                    key=OverlayKey(overlay_id, SettingField.TEXT).key,
                    title="Text",
                    type="string",
                    subgroup=subgroup,
                    value=read_setting(settings, overlay_id, SettingField.TEXT),
                )
            )
            continue

        template_setting = SettingDescriptor(
            key=OverlayKey(overlay_id, SettingField.REGEX).key,
            title="Value template",
            type="string",
            subgroup=subgroup,
            description="Expression to generate the text. ${value} contains the value and ${unit} the unit",
            placeholder=DEFAULT_TEMPLATE,
            value=read_setting(settings, overlay_id, SettingField.REGEX) or DEFAULT_TEMPLATE,
        )

        if overlay_type == OverlayType.DEVICE:
            max_decimals = read_setting(settings, overlay_id, SettingField.MAX_DECIMALS)
            view.extend(
                [
                    SettingDescriptor(
                        key=OverlayKey(overlay_id, SettingField.DEVICE).key,
                        title="Device",
                        type="device",
                        subgroup=subgroup,
                        value=read_setting(settings, overlay_id, SettingField.DEVICE),
                        device_filter=list(SENSOR_DEVICE_FILTER),
                        immediate=True,
                    ),
                    template_setting,
                    SettingDescriptor(
                        key=OverlayKey(overlay_id, SettingField.MAX_DECIMALS).key,
                        title="Max decimals",
                        type="number",
                        subgroup=subgroup,
                        value=DEFAULT_MAX_DECIMALS if max_decimals is None else max_decimals,
                    ),
                ]
            )
        else:
            view.append(template_setting)

    return view
