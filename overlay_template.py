"""
Template Formatter

Turns raw listener data (a sensor reading or a detection event) into the text
shown on an overlay slot.
"""

import math
import re
from decimal import ROUND_HALF_UP, Context, Decimal
from typing import Any, Optional

from overlay_model import MAX_DECIMALS_LIMIT, ListenerKind, OverlaySlot

HUMIDITY_UNIT = "%"
FACE_CLASS_NAME = "face"

_PLACEHOLDER_RE = re.compile(r"\$\{(value|unit)\}")

# Wide enough for every finite float at MAX_DECIMALS_LIMIT fractional digits
_DECIMAL_CONTEXT = Context(prec=MAX_DECIMALS_LIMIT + 400, rounding=ROUND_HALF_UP)


def coerce_number(raw: Any) -> float:
    """
    Coerce a raw reading to a finite float.

    Missing, non-numeric and non-finite readings all become 0.
    """
    if raw is None:
        return 0.0
    try:
        number = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return number


def format_number(raw: Any, max_decimals: int) -> str:
    """
    Format a raw reading with exactly ``max_decimals`` fractional digits.

    Ties are rounded away from zero on the exact binary value of the reading,
    so 22.5 becomes "23" while 1.005 (stored as 1.00499...) becomes "1.00".

    Args:
        raw: Reading as delivered by the device (number, numeric string or None)
        max_decimals: Fractional digits, clamped to 0..MAX_DECIMALS_LIMIT

    Returns:
        Formatted number, e.g. format_number("21.456", 1) -> "21.5"
    """
    decimals = min(MAX_DECIMALS_LIMIT, max(0, int(max_decimals)))
    exponent = Decimal(1).scaleb(-decimals)
    return f"{Decimal(coerce_number(raw)).quantize(exponent, context=_DECIMAL_CONTEXT):f}"


def _detection_field(detection: Any, name: str) -> Any:
    if isinstance(detection, dict):
        return detection.get(name)
    return getattr(detection, name, None)


def extract_face_label(data: Any) -> Optional[str]:
    """
    Return the label of the first face detection in an ObjectsDetected-like event.

    Accepts either a dict with a ``detections`` list or an object with a
    ``detections`` attribute; each detection may be a dict or an object with
    ``className``/``label``.
    """
    detections = _detection_field(data, "detections") if data is not None else None
    for detection in detections or []:
        if _detection_field(detection, "className") == FACE_CLASS_NAME:
            return _detection_field(detection, "label")
    return None


def render_value_template(template: str, value: str, unit: Optional[str]) -> str:
    """
    Substitute every ${value} and ${unit} placeholder in a single pass.

    Placeholders absent from the template are simply not substituted, and
    substituted text is never re-scanned for placeholders.
    """
    replacements = {"value": value, "unit": unit or ""}
    return _PLACEHOLDER_RE.sub(lambda match: replacements[match.group(1)], template)


def format_overlay_text(
    listener_kind: Optional[ListenerKind],
    raw: Any,
    slot: OverlaySlot,
    device: Any = None,
) -> Optional[str]:
    """
    Build the display text for a slot from raw listener data.

    Args:
        listener_kind: Kind of listener that produced the data
        raw: Raw event data
        slot: Current overlay slot (template, decimals, static text)
        device: Source device, used for the temperature unit

    Returns:
        The rendered template, or the slot's static text unchanged when the
        data produced no value (e.g. a detection event without a face)
    """
    value: Optional[str] = None
    unit: Optional[str] = None

    if listener_kind == ListenerKind.FACE:
        label = extract_face_label(raw)
        value = None if label is None else str(label)
    elif listener_kind == ListenerKind.TEMPERATURE:
        value = format_number(raw, slot.max_decimals)
        unit = getattr(device, "temperature_unit", None)
    elif listener_kind == ListenerKind.HUMIDITY:
        value = format_number(raw, slot.max_decimals)
        unit = HUMIDITY_UNIT

    if value:
        return render_value_template(slot.template, value, unit)

    return slot.text
