"""
Payload normalization for collar telemetry.

Collar firmware has reported in two shapes over its lifetime:

- ``nested`` (v6): readings grouped under ``gps``, ``accel``, ``activity``,
  ``location``, ``battery``, ``network``, ``sleep``, ``walk``, ``scratch``
  and ``health``, with ``boot_count`` and ``firmware`` at the top level.
- ``flat`` (legacy): every reading at the top level with short names
  (``lat``, ``lon``, ``sats``, ``battery_v`` ...).

Each shape has an adapter that maps its field paths onto CanonicalStatus.
Values that are absent, null or of the wrong type fall back to the field
default; only a missing device id is an error.
"""

import logging
import math
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel

from errors.exceptions import validation_error

logger = logging.getLogger(__name__)

NESTED_GROUPS = (
    "gps", "accel", "activity", "location", "battery",
    "network", "sleep", "walk", "scratch", "health",
)


class PayloadShape(str, Enum):
    NESTED = "nested"
    FLAT = "flat"


class CanonicalStatus(BaseModel):
    """
    Version-independent view of one collar report.

    Optional numeric readings default to None, counters to 0 and flags to
    False, except ``is_home`` which defaults to True.
    """

    device_id: str
    payload_shape: PayloadShape

    # GPS
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    altitude: Optional[float] = None
    speed: Optional[float] = None
    hdop: Optional[float] = None
    satellites: int = 0
    gps_valid: bool = False

    # Accelerometer
    accel_x: Optional[float] = None
    accel_y: Optional[float] = None
    accel_z: Optional[float] = None
    accel_magnitude: Optional[float] = None
    accel_variance: Optional[float] = None

    # Activity
    activity_class: int = 0
    activity_name: str = "unknown"
    session_steps: int = 0
    today_steps: int = 0

    # Geofence
    is_home: bool = True
    is_escaped: bool = False
    distance_from_home: Optional[float] = None

    # Battery and network
    battery_voltage: Optional[float] = None
    battery_percent: Optional[float] = None
    signal_strength: Optional[int] = None
    network_operator: Optional[str] = None

    # Sleep
    sleep_active: bool = False
    sleep_quality: Optional[float] = None
    respiratory_rate: Optional[float] = None
    restless_count: int = 0

    # Walk and anti-cheat counters
    walk_active: bool = False
    walk_duration: int = 0
    walk_distance: float = 0.0
    walk_stops: int = 0
    walk_carried_seconds: int = 0
    walk_vehicle_seconds: int = 0
    walk_actual_seconds: int = 0
    walk_cheat_flags: int = 0

    # Scratch detector
    scratch_detected: bool = False
    today_scratch_count: int = 0
    scratch_frequency: Optional[float] = None
    scratch_intensity: Optional[float] = None
    scratch_confidence: Optional[float] = None

    # Health
    anomaly_detected: bool = False
    anomaly_type: Optional[str] = None
    activity_deviation: Optional[float] = None

    boot_count: int = 0
    firmware_version: Optional[str] = None

    @property
    def has_valid_fix(self) -> bool:
        return self.gps_valid and self.latitude is not None and self.longitude is not None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _as_int(value: Any) -> Optional[int]:
    number = _as_number(value)
    return int(number) if number is not None else None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    # Older firmware writes flags as 0/1
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    return None


def _as_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


FieldSpec = Tuple[Tuple[str, ...], Callable[[Any], Any]]


class PayloadAdapter:
    """Maps one payload shape onto CanonicalStatus through a table of field paths."""

    shape: PayloadShape
    fields: Dict[str, FieldSpec] = {}

    def adapt(self, device_id: str, raw: Dict[str, Any]) -> CanonicalStatus:
        values: Dict[str, Any] = {}
        for name, (path, coerce) in self.fields.items():
            value = coerce(_lookup(raw, path))
            # None means "use the model default"
            if value is not None:
                values[name] = value
        return CanonicalStatus(device_id=device_id, payload_shape=self.shape, **values)


def _lookup(raw: Dict[str, Any], path: Tuple[str, ...]) -> Any:
    current: Any = raw
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


class NestedPayloadAdapter(PayloadAdapter):
    shape = PayloadShape.NESTED
    fields = {
        "latitude": (("gps", "lat"), _as_number),
        "longitude": (("gps", "lon"), _as_number),
        "altitude": (("gps", "alt"), _as_number),
        "speed": (("gps", "speed"), _as_number),
        "hdop": (("gps", "hdop"), _as_number),
        "satellites": (("gps", "satellites"), _as_int),
        "gps_valid": (("gps", "valid"), _as_bool),
        "accel_x": (("accel", "x"), _as_number),
        "accel_y": (("accel", "y"), _as_number),
        "accel_z": (("accel", "z"), _as_number),
        "accel_magnitude": (("accel", "magnitude"), _as_number),
        "accel_variance": (("accel", "variance"), _as_number),
        "activity_class": (("activity", "class"), _as_int),
        "activity_name": (("activity", "name"), _as_text),
        "session_steps": (("activity", "session_steps"), _as_int),
        "today_steps": (("activity", "today_steps"), _as_int),
        "is_home": (("location", "is_home"), _as_bool),
        "is_escaped": (("location", "is_escaped"), _as_bool),
        "distance_from_home": (("location", "distance_home"), _as_number),
        "battery_voltage": (("battery", "voltage"), _as_number),
        "battery_percent": (("battery", "percent"), _as_number),
        "signal_strength": (("network", "signal"), _as_int),
        "network_operator": (("network", "operator"), _as_text),
        "sleep_active": (("sleep", "active"), _as_bool),
        "sleep_quality": (("sleep", "quality"), _as_number),
        "respiratory_rate": (("sleep", "respiratory_rate"), _as_number),
        "restless_count": (("sleep", "restless_count"), _as_int),
        "walk_active": (("walk", "active"), _as_bool),
        "walk_duration": (("walk", "duration"), _as_int),
        "walk_distance": (("walk", "distance"), _as_number),
        "walk_stops": (("walk", "stops"), _as_int),
        "walk_carried_seconds": (("walk", "carried_seconds"), _as_int),
        "walk_vehicle_seconds": (("walk", "vehicle_seconds"), _as_int),
        "walk_actual_seconds": (("walk", "actual_walk_seconds"), _as_int),
        "walk_cheat_flags": (("walk", "cheat_flags"), _as_int),
        "scratch_detected": (("scratch", "detected"), _as_bool),
        "today_scratch_count": (("scratch", "today_count"), _as_int),
        "scratch_frequency": (("scratch", "frequency"), _as_number),
        "scratch_intensity": (("scratch", "intensity"), _as_number),
        "scratch_confidence": (("scratch", "confidence"), _as_number),
        "anomaly_detected": (("health", "anomaly"), _as_bool),
        "anomaly_type": (("health", "anomaly_type"), _as_text),
        "activity_deviation": (("health", "deviation"), _as_number),
        "boot_count": (("boot_count",), _as_int),
        "firmware_version": (("firmware",), _as_text),
    }


class FlatPayloadAdapter(PayloadAdapter):
    shape = PayloadShape.FLAT
    fields = {
        "latitude": (("lat",), _as_number),
        "longitude": (("lon",), _as_number),
        "altitude": (("alt",), _as_number),
        "speed": (("speed",), _as_number),
        "hdop": (("hdop",), _as_number),
        "satellites": (("sats",), _as_int),
        "gps_valid": (("gps_valid",), _as_bool),
        "accel_x": (("accel_x",), _as_number),
        "accel_y": (("accel_y",), _as_number),
        "accel_z": (("accel_z",), _as_number),
        "accel_magnitude": (("accel_mag",), _as_number),
        "accel_variance": (("accel_var",), _as_number),
        "activity_class": (("activity_class",), _as_int),
        "activity_name": (("activity_name",), _as_text),
        "session_steps": (("session_steps",), _as_int),
        "today_steps": (("today_steps",), _as_int),
        "is_home": (("is_home",), _as_bool),
        "is_escaped": (("is_escaped",), _as_bool),
        "distance_from_home": (("distance_home",), _as_number),
        "battery_voltage": (("battery_v",), _as_number),
        "battery_percent": (("battery_pct",), _as_number),
        "signal_strength": (("signal",), _as_int),
        "network_operator": (("operator",), _as_text),
        "sleep_active": (("sleep_active",), _as_bool),
        "sleep_quality": (("sleep_quality",), _as_number),
        "respiratory_rate": (("resp_rate",), _as_number),
        "restless_count": (("restless_count",), _as_int),
        "walk_active": (("walk_active",), _as_bool),
        "walk_duration": (("walk_duration",), _as_int),
        "walk_distance": (("walk_distance",), _as_number),
        "walk_stops": (("walk_stops",), _as_int),
        "walk_carried_seconds": (("carried_seconds",), _as_int),
        "walk_vehicle_seconds": (("vehicle_seconds",), _as_int),
        "walk_actual_seconds": (("actual_walk_seconds",), _as_int),
        "walk_cheat_flags": (("cheat_flags",), _as_int),
        "scratch_detected": (("scratch_detected",), _as_bool),
        "today_scratch_count": (("scratch_count",), _as_int),
        "scratch_frequency": (("scratch_freq",), _as_number),
        "scratch_intensity": (("scratch_intensity",), _as_number),
        "scratch_confidence": (("scratch_confidence",), _as_number),
        "anomaly_detected": (("anomaly",), _as_bool),
        "anomaly_type": (("anomaly_type",), _as_text),
        "activity_deviation": (("deviation",), _as_number),
        "boot_count": (("boot_count",), _as_int),
        "firmware_version": (("firmware",), _as_text),
    }


ADAPTERS: Dict[PayloadShape, PayloadAdapter] = {
    PayloadShape.NESTED: NestedPayloadAdapter(),
    PayloadShape.FLAT: FlatPayloadAdapter(),
}


def extract_device_id(raw: Dict[str, Any]) -> str:
    """
    Return the report's device id.

    Raises:
        AppException: VALIDATION_ERROR if the id is missing or blank
    """
    device_id = raw.get("device_id")
    if isinstance(device_id, int) and not isinstance(device_id, bool):
        device_id = str(device_id)
    if not isinstance(device_id, str) or not device_id.strip():
        raise validation_error(
            message="Missing device_id",
            details={"field": "device_id"}
        )
    return device_id.strip()


def detect_payload_shape(raw: Dict[str, Any]) -> PayloadShape:
    """
    Pick the adapter for a report.

    An explicit ``schema`` tag wins; otherwise any known group key holding
    an object selects the nested shape.

    Raises:
        AppException: VALIDATION_ERROR for an unknown ``schema`` tag
    """
    tag = raw.get("schema")
    if tag is not None:
        try:
            return PayloadShape(tag)
        except ValueError:
            raise validation_error(
                message=f"Unknown payload schema: {tag!r}",
                details={"field": "schema", "allowed": [s.value for s in PayloadShape]}
            )

    if any(isinstance(raw.get(group), dict) for group in NESTED_GROUPS):
        return PayloadShape.NESTED
    return PayloadShape.FLAT


def normalize(raw: Dict[str, Any]) -> CanonicalStatus:
    """
    Normalize a raw collar report into a CanonicalStatus.

    Args:
        raw: Decoded JSON body of a telemetry request

    Returns:
        The canonical status record

    Raises:
        AppException: VALIDATION_ERROR when the device id is missing or the
            schema tag is unknown
    """
    device_id = extract_device_id(raw)
    shape = detect_payload_shape(raw)
    status = ADAPTERS[shape].adapt(device_id, raw)
    logger.debug(
        f"Normalized {shape.value} payload",
        extra={"extra_data": {"payload_shape": shape.value}}
    )
    return status
