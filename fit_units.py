"""
Raw FIT fields -> engineering units

Inputs
    Raw integers exactly as the device wrote them (the FIT profile's scaled
    integer representation). None means the decoder already recognised the
    base type's invalid value.

Outputs
    meters, seconds, m/s, degrees, deg C, bpm

Scale / offset rules (FIT profile)
    total_timer_time   scale 1000          -> s
    total_distance     scale 100           -> m
    speed / avg_speed  scale 1000          -> m/s
    altitude           scale 5, offset 500 -> m
    position_*         semicircles         -> degrees
    training_effect    scale 10            -> 0.0 .. 5.0

Notes
    - A raw 0 is "no reading" for elevation, cadence, power, temperature and
      per-record speed; it is never turned into a real 0 value.
    - Integer outputs truncate toward zero, never round.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Tuple

# FIT epoch (1989-12-31T00:00:00Z) relative to the unix epoch
GARMIN_EPOCH_OFFSET = 631065600
SEMICIRCLES_TO_DEG = 180.0 / 2**31

HR_INVALID = 0xFF
TRAINING_EFFECT_INVALID = 0xFF

TIME_SCALE = 1000
DISTANCE_SCALE = 100
SPEED_SCALE = 1000
ALTITUDE_SCALE = 5
ALTITUDE_OFFSET = 500
TRAINING_EFFECT_SCALE = 10

def _as_int(v: Any) -> Optional[int]:
    """
    Coerces decoder output to an int to achieve one numeric path for raw fields.
    Rejects bools, NaN and non-numeric values.
    """
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, float):
        if v != v:  # NaN
            return None
        return int(v)
    if isinstance(v, int):
        return v
    return None

def _truncate_scaled(raw: Any, scale: int) -> int:
    """
    Divides a scaled integer to achieve whole units, truncating toward zero.
    Missing or negative values collapse to 0 (totals are never negative).
    """
    v = _as_int(raw)
    if v is None or v <= 0:
        return 0
    return v // scale

# Totals (session / lap)
def duration_s(raw: Any) -> int:
    """total_timer_time (ms) -> whole seconds"""
    return _truncate_scaled(raw, TIME_SCALE)

def distance_m(raw: Any) -> int:
    """total_distance (cm) -> whole meters"""
    return _truncate_scaled(raw, DISTANCE_SCALE)

def avg_speed_mps(raw: Any) -> float:
    """
    Converts an average-speed field to m/s. Unlike the per-record series, a
    raw 0 stays 0.0 here: the summary keeps the value exactly as computed.
    """
    v = _as_int(raw)
    if v is None:
        return 0.0
    return v / SPEED_SCALE

def summary_heart_rate(raw: Any) -> int:
    """Heart rate for plain-int summary fields: 255 / missing -> 0 (unknown)."""
    v = _as_int(raw)
    if v is None or v == HR_INVALID:
        return 0
    return v

def plain_int(raw: Any) -> int:
    """Summary integers (calories): missing -> 0."""
    v = _as_int(raw)
    return 0 if v is None else v

def plain_float(raw: Any) -> float:
    """Summary meters (ascent / descent) as float: missing -> 0.0."""
    v = _as_int(raw)
    return 0.0 if v is None else float(v)

def training_effect(raw: Any) -> Optional[float]:
    """
    Scales a training-effect byte (0..50) to the 0.0..5.0 score.
    0 and 255 both mean "not reported" and map to None, so a reported score
    is never confused with a missing one.
    """
    v = _as_int(raw)
    if v is None or v == 0 or v == TRAINING_EFFECT_INVALID:
        return None
    return v / TRAINING_EFFECT_SCALE

# Per-record fields
def heart_rate(raw: Any) -> Optional[int]:
    """
    Per-record heart rate to achieve a series where absence is never a reading.
    0 and 255 both map to None.
    """
    v = _as_int(raw)
    if v is None or v == 0 or v == HR_INVALID:
        return None
    return v

def speed_mps(raw: Any) -> Optional[float]:
    """Per-record speed (mm/s) -> m/s; a raw 0 means no reading."""
    v = _as_int(raw)
    if v is None or v == 0:
        return None
    return v / SPEED_SCALE

def elevation_m(raw: Any) -> Optional[float]:
    """
    Converts the altitude field (scale 5, offset 500) to meters.
    raw 2500 -> 0.0 m is a real reading; only raw 0 is treated as missing.
    """
    v = _as_int(raw)
    if v is None or v == 0:
        return None
    return v / ALTITUDE_SCALE - ALTITUDE_OFFSET

def nonzero_int(raw: Any) -> Optional[int]:
    """Cadence and power: 0 means the sensor did not report."""
    v = _as_int(raw)
    if v is None or v == 0:
        return None
    return v

def temperature_c(raw: Any) -> Optional[float]:
    """
    Reads the one-byte signed temperature (deg C). Values handed over as an
    unsigned byte (128..255) are reinterpreted as signed 8-bit.
    """
    v = _as_int(raw)
    if v is None or v == 0:
        return None
    if 0x80 <= v <= 0xFF:
        v -= 0x100
    return float(v)

def semicircles_to_degrees(v: Any) -> Optional[float]:
    """
    Converts FIT GPS semicircles to degrees to achieve usable latitude/longitude values.
    """
    raw = _as_int(v)
    if raw is None:
        return None
    return raw * SEMICIRCLES_TO_DEG

def position(lat_raw: Any, lon_raw: Any) -> Tuple[Optional[float], Optional[float]]:
    """
    Converts a semicircle pair to (lat, lon) degrees.
    Both axes must be nonzero and land inside [-90, 90] / [-180, 180];
    otherwise both are dropped together, never one axis alone.
    """
    lat_i = _as_int(lat_raw)
    lon_i = _as_int(lon_raw)
    if not lat_i or not lon_i:
        return None, None

    lat = lat_i * SEMICIRCLES_TO_DEG
    lon = lon_i * SEMICIRCLES_TO_DEG
    if -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0:
        return lat, lon
    return None, None

def prefer(primary: Any, fallback: Any) -> Any:
    """
    Returns the legacy field when present, otherwise its enhanced counterpart
    (enhanced_speed / enhanced_altitude carry the same scale in 32 bits).
    """
    return primary if primary is not None else fallback

# Timestamps
def garmin_timestamp(raw: Any) -> Optional[datetime]:
    """FIT date_time (seconds since 1989-12-31 UTC) -> aware UTC datetime."""
    v = _as_int(raw)
    if v is None or v == 0:
        return None
    return datetime.fromtimestamp(v + GARMIN_EPOCH_OFFSET, tz=timezone.utc)

def to_iso_z(dt: Any) -> Optional[str]:
    """
    Normalizes timestamps to achieve a consistent UTC ISO-8601 representation.
    Checks for datetime inputs, assigns/ converts timezone to UTC, then returns an ISO
    string using 'Z' for +00:00.
    """
    if isinstance(dt, datetime):
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        else:
            dt = dt.astimezone(timezone.utc)
        return dt.isoformat().replace("+00:00", "Z")
    return None

def normalize_sport(value: Any) -> Optional[str]:
    """
    Normalizes sport/sub_sport values to achieve consistent comparisons and filtering.
    Stringifies the value, lowercases it, trims whitespace, and returns None for empty results.
    """
    if value is None:
        return None
    s = str(value).strip().lower()
    return s or None
