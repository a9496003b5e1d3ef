"""
Heart-rate zone time accumulation (5-zone, percentage of max HR)

    Zone 1: 50-60%   recovery
    Zone 2: 60-70%   aerobic base
    Zone 3: 70-80%   aerobic
    Zone 4: 80-90%   lactate threshold
    Zone 5: 90-100%  neuromuscular (100% inclusive)

Input is a sequence of (t_offset_s, hr) pairs. Each consecutive pair
(i, i+1) credits t(i+1) - t(i) seconds to the zone of hr(i). The last sample
never starts a period. Readings below 50% (or above max) are not tracked.

This is the single implementation used both while decoding a FIT file and
when recomputing zones from an already persisted record series.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from fit_units import HR_INVALID

# (zone, lower %, upper %); the upper bound is exclusive except for zone 5
ZONE_BOUNDS: Tuple[Tuple[int, int, int], ...] = (
    (1, 50, 60),
    (2, 60, 70),
    (3, 70, 80),
    (4, 80, 90),
    (5, 90, 100),
)

@dataclass(frozen=True)
class HRZoneTime:
    zone: int
    time_seconds: int

def usable_hr(v: Any) -> Optional[int]:
    """
    Returns the heart rate as an int, or None for missing / sentinel / NaN values.
    """
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    if f != f:  # NaN from a persisted table
        return None
    hr = int(f)
    if hr <= 0 or hr == HR_INVALID:
        return None
    return hr

def usable_max_hr(v: Any) -> Optional[int]:
    """
    Validates a max HR. Only missing, NaN or non-positive values mean "unknown";
    255 is an ordinary limit here (the sentinel is resolved when decoding).
    """
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    if f != f:
        return None
    limit = int(f)
    return limit if limit > 0 else None

def zone_for(hr: int, max_hr: int) -> Optional[int]:
    """
    Classifies one reading. Compares hr * 100 against max_hr * pct so the
    band edges are exact (no float rounding at e.g. 70% of 183).
    """
    scaled = hr * 100
    for zone, lo, hi in ZONE_BOUNDS:
        if scaled < max_hr * lo:
            continue
        if scaled < max_hr * hi or (hi == 100 and scaled == max_hr * hi):
            return zone
    return None

def zone_thresholds(max_hr: int) -> List[float]:
    """Lower bound (bpm) of zones 1..5 followed by the zone 5 upper bound."""
    return [max_hr * lo / 100.0 for _, lo, _ in ZONE_BOUNDS] + [float(max_hr)]

def compute_hr_zones(records: Iterable[Tuple[Any, Any]], max_hr: Any) -> List[HRZoneTime]:
    """
    Accumulates seconds per zone from (t_offset_s, hr) pairs.

    Returns only zones with a strictly positive total, ordered by zone.
    An unknown max HR, or fewer than two usable readings, yields [].
    """
    limit = usable_max_hr(max_hr)
    if limit is None:
        return []

    series: List[Tuple[int, Optional[int]]] = [(int(t), usable_hr(hr)) for t, hr in records]
    if sum(1 for _, hr in series if hr is not None) < 2:
        return []

    totals = {zone: 0 for zone, _, _ in ZONE_BOUNDS}
    for (t0, hr), (t1, _) in zip(series, series[1:]):
        if hr is None:
            continue
        elapsed = t1 - t0
        if elapsed <= 0:
            continue
        zone = zone_for(hr, limit)
        if zone is not None:
            totals[zone] += elapsed

    return [HRZoneTime(zone=z, time_seconds=s) for z, s in sorted(totals.items()) if s > 0]

def hr_series(samples: Sequence[Any]) -> List[Tuple[int, Optional[int]]]:
    """
    Extracts (t_offset_s, hr) pairs from RecordSample-like objects.
    """
    return [(s.t_offset_s, s.hr) for s in samples]
