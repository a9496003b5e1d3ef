"""
Inputs:
- df_activities (pandas.DataFrame)
    One row per activity, produced by fit_to_schema.py (or read back from activities.csv)
    Required columns:
        activity_id (hashable key used to join with df_records)
        max_hr (int; 0 = unknown)
    Optional columns:
        start_time_utc, distance_m, duration_s, avg_hr, ascent_m, descent_m
- df_records (pandas.DataFrame)
    Many rows per activity, as persisted by fit_to_schema.py
    Required columns:
        activity_id
        t_offset_s (seconds from activity start)
        hr (bpm; empty / NaN = no reading)

Outputs:
- recompute_hr_zones(df_records, max_hr) -> List[HRZoneTime]
    Zones for one activity rebuilt from its persisted heart-rate series.
    Uses hr_zones.compute_hr_zones, so results match the zones produced at decode time.
- ZoneBackfill.hr_zones_df()
    hr_zones table (activity_id, zone, time_seconds) for every activity,
    for backfilling activities imported without zones
- ZoneBackfill.summarize_df()
    Per-activity summary: date/time (UTC), distance km, pace MM:SS per km,
    avg/max HR, ascent/descent, seconds in zones 1..5
- ZoneBackfill.from_csvs(activities_csv, records_csv)
    Loads CSV exports and returns a ready analyzer

Usage
    python schema_to_analysis.py --activities activities.csv --records records.csv --out <dir> [--max-hr 190] [--force]
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from hr_zones import ZONE_BOUNDS, HRZoneTime, compute_hr_zones, zone_thresholds

ZONE_NUMBERS = [z for z, _, _ in ZONE_BOUNDS]
HR_ZONE_COLUMNS = ["activity_id", "zone", "time_seconds"]

SUMMARY_COLUMNS = [
    "activity_id",
    "date_yyyymmdd",
    "time_hhmmss",
    "distance_km",
    "pace_mmss",
    "avg_hr",
    "max_hr",
    "ascent_m",
    "descent_m",
] + [f"zone{z}_s" for z in ZONE_NUMBERS]

def _record_pairs(df_records: pd.DataFrame) -> List[tuple]:
    """
    Extracts (t_offset_s, hr) pairs from a persisted records slice, keeping
    stored order. Rows without an offset cannot be placed in time and are dropped.
    """
    if df_records.empty:
        return []
    t = pd.to_numeric(df_records["t_offset_s"], errors="coerce")
    hr = pd.to_numeric(df_records["hr"], errors="coerce") if "hr" in df_records.columns else pd.Series(
        [pd.NA] * len(df_records), index=df_records.index
    )
    pairs = []
    for tv, hv in zip(t.tolist(), hr.tolist()):
        if pd.isna(tv):
            continue
        pairs.append((int(tv), None if pd.isna(hv) else int(hv)))
    return pairs

def recompute_hr_zones(df_records: pd.DataFrame, max_hr: Any) -> List[HRZoneTime]:
    """
    Rebuilds the zone list of one activity from its stored record rows.
    """
    return compute_hr_zones(_record_pairs(df_records), max_hr)

def _safe_int(v: Any) -> Optional[int]:
    if v is None:
        return None
    try:
        if pd.isna(v):
            return None
        return int(v)
    except (TypeError, ValueError):
        return None

def _format_mmss(total_seconds: Optional[float]) -> Optional[str]:
    if total_seconds is None:
        return None
    s = max(int(round(float(total_seconds))), 0)
    minutes = s // 60          # can exceed 59, that's fine for pace
    seconds = s % 60
    return f"{minutes:02d}:{seconds:02d}"

def format_zone_bounds(max_hr: int) -> str:
    """
    Renders the bpm range of each zone to achieve a readable check of an overridden max HR.
    e.g. max 200 -> "Z1 100-120 | Z2 120-140 | ... | Z5 180-200"
    """
    bounds = zone_thresholds(max_hr)
    return " | ".join(
        f"Z{zone} {bounds[i]:g}-{bounds[i + 1]:g}" for i, (zone, _, _) in enumerate(ZONE_BOUNDS)
    )

@dataclass(frozen=True)
class ActivityZoneSummary:
    activity_id: str
    date_yyyymmdd: Optional[str]
    time_hhmmss: Optional[str]
    distance_km: float
    pace_mmss: Optional[str]        # MM:SS per km
    avg_hr: Optional[int]
    max_hr: Optional[int]
    ascent_m: Optional[float]
    descent_m: Optional[float]
    zone_seconds: Dict[int, int]

class ZoneBackfill:
    """
    Recomputes HR zones (and a compact per-activity summary) from persisted
    activity + record tables, without re-reading any FIT file.
    """

    def __init__(self, df_activities: pd.DataFrame, df_records: pd.DataFrame, max_hr_override: Optional[int] = None):
        self.df_activities = df_activities.copy()
        self.df_records = df_records.copy()
        self.max_hr_override = max_hr_override

        if "start_time_utc" in self.df_activities.columns:
            self.df_activities["start_time_utc"] = pd.to_datetime(
                self.df_activities["start_time_utc"], errors="coerce", utc=True
            )

    def _records_for(self, activity_id: Any) -> pd.DataFrame:
        if self.df_records.empty:
            return self.df_records
        return self.df_records[self.df_records["activity_id"] == activity_id]

    def _max_hr_for(self, arow: pd.Series) -> Optional[int]:
        if self.max_hr_override is not None:
            return self.max_hr_override
        return _safe_int(arow.get("max_hr"))

    def zones(self) -> Dict[Any, List[HRZoneTime]]:
        """
        Maps activity_id -> recomputed zones (activities with no zones map to []).
        """
        out: Dict[Any, List[HRZoneTime]] = {}
        for _, arow in self.df_activities.iterrows():
            activity_id = arow.get("activity_id")
            out[activity_id] = recompute_hr_zones(self._records_for(activity_id), self._max_hr_for(arow))
        return out

    def hr_zones_df(self) -> pd.DataFrame:
        rows = [
            {"activity_id": activity_id, "zone": z.zone, "time_seconds": z.time_seconds}
            for activity_id, zones in self.zones().items()
            for z in zones
        ]
        return pd.DataFrame(rows, columns=HR_ZONE_COLUMNS)

    def summarize(self) -> List[ActivityZoneSummary]:
        out: List[ActivityZoneSummary] = []
        zones_by_activity = self.zones()

        for _, arow in self.df_activities.iterrows():
            activity_id = arow.get("activity_id")

            date_yyyymmdd = None
            time_hhmmss = None
            start_time = arow.get("start_time_utc")
            if start_time is not None and not pd.isna(start_time):
                dt: datetime = pd.Timestamp(start_time).to_pydatetime()
                date_yyyymmdd = dt.strftime("%Y%m%d")
                time_hhmmss = dt.strftime("%H:%M:%S")

            dist_m = _safe_int(arow.get("distance_m")) or 0
            dur_s = _safe_int(arow.get("duration_s"))
            distance_km = dist_m / 1000.0
            pace = _format_mmss(dur_s / distance_km) if dur_s and distance_km > 0 else None

            avg_hr = _safe_int(arow.get("avg_hr")) or None
            max_hr = _safe_int(arow.get("max_hr")) or None

            ascent = arow.get("ascent_m")
            descent = arow.get("descent_m")

            out.append(
                ActivityZoneSummary(
                    activity_id=activity_id,
                    date_yyyymmdd=date_yyyymmdd,
                    time_hhmmss=time_hhmmss,
                    distance_km=round(distance_km, 3),
                    pace_mmss=pace,
                    avg_hr=avg_hr,
                    max_hr=max_hr,
                    ascent_m=None if ascent is None or pd.isna(ascent) else float(ascent),
                    descent_m=None if descent is None or pd.isna(descent) else float(descent),
                    zone_seconds={z.zone: z.time_seconds for z in zones_by_activity.get(activity_id, [])},
                )
            )
        return out

    def summarize_df(self) -> pd.DataFrame:
        rows = []
        for s in self.summarize():
            row = {k: v for k, v in s.__dict__.items() if k != "zone_seconds"}
            for z in ZONE_NUMBERS:
                row[f"zone{z}_s"] = s.zone_seconds.get(z, 0)
            rows.append(row)
        return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)

    @staticmethod
    def from_csvs(activities_csv: Path, records_csv: Path, max_hr_override: Optional[int] = None) -> "ZoneBackfill":
        """
        Loads CSV outputs to achieve zone recomputation without re-parsing FIT files.
        """
        df_activities = pd.read_csv(activities_csv)
        df_records = pd.read_csv(records_csv)
        return ZoneBackfill(df_activities=df_activities, df_records=df_records, max_hr_override=max_hr_override)

# CLI
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Recompute hr_zones (and a per-activity summary) from persisted CSV tables.")
    p.add_argument("--activities", required=True, help="Path to activities.csv (from fit_to_schema.py --csv).")
    p.add_argument("--records", required=True, help="Path to records.csv (from fit_to_schema.py --csv).")
    p.add_argument("--out", required=True, help="Output directory for hr_zones.csv and summary.csv.")
    p.add_argument("--max-hr", type=int, default=None, help="Use this max HR for every activity instead of the stored max_hr.")
    p.add_argument("--force", action="store_true", help="Overwrite outputs if they exist.")
    return p.parse_args(argv)

def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = parse_args(argv)

    out_dir = Path(args.out)
    zones_path = out_dir / "hr_zones.csv"
    summary_path = out_dir / "summary.csv"

    try:
        for p in (zones_path, summary_path):
            if p.exists() and not args.force:
                raise FileExistsError(f"Output already exists: {p} (use --force)")

        backfill = ZoneBackfill.from_csvs(Path(args.activities), Path(args.records), max_hr_override=args.max_hr)
        df_zones = backfill.hr_zones_df()
        df_summary = backfill.summarize_df()

        out_dir.mkdir(parents=True, exist_ok=True)
        df_zones.to_csv(zones_path, index=False)
        df_summary.to_csv(summary_path, index=False)
    except Exception as e:
        print(f"[ERROR] {e}")
        import traceback
        traceback.print_exc()
        return 2

    print("[DONE]")
    print(f"  activities: {len(backfill.df_activities)}")
    print(f"  hr_zones:   {len(df_zones)}")
    print(f"  out:        {out_dir}")
    if args.max_hr is not None:
        print(f"  zone bounds: {format_zone_bounds(args.max_hr)}")
    print("\nSummary preview:")
    print(df_summary.head(10).to_string(index=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
