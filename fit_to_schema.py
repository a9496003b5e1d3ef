"""
FIT -> activity / records / laps / HR zones
Version: v3 (raw-field normalization + zone computation)

Core (in-memory, one file at a time)
    decode_activity(source, file_hash=None) -> DecodeResult
        activity: ActivitySummary (None when the file holds no session)
        records:  RecordSample per record message
        laps:     LapSummary per lap message
        zones:    HRZoneTime per zone with time > 0
        error:    UnreadableInput / MalformedFormat, or None

    Per-file states: opened -> decoded -> normalized -> zones computed -> done.
    A file that cannot be read or is not valid FIT ends in an error result;
    a valid file without sessions ends in an empty result with no error.
    Nothing is raised, retried or logged here; the caller decides.

Tables (batch, for persistence / inspection)
    fit_to_dataframes(input_path) -> SchemaTables
        activities, records, laps, hr_zones, skipped

Dependencies:
    pip install fitparse pandas
"""

from __future__ import annotations

import argparse
import hashlib
import io
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Tuple, Union

import pandas as pd
from fitparse import FitFile
from fitparse.utils import FitParseError

import fit_units as units
from hr_zones import HRZoneTime, compute_hr_zones, hr_series

Source = Union[str, Path, bytes, bytearray, BinaryIO]

# ERRORS
class FitDecodeError(Exception):
    """Base class for failures that end a decode with no usable output."""

class UnreadableInput(FitDecodeError):
    """The file or stream could not be opened or read."""

class MalformedFormat(FitDecodeError):
    """The bytes are not a valid FIT container (header, CRC or framing)."""

# OUTPUT MODEL
@dataclass(frozen=True)
class ActivitySummary:
    """
    One per decoded file. fit_uid is the session start time in ISO-8601 UTC and
    stays the same across re-imports of the same activity.
    avg_hr / max_hr use 0 for "not measured".
    """
    fit_uid: str
    start_time_utc: Optional[datetime]
    sport: Optional[str]
    sub_sport: Optional[str]
    duration_s: int
    distance_m: int
    avg_hr: int
    max_hr: int
    avg_speed_mps: float
    calories: int
    ascent_m: float
    descent_m: float
    device_vendor: Optional[str] = None
    device_model: Optional[str] = None
    aerobic_te: Optional[float] = None
    anaerobic_te: Optional[float] = None
    file_hash: Optional[str] = None

@dataclass(frozen=True)
class RecordSample:
    t_offset_s: int
    lat_deg: Optional[float] = None
    lon_deg: Optional[float] = None
    elev_m: Optional[float] = None
    hr: Optional[int] = None
    cad: Optional[int] = None
    temp_c: Optional[float] = None
    power_w: Optional[int] = None
    speed_mps: Optional[float] = None

    @property
    def has_position(self) -> bool:
        return self.lat_deg is not None and self.lon_deg is not None

@dataclass(frozen=True)
class LapSummary:
    index: int
    start_offset_s: int
    duration_s: int
    distance_m: int
    avg_hr: int
    max_hr: int
    avg_speed_mps: float

@dataclass(frozen=True)
class DecodeResult:
    """
    Bundles the four outputs of one decode so they are used together or not at all.
    """
    activity: Optional[ActivitySummary] = None
    records: Tuple[RecordSample, ...] = ()
    laps: Tuple[LapSummary, ...] = ()
    zones: Tuple[HRZoneTime, ...] = ()
    error: Optional[FitDecodeError] = None
    warnings: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_empty(self) -> bool:
        """Parsed successfully but the file had no session to report."""
        return self.error is None and self.activity is None

    def raise_for_error(self) -> "DecodeResult":
        if self.error is not None:
            raise self.error
        return self

# DECODER ADAPTER
@dataclass(frozen=True)
class RawMessage:
    """
    One FIT message as two views: raw (unscaled device integers, None for the
    base type's invalid value) and values (profile-processed: enum names,
    datetimes, scaled floats).
    """
    raw: Dict[str, Any]
    values: Dict[str, Any]

    def get(self, name: str, default: Any = None) -> Any:
        return self.raw.get(name, default)

    def get_any(self, *names: str) -> Any:
        for n in names:
            v = self.raw.get(n)
            if v is not None:
                return v
        return None

@dataclass
class FitMessages:
    sessions: List[RawMessage] = field(default_factory=list)
    laps: List[RawMessage] = field(default_factory=list)
    records: List[RawMessage] = field(default_factory=list)
    file_ids: List[RawMessage] = field(default_factory=list)
    device_infos: List[RawMessage] = field(default_factory=list)


MESSAGE_KINDS = {
    "session": "sessions",
    "lap": "laps",
    "record": "records",
    "file_id": "file_ids",
    "device_info": "device_infos",
}

def get_message_dict(msg) -> RawMessage:
    """
    Converts a FIT message object to raw/processed dictionaries to achieve simple field access by name.
    """
    raw: Dict[str, Any] = {}
    values: Dict[str, Any] = {}
    for f in msg:
        if f.name is None:
            continue
        raw[f.name] = f.raw_value
        values[f.name] = f.value
    return RawMessage(raw=raw, values=values)

def read_source_bytes(source: Source) -> bytes:
    """
    Reads the whole input into memory. Raises OSError for unreadable paths/streams.
    """
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    if isinstance(source, (str, Path)):
        return Path(source).read_bytes()
    if hasattr(source, "read"):
        data = source.read()
        if not isinstance(data, (bytes, bytearray)):
            raise OSError("stream did not return bytes (open it in binary mode)")
        return bytes(data)
    raise TypeError(f"Unsupported FIT source type: {type(source).__name__}")

def content_sha1(data: bytes) -> str:
    """Hashes file content to achieve duplicate detection independent of file name."""
    return hashlib.sha1(data).hexdigest()

def decode_messages(data: bytes) -> FitMessages:
    """
    Runs fitparse over the bytes (CRC checked) and groups the messages this
    pipeline consumes. Any framing/header/CRC problem becomes MalformedFormat,
    as does any other error fitparse hits while processing corrupt fields
    (e.g. a date_time field whose declared size yields a tuple).
    """
    out = FitMessages()
    try:
        fit = FitFile(io.BytesIO(data), check_crc=True)
        fit.parse()
        for name, attr in MESSAGE_KINDS.items():
            bucket: List[RawMessage] = getattr(out, attr)
            for msg in fit.get_messages(name):
                bucket.append(get_message_dict(msg))
    except FitParseError as e:
        raise MalformedFormat(f"not a valid FIT file: {e}") from e
    except Exception as e:
        raise MalformedFormat(f"not a valid FIT file: {type(e).__name__}: {e}") from e
    return out

def first_value(messages: List[List[RawMessage]], field_names: List[str]) -> Any:
    """
    Extracts the first available processed value across message groups to achieve resilient metadata lookup.
    """
    for group in messages:
        for msg in group:
            for fn in field_names:
                v = msg.values.get(fn)
                if v is not None:
                    return v
    return None

def _text(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None

# NORMALIZATION
def resolve_start_raw(session: RawMessage, fm: FitMessages) -> Optional[int]:
    """
    Session start_time, else the first timestamped record, else file_id.time_created.
    """
    start = session.get("start_time")
    if start is not None:
        return int(start)
    for rec in fm.records:
        ts = rec.get("timestamp")
        if ts is not None:
            return int(ts)
    for fid in fm.file_ids:
        ts = fid.get("time_created")
        if ts is not None:
            return int(ts)
    return None

def normalize_session(
    session: RawMessage,
    fm: FitMessages,
    start_raw: Optional[int],
    file_hash: Optional[str] = None,
) -> ActivitySummary:
    start_dt = units.garmin_timestamp(start_raw)
    sources = [fm.file_ids, fm.device_infos]

    return ActivitySummary(
        fit_uid=units.to_iso_z(start_dt) or "",
        start_time_utc=start_dt,
        sport=units.normalize_sport(session.values.get("sport")),
        sub_sport=units.normalize_sport(session.values.get("sub_sport")),
        duration_s=units.duration_s(session.get("total_timer_time")),
        distance_m=units.distance_m(session.get("total_distance")),
        avg_hr=units.summary_heart_rate(session.get("avg_heart_rate")),
        max_hr=units.summary_heart_rate(session.get("max_heart_rate")),
        avg_speed_mps=units.avg_speed_mps(session.get_any("avg_speed", "enhanced_avg_speed")),
        calories=units.plain_int(session.get("total_calories")),
        ascent_m=units.plain_float(session.get("total_ascent")),
        descent_m=units.plain_float(session.get("total_descent")),
        device_vendor=_text(first_value(sources, ["manufacturer"])),
        device_model=_text(first_value(sources, ["garmin_product", "product_name", "product"])),
        aerobic_te=units.training_effect(session.get("total_training_effect")),
        anaerobic_te=units.training_effect(
            session.get_any("total_anaerobic_training_effect", "unknown_137")
        ),
        file_hash=file_hash,
    )

def normalize_record(rec: RawMessage, t_offset_s: int) -> RecordSample:
    """
    Converts one record message to engineering units to achieve a clean sample row.
    Position is kept only as a complete pair; legacy speed/altitude win over enhanced.
    """
    lat, lon = units.position(rec.get("position_lat"), rec.get("position_long"))
    return RecordSample(
        t_offset_s=t_offset_s,
        lat_deg=lat,
        lon_deg=lon,
        elev_m=units.elevation_m(units.prefer(rec.get("altitude"), rec.get("enhanced_altitude"))),
        hr=units.heart_rate(rec.get("heart_rate")),
        cad=units.nonzero_int(rec.get("cadence")),
        temp_c=units.temperature_c(rec.get("temperature")),
        power_w=units.nonzero_int(rec.get("power")),
        speed_mps=units.speed_mps(units.prefer(rec.get("speed"), rec.get("enhanced_speed"))),
    )

def normalize_records(fm: FitMessages, start_raw: Optional[int]) -> Tuple[List[RecordSample], List[str]]:
    """
    Builds the record series with offsets from the activity start. Records
    without a timestamp are skipped; records that step back in time are
    dropped (with a warning) so offsets never decrease.
    """
    out: List[RecordSample] = []
    warnings: List[str] = []
    untimed = 0
    backwards = 0
    last_ts: Optional[int] = None

    for rec in fm.records:
        ts = rec.get("timestamp")
        if ts is None:
            untimed += 1
            continue
        ts = int(ts)
        if last_ts is not None and ts < last_ts:
            backwards += 1
            continue
        last_ts = ts
        base = start_raw if start_raw is not None else ts
        out.append(normalize_record(rec, ts - base))

    if untimed:
        warnings.append(f"skipped {untimed} record(s) without timestamp")
    if backwards:
        warnings.append(f"dropped {backwards} record(s) with out-of-order timestamp")
    return out, warnings

def normalize_laps(fm: FitMessages, start_raw: Optional[int]) -> List[LapSummary]:
    """
    Summarises lap messages in file order. start_offset_s is relative to the
    activity start (0 when either start time is unknown).
    """
    laps: List[LapSummary] = []
    for i, lap in enumerate(fm.laps):
        lap_start = lap.get("start_time")
        start_off = int(lap_start) - start_raw if lap_start is not None and start_raw is not None else 0
        laps.append(
            LapSummary(
                index=i,
                start_offset_s=start_off,
                duration_s=units.duration_s(lap.get("total_timer_time")),
                distance_m=units.distance_m(lap.get("total_distance")),
                avg_hr=units.summary_heart_rate(lap.get("avg_heart_rate")),
                max_hr=units.summary_heart_rate(lap.get("max_heart_rate")),
                avg_speed_mps=units.avg_speed_mps(lap.get_any("avg_speed", "enhanced_avg_speed")),
            )
        )
    return laps

# PIPELINE
def decode_activity(source: Source, file_hash: Optional[str] = None) -> DecodeResult:
    """
    Decodes one FIT file/buffer into activity, records, laps and HR zones.

    Only the first session is summarised (multisport files report their first
    leg). Errors come back in DecodeResult.error, never as exceptions.
    """
    # opened
    try:
        data = read_source_bytes(source)
    except OSError as e:
        return DecodeResult(error=UnreadableInput(f"cannot read {_describe(source)}: {e}"))

    # decoded
    try:
        fm = decode_messages(data)
    except MalformedFormat as e:
        return DecodeResult(error=e)

    if not fm.sessions:
        return DecodeResult()

    # normalized
    session = fm.sessions[0]
    start_raw = resolve_start_raw(session, fm)
    activity = normalize_session(session, fm, start_raw, file_hash=file_hash)
    records, warnings = normalize_records(fm, start_raw)
    laps = normalize_laps(fm, start_raw)
    if len(fm.sessions) > 1:
        warnings.append(f"{len(fm.sessions)} sessions found; summarised the first")

    # zones computed
    zones = compute_hr_zones(hr_series(records), activity.max_hr)

    return DecodeResult(
        activity=activity,
        records=tuple(records),
        laps=tuple(laps),
        zones=tuple(zones),
        warnings=tuple(warnings),
    )

def _describe(source: Source) -> str:
    if isinstance(source, (str, Path)):
        return str(source)
    return f"<{type(source).__name__}>"

# TABLES
ACTIVITY_COLUMNS = [
    "activity_id", "fit_uid", "start_time_utc", "sport", "sub_sport",
    "duration_s", "distance_m", "avg_hr", "max_hr", "avg_speed_mps",
    "calories", "ascent_m", "descent_m", "device_vendor", "device_model",
    "aerobic_te", "anaerobic_te", "source_file", "file_hash", "parse_warnings",
]

RECORD_COLUMNS = [
    "activity_id", "t_offset_s", "lat_deg", "lon_deg", "elev_m",
    "hr", "cad", "temp_c", "power_w", "speed_mps",
]

LAP_COLUMNS = [
    "activity_id", "lap_index", "start_offset_s", "duration_s",
    "distance_m", "avg_hr", "max_hr", "avg_speed_mps",
]

HR_ZONE_COLUMNS = ["activity_id", "zone", "time_seconds"]

SKIPPED_COLUMNS = ["source_file", "reason", "detail"]

# Optional integer columns keep pandas' nullable Int64 so 0 never stands in for missing
NULLABLE_INT_COLUMNS = {"hr", "cad", "power_w"}

@dataclass(frozen=True)
class SchemaTables:
    activities: pd.DataFrame
    records: pd.DataFrame
    laps: pd.DataFrame
    hr_zones: pd.DataFrame
    skipped: pd.DataFrame

def iter_fit_paths(input_path: Path) -> List[Path]:
    """
    Discovers .fit files to achieve a stable list of inputs for parsing.
    Returns the file if the input is a single .fit, or recursively searches
    a directory for *.fit files and returns them sorted.
    """
    if input_path.is_file():
        return [input_path] if input_path.suffix.lower() == ".fit" else []
    if input_path.is_dir():
        return sorted([p for p in input_path.rglob("*.fit") if p.is_file()])
    return []

def make_activity_id(source_file: Path, fit_uid: str) -> str:
    """
    Creates a reproducible activity identifier to achieve stable joins across outputs.
    """
    s = f"{source_file.name}|{fit_uid}"
    return hashlib.sha1(s.encode("utf-8")).hexdigest()

def result_to_rows(
    result: DecodeResult,
    activity_id: str,
    source_file: str,
) -> Tuple[Dict[str, Any], List[Dict[str, Any]], List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Flattens one successful DecodeResult into table rows keyed by activity_id.
    """
    a = result.activity
    if a is None:
        raise ValueError("result has no activity to flatten")

    activity_row = {
        "activity_id": activity_id,
        "fit_uid": a.fit_uid,
        "start_time_utc": units.to_iso_z(a.start_time_utc),
        "sport": a.sport,
        "sub_sport": a.sub_sport,
        "duration_s": a.duration_s,
        "distance_m": a.distance_m,
        "avg_hr": a.avg_hr,
        "max_hr": a.max_hr,
        "avg_speed_mps": a.avg_speed_mps,
        "calories": a.calories,
        "ascent_m": a.ascent_m,
        "descent_m": a.descent_m,
        "device_vendor": a.device_vendor,
        "device_model": a.device_model,
        "aerobic_te": a.aerobic_te,
        "anaerobic_te": a.anaerobic_te,
        "source_file": source_file,
        "file_hash": a.file_hash,
        "parse_warnings": "; ".join(result.warnings) if result.warnings else None,
    }

    record_rows = [
        {
            "activity_id": activity_id,
            "t_offset_s": r.t_offset_s,
            "lat_deg": r.lat_deg,
            "lon_deg": r.lon_deg,
            "elev_m": r.elev_m,
            "hr": r.hr,
            "cad": r.cad,
            "temp_c": r.temp_c,
            "power_w": r.power_w,
            "speed_mps": r.speed_mps,
        }
        for r in result.records
    ]

    lap_rows = [
        {
            "activity_id": activity_id,
            "lap_index": lp.index,
            "start_offset_s": lp.start_offset_s,
            "duration_s": lp.duration_s,
            "distance_m": lp.distance_m,
            "avg_hr": lp.avg_hr,
            "max_hr": lp.max_hr,
            "avg_speed_mps": lp.avg_speed_mps,
        }
        for lp in result.laps
    ]

    zone_rows = [
        {"activity_id": activity_id, "zone": z.zone, "time_seconds": z.time_seconds}
        for z in result.zones
    ]
    return activity_row, record_rows, lap_rows, zone_rows

def _frame(rows: List[Dict[str, Any]], columns: List[str]) -> pd.DataFrame:
    df = pd.DataFrame(rows, columns=columns)
    for c in columns:
        if c in NULLABLE_INT_COLUMNS:
            df[c] = df[c].astype("Int64")
    return df

def fit_to_dataframes(input_path: Path) -> SchemaTables:
    """
    Decodes every .fit under input_path into the five schema tables.
    Files repeating an already seen fit_uid or content hash are reported in
    `skipped` as duplicates instead of being added twice.
    """
    fit_paths = iter_fit_paths(input_path)
    if not fit_paths:
        raise FileNotFoundError(f"No .fit files found at: {input_path}")

    activity_rows: List[Dict[str, Any]] = []
    record_rows: List[Dict[str, Any]] = []
    lap_rows: List[Dict[str, Any]] = []
    zone_rows: List[Dict[str, Any]] = []
    skipped_rows: List[Dict[str, Any]] = []
    seen_uids = set()
    seen_hashes = set()

    print(f"Processing {len(fit_paths)} files...")

    for fp in fit_paths:
        try:
            data = read_source_bytes(fp)
        except OSError as e:
            skipped_rows.append({"source_file": str(fp), "reason": "unreadable", "detail": str(e)})
            continue

        file_hash = content_sha1(data)
        if file_hash in seen_hashes:
            skipped_rows.append({"source_file": str(fp), "reason": "duplicate", "detail": "file_hash"})
            continue

        result = decode_activity(data, file_hash=file_hash)
        if result.error is not None:
            reason = "unreadable" if isinstance(result.error, UnreadableInput) else "parse_error"
            skipped_rows.append({"source_file": str(fp), "reason": reason, "detail": str(result.error)})
            continue
        if result.activity is None:
            skipped_rows.append({"source_file": str(fp), "reason": "no_session", "detail": None})
            continue

        uid = result.activity.fit_uid
        if uid and uid in seen_uids:
            skipped_rows.append({"source_file": str(fp), "reason": "duplicate", "detail": "fit_uid"})
            continue
        if uid:
            seen_uids.add(uid)
        seen_hashes.add(file_hash)

        activity_id = make_activity_id(fp, uid)
        a_row, r_rows, l_rows, z_rows = result_to_rows(result, activity_id, str(fp))
        activity_rows.append(a_row)
        record_rows.extend(r_rows)
        lap_rows.extend(l_rows)
        zone_rows.extend(z_rows)

    df_activities = _frame(activity_rows, ACTIVITY_COLUMNS)
    if not df_activities.empty:
        df_activities["start_time_utc"] = pd.to_datetime(df_activities["start_time_utc"], errors="coerce", utc=True)

    return SchemaTables(
        activities=df_activities,
        records=_frame(record_rows, RECORD_COLUMNS),
        laps=_frame(lap_rows, LAP_COLUMNS),
        hr_zones=_frame(zone_rows, HR_ZONE_COLUMNS),
        skipped=_frame(skipped_rows, SKIPPED_COLUMNS),
    )


TABLE_FILES = {
    "activities": "activities.csv",
    "records": "records.csv",
    "laps": "laps.csv",
    "hr_zones": "hr_zones.csv",
    "skipped": "skipped.csv",
}

def write_csvs(out_dir: Path, tables: SchemaTables, force: bool) -> Dict[str, Path]:
    """
    Writes the schema tables to CSV to achieve inspectable, portable outputs.
    Refuses to overwrite existing files unless force is set.
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    paths = {name: out_dir / fname for name, fname in TABLE_FILES.items()}

    for p in paths.values():
        if p.exists() and not force:
            raise FileExistsError(f"Output already exists: {p} (use --force)")

    for name, p in paths.items():
        getattr(tables, name).to_csv(p, index=False)
    return paths

# CLI
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Decode .fit files into activity / records / laps / hr_zones tables.")
    p.add_argument("--input", help="Path to a .fit file or a directory containing .fit files.")
    p.add_argument("--out", help="Output directory (only used with --csv).")
    p.add_argument("--csv", action="store_true", help="Write the tables as CSV files.")
    p.add_argument("--force", action="store_true", help="Overwrite CSV outputs if they exist.")
    return p.parse_args(argv)

def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = parse_args(argv)

    if not args.input:
        raw_in = input("Enter full path to a .fit file OR a directory of .fit files: ").strip().strip('"')
        if not raw_in:
            print("[ERROR] No input path provided.")
            return 2
        input_path = Path(raw_in)
    else:
        input_path = Path(args.input)

    if args.csv and not args.out:
        print("[ERROR] --out is required when using --csv")
        return 2

    try:
        tables = fit_to_dataframes(input_path)
    except FileNotFoundError as e:
        print(f"[ERROR] {e}")
        return 2
    except Exception as e:
        print(f"[ERROR] {e}")
        import traceback
        traceback.print_exc()
        return 2

    for row in tables.skipped.itertuples(index=False):
        print(f"[SKIP] {row.source_file}: {row.reason}" + (f" ({row.detail})" if row.detail else ""))

    print("[DONE]")
    print(f"  activities: {len(tables.activities)}")
    print(f"  records:    {len(tables.records)}")
    print(f"  laps:       {len(tables.laps)}")
    print(f"  hr_zones:   {len(tables.hr_zones)}")
    print(f"  skipped:    {len(tables.skipped)}")

    if args.csv:
        try:
            write_csvs(Path(args.out), tables, force=bool(args.force))
            print(f"  csv_out:    {Path(args.out)}")
        except FileExistsError as e:
            print(f"[ERROR] {e}")
            return 2

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
