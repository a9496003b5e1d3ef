"""
Tests for the table layer (fit_to_schema.fit_to_dataframes / write_csvs) and
zone recomputation from persisted tables (schema_to_analysis).
"""

import pandas as pd
import pytest

import fit_to_schema
import schema_to_analysis
from fit_builder import T0, FitBuilder, build_activity, file_id_field_size_offset, with_valid_crc
from fit_to_schema import decode_activity, fit_to_dataframes, write_csvs
from hr_zones import HRZoneTime
from schema_to_analysis import ZoneBackfill, recompute_hr_zones

SERIES = [
    {"t": 0, "heart_rate": 140},
    {"t": 10, "heart_rate": 150},
    {"t": 20, "heart_rate": 255},
    {"t": 30, "heart_rate": 160},
    {"t": 40, "heart_rate": 185},
    {"t": 45, "heart_rate": 110},
]


@pytest.fixture
def fit_dir(tmp_path):
    d = tmp_path / "fit"
    d.mkdir()
    (d / "a_run.fit").write_bytes(build_activity(records=SERIES))
    (d / "b_later.fit").write_bytes(
        build_activity(
            records=[{"timestamp": 1_000_086_400, "heart_rate": 170}, {"timestamp": 1_000_086_430, "heart_rate": 172}],
            session={"start_time": 1_000_086_400, "max_heart_rate": 190},
        )
    )
    return d


class TestDataFrames:
    def test_tables_built(self, fit_dir):
        tables = fit_to_dataframes(fit_dir)
        assert len(tables.activities) == 2
        assert len(tables.records) == len(SERIES) + 2
        assert tables.skipped.empty
        assert list(tables.records.columns) == fit_to_schema.RECORD_COLUMNS
        assert tables.records["hr"].isna().sum() == 1

    def test_zone_rows_match_decode(self, fit_dir):
        tables = fit_to_dataframes(fit_dir)
        first = tables.activities.iloc[0]
        rows = tables.hr_zones[tables.hr_zones["activity_id"] == first["activity_id"]]
        decoded = decode_activity(fit_dir / "a_run.fit").zones
        assert [(int(r.zone), int(r.time_seconds)) for r in rows.itertuples()] == [
            (z.zone, z.time_seconds) for z in decoded
        ]

    def test_duplicates_skipped(self, fit_dir):
        data = (fit_dir / "a_run.fit").read_bytes()
        (fit_dir / "c_copy.fit").write_bytes(data)
        tables = fit_to_dataframes(fit_dir)
        assert len(tables.activities) == 2
        assert tables.skipped["reason"].tolist() == ["duplicate"]
        assert tables.skipped["detail"].tolist() == ["file_hash"]

    def test_same_start_different_bytes_is_duplicate(self, fit_dir):
        (fit_dir / "c_reexport.fit").write_bytes(build_activity(records=SERIES[:3]))
        tables = fit_to_dataframes(fit_dir)
        assert tables.skipped["detail"].tolist() == ["fit_uid"]

    def test_bad_and_empty_files_skipped(self, fit_dir):
        (fit_dir / "c_bad.fit").write_bytes(b"garbage")
        (fit_dir / "d_empty.fit").write_bytes(FitBuilder().file_id().build())
        tables = fit_to_dataframes(fit_dir)
        assert len(tables.activities) == 2
        assert sorted(tables.skipped["reason"].tolist()) == ["no_session", "parse_error"]

    def test_corrupt_field_size_skipped_not_fatal(self, fit_dir):
        data = bytearray(build_activity(records=SERIES[:2], session={"start_time": T0 + 5000}))
        data[file_id_field_size_offset("time_created")] = 8
        (fit_dir / "c_corrupt.fit").write_bytes(with_valid_crc(bytes(data)))
        tables = fit_to_dataframes(fit_dir)
        assert len(tables.activities) == 2
        assert tables.skipped["reason"].tolist() == ["parse_error"]

    def test_no_fit_files(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            fit_to_dataframes(tmp_path)


class TestRecompute:
    def test_recompute_from_table(self):
        df = pd.DataFrame(
            {
                "activity_id": ["x"] * 4,
                "t_offset_s": [0, 10, 20, 30],
                "hr": pd.array([140, 150, None, 160], dtype="Int64"),
            }
        )
        assert recompute_hr_zones(df, 200) == [HRZoneTime(zone=3, time_seconds=20)]

    def test_recompute_empty_table(self):
        df = pd.DataFrame(columns=["activity_id", "t_offset_s", "hr"])
        assert recompute_hr_zones(df, 200) == []

    def test_recompute_without_max_hr(self):
        df = pd.DataFrame({"t_offset_s": [0, 10, 20], "hr": [150, 150, 150]})
        assert recompute_hr_zones(df, 0) == []

    def test_recompute_equals_decode_zones(self, fit_dir):
        tables = fit_to_dataframes(fit_dir)
        for _, arow in tables.activities.iterrows():
            recs = tables.records[tables.records["activity_id"] == arow["activity_id"]]
            decoded = decode_activity(arow["source_file"])
            assert recompute_hr_zones(recs, int(arow["max_hr"])) == list(decoded.zones)

    def test_backfill_from_csvs_equals_decode_zones(self, fit_dir, tmp_path):
        tables = fit_to_dataframes(fit_dir)
        paths = write_csvs(tmp_path / "out", tables, force=False)

        backfill = ZoneBackfill.from_csvs(paths["activities"], paths["records"])
        recomputed = backfill.hr_zones_df()
        stored = pd.read_csv(paths["hr_zones"])
        pd.testing.assert_frame_equal(
            recomputed.reset_index(drop=True).astype({"zone": "int64", "time_seconds": "int64"}),
            stored.reset_index(drop=True).astype({"zone": "int64", "time_seconds": "int64"}),
        )

    def test_max_hr_override_255_is_used(self, fit_dir):
        tables = fit_to_dataframes(fit_dir)
        zones = ZoneBackfill(tables.activities, tables.records, max_hr_override=255).zones()
        first = zones[tables.activities.iloc[0]["activity_id"]]
        # of 255 bpm: 140/150 -> zone 1, 160 -> zone 2, 185 -> zone 3
        assert first == [
            HRZoneTime(zone=1, time_seconds=20),
            HRZoneTime(zone=2, time_seconds=10),
            HRZoneTime(zone=3, time_seconds=5),
        ]

    def test_max_hr_override(self, fit_dir):
        tables = fit_to_dataframes(fit_dir)
        zones = ZoneBackfill(tables.activities, tables.records, max_hr_override=400).zones()
        # every stored reading is below 50% of 400 bpm
        assert all(z == [] for z in zones.values())


class TestSummary:
    def test_summary_columns_and_pace(self, fit_dir):
        tables = fit_to_dataframes(fit_dir)
        df = ZoneBackfill(tables.activities, tables.records).summarize_df()
        assert list(df.columns) == schema_to_analysis.SUMMARY_COLUMNS
        first = df.iloc[0]
        assert first["date_yyyymmdd"] == "20210908"
        assert first["time_hhmmss"] == "01:46:40"
        assert first["distance_km"] == pytest.approx(10.05)
        # 3661 s / 10.05 km = 364.28 s/km
        assert first["pace_mmss"] == "06:04"
        assert first["zone3_s"] == 20

    def test_summary_second_activity_zones(self, fit_dir):
        tables = fit_to_dataframes(fit_dir)
        df = ZoneBackfill(tables.activities, tables.records).summarize_df()
        second = df.iloc[1]
        assert second["date_yyyymmdd"] == "20210909"
        # 170 of max 190 is 89.5% -> zone 4 for 30 s
        assert second["zone4_s"] == 30
        assert second["zone5_s"] == 0


class TestCli:
    def test_schema_cli_writes_csvs(self, fit_dir, tmp_path, capsys):
        out = tmp_path / "csv"
        rc = fit_to_schema.main(["--input", str(fit_dir), "--csv", "--out", str(out)])
        assert rc == 0
        for fname in fit_to_schema.TABLE_FILES.values():
            assert (out / fname).exists()
        assert "[DONE]" in capsys.readouterr().out

    def test_schema_cli_refuses_overwrite(self, fit_dir, tmp_path):
        out = tmp_path / "csv"
        assert fit_to_schema.main(["--input", str(fit_dir), "--csv", "--out", str(out)]) == 0
        assert fit_to_schema.main(["--input", str(fit_dir), "--csv", "--out", str(out)]) == 2
        assert fit_to_schema.main(["--input", str(fit_dir), "--csv", "--out", str(out), "--force"]) == 0

    def test_schema_cli_requires_out_with_csv(self, fit_dir):
        assert fit_to_schema.main(["--input", str(fit_dir), "--csv"]) == 2

    def test_analysis_cli(self, fit_dir, tmp_path):
        csv_dir = tmp_path / "csv"
        assert fit_to_schema.main(["--input", str(fit_dir), "--csv", "--out", str(csv_dir)]) == 0
        out = tmp_path / "analysis"
        rc = schema_to_analysis.main(
            [
                "--activities", str(csv_dir / "activities.csv"),
                "--records", str(csv_dir / "records.csv"),
                "--out", str(out),
            ]
        )
        assert rc == 0
        zones = pd.read_csv(out / "hr_zones.csv")
        stored = pd.read_csv(csv_dir / "hr_zones.csv")
        assert zones.values.tolist() == stored.values.tolist()

    def test_analysis_cli_max_hr_override(self, fit_dir, tmp_path, capsys):
        csv_dir = tmp_path / "csv"
        assert fit_to_schema.main(["--input", str(fit_dir), "--csv", "--out", str(csv_dir)]) == 0
        rc = schema_to_analysis.main(
            [
                "--activities", str(csv_dir / "activities.csv"),
                "--records", str(csv_dir / "records.csv"),
                "--out", str(tmp_path / "analysis"),
                "--max-hr", "200",
            ]
        )
        assert rc == 0
        assert "Z1 100-120 | Z2 120-140 | Z3 140-160 | Z4 160-180 | Z5 180-200" in capsys.readouterr().out

    def test_format_zone_bounds(self):
        assert schema_to_analysis.format_zone_bounds(190).startswith("Z1 95-114 | Z2 114-133")
