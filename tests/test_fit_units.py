"""
Tests for raw FIT field normalization (fit_units).
"""

from datetime import datetime, timezone

import pytest

import fit_units as units


class TestTotals:
    def test_reference_session_values(self):
        assert units.duration_s(3661000) == 3661
        assert units.distance_m(1005000) == 10050
        assert units.avg_speed_mps(3500) == pytest.approx(3.5)

    @pytest.mark.parametrize("raw, expected", [(999, 0), (1999, 1), (3661999, 3661)])
    def test_duration_truncates(self, raw, expected):
        assert units.duration_s(raw) == expected

    @pytest.mark.parametrize("raw, expected", [(99, 0), (199, 1), (1005099, 10050)])
    def test_distance_truncates(self, raw, expected):
        assert units.distance_m(raw) == expected

    def test_totals_never_negative(self):
        assert units.duration_s(None) == 0
        assert units.distance_m(-500) == 0

    def test_summary_avg_speed_keeps_zero(self):
        assert units.avg_speed_mps(0) == 0.0
        assert units.avg_speed_mps(None) == 0.0


class TestHeartRate:
    def test_sentinel_is_unknown_in_summary(self):
        assert units.summary_heart_rate(255) == 0
        assert units.summary_heart_rate(None) == 0

    @pytest.mark.parametrize("raw", [0, 1, 100, 180, 254])
    def test_summary_values_pass_through(self, raw):
        assert units.summary_heart_rate(raw) == raw

    def test_record_sentinel_is_absent(self):
        assert units.heart_rate(255) is None
        assert units.heart_rate(None) is None

    def test_record_zero_is_absent(self):
        assert units.heart_rate(0) is None

    @pytest.mark.parametrize("raw", [1, 60, 172, 254])
    def test_record_values_pass_through(self, raw):
        assert units.heart_rate(raw) == raw


class TestPosition:
    def test_semicircles_to_degrees(self):
        assert units.semicircles_to_degrees(2**30) == pytest.approx(90.0)
        assert units.semicircles_to_degrees(-(2**30)) == pytest.approx(-90.0)

    def test_valid_pair(self):
        lat, lon = units.position(566666666, -1466666666)
        assert lat == pytest.approx(47.4975, abs=1e-3)
        assert lon == pytest.approx(-122.9346, abs=1e-3)

    @pytest.mark.parametrize(
        "lat_raw, lon_raw",
        [
            (214748364, 0),
            (0, 214748364),
            (0, 0),
            (None, 214748364),
            (214748364, None),
        ],
    )
    def test_missing_axis_drops_both(self, lat_raw, lon_raw):
        assert units.position(lat_raw, lon_raw) == (None, None)

    def test_latitude_out_of_bounds_drops_both(self):
        # 2**30 + 1 semicircles is just past +90 degrees
        assert units.position(2**30 + 1, 214748364) == (None, None)

    def test_boundary_latitude_kept(self):
        lat, lon = units.position(2**30, 214748364)
        assert lat == pytest.approx(90.0)
        assert lon == pytest.approx(18.0)


class TestRecordFields:
    def test_elevation_scale_and_offset(self):
        assert units.elevation_m(2500) == 0.0
        assert units.elevation_m(3000) == pytest.approx(100.0)
        assert units.elevation_m(2000) == pytest.approx(-100.0)

    def test_elevation_zero_is_absent(self):
        assert units.elevation_m(0) is None
        assert units.elevation_m(None) is None

    def test_speed_zero_is_absent(self):
        assert units.speed_mps(0) is None
        assert units.speed_mps(2750) == pytest.approx(2.75)

    def test_cadence_and_power_zero_is_absent(self):
        assert units.nonzero_int(0) is None
        assert units.nonzero_int(88) == 88

    def test_temperature(self):
        assert units.temperature_c(21) == 21.0
        assert units.temperature_c(-5) == -5.0
        assert units.temperature_c(0) is None

    def test_temperature_unsigned_byte_reinterpreted(self):
        assert units.temperature_c(0xFB) == -5.0

    def test_prefer_enhanced_only_when_legacy_missing(self):
        assert units.prefer(3000, 4000) == 3000
        assert units.prefer(None, 4000) == 4000


class TestTrainingEffect:
    def test_scaled(self):
        assert units.training_effect(32) == pytest.approx(3.2)
        assert units.training_effect(50) == pytest.approx(5.0)

    @pytest.mark.parametrize("raw", [0, 255, None])
    def test_not_available(self, raw):
        assert units.training_effect(raw) is None


class TestTimestamps:
    def test_garmin_epoch(self):
        assert units.garmin_timestamp(0) is None
        assert units.garmin_timestamp(1_000_000_000) == datetime(2021, 9, 8, 1, 46, 40, tzinfo=timezone.utc)

    def test_to_iso_z(self):
        dt = datetime(2021, 9, 8, 1, 46, 40, tzinfo=timezone.utc)
        assert units.to_iso_z(dt) == "2021-09-08T01:46:40Z"
        assert units.to_iso_z(None) is None

    def test_normalize_sport(self):
        assert units.normalize_sport(" Running ") == "running"
        assert units.normalize_sport("") is None
