"""Tests for session normalization and period/sample reconciliation."""
from datetime import datetime, timezone

import pytest

from reconcile import (
    NO_SESSIONS,
    STATS_SAMPLES_KEY,
    extract_stats_samples,
    merge_sessions,
    needs_consumption_stats,
    normalize_session,
    reconcile,
    reconcile_station,
    wh_to_kwh,
)
from report_config import Station
from tariff import DAY, NIGHT

# June 2026 in Vilnius
WINDOW_START = datetime(2026, 5, 31, 21, 0, tzinfo=timezone.utc)
WINDOW_END = datetime(2026, 6, 30, 21, 0, tzinfo=timezone.utc)

STATION = Station(326, "Vadim Čiurlionio 84A")


def session_with_periods(periods, samples=None):
    return {
        "sessionId": "S1",
        "chargingPeriods": periods,
        "clockAlignedEnergyConsumption": samples or [],
    }


def session_with_samples(samples, session_id="S1"):
    return {"sessionId": session_id, "chargingPeriods": [], "clockAlignedEnergyConsumption": samples}


class TestChargingPeriods:

    def test_rows_and_tariff_split(self):
        session = session_with_periods([
            {"id": "p1", "startedAt": "2026-06-01T05:00:00Z", "stoppedAt": "2026-06-01T06:00:00Z", "energy": 1500},
            {"id": "p2", "startedAt": "2026-06-01T04:00:00Z", "stoppedAt": "2026-06-01T05:00:00Z", "energy": 2000},
        ])
        result = reconcile(session, WINDOW_START, WINDOW_END)

        assert [r.as_dict() for r in result.rows] == [
            {"id": "p1", "energy_kwh": 1.5, "startedAt": "2026-06-01T08:00:00+03:00",
             "stoppedAt": "2026-06-01T09:00:00+03:00", "tarifas": DAY},
            {"id": "p2", "energy_kwh": 2.0, "startedAt": "2026-06-01T07:00:00+03:00",
             "stoppedAt": "2026-06-01T08:00:00+03:00", "tarifas": NIGHT},
        ]
        assert result.day_kwh == pytest.approx(1.5)
        assert result.night_kwh == pytest.approx(2.0)
        assert result.total_kwh == pytest.approx(3.5)
        assert result.row_count == 2

    def test_periods_win_over_samples(self):
        session = session_with_periods(
            [{"id": "p1", "startedAt": "2026-06-01T05:00:00Z", "energy": 1000}],
            samples=[{"start": "2026-06-01T05:00:00Z", "energyConsumed": 5000}],
        )
        result = reconcile(session, WINDOW_START, WINDOW_END)
        assert [r.period_id for r in result.rows] == ["p1"]
        assert result.total_kwh == pytest.approx(1.0)

    def test_window_is_half_open_on_start(self):
        session = session_with_periods([
            {"id": "before", "startedAt": "2026-05-31T20:59:59Z", "energy": 1},
            {"id": "first", "startedAt": "2026-05-31T21:00:00Z", "energy": 1},
            {"id": "last", "startedAt": "2026-06-30T20:59:59Z", "energy": 1},
            {"id": "after", "startedAt": "2026-06-30T21:00:00Z", "energy": 1},
        ])
        result = reconcile(session, WINDOW_START, WINDOW_END)
        assert [r.period_id for r in result.rows] == ["first", "last"]

    def test_unparseable_start_is_excluded(self):
        session = session_with_periods([
            {"id": "bad", "startedAt": "yesterday", "energy": 100},
            {"id": "none", "energy": 100},
        ])
        result = reconcile(session, WINDOW_START, WINDOW_END)
        assert result.rows == []

    def test_missing_energy_keeps_row(self):
        session = session_with_periods([{"id": "p1", "startedAt": "2026-06-01T05:00:00Z"}])
        result = reconcile(session, WINDOW_START, WINDOW_END)
        assert result.rows[0].energy_kwh is None
        assert result.rows[0].stopped_at == ""
        assert result.total_kwh == 0


class TestClockAlignedSamples:

    def test_ids_use_position_in_full_list(self):
        samples = [
            {"start": "2026-05-31T20:45:00Z", "end": "2026-05-31T21:00:00Z", "energyConsumed": 100},
            {"start": "2026-05-31T21:00:00Z", "end": "2026-05-31T21:15:00Z", "energyConsumed": 200},
            {"start": "2026-06-01T05:00:00Z", "end": "2026-06-01T05:15:00Z", "energyConsumed": 300},
        ]
        result = reconcile(session_with_samples(samples), WINDOW_START, WINDOW_END)
        assert [r.period_id for r in result.rows] == ["S1_2", "S1_3"]
        assert [r.tariff for r in result.rows] == [NIGHT, DAY]
        assert result.night_kwh == pytest.approx(0.2)
        assert result.day_kwh == pytest.approx(0.3)

    def test_energy_key_precedence(self):
        samples = [
            {"start": "2026-06-01T05:00:00Z", "energyConsumed": 100, "energy": 999},
            {"start": "2026-06-01T05:15:00Z", "energyConsumption": {"total": 250}, "energy": 999},
            {"start": "2026-06-01T05:30:00Z", "energy": 400},
            {"start": "2026-06-01T05:45:00Z", "consumedEnergy": 50},
        ]
        result = reconcile(session_with_samples(samples), WINDOW_START, WINDOW_END)
        assert [r.energy_kwh for r in result.rows] == [0.1, 0.25, 0.4, 0.05]

    def test_alternative_time_keys(self):
        samples = [{"periodStart": "2026-06-01T05:00:00Z", "periodEnd": "2026-06-01T05:15:00Z", "energy": 1}]
        result = reconcile(session_with_samples(samples), WINDOW_START, WINDOW_END)
        assert result.rows[0].started_at == "2026-06-01T08:00:00+03:00"
        assert result.rows[0].stopped_at == "2026-06-01T08:15:00+03:00"

    def test_kwh_rounded_to_six_decimals(self):
        assert wh_to_kwh(1234.5678) == 1.234568
        assert wh_to_kwh(None) is None

    @pytest.mark.parametrize("wh", [0, 1, 15.25, 999.9999, 123456.789])
    def test_kwh_conversion_is_lossless_to_six_decimals(self, wh):
        assert wh_to_kwh(wh) * 1000 == pytest.approx(wh, abs=1e-3)
        assert wh_to_kwh(wh) == pytest.approx(wh / 1000, abs=1e-6)

    def test_no_session_id(self):
        session = {"chargingPeriods": [], "clockAlignedEnergyConsumption": [
            {"start": "2026-06-01T05:00:00Z", "energy": 1},
        ]}
        result = reconcile(session, WINDOW_START, WINDOW_END)
        assert result.rows[0].period_id == "row_1"


class TestStation:

    def test_placeholder_when_no_sessions(self):
        result = reconcile_station([], WINDOW_START, WINDOW_END)
        assert len(result.rows) == 1
        assert result.rows[0].as_dict() == {
            "id": "", "energy_kwh": None, "startedAt": "", "stoppedAt": "", "tarifas": NO_SESSIONS,
        }
        assert result.row_count == 0
        assert result.total_kwh == 0

    def test_placeholder_when_nothing_in_window(self):
        session = session_with_samples([{"start": "2026-07-02T05:00:00Z", "energy": 10}])
        result = reconcile_station([session], WINDOW_START, WINDOW_END)
        assert [r.tariff for r in result.rows] == [NO_SESSIONS]

    def test_concatenates_sessions(self):
        a = session_with_samples([{"start": "2026-06-01T05:00:00Z", "energy": 1000}], "A")
        b = session_with_samples([{"start": "2026-06-06T05:00:00Z", "energy": 2000}], "B")
        result = reconcile_station([a, b], WINDOW_START, WINDOW_END)
        assert [r.period_id for r in result.rows] == ["A_1", "B_1"]
        assert result.day_kwh == pytest.approx(1.0)
        assert result.night_kwh == pytest.approx(2.0)   # Saturday
        assert result.row_count == 2


class TestSessionHelpers:

    def test_merge_keeps_first_occurrence(self):
        merged = merge_sessions(
            [{"id": 1, "src": "range"}, {"id": 2, "src": "range"}],
            [{"id": 2, "src": "active"}, {"id": 3, "src": "active"}, {"status": "active"}],
        )
        assert [(s["id"], s["src"]) for s in merged] == [(1, "range"), (2, "range"), (3, "active")]

    def test_needs_consumption_stats(self):
        assert needs_consumption_stats({"status": "active"}, 300) is True
        assert needs_consumption_stats({"status": "finished", "clockAlignedEnergyConsumption": [{}] * 300}, 300) is True
        assert needs_consumption_stats({"status": "finished", "clockAlignedEnergyConsumption": [{}] * 299}, 300) is False

    @pytest.mark.parametrize("payload,expected", [
        ({"data": [{"a": 1}]}, [{"a": 1}]),
        ({"clockAlignedEnergyConsumption": [{"b": 2}]}, [{"b": 2}]),
        ({"data": {"clockAlignedEnergyConsumption": [{"c": 3}]}}, [{"c": 3}]),
        ({"data": {}}, None),
        (None, None),
    ])
    def test_extract_stats_samples(self, payload, expected):
        assert extract_stats_samples(payload) == expected

    def test_normalize_prefers_stats_samples(self):
        raw = {
            "id": 77,
            "status": "active",
            "startedAt": "2026-03-01T10:00:00Z",
            "authorization": {"userId": 9},
            "clockAlignedEnergyConsumption": [{"start": "listing"}],
            STATS_SAMPLES_KEY: [{"start": "stats"}],
        }
        normalized = normalize_session(raw, STATION, 15)
        assert normalized["sessionId"] == "77"
        assert normalized["userId"] == 9
        assert normalized["chargePointId"] == 326
        assert normalized["stationName"] == "Vadim Čiurlionio 84A"
        assert normalized["clockAlignedIntervalMinutes"] == 15
        assert normalized["clockAlignedEnergyConsumption"] == [{"start": "stats"}]
        assert normalized["chargingPeriods"] == []

    def test_normalize_falls_back_to_listing_samples(self):
        raw = {"id": 1, "clockAlignedEnergyConsumption": [{"start": "listing"}], STATS_SAMPLES_KEY: []}
        assert normalize_session(raw, STATION, 15)["clockAlignedEnergyConsumption"] == [{"start": "listing"}]
