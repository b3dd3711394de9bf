"""Tests for environment configuration and the shared record helpers."""
from datetime import datetime, timedelta, timezone

import pytest

from fields import (
    PROFILE_EMAIL_KEYS,
    SAMPLE_ENERGY_KEYS,
    clamp_int,
    first_number,
    first_present,
    looks_like_email,
    parse_timestamp,
    safe_number,
)
from report_config import (
    DEFAULT_BASE_URL,
    DEFAULT_PAYMENT_REGEX,
    DEFAULT_STATIONS,
    DEFAULT_TIMEZONE,
    ConfigurationError,
    Station,
    load_config,
    parse_stations,
)


class TestLoadConfig:

    def test_defaults(self):
        config = load_config({"AMPECO_BEARER_TOKEN": "tok"})
        assert config.base_url == DEFAULT_BASE_URL
        assert config.token == "tok"
        assert config.timezone == DEFAULT_TIMEZONE
        assert config.stations == DEFAULT_STATIONS
        assert config.payment_regex == DEFAULT_PAYMENT_REGEX
        assert config.internal_api_key == ""
        assert config.http_timeout == 25.0
        assert config.http_max_attempts == 4
        assert config.sweep_passes == 1

    @pytest.mark.parametrize("var", ["AMPECO_BEARER_TOKEN", "AMPECO_TOKEN", "IKRAUTAS_BEARER"])
    def test_token_aliases(self, var):
        assert load_config({var: " tok "}).token == "tok"

    def test_primary_token_wins(self):
        config = load_config({"AMPECO_TOKEN": "second", "AMPECO_BEARER_TOKEN": "first"})
        assert config.token == "first"

    def test_missing_token(self):
        with pytest.raises(ConfigurationError) as exc:
            load_config({"AMPECO_BASE_URL": "https://x.test"})
        assert str(exc.value) == "Missing env vars: AMPECO_BEARER_TOKEN"
        assert exc.value.missing == {"AMPECO_BASE_URL": False, "AMPECO_BEARER_TOKEN": True}

    def test_overrides(self):
        config = load_config({
            "AMPECO_BASE_URL": "https://tenant.test/",
            "AMPECO_BEARER_TOKEN": "tok",
            "INTERNAL_API_KEY": "secret",
            "REPORT_TIMEZONE": "Europe/Riga",
            "AMPECO_STATIONS": '[{"chargePointId": "5", "stationName": "Five"}]',
            "PAYMENT_REGEX": "visa",
            "AMPECO_HTTP_TIMEOUT": "10",
            "AMPECO_HTTP_MAX_ATTEMPTS": "0",
            "AMPECO_SWEEP_PASSES": "3",
        })
        assert config.base_url == "https://tenant.test"
        assert config.internal_api_key == "secret"
        assert config.timezone == "Europe/Riga"
        assert config.stations == (Station(5, "Five"),)
        assert config.payment_regex == "visa"
        assert config.http_timeout == 10.0
        assert config.http_max_attempts == 1
        assert config.sweep_passes == 3

    def test_bad_number(self):
        with pytest.raises(ConfigurationError, match="AMPECO_HTTP_TIMEOUT"):
            load_config({"AMPECO_BEARER_TOKEN": "tok", "AMPECO_HTTP_TIMEOUT": "soon"})

    @pytest.mark.parametrize("zone", ["Europe/Atlantis", "not a zone", "../etc/passwd"])
    def test_unknown_timezone_rejected_at_load(self, zone):
        with pytest.raises(ConfigurationError, match="REPORT_TIMEZONE"):
            load_config({"AMPECO_BEARER_TOKEN": "tok", "REPORT_TIMEZONE": zone})

    def test_timezone_is_trimmed(self):
        assert load_config({"AMPECO_BEARER_TOKEN": "tok", "REPORT_TIMEZONE": " Europe/Riga "}).timezone == "Europe/Riga"

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("AMPECO_BEARER_TOKEN", "from-env")
        assert load_config().token == "from-env"


class TestParseStations:

    @pytest.mark.parametrize("raw", ["not json", "[]", "{}", '[{"chargePointId": 1}]',
                                     '[{"chargePointId": "x", "stationName": "X"}]'])
    def test_rejects(self, raw):
        with pytest.raises(ConfigurationError):
            parse_stations(raw)

    def test_as_dict(self):
        assert parse_stations('[{"chargePointId": 27, "stationName": "A"}]')[0].as_dict() == {
            "chargePointId": 27, "stationName": "A",
        }


class TestFields:

    def test_first_present_order_and_blanks(self):
        record = {"email": "", "emailAddress": None, "contactEmail": "c@x.lt", "username": "u@x.lt"}
        assert first_present(record, PROFILE_EMAIL_KEYS) == "c@x.lt"
        assert first_present(None, PROFILE_EMAIL_KEYS) is None

    def test_first_present_dotted(self):
        assert first_present({"authorization": {"userId": 4}}, ("userId", "authorization.userId")) == 4
        assert first_present({"authorization": "token"}, ("authorization.userId",)) is None

    def test_first_number_skips_non_numeric(self):
        sample = {"energyConsumed": "n/a", "energyConsumption": {"total": "12.5"}, "energy": 3}
        assert first_number(sample, SAMPLE_ENERGY_KEYS) == 12.5

    @pytest.mark.parametrize("value,expected", [
        (3, 3.0), ("4.5", 4.5), (True, None), (None, None), ("abc", None), (float("nan"), None),
    ])
    def test_safe_number(self, value, expected):
        assert safe_number(value) == expected

    def test_parse_timestamp(self):
        assert parse_timestamp("2026-06-01T05:00:00Z") == datetime(2026, 6, 1, 5, tzinfo=timezone.utc)
        assert parse_timestamp("2026-06-01T08:00:00+03:00").utcoffset() == timedelta(hours=3)
        assert parse_timestamp("2026-06-01T05:00:00").tzinfo == timezone.utc
        assert parse_timestamp("garbage") is None
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None

    def test_parse_timestamp_default_zone(self):
        riga = timezone(timedelta(hours=2))
        assert parse_timestamp("2026-01-05T07:00:00", default_tz=riga).utcoffset() == timedelta(hours=2)

    def test_looks_like_email(self):
        assert looks_like_email("a@b.lt")
        assert not looks_like_email("@b.lt")
        assert not looks_like_email("nobody")
        assert not looks_like_email(None)

    @pytest.mark.parametrize("value,expected", [
        (None, 100), ("", 100), ("abc", 100), ("50", 50), ("0", 1), ("1000", 100), ("7.9", 7),
    ])
    def test_clamp_int(self, value, expected):
        assert clamp_int(value, 1, 100, 100) == expected
