"""
Report configuration module.

Reads the AMPECO credentials and report defaults from the environment and
exposes them as a single frozen ``ReportConfig`` passed into every component.

Environment variables:
  AMPECO_BASE_URL          - API base URL            (default: https://cp.ikrautas.lt)
  AMPECO_BEARER_TOKEN      - bearer token (required; AMPECO_TOKEN / IKRAUTAS_BEARER accepted)
  INTERNAL_API_KEY         - shared secret for callers (optional)
  REPORT_TIMEZONE          - IANA timezone           (default: Europe/Vilnius)
  AMPECO_STATIONS          - JSON list of {chargePointId, stationName}
  PAYMENT_REGEX            - card mask pattern for the transactions report
  AMPECO_HTTP_TIMEOUT      - per-attempt timeout, seconds (default: 25)
  AMPECO_HTTP_MAX_ATTEMPTS - attempts per request    (default: 4)
  AMPECO_SWEEP_PASSES      - pagination sweep passes (default: 1)
"""

import json
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_BASE_URL = "https://cp.ikrautas.lt"
DEFAULT_TIMEZONE = "Europe/Vilnius"

# "mastercard **** 4263": letters, anything, four mask chars, four digits
DEFAULT_PAYMENT_REGEX = r"[A-Za-z].*\*{4}\s*\d{4}\b"

_TOKEN_VARS = ("AMPECO_BEARER_TOKEN", "AMPECO_TOKEN", "IKRAUTAS_BEARER")


class ConfigurationError(RuntimeError):
    """Raised when required credentials or settings are missing or malformed."""

    def __init__(self, message: str, missing: Optional[Dict[str, bool]] = None):
        super().__init__(message)
        self.missing = missing or {}


@dataclass(frozen=True)
class Station:
    charge_point_id: int
    station_name: str

    def as_dict(self) -> Dict[str, object]:
        return {"chargePointId": self.charge_point_id, "stationName": self.station_name}


DEFAULT_STATIONS: Tuple[Station, ...] = (
    Station(326, "Vadim Čiurlionio 84A"),
    Station(218, "Ignė Čiurlionio g. 84A"),
    Station(27, "Arnas Čiurlionio 84A"),
    Station(171, "Aliaksandr Ciurlionio 84A"),
)


@dataclass(frozen=True)
class ReportConfig:
    base_url: str
    token: str
    internal_api_key: str = ""
    timezone: str = DEFAULT_TIMEZONE
    stations: Tuple[Station, ...] = field(default=DEFAULT_STATIONS)
    payment_regex: str = DEFAULT_PAYMENT_REGEX
    http_timeout: float = 25.0          # seconds, per attempt
    http_max_attempts: int = 4
    backoff_base: float = 0.3           # seconds
    backoff_cap: float = 5.0            # seconds
    clock_aligned_interval: int = 15    # minutes
    long_sample_threshold: int = 300    # samples; at or above this, ask consumption-stats
    default_concurrency: int = 10
    max_concurrency: int = 25
    sweep_passes: int = 1


def parse_stations(raw: str) -> Tuple[Station, ...]:
    """Parse the AMPECO_STATIONS JSON list.

    Accepts ``[{"chargePointId": 326, "stationName": "..."}, ...]``.
    """
    try:
        items = json.loads(raw)
    except ValueError as e:
        raise ConfigurationError(f"AMPECO_STATIONS is not valid JSON: {e}")
    if not isinstance(items, list) or not items:
        raise ConfigurationError("AMPECO_STATIONS must be a non-empty JSON list")

    stations: List[Station] = []
    for item in items:
        try:
            stations.append(Station(int(item["chargePointId"]), str(item["stationName"])))
        except (KeyError, TypeError, ValueError):
            raise ConfigurationError(f"Invalid station entry in AMPECO_STATIONS: {item!r}")
    return tuple(stations)


def _number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def parse_timezone(raw: str) -> str:
    """Return the IANA zone name if the tz database knows it."""
    name = raw.strip()
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigurationError(f"REPORT_TIMEZONE is not a known IANA timezone: {raw!r}")
    return name


def load_config(environ: Optional[Mapping[str, str]] = None) -> ReportConfig:
    """Build the active ReportConfig from *environ* (defaults to ``os.environ``).

    Raises ConfigurationError when the base URL or bearer token is missing,
    or when a setting (number, station list, timezone) is malformed.
    """
    env = os.environ if environ is None else environ

    base_url = (env.get("AMPECO_BASE_URL") or DEFAULT_BASE_URL).strip().rstrip("/")
    token = ""
    for name in _TOKEN_VARS:
        token = (env.get(name) or "").strip()
        if token:
            break

    if not base_url or not token:
        missing = {"AMPECO_BASE_URL": not base_url, "AMPECO_BEARER_TOKEN": not token}
        names = ", ".join(k for k, v in missing.items() if v)
        raise ConfigurationError(f"Missing env vars: {names}", missing=missing)

    stations = DEFAULT_STATIONS
    if env.get("AMPECO_STATIONS"):
        stations = parse_stations(env["AMPECO_STATIONS"])

    return ReportConfig(
        base_url=base_url,
        token=token,
        internal_api_key=(env.get("INTERNAL_API_KEY") or "").strip(),
        timezone=parse_timezone(env.get("REPORT_TIMEZONE") or DEFAULT_TIMEZONE),
        stations=stations,
        payment_regex=env.get("PAYMENT_REGEX") or DEFAULT_PAYMENT_REGEX,
        http_timeout=_number(env, "AMPECO_HTTP_TIMEOUT", 25.0, float),
        http_max_attempts=max(1, _number(env, "AMPECO_HTTP_MAX_ATTEMPTS", 4, int)),
        sweep_passes=max(1, _number(env, "AMPECO_SWEEP_PASSES", 1, int)),
    )
