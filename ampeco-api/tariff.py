"""
Day/night tariff classification for the AMPECO reports.

Tariff ("tarifas") labels used by the Lithuanian two-zone meter plan:
  - Saturday and Sunday: Naktinis all day
  - Mon-Fri, summer time: Dieninis 08:00-24:00, Naktinis 00:00-08:00
  - Mon-Fri, winter time: Dieninis 07:00-23:00, Naktinis 23:00-07:00

Summer/winter is decided by the EU daylight-saving rule evaluated on the
UTC instant (last Sunday of March 01:00 UTC, inclusive, to last Sunday of
October 01:00 UTC, exclusive), never by reading back a formatted offset.
Weekday and minute-of-day come from the wall clock in the report timezone.

Also provides the local-time formatting helpers the renderers share.
"""

import calendar
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from fields import parse_timestamp
from report_config import DEFAULT_TIMEZONE

DAY = "Dieninis"
NIGHT = "Naktinis"

SUMMER_DAY_WINDOW = (8 * 60, 24 * 60)   # minutes of day, [start, end)
WINTER_DAY_WINDOW = (7 * 60, 23 * 60)


@lru_cache(maxsize=16)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


# ---------------------------------------------------------------------------
# EU daylight-saving rule
# ---------------------------------------------------------------------------

def last_sunday(year: int, month: int) -> date:
    last_day = date(year, month, calendar.monthrange(year, month)[1])
    # weekday(): Monday=0 .. Sunday=6
    return last_day - timedelta(days=(last_day.weekday() + 1) % 7)


def eu_dst_bounds(year: int) -> Tuple[datetime, datetime]:
    """UTC instants where EU summer time starts and ends in *year*."""
    start = last_sunday(year, 3)
    end = last_sunday(year, 10)
    return (
        datetime(start.year, start.month, start.day, 1, 0, tzinfo=timezone.utc),
        datetime(end.year, end.month, end.day, 1, 0, tzinfo=timezone.utc),
    )


def is_eu_summer_time(ts: datetime) -> bool:
    utc = _as_utc(ts)
    start, end = eu_dst_bounds(utc.year)
    return start <= utc < end


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def _as_utc(value: Union[datetime, str]) -> datetime:
    dt = parse_timestamp(value)
    if dt is None:
        raise ValueError(f"Invalid timestamp: {value!r}")
    return dt.astimezone(timezone.utc)


def tariff_label(ts: Union[datetime, str], tz: str = DEFAULT_TIMEZONE) -> str:
    """Return "Dieninis" or "Naktinis" for the instant *ts*.

    Naive datetimes and offset-less strings are taken as UTC.
    """
    utc = _as_utc(ts)
    local = utc.astimezone(_zone(tz))
    if local.weekday() >= 5:
        return NIGHT

    minute = local.hour * 60 + local.minute
    day_start, day_end = SUMMER_DAY_WINDOW if is_eu_summer_time(utc) else WINTER_DAY_WINDOW
    return DAY if day_start <= minute < day_end else NIGHT


# ---------------------------------------------------------------------------
# Local time formatting
# ---------------------------------------------------------------------------

def to_local_iso(value: Any, tz: str = DEFAULT_TIMEZONE) -> str:
    """Local wall-clock ISO string with +HH:MM suffix, e.g. 2026-06-01T08:00:00+03:00."""
    dt = parse_timestamp(value)
    if dt is None:
        return ""
    return dt.astimezone(_zone(tz)).isoformat(timespec="seconds")


def month_key(value: Any, tz: str = DEFAULT_TIMEZONE) -> str:
    """YYYY-MM of the local date of *value*; naive values are local already."""
    dt = parse_timestamp(value, default_tz=_zone(tz))
    if dt is None:
        return ""
    return dt.astimezone(_zone(tz)).strftime("%Y-%m")


def current_month_range(tz: str = DEFAULT_TIMEZONE,
                        now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Local midnight on the 1st of the current month and of the next month."""
    zone = _zone(tz)
    local = (now or datetime.now(timezone.utc)).astimezone(zone)
    start = datetime(local.year, local.month, 1, tzinfo=zone)
    if local.month == 12:
        end = datetime(local.year + 1, 1, 1, tzinfo=zone)
    else:
        end = datetime(local.year, local.month + 1, 1, tzinfo=zone)
    return start, end


def parse_local(value: Any, tz: str = DEFAULT_TIMEZONE) -> Optional[datetime]:
    """Parse a request timestamp; offset-less values are local to *tz*."""
    return parse_timestamp(value, default_tz=_zone(tz))


def resolve_window(start: Optional[str], end: Optional[str], tz: str = DEFAULT_TIMEZONE,
                   names: Tuple[str, str] = ("start", "end"),
                   now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Report window from request values, defaulting to the current local month.

    Raises ValueError naming the offending parameter.
    """
    default_start, default_end = current_month_range(tz, now)
    window = []
    for value, default, name in ((start, default_start, names[0]), (end, default_end, names[1])):
        if value is None or str(value).strip() == "":
            window.append(default)
            continue
        dt = parse_local(value, tz)
        if dt is None:
            raise ValueError(f"Invalid {name}: {value!r} is not an ISO-8601 timestamp")
        window.append(dt)
    if window[0] >= window[1]:
        raise ValueError(f"{names[0]} must be before {names[1]}")
    return window[0], window[1]
