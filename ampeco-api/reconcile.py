"""
Session → report-row reconciliation.

A session carries its energy either as structured ``chargingPeriods`` or as
``clockAlignedEnergyConsumption`` samples (fixed-width buckets, no id).
Charging periods win when both are present.  Only periods/samples whose
*start* lies in the half-open report window [window_start, window_end) are
kept, so a session running across several months contributes to each month
only the part that started inside it.

Energy arrives in Wh and is reported in kWh at 6 decimals.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from fields import (
    PERIOD_END_KEYS,
    PERIOD_ENERGY_KEYS,
    PERIOD_START_KEYS,
    SAMPLE_END_KEYS,
    SAMPLE_ENERGY_KEYS,
    SAMPLE_START_KEYS,
    SESSION_USER_KEYS,
    first_number,
    first_present,
    parse_timestamp,
)
from report_config import DEFAULT_TIMEZONE, Station
from tariff import DAY, NIGHT, tariff_label, to_local_iso

logger = logging.getLogger("ampeco-api.reconcile")

NO_SESSIONS = "NO SESSIONS"
KWH_DECIMALS = 6

# Private key under which consumption-stats samples ride along on a raw session
STATS_SAMPLES_KEY = "_consumptionStatsClockAligned"


@dataclass
class ReportRow:
    period_id: Any
    energy_kwh: Optional[float]
    started_at: str
    stopped_at: str
    tariff: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.period_id,
            "energy_kwh": self.energy_kwh,
            "startedAt": self.started_at,
            "stoppedAt": self.stopped_at,
            "tarifas": self.tariff,
        }


def placeholder_row() -> ReportRow:
    return ReportRow(period_id="", energy_kwh=None, started_at="", stopped_at="", tariff=NO_SESSIONS)


@dataclass
class ReconcileResult:
    rows: List[ReportRow] = field(default_factory=list)
    day_kwh: float = 0.0
    night_kwh: float = 0.0
    row_count: int = 0

    @property
    def total_kwh(self) -> float:
        return self.day_kwh + self.night_kwh

    def add(self, row: ReportRow, kwh: Optional[float]):
        self.rows.append(row)
        self.row_count += 1
        if kwh is None:
            return
        if row.tariff == DAY:
            self.day_kwh += kwh
        elif row.tariff == NIGHT:
            self.night_kwh += kwh

    def extend(self, other: "ReconcileResult"):
        self.rows.extend(other.rows)
        self.row_count += other.row_count
        self.day_kwh += other.day_kwh
        self.night_kwh += other.night_kwh


def wh_to_kwh(wh: Optional[float]) -> Optional[float]:
    if wh is None:
        return None
    return round(wh / 1000.0, KWH_DECIMALS)


def _in_window(start: Optional[datetime], window_start: datetime, window_end: datetime) -> bool:
    return start is not None and window_start <= start < window_end


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


# ---------------------------------------------------------------------------
# Session listing helpers
# ---------------------------------------------------------------------------

def merge_sessions(*session_lists: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Union by session id, keeping the first occurrence; id-less records are dropped."""
    by_id: Dict[str, Dict[str, Any]] = {}
    for sessions in session_lists:
        for s in sessions or []:
            if not isinstance(s, dict):
                continue
            sid = s.get("id")
            if sid is None or sid == "":
                continue
            by_id.setdefault(str(sid), s)
    return list(by_id.values())


def needs_consumption_stats(raw: Dict[str, Any], threshold: int) -> bool:
    """Active sessions, and sessions with suspiciously long sample lists."""
    if str(raw.get("status") or "") == "active":
        return True
    return len(_as_list(raw.get("clockAlignedEnergyConsumption"))) >= threshold


def extract_stats_samples(payload: Any) -> Optional[List[Any]]:
    """Pull the sample list out of a consumption-stats response, if any."""
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, list):
        return data
    if isinstance(payload.get("clockAlignedEnergyConsumption"), list):
        return payload["clockAlignedEnergyConsumption"]
    if isinstance(data, dict) and isinstance(data.get("clockAlignedEnergyConsumption"), list):
        return data["clockAlignedEnergyConsumption"]
    return None


def normalize_session(raw: Dict[str, Any], station: Station, clock_aligned_interval: int) -> Dict[str, Any]:
    """Flatten a raw AMPECO session into the shape the n8n flow consumes."""
    from_listing = _as_list(raw.get("clockAlignedEnergyConsumption"))
    from_stats = _as_list(raw.get(STATS_SAMPLES_KEY))

    sid = raw.get("id")
    return {
        "stationName": station.station_name,
        "chargePointId": station.charge_point_id,
        "sessionId": "" if sid is None else str(sid),
        "status": raw.get("status"),
        "startedAt": raw.get("startedAt"),
        "stoppedAt": raw.get("stoppedAt"),
        "userId": first_present(raw, SESSION_USER_KEYS),
        "chargingPeriods": _as_list(raw.get("chargingPeriods")),
        "clockAlignedIntervalMinutes": clock_aligned_interval,
        "clockAlignedEnergyConsumption": from_stats if from_stats else from_listing,
    }


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def reconcile(session: Dict[str, Any], window_start: datetime, window_end: datetime,
              tz: str = DEFAULT_TIMEZONE) -> ReconcileResult:
    """Detail rows of one normalized session that start inside the window."""
    result = ReconcileResult()

    periods = _as_list(session.get("chargingPeriods"))
    if periods:
        for p in periods:
            start_raw = first_present(p, PERIOD_START_KEYS)
            start = parse_timestamp(start_raw)
            if not _in_window(start, window_start, window_end):
                continue
            kwh = wh_to_kwh(first_number(p, PERIOD_ENERGY_KEYS))
            row = ReportRow(
                period_id=p.get("id", "") if isinstance(p, dict) else "",
                energy_kwh=kwh,
                started_at=to_local_iso(start, tz),
                stopped_at=to_local_iso(first_present(p, PERIOD_END_KEYS), tz),
                tariff=tariff_label(start, tz),
            )
            result.add(row, kwh)
        return result

    session_id = str(session.get("sessionId") or "")
    for position, sample in enumerate(_as_list(session.get("clockAlignedEnergyConsumption")), 1):
        start = parse_timestamp(first_present(sample, SAMPLE_START_KEYS))
        if not _in_window(start, window_start, window_end):
            continue
        kwh = wh_to_kwh(first_number(sample, SAMPLE_ENERGY_KEYS))
        row = ReportRow(
            period_id=f"{session_id}_{position}" if session_id else f"row_{position}",
            energy_kwh=kwh,
            started_at=to_local_iso(start, tz),
            stopped_at=to_local_iso(first_present(sample, SAMPLE_END_KEYS), tz),
            tariff=tariff_label(start, tz),
        )
        result.add(row, kwh)
    return result


def reconcile_station(sessions: Iterable[Dict[str, Any]], window_start: datetime,
                      window_end: datetime, tz: str = DEFAULT_TIMEZONE) -> ReconcileResult:
    """All rows for one station; a single NO SESSIONS row when nothing qualifies."""
    total = ReconcileResult()
    for session in sessions:
        total.extend(reconcile(session, window_start, window_end, tz))
    if not total.rows:
        total.rows.append(placeholder_row())
    return total
