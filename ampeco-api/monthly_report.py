"""
Monthly per-user energy report: POST /api/ikrautas-report

Body: {"from": ISO, "to": ISO, "stations": [{"chargePointId", "stationName"}]}

Sessions are collected per station exactly as for the sessions report
(window listing, active listing merged by id, consumption-stats), so a
session started before ``from`` and still charging contributes its in-window
samples.  Clock-aligned samples starting inside [from, to) with positive
energy are summed per user and split by tariff.  A station with nothing to
report gets one explanatory message row instead of an empty sheet.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ampeco_client import AmpecoClient
from exports import build_table_workbook, safe_filename_part, workbook_response
from fields import SAMPLE_ENERGY_KEYS, SAMPLE_START_KEYS, SESSION_USER_KEYS, first_number, first_present, parse_timestamp
from middleware import get_client, get_config, require_api_key
from models import MonthlyReportRequest
from pagination import PageLimits
from report_config import ReportConfig, Station
from sessions import collect_station_sessions, new_debug
from tariff import DAY, month_key, parse_local, tariff_label

logger = logging.getLogger("ampeco-api.monthly-report")

router = APIRouter(prefix="/api", tags=["monthly-report"])

REPORT_DECIMALS = 3


def no_sessions_message(month: str) -> str:
    return f"Krovimo sesijų per {month} mėn. nebuvo"


def _user_sort_key(row: Dict[str, Any]):
    uid = row.get("userId")
    if isinstance(uid, (int, float)) and not isinstance(uid, bool):
        return (0, uid, "")
    return (1, 0, str(uid))


def aggregate_by_user(sessions: List[Dict[str, Any]], window_start: datetime, window_end: datetime,
                      tz: str) -> Dict[Any, Dict[str, Any]]:
    """Sum in-window sample energy (Wh) per user and tariff over normalized sessions."""
    users: Dict[Any, Dict[str, Any]] = {}
    for s in sessions:
        user_id = first_present(s, SESSION_USER_KEYS)
        if user_id is None:
            user_id = 0
        u = users.setdefault(user_id, {"day_wh": 0.0, "night_wh": 0.0, "intervals": 0, "sessions": set()})
        session_id = first_present(s, ("sessionId", "id"))
        if session_id is not None:
            u["sessions"].add(str(session_id))

        samples = s.get("clockAlignedEnergyConsumption")
        for sample in samples if isinstance(samples, list) else []:
            start = parse_timestamp(first_present(sample, SAMPLE_START_KEYS))
            if start is None or not (window_start <= start < window_end):
                continue
            wh = first_number(sample, SAMPLE_ENERGY_KEYS)
            if wh is None or wh <= 0:
                continue
            if tariff_label(start, tz) == DAY:
                u["day_wh"] += wh
            else:
                u["night_wh"] += wh
            u["intervals"] += 1
    return users


def station_sheet(station: Station, sessions: List[Dict[str, Any]], window_start: datetime,
                  window_end: datetime, month: str, tz: str,
                  debug: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    rows = []
    for user_id, u in aggregate_by_user(sessions, window_start, window_end, tz).items():
        day_kwh = u["day_wh"] / 1000.0
        night_kwh = u["night_wh"] / 1000.0
        rows.append({
            "month": month,
            "chargePointId": station.charge_point_id,
            "stationName": station.station_name,
            "userId": user_id,
            "dieninis_kwh": round(day_kwh, REPORT_DECIMALS),
            "naktinis_kwh": round(night_kwh, REPORT_DECIMALS),
            "total_kwh": round(day_kwh + night_kwh, REPORT_DECIMALS),
            "intervalsUsed": u["intervals"],
            "sessionsUsed": len(u["sessions"]),
        })
    rows.sort(key=_user_sort_key)

    if not sessions or not any(r["total_kwh"] > 0 for r in rows):
        rows = [{
            "month": month,
            "chargePointId": station.charge_point_id,
            "stationName": station.station_name,
            "message": no_sessions_message(month),
        }]

    return {
        "sheetName": station.station_name,
        "rows": rows,
        "debug": {"sessionsCount": len(sessions), **(debug or {})},
    }


@router.post("/ikrautas-report", dependencies=[Depends(require_api_key)])
def ikrautas_report(
    body: MonthlyReportRequest,
    format: str = Query("json"),
    config: ReportConfig = Depends(get_config),
    client: AmpecoClient = Depends(get_client),
):
    """Per-user day/night energy for the given stations and window."""
    if not body.from_ or not body.to or not body.stations:
        raise HTTPException(status_code=400, detail="Missing {from,to,stations[]}")

    fmt = format.lower()
    if fmt not in ("json", "xlsx"):
        raise HTTPException(status_code=400, detail=f"Unsupported format '{format}' (json|xlsx)")

    window_start = parse_local(body.from_, config.timezone)
    window_end = parse_local(body.to, config.timezone)
    if window_start is None or window_end is None:
        raise HTTPException(status_code=400, detail="Invalid from/to ISO")
    if window_start >= window_end:
        raise HTTPException(status_code=400, detail="from must be before to")

    month = month_key(body.from_, config.timezone)
    limits = PageLimits(sweep_passes=config.sweep_passes)
    interval = config.clock_aligned_interval
    sheets = []

    for item in body.stations:
        station = Station(item.chargePointId, item.stationName)
        debug = new_debug()
        sessions = collect_station_sessions(
            client, config, station, window_start, window_end, interval, limits, debug,
        )
        if debug["truncated"] or debug["cycleDetected"]:
            logger.warning("Session listing for charge point %s incomplete (truncated=%s, cycle=%s)",
                           station.charge_point_id, debug["truncated"], debug["cycleDetected"])
        del debug["truncatedStations"]
        sheets.append(station_sheet(station, sessions, window_start, window_end, month,
                                    config.timezone, debug))

    if fmt == "xlsx":
        wb = build_table_workbook([(s["sheetName"], None, s["rows"]) for s in sheets])
        filename = (f"ikrautas_report_{safe_filename_part(window_start.isoformat())}_"
                    f"{safe_filename_part(window_end.isoformat())}.xlsx")
        return workbook_response(wb, filename)

    return {
        "monthLabel": month,
        "from": body.from_,
        "to": body.to,
        "truncated": any(s["debug"]["truncated"] for s in sheets),
        "sheets": sheets,
    }
