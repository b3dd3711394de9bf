"""
Station session report: GET /api/ampeco-sessions

JSON for the n8n flow by default, ``?format=xlsx`` for a workbook with one
sheet per station (details + month summary).

Long-running active sessions: the listing filter works on session *start*,
so a session started months ago and still charging is invisible to a
month-scoped query.  Each station therefore also gets a best-effort
``filter[status]=active`` listing without date bounds, merged by id, and
active (or very long) sessions are re-read from the consumption-stats
endpoint.  Their samples are then sliced to the requested window.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ampeco_client import AmpecoClient, UpstreamError, session_consumption_stats_path, sessions_path
from exports import build_sessions_workbook, safe_filename_part, workbook_response
from fields import clamp_int
from middleware import get_client, get_config, require_api_key
from pagination import PageLimits, fetch_all
from reconcile import (
    KWH_DECIMALS,
    STATS_SAMPLES_KEY,
    ReconcileResult,
    extract_stats_samples,
    merge_sessions,
    needs_consumption_stats,
    normalize_session,
    reconcile_station,
)
from report_config import ReportConfig, Station
from tariff import month_key, resolve_window

logger = logging.getLogger("ampeco-api.sessions")

router = APIRouter(prefix="/api", tags=["sessions"])

NO_SESSIONS_MESSAGE = "There were no sessions in the selected period."


def new_debug() -> Dict[str, Any]:
    return {
        "pagesFetched": 0,
        "truncated": False,
        "cycleDetected": False,
        "missingSessionId": 0,
        "activeListingErrors": 0,
        "activeSessionsMerged": 0,
        "consumptionStatsUsed": 0,
        "consumptionStatsErrors": 0,
        "truncatedStations": [],
    }


# ---------------------------------------------------------------------------
# Upstream calls
# ---------------------------------------------------------------------------

def session_listing_params(station: Station, clock_aligned_interval: int,
                           started_after: Optional[datetime] = None,
                           started_before: Optional[datetime] = None,
                           status_filter: Optional[str] = None) -> Dict[str, str]:
    params = {
        "withClockAlignedEnergyConsumption": "true",
        "clockAlignedInterval": str(clock_aligned_interval),
        "withAuthorization": "true",
        "withPriceBreakdown": "true",
        "withChargingPeriods": "true",
        "withChargingPeriodsPriceBreakdown": "true",
        "filter[chargePointId]": str(station.charge_point_id),
    }
    if started_after is not None:
        params["filter[startedAfter]"] = started_after.isoformat()
    if started_before is not None:
        params["filter[startedBefore]"] = started_before.isoformat()
    if status_filter:
        params["filter[status]"] = status_filter
    return params


def _fetch(client, params, limits: PageLimits, debug: Dict[str, Any], station: Station) -> List[Dict[str, Any]]:
    page = fetch_all(client, sessions_path(), params, first_cursor="null", **limits.as_kwargs())
    debug["pagesFetched"] += page.pages_fetched
    debug["missingSessionId"] += page.missing_id
    if page.cycle_detected:
        debug["cycleDetected"] = True
    if page.truncated:
        debug["truncated"] = True
        if station.station_name not in debug["truncatedStations"]:
            debug["truncatedStations"].append(station.station_name)
    return page.records


def list_active_sessions_best_effort(client, station: Station, clock_aligned_interval: int,
                                     limits: PageLimits, debug: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Active sessions regardless of start date; [] if the tenant rejects the filter."""
    params = session_listing_params(station, clock_aligned_interval, status_filter="active")
    try:
        sessions = _fetch(client, params, limits, debug, station)
    except UpstreamError as e:
        logger.warning("Active-session listing unavailable for charge point %s: %s",
                       station.charge_point_id, e)
        debug["activeListingErrors"] += 1
        return []
    # Tenants that ignore filter[status] return everything; keep the actives only
    return [s for s in sessions if str(s.get("status") or "") == "active"]


def enrich_consumption_stats(client, sessions: List[Dict[str, Any]], clock_aligned_interval: int,
                             threshold: int, debug: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Attach consumption-stats samples to active/long sessions, when the endpoint has them."""
    enriched = []
    for s in sessions:
        if not needs_consumption_stats(s, threshold):
            enriched.append(s)
            continue
        try:
            stats = client.get_json(
                session_consumption_stats_path(s.get("id")),
                params={"clockAlignedInterval": str(clock_aligned_interval)},
            )
        except UpstreamError as e:
            logger.info("No consumption-stats for session %s: %s", s.get("id"), e)
            debug["consumptionStatsErrors"] += 1
            enriched.append(s)
            continue

        samples = extract_stats_samples(stats)
        if samples:
            debug["consumptionStatsUsed"] += 1
            enriched.append({**s, STATS_SAMPLES_KEY: samples})
        else:
            enriched.append(s)
    return enriched


def collect_station_sessions(client, config: ReportConfig, station: Station,
                             window_start: datetime, window_end: datetime,
                             clock_aligned_interval: int, limits: PageLimits,
                             debug: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Window listing + active listing, merged, enriched and normalized."""
    in_range = _fetch(
        client,
        session_listing_params(station, clock_aligned_interval, window_start, window_end),
        limits, debug, station,
    )
    active = list_active_sessions_best_effort(client, station, clock_aligned_interval, limits, debug)

    merged = merge_sessions(in_range, active)
    debug["activeSessionsMerged"] += len(merged) - len(merge_sessions(in_range))

    merged = enrich_consumption_stats(
        client, merged, clock_aligned_interval, config.long_sample_threshold, debug,
    )
    return [normalize_session(s, station, clock_aligned_interval) for s in merged]


def _summary(month: str, result: ReconcileResult) -> Dict[str, Any]:
    return {
        "month": month,
        "dieninis_kwh": round(result.day_kwh, KWH_DECIMALS),
        "naktinis_kwh": round(result.night_kwh, KWH_DECIMALS),
        "total_kwh": round(result.total_kwh, KWH_DECIMALS),
        "rows": result.row_count,
    }


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------

@router.get("/ampeco-sessions", dependencies=[Depends(require_api_key)])
def ampeco_sessions(
    startedAfter: Optional[str] = Query(None, description="ISO start (inclusive), default: 1st of this month"),
    startedBefore: Optional[str] = Query(None, description="ISO end (exclusive), default: 1st of next month"),
    clockAlignedInterval: Optional[str] = Query(None),
    per_page: Optional[str] = Query(None),
    max_pages: Optional[str] = Query(None),
    max_items: Optional[str] = Query(None),
    sweep_passes: Optional[str] = Query(None),
    format: str = Query("json"),
    config: ReportConfig = Depends(get_config),
    client: AmpecoClient = Depends(get_client),
):
    """Per-station charging sessions with tariff-split detail rows."""
    fmt = format.lower()
    if fmt not in ("json", "xlsx"):
        raise HTTPException(status_code=400, detail=f"Unsupported format '{format}' (json|xlsx)")

    try:
        window_start, window_end = resolve_window(
            startedAfter, startedBefore, config.timezone, names=("startedAfter", "startedBefore"),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    interval = clamp_int(clockAlignedInterval, 1, 1440, config.clock_aligned_interval)
    limits = PageLimits(
        per_page=clamp_int(per_page, 1, 100, 100),
        max_pages=clamp_int(max_pages, 1, 500, 200),
        max_items=clamp_int(max_items, 1, 100000, 20000),
        sweep_passes=clamp_int(sweep_passes, 1, 5, config.sweep_passes),
    )
    after_iso, before_iso = window_start.isoformat(), window_end.isoformat()
    month = month_key(window_start, config.timezone)
    debug = new_debug()

    logger.info("Sessions report %s .. %s for %d stations", after_iso, before_iso, len(config.stations))

    station_results = []
    station_reports = []
    total_sessions = 0
    total_rows = 0
    day_kwh = 0.0
    night_kwh = 0.0

    for station in config.stations:
        sessions = collect_station_sessions(
            client, config, station, window_start, window_end, interval, limits, debug,
        )
        result = reconcile_station(sessions, window_start, window_end, config.timezone)

        total_sessions += len(sessions)
        total_rows += result.row_count
        day_kwh += result.day_kwh
        night_kwh += result.night_kwh
        station_reports.append((station.station_name, result))
        station_results.append({
            "stationName": station.station_name,
            "chargePointId": station.charge_point_id,
            "sessionsCount": len(sessions),
            "sessions": sessions,
            "summary": _summary(month, result),
            "rows": [r.as_dict() for r in result.rows],
        })

    if fmt == "xlsx":
        wb = build_sessions_workbook(station_reports, month)
        filename = f"ampeco_periods_{safe_filename_part(after_iso)}_{safe_filename_part(before_iso)}.xlsx"
        return workbook_response(wb, filename)

    return {
        "ok": True,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "range": {
            "startedAfter": after_iso,
            "startedBefore": before_iso,
            "clockAlignedInterval": interval,
            "timezone": config.timezone,
        },
        "totals": {
            "sessions": total_sessions,
            "rows": total_rows,
            "dayKwh": round(day_kwh, KWH_DECIMALS),
            "nightKwh": round(night_kwh, KWH_DECIMALS),
        },
        "stations": station_results,
        "noSessions": total_sessions == 0,
        "message": NO_SESSIONS_MESSAGE if total_sessions == 0 else "Sessions fetched successfully.",
        "debug": debug,
    }
