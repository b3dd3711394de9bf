"""
Non-invoiced clients report: GET /api/ampeco-transactions

  1. all transactions created in the window (cursor pagination, capped)
  2. finalized, non-zero, paid with a masked card
  3. invoice-details per distinct user (bounded thread pool, cached)
  4. keep users with requireInvoice == false, with their email
"""

import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ampeco_client import AmpecoClient, transactions_path
from enrichment import compile_payment_regex, enrich, filter_transactions
from exports import build_table_workbook, safe_filename_part, workbook_response
from fields import clamp_int
from middleware import get_client, get_config, require_api_key
from pagination import PageLimits, fetch_all
from report_config import ReportConfig
from tariff import resolve_window

logger = logging.getLogger("ampeco-api.transactions")

router = APIRouter(prefix="/api", tags=["transactions"])

XLSX_COLUMNS = [
    "transactionId", "userId", "status", "totalAmount",
    "paymentMethod", "transactionDate", "userEmail",
]


@router.get("/ampeco-transactions", dependencies=[Depends(require_api_key)])
def ampeco_transactions(
    createdAfter: Optional[str] = Query(None, description="ISO start (inclusive), default: 1st of this month"),
    createdBefore: Optional[str] = Query(None, description="ISO end (exclusive), default: 1st of next month"),
    per_page: Optional[str] = Query(None),
    max_pages: Optional[str] = Query(None),
    max_items: Optional[str] = Query(None),
    concurrency: Optional[str] = Query(None),
    sweep_passes: Optional[str] = Query(None),
    paymentRegex: Optional[str] = Query(None),
    format: str = Query("json"),
    config: ReportConfig = Depends(get_config),
    client: AmpecoClient = Depends(get_client),
):
    """Finalized card transactions of users who do not require an invoice."""
    fmt = format.lower()
    if fmt not in ("json", "xlsx"):
        raise HTTPException(status_code=400, detail=f"Unsupported format '{format}' (json|xlsx)")

    try:
        window_start, window_end = resolve_window(
            createdAfter, createdBefore, config.timezone, names=("createdAfter", "createdBefore"),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        pattern = compile_payment_regex(paymentRegex, config.payment_regex)
    except re.error as e:
        raise HTTPException(status_code=400, detail=f"Invalid paymentRegex: {e}")

    limits = PageLimits(
        per_page=clamp_int(per_page, 1, 100, 100),
        max_pages=clamp_int(max_pages, 1, 500, 200),
        max_items=clamp_int(max_items, 1, 100000, 20000),
        sweep_passes=clamp_int(sweep_passes, 1, 5, config.sweep_passes),
    )
    workers = clamp_int(concurrency, 1, config.max_concurrency, config.default_concurrency)
    after_iso, before_iso = window_start.isoformat(), window_end.isoformat()

    logger.info("Transactions report %s .. %s (per_page=%d, workers=%d)",
                after_iso, before_iso, limits.per_page, workers)

    # ---------- 1) fetch ----------
    page = fetch_all(
        client,
        transactions_path(),
        {"filter[createdAfter]": after_iso, "filter[createdBefore]": before_iso},
        first_cursor="",
        **limits.as_kwargs(),
    )
    transactions = page.records

    # ---------- 2) filter ----------
    filtered, drop_reasons = filter_transactions(transactions, pattern)

    # ---------- 3+4) enrich ----------
    enriched = enrich(client, filtered, concurrency=workers)

    if fmt == "xlsx":
        wb = build_table_workbook([("transactions", XLSX_COLUMNS, enriched.rows)])
        filename = f"ampeco_transactions_{safe_filename_part(after_iso)}_{safe_filename_part(before_iso)}.xlsx"
        return workbook_response(wb, filename)

    no_records = not enriched.rows
    return {
        "ok": True,
        "createdAfter": after_iso,
        "createdBefore": before_iso,
        "per_page": limits.per_page,
        "pagesFetched": page.pages_fetched,
        "fetchedCount": len(transactions),
        "filteredCount": len(filtered),
        "uniqueUsersChecked": enriched.unique_users,
        "requireInvoiceFalseCount": len(enriched.rows),
        "noRecords": no_records,
        "message": "No matching transactions in the selected period." if no_records
                   else "Transactions fetched successfully.",
        "debug": {
            "paymentRegex": pattern.pattern,
            "dropReasons": drop_reasons,
            "counters": enriched.counters,
            "truncated": page.truncated,
            "cycleDetected": page.cycle_detected,
            "sweepsRun": page.sweeps_run,
            "missingTransactionId": page.missing_id,
            "concurrency": workers,
        },
        "data": enriched.rows,
    }
