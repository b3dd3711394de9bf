"""
XLSX rendering for the report endpoints.

Sessions workbook, one sheet per station:
  - detail table in A:E  (id, energy_kwh, startedAt, stoppedAt, tarifas)
  - month summary to the right, starting at G1 (never below the details)
"""

import io
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from fastapi.responses import StreamingResponse
from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter

from reconcile import KWH_DECIMALS, ReconcileResult

logger = logging.getLogger("ampeco-api.exports")

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

DETAIL_HEADER = ["id", "energy_kwh", "startedAt", "stoppedAt", "tarifas"]
SUMMARY_HEADER = ["Month", "Dieninis_kWh", "Naktinis_kWh", "Total_kWh", "Rows"]
SUMMARY_ORIGIN_COL = 7  # G

# A..E details, F gap, G..K summary
SESSION_COLUMN_WIDTHS = [16, 14, 26, 26, 12, 3, 28, 14, 14, 14, 10]

MAX_SHEET_TITLE = 31
_FORBIDDEN_TITLE_CHARS = re.compile(r"[\[\]:*?/\\]")


def sheet_title(name: Any, used: Set[str]) -> str:
    """Excel-safe, unique sheet title (max 31 chars)."""
    base = _FORBIDDEN_TITLE_CHARS.sub(" ", str(name or "")).strip() or "Sheet"
    title = base[:MAX_SHEET_TITLE]
    n = 2
    while title.lower() in used:
        suffix = f" ({n})"
        title = base[:MAX_SHEET_TITLE - len(suffix)] + suffix
        n += 1
    used.add(title.lower())
    return title


def _new_sheet(wb: Workbook, title: str, first: bool):
    if first:
        ws = wb.active
        ws.title = title
        return ws
    return wb.create_sheet(title)


def _bold_row(ws, row: int, col: int, values: Sequence[Any]):
    for offset, value in enumerate(values):
        cell = ws.cell(row=row, column=col + offset, value=value)
        cell.font = Font(bold=True)


def _cell_value(val: Any) -> Any:
    if val is not None and not isinstance(val, (str, int, float, bool)):
        return str(val)
    return val


# ---------------------------------------------------------------------------
# Sessions workbook
# ---------------------------------------------------------------------------

def build_sessions_workbook(station_reports: Iterable[Tuple[str, ReconcileResult]], month: str) -> Workbook:
    """One sheet per (station_name, reconcile_result) pair."""
    wb = Workbook()
    used: Set[str] = set()
    first = True

    for station_name, result in station_reports:
        ws = _new_sheet(wb, sheet_title(station_name, used), first)
        first = False

        _bold_row(ws, 1, 1, DETAIL_HEADER)
        for row_idx, row in enumerate(result.rows, 2):
            values = row.as_dict()
            for col_idx, key in enumerate(DETAIL_HEADER, 1):
                ws.cell(row=row_idx, column=col_idx, value=_cell_value(values[key]))

        ws.cell(row=1, column=SUMMARY_ORIGIN_COL, value=f"MONTH SUMMARY ({station_name})").font = Font(bold=True)
        _bold_row(ws, 2, SUMMARY_ORIGIN_COL, SUMMARY_HEADER)
        summary = [
            month,
            round(result.day_kwh, KWH_DECIMALS),
            round(result.night_kwh, KWH_DECIMALS),
            round(result.total_kwh, KWH_DECIMALS),
            result.row_count,
        ]
        for offset, value in enumerate(summary):
            ws.cell(row=3, column=SUMMARY_ORIGIN_COL + offset, value=value)

        for col_idx, width in enumerate(SESSION_COLUMN_WIDTHS, 1):
            ws.column_dimensions[get_column_letter(col_idx)].width = width

    if first:
        wb.active.title = "report"
    return wb


# ---------------------------------------------------------------------------
# Generic tables
# ---------------------------------------------------------------------------

def build_table_workbook(sheets: Iterable[Tuple[str, Optional[List[str]], List[Dict[str, Any]]]]) -> Workbook:
    """One sheet per (title, columns, rows); columns default to the union of row keys."""
    wb = Workbook()
    used: Set[str] = set()
    first = True

    for title, columns, rows in sheets:
        ws = _new_sheet(wb, sheet_title(title, used), first)
        first = False

        if columns is None:
            columns = []
            for row in rows:
                for key in row:
                    if key not in columns:
                        columns.append(key)

        _bold_row(ws, 1, 1, columns)
        for row_idx, row in enumerate(rows, 2):
            for col_idx, key in enumerate(columns, 1):
                ws.cell(row=row_idx, column=col_idx, value=_cell_value(row.get(key)))

        # Auto-width from the first 100 rows
        for col_idx, col_name in enumerate(columns, 1):
            max_len = len(str(col_name))
            for row in rows[:100]:
                val = row.get(col_name)
                if val is not None:
                    max_len = max(max_len, len(str(val)))
            ws.column_dimensions[get_column_letter(col_idx)].width = min(max_len + 2, 50)

    if first:
        wb.active.title = "report"
    return wb


def workbook_response(wb: Workbook, filename: str) -> StreamingResponse:
    output = io.BytesIO()
    wb.save(output)
    output.seek(0)
    logger.info("Rendered %s (%d bytes, %d sheets)", filename, output.getbuffer().nbytes, len(wb.worksheets))
    return StreamingResponse(
        output,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def safe_filename_part(value: str) -> str:
    return re.sub(r"[:+]", "-", value)
