"""
excel_writer.py

Builds the results workbook from the current job list.

Single sheet — "Results"
    S.No prepended automatically.
    One row per job, in display (submission) order.
    Image, Status, the five card fields, Error.
    Failed jobs show their error text; card fields stay blank.
    No colours. Frozen header row. Auto-filter. Fixed column widths.
"""

import io
import logging
from datetime import datetime

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter

from validator import CARD_FIELDS, COLUMN_DISPLAY_NAMES

logger = logging.getLogger(__name__)

_FONT_NAME   = "Calibri"
_FONT_HEADER = Font(name=_FONT_NAME, bold=True, size=10)
_FONT_BODY   = Font(name=_FONT_NAME, size=10)

_ALIGN_CENTER = Alignment(horizontal="center", vertical="center", wrap_text=False)
_ALIGN_LEFT   = Alignment(horizontal="left",   vertical="center", wrap_text=False)
_ALIGN_WRAP   = Alignment(horizontal="left",   vertical="center", wrap_text=True)

# ── Column configuration ───────────────────────────────────────────────────────

_OUTPUT_COLUMNS: list[str] = ["filename", "status"] + CARD_FIELDS + ["error"]

_HEADERS: dict[str, str] = {
    "filename": "Image",
    "status":   "Status",
    "error":    "Error",
    **COLUMN_DISPLAY_NAMES,
}

_WRAP_COLS = {"company", "error"}

_FIXED_WIDTHS: dict[str, int] = {
    "filename": 28,
    "status":   11,
    "country":  12,
    "name":     18,
    "position": 22,
    "company":  30,
    "phone":    20,
    "error":    40,
}


# ── Sheet builder ──────────────────────────────────────────────────────────────

def _row_values(row: dict) -> dict:
    """Flatten one job payload (Job.to_payload()) into column → cell value."""
    result = row.get("result") or {}
    values = {
        "filename": row.get("filename"),
        "status":   row.get("status"),
        "error":    row.get("error"),
    }
    for col in CARD_FIELDS:
        values[col] = result.get(col)
    return values


def _write_results_sheet(sheet, rows: list[dict]) -> None:
    headers = ["S.No"] + [_HEADERS[col] for col in _OUTPUT_COLUMNS]

    for col_idx, header in enumerate(headers, start=1):
        cell = sheet.cell(row=1, column=col_idx, value=header)
        cell.font      = _FONT_HEADER
        cell.alignment = _ALIGN_CENTER

    sheet.freeze_panes = "A2"
    sheet.auto_filter.ref = f"A1:{get_column_letter(len(headers))}1"

    for row_idx, row in enumerate(rows, start=2):
        values = _row_values(row)

        cell = sheet.cell(row=row_idx, column=1, value=row_idx - 1)
        cell.font      = _FONT_BODY
        cell.alignment = _ALIGN_CENTER

        for col_idx, col_name in enumerate(_OUTPUT_COLUMNS, start=2):
            cell = sheet.cell(row=row_idx, column=col_idx, value=values.get(col_name))
            cell.font      = _FONT_BODY
            cell.alignment = _ALIGN_WRAP if col_name in _WRAP_COLS else _ALIGN_LEFT

    sheet.column_dimensions["A"].width = 6
    for col_idx, col_name in enumerate(_OUTPUT_COLUMNS, start=2):
        sheet.column_dimensions[get_column_letter(col_idx)].width = _FIXED_WIDTHS[col_name]


# ── Public API ─────────────────────────────────────────────────────────────────

def build_excel(rows: list[dict]) -> bytes:
    """
    Build the results workbook.

    Args:
        rows: Job payloads (Job.to_payload()) in display order.

    Returns:
        Raw .xlsx bytes.
    """
    wb = Workbook()
    ws = wb.active
    ws.title = "Results"
    _write_results_sheet(ws, rows)

    buffer = io.BytesIO()
    wb.save(buffer)

    logger.info(f"Excel built: {len(rows)} card row(s).")
    return buffer.getvalue()


def get_output_filename() -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"business_cards_{timestamp}.xlsx"
