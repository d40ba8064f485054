# spreadsheets.py — CSV/XLSX parsing for bulk uploads and XLSX report export
import io
import csv
import logging
from datetime import datetime, date, timedelta, timezone
from typing import Any, Dict, List, Optional, Iterable

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font

logger = logging.getLogger("pms.spreadsheets")

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
EXCEL_EPOCH = datetime(1899, 12, 30, tzinfo=timezone.utc)
EXCEL_MAX_SERIAL = 2958465  # 9999-12-31

DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%d/%b/%y %I:%M %p",   # Jira export, e.g. 12/Mar/24 9:15 AM
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%d-%m-%Y",
    "%d %b %Y",
    "%Y%m%d",
]


class SpreadsheetError(ValueError):
    pass


# ============================================================
# READING
# ============================================================

def _clean_header(value) -> str:
    return str(value).strip() if value is not None else ""


def _read_csv(content: bytes) -> List[Dict[str, Any]]:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = content.decode("latin-1")
    reader = csv.DictReader(io.StringIO(text))
    rows = []
    for raw in reader:
        row = {_clean_header(k): (v.strip() if isinstance(v, str) else v) for k, v in raw.items() if k}
        if any(v not in (None, "") for v in row.values()):
            rows.append(row)
    return rows


def _read_xlsx(content: bytes) -> List[Dict[str, Any]]:
    try:
        wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise SpreadsheetError(f"Could not read Excel file: {e}")
    try:
        ws = wb.worksheets[0]
        values = ws.iter_rows(values_only=True)
        header = next(values, None)
        if not header:
            return []
        headers = [_clean_header(h) for h in header]
        rows = []
        for raw in values:
            row = {}
            for key, value in zip(headers, raw):
                if not key:
                    continue
                row[key] = value.strip() if isinstance(value, str) else value
            if any(v not in (None, "") for v in row.values()):
                rows.append(row)
        return rows
    finally:
        wb.close()


def read_rows(filename: str, content: bytes) -> List[Dict[str, Any]]:
    """Parse an uploaded .csv or .xlsx into header-keyed row dicts (blank rows dropped)."""
    name = (filename or "").lower()
    if name.endswith(".csv"):
        return _read_csv(content)
    if name.endswith(".xlsx"):
        return _read_xlsx(content)
    raise SpreadsheetError("Unsupported file type. Upload a .xlsx or .csv file")


# ============================================================
# VALUE COERCION
# ============================================================

def excel_serial_to_datetime(serial) -> Optional[datetime]:
    """None when the number is outside the range Excel can store as a date."""
    serial = float(serial)
    if not 1 <= serial <= EXCEL_MAX_SERIAL:
        return None
    return EXCEL_EPOCH + timedelta(days=serial)


def parse_date(value) -> Optional[datetime]:
    """Best-effort conversion of a spreadsheet cell to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    text = cell_text(value)
    try:
        serial = excel_serial_to_datetime(text)
    except (ValueError, OverflowError):
        serial = None
    if serial:
        return serial
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    logger.debug(f"Unparseable date cell: {text!r}")
    return None


def split_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]


def cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


# ============================================================
# WRITING
# ============================================================

def workbook_bytes(tables: Iterable) -> bytes:
    """Render ReportTable-like objects (title/headers/rows) as sheets of one workbook."""
    wb = Workbook()
    wb.remove(wb.active)
    for table in tables:
        ws = wb.create_sheet(title=table.title[:31])
        ws.append(table.headers)
        for cell in ws[1]:
            cell.font = Font(bold=True)
        for row in table.rows:
            ws.append(row)
        for i, header in enumerate(table.headers, start=1):
            width = max([len(str(header))] + [len(str(r[i - 1])) for r in table.rows if len(r) >= i])
            ws.column_dimensions[ws.cell(row=1, column=i).column_letter].width = min(60, width + 2)
    if not wb.worksheets:
        wb.create_sheet(title="Report")

    output = io.BytesIO()
    wb.save(output)
    return output.getvalue()
