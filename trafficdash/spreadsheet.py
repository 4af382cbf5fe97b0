"""
Spreadsheet codec.

Converts between workbook bytes (header row + data rows, columns identified
by their exact header text) and lists of dicts. Modern ``.xlsx`` files are
read and written with openpyxl; legacy ``.xls`` files are read with xlrd.
The format is detected from the file content, never from the extension.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from io import BytesIO
from pathlib import Path
from typing import Any, Iterable, Mapping

import openpyxl
import xlrd
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from trafficdash.errors import FormatError

logger = logging.getLogger(__name__)

XLSX_MAGIC = b"PK\x03\x04"
XLS_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

CUSTOMER_COLUMNS = ["Customer Name", "Office Name", "Service Type", "Customer ID", "Contract ID", "Payment Type"]
TRAFFIC_COLUMNS = ["Contract ID", "Date", "Traffic", "Revenue", "Service Type"]


def detect_format(content: bytes) -> str:
    if content.startswith(XLSX_MAGIC):
        return "xlsx"
    if content.startswith(XLS_MAGIC):
        return "xls"
    raise FormatError("Invalid Excel file format")


def _header_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).replace("\xa0", " ").strip()


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _rows_to_records(rows: Iterable[tuple[Any, ...] | list[Any]]) -> list[dict[str, Any]]:
    iterator = iter(rows)
    header_row = next(iterator, None)
    if header_row is None:
        return []

    headers = [_header_text(v) for v in header_row]
    records: list[dict[str, Any]] = []
    for row in iterator:
        if all(_is_blank(v) for v in row):
            continue
        record: dict[str, Any] = {}
        for idx, header in enumerate(headers):
            if not header:
                continue
            record[header] = row[idx] if idx < len(row) else None
        records.append(record)
    return records


def _decode_xlsx(content: bytes) -> list[dict[str, Any]]:
    try:
        workbook = openpyxl.load_workbook(BytesIO(content), data_only=True)
    except Exception as exc:
        raise FormatError(f"Could not read workbook: {exc}") from exc

    try:
        sheet = workbook.worksheets[0] if workbook.worksheets else None
        if sheet is None:
            return []
        return _rows_to_records(sheet.iter_rows(values_only=True))
    finally:
        workbook.close()


def _xls_cell_value(cell: xlrd.sheet.Cell, datemode: int) -> Any:
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK):
        return None
    if cell.ctype == xlrd.XL_CELL_DATE:
        return xlrd.xldate.xldate_as_datetime(cell.value, datemode)
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return bool(cell.value)
    if cell.ctype == xlrd.XL_CELL_ERROR:
        return None
    return cell.value


def _decode_xls(content: bytes) -> list[dict[str, Any]]:
    try:
        book = xlrd.open_workbook(file_contents=content)
    except Exception as exc:
        raise FormatError(f"Could not read workbook: {exc}") from exc

    if book.nsheets == 0:
        return []
    sheet = book.sheet_by_index(0)
    rows = (
        [_xls_cell_value(cell, book.datemode) for cell in sheet.row(row_idx)]
        for row_idx in range(sheet.nrows)
    )
    return _rows_to_records(rows)


def decode(content: bytes) -> list[dict[str, Any]]:
    """Decode the first sheet of a workbook into one dict per data row.

    Blank rows are skipped and blank cells decode as ``None``. Raises
    ``FormatError`` when the bytes are not a spreadsheet container.
    """
    if not content:
        raise FormatError("Uploaded file is empty")

    kind = detect_format(content)
    records = _decode_xlsx(content) if kind == "xlsx" else _decode_xls(content)
    logger.debug("Decoded %d row(s) from %s workbook", len(records), kind)
    return records


def decode_path(path: str | Path) -> list[dict[str, Any]]:
    """Read a workbook from disk. ``OSError`` propagates when the file is unreadable."""
    return decode(Path(path).read_bytes())


def _column_order(records: list[Mapping[str, Any]]) -> list[str]:
    columns: list[str] = []
    seen: set[str] = set()
    for record in records:
        for key in record.keys():
            if key not in seen:
                seen.add(key)
                columns.append(key)
    return columns


def _cell_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool, date, datetime)):
        return value
    # Decimal and other numeric types
    try:
        return float(value)
    except (TypeError, ValueError):
        return str(value)


def encode(records: Iterable[Mapping[str, Any]], sheet_title: str = "Sheet1") -> bytes:
    """Write records to a single-sheet ``.xlsx`` workbook and return its bytes.

    Columns follow the key order of the first record; keys first seen in
    later records are appended in order of appearance.
    """
    rows = list(records)
    columns = _column_order(rows)

    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = sheet_title[:31] or "Sheet1"

    header_font = Font(bold=True)
    header_fill = PatternFill(start_color="D9E1F2", end_color="D9E1F2", fill_type="solid")

    for col_num, header in enumerate(columns, 1):
        cell = ws.cell(row=1, column=col_num, value=header)
        cell.font = header_font
        cell.fill = header_fill
        cell.alignment = Alignment(horizontal="center", vertical="center")

    for row_num, record in enumerate(rows, start=2):
        for col_num, header in enumerate(columns, 1):
            ws.cell(row=row_num, column=col_num, value=_cell_value(record.get(header)))

    for col_num, header in enumerate(columns, 1):
        max_length = len(header)
        for record in rows:
            value = record.get(header)
            if value is not None:
                max_length = max(max_length, len(str(value)))
        ws.column_dimensions[get_column_letter(col_num)].width = min(max_length + 4, 50)

    if columns:
        ws.freeze_panes = "A2"

    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def customer_template() -> bytes:
    return encode(
        [
            {
                "Customer Name": "Example Corp",
                "Office Name": "Main Office",
                "Service Type": "Premium",
                "Customer ID": "CUST001",
                "Contract ID": "CONT001",
                "Payment Type": "Advance",
            }
        ],
        "Template",
    )


def traffic_template() -> bytes:
    return encode(
        [
            {
                "Contract ID": "CONT001",
                "Date": "2024-01-01",
                "Traffic": 1000,
                "Revenue": 5000.00,
                "Service Type": "Premium",
            }
        ],
        "Template",
    )
