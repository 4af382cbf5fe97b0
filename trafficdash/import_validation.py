from __future__ import annotations

import math
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

from sqlalchemy.orm import Session

from trafficdash import gateway
from trafficdash.schemas import (
    DEFAULT_PAYMENT_TYPE,
    PAYMENT_TYPES,
    CustomerRecord,
    RowError,
    TrafficRow,
    ValidationResult,
)

SERIAL_EPOCH = date(1899, 12, 30)
DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y-%m-%d %H:%M:%S")
FIRST_DATA_ROW = 2
# Bounds of the traffic_data.traffic_volume (Integer) and revenue (Numeric(14, 2)) columns.
MAX_TRAFFIC = 2**31 - 1
MAX_REVENUE = Decimal(10) ** 12

CUSTOMER_REQUIRED = ("Customer Name", "Office Name", "Service Type", "Customer ID", "Contract ID")


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).replace("\xa0", " ").strip()


def _clean_code(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    raw = _clean_text(value)
    if raw.endswith(".0") and raw.replace(".", "", 1).isdigit():
        return raw[:-2]
    return raw


def _to_number(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = Decimal(str(value))
    else:
        raw = _clean_text(value)
        if not raw:
            return None
        try:
            number = Decimal(raw)
        except InvalidOperation:
            return None
    if not number.is_finite():
        return None
    return number


def to_date(value: Any) -> date | None:
    """Normalise a Date cell.

    Accepts date/datetime cells, day serials counted from 1899-12-30 and
    text in ``YYYY-MM-DD`` (optionally with a time), ``DD/MM/YYYY`` or
    ``DD-MM-YYYY`` form. Returns ``None`` for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value < 0:
            return None
        try:
            return SERIAL_EPOCH + timedelta(days=math.floor(value))
        except (OverflowError, ValueError):
            return None

    raw = _clean_text(value)
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw).date()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    return None


def _row_error(row: int, problems: list[tuple[str, str]]) -> RowError:
    return RowError(
        rows=(row,),
        message=f"Row {row}: " + ", ".join(message for _, message in problems),
        fields=tuple(field for field, _ in problems),
    )


def validate_customer_rows(rows: Sequence[Mapping[str, Any]]) -> ValidationResult:
    """Check decoded customer rows without touching the database.

    Every row is checked; a row with problems yields one ``Row N: ...``
    error listing all of them. A Contract ID used by more than one row yields
    a single error naming every such row, and none of those rows is kept.
    """
    result = ValidationResult(total_rows=len(rows))
    candidates: list[CustomerRecord] = []
    contract_rows: dict[str, list[int]] = defaultdict(list)

    for index, raw in enumerate(rows):
        row_num = index + FIRST_DATA_ROW
        problems: list[tuple[str, str]] = []

        values = {name: _clean_text(raw.get(name)) for name in CUSTOMER_REQUIRED}
        values["Customer ID"] = _clean_code(raw.get("Customer ID"))
        values["Contract ID"] = _clean_code(raw.get("Contract ID"))
        for name in CUSTOMER_REQUIRED:
            if not values[name]:
                problems.append((name, f"{name} is required"))

        payment_type = _clean_text(raw.get("Payment Type")) or DEFAULT_PAYMENT_TYPE
        if payment_type not in PAYMENT_TYPES:
            problems.append(("Payment Type", f"Payment Type must be {' or '.join(PAYMENT_TYPES)}"))

        if values["Contract ID"]:
            contract_rows[values["Contract ID"]].append(row_num)

        if problems:
            result.errors.append(_row_error(row_num, problems))
            continue
        candidates.append(
            CustomerRecord(
                customer_name=values["Customer Name"],
                office_name=values["Office Name"],
                service_type=values["Service Type"],
                customer_id=values["Customer ID"],
                contract_id=values["Contract ID"],
                payment_type=payment_type,
                row=row_num,
            )
        )

    duplicated: set[str] = set()
    for contract_id, row_nums in contract_rows.items():
        if len(row_nums) > 1:
            duplicated.add(contract_id)
            result.errors.append(
                RowError(
                    rows=tuple(row_nums),
                    message=(
                        f'Duplicate Contract ID "{contract_id}" found in Excel file at rows: '
                        f"{', '.join(str(n) for n in row_nums)}. Each contract must have a unique Contract ID."
                    ),
                    fields=("Contract ID",),
                    kind="duplicate",
                )
            )

    result.records = [c for c in candidates if c.contract_id not in duplicated]
    return result


def validate_traffic_rows(rows: Sequence[Mapping[str, Any]]) -> ValidationResult:
    result = ValidationResult(total_rows=len(rows))
    candidates: list[TrafficRow] = []
    key_rows: dict[tuple[str, date], list[int]] = defaultdict(list)

    for index, raw in enumerate(rows):
        row_num = index + FIRST_DATA_ROW
        problems: list[tuple[str, str]] = []

        contract_id = _clean_code(raw.get("Contract ID"))
        if not contract_id:
            problems.append(("Contract ID", "Contract ID is required"))

        record_date = None
        raw_date = raw.get("Date")
        if raw_date is None or _clean_text(raw_date) == "":
            problems.append(("Date", "Date is required"))
        else:
            record_date = to_date(raw_date)
            if record_date is None:
                problems.append(("Date", "Invalid date format"))

        traffic = _to_number(raw.get("Traffic"))
        if traffic is None:
            problems.append(("Traffic", "Valid Traffic is required (zero is allowed)"))
        elif traffic < 0:
            problems.append(("Traffic", "Traffic cannot be negative"))
        elif traffic > MAX_TRAFFIC:
            problems.append(("Traffic", "Traffic is too large"))
        elif traffic != traffic.to_integral_value():
            problems.append(("Traffic", "Traffic must be a whole number"))

        revenue = _to_number(raw.get("Revenue"))
        if revenue is None:
            problems.append(("Revenue", "Valid Revenue is required (zero is allowed)"))
        elif revenue < 0:
            problems.append(("Revenue", "Revenue cannot be negative"))
        elif revenue >= MAX_REVENUE:
            problems.append(("Revenue", "Revenue is too large"))

        service_type = _clean_text(raw.get("Service Type"))
        if not service_type:
            problems.append(("Service Type", "Service Type is required"))

        if contract_id and record_date is not None:
            key_rows[(contract_id, record_date)].append(row_num)

        if problems:
            result.errors.append(_row_error(row_num, problems))
            continue
        candidates.append(
            TrafficRow(
                contract_id=contract_id,
                record_date=record_date,
                traffic_volume=int(traffic),
                revenue=revenue.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
                service_type=service_type,
                row=row_num,
            )
        )

    duplicated: set[tuple[str, date]] = set()
    for (contract_id, day), row_nums in key_rows.items():
        if len(row_nums) > 1:
            duplicated.add((contract_id, day))
            result.errors.append(
                RowError(
                    rows=tuple(row_nums),
                    message=(
                        f'Duplicate traffic entry for Contract ID "{contract_id}" on date "{day.isoformat()}" '
                        f"found in Excel file at rows: {', '.join(str(n) for n in row_nums)}"
                    ),
                    fields=("Contract ID", "Date"),
                    kind="duplicate",
                )
            )

    result.records = [t for t in candidates if t.key not in duplicated]
    return result


def check_customer_collisions(db: Session, records: Sequence[CustomerRecord]) -> list[RowError]:
    """One error per row whose Contract ID is already stored."""
    existing = gateway.existing_contracts(db, (r.contract_id for r in records))
    return [
        RowError(
            rows=(r.row,),
            message=(
                f'Row {r.row}: Contract ID "{r.contract_id}" already exists in the system '
                f"(Customer: {existing[r.contract_id] or 'Unknown'})"
            ),
            fields=("Contract ID",),
            kind="duplicate",
        )
        for r in records
        if r.contract_id in existing
    ]


def check_traffic_references(db: Session, records: Sequence[TrafficRow]) -> list[RowError]:
    """Check structurally valid traffic rows against stored data.

    Unknown Contract IDs are reported first; only when every contract exists
    are the rows checked for (Contract ID, date) pairs that are already stored.
    """
    known = gateway.existing_contracts(db, (r.contract_id for r in records))
    missing = [
        RowError(
            rows=(r.row,),
            message=f'Row {r.row}: Contract ID "{r.contract_id}" does not exist in the customer table',
            fields=("Contract ID",),
            kind="not_found",
        )
        for r in records
        if r.contract_id not in known
    ]
    if missing:
        return missing

    stored = gateway.existing_traffic_keys(db, (r.key for r in records))
    return [
        RowError(
            rows=(r.row,),
            message=(
                f'Row {r.row}: Traffic entry for Contract ID "{r.contract_id}" on date '
                f'"{r.record_date.isoformat()}" already exists in the system'
            ),
            fields=("Contract ID", "Date"),
            kind="duplicate",
        )
        for r in records
        if r.key in stored
    ]
