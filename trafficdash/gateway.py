"""
Persistence gateway for customers and traffic records.

Callers speak in API field names (``contractId``, ``trafficVolume``...);
this module maps them to storage columns, runs parameterised statements
through the caller's session and converts database failures into the
package's error types.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable, Iterator, Mapping, Sequence

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from trafficdash.errors import (
    BackendError,
    DuplicateError,
    DuplicateKeyError,
    RecordNotFound,
    ValidationError,
)
from trafficdash.models import Customer, TrafficRecord
from trafficdash.reports import CustomerInfo, JoinedRecord, JoinedTraffic, ReportFilters
from trafficdash.schemas import DEFAULT_PAYMENT_TYPE, PAYMENT_TYPES, CustomerRecord, TrafficRow

logger = logging.getLogger(__name__)

CUSTOMER_FIELDS = {
    "customerName": "customer_name",
    "officeName": "office_name",
    "serviceType": "service_type",
    "customerId": "customer_id",
    "contractId": "contract_id",
    "paymentType": "payment_type",
}

TRAFFIC_FIELDS = {
    "contractId": "contract_id",
    "date": "record_date",
    "trafficVolume": "traffic_volume",
    "revenue": "revenue",
    "serviceType": "service_type",
}

VALID_DUPLICATE_POLICIES = {"reject", "skip"}
GROWTH_WINDOW_DAYS = 30


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@contextmanager
def _guard(db: Session, action: str, *, commit: bool = False) -> Iterator[None]:
    try:
        yield
        if commit:
            db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicateError(f"Could not {action}. Check for duplicate Contract ID or invalid values.") from exc
    except DataError as exc:
        db.rollback()
        raise ValidationError(f"Could not {action}. Invalid values.", [str(exc.orig)]) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while trying to %s", action)
        raise BackendError(f"Unexpected database error while trying to {action}.", str(exc)) from exc


def _columns(data: Mapping[str, Any], mapping: dict[str, str]) -> dict[str, Any]:
    unknown = sorted(set(data) - set(mapping))
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(unknown)}")
    return {mapping[key]: value for key, value in data.items()}


def customer_to_dict(customer: Customer) -> dict[str, Any]:
    return {
        "id": customer.id,
        "customerName": customer.customer_name,
        "officeName": customer.office_name,
        "serviceType": customer.service_type,
        "customerId": customer.customer_id,
        "contractId": customer.contract_id,
        "paymentType": customer.payment_type or DEFAULT_PAYMENT_TYPE,
        "createdAt": customer.created_at,
        "updatedAt": customer.updated_at,
    }


def traffic_to_dict(record: TrafficRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "contractId": record.contract_id,
        "date": _to_date(record.record_date),
        "trafficVolume": record.traffic_volume,
        "revenue": _to_decimal(record.revenue),
        "serviceType": record.service_type,
        "batchId": record.batch_id,
        "createdAt": record.created_at,
    }


# --- customers -------------------------------------------------------------


def _load_customer(db: Session, customer_pk: int) -> Customer:
    with _guard(db, "load customer"):
        customer = db.get(Customer, customer_pk)
    if customer is None:
        raise RecordNotFound(f"Customer {customer_pk} not found")
    return customer


def _contract_owner(db: Session, contract_id: str) -> Customer | None:
    return db.execute(select(Customer).where(Customer.contract_id == contract_id)).scalars().first()


def create_customer(db: Session, data: Mapping[str, Any]) -> dict[str, Any]:
    values = _columns(data, CUSTOMER_FIELDS)
    values["payment_type"] = values.get("payment_type") or DEFAULT_PAYMENT_TYPE
    with _guard(db, "create customer", commit=True):
        owner = _contract_owner(db, values["contract_id"])
        if owner is not None:
            raise DuplicateError(
                f'Contract ID "{values["contract_id"]}" already exists (Customer: {owner.customer_name})'
            )
        now = _now()
        customer = Customer(**values, created_at=now, updated_at=now)
        db.add(customer)
    return customer_to_dict(customer)


def get_customer(db: Session, customer_pk: int) -> dict[str, Any]:
    return customer_to_dict(_load_customer(db, customer_pk))


def list_customers(
    db: Session,
    *,
    search: str | None = None,
    office_name: str | None = None,
    service_type: str | None = None,
    payment_type: str | None = None,
) -> list[dict[str, Any]]:
    stmt = select(Customer)
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(Customer.customer_name).like(pattern),
                func.lower(Customer.office_name).like(pattern),
                func.lower(Customer.service_type).like(pattern),
                func.lower(Customer.customer_id).like(pattern),
                func.lower(Customer.contract_id).like(pattern),
            )
        )
    if office_name:
        stmt = stmt.where(Customer.office_name == office_name)
    if service_type:
        stmt = stmt.where(Customer.service_type == service_type)
    if payment_type:
        stmt = stmt.where(Customer.payment_type == payment_type)
    stmt = stmt.order_by(Customer.created_at.desc(), Customer.id.desc())

    with _guard(db, "list customers"):
        customers = db.execute(stmt).scalars().all()
    return [customer_to_dict(c) for c in customers]


def update_customer(db: Session, customer_pk: int, changes: Mapping[str, Any]) -> dict[str, Any]:
    """Apply a partial update; fields absent from ``changes`` keep their value."""
    values = _columns(changes, CUSTOMER_FIELDS)
    customer = _load_customer(db, customer_pk)
    if not values:
        return customer_to_dict(customer)

    with _guard(db, "update customer", commit=True):
        new_contract = values.get("contract_id")
        if new_contract is not None and new_contract != customer.contract_id:
            owner = _contract_owner(db, new_contract)
            if owner is not None:
                raise DuplicateError(
                    f'Contract ID "{new_contract}" already exists (Customer: {owner.customer_name})'
                )
        for column, value in values.items():
            setattr(customer, column, value)
        customer.updated_at = _now()
    return customer_to_dict(customer)


def delete_customer(db: Session, customer_pk: int) -> None:
    customer = _load_customer(db, customer_pk)
    contract_id = customer.contract_id
    with _guard(db, "delete customer", commit=True):
        remaining = db.execute(
            select(func.count(TrafficRecord.id)).where(TrafficRecord.contract_id == contract_id)
        ).scalar_one()
        db.delete(customer)
    if remaining:
        logger.warning(
            "Deleted customer %s; %d traffic record(s) for contract %s are now orphaned",
            customer_pk,
            remaining,
            contract_id,
        )


def existing_contracts(db: Session, contract_ids: Iterable[str]) -> dict[str, str]:
    """Map each already stored Contract ID to its customer name, in one query."""
    wanted = sorted(set(contract_ids))
    if not wanted:
        return {}
    with _guard(db, "look up contracts"):
        rows = db.execute(
            select(Customer.contract_id, Customer.customer_name).where(Customer.contract_id.in_(wanted))
        ).all()
    return {contract_id: name for contract_id, name in rows}


def bulk_insert_customers(
    db: Session, records: Sequence[CustomerRecord], policy: str = "reject"
) -> dict[str, int]:
    """Insert validated customer rows.

    ``reject`` refuses the whole batch when any Contract ID is already stored
    (or repeats inside the batch); ``skip`` inserts only the new contracts.
    """
    if policy not in VALID_DUPLICATE_POLICIES:
        allowed = ", ".join(sorted(VALID_DUPLICATE_POLICIES))
        raise ValidationError(f"Invalid duplicate policy '{policy}'. Allowed: {allowed}.")

    existing = existing_contracts(db, (r.contract_id for r in records))
    seen: set[str] = set()
    repeated: list[str] = []
    fresh: list[CustomerRecord] = []
    for record in records:
        if record.contract_id in existing:
            continue
        if record.contract_id in seen:
            repeated.append(record.contract_id)
            continue
        seen.add(record.contract_id)
        fresh.append(record)

    colliding = sorted(set(existing) | set(repeated))
    if colliding and policy == "reject":
        messages = [
            f'Contract ID "{cid}" already exists in the system (Customer: {existing[cid]})'
            if cid in existing
            else f'Contract ID "{cid}" appears more than once in the batch'
            for cid in colliding
        ]
        logger.warning("Customer import rejected: %d duplicate Contract ID(s)", len(colliding))
        raise DuplicateKeyError(
            f"{len(colliding)} Contract ID(s) already exist. Nothing was imported.", colliding, messages
        )

    with _guard(db, "import customers", commit=True):
        now = _now()
        db.add_all(
            [
                Customer(
                    customer_name=r.customer_name,
                    office_name=r.office_name,
                    service_type=r.service_type,
                    customer_id=r.customer_id,
                    contract_id=r.contract_id,
                    payment_type=r.payment_type or DEFAULT_PAYMENT_TYPE,
                    created_at=now,
                    updated_at=now,
                )
                for r in fresh
            ]
        )

    result = {"inserted": len(fresh), "skipped": len(records) - len(fresh), "total": len(records)}
    logger.info("Imported customers: %s", result)
    return result


# --- traffic ---------------------------------------------------------------


def _load_traffic(db: Session, traffic_pk: int) -> TrafficRecord:
    with _guard(db, "load traffic record"):
        record = db.get(TrafficRecord, traffic_pk)
    if record is None:
        raise RecordNotFound(f"Traffic record {traffic_pk} not found")
    return record


def _traffic_values(data: Mapping[str, Any]) -> dict[str, Any]:
    values = _columns(data, TRAFFIC_FIELDS)
    if "record_date" in values:
        values["record_date"] = _to_date(values["record_date"])
    if "revenue" in values:
        values["revenue"] = _to_decimal(values["revenue"])
    return values


def create_traffic(db: Session, data: Mapping[str, Any]) -> dict[str, Any]:
    values = _traffic_values(data)
    with _guard(db, "create traffic record", commit=True):
        record = TrafficRecord(**values, batch_id=None, created_at=_now())
        db.add(record)
    return traffic_to_dict(record)


def get_traffic(db: Session, traffic_pk: int) -> dict[str, Any]:
    return traffic_to_dict(_load_traffic(db, traffic_pk))


def list_traffic(
    db: Session,
    *,
    contract_id: str | None = None,
    service_type: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    search: str | None = None,
) -> list[dict[str, Any]]:
    stmt = select(TrafficRecord)
    if contract_id:
        stmt = stmt.where(TrafficRecord.contract_id == contract_id)
    if service_type:
        stmt = stmt.where(TrafficRecord.service_type == service_type)
    if start_date is not None:
        stmt = stmt.where(TrafficRecord.record_date >= start_date)
    if end_date is not None:
        stmt = stmt.where(TrafficRecord.record_date <= end_date)
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(TrafficRecord.contract_id).like(pattern),
                func.lower(TrafficRecord.service_type).like(pattern),
            )
        )
    stmt = stmt.order_by(TrafficRecord.record_date.desc(), TrafficRecord.id.desc())

    with _guard(db, "list traffic records"):
        records = db.execute(stmt).scalars().all()
    return [traffic_to_dict(r) for r in records]


def update_traffic(db: Session, traffic_pk: int, changes: Mapping[str, Any]) -> dict[str, Any]:
    values = _traffic_values(changes)
    record = _load_traffic(db, traffic_pk)
    if not values:
        return traffic_to_dict(record)
    with _guard(db, "update traffic record", commit=True):
        for column, value in values.items():
            setattr(record, column, value)
    return traffic_to_dict(record)


def delete_traffic(db: Session, traffic_pk: int) -> None:
    record = _load_traffic(db, traffic_pk)
    with _guard(db, "delete traffic record", commit=True):
        db.delete(record)


def existing_traffic_keys(db: Session, pairs: Iterable[tuple[str, date]]) -> set[tuple[str, date]]:
    """Return the (Contract ID, date) pairs that are already stored, in one query."""
    wanted = set(pairs)
    if not wanted:
        return set()
    contract_ids = sorted({contract_id for contract_id, _ in wanted})
    dates = [d for _, d in wanted]
    with _guard(db, "look up traffic records"):
        rows = db.execute(
            select(TrafficRecord.contract_id, TrafficRecord.record_date).where(
                TrafficRecord.contract_id.in_(contract_ids),
                TrafficRecord.record_date >= min(dates),
                TrafficRecord.record_date <= max(dates),
            )
        ).all()
    stored = {(contract_id, _to_date(day)) for contract_id, day in rows}
    return stored & wanted


def bulk_insert_traffic(db: Session, records: Sequence[TrafficRow]) -> dict[str, Any]:
    """Insert validated traffic rows under one new batch id.

    The batch is refused when a (Contract ID, date) pair repeats inside it
    or is already stored.
    """
    if not records:
        return {"inserted": 0, "total": 0, "batch_id": None}

    seen: set[tuple[str, date]] = set()
    repeated: set[tuple[str, date]] = set()
    for record in records:
        if record.key in seen:
            repeated.add(record.key)
        seen.add(record.key)
    stored = existing_traffic_keys(db, seen)
    colliding = sorted(repeated | stored)
    if colliding:
        messages = [
            f'Traffic entry for Contract ID "{cid}" on date "{day.isoformat()}" already exists'
            if (cid, day) in stored
            else f'Traffic entry for Contract ID "{cid}" on date "{day.isoformat()}" appears more than once in the batch'
            for cid, day in colliding
        ]
        logger.warning("Traffic import rejected: %d duplicate entr(ies)", len(colliding))
        raise DuplicateError(f"{len(colliding)} duplicate traffic entr(ies). Nothing was imported.", messages)

    batch_id = uuid.uuid4().hex
    with _guard(db, "import traffic records", commit=True):
        now = _now()
        db.add_all(
            [
                TrafficRecord(
                    contract_id=r.contract_id,
                    record_date=r.record_date,
                    traffic_volume=r.traffic_volume,
                    revenue=r.revenue,
                    service_type=r.service_type,
                    batch_id=batch_id,
                    created_at=now,
                )
                for r in records
            ]
        )

    logger.info("Imported %d traffic record(s) as batch %s", len(records), batch_id)
    return {"inserted": len(records), "total": len(records), "batch_id": batch_id}


def _delete_batch_rows(db: Session, batch_id: str) -> int:
    with _guard(db, "delete traffic batch", commit=True):
        result = db.execute(delete(TrafficRecord).where(TrafficRecord.batch_id == batch_id))
    return result.rowcount or 0


def revert_last_upload(db: Session) -> dict[str, Any]:
    """Delete every record of the most recently imported batch."""
    with _guard(db, "find last traffic batch"):
        batch_id = db.execute(
            select(TrafficRecord.batch_id)
            .where(TrafficRecord.batch_id.is_not(None))
            .order_by(TrafficRecord.id.desc())
            .limit(1)
        ).scalar()
    if batch_id is None:
        return {"batch_id": None, "deleted": 0}

    deleted = _delete_batch_rows(db, batch_id)
    logger.info("Reverted traffic batch %s (%d record(s))", batch_id, deleted)
    return {"batch_id": batch_id, "deleted": deleted}


def delete_batch(db: Session, batch_id: str) -> dict[str, Any]:
    deleted = _delete_batch_rows(db, batch_id)
    if not deleted:
        raise RecordNotFound(f"Traffic batch {batch_id} not found")
    logger.info("Deleted traffic batch %s (%d record(s))", batch_id, deleted)
    return {"batch_id": batch_id, "deleted": deleted}


def list_batches(db: Session) -> list[dict[str, Any]]:
    stmt = (
        select(
            TrafficRecord.batch_id,
            func.count(TrafficRecord.id),
            func.min(TrafficRecord.created_at),
        )
        .where(TrafficRecord.batch_id.is_not(None))
        .group_by(TrafficRecord.batch_id)
        .order_by(func.max(TrafficRecord.id).desc())
    )
    with _guard(db, "list traffic batches"):
        rows = db.execute(stmt).all()
    return [{"batchId": batch_id, "rowCount": count, "createdAt": created_at} for batch_id, count, created_at in rows]


# --- reporting -------------------------------------------------------------


def _customer_filter(column, value: str | None):
    # Orphaned rows have no customer; keep them so they can be counted.
    return or_(Customer.id.is_(None), column == value)


def query_traffic_with_customers(db: Session, filters: ReportFilters | None = None) -> JoinedTraffic:
    """Traffic rows joined with their customer.

    Rows whose Contract ID has no customer are left out and counted in
    ``orphaned``.
    """
    filters = filters or ReportFilters()
    stmt = select(TrafficRecord, Customer).outerjoin(Customer, Customer.contract_id == TrafficRecord.contract_id)
    if filters.start_date is not None:
        stmt = stmt.where(TrafficRecord.record_date >= filters.start_date)
    if filters.end_date is not None:
        stmt = stmt.where(TrafficRecord.record_date <= filters.end_date)
    if filters.service_type:
        stmt = stmt.where(TrafficRecord.service_type == filters.service_type)
    if filters.contract_id:
        stmt = stmt.where(TrafficRecord.contract_id == filters.contract_id)
    if filters.office_name:
        stmt = stmt.where(_customer_filter(Customer.office_name, filters.office_name))
    if filters.payment_type:
        stmt = stmt.where(_customer_filter(Customer.payment_type, filters.payment_type))
    if filters.customer_id:
        stmt = stmt.where(_customer_filter(Customer.customer_id, filters.customer_id))
    stmt = stmt.order_by(TrafficRecord.record_date, TrafficRecord.contract_id, TrafficRecord.id)

    with _guard(db, "load report data"):
        rows = db.execute(stmt).all()

    joined = JoinedTraffic()
    for record, customer in rows:
        if customer is None:
            joined.orphaned += 1
            continue
        joined.records.append(
            JoinedRecord(
                contract_id=record.contract_id,
                record_date=_to_date(record.record_date),
                traffic_volume=record.traffic_volume,
                revenue=_to_decimal(record.revenue),
                service_type=record.service_type,
                customer=CustomerInfo(
                    contract_id=customer.contract_id,
                    customer_name=customer.customer_name,
                    office_name=customer.office_name,
                    service_type=customer.service_type,
                    customer_id=customer.customer_id,
                    payment_type=customer.payment_type or DEFAULT_PAYMENT_TYPE,
                ),
            )
        )
    if joined.orphaned:
        logger.warning("%d traffic record(s) reference unknown Contract IDs and were left out", joined.orphaned)
    return joined


def _revenue_between(db: Session, after: date, until: date) -> Decimal:
    value = db.execute(
        select(func.coalesce(func.sum(TrafficRecord.revenue), 0)).where(
            TrafficRecord.record_date > after,
            TrafficRecord.record_date <= until,
        )
    ).scalar_one()
    return _to_decimal(value)


def dashboard_stats(db: Session, today: date | None = None) -> dict[str, Any]:
    """Headline totals plus revenue growth of the last 30 days over the 30 before."""
    today = today or date.today()
    window = timedelta(days=GROWTH_WINDOW_DAYS)
    with _guard(db, "load dashboard statistics"):
        total_customers = db.execute(select(func.count(Customer.id))).scalar_one()
        total_records = db.execute(select(func.count(TrafficRecord.id))).scalar_one()
        total_revenue = db.execute(select(func.coalesce(func.sum(TrafficRecord.revenue), 0))).scalar_one()
        total_traffic = db.execute(select(func.coalesce(func.sum(TrafficRecord.traffic_volume), 0))).scalar_one()
        recent = _revenue_between(db, today - window, today)
        previous = _revenue_between(db, today - 2 * window, today - window)

    growth = Decimal("0")
    if previous > 0:
        growth = ((recent - previous) / previous * 100).quantize(Decimal("0.01"))
    return {
        "totalCustomers": total_customers,
        "totalTrafficRecords": total_records,
        "totalRevenue": _to_decimal(total_revenue),
        "totalTraffic": int(total_traffic or 0),
        "monthlyGrowth": growth,
    }


def filter_options(db: Session) -> dict[str, list[str]]:
    with _guard(db, "load filter options"):
        offices = db.execute(select(Customer.office_name).distinct()).scalars().all()
        customer_services = db.execute(select(Customer.service_type).distinct()).scalars().all()
        traffic_services = db.execute(select(TrafficRecord.service_type).distinct()).scalars().all()
    return {
        "officeNames": sorted(o for o in offices if o),
        "serviceTypes": sorted({s for s in [*customer_services, *traffic_services] if s}),
        "paymentTypes": list(PAYMENT_TYPES),
    }
