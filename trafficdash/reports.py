"""
Report aggregation over traffic records joined with their customers.

Everything here is pure: the gateway produces a ``JoinedTraffic`` value, a
``ReportRequest`` carries the filters and the top-N limit, and the builders
return report values that the API serialises and the codec exports.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Sequence

from trafficdash.errors import ValidationError

ALL_CUSTOMERS = "All Customers"
TOP_LIMIT_CHOICES = (ALL_CUSTOMERS, "Top 10", "Top 20", "Top 30", "Top 50")

MONTH_WISE_TITLE = "Month-wise Summary"
CONSOLIDATED_TITLE = "Consolidated Summary"

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class ReportFilters:
    start_date: date | None = None
    end_date: date | None = None
    service_type: str | None = None
    office_name: str | None = None
    payment_type: str | None = None
    contract_id: str | None = None
    customer_id: str | None = None

    def matches(self, record: JoinedRecord) -> bool:
        if self.start_date is not None and record.record_date < self.start_date:
            return False
        if self.end_date is not None and record.record_date > self.end_date:
            return False
        if self.service_type and record.service_type != self.service_type:
            return False
        if self.contract_id and record.contract_id != self.contract_id:
            return False
        if self.office_name and record.customer.office_name != self.office_name:
            return False
        if self.payment_type and record.customer.payment_type != self.payment_type:
            return False
        if self.customer_id and record.customer.customer_id != self.customer_id:
            return False
        return True


@dataclass(frozen=True)
class ReportRequest:
    filters: ReportFilters = field(default_factory=ReportFilters)
    top_limit: int | None = None


@dataclass(frozen=True)
class CustomerInfo:
    contract_id: str
    customer_name: str
    office_name: str
    service_type: str
    customer_id: str
    payment_type: str = "Advance"

    def as_dict(self) -> dict[str, Any]:
        return {
            "contractId": self.contract_id,
            "customerName": self.customer_name,
            "officeName": self.office_name,
            "serviceType": self.service_type,
            "customerId": self.customer_id,
            "paymentType": self.payment_type,
        }


@dataclass(frozen=True)
class JoinedRecord:
    contract_id: str
    record_date: date
    traffic_volume: int
    revenue: Decimal
    service_type: str
    customer: CustomerInfo

    @property
    def month(self) -> str:
        return month_key(self.record_date)


@dataclass
class JoinedTraffic:
    records: list[JoinedRecord] = field(default_factory=list)
    orphaned: int = 0


@dataclass(frozen=True)
class ReportSummary:
    total_customers: int = 0
    total_revenue: Decimal = Decimal("0")
    total_traffic: int = 0
    average_revenue_per_customer: Decimal = Decimal("0")

    def as_dict(self) -> dict[str, Any]:
        return {
            "totalCustomers": self.total_customers,
            "totalRevenue": self.total_revenue,
            "totalTraffic": self.total_traffic,
            "averageRevenuePerCustomer": self.average_revenue_per_customer,
        }


@dataclass(frozen=True)
class MonthCell:
    traffic: int
    revenue: Decimal


@dataclass(frozen=True)
class MonthWiseRow:
    customer: CustomerInfo
    months: dict[str, MonthCell | None]
    total_traffic: int
    total_revenue: Decimal

    @property
    def contract_id(self) -> str:
        return self.customer.contract_id


@dataclass(frozen=True)
class MonthWiseReport:
    months: list[str]
    rows: list[MonthWiseRow]
    summary: ReportSummary
    orphaned_records: int = 0
    top_limit: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "months": list(self.months),
            "rows": [
                {
                    **row.customer.as_dict(),
                    "months": {
                        key: None if cell is None else {"traffic": cell.traffic, "revenue": cell.revenue}
                        for key, cell in row.months.items()
                    },
                    "totalTraffic": row.total_traffic,
                    "totalRevenue": row.total_revenue,
                }
                for row in self.rows
            ],
            "summary": self.summary.as_dict(),
            "orphanedRecords": self.orphaned_records,
            "topLimit": self.top_limit,
        }


@dataclass(frozen=True)
class ConsolidatedRow:
    customer: CustomerInfo
    total_revenue: Decimal
    total_traffic: int
    record_count: int
    first_date: date
    last_date: date

    @property
    def contract_id(self) -> str:
        return self.customer.contract_id


@dataclass(frozen=True)
class ConsolidatedReport:
    rows: list[ConsolidatedRow]
    summary: ReportSummary
    orphaned_records: int = 0
    top_limit: int | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "rows": [
                {
                    **row.customer.as_dict(),
                    "totalRevenue": row.total_revenue,
                    "totalTraffic": row.total_traffic,
                    "recordCount": row.record_count,
                    "firstDate": row.first_date,
                    "lastDate": row.last_date,
                }
                for row in self.rows
            ],
            "summary": self.summary.as_dict(),
            "orphanedRecords": self.orphaned_records,
            "topLimit": self.top_limit,
        }


def month_key(value: date) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def month_label(key: str) -> str:
    """``2024-01`` -> ``Jan 24``."""
    year, month = key.split("-")
    return date(int(year), int(month), 1).strftime("%b %y")


def parse_top_limit(value: Any) -> int | None:
    """Resolve a top-N choice. ``None`` means every customer."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid top limit '{value}'.")
    if isinstance(value, int):
        limit = value
    else:
        raw = str(value).strip()
        if not raw or raw.lower() in {"all", ALL_CUSTOMERS.lower()}:
            return None
        if raw.lower().startswith("top "):
            raw = raw[4:].strip()
        if not raw.isdigit():
            allowed = ", ".join(TOP_LIMIT_CHOICES)
            raise ValidationError(f"Invalid top limit '{value}'. Allowed: {allowed} or a positive integer.")
        limit = int(raw)
    if limit <= 0:
        raise ValidationError(f"Invalid top limit '{value}'. Use a positive integer.")
    return limit


def apply_top_limit(rows: Sequence[Any], limit: int | None) -> list[Any]:
    if limit is None:
        return list(rows)
    return list(rows[:limit])


def summarize(rows: Iterable[MonthWiseRow | ConsolidatedRow]) -> ReportSummary:
    contracts: set[str] = set()
    total_revenue = Decimal("0")
    total_traffic = 0
    for row in rows:
        contracts.add(row.contract_id)
        total_revenue += row.total_revenue
        total_traffic += row.total_traffic

    average = Decimal("0")
    if contracts:
        average = (total_revenue / len(contracts)).quantize(_CENT)
    return ReportSummary(
        total_customers=len(contracts),
        total_revenue=total_revenue,
        total_traffic=total_traffic,
        average_revenue_per_customer=average,
    )


def _ranked(rows: Iterable[Any]) -> list[Any]:
    return sorted(rows, key=lambda r: (-r.total_revenue, r.contract_id))


def _filtered(joined: JoinedTraffic, request: ReportRequest) -> list[JoinedRecord]:
    return [r for r in joined.records if request.filters.matches(r)]


def build_month_wise_report(joined: JoinedTraffic, request: ReportRequest | None = None) -> MonthWiseReport:
    """Matrix of contracts by month.

    Months are every ``YYYY-MM`` observed in the filtered data, ascending.
    A contract with no records in a month gets ``None`` for that month.
    Ranking happens before the top-N cut and the summary is computed after it.
    """
    request = request or ReportRequest()
    records = _filtered(joined, request)

    months = sorted({r.month for r in records})
    customers: dict[str, CustomerInfo] = {}
    traffic: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
    revenue: dict[str, dict[str, Decimal]] = defaultdict(lambda: defaultdict(Decimal))
    for record in records:
        customers.setdefault(record.contract_id, record.customer)
        traffic[record.contract_id][record.month] += record.traffic_volume
        revenue[record.contract_id][record.month] += record.revenue

    rows = []
    for contract_id, customer in customers.items():
        cells: dict[str, MonthCell | None] = {}
        for key in months:
            if key in revenue[contract_id]:
                cells[key] = MonthCell(traffic=traffic[contract_id][key], revenue=revenue[contract_id][key])
            else:
                cells[key] = None
        rows.append(
            MonthWiseRow(
                customer=customer,
                months=cells,
                total_traffic=sum(traffic[contract_id].values()),
                total_revenue=sum(revenue[contract_id].values(), Decimal("0")),
            )
        )

    limited = apply_top_limit(_ranked(rows), request.top_limit)
    return MonthWiseReport(
        months=months,
        rows=limited,
        summary=summarize(limited),
        orphaned_records=joined.orphaned,
        top_limit=request.top_limit,
    )


def build_consolidated_report(
    joined: JoinedTraffic, request: ReportRequest | None = None
) -> ConsolidatedReport:
    request = request or ReportRequest()
    groups: dict[str, list[JoinedRecord]] = defaultdict(list)
    for record in _filtered(joined, request):
        groups[record.contract_id].append(record)

    rows = []
    for contract_id, items in groups.items():
        dates = [r.record_date for r in items]
        rows.append(
            ConsolidatedRow(
                customer=items[0].customer,
                total_revenue=sum((r.revenue for r in items), Decimal("0")),
                total_traffic=sum(r.traffic_volume for r in items),
                record_count=len(items),
                first_date=min(dates),
                last_date=max(dates),
            )
        )

    limited = apply_top_limit(_ranked(rows), request.top_limit)
    return ConsolidatedReport(
        rows=limited,
        summary=summarize(limited),
        orphaned_records=joined.orphaned,
        top_limit=request.top_limit,
    )


def _summary_row(title: str, summary: ReportSummary, generated_on: date) -> dict[str, Any]:
    return {
        "Report Type": title,
        "Total Customers": summary.total_customers,
        "Total Revenue": summary.total_revenue,
        "Total Traffic": summary.total_traffic,
        "Average Revenue per Customer": summary.average_revenue_per_customer,
        "Report Generated": generated_on.isoformat(),
    }


def _customer_columns(index: int, customer: CustomerInfo) -> dict[str, Any]:
    return {
        "SL No": index,
        "Contract ID": customer.contract_id,
        "Customer Name": customer.customer_name,
        "Service Type": customer.service_type,
        "Customer ID": customer.customer_id,
        "Office Name": customer.office_name,
        "Payment Type": customer.payment_type,
    }


def month_wise_export_rows(report: MonthWiseReport, generated_on: date | None = None) -> list[dict[str, Any]]:
    rows = [_summary_row(MONTH_WISE_TITLE, report.summary, generated_on or date.today())]
    for index, row in enumerate(report.rows, start=1):
        out = _customer_columns(index, row.customer)
        for key in report.months:
            label = month_label(key)
            cell = row.months.get(key)
            out[f"{label} Traffic"] = None if cell is None else cell.traffic
            out[f"{label} Revenue"] = None if cell is None else cell.revenue
        out["Total Traffic"] = row.total_traffic
        out["Total Revenue"] = row.total_revenue
        rows.append(out)
    return rows


def consolidated_export_rows(
    report: ConsolidatedReport, generated_on: date | None = None
) -> list[dict[str, Any]]:
    rows = [_summary_row(CONSOLIDATED_TITLE, report.summary, generated_on or date.today())]
    for index, row in enumerate(report.rows, start=1):
        out = _customer_columns(index, row.customer)
        out["Total Revenue"] = row.total_revenue
        out["Total Traffic"] = row.total_traffic
        out["Record Count"] = row.record_count
        out["First Date"] = row.first_date.isoformat()
        out["Last Date"] = row.last_date.isoformat()
        rows.append(out)
    return rows


def customer_export_rows(customers: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Customer list export, from gateway dicts."""
    rows = []
    for c in customers:
        created_at = c.get("createdAt")
        rows.append(
            {
                "Customer Name": c["customerName"],
                "Office Name": c["officeName"],
                "Service Type": c["serviceType"],
                "Customer ID": c["customerId"],
                "Contract ID": c["contractId"],
                "Payment Type": c.get("paymentType") or "Advance",
                "Created At": created_at.isoformat() if created_at is not None else None,
            }
        )
    return rows


def traffic_export_rows(records: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "Contract ID": r["contractId"],
            "Date": r["date"].isoformat(),
            "Traffic Volume": r["trafficVolume"],
            "Revenue": r["revenue"],
            "Service Type": r["serviceType"],
        }
        for r in records
    ]
