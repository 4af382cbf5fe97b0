from datetime import date
from decimal import Decimal

import pytest

from trafficdash import spreadsheet
from trafficdash.errors import ValidationError
from trafficdash.reports import (
    CustomerInfo,
    JoinedRecord,
    JoinedTraffic,
    ReportFilters,
    ReportRequest,
    apply_top_limit,
    build_consolidated_report,
    build_month_wise_report,
    consolidated_export_rows,
    customer_export_rows,
    month_label,
    month_wise_export_rows,
    parse_top_limit,
    traffic_export_rows,
)


def customer(contract_id, office_name="Dhaka GPO", payment_type="Advance"):
    return CustomerInfo(
        contract_id=contract_id,
        customer_name=f"Customer {contract_id}",
        office_name=office_name,
        service_type="Premium",
        customer_id=f"CUST-{contract_id}",
        payment_type=payment_type,
    )


def record(contract_id, day, traffic, revenue, **customer_fields):
    return JoinedRecord(
        contract_id=contract_id,
        record_date=day,
        traffic_volume=traffic,
        revenue=Decimal(str(revenue)),
        service_type="Premium",
        customer=customer(contract_id, **customer_fields),
    )


@pytest.fixture()
def joined():
    return JoinedTraffic(
        records=[
            record("C1", date(2024, 1, 5), 10, 60),
            record("C1", date(2024, 1, 20), 5, 40),
            record("C1", date(2024, 2, 10), 20, 200),
            record("C2", date(2024, 3, 1), 7, 500, office_name="Khulna", payment_type="BNPL"),
            record("C3", date(2024, 2, 2), 1, 50),
        ],
        orphaned=2,
    )


def test_month_wise_groups_by_contract_and_month(joined):
    report = build_month_wise_report(joined)

    assert report.months == ["2024-01", "2024-02", "2024-03"]
    c1 = next(r for r in report.rows if r.contract_id == "C1")
    assert c1.months["2024-01"].revenue == Decimal("100")
    assert c1.months["2024-01"].traffic == 15
    assert c1.months["2024-02"].revenue == Decimal("200")
    assert c1.months["2024-03"] is None
    assert c1.total_revenue == Decimal("300")
    assert report.orphaned_records == 2


def test_consolidated_totals_match_month_wise_cells(joined):
    month_wise = build_month_wise_report(joined)
    consolidated = build_consolidated_report(joined)

    totals = {r.contract_id: r.total_revenue for r in consolidated.rows}
    for row in month_wise.rows:
        cells = [c.revenue for c in row.months.values() if c is not None]
        assert sum(cells, Decimal("0")) == totals[row.contract_id]

    c1 = next(r for r in consolidated.rows if r.contract_id == "C1")
    assert c1.total_revenue == Decimal("300")
    assert c1.total_traffic == 35
    assert c1.record_count == 3
    assert (c1.first_date, c1.last_date) == (date(2024, 1, 5), date(2024, 2, 10))


def test_rows_ranked_by_revenue_with_contract_id_tie_break():
    data = JoinedTraffic(
        records=[
            record("B", date(2024, 1, 1), 1, 100),
            record("A", date(2024, 1, 1), 1, 100),
            record("C", date(2024, 1, 1), 1, 300),
        ]
    )

    assert [r.contract_id for r in build_consolidated_report(data).rows] == ["C", "A", "B"]
    assert [r.contract_id for r in build_month_wise_report(data).rows] == ["C", "A", "B"]


def test_top_limit_truncates_and_recomputes_summary(joined):
    report = build_consolidated_report(joined, ReportRequest(top_limit=2))

    assert [r.contract_id for r in report.rows] == ["C2", "C1"]
    assert report.summary.total_customers == 2
    assert report.summary.total_revenue == Decimal("800")
    assert report.summary.total_traffic == 42
    assert report.summary.average_revenue_per_customer == Decimal("400.00")


def test_top_limit_is_idempotent(joined):
    ranked = build_consolidated_report(joined).rows

    once = apply_top_limit(ranked, 2)
    assert apply_top_limit(once, 2) == once
    assert apply_top_limit(ranked, None) == ranked


def test_month_wise_keeps_months_of_whole_filtered_set_after_truncation(joined):
    report = build_month_wise_report(joined, ReportRequest(top_limit=1))

    assert [r.contract_id for r in report.rows] == ["C2"]
    assert report.months == ["2024-01", "2024-02", "2024-03"]
    assert report.rows[0].months["2024-01"] is None


def test_filters_are_inclusive_date_ranges(joined):
    request = ReportRequest(filters=ReportFilters(start_date=date(2024, 1, 20), end_date=date(2024, 2, 10)))

    report = build_consolidated_report(joined, request)

    c1 = next(r for r in report.rows if r.contract_id == "C1")
    assert c1.record_count == 2
    assert {r.contract_id for r in report.rows} == {"C1", "C3"}


def test_filters_on_customer_fields(joined):
    request = ReportRequest(filters=ReportFilters(payment_type="BNPL"))

    assert [r.contract_id for r in build_month_wise_report(joined, request).rows] == ["C2"]


def test_empty_report_summary_is_zero():
    report = build_month_wise_report(JoinedTraffic())

    assert report.rows == []
    assert report.months == []
    assert report.summary.total_customers == 0
    assert report.summary.average_revenue_per_customer == Decimal("0")


@pytest.mark.parametrize(
    "value, expected",
    [(None, None), ("All Customers", None), ("", None), ("Top 10", 10), ("Top 50", 50), ("25", 25), (7, 7)],
)
def test_parse_top_limit(value, expected):
    assert parse_top_limit(value) == expected


@pytest.mark.parametrize("value", ["Top ten", "0", -1, "Bottom 5", True])
def test_parse_top_limit_rejects_bad_values(value):
    with pytest.raises(ValidationError):
        parse_top_limit(value)


def test_month_label():
    assert month_label("2024-01") == "Jan 24"
    assert month_label("2023-12") == "Dec 23"


def test_month_wise_export_rows(joined):
    report = build_month_wise_report(joined, ReportRequest(top_limit=2))

    rows = month_wise_export_rows(report, generated_on=date(2024, 4, 1))

    assert rows[0] == {
        "Report Type": "Month-wise Summary",
        "Total Customers": 2,
        "Total Revenue": Decimal("800"),
        "Total Traffic": 42,
        "Average Revenue per Customer": Decimal("400.00"),
        "Report Generated": "2024-04-01",
    }
    assert list(rows[1].keys()) == [
        "SL No",
        "Contract ID",
        "Customer Name",
        "Service Type",
        "Customer ID",
        "Office Name",
        "Payment Type",
        "Jan 24 Traffic",
        "Jan 24 Revenue",
        "Feb 24 Traffic",
        "Feb 24 Revenue",
        "Mar 24 Traffic",
        "Mar 24 Revenue",
        "Total Traffic",
        "Total Revenue",
    ]
    assert rows[1]["Contract ID"] == "C2"
    assert rows[1]["Jan 24 Revenue"] is None
    assert rows[2]["Jan 24 Revenue"] == Decimal("100")


def test_consolidated_export_decodes_to_displayed_values(joined):
    report = build_consolidated_report(joined)

    content = spreadsheet.encode(consolidated_export_rows(report, generated_on=date(2024, 4, 1)), "Report")
    decoded = spreadsheet.decode(content)

    assert decoded[0]["Report Type"] == "Consolidated Summary"
    assert decoded[0]["Total Revenue"] == 850
    details = decoded[1:]
    assert [d["Contract ID"] for d in details] == [r.contract_id for r in report.rows]
    assert [d["SL No"] for d in details] == [1, 2, 3]
    assert details[1]["Total Revenue"] == 300
    assert details[1]["First Date"] == "2024-01-05"
    assert details[1]["Last Date"] == "2024-02-10"
    assert details[1]["Record Count"] == 3


def test_list_export_rows():
    customers = customer_export_rows(
        [
            {
                "customerName": "Acme",
                "officeName": "Dhaka GPO",
                "serviceType": "Premium",
                "customerId": "CUST1",
                "contractId": "C1",
                "paymentType": None,
                "createdAt": None,
            }
        ]
    )
    traffic = traffic_export_rows(
        [
            {
                "contractId": "C1",
                "date": date(2024, 1, 15),
                "trafficVolume": 3,
                "revenue": Decimal("9.50"),
                "serviceType": "Premium",
            }
        ]
    )

    assert customers == [
        {
            "Customer Name": "Acme",
            "Office Name": "Dhaka GPO",
            "Service Type": "Premium",
            "Customer ID": "CUST1",
            "Contract ID": "C1",
            "Payment Type": "Advance",
            "Created At": None,
        }
    ]
    assert traffic == [
        {
            "Contract ID": "C1",
            "Date": "2024-01-15",
            "Traffic Volume": 3,
            "Revenue": Decimal("9.50"),
            "Service Type": "Premium",
        }
    ]
