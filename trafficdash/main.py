import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.orm import Session

from trafficdash import gateway, spreadsheet
from trafficdash.config import settings
from trafficdash.database import Base, SessionLocal, engine
from trafficdash.errors import BackendError, DuplicateError, FormatError, NotFoundError, ValidationError
from trafficdash.imports import import_customers, import_traffic
from trafficdash.reports import (
    ALL_CUSTOMERS,
    ReportFilters,
    ReportRequest,
    build_consolidated_report,
    build_month_wise_report,
    consolidated_export_rows,
    customer_export_rows,
    month_wise_export_rows,
    parse_top_limit,
    traffic_export_rows,
)
from trafficdash.schemas import CustomerCreate, CustomerUpdate, TrafficCreate, TrafficUpdate

logger = logging.getLogger(__name__)

REPORT_KINDS = {"month-wise", "consolidated"}


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Traffic Revenue Desk", lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def parse_optional_date(value: str | None, field_name: str) -> date | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    try:
        return date.fromisoformat(cleaned)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}. Use YYYY-MM-DD.") from exc


def json_safe(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def xlsx_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type=spreadsheet.XLSX_CONTENT_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.exception_handler(FormatError)
def format_error_handler(_request: Request, exc: FormatError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
def validation_error_handler(_request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": exc.message, "errors": exc.errors})


@app.exception_handler(DuplicateError)
def duplicate_error_handler(_request: Request, exc: DuplicateError):
    return JSONResponse(status_code=409, content={"detail": exc.message, "errors": exc.errors})


@app.exception_handler(NotFoundError)
def not_found_handler(_request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(BackendError)
def backend_error_handler(_request: Request, exc: BackendError):
    return JSONResponse(status_code=500, content={"detail": exc.message, "error": exc.detail})


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"ok": True}


# --- customers -------------------------------------------------------------


@app.get("/api/customers")
def list_customers(
    search: str | None = Query(None),
    office_name: str | None = Query(None),
    service_type: str | None = Query(None),
    payment_type: str | None = Query(None),
    db: Session = Depends(get_db),
):
    items = gateway.list_customers(
        db,
        search=search,
        office_name=office_name,
        service_type=service_type,
        payment_type=payment_type,
    )
    return {"items": items}


@app.get("/api/customers/export")
def export_customers(
    search: str | None = Query(None),
    office_name: str | None = Query(None),
    service_type: str | None = Query(None),
    payment_type: str | None = Query(None),
    db: Session = Depends(get_db),
):
    items = gateway.list_customers(
        db,
        search=search,
        office_name=office_name,
        service_type=service_type,
        payment_type=payment_type,
    )
    content = spreadsheet.encode(customer_export_rows(items), "Customers")
    return xlsx_response(content, f"customers-{date.today().isoformat()}.xlsx")


@app.post("/api/customers", status_code=201)
def create_customer(payload: CustomerCreate, db: Session = Depends(get_db)):
    return gateway.create_customer(db, payload.model_dump(by_alias=True))


@app.get("/api/customers/{customer_pk}")
def get_customer(customer_pk: int, db: Session = Depends(get_db)):
    return gateway.get_customer(db, customer_pk)


@app.patch("/api/customers/{customer_pk}")
def update_customer(customer_pk: int, payload: CustomerUpdate, db: Session = Depends(get_db)):
    return gateway.update_customer(db, customer_pk, payload.model_dump(by_alias=True, exclude_unset=True))


@app.delete("/api/customers/{customer_pk}")
def delete_customer(customer_pk: int, db: Session = Depends(get_db)):
    gateway.delete_customer(db, customer_pk)
    return {"ok": True, "id": customer_pk}


# --- traffic ---------------------------------------------------------------


def _traffic_items(db, contract_id, service_type, start_date, end_date, search):
    return gateway.list_traffic(
        db,
        contract_id=contract_id,
        service_type=service_type,
        start_date=parse_optional_date(start_date, "start_date"),
        end_date=parse_optional_date(end_date, "end_date"),
        search=search,
    )


@app.get("/api/traffic")
def list_traffic(
    contract_id: str | None = Query(None),
    service_type: str | None = Query(None),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
    search: str | None = Query(None),
    db: Session = Depends(get_db),
):
    return {"items": _traffic_items(db, contract_id, service_type, start_date, end_date, search)}


@app.get("/api/traffic/export")
def export_traffic(
    contract_id: str | None = Query(None),
    service_type: str | None = Query(None),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
    search: str | None = Query(None),
    db: Session = Depends(get_db),
):
    items = _traffic_items(db, contract_id, service_type, start_date, end_date, search)
    content = spreadsheet.encode(traffic_export_rows(items), "Traffic")
    return xlsx_response(content, f"traffic-{date.today().isoformat()}.xlsx")


@app.post("/api/traffic", status_code=201)
def create_traffic(payload: TrafficCreate, db: Session = Depends(get_db)):
    return gateway.create_traffic(db, payload.model_dump(by_alias=True))


@app.get("/api/traffic/{traffic_pk}")
def get_traffic(traffic_pk: int, db: Session = Depends(get_db)):
    return gateway.get_traffic(db, traffic_pk)


@app.patch("/api/traffic/{traffic_pk}")
def update_traffic(traffic_pk: int, payload: TrafficUpdate, db: Session = Depends(get_db)):
    return gateway.update_traffic(db, traffic_pk, payload.model_dump(by_alias=True, exclude_unset=True))


@app.delete("/api/traffic/{traffic_pk}")
def delete_traffic(traffic_pk: int, db: Session = Depends(get_db)):
    gateway.delete_traffic(db, traffic_pk)
    return {"ok": True, "id": traffic_pk}


# --- imports ---------------------------------------------------------------


def _import_response(summary: dict, db: Session):
    if summary["dry_run"]:
        db.rollback()
        return json_safe(summary)
    if not summary["can_apply"]:
        db.rollback()
        return JSONResponse(status_code=400, content=json_safe(summary))
    return json_safe(summary)


@app.post("/api/import/customers")
async def import_customers_upload(
    file: UploadFile = File(...),
    import_mode: str = Form("preview"),
    duplicate_policy: str = Form(""),
    db: Session = Depends(get_db),
):
    payload = await file.read()
    summary = import_customers(
        db,
        payload,
        file.filename or "customers.xlsx",
        mode=import_mode,
        duplicate_policy=duplicate_policy or None,
    )
    return _import_response(summary, db)


@app.post("/api/import/traffic")
async def import_traffic_upload(
    file: UploadFile = File(...),
    import_mode: str = Form("preview"),
    db: Session = Depends(get_db),
):
    payload = await file.read()
    summary = import_traffic(db, payload, file.filename or "traffic.xlsx", mode=import_mode)
    return _import_response(summary, db)


@app.post("/api/import/traffic/revert-last")
def revert_last_traffic_upload(db: Session = Depends(get_db)):
    return gateway.revert_last_upload(db)


@app.get("/api/import/traffic/batches")
def list_traffic_batches(db: Session = Depends(get_db)):
    return {"items": gateway.list_batches(db)}


@app.delete("/api/import/traffic/batches/{batch_id}")
def delete_traffic_batch(batch_id: str, db: Session = Depends(get_db)):
    return gateway.delete_batch(db, batch_id)


@app.get("/api/templates/{kind}")
def download_template(kind: str):
    if kind == "customers":
        return xlsx_response(spreadsheet.customer_template(), "customer-template.xlsx")
    if kind == "traffic":
        return xlsx_response(spreadsheet.traffic_template(), "traffic-template.xlsx")
    raise HTTPException(status_code=404, detail="Unknown template. Use customers or traffic.")


# --- reports ---------------------------------------------------------------


def report_request(
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
    service_type: str | None = Query(None),
    office_name: str | None = Query(None),
    payment_type: str | None = Query(None),
    contract_id: str | None = Query(None),
    customer_id: str | None = Query(None),
    top_limit: str = Query(ALL_CUSTOMERS),
) -> ReportRequest:
    start = parse_optional_date(start_date, "start_date")
    end = parse_optional_date(end_date, "end_date")
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="start_date must be on or before end_date.")
    filters = ReportFilters(
        start_date=start,
        end_date=end,
        service_type=service_type or None,
        office_name=office_name or None,
        payment_type=payment_type or None,
        contract_id=contract_id or None,
        customer_id=customer_id or None,
    )
    return ReportRequest(filters=filters, top_limit=parse_top_limit(top_limit))


@app.get("/api/reports/month-wise")
def month_wise_report(request: ReportRequest = Depends(report_request), db: Session = Depends(get_db)):
    joined = gateway.query_traffic_with_customers(db, request.filters)
    return build_month_wise_report(joined, request).as_dict()


@app.get("/api/reports/consolidated")
def consolidated_report(request: ReportRequest = Depends(report_request), db: Session = Depends(get_db)):
    joined = gateway.query_traffic_with_customers(db, request.filters)
    return build_consolidated_report(joined, request).as_dict()


@app.get("/api/reports/{kind}/export")
def export_report(kind: str, request: ReportRequest = Depends(report_request), db: Session = Depends(get_db)):
    if kind not in REPORT_KINDS:
        allowed = ", ".join(sorted(REPORT_KINDS))
        raise HTTPException(status_code=404, detail=f"Unknown report '{kind}'. Allowed: {allowed}.")
    joined = gateway.query_traffic_with_customers(db, request.filters)
    if kind == "month-wise":
        rows = month_wise_export_rows(build_month_wise_report(joined, request))
        filename = "monthwise-report.xlsx"
    else:
        rows = consolidated_export_rows(build_consolidated_report(joined, request))
        filename = "consolidated-report.xlsx"
    return xlsx_response(spreadsheet.encode(rows, "Report"), filename)


@app.get("/api/dashboard")
def dashboard(db: Session = Depends(get_db)):
    return gateway.dashboard_stats(db)


@app.get("/api/filters")
def filters(db: Session = Depends(get_db)):
    return gateway.filter_options(db)
