from io import BytesIO
from pathlib import Path
import os
import sys

import pytest
from fastapi.testclient import TestClient
from openpyxl import Workbook
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from trafficdash import main
from trafficdash.database import Base
from trafficdash.spreadsheet import CUSTOMER_COLUMNS, TRAFFIC_COLUMNS


@pytest.fixture()
def engine(tmp_path):
    db_path = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def db_session(engine):
    SessionTesting = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    db = SessionTesting()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def client_and_engine(engine):
    SessionTesting = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    def override_get_db():
        db = SessionTesting()
        try:
            yield db
        finally:
            db.close()

    original_lifespan = main.app.router.lifespan_context

    async def _noop_lifespan(_app):
        yield

    main.app.router.lifespan_context = _noop_lifespan
    main.app.dependency_overrides[main.get_db] = override_get_db

    client = TestClient(main.app)
    try:
        yield client, engine
    finally:
        client.close()
        main.app.dependency_overrides.clear()
        main.app.router.lifespan_context = original_lifespan


def seed_customer(
    engine,
    contract_id: str,
    name: str = "Acme Ltd",
    *,
    office_name: str = "Dhaka GPO",
    service_type: str = "Premium",
    customer_id: str = "CUST001",
    payment_type: str = "Advance",
):
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO customers (customer_name, office_name, service_type, customer_id, contract_id,
                                       payment_type, created_at, updated_at)
                VALUES (:name, :office_name, :service_type, :customer_id, :contract_id,
                        :payment_type, '2024-01-01 00:00:00', '2024-01-01 00:00:00')
                """
            ),
            {
                "name": name,
                "office_name": office_name,
                "service_type": service_type,
                "customer_id": customer_id,
                "contract_id": contract_id,
                "payment_type": payment_type,
            },
        )


def seed_traffic(
    engine,
    contract_id: str,
    day: str,
    traffic: int,
    revenue: float,
    *,
    service_type: str = "Premium",
    batch_id: str | None = None,
):
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO traffic_data (contract_id, date, traffic_volume, revenue, service_type, batch_id, created_at)
                VALUES (:contract_id, :day, :traffic, :revenue, :service_type, :batch_id, '2024-01-01 00:00:00')
                """
            ),
            {
                "contract_id": contract_id,
                "day": day,
                "traffic": traffic,
                "revenue": revenue,
                "service_type": service_type,
                "batch_id": batch_id,
            },
        )


def count_rows(engine, table: str) -> int:
    with engine.begin() as conn:
        return conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one()


def build_workbook(header: list[str], rows: list[list]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.append(header)
    for row in rows:
        ws.append(row)
    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def customer_workbook(rows: list[list]) -> bytes:
    return build_workbook(CUSTOMER_COLUMNS, rows)


def traffic_workbook(rows: list[list]) -> bytes:
    return build_workbook(TRAFFIC_COLUMNS, rows)
