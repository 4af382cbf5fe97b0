from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from trafficdash.database import Base


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        CheckConstraint("payment_type IN ('Advance','BNPL')", name="customers_payment_type_chk"),
        Index("idx_customers_customer_id", "customer_id"),
        Index("idx_customers_payment_type", "payment_type"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_name: Mapped[str] = mapped_column(Text)
    office_name: Mapped[str] = mapped_column(Text)
    service_type: Mapped[str] = mapped_column(Text)
    customer_id: Mapped[str] = mapped_column(String(64))
    contract_id: Mapped[str] = mapped_column(String(64), unique=True)
    payment_type: Mapped[str] = mapped_column(String(16), default="Advance", server_default="Advance")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TrafficRecord(Base):
    __tablename__ = "traffic_data"
    __table_args__ = (
        CheckConstraint("traffic_volume >= 0", name="traffic_volume_non_negative_chk"),
        CheckConstraint("revenue >= 0", name="traffic_revenue_non_negative_chk"),
        Index("idx_traffic_contract_date", "contract_id", "date"),
        Index("idx_traffic_batch_id", "batch_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    # No foreign key: customers may be deleted while their traffic remains.
    contract_id: Mapped[str] = mapped_column(String(64))
    record_date: Mapped[date] = mapped_column("date", Date)
    traffic_volume: Mapped[int] = mapped_column(Integer)
    revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    service_type: Mapped[str] = mapped_column(Text)
    batch_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
