from __future__ import annotations

from dataclasses import dataclass, field
import datetime as dt
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

PAYMENT_TYPES = ("Advance", "BNPL")
DEFAULT_PAYMENT_TYPE = "Advance"


@dataclass(frozen=True)
class RowError:
    """One accumulated import problem, tied to the spreadsheet rows it concerns.

    ``rows`` are 1-based spreadsheet row numbers (the header is row 1).
    ``kind`` is ``validation``, ``duplicate`` or ``not_found``.
    """

    rows: tuple[int, ...]
    message: str
    fields: tuple[str, ...] = ()
    kind: str = "validation"

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class CustomerRecord:
    customer_name: str
    office_name: str
    service_type: str
    customer_id: str
    contract_id: str
    payment_type: str = DEFAULT_PAYMENT_TYPE
    row: int = 0


@dataclass(frozen=True)
class TrafficRow:
    contract_id: str
    record_date: dt.date
    traffic_volume: int
    revenue: Decimal
    service_type: str
    row: int = 0

    @property
    def key(self) -> tuple[str, dt.date]:
        return self.contract_id, self.record_date


@dataclass
class ValidationResult:
    records: list[Any] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    total_rows: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def messages(self) -> list[str]:
        return [str(e) for e in self.errors]


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class CustomerCreate(_ApiModel):
    customer_name: str = Field(min_length=1)
    office_name: str = Field(min_length=1)
    service_type: str = Field(min_length=1)
    customer_id: str = Field(min_length=1)
    contract_id: str = Field(min_length=1)
    payment_type: Literal["Advance", "BNPL"] = DEFAULT_PAYMENT_TYPE


class CustomerUpdate(_ApiModel):
    customer_name: str | None = Field(default=None, min_length=1)
    office_name: str | None = Field(default=None, min_length=1)
    service_type: str | None = Field(default=None, min_length=1)
    customer_id: str | None = Field(default=None, min_length=1)
    contract_id: str | None = Field(default=None, min_length=1)
    payment_type: Literal["Advance", "BNPL"] | None = None

    @field_validator("*", mode="before")
    @classmethod
    def reject_null(cls, value):
        if value is None:
            raise ValueError("field cannot be null; omit it to leave it unchanged")
        return value


class TrafficCreate(_ApiModel):
    contract_id: str = Field(min_length=1)
    date: dt.date
    traffic_volume: int = Field(ge=0, le=2**31 - 1)
    revenue: Decimal = Field(ge=0, max_digits=14, decimal_places=2)
    service_type: str = Field(min_length=1)


class TrafficUpdate(_ApiModel):
    contract_id: str | None = Field(default=None, min_length=1)
    date: dt.date | None = None
    traffic_volume: int | None = Field(default=None, ge=0, le=2**31 - 1)
    revenue: Decimal | None = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    service_type: str | None = Field(default=None, min_length=1)

    @field_validator("*", mode="before")
    @classmethod
    def reject_null(cls, value):
        if value is None:
            raise ValueError("field cannot be null; omit it to leave it unchanged")
        return value
