"""Pydantic request and response models for pay run operations.

Request models validate caller input before any database work; failures are
converted to ``driver_payroll.errors.ValidationError`` by ``parse_request``.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from driver_payroll.errors import ValidationError

SUPPORTED_COHORT_DAYS = (7, 14, 21, 30)
MAX_PAGE_SIZE = 200

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

M = TypeVar("M", bound=BaseModel)


def _strict_date(value: Any) -> Any:
    """Accept date objects or YYYY-MM-DD strings only."""
    if isinstance(value, datetime):
        raise ValueError("must be a date, not a datetime")
    if isinstance(value, str) and not _ISO_DATE.match(value):
        raise ValueError("must be in YYYY-MM-DD format")
    return value


def parse_request(model: type[M], data: M | dict[str, Any]) -> M:
    """Validate ``data`` as ``model``, raising ValidationError with field details."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            {
                "field": ".".join(str(part) for part in err["loc"]) or "__root__",
                "message": err["msg"],
            }
            for err in exc.errors()
        ]
        raise ValidationError("Validation failed", errors) from None


# ============================================================================
# Requests
# ============================================================================


class BuildPayRunRequest(BaseModel):
    """Input for building a new pay run."""

    model_config = ConfigDict(extra="forbid")

    cohort_days: int
    period_start: date
    period_end: date
    label: str | None = Field(default=None, max_length=200)
    driver_ids: list[UUID] | None = None

    @field_validator("cohort_days")
    @classmethod
    def _supported_cycle(cls, value: int) -> int:
        if value not in SUPPORTED_COHORT_DAYS:
            raise ValueError("cohortDays must be 7, 14, 21, or 30")
        return value

    @field_validator("period_start", "period_end", mode="before")
    @classmethod
    def _iso_dates(cls, value: Any) -> Any:
        return _strict_date(value)

    @field_validator("label")
    @classmethod
    def _blank_label_is_default(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value.strip() if value else value

    @model_validator(mode="after")
    def _ordered_period(self) -> BuildPayRunRequest:
        if self.period_start > self.period_end:
            raise ValueError("periodStart must be before or equal to periodEnd")
        return self

    def default_label(self) -> str:
        return f"{self.cohort_days} Day Cohort – {self.period_start} → {self.period_end}"

    @property
    def resolved_label(self) -> str:
        return self.label or self.default_label()


class ListPayRunsQuery(BaseModel):
    """Filters, pagination and sorting for listing pay runs."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    cohort_days: int | None = None
    status: Literal["DRAFT", "POSTED", "VOID"] | None = None
    period_from: date | None = Field(default=None, alias="from")
    period_to: date | None = Field(default=None, alias="to")
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=MAX_PAGE_SIZE)
    sort_by: Literal["created_at", "period_start", "period_end", "cohort_days", "status"] = (
        "created_at"
    )
    sort_order: Literal["asc", "desc"] = "desc"

    @field_validator("cohort_days")
    @classmethod
    def _supported_cycle(cls, value: int | None) -> int | None:
        if value is not None and value not in SUPPORTED_COHORT_DAYS:
            raise ValueError("cohortDays must be 7, 14, 21, or 30")
        return value

    @field_validator("period_from", "period_to", mode="before")
    @classmethod
    def _iso_dates(cls, value: Any) -> Any:
        return _strict_date(value)


class ExcludeItemRequest(BaseModel):
    """Manual exclusion of a pay run item."""

    reason: str = Field(min_length=1, max_length=500)

    @field_validator("reason")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("reason must not be blank")
        return value.strip()


class VoidPayRunRequest(BaseModel):
    """Voiding a draft pay run."""

    reason: str = Field(min_length=1, max_length=500)

    @field_validator("reason")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("reason must not be blank")
        return value.strip()


# ============================================================================
# Responses
# ============================================================================


class PayRunTotals(BaseModel):
    """Totals shown alongside a pay run."""

    total_drivers: int = 0
    total_net_pay: Decimal = Decimal("0.00")


class PayRunResponse(BaseModel):
    """Pay run detail."""

    model_config = ConfigDict(from_attributes=True)

    pay_run_id: UUID
    organization_id: UUID | None = None
    number: str
    label: str
    cohort_days: int
    period_start: date
    period_end: date
    status: str
    created_by: UUID | None = None
    posted_by: UUID | None = None
    posted_at: datetime | None = None
    voided_at: datetime | None = None
    void_reason: str | None = None
    rebuild_count: int = 0
    created_at: datetime | None = None
    summary: PayRunTotals = Field(default_factory=PayRunTotals)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class PayRunListResponse(BaseModel):
    """Page of pay runs."""

    items: list[PayRunResponse]
    pagination: Pagination


class PayRunDriverResponse(BaseModel):
    """Driver summary row with the driver's name."""

    pay_run_driver_summary_id: UUID
    pay_run_id: UUID
    driver_id: UUID
    driver_name: str
    gross: Decimal
    adjustments: Decimal
    net_pay: Decimal
    item_count: int


class PayRunItemResponse(BaseModel):
    """Line item with the date it counts towards."""

    pay_run_item_id: UUID
    pay_run_id: UUID
    driver_id: UUID
    kind: str
    source_id: UUID
    description: str
    amount: Decimal
    excluded: bool
    exclude_reason: str | None = None
    item_date: date | None = None
