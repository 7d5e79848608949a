"""Pay run, line item, driver summary and numbering models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from driver_payroll.models.base import Base, TimestampMixin


class ItemKind(str, Enum):
    """Pay run line item kinds."""

    JOB = "JOB"
    ADJUSTMENT = "ADJUSTMENT"


# ===== Pay Runs =====


class PayRun(Base, TimestampMixin):
    """Payable batch for a driver cohort over a period."""

    __tablename__ = "pay_run"

    pay_run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID | None] = mapped_column(nullable=True)
    # Non-null tenant key so the number stays unique for the legacy tenant too.
    number_scope: Mapped[str] = mapped_column(String, nullable=False)
    number: Mapped[str] = mapped_column(String, nullable=False)
    label: Mapped[str] = mapped_column(String, nullable=False)
    cohort_days: Mapped[int] = mapped_column(Integer, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="DRAFT")

    created_by: Mapped[UUID | None] = mapped_column(nullable=True)
    posted_by: Mapped[UUID | None] = mapped_column(nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    voided_by: Mapped[UUID | None] = mapped_column(nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    rebuild_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_rebuilt_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("number_scope", "number", name="pay_run_scope_number_unique"),
        CheckConstraint(
            "status IN ('DRAFT', 'POSTED', 'VOID')",
            name="pay_run_status_check",
        ),
        CheckConstraint("cohort_days IN (7, 14, 21, 30)", name="pay_run_cohort_days_check"),
        CheckConstraint("period_end >= period_start", name="pay_run_dates_check"),
        Index("pay_run_org_status_idx", "organization_id", "status", "created_at"),
    )


class PayRunItem(Base, TimestampMixin):
    """One payable line: a job earning or an approved adjustment."""

    __tablename__ = "pay_run_item"

    pay_run_item_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    pay_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_run.pay_run_id", ondelete="CASCADE"),
        nullable=False,
    )
    driver_id: Mapped[UUID] = mapped_column(
        ForeignKey("driver.driver_id"),
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(String, nullable=False)
    source_id: Mapped[UUID] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    excluded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exclude_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "pay_run_id", "kind", "source_id", name="pay_run_item_source_unique"
        ),
        CheckConstraint("kind IN ('JOB', 'ADJUSTMENT')", name="pay_run_item_kind_check"),
        CheckConstraint(
            "exclude_reason IS NULL OR excluded",
            name="pay_run_item_reason_requires_exclusion",
        ),
        Index("pay_run_item_run_driver_idx", "pay_run_id", "driver_id"),
        Index("pay_run_item_source_idx", "kind", "source_id"),
    )

    @property
    def key(self) -> tuple[str, UUID]:
        """Identity of the item within its pay run."""
        return (self.kind, self.source_id)

    @property
    def is_manually_excluded(self) -> bool:
        """Excluded by a user (as opposed to never included)."""
        return self.excluded and bool(self.exclude_reason)


class PayRunDriverSummary(Base, TimestampMixin):
    """Per-driver totals for a pay run, derived from its items."""

    __tablename__ = "pay_run_driver_summary"

    pay_run_driver_summary_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    pay_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_run.pay_run_id", ondelete="CASCADE"),
        nullable=False,
    )
    driver_id: Mapped[UUID] = mapped_column(
        ForeignKey("driver.driver_id"),
        nullable=False,
    )
    gross: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    adjustments: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    net_pay: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("pay_run_id", "driver_id", name="pay_run_driver_summary_unique"),
    )


class PayRunExclusion(Base, TimestampMixin):
    """Manual exclusion decision, kept independently of the item row."""

    __tablename__ = "pay_run_exclusion"

    pay_run_exclusion_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    pay_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("pay_run.pay_run_id", ondelete="CASCADE"),
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(String, nullable=False)
    source_id: Mapped[UUID] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    excluded_by: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "pay_run_id", "kind", "source_id", name="pay_run_exclusion_source_unique"
        ),
    )


class PayRunSequence(Base):
    """Atomic pay run number counter per tenant scope and year."""

    __tablename__ = "pay_run_sequence"

    number_scope: Mapped[str] = mapped_column(String, primary_key=True)
    year: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
