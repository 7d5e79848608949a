"""Source record models owned by the dispatch and master-data side.

The pay run engine reads these through the collaborator interfaces and only
ever writes them when a pay run is posted.
"""

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
)
from sqlalchemy.orm import Mapped, mapped_column

from driver_payroll.models.base import Base, TimestampMixin


class JobPayStatus(str, Enum):
    """Driver pay status on a job."""

    UNPOSTED = "UNPOSTED"
    POSTED = "POSTED"


class AdjustmentStatus(str, Enum):
    """Driver adjustment approval status."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    POSTED = "POSTED"


class Driver(Base, TimestampMixin):
    """Driver master record (subset consumed by pay runs)."""

    __tablename__ = "driver"

    driver_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID | None] = mapped_column(nullable=True, index=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pay_terms_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("driver_org_terms_idx", "organization_id", "pay_terms_days", "is_active"),
    )


class Job(Base, TimestampMixin):
    """Completed or scheduled job carrying a driver pay amount."""

    __tablename__ = "job"

    job_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID | None] = mapped_column(nullable=True)
    driver_id: Mapped[UUID] = mapped_column(
        ForeignKey("driver.driver_id", ondelete="RESTRICT"),
        nullable=False,
    )
    job_number: Mapped[str | None] = mapped_column(String, nullable=True)
    service_date: Mapped[date] = mapped_column(Date, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    driver_pay: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    driver_pay_status: Mapped[str] = mapped_column(
        String, nullable=False, default=JobPayStatus.UNPOSTED.value
    )
    driver_pay_deferral_until: Mapped[date | None] = mapped_column(Date, nullable=True)
    driver_pay_run_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("pay_run.pay_run_id"),
        nullable=True,
    )
    driver_pay_posted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "driver_pay_status IN ('UNPOSTED', 'POSTED')",
            name="job_driver_pay_status_check",
        ),
        Index("job_org_driver_pay_idx", "organization_id", "driver_id", "driver_pay_status"),
    )

    @property
    def settlement_date(self) -> date:
        """Date the job counts towards: completion date, else service date."""
        if self.completed_at is not None:
            return self.completed_at.date()
        return self.service_date


class DriverAdjustment(Base, TimestampMixin):
    """Signed manual adjustment to a driver's pay."""

    __tablename__ = "driver_adjustment"

    driver_adjustment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID | None] = mapped_column(nullable=True)
    driver_id: Mapped[UUID] = mapped_column(
        ForeignKey("driver.driver_id", ondelete="RESTRICT"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=AdjustmentStatus.PENDING.value
    )
    effective_date: Mapped[date] = mapped_column(Date, nullable=False)
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED', 'POSTED')",
            name="driver_adjustment_status_check",
        ),
        Index("driver_adjustment_org_status_idx", "organization_id", "status"),
    )
