"""Protocols and record types for the pay run engine's collaborators.

The engine never touches dispatch or master-data tables directly; it goes
through a job ledger, an adjustment ledger and a driver directory. Every call
takes the caller's TenantContext and implementations must scope by it.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol, Sequence
from uuid import UUID

from driver_payroll.tenancy import TenantContext


@dataclass(frozen=True)
class JobRecord:
    """Job as seen by the pay run engine."""

    job_id: UUID
    driver_id: UUID
    pay_amount: Decimal
    pay_status: str  # UNPOSTED/POSTED
    service_date: datetime.date
    completed_at: datetime.datetime | None = None
    pay_deferral_until: datetime.date | None = None
    job_number: str | None = None

    @property
    def settlement_date(self) -> datetime.date:
        """Completion date if recorded, otherwise the nominal service date."""
        if self.completed_at is not None:
            return self.completed_at.date()
        return self.service_date

    @property
    def description(self) -> str:
        return self.job_number or f"Job {self.job_id}"


@dataclass(frozen=True)
class AdjustmentRecord:
    """Driver adjustment as seen by the pay run engine."""

    adjustment_id: UUID
    driver_id: UUID
    amount: Decimal
    status: str  # PENDING/APPROVED/REJECTED/POSTED
    effective_date: datetime.date
    description: str = ""
    posted_at: datetime.datetime | None = None

    @property
    def label(self) -> str:
        return self.description or f"Adjustment {self.adjustment_id}"


@dataclass(frozen=True)
class DriverProfile:
    """Driver directory entry."""

    driver_id: UUID
    is_active: bool
    pay_terms_days: int | None
    display_name: str | None = None


class JobLedger(Protocol):
    """Source of truth for job earnings and their pay status."""

    async def find_eligible_jobs(
        self,
        driver_ids: Sequence[UUID],
        period_start: datetime.date,
        period_end: datetime.date,
        tenant: TenantContext,
    ) -> list[JobRecord]:
        """Unposted jobs for the drivers settling inside the window."""
        ...

    async def mark_posted(
        self,
        job_ids: Sequence[UUID],
        pay_run_id: UUID,
        posted_at: datetime.datetime,
        tenant: TenantContext,
    ) -> int:
        """Mark still-unposted jobs as posted; returns how many changed."""
        ...


class AdjustmentLedger(Protocol):
    """Source of truth for driver adjustments and their approval status."""

    async def find_approved(
        self,
        driver_ids: Sequence[UUID],
        period_start: datetime.date,
        period_end: datetime.date,
        tenant: TenantContext,
    ) -> list[AdjustmentRecord]:
        """Approved, unposted adjustments effective inside the window."""
        ...

    async def mark_posted(
        self,
        adjustment_ids: Sequence[UUID],
        posted_at: datetime.datetime,
        tenant: TenantContext,
    ) -> int:
        """Mark still-approved adjustments as posted; returns how many changed."""
        ...


class DriverDirectory(Protocol):
    """Resolves drivers and their configured pay cycle."""

    async def get_drivers(
        self, driver_ids: Sequence[UUID], tenant: TenantContext
    ) -> dict[UUID, DriverProfile]:
        """Profiles for the ids that exist in the tenant (missing ids omitted)."""
        ...

    async def list_active(
        self, cohort_days: int, tenant: TenantContext
    ) -> list[DriverProfile]:
        """Active drivers whose pay terms match ``cohort_days``."""
        ...


@dataclass(frozen=True)
class Collaborators:
    """The three collaborators an engine unit of work needs."""

    jobs: JobLedger
    adjustments: AdjustmentLedger
    drivers: DriverDirectory
