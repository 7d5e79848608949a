"""SQLAlchemy-backed collaborators sharing the unit of work's session."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Sequence, TypeVar
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from driver_payroll.cache import TTLCache
from driver_payroll.collaborators.base import (
    AdjustmentRecord,
    Collaborators,
    DriverProfile,
    JobRecord,
)
from driver_payroll.models import (
    AdjustmentStatus,
    Driver,
    DriverAdjustment,
    Job,
    JobPayStatus,
)
from driver_payroll.tenancy import TenantContext

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit.
IN_CLAUSE_CHUNK = 500

T = TypeVar("T")

DriverCacheKey = tuple[str, UUID]


def _chunks(values: Sequence[T], size: int = IN_CLAUSE_CHUNK) -> Iterator[list[T]]:
    for start in range(0, len(values), size):
        yield list(values[start : start + size])


def _window_bounds(period_start: date, period_end: date) -> tuple[datetime, datetime]:
    """Half-open UTC datetime range covering the whole of both end dates."""
    start_at = datetime.combine(period_start, time.min, tzinfo=timezone.utc)
    end_before = datetime.combine(period_end + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start_at, end_before


class _SessionBound:
    """Base for collaborators reading through a shared AsyncSession.

    An AsyncSession cannot run two statements at once, so collaborators built
    on the same session share one gate.
    """

    def __init__(self, session: AsyncSession, gate: asyncio.Lock | None = None):
        self.session = session
        self._gate = gate or asyncio.Lock()


class SqlJobLedger(_SessionBound):
    """Job ledger over the ``job`` table."""

    async def find_eligible_jobs(
        self,
        driver_ids: Sequence[UUID],
        period_start: date,
        period_end: date,
        tenant: TenantContext,
    ) -> list[JobRecord]:
        start_at, end_before = _window_bounds(period_start, period_end)
        records: list[JobRecord] = []

        async with self._gate:
            for chunk in _chunks(list(driver_ids)):
                result = await self.session.execute(
                    select(Job)
                    .where(
                        tenant.owns(Job),
                        Job.driver_id.in_(chunk),
                        Job.driver_pay_status == JobPayStatus.UNPOSTED.value,
                        or_(
                            Job.driver_pay_deferral_until.is_(None),
                            Job.driver_pay_deferral_until <= period_end,
                        ),
                        or_(
                            and_(
                                Job.completed_at.is_(None),
                                Job.service_date >= period_start,
                                Job.service_date <= period_end,
                            ),
                            and_(
                                Job.completed_at.is_not(None),
                                Job.completed_at >= start_at,
                                Job.completed_at < end_before,
                            ),
                        ),
                    )
                    .order_by(Job.driver_id, Job.service_date, Job.job_id)
                )
                records.extend(self._to_record(job) for job in result.scalars().all())

        return records

    async def mark_posted(
        self,
        job_ids: Sequence[UUID],
        pay_run_id: UUID,
        posted_at: datetime,
        tenant: TenantContext,
    ) -> int:
        updated = 0
        async with self._gate:
            for chunk in _chunks(list(job_ids)):
                result = await self.session.execute(
                    update(Job)
                    .where(
                        Job.job_id.in_(chunk),
                        tenant.owns(Job),
                        Job.driver_pay_status == JobPayStatus.UNPOSTED.value,
                    )
                    .values(
                        driver_pay_status=JobPayStatus.POSTED.value,
                        driver_pay_run_id=pay_run_id,
                        driver_pay_posted_at=posted_at,
                    )
                )
                updated += result.rowcount or 0
        return updated

    @staticmethod
    def _to_record(job: Job) -> JobRecord:
        return JobRecord(
            job_id=job.job_id,
            driver_id=job.driver_id,
            pay_amount=job.driver_pay,
            pay_status=job.driver_pay_status,
            service_date=job.service_date,
            completed_at=job.completed_at,
            pay_deferral_until=job.driver_pay_deferral_until,
            job_number=job.job_number,
        )


class SqlAdjustmentLedger(_SessionBound):
    """Adjustment ledger over the ``driver_adjustment`` table."""

    async def find_approved(
        self,
        driver_ids: Sequence[UUID],
        period_start: date,
        period_end: date,
        tenant: TenantContext,
    ) -> list[AdjustmentRecord]:
        records: list[AdjustmentRecord] = []

        async with self._gate:
            for chunk in _chunks(list(driver_ids)):
                result = await self.session.execute(
                    select(DriverAdjustment)
                    .where(
                        tenant.owns(DriverAdjustment),
                        DriverAdjustment.driver_id.in_(chunk),
                        DriverAdjustment.status == AdjustmentStatus.APPROVED.value,
                        DriverAdjustment.posted_at.is_(None),
                        DriverAdjustment.effective_date >= period_start,
                        DriverAdjustment.effective_date <= period_end,
                    )
                    .order_by(
                        DriverAdjustment.driver_id,
                        DriverAdjustment.effective_date,
                        DriverAdjustment.driver_adjustment_id,
                    )
                )
                records.extend(
                    AdjustmentRecord(
                        adjustment_id=adj.driver_adjustment_id,
                        driver_id=adj.driver_id,
                        amount=adj.amount,
                        status=adj.status,
                        effective_date=adj.effective_date,
                        description=adj.description,
                        posted_at=adj.posted_at,
                    )
                    for adj in result.scalars().all()
                )

        return records

    async def mark_posted(
        self,
        adjustment_ids: Sequence[UUID],
        posted_at: datetime,
        tenant: TenantContext,
    ) -> int:
        updated = 0
        async with self._gate:
            for chunk in _chunks(list(adjustment_ids)):
                result = await self.session.execute(
                    update(DriverAdjustment)
                    .where(
                        DriverAdjustment.driver_adjustment_id.in_(chunk),
                        tenant.owns(DriverAdjustment),
                        DriverAdjustment.status == AdjustmentStatus.APPROVED.value,
                    )
                    .values(
                        status=AdjustmentStatus.POSTED.value,
                        posted_at=posted_at,
                    )
                )
                updated += result.rowcount or 0
        return updated


class SqlDriverDirectory(_SessionBound):
    """Driver directory over the ``driver`` table with an optional cache.

    The cache only short-circuits ``get_drivers``; ``list_active`` always
    queries (cohort membership must reflect current master data) and refreshes
    the cached profiles it sees.
    """

    def __init__(
        self,
        session: AsyncSession,
        gate: asyncio.Lock | None = None,
        cache: TTLCache[DriverCacheKey, DriverProfile] | None = None,
    ):
        super().__init__(session, gate)
        self.cache = cache

    async def get_drivers(
        self, driver_ids: Sequence[UUID], tenant: TenantContext
    ) -> dict[UUID, DriverProfile]:
        found: dict[UUID, DriverProfile] = {}
        missing: list[UUID] = []

        for driver_id in dict.fromkeys(driver_ids):
            cached = self.cache.get((tenant.scope_key, driver_id)) if self.cache else None
            if cached is not None:
                found[driver_id] = cached
            else:
                missing.append(driver_id)

        if missing:
            async with self._gate:
                for chunk in _chunks(missing):
                    result = await self.session.execute(
                        select(Driver).where(
                            tenant.owns(Driver),
                            Driver.driver_id.in_(chunk),
                        )
                    )
                    for driver in result.scalars().all():
                        profile = self._remember(driver, tenant)
                        found[profile.driver_id] = profile

        return found

    async def list_active(
        self, cohort_days: int, tenant: TenantContext
    ) -> list[DriverProfile]:
        async with self._gate:
            result = await self.session.execute(
                select(Driver)
                .where(
                    tenant.owns(Driver),
                    Driver.is_active.is_(True),
                    Driver.pay_terms_days == cohort_days,
                )
                .order_by(Driver.driver_id)
            )
            return [self._remember(driver, tenant) for driver in result.scalars().all()]

    def invalidate_driver(self, driver_id: UUID, tenant: TenantContext) -> bool:
        """Hook for master-data writers: forget a cached driver profile."""
        if self.cache is None:
            return False
        return self.cache.invalidate((tenant.scope_key, driver_id))

    def _remember(self, driver: Driver, tenant: TenantContext) -> DriverProfile:
        profile = DriverProfile(
            driver_id=driver.driver_id,
            is_active=driver.is_active,
            pay_terms_days=driver.pay_terms_days,
            display_name=driver.display_name,
        )
        if self.cache is not None:
            self.cache.set((tenant.scope_key, driver.driver_id), profile)
        return profile


def sql_collaborators(
    session: AsyncSession,
    driver_cache: TTLCache[DriverCacheKey, DriverProfile] | None = None,
) -> Collaborators:
    """Collaborators for one unit of work, sharing its session and gate."""
    gate = asyncio.Lock()
    return Collaborators(
        jobs=SqlJobLedger(session, gate),
        adjustments=SqlAdjustmentLedger(session, gate),
        drivers=SqlDriverDirectory(session, gate, cache=driver_cache),
    )
