"""Tenant-scoped loaders shared by the pay run services."""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from driver_payroll.errors import NotFoundError
from driver_payroll.models import PayRun, PayRunDriverSummary, PayRunExclusion, PayRunItem
from driver_payroll.tenancy import TenantContext


async def load_pay_run(
    session: AsyncSession, pay_run_id: UUID, tenant: TenantContext
) -> PayRun:
    """Load a pay run owned by the tenant, raising NotFoundError otherwise."""
    result = await session.execute(
        select(PayRun).where(PayRun.pay_run_id == pay_run_id, tenant.owns(PayRun))
    )
    pay_run = result.scalar_one_or_none()
    if pay_run is None:
        raise NotFoundError("PayRun", pay_run_id)
    return pay_run


async def current_status(session: AsyncSession, pay_run_id: UUID) -> str | None:
    """Status as committed in the database, bypassing the identity map."""
    result = await session.execute(
        select(PayRun.status).where(PayRun.pay_run_id == pay_run_id)
    )
    return result.scalar_one_or_none()


async def load_items(session: AsyncSession, pay_run_id: UUID) -> list[PayRunItem]:
    result = await session.execute(
        select(PayRunItem)
        .where(PayRunItem.pay_run_id == pay_run_id)
        .order_by(PayRunItem.driver_id, PayRunItem.kind, PayRunItem.source_id)
    )
    return list(result.scalars().all())


async def load_exclusions(
    session: AsyncSession, pay_run_id: UUID
) -> dict[tuple[str, UUID], PayRunExclusion]:
    result = await session.execute(
        select(PayRunExclusion).where(PayRunExclusion.pay_run_id == pay_run_id)
    )
    return {(row.kind, row.source_id): row for row in result.scalars().all()}


async def cohort_driver_ids(session: AsyncSession, pay_run_id: UUID) -> list[UUID]:
    """The persisted cohort: every driver holding a summary row in the run."""
    result = await session.execute(
        select(PayRunDriverSummary.driver_id)
        .where(PayRunDriverSummary.pay_run_id == pay_run_id)
        .order_by(PayRunDriverSummary.driver_id)
    )
    return list(result.scalars().all())
