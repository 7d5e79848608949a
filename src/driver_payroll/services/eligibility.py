"""Eligibility resolution: which jobs and adjustments a pay run may pay."""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from driver_payroll.collaborators.base import AdjustmentRecord, Collaborators, JobRecord
from driver_payroll.config import Settings, get_settings
from driver_payroll.errors import CollaboratorTimeoutError
from driver_payroll.models import AdjustmentStatus, ItemKind, JobPayStatus, PayRun, PayRunItem
from driver_payroll.services.state_machine import PayRunStatus
from driver_payroll.services.types import EligibleItems
from driver_payroll.tenancy import TenantContext

logger = logging.getLogger(__name__)


def job_is_eligible(job: JobRecord, period_start: date, period_end: date) -> bool:
    """Unposted, positive, settling in the window and not deferred past it."""
    if job.pay_status != JobPayStatus.UNPOSTED.value:
        return False
    if job.pay_amount is None or job.pay_amount <= 0:
        return False
    if not period_start <= job.settlement_date <= period_end:
        return False
    return job.pay_deferral_until is None or job.pay_deferral_until <= period_end


def adjustment_is_eligible(
    adjustment: AdjustmentRecord, period_start: date, period_end: date
) -> bool:
    """Approved, never posted, effective in the window."""
    if adjustment.status != AdjustmentStatus.APPROVED.value:
        return False
    if adjustment.posted_at is not None:
        return False
    return period_start <= adjustment.effective_date <= period_end


class EligibilityResolver:
    """Resolves eligible source records for drivers over a window.

    Read-only: it never writes, so Build and Rebuild can call it as often as
    they like. Drivers are resolved in batches; at most
    ``eligibility_concurrency`` batches are in flight at once and every
    collaborator call is bounded by ``collaborator_timeout_seconds``.
    """

    def __init__(
        self,
        session: AsyncSession,
        collaborators: Collaborators,
        settings: Settings | None = None,
    ):
        self.session = session
        self.collaborators = collaborators
        self.settings = settings or get_settings()

    async def resolve(
        self,
        driver_id: UUID,
        period_start: date,
        period_end: date,
        tenant: TenantContext,
    ) -> EligibleItems:
        """Eligible jobs and adjustments for a single driver."""
        resolved = await self.resolve_cohort([driver_id], period_start, period_end, tenant)
        return resolved[driver_id]

    async def resolve_cohort(
        self,
        driver_ids: Sequence[UUID],
        period_start: date,
        period_end: date,
        tenant: TenantContext,
    ) -> dict[UUID, EligibleItems]:
        """Eligible items for every driver; drivers with nothing map to empty."""
        wanted = list(dict.fromkeys(driver_ids))
        resolved: dict[UUID, EligibleItems] = {driver_id: EligibleItems() for driver_id in wanted}
        if not wanted:
            return resolved

        size = max(1, self.settings.eligibility_batch_size)
        batches = [wanted[i : i + size] for i in range(0, len(wanted), size)]
        semaphore = asyncio.Semaphore(max(1, self.settings.eligibility_concurrency))

        async def fetch(batch: list[UUID]) -> tuple[list[JobRecord], list[AdjustmentRecord]]:
            async with semaphore:
                jobs = await self._bounded(
                    self.collaborators.jobs.find_eligible_jobs(
                        batch, period_start, period_end, tenant
                    ),
                    "job ledger lookup",
                )
                adjustments = await self._bounded(
                    self.collaborators.adjustments.find_approved(
                        batch, period_start, period_end, tenant
                    ),
                    "adjustment ledger lookup",
                )
                return jobs, adjustments

        fetched = await _gather_or_cancel([fetch(batch) for batch in batches])

        candidate_adjustments: list[AdjustmentRecord] = []
        for jobs, adjustments in fetched:
            for job in jobs:
                if job.driver_id in resolved and job_is_eligible(job, period_start, period_end):
                    resolved[job.driver_id].jobs.append(job)
            candidate_adjustments.extend(
                adj
                for adj in adjustments
                if adj.driver_id in resolved
                and adjustment_is_eligible(adj, period_start, period_end)
            )

        already_posted = await self._posted_adjustment_ids(
            [adj.adjustment_id for adj in candidate_adjustments], tenant
        )
        for adj in candidate_adjustments:
            if adj.adjustment_id not in already_posted:
                resolved[adj.driver_id].adjustments.append(adj)

        for items in resolved.values():
            items.jobs.sort(key=lambda j: (j.settlement_date, j.job_number or "", str(j.job_id)))
            items.adjustments.sort(key=lambda a: (a.effective_date, str(a.adjustment_id)))

        logger.debug(
            "Resolved eligibility for %d driver(s) over %s..%s: %d job(s), %d adjustment(s)",
            len(wanted),
            period_start,
            period_end,
            sum(len(i.jobs) for i in resolved.values()),
            sum(len(i.adjustments) for i in resolved.values()),
        )
        return resolved

    async def _posted_adjustment_ids(
        self, adjustment_ids: list[UUID], tenant: TenantContext
    ) -> set[UUID]:
        """Adjustments already carried by a POSTED pay run in this tenant."""
        posted: set[UUID] = set()
        for start in range(0, len(adjustment_ids), 500):
            chunk = adjustment_ids[start : start + 500]
            result = await self._bounded(
                self.session.execute(
                    select(PayRunItem.source_id)
                    .join(PayRun, PayRun.pay_run_id == PayRunItem.pay_run_id)
                    .where(
                        tenant.owns(PayRun),
                        PayRun.status == PayRunStatus.POSTED.value,
                        PayRunItem.kind == ItemKind.ADJUSTMENT.value,
                        PayRunItem.source_id.in_(chunk),
                    )
                ),
                "posted adjustment lookup",
            )
            posted.update(result.scalars().all())
        return posted

    async def _bounded(self, call: Awaitable[Any], operation: str) -> Any:
        timeout = self.settings.collaborator_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %ss", operation, timeout)
            raise CollaboratorTimeoutError(operation, timeout) from None


async def _gather_or_cancel(calls: list[Awaitable[Any]]) -> list[Any]:
    """Gather; on the first failure cancel the rest before re-raising."""
    tasks = [asyncio.ensure_future(call) for call in calls]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
