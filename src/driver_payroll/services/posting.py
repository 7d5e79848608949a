"""Posting: the atomic DRAFT -> POSTED transition and its source updates."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from driver_payroll.collaborators.base import Collaborators
from driver_payroll.database import lock_pay_run
from driver_payroll.errors import ConcurrencyError, StateConflictError
from driver_payroll.models import ItemKind, PayRun, utcnow
from driver_payroll.services.queries import current_status, load_items, load_pay_run
from driver_payroll.services.state_machine import PayRunStateMachine, PayRunStatus
from driver_payroll.services.types import PostResult
from driver_payroll.tenancy import TenantContext

logger = logging.getLogger(__name__)

NO_PAYABLE_ITEMS_MESSAGE = "Pay run must have at least one non-excluded item"

_BLOCKED_CODES = {
    PayRunStatus.POSTED.value: "ALREADY_POSTED",
    PayRunStatus.VOID.value: "PAY_RUN_VOID",
}


class PostingCoordinator:
    """Posts a draft pay run and marks its sources paid.

    Runs inside the caller's transaction and relies on it for atomicity: the
    pay run flips to POSTED with a compare-and-swap, then every job and
    adjustment behind a non-excluded item is updated with a guard on its
    current status. If any guarded update misses its row the coordinator
    raises ConcurrencyError and the caller's rollback undoes everything,
    including the status flip.
    """

    def __init__(
        self,
        session: AsyncSession,
        collaborators: Collaborators,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session = session
        self.collaborators = collaborators
        self.clock = clock or utcnow

    async def post(self, pay_run_id: UUID, tenant: TenantContext) -> PostResult:
        """Post a DRAFT pay run.

        Raises:
            NotFoundError: Pay run missing or outside the tenant
            StateConflictError: Not DRAFT, or nothing payable
            ConcurrencyError: A source record or the pay run changed concurrently
        """
        await lock_pay_run(self.session, pay_run_id)
        pay_run = await load_pay_run(self.session, pay_run_id, tenant)
        self._check_postable(pay_run)

        items = await load_items(self.session, pay_run_id)
        payable = [item for item in items if not item.excluded]
        if not payable:
            raise StateConflictError(NO_PAYABLE_ITEMS_MESSAGE, code="NO_PAYABLE_ITEMS")

        job_ids = [item.source_id for item in payable if item.kind == ItemKind.JOB.value]
        adjustment_ids = [
            item.source_id for item in payable if item.kind == ItemKind.ADJUSTMENT.value
        ]

        posted_at = self.clock()
        await self._mark_run_posted(pay_run, tenant, posted_at)

        jobs_posted = await self.collaborators.jobs.mark_posted(
            job_ids, pay_run_id, posted_at, tenant
        )
        if jobs_posted != len(job_ids):
            logger.warning(
                "Posting %s aborted: %d of %d job(s) no longer unposted",
                pay_run_id,
                len(job_ids) - jobs_posted,
                len(job_ids),
            )
            raise ConcurrencyError(
                f"{len(job_ids) - jobs_posted} job(s) changed since the pay run was built",
                code="SOURCE_CHANGED",
            )

        adjustments_posted = await self.collaborators.adjustments.mark_posted(
            adjustment_ids, posted_at, tenant
        )
        if adjustments_posted != len(adjustment_ids):
            logger.warning(
                "Posting %s aborted: %d of %d adjustment(s) no longer approved",
                pay_run_id,
                len(adjustment_ids) - adjustments_posted,
                len(adjustment_ids),
            )
            raise ConcurrencyError(
                f"{len(adjustment_ids) - adjustments_posted} adjustment(s) changed "
                "since the pay run was built",
                code="SOURCE_CHANGED",
            )

        await self.session.refresh(pay_run)
        logger.info(
            "Posted pay run %s (%s): %d job(s), %d adjustment(s)",
            pay_run_id,
            pay_run.number,
            jobs_posted,
            adjustments_posted,
        )
        return PostResult(
            pay_run_id=pay_run_id,
            number=pay_run.number,
            status=pay_run.status,
            posted_at=posted_at,
            posted_by=tenant.actor_id,
            jobs_posted=jobs_posted,
            adjustments_posted=adjustments_posted,
        )

    @staticmethod
    def _check_postable(pay_run: PayRun) -> None:
        blocker = PayRunStateMachine.post_blocker(pay_run)
        if blocker is not None:
            code = _BLOCKED_CODES.get(pay_run.status, "INVALID_TRANSITION")
            raise StateConflictError(blocker, code=code)

    async def _mark_run_posted(
        self, pay_run: PayRun, tenant: TenantContext, posted_at: datetime
    ) -> None:
        result = await self.session.execute(
            update(PayRun)
            .where(
                PayRun.pay_run_id == pay_run.pay_run_id,
                tenant.owns(PayRun),
                PayRun.status == PayRunStatus.DRAFT.value,
            )
            .values(
                status=PayRunStatus.POSTED.value,
                posted_by=tenant.actor_id,
                posted_at=posted_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Lost the race: report what the winner did
            status = await current_status(self.session, pay_run.pay_run_id)
            if status == PayRunStatus.POSTED.value:
                raise StateConflictError("Pay run is already posted", code="ALREADY_POSTED")
            if status == PayRunStatus.VOID.value:
                raise StateConflictError("Cannot post a voided pay run", code="PAY_RUN_VOID")
            raise ConcurrencyError("Pay run changed while posting")
