"""Reconciliation of a DRAFT pay run against current source data."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from driver_payroll.collaborators.base import Collaborators
from driver_payroll.config import Settings, get_settings
from driver_payroll.database import lock_pay_run
from driver_payroll.errors import ConcurrencyError, StateConflictError
from driver_payroll.models import PayRun, PayRunItem, utcnow
from driver_payroll.services.aggregator import DriverSummaryAggregator
from driver_payroll.services.eligibility import EligibilityResolver
from driver_payroll.services.line_items import LineItemBuilder
from driver_payroll.services.queries import (
    cohort_driver_ids,
    current_status,
    load_exclusions,
    load_items,
    load_pay_run,
)
from driver_payroll.services.state_machine import PayRunStateMachine, PayRunStatus
from driver_payroll.services.types import ItemKey, LineCandidate, RebuildResult
from driver_payroll.tenancy import TenantContext

logger = logging.getLogger(__name__)

NOT_DRAFT_MESSAGE = "Only DRAFT pay runs can be rebuilt"


class ReconciliationEngine:
    """Re-derives a draft pay run's items from current eligibility.

    Items are matched by (kind, source id). Still-eligible items are updated
    in place only when their amount, description or driver changed; items no
    longer eligible are removed; newly eligible records become new items.
    Manual exclusions are sticky: they are re-applied to an item whose amount
    moved and carried onto an item that dropped out and came back.

    The cohort is the pay run's persisted summary rows, never the driver
    directory, so a rebuild is unaffected by directory caching or by drivers
    changing pay terms after the build.
    """

    def __init__(
        self,
        session: AsyncSession,
        collaborators: Collaborators,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.resolver = EligibilityResolver(session, collaborators, self.settings)
        self.aggregator = DriverSummaryAggregator(session)

    async def rebuild(self, pay_run_id: UUID, tenant: TenantContext) -> RebuildResult:
        """Reconcile a DRAFT pay run; returns added/removed/updated counts.

        Raises:
            NotFoundError: Pay run missing or outside the tenant
            StateConflictError: Pay run is not DRAFT
            ConcurrencyError: Status changed underneath the rebuild
        """
        await lock_pay_run(self.session, pay_run_id)
        pay_run = await load_pay_run(self.session, pay_run_id, tenant)
        if not PayRunStateMachine.can_rebuild(pay_run.status):
            raise StateConflictError(NOT_DRAFT_MESSAGE, code="NOT_DRAFT")

        items = {item.key: item for item in await load_items(self.session, pay_run_id)}
        manual = await self._manual_exclusions(pay_run_id, items.values())

        cohort = await cohort_driver_ids(self.session, pay_run_id)
        for item in items.values():
            if item.driver_id not in cohort:
                cohort.append(item.driver_id)

        eligible = await self.resolver.resolve_cohort(
            cohort, pay_run.period_start, pay_run.period_end, tenant
        )
        fresh: dict[ItemKey, LineCandidate] = {}
        for driver_id in cohort:
            for line in LineItemBuilder.lines_for(eligible[driver_id]):
                fresh[line.key] = line

        await self._claim(pay_run, tenant)

        added = removed = updated = 0
        for key, item in items.items():
            line = fresh.get(key)
            if line is None:
                await self.session.delete(item)
                removed += 1
                continue
            if _refresh_item(item, line):
                updated += 1
            reason = manual.get(key)
            if reason is not None and (not item.excluded or item.exclude_reason != reason):
                item.excluded = True
                item.exclude_reason = reason

        for key, line in fresh.items():
            if key not in items:
                self.session.add(LineItemBuilder.to_item(pay_run_id, line, manual.get(key)))
                added += 1

        await self.aggregator.recompute_many(pay_run_id, cohort)

        logger.info(
            "Rebuilt pay run %s: added=%d removed=%d updated=%d",
            pay_run_id,
            added,
            removed,
            updated,
        )
        return RebuildResult(
            pay_run_id=pay_run_id,
            status=pay_run.status,
            added=added,
            removed=removed,
            updated=updated,
        )

    async def _manual_exclusions(
        self, pay_run_id: UUID, items: Iterable[PayRunItem]
    ) -> dict[ItemKey, str]:
        """Manual exclusions by key: the ledger first, then reasons on items."""
        ledger = await load_exclusions(self.session, pay_run_id)
        manual = {key: row.reason for key, row in ledger.items()}
        for item in items:
            if item.is_manually_excluded:
                manual.setdefault(item.key, item.exclude_reason)
        return manual

    async def _claim(self, pay_run: PayRun, tenant: TenantContext) -> None:
        """Re-check DRAFT at the start of the write phase and stamp the rebuild."""
        result = await self.session.execute(
            update(PayRun)
            .where(
                PayRun.pay_run_id == pay_run.pay_run_id,
                tenant.owns(PayRun),
                PayRun.status == PayRunStatus.DRAFT.value,
            )
            .values(
                rebuild_count=PayRun.rebuild_count + 1,
                last_rebuilt_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            status = await current_status(self.session, pay_run.pay_run_id)
            if status is not None and status != PayRunStatus.DRAFT.value:
                raise StateConflictError(NOT_DRAFT_MESSAGE, code="NOT_DRAFT")
            raise ConcurrencyError("Pay run changed while rebuilding")
        await self.session.refresh(pay_run)


def _refresh_item(item: PayRunItem, line: LineCandidate) -> bool:
    """Bring an item in line with its fresh candidate; True if the amount changed.

    Description and driver are kept current too, but only an amount change
    counts as an update.
    """
    if item.description != line.description:
        item.description = line.description
    if item.driver_id != line.driver_id:
        item.driver_id = line.driver_id
    if LineItemBuilder.amounts_differ(item.amount, line.amount):
        item.amount = line.amount
        return True
    return False
