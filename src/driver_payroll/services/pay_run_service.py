"""Pay run service: reads, draft item edits and voiding."""

from __future__ import annotations

import logging
import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from driver_payroll.collaborators.base import Collaborators
from driver_payroll.database import lock_pay_run
from driver_payroll.errors import (
    ConcurrencyError,
    InvalidTransitionError,
    NotFoundError,
    StateConflictError,
)
from driver_payroll.models import (
    DriverAdjustment,
    ItemKind,
    Job,
    PayRun,
    PayRunDriverSummary,
    PayRunExclusion,
    PayRunItem,
    utcnow,
)
from driver_payroll.schemas import (
    ExcludeItemRequest,
    ListPayRunsQuery,
    Pagination,
    PayRunDriverResponse,
    PayRunItemResponse,
    PayRunListResponse,
    PayRunResponse,
    PayRunTotals,
    VoidPayRunRequest,
    parse_request,
)
from driver_payroll.services.aggregator import DriverSummaryAggregator
from driver_payroll.services.line_items import LineItemBuilder
from driver_payroll.services.queries import current_status, load_pay_run
from driver_payroll.services.state_machine import PayRunStateMachine, PayRunStatus
from driver_payroll.services.types import ZERO
from driver_payroll.tenancy import TenantContext

logger = logging.getLogger(__name__)

UNKNOWN_DRIVER = "Unknown driver"

_SORT_COLUMNS = {
    "created_at": PayRun.created_at,
    "period_start": PayRun.period_start,
    "period_end": PayRun.period_end,
    "cohort_days": PayRun.cohort_days,
    "status": PayRun.status,
}


class PayRunService:
    """Service for viewing pay runs and editing drafts.

    Operations:
    - get_pay_run / list_pay_runs: pay runs with their totals
    - list_drivers / list_items: a pay run's summaries and line items
    - exclude_item / include_item: manual exclusions on DRAFT pay runs
    - void_pay_run: DRAFT → VOID with a reason

    Building, rebuilding and posting live in their own services.
    """

    def __init__(
        self,
        session: AsyncSession,
        collaborators: Collaborators | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session = session
        self.collaborators = collaborators
        self.clock = clock or utcnow
        self.aggregator = DriverSummaryAggregator(session)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_pay_run(self, pay_run_id: UUID, tenant: TenantContext) -> PayRunResponse:
        """Load a pay run with its totals."""
        pay_run = await load_pay_run(self.session, pay_run_id, tenant)
        totals = await self._totals_by_run([pay_run_id])
        return _to_response(pay_run, totals.get(pay_run_id))

    async def list_pay_runs(
        self,
        query: ListPayRunsQuery | dict[str, Any],
        tenant: TenantContext,
    ) -> PayRunListResponse:
        """Filter, sort and page the tenant's pay runs."""
        q = parse_request(ListPayRunsQuery, query)

        filters = [tenant.owns(PayRun)]
        if q.cohort_days is not None:
            filters.append(PayRun.cohort_days == q.cohort_days)
        if q.status is not None:
            filters.append(PayRun.status == q.status)
        if q.period_from is not None:
            filters.append(PayRun.period_start >= q.period_from)
        if q.period_to is not None:
            filters.append(PayRun.period_end <= q.period_to)

        total = (
            await self.session.execute(select(func.count()).select_from(PayRun).where(*filters))
        ).scalar_one()

        column = _SORT_COLUMNS[q.sort_by]
        order = column.asc() if q.sort_order == "asc" else column.desc()
        tiebreak = PayRun.pay_run_id.asc() if q.sort_order == "asc" else PayRun.pay_run_id.desc()
        result = await self.session.execute(
            select(PayRun)
            .where(*filters)
            .order_by(order, tiebreak)
            .offset((q.page - 1) * q.limit)
            .limit(q.limit)
        )
        pay_runs = list(result.scalars().all())
        totals = await self._totals_by_run([run.pay_run_id for run in pay_runs])

        return PayRunListResponse(
            items=[_to_response(run, totals.get(run.pay_run_id)) for run in pay_runs],
            pagination=Pagination(
                page=q.page,
                limit=q.limit,
                total=total,
                total_pages=math.ceil(total / q.limit) if total else 0,
            ),
        )

    async def list_drivers(
        self, pay_run_id: UUID, tenant: TenantContext
    ) -> list[PayRunDriverResponse]:
        """Driver summaries with display names, sorted by name."""
        await load_pay_run(self.session, pay_run_id, tenant)
        result = await self.session.execute(
            select(PayRunDriverSummary).where(PayRunDriverSummary.pay_run_id == pay_run_id)
        )
        summaries = list(result.scalars().all())

        names: dict[UUID, str | None] = {}
        if summaries and self.collaborators is not None:
            profiles = await self.collaborators.drivers.get_drivers(
                [s.driver_id for s in summaries], tenant
            )
            names = {driver_id: p.display_name for driver_id, p in profiles.items()}

        rows = [
            PayRunDriverResponse(
                pay_run_driver_summary_id=s.pay_run_driver_summary_id,
                pay_run_id=s.pay_run_id,
                driver_id=s.driver_id,
                driver_name=names.get(s.driver_id) or UNKNOWN_DRIVER,
                gross=LineItemBuilder.round_to_cents(s.gross),
                adjustments=LineItemBuilder.round_to_cents(s.adjustments),
                net_pay=LineItemBuilder.round_to_cents(s.net_pay),
                item_count=s.item_count,
            )
            for s in summaries
        ]
        rows.sort(key=lambda r: (r.driver_name.casefold(), str(r.driver_id)))
        return rows

    async def list_items(
        self,
        pay_run_id: UUID,
        tenant: TenantContext,
        driver_id: UUID | None = None,
    ) -> list[PayRunItemResponse]:
        """Line items with the date each counts towards, by driver then date."""
        await load_pay_run(self.session, pay_run_id, tenant)
        stmt = select(PayRunItem).where(PayRunItem.pay_run_id == pay_run_id)
        if driver_id is not None:
            stmt = stmt.where(PayRunItem.driver_id == driver_id)
        items = list((await self.session.execute(stmt)).scalars().all())

        dates = await self._item_dates(items, tenant)
        rows = [
            PayRunItemResponse(
                pay_run_item_id=item.pay_run_item_id,
                pay_run_id=item.pay_run_id,
                driver_id=item.driver_id,
                kind=item.kind,
                source_id=item.source_id,
                description=item.description,
                amount=LineItemBuilder.round_to_cents(item.amount),
                excluded=item.excluded,
                exclude_reason=item.exclude_reason,
                item_date=dates.get(item.key),
            )
            for item in items
        ]
        rows.sort(
            key=lambda r: (str(r.driver_id), r.item_date or date.min, r.kind, str(r.source_id))
        )
        return rows

    # ------------------------------------------------------------------
    # Draft edits
    # ------------------------------------------------------------------

    async def exclude_item(
        self,
        pay_run_id: UUID,
        item_id: UUID,
        request: ExcludeItemRequest | dict[str, Any],
        tenant: TenantContext,
    ) -> PayRunItemResponse:
        """Manually exclude an item; the decision survives rebuilds."""
        req = parse_request(ExcludeItemRequest, request)
        item = await self._editable_item(pay_run_id, item_id, tenant)

        item.excluded = True
        item.exclude_reason = req.reason

        ledger = await self._exclusion_for(item)
        if ledger is None:
            self.session.add(
                PayRunExclusion(
                    pay_run_id=pay_run_id,
                    kind=item.kind,
                    source_id=item.source_id,
                    reason=req.reason,
                    excluded_by=tenant.actor_id,
                )
            )
        else:
            ledger.reason = req.reason
            ledger.excluded_by = tenant.actor_id

        await self.aggregator.recompute(pay_run_id, item.driver_id)
        logger.info("Excluded %s %s from pay run %s", item.kind, item.source_id, pay_run_id)
        return _item_response(item)

    async def include_item(
        self, pay_run_id: UUID, item_id: UUID, tenant: TenantContext
    ) -> PayRunItemResponse:
        """Clear a manual exclusion."""
        item = await self._editable_item(pay_run_id, item_id, tenant)

        item.excluded = False
        item.exclude_reason = None
        ledger = await self._exclusion_for(item)
        if ledger is not None:
            await self.session.delete(ledger)

        await self.aggregator.recompute(pay_run_id, item.driver_id)
        logger.info("Re-included %s %s in pay run %s", item.kind, item.source_id, pay_run_id)
        return _item_response(item)

    async def void_pay_run(
        self,
        pay_run_id: UUID,
        request: VoidPayRunRequest | dict[str, Any],
        tenant: TenantContext,
    ) -> PayRunResponse:
        """Void a DRAFT pay run. Source records are left untouched."""
        req = parse_request(VoidPayRunRequest, request)
        await lock_pay_run(self.session, pay_run_id)
        pay_run = await load_pay_run(self.session, pay_run_id, tenant)
        if not PayRunStateMachine.can_transition(pay_run.status, PayRunStatus.VOID):
            raise InvalidTransitionError(
                pay_run.status, PayRunStatus.VOID.value, "Only DRAFT pay runs can be voided"
            )

        result = await self.session.execute(
            update(PayRun)
            .where(
                PayRun.pay_run_id == pay_run_id,
                tenant.owns(PayRun),
                PayRun.status == PayRunStatus.DRAFT.value,
            )
            .values(
                status=PayRunStatus.VOID.value,
                voided_by=tenant.actor_id,
                voided_at=self.clock(),
                void_reason=req.reason,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            status = await current_status(self.session, pay_run_id)
            if status is not None and status != PayRunStatus.DRAFT.value:
                raise InvalidTransitionError(
                    status, PayRunStatus.VOID.value, "Only DRAFT pay runs can be voided"
                )
            raise ConcurrencyError("Pay run changed while voiding")

        await self.session.refresh(pay_run)
        logger.info("Voided pay run %s (%s)", pay_run_id, pay_run.number)
        totals = await self._totals_by_run([pay_run_id])
        return _to_response(pay_run, totals.get(pay_run_id))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _editable_item(
        self, pay_run_id: UUID, item_id: UUID, tenant: TenantContext
    ) -> PayRunItem:
        await lock_pay_run(self.session, pay_run_id)
        pay_run = await load_pay_run(self.session, pay_run_id, tenant)
        if not PayRunStateMachine.can_edit_items(pay_run.status):
            raise StateConflictError(
                "Only DRAFT pay runs can have items excluded or included", code="NOT_DRAFT"
            )
        result = await self.session.execute(
            select(PayRunItem).where(
                PayRunItem.pay_run_item_id == item_id,
                PayRunItem.pay_run_id == pay_run_id,
            )
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise NotFoundError("PayRunItem", item_id)
        return item

    async def _exclusion_for(self, item: PayRunItem) -> PayRunExclusion | None:
        result = await self.session.execute(
            select(PayRunExclusion).where(
                PayRunExclusion.pay_run_id == item.pay_run_id,
                PayRunExclusion.kind == item.kind,
                PayRunExclusion.source_id == item.source_id,
            )
        )
        return result.scalar_one_or_none()

    async def _totals_by_run(self, pay_run_ids: list[UUID]) -> dict[UUID, PayRunTotals]:
        if not pay_run_ids:
            return {}
        result = await self.session.execute(
            select(PayRunDriverSummary.pay_run_id, PayRunDriverSummary.net_pay).where(
                PayRunDriverSummary.pay_run_id.in_(pay_run_ids)
            )
        )
        drivers: dict[UUID, int] = {}
        net: dict[UUID, Decimal] = {}
        for run_id, net_pay in result.all():
            drivers[run_id] = drivers.get(run_id, 0) + 1
            net[run_id] = net.get(run_id, ZERO) + LineItemBuilder.round_to_cents(net_pay)
        return {
            run_id: PayRunTotals(total_drivers=drivers[run_id], total_net_pay=net[run_id])
            for run_id in drivers
        }

    async def _item_dates(
        self, items: list[PayRunItem], tenant: TenantContext
    ) -> dict[tuple[str, UUID], date]:
        job_ids = [i.source_id for i in items if i.kind == ItemKind.JOB.value]
        adjustment_ids = [i.source_id for i in items if i.kind == ItemKind.ADJUSTMENT.value]
        dates: dict[tuple[str, UUID], date] = {}

        if job_ids:
            result = await self.session.execute(
                select(Job).where(Job.job_id.in_(job_ids), tenant.owns(Job))
            )
            for job in result.scalars().all():
                dates[(ItemKind.JOB.value, job.job_id)] = job.settlement_date
        if adjustment_ids:
            result = await self.session.execute(
                select(
                    DriverAdjustment.driver_adjustment_id, DriverAdjustment.effective_date
                ).where(
                    DriverAdjustment.driver_adjustment_id.in_(adjustment_ids),
                    tenant.owns(DriverAdjustment),
                )
            )
            for adjustment_id, effective_date in result.all():
                dates[(ItemKind.ADJUSTMENT.value, adjustment_id)] = effective_date
        return dates


def _to_response(pay_run: PayRun, totals: PayRunTotals | None) -> PayRunResponse:
    response = PayRunResponse.model_validate(pay_run)
    response.summary = totals or PayRunTotals()
    return response


def _item_response(item: PayRunItem) -> PayRunItemResponse:
    return PayRunItemResponse(
        pay_run_item_id=item.pay_run_item_id,
        pay_run_id=item.pay_run_id,
        driver_id=item.driver_id,
        kind=item.kind,
        source_id=item.source_id,
        description=item.description,
        amount=LineItemBuilder.round_to_cents(item.amount),
        excluded=item.excluded,
        exclude_reason=item.exclude_reason,
    )
