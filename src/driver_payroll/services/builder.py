"""Pay run builder: creates a DRAFT pay run for a driver cohort."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from driver_payroll.collaborators.base import Collaborators, DriverProfile
from driver_payroll.config import Settings, get_settings
from driver_payroll.errors import NotFoundError, StateConflictError
from driver_payroll.models import PayRun, utcnow
from driver_payroll.schemas import BuildPayRunRequest, parse_request
from driver_payroll.services.aggregator import DriverSummaryAggregator, to_totals
from driver_payroll.services.eligibility import EligibilityResolver
from driver_payroll.services.line_items import LineItemBuilder
from driver_payroll.services.numbering import NumberGenerator
from driver_payroll.services.state_machine import PayRunStatus
from driver_payroll.services.types import BuildResult, RunTotals
from driver_payroll.tenancy import TenantContext

logger = logging.getLogger(__name__)


class PayRunBuilder:
    """Builds a pay run in one transaction.

    The request is validated before anything is written. The cohort is either
    the active subset of the requested drivers or every active driver on the
    matching pay terms; every cohort driver gets a summary row, including
    drivers with nothing eligible, so later rebuilds know who belongs to the
    run.
    """

    def __init__(
        self,
        session: AsyncSession,
        collaborators: Collaborators,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session = session
        self.collaborators = collaborators
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        self.numbers = NumberGenerator(session, self.settings)
        self.resolver = EligibilityResolver(session, collaborators, self.settings)
        self.aggregator = DriverSummaryAggregator(session)

    async def build(
        self,
        request: BuildPayRunRequest | dict[str, Any],
        tenant: TenantContext,
    ) -> BuildResult:
        """Create a DRAFT pay run with its items and driver summaries.

        Raises:
            ValidationError: Malformed request
            NotFoundError: A requested driver does not exist in the tenant
            StateConflictError: The resolved cohort is empty
        """
        req = parse_request(BuildPayRunRequest, request)
        cohort = await self._resolve_cohort(req, tenant)
        if not cohort:
            raise StateConflictError(
                "No active drivers found for this cohort", code="EMPTY_COHORT"
            )
        driver_ids = [driver.driver_id for driver in cohort]

        number = await self.numbers.next(tenant.organization_id, self.clock().year)
        pay_run = PayRun(
            organization_id=tenant.organization_id,
            number_scope=tenant.scope_key,
            number=number,
            label=req.resolved_label,
            cohort_days=req.cohort_days,
            period_start=req.period_start,
            period_end=req.period_end,
            status=PayRunStatus.DRAFT.value,
            created_by=tenant.actor_id,
            rebuild_count=0,
        )
        self.session.add(pay_run)
        await self.session.flush()

        eligible = await self.resolver.resolve_cohort(
            driver_ids, req.period_start, req.period_end, tenant
        )
        item_count = 0
        for driver_id in driver_ids:
            for line in LineItemBuilder.lines_for(eligible[driver_id]):
                self.session.add(LineItemBuilder.to_item(pay_run.pay_run_id, line))
                item_count += 1

        summaries = await self.aggregator.recompute_many(pay_run.pay_run_id, driver_ids)
        drivers = [to_totals(summaries[driver_id]) for driver_id in driver_ids]
        totals = RunTotals.from_drivers(drivers)

        logger.info(
            "Built pay run %s (%s): %d driver(s), %d item(s), net %s",
            pay_run.pay_run_id,
            number,
            totals.total_drivers,
            item_count,
            totals.total_net_pay,
        )
        return BuildResult(pay_run=pay_run, drivers=drivers, totals=totals)

    async def _resolve_cohort(
        self, req: BuildPayRunRequest, tenant: TenantContext
    ) -> list[DriverProfile]:
        directory = self.collaborators.drivers
        if not req.driver_ids:
            return list(await directory.list_active(req.cohort_days, tenant))

        requested = list(dict.fromkeys(req.driver_ids))
        found = await directory.get_drivers(requested, tenant)
        for driver_id in requested:
            if driver_id not in found:
                raise NotFoundError("Driver", driver_id)
        return [found[driver_id] for driver_id in requested if found[driver_id].is_active]
