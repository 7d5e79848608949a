"""Tests for rebuilding draft pay runs."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from driver_payroll.errors import NotFoundError, StateConflictError
from driver_payroll.models import ItemKind, JobPayStatus, PayRunDriverSummary, PayRunItem
from driver_payroll.services.builder import PayRunBuilder
from driver_payroll.services.pay_run_service import PayRunService
from driver_payroll.services.posting import PostingCoordinator
from driver_payroll.services.reconciliation import ReconciliationEngine
from tests.factories import build_request, make_adjustment, make_driver, make_job


@pytest.fixture
def reconciler(session, collaborators, settings, clock) -> ReconciliationEngine:
    return ReconciliationEngine(session, collaborators, settings, clock)


@pytest.fixture
def service(session, collaborators, clock) -> PayRunService:
    return PayRunService(session, collaborators, clock)


async def _build(session, collaborators, settings, clock, tenant):
    result = await PayRunBuilder(session, collaborators, settings, clock).build(
        build_request(), tenant
    )
    return result.pay_run


async def _items(session, pay_run_id) -> dict:
    result = await session.execute(select(PayRunItem).where(PayRunItem.pay_run_id == pay_run_id))
    return {item.source_id: item for item in result.scalars().all()}


async def _summary(session, pay_run_id, driver_id) -> PayRunDriverSummary:
    result = await session.execute(
        select(PayRunDriverSummary).where(
            PayRunDriverSummary.pay_run_id == pay_run_id,
            PayRunDriverSummary.driver_id == driver_id,
        )
    )
    return result.scalar_one()


class TestRebuild:
    """Reconciling a DRAFT against current source data."""

    async def test_rebuild_without_changes_is_a_no_op(
        self, session, collaborators, settings, clock, tenant, reconciler
    ):
        driver = await make_driver(session, tenant)
        await make_job(session, driver, pay="100.00")
        await make_job(session, driver, pay="50.00", service_date=date(2024, 1, 9))
        await make_adjustment(session, driver)
        pay_run = await _build(session, collaborators, settings, clock, tenant)
        await session.commit()

        before = {
            source_id: (item.pay_run_item_id, item.amount, item.updated_at)
            for source_id, item in (await _items(session, pay_run.pay_run_id)).items()
        }

        first = await reconciler.rebuild(pay_run.pay_run_id, tenant)
        second = await reconciler.rebuild(pay_run.pay_run_id, tenant)

        assert (first.added, first.removed, first.updated) == (0, 0, 0)
        assert (second.added, second.removed, second.updated) == (0, 0, 0)
        assert second.changed is False
        after = {
            source_id: (item.pay_run_item_id, item.amount, item.updated_at)
            for source_id, item in (await _items(session, pay_run.pay_run_id)).items()
        }
        assert after == before
        assert pay_run.rebuild_count == 2
        assert pay_run.last_rebuilt_at is not None

    async def test_amount_change_updates_item_and_summary(
        self, session, collaborators, settings, clock, tenant, reconciler
    ):
        driver = await make_driver(session, tenant)
        job = await make_job(session, driver, pay="100.00")
        pay_run = await _build(session, collaborators, settings, clock, tenant)

        job.driver_pay = Decimal("125.50")
        await session.flush()
        result = await reconciler.rebuild(pay_run.pay_run_id, tenant)

        assert (result.added, result.removed, result.updated) == (0, 0, 1)
        items = await _items(session, pay_run.pay_run_id)
        assert items[job.job_id].amount == Decimal("125.50")
        summary = await _summary(session, pay_run.pay_run_id, driver.driver_id)
        assert summary.gross == Decimal("125.50")

    async def test_sub_cent_change_is_ignored(
        self, session, collaborators, settings, clock, tenant, reconciler
    ):
        driver = await make_driver(session, tenant)
        job = await make_job(session, driver, pay="100.00")
        pay_run = await _build(session, collaborators, settings, clock, tenant)

        job.driver_pay = Decimal("100.004")
        await session.flush()
        result = await reconciler.rebuild(pay_run.pay_run_id, tenant)

        assert result.updated == 0

    async def test_description_change_is_not_an_update(
        self, session, collaborators, settings, clock, tenant, reconciler
    ):
        driver = await make_driver(session, tenant)
        job = await make_job(session, driver, pay="100.00", job_number="J-100")
        pay_run = await _build(session, collaborators, settings, clock, tenant)

        job.job_number = "J-100A"
        await session.flush()
        result = await reconciler.rebuild(pay_run.pay_run_id, tenant)

        assert result.updated == 0
        assert result.changed is False
        items = await _items(session, pay_run.pay_run_id)
        assert items[job.job_id].description == "J-100A"

    async def test_added_and_removed(
        self, session, collaborators, settings, clock, tenant, reconciler
    ):
        driver = await make_driver(session, tenant)
        leaving = await make_job(session, driver, pay="80.00")
        staying = await make_job(session, driver, pay="60.00", service_date=date(2024, 1, 8))
        pay_run = await _build(session, collaborators, settings, clock, tenant)

        leaving.driver_pay_status = JobPayStatus.POSTED.value
        arriving = await make_job(session, driver, pay="40.00", service_date=date(2024, 1, 12))
        adjustment = await make_adjustment(session, driver, amount="15.00")
        result = await reconciler.rebuild(pay_run.pay_run_id, tenant)

        assert (result.added, result.removed, result.updated) == (2, 1, 0)
        items = await _items(session, pay_run.pay_run_id)
        assert set(items) == {
            staying.job_id,
            arriving.job_id,
            adjustment.driver_adjustment_id,
        }
        summary = await _summary(session, pay_run.pay_run_id, driver.driver_id)
        assert summary.gross == Decimal("100.00")
        assert summary.adjustments == Decimal("15.00")
        assert summary.net_pay == Decimal("115.00")
        assert summary.item_count == 3

    async def test_cohort_comes_from_the_pay_run(
        self, session, collaborators, settings, clock, tenant, reconciler
    ):
        """Drivers joining the cycle later do not enter an existing run."""
        member = await make_driver(session, tenant)
        await make_job(session, member)
        pay_run = await _build(session, collaborators, settings, clock, tenant)

        newcomer = await make_driver(session, tenant, name="Newcomer")
        await make_job(session, newcomer)
        member.pay_terms_days = 7
        await session.flush()
        result = await reconciler.rebuild(pay_run.pay_run_id, tenant)

        assert result.changed is False
        items = await _items(session, pay_run.pay_run_id)
        assert {item.driver_id for item in items.values()} == {member.driver_id}

    async def test_exclusion_survives_amount_change(
        self, session, collaborators, settings, clock, tenant, reconciler, service
    ):
        driver = await make_driver(session, tenant)
        job = await make_job(session, driver, pay="200.00")
        await make_job(session, driver, pay="50.00", service_date=date(2024, 1, 9))
        pay_run = await _build(session, collaborators, settings, clock, tenant)
        item = (await _items(session, pay_run.pay_run_id))[job.job_id]
        await service.exclude_item(
            pay_run.pay_run_id, item.pay_run_item_id, {"reason": "Customer dispute"}, tenant
        )

        job.driver_pay = Decimal("210.00")
        await session.flush()
        result = await reconciler.rebuild(pay_run.pay_run_id, tenant)

        assert result.updated == 1
        item = (await _items(session, pay_run.pay_run_id))[job.job_id]
        assert item.excluded is True
        assert item.exclude_reason == "Customer dispute"
        assert item.amount == Decimal("210.00")
        summary = await _summary(session, pay_run.pay_run_id, driver.driver_id)
        assert summary.gross == Decimal("50.00")
        assert summary.item_count == 1

    async def test_exclusion_carries_over_when_item_returns(
        self, session, collaborators, settings, clock, tenant, reconciler, service
    ):
        driver = await make_driver(session, tenant)
        job = await make_job(session, driver, pay="90.00")
        pay_run = await _build(session, collaborators, settings, clock, tenant)
        item = (await _items(session, pay_run.pay_run_id))[job.job_id]
        await service.exclude_item(
            pay_run.pay_run_id, item.pay_run_item_id, {"reason": "Awaiting POD"}, tenant
        )

        job.driver_pay_deferral_until = date(2024, 2, 1)
        await session.flush()
        dropped = await reconciler.rebuild(pay_run.pay_run_id, tenant)
        assert dropped.removed == 1

        job.driver_pay_deferral_until = None
        await session.flush()
        returned = await reconciler.rebuild(pay_run.pay_run_id, tenant)

        assert returned.added == 1
        item = (await _items(session, pay_run.pay_run_id))[job.job_id]
        assert item.excluded is True
        assert item.exclude_reason == "Awaiting POD"
        assert item.kind == ItemKind.JOB.value

    async def test_only_drafts_can_be_rebuilt(
        self, session, collaborators, settings, clock, tenant, reconciler
    ):
        driver = await make_driver(session, tenant)
        await make_job(session, driver)
        pay_run = await _build(session, collaborators, settings, clock, tenant)
        await PostingCoordinator(session, collaborators, clock).post(pay_run.pay_run_id, tenant)

        with pytest.raises(StateConflictError, match="Only DRAFT pay runs can be rebuilt"):
            await reconciler.rebuild(pay_run.pay_run_id, tenant)

    async def test_other_tenant_cannot_rebuild(
        self, session, collaborators, settings, clock, tenant, other_tenant, reconciler
    ):
        driver = await make_driver(session, tenant)
        await make_job(session, driver)
        pay_run = await _build(session, collaborators, settings, clock, tenant)

        with pytest.raises(NotFoundError):
            await reconciler.rebuild(pay_run.pay_run_id, other_tenant)

    async def test_unknown_pay_run(self, tenant, reconciler):
        with pytest.raises(NotFoundError):
            await reconciler.rebuild(uuid4(), tenant)
