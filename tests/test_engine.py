"""Tests for the PayRunEngine facade."""

import asyncio
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from driver_payroll.collaborators import DriverProfile, sql_collaborators
from driver_payroll.database import session_scope
from driver_payroll.engine import PayRunEngine
from driver_payroll.errors import ErrorKind
from driver_payroll.models import Job, JobPayStatus, PayRun, PayRunItem
from driver_payroll.services import BuildResult
from tests.factories import build_request, make_adjustment, make_driver, make_job


@pytest.fixture
def engine_facade(session_factory, settings, driver_cache, clock) -> PayRunEngine:
    return PayRunEngine(session_factory, settings, driver_cache=driver_cache, clock=clock)


async def _seed(session_factory, tenant, jobs=("100.00",), adjustment=None):
    """Commit one driver with the given jobs; returns (driver, jobs)."""
    async with session_scope(session_factory) as session:
        driver = await make_driver(session, tenant, name="Seeded Driver")
        created = []
        for day, pay in enumerate(jobs, start=2):
            created.append(await make_job(session, driver, pay=pay, service_date=date(2024, 1, day)))
        if adjustment is not None:
            await make_adjustment(session, driver, amount=adjustment)
    return driver, created


class TestPayRunEngine:
    """Each call is one transaction returning an OperationResult."""

    async def test_build_and_read_back(self, engine_facade, session_factory, tenant):
        await _seed(session_factory, tenant, jobs=("100.00", "200.00"), adjustment="-25.00")

        built = await engine_facade.build(build_request(), tenant)

        assert built.ok
        assert isinstance(built.value, BuildResult)
        pay_run_id = built.value.pay_run.pay_run_id

        fetched = await engine_facade.get_pay_run(pay_run_id, tenant)
        assert fetched.ok
        assert fetched.value.status == "DRAFT"
        assert fetched.value.summary.total_drivers == 1
        assert fetched.value.summary.total_net_pay == Decimal("275.00")

    async def test_validation_failure_writes_nothing(
        self, engine_facade, session_factory, tenant
    ):
        await _seed(session_factory, tenant)

        result = await engine_facade.build(build_request(period_end="2023-12-01"), tenant)

        assert not result.ok
        assert result.error_kind == ErrorKind.VALIDATION
        assert result.retryable is False
        async with session_factory() as session:
            count = (await session.execute(select(func.count()).select_from(PayRun))).scalar_one()
        assert count == 0

    async def test_not_found(self, engine_facade, tenant):
        result = await engine_facade.rebuild(uuid4(), tenant)

        assert result.error_kind == ErrorKind.NOT_FOUND
        with pytest.raises(Exception) as exc_info:
            result.unwrap()
        assert exc_info.value is result.error

    async def test_post_rolls_back_when_a_source_moved(
        self, engine_facade, session_factory, tenant
    ):
        _, (first_job, second_job) = await _seed(
            session_factory, tenant, jobs=("100.00", "150.00")
        )
        built = (await engine_facade.build(build_request(), tenant)).unwrap()

        # Another process pays one of the jobs first
        async with session_scope(session_factory) as session:
            job = await session.get(Job, first_job.job_id)
            job.driver_pay_status = JobPayStatus.POSTED.value

        result = await engine_facade.post(built.pay_run.pay_run_id, tenant)

        assert result.error_kind == ErrorKind.CONCURRENCY
        assert result.retryable is True
        async with session_factory() as session:
            pay_run = await session.get(PayRun, built.pay_run.pay_run_id)
            untouched = await session.get(Job, second_job.job_id)
            assert pay_run.status == "DRAFT"
            assert pay_run.posted_at is None
            assert untouched.driver_pay_status == JobPayStatus.UNPOSTED.value
            assert untouched.driver_pay_run_id is None

    async def test_rebuild_then_post_after_conflict(
        self, engine_facade, session_factory, tenant
    ):
        _, (first_job, _) = await _seed(session_factory, tenant, jobs=("100.00", "150.00"))
        built = (await engine_facade.build(build_request(), tenant)).unwrap()
        async with session_scope(session_factory) as session:
            job = await session.get(Job, first_job.job_id)
            job.driver_pay_status = JobPayStatus.POSTED.value

        rebuilt = (await engine_facade.rebuild(built.pay_run.pay_run_id, tenant)).unwrap()
        posted = await engine_facade.post(built.pay_run.pay_run_id, tenant)

        assert rebuilt.removed == 1
        assert posted.ok
        assert posted.value.jobs_posted == 1

    async def test_double_post(self, engine_facade, session_factory, tenant):
        await _seed(session_factory, tenant)
        built = (await engine_facade.build(build_request(), tenant)).unwrap()

        first = await engine_facade.post(built.pay_run.pay_run_id, tenant)
        second = await engine_facade.post(built.pay_run.pay_run_id, tenant)

        assert first.ok
        assert second.error_kind == ErrorKind.STATE_CONFLICT
        assert second.error.message == "Pay run is already posted"

    async def test_exclude_include_and_list(self, engine_facade, session_factory, tenant):
        await _seed(session_factory, tenant, jobs=("100.00", "40.00"))
        built = (await engine_facade.build(build_request(), tenant)).unwrap()
        pay_run_id = built.pay_run.pay_run_id
        items = (await engine_facade.list_items(pay_run_id, tenant)).unwrap()

        excluded = await engine_facade.exclude_item(
            pay_run_id, items[0].pay_run_item_id, {"reason": "Check paperwork"}, tenant
        )
        drivers = (await engine_facade.list_drivers(pay_run_id, tenant)).unwrap()

        assert excluded.ok
        assert excluded.value.excluded is True
        assert drivers[0].net_pay == Decimal("40.00")
        assert drivers[0].driver_name == "Seeded Driver"

        included = await engine_facade.include_item(pay_run_id, items[0].pay_run_item_id, tenant)
        drivers = (await engine_facade.list_drivers(pay_run_id, tenant)).unwrap()

        assert included.value.excluded is False
        assert drivers[0].net_pay == Decimal("140.00")

        listing = (await engine_facade.list_pay_runs({"status": "DRAFT"}, tenant)).unwrap()
        assert listing.pagination.total == 1
        assert listing.items[0].summary.total_net_pay == Decimal("140.00")

    async def test_void(self, engine_facade, session_factory, tenant):
        await _seed(session_factory, tenant)
        built = (await engine_facade.build(build_request(), tenant)).unwrap()

        voided = await engine_facade.void(built.pay_run.pay_run_id, {"reason": "Duplicate"}, tenant)
        blank = await engine_facade.void(built.pay_run.pay_run_id, {"reason": ""}, tenant)

        assert voided.value.status == "VOID"
        assert voided.value.void_reason == "Duplicate"
        assert blank.error_kind == ErrorKind.VALIDATION

    async def test_rebuild_ignores_driver_cache(
        self, engine_facade, session_factory, driver_cache, tenant
    ):
        driver, _ = await _seed(session_factory, tenant)
        built = (
            await engine_facade.build(build_request(driver_ids=[str(driver.driver_id)]), tenant)
        ).unwrap()
        key = (tenant.scope_key, driver.driver_id)
        assert key in driver_cache

        # A stale cached profile must not change cohort membership
        driver_cache.set(
            key,
            DriverProfile(driver_id=driver.driver_id, is_active=False, pay_terms_days=7),
        )
        async with session_scope(session_factory) as session:
            await make_job(session, driver, pay="60.00")

        rebuilt = (await engine_facade.rebuild(built.pay_run.pay_run_id, tenant)).unwrap()

        assert rebuilt.added == 1

    async def test_custom_collaborators_factory(
        self, session_factory, settings, clock, tenant
    ):
        calls = []

        def factory(session):
            calls.append(session)
            return sql_collaborators(session)

        engine = PayRunEngine(session_factory, settings, clock=clock, collaborators_factory=factory)
        await _seed(session_factory, tenant)

        result = await engine.build(build_request(), tenant)

        assert result.ok
        assert len(calls) == 1


async def _jobs_for(session_factory, jobs) -> list[Job]:
    async with session_factory() as session:
        return [await session.get(Job, job.job_id) for job in jobs]


class TestConcurrentCalls:
    """Calls racing on separate sessions against the same database."""

    async def test_concurrent_posts_pay_once(self, engine_facade, session_factory, tenant):
        _, jobs = await _seed(session_factory, tenant, jobs=("100.00", "150.00"))
        built = (await engine_facade.build(build_request(), tenant)).unwrap()
        pay_run_id = built.pay_run.pay_run_id

        results = await asyncio.gather(
            engine_facade.post(pay_run_id, tenant),
            engine_facade.post(pay_run_id, tenant),
        )

        winners = [r for r in results if r.ok]
        losers = [r for r in results if not r.ok]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].error.code == "ALREADY_POSTED"
        assert winners[0].value.jobs_posted == 2

        async with session_factory() as session:
            pay_run = await session.get(PayRun, pay_run_id)
            posted_at = pay_run.posted_at
        for job in await _jobs_for(session_factory, jobs):
            assert job.driver_pay_status == JobPayStatus.POSTED.value
            assert job.driver_pay_run_id == pay_run_id
            assert job.driver_pay_posted_at == posted_at

    async def test_concurrent_builds_get_distinct_numbers(
        self, engine_facade, session_factory, tenant
    ):
        await _seed(session_factory, tenant)

        results = await asyncio.gather(
            *(engine_facade.build(build_request(), tenant) for _ in range(4))
        )

        numbers = [r.unwrap().pay_run.number for r in results]
        assert sorted(numbers) == [f"PR-2024-{i:03d}" for i in range(1, 5)]

    async def test_post_and_rebuild_do_not_interleave(
        self, engine_facade, session_factory, tenant
    ):
        _, jobs = await _seed(session_factory, tenant, jobs=("100.00", "150.00"))
        built = (await engine_facade.build(build_request(), tenant)).unwrap()
        pay_run_id = built.pay_run.pay_run_id

        posted, rebuilt = await asyncio.gather(
            engine_facade.post(pay_run_id, tenant),
            engine_facade.rebuild(pay_run_id, tenant),
        )

        assert posted.ok
        # Either the rebuild finished first, or it found the run already posted
        assert rebuilt.ok or rebuilt.error.code == "NOT_DRAFT"

        async with session_factory() as session:
            pay_run = await session.get(PayRun, pay_run_id)
            item_count = (
                await session.execute(
                    select(func.count())
                    .select_from(PayRunItem)
                    .where(PayRunItem.pay_run_id == pay_run_id)
                )
            ).scalar_one()
        assert pay_run.status == "POSTED"
        assert item_count == 2
        for job in await _jobs_for(session_factory, jobs):
            assert job.driver_pay_run_id == pay_run_id
            assert job.driver_pay_posted_at == pay_run.posted_at
