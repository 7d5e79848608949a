"""Tests for the SQL-backed collaborators and tenant scoping."""

from datetime import datetime, timezone
from uuid import uuid4

from driver_payroll.collaborators import sql_collaborators
from driver_payroll.models import AdjustmentStatus, JobPayStatus
from driver_payroll.services.builder import PayRunBuilder
from driver_payroll.tenancy import LEGACY_SCOPE, TenantContext
from tests.factories import build_request, make_adjustment, make_driver, make_job

POSTED_AT = datetime(2024, 1, 20, 9, 30, tzinfo=timezone.utc)


class TestTenantContext:
    """Organization scoping, including the legacy null scope."""

    def test_scope_keys(self):
        org_id = uuid4()

        assert TenantContext(organization_id=org_id).scope_key == str(org_id)
        assert TenantContext.legacy().scope_key == LEGACY_SCOPE

    async def test_legacy_scope_sees_only_unowned_rows(self, session, collaborators, tenant):
        legacy = TenantContext.legacy(actor_id=uuid4())
        unowned = await make_driver(session, legacy, name="Legacy Driver")
        await make_driver(session, tenant, name="Owned Driver")

        active = await collaborators.drivers.list_active(14, legacy)

        assert [p.driver_id for p in active] == [unowned.driver_id]

    async def test_legacy_scope_builds_pay_runs(self, session, collaborators, settings, clock):
        legacy = TenantContext.legacy(actor_id=uuid4())
        driver = await make_driver(session, legacy)
        await make_job(session, driver, pay="55.00")

        result = await PayRunBuilder(session, collaborators, settings, clock).build(
            build_request(), legacy
        )

        assert result.pay_run.organization_id is None
        assert result.pay_run.number == "PR-2024-001"
        assert result.totals.total_net_pay == 55


class TestSqlDriverDirectory:
    """Driver lookups through the shared cache."""

    async def test_get_drivers_uses_cache(self, session, driver_cache, tenant):
        driver = await make_driver(session, tenant, name="Before")
        directory = sql_collaborators(session, driver_cache).drivers
        await directory.get_drivers([driver.driver_id], tenant)

        driver.display_name = "After"
        await session.flush()
        cached = await directory.get_drivers([driver.driver_id], tenant)

        assert cached[driver.driver_id].display_name == "Before"

        assert directory.invalidate_driver(driver.driver_id, tenant) is True
        fresh = await directory.get_drivers([driver.driver_id], tenant)

        assert fresh[driver.driver_id].display_name == "After"

    async def test_cache_is_keyed_by_tenant(self, session, driver_cache, tenant, other_tenant):
        driver = await make_driver(session, tenant)
        directory = sql_collaborators(session, driver_cache).drivers
        await directory.get_drivers([driver.driver_id], tenant)

        found = await directory.get_drivers([driver.driver_id], other_tenant)

        assert found == {}

    async def test_list_active_refreshes_cache(self, session, driver_cache, tenant):
        driver = await make_driver(session, tenant, name="Old Name")
        directory = sql_collaborators(session, driver_cache).drivers
        await directory.get_drivers([driver.driver_id], tenant)

        driver.display_name = "New Name"
        await session.flush()
        await directory.list_active(14, tenant)

        assert driver_cache.get((tenant.scope_key, driver.driver_id)).display_name == "New Name"

    async def test_without_cache(self, session, tenant):
        driver = await make_driver(session, tenant)
        directory = sql_collaborators(session).drivers

        found = await directory.get_drivers([driver.driver_id, driver.driver_id], tenant)

        assert list(found) == [driver.driver_id]
        assert directory.invalidate_driver(driver.driver_id, tenant) is False


class TestLedgers:
    """Guarded source updates."""

    async def test_job_mark_posted_skips_posted_and_foreign_jobs(
        self, session, collaborators, tenant, other_tenant
    ):
        driver = await make_driver(session, tenant)
        open_job = await make_job(session, driver)
        paid_job = await make_job(session, driver, status=JobPayStatus.POSTED)
        foreign = await make_job(session, await make_driver(session, other_tenant))

        count = await collaborators.jobs.mark_posted(
            [open_job.job_id, paid_job.job_id, foreign.job_id], uuid4(), POSTED_AT, tenant
        )

        assert count == 1

    async def test_adjustment_mark_posted_requires_approval(
        self, session, collaborators, tenant
    ):
        driver = await make_driver(session, tenant)
        approved = await make_adjustment(session, driver)
        pending = await make_adjustment(session, driver, status=AdjustmentStatus.PENDING)

        count = await collaborators.adjustments.mark_posted(
            [approved.driver_adjustment_id, pending.driver_adjustment_id], POSTED_AT, tenant
        )

        assert count == 1
        await session.refresh(pending)
        assert pending.status == AdjustmentStatus.PENDING.value
