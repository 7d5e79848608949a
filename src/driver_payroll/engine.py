"""Public facade: one unit of work per call, results as OperationResult."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar
from uuid import UUID

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from driver_payroll.cache import TTLCache
from driver_payroll.collaborators import Collaborators, DriverProfile, sql_collaborators
from driver_payroll.config import Settings, get_settings
from driver_payroll.database import session_scope
from driver_payroll.errors import OperationResult, PayRunError, translate_db_error
from driver_payroll.models import utcnow
from driver_payroll.schemas import (
    BuildPayRunRequest,
    ExcludeItemRequest,
    ListPayRunsQuery,
    PayRunDriverResponse,
    PayRunItemResponse,
    PayRunListResponse,
    PayRunResponse,
    VoidPayRunRequest,
)
from driver_payroll.services import (
    BuildResult,
    PayRunBuilder,
    PayRunService,
    PostingCoordinator,
    PostResult,
    RebuildResult,
    ReconciliationEngine,
)
from driver_payroll.tenancy import TenantContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

Work = Callable[[AsyncSession, Collaborators], Awaitable[T]]


class PayRunEngine:
    """Entry point for pay run operations.

    Every call opens its own session and transaction: commit on success,
    rollback on any error. Service errors and translated database conflicts
    come back as ``OperationResult.failure``; anything else propagates.

    The driver cache is shared across calls; pass your own ``TTLCache`` to
    hook invalidation into master-data writes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        driver_cache: TTLCache[tuple[str, UUID], DriverProfile] | None = None,
        clock: Callable[[], datetime] | None = None,
        collaborators_factory: Callable[[AsyncSession], Collaborators] | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        if driver_cache is None:
            driver_cache = TTLCache(
                maxsize=self.settings.driver_cache_maxsize,
                ttl_seconds=self.settings.driver_cache_ttl_seconds,
            )
        self.driver_cache = driver_cache
        self.clock = clock or utcnow
        self.collaborators_factory = collaborators_factory or self._sql_collaborators

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def build(
        self,
        request: BuildPayRunRequest | dict[str, Any],
        tenant: TenantContext,
    ) -> OperationResult[BuildResult]:
        async def work(session: AsyncSession, collaborators: Collaborators) -> BuildResult:
            builder = PayRunBuilder(session, collaborators, self.settings, self.clock)
            return await builder.build(request, tenant)

        return await self._run("build", work)

    async def rebuild(
        self, pay_run_id: UUID, tenant: TenantContext
    ) -> OperationResult[RebuildResult]:
        async def work(session: AsyncSession, collaborators: Collaborators) -> RebuildResult:
            engine = ReconciliationEngine(session, collaborators, self.settings, self.clock)
            return await engine.rebuild(pay_run_id, tenant)

        return await self._run("rebuild", work)

    async def post(self, pay_run_id: UUID, tenant: TenantContext) -> OperationResult[PostResult]:
        async def work(session: AsyncSession, collaborators: Collaborators) -> PostResult:
            coordinator = PostingCoordinator(session, collaborators, self.clock)
            return await coordinator.post(pay_run_id, tenant)

        return await self._run("post", work)

    async def void(
        self,
        pay_run_id: UUID,
        request: VoidPayRunRequest | dict[str, Any],
        tenant: TenantContext,
    ) -> OperationResult[PayRunResponse]:
        async def work(session: AsyncSession, collaborators: Collaborators) -> PayRunResponse:
            service = PayRunService(session, collaborators, self.clock)
            return await service.void_pay_run(pay_run_id, request, tenant)

        return await self._run("void", work)

    async def exclude_item(
        self,
        pay_run_id: UUID,
        item_id: UUID,
        request: ExcludeItemRequest | dict[str, Any],
        tenant: TenantContext,
    ) -> OperationResult[PayRunItemResponse]:
        async def work(session: AsyncSession, collaborators: Collaborators) -> PayRunItemResponse:
            service = PayRunService(session, collaborators, self.clock)
            return await service.exclude_item(pay_run_id, item_id, request, tenant)

        return await self._run("exclude_item", work)

    async def include_item(
        self, pay_run_id: UUID, item_id: UUID, tenant: TenantContext
    ) -> OperationResult[PayRunItemResponse]:
        async def work(session: AsyncSession, collaborators: Collaborators) -> PayRunItemResponse:
            service = PayRunService(session, collaborators, self.clock)
            return await service.include_item(pay_run_id, item_id, tenant)

        return await self._run("include_item", work)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_pay_run(
        self, pay_run_id: UUID, tenant: TenantContext
    ) -> OperationResult[PayRunResponse]:
        async def work(session: AsyncSession, collaborators: Collaborators) -> PayRunResponse:
            return await PayRunService(session, collaborators).get_pay_run(pay_run_id, tenant)

        return await self._run("get_pay_run", work)

    async def list_pay_runs(
        self,
        query: ListPayRunsQuery | dict[str, Any],
        tenant: TenantContext,
    ) -> OperationResult[PayRunListResponse]:
        async def work(session: AsyncSession, collaborators: Collaborators) -> PayRunListResponse:
            return await PayRunService(session, collaborators).list_pay_runs(query, tenant)

        return await self._run("list_pay_runs", work)

    async def list_drivers(
        self, pay_run_id: UUID, tenant: TenantContext
    ) -> OperationResult[list[PayRunDriverResponse]]:
        async def work(
            session: AsyncSession, collaborators: Collaborators
        ) -> list[PayRunDriverResponse]:
            return await PayRunService(session, collaborators).list_drivers(pay_run_id, tenant)

        return await self._run("list_drivers", work)

    async def list_items(
        self,
        pay_run_id: UUID,
        tenant: TenantContext,
        driver_id: UUID | None = None,
    ) -> OperationResult[list[PayRunItemResponse]]:
        async def work(
            session: AsyncSession, collaborators: Collaborators
        ) -> list[PayRunItemResponse]:
            service = PayRunService(session, collaborators)
            return await service.list_items(pay_run_id, tenant, driver_id)

        return await self._run("list_items", work)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _sql_collaborators(self, session: AsyncSession) -> Collaborators:
        return sql_collaborators(session, self.driver_cache)

    async def _run(self, operation: str, work: Work[T]) -> OperationResult[T]:
        try:
            async with session_scope(self.session_factory) as session:
                value = await work(session, self.collaborators_factory(session))
        except PayRunError as exc:
            logger.warning("%s rejected: [%s] %s", operation, exc.code, exc.message)
            return OperationResult.failure(exc)
        except DBAPIError as exc:
            error = translate_db_error(exc)
            if error is None:
                raise
            logger.warning("%s hit a database conflict: %s", operation, exc.orig)
            return OperationResult.failure(error)
        return OperationResult.success(value)
