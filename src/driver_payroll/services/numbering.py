"""Pay run number allocation."""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from driver_payroll.config import Settings, get_settings
from driver_payroll.database import dialect_insert
from driver_payroll.models import PayRunSequence
from driver_payroll.tenancy import LEGACY_SCOPE

logger = logging.getLogger(__name__)


class NumberGenerator:
    """Allocates ``PR-<year>-<seq>`` numbers per organization and year.

    The counter row is created if absent and then incremented with a single
    ``UPDATE ... RETURNING``, so two concurrent allocations can never observe
    the same value: the second blocks on the first's row (or database) lock
    until it commits or rolls back. Allocation happens inside the caller's
    transaction, so a rolled-back build does not burn a number.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    async def next(self, organization_id: UUID | None, year: int) -> str:
        scope = LEGACY_SCOPE if organization_id is None else str(organization_id)
        sequence = await self._increment(scope, year)
        number = self.format(year, sequence)
        logger.debug("Allocated pay run number %s for scope %s", number, scope)
        return number

    def format(self, year: int, sequence: int) -> str:
        width = self.settings.pay_run_number_width
        return f"{self.settings.pay_run_number_prefix}-{year}-{sequence:0{width}d}"

    async def _increment(self, scope: str, year: int) -> int:
        await self.session.execute(
            dialect_insert(self.session, PayRunSequence)
            .values(number_scope=scope, year=year, last_value=0)
            .on_conflict_do_nothing(index_elements=["number_scope", "year"])
        )
        result = await self.session.execute(
            update(PayRunSequence)
            .where(
                PayRunSequence.number_scope == scope,
                PayRunSequence.year == year,
            )
            .values(last_value=PayRunSequence.last_value + 1)
            .returning(PayRunSequence.last_value)
            .execution_options(synchronize_session=False)
        )
        return int(result.scalar_one())
