"""Driver summary aggregation for pay runs."""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from driver_payroll.models import ItemKind, PayRunDriverSummary, PayRunItem
from driver_payroll.services.line_items import LineItemBuilder
from driver_payroll.services.types import ZERO, DriverTotals


def fold_items(driver_id: UUID, items: Iterable[PayRunItem]) -> DriverTotals:
    """Fold a driver's items into totals; excluded items contribute nothing."""
    gross = ZERO
    adjustments = ZERO
    count = 0
    for item in items:
        if item.excluded:
            continue
        count += 1
        if item.kind == ItemKind.JOB.value:
            gross += item.amount
        else:
            adjustments += item.amount
    gross = LineItemBuilder.round_to_cents(gross)
    adjustments = LineItemBuilder.round_to_cents(adjustments)
    return DriverTotals(
        driver_id=driver_id,
        gross=gross,
        adjustments=adjustments,
        net_pay=gross + adjustments,
        item_count=count,
    )


class DriverSummaryAggregator:
    """Keeps PayRunDriverSummary rows in step with PayRunItem.

    Sums are taken in Python over Decimal amounts so every backend produces
    the same cents. A row whose totals have not changed is left untouched.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def recompute(self, pay_run_id: UUID, driver_id: UUID) -> PayRunDriverSummary:
        summaries = await self.recompute_many(pay_run_id, [driver_id])
        return summaries[driver_id]

    async def recompute_many(
        self, pay_run_id: UUID, driver_ids: Sequence[UUID]
    ) -> dict[UUID, PayRunDriverSummary]:
        """Upsert summaries for the given drivers from their current items."""
        wanted = list(dict.fromkeys(driver_ids))
        if not wanted:
            return {}

        await self.session.flush()
        items_by_driver: dict[UUID, list[PayRunItem]] = {driver_id: [] for driver_id in wanted}
        result = await self.session.execute(
            select(PayRunItem).where(
                PayRunItem.pay_run_id == pay_run_id,
                PayRunItem.driver_id.in_(wanted),
            )
        )
        for item in result.scalars().all():
            items_by_driver[item.driver_id].append(item)

        existing_result = await self.session.execute(
            select(PayRunDriverSummary).where(
                PayRunDriverSummary.pay_run_id == pay_run_id,
                PayRunDriverSummary.driver_id.in_(wanted),
            )
        )
        existing = {row.driver_id: row for row in existing_result.scalars().all()}

        summaries: dict[UUID, PayRunDriverSummary] = {}
        for driver_id in wanted:
            totals = fold_items(driver_id, items_by_driver[driver_id])
            summary = existing.get(driver_id)
            if summary is None:
                summary = PayRunDriverSummary(pay_run_id=pay_run_id, driver_id=driver_id)
                self.session.add(summary)
                _apply(summary, totals)
            elif _differs(summary, totals):
                _apply(summary, totals)
            summaries[driver_id] = summary

        await self.session.flush()
        return summaries


def to_totals(summary: PayRunDriverSummary) -> DriverTotals:
    return DriverTotals(
        driver_id=summary.driver_id,
        gross=_cents(summary.gross),
        adjustments=_cents(summary.adjustments),
        net_pay=_cents(summary.net_pay),
        item_count=summary.item_count,
    )


def _cents(value: Decimal | None) -> Decimal:
    return LineItemBuilder.round_to_cents(value if value is not None else ZERO)


def _differs(summary: PayRunDriverSummary, totals: DriverTotals) -> bool:
    return (
        _cents(summary.gross) != totals.gross
        or _cents(summary.adjustments) != totals.adjustments
        or _cents(summary.net_pay) != totals.net_pay
        or summary.item_count != totals.item_count
    )


def _apply(summary: PayRunDriverSummary, totals: DriverTotals) -> None:
    summary.gross = totals.gross
    summary.adjustments = totals.adjustments
    summary.net_pay = totals.net_pay
    summary.item_count = totals.item_count
