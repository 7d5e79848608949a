"""Line item builder: turns eligible source records into pay run items."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from driver_payroll.collaborators.base import AdjustmentRecord, JobRecord
from driver_payroll.models import ItemKind, PayRunItem
from driver_payroll.services.types import EligibleItems, LineCandidate


class LineItemBuilder:
    """Builds line items from source records.

    Sign conventions:
    - JOB: positive (zero and negative pay never reaches a pay run)
    - ADJUSTMENT: signed as recorded

    Rounding:
    - Amounts persist at 2 decimals, half-up
    - Two amounts are "different" when they differ by at least half a cent
    """

    OUTPUT_PRECISION = Decimal("0.01")
    CHANGE_TOLERANCE = Decimal("0.005")

    @staticmethod
    def round_to_cents(amount: Decimal | int | float | str) -> Decimal:
        """Round amount to 2 decimal places (cents)."""
        return Decimal(str(amount)).quantize(
            LineItemBuilder.OUTPUT_PRECISION, rounding=ROUND_HALF_UP
        )

    @classmethod
    def amounts_differ(cls, stored: Decimal, fresh: Decimal) -> bool:
        return abs(cls.round_to_cents(stored) - cls.round_to_cents(fresh)) >= cls.CHANGE_TOLERANCE

    @classmethod
    def job_line(cls, job: JobRecord) -> LineCandidate:
        return LineCandidate(
            driver_id=job.driver_id,
            kind=ItemKind.JOB,
            source_id=job.job_id,
            description=job.description,
            amount=cls.round_to_cents(job.pay_amount),
        )

    @classmethod
    def adjustment_line(cls, adjustment: AdjustmentRecord) -> LineCandidate:
        return LineCandidate(
            driver_id=adjustment.driver_id,
            kind=ItemKind.ADJUSTMENT,
            source_id=adjustment.adjustment_id,
            description=adjustment.label,
            amount=cls.round_to_cents(adjustment.amount),
        )

    @classmethod
    def lines_for(cls, eligible: EligibleItems) -> list[LineCandidate]:
        """Job lines first, then adjustments, each in resolver order."""
        lines = [cls.job_line(job) for job in eligible.jobs]
        lines.extend(cls.adjustment_line(adj) for adj in eligible.adjustments)
        return lines

    @staticmethod
    def to_item(
        pay_run_id: UUID,
        line: LineCandidate,
        exclude_reason: str | None = None,
    ) -> PayRunItem:
        """Materialize a candidate; a reason makes it a manual exclusion."""
        return PayRunItem(
            pay_run_id=pay_run_id,
            driver_id=line.driver_id,
            kind=line.kind.value,
            source_id=line.source_id,
            description=line.description,
            amount=line.amount,
            excluded=exclude_reason is not None,
            exclude_reason=exclude_reason,
        )
