"""Type definitions passed between pay run services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from driver_payroll.models import ItemKind

if TYPE_CHECKING:
    from driver_payroll.collaborators.base import AdjustmentRecord, JobRecord
    from driver_payroll.models import PayRun

ZERO = Decimal("0.00")

ItemKey = tuple[str, UUID]


@dataclass(frozen=True)
class LineCandidate:
    """A pay run item before persistence."""

    driver_id: UUID
    kind: ItemKind
    source_id: UUID
    description: str
    amount: Decimal

    @property
    def key(self) -> ItemKey:
        return (self.kind.value, self.source_id)


@dataclass
class EligibleItems:
    """Eligible source records for one driver and window."""

    jobs: list[JobRecord] = field(default_factory=list)
    adjustments: list[AdjustmentRecord] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.jobs) + len(self.adjustments)


@dataclass(frozen=True)
class DriverTotals:
    """Totals for one driver in a pay run."""

    driver_id: UUID
    gross: Decimal
    adjustments: Decimal
    net_pay: Decimal
    item_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "driver_id": str(self.driver_id),
            "gross": str(self.gross),
            "adjustments": str(self.adjustments),
            "net_pay": str(self.net_pay),
            "item_count": self.item_count,
        }


@dataclass(frozen=True)
class RunTotals:
    """Totals across a pay run."""

    total_drivers: int = 0
    total_items: int = 0
    total_gross: Decimal = ZERO
    total_adjustments: Decimal = ZERO
    total_net_pay: Decimal = ZERO

    @classmethod
    def from_drivers(cls, drivers: list[DriverTotals]) -> RunTotals:
        return cls(
            total_drivers=len(drivers),
            total_items=sum(d.item_count for d in drivers),
            total_gross=sum((d.gross for d in drivers), ZERO),
            total_adjustments=sum((d.adjustments for d in drivers), ZERO),
            total_net_pay=sum((d.net_pay for d in drivers), ZERO),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_drivers": self.total_drivers,
            "total_items": self.total_items,
            "total_gross": str(self.total_gross),
            "total_adjustments": str(self.total_adjustments),
            "total_net_pay": str(self.total_net_pay),
        }


@dataclass
class BuildResult:
    """Result of building a pay run."""

    pay_run: PayRun
    drivers: list[DriverTotals]
    totals: RunTotals


@dataclass(frozen=True)
class RebuildResult:
    """Result of reconciling a draft pay run against current source data."""

    pay_run_id: UUID
    status: str
    added: int = 0
    removed: int = 0
    updated: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.updated)


@dataclass(frozen=True)
class PostResult:
    """Result of posting a pay run."""

    pay_run_id: UUID
    number: str
    status: str
    posted_at: datetime
    posted_by: UUID | None
    jobs_posted: int
    adjustments_posted: int
