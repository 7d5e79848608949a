"""ORM models for the driver pay run engine."""

from driver_payroll.models.base import Base, TimestampMixin, utcnow
from driver_payroll.models.payroll import (
    ItemKind,
    PayRun,
    PayRunDriverSummary,
    PayRunExclusion,
    PayRunItem,
    PayRunSequence,
)
from driver_payroll.models.sources import (
    AdjustmentStatus,
    Driver,
    DriverAdjustment,
    Job,
    JobPayStatus,
)

__all__ = [
    "AdjustmentStatus",
    "Base",
    "Driver",
    "DriverAdjustment",
    "ItemKind",
    "Job",
    "JobPayStatus",
    "PayRun",
    "PayRunDriverSummary",
    "PayRunExclusion",
    "PayRunItem",
    "PayRunSequence",
    "TimestampMixin",
    "utcnow",
]
