"""Pay run services."""

from driver_payroll.services.aggregator import DriverSummaryAggregator
from driver_payroll.services.builder import PayRunBuilder
from driver_payroll.services.eligibility import EligibilityResolver
from driver_payroll.services.line_items import LineItemBuilder
from driver_payroll.services.numbering import NumberGenerator
from driver_payroll.services.pay_run_service import PayRunService
from driver_payroll.services.posting import PostingCoordinator
from driver_payroll.services.reconciliation import ReconciliationEngine
from driver_payroll.services.state_machine import PayRunStateMachine, PayRunStatus
from driver_payroll.services.types import (
    BuildResult,
    DriverTotals,
    PostResult,
    RebuildResult,
    RunTotals,
)

__all__ = [
    "BuildResult",
    "DriverSummaryAggregator",
    "DriverTotals",
    "EligibilityResolver",
    "LineItemBuilder",
    "NumberGenerator",
    "PayRunBuilder",
    "PayRunService",
    "PayRunStateMachine",
    "PayRunStatus",
    "PostResult",
    "PostingCoordinator",
    "RebuildResult",
    "ReconciliationEngine",
    "RunTotals",
]
