"""Pay run state machine with transition validation."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from driver_payroll.errors import InvalidTransitionError

if TYPE_CHECKING:
    from driver_payroll.models import PayRun


class PayRunStatus(str, Enum):
    """Pay run status values."""

    DRAFT = "DRAFT"
    POSTED = "POSTED"
    VOID = "VOID"


class PayRunStateMachine:
    """State machine for pay run status transitions.

    Allowed transitions:
    - DRAFT → POSTED (post)
    - DRAFT → VOID (void)

    Rebuilds and exclusion edits keep a pay run in DRAFT. POSTED and VOID are
    terminal.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayRunStatus.DRAFT: [PayRunStatus.POSTED, PayRunStatus.VOID],
        PayRunStatus.POSTED: [],  # Terminal state
        PayRunStatus.VOID: [],  # Terminal state
    }

    # Statuses where items may be recomputed or edited
    EDITABLE = {PayRunStatus.DRAFT}

    # Statuses where items, summaries and source records are frozen
    RESULTS_IMMUTABLE = {PayRunStatus.POSTED, PayRunStatus.VOID}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_rebuild(cls, status: str) -> bool:
        """Check if reconciliation is allowed in this status."""
        return status in cls.EDITABLE

    @classmethod
    def can_edit_items(cls, status: str) -> bool:
        """Check if items can be excluded or re-included."""
        return status in cls.EDITABLE

    @classmethod
    def are_results_immutable(cls, status: str) -> bool:
        """Check if items and summaries are frozen."""
        return status in cls.RESULTS_IMMUTABLE

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])

    @classmethod
    def post_blocker(cls, pay_run: PayRun) -> str | None:
        """Reason a pay run cannot be posted on status grounds, if any."""
        if pay_run.status == PayRunStatus.POSTED:
            return "Pay run is already posted"
        if pay_run.status == PayRunStatus.VOID:
            return "Cannot post a voided pay run"
        if not cls.can_transition(pay_run.status, PayRunStatus.POSTED):
            return f"Cannot post a pay run in status '{pay_run.status}'"
        return None
