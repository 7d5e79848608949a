"""Typed errors and the operation result envelope.

Every error carries a machine-readable ``code`` and an ``ErrorKind``. Services
raise these; the public facade (``driver_payroll.engine.PayRunEngine``) returns
them inside an ``OperationResult`` so callers branch on ``result.error.kind``
and ``result.error.retryable`` instead of on exception subclasses.

    PayRunError (base)
    |
    +-- ValidationError            VALIDATION      rejected before any write
    +-- NotFoundError              NOT_FOUND       missing or outside the tenant
    +-- StateConflictError         STATE_CONFLICT  wrong status, empty batch
    |   +-- InvalidTransitionError
    +-- ConcurrencyError           CONCURRENCY     retry from scratch
    +-- CollaboratorTimeoutError   TIMEOUT         retry from scratch
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Error categories callers can branch on."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    STATE_CONFLICT = "state_conflict"
    CONCURRENCY = "concurrency"
    TIMEOUT = "timeout"


RETRYABLE_KINDS = frozenset({ErrorKind.CONCURRENCY, ErrorKind.TIMEOUT})


class PayRunError(Exception):
    """Base exception for all pay run engine errors."""

    code: str = "PAY_RUN_ERROR"
    kind: ErrorKind = ErrorKind.STATE_CONFLICT

    def __init__(self, message: str, code: str | None = None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class ValidationError(PayRunError):
    """Malformed input; raised before anything is written."""

    code = "VALIDATION_FAILED"
    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str = "Validation failed",
        errors: list[dict[str, str]] | None = None,
    ):
        self.errors = errors or []
        super().__init__(message)

    @classmethod
    def for_field(cls, field: str, message: str) -> ValidationError:
        return cls("Validation failed", [{"field": field, "message": message}])

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"] = list(self.errors)
        return data


class NotFoundError(PayRunError):
    """Entity does not exist or belongs to another tenant."""

    code = "NOT_FOUND"
    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class StateConflictError(PayRunError):
    """Operation not allowed in the entity's current state."""

    code = "STATE_CONFLICT"
    kind = ErrorKind.STATE_CONFLICT


class InvalidTransitionError(StateConflictError):
    """Raised when an invalid status transition is attempted."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ConcurrencyError(PayRunError):
    """A concurrent writer won; re-read state and retry the whole operation."""

    code = "CONCURRENCY_CONFLICT"
    kind = ErrorKind.CONCURRENCY


class CollaboratorTimeoutError(PayRunError):
    """A collaborator call exceeded its timeout; nothing was changed."""

    code = "COLLABORATOR_TIMEOUT"
    kind = ErrorKind.TIMEOUT

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds:g}s")


# Lock, serialization and deadlock failures (PostgreSQL SQLSTATE / SQLite text).
_CONFLICT_SQLSTATES = {"40001", "40P01", "55P03"}
_CONFLICT_MARKERS = ("database is locked", "deadlock", "could not serialize")


def translate_db_error(exc: DBAPIError) -> PayRunError | None:
    """Map a database conflict to ConcurrencyError; None if it is not one."""
    if isinstance(exc, IntegrityError):
        return ConcurrencyError(
            "Concurrent write violated a uniqueness constraint", code="WRITE_CONFLICT"
        )
    if isinstance(exc, OperationalError):
        sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
        text = str(exc.orig).lower()
        if sqlstate in _CONFLICT_SQLSTATES or any(m in text for m in _CONFLICT_MARKERS):
            return ConcurrencyError("Transaction could not commit due to a concurrent write")
    return None


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a facade operation: a value or a typed error, never both."""

    value: T | None = None
    error: PayRunError | None = None

    @classmethod
    def success(cls, value: T) -> OperationResult[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: PayRunError) -> OperationResult[T]:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable

    def unwrap(self) -> T:
        """Return the value, raising the carried error if there is one."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
