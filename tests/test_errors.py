"""Tests for error types and database error translation."""

import sqlite3

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from driver_payroll.errors import (
    CollaboratorTimeoutError,
    ConcurrencyError,
    ErrorKind,
    NotFoundError,
    OperationResult,
    StateConflictError,
    ValidationError,
    translate_db_error,
)


class TestErrorKinds:
    """Kinds and retryability."""

    def test_retryable_kinds(self):
        assert ConcurrencyError("lost race").retryable is True
        assert CollaboratorTimeoutError("job ledger lookup", 30).retryable is True
        assert StateConflictError("nope").retryable is False
        assert NotFoundError("PayRun", "x").retryable is False
        assert ValidationError().retryable is False

    def test_not_found_message(self):
        error = NotFoundError("PayRun", "abc")
        assert error.message == "PayRun abc not found"
        assert error.kind == ErrorKind.NOT_FOUND

    def test_custom_code(self):
        error = StateConflictError("No drivers", code="EMPTY_COHORT")
        assert error.to_dict() == {
            "kind": "state_conflict",
            "code": "EMPTY_COHORT",
            "message": "No drivers",
            "retryable": False,
        }

    def test_validation_for_field(self):
        error = ValidationError.for_field("reason", "required")
        assert error.errors == [{"field": "reason", "message": "required"}]


class TestTranslateDbError:
    """Database conflicts become ConcurrencyError."""

    def test_integrity_error(self):
        exc = IntegrityError("INSERT", {}, sqlite3.IntegrityError("UNIQUE constraint failed"))
        error = translate_db_error(exc)
        assert isinstance(error, ConcurrencyError)
        assert error.code == "WRITE_CONFLICT"

    def test_locked_database(self):
        exc = OperationalError("UPDATE", {}, sqlite3.OperationalError("database is locked"))
        assert isinstance(translate_db_error(exc), ConcurrencyError)

    def test_unrelated_operational_error(self):
        exc = OperationalError("SELECT", {}, sqlite3.OperationalError("no such table: x"))
        assert translate_db_error(exc) is None


class TestOperationResult:
    """Value or error, never both."""

    def test_success(self):
        result = OperationResult.success(42)
        assert result.ok is True
        assert result.error_kind is None
        assert result.unwrap() == 42

    def test_failure(self):
        result = OperationResult.failure(ConcurrencyError("retry"))
        assert result.ok is False
        assert result.retryable is True
        assert result.error_kind == ErrorKind.CONCURRENCY
        with pytest.raises(ConcurrencyError):
            result.unwrap()
