"""Collaborator interfaces and their SQLAlchemy implementations."""

from driver_payroll.collaborators.base import (
    AdjustmentLedger,
    AdjustmentRecord,
    Collaborators,
    DriverDirectory,
    DriverProfile,
    JobLedger,
    JobRecord,
)
from driver_payroll.collaborators.sql import (
    SqlAdjustmentLedger,
    SqlDriverDirectory,
    SqlJobLedger,
    sql_collaborators,
)

__all__ = [
    "AdjustmentLedger",
    "AdjustmentRecord",
    "Collaborators",
    "DriverDirectory",
    "DriverProfile",
    "JobLedger",
    "JobRecord",
    "SqlAdjustmentLedger",
    "SqlDriverDirectory",
    "SqlJobLedger",
    "sql_collaborators",
]
