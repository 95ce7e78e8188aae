"""
CloudSQL Migrator

Orchestrates PostgreSQL database migrations between Cloud SQL instances:
connection pooling, pg_dump/pg_restore execution, source-to-target
mapping strategies and bounded-parallel batch execution.
"""

__version__ = "0.1.0"

from cloudsql_migrator.database.connection import ConnectionManager
from cloudsql_migrator.database.operations import DatabaseOperations
from cloudsql_migrator.models.config import (
    BatchOptions,
    ConnectionDescriptor,
    MigrationOptions,
    MigratorSettings,
    OperationConfig,
)
from cloudsql_migrator.models.mapping import MigrationMapping, MigrationUnit
from cloudsql_migrator.models.results import BatchResult, MigrationResult
from cloudsql_migrator.models.state import ExecutionState
from cloudsql_migrator.orchestrator.batch import BatchCoordinator
from cloudsql_migrator.orchestrator.engine import MigrationEngine

__all__ = [
    "ConnectionManager",
    "DatabaseOperations",
    "BatchOptions",
    "ConnectionDescriptor",
    "MigrationOptions",
    "MigratorSettings",
    "OperationConfig",
    "MigrationMapping",
    "MigrationUnit",
    "BatchResult",
    "MigrationResult",
    "ExecutionState",
    "BatchCoordinator",
    "MigrationEngine",
]
