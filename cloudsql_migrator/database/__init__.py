"""
Database layer for the CloudSQL Migrator.

Connection pooling and resolution, pg_dump/pg_restore orchestration and
process output classification.
"""

from cloudsql_migrator.database.connection import (
    ConnectionManager,
    DatabaseInfo,
    is_system_database,
)
from cloudsql_migrator.database.operations import (
    DatabaseOperations,
    CommandResult,
    ExportArtifact,
    ImportResult,
    MigrationEstimate,
    CompatibilityReport,
)
from cloudsql_migrator.database.output_classifier import (
    CLASSIFIER_VERSION,
    IGNORABLE_CATEGORIES,
    classify_output,
)

__all__ = [
    "ConnectionManager",
    "DatabaseInfo",
    "is_system_database",
    "DatabaseOperations",
    "CommandResult",
    "ExportArtifact",
    "ImportResult",
    "MigrationEstimate",
    "CompatibilityReport",
    "CLASSIFIER_VERSION",
    "IGNORABLE_CATEGORIES",
    "classify_output",
]
