"""
Data models for the CloudSQL Migrator.

This module contains the configuration models, the mapping resolver,
the per-unit execution state machine and result records.
"""

from cloudsql_migrator.models.config import (
    Role,
    SSLMode,
    ConflictResolution,
    MappingStrategy,
    MigratorSettings,
    ConnectionDescriptor,
    MigrationOptions,
    OperationConfig,
    BatchOptions,
    ConnectionConfig,
)
from cloudsql_migrator.models.mapping import (
    DatabaseMapping,
    MigrationUnit,
    SplitRule,
    ManualMigration,
    MigrationMapping,
    MappingValidation,
    detect_pattern,
    recommended_strategy,
    group_by_version,
)
from cloudsql_migrator.models.state import (
    Phase,
    PHASE_ORDER,
    ExecutionStatus,
    ExecutionMetrics,
    ExecutionSnapshot,
    ExecutionState,
)
from cloudsql_migrator.models.results import (
    ProgressUpdate,
    UnitStatus,
    BatchStatus,
    MigrationResult,
    UnitOutcome,
    BatchResult,
)

__all__ = [
    # Configuration models
    "Role",
    "SSLMode",
    "ConflictResolution",
    "MappingStrategy",
    "MigratorSettings",
    "ConnectionDescriptor",
    "MigrationOptions",
    "OperationConfig",
    "BatchOptions",
    "ConnectionConfig",
    # Mapping
    "DatabaseMapping",
    "MigrationUnit",
    "SplitRule",
    "ManualMigration",
    "MigrationMapping",
    "MappingValidation",
    "detect_pattern",
    "recommended_strategy",
    "group_by_version",
    # Execution state
    "Phase",
    "PHASE_ORDER",
    "ExecutionStatus",
    "ExecutionMetrics",
    "ExecutionSnapshot",
    "ExecutionState",
    # Results
    "ProgressUpdate",
    "UnitStatus",
    "BatchStatus",
    "MigrationResult",
    "UnitOutcome",
    "BatchResult",
]
