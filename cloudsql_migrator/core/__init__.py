"""
Core module for the CloudSQL Migrator.

This module contains the error taxonomy and error handling helpers
used throughout the application.
"""

from cloudsql_migrator.core.exceptions import (
    MigrationToolError,
    ConfigurationError,
    ValidationError,
    ConnectionError,
    MissingCredentialError,
    DatabaseError,
    ProcessExecutionError,
    EstimationError,
    StateTransitionError,
    MigrationCancelledError,
    MigrationTimeoutError,
)

__all__ = [
    "MigrationToolError",
    "ConfigurationError",
    "ValidationError",
    "ConnectionError",
    "MissingCredentialError",
    "DatabaseError",
    "ProcessExecutionError",
    "EstimationError",
    "StateTransitionError",
    "MigrationCancelledError",
    "MigrationTimeoutError",
]
