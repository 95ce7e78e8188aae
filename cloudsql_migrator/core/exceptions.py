"""
Custom exceptions for the CloudSQL Migrator.

This module defines the error taxonomy used by the orchestration engine.
Expected failure classes derive from MigrationToolError and are turned
into per-unit failure records by the batch coordinator; anything else is
treated as unexpected and propagates to the caller unchanged.
"""

from typing import Any, Dict, List, Optional


class MigrationToolError(Exception):
    """Base exception class for CloudSQL Migrator errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}


class ConfigurationError(MigrationToolError):
    """Raised when there's an error in configuration."""
    pass


class ValidationError(MigrationToolError):
    """Raised when validation fails. Never retried."""

    def __init__(
        self,
        message: str,
        failed_checks: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.failed_checks = failed_checks or []


class ConnectionError(MigrationToolError):
    """Raised when a database instance cannot be reached or authenticated."""

    def __init__(
        self,
        message: str,
        hints: Optional[List[str]] = None,
        attempts: int = 0,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.hints = hints or []
        self.attempts = attempts


class MissingCredentialError(ValidationError, ConnectionError):
    """Raised when no password can be resolved for a connection."""
    pass


class DatabaseError(MigrationToolError):
    """Raised when a SQL-level database operation fails."""
    pass


class ProcessExecutionError(MigrationToolError):
    """Raised when pg_dump/pg_restore exits with an unclassified failure."""

    def __init__(
        self,
        message: str,
        command: Optional[str] = None,
        exit_code: Optional[int] = None,
        fatal_lines: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.command = command
        self.exit_code = exit_code
        self.fatal_lines = fatal_lines or []


class EstimationError(MigrationToolError):
    """Raised internally when a migration estimate cannot be computed."""
    pass


class StateTransitionError(MigrationToolError):
    """Raised on an illegal execution state mutation."""
    pass


class MigrationCancelledError(MigrationToolError):
    """Raised when a migration is aborted by the caller."""
    pass


class MigrationTimeoutError(MigrationToolError):
    """Raised when a migration unit exceeds its time budget."""
    pass
