"""
Utilities module for the CloudSQL Migrator.

This module contains utility functions and helper classes
used throughout the application.
"""

from cloudsql_migrator.utils.helpers import (
    generate_batch_id,
    generate_unit_id,
    safe_identifier,
    format_bytes,
    format_duration,
    sanitize_dict,
)
from cloudsql_migrator.utils.logging import (
    setup_logging,
    get_logger,
    MigrationLogger,
)

__all__ = [
    # Helper functions
    "generate_batch_id",
    "generate_unit_id",
    "safe_identifier",
    "format_bytes",
    "format_duration",
    "sanitize_dict",
    # Logging utilities
    "setup_logging",
    "get_logger",
    "MigrationLogger",
]
