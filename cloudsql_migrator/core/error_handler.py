"""
Error handling system for the CloudSQL Migrator.

This module provides error categorisation with remediation guides,
connection error hint matching, and retry logic with exponential backoff.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Tuple, Type

from .exceptions import (
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


class ErrorCategory(str, Enum):
    """Categories of errors for better handling and reporting."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    CONNECTIVITY = "connectivity"
    DATABASE = "database"
    PROCESS = "process"
    ESTIMATION = "estimation"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class RetryConfig:
    """Configuration for retry logic."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: Optional[float] = None
    exponential_base: float = 2.0
    retryable_exceptions: List[Type[Exception]] = field(default_factory=list)

    def delay_before(self, attempt: int) -> float:
        """Delay in seconds before the given 1-based attempt (0 for the first)."""
        if attempt <= 1:
            return 0.0
        delay = self.base_delay * (self.exponential_base ** (attempt - 2))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


@dataclass
class ErrorInfo:
    """Categorised error information."""
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    remediation_steps: List[str]
    is_recoverable: bool = True

    @property
    def reason(self) -> str:
        """Short user-facing reason line."""
        return f"{type(self.error).__name__}: {self.error}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": type(self.error).__name__,
            "message": str(self.error),
            "code": getattr(self.error, "code", None),
            "category": self.category.value,
            "severity": self.severity.value,
            "recoverable": self.is_recoverable,
            "remediation_steps": list(self.remediation_steps),
        }


# Raw driver error text -> hint. Order matters: first match per hint wins.
CONNECTION_ERROR_HINTS: Tuple[Tuple[Pattern, str], ...] = (
    (re.compile(r"connection refused|ECONNREFUSED", re.IGNORECASE),
     "Connection refused: check that the IP is correct and the instance accepts external connections"),
    (re.compile(r"could not translate host name|Name or service not known|nodename nor servname|ENOTFOUND",
                re.IGNORECASE),
     "Host not found: check the IP address or hostname"),
    (re.compile(r"timeout expired|timed out", re.IGNORECASE),
     "Connection timed out: check authorized networks and firewall rules"),
    (re.compile(r"password", re.IGNORECASE),
     "Check that the password is correct"),
    (re.compile(r"FATAL"),
     "PostgreSQL authentication error"),
    (re.compile(r"SSL", re.IGNORECASE),
     "SSL negotiation failed: check the SSL mode and certificates"),
)


def connection_error_hints(error: BaseException) -> List[str]:
    """Return diagnostic hints for a raw connection failure."""
    text = f"{getattr(error, 'pgcode', '') or ''} {error}"
    hints = []
    for pattern, hint in CONNECTION_ERROR_HINTS:
        if pattern.search(text) and hint not in hints:
            hints.append(hint)
    return hints


class ErrorHandler:
    """
    Error handler with categorisation and remediation guides.

    The batch coordinator uses it to turn expected failures into
    user-facing per-unit reasons.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._error_mappings = self._build_error_mappings()
        self._remediation_guides = self._build_remediation_guides()

    def _build_error_mappings(self) -> List[Tuple[Type[Exception], Dict[str, Any]]]:
        """Build mapping of exception types to error categories and severities.

        Ordered most specific first; lookup is by isinstance.
        """
        return [
            (MissingCredentialError, {
                "category": ErrorCategory.AUTHENTICATION,
                "severity": ErrorSeverity.HIGH,
                "recoverable": False,
            }),
            (ValidationError, {
                "category": ErrorCategory.VALIDATION,
                "severity": ErrorSeverity.HIGH,
                "recoverable": False,
            }),
            (ConfigurationError, {
                "category": ErrorCategory.CONFIGURATION,
                "severity": ErrorSeverity.HIGH,
                "recoverable": False,
            }),
            (ConnectionError, {
                "category": ErrorCategory.CONNECTIVITY,
                "severity": ErrorSeverity.HIGH,
                "recoverable": True,
            }),
            (DatabaseError, {
                "category": ErrorCategory.DATABASE,
                "severity": ErrorSeverity.CRITICAL,
                "recoverable": True,
            }),
            (ProcessExecutionError, {
                "category": ErrorCategory.PROCESS,
                "severity": ErrorSeverity.CRITICAL,
                "recoverable": True,
            }),
            (EstimationError, {
                "category": ErrorCategory.ESTIMATION,
                "severity": ErrorSeverity.LOW,
                "recoverable": True,
            }),
            (MigrationCancelledError, {
                "category": ErrorCategory.CANCELLED,
                "severity": ErrorSeverity.MEDIUM,
                "recoverable": False,
            }),
            (MigrationTimeoutError, {
                "category": ErrorCategory.TIMEOUT,
                "severity": ErrorSeverity.HIGH,
                "recoverable": True,
            }),
            (StateTransitionError, {
                "category": ErrorCategory.INTERNAL,
                "severity": ErrorSeverity.CRITICAL,
                "recoverable": False,
            }),
        ]

    def _build_remediation_guides(self) -> Dict[ErrorCategory, List[str]]:
        """Build remediation guides for each error category."""
        return {
            ErrorCategory.CONFIGURATION: [
                "Ensure all required configuration values are provided",
                "Check environment variables used for host and SSL resolution",
            ],
            ErrorCategory.VALIDATION: [
                "Review the source/target selection and database list",
                "Check for conflicting options such as schema-only with data-only",
            ],
            ErrorCategory.AUTHENTICATION: [
                "Provide a password on the descriptor",
                "Or set PGPASSWORD_SOURCE / PGPASSWORD_TARGET / PGPASSWORD",
            ],
            ErrorCategory.CONNECTIVITY: [
                "Check network connectivity and authorized networks of the instance",
                "Verify the resolved IP address or Cloud SQL proxy setup",
                "Confirm credentials are correct",
            ],
            ErrorCategory.DATABASE: [
                "Ensure the user has CREATEDB and sufficient privileges on the target",
                "Check the target instance for locks or active sessions",
            ],
            ErrorCategory.PROCESS: [
                "Inspect the pg_dump/pg_restore output attached to the error",
                "Check client tool versions against the server versions",
                "Ensure sufficient disk space in the work directory",
            ],
            ErrorCategory.ESTIMATION: [
                "Estimate fell back to a conservative value; migration may proceed",
            ],
            ErrorCategory.CANCELLED: [
                "The batch was cancelled; rerun the affected units",
            ],
            ErrorCategory.TIMEOUT: [
                "Increase the unit timeout or split large databases across units",
            ],
            ErrorCategory.INTERNAL: [
                "Report this error with the debug log attached",
            ],
            ErrorCategory.UNKNOWN: [
                "Review error logs for additional context",
            ],
        }

    def categorize_error(self, error: Exception) -> ErrorInfo:
        """
        Categorize an error and create error information.

        Args:
            error: The exception that occurred

        Returns:
            ErrorInfo object with categorized error details
        """
        mapping = None
        for exc_type, exc_mapping in self._error_mappings:
            if isinstance(error, exc_type):
                mapping = exc_mapping
                break

        if not mapping:
            mapping = {
                "category": ErrorCategory.UNKNOWN,
                "severity": ErrorSeverity.MEDIUM,
                "recoverable": False,
            }

        category = mapping["category"]
        remediation_steps = list(self._remediation_guides.get(category, []))
        hints = getattr(error, "hints", None)
        if hints:
            remediation_steps = list(hints) + remediation_steps

        return ErrorInfo(
            error=error,
            category=category,
            severity=mapping["severity"],
            remediation_steps=remediation_steps,
            is_recoverable=mapping["recoverable"],
        )

    def handle_error(self, error: Exception, operation: Optional[str] = None) -> ErrorInfo:
        """Categorize and log an error."""
        error_info = self.categorize_error(error)
        log_data = {
            "error_type": type(error).__name__,
            "error_message": str(error),
            "category": error_info.category.value,
            "severity": error_info.severity.value,
            "operation": operation,
        }

        if error_info.severity == ErrorSeverity.CRITICAL:
            self.logger.error("Critical error occurred", extra=log_data)
        elif error_info.severity == ErrorSeverity.HIGH:
            self.logger.error("High severity error occurred", extra=log_data)
        elif error_info.severity == ErrorSeverity.MEDIUM:
            self.logger.warning("Medium severity error occurred", extra=log_data)
        else:
            self.logger.info("Low severity error occurred", extra=log_data)

        return error_info


class RetryHandler:
    """
    Handles retry logic with exponential backoff.

    Delays are deterministic: attempt k (k > 1) waits
    ``base_delay * exponential_base ** (k - 2)`` seconds.
    """

    def __init__(
        self,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        logger: Optional[logging.Logger] = None
    ):
        self._sleep = sleep or asyncio.sleep
        self.logger = logger or logging.getLogger(__name__)

    async def retry_with_backoff(
        self,
        func: Callable[[int], Awaitable[Any]],
        retry_config: Optional[RetryConfig] = None,
        on_attempt: Optional[Callable[[int, int], None]] = None,
        on_failure: Optional[Callable[[Exception, int, int], None]] = None,
        on_retry: Optional[Callable[[int, int, float], None]] = None,
    ) -> Any:
        """
        Execute a coroutine function with retry logic and exponential backoff.

        Args:
            func: Coroutine function receiving the 1-based attempt number
            retry_config: Retry configuration
            on_attempt: Called with (attempt, max_attempts) before each try
            on_failure: Called with (error, attempt, max_attempts) after each failure
            on_retry: Called with (attempt, max_attempts, delay) before sleeping

        Returns:
            Result of the function execution

        Raises:
            The last exception if all retries are exhausted, or any
            non-retryable exception immediately
        """
        config = retry_config or RetryConfig()
        last_exception: Optional[Exception] = None

        for attempt in range(1, config.max_attempts + 1):
            if attempt > 1:
                delay = config.delay_before(attempt)
                if on_retry:
                    on_retry(attempt - 1, config.max_attempts, delay)
                await self._sleep(delay)

            if on_attempt:
                on_attempt(attempt, config.max_attempts)

            try:
                return await func(attempt)
            except Exception as e:
                if config.retryable_exceptions and not any(
                    isinstance(e, exc_type) for exc_type in config.retryable_exceptions
                ):
                    self.logger.info(f"Exception {type(e).__name__} is not retryable")
                    raise
                last_exception = e
                if on_failure:
                    on_failure(e, attempt, config.max_attempts)

        raise last_exception
