"""
Logging system for the CloudSQL Migrator.

This module provides logging setup with rich console output, structured
JSON records, log rotation, and a component logger that attaches
migration metadata to every record.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, field, asdict
from enum import Enum

from rich.console import Console
from rich.logging import RichHandler


ROOT_LOGGER_NAME = "cloudsql_migrator"

_RESERVED_RECORD_KEYS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage',
    'exc_info', 'exc_text', 'stack_info', 'taskName', 'message', 'asctime',
])


class LogLevel(str, Enum):
    """Log levels for structured logging."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogCategory(str, Enum):
    """Categories for structured logging."""
    SYSTEM = "system"
    CONNECTION = "connection"
    DATABASE = "database"
    PROCESS = "process"
    MAPPING = "mapping"
    MIGRATION = "migration"
    BATCH = "batch"


@dataclass
class LogEntry:
    """Structured log entry with metadata."""
    timestamp: datetime = field(default_factory=datetime.now)
    level: LogLevel = LogLevel.INFO
    category: LogCategory = LogCategory.SYSTEM
    message: str = ""
    component: Optional[str] = None
    unit_id: Optional[str] = None
    phase: Optional[str] = None
    duration: Optional[float] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert log entry to dictionary."""
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    def to_json(self) -> str:
        """Convert log entry to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class StructuredFormatter(logging.Formatter):
    """Formatter for structured JSON logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = getattr(record, 'log_entry', None)

        if log_entry and isinstance(log_entry, LogEntry):
            return log_entry.to_json()

        log_entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created),
            level=LogLevel(record.levelname),
            message=record.getMessage(),
            component=record.name,
            metadata={
                'module': record.module,
                'function': record.funcName,
                'line': record.lineno,
            }
        )

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_entry.metadata[key] = value

        if record.exc_info:
            log_entry.metadata['exception'] = self.formatException(record.exc_info)

        return log_entry.to_json()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    rich_console: bool = True,
    structured_logging: bool = False,
    log_rotation: bool = True,
    max_log_size: int = 50 * 1024 * 1024,  # 50MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Set up logging configuration for the CloudSQL Migrator.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        rich_console: Whether to use Rich console handler
        structured_logging: Whether to use structured JSON logging
        log_rotation: Whether to enable log rotation
        max_log_size: Maximum log file size before rotation
        backup_count: Number of backup log files to keep

    Returns:
        Configured root logger of the package
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    plain_formatter = logging.Formatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    if rich_console and not structured_logging:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True
        )
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        if structured_logging:
            console_handler.setFormatter(StructuredFormatter())
        else:
            console_handler.setFormatter(plain_formatter)

    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        if log_rotation:
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_log_size,
                backupCount=backup_count
            )
        else:
            file_handler = logging.FileHandler(log_file)

        if structured_logging:
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(plain_formatter)

        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific component."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class MigrationLogger:
    """Component logger for migration operations with structured metadata."""

    def __init__(self, component: str, structured: bool = False):
        self.component = component
        self.structured = structured
        self.logger = get_logger(component)

    def _log(
        self,
        level: LogLevel,
        message: str,
        category: LogCategory = LogCategory.MIGRATION,
        unit_id: Optional[str] = None,
        phase: Optional[str] = None,
        duration: Optional[float] = None,
        error_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        log_method = getattr(self.logger, level.value.lower())
        if self.structured:
            log_entry = LogEntry(
                level=level,
                category=category,
                message=message,
                component=self.component,
                unit_id=unit_id,
                phase=phase,
                duration=duration,
                error_code=error_code,
                metadata=metadata or {}
            )
            log_method(message, extra={'log_entry': log_entry})
        else:
            extra = dict(metadata or {})
            extra['category'] = category.value
            if unit_id:
                extra['unit_id'] = unit_id
            if phase:
                extra['phase'] = phase
            if error_code:
                extra['error_code'] = error_code
            log_method(message, extra=extra)

    def debug(self, message: str, **kwargs):
        self._log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(LogLevel.ERROR, message, **kwargs)

    def log_connection_attempt(self, target: str, attempt: int, max_attempts: int):
        """Log a connection attempt."""
        self.info(
            f"Connecting to {target} (attempt {attempt}/{max_attempts})",
            category=LogCategory.CONNECTION,
            metadata={'target': target, 'attempt': attempt, 'max_attempts': max_attempts}
        )

    def log_connection_success(self, target: str, resolution: Optional[str] = None):
        """Log a successful connection."""
        self.info(
            f"Connected to {target}",
            category=LogCategory.CONNECTION,
            metadata={'target': target, 'resolution': resolution}
        )

    def log_connection_error(self, target: str, error: Exception, attempt: int, max_attempts: int):
        """Log a failed connection attempt."""
        self.warning(
            f"Connection to {target} failed (attempt {attempt}/{max_attempts}): {error}",
            category=LogCategory.CONNECTION,
            error_code=type(error).__name__,
            metadata={'target': target, 'attempt': attempt, 'max_attempts': max_attempts}
        )

    def log_retry(self, target: str, delay: float):
        """Log a backoff delay before retrying."""
        self.info(
            f"Retrying {target} in {delay:.1f}s",
            category=LogCategory.CONNECTION,
            metadata={'target': target, 'delay_seconds': delay}
        )

    def log_database_operation(
        self,
        operation: str,
        database: str,
        size_bytes: Optional[int] = None,
        duration: Optional[float] = None,
        unit_id: Optional[str] = None
    ):
        """Log a completed database operation."""
        message = f"Database operation: {operation} on {database}"
        if size_bytes:
            message += f" ({size_bytes} bytes)"
        if duration:
            message += f" in {duration:.2f}s"

        self.info(
            message,
            category=LogCategory.DATABASE,
            unit_id=unit_id,
            duration=duration,
            metadata={
                'operation_type': operation,
                'database': database,
                'size_bytes': size_bytes,
            }
        )

    def phase_start(self, phase: str, unit_id: Optional[str] = None):
        """Log phase start."""
        self.info(
            f"Starting phase: {phase}",
            unit_id=unit_id,
            phase=phase,
            metadata={'phase_status': 'started'}
        )

    def phase_complete(self, phase: str, duration: float, unit_id: Optional[str] = None):
        """Log phase completion."""
        self.info(
            f"Completed phase: {phase} (took {duration:.2f}s)",
            unit_id=unit_id,
            phase=phase,
            duration=duration,
            metadata={'phase_status': 'completed'}
        )

    def phase_failed(
        self,
        phase: str,
        error: str,
        unit_id: Optional[str] = None,
        error_code: Optional[str] = None
    ):
        """Log phase failure."""
        self.error(
            f"Failed phase: {phase} - {error}",
            unit_id=unit_id,
            phase=phase,
            error_code=error_code,
            metadata={'phase_status': 'failed', 'error_details': error}
        )
