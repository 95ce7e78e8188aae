"""
Helper utilities for the CloudSQL Migrator.

This module contains small formatting and naming helpers used
throughout the application.
"""

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def generate_batch_id() -> str:
    """Generate a unique batch ID."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    unique_id = str(uuid.uuid4())[:8]
    return f"batch_{timestamp}_{unique_id}"


def generate_unit_id(index: int, source_instance: str, target_instance: str) -> str:
    """Generate a stable, readable migration unit ID."""
    return f"unit_{index + 1:03d}_{safe_identifier(source_instance)}_to_{safe_identifier(target_instance)}"


def safe_identifier(value: str) -> str:
    """Convert a string to a filesystem and identifier safe token."""
    cleaned = re.sub(r"[^A-Za-z0-9_]+", "_", value).strip("_")
    return cleaned or "x"


def format_bytes(bytes_count: float) -> str:
    """Format bytes into human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024.0:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024.0
    return f"{bytes_count:.1f} PB"


def format_duration(seconds: float) -> str:
    """Format duration in seconds to human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = seconds / 60
        return f"{minutes:.1f}m"
    else:
        hours = seconds / 3600
        return f"{hours:.1f}h"


def sanitize_dict(data: Dict[str, Any], sensitive_keys: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Sanitize dictionary by masking sensitive values.

    Args:
        data: Dictionary to sanitize
        sensitive_keys: List of keys to mask (default: common sensitive keys)

    Returns:
        Sanitized dictionary
    """
    if sensitive_keys is None:
        sensitive_keys = ['password', 'passwd', 'secret', 'token', 'sslkey']

    def _sanitize_value(key: str, value: Any) -> Any:
        if isinstance(value, dict):
            return sanitize_dict(value, sensitive_keys)
        elif any(sensitive_key in key.lower() for sensitive_key in sensitive_keys):
            return "***MASKED***" if value else value
        else:
            return value

    return {key: _sanitize_value(key, value) for key, value in data.items()}
