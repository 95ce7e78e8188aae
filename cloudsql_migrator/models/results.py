"""
Result models for the CloudSQL Migrator.

Progress events emitted while a unit runs, the per-unit outcome record
and the aggregated batch result.
"""

from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ProgressUpdate:
    """A single progress event."""
    phase: str
    current: int
    total: int
    status: str
    size_bytes: Optional[int] = None
    database: Optional[str] = None
    unit_id: Optional[str] = None
    source: Optional[str] = None
    target: Optional[str] = None

    def tagged(self, unit_id: str, source: str, target: str) -> "ProgressUpdate":
        """Copy of this event tagged with its unit's identifiers."""
        return replace(self, unit_id=unit_id, source=source, target=target)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class UnitStatus(str, Enum):
    """Final status of a migration unit within a batch."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class BatchStatus(str, Enum):
    """Aggregate status of a batch."""
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class MigrationResult:
    """Result of one migrated unit."""
    unit_id: str
    source: str
    target: str
    migrated_databases: List[str] = field(default_factory=list)
    duration_ms: int = 0
    bytes_exported: int = 0
    bytes_imported: int = 0
    dry_run: bool = False
    estimated_minutes: Optional[int] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UnitOutcome:
    """Per-unit record in a batch result."""
    unit_id: str
    source: str
    target: str
    databases: List[str]
    status: UnitStatus
    retried: bool = False
    attempts: int = 0
    phase_reached: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    reason: Optional[str] = None
    remediation: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0
    result: Optional[MigrationResult] = None

    @property
    def label(self) -> str:
        """Status as shown in summaries."""
        if self.status == UnitStatus.SUCCEEDED and self.retried:
            return "succeeded (retried)"
        return self.status.value

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        data['label'] = self.label
        return data


@dataclass(frozen=True)
class BatchResult:
    """Aggregated result of a batch. Immutable once returned."""
    batch_id: str
    outcomes: Tuple[UnitOutcome, ...]
    elapsed_ms: int
    performance: Dict[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    def _count(self, status: UnitStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return self._count(UnitStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(UnitStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(UnitStatus.SKIPPED)

    @property
    def cancelled(self) -> int:
        return self._count(UnitStatus.CANCELLED)

    @property
    def retried(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.retried)

    @property
    def status(self) -> BatchStatus:
        if self.succeeded == self.total:
            return BatchStatus.COMPLETED
        if self.cancelled and not self.failed:
            return BatchStatus.CANCELLED
        if self.succeeded:
            return BatchStatus.PARTIAL_FAILURE
        return BatchStatus.FAILED

    @property
    def is_partial_failure(self) -> bool:
        return self.status == BatchStatus.PARTIAL_FAILURE

    def outcome(self, unit_id: str) -> UnitOutcome:
        for outcome in self.outcomes:
            if outcome.unit_id == unit_id:
                return outcome
        raise KeyError(unit_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'batch_id': self.batch_id,
            'status': self.status.value,
            'total': self.total,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'skipped': self.skipped,
            'cancelled': self.cancelled,
            'retried': self.retried,
            'elapsed_ms': self.elapsed_ms,
            'performance': dict(self.performance),
            'warnings': list(self.warnings),
            'units': [outcome.to_dict() for outcome in self.outcomes],
        }
