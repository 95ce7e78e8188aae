"""
Execution state models for the CloudSQL Migrator.

Each migration unit owns one ExecutionState and drives it through the
phases in declared order. Illegal mutations raise StateTransitionError.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ConfigDict

from cloudsql_migrator.core.exceptions import StateTransitionError


class Phase(str, Enum):
    """Phases of a migration unit, in execution order."""
    VALIDATION = "Validation"
    DISCOVERY = "Discovery"
    PREFLIGHT_CHECKS = "Pre-flight Checks"
    EXPORT = "Export"
    IMPORT = "Import"
    POST_MIGRATION_VALIDATION = "Post-migration Validation"
    CLEANUP = "Cleanup"


PHASE_ORDER: List[Phase] = list(Phase)


class ExecutionStatus(str, Enum):
    """Execution status of a unit."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class ExecutionMetrics(BaseModel):
    """Metrics accumulated while a unit runs."""
    total_size: int = 0
    transferred_size: int = 0
    duration_ms: int = 0
    databases_total: int = 0
    databases_processed: int = 0
    estimated_minutes: Optional[int] = None

    def merge(self, partial: Dict[str, Any]) -> None:
        """Merge fields, never replacing a positive value with zero or None."""
        for name, value in partial.items():
            if name not in type(self).model_fields:
                raise StateTransitionError(f"Unknown metric: {name}")
            current = getattr(self, name)
            if value is None or value == 0:
                if current:
                    continue
                if value is None and name != 'estimated_minutes':
                    continue
            setattr(self, name, value)


class ExecutionSnapshot(BaseModel):
    """Immutable view of an ExecutionState."""
    model_config = ConfigDict(frozen=True)

    unit_id: str
    status: ExecutionStatus
    current_phase: Optional[Phase]
    completed_phases: List[Phase]
    metrics: ExecutionMetrics
    warnings: List[str]
    progress_percent: float
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    duration_ms: int
    result: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def phase_reached(self) -> Optional[str]:
        return self.current_phase.value if self.current_phase else None


class ExecutionState(BaseModel):
    """Phase state machine for one migration unit."""
    model_config = ConfigDict(arbitrary_types_allowed=True, validate_assignment=False)

    unit_id: str
    dry_run: bool = False
    phases: List[Phase] = Field(default_factory=lambda: list(PHASE_ORDER))
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_phase: Optional[Phase] = None
    completed_phases: List[Phase] = Field(default_factory=list)
    phase_started_at: Dict[Phase, datetime] = Field(default_factory=dict)
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    warnings: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    exception: Optional[BaseException] = Field(default=None, exclude=True, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _require_running(self, action: str):
        if self.status != ExecutionStatus.RUNNING:
            raise StateTransitionError(
                f"Cannot {action} unit {self.unit_id} in status {self.status.value}"
            )

    def start(self, phases: Optional[List[Union[Phase, str]]] = None) -> None:
        """Begin execution at the first phase."""
        if self.status != ExecutionStatus.PENDING:
            raise StateTransitionError(f"Unit {self.unit_id} already started")
        if phases is not None:
            self.phases = [Phase(phase) for phase in phases]
        if not self.phases:
            raise StateTransitionError("Phase list must not be empty")
        now = datetime.now()
        self.status = ExecutionStatus.RUNNING
        self.started_at = now
        self.current_phase = self.phases[0]
        self.phase_started_at[self.current_phase] = now

    def set_current_phase(self, phase: Union[Phase, str]) -> None:
        """Advance to a phase; re-entering the current phase is allowed."""
        self._require_running("change phase of")
        phase = Phase(phase)
        if phase not in self.phases:
            raise StateTransitionError(f"Phase {phase.value} is not part of this execution")

        if self.dry_run and PHASE_ORDER.index(phase) > PHASE_ORDER.index(Phase.PREFLIGHT_CHECKS):
            raise StateTransitionError(f"Dry run cannot enter phase {phase.value}")

        current_index = self.phases.index(self.current_phase)
        new_index = self.phases.index(phase)
        if new_index < current_index:
            raise StateTransitionError(
                f"Cannot move back from {self.current_phase.value} to {phase.value}"
            )
        if new_index > current_index and self.current_phase not in self.completed_phases:
            self.completed_phases.append(self.current_phase)

        self.current_phase = phase
        self.phase_started_at[phase] = datetime.now()

    def update_metrics(self, partial: Optional[Dict[str, Any]] = None, **fields) -> None:
        """Merge metric fields into the accumulator."""
        if self.is_terminal:
            raise StateTransitionError(f"Metrics of unit {self.unit_id} are frozen")
        values = dict(partial or {})
        values.update(fields)
        self.metrics.merge(values)

    def add_warning(self, warning: str) -> None:
        if warning not in self.warnings:
            self.warnings.append(warning)

    def complete(self, result: Any = None) -> None:
        """Terminal success."""
        self._require_running("complete")
        if self.current_phase not in self.completed_phases:
            self.completed_phases.append(self.current_phase)
        self.finished_at = datetime.now()
        self.metrics.merge({'duration_ms': self.duration_ms})
        self.status = ExecutionStatus.COMPLETED
        self.result = result

    def fail(self, error: Union[BaseException, str]) -> None:
        """Terminal failure, reachable from any non-terminal status."""
        if self.is_terminal:
            raise StateTransitionError(f"Unit {self.unit_id} already {self.status.value}")
        self.finished_at = datetime.now()
        if self.started_at:
            self.metrics.merge({'duration_ms': self.duration_ms})
        self.status = ExecutionStatus.FAILED
        if isinstance(error, BaseException):
            self.exception = error
            self.error = str(error) or type(error).__name__
            self.error_code = getattr(error, 'code', None) or type(error).__name__
        else:
            self.error = error

    @property
    def duration_ms(self) -> int:
        if not self.started_at:
            return 0
        end = self.finished_at or datetime.now()
        return int((end - self.started_at).total_seconds() * 1000)

    @property
    def progress_percent(self) -> float:
        if self.status == ExecutionStatus.COMPLETED:
            return 100.0
        if not self.phases:
            return 0.0
        return round(len(self.completed_phases) / len(self.phases) * 100, 1)

    def snapshot(self) -> ExecutionSnapshot:
        """Immutable copy of the current state."""
        return ExecutionSnapshot(
            unit_id=self.unit_id,
            status=self.status,
            current_phase=self.current_phase,
            completed_phases=list(self.completed_phases),
            metrics=self.metrics.model_copy(),
            warnings=list(self.warnings),
            progress_percent=self.progress_percent,
            started_at=self.started_at,
            finished_at=self.finished_at,
            duration_ms=self.duration_ms,
            result=self.result,
            error=self.error,
            error_code=self.error_code,
        )
