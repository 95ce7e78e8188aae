"""
Batch coordinator for the CloudSQL Migrator.

Runs the units of a resolved MigrationMapping through a bounded worker
pool, applies the stop-on-error and retry policies and aggregates the
per-unit outcomes into a BatchResult.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from cloudsql_migrator.core.error_handler import ErrorHandler
from cloudsql_migrator.core.exceptions import (
    MigrationCancelledError,
    MigrationTimeoutError,
)
from cloudsql_migrator.database.connection import ConnectionManager
from cloudsql_migrator.models.config import BatchOptions
from cloudsql_migrator.models.mapping import MigrationMapping, MigrationUnit
from cloudsql_migrator.models.results import (
    BatchResult,
    ProgressUpdate,
    UnitOutcome,
    UnitStatus,
)
from cloudsql_migrator.models.state import ExecutionState, ExecutionStatus
from cloudsql_migrator.orchestrator.engine import MigrationEngine
from cloudsql_migrator.utils.helpers import generate_batch_id

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]


@dataclass
class _Attempt:
    """Result of running one unit once."""
    unit: MigrationUnit
    status: UnitStatus
    state: Optional[ExecutionState] = None
    error: Optional[BaseException] = None


class BatchCoordinator:
    """
    Executes a batch of migration units.

    Unit failures become per-unit outcomes; only unexpected exceptions
    propagate out of `execute_batch`.
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        engine: Optional[MigrationEngine] = None,
        error_handler: Optional[ErrorHandler] = None
    ):
        self.connection_manager = connection_manager
        self.engine = engine or MigrationEngine(connection_manager)
        self.error_handler = error_handler or ErrorHandler()
        self.batch_id: Optional[str] = None
        self._abort_event = asyncio.Event()
        self._running: Dict[str, asyncio.Task] = {}
        self._states: Dict[str, ExecutionState] = {}
        self._pending: List[str] = []

    # ------------------------------------------------------------------
    # Control and introspection
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Abort the current batch: no new dispatch, running units are cancelled."""
        logger.warning(f"Cancellation requested for batch {self.batch_id}")
        self._abort_event.set()

    @property
    def cancelled(self) -> bool:
        return self._abort_event.is_set()

    def get_status(self) -> Dict[str, Any]:
        completed = [
            unit_id for unit_id, state in self._states.items()
            if state.status == ExecutionStatus.COMPLETED
        ]
        failed = [
            unit_id for unit_id, state in self._states.items()
            if state.status == ExecutionStatus.FAILED
        ]
        return {
            'batch_id': self.batch_id,
            'cancelled': self.cancelled,
            'active': sorted(self._running),
            'completed': completed,
            'failed': failed,
            'pending': list(self._pending),
            'units': {
                unit_id: {
                    'status': state.status.value,
                    'phase': state.current_phase.value if state.current_phase else None,
                    'progress': state.progress_percent,
                }
                for unit_id, state in self._states.items()
            },
        }

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_batch(
        self,
        mapping: MigrationMapping,
        progress_callback: Optional[ProgressCallback] = None,
        options: Optional[BatchOptions] = None,
        abort_event: Optional[asyncio.Event] = None
    ) -> BatchResult:
        """
        Resolve the mapping if needed and run every unit.

        Args:
            mapping: the mapping to execute
            progress_callback: receives every unit's events, tagged with
                the unit id, source and target
            options: concurrency, failure and retry policy
            abort_event: external cancellation signal

        Returns:
            BatchResult with one outcome per unit, in unit order
        """
        options = options or BatchOptions()
        self.batch_id = generate_batch_id()
        self._abort_event = abort_event if abort_event is not None else asyncio.Event()
        self._running.clear()
        self._states.clear()
        started = time.monotonic()

        try:
            units = await self._resolve(mapping)
            logger.info(
                f"Batch {self.batch_id}: {len(units)} unit(s), max_parallel={options.max_parallel}, "
                f"stop_on_error={options.stop_on_error}, retry_failed={options.retry_failed}"
            )

            attempts = await self._run_pass(units, progress_callback, options, options.stop_on_error)
            retried: Dict[str, _Attempt] = {}
            retryable = [
                unit for unit in units
                if attempts[unit.id].status == UnitStatus.FAILED
            ]
            if options.retry_failed and retryable and not self.cancelled:
                logger.info(f"Batch {self.batch_id}: retrying {len(retryable)} failed unit(s)")
                retried = await self._run_pass(retryable, progress_callback, options, False)
        finally:
            self._pending.clear()
            if options.close_connections:
                await self.connection_manager.close_all_connections()

        outcomes = tuple(
            self._build_outcome(attempts[unit.id], retried.get(unit.id))
            for unit in units
        )
        result = BatchResult(
            batch_id=self.batch_id,
            outcomes=outcomes,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            performance=self._performance(outcomes),
            warnings=tuple(mapping.warnings),
        )
        logger.info(
            f"Batch {self.batch_id} {result.status.value}: {result.succeeded} succeeded, "
            f"{result.failed} failed, {result.skipped} skipped, {result.cancelled} cancelled"
        )
        return result

    async def _resolve(self, mapping: MigrationMapping) -> List[MigrationUnit]:
        if mapping.is_resolved:
            return mapping.resolve()

        discovered: Dict[str, List[str]] = {}
        for source in mapping.sources_needing_discovery():
            databases = await self.connection_manager.list_databases(source)
            discovered[source.instance_label] = [db.name for db in databases]
            logger.info(f"Discovered {len(databases)} database(s) on {source.instance_label}")

        versions: Dict[str, str] = {}
        for source in mapping.sources_needing_version():
            versions[source.instance_label] = await self.connection_manager.get_server_version(source)

        return mapping.resolve(discovered, versions)

    async def _run_pass(
        self,
        units: List[MigrationUnit],
        progress_callback: Optional[ProgressCallback],
        options: BatchOptions,
        stop_on_error: bool
    ) -> Dict[str, _Attempt]:
        """Run units under the max_parallel bound; returns an attempt per unit."""
        semaphore = asyncio.Semaphore(options.max_parallel)
        attempts: Dict[str, _Attempt] = {}
        stop_requested = False
        self._pending = [unit.id for unit in units]

        async def worker(unit: MigrationUnit):
            nonlocal stop_requested
            async with semaphore:
                self._pending.remove(unit.id)
                if self.cancelled:
                    attempts[unit.id] = _Attempt(unit, UnitStatus.CANCELLED)
                    return
                if stop_requested:
                    attempts[unit.id] = _Attempt(unit, UnitStatus.SKIPPED)
                    return
                attempt = await self._run_unit(unit, progress_callback, options.unit_timeout)
                attempts[unit.id] = attempt
                if attempt.status == UnitStatus.FAILED and stop_on_error:
                    if not stop_requested:
                        logger.warning(f"Unit {unit.id} failed; no further units will be dispatched")
                    stop_requested = True

        workers = [asyncio.create_task(worker(unit)) for unit in units]
        watcher = asyncio.create_task(self._watch_abort())
        try:
            await asyncio.gather(*workers)
        except BaseException:
            running = list(self._running.values())
            for task in workers + running:
                task.cancel()
            await asyncio.gather(*workers, *running, return_exceptions=True)
            raise
        finally:
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)
        return attempts

    async def _watch_abort(self) -> None:
        await self._abort_event.wait()
        for unit_id, task in list(self._running.items()):
            logger.info(f"Cancelling running unit {unit_id}")
            task.cancel()

    async def _run_unit(
        self,
        unit: MigrationUnit,
        progress_callback: Optional[ProgressCallback],
        timeout: Optional[float]
    ) -> _Attempt:
        state = ExecutionState(unit_id=unit.id, dry_run=unit.options.dry_run)
        self._states[unit.id] = state
        task = asyncio.create_task(
            self.engine.run_unit(unit, self._forward(unit, progress_callback), self._abort_event, state)
        )
        self._running[unit.id] = task
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            timed_out = not done
            if timed_out:
                task.cancel()
                await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.wait({task})
            raise
        finally:
            self._running.pop(unit.id, None)

        if timed_out:
            error = MigrationTimeoutError(
                f"Unit {unit.id} exceeded the {timeout:g}s timeout",
                details={'timeout_seconds': timeout}
            )
            if not state.is_terminal:
                state.fail(error)
            return _Attempt(unit, UnitStatus.FAILED, state, error)

        if task.cancelled():
            error = state.exception or MigrationCancelledError(f"Unit {unit.id} was cancelled")
            if not state.is_terminal:
                state.fail(error)
            return _Attempt(unit, UnitStatus.CANCELLED, state, error)

        # Unexpected exceptions propagate unmodified.
        state = task.result()
        if state.status == ExecutionStatus.COMPLETED:
            return _Attempt(unit, UnitStatus.SUCCEEDED, state)
        if isinstance(state.exception, MigrationCancelledError):
            return _Attempt(unit, UnitStatus.CANCELLED, state, state.exception)
        return _Attempt(unit, UnitStatus.FAILED, state, state.exception)

    @staticmethod
    def _forward(unit: MigrationUnit, callback: Optional[ProgressCallback]) -> Optional[ProgressCallback]:
        if callback is None:
            return None

        def relay(update: ProgressUpdate) -> None:
            callback(update.tagged(unit.id, unit.source_label, unit.target_label))

        return relay

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def _build_outcome(self, first: _Attempt, retry: Optional[_Attempt]) -> UnitOutcome:
        final = retry or first
        unit = final.unit
        fields: Dict[str, Any] = {}

        if final.state is not None:
            snapshot = final.state.snapshot()
            fields.update(
                phase_reached=snapshot.phase_reached,
                metrics=snapshot.metrics.model_dump(),
                duration_ms=snapshot.duration_ms,
                result=snapshot.result,
            )

        if final.status == UnitStatus.SKIPPED:
            fields['reason'] = "Not dispatched after an earlier unit failed"
        elif final.status == UnitStatus.CANCELLED and final.error is None:
            fields['reason'] = "Not dispatched: batch cancelled"
        elif final.error is not None:
            info = self.error_handler.handle_error(final.error, operation=unit.id)
            fields.update(
                error=str(final.error),
                error_code=getattr(final.error, 'code', None) or type(final.error).__name__,
                reason=info.reason,
                remediation=list(info.remediation_steps),
            )

        return UnitOutcome(
            unit_id=unit.id,
            source=unit.source_label,
            target=unit.target_label,
            databases=list(unit.target_names),
            status=final.status,
            retried=retry is not None,
            attempts=sum(1 for a in (first, retry) if a is not None and a.state is not None),
            **fields,
        )

    @staticmethod
    def _performance(outcomes) -> Dict[str, Any]:
        durations = [o.duration_ms for o in outcomes if o.status == UnitStatus.SUCCEEDED]
        if not durations:
            return {'units_timed': 0}
        return {
            'units_timed': len(durations),
            'avg_unit_duration_ms': int(sum(durations) / len(durations)),
            'min_unit_duration_ms': min(durations),
            'max_unit_duration_ms': max(durations),
        }
