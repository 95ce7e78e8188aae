"""
Migration engine for the CloudSQL Migrator.

Drives a single migration unit through its phases:
Validation, Discovery, Pre-flight Checks, Export, Import,
Post-migration Validation and Cleanup.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from cloudsql_migrator.core.exceptions import (
    MigrationCancelledError,
    MigrationToolError,
    ValidationError,
)
from cloudsql_migrator.database.connection import ConnectionManager
from cloudsql_migrator.database.operations import DatabaseOperations, ExportArtifact
from cloudsql_migrator.models.config import (
    MappingStrategy,
    OperationConfig,
    Role,
)
from cloudsql_migrator.models.mapping import MigrationMapping, MigrationUnit
from cloudsql_migrator.models.results import MigrationResult, ProgressUpdate
from cloudsql_migrator.models.state import PHASE_ORDER, ExecutionState, Phase
from cloudsql_migrator.utils.logging import MigrationLogger

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]


@dataclass
class _UnitContext:
    unit: MigrationUnit
    state: ExecutionState
    progress_callback: Optional[ProgressCallback]
    abort_event: Optional[asyncio.Event]
    artifacts: Dict[str, ExportArtifact] = field(default_factory=dict)
    bytes_exported: int = 0
    bytes_imported: int = 0


class MigrationEngine:
    """
    Runs migration units.

    `run_unit` returns the unit's terminal ExecutionState and captures
    expected failures in it; `migrate` is the single-migration entry
    point and raises the classified error instead.
    """

    def __init__(
        self,
        connection_manager: ConnectionManager,
        operations: Optional[DatabaseOperations] = None
    ):
        self.connection_manager = connection_manager
        self.operations = operations or DatabaseOperations(connection_manager)
        self._log = MigrationLogger("engine")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def migrate(
        self,
        config: OperationConfig,
        progress_callback: Optional[ProgressCallback] = None,
        abort_event: Optional[asyncio.Event] = None,
        close_connections: bool = True
    ) -> MigrationResult:
        """
        Migrate the selected databases from one source to one target.

        Raises:
            MigrationToolError: the classified error of a failed migration
        """
        config.validate_config()
        source = config.source.with_role(Role.SOURCE)
        target = config.target.with_role(Role.TARGET)

        try:
            if not source.databases:
                databases = await self.connection_manager.list_databases(source)
                if not databases:
                    raise ValidationError(
                        f"No user databases found on {source.instance_label}",
                        failed_checks=["databases"]
                    )
                source = source.model_copy(update={'databases': [d.name for d in databases]})

            mapping = MigrationMapping(
                strategy=MappingStrategy.SIMPLE,
                sources=[source],
                targets=[target],
                options=config.options,
            )
            unit = mapping.resolve()[0]
            state = await self.run_unit(unit, progress_callback, abort_event)
        finally:
            if close_connections:
                await self.connection_manager.close_all_connections()

        if state.exception is not None:
            raise state.exception
        return state.result

    async def run_unit(
        self,
        unit: MigrationUnit,
        progress_callback: Optional[ProgressCallback] = None,
        abort_event: Optional[asyncio.Event] = None,
        state: Optional[ExecutionState] = None
    ) -> ExecutionState:
        """
        Run one unit through every phase and return its terminal state.

        Expected failures (MigrationToolError) end in a Failed state.
        Anything else fails the state and propagates.
        """
        if state is None:
            state = ExecutionState(unit_id=unit.id, dry_run=unit.options.dry_run)
        ctx = _UnitContext(unit, state, progress_callback, abort_event)
        state.start(PHASE_ORDER)
        logger.info(
            f"Unit {unit.id}: {unit.source_label} -> {unit.target_label} "
            f"({', '.join(unit.database_names)})"
        )

        try:
            await self._run_phase(ctx, Phase.VALIDATION, self._validate)
            await self._run_phase(ctx, Phase.DISCOVERY, self._discover)
            await self._run_phase(ctx, Phase.PREFLIGHT_CHECKS, self._preflight)

            if unit.options.dry_run:
                state.complete(self._build_result(ctx, dry_run=True))
                logger.info(f"Unit {unit.id}: dry run finished after pre-flight checks")
                return state

            await self._run_phase(ctx, Phase.EXPORT, self._export)
            await self._run_phase(ctx, Phase.IMPORT, self._import)
            await self._run_phase(ctx, Phase.POST_MIGRATION_VALIDATION, self._post_validate)
            await self._run_phase(ctx, Phase.CLEANUP, self._cleanup)
            state.complete(self._build_result(ctx))
        except MigrationToolError as e:
            state.fail(e)
        except asyncio.CancelledError:
            state.fail(MigrationCancelledError(f"Unit {unit.id} was cancelled"))
            raise
        except Exception as e:
            state.fail(e)
            raise
        finally:
            self._discard_artifacts(ctx)

        return state

    # ------------------------------------------------------------------
    # Phase plumbing
    # ------------------------------------------------------------------

    def _check_abort(self, ctx: _UnitContext, phase: Phase) -> None:
        if ctx.abort_event is not None and ctx.abort_event.is_set():
            raise MigrationCancelledError(f"Unit {ctx.unit.id} aborted before {phase.value}")

    async def _run_phase(
        self,
        ctx: _UnitContext,
        phase: Phase,
        handler: Callable[[_UnitContext], Awaitable[None]]
    ) -> None:
        self._check_abort(ctx, phase)
        ctx.state.set_current_phase(phase)
        self._log.phase_start(phase.value, unit_id=ctx.unit.id)
        self._notify(ctx, phase, "started")
        started = time.monotonic()
        try:
            await handler(ctx)
        except Exception as e:
            self._log.phase_failed(
                phase.value, str(e), unit_id=ctx.unit.id,
                error_code=getattr(e, 'code', type(e).__name__)
            )
            self._notify(ctx, phase, "failed")
            raise
        self._log.phase_complete(phase.value, time.monotonic() - started, unit_id=ctx.unit.id)
        self._notify(ctx, phase, "completed")

    def _notify(
        self,
        ctx: _UnitContext,
        phase: Phase,
        status: str,
        current: Optional[int] = None,
        total: Optional[int] = None,
        database: Optional[str] = None
    ) -> None:
        """Send a progress event; a failing callback never fails the unit."""
        if ctx.progress_callback is None:
            return
        update = ProgressUpdate(
            phase=phase.value,
            current=current if current is not None else PHASE_ORDER.index(phase) + 1,
            total=total if total is not None else len(PHASE_ORDER),
            status=status,
            size_bytes=ctx.bytes_imported or ctx.bytes_exported or None,
            database=database,
            unit_id=ctx.unit.id,
        )
        try:
            ctx.progress_callback(update)
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _validate(self, ctx: _UnitContext) -> None:
        unit = ctx.unit
        problems = []
        if not unit.databases:
            problems.append("No databases selected")
        if unit.source.instance_key == unit.target.instance_key and not any(
            db.renamed for db in unit.databases
        ):
            problems.append("Source and target are the same instance")
        if problems:
            raise ValidationError(
                f"Unit {unit.id} is invalid: " + "; ".join(problems),
                failed_checks=problems
            )
        # Resolves host, SSL and credentials for both sides; fails fast.
        self.connection_manager.create_connection_config(unit.source)
        self.connection_manager.create_connection_config(unit.target)
        ctx.state.update_metrics(databases_total=len(unit.databases))

    async def _discover(self, ctx: _UnitContext) -> None:
        unit = ctx.unit
        available = {
            info.name: info.size_bytes
            for info in await self.connection_manager.list_databases(unit.source)
        }
        missing = [name for name in unit.database_names if name not in available]
        if missing:
            raise ValidationError(
                f"Database(s) not found on {unit.source_label}: {', '.join(missing)}",
                failed_checks=[f"database:{name}" for name in missing]
            )
        await self.connection_manager.connect(unit.target.for_database("postgres"))
        ctx.state.update_metrics(total_size=sum(available[name] for name in unit.database_names))

    async def _preflight(self, ctx: _UnitContext) -> None:
        unit = ctx.unit
        options = unit.options

        report = await self.operations.check_compatibility(
            unit.source, unit.target, force=options.force_compatibility
        )
        for warning in report.warnings:
            ctx.state.add_warning(warning)
        if not report.compatible:
            raise ValidationError(
                f"Incompatible versions: source {report.source_version}, target {report.target_version}",
                failed_checks=["version"]
            )

        estimate = await self.operations.get_migration_estimate(
            unit.source, unit.database_names, options
        )
        if estimate.fallback:
            ctx.state.add_warning("Migration estimate unavailable; using a conservative default")
        ctx.state.update_metrics(
            estimated_minutes=estimate.estimated_minutes,
            total_size=estimate.total_size_bytes,
        )
        logger.info(
            f"Unit {unit.id}: estimated {estimate.estimated_minutes} min "
            f"for {estimate.total_size_bytes} bytes"
        )

    async def _export(self, ctx: _UnitContext) -> None:
        unit = ctx.unit
        await self.operations.init()
        total = len(unit.databases)
        for index, database in enumerate(unit.databases, start=1):
            self._check_abort(ctx, Phase.EXPORT)
            artifact = await self.operations.export_database(
                unit.source, database.source_name, unit.options
            )
            ctx.artifacts[database.source_name] = artifact
            ctx.bytes_exported += artifact.size_bytes
            for warning in artifact.warnings:
                ctx.state.add_warning(warning)
            self._notify(ctx, Phase.EXPORT, "running", index, total, database.source_name)

    async def _import(self, ctx: _UnitContext) -> None:
        unit = ctx.unit
        total = len(unit.databases)
        for index, database in enumerate(unit.databases, start=1):
            self._check_abort(ctx, Phase.IMPORT)
            artifact = ctx.artifacts[database.source_name]
            result = await self.operations.import_database(
                unit.target,
                database.source_name,
                artifact.path,
                unit.options,
                target_database=database.target_name,
                target_schema=database.target_schema,
            )
            ctx.bytes_imported += artifact.size_bytes
            for warning in result.warnings:
                ctx.state.add_warning(warning)
            ctx.state.update_metrics(
                transferred_size=ctx.bytes_imported,
                databases_processed=index,
            )
            self._notify(ctx, Phase.IMPORT, "running", index, total, database.target_name)

    async def _post_validate(self, ctx: _UnitContext) -> None:
        unit = ctx.unit
        existing = await self.operations.get_existing_databases(unit.target, unit.target_names)
        missing = [name for name in unit.target_names if name not in existing]
        if missing:
            raise ValidationError(
                f"Database(s) missing on {unit.target_label} after import: {', '.join(missing)}",
                failed_checks=[f"target:{name}" for name in missing]
            )
        for name in unit.target_names:
            if existing[name] == 0:
                ctx.state.add_warning(f"Target database {name} reports zero size")

    async def _cleanup(self, ctx: _UnitContext) -> None:
        self._discard_artifacts(ctx)

    def _discard_artifacts(self, ctx: _UnitContext) -> None:
        if ctx.unit.options.keep_artifacts:
            if ctx.artifacts:
                logger.info(
                    f"Keeping artifacts for unit {ctx.unit.id}: "
                    + ", ".join(str(a.path) for a in ctx.artifacts.values())
                )
            return
        for artifact in ctx.artifacts.values():
            self.operations.remove_artifact(artifact.path)
        ctx.artifacts.clear()

    def _build_result(self, ctx: _UnitContext, dry_run: bool = False) -> MigrationResult:
        unit = ctx.unit
        return MigrationResult(
            unit_id=unit.id,
            source=unit.source_label,
            target=unit.target_label,
            migrated_databases=[] if dry_run else list(unit.target_names),
            duration_ms=ctx.state.duration_ms,
            bytes_exported=ctx.bytes_exported,
            bytes_imported=ctx.bytes_imported,
            dry_run=dry_run,
            estimated_minutes=ctx.state.metrics.estimated_minutes,
            warnings=list(ctx.state.warnings),
        )
