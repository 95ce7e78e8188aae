"""
Tests for the migration engine that drives one unit through its phases.
"""

import asyncio
from pathlib import Path
from unittest.mock import Mock

import pytest

from cloudsql_migrator.core.exceptions import (
    MigrationCancelledError,
    ProcessExecutionError,
    ValidationError,
)
from cloudsql_migrator.database.connection import ConnectionManager, DatabaseInfo
from cloudsql_migrator.database.operations import (
    CompatibilityReport,
    DatabaseOperations,
    ExportArtifact,
    ImportResult,
    MigrationEstimate,
)
from cloudsql_migrator.models.config import (
    ConflictResolution,
    MappingStrategy,
    MigrationOptions,
    OperationConfig,
    Role,
)
from cloudsql_migrator.models.mapping import MigrationMapping
from cloudsql_migrator.models.state import PHASE_ORDER, ExecutionState, ExecutionStatus, Phase
from cloudsql_migrator.orchestrator.engine import MigrationEngine

from conftest import make_descriptor

MB = 1024 * 1024


@pytest.fixture
def connection_manager():
    manager = Mock(spec=ConnectionManager)
    manager.list_databases.return_value = [
        DatabaseInfo("appdb", 100 * MB),
        DatabaseInfo("sales", 50 * MB),
    ]
    return manager


@pytest.fixture
def operations(tmp_path):
    ops = Mock(spec=DatabaseOperations)
    ops.check_compatibility.return_value = CompatibilityReport(True, "14.9", "15.4")
    ops.get_migration_estimate.return_value = MigrationEstimate([], 150 * MB, 12, 25.0, [])

    async def export(source, database, options):
        path = tmp_path / f"{database}.dump"
        path.write_bytes(b"x" * 10)
        return ExportArtifact(database=database, path=path, size_bytes=10, duration_ms=5)

    def restore(target, database, path, options, target_database=None, target_schema=None):
        return ImportResult(
            database=database,
            target_database=target_database or database,
            duration_ms=5,
            target_schema=target_schema,
        )

    def remove(path):
        Path(path).unlink(missing_ok=True)
        return True

    ops.export_database.side_effect = export
    ops.import_database.side_effect = restore
    ops.get_existing_databases.side_effect = lambda descriptor, names: {name: 10 for name in names}
    ops.remove_artifact.side_effect = remove
    return ops


@pytest.fixture
def engine(connection_manager, operations):
    return MigrationEngine(connection_manager, operations)


def build_unit(databases=("appdb", "sales"), **option_fields):
    mapping = MigrationMapping(
        MappingStrategy.SIMPLE,
        [make_descriptor("src", databases=list(databases))],
        [make_descriptor("dst")],
        options=MigrationOptions(**option_fields),
    )
    return mapping.resolve()[0]


class TestRunUnit:

    @pytest.mark.asyncio
    async def test_full_run(self, engine, operations, tmp_path):
        state = await engine.run_unit(build_unit())

        assert state.status == ExecutionStatus.COMPLETED
        assert state.completed_phases == PHASE_ORDER
        assert state.result.migrated_databases == ["appdb", "sales"]
        assert state.result.bytes_imported == 20
        assert state.metrics.databases_processed == 2
        assert state.metrics.total_size == 150 * MB
        assert state.metrics.estimated_minutes == 12
        assert list(tmp_path.glob("*.dump")) == []
        operations.init.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_dry_run_stops_after_preflight(self, engine, operations):
        state = await engine.run_unit(build_unit(dry_run=True))

        assert state.status == ExecutionStatus.COMPLETED
        assert state.snapshot().phase_reached == "Pre-flight Checks"
        assert state.result.dry_run is True
        assert state.result.migrated_databases == []
        operations.export_database.assert_not_awaited()
        operations.import_database.assert_not_awaited()
        operations.remove_artifact.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_source_database(self, engine, operations):
        state = await engine.run_unit(build_unit(databases=("appdb", "ghost")))

        assert state.status == ExecutionStatus.FAILED
        assert isinstance(state.exception, ValidationError)
        assert "ghost" in state.error
        assert state.current_phase == Phase.DISCOVERY
        operations.export_database.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_incompatible_versions(self, engine, operations):
        operations.check_compatibility.return_value = CompatibilityReport(
            False, "15.4", "14.9", ["Source version 15.4 is newer than target version 14.9"]
        )

        state = await engine.run_unit(build_unit())

        assert state.status == ExecutionStatus.FAILED
        assert state.current_phase == Phase.PREFLIGHT_CHECKS
        assert "Source version 15.4 is newer than target version 14.9" in state.warnings

    @pytest.mark.asyncio
    async def test_import_failure_removes_artifacts(self, engine, operations, tmp_path):
        operations.import_database.side_effect = ProcessExecutionError(
            "pg_restore failed", command="pg_restore", exit_code=1
        )

        state = await engine.run_unit(build_unit())

        assert state.status == ExecutionStatus.FAILED
        assert state.current_phase == Phase.IMPORT
        assert state.error_code == "ProcessExecutionError"
        assert list(tmp_path.glob("*.dump")) == []

    @pytest.mark.asyncio
    async def test_keep_artifacts(self, engine, operations, tmp_path):
        state = await engine.run_unit(build_unit(keep_artifacts=True))

        assert state.status == ExecutionStatus.COMPLETED
        assert len(list(tmp_path.glob("*.dump"))) == 2
        operations.remove_artifact.assert_not_called()

    @pytest.mark.asyncio
    async def test_post_validation_detects_missing_target(self, engine, operations):
        operations.get_existing_databases.side_effect = lambda descriptor, names: {"appdb": 10}

        state = await engine.run_unit(build_unit())

        assert state.status == ExecutionStatus.FAILED
        assert state.current_phase == Phase.POST_MIGRATION_VALIDATION
        assert "sales" in state.error

    @pytest.mark.asyncio
    async def test_renamed_targets_passed_to_import(self, engine, operations):
        mapping = MigrationMapping(
            MappingStrategy.CONSOLIDATE,
            [make_descriptor("a", databases=["appdb"]), make_descriptor("b", databases=["appdb"])],
            [make_descriptor("hub")],
            conflict_resolution=ConflictResolution.SUFFIX,
        )
        second = mapping.resolve()[1]

        state = await engine.run_unit(second)

        assert state.status == ExecutionStatus.COMPLETED
        assert operations.import_database.call_args.kwargs['target_database'] == "appdb_2"
        assert operations.get_existing_databases.call_args.args[1] == ["appdb_2"]

    @pytest.mark.asyncio
    async def test_abort_before_start(self, engine, operations):
        abort = asyncio.Event()
        abort.set()

        state = await engine.run_unit(build_unit(), abort_event=abort)

        assert state.status == ExecutionStatus.FAILED
        assert isinstance(state.exception, MigrationCancelledError)
        operations.check_compatibility.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_task_cancellation_fails_state_and_propagates(self, engine, operations, tmp_path):
        started = asyncio.Event()

        async def hang(source, database, options):
            started.set()
            await asyncio.Event().wait()

        operations.export_database.side_effect = hang
        unit = build_unit()
        state = ExecutionState(unit_id=unit.id)
        task = asyncio.create_task(engine.run_unit(unit, state=state))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert state.status == ExecutionStatus.FAILED
        assert isinstance(state.exception, MigrationCancelledError)

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, engine, operations):
        operations.export_database.side_effect = RuntimeError("disk on fire")

        with pytest.raises(RuntimeError, match="disk on fire"):
            await engine.run_unit(build_unit())

    @pytest.mark.asyncio
    async def test_progress_events(self, engine, progress_events):
        await engine.run_unit(build_unit(), progress_callback=progress_events)

        events = progress_events.events
        phase_events = [(e.phase, e.status) for e in events if e.database is None]
        assert phase_events[0] == ("Validation", "started")
        assert phase_events[-1] == ("Cleanup", "completed")
        assert all(e.total == len(PHASE_ORDER) for e in events if e.database is None)
        imports = [e for e in events if e.phase == "Import" and e.database]
        assert [(e.current, e.total, e.database) for e in imports] == [(1, 2, "appdb"), (2, 2, "sales")]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_fail_unit(self, engine):
        callback = Mock(side_effect=RuntimeError("listener down"))

        state = await engine.run_unit(build_unit(), progress_callback=callback)

        assert state.status == ExecutionStatus.COMPLETED
        assert callback.called


class TestMigrate:

    def config(self, **option_fields):
        return OperationConfig(
            source=make_descriptor("src", databases=["appdb"]),
            target=make_descriptor("dst"),
            options=MigrationOptions(**option_fields),
        )

    @pytest.mark.asyncio
    async def test_returns_result_and_closes_connections(self, engine, connection_manager):
        result = await engine.migrate(self.config())

        assert result.migrated_databases == ["appdb"]
        assert result.source == "proj:src"
        connection_manager.close_all_connections.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_raises_classified_error(self, engine, connection_manager):
        connection_manager.list_databases.return_value = [DatabaseInfo("other")]

        with pytest.raises(ValidationError):
            await engine.migrate(self.config())
        connection_manager.close_all_connections.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_include_all_discovers_databases(self, engine, operations):
        config = OperationConfig(
            source=make_descriptor("src"),
            target=make_descriptor("dst"),
            options=MigrationOptions(include_all=True),
        )

        result = await engine.migrate(config)

        assert result.migrated_databases == ["appdb", "sales"]
        assert operations.export_database.await_count == 2

    @pytest.mark.asyncio
    async def test_invalid_config(self, engine, connection_manager):
        config = OperationConfig(source=make_descriptor("src"), target=make_descriptor("dst"))

        with pytest.raises(ValidationError):
            await engine.migrate(config)
        connection_manager.list_databases.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_roles_assigned(self, engine, connection_manager):
        await engine.migrate(self.config(dry_run=True))

        described = connection_manager.create_connection_config.call_args_list
        assert [c.args[0].role for c in described] == [Role.SOURCE, Role.TARGET]

    @pytest.mark.asyncio
    async def test_keeps_connections_when_asked(self, engine, connection_manager):
        await engine.migrate(self.config(dry_run=True), close_connections=False)

        connection_manager.close_all_connections.assert_not_awaited()
