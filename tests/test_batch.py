"""
Tests for the batch coordinator.
"""

import asyncio
import dataclasses
from collections import Counter
from unittest.mock import Mock

import pytest

from cloudsql_migrator.core.exceptions import (
    MigrationCancelledError,
    ProcessExecutionError,
)
from cloudsql_migrator.database.connection import ConnectionManager, DatabaseInfo
from cloudsql_migrator.models.config import (
    BatchOptions,
    ConflictResolution,
    MappingStrategy,
)
from cloudsql_migrator.models.mapping import MigrationMapping
from cloudsql_migrator.models.results import (
    BatchStatus,
    MigrationResult,
    ProgressUpdate,
    UnitStatus,
)
from cloudsql_migrator.models.state import Phase
from cloudsql_migrator.orchestrator.batch import BatchCoordinator

from conftest import make_descriptor, wait_until


class ScriptedEngine:
    """
    Engine double. Each source instance gets a list of (behaviour, delay)
    steps, one per attempt; the last step repeats.
    """

    def __init__(self, script=None, default=("ok", 0.01)):
        self.script = script or {}
        self.default = default
        self.calls = Counter()
        self.running = 0
        self.max_running = 0
        self.events = []

    async def run_unit(self, unit, progress_callback=None, abort_event=None, state=None):
        instance = unit.source.instance
        self.calls[instance] += 1
        steps = self.script.get(instance, [self.default])
        behaviour, delay = steps[min(self.calls[instance], len(steps)) - 1]

        state.start()
        self.running += 1
        self.events.append(("start", instance))
        self.max_running = max(self.max_running, self.running)
        try:
            if progress_callback:
                progress_callback(ProgressUpdate("Export", 1, 1, "running", database=unit.database_names[0]))
            await asyncio.sleep(delay)
            state.set_current_phase(Phase.EXPORT)
            if behaviour == "fail":
                state.fail(ProcessExecutionError("pg_dump failed", command="pg_dump", exit_code=1))
            elif behaviour == "crash":
                raise RuntimeError("engine bug")
            else:
                state.update_metrics(transferred_size=10)
                state.complete(MigrationResult(unit.id, unit.source_label, unit.target_label,
                                               migrated_databases=unit.target_names))
            return state
        except asyncio.CancelledError:
            state.fail(MigrationCancelledError(f"Unit {unit.id} was cancelled"))
            raise
        finally:
            self.running -= 1
            self.events.append(("end", instance))


@pytest.fixture
def connection_manager():
    return Mock(spec=ConnectionManager)


def consolidate(count):
    return MigrationMapping(
        MappingStrategy.CONSOLIDATE,
        [make_descriptor(f"s{i}", databases=[f"db{i}"]) for i in range(1, count + 1)],
        [make_descriptor("hub")],
    )


def by_source(result):
    return {outcome.source.split(":")[1]: outcome for outcome in result.outcomes}


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_max_parallel_bound(self, connection_manager):
        engine = ScriptedEngine(default=("ok", 0.02))
        coordinator = BatchCoordinator(connection_manager, engine)

        result = await coordinator.execute_batch(consolidate(5), options=BatchOptions(max_parallel=2))

        assert engine.max_running == 2
        in_flight = 0
        for kind, _ in engine.events:
            in_flight += 1 if kind == "start" else -1
            assert in_flight <= 2
        assert len(engine.events) == 10
        assert result.status == BatchStatus.COMPLETED
        assert result.succeeded == 5

    @pytest.mark.asyncio
    async def test_sequential_when_max_parallel_one(self, connection_manager):
        engine = ScriptedEngine()
        coordinator = BatchCoordinator(connection_manager, engine)

        await coordinator.execute_batch(consolidate(3), options=BatchOptions(max_parallel=1))

        assert engine.max_running == 1

    @pytest.mark.asyncio
    async def test_outcomes_in_unit_order(self, connection_manager):
        engine = ScriptedEngine({"s1": [("ok", 0.05)], "s2": [("ok", 0.0)]})
        coordinator = BatchCoordinator(connection_manager, engine)
        mapping = consolidate(2)

        result = await coordinator.execute_batch(mapping)

        assert [o.unit_id for o in result.outcomes] == [u.id for u in mapping.resolve()]


class TestFailurePolicy:

    @pytest.mark.asyncio
    async def test_stop_on_error_skips_undispatched_units(self, connection_manager):
        engine = ScriptedEngine({"s1": [("ok", 0.1)], "s2": [("fail", 0.0)]})
        coordinator = BatchCoordinator(connection_manager, engine)

        result = await coordinator.execute_batch(
            consolidate(4),
            options=BatchOptions(max_parallel=2, stop_on_error=True, retry_failed=False),
        )

        outcomes = by_source(result)
        assert outcomes["s1"].status == UnitStatus.SUCCEEDED
        assert outcomes["s2"].status == UnitStatus.FAILED
        assert outcomes["s3"].status == UnitStatus.SKIPPED
        assert outcomes["s4"].status == UnitStatus.SKIPPED
        assert outcomes["s3"].reason == "Not dispatched after an earlier unit failed"
        assert engine.calls["s3"] == 0
        assert result.status == BatchStatus.PARTIAL_FAILURE

    @pytest.mark.asyncio
    async def test_continue_on_error(self, connection_manager):
        engine = ScriptedEngine({"s1": [("fail", 0.0)]})
        coordinator = BatchCoordinator(connection_manager, engine)

        result = await coordinator.execute_batch(
            consolidate(3),
            options=BatchOptions(max_parallel=1, stop_on_error=False, retry_failed=False),
        )

        assert [o.status for o in result.outcomes] == [
            UnitStatus.FAILED, UnitStatus.SUCCEEDED, UnitStatus.SUCCEEDED,
        ]

    @pytest.mark.asyncio
    async def test_failed_outcome_is_classified(self, connection_manager):
        engine = ScriptedEngine({"s1": [("fail", 0.0)]})
        coordinator = BatchCoordinator(connection_manager, engine)

        result = await coordinator.execute_batch(consolidate(1), options=BatchOptions(retry_failed=False))

        outcome = result.outcomes[0]
        assert outcome.error == "pg_dump failed"
        assert outcome.error_code == "ProcessExecutionError"
        assert outcome.phase_reached == "Export"
        assert outcome.reason
        assert outcome.remediation
        assert result.status == BatchStatus.FAILED

    @pytest.mark.asyncio
    async def test_retry_recovers_transient_failure(self, connection_manager):
        engine = ScriptedEngine({
            "s1": [("fail", 0.0), ("ok", 0.0)],
            "s2": [("fail", 0.0)],
        })
        coordinator = BatchCoordinator(connection_manager, engine)

        result = await coordinator.execute_batch(
            consolidate(3), options=BatchOptions(stop_on_error=False, retry_failed=True)
        )

        outcomes = by_source(result)
        assert outcomes["s1"].label == "succeeded (retried)"
        assert outcomes["s1"].attempts == 2
        assert outcomes["s2"].label == "failed"
        assert outcomes["s2"].retried is True
        assert outcomes["s3"].retried is False
        assert engine.calls == Counter({"s1": 2, "s2": 2, "s3": 1})
        assert result.retried == 2

    @pytest.mark.asyncio
    async def test_retry_pass_ignores_stop_on_error_and_skips_skipped(self, connection_manager):
        engine = ScriptedEngine({"s1": [("fail", 0.0), ("ok", 0.0)]})
        coordinator = BatchCoordinator(connection_manager, engine)

        result = await coordinator.execute_batch(
            consolidate(3),
            options=BatchOptions(max_parallel=1, stop_on_error=True, retry_failed=True),
        )

        outcomes = by_source(result)
        assert outcomes["s1"].label == "succeeded (retried)"
        assert outcomes["s2"].status == UnitStatus.SKIPPED
        assert outcomes["s3"].status == UnitStatus.SKIPPED
        assert engine.calls["s2"] == 0

    @pytest.mark.asyncio
    async def test_unit_timeout(self, connection_manager):
        engine = ScriptedEngine({"s1": [("ok", 10)]})
        coordinator = BatchCoordinator(connection_manager, engine)

        result = await coordinator.execute_batch(
            consolidate(1), options=BatchOptions(unit_timeout=0.05, retry_failed=False)
        )

        outcome = result.outcomes[0]
        assert outcome.status == UnitStatus.FAILED
        assert outcome.error_code == "MigrationTimeoutError"
        assert "timeout" in outcome.error

    @pytest.mark.asyncio
    async def test_unexpected_exception_propagates(self, connection_manager):
        engine = ScriptedEngine({"s1": [("crash", 0.0)], "s2": [("ok", 1.0)]})
        coordinator = BatchCoordinator(connection_manager, engine)

        with pytest.raises(RuntimeError, match="engine bug"):
            await coordinator.execute_batch(consolidate(2), options=BatchOptions(max_parallel=2))

        connection_manager.close_all_connections.assert_awaited_once()


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_running_and_pending_units(self, connection_manager):
        engine = ScriptedEngine({"s1": [("ok", 10)]})
        coordinator = BatchCoordinator(connection_manager, engine)
        task = asyncio.create_task(
            coordinator.execute_batch(consolidate(3), options=BatchOptions(max_parallel=1))
        )
        await wait_until(lambda: engine.running == 1)

        coordinator.cancel()
        result = await task

        outcomes = by_source(result)
        assert outcomes["s1"].status == UnitStatus.CANCELLED
        assert outcomes["s1"].error_code == "MigrationCancelledError"
        assert outcomes["s2"].status == UnitStatus.CANCELLED
        assert outcomes["s2"].reason == "Not dispatched: batch cancelled"
        assert engine.calls["s2"] == 0
        assert result.status == BatchStatus.CANCELLED
        assert coordinator.cancelled

    @pytest.mark.asyncio
    async def test_external_abort_event(self, connection_manager):
        engine = ScriptedEngine(default=("ok", 10))
        coordinator = BatchCoordinator(connection_manager, engine)
        abort = asyncio.Event()
        task = asyncio.create_task(coordinator.execute_batch(consolidate(2), abort_event=abort))
        await wait_until(lambda: engine.running == 2)

        abort.set()
        result = await task

        assert result.cancelled == 2
        assert result.retried == 0

    @pytest.mark.asyncio
    async def test_cancelling_batch_task_stops_running_units(self, connection_manager):
        engine = ScriptedEngine(default=("ok", 10))
        coordinator = BatchCoordinator(connection_manager, engine)
        task = asyncio.create_task(
            coordinator.execute_batch(consolidate(2), options=BatchOptions(max_parallel=2))
        )
        await wait_until(lambda: engine.running == 2)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert engine.running == 0
        assert [kind for kind, _ in engine.events].count("end") == 2
        assert coordinator.get_status()["active"] == []
        connection_manager.close_all_connections.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_next_batch_runs_after_cancel(self, connection_manager):
        engine = ScriptedEngine({"s1": [("ok", 10), ("ok", 0.01)], "s2": [("ok", 10), ("ok", 0.01)]})
        coordinator = BatchCoordinator(connection_manager, engine)
        task = asyncio.create_task(coordinator.execute_batch(consolidate(2)))
        await wait_until(lambda: engine.running == 2)
        coordinator.cancel()
        await task

        result = await coordinator.execute_batch(consolidate(2))

        assert [o.status for o in result.outcomes] == [UnitStatus.SUCCEEDED, UnitStatus.SUCCEEDED]
        assert not coordinator.cancelled

    @pytest.mark.asyncio
    async def test_external_abort_event_not_kept(self, connection_manager):
        coordinator = BatchCoordinator(connection_manager, ScriptedEngine())
        abort = asyncio.Event()
        abort.set()

        first = await coordinator.execute_batch(consolidate(1), abort_event=abort)
        second = await coordinator.execute_batch(consolidate(1))

        assert first.cancelled == 1
        assert second.succeeded == 1


class TestResolution:

    @pytest.mark.asyncio
    async def test_discovers_databases(self, connection_manager):
        connection_manager.list_databases.return_value = [DatabaseInfo("analytics"), DatabaseInfo("appdb")]
        engine = ScriptedEngine()
        coordinator = BatchCoordinator(connection_manager, engine)
        mapping = MigrationMapping(MappingStrategy.SIMPLE, [make_descriptor("src")], [make_descriptor("dst")])

        result = await coordinator.execute_batch(mapping)

        assert result.outcomes[0].databases == ["analytics", "appdb"]
        connection_manager.list_databases.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_queries_versions_for_version_based(self, connection_manager):
        connection_manager.get_server_version.side_effect = ["15.2", "14.9"]
        engine = ScriptedEngine()
        coordinator = BatchCoordinator(connection_manager, engine)
        mapping = MigrationMapping(
            MappingStrategy.VERSION_BASED,
            [make_descriptor("a", databases=["x"]), make_descriptor("b", databases=["y"])],
            version_mapping={"14": make_descriptor("pg14"), "15": make_descriptor("pg15")},
        )

        result = await coordinator.execute_batch(mapping)

        assert [o.target for o in result.outcomes] == ["proj:pg15", "proj:pg14"]

    @pytest.mark.asyncio
    async def test_mapping_warnings_carried(self, connection_manager):
        mapping = MigrationMapping(
            MappingStrategy.CONSOLIDATE,
            [make_descriptor("a", databases=["appdb"]), make_descriptor("b", databases=["appdb"])],
            [make_descriptor("hub")],
            conflict_resolution=ConflictResolution.MERGE,
        )
        coordinator = BatchCoordinator(connection_manager, ScriptedEngine())

        result = await coordinator.execute_batch(mapping)

        assert any("merges data from" in w for w in result.warnings)


class TestReporting:

    @pytest.mark.asyncio
    async def test_progress_events_tagged(self, connection_manager, progress_events):
        coordinator = BatchCoordinator(connection_manager, ScriptedEngine())
        mapping = consolidate(2)

        await coordinator.execute_batch(mapping, progress_callback=progress_events)

        tags = {(e.unit_id, e.source, e.target, e.database) for e in progress_events.events}
        units = mapping.resolve()
        assert tags == {
            (units[0].id, "proj:s1", "proj:hub", "db1"),
            (units[1].id, "proj:s2", "proj:hub", "db2"),
        }

    @pytest.mark.asyncio
    async def test_status_after_batch(self, connection_manager):
        engine = ScriptedEngine({"s2": [("fail", 0.0)]})
        coordinator = BatchCoordinator(connection_manager, engine)
        mapping = consolidate(2)

        result = await coordinator.execute_batch(
            mapping, options=BatchOptions(stop_on_error=False, retry_failed=False)
        )

        status = coordinator.get_status()
        units = mapping.resolve()
        assert status['batch_id'] == result.batch_id
        assert status['completed'] == [units[0].id]
        assert status['failed'] == [units[1].id]
        assert status['active'] == []
        assert status['pending'] == []

    @pytest.mark.asyncio
    async def test_performance_and_connections(self, connection_manager):
        coordinator = BatchCoordinator(connection_manager, ScriptedEngine())

        result = await coordinator.execute_batch(consolidate(2))

        assert result.performance['units_timed'] == 2
        assert result.performance['min_unit_duration_ms'] <= result.performance['max_unit_duration_ms']
        assert result.outcomes[0].metrics['transferred_size'] == 10
        connection_manager.close_all_connections.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_keeps_connections_when_asked(self, connection_manager):
        coordinator = BatchCoordinator(connection_manager, ScriptedEngine())

        await coordinator.execute_batch(consolidate(1), options=BatchOptions(close_connections=False))

        connection_manager.close_all_connections.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_result_to_dict(self, connection_manager):
        coordinator = BatchCoordinator(connection_manager, ScriptedEngine())

        data = (await coordinator.execute_batch(consolidate(1))).to_dict()

        assert data['status'] == "completed"
        assert data['units'][0]['label'] == "succeeded"

    @pytest.mark.asyncio
    async def test_result_is_immutable(self, connection_manager):
        coordinator = BatchCoordinator(connection_manager, ScriptedEngine())

        result = await coordinator.execute_batch(consolidate(1))

        with pytest.raises(dataclasses.FrozenInstanceError):
            result.outcomes[0].status = UnitStatus.FAILED
        with pytest.raises(dataclasses.FrozenInstanceError):
            result.batch_id = "other"
