"""
Pytest configuration and fixtures for the CloudSQL Migrator tests.

Provides settings, descriptors and in-memory doubles for the psycopg2
connection pool so that no test needs a running PostgreSQL server.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import Mock

import pytest

from cloudsql_migrator.models.config import (
    ConnectionDescriptor,
    MigrationOptions,
    MigratorSettings,
    Role,
)


class FakeCursor:
    """Cursor double answering queries through a responder callable."""

    def __init__(self, responder: Callable[[str, Any], List[Dict[str, Any]]]):
        self._responder = responder
        self._rows: List[Dict[str, Any]] = []
        self.description = None
        self.executed: List[tuple] = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.executed.append((str(sql), params))
        self._rows = self._responder(str(sql), params)
        self.description = [("column",)] if self._rows is not None else None

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows or [])


class FakeConnection:
    def __init__(self, responder):
        self._responder = responder
        self.autocommit = False
        self.cursors: List[FakeCursor] = []

    def cursor(self, cursor_factory=None):
        cursor = FakeCursor(self._responder)
        self.cursors.append(cursor)
        return cursor


class FakePool:
    """Stands in for psycopg2.pool.ThreadedConnectionPool."""

    def __init__(self, responder=None, **kwargs):
        self.kwargs = kwargs
        self.connection = FakeConnection(responder or (lambda sql, params: [{'?column?': 1}]))
        self.closed = False
        self.returned = 0

    def getconn(self):
        return self.connection

    def putconn(self, conn, close=False):
        self.returned += 1

    def closeall(self):
        self.closed = True


@pytest.fixture
def settings(tmp_path) -> MigratorSettings:
    """Settings resolving both roles to fixed IPs with passwords."""
    return MigratorSettings(
        source_ip="10.0.0.1",
        target_ip="10.0.0.2",
        source_password="source-secret",
        target_password="target-secret",
        retry_base_delay=1.0,
        work_dir=str(tmp_path / "work"),
    )


@pytest.fixture
def source_descriptor() -> ConnectionDescriptor:
    return ConnectionDescriptor(
        project="proj",
        instance="legacy-source",
        role=Role.SOURCE,
        databases=["appdb"],
        engine_version="POSTGRES_14",
    )


@pytest.fixture
def target_descriptor() -> ConnectionDescriptor:
    return ConnectionDescriptor(
        project="proj",
        instance="new-target",
        role=Role.TARGET,
        engine_version="POSTGRES_15",
    )


@pytest.fixture
def migration_options() -> MigrationOptions:
    return MigrationOptions()


@pytest.fixture
def recorded_sleep():
    """Async sleep double that records requested delays."""
    delays: List[float] = []

    async def sleep(delay: float):
        delays.append(delay)

    sleep.delays = delays
    return sleep


@pytest.fixture
def fake_pool_factory():
    """Factory building FakePool instances that answer with a responder."""
    def factory(responder=None) -> Callable[..., FakePool]:
        created: List[FakePool] = []

        def build(**kwargs):
            pool = FakePool(responder, **kwargs)
            created.append(pool)
            return pool

        build.created = created
        return build
    return factory


@pytest.fixture
def progress_events():
    """Collects progress updates passed to a callback."""
    events = []
    callback = Mock(side_effect=events.append)
    callback.events = events
    return callback


def make_descriptor(instance: str, role: Role = Role.UNSPECIFIED, **kwargs) -> ConnectionDescriptor:
    return ConnectionDescriptor(project="proj", instance=instance, role=role, **kwargs)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll a predicate on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
