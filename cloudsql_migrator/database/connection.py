"""
Connection management for Cloud SQL PostgreSQL instances.

Resolves host, SSL and credentials for a connection descriptor and owns
one psycopg2 ThreadedConnectionPool per (project, instance, database).
Blocking driver calls run in worker threads so the event loop stays free.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import psycopg2
from psycopg2.pool import PoolError, ThreadedConnectionPool
from psycopg2.extras import RealDictCursor

from cloudsql_migrator.core.error_handler import RetryConfig, RetryHandler, connection_error_hints
from cloudsql_migrator.core.exceptions import ConnectionError, DatabaseError, MissingCredentialError
from cloudsql_migrator.models.config import (
    ConnectionConfig,
    ConnectionDescriptor,
    MigratorSettings,
    Role,
    SSLMode,
    instance_env_key,
    parse_major_version,
)
from cloudsql_migrator.utils.helpers import sanitize_dict
from cloudsql_migrator.utils.logging import MigrationLogger

logger = logging.getLogger(__name__)

PoolKey = Tuple[str, str, str]

SYSTEM_DATABASES = frozenset([
    'postgres',
    'template0',
    'template1',
    'cloudsqladmin',
    'cloudsqlimport',
    'cloudsqlexport',
    'information_schema',
    'pg_catalog',
    'pg_toast',
    'pg_temp',
    'cloudsql_fdw_test',
    'test',
])

SYSTEM_DATABASE_PREFIXES = ('pg_', 'template', 'cloudsql')
SYSTEM_DATABASE_LIKE_PATTERNS = ['pg\\_%', 'template%', 'cloudsql%']

# Instance name fragments that identify a source when both role IPs are set.
SOURCE_INSTANCE_HINTS = ('v2', 'source', 'origem')

PROXY_HOST = "localhost"

LIST_DATABASES_SQL = """
    SELECT datname, pg_database_size(datname) AS size_bytes
    FROM pg_database
    WHERE datistemplate = false
      AND NOT (lower(datname) = ANY(%s))
      AND lower(datname) NOT LIKE ALL(%s)
    ORDER BY datname
"""


def is_system_database(name: str) -> bool:
    """True for system, template and Cloud SQL internal databases (case-insensitive)."""
    folded = name.casefold()
    return folded in SYSTEM_DATABASES or folded.startswith(SYSTEM_DATABASE_PREFIXES)


@dataclass
class DatabaseInfo:
    """A user database discovered on an instance."""
    name: str
    size_bytes: int = 0


@dataclass
class _PoolEntry:
    pool: ThreadedConnectionPool
    config: ConnectionConfig
    created_at: datetime = field(default_factory=datetime.now)
    last_used: datetime = field(default_factory=datetime.now)


class ConnectionManager:
    """
    Owns pooled connections to Cloud SQL instances.

    Pools are created lazily, probed with a round-trip before reuse and
    recreated when the probe fails. Access to a pool map entry is
    serialized per key, so units sharing a key never race on it. Per-key
    locks are held weakly and disappear once no caller holds them.
    """

    def __init__(
        self,
        settings: Optional[MigratorSettings] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None
    ):
        self.settings = settings or MigratorSettings.from_env()
        self._pools: Dict[PoolKey, _PoolEntry] = {}
        self._locks: "weakref.WeakValueDictionary[PoolKey, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._retry_handler = RetryHandler(sleep=sleep, logger=logger)
        self._log = MigrationLogger("connection")

    def _lock_for(self, key: PoolKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def create_connection_config(self, descriptor: ConnectionDescriptor) -> ConnectionConfig:
        """
        Resolve host, SSL and credentials for a descriptor.

        Raises:
            ConnectionError: if no host can be resolved
            MissingCredentialError: if no password can be resolved
        """
        settings = self.settings
        host, port, resolution = self._resolve_host(descriptor)
        password = self._resolve_password(descriptor)

        ssl_mode = descriptor.ssl_mode or settings.ssl_mode
        sslmode = "require"
        cert_paths: Dict[str, Optional[str]] = {}

        if resolution == "proxy":
            # The proxy terminates TLS itself.
            ssl_mode, sslmode = SSLMode.DISABLE, "disable"
        elif ssl_mode == SSLMode.DISABLE:
            sslmode = "disable"
        elif ssl_mode == SSLMode.STRICT:
            triple = (settings.ssl_root_cert, settings.ssl_client_cert, settings.ssl_client_key)
            if all(triple):
                sslmode = "verify-ca"
                cert_paths = {
                    'sslrootcert': settings.ssl_root_cert,
                    'sslcert': settings.ssl_client_cert,
                    'sslkey': settings.ssl_client_key,
                }
            else:
                logger.warning(
                    f"Strict SSL requested for {descriptor.instance_label} but the CA, client "
                    f"certificate and key are not all configured; falling back to simple SSL"
                )
                ssl_mode = SSLMode.SIMPLE

        logger.debug(
            f"Resolved {descriptor.instance_label}/{descriptor.database} to {host}:{port} "
            f"via {resolution} (ssl={sslmode})"
        )

        return ConnectionConfig(
            host=host,
            port=port,
            user=descriptor.user or settings.default_user,
            password=password,
            dbname=descriptor.database,
            ssl_mode=ssl_mode,
            sslmode=sslmode,
            connect_timeout=settings.connection_timeout,
            pool_min=settings.pool_min_size,
            pool_max=settings.pool_max_size,
            resolution=resolution,
            **cert_paths
        )

    def _resolve_host(self, descriptor: ConnectionDescriptor) -> Tuple[str, int, str]:
        settings = self.settings
        port = descriptor.port or settings.port
        use_proxy = settings.use_proxy if descriptor.use_proxy is None else descriptor.use_proxy

        if descriptor.ip:
            return descriptor.ip, port, "explicit"
        if use_proxy:
            return PROXY_HOST, descriptor.port or settings.proxy_port, "proxy"

        instance_ip = settings.instance_ip(descriptor.instance)
        if instance_ip:
            return instance_ip, port, "instance-override"

        if descriptor.role == Role.SOURCE and settings.source_ip:
            return settings.source_ip, port, "role-override"
        if descriptor.role == Role.TARGET and settings.target_ip:
            return settings.target_ip, port, "role-override"

        if descriptor.role == Role.UNSPECIFIED:
            if settings.source_ip and settings.target_ip:
                name = descriptor.instance.casefold()
                if any(hint in name for hint in SOURCE_INSTANCE_HINTS):
                    return settings.source_ip, port, "heuristic"
                return settings.target_ip, port, "heuristic"
            single_ip = settings.source_ip or settings.target_ip
            if single_ip:
                return single_ip, port, "single-override"

        env_name = f"CLOUDSQL_IP_{instance_env_key(descriptor.instance)}"
        raise ConnectionError(
            f"Cannot resolve an IP address for instance {descriptor.instance_label}",
            hints=[
                f"Set {env_name}",
                "Or set CLOUDSQL_SOURCE_IP / CLOUDSQL_TARGET_IP",
                "Or enable the Cloud SQL proxy with USE_CLOUD_SQL_PROXY=true",
            ],
            details={'instance': descriptor.instance_label, 'role': descriptor.role.value}
        )

    def _resolve_password(self, descriptor: ConnectionDescriptor) -> str:
        password = (
            descriptor.password
            or self.settings.role_password(descriptor.role)
            or self.settings.password
        )
        if not password:
            role_var = {
                Role.SOURCE: "PGPASSWORD_SOURCE",
                Role.TARGET: "PGPASSWORD_TARGET",
            }.get(descriptor.role)
            hints = [f"Set {role_var}"] if role_var else []
            hints.append("Or set PGPASSWORD")
            raise MissingCredentialError(
                f"No password available for {descriptor.instance_label} ({descriptor.role.value})",
                failed_checks=["password"],
                hints=hints,
            )
        return password

    # ------------------------------------------------------------------
    # Pool lifecycle
    # ------------------------------------------------------------------

    async def connect(
        self,
        descriptor: ConnectionDescriptor,
        retry_attempts: Optional[int] = None
    ) -> ThreadedConnectionPool:
        """Return a live pool for the descriptor, creating it if needed."""
        key = descriptor.key
        async with self._lock_for(key):
            entry = self._pools.get(key)
            if entry is not None:
                if await asyncio.to_thread(self._probe, entry.pool):
                    entry.last_used = datetime.now()
                    return entry.pool
                logger.warning(
                    f"Pooled connection to {descriptor.instance_label}/{descriptor.database} "
                    f"failed its liveness probe; recreating"
                )
                del self._pools[key]
                await asyncio.to_thread(self._close_pool, entry.pool)

            config = self.create_connection_config(descriptor)
            pool = await self._connect_with_retry(descriptor, config, retry_attempts)
            self._pools[key] = _PoolEntry(pool=pool, config=config)
            return pool

    async def _connect_with_retry(
        self,
        descriptor: ConnectionDescriptor,
        config: ConnectionConfig,
        retry_attempts: Optional[int] = None
    ) -> ThreadedConnectionPool:
        target = f"{descriptor.instance_label}/{descriptor.database} ({config.host}:{config.port})"
        retry_config = RetryConfig(
            max_attempts=retry_attempts or self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay,
            retryable_exceptions=[psycopg2.Error],
        )
        logger.debug(f"Connection parameters for {target}: {sanitize_dict(config.to_connect_kwargs())}")

        async def attempt_connect(attempt: int) -> ThreadedConnectionPool:
            return await asyncio.to_thread(self._create_pool, config)

        try:
            pool = await self._retry_handler.retry_with_backoff(
                attempt_connect,
                retry_config,
                on_attempt=lambda attempt, total: self._log.log_connection_attempt(target, attempt, total),
                on_failure=lambda error, attempt, total: self._log.log_connection_error(target, error, attempt, total),
                on_retry=lambda attempt, total, delay: self._log.log_retry(target, delay),
            )
        except psycopg2.Error as e:
            hints = connection_error_hints(e)
            raise ConnectionError(
                f"Failed to connect to {target} after {retry_config.max_attempts} attempt(s): {e}",
                hints=hints,
                attempts=retry_config.max_attempts,
                details={'instance': descriptor.instance_label, 'resolution': config.resolution}
            ) from e

        self._log.log_connection_success(target, config.resolution)
        return pool

    @staticmethod
    def _create_pool(config: ConnectionConfig) -> ThreadedConnectionPool:
        return ThreadedConnectionPool(
            minconn=config.pool_min,
            maxconn=config.pool_max,
            **config.to_connect_kwargs()
        )

    @staticmethod
    def _probe(pool: ThreadedConnectionPool) -> bool:
        try:
            conn = pool.getconn()
        except psycopg2.Error:
            return False
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
                cursor.fetchone()
        except psycopg2.Error:
            pool.putconn(conn, close=True)
            return False
        pool.putconn(conn)
        return True

    @staticmethod
    def _close_pool(pool: ThreadedConnectionPool) -> None:
        try:
            pool.closeall()
        except PoolError as e:
            logger.debug(f"Pool already closed: {e}")

    async def close_connection(self, descriptor: ConnectionDescriptor, all_databases: bool = False) -> int:
        """Close the pool for a descriptor, or every pool of its instance. Idempotent."""
        if all_databases:
            keys = [key for key in self._pools if key[:2] == descriptor.instance_key]
        else:
            keys = [descriptor.key]

        closed = 0
        for key in keys:
            async with self._lock_for(key):
                entry = self._pools.pop(key, None)
                if entry is None:
                    continue
                await asyncio.to_thread(self._close_pool, entry.pool)
                closed += 1
                logger.debug(f"Closed pool {key[0]}:{key[1]}/{key[2]}")
        return closed

    async def close_all_connections(self) -> int:
        """Close every pool. Idempotent."""
        closed = 0
        for key in list(self._pools):
            async with self._lock_for(key):
                entry = self._pools.pop(key, None)
                if entry is None:
                    continue
                await asyncio.to_thread(self._close_pool, entry.pool)
                closed += 1
        if closed:
            logger.info(f"Closed {closed} connection pool(s)")
        return closed

    def get_connection_stats(self) -> Dict[str, Any]:
        return {
            'active_pools': len(self._pools),
            'pools': [
                {
                    'key': f"{key[0]}:{key[1]}/{key[2]}",
                    'host': entry.config.host,
                    'port': entry.config.port,
                    'resolution': entry.config.resolution,
                    'sslmode': entry.config.sslmode,
                    'min_size': entry.config.pool_min,
                    'max_size': entry.config.pool_max,
                    'created_at': entry.created_at.isoformat(),
                    'last_used': entry.last_used.isoformat(),
                }
                for key, entry in self._pools.items()
            ],
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def execute(
        self,
        descriptor: ConnectionDescriptor,
        sql: str,
        params: Optional[Sequence[Any]] = None
    ) -> List[Dict[str, Any]]:
        """Run a statement in autocommit mode and return rows as dicts."""
        pool = await self.connect(descriptor)
        try:
            return await asyncio.to_thread(self._run_query, pool, sql, params)
        except psycopg2.Error as e:
            raise DatabaseError(
                f"Query failed on {descriptor.instance_label}/{descriptor.database}: {e}",
                details={'pgcode': getattr(e, 'pgcode', None)}
            ) from e

    @staticmethod
    def _run_query(pool: ThreadedConnectionPool, sql: str, params) -> List[Dict[str, Any]]:
        conn = pool.getconn()
        try:
            conn.autocommit = True
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(sql, params)
                if cursor.description is None:
                    return []
                return [dict(row) for row in cursor.fetchall()]
        finally:
            pool.putconn(conn)

    async def list_databases(self, descriptor: ConnectionDescriptor) -> List[DatabaseInfo]:
        """User databases on the descriptor's instance, sorted by name."""
        admin = descriptor.for_database("postgres")
        rows = await self.execute(
            admin,
            LIST_DATABASES_SQL,
            (sorted(SYSTEM_DATABASES), SYSTEM_DATABASE_LIKE_PATTERNS)
        )
        databases = [
            DatabaseInfo(name=row['datname'], size_bytes=int(row.get('size_bytes') or 0))
            for row in rows
            if not is_system_database(row['datname'])
        ]
        databases.sort(key=lambda info: info.name)
        logger.debug(
            f"Databases on {descriptor.instance_label}: {', '.join(d.name for d in databases) or '(none)'}"
        )
        return databases

    async def get_server_version(self, descriptor: ConnectionDescriptor) -> str:
        rows = await self.execute(descriptor.for_database("postgres"), "SHOW server_version")
        return str(rows[0]['server_version']).split()[0] if rows else ""

    async def get_major_version(self, descriptor: ConnectionDescriptor) -> Optional[int]:
        return parse_major_version(await self.get_server_version(descriptor))

    async def test_connection(self, descriptor: ConnectionDescriptor) -> Dict[str, Any]:
        """Connect and report server details; failures are returned, not raised."""
        try:
            rows = await self.execute(
                descriptor,
                "SELECT version() AS version, current_database() AS database, current_user AS user"
            )
        except (ConnectionError, DatabaseError) as e:
            return {
                'success': False,
                'instance': descriptor.instance_label,
                'error': e.message,
                'hints': list(getattr(e, 'hints', [])),
            }
        row = rows[0] if rows else {}
        entry = self._pools.get(descriptor.key)
        return {
            'success': True,
            'instance': descriptor.instance_label,
            'version': row.get('version'),
            'major_version': parse_major_version(row.get('version')),
            'database': row.get('database'),
            'user': row.get('user'),
            'host': entry.config.host if entry else None,
            'resolution': entry.config.resolution if entry else None,
        }
