"""
Database operations for Cloud SQL migrations.

Runs pg_dump / pg_restore as external processes, classifies their output,
creates target databases and estimates migration duration from sizes.
"""

import asyncio
import math
import os
import shutil
import time
import uuid
import weakref
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from psycopg2 import errorcodes, sql

from cloudsql_migrator.core.exceptions import (
    ConfigurationError,
    DatabaseError,
    EstimationError,
    MigrationToolError,
    ProcessExecutionError,
    ValidationError,
)
from cloudsql_migrator.database.connection import ConnectionManager
from cloudsql_migrator.database.output_classifier import (
    LineKind,
    OutputClassification,
    classify_line,
    classify_output,
)
from cloudsql_migrator.models.config import (
    ConnectionConfig,
    ConnectionDescriptor,
    MigrationOptions,
    MigratorSettings,
    parse_major_version,
)
from cloudsql_migrator.utils.helpers import safe_identifier
from cloudsql_migrator.utils.logging import MigrationLogger, get_logger

logger = get_logger("database.operations")

# Throughput heuristics in MB/min.
SPEED_SCHEMA_ONLY = 500.0
SPEED_DATA_ONLY = 50.0
SPEED_FULL = 40.0
SPEED_WITH_INDEXES = 25.0
CROSS_REGION_FACTOR = 0.7
LARGE_DATABASE_FACTOR = 0.8
LARGE_DATABASE_MB = 10240
MIN_OVERHEAD_MINUTES = 2
MAX_OVERHEAD_MINUTES = 30
OVERHEAD_RATIO = 0.15
FALLBACK_ESTIMATE_MINUTES = 30

TERMINATE_GRACE_SECONDS = 5.0


@dataclass
class CommandResult:
    """Outcome of one external process run."""
    command: List[str]
    exit_code: int
    stdout_lines: List[str]
    stderr_lines: List[str]
    duration_ms: int
    classification: OutputClassification


@dataclass
class ExportArtifact:
    database: str
    path: Path
    size_bytes: int
    duration_ms: int
    warnings: List[str] = field(default_factory=list)


@dataclass
class ImportResult:
    database: str
    target_database: str
    duration_ms: int
    target_schema: Optional[str] = None
    created_database: bool = False
    ignored: Dict[str, int] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


@dataclass
class DatabaseSize:
    name: str
    size_bytes: int


@dataclass
class MigrationEstimate:
    databases: List[DatabaseSize]
    total_size_bytes: int
    estimated_minutes: int
    speed_mb_per_min: Optional[float]
    factors: List[str]
    fallback: bool = False


@dataclass
class CompatibilityReport:
    compatible: bool
    source_version: str
    target_version: str
    warnings: List[str] = field(default_factory=list)


def estimate_speed(total_size_bytes: int, options: MigrationOptions) -> float:
    """Expected throughput in MB/min for a total size and option set."""
    if options.schema_only:
        speed = SPEED_SCHEMA_ONLY
    elif options.data_only:
        speed = SPEED_DATA_ONLY
    else:
        speed = SPEED_FULL

    if options.include_indexes and not options.schema_only:
        speed = min(speed, SPEED_WITH_INDEXES)
    if options.cross_region:
        speed *= CROSS_REGION_FACTOR
    if total_size_bytes / (1024 * 1024) > LARGE_DATABASE_MB:
        speed *= LARGE_DATABASE_FACTOR
    return speed


def estimate_minutes(total_size_bytes: int, options: MigrationOptions) -> int:
    """Estimated duration in whole minutes, including setup overhead."""
    size_mb = total_size_bytes / (1024 * 1024)
    transfer = math.ceil(size_mb / estimate_speed(total_size_bytes, options))
    overhead = min(max(MIN_OVERHEAD_MINUTES, transfer * OVERHEAD_RATIO), MAX_OVERHEAD_MINUTES)
    return int(math.ceil(transfer + overhead))


def estimate_factors(options: MigrationOptions) -> List[str]:
    factors = []
    if options.schema_only:
        factors.append("Schema-only migration (faster)")
    elif options.data_only:
        factors.append("Data-only migration")
    else:
        factors.append("Full migration (schema + data + indexes)")
    if options.cross_region:
        factors.append("Cross-region migration (network latency)")
    if not options.include_indexes:
        factors.append("Indexes excluded (faster)")
    factors.append("Estimates based on typical Cloud SQL throughput")
    return factors


class DatabaseOperations:
    """Export, import and estimation against Cloud SQL instances."""

    def __init__(
        self,
        connection_manager: ConnectionManager,
        settings: Optional[MigratorSettings] = None,
        work_dir: Optional[str] = None
    ):
        self.connection_manager = connection_manager
        self.settings = settings or connection_manager.settings
        self.work_dir = Path(work_dir or self.settings.work_dir)
        self._import_locks: "weakref.WeakValueDictionary[Tuple[str, str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._log = MigrationLogger("database")

    async def init(self) -> Path:
        """Create the work directory for dump artifacts."""
        try:
            await asyncio.to_thread(self.work_dir.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create work directory {self.work_dir}: {e}") from e
        logger.debug(f"Work directory ready: {self.work_dir}")
        return self.work_dir

    # ------------------------------------------------------------------
    # Process execution
    # ------------------------------------------------------------------

    @staticmethod
    def _pg_env(config: ConnectionConfig) -> Dict[str, str]:
        env = {'PGPASSWORD': config.password, 'PGSSLMODE': config.sslmode}
        if config.sslrootcert:
            env['PGSSLROOTCERT'] = config.sslrootcert
        if config.sslcert:
            env['PGSSLCERT'] = config.sslcert
        if config.sslkey:
            env['PGSSLKEY'] = config.sslkey
        return env

    async def run_command(
        self,
        command: Sequence[str],
        env: Optional[Mapping[str, str]] = None
    ) -> CommandResult:
        """
        Run an external command to completion.

        stdout and stderr are read concurrently line by line; stderr is
        classified once the process exits. If the calling task is
        cancelled the process is terminated, then killed.
        """
        command = [str(part) for part in command]
        merged_env = dict(os.environ)
        merged_env.update(env or {})

        logger.debug(f"Executing: {' '.join(command)}")
        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env
            )
        except OSError as e:
            raise ProcessExecutionError(
                f"Could not start {command[0]}: {e}",
                command=command[0]
            ) from e

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        try:
            await asyncio.gather(
                self._read_stream(process.stdout, stdout_lines, classify=False),
                self._read_stream(process.stderr, stderr_lines, classify=True),
            )
            exit_code = await process.wait()
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        return CommandResult(
            command=command,
            exit_code=exit_code,
            stdout_lines=stdout_lines,
            stderr_lines=stderr_lines,
            duration_ms=duration_ms,
            classification=classify_output(stderr_lines, exit_code),
        )

    @staticmethod
    async def _read_stream(stream: asyncio.StreamReader, sink: List[str], classify: bool) -> None:
        async for raw in stream:
            line = raw.decode(errors="replace").rstrip("\r\n")
            sink.append(line)
            if not line.strip():
                continue
            if not classify:
                logger.debug(line)
                continue
            kind, category = classify_line(line)
            if kind == LineKind.WARNING:
                logger.warning(line)
            elif kind == LineKind.IGNORABLE:
                logger.debug(f"Ignored ({category}): {line}")
            else:
                logger.debug(line)

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        logger.warning(f"Terminating process {process.pid}")
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} ignored SIGTERM; killing")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    @staticmethod
    def _raise_if_fatal(result: CommandResult, tool: str, database: str) -> None:
        classification = result.classification
        if not classification.is_fatal:
            return
        fatal_lines = classification.fatal_lines or result.stderr_lines[-10:]
        summary = fatal_lines[0] if fatal_lines else "no error output"
        raise ProcessExecutionError(
            f"{tool} failed for {database} (exit code {result.exit_code}): {summary}",
            command=tool,
            exit_code=result.exit_code,
            fatal_lines=fatal_lines[:20],
        )

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def build_dump_args(
        self,
        config: ConnectionConfig,
        database: str,
        options: MigrationOptions,
        artifact: Path
    ) -> List[str]:
        args = [
            self.settings.pg_dump_command,
            '--host', config.host,
            '--port', str(config.port),
            '--username', config.user,
            '--dbname', database,
            '--verbose',
            '--format=custom',
            f'--compress={options.compression_level}',
            '--no-password',
            '--file', str(artifact),
        ]
        if options.schema_only:
            args.append('--schema-only')
        if options.data_only:
            args.append('--data-only')
        for table in options.exclude_table_data:
            args.extend(['--exclude-table-data', table])
        return args

    async def export_database(
        self,
        source: ConnectionDescriptor,
        database: str,
        options: MigrationOptions
    ) -> ExportArtifact:
        """Dump one source database to a custom-format artifact."""
        config = self.connection_manager.create_connection_config(source.for_database(database))
        artifact = self.work_dir / (
            f"{safe_identifier(source.instance)}_{safe_identifier(database)}_"
            f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}.dump"
        )
        args = self.build_dump_args(config, database, options, artifact)

        logger.info(f"Exporting {database} from {source.instance_label}")
        try:
            result = await self.run_command(args, env=self._pg_env(config))
            self._raise_if_fatal(result, "pg_dump", database)
            try:
                size = artifact.stat().st_size
            except FileNotFoundError as e:
                raise ProcessExecutionError(
                    f"pg_dump reported success but {artifact} was not written",
                    command="pg_dump",
                    exit_code=result.exit_code
                ) from e
        except (Exception, asyncio.CancelledError):
            self.remove_artifact(artifact)
            raise

        self._log.log_database_operation(
            "export", database, size_bytes=size, duration=result.duration_ms / 1000
        )
        return ExportArtifact(
            database=database,
            path=artifact,
            size_bytes=size,
            duration_ms=result.duration_ms,
            warnings=result.classification.warning_lines,
        )

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def build_restore_args(
        self,
        config: ConnectionConfig,
        database: str,
        options: MigrationOptions,
        artifact: Path
    ) -> List[str]:
        args = [
            self.settings.pg_restore_command,
            '--host', config.host,
            '--port', str(config.port),
            '--username', config.user,
            '--dbname', database,
            '--verbose',
            '--no-password',
            '--no-owner',
            '--no-privileges',
            '--no-comments',
        ]
        if options.use_clean:
            args.extend(['--clean', '--if-exists'])
        if options.schema_only:
            args.append('--schema-only')
        if options.data_only:
            args.append('--data-only')
        if options.jobs > 1:
            args.extend(['--jobs', str(options.jobs)])
        args.append(str(artifact))
        return args

    def _import_lock(self, target: ConnectionDescriptor, database: str) -> asyncio.Lock:
        key = (target.project, target.instance, database)
        lock = self._import_locks.get(key)
        if lock is None:
            lock = self._import_locks[key] = asyncio.Lock()
        return lock

    async def ensure_database(self, target: ConnectionDescriptor, database: str) -> bool:
        """Create the target database if absent. Returns True if it was created."""
        admin = target.for_database("postgres")
        rows = await self.connection_manager.execute(
            admin, "SELECT 1 FROM pg_database WHERE datname = %s", (database,)
        )
        if rows:
            return False
        try:
            await self.connection_manager.execute(
                admin, sql.SQL("CREATE DATABASE {}").format(sql.Identifier(database))
            )
        except DatabaseError as e:
            if e.details.get('pgcode') == errorcodes.DUPLICATE_DATABASE:
                logger.debug(f"Database {database} was created concurrently")
                return False
            raise
        logger.info(f"Created database {database} on {target.instance_label}")
        return True

    async def import_database(
        self,
        target: ConnectionDescriptor,
        database: str,
        artifact_path: Path,
        options: MigrationOptions,
        target_database: Optional[str] = None,
        target_schema: Optional[str] = None
    ) -> ImportResult:
        """Restore an artifact into the target, creating the database if needed."""
        artifact_path = Path(artifact_path)
        if not artifact_path.is_file():
            raise ValidationError(
                f"Artifact for {database} not found: {artifact_path}",
                failed_checks=["artifact"]
            )

        target_database = target_database or database
        created = await self.ensure_database(target, target_database)
        config = self.connection_manager.create_connection_config(target.for_database(target_database))
        args = self.build_restore_args(config, target_database, options, artifact_path)

        logger.info(f"Importing {database} into {target.instance_label}/{target_database}")
        async with self._import_lock(target, target_database):
            result = await self.run_command(args, env=self._pg_env(config))
            self._raise_if_fatal(result, "pg_restore", target_database)
            if target_schema:
                await self.connection_manager.execute(
                    target.for_database(target_database),
                    sql.SQL("ALTER SCHEMA public RENAME TO {}; CREATE SCHEMA public").format(
                        sql.Identifier(target_schema)
                    )
                )
                logger.info(f"Moved restored objects of {database} into schema {target_schema}")

        ignored = dict(result.classification.ignored_by_category)
        if ignored:
            logger.info(
                f"pg_restore tolerated known warnings for {target_database}: "
                + ", ".join(f"{name}={count}" for name, count in sorted(ignored.items()))
            )
        self._log.log_database_operation("import", target_database, duration=result.duration_ms / 1000)
        return ImportResult(
            database=database,
            target_database=target_database,
            duration_ms=result.duration_ms,
            target_schema=target_schema,
            created_database=created,
            ignored=ignored,
            warnings=result.classification.warning_lines,
        )

    # ------------------------------------------------------------------
    # Sizing, estimation and compatibility
    # ------------------------------------------------------------------

    async def get_database_size(self, descriptor: ConnectionDescriptor, database: str) -> int:
        # Sized from the admin database so no per-database pool is opened.
        rows = await self.connection_manager.execute(
            descriptor.for_database("postgres"),
            "SELECT pg_database_size(%s) AS size_bytes",
            (database,)
        )
        return int(rows[0]['size_bytes']) if rows else 0

    async def get_existing_databases(self, descriptor: ConnectionDescriptor, names: Sequence[str]) -> Dict[str, int]:
        """Sizes of those of `names` that exist on the descriptor's instance."""
        rows = await self.connection_manager.execute(
            descriptor.for_database("postgres"),
            "SELECT datname, pg_database_size(datname) AS size_bytes "
            "FROM pg_database WHERE datname = ANY(%s)",
            (list(names),)
        )
        return {row['datname']: int(row['size_bytes'] or 0) for row in rows}

    async def get_migration_estimate(
        self,
        source: ConnectionDescriptor,
        databases: Sequence[str],
        options: MigrationOptions
    ) -> MigrationEstimate:
        """
        Estimate migration duration from database sizes.

        Never raises for expected failures: the estimate falls back to a
        fixed conservative value instead.
        """
        try:
            sizes = []
            for name in databases:
                sizes.append(DatabaseSize(name=name, size_bytes=await self.get_database_size(source, name)))
            total = sum(size.size_bytes for size in sizes)
            if total < 0:
                raise EstimationError(f"Negative total size reported for {source.instance_label}")
            return MigrationEstimate(
                databases=sizes,
                total_size_bytes=total,
                estimated_minutes=estimate_minutes(total, options),
                speed_mb_per_min=round(estimate_speed(total, options), 2),
                factors=estimate_factors(options),
            )
        except MigrationToolError as e:
            logger.warning(f"Could not compute estimate for {source.instance_label}: {e}")
            return MigrationEstimate(
                databases=[],
                total_size_bytes=0,
                estimated_minutes=FALLBACK_ESTIMATE_MINUTES,
                speed_mb_per_min=None,
                factors=[f"Unable to calculate precise estimate ({type(e).__name__}: {e})"],
                fallback=True,
            )

    async def check_compatibility(
        self,
        source: ConnectionDescriptor,
        target: ConnectionDescriptor,
        force: bool = False
    ) -> CompatibilityReport:
        """Compare server major versions; an older target is incompatible unless forced."""
        source_version = await self.connection_manager.get_server_version(source)
        target_version = await self.connection_manager.get_server_version(target)
        source_major = parse_major_version(source_version)
        target_major = parse_major_version(target_version)

        report = CompatibilityReport(
            compatible=True,
            source_version=source_version,
            target_version=target_version,
        )
        if source_major is None or target_major is None:
            report.warnings.append("Could not determine server versions; compatibility unverified")
        elif source_major > target_major:
            message = (
                f"Source version {source_version} is newer than target version {target_version}"
            )
            if force:
                report.warnings.append(message + " (forced)")
            else:
                report.compatible = False
                report.warnings.append(message)
        elif source_major < target_major:
            report.warnings.append(
                f"Upgrading from {source_version} to {target_version}; test the application before cutover"
            )
        return report

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def remove_artifact(self, path: Path) -> bool:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Could not remove artifact {path}: {e}")
            return False
        logger.debug(f"Removed artifact {path}")
        return True

    async def cleanup(self) -> int:
        """Remove the work directory and every artifact in it."""
        if not self.work_dir.exists():
            return 0
        count = sum(1 for entry in self.work_dir.iterdir() if entry.is_file())
        await asyncio.to_thread(shutil.rmtree, self.work_dir, True)
        logger.info(f"Cleanup finished: {count} file(s) removed")
        return count
