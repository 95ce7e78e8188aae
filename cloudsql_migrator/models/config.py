"""
Configuration models for the CloudSQL Migrator.

This module defines Pydantic models for environment settings, connection
descriptors, per-unit migration options and batch policy.
"""

import os
import re
import tempfile
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict

from cloudsql_migrator.core.exceptions import ValidationError


INSTANCE_IP_ENV_PREFIX = "CLOUDSQL_IP_"


class Role(str, Enum):
    """Role of an instance within a migration."""
    SOURCE = "source"
    TARGET = "target"
    UNSPECIFIED = "unspecified"


class SSLMode(str, Enum):
    """SSL modes for instance connections."""
    DISABLE = "disable"
    SIMPLE = "simple"
    STRICT = "strict"


class ConflictResolution(str, Enum):
    """Policies for target database name collisions within a mapping."""
    FAIL = "fail"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    MERGE = "merge"
    RENAME_SCHEMA = "rename-schema"


class MappingStrategy(str, Enum):
    """Strategies for resolving sources and targets into migration units."""
    SIMPLE = "simple"
    CONSOLIDATE = "consolidate"
    DISTRIBUTE = "distribute"
    REPLICATE = "replicate"
    VERSION_BASED = "version-based"
    ROUND_ROBIN = "round-robin"
    SPLIT_BY_DATABASE = "split-by-database"
    MANUAL_MAPPING = "manual-mapping"
    CUSTOM = "custom"


def instance_env_key(instance: str) -> str:
    """Normalize an instance name to its environment variable suffix."""
    return instance.upper().replace("-", "_")


def parse_major_version(version: Optional[str]) -> Optional[int]:
    """Extract the major version from 'POSTGRES_14', '14.9' or a version() banner."""
    if not version:
        return None
    match = re.search(r"(\d+)", str(version))
    return int(match.group(1)) if match else None


class MigratorSettings(BaseModel):
    """Process-wide settings resolved from the environment."""
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    connection_timeout: int = Field(default=30, ge=1)
    pool_min_size: int = Field(default=2, ge=1)
    pool_max_size: int = Field(default=10, ge=1)
    default_user: str = "postgres"
    source_password: Optional[str] = Field(default=None, repr=False)
    target_password: Optional[str] = Field(default=None, repr=False)
    password: Optional[str] = Field(default=None, repr=False)
    source_ip: Optional[str] = None
    target_ip: Optional[str] = None
    instance_ips: Dict[str, str] = Field(default_factory=dict)
    use_proxy: bool = False
    proxy_port: int = 5432
    port: int = 5432
    ssl_mode: SSLMode = SSLMode.SIMPLE
    ssl_root_cert: Optional[str] = None
    ssl_client_cert: Optional[str] = None
    ssl_client_key: Optional[str] = None
    work_dir: str = Field(default_factory=lambda: os.path.join(tempfile.gettempdir(), "cloudsql-migrator"))
    pg_dump_command: str = "pg_dump"
    pg_restore_command: str = "pg_restore"
    log_level: str = "INFO"

    @field_validator('pool_max_size')
    @classmethod
    def pool_max_not_below_min(cls, v, info):
        if v < info.data.get('pool_min_size', 1):
            raise ValueError('pool_max_size must be >= pool_min_size')
        return v

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MigratorSettings":
        """Build settings from environment variables."""
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        def first(*names: str) -> Optional[str]:
            for name in names:
                if env.get(name):
                    return env[name]
            return None

        simple = {
            'retry_attempts': "CLOUDSQL_MIGRATOR_RETRY_ATTEMPTS",
            'connection_timeout': "CLOUDSQL_MIGRATOR_CONNECTION_TIMEOUT",
            'default_user': "PGUSER",
            'password': "PGPASSWORD",
            'source_ip': "CLOUDSQL_SOURCE_IP",
            'target_ip': "CLOUDSQL_TARGET_IP",
            'proxy_port': "CLOUDSQL_PROXY_PORT",
            'port': "PGPORT",
            'ssl_mode': "CLOUDSQL_SSL_MODE",
            'ssl_root_cert': "CLOUDSQL_SERVER_CA_CERT",
            'ssl_client_cert': "CLOUDSQL_CLIENT_CERT",
            'ssl_client_key': "CLOUDSQL_CLIENT_KEY",
            'work_dir': "CLOUDSQL_MIGRATOR_WORK_DIR",
            'pg_dump_command': "PG_DUMP_PATH",
            'pg_restore_command': "PG_RESTORE_PATH",
            'log_level': "CLOUDSQL_MIGRATOR_LOG_LEVEL",
        }
        for field_name, env_name in simple.items():
            value = first(env_name)
            if value is not None:
                values[field_name] = value

        source_password = first("PGPASSWORD_SOURCE", "CLOUDSQL_SOURCE_PASSWORD")
        if source_password:
            values['source_password'] = source_password
        target_password = first("PGPASSWORD_TARGET", "CLOUDSQL_TARGET_PASSWORD")
        if target_password:
            values['target_password'] = target_password

        values['use_proxy'] = env.get("USE_CLOUD_SQL_PROXY", "").lower() == "true"
        values['instance_ips'] = {
            name[len(INSTANCE_IP_ENV_PREFIX):]: value
            for name, value in env.items()
            if name.startswith(INSTANCE_IP_ENV_PREFIX) and value
        }

        return cls(**values)

    def instance_ip(self, instance: str) -> Optional[str]:
        """Instance-specific IP override, if configured."""
        return self.instance_ips.get(instance_env_key(instance))

    def role_password(self, role: "Role") -> Optional[str]:
        """Role-specific password fallback, if configured."""
        if role == Role.SOURCE:
            return self.source_password
        if role == Role.TARGET:
            return self.target_password
        return None


class ConnectionDescriptor(BaseModel):
    """Identifies one database on one managed instance."""
    project: str
    instance: str
    database: str = "postgres"
    role: Role = Role.UNSPECIFIED
    ip: Optional[str] = None
    port: Optional[int] = None
    use_proxy: Optional[bool] = None
    ssl_mode: Optional[SSLMode] = None
    user: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    databases: Optional[List[str]] = None
    engine_version: Optional[str] = None
    region: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        """Pool identity key."""
        return (self.project, self.instance, self.database)

    @property
    def instance_key(self) -> Tuple[str, str]:
        return (self.project, self.instance)

    @property
    def instance_label(self) -> str:
        return f"{self.project}:{self.instance}"

    @property
    def major_version(self) -> Optional[int]:
        return parse_major_version(self.engine_version)

    def for_database(self, database: str) -> "ConnectionDescriptor":
        """Return a copy bound to another database on the same instance."""
        return self.model_copy(update={'database': database})

    def with_role(self, role: Role) -> "ConnectionDescriptor":
        return self.model_copy(update={'role': role})


class MigrationOptions(BaseModel):
    """Per-unit migration options."""
    dry_run: bool = False
    include_all: bool = False
    schema_only: bool = False
    data_only: bool = False
    retry_attempts: int = Field(default=3, ge=1)
    jobs: int = Field(default=1, ge=1)
    use_clean: bool = True
    exclude_table_data: List[str] = Field(default_factory=list)
    compression_level: int = Field(default=9, ge=0, le=9)
    cross_region: bool = False
    include_indexes: bool = True
    force_compatibility: bool = False
    keep_artifacts: bool = False
    conflict_resolution: ConflictResolution = ConflictResolution.FAIL

    @model_validator(mode='after')
    def schema_and_data_only_exclusive(self):
        if self.schema_only and self.data_only:
            raise ValidationError(
                "schema_only and data_only cannot both be set",
                failed_checks=["schema_only/data_only"]
            )
        return self

    @property
    def mode(self) -> str:
        if self.schema_only:
            return "schema_only"
        if self.data_only:
            return "data_only"
        return "full"


class OperationConfig(BaseModel):
    """Single source to target migration request."""
    source: ConnectionDescriptor
    target: ConnectionDescriptor
    options: MigrationOptions = Field(default_factory=MigrationOptions)

    def validate_config(self) -> None:
        """Raise ValidationError listing every problem found."""
        problems = []
        for label, descriptor in (("source", self.source), ("target", self.target)):
            if not descriptor.project:
                problems.append(f"{label} project is required")
            if not descriptor.instance:
                problems.append(f"{label} instance is required")
        if not self.source.databases and not self.options.include_all:
            problems.append("No databases selected: list databases or set include_all")
        if problems:
            raise ValidationError(
                "Invalid migration configuration: " + "; ".join(problems),
                failed_checks=problems
            )


class BatchOptions(BaseModel):
    """Concurrency and failure policy for a batch."""
    max_parallel: int = Field(default=3, ge=1)
    stop_on_error: bool = True
    retry_failed: bool = True
    unit_timeout: Optional[float] = Field(default=21600, gt=0)
    close_connections: bool = True


class ConnectionConfig(BaseModel):
    """Resolved connection parameters for one descriptor."""
    model_config = ConfigDict(frozen=True)

    host: str
    port: int = 5432
    user: str
    password: str = Field(repr=False)
    dbname: str
    ssl_mode: SSLMode = SSLMode.SIMPLE
    sslmode: str = "require"
    sslrootcert: Optional[str] = None
    sslcert: Optional[str] = None
    sslkey: Optional[str] = None
    connect_timeout: int = 30
    pool_min: int = 2
    pool_max: int = 10
    resolution: str = "explicit"

    def to_connect_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments accepted by psycopg2.connect and its pools."""
        kwargs = {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'dbname': self.dbname,
            'sslmode': self.sslmode,
            'connect_timeout': self.connect_timeout,
            'application_name': "cloudsql-migrator",
        }
        for name in ('sslrootcert', 'sslcert', 'sslkey'):
            value = getattr(self, name)
            if value:
                kwargs[name] = value
        return kwargs
