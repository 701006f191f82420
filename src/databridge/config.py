"""Configuration management for DataBridge using Pydantic.

This module provides type-safe configuration models for the engine (state
database, job queue, object store, logging) and for individual pipeline
runs (batch size, error handling, load strategy, staging).
"""

import os
import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class DatabaseEngine(str, Enum):
    """Kinds of databases a project can read from or write to."""

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MSSQL = "mssql"
    SQLITE = "sqlite"
    COUCHDB = "couchdb"


class ErrorHandling(str, Enum):
    """How a stage reacts to a table, row or object level error."""

    FAIL_FAST = "fail-fast"
    CONTINUE_ON_ERROR = "continue-on-error"


class LoadStrategy(str, Enum):
    """How staged rows are written into target tables."""

    TRUNCATE_LOAD = "truncate-load"
    MERGE = "merge"
    APPEND = "append"


_DRIVERS = {
    DatabaseEngine.POSTGRESQL: "postgresql",
    DatabaseEngine.MYSQL: "mysql+pymysql",
    DatabaseEngine.MSSQL: "mssql+pyodbc",
}


class ConnectionConfig(BaseModel):
    """Connection descriptor for a source or target database."""

    engine: DatabaseEngine = Field(..., description="Database engine type")
    host: str | None = Field(default=None, description="Database host")
    port: int | None = Field(default=None, ge=1, le=65535, description="Database port")
    username: str | None = Field(default=None, description="Login user")
    password: str | None = Field(default=None, description="Login password")
    database: str = Field(..., description="Database name (file path for SQLite)")
    url: str | None = Field(
        default=None, description="Explicit connection URL, overrides host/port/credentials"
    )
    verify_ssl: bool = Field(default=True, description="Verify TLS certificates (HTTP stores)")
    timeout: int = Field(default=30, ge=1, le=1200, description="Request timeout in seconds")

    @property
    def is_document_store(self) -> bool:
        return self.engine == DatabaseEngine.COUCHDB

    def sqlalchemy_url(self) -> str | URL:
        """Build the SQLAlchemy URL for a relational connection."""
        if self.is_document_store:
            raise ValueError("Document stores have no SQLAlchemy URL")
        if self.url:
            return self.url
        if self.engine == DatabaseEngine.SQLITE:
            return f"sqlite:///{self.database}"
        return URL.create(
            _DRIVERS[self.engine],
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )

    def http_base_url(self) -> str:
        """Base URL of an HTTP document store (without the database path)."""
        if self.url:
            return self.url.rstrip("/")
        return f"http://{self.host or 'localhost'}:{self.port or 5984}"


class StagingConfig(BaseModel):
    """Where extracted rows are staged inside the target database."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    schema_name: str | None = Field(
        default="staging", description="Schema holding staging tables (None = default schema)"
    )
    table_prefix: str = Field(default="stg_", description="Prefix for staging table names")
    cleanup_after_migration: bool = Field(
        default=False, description="Drop staging tables once the report is generated"
    )


class PipelineConfig(BaseModel):
    """Configuration of a single pipeline run.

    Accepts both snake_case and camelCase keys (``batchSize``,
    ``errorHandling``, ...).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    batch_size: int = Field(default=1000, ge=1, le=100000, description="Rows per batch")
    parallelism: int = Field(default=1, ge=1, le=32, description="Parallel units of work")
    error_handling: ErrorHandling = Field(
        default=ErrorHandling.FAIL_FAST, description="fail-fast or continue-on-error"
    )
    validate_data: bool = Field(default=True, description="Run the validate stage checks")
    staging: StagingConfig = Field(default_factory=StagingConfig)
    retry_attempts: int = Field(default=3, ge=1, le=10, description="Job attempts per stage")
    retry_delay_ms: int = Field(
        default=5000, ge=0, le=600000, description="Initial backoff between stage attempts"
    )
    load_strategy: LoadStrategy = Field(
        default=LoadStrategy.TRUNCATE_LOAD, description="truncate-load, merge or append"
    )

    @property
    def fail_fast(self) -> bool:
        return self.error_handling == ErrorHandling.FAIL_FAST


class QueueConfig(BaseModel):
    """Job queue configuration."""

    name: str = Field(default="etl-jobs", description="Queue name used in logs")
    concurrency: int = Field(default=2, ge=1, le=64, description="Concurrent worker tasks")
    rate_limit_max: int = Field(default=10, ge=1, description="Job starts allowed per window")
    rate_limit_window_ms: int = Field(default=1000, ge=1, description="Rate limit window")
    default_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per job")
    backoff_delay_ms: int = Field(
        default=5000, ge=0, description="First retry delay, doubled on each retry"
    )
    keep_completed_count: int = Field(default=100, ge=0)
    keep_completed_age_s: int = Field(default=86400, ge=0)
    keep_failed_count: int = Field(default=500, ge=0)
    keep_failed_age_s: int = Field(default=604800, ge=0)


class ObjectStoreConfig(BaseModel):
    """Target object store for migrated attachments."""

    url: str | None = Field(default=None, description="Object store base URL")
    api_key: str | None = Field(default=None, description="Bearer token")
    custom_key_header: str = Field(default="apiKey", description="Extra API key header name")
    custom_key: str | None = Field(default=None, description="Extra API key header value")
    upload_path: str = Field(default="/upload", description="Multipart upload endpoint")
    timeout: int = Field(default=300, ge=1, le=3600, description="Upload timeout in seconds")
    verify_ssl: bool = Field(default=True)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate and normalize URL."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")


class AttachmentConfig(BaseModel):
    """Attachment migration tuning."""

    concurrency: int = Field(default=5, ge=1, le=50, description="Uploads per chunk")
    max_retries: int = Field(default=3, ge=1, le=10, description="Attempts per attachment")
    backoff_base: float = Field(
        default=2.0, ge=1.0, le=10.0, description="Wait base**attempt seconds between attempts"
    )


class StateConfig(BaseModel):
    """Execution state database configuration."""

    db_path: str = Field(
        default="./databridge_state.db", description="SQLite file path or database URL"
    )
    db_pool_size: int = Field(default=5, ge=1, le=50)
    db_max_overflow: int = Field(default=10, ge=1, le=100)
    db_pool_timeout: int = Field(default=30, ge=1, le=300)
    db_pool_recycle: int = Field(default=3600, ge=60, le=28800)

    @property
    def database_url(self) -> str:
        if "://" in self.db_path:
            return self.db_path
        return f"sqlite:///{self.db_path}"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="WARNING", description="Console log level")
    file_level: str = Field(default="DEBUG", description="File log level")
    format: str = Field(default="json", description="File log format (json or console)")
    file: str | None = Field(default="logs/databridge.log", description="Log file path")

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "console"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Log format must be one of: {', '.join(valid_formats)}")
        return v_lower


class EngineConfig(BaseSettings):
    """Main engine configuration.

    Values can come from a YAML file, from ``DATABRIDGE_*`` environment
    variables (``DATABRIDGE_QUEUE__CONCURRENCY=4``) or both.
    """

    model_config = SettingsConfigDict(
        env_prefix="DATABRIDGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    state: StateConfig = Field(default_factory=StateConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    attachments: AttachmentConfig = Field(default_factory=AttachmentConfig)
    object_store: ObjectStoreConfig = Field(default_factory=ObjectStoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    pipeline: PipelineConfig = Field(
        default_factory=PipelineConfig, description="Defaults for runs started from the CLI"
    )
    catalog_file: str | None = Field(default=None, description="YAML project catalog")
    identity_batch_size: int = Field(
        default=500, ge=1, le=10000, description="Identity mapping rows per insert batch"
    )


def load_config_from_yaml(config_path: str | Path) -> EngineConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        EngineConfig: Loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is empty or references an unset variable
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        raise ValueError(f"Empty configuration file: {config_path}")

    return EngineConfig(**expand_env_vars(config_data))


def expand_env_vars(data: Any) -> Any:
    """Recursively expand ``${VAR_NAME}`` references in loaded YAML data.

    Args:
        data: Parsed YAML (dict, list or scalar)

    Returns:
        The same structure with environment variables substituted

    Raises:
        ValueError: If a referenced variable is not set
    """
    if isinstance(data, dict):
        return {k: expand_env_vars(v) for k, v in data.items()}
    if isinstance(data, list):
        return [expand_env_vars(item) for item in data]
    if isinstance(data, str):

        def _substitute(match: re.Match[str]) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(
                    f"Environment variable '{var_name}' not found. "
                    f"Please set it in your environment or .env file."
                )
            return env_value

        return _ENV_VAR_PATTERN.sub(_substitute, data)
    return data
