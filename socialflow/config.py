"""Application settings, read from ``SOCIALFLOW_*`` environment variables."""

import os
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from .core.exceptions import ConfigurationError
from .core.scheduler import load_timezone

ENV_PREFIX = "SOCIALFLOW_"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class AppConfig(BaseModel):
    """Every setting of the service.

    Each field maps to the environment variable ``SOCIALFLOW_<FIELD>``;
    list fields take comma-separated values.
    """

    # Service
    app_name: str = Field(default="SocialFlow Automation Engine")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False, description="Auto-reload on code changes")

    # Storage
    database_url: str = Field(default="sqlite:///./socialflow.db")
    database_echo: bool = Field(default=False, description="Log every SQL statement")

    # Execution
    max_concurrent_runs: int = Field(default=10, ge=1, description="Worker threads for events and resumes")
    max_branch_workers: int = Field(default=20, ge=1, description="Worker threads for sibling nodes")
    max_action_workers: int = Field(default=20, ge=1, description="Worker threads for collaborator calls")
    action_timeout: float = Field(default=30.0, gt=0, description="Deadline of one collaborator call in seconds")
    action_max_attempts: int = Field(default=3, ge=1)
    action_retry_base_delay: float = Field(default=1.0, ge=0)
    action_retry_max_delay: float = Field(default=30.0, ge=0)
    sweep_interval: float = Field(default=30.0, gt=0, description="Seconds between continuation sweeps")
    enforce_trigger_preconditions: bool = Field(
        default=False,
        description="Skip the branch of a trigger whose keyword or sentiment precondition fails"
    )

    # Evaluation
    timezone: str = Field(default="UTC", description="IANA zone for queue slots and recurrences")
    new_follower_window_days: int = Field(default=7, ge=0)
    engagement_window_days: int = Field(default=30, ge=0)

    # Logging
    log_level: LogLevel = Field(default=LogLevel.INFO)
    log_format: Optional[str] = Field(default=None, description="Text log format; a default is used when unset")
    log_file: Optional[str] = Field(default=None)
    log_max_size: int = Field(default=10 * 1024 * 1024, description="Rotate the log file at this many bytes")
    log_backup_count: int = Field(default=5)
    log_structured: bool = Field(default=False, description="Emit JSON log lines")

    # HTTP
    slow_request_threshold: float = Field(default=5.0)
    enable_performance_monitoring: bool = Field(default=True)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_methods: List[str] = Field(default_factory=lambda: ["GET", "POST", "PUT", "DELETE"])

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("Database URL cannot be empty")
        scheme = v.split("://")[0].split("+")[0].lower()
        if scheme not in {db.value for db in DatabaseType}:
            raise ValueError(f"Unsupported database scheme: {scheme}")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        try:
            load_timezone(v)
        except ConfigurationError as e:
            raise ValueError(e.message) from e
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator("cors_origins", "cors_methods", mode="before")
    @classmethod
    def split_list(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType(self.database_url.split("://")[0].split("+")[0].lower())

    @property
    def is_sqlite(self) -> bool:
        return self.database_type == DatabaseType.SQLITE

    def get_database_connect_args(self) -> Dict[str, Any]:
        # SQLite connections are shared with the engine's worker threads
        return {"check_same_thread": False} if self.is_sqlite else {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AppConfig":
        """Build a config from ``SOCIALFLOW_*`` variables; unset ones keep their defaults."""
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw
        return cls.model_validate(values)


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """The process-wide config, read from the environment on first use."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load a .env file (``config_file`` or ./.env) into the environment, then read the config."""
    global _config
    from dotenv import load_dotenv

    env_file = config_file if config_file and os.path.exists(config_file) else ".env"
    if os.path.exists(env_file):
        load_dotenv(env_file)

    _config = AppConfig.from_env()
    return _config


def reset_config():
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Create the directories the config points at; raise ValueError if that fails."""
    directories = []
    if config.is_sqlite:
        db_path = config.database_url.split(":///", 1)[-1]
        if db_path and db_path != ":memory:":
            directories.append(os.path.dirname(db_path))
    if config.log_file:
        directories.append(os.path.dirname(config.log_file))

    errors = []
    if config.action_retry_base_delay > config.action_retry_max_delay:
        errors.append("Retry base delay cannot exceed retry max delay")
    for directory in filter(None, directories):
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            errors.append(f"Cannot create directory {directory}: {e}")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


def get_development_config() -> AppConfig:
    return AppConfig(debug=True, reload=True, log_level=LogLevel.DEBUG, database_echo=True)


def get_production_config() -> AppConfig:
    return AppConfig(debug=False, reload=False, log_level=LogLevel.INFO, log_structured=True, cors_origins=[])


def get_testing_config() -> AppConfig:
    """In-memory database, small pools, no retry delays worth waiting for."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrent_runs=2,
        max_branch_workers=4,
        max_action_workers=4,
        action_timeout=5.0,
        action_retry_base_delay=0.0,
        action_retry_max_delay=0.0,
        sweep_interval=3600.0
    )
