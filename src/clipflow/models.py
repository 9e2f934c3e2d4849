"""Pydantic models for configuration and validation."""

from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from clipflow.queue.models import Stage
from clipflow.queue.pool import DEFAULT_WORKER_COUNTS


class QueueConfig(BaseModel):
    """Persistent queue settings."""

    db_path: str = Field(default="clipflow.db", description="SQLite database file")
    max_attempts: int = Field(default=3, ge=1, description="Attempts per stage before the job fails")
    lease_seconds: float = Field(
        default=1800.0, gt=0.0, description="Claim lease; expired claims are reclaimed by the sweep"
    )
    retry_delay_s: float = Field(
        default=0.0, ge=0.0, description="Cool-down before a failed item can be re-claimed"
    )
    busy_timeout_s: float = Field(
        default=30.0, gt=0.0, description="How long a connection waits for the SQLite write lock"
    )


class WorkersConfig(BaseModel):
    """Worker pool settings."""

    counts: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_WORKER_COUNTS), description="Workers per stage"
    )
    poll_interval_s: float = Field(default=1.0, gt=0.0, description="Idle poll interval")
    health_window_s: float = Field(
        default=60.0, gt=0.0, description="Workers that polled within this window count as healthy"
    )
    recovery_interval_s: float = Field(
        default=60.0, ge=0.0, description="Stuck-item sweep period (0 disables the sweep)"
    )
    stuck_minutes: float = Field(
        default=10.0, ge=0.0, description="Claims older than this are treated as stuck"
    )

    @field_validator("counts")
    @classmethod
    def counts_are_known_stages(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Reject unknown stage names and negative counts."""
        for stage, count in v.items():
            Stage(stage)
            if count < 0:
                raise ValueError(f"worker count for {stage} must be >= 0")
        return v


class ApiConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, gt=0, lt=65536)
    start_workers: bool = Field(
        default=True, description="Start the worker pool when the API server starts"
    )


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    format: str = Field(default="%(asctime)s %(levelname)s %(name)s: %(message)s")
    file: Optional[str] = Field(default=None, description="Also log to this file")


class ClipflowConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    workers: WorkersConfig = Field(default_factory=WorkersConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    handlers: Dict[str, str] = Field(
        default_factory=dict, description='Stage handler import paths, "package.module:function"'
    )

    @field_validator("handlers")
    @classmethod
    def handler_stages_known(cls, v: Dict[str, str]) -> Dict[str, str]:
        for stage in v:
            Stage(stage)
        return v

    @classmethod
    def from_dict(cls, data: dict) -> "ClipflowConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "ClipflowConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["queue"]["db_path"] = cli_args["db"]
        if cli_args.get("lease_seconds") is not None:
            config_dict["queue"]["lease_seconds"] = cli_args["lease_seconds"]
        if cli_args.get("max_attempts") is not None:
            config_dict["queue"]["max_attempts"] = cli_args["max_attempts"]
        if cli_args.get("poll_interval") is not None:
            config_dict["workers"]["poll_interval_s"] = cli_args["poll_interval"]
        if cli_args.get("stuck_minutes") is not None:
            config_dict["workers"]["stuck_minutes"] = cli_args["stuck_minutes"]
        if cli_args.get("host") is not None:
            config_dict["api"]["host"] = cli_args["host"]
        if cli_args.get("port") is not None:
            config_dict["api"]["port"] = cli_args["port"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return ClipflowConfig.from_dict(config_dict)
