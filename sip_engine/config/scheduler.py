"""Scheduler, worker and retry tuning.

Loads from config/scheduler.yaml. Every parameter has a production default,
so a missing file means "run with defaults".
"""

from pathlib import Path
from typing import Optional

import yaml
from croniter import croniter
from pydantic import BaseModel, Field, field_validator


class EngineConfig(BaseModel):
    """Execution engine retry policy (inner retry layer)."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_seconds: float = Field(default=1.0, ge=0.0)
    # Extra wait between attempts, on top of the exponential backoff
    inter_attempt_delay_seconds: float = Field(default=1.0, ge=0.0)


class RegistryConfig(BaseModel):
    """Schedule registry and job transport settings (outer retry layer)."""

    queue_name: str = "sip-execution"
    trigger_prefix: str = "sip-scheduler-"
    job_attempts: int = Field(default=3, ge=1, le=10)
    job_backoff_seconds: float = Field(default=1.0, ge=0.0)
    lease_seconds: int = Field(default=300, ge=5)
    pattern_override: Optional[str] = None  # e.g. "* * * * *" for testing
    remove_on_complete: bool = True
    keep_failed_jobs: int = Field(default=1000, ge=0)

    @field_validator("pattern_override")
    @classmethod
    def validate_pattern(cls, v: Optional[str]) -> Optional[str]:
        """Reject override patterns croniter cannot parse."""
        if v is None or v.strip() == "":
            return None
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron pattern: {v!r}")
        return v


class WorkerConfig(BaseModel):
    """Dispatch worker settings."""

    concurrency: int = Field(default=1, ge=1, le=1)
    rate_limit_max: int = Field(default=1, ge=1)
    rate_limit_duration_seconds: float = Field(default=1.0, gt=0.0)
    poll_interval_seconds: float = Field(default=1.0, gt=0.0)


class ReconcilerConfig(BaseModel):
    """Reconciliation sweep settings."""

    sweep_interval_seconds: int = Field(default=600, ge=1)


class DaemonConfig(BaseModel):
    """Daemon process configuration."""

    pid_file: str = "run/sip_engine.pid"
    graceful_shutdown_timeout_seconds: int = Field(default=30, ge=1)


class SchedulerConfig(BaseModel):
    """Top-level scheduler configuration."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)


def load_scheduler_config(config_path: Optional[str] = None) -> SchedulerConfig:
    """Load scheduler configuration from a YAML file.

    Falls back to defaults if the file is not found.

    Args:
        config_path: Path to scheduler.yaml. Defaults to config/scheduler.yaml.

    Returns:
        SchedulerConfig instance
    """
    if config_path is None:
        config_path = str(Path("config/scheduler.yaml"))

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return SchedulerConfig(**data)

    return SchedulerConfig()
