"""
Configuration for the job monitor.

Settings come from an optional YAML file and are overridden by
environment variables, then validated with pydantic. A minimal file::

    db_path: monitor.db
    artifact_dir: artifacts
    batch_limit: 50
    concurrency: 4
    max_run_seconds: 240
    priority:
      staleness_weight: 1.0
      change_weight: 5.0
      change_window: 10
    subscribers:
      - id: ops
        channel: email
        address: ops@example.com
        include_job_changes: true
        min_severity: high

Recognized environment variables: ``MONITOR_CONFIG`` (path of the YAML
file), ``DB_PATH``, ``MONITOR_ARTIFACT_DIR``, ``MONITOR_CONCURRENCY``,
``MONITOR_BATCH_LIMIT`` and ``MONITOR_MAX_RUN_SECONDS``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .diff_engine import DiffSettings
from .errors import ConfigurationError
from .models import DEFAULT_FREQUENCY_HOURS, JobStatus, PriorityBucket, Severity, Subscriber
from .priority import PriorityPolicy

ENV_OVERRIDES = {
    "DB_PATH": "db_path",
    "MONITOR_ARTIFACT_DIR": "artifact_dir",
    "MONITOR_CONCURRENCY": "concurrency",
    "MONITOR_BATCH_LIMIT": "batch_limit",
    "MONITOR_MAX_RUN_SECONDS": "max_run_seconds",
}


class PrioritySettings(BaseModel):
    bucket_weights: Dict[PriorityBucket, float] = Field(
        default_factory=lambda: {
            PriorityBucket.CRITICAL: 100.0,
            PriorityBucket.HIGH: 50.0,
            PriorityBucket.MEDIUM: 20.0,
            PriorityBucket.LOW: 0.0,
        }
    )
    default_bucket: PriorityBucket = PriorityBucket.MEDIUM
    staleness_weight: float = Field(1.0, ge=0)
    change_weight: float = Field(5.0, ge=0)
    change_window: int = Field(10, ge=1)


class DiffConfig(BaseModel):
    description_noise_ratio: float = Field(0.995, ge=0, le=1)


class SubscriberConfig(BaseModel):
    id: str = Field(..., min_length=1)
    channel: Literal["email", "webhook", "log"] = "log"
    address: str = ""
    include_new_jobs: bool = False
    include_job_changes: bool = True
    include_statistics: bool = False
    min_severity: Severity = Severity.LOW
    job_statuses: List[JobStatus] = Field(default_factory=lambda: [JobStatus.ACTIVE, JobStatus.CLOSED])
    max_per_hour: int = Field(0, ge=0)
    enabled: bool = True

    def to_subscriber(self) -> Subscriber:
        return Subscriber(
            subscriber_id=self.id,
            channel=self.channel,
            address=self.address,
            include_new_jobs=self.include_new_jobs,
            include_job_changes=self.include_job_changes,
            include_statistics=self.include_statistics,
            min_severity=self.min_severity,
            job_statuses=frozenset(status.value for status in self.job_statuses),
            max_per_hour=self.max_per_hour,
            enabled=self.enabled,
        )


class MonitorSettings(BaseModel):
    db_path: Path = Path("monitor.db")
    artifact_dir: Path = Path("artifacts")
    batch_limit: int = Field(50, ge=1)
    max_batch_limit: int = Field(100, ge=1)
    concurrency: int = Field(4, ge=1, le=64)
    max_run_seconds: Optional[float] = Field(None, gt=0)
    fetch_timeout: float = Field(20.0, gt=0)
    user_agent: str = "Mozilla/5.0 (compatible; job-monitor/1.0)"
    default_frequency_hours: int = Field(DEFAULT_FREQUENCY_HOURS, ge=1)
    retention_keep_last: Optional[int] = Field(None, ge=1)
    priority: PrioritySettings = Field(default_factory=PrioritySettings)
    diff: DiffConfig = Field(default_factory=DiffConfig)
    subscribers: List[SubscriberConfig] = Field(default_factory=list)

    @field_validator("max_run_seconds", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if value in ("", 0, "0"):
            return None
        return value

    @model_validator(mode="after")
    def _batch_within_cap(self) -> "MonitorSettings":
        if self.batch_limit > self.max_batch_limit:
            raise ValueError(
                f"batch_limit ({self.batch_limit}) exceeds max_batch_limit ({self.max_batch_limit})"
            )
        return self

    def priority_policy(self) -> PriorityPolicy:
        return PriorityPolicy(
            bucket_weights=dict(self.priority.bucket_weights),
            default_bucket=self.priority.default_bucket,
            staleness_weight=self.priority.staleness_weight,
            change_weight=self.priority.change_weight,
            change_window=self.priority.change_window,
        )

    def diff_settings(self) -> DiffSettings:
        return DiffSettings(description_noise_ratio=self.diff.description_noise_ratio)

    def subscriber_records(self) -> List[Subscriber]:
        return [entry.to_subscriber() for entry in self.subscribers]


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a mapping at the top of {path}, got {type(data).__name__}")
    return data


def load_settings(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> MonitorSettings:
    """Load settings from YAML (if any) plus environment overrides.

    Raises:
        ConfigurationError: If the file is unreadable or a value is invalid.
    """
    env = os.environ if env is None else env
    if path is None and env.get("MONITOR_CONFIG"):
        path = Path(env["MONITOR_CONFIG"])

    data: Dict[str, Any] = {}
    if path is not None:
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        data = _load_yaml(path)

    for var, key in ENV_OVERRIDES.items():
        if env.get(var):
            data[key] = env[var]

    try:
        return MonitorSettings(**data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid monitor settings: {exc}") from exc
