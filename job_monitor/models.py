"""
Data models for the job monitoring engine.

The primary entity is ``Job`` which represents a tracked posting at an
external URL together with its monitoring configuration and lifecycle
state. Every successful fetch of a job produces an immutable
``Snapshot``; two consecutive snapshots of the same job are compared by
the diff engine to produce ``Change`` records. A ``MonitoringRun``
summarizes one batch execution of the scheduler.

Change and notification payloads are modelled as tagged variants (the
``change_type`` and ``kind`` discriminators) so consumers can match on
them exhaustively instead of poking at untyped dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union


# Fields captured on every snapshot, in the order the diff engine walks
# them. The order is part of the diff contract.
TRACKED_FIELDS = (
    "title",
    "company",
    "location",
    "salary_min",
    "salary_max",
    "salary_currency",
    "employment_type",
    "department",
    "description",
    "status",
)

DEFAULT_FREQUENCY_HOURS = 24


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as an ISO 8601 UTC string (``None`` passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a timestamp written by ``to_iso``; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JobStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    # Never set by a check: fetch failures leave the job untouched. Rows
    # imported or edited with this status return to active on the next
    # successful check.
    ERROR = "error"


class ChangeType(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    STATUS_CHANGE = "status_change"
    SALARY_CHANGE = "salary_change"
    TITLE_CHANGE = "title_change"
    LOCATION_CHANGE = "location_change"


class Severity(str, Enum):
    """Severity of a change; totally ordered from ``LOW`` to ``CRITICAL``."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= Severity(other).rank


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class PriorityBucket(str, Enum):
    """Manual monitoring priority override set by operators."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """Represents a single tracked job posting.

    Attributes:
        job_id: Stable identifier (see ``normalize.stable_id``).
        url: Source URL the fetcher is pointed at.
        canonical_url: URL with tracking parameters stripped.
        title: Last known title, used for display only.
        company: Last known company name, used for display only.
        monitoring_enabled: Disabled jobs are never selected by the queue.
        frequency_hours: Minimum hours between checks, always >= 1.
        priority_override: Optional manual bucket feeding the priority score.
        status: Lifecycle status (active, closed, error).
        first_seen_at: When the job was registered for tracking.
        last_checked_at: Last successful fetch, ``None`` if never checked.
        last_changed_at: Last time at least one change was detected.
    """

    job_id: str
    url: str
    canonical_url: str
    title: str = ""
    company: str = ""
    monitoring_enabled: bool = True
    frequency_hours: int = DEFAULT_FREQUENCY_HOURS
    priority_override: Optional[PriorityBucket] = None
    status: JobStatus = JobStatus.ACTIVE
    first_seen_at: datetime = field(default_factory=utc_now)
    last_checked_at: Optional[datetime] = None
    last_changed_at: Optional[datetime] = None

    def staleness(self, now: datetime) -> timedelta:
        """Time since the last check, or since registration if never checked."""
        reference = self.last_checked_at or self.first_seen_at
        return now - reference

    def is_due(self, now: datetime) -> bool:
        if not self.monitoring_enabled:
            return False
        if self.last_checked_at is None:
            return True
        return now - self.last_checked_at >= timedelta(hours=self.frequency_hours)

    def next_check_at(self) -> Optional[datetime]:
        if self.last_checked_at is None:
            return None
        return self.last_checked_at + timedelta(hours=self.frequency_hours)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "url": self.url,
            "canonical_url": self.canonical_url,
            "title": self.title,
            "company": self.company,
            "monitoring_enabled": self.monitoring_enabled,
            "frequency_hours": self.frequency_hours,
            "priority_override": self.priority_override.value if self.priority_override else None,
            "status": self.status.value,
            "first_seen_at": to_iso(self.first_seen_at),
            "last_checked_at": to_iso(self.last_checked_at),
            "last_changed_at": to_iso(self.last_changed_at),
            "next_check_at": to_iso(self.next_check_at()),
        }


@dataclass(frozen=True)
class Snapshot:
    """Immutable capture of a job's observable fields at one point in time.

    ``fields`` holds the normalized tracked fields; ``artifacts`` maps an
    artifact kind (``html``, ``markdown``, ``pdf``, ``screenshot``) to an
    opaque reference understood by the artifact store.
    """

    snapshot_id: str
    job_id: str
    taken_at: datetime
    content_hash: str
    fields: Mapping[str, Any]
    content_type: str = "text/html"
    artifacts: Mapping[str, str] = field(default_factory=dict)

    def get(self, name: str) -> Any:
        return self.fields.get(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "job_id": self.job_id,
            "taken_at": to_iso(self.taken_at),
            "content_hash": self.content_hash,
            "fields": dict(self.fields),
            "content_type": self.content_type,
            "artifacts": dict(self.artifacts),
        }


@dataclass(frozen=True)
class Change:
    """A field-level difference between two consecutive snapshots of a job."""

    change_id: str
    job_id: str
    snapshot_id: Optional[str]
    previous_snapshot_id: Optional[str]
    field: str
    old_value: Any
    new_value: Any
    change_type: ChangeType
    severity: Severity
    detected_at: datetime

    @property
    def summary(self) -> str:
        return f"{self.field} {self.change_type.value.replace('_', ' ')}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "change_id": self.change_id,
            "job_id": self.job_id,
            "snapshot_id": self.snapshot_id,
            "previous_snapshot_id": self.previous_snapshot_id,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "change_type": self.change_type.value,
            "severity": self.severity.value,
            "detected_at": to_iso(self.detected_at),
        }


@dataclass(frozen=True)
class MonitoringRun:
    """Summary record of one scheduler run."""

    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    jobs_checked: int = 0
    jobs_updated: int = 0
    errors_encountered: int = 0
    total_jobs_eligible: int = 0
    next_run_needed: bool = False
    status: RunStatus = RunStatus.RUNNING
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "jobs_checked": self.jobs_checked,
            "jobs_updated": self.jobs_updated,
            "errors_encountered": self.errors_encountered,
            "total_jobs_eligible": self.total_jobs_eligible,
            "next_run_needed": self.next_run_needed,
            "status": self.status.value,
            "error": self.error,
        }


# --- fetch outcomes ---

@dataclass(frozen=True)
class FetchedPage:
    """Successful fetch: raw field values plus raw artifact bytes by kind."""

    fields: Mapping[str, Any]
    raw_artifacts: Mapping[str, bytes] = field(default_factory=dict)
    content_type: str = "text/html"


@dataclass(frozen=True)
class NotFound:
    """The posting is gone (404/410 or an explicit removed marker)."""

    url: str
    reason: str = "not found"


FetchOutcome = Union[FetchedPage, NotFound]


# --- notification events ---

@dataclass(frozen=True)
class ChangeEvent:
    change: Change
    job: Job
    kind: str = field(default="change", init=False)
    interest: str = field(default="include_job_changes", init=False)

    @property
    def event_key(self) -> str:
        return self.change.change_id

    @property
    def severity(self) -> Severity:
        return self.change.severity

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind, "job": self.job.to_dict(), "change": self.change.to_dict()}


@dataclass(frozen=True)
class NewJobEvent:
    job: Job
    snapshot: Snapshot
    kind: str = field(default="new_job", init=False)
    interest: str = field(default="include_new_jobs", init=False)

    @property
    def event_key(self) -> str:
        return f"new:{self.snapshot.snapshot_id}"

    @property
    def severity(self) -> Severity:
        return Severity.MEDIUM

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind, "job": self.job.to_dict(), "snapshot": self.snapshot.to_dict()}


@dataclass(frozen=True)
class RunSummaryEvent:
    run: MonitoringRun
    kind: str = field(default="run_summary", init=False)
    interest: str = field(default="include_statistics", init=False)

    @property
    def event_key(self) -> str:
        return f"run:{self.run.run_id}"

    @property
    def severity(self) -> Severity:
        return Severity.LOW

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind, "run": self.run.to_dict()}


NotificationEvent = Union[ChangeEvent, NewJobEvent, RunSummaryEvent]


@dataclass(frozen=True)
class Subscriber:
    """Notification recipient with interest flags and thresholds."""

    subscriber_id: str
    channel: str
    address: str
    include_new_jobs: bool = False
    include_job_changes: bool = True
    include_statistics: bool = False
    min_severity: Severity = Severity.LOW
    job_statuses: FrozenSet[str] = frozenset({JobStatus.ACTIVE.value, JobStatus.CLOSED.value})
    max_per_hour: int = 0
    enabled: bool = True

    def wants(self, event: NotificationEvent) -> bool:
        return bool(getattr(self, event.interest))


@dataclass(frozen=True)
class TimelineEntry:
    """One row of a job's tracking timeline (a check or a change)."""

    kind: str
    job_id: str
    at: datetime
    snapshot_id: Optional[str]
    entry_id: str
    change_summary: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.entry_id,
            "job_id": self.job_id,
            "tracking_date": to_iso(self.at),
            "status": self.kind,
            "snapshot_id": self.snapshot_id,
            "change_summary": self.change_summary,
        }
