"""
Monitoring queue: which jobs are due for a re-check, and in what order.

A job is due when monitoring is enabled and at least ``frequency_hours``
have passed since its last successful check (a job never checked is
always due). Due jobs are ordered by priority score (highest first),
then staleness (stalest first), then job id, so selection is fully
deterministic. Nothing in this module writes to storage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from .db import Database
from .models import Job, utc_now
from .priority import PriorityPolicy

logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 50
MAX_BATCH_LIMIT = 100


@dataclass(frozen=True)
class QueuedJob:
    """A due job with the values it was ranked by."""

    job: Job
    priority: float
    days_since_last_check: float

    def to_dict(self) -> dict:
        payload = self.job.to_dict()
        payload["monitoring_priority"] = self.priority
        payload["days_since_last_check"] = round(self.days_since_last_check, 2)
        return payload


class MonitoringQueue:
    def __init__(
        self,
        db: Database,
        policy: Optional[PriorityPolicy] = None,
        default_limit: int = DEFAULT_BATCH_LIMIT,
        max_limit: int = MAX_BATCH_LIMIT,
    ):
        self.db = db
        self.policy = policy or PriorityPolicy()
        self.default_limit = default_limit
        self.max_limit = max_limit

    def _due(self, now: datetime) -> List[Job]:
        due = []
        for job in self.db.list_monitored_jobs():
            if job.frequency_hours < 1:
                # The schema rejects this; rows edited by hand can still carry it.
                logger.warning("Skipping job %s with invalid frequency_hours=%s", job.job_id, job.frequency_hours)
                continue
            if job.is_due(now):
                due.append(job)
        return due

    def _ranked(self, now: datetime) -> List[QueuedJob]:
        jobs = self._due(now)
        if not jobs:
            return []
        recent = self.db.count_changed_snapshots(self.policy.change_window)
        ranked = [
            QueuedJob(
                job=job,
                priority=self.policy.score(job, now, recent.get(job.job_id, 0)),
                days_since_last_check=job.staleness(now).total_seconds() / 86400.0,
            )
            for job in jobs
        ]
        ranked.sort(key=_ordering_key(now))
        return ranked

    def _bound(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.default_limit
        return max(0, min(int(limit), self.max_limit))

    def select_due_jobs(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> List[Job]:
        """Return up to ``limit`` due jobs, most urgent first."""
        now = now or utc_now()
        return [entry.job for entry in self._ranked(now)[: self._bound(limit)]]

    def queue_view(self, limit: Optional[int] = None, now: Optional[datetime] = None) -> Tuple[int, List[QueuedJob]]:
        """Return the total number of due jobs and the ranked head of the queue."""
        now = now or utc_now()
        ranked = self._ranked(now)
        return len(ranked), ranked[: self._bound(limit)]

    def count_due(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        return len(self._due(now))


def _ordering_key(now: datetime):
    def key(entry: QueuedJob):
        return (-entry.priority, -entry.job.staleness(now).total_seconds(), entry.job.job_id)

    return key
