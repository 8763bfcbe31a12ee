"""
Monitoring priority scoring.

Priority is derived on read and never stored. It combines three inputs:

* the manual bucket an operator set on the job (or the default bucket);
* staleness, in days since the last check, with a linear weight;
* volatility, the number of the job's most recent snapshots (up to
  ``change_window``) that carried at least one change.

The weights are policy, not algorithm: they come from configuration.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict

from .models import Job, PriorityBucket


def _default_bucket_weights() -> Dict[PriorityBucket, float]:
    return {
        PriorityBucket.CRITICAL: 100.0,
        PriorityBucket.HIGH: 50.0,
        PriorityBucket.MEDIUM: 20.0,
        PriorityBucket.LOW: 0.0,
    }


@dataclass(frozen=True)
class PriorityPolicy:
    bucket_weights: Dict[PriorityBucket, float] = field(default_factory=_default_bucket_weights)
    default_bucket: PriorityBucket = PriorityBucket.MEDIUM
    staleness_weight: float = 1.0
    change_weight: float = 5.0
    change_window: int = 10

    def score(self, job: Job, now: datetime, recent_changes: int = 0) -> float:
        bucket = job.priority_override or self.default_bucket
        staleness_days = max(job.staleness(now).total_seconds(), 0.0) / 86400.0
        volatility = min(recent_changes, self.change_window)
        return round(
            self.bucket_weights.get(bucket, 0.0)
            + self.staleness_weight * staleness_days
            + self.change_weight * volatility,
            6,
        )
