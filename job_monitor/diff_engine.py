"""
Diff engine for job snapshots.

This module compares two ``Snapshot`` instances of the same job and
produces the field-level ``Change`` records between them, each with a
``change_type`` and a rule-based ``severity``.

The diff engine operates purely in-memory on snapshot value objects: it
never touches storage and never mutates its inputs, which makes it easy
to unit test and safe to call from concurrent workers. Given the same two
snapshots it always returns the same changes in the same order (the
order of ``TRACKED_FIELDS``), with the same change ids.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional

from .models import TRACKED_FIELDS, Change, ChangeType, JobStatus, Severity, Snapshot, to_iso
from .normalize import normalize_field, stable_id


@dataclass(frozen=True)
class DiffSettings:
    """Thresholds for free-text description comparison.

    Attributes:
        description_noise_ratio: Edits at or above this similarity are
            treated as noise and produce no change. Every other
            description edit is a ``low`` severity change.
    """

    description_noise_ratio: float = 0.995


DEFAULT_DIFF_SETTINGS = DiffSettings()

_FIELD_CHANGE_TYPES = {
    "title": ChangeType.TITLE_CHANGE,
    "salary_min": ChangeType.SALARY_CHANGE,
    "salary_max": ChangeType.SALARY_CHANGE,
    "salary_currency": ChangeType.SALARY_CHANGE,
    "status": ChangeType.STATUS_CHANGE,
    "location": ChangeType.LOCATION_CHANGE,
}

_FIELD_SEVERITIES = {
    "title": Severity.HIGH,
    "salary_min": Severity.HIGH,
    "salary_max": Severity.HIGH,
    "salary_currency": Severity.HIGH,
    "location": Severity.MEDIUM,
    "employment_type": Severity.MEDIUM,
    "description": Severity.LOW,
}


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def description_similarity(old: Optional[str], new: Optional[str]) -> float:
    """Word-level similarity ratio in [0, 1] between two description texts."""
    old_words = (old or "").split()
    new_words = (new or "").split()
    if not old_words and not new_words:
        return 1.0
    return difflib.SequenceMatcher(None, old_words, new_words, autojunk=False).ratio()


def classify_change_type(field: str, old: Any, new: Any) -> ChangeType:
    if _is_empty(old) and not _is_empty(new):
        return ChangeType.ADDED
    if not _is_empty(old) and _is_empty(new):
        return ChangeType.REMOVED
    return _FIELD_CHANGE_TYPES.get(field, ChangeType.MODIFIED)


def classify_severity(field: str, old: Any, new: Any) -> Severity:
    if field == "status":
        return Severity.CRITICAL if new == JobStatus.CLOSED.value else Severity.HIGH
    return _FIELD_SEVERITIES.get(field, Severity.LOW)


def diff(previous: Snapshot, current: Snapshot, settings: DiffSettings = DEFAULT_DIFF_SETTINGS) -> List[Change]:
    """Compute the changes between two consecutive snapshots of one job.

    Args:
        previous: The earlier snapshot.
        current: The later snapshot.
        settings: Description comparison thresholds.

    Returns:
        Changes in ``TRACKED_FIELDS`` order; empty when nothing meaningful
        differs (always empty for identical snapshots).

    Raises:
        ValueError: If the snapshots belong to different jobs.
    """
    if previous.job_id != current.job_id:
        raise ValueError(
            f"Cannot diff snapshots of different jobs: {previous.job_id} vs {current.job_id}"
        )
    if previous.snapshot_id == current.snapshot_id:
        return []

    changes: List[Change] = []
    for field in TRACKED_FIELDS:
        old = normalize_field(field, previous.get(field))
        new = normalize_field(field, current.get(field))
        if old == new:
            continue
        if field == "description" and not _is_empty(old) and not _is_empty(new):
            if description_similarity(old, new) >= settings.description_noise_ratio:
                continue
        changes.append(
            Change(
                change_id=stable_id(current.job_id, current.snapshot_id, field),
                job_id=current.job_id,
                snapshot_id=current.snapshot_id,
                previous_snapshot_id=previous.snapshot_id,
                field=field,
                old_value=old,
                new_value=new,
                change_type=classify_change_type(field, old, new),
                severity=classify_severity(field, old, new),
                detected_at=current.taken_at,
            )
        )
    return changes


def status_transition(
    job_id: str,
    old_status: JobStatus,
    new_status: JobStatus,
    snapshot_id: Optional[str],
    detected_at: datetime,
    previous_snapshot_id: Optional[str] = None,
) -> Change:
    """Build the status change recorded when a job closes or re-opens.

    Used where the transition is observed outside a snapshot comparison:
    the fetcher reported the posting gone, or a closed job fetched
    successfully again.
    """
    return Change(
        change_id=stable_id(job_id, "status", to_iso(detected_at)),
        job_id=job_id,
        snapshot_id=snapshot_id,
        previous_snapshot_id=previous_snapshot_id if previous_snapshot_id is not None else snapshot_id,
        field="status",
        old_value=old_status.value,
        new_value=new_status.value,
        change_type=ChangeType.STATUS_CHANGE,
        severity=classify_severity("status", old_status.value, new_status.value),
        detected_at=detected_at,
    )
