"""
Snapshot persistence for monitored jobs.

This module turns a fetched page into an immutable ``Snapshot`` and
writes it into the database schema defined in ``db.py``, with the raw
artifacts (HTML, markdown, PDF, screenshots) kept in the content-addressed
``ArtifactStore``. Snapshots are append-only: nothing here updates or
rewrites an existing row; the only deletion path is the optional
retention policy, which never removes a snapshot a change refers to.

It also assembles the per-job tracking timeline (checks and changes in
time order) used for audit and display.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from .artifacts import ArtifactStore
from .db import Database
from .models import FetchedPage, Snapshot, TimelineEntry, to_iso
from .normalize import content_hash, normalize_fields, stable_id

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Builds, persists and reads job snapshots."""

    def __init__(self, db: Database, artifacts: ArtifactStore, retention_keep_last: Optional[int] = None):
        self.db = db
        self.artifacts = artifacts
        self.retention_keep_last = retention_keep_last

    def build(self, job_id: str, page: FetchedPage, taken_at: datetime) -> Snapshot:
        """Create a snapshot value from a fetched page.

        Raw artifacts are written to the artifact store here; the snapshot
        row itself is only written by ``save``.
        """
        fields = normalize_fields(page.fields)
        digest = content_hash(fields)
        references = self.artifacts.put_all(page.raw_artifacts) if page.raw_artifacts else {}
        return Snapshot(
            snapshot_id=stable_id(job_id, to_iso(taken_at), digest),
            job_id=job_id,
            taken_at=taken_at,
            content_hash=digest,
            fields=fields,
            content_type=page.content_type,
            artifacts=references,
        )

    def save(self, snapshot: Snapshot) -> Snapshot:
        self.db.insert_snapshot(snapshot)
        return snapshot

    def latest(self, job_id: str) -> Optional[Snapshot]:
        return self.db.get_latest_snapshot(job_id)

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        return self.db.get_snapshot(snapshot_id)

    def history(self, job_id: str) -> List[Snapshot]:
        """All snapshots of a job, oldest first."""
        return self.db.list_snapshots(job_id)

    def read_artifact(self, snapshot: Snapshot, kind: Optional[str] = None) -> bytes:
        """Return raw artifact bytes for a snapshot.

        With no ``kind``, the artifact matching the snapshot's content type
        is preferred, falling back to the first stored artifact.
        """
        if not snapshot.artifacts:
            raise FileNotFoundError(f"Snapshot {snapshot.snapshot_id} has no stored artifacts")
        if kind is None:
            kind = _kind_for_content_type(snapshot.content_type)
            if kind not in snapshot.artifacts:
                kind = sorted(snapshot.artifacts)[0]
        reference = snapshot.artifacts.get(kind)
        if reference is None:
            raise FileNotFoundError(f"Snapshot {snapshot.snapshot_id} has no {kind} artifact")
        return self.artifacts.get(reference)

    def apply_retention(self, job_id: str) -> int:
        """Prune old snapshots of a job according to the retention setting."""
        if not self.retention_keep_last:
            return 0
        removed = self.db.delete_unreferenced_snapshots(job_id, self.retention_keep_last)
        if removed:
            logger.info("Pruned %d old snapshots for job %s", removed, job_id)
        return removed

    def timeline(self, job_id: str, limit: Optional[int] = None) -> List[TimelineEntry]:
        """Checks and changes of a job merged into one list, newest first."""
        entries: List[TimelineEntry] = [
            TimelineEntry(
                kind="checked",
                job_id=job_id,
                at=snapshot.taken_at,
                snapshot_id=snapshot.snapshot_id,
                entry_id=snapshot.snapshot_id,
            )
            for snapshot in self.history(job_id)
        ]
        entries.extend(
            TimelineEntry(
                kind="changed",
                job_id=job_id,
                at=change.detected_at,
                snapshot_id=change.snapshot_id,
                entry_id=change.change_id,
                change_summary=change.summary,
            )
            for change in self.db.list_changes(job_id=job_id, limit=limit or 1000)
        )
        # Changes sort ahead of the check that produced them at the same instant.
        entries.sort(key=lambda e: (e.at, e.kind == "changed", e.entry_id), reverse=True)
        return entries[:limit] if limit else entries


def _kind_for_content_type(content_type: str) -> str:
    content_type = (content_type or "").lower()
    if "pdf" in content_type:
        return "pdf"
    if "markdown" in content_type:
        return "markdown"
    if content_type.startswith("image/"):
        return "screenshot"
    if "json" in content_type:
        return "json"
    return "html"
