"""
Database layer for the job monitor.

This module defines the SQLite schema used for persisting tracked jobs,
their snapshots and detected changes, monitoring runs, notification
subscribers and the notification delivery log. It provides helper
methods for the queries the engine needs: due-job candidates,
latest-snapshot-by-job, inserting snapshots and changes, and updating a
job's monitoring fields.

The connection runs in autocommit mode; multi-statement units of work go
through ``Database.transaction()``, which takes a write lock up front
(``BEGIN IMMEDIATE``) and either commits everything or nothing. The
connection is shared between scheduler worker threads and guarded by a
re-entrant lock.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .errors import PersistenceError
from .models import (
    Change,
    ChangeType,
    Job,
    JobStatus,
    MonitoringRun,
    PriorityBucket,
    RunStatus,
    Severity,
    Snapshot,
    Subscriber,
    from_iso,
    to_iso,
)


SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    canonical_url TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    company TEXT NOT NULL DEFAULT '',
    monitoring_enabled INTEGER NOT NULL DEFAULT 1,
    frequency_hours INTEGER NOT NULL DEFAULT 24 CHECK (frequency_hours >= 1),
    priority_override TEXT,
    status TEXT NOT NULL DEFAULT 'active', -- 'active' | 'closed' | 'error'
    first_seen_at TIMESTAMP NOT NULL,
    last_checked_at TIMESTAMP,
    last_changed_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS job_snapshots (
    snapshot_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    taken_at TIMESTAMP NOT NULL,
    content_hash TEXT NOT NULL,
    fields TEXT NOT NULL,
    content_type TEXT NOT NULL,
    artifacts TEXT NOT NULL DEFAULT '{}',
    FOREIGN KEY(job_id) REFERENCES jobs(job_id)
);

CREATE TABLE IF NOT EXISTS job_changes (
    change_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    snapshot_id TEXT,
    previous_snapshot_id TEXT,
    field TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    change_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    detected_at TIMESTAMP NOT NULL,
    FOREIGN KEY(job_id) REFERENCES jobs(job_id)
);

CREATE TABLE IF NOT EXISTS monitoring_runs (
    run_id TEXT PRIMARY KEY,
    started_at TIMESTAMP NOT NULL,
    completed_at TIMESTAMP,
    status TEXT NOT NULL, -- 'running' | 'completed' | 'failed'
    jobs_checked INTEGER NOT NULL DEFAULT 0,
    jobs_updated INTEGER NOT NULL DEFAULT 0,
    errors_encountered INTEGER NOT NULL DEFAULT 0,
    total_jobs_eligible INTEGER NOT NULL DEFAULT 0,
    next_run_needed INTEGER NOT NULL DEFAULT 0,
    error TEXT
);

CREATE TABLE IF NOT EXISTS subscribers (
    subscriber_id TEXT PRIMARY KEY,
    channel TEXT NOT NULL,
    address TEXT NOT NULL,
    include_new_jobs INTEGER NOT NULL DEFAULT 0,
    include_job_changes INTEGER NOT NULL DEFAULT 1,
    include_statistics INTEGER NOT NULL DEFAULT 0,
    min_severity TEXT NOT NULL DEFAULT 'low',
    job_statuses TEXT NOT NULL DEFAULT '["active", "closed"]',
    max_per_hour INTEGER NOT NULL DEFAULT 0,
    enabled INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS notification_deliveries (
    event_key TEXT NOT NULL,
    subscriber_id TEXT NOT NULL,
    status TEXT NOT NULL, -- 'sent' | 'failed' | 'deferred' | 'filtered'
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    updated_at TIMESTAMP NOT NULL,
    PRIMARY KEY(event_key, subscriber_id)
);

CREATE INDEX IF NOT EXISTS idx_jobs_monitoring ON jobs(monitoring_enabled);
CREATE INDEX IF NOT EXISTS idx_job_snapshots_job_id ON job_snapshots(job_id, taken_at);
CREATE INDEX IF NOT EXISTS idx_job_changes_job_id ON job_changes(job_id, detected_at);
CREATE INDEX IF NOT EXISTS idx_job_changes_snapshot ON job_changes(snapshot_id);
CREATE INDEX IF NOT EXISTS idx_deliveries_subscriber ON notification_deliveries(subscriber_id, status, updated_at);
"""


def _dump(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, ensure_ascii=False)


def _load(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


def row_to_job(row: sqlite3.Row) -> Job:
    override = row["priority_override"]
    return Job(
        job_id=row["job_id"],
        url=row["url"],
        canonical_url=row["canonical_url"],
        title=row["title"],
        company=row["company"],
        monitoring_enabled=bool(row["monitoring_enabled"]),
        frequency_hours=int(row["frequency_hours"]),
        priority_override=PriorityBucket(override) if override else None,
        status=JobStatus(row["status"]),
        first_seen_at=from_iso(row["first_seen_at"]),
        last_checked_at=from_iso(row["last_checked_at"]),
        last_changed_at=from_iso(row["last_changed_at"]),
    )


def row_to_snapshot(row: sqlite3.Row) -> Snapshot:
    return Snapshot(
        snapshot_id=row["snapshot_id"],
        job_id=row["job_id"],
        taken_at=from_iso(row["taken_at"]),
        content_hash=row["content_hash"],
        fields=json.loads(row["fields"]),
        content_type=row["content_type"],
        artifacts=json.loads(row["artifacts"] or "{}"),
    )


def row_to_change(row: sqlite3.Row) -> Change:
    return Change(
        change_id=row["change_id"],
        job_id=row["job_id"],
        snapshot_id=row["snapshot_id"],
        previous_snapshot_id=row["previous_snapshot_id"],
        field=row["field"],
        old_value=_load(row["old_value"]),
        new_value=_load(row["new_value"]),
        change_type=ChangeType(row["change_type"]),
        severity=Severity(row["severity"]),
        detected_at=from_iso(row["detected_at"]),
    )


def row_to_run(row: sqlite3.Row) -> MonitoringRun:
    return MonitoringRun(
        run_id=row["run_id"],
        started_at=from_iso(row["started_at"]),
        completed_at=from_iso(row["completed_at"]),
        jobs_checked=row["jobs_checked"],
        jobs_updated=row["jobs_updated"],
        errors_encountered=row["errors_encountered"],
        total_jobs_eligible=row["total_jobs_eligible"],
        next_run_needed=bool(row["next_run_needed"]),
        status=RunStatus(row["status"]),
        error=row["error"],
    )


def row_to_subscriber(row: sqlite3.Row) -> Subscriber:
    return Subscriber(
        subscriber_id=row["subscriber_id"],
        channel=row["channel"],
        address=row["address"],
        include_new_jobs=bool(row["include_new_jobs"]),
        include_job_changes=bool(row["include_job_changes"]),
        include_statistics=bool(row["include_statistics"]),
        min_severity=Severity(row["min_severity"]),
        job_statuses=frozenset(json.loads(row["job_statuses"])),
        max_per_hour=int(row["max_per_hour"]),
        enabled=bool(row["enabled"]),
    )


class Database:
    """Wrapper around a sqlite3 connection.

    Provides helper methods for common operations and ensures the
    connection uses row_factory for named access.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self.conn = sqlite3.connect(
            str(self.db_path),
            timeout=30,
            isolation_level=None,
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._ensure_schema()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def _ensure_schema(self) -> None:
        """Initialize the database schema and apply lightweight migrations."""
        with self._lock:
            self.conn.executescript(SCHEMA)
            # Older databases predate previous_snapshot_id on changes.
            cols = {row[1] for row in self.conn.execute("PRAGMA table_info(job_changes)")}
            if "previous_snapshot_id" not in cols:
                self.conn.execute("ALTER TABLE job_changes ADD COLUMN previous_snapshot_id TEXT")

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self.conn.execute(sql, tuple(params))
            except sqlite3.Error as exc:
                raise PersistenceError(f"{type(exc).__name__}: {exc}") from exc

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._execute(sql, params).fetchone()

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Run a block as one atomic unit of work.

        Nested calls join the outer transaction. Any exception rolls the
        whole unit back; storage errors surface as ``PersistenceError``.
        """
        with self._lock:
            if self._in_transaction:
                yield self
                return
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise PersistenceError(f"could not begin transaction: {exc}") from exc
            self._in_transaction = True
            try:
                yield self
                self.conn.execute("COMMIT")
            except BaseException as exc:
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                if isinstance(exc, sqlite3.Error):
                    raise PersistenceError(f"{type(exc).__name__}: {exc}") from exc
                raise
            finally:
                self._in_transaction = False

    # --- job operations ---
    def upsert_job(self, job: Job) -> None:
        """Insert a job or update its identity and monitoring configuration.

        Lifecycle fields (status, check timestamps) of an existing row are
        left untouched; only the scheduler moves those.
        """
        self._execute(
            """
            INSERT INTO jobs (job_id, url, canonical_url, title, company, monitoring_enabled,
                              frequency_hours, priority_override, status, first_seen_at,
                              last_checked_at, last_changed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                url=excluded.url,
                canonical_url=excluded.canonical_url,
                title=excluded.title,
                company=excluded.company,
                monitoring_enabled=excluded.monitoring_enabled,
                frequency_hours=excluded.frequency_hours,
                priority_override=excluded.priority_override
            """,
            (
                job.job_id,
                job.url,
                job.canonical_url,
                job.title,
                job.company,
                1 if job.monitoring_enabled else 0,
                job.frequency_hours,
                job.priority_override.value if job.priority_override else None,
                job.status.value,
                to_iso(job.first_seen_at),
                to_iso(job.last_checked_at),
                to_iso(job.last_changed_at),
            ),
        )

    def get_job(self, job_id: str) -> Optional[Job]:
        row = self._fetchone("SELECT * FROM jobs WHERE job_id=?", (job_id,))
        return row_to_job(row) if row else None

    def list_monitored_jobs(self) -> List[Job]:
        rows = self._fetchall("SELECT * FROM jobs WHERE monitoring_enabled=1 ORDER BY job_id")
        return [row_to_job(row) for row in rows]

    def count_monitored_jobs(self) -> int:
        row = self._fetchone("SELECT COUNT(*) AS n FROM jobs WHERE monitoring_enabled=1")
        return int(row["n"])

    def latest_check_time(self) -> Optional[datetime]:
        row = self._fetchone("SELECT MAX(last_checked_at) AS last FROM jobs")
        return from_iso(row["last"]) if row else None

    def update_job_monitoring(
        self,
        job_id: str,
        monitoring_enabled: Optional[bool] = None,
        frequency_hours: Optional[int] = None,
        priority_override: Optional[PriorityBucket] = None,
        clear_priority_override: bool = False,
    ) -> None:
        self._execute(
            """
            UPDATE jobs
            SET monitoring_enabled = COALESCE(?, monitoring_enabled),
                frequency_hours = COALESCE(?, frequency_hours),
                priority_override = CASE WHEN ? THEN NULL ELSE COALESCE(?, priority_override) END
            WHERE job_id=?
            """,
            (
                None if monitoring_enabled is None else (1 if monitoring_enabled else 0),
                frequency_hours,
                1 if clear_priority_override else 0,
                priority_override.value if priority_override else None,
                job_id,
            ),
        )

    def update_job_check(
        self,
        job_id: str,
        last_checked_at: datetime,
        last_changed_at: Optional[datetime] = None,
        status: Optional[JobStatus] = None,
    ) -> None:
        self._execute(
            """
            UPDATE jobs
            SET last_checked_at=?,
                last_changed_at=COALESCE(?, last_changed_at),
                status=COALESCE(?, status)
            WHERE job_id=?
            """,
            (
                to_iso(last_checked_at),
                to_iso(last_changed_at),
                status.value if status else None,
                job_id,
            ),
        )

    # --- snapshot operations ---
    def insert_snapshot(self, snapshot: Snapshot) -> None:
        self._execute(
            "INSERT INTO job_snapshots (snapshot_id, job_id, taken_at, content_hash, fields, content_type, artifacts) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                snapshot.snapshot_id,
                snapshot.job_id,
                to_iso(snapshot.taken_at),
                snapshot.content_hash,
                json.dumps(dict(snapshot.fields), ensure_ascii=False),
                snapshot.content_type,
                json.dumps(dict(snapshot.artifacts), ensure_ascii=False),
            ),
        )

    def get_snapshot(self, snapshot_id: str) -> Optional[Snapshot]:
        row = self._fetchone("SELECT * FROM job_snapshots WHERE snapshot_id=?", (snapshot_id,))
        return row_to_snapshot(row) if row else None

    def get_latest_snapshot(self, job_id: str) -> Optional[Snapshot]:
        row = self._fetchone(
            "SELECT * FROM job_snapshots WHERE job_id=? ORDER BY taken_at DESC, rowid DESC LIMIT 1",
            (job_id,),
        )
        return row_to_snapshot(row) if row else None

    def list_snapshots(self, job_id: str) -> List[Snapshot]:
        rows = self._fetchall(
            "SELECT * FROM job_snapshots WHERE job_id=? ORDER BY taken_at ASC, rowid ASC",
            (job_id,),
        )
        return [row_to_snapshot(row) for row in rows]

    def delete_unreferenced_snapshots(self, job_id: str, keep_last: int) -> int:
        """Delete all but the newest ``keep_last`` snapshots of a job.

        Snapshots referenced by a change are always kept. Returns the
        number of rows removed.
        """
        cur = self._execute(
            """
            DELETE FROM job_snapshots
            WHERE job_id=?
              AND snapshot_id NOT IN (
                  SELECT snapshot_id FROM job_snapshots WHERE job_id=?
                  ORDER BY taken_at DESC, rowid DESC LIMIT ?
              )
              AND snapshot_id NOT IN (
                  SELECT snapshot_id FROM job_changes WHERE job_id=? AND snapshot_id IS NOT NULL
                  UNION
                  SELECT previous_snapshot_id FROM job_changes WHERE job_id=? AND previous_snapshot_id IS NOT NULL
              )
            """,
            (job_id, job_id, keep_last, job_id, job_id),
        )
        return cur.rowcount

    # --- change operations ---
    def insert_changes(self, changes: Iterable[Change]) -> int:
        count = 0
        for change in changes:
            self._execute(
                """
                INSERT OR IGNORE INTO job_changes (change_id, job_id, snapshot_id, previous_snapshot_id, field,
                                                   old_value, new_value, change_type, severity, detected_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    change.change_id,
                    change.job_id,
                    change.snapshot_id,
                    change.previous_snapshot_id,
                    change.field,
                    _dump(change.old_value),
                    _dump(change.new_value),
                    change.change_type.value,
                    change.severity.value,
                    to_iso(change.detected_at),
                ),
            )
            count += 1
        return count

    def list_changes(
        self,
        job_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Change]:
        conditions: List[str] = []
        params: List[Any] = []
        if job_id:
            conditions.append("job_id = ?")
            params.append(job_id)
        if since:
            conditions.append("detected_at > ?")
            params.append(to_iso(since))
        sql = "SELECT * FROM job_changes"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY detected_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return [row_to_change(row) for row in self._fetchall(sql, params)]

    def count_changed_snapshots(self, window: int) -> Dict[str, int]:
        """Per job, how many of its newest ``window`` snapshots carry a change."""
        rows = self._fetchall(
            """
            SELECT job_id, COUNT(*) AS changed FROM (
                SELECT s.job_id, s.snapshot_id,
                       ROW_NUMBER() OVER (PARTITION BY s.job_id ORDER BY s.taken_at DESC) AS rn
                FROM job_snapshots s
            ) ranked
            WHERE rn <= ?
              AND EXISTS (SELECT 1 FROM job_changes c WHERE c.snapshot_id = ranked.snapshot_id)
            GROUP BY job_id
            """,
            (window,),
        )
        return {row["job_id"]: int(row["changed"]) for row in rows}

    # --- run operations ---
    def insert_run(self, run: MonitoringRun) -> None:
        self._execute(
            "INSERT INTO monitoring_runs (run_id, started_at, status) VALUES (?, ?, ?)",
            (run.run_id, to_iso(run.started_at), run.status.value),
        )

    def finish_run(self, run: MonitoringRun) -> None:
        self._execute(
            """
            UPDATE monitoring_runs
            SET completed_at=?, status=?, jobs_checked=?, jobs_updated=?, errors_encountered=?,
                total_jobs_eligible=?, next_run_needed=?, error=?
            WHERE run_id=? AND status='running'
            """,
            (
                to_iso(run.completed_at),
                run.status.value,
                run.jobs_checked,
                run.jobs_updated,
                run.errors_encountered,
                run.total_jobs_eligible,
                1 if run.next_run_needed else 0,
                run.error,
                run.run_id,
            ),
        )

    def get_run(self, run_id: str) -> Optional[MonitoringRun]:
        row = self._fetchone("SELECT * FROM monitoring_runs WHERE run_id=?", (run_id,))
        return row_to_run(row) if row else None

    def list_runs(self, limit: int = 20) -> List[MonitoringRun]:
        rows = self._fetchall(
            "SELECT * FROM monitoring_runs ORDER BY started_at DESC, rowid DESC LIMIT ?",
            (limit,),
        )
        return [row_to_run(row) for row in rows]

    # --- subscriber operations ---
    def upsert_subscriber(self, subscriber: Subscriber) -> None:
        self._execute(
            """
            INSERT INTO subscribers (subscriber_id, channel, address, include_new_jobs, include_job_changes,
                                     include_statistics, min_severity, job_statuses, max_per_hour, enabled)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(subscriber_id) DO UPDATE SET
                channel=excluded.channel,
                address=excluded.address,
                include_new_jobs=excluded.include_new_jobs,
                include_job_changes=excluded.include_job_changes,
                include_statistics=excluded.include_statistics,
                min_severity=excluded.min_severity,
                job_statuses=excluded.job_statuses,
                max_per_hour=excluded.max_per_hour,
                enabled=excluded.enabled
            """,
            (
                subscriber.subscriber_id,
                subscriber.channel,
                subscriber.address,
                1 if subscriber.include_new_jobs else 0,
                1 if subscriber.include_job_changes else 0,
                1 if subscriber.include_statistics else 0,
                subscriber.min_severity.value,
                json.dumps(sorted(subscriber.job_statuses)),
                subscriber.max_per_hour,
                1 if subscriber.enabled else 0,
            ),
        )

    def list_active_subscribers(self) -> List[Subscriber]:
        rows = self._fetchall("SELECT * FROM subscribers WHERE enabled=1 ORDER BY subscriber_id")
        return [row_to_subscriber(row) for row in rows]

    # --- delivery log ---
    def get_delivery_status(self, event_key: str, subscriber_id: str) -> Optional[str]:
        row = self._fetchone(
            "SELECT status FROM notification_deliveries WHERE event_key=? AND subscriber_id=?",
            (event_key, subscriber_id),
        )
        return row["status"] if row else None

    def record_delivery(
        self,
        event_key: str,
        subscriber_id: str,
        status: str,
        at: datetime,
        error: Optional[str] = None,
    ) -> None:
        self._execute(
            """
            INSERT INTO notification_deliveries (event_key, subscriber_id, status, attempts, last_error, updated_at)
            VALUES (?, ?, ?, 1, ?, ?)
            ON CONFLICT(event_key, subscriber_id) DO UPDATE SET
                status=excluded.status,
                attempts=notification_deliveries.attempts + 1,
                last_error=excluded.last_error,
                updated_at=excluded.updated_at
            """,
            (event_key, subscriber_id, status, error, to_iso(at)),
        )

    def count_sent_since(self, subscriber_id: str, since: datetime) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM notification_deliveries "
            "WHERE subscriber_id=? AND status='sent' AND updated_at >= ?",
            (subscriber_id, to_iso(since)),
        )
        return int(row["n"])

    def list_pending_change_ids(self, since: Optional[datetime] = None) -> List[str]:
        """Change ids that some active subscriber has neither been sent nor filtered out of.

        A change with no delivery record at all counts as pending.
        """
        sql = (
            "SELECT c.change_id FROM job_changes c "
            "WHERE EXISTS ("
            "  SELECT 1 FROM subscribers s "
            "  WHERE s.enabled=1 AND s.include_job_changes=1 AND NOT EXISTS ("
            "    SELECT 1 FROM notification_deliveries d "
            "    WHERE d.event_key = c.change_id AND d.subscriber_id = s.subscriber_id "
            "      AND d.status IN ('sent', 'filtered')"
            "  )"
            ")"
        )
        params: List[Any] = []
        if since:
            sql += " AND c.detected_at >= ?"
            params.append(to_iso(since))
        return [row["change_id"] for row in self._fetchall(sql + " ORDER BY c.change_id", params)]

    def get_changes(self, change_ids: List[str]) -> List[Change]:
        if not change_ids:
            return []
        placeholders = ",".join("?" for _ in change_ids)
        rows = self._fetchall(
            f"SELECT * FROM job_changes WHERE change_id IN ({placeholders}) ORDER BY detected_at, rowid",
            change_ids,
        )
        return [row_to_change(row) for row in rows]
