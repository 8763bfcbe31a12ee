"""
Scheduler for the job monitor.

One run: select due jobs from the queue -> fetch each posting -> persist a
snapshot -> diff against the previous snapshot -> update the job and
record changes -> notify subscribers -> finalize the run record.

Each job is an independent unit of work. Fetches run in a bounded thread
pool; the compare/insert/update step for one job runs in a single
database transaction under a per-job lock, so a failure or interruption
leaves every job either fully processed or untouched (and therefore
still due). Nothing is kept in memory between runs: counters live on a
``RunContext`` created per run and end up in the returned
``MonitoringRun``.

``run_scheduler()`` is the cadence loop used by ``run_monitor.py``; any
external trigger (cron, the HTTP API) can call ``run_once()`` instead.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from job_monitor.artifacts import ArtifactStore
from job_monitor.config import MonitorSettings
from job_monitor.db import Database
from job_monitor.diff_engine import DEFAULT_DIFF_SETTINGS, DiffSettings, diff, status_transition
from job_monitor.errors import ConfigurationError, FetchError, MonitorError, PersistenceError
from job_monitor.fetchers import Fetcher, HttpFetcher
from job_monitor.models import (
    Change,
    FetchedPage,
    Job,
    JobStatus,
    MonitoringRun,
    NotFound,
    RunStatus,
    Snapshot,
    utc_now,
)
from job_monitor.monitoring_queue import MonitoringQueue
from job_monitor.services.notifications import REDELIVERY_WINDOW, NotificationDispatcher, Notifier
from job_monitor.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)


class JobOutcome(str, Enum):
    BASELINE = "baseline"
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    CLOSED = "closed"


@dataclass
class RunContext:
    """Mutable state of one run, shared by that run's workers only."""

    run_id: str
    started_at: datetime
    deadline: Optional[float] = None
    total_jobs_eligible: int = 0
    jobs_checked: int = 0
    jobs_updated: int = 0
    errors_encountered: int = 0
    skipped: int = 0
    cancelled: threading.Event = field(default_factory=threading.Event)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def should_stop(self) -> bool:
        if self.cancelled.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def record(self, outcome: JobOutcome) -> None:
        with self._lock:
            self.jobs_checked += 1
            if outcome in (JobOutcome.CHANGED, JobOutcome.CLOSED):
                self.jobs_updated += 1

    def record_error(self) -> None:
        with self._lock:
            self.errors_encountered += 1

    def record_skip(self) -> None:
        with self._lock:
            self.skipped += 1

    def finalize(self, completed_at: datetime, error: Optional[str] = None) -> MonitoringRun:
        with self._lock:
            return MonitoringRun(
                run_id=self.run_id,
                started_at=self.started_at,
                completed_at=completed_at,
                jobs_checked=self.jobs_checked,
                jobs_updated=self.jobs_updated,
                errors_encountered=self.errors_encountered,
                total_jobs_eligible=self.total_jobs_eligible,
                next_run_needed=self.total_jobs_eligible > self.jobs_checked,
                status=RunStatus.FAILED if error else RunStatus.COMPLETED,
                error=error,
            )


def new_run_id(now: datetime) -> str:
    return f"run-{now.strftime('%Y%m%dT%H%M%S')}-{uuid.uuid4().hex[:8]}"


class MonitoringScheduler:
    def __init__(
        self,
        db: Database,
        fetcher: Fetcher,
        queue: MonitoringQueue,
        snapshots: SnapshotStore,
        dispatcher: NotificationDispatcher,
        diff_settings: DiffSettings = DEFAULT_DIFF_SETTINGS,
        concurrency: int = 4,
        batch_limit: Optional[int] = None,
        max_run_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if concurrency < 1:
            raise ConfigurationError(f"concurrency must be >= 1, got {concurrency}")
        self.db = db
        self.fetcher = fetcher
        self.queue = queue
        self.snapshots = snapshots
        self.dispatcher = dispatcher
        self.diff_settings = diff_settings
        self.concurrency = concurrency
        self.batch_limit = batch_limit
        self.max_run_seconds = max_run_seconds
        self.clock = clock
        self._job_locks: Dict[str, threading.Lock] = {}
        self._job_locks_guard = threading.Lock()
        self._active: Optional[RunContext] = None

    @classmethod
    def from_settings(
        cls,
        settings: MonitorSettings,
        db: Database,
        fetcher: Optional[Fetcher] = None,
        notifiers: Optional[Dict[str, Notifier]] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "MonitoringScheduler":
        return cls(
            db=db,
            fetcher=fetcher or HttpFetcher(timeout=settings.fetch_timeout, user_agent=settings.user_agent),
            queue=MonitoringQueue(
                db,
                policy=settings.priority_policy(),
                default_limit=settings.batch_limit,
                max_limit=settings.max_batch_limit,
            ),
            snapshots=SnapshotStore(db, ArtifactStore(settings.artifact_dir), settings.retention_keep_last),
            dispatcher=NotificationDispatcher(db, notifiers, clock=clock),
            diff_settings=settings.diff_settings(),
            concurrency=settings.concurrency,
            batch_limit=settings.batch_limit,
            max_run_seconds=settings.max_run_seconds,
            clock=clock,
        )

    def cancel(self) -> None:
        """Stop the active run after the jobs already in flight."""
        if self._active is not None:
            self._active.cancelled.set()

    @contextmanager
    def _job_lock(self, job_id: str) -> Iterator[None]:
        with self._job_locks_guard:
            lock = self._job_locks.setdefault(job_id, threading.Lock())
        with lock:
            yield

    # --- run ---
    def run_once(self, now: Optional[datetime] = None) -> MonitoringRun:
        """Execute one bounded monitoring run and return its summary."""
        now = now or self.clock()
        ctx = RunContext(
            run_id=new_run_id(now),
            started_at=now,
            deadline=time.monotonic() + self.max_run_seconds if self.max_run_seconds else None,
        )
        self._active = ctx
        try:
            return self._run(ctx, now)
        finally:
            self._active = None

    def _run(self, ctx: RunContext, now: datetime) -> MonitoringRun:
        try:
            self.db.insert_run(MonitoringRun(run_id=ctx.run_id, started_at=ctx.started_at))
            ctx.total_jobs_eligible = self.queue.count_due(now)
            batch = self.queue.select_due_jobs(self.batch_limit, now)
        except Exception as exc:
            logger.exception("Monitoring run %s aborted before processing any job", ctx.run_id)
            ctx.record_error()
            run = ctx.finalize(self.clock(), error=f"{type(exc).__name__}: {exc}")
            self._finish(run)
            return run

        logger.info(
            "Run %s: %d jobs due, processing %d (concurrency=%d)",
            ctx.run_id, ctx.total_jobs_eligible, len(batch), self.concurrency,
        )
        if batch:
            workers = min(self.concurrency, len(batch))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="monitor") as pool:
                for job in batch:
                    pool.submit(self._process, job, now, ctx)

        if ctx.skipped:
            logger.info("Run %s stopped early; %d jobs left for the next run", ctx.run_id, ctx.skipped)
        run = ctx.finalize(self.clock())
        self._finish(run)
        logger.info(
            "Run %s finished: checked=%d updated=%d errors=%d eligible=%d next_run_needed=%s",
            run.run_id, run.jobs_checked, run.jobs_updated, run.errors_encountered,
            run.total_jobs_eligible, run.next_run_needed,
        )
        self._notify(lambda: self.dispatcher.dispatch_run_summary(run))
        return run

    def _finish(self, run: MonitoringRun) -> None:
        try:
            self.db.finish_run(run)
        except MonitorError:
            logger.exception("Could not persist summary of run %s", run.run_id)

    def _process(self, job: Job, now: datetime, ctx: RunContext) -> None:
        """Per-job fault boundary: nothing raised here reaches the batch."""
        if ctx.should_stop():
            ctx.record_skip()
            return
        try:
            outcome = self.check_job(job, now)
        except FetchError as exc:
            logger.warning("Fetch failed for job %s: %s", job.job_id, exc)
            ctx.record_error()
        except ConfigurationError as exc:
            logger.warning("Skipping job %s: %s", job.job_id, exc)
            ctx.record_error()
        except PersistenceError as exc:
            logger.error("Storage error for job %s, rolled back: %s", job.job_id, exc)
            ctx.record_error()
        except Exception:
            logger.exception("Unexpected error checking job %s", job.job_id)
            ctx.record_error()
        else:
            ctx.record(outcome)

    # --- single job ---
    def check_job(self, job: Job, now: Optional[datetime] = None) -> JobOutcome:
        """Fetch one job, persist its snapshot and changes, and notify.

        Raises:
            FetchError: The fetch failed; nothing was written.
            ConfigurationError: The job must not be monitored.
            PersistenceError: Storage failed; the job's writes were rolled back.
        """
        now = now or self.clock()
        if not job.monitoring_enabled:
            raise ConfigurationError(f"job {job.job_id} has monitoring disabled")
        if job.frequency_hours < 1:
            raise ConfigurationError(f"job {job.job_id} has invalid frequency_hours={job.frequency_hours}")

        with self._job_lock(job.job_id):
            result = self.fetcher.fetch(job.url)
            if isinstance(result, NotFound):
                return self._record_gone(job, result, now)
            if not isinstance(result, FetchedPage):
                raise FetchError(job.url, f"unexpected fetch result {type(result).__name__}")
            snapshot = self.snapshots.build(job.job_id, result, now)
            return self._record_snapshot(job, snapshot, now)

    def _load_fresh(self, job: Job) -> Job:
        fresh = self.db.get_job(job.job_id)
        if fresh is None:
            raise ConfigurationError(f"job {job.job_id} no longer exists")
        return fresh

    def _record_snapshot(self, job: Job, snapshot: Snapshot, now: datetime) -> JobOutcome:
        with self.db.transaction():
            fresh = self._load_fresh(job)
            if fresh.last_checked_at is not None and fresh.last_checked_at >= now:
                # Another check already covered this window.
                return JobOutcome.UNCHANGED
            previous = self.snapshots.latest(job.job_id)
            self.snapshots.save(snapshot)

            changes: List[Change] = []
            if previous is not None and previous.content_hash != snapshot.content_hash:
                changes = diff(previous, snapshot, self.diff_settings)

            observed = JobStatus.CLOSED if snapshot.get("status") == JobStatus.CLOSED.value else JobStatus.ACTIVE
            # A status set by an earlier check (e.g. closed after a 404) that the
            # page now contradicts is a transition even without a prior snapshot.
            if (
                fresh.last_checked_at is not None
                and fresh.status != observed
                and not any(change.field == "status" for change in changes)
            ):
                changes.append(
                    status_transition(
                        job.job_id, fresh.status, observed, snapshot.snapshot_id, now,
                        previous_snapshot_id=previous.snapshot_id if previous else None,
                    )
                )

            changed_at = now if changes else None
            self.db.update_job_check(job.job_id, last_checked_at=now, last_changed_at=changed_at, status=observed)
            self.db.insert_changes(changes)

        updated = replace(
            fresh,
            status=observed,
            last_checked_at=now,
            last_changed_at=changed_at or fresh.last_changed_at,
        )
        self._apply_retention(job.job_id)
        if previous is None:
            logger.debug("Baseline snapshot %s for job %s", snapshot.snapshot_id, job.job_id)
            self._notify(lambda: self.dispatcher.dispatch_new_job(updated, snapshot))
        if changes:
            logger.info("Job %s: %d changes detected", job.job_id, len(changes))
            self._notify(lambda: self.dispatcher.dispatch(changes, updated))
            return JobOutcome.CHANGED
        return JobOutcome.BASELINE if previous is None else JobOutcome.UNCHANGED

    def _record_gone(self, job: Job, result: NotFound, now: datetime) -> JobOutcome:
        with self.db.transaction():
            fresh = self._load_fresh(job)
            if fresh.last_checked_at is not None and fresh.last_checked_at >= now:
                return JobOutcome.UNCHANGED
            changes: List[Change] = []
            if fresh.status != JobStatus.CLOSED:
                previous = self.snapshots.latest(job.job_id)
                changes.append(
                    status_transition(
                        job.job_id, fresh.status, JobStatus.CLOSED,
                        previous.snapshot_id if previous else None, now,
                    )
                )
            self.db.update_job_check(
                job.job_id,
                last_checked_at=now,
                last_changed_at=now if changes else None,
                status=JobStatus.CLOSED,
            )
            self.db.insert_changes(changes)

        if not changes:
            return JobOutcome.UNCHANGED
        logger.info("Job %s closed (%s)", job.job_id, result.reason)
        updated = replace(fresh, status=JobStatus.CLOSED, last_checked_at=now, last_changed_at=now)
        self._notify(lambda: self.dispatcher.dispatch(changes, updated))
        return JobOutcome.CLOSED

    def _apply_retention(self, job_id: str) -> None:
        try:
            self.snapshots.apply_retention(job_id)
        except MonitorError:
            logger.exception("Retention failed for job %s", job_id)

    def _notify(self, send: Callable[[], object]) -> None:
        # Notification trouble never affects recorded changes or run counters.
        try:
            send()
        except Exception:
            logger.exception("Notification dispatch failed")


def sync_subscribers(db: Database, settings: MonitorSettings) -> int:
    """Upsert subscribers declared in the settings file."""
    subscribers = settings.subscriber_records()
    for subscriber in subscribers:
        db.upsert_subscriber(subscriber)
    return len(subscribers)


def has_backlog(run: MonitoringRun) -> bool:
    """True when due jobs were left unattempted by a run that made progress.

    Jobs that failed were attempted and wait for the next interval, so a
    source that keeps failing is never re-fetched back to back.
    """
    attempted = run.jobs_checked + run.errors_encountered
    return run.jobs_checked > 0 and run.total_jobs_eligible > attempted


def run_scheduler(
    settings: MonitorSettings,
    interval_seconds: int = 3600,
    iterations: int = 0,
    fetcher: Optional[Fetcher] = None,
) -> List[MonitoringRun]:
    """
    Main loop. iterations=0 means infinite.

    Each iteration opens the database, runs once and closes it again, so
    no state survives in memory between runs.
    """
    runs: List[MonitoringRun] = []
    i = 0
    while True:
        i += 1
        print(f"[monitor] Run {i} starting...")
        with Database(Path(settings.db_path)) as db:
            sync_subscribers(db, settings)
            scheduler = MonitoringScheduler.from_settings(settings, db, fetcher=fetcher)
            run = scheduler.run_once()
            scheduler.dispatcher.redeliver_pending(since=run.started_at - REDELIVERY_WINDOW)
        runs.append(run)

        print(
            f"[monitor] {run.run_id} status={run.status.value} checked={run.jobs_checked} "
            f"updated={run.jobs_updated} errors={run.errors_encountered} "
            f"eligible={run.total_jobs_eligible} next_run_needed={run.next_run_needed}"
        )

        if iterations and i >= iterations:
            break

        if not has_backlog(run):
            print(f"[monitor] Sleeping {interval_seconds} seconds...")
            time.sleep(interval_seconds)
    return runs
