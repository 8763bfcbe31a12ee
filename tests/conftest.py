from datetime import datetime, timedelta, timezone

import pytest

from job_monitor.artifacts import ArtifactStore
from job_monitor.db import Database
from job_monitor.models import FetchedPage, Job
from job_monitor.monitoring_queue import MonitoringQueue
from job_monitor.normalize import job_for_url
from job_monitor.scheduler import MonitoringScheduler
from job_monitor.services.notifications import NotificationDispatcher
from job_monitor.snapshot_store import SnapshotStore

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def posting(**overrides):
    fields = {
        "title": "Data Engineer",
        "company": "Acme",
        "location": "Berlin",
        "salary_min": 70000,
        "salary_max": 90000,
        "salary_currency": "EUR",
        "employment_type": "Full-time",
        "department": "Data",
        "description": "Build and run data pipelines for the analytics team.",
        "status": "active",
    }
    fields.update(overrides)
    return FetchedPage(fields=fields, raw_artifacts={"html": b"<html>posting</html>"})


class FakeFetcher:
    """Returns canned outcomes per URL; exceptions are raised."""

    def __init__(self):
        self.responses = {}
        self.calls = []

    def set(self, url, outcome):
        self.responses[url] = outcome

    def fetch(self, url):
        self.calls.append(url)
        outcome = self.responses[url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, subscriber, event):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append((subscriber.subscriber_id, event))


@pytest.fixture
def db(tmp_path):
    with Database(tmp_path / "monitor.db") as database:
        yield database


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_scheduler(db, tmp_path, fetcher, notifier):
    def factory(**kwargs):
        clock = kwargs.pop("clock", lambda: T0)
        return MonitoringScheduler(
            db=db,
            fetcher=kwargs.pop("fetcher", fetcher),
            queue=kwargs.pop("queue", MonitoringQueue(db)),
            snapshots=SnapshotStore(db, ArtifactStore(tmp_path / "artifacts"), kwargs.pop("retention", None)),
            dispatcher=NotificationDispatcher(db, {"log": notifier}, clock=clock),
            clock=clock,
            **kwargs,
        )

    return factory


def add_job(db, url, checked_hours_ago=None, now=T0, **config) -> Job:
    job = job_for_url(url, first_seen_at=now - timedelta(days=2), **config)
    db.upsert_job(job)
    if checked_hours_ago is not None:
        db.update_job_check(job.job_id, last_checked_at=now - timedelta(hours=checked_hours_ago))
    return db.get_job(job.job_id)
