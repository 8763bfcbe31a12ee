from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from job_monitor.errors import ConfigurationError, FetchError, PersistenceError
from job_monitor.models import ChangeType, JobStatus, NotFound, RunStatus, Severity, Subscriber
from job_monitor.monitoring_queue import MonitoringQueue

from conftest import T0, add_job, posting

URL = "https://jobs.example.com/p/1"
EARLIER = T0 - timedelta(hours=25)


def with_baseline(db, fetcher, make_scheduler, **fields):
    """Register a job and record its first snapshot 25h before T0."""
    job = add_job(db, URL)
    fetcher.set(URL, posting(**fields))
    make_scheduler().run_once(now=EARLIER)
    return db.get_job(job.job_id)


def test_first_check_records_baseline_without_changes(db, fetcher, make_scheduler, notifier):
    db.upsert_subscriber(Subscriber("ops", "log", "ops", include_new_jobs=True))
    job = add_job(db, URL)
    fetcher.set(URL, posting())

    run = make_scheduler().run_once(now=T0)

    assert run.jobs_checked == 1
    assert run.jobs_updated == 0
    assert len(db.list_snapshots(job.job_id)) == 1
    assert db.list_changes(job_id=job.job_id) == []
    assert [event.kind for _, event in notifier.sent] == ["new_job"]


def test_unchanged_job_only_moves_last_checked(db, fetcher, make_scheduler):
    job = with_baseline(db, fetcher, make_scheduler)

    run = make_scheduler().run_once(now=T0)

    refreshed = db.get_job(job.job_id)
    assert run.jobs_checked == 1
    assert run.jobs_updated == 0
    assert run.errors_encountered == 0
    assert refreshed.last_checked_at == T0
    assert db.list_changes(job_id=job.job_id) == []
    assert len(db.list_snapshots(job.job_id)) == 2


def test_salary_change_is_recorded_and_notified(db, fetcher, make_scheduler, notifier):
    db.upsert_subscriber(Subscriber("ops", "log", "ops"))
    job = with_baseline(db, fetcher, make_scheduler, salary_max=100000)
    fetcher.set(URL, posting(salary_max=120000))

    run = make_scheduler().run_once(now=T0)

    changes = db.list_changes(job_id=job.job_id)
    assert run.jobs_updated == 1
    assert len(changes) == 1
    assert changes[0].field == "salary_max"
    assert (changes[0].old_value, changes[0].new_value) == (100000, 120000)
    assert changes[0].change_type == ChangeType.SALARY_CHANGE
    assert changes[0].severity == Severity.HIGH
    assert db.get_job(job.job_id).last_changed_at == T0
    change_events = [event for _, event in notifier.sent if event.kind == "change"]
    assert [event.event_key for event in change_events] == [changes[0].change_id]


def test_removed_posting_closes_job(db, fetcher, make_scheduler):
    job = with_baseline(db, fetcher, make_scheduler)
    baseline = db.get_latest_snapshot(job.job_id)
    fetcher.set(URL, NotFound(url=URL, reason="HTTP 404"))

    run = make_scheduler().run_once(now=T0)

    refreshed = db.get_job(job.job_id)
    changes = db.list_changes(job_id=job.job_id)
    assert refreshed.status == JobStatus.CLOSED
    assert refreshed.last_checked_at == T0
    assert len(changes) == 1
    assert changes[0].change_type == ChangeType.STATUS_CHANGE
    assert changes[0].severity == Severity.CRITICAL
    assert changes[0].snapshot_id == baseline.snapshot_id
    assert run.jobs_checked == 1
    assert run.jobs_updated == 1
    assert run.errors_encountered == 0


def test_already_closed_job_is_not_closed_again(db, fetcher, make_scheduler):
    job = with_baseline(db, fetcher, make_scheduler)
    fetcher.set(URL, NotFound(url=URL))
    make_scheduler().run_once(now=T0)

    run = make_scheduler().run_once(now=T0 + timedelta(hours=25))

    assert run.jobs_checked == 1
    assert run.jobs_updated == 0
    assert len(db.list_changes(job_id=job.job_id)) == 1


def test_closed_job_that_comes_back_is_reopened(db, fetcher, make_scheduler):
    job = with_baseline(db, fetcher, make_scheduler)
    fetcher.set(URL, NotFound(url=URL))
    make_scheduler().run_once(now=T0)
    fetcher.set(URL, posting())

    make_scheduler().run_once(now=T0 + timedelta(hours=25))

    latest = db.list_changes(job_id=job.job_id)[0]
    assert db.get_job(job.job_id).status == JobStatus.ACTIVE
    assert (latest.old_value, latest.new_value) == ("closed", "active")
    assert latest.severity == Severity.HIGH


def test_job_marked_error_recovers_to_active(db, fetcher, make_scheduler):
    job = with_baseline(db, fetcher, make_scheduler)
    db.update_job_check(job.job_id, last_checked_at=EARLIER, status=JobStatus.ERROR)

    run = make_scheduler().run_once(now=T0)

    changes = db.list_changes(job_id=job.job_id)
    assert run.jobs_updated == 1
    assert db.get_job(job.job_id).status == JobStatus.ACTIVE
    assert [(c.change_type, c.old_value, c.new_value) for c in changes] == [
        (ChangeType.STATUS_CHANGE, "error", "active")
    ]
    assert changes[0].severity == Severity.HIGH


def test_change_is_notified_later_when_subscriber_lookup_fails(db, fetcher, make_scheduler, notifier, monkeypatch):
    db.upsert_subscriber(Subscriber("ops", "log", "ops"))
    job = with_baseline(db, fetcher, make_scheduler, salary_max=120000)
    fetcher.set(URL, posting(salary_max=130000))
    scheduler = make_scheduler()

    def unavailable():
        raise PersistenceError("subscribers table locked")

    monkeypatch.setattr(db, "list_active_subscribers", unavailable)
    run = scheduler.run_once(now=T0)
    monkeypatch.undo()

    assert run.jobs_updated == 1
    assert notifier.sent == []

    report = scheduler.dispatcher.redeliver_pending()
    again = scheduler.dispatcher.redeliver_pending()

    assert report.sent == 1
    assert [event.change.field for _, event in notifier.sent] == ["salary_max"]
    assert again.sent == 0
    assert db.list_pending_change_ids() == []
    assert len(db.list_changes(job_id=job.job_id)) == 1


def test_fetch_error_leaves_job_due(db, fetcher, make_scheduler):
    job = with_baseline(db, fetcher, make_scheduler)
    fetcher.set(URL, FetchError(URL, "connection reset"))

    run = make_scheduler().run_once(now=T0)

    refreshed = db.get_job(job.job_id)
    assert refreshed.last_checked_at == EARLIER
    assert run.jobs_checked == 0
    assert run.errors_encountered == 1
    assert run.next_run_needed is True
    assert MonitoringQueue(db).count_due(now=T0) == 1
    assert len(db.list_snapshots(job.job_id)) == 1


def test_one_failing_job_does_not_stop_the_batch(db, fetcher, make_scheduler):
    good = add_job(db, "https://jobs.example.com/p/good")
    add_job(db, "https://jobs.example.com/p/bad")
    fetcher.set("https://jobs.example.com/p/good", posting())
    fetcher.set("https://jobs.example.com/p/bad", RuntimeError("parser exploded"))

    run = make_scheduler().run_once(now=T0)

    assert run.jobs_checked == 1
    assert run.errors_encountered == 1
    assert run.status == RunStatus.COMPLETED
    assert db.get_job(good.job_id).last_checked_at == T0


def test_storage_failure_rolls_back_the_job(db, fetcher, make_scheduler, monkeypatch):
    job = with_baseline(db, fetcher, make_scheduler, salary_max=100000)
    fetcher.set(URL, posting(salary_max=120000))

    def broken(changes):
        raise PersistenceError("disk full")

    monkeypatch.setattr(db, "insert_changes", broken)
    run = make_scheduler().run_once(now=T0)

    assert run.errors_encountered == 1
    assert run.jobs_checked == 0
    assert db.get_job(job.job_id).last_checked_at == EARLIER
    assert len(db.list_snapshots(job.job_id)) == 1


def test_rerun_at_same_time_does_nothing(db, fetcher, make_scheduler):
    job = add_job(db, URL)
    fetcher.set(URL, posting())
    scheduler = make_scheduler()
    scheduler.run_once(now=T0)

    second = scheduler.run_once(now=T0)

    assert second.total_jobs_eligible == 0
    assert second.jobs_checked == 0
    assert len(db.list_snapshots(job.job_id)) == 1


def test_concurrent_checks_of_one_job_store_one_snapshot(db, fetcher, make_scheduler):
    job = add_job(db, URL)
    fetcher.set(URL, posting())
    scheduler = make_scheduler()

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(lambda _: scheduler.check_job(job, T0), range(4)))

    assert len(db.list_snapshots(job.job_id)) == 1


def test_batch_limit_sets_next_run_needed(db, fetcher, make_scheduler):
    for i in range(3):
        url = f"https://jobs.example.com/p/{i}"
        add_job(db, url)
        fetcher.set(url, posting())

    run = make_scheduler(batch_limit=2).run_once(now=T0)

    assert run.total_jobs_eligible == 3
    assert run.jobs_checked == 2
    assert run.next_run_needed is True


def test_cancelled_run_leaves_remaining_jobs_due(db, make_scheduler):
    for i in range(3):
        add_job(db, f"https://jobs.example.com/p/{i}")
    holder = {}

    class CancellingFetcher:
        def fetch(self, url):
            holder["scheduler"].cancel()
            return posting()

    scheduler = make_scheduler(fetcher=CancellingFetcher(), concurrency=1)
    holder["scheduler"] = scheduler

    run = scheduler.run_once(now=T0)

    assert run.jobs_checked == 1
    assert run.next_run_needed is True
    assert MonitoringQueue(db).count_due(now=T0) == 2


def test_unreadable_queue_fails_the_run(db, make_scheduler, monkeypatch):
    queue = MonitoringQueue(db)

    def broken(now=None):
        raise PersistenceError("database is locked")

    monkeypatch.setattr(queue, "count_due", broken)
    run = make_scheduler(queue=queue).run_once(now=T0)

    assert run.status == RunStatus.FAILED
    assert "database is locked" in run.error
    assert run.errors_encountered >= 1
    assert db.get_run(run.run_id).status == RunStatus.FAILED


def test_run_is_persisted_and_summarized(db, fetcher, make_scheduler, notifier):
    db.upsert_subscriber(Subscriber("stats", "log", "stats", include_job_changes=False, include_statistics=True))
    add_job(db, URL)
    fetcher.set(URL, posting())

    run = make_scheduler().run_once(now=T0)

    stored = db.get_run(run.run_id)
    assert stored.status == RunStatus.COMPLETED
    assert stored.jobs_checked == 1
    assert stored.next_run_needed is False
    assert [event.kind for _, event in notifier.sent] == ["run_summary"]


def test_check_job_refuses_disabled_job(db, make_scheduler):
    job = add_job(db, URL, monitoring_enabled=False)
    with pytest.raises(ConfigurationError):
        make_scheduler().check_job(job, T0)
