from datetime import timedelta

from job_monitor.models import PriorityBucket
from job_monitor.monitoring_queue import MonitoringQueue
from job_monitor.priority import PriorityPolicy

from conftest import T0, add_job


def test_due_selection(db):
    never = add_job(db, "https://jobs.example.com/p/never")
    stale = add_job(db, "https://jobs.example.com/p/stale", checked_hours_ago=25)
    add_job(db, "https://jobs.example.com/p/fresh", checked_hours_ago=2)
    add_job(db, "https://jobs.example.com/p/off", checked_hours_ago=100, monitoring_enabled=False)

    due = MonitoringQueue(db).select_due_jobs(now=T0)

    assert {job.job_id for job in due} == {never.job_id, stale.job_id}


def test_job_is_due_exactly_at_its_frequency(db):
    job = add_job(db, "https://jobs.example.com/p/1", checked_hours_ago=6, frequency_hours=6)
    assert [j.job_id for j in MonitoringQueue(db).select_due_jobs(now=T0)] == [job.job_id]


def test_disabled_jobs_are_never_selected(db):
    add_job(db, "https://jobs.example.com/p/off", monitoring_enabled=False)
    queue = MonitoringQueue(db)
    assert queue.select_due_jobs(now=T0) == []
    assert queue.count_due(now=T0) == 0


def test_priority_override_wins_then_staleness_breaks_ties(db):
    older = add_job(db, "https://jobs.example.com/p/older", checked_hours_ago=72)
    newer = add_job(db, "https://jobs.example.com/p/newer", checked_hours_ago=30)
    urgent = add_job(db, "https://jobs.example.com/p/urgent", checked_hours_ago=30,
                     priority_override=PriorityBucket.CRITICAL)

    total, ranked = MonitoringQueue(db).queue_view(now=T0)

    assert total == 3
    assert [entry.job.job_id for entry in ranked] == [urgent.job_id, older.job_id, newer.job_id]
    assert ranked[0].priority > ranked[1].priority > ranked[2].priority
    assert ranked[1].to_dict()["days_since_last_check"] == 3.0


def test_limit_is_capped(db):
    for i in range(5):
        add_job(db, f"https://jobs.example.com/p/{i}")
    queue = MonitoringQueue(db, default_limit=2, max_limit=3)

    assert len(queue.select_due_jobs(now=T0)) == 2
    assert len(queue.select_due_jobs(limit=50, now=T0)) == 3
    total, entries = queue.queue_view(limit=50, now=T0)
    assert total == 5
    assert len(entries) == 3


def test_priority_score_is_deterministic(db):
    job = add_job(db, "https://jobs.example.com/p/1", checked_hours_ago=48)
    policy = PriorityPolicy(staleness_weight=2.0, change_weight=5.0, change_window=3)
    assert policy.score(job, T0, recent_changes=1) == 20.0 + 4.0 + 5.0
    assert policy.score(job, T0, recent_changes=10) == 20.0 + 4.0 + 15.0
    assert policy.score(job, T0 + timedelta(days=1), 0) == policy.score(job, T0 + timedelta(days=1), 0)
