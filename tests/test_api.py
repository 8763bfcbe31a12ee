from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from job_monitor.api import dependencies
from job_monitor.api.main import DEV_ORIGINS, app, cors_origins
from job_monitor.artifacts import ArtifactStore
from job_monitor.db import Database
from job_monitor.diff_engine import diff
from job_monitor.models import utc_now
from job_monitor.snapshot_store import SnapshotStore

from conftest import FakeFetcher, RecordingNotifier, add_job, posting


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "api.db"))
    monkeypatch.setenv("MONITOR_ARTIFACT_DIR", str(tmp_path / "artifacts"))
    monkeypatch.delenv("MONITOR_CONFIG", raising=False)
    monkeypatch.delenv("MONITOR_API_TOKEN", raising=False)
    fetcher = FakeFetcher()
    app.dependency_overrides[dependencies.get_fetcher] = lambda: fetcher
    app.dependency_overrides[dependencies.get_notifiers] = lambda: {"log": RecordingNotifier()}
    with Database(tmp_path / "api.db") as db:
        yield db, fetcher
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


def register(db, fetcher, url="https://jobs.example.com/p/1", **fields):
    job = add_job(db, url, now=utc_now())
    fetcher.set(url, posting(**fields))
    return job


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_api_info_lists_endpoints(client):
    info = client.get("/api").json()
    assert info["docs"] == "/api/docs"
    assert "/api/monitoring/run" in info["endpoints"]
    assert "/api/changes" in info["endpoints"]
    assert "/api" not in info["endpoints"]


def test_cors_origins_by_environment():
    assert cors_origins({}) == DEV_ORIGINS
    production = {"MONITOR_ENV": "production", "MONITOR_ALLOWED_ORIGINS": " https://a.example.com, ,https://b.example.com"}
    assert cors_origins(production) == ["https://a.example.com", "https://b.example.com"]
    assert cors_origins({"MONITOR_ENV": "production"}) == []


def test_trigger_run_and_status(env, client):
    db, fetcher = env
    register(db, fetcher)

    run = client.post("/api/monitoring/run")
    status = client.get("/api/monitoring/status")
    runs = client.get("/api/monitoring/runs")

    assert run.status_code == 200
    assert run.json()["jobs_checked"] == 1
    assert run.json()["status"] == "completed"
    assert run.json()["next_run_needed"] is False
    body = status.json()
    assert body["active_jobs_monitored"] == 1
    assert body["jobs_needing_check"] == 0
    assert body["last_run"]["run_id"] == run.json()["run_id"]
    assert [r["run_id"] for r in runs.json()] == [run.json()["run_id"]]


def test_monitoring_queue_is_capped(env, client):
    db, fetcher = env
    for i in range(3):
        register(db, fetcher, f"https://jobs.example.com/p/{i}")

    head = client.get("/api/jobs/monitoring-queue", params={"limit": 2}).json()
    everything = client.get("/api/jobs/monitoring-queue", params={"limit": 5000}).json()

    assert head["total_jobs"] == 3
    assert head["returned_jobs"] == 2
    assert "monitoring_priority" in head["jobs"][0]
    assert everything["returned_jobs"] == 3


def test_tracking_and_snapshot_content(env, client):
    db, fetcher = env
    job = register(db, fetcher)
    client.post("/api/monitoring/run")

    tracking = client.get(f"/api/jobs/{job.job_id}/tracking").json()
    snapshot_id = tracking["snapshots"][0]["snapshot_id"]
    content = client.get(f"/api/jobs/{job.job_id}/snapshots/{snapshot_id}/content")

    assert tracking["job"]["job_id"] == job.job_id
    assert [entry["status"] for entry in tracking["timeline"]] == ["checked"]
    assert tracking["changes"] == []
    assert content.status_code == 200
    assert content.content == b"<html>posting</html>"
    assert client.get(f"/api/jobs/{job.job_id}/snapshots/nope/content").status_code == 404


def test_unknown_job_is_404(env, client):
    assert client.get("/api/jobs/missing/tracking").status_code == 404
    assert client.put("/api/jobs/missing/monitoring", json={"frequency_hours": 6}).status_code == 404


def test_update_monitoring_settings(env, client):
    db, fetcher = env
    job = register(db, fetcher)

    bad = client.put(f"/api/jobs/{job.job_id}/monitoring", json={"frequency_hours": 0})
    good = client.put(
        f"/api/jobs/{job.job_id}/monitoring",
        json={"frequency_hours": 6, "priority_override": "high"},
    )
    disabled = client.put(f"/api/jobs/{job.job_id}/monitoring", json={"monitoring_enabled": False})

    assert bad.status_code == 422
    assert good.status_code == 200
    assert good.json()["job"]["frequency_hours"] == 6
    assert good.json()["job"]["priority_override"] == "high"
    assert disabled.json()["job"]["monitoring_enabled"] is False
    assert disabled.json()["job"]["frequency_hours"] == 6
    assert client.get("/api/jobs/monitoring-queue").json()["total_jobs"] == 0


def test_change_feed_filters(env, client, tmp_path):
    db, fetcher = env
    job = register(db, fetcher)
    other = register(db, fetcher, "https://jobs.example.com/p/2")
    store = SnapshotStore(db, ArtifactStore(tmp_path / "artifacts"))
    now = utc_now()
    for target in (job, other):
        first = store.save(store.build(target.job_id, posting(), now - timedelta(days=1)))
        second = store.save(store.build(target.job_id, posting(salary_max=99000), now))
        db.insert_changes(diff(first, second))

    all_changes = client.get("/api/changes").json()
    one_job = client.get("/api/changes", params={"job_id": job.job_id}).json()
    future = client.get("/api/changes", params={"since": (now + timedelta(hours=1)).isoformat()}).json()

    assert all_changes["count"] == 2
    assert [c["job_id"] for c in one_job["changes"]] == [job.job_id]
    assert future["count"] == 0


def test_api_token_gate(env, client, monkeypatch):
    monkeypatch.setenv("MONITOR_API_TOKEN", "s3cret")

    assert client.get("/api/monitoring/status").status_code == 401
    assert client.get("/api/monitoring/status", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/api/monitoring/status", headers={"Authorization": "Bearer s3cret"}).status_code == 200
    assert client.get("/api/health").status_code == 200
