"""
Job monitoring API endpoints.

Provides the ordered monitoring queue, a job's tracking history,
per-job monitoring settings and raw snapshot content.
"""

from fastapi import APIRouter, Depends, Query, HTTPException, Response, status
from typing import Optional

from job_monitor.api.dependencies import get_db, get_settings, require_api_token
from job_monitor.api.schemas import JobTrackingResponse, MonitoringQueueResponse, MonitoringUpdate
from job_monitor.artifacts import ArtifactStore
from job_monitor.config import MonitorSettings
from job_monitor.db import Database
from job_monitor.models import Job
from job_monitor.monitoring_queue import MonitoringQueue
from job_monitor.snapshot_store import SnapshotStore

router = APIRouter(
    prefix="/api/jobs",
    tags=["jobs"],
    dependencies=[Depends(require_api_token)],
)

ARTIFACT_MEDIA_TYPES = {
    "html": "text/html",
    "markdown": "text/markdown",
    "pdf": "application/pdf",
    "screenshot": "image/png",
    "json": "application/json",
}


def _job_or_404(db: Database, job_id: str) -> Job:
    job = db.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")
    return job


@router.get("/monitoring-queue", response_model=MonitoringQueueResponse)
async def monitoring_queue(
    limit: int = Query(50, ge=1, description="Maximum jobs to return (capped at max_batch_limit)"),
    db: Database = Depends(get_db),
    settings: MonitorSettings = Depends(get_settings),
):
    """
    Jobs due for a check, most urgent first.

    Ordered by priority score, then days since the last check.
    """
    queue = MonitoringQueue(db, policy=settings.priority_policy(), max_limit=settings.max_batch_limit)
    total, entries = queue.queue_view(limit)
    return {
        "total_jobs": total,
        "returned_jobs": len(entries),
        "jobs": [entry.to_dict() for entry in entries],
    }


@router.get("/{job_id}/tracking", response_model=JobTrackingResponse)
async def job_tracking(
    job_id: str,
    limit: int = Query(100, ge=1, le=1000, description="Maximum timeline entries and changes"),
    db: Database = Depends(get_db),
    settings: MonitorSettings = Depends(get_settings),
):
    """Timeline of checks and changes for one job, newest first."""
    job = _job_or_404(db, job_id)
    store = SnapshotStore(db, ArtifactStore(settings.artifact_dir))
    return {
        "job": job.to_dict(),
        "timeline": [entry.to_dict() for entry in store.timeline(job_id, limit=limit)],
        "snapshots": [snapshot.to_dict() for snapshot in reversed(store.history(job_id))],
        "changes": [change.to_dict() for change in db.list_changes(job_id=job_id, limit=limit)],
    }


@router.put("/{job_id}/monitoring")
async def update_monitoring(
    job_id: str,
    update: MonitoringUpdate,
    db: Database = Depends(get_db),
):
    """Update monitoring settings for a job. Omitted fields are left unchanged."""
    _job_or_404(db, job_id)
    db.update_job_monitoring(
        job_id,
        monitoring_enabled=update.monitoring_enabled,
        frequency_hours=update.frequency_hours,
        priority_override=update.priority_override,
        clear_priority_override=update.clear_priority_override,
    )
    return {"message": "Monitoring settings updated", "job": _job_or_404(db, job_id).to_dict()}


@router.get("/{job_id}/snapshots/{snapshot_id}/content")
async def snapshot_content(
    job_id: str,
    snapshot_id: str,
    kind: Optional[str] = Query(None, description="Artifact kind (html, markdown, pdf, screenshot, json)"),
    db: Database = Depends(get_db),
    settings: MonitorSettings = Depends(get_settings),
):
    """Raw artifact captured with a snapshot."""
    store = SnapshotStore(db, ArtifactStore(settings.artifact_dir))
    snapshot = store.get(snapshot_id)
    if snapshot is None or snapshot.job_id != job_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Snapshot not found")
    try:
        content = store.read_artifact(snapshot, kind)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    media_type = snapshot.content_type if kind is None else ARTIFACT_MEDIA_TYPES.get(kind, "application/octet-stream")
    return Response(content=content, media_type=media_type)
