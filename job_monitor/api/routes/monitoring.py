"""
Monitoring run API endpoints.

Provides endpoints for triggering a monitoring run, the monitoring
overview and the run history.
"""

from fastapi import APIRouter, Depends, Query
from typing import Any, Dict, List

from job_monitor.api.dependencies import get_db, get_scheduler, get_settings, require_api_token
from job_monitor.api.schemas import MonitoringRunResponse, MonitoringStatusResponse
from job_monitor.config import MonitorSettings
from job_monitor.db import Database
from job_monitor.monitoring_queue import MonitoringQueue
from job_monitor.scheduler import MonitoringScheduler

router = APIRouter(
    prefix="/api/monitoring",
    tags=["monitoring"],
    dependencies=[Depends(require_api_token)],
)


@router.post("/run", response_model=MonitoringRunResponse)
def trigger_run(scheduler: MonitoringScheduler = Depends(get_scheduler)):
    """
    Run one monitoring batch now and return its summary.

    Intended for an external cron trigger; ``next_run_needed`` tells the
    caller whether more due jobs are waiting.
    """
    return scheduler.run_once().to_dict()


@router.get("/status", response_model=MonitoringStatusResponse)
async def monitoring_status(
    db: Database = Depends(get_db),
    settings: MonitorSettings = Depends(get_settings),
):
    """Monitored job count, current queue depth, last check and latest run."""
    queue = MonitoringQueue(db, policy=settings.priority_policy())
    runs = db.list_runs(limit=1)
    last_checked = db.latest_check_time()
    return {
        "active_jobs_monitored": db.count_monitored_jobs(),
        "jobs_needing_check": queue.count_due(),
        "last_updated": last_checked,
        "last_run": runs[0].to_dict() if runs else None,
    }


@router.get("/runs", response_model=List[MonitoringRunResponse])
async def list_runs(
    limit: int = Query(20, ge=1, le=100, description="Number of runs to return"),
    db: Database = Depends(get_db),
) -> List[Dict[str, Any]]:
    """Recent monitoring runs, newest first."""
    return [run.to_dict() for run in db.list_runs(limit=limit)]
