"""
Change feed API endpoint.

Downstream consumers poll this feed for detected changes, optionally
restricted to one job or to changes after a given time.
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional
from datetime import datetime

from job_monitor.api.dependencies import get_db, require_api_token
from job_monitor.api.schemas import ChangeFeedResponse
from job_monitor.db import Database

router = APIRouter(
    prefix="/api/changes",
    tags=["changes"],
    dependencies=[Depends(require_api_token)],
)


@router.get("", response_model=ChangeFeedResponse)
async def list_changes(
    since: Optional[datetime] = Query(None, description="Only changes detected after this time"),
    job_id: Optional[str] = Query(None, description="Only changes for this job"),
    limit: int = Query(100, ge=1, le=500, description="Maximum changes to return"),
    db: Database = Depends(get_db),
):
    """Detected changes, newest first."""
    changes = db.list_changes(job_id=job_id, since=since, limit=limit)
    return {"changes": [change.to_dict() for change in changes], "count": len(changes)}
