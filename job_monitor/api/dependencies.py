"""
Shared dependencies for FastAPI routes.

Provides settings, the database connection, the scheduler used by the
run endpoint and the optional bearer-token gate.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from job_monitor.config import MonitorSettings, load_settings
from job_monitor.db import Database
from job_monitor.errors import ConfigurationError
from job_monitor.fetchers import Fetcher
from job_monitor.scheduler import MonitoringScheduler
from job_monitor.services.notifications import Notifier
from typing import Dict, Iterator, Optional
import secrets
import os

security = HTTPBearer(auto_error=False)


def get_settings() -> MonitorSettings:
    """Load settings from ``MONITOR_CONFIG`` and the environment.

    ``DB_PATH`` selects the database, as for the command line tools.
    """
    try:
        return load_settings()
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def get_db(settings: MonitorSettings = Depends(get_settings)) -> Iterator[Database]:
    """Dependency to get a database connection, closed after the request."""
    db = Database(settings.db_path)
    try:
        yield db
    finally:
        db.close()


def get_fetcher() -> Optional[Fetcher]:
    """Fetcher for triggered runs; ``None`` means the default HTTP fetcher."""
    return None


def get_notifiers() -> Optional[Dict[str, Notifier]]:
    """Notifiers for triggered runs; ``None`` means the default set."""
    return None


def get_scheduler(
    settings: MonitorSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    fetcher: Optional[Fetcher] = Depends(get_fetcher),
    notifiers: Optional[Dict[str, Notifier]] = Depends(get_notifiers),
) -> MonitoringScheduler:
    return MonitoringScheduler.from_settings(settings, db, fetcher=fetcher, notifiers=notifiers)


def require_api_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> None:
    """Require ``Authorization: Bearer <MONITOR_API_TOKEN>`` when the token is set.

    With no ``MONITOR_API_TOKEN`` configured the API is open, which is the
    expected setup for a local deployment.

    Raises:
        HTTPException: If a token is configured and the request lacks it.
    """
    expected = os.getenv("MONITOR_API_TOKEN")
    if not expected:
        return
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    if not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )
