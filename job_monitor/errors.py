"""
Error taxonomy for the monitoring engine.

Per-job errors are caught by the scheduler at the job boundary and
counted on the ``MonitoringRun``; they never abort a batch. ``NotFound``
is deliberately not an error: a removed posting is a normal terminal
outcome for a job and is returned by fetchers as a value.
"""

from __future__ import annotations


class MonitorError(Exception):
    """Base class for all monitoring errors."""


class FetchError(MonitorError):
    """Transient network or site failure while fetching a posting.

    The job keeps its previous ``last_checked_at`` and is picked up again
    by the next run.
    """

    def __init__(self, url: str, message: str, status_code: int | None = None):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.status_code = status_code


class PersistenceError(MonitorError):
    """A storage write failed; the job's unit of work was rolled back."""


class ConfigurationError(MonitorError):
    """Invalid monitoring configuration (settings file or job row)."""
