"""
Notification service: routes detected changes to subscribers.

Subscribers come from the ``subscribers`` table and are filtered per
event by their interest flags (new jobs, job changes, statistics), by the
job's status and by a minimum severity. Delivery is idempotent per
(event key, subscriber): the ``notification_deliveries`` log is checked
before every send, and only a ``sent`` record suppresses a later attempt,
so failed or rate-limited deliveries are retried by ``redeliver_pending``
without ever re-detecting or duplicating the change itself. A change a
subscriber is not eligible for gets a ``filtered`` record; any stored change
with neither a ``sent`` nor a ``filtered`` record for some active subscriber
is still pending, even if dispatch never ran for it.

Delivery failures are logged and recorded, never raised: change
detection and notification are decoupled.
"""

from __future__ import annotations

import logging
import os
import smtplib
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.message import EmailMessage
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Tuple

import requests

from job_monitor.db import Database
from job_monitor.errors import ConfigurationError, MonitorError
from job_monitor.models import (
    Change,
    ChangeEvent,
    Job,
    MonitoringRun,
    NewJobEvent,
    NotificationEvent,
    RunSummaryEvent,
    Snapshot,
    Subscriber,
    utc_now,
)

logger = logging.getLogger(__name__)

RATE_WINDOW = timedelta(hours=1)
REDELIVERY_WINDOW = timedelta(days=7)


class Notifier(Protocol):
    def send(self, subscriber: Subscriber, event: NotificationEvent) -> None:
        ...


def render_message(event: NotificationEvent) -> Tuple[str, str]:
    """Return ``(subject, body)`` for an event."""
    if isinstance(event, ChangeEvent):
        job, change = event.job, event.change
        label = job.title or job.canonical_url
        subject = f"[{change.severity.value}] {label}: {change.summary}"
        body = "\n".join(
            [
                f"Job: {label}" + (f" at {job.company}" if job.company else ""),
                f"URL: {job.url}",
                f"Field: {change.field}",
                f"Before: {change.old_value}",
                f"After: {change.new_value}",
                f"Detected: {change.detected_at.isoformat()}",
            ]
        )
        return subject, body
    if isinstance(event, NewJobEvent):
        job = event.job
        title = event.snapshot.get("title") or job.title or job.canonical_url
        company = event.snapshot.get("company") or job.company
        subject = f"New job tracked: {title}"
        body = f"{company or 'Unknown company'} - {title}\n{job.url}"
        return subject, body
    if isinstance(event, RunSummaryEvent):
        run = event.run
        subject = f"Monitoring run {run.run_id}: {run.jobs_updated} updated"
        body = "\n".join(
            [
                f"Status: {run.status.value}",
                f"Jobs checked: {run.jobs_checked}",
                f"Jobs updated: {run.jobs_updated}",
                f"Errors: {run.errors_encountered}",
                f"Eligible: {run.total_jobs_eligible}",
                f"Next run needed: {'yes' if run.next_run_needed else 'no'}",
            ]
        )
        return subject, body
    raise TypeError(f"Unknown notification event: {type(event).__name__}")


class LogNotifier:
    """Writes notifications to the application log."""

    def send(self, subscriber: Subscriber, event: NotificationEvent) -> None:
        subject, _ = render_message(event)
        logger.info("notify %s (%s): %s", subscriber.subscriber_id, event.kind, subject)


class EmailNotifier:
    """Sends notifications over SMTP with STARTTLS."""

    def __init__(self, host: Optional[str], port: int, user: Optional[str], password: Optional[str],
                 sender: Optional[str] = None):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user

    @classmethod
    def from_env(cls) -> "EmailNotifier":
        return cls(
            host=os.environ.get("SMTP_HOST"),
            port=int(os.environ.get("SMTP_PORT", "587")),
            user=os.environ.get("SMTP_USER"),
            password=os.environ.get("SMTP_PASS"),
            sender=os.environ.get("SMTP_FROM"),
        )

    def send(self, subscriber: Subscriber, event: NotificationEvent) -> None:
        if not (self.host and self.user and self.password):
            raise ConfigurationError("Missing SMTP settings. Need SMTP_HOST, SMTP_USER, SMTP_PASS.")
        subject, body = render_message(event)
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = subscriber.address
        msg["Subject"] = subject
        msg.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=30) as s:
            s.starttls()
            s.login(self.user, self.password)
            s.send_message(msg)


class WebhookNotifier:
    """POSTs the event payload as JSON to the subscriber's address.

    Downstream consumers (analytics, re-ranking, the career agent) are
    expected to subscribe this way.
    """

    def __init__(self, timeout: float = 10, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, subscriber: Subscriber, event: NotificationEvent) -> None:
        resp = self.session.post(
            subscriber.address,
            json={"event_key": event.event_key, **event.to_payload()},
            timeout=self.timeout,
        )
        resp.raise_for_status()


def default_notifiers() -> Dict[str, Notifier]:
    return {
        "log": LogNotifier(),
        "email": EmailNotifier.from_env(),
        "webhook": WebhookNotifier(),
    }


@dataclass
class DispatchReport:
    sent: int = 0
    duplicates: int = 0
    filtered: int = 0
    deferred: int = 0
    failed: int = 0

    def merge(self, other: "DispatchReport") -> "DispatchReport":
        self.sent += other.sent
        self.duplicates += other.duplicates
        self.filtered += other.filtered
        self.deferred += other.deferred
        self.failed += other.failed
        return self


class NotificationDispatcher:
    def __init__(
        self,
        db: Database,
        notifiers: Optional[Dict[str, Notifier]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.notifiers = notifiers if notifiers is not None else default_notifiers()
        self.clock = clock
        self._delivery_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._delivery_locks_guard = threading.Lock()

    def dispatch(self, changes: Iterable[Change], job: Job) -> DispatchReport:
        """Deliver change notifications for one job to interested subscribers."""
        return self._deliver([ChangeEvent(change=change, job=job) for change in changes], job)

    def dispatch_new_job(self, job: Job, snapshot: Snapshot) -> DispatchReport:
        return self._deliver([NewJobEvent(job=job, snapshot=snapshot)], job)

    def dispatch_run_summary(self, run: MonitoringRun) -> DispatchReport:
        return self._deliver([RunSummaryEvent(run=run)], None)

    def redeliver_pending(self, since: Optional[datetime] = None) -> DispatchReport:
        """Deliver stored changes that some active subscriber has not been sent.

        Covers failed and deferred deliveries as well as changes whose
        dispatch never happened (crash after commit, subscriber lookup error).
        """
        report = DispatchReport()
        try:
            changes = self.db.get_changes(self.db.list_pending_change_ids(since))
        except MonitorError:
            logger.exception("Could not load pending notifications")
            return report
        by_job: Dict[str, List[Change]] = {}
        for change in changes:
            by_job.setdefault(change.job_id, []).append(change)
        for job_id, job_changes in sorted(by_job.items()):
            job = self.db.get_job(job_id)
            if job is None:
                logger.warning("Pending notifications reference unknown job %s", job_id)
                continue
            report.merge(self.dispatch(job_changes, job))
        return report

    def _eligible(self, subscriber: Subscriber, event: NotificationEvent, job: Optional[Job]) -> bool:
        if not subscriber.enabled or not subscriber.wants(event):
            return False
        if job is not None and job.status.value not in subscriber.job_statuses:
            return False
        if isinstance(event, ChangeEvent) and not event.severity.at_least(subscriber.min_severity):
            return False
        return True

    @contextmanager
    def _delivery_lock(self, event_key: str, subscriber_id: str) -> Iterator[None]:
        with self._delivery_locks_guard:
            lock = self._delivery_locks.setdefault((event_key, subscriber_id), threading.Lock())
        with lock:
            yield

    def _deliver(self, events: List[NotificationEvent], job: Optional[Job]) -> DispatchReport:
        report = DispatchReport()
        if not events:
            return report
        try:
            subscribers = self.db.list_active_subscribers()
        except MonitorError:
            logger.exception("Could not load subscribers; %d notifications not sent", len(events))
            return report

        for event in events:
            for subscriber in subscribers:
                try:
                    if not self._eligible(subscriber, event, job):
                        report.filtered += 1
                        if isinstance(event, ChangeEvent):
                            self._mark_filtered(subscriber, event)
                        continue
                    self._deliver_one(subscriber, event, report)
                except MonitorError:
                    # Only the delivery log itself can land here.
                    logger.exception(
                        "Delivery bookkeeping failed for %s -> %s", event.event_key, subscriber.subscriber_id
                    )
                    report.failed += 1
        return report

    def _mark_filtered(self, subscriber: Subscriber, event: NotificationEvent) -> None:
        with self._delivery_lock(event.event_key, subscriber.subscriber_id):
            if self.db.get_delivery_status(event.event_key, subscriber.subscriber_id) != "sent":
                self.db.record_delivery(event.event_key, subscriber.subscriber_id, "filtered", self.clock())

    def _deliver_one(self, subscriber: Subscriber, event: NotificationEvent, report: DispatchReport) -> None:
        # Serialized per (event, subscriber) only; the rate limit is best effort
        # when one subscriber receives several events at the same moment.
        with self._delivery_lock(event.event_key, subscriber.subscriber_id):
            if self.db.get_delivery_status(event.event_key, subscriber.subscriber_id) == "sent":
                report.duplicates += 1
                return

            now = self.clock()
            if subscriber.max_per_hour and (
                self.db.count_sent_since(subscriber.subscriber_id, now - RATE_WINDOW) >= subscriber.max_per_hour
            ):
                logger.info("Rate limit reached for %s; deferring %s", subscriber.subscriber_id, event.event_key)
                self.db.record_delivery(event.event_key, subscriber.subscriber_id, "deferred", now)
                report.deferred += 1
                return

            notifier = self.notifiers.get(subscriber.channel)
            if notifier is None:
                logger.warning("No notifier for channel %r (subscriber %s)", subscriber.channel, subscriber.subscriber_id)
                self.db.record_delivery(
                    event.event_key, subscriber.subscriber_id, "failed", now, f"unknown channel {subscriber.channel}"
                )
                report.failed += 1
                return

            try:
                notifier.send(subscriber, event)
            except Exception as exc:
                logger.error(
                    "Failed to notify %s about %s: %s", subscriber.subscriber_id, event.event_key, exc
                )
                self.db.record_delivery(
                    event.event_key, subscriber.subscriber_id, "failed", now, f"{type(exc).__name__}: {exc}"
                )
                report.failed += 1
                return

            self.db.record_delivery(event.event_key, subscriber.subscriber_id, "sent", now)
            report.sent += 1
