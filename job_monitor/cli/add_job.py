#!/usr/bin/env python3
"""
Register a job posting for monitoring.

The job id is derived from the canonical URL, so adding the same posting
twice (even with different tracking parameters) updates the existing
entry instead of creating a duplicate. Only identity and monitoring
settings are written; check history is left untouched.

Usage examples::

    python -m job_monitor.cli.add_job --url https://boards.example.com/jobs/123 --title "Data Engineer"

    python -m job_monitor.cli.add_job --url https://boards.example.com/jobs/123 --frequency-hours 6 --priority high

    python -m job_monitor.cli.add_job  # prompts for the URL
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from job_monitor.config import load_settings
from job_monitor.db import Database
from job_monitor.errors import ConfigurationError
from job_monitor.models import PriorityBucket
from job_monitor.normalize import job_for_url


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Register a job posting for monitoring")
    parser.add_argument("--db", help="SQLite DB path (default: from settings / DB_PATH)")
    parser.add_argument("--config", help="YAML settings file")
    parser.add_argument("--url", help="URL of the job posting")
    parser.add_argument("--title", default="", help="Job title (display only)")
    parser.add_argument("--company", default="", help="Company name (display only)")
    parser.add_argument("--frequency-hours", type=int, help="Hours between checks (default: from settings)")
    parser.add_argument("--priority", choices=[bucket.value for bucket in PriorityBucket],
                        help="Manual priority bucket (optional)")
    parser.add_argument("--disable", action="store_true", help="Add the job with monitoring disabled")
    return parser.parse_args(argv)


def prompt_if_missing(args: argparse.Namespace, attr: str, prompt_text: str) -> str:
    value = getattr(args, attr)
    if value:
        return value
    try:
        return input(f"{prompt_text}: ").strip()
    except EOFError:
        return ""


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except ConfigurationError as exc:
        print(f"Error: {exc}")
        return 1

    url = prompt_if_missing(args, "url", "Job URL")
    if not url:
        print("A job URL is required.")
        return 1
    frequency = args.frequency_hours if args.frequency_hours is not None else settings.default_frequency_hours
    if frequency < 1:
        print("--frequency-hours must be at least 1.")
        return 1

    job = job_for_url(
        url,
        title=args.title,
        company=args.company,
        frequency_hours=frequency,
        monitoring_enabled=not args.disable,
        priority_override=PriorityBucket(args.priority) if args.priority else None,
    )
    db_path = Path(args.db) if args.db else settings.db_path
    with Database(db_path) as db:
        existed = db.get_job(job.job_id) is not None
        db.upsert_job(job)

    action = "Updated" if existed else "Added"
    print(f"{action} job {job.job_id}: {job.canonical_url}")
    print(f"  frequency: every {job.frequency_hours}h, monitoring {'enabled' if job.monitoring_enabled else 'disabled'}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
