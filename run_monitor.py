#!/usr/bin/env python3
"""
Run job monitoring: re-check due postings, record changes, notify.

Settings come from an optional YAML file (``--config`` or
``MONITOR_CONFIG``) plus environment overrides; subscribers listed in the
file are synced into the database before each run.

Usage:
  python run_monitor.py
  python run_monitor.py --once
  python run_monitor.py --config monitor.yaml --interval-seconds 3600
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from job_monitor.config import load_settings
from job_monitor.errors import ConfigurationError
from job_monitor.logging_setup import configure_logging
from job_monitor.scheduler import run_scheduler


def main() -> None:
    p = argparse.ArgumentParser()
    p.add_argument("--config", help="YAML settings file")
    p.add_argument("--db", help="SQLite DB path (overrides settings)")
    p.add_argument("--interval-seconds", type=int, default=3600, help="Seconds between runs")
    p.add_argument("--iterations", type=int, default=0, help="0 = infinite, 1 = run once, N = run N times")
    p.add_argument("--once", action="store_true", help="Run exactly one monitoring pass (iterations=1)")
    p.add_argument("--log-level", help="Logging level (default: MONITOR_LOG_LEVEL or INFO)")
    args = p.parse_args()

    configure_logging(args.log_level)
    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except ConfigurationError as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    if args.db:
        settings = settings.model_copy(update={"db_path": Path(args.db)})

    iterations = 1 if args.once else args.iterations

    try:
        run_scheduler(
            settings,
            interval_seconds=args.interval_seconds,
            iterations=iterations,
        )
    except KeyboardInterrupt:
        print("\n[monitor] Stopped.")


if __name__ == "__main__":
    main()
