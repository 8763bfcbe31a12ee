#!/usr/bin/env python3
"""
Serve the job monitor HTTP API with uvicorn.

Usage:
    python run_web.py
    python run_web.py --db monitor.db --config monitor.yaml
    python run_web.py --host 0.0.0.0 --port 8080 --workers 2
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional

import uvicorn

from job_monitor.logging_setup import configure_logging


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the job monitor API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--db", default="monitor.db", help="SQLite database path (sets DB_PATH)")
    parser.add_argument("--config", help="YAML settings file (sets MONITOR_CONFIG)")
    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (single worker)")
    parser.add_argument("--log-level", default=os.getenv("MONITOR_LOG_LEVEL", "INFO"))
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)

    # Request handlers load settings from the environment.
    db_path = Path(args.db).absolute()
    os.environ["DB_PATH"] = str(db_path)
    if args.config:
        os.environ["MONITOR_CONFIG"] = str(Path(args.config).absolute())
    configure_logging(args.log_level)

    print(f"[web] Serving http://{args.host}:{args.port}/api (docs at /api/docs)")
    print(f"[web] Database {db_path}" + ("" if db_path.exists() else " (created on first request)"))
    if not os.getenv("MONITOR_API_TOKEN"):
        print("[web] MONITOR_API_TOKEN not set; monitoring endpoints are open")

    try:
        uvicorn.run(
            "job_monitor.api.main:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            workers=1 if args.reload else args.workers,
            log_level=args.log_level.lower(),
        )
    except KeyboardInterrupt:
        print("\n[web] Stopped")
    except Exception as e:
        print(f"[web] Could not start server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
