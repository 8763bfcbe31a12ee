"""Logging configuration shared by the entry-point scripts."""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once; ``MONITOR_LOG_LEVEL`` overrides the default."""
    level_name = (level or os.getenv("MONITOR_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
    # requests/urllib3 are chatty at INFO.
    logging.getLogger("urllib3").setLevel(logging.WARNING)
