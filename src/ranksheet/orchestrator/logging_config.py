"""
RankSheet Logging Setup
=======================

Root logging for the CLI, worker and scheduler processes.

Refresh and job code attach context through ``extra=`` (slug, job id,
lock key, ...). Both output styles carry that context:

    human:  2025-03-10 05:00:01 [INFO    ] ranksheet.jobs.worker | Job done ... (slug=wireless-mouse job_id=6f1c...)
    json:   {"ts": "...", "level": "INFO", "logger": "...", "msg": "...", "slug": "wireless-mouse", ...}

Usage:
    setup_logging(get_settings().logging)
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..data.config import LoggingConfig

CONTEXT_FIELDS = ("slug", "job_id", "job_name", "asin", "lock_key", "circuit", "duration_ms")

NOISY_LOGGERS = ("urllib3", "apscheduler", "redis")


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Context fields set on ``record`` through ``extra=``."""
    context = {}
    for key in CONTEXT_FIELDS:
        val = getattr(record, key, None)
        if val is not None:
            context[key] = val
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **record_context(record),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ContextFormatter(logging.Formatter):
    """Human-readable lines with the refresh context appended."""

    def __init__(self):
        super().__init__(
            "%(asctime)s [%(levelname)-8s] %(name)-30s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if not context:
            return line

        suffix = " ".join(f"{k}={v}" for k, v in context.items())
        head, sep, tail = line.partition("\n")
        return f"{head} ({suffix}){sep}{tail}"


def setup_logging(config: LoggingConfig, level: Optional[str] = None) -> None:
    """
    Configure root logging from ``config``.

    Args:
        config: Logging settings (LOG_LEVEL, LOG_JSON, LOG_FILE, rotation)
        level: Overrides ``config.level`` (the CLI's --verbose)
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or config.level).upper(), logging.INFO))
    root.handlers.clear()

    formatter = JSONFormatter() if config.json_logs else ContextFormatter()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    root.addHandler(console)

    if config.log_file:
        os.makedirs(os.path.dirname(config.log_file) or ".", exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
