"""Logging setup for the FetchNews client core.

``configure_logging()`` installs a single stderr handler on the root logger.
In CI, or with ``FETCHNEWS_LOG_JSON`` set, each record becomes one JSON line
carrying the coordinator context passed through ``extra=`` (session id,
topic, schedule id, fetch phase, duration). Bearer credentials are scrubbed
from messages and error text before anything is written.

Usage:
    from fetchnews.logging_config import configure_logging
    configure_logging(level="DEBUG", json_format=True)
"""
from __future__ import annotations

import json
import logging
import os
import re
import sys
import time
from typing import Any

# Context keys the coordinators attach with ``extra={...}``
CONTEXT_FIELDS = ("session_id", "topic", "schedule_id", "phase", "duration_ms")

_BEARER_RE = re.compile(r"(Bearer\s+)\S+", re.IGNORECASE)

_PLAIN_FORMAT = "%(asctime)s %(levelname)-5s %(name)s: %(message)s"


def scrub(text: str) -> str:
    return _BEARER_RE.sub(r"\1[redacted]", text)


def _utc_stamp(record: logging.LogRecord) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)) + f".{int(record.msecs):03d}Z"


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    {"ts": "2026-10-19T08:00:01.204Z", "level": "INFO", "logger": "fetchnews.orchestration.fetch",
     "msg": "Fetch 3 published session s1 with 2 sections", "session_id": "s1", "duration_ms": 812}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": _utc_stamp(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": scrub(record.getMessage()),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.levelno >= logging.WARNING:
            entry["file"] = f"{record.filename}:{record.lineno}"

        exc = record.exc_info[1] if record.exc_info else None
        if exc is not None:
            entry["error"] = scrub(str(exc))
            entry["error_type"] = type(exc).__name__

        return json.dumps(entry, default=str)


def _wants_json() -> bool:
    return any(os.environ.get(var) for var in ("CI", "GITHUB_ACTIONS", "FETCHNEWS_LOG_JSON"))


def configure_logging(level: str | None = None, json_format: bool | None = None) -> None:
    """Route all logging to stderr.

    ``level`` defaults to ``FETCHNEWS_LOG_LEVEL`` (else INFO); unknown names
    fall back to INFO. ``json_format=None`` picks JSON in CI and plain text
    elsewhere.
    """
    level_name = (level or os.environ.get("FETCHNEWS_LOG_LEVEL") or "INFO").upper()
    use_json = _wants_json() if json_format is None else json_format

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if use_json else logging.Formatter(_PLAIN_FORMAT, datefmt="%H:%M:%S"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))

    # asyncio's debug chatter and urllib3 (if a host pulls it in) stay at WARNING
    for name in ("asyncio", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)
