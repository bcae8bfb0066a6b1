"""
Logging setup for the transparency API.

- Debug / testing: short readable lines on stderr
- Otherwise: one JSON object per line
- Level: LOG_LEVEL env variable
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# extra= fields copied into JSON lines when present on the record
EXTRA_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "role",
    "institution_id",
    "department_id",
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now().strftime("%H:%M:%S")
        duration = getattr(record, "duration_ms", None)
        dur = f" [{duration:.0f}ms]" if duration is not None else ""
        line = f"{ts} {record.levelname:<8} {record.name}: {record.getMessage()}{dur}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install a single stderr handler on the root logger for this app."""
    is_testing = app.config.get("TESTING", False)
    readable = app.config.get("DEBUG", False) or is_testing

    level_name = os.getenv("LOG_LEVEL", "DEBUG" if readable else "INFO")
    level = getattr(logging, level_name.upper(), logging.INFO)

    root = logging.getLogger()
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ReadableFormatter() if readable else JSONFormatter())
    handler.setLevel(level)
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "pymongo", "huggingface_hub"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "readable" if readable else "JSON")
