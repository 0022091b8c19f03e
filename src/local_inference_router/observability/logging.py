"""Log formatting for routing decisions and perf traces.

Both formatters carry the ``extra=`` attributes listed in ``EXTRA_FIELDS``:
JSON output as top-level keys, text output as trailing ``key=value`` pairs.
Logs go to stderr so a streamed reply on stdout stays clean.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO

EXTRA_FIELDS = (
    "trace_id",
    "model",
    "route",
    "tier",
    "task_type",
    "task_weight",
    "latency_ms",
    "ttft_ms",
    "tokens_per_sec",
    "num_ctx",
    "was_warm",
    "status_code",
)

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

QUIET_LOGGERS = ("httpx", "httpcore")


def record_fields(record: logging.LogRecord) -> dict:
    """The subset of ``EXTRA_FIELDS`` set on ``record``, in field order."""
    return {key: getattr(record, key) for key in EXTRA_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, stamped with the record's creation time."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(record_fields(record))
        return json.dumps(entry, default=str)


class KeyValueFormatter(logging.Formatter):
    """Plain text with routing fields appended, e.g. ``... route=local tier=simple``."""

    def __init__(self) -> None:
        super().__init__(TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = record_fields(record)
        if not fields:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in fields.items())
        # Tracebacks follow the first line; the pairs belong on it.
        head, sep, rest = line.partition("\n")
        return f"{head} {pairs}{sep}{rest}"


def setup_logging(level: str = "INFO", fmt: str = "json", stream: IO[str] | None = None) -> None:
    """Install a single handler on the root logger.

    ``fmt`` is ``"json"`` or anything else for key=value text. ``stream``
    defaults to stderr.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(JSONFormatter() if fmt == "json" else KeyValueFormatter())
    root.addHandler(handler)

    # The HTTP client logs every request at INFO
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
