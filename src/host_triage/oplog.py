"""Operational logging for host-triage.

Log records go to stderr, one JSON object per line unless ``log_format`` is
"text". With ``log_file`` set they are also appended to
<data_dir>/logs/host-triage.jsonl.
"""

from __future__ import annotations

import json
import logging
import socket
import sys
from datetime import datetime, timezone

from .config import Config

SERVICE = "host-triage"
TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per record, tagged with the collecting host."""

    def __init__(self, hostname: str | None = None) -> None:
        super().__init__()
        self.hostname = hostname or socket.gethostname()

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": SERVICE,
            "host": self.hostname,
        }
        if record.levelno >= logging.WARNING:
            entry["where"] = f"{record.module}:{record.lineno}"
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(config: Config) -> logging.Logger:
    """Attach handlers to the host_triage package logger and return it."""
    pkg_logger = logging.getLogger("host_triage")
    pkg_logger.setLevel(config.log_level.upper())
    pkg_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    if config.log_format == "text":
        stderr_handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    else:
        stderr_handler.setFormatter(JsonFormatter())
    pkg_logger.addHandler(stderr_handler)

    if config.log_file:
        log_dir = config.data_dir / "logs"
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_dir / f"{SERVICE}.jsonl", encoding="utf-8")
        except OSError as exc:
            pkg_logger.warning("File logging disabled, cannot open %s: %s", log_dir, exc)
        else:
            file_handler.setFormatter(JsonFormatter())
            pkg_logger.addHandler(file_handler)

    pkg_logger.propagate = False
    return pkg_logger
