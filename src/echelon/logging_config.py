"""Logging setup shared by the CLI, the API server and the service loops.

Console output goes through rich; ``json_format=True`` switches to one JSON
object per line for log shippers. A ``service`` context variable tags every
record with the loop that emitted it (ledger, dispatcher, engine:3, ...).
"""

from __future__ import annotations

import json
import logging
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

service_var: ContextVar[str | None] = ContextVar("service", default=None)

_NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "uvicorn.access", "asyncio")

_RESERVED = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "service"}


class ServiceFilter(logging.Filter):
    """Attach the current service name to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = service_var.get() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """One JSON document per record."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": getattr(record, "service", "-"),
            "message": record.getMessage(),
        }
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                data[key] = value
        return json.dumps(data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Path | None = None,
    console: Console | None = None,
) -> None:
    """
    Configure the root logger.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        json_format: Emit JSON lines instead of rich console output
        log_file: Optional file that receives JSON lines as well
        console: rich console to render to (defaults to stderr)
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler: logging.Handler
    if json_format:
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
    else:
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("[%(service)s] %(message)s", datefmt="%X"))
    handler.addFilter(ServiceFilter())
    root.addHandler(handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(ServiceFilter())
        root.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
