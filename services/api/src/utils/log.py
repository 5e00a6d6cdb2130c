"""
Logging setup for the API service.

``init`` configures the root logger once. Output is coloured and human
readable in development and JSON lines in staging/production, chosen by the
``ENVIRONMENT`` variable. Modules get plain ``logging`` loggers from
``get_logger``.
"""

import json
import logging
import os
import sys
from datetime import datetime

_initialized = False


class ColoredFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "ENDC": "\033[0m",
    }

    def format(self, record: logging.LogRecord) -> str:
        level_color = self.COLORS.get(record.levelname, "")
        end_color = self.COLORS["ENDC"]
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        module_name = record.name if record.name != "__main__" else "main"
        line = f"[{timestamp}] {level_color}{record.levelname:8s}{end_color} [{module_name}] {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
            "environment": os.getenv("ENVIRONMENT", "unknown"),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def _environment() -> str:
    return os.getenv("ENVIRONMENT", "development").lower()


def init(level: str = "INFO") -> None:
    global _initialized
    if _initialized:
        return

    handler = logging.StreamHandler(sys.stdout)
    if _environment() in ("production", "prod", "staging"):
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ColoredFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # uvicorn installs its own handlers; route them through ours
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv = logging.getLogger(name)
        uv.handlers.clear()
        uv.propagate = True

    _initialized = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
