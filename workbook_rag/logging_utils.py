from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, Dict

_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"}


class _PlainFormatter(logging.Formatter):
    """Single-line records for a terminal; thread names matter with two worker pools."""

    default_fmt = "%(levelname)s %(name)s - %(message)s"
    verbose_fmt = (
        "%(asctime)s %(levelname)s %(name)s [%(threadName)s] "
        "%(filename)s:%(lineno)d - %(message)s"
    )
    datefmt = "%Y-%m-%d %H:%M:%S"

    def __init__(self, debug: bool = False) -> None:
        super().__init__(fmt=self.verbose_fmt if debug else self.default_fmt, datefmt=self.datefmt)


class _JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "thread": record.threadName,
            "line": f"{record.filename}:{record.lineno}",
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def coerce_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        upper = level.strip().upper()
        if upper in _LEVELS:
            return getattr(logging, upper)
        if upper.isdigit():
            return int(upper)
    return logging.INFO


def setup_logging(level: str | int | None = None, json_logs: bool = False) -> None:
    """
    Configure root logging for the process (stderr only).

    An explicit `level` wins over the LOG_LEVEL environment variable; INFO
    otherwise. Calling it again replaces the previous handler.
    """
    final_level = coerce_level(level or os.getenv("LOG_LEVEL") or logging.INFO)

    root = logging.getLogger()
    root.setLevel(final_level)
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(stream=sys.stderr)
    if json_logs:
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(_PlainFormatter(debug=final_level <= logging.DEBUG))
    root.addHandler(handler)

    for noisy in ("urllib3", "sentence_transformers", "filelock", "huggingface_hub"):
        logging.getLogger(noisy).setLevel(max(final_level, logging.WARNING))
