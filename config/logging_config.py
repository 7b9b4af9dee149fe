"""
Logging configuration.

Modules log through logging.getLogger(__name__) (or get_logger); the
application calls setup_logging() once at startup.
"""

import json
import logging
import sys
import time
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        base = {
            "ts": time.time(),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False)


def setup_logging(level: Optional[str] = None, json_format: Optional[bool] = None) -> None:
    """Configure the root logger from arguments or settings."""
    if level is None or json_format is None:
        from config.settings import settings
        level = level or settings.log_level
        json_format = settings.log_json if json_format is None else json_format

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if json_format else logging.Formatter(DEFAULT_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
