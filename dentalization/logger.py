"""
Structured JSON Logging.

Every component receives a ``StructuredLogger``; records are written one
JSON object per line to stdout and, unless ``LOG_FILE`` is empty, to a
rotating file.  Credentials never reach a handler: ``extra`` fields named
like a secret are replaced before formatting.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from dentalization.config import get_config

_REDACTED: str = "[REDACTED]"

_SECRET_FIELDS: frozenset[str] = frozenset({
    "password",
    "new_password",
    "current_password",
    "token",
    "access_token",
    "refresh_token",
    "authorization",
})


class JSONFormatter(logging.Formatter):
    """Render a record as ``{timestamp, level, logger_name, message, extra}``.

    ``extra`` holds whatever the caller passed via ``extra=``, with
    secret-named fields redacted.  A traceback, if any, goes under
    ``exception``.
    """

    _RECORD_ATTRS: frozenset[str] = frozenset(
        logging.LogRecord(
            name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
        ).__dict__.keys()
    ) | {"message", "asctime", "taskName"}

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        extra = {
            key: _REDACTED if key.lower() in _SECRET_FIELDS else str(value)
            for key, value in record.__dict__.items()
            if key not in self._RECORD_ATTRS
        }
        if extra:
            entry["extra"] = extra

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False)


class StructuredLogger:
    """Injectable wrapper around one named ``logging.Logger``.

    Parameters
    ----------
    name:
        Logger name; handlers are attached once per name.
    level:
        Minimum level for the logger and its handlers.
    log_file:
        Rotating log file path.  ``None`` reads ``LOG_FILE`` from the
        configuration; an empty string logs to the console only.
    """

    def __init__(
        self,
        name: str = "dentalization",
        level: int = logging.INFO,
        log_file: Optional[str] = None,
    ) -> None:
        cfg = get_config()

        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(level)
        if self._logger.handlers:
            return

        formatter = JSONFormatter()
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        self._logger.addHandler(console)

        path = cfg.LOG_FILE if log_file is None else log_file
        if not path:
            return
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            rotating = RotatingFileHandler(
                filename=path,
                maxBytes=cfg.LOG_MAX_BYTES,
                backupCount=cfg.LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        except OSError as exc:
            self._logger.warning(
                "Could not open log file '%s' (%s); logging to console only.", path, exc,
            )
            return
        rotating.setFormatter(formatter)
        self._logger.addHandler(rotating)

    def debug(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.error(msg, *args, **kwargs)


def get_logger(name: str = "dentalization") -> StructuredLogger:
    return StructuredLogger(name=name)
