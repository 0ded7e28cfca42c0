"""
Structured JSON Logging Module.

Provides a StructuredLogger factory that produces logging.Logger instances
writing one JSON object per line to stdout and to a size-rotated log file.

Session handling puts provider tokens and keys within reach of every log
call, so the formatter redacts any ``extra`` field whose name marks it as
a credential before the record is serialised.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, TextIO, Union

REDACTED: str = "[REDACTED]"

# Substrings of ``extra`` keys whose values never reach a log sink.
_SECRET_KEY_MARKERS: tuple[str, ...] = (
    "token",
    "apikey",
    "api_key",
    "authorization",
    "password",
    "secret",
    "service_role",
)

JSONValue = Union[str, int, float, bool, None]


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SECRET_KEY_MARKERS)


def _json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, float)):
        return value  # type: ignore[return-value]
    return str(value)


class JSONFormatter(logging.Formatter):
    """Formats log records as structured JSON objects.

    Each log entry contains:
        - timestamp    (ISO-8601, UTC)
        - level        (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        - logger_name
        - message
        - extra        (fields passed via the ``extra`` kwarg, credentials redacted)
        - exception    (formatted traceback, when ``exc_info`` is set)
    """

    # Standard LogRecord attribute names, computed once.
    _STANDARD_ATTRS: frozenset[str] = frozenset(
        logging.LogRecord(
            name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
        ).__dict__.keys()
    ) | {"message", "asctime", "taskName"}

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Union[JSONValue, dict[str, JSONValue]]] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        extra_fields: dict[str, JSONValue] = {
            key: REDACTED if _is_secret_key(key) else _json_value(value)
            for key, value in record.__dict__.items()
            if key not in self._STANDARD_ATTRS
        }
        if extra_fields:
            entry["extra"] = extra_fields

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)


class StructuredLogger:
    """Injectable logger factory.

    Instantiate this class and pass the resulting object wherever a logger
    is needed.  The underlying ``logging.Logger`` is exposed via the
    ``.logger`` attribute and standard convenience methods are delegated
    directly.

    Usage::

        log = StructuredLogger(name="cafcoop.session")
        log.info("Session started", extra={"user_id": "abc"})
        gateway_log = log.child("gateway")   # logger "cafcoop.session.gateway"

    Handlers are attached to the named logger only once, so building
    several ``StructuredLogger`` objects for the same name is cheap.
    Children propagate to their parent's handlers.
    """

    def __init__(
        self,
        name: str = "cafcoop",
        level: Union[int, str, None] = None,
        stream: Union[TextIO, None] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
    ) -> None:
        # Lazy import to avoid circular dependency at module level
        from cafcoop.config import get_config
        _cfg = get_config()

        resolved_level: Union[int, str] = level if level is not None else _cfg.LOG_LEVEL.upper()
        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(resolved_level)

        if self._logger.handlers or self._has_configured_parent():
            return

        formatter = JSONFormatter()

        stream_handler = logging.StreamHandler(stream or sys.stdout)
        stream_handler.setFormatter(formatter)
        self._logger.addHandler(stream_handler)

        resolved_log_file: str = log_file or _cfg.LOG_FILE
        try:
            log_path = Path(resolved_log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                filename=str(log_path),
                maxBytes=max_bytes if max_bytes is not None else _cfg.LOG_MAX_BYTES,
                backupCount=backup_count if backup_count is not None else _cfg.LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            self._logger.addHandler(file_handler)
        except OSError as exc:
            self._logger.warning(
                "Could not create log file '%s': %s. "
                "Continuing with console logging only.",
                resolved_log_file,
                exc,
            )

    def _has_configured_parent(self) -> bool:
        parent = self._logger.parent
        while parent is not None and parent is not logging.root:
            if any(isinstance(h.formatter, JSONFormatter) for h in parent.handlers):
                return True
            parent = parent.parent
        return False

    # -- Public API -------------------------------------------------------------

    @property
    def logger(self) -> logging.Logger:
        """Access the underlying ``logging.Logger`` directly."""
        return self._logger

    @property
    def name(self) -> str:
        return self._logger.name

    def child(self, suffix: str) -> "StructuredLogger":
        """Return a logger named ``<this name>.<suffix>`` sharing these handlers."""
        return StructuredLogger(name=f"{self._logger.name}.{suffix}", level=self._logger.level)

    # -- Convenience delegates ----------------------------------------------------

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.critical(msg, *args, **kwargs)

    def log(self, level: int, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.log(level, msg, *args, **kwargs)


def get_logger(name: str = "cafcoop") -> StructuredLogger:
    """Create and return a ``StructuredLogger`` instance with the given *name*.

    Thin convenience factory used by the composition root.  Prefer direct
    instantiation of ``StructuredLogger`` when ``stream`` or ``log_file``
    must be controlled.
    """
    return StructuredLogger(name=name)
