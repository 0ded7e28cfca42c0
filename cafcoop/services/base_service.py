"""
Base Service Class.

Minimal base class standardizing the logger pattern for all services.
Services extend this and add their repository, gateway and telemetry
dependencies via __init__.
"""

from __future__ import annotations

import logging

from cafcoop.errors import CafcoopError
from cafcoop.logger import StructuredLogger


class BaseService:
    """Base class for all service classes. Provides a logger."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger

    def _log_failure(
        self,
        operation: str,
        exc: CafcoopError,
        level: int = logging.WARNING,
        **context: str,
    ) -> None:
        """Log a handled failure with its error type as structured fields."""
        extra: dict[str, str] = {"operation": operation, "error_type": type(exc).__name__}
        if exc.original_error is not None:
            extra["cause_type"] = type(exc.original_error).__name__
        extra.update(context)
        self._logger.log(level, "%s failed: %s", operation, exc.message, extra=extra)
