"""
Structured Telemetry.

Every auth and profile transition is recorded as a schema-validated
:class:`TelemetryEvent` and handed to a :class:`StructuredLogger` as a
JSON payload.  The most recent events are also kept in an in-memory ring
buffer so diagnostics screens and tests can query them.

Events are fire-and-forget: emitting never raises into the caller.

Usage::

    telemetry = Telemetry(logger=StructuredLogger(name="cafcoop.telemetry"))
    telemetry.profile.load_attempt("auth-uuid")
    with telemetry.perf.measure("load_profile"):
        ...
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional, Union

from pydantic import BaseModel, Field

from cafcoop.logger import StructuredLogger
from cafcoop.models.enums import TelemetryCategory, TelemetryLevel

__all__ = ["Telemetry", "TelemetryEvent"]

DataValue = Union[str, int, float, bool, None, list[str], dict[str, Union[str, int, float, bool, None]]]

_LOGGING_LEVELS: dict[TelemetryLevel, int] = {
    TelemetryLevel.DEBUG: logging.DEBUG,
    TelemetryLevel.INFO: logging.INFO,
    TelemetryLevel.WARN: logging.WARNING,
    TelemetryLevel.ERROR: logging.ERROR,
    TelemetryLevel.CRITICAL: logging.CRITICAL,
}

_PRIORITY: dict[TelemetryLevel, int] = {
    level: index for index, level in enumerate(TelemetryLevel)
}


class TelemetryEvent(BaseModel):
    """Schema-validated representation of a single telemetry event."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: str
    level: TelemetryLevel
    category: TelemetryCategory
    message: str
    data: dict[str, DataValue] = Field(default_factory=dict)
    context: dict[str, str] = Field(default_factory=dict)


class Telemetry:
    """Category-tagged event sink backed by a StructuredLogger.

    Parameters
    ----------
    logger:
        Destination for the JSON-serialised events.
    buffer_size:
        Number of recent events retained in memory.
    min_level:
        Events below this level are dropped.
    slow_threshold_s:
        Duration above which ``perf.measure`` also emits a WARN event.
    """

    def __init__(
        self,
        logger: StructuredLogger,
        buffer_size: int = 1000,
        min_level: TelemetryLevel = TelemetryLevel.DEBUG,
        slow_threshold_s: float = 1.0,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._events: deque[TelemetryEvent] = deque(maxlen=buffer_size)
        self._min_level: TelemetryLevel = min_level
        self._context: dict[str, str] = {}
        self.session_id: str = uuid.uuid4().hex

        self.auth = AuthTelemetry(self)
        self.profile = ProfileTelemetry(self)
        self.error = ErrorTelemetry(self)
        self.perf = PerfTelemetry(self, slow_threshold_s)

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    def set_context(self, **context: str) -> None:
        """Merge *context* into the fields attached to every later event."""
        self._context.update({key: str(value) for key, value in context.items()})

    def emit(
        self,
        level: TelemetryLevel,
        category: TelemetryCategory,
        message: str,
        data: Optional[dict[str, DataValue]] = None,
    ) -> Optional[TelemetryEvent]:
        """Record one event.  Returns ``None`` when filtered by level."""
        if _PRIORITY[level] < _PRIORITY[self._min_level]:
            return None

        event = TelemetryEvent(
            session_id=self.session_id,
            level=level,
            category=category,
            message=message,
            data=data or {},
            context=dict(self._context),
        )
        self._events.append(event)
        self._logger.log(
            _LOGGING_LEVELS[level],
            "%s: %s",
            category,
            json.dumps(event.model_dump(mode="json"), default=str, ensure_ascii=False),
        )
        return event

    def get_events(
        self,
        level: Optional[TelemetryLevel] = None,
        category: Optional[TelemetryCategory] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[TelemetryEvent]:
        """Return buffered events matching every given filter."""
        events = list(self._events)
        if level is not None:
            events = [e for e in events if e.level == level]
        if category is not None:
            events = [e for e in events if e.category == category]
        if since is not None:
            events = [e for e in events if e.timestamp >= since]
        if until is not None:
            events = [e for e in events if e.timestamp <= until]
        return events

    def count(self, message: str, category: Optional[TelemetryCategory] = None) -> int:
        """Number of buffered events with exactly *message*."""
        return sum(1 for e in self.get_events(category=category) if e.message == message)

    def export_json(self) -> str:
        """Serialise the buffered events as a JSON array."""
        return json.dumps(
            [e.model_dump(mode="json") for e in self._events], ensure_ascii=False, indent=2,
        )

    def clear(self) -> None:
        self._events.clear()


def _describe(error: BaseException) -> str:
    return getattr(error, "message", None) or str(error) or type(error).__name__


class AuthTelemetry:
    """``AUTH`` category helpers."""

    def __init__(self, sink: Telemetry) -> None:
        self._sink = sink

    def session_start(self, user_id: str, email: Optional[str]) -> None:
        self._sink.emit(TelemetryLevel.INFO, TelemetryCategory.AUTH, "Session started",
                        {"userId": user_id, "email": email})

    def login_success(self, user_id: str, email: Optional[str], method: str) -> None:
        self._sink.emit(TelemetryLevel.INFO, TelemetryCategory.AUTH, "Login successful",
                        {"userId": user_id, "email": email, "method": method})

    def failure(self, stage: str, error: BaseException) -> None:
        self._sink.emit(TelemetryLevel.ERROR, TelemetryCategory.AUTH, "Login failed",
                        {"stage": stage, "error": _describe(error)})

    def logout(self, user_id: Optional[str]) -> None:
        self._sink.emit(TelemetryLevel.INFO, TelemetryCategory.AUTH, "User logged out",
                        {"userId": user_id or "unknown"})

    def state_change(self, event: str, user_id: Optional[str]) -> None:
        self._sink.emit(TelemetryLevel.DEBUG, TelemetryCategory.AUTH,
                        f"Auth state changed: {event}", {"event": event, "userId": user_id})

    def client_reset(self, reason: str) -> None:
        self._sink.emit(TelemetryLevel.WARN, TelemetryCategory.AUTH, "Provider client reset",
                        {"reason": reason})


class ProfileTelemetry:
    """``PROFILE`` category helpers."""

    def __init__(self, sink: Telemetry) -> None:
        self._sink = sink

    def load_attempt(self, auth_id: str, attempt: int = 0) -> None:
        self._sink.emit(TelemetryLevel.DEBUG, TelemetryCategory.PROFILE, "Loading profile",
                        {"userId": auth_id, "attempt": attempt})

    def load_success(self, auth_id: str, profile_id: Union[int, str], role: str) -> None:
        self._sink.emit(TelemetryLevel.INFO, TelemetryCategory.PROFILE, "Profile loaded",
                        {"userId": auth_id, "profileId": str(profile_id), "role": role})

    def load_failure(self, auth_id: Optional[str], error: BaseException) -> None:
        self._sink.emit(TelemetryLevel.ERROR, TelemetryCategory.PROFILE, "Profile load failed",
                        {"userId": auth_id, "error": _describe(error)})

    def load_retry(self, auth_id: str, attempt: int, max_retries: int, error: BaseException) -> None:
        self._sink.emit(TelemetryLevel.WARN, TelemetryCategory.PROFILE, "Profile load retry",
                        {"userId": auth_id, "attempt": attempt, "maxRetries": max_retries,
                         "error": _describe(error)})

    def load_skipped(self, auth_id: str, attempt: int) -> None:
        self._sink.emit(TelemetryLevel.WARN, TelemetryCategory.PROFILE,
                        "Profile load already in flight",
                        {"userId": auth_id, "attempt": attempt})

    def create_attempt(self, auth_id: str, email: str) -> None:
        self._sink.emit(TelemetryLevel.INFO, TelemetryCategory.PROFILE, "Creating profile",
                        {"userId": auth_id, "email": email})

    def create_success(self, auth_id: str, profile_id: Union[int, str], existed: bool) -> None:
        self._sink.emit(TelemetryLevel.INFO, TelemetryCategory.PROFILE, "Profile created",
                        {"userId": auth_id, "profileId": str(profile_id), "existed": existed})

    def create_failure(self, auth_id: str, error: BaseException) -> None:
        self._sink.emit(TelemetryLevel.ERROR, TelemetryCategory.PROFILE,
                        "Profile creation failed", {"userId": auth_id, "error": _describe(error)})

    def update_attempt(self, auth_id: str, fields: list[str]) -> None:
        self._sink.emit(TelemetryLevel.INFO, TelemetryCategory.PROFILE, "Updating profile",
                        {"userId": auth_id, "fields": fields})

    def update_success(self, auth_id: str) -> None:
        self._sink.emit(TelemetryLevel.INFO, TelemetryCategory.PROFILE, "Profile updated",
                        {"userId": auth_id})

    def update_failure(self, auth_id: str, error: BaseException) -> None:
        self._sink.emit(TelemetryLevel.ERROR, TelemetryCategory.PROFILE,
                        "Profile update failed", {"userId": auth_id, "error": _describe(error)})

    def incomplete(self, profile_id: Union[int, str], missing_fields: list[str]) -> None:
        self._sink.emit(TelemetryLevel.WARN, TelemetryCategory.PROFILE, "Profile incomplete",
                        {"profileId": str(profile_id), "missingFields": missing_fields})


class ErrorTelemetry:
    """``ERROR`` category helpers."""

    def __init__(self, sink: Telemetry) -> None:
        self._sink = sink

    def handled(self, error: BaseException, context: str, **details: str) -> None:
        self._sink.emit(TelemetryLevel.ERROR, TelemetryCategory.ERROR, _describe(error),
                        {"name": type(error).__name__, "context": context, **details})

    def unhandled(self, error: BaseException, context: str) -> None:
        self._sink.emit(TelemetryLevel.CRITICAL, TelemetryCategory.ERROR, _describe(error),
                        {"name": type(error).__name__, "context": context})


class PerfTelemetry:
    """``PERF`` category helpers."""

    def __init__(self, sink: Telemetry, slow_threshold_s: float) -> None:
        self._sink = sink
        self._slow_threshold_s = slow_threshold_s

    @contextmanager
    def measure(self, label: str) -> Iterator[None]:
        """Time the enclosed block, including when it raises."""
        started = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - started
            self._sink.emit(TelemetryLevel.DEBUG, TelemetryCategory.PERF, f"{label} completed",
                            {"label": label, "durationMs": round(duration * 1000, 2)})
            if duration > self._slow_threshold_s:
                self._sink.emit(TelemetryLevel.WARN, TelemetryCategory.PERF,
                                f"Slow operation: {label}",
                                {"operation": label, "durationMs": round(duration * 1000, 2),
                                 "thresholdMs": round(self._slow_threshold_s * 1000, 2)})
