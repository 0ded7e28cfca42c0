"""Shared utilities for the CAFCOOP session bootstrap layer.

This package provides convenience re-exports so that consumers can import
directly from ``cafcoop.utils`` (e.g. ``from cafcoop.utils import
race_with_deadline``) while full absolute imports remain supported.
"""

from cafcoop.utils.audit import AuditEvent, log_audit_event
from cafcoop.utils.deadline import (
    Completed,
    DeadlineResult,
    TimedOut,
    call_with_deadline,
    race_with_deadline,
)
from cafcoop.utils.expiring_keys import ExpiringKeySet

__all__ = [
    "AuditEvent",
    "Completed",
    "DeadlineResult",
    "ExpiringKeySet",
    "TimedOut",
    "call_with_deadline",
    "log_audit_event",
    "race_with_deadline",
]
