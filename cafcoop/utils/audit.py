"""
Structured Audit Logging Utility.

Every profile state change is logged as a structured JSON object.
Provides a Pydantic-validated model and a single function for consistent
audit trail entries.  Persistence to the ``audit_logs`` table is handled
separately by :class:`cafcoop.repositories.audit_repository.AuditRepository`
and is always best-effort.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field

from cafcoop.logger import StructuredLogger

__all__ = ["AuditEvent", "log_audit_event"]

# Kept flat: nested structures should be modelled explicitly.
DetailValue = Union[str, int, float, bool, None]


class AuditEvent(BaseModel):
    """Schema-validated representation of a single audit trail entry."""

    action: str
    user_id: str
    metadata: dict[str, DetailValue] = Field(default_factory=dict)
    created_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
    )

    def to_row(self) -> dict[str, object]:
        """Row for the ``audit_logs`` table."""
        return {
            "action": self.action,
            "user_id": self.user_id,
            "metadata": {**self.metadata, "created_at": self.created_at},
        }


def log_audit_event(
    logger: StructuredLogger,
    action: str,
    user_id: str,
    metadata: Optional[dict[str, DetailValue]] = None,
) -> AuditEvent:
    """Log a structured JSON audit event and return it for persistence.

    Args:
        logger: The logger instance to write to.
        action: What happened (e.g. ``"profile_created"``).
        user_id: Auth identity the event concerns.
        metadata: Optional additional context (e.g. email, role).
    """
    event = AuditEvent(action=action, user_id=user_id, metadata=metadata or {})
    logger.info("AUDIT: %s", json.dumps(event.model_dump(), default=str))
    return event
