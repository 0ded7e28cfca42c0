from __future__ import annotations

"""
Data Models Package.

Re-exports all Pydantic models for short imports:
    from cafcoop.models import Profile, Session, ControllerState
    from cafcoop.models import AuthEventKind, ControllerPhase
"""

from cafcoop.models.enums import (
    AuthEventKind,
    ControllerPhase,
    ProfileStatus,
    TelemetryCategory,
    TelemetryLevel,
)
from cafcoop.models.profile import (
    DEFAULT_ROLE,
    Profile,
    ProfileDefaults,
    ProfileDraft,
    ProfileUpdate,
    ProvisionResult,
)
from cafcoop.models.session import AuthUser, ControllerState, Session

__all__ = [
    "AuthEventKind",
    "AuthUser",
    "ControllerPhase",
    "ControllerState",
    "DEFAULT_ROLE",
    "Profile",
    "ProfileDefaults",
    "ProfileDraft",
    "ProfileStatus",
    "ProfileUpdate",
    "ProvisionResult",
    "Session",
    "TelemetryCategory",
    "TelemetryLevel",
]
