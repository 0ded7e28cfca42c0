"""
Shared Enumerations for CAFCOOP Models.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents,
so stored values like ``'actif'`` compare directly against members.
"""

from __future__ import annotations
from enum import StrEnum


class ProfileStatus(StrEnum):
    """Lifecycle status stored in ``utilisateurs.statut``."""

    ACTIVE = "actif"
    INACTIVE = "inactif"


class AuthEventKind(StrEnum):
    """Push notifications delivered by the identity provider.

    Provider event names (``SIGNED_IN``, ``SIGNED_OUT``...) are mapped
    onto these kinds by ``ProviderGateway`` so the controller never
    depends on the provider's vocabulary.
    """

    SESSION_ESTABLISHED = "session-established"
    SESSION_TERMINATED = "session-terminated"
    TOKEN_REFRESHED = "token-refreshed"
    USER_UPDATED = "user-updated"


class ControllerPhase(StrEnum):
    """States of the session-to-profile reconciliation machine."""

    UNINITIALIZED = "UNINITIALIZED"
    INITIALIZING = "INITIALIZING"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    PROFILE_LOADING = "PROFILE_LOADING"
    PROFILE_READY = "PROFILE_READY"
    PROFILE_ERROR = "PROFILE_ERROR"
    TORN_DOWN = "TORN_DOWN"


class TelemetryLevel(StrEnum):
    """Severity of a telemetry event, ordered by priority."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class TelemetryCategory(StrEnum):
    """Telemetry channels emitted by the bootstrap layer."""

    AUTH = "AUTH"
    PROFILE = "PROFILE"
    ERROR = "ERROR"
    PERF = "PERF"
