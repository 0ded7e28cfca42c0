"""
Repository Layer Package.

Provides data-access abstractions over the Supabase datastore.
All datastore operations flow through repositories; services never call
``gateway.get_client().table(...)`` directly.

Usage:
    from cafcoop.repositories.profile_repository import ProfileRepository
"""

from cafcoop.repositories.audit_repository import AuditRepository
from cafcoop.repositories.base_repository import BaseRepository
from cafcoop.repositories.profile_repository import ProfileRepository

__all__ = [
    "AuditRepository",
    "BaseRepository",
    "ProfileRepository",
]
