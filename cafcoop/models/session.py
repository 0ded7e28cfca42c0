"""
Session Models.

Domain projections of the identity provider's session and of the
controller state handed to consumers.  The provider's own ``Session``
object never leaves ``ProviderGateway``; everything downstream sees
these read-only copies.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, SecretStr

from cafcoop.models.enums import ControllerPhase
from cafcoop.models.profile import Profile


class AuthUser(BaseModel):
    """The principal identified by a session."""

    id: str
    email: Optional[str] = None

    model_config = {"frozen": True}


class Session(BaseModel):
    """Read-only copy of a provider session.

    Attributes
    ----------
    user_id:
        Stable auth identifier of the principal.
    email:
        Email attached to the auth identity, when known.
    expires_at:
        Unix timestamp (seconds) when the access token expires.
    access_token / refresh_token:
        Opaque provider tokens, wrapped so they never reach logs.
    """

    user_id: str
    email: Optional[str] = None
    expires_at: Optional[int] = None
    access_token: SecretStr = SecretStr("")
    refresh_token: SecretStr = SecretStr("")

    model_config = {"frozen": True}

    @property
    def user(self) -> AuthUser:
        return AuthUser(id=self.user_id, email=self.email)


class ControllerState(BaseModel):
    """Immutable snapshot of the session controller, as seen by consumers."""

    phase: ControllerPhase = ControllerPhase.UNINITIALIZED
    session: Optional[Session] = None
    user: Optional[AuthUser] = None
    profile: Optional[Profile] = None
    loading: bool = True
    error: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    @property
    def needs_profile_completion(self) -> bool:
        """``True`` when a loaded profile still lacks name fields."""
        return self.profile is not None and self.profile.is_incomplete
