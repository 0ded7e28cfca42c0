"""
Profile Model.

Pydantic models for the application-level profile stored in the
``utilisateurs`` table.  Python attribute names are English; the
storage column names of the original schema are kept as aliases so
that rows returned by PostgREST validate directly and
``model_dump(by_alias=True)`` produces insertable payloads.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field

from cafcoop.models.enums import ProfileStatus

DEFAULT_ROLE: str = "agriculteur"


class Profile(BaseModel):
    """A stored profile row.

    At most one row exists per ``auth_id``; the datastore enforces this
    with a unique constraint on ``id_auth``.
    """

    profile_id: Union[int, str] = Field(alias="id_utilisateur")
    auth_id: str = Field(alias="id_auth")
    email: str = ""
    nom: Optional[str] = ""
    prenom: Optional[str] = ""
    telephone: Optional[str] = ""
    role: str = DEFAULT_ROLE
    status: str = Field(default=ProfileStatus.ACTIVE, alias="statut")
    registered_at: Optional[datetime] = Field(default=None, alias="date_inscription")
    last_login_at: Optional[datetime] = Field(default=None, alias="derniere_connexion")

    model_config = {"populate_by_name": True, "from_attributes": True, "extra": "ignore"}

    @property
    def missing_identity_fields(self) -> list[str]:
        """Names of the human-identity fields that are still blank."""
        return [
            name for name in ("nom", "prenom")
            if not (getattr(self, name) or "").strip()
        ]

    @property
    def is_incomplete(self) -> bool:
        """UI hint: the user should be prompted to complete the profile.

        Advisory only.  An incomplete profile is a valid, loaded profile.
        """
        return bool(self.missing_identity_fields)


class ProfileDefaults(BaseModel):
    """Best-effort field values used when provisioning a new profile."""

    nom: str = ""
    prenom: str = ""
    telephone: str = ""
    role: str = DEFAULT_ROLE


class ProfileDraft(BaseModel):
    """Insert payload for a profile that does not exist yet."""

    auth_id: str = Field(alias="id_auth", min_length=1)
    email: str = Field(min_length=1)
    nom: str = ""
    prenom: str = ""
    telephone: str = ""
    role: str = DEFAULT_ROLE
    status: str = Field(default=ProfileStatus.ACTIVE, alias="statut")
    registered_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="date_inscription",
    )
    last_login_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="derniere_connexion",
    )

    model_config = {"populate_by_name": True}

    @classmethod
    def from_defaults(
        cls, auth_id: str, email: str, defaults: ProfileDefaults,
    ) -> "ProfileDraft":
        return cls(
            auth_id=auth_id,
            email=email,
            nom=defaults.nom,
            prenom=defaults.prenom,
            telephone=defaults.telephone,
            role=defaults.role,
        )

    def to_row(self) -> dict[str, str]:
        """Serialise to a JSON-safe row keyed by storage column names."""
        return self.model_dump(mode="json", by_alias=True)


class ProfileUpdate(BaseModel):
    """User-editable profile fields."""

    nom: str = ""
    prenom: str = ""
    telephone: str = ""

    def to_row(self) -> dict[str, str]:
        return {
            "nom": self.nom.strip(),
            "prenom": self.prenom.strip(),
            "telephone": self.telephone.strip(),
        }


class ProvisionResult(BaseModel):
    """Outcome of the create-or-fetch provisioning operation."""

    profile: Profile
    existed: bool
