"""
Profile Service.

User-initiated edits to the signed-in user's profile (name and phone).
Role, status and identity columns are never writable from here.
"""

from __future__ import annotations

import re

from cafcoop.errors import CafcoopError, InvalidArgument
from cafcoop.logger import StructuredLogger
from cafcoop.models.profile import Profile, ProfileUpdate
from cafcoop.repositories.profile_repository import ProfileRepository
from cafcoop.services.base_service import BaseService
from cafcoop.telemetry import Telemetry

_MAX_FIELD_LENGTH: int = 100

# Control characters are rejected in every editable field.
_CONTROL_CHARS_RE: re.Pattern[str] = re.compile(r"[\x00-\x1f\x7f]")


class ProfileService(BaseService):
    """Validate and persist profile edits."""

    def __init__(
        self,
        repo: ProfileRepository,
        telemetry: Telemetry,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._repo = repo
        self._telemetry = telemetry

    async def update_fields(self, auth_id: str, update: ProfileUpdate) -> Profile:
        """Persist *update* for *auth_id* and return the stored profile.

        Raises:
            InvalidArgument: Empty *auth_id* or a malformed field.
            CafcoopError: The datastore rejected the update.
        """
        if not auth_id:
            raise InvalidArgument("Missing authUserId")

        row = update.to_row()
        self._telemetry.profile.update_attempt(auth_id, sorted(row))

        try:
            self._validate(row)
            profile = await self._repo.update_profile(auth_id, update)
        except CafcoopError as exc:
            self._telemetry.profile.update_failure(auth_id, exc)
            raise

        self._telemetry.profile.update_success(auth_id)
        return profile

    @staticmethod
    def _validate(row: dict[str, str]) -> None:
        for name, value in row.items():
            if len(value) > _MAX_FIELD_LENGTH:
                raise InvalidArgument(f"Champ {name} trop long ({_MAX_FIELD_LENGTH} max)")
            if _CONTROL_CHARS_RE.search(value):
                raise InvalidArgument(f"Champ {name} contient des caractères invalides")
