"""
Profile Repository.

Data access for the ``utilisateurs`` table, the application-level profile
keyed by the provider's auth identity (``id_auth``).  The table carries a
uniqueness constraint on ``id_auth`` (and on ``email``); an insert that
hits it raises :class:`ConstraintViolation`, which the provisioners treat
as "another writer won the race".
"""

from __future__ import annotations

from typing import Optional

from cafcoop.errors import ConstraintViolation, ProfileNotFound
from cafcoop.logger import StructuredLogger
from cafcoop.gateway import ProviderGateway
from cafcoop.models.profile import Profile, ProfileDraft, ProfileUpdate
from cafcoop.repositories.base_repository import BaseRepository


class ProfileRepository(BaseRepository):
    """Data access layer for :class:`Profile` rows.

    **No ``delete()`` method.**  Profiles are deactivated through their
    ``statut`` column; the auth identity outlives any single session.
    """

    TABLE = "utilisateurs"

    def __init__(
        self,
        gateway: ProviderGateway,
        logger: StructuredLogger,
        table: str = "",
    ) -> None:
        super().__init__(gateway, logger, table)

    async def find_profile_by_auth_id(self, auth_id: str) -> Optional[Profile]:
        """Fetch the profile linked to *auth_id*, or ``None`` when absent."""
        async def _query() -> Optional[Profile]:
            table = await self._table()
            response = await (
                table.select("*")
                .eq("id_auth", auth_id)
                .maybe_single()
                .execute()
            )
            if response is None or not response.data:
                return None
            return Profile.model_validate(response.data)

        return await self._execute(
            _query, operation_name=f"find_profile_by_auth_id ({self.TABLE})",
        )

    async def insert_profile(self, draft: ProfileDraft) -> Profile:
        """Insert a new profile row and return it as stored.

        Raises
        ------
        ConstraintViolation
            A row with the same ``id_auth`` (or email) already exists.
        """
        async def _insert() -> Profile:
            table = await self._table()
            response = await table.insert(draft.to_row()).execute()
            return Profile.model_validate(response.data[0])

        try:
            profile = await self._execute(
                _insert, operation_name=f"insert_profile ({self.TABLE})",
            )
        except ConstraintViolation:
            self._logger.info(
                "Profile insert for %s hit a uniqueness constraint.", draft.auth_id,
            )
            raise

        self._logger.info(
            "Inserted profile %s for auth identity %s.", profile.profile_id, draft.auth_id,
        )
        return profile

    async def update_profile(self, auth_id: str, update: ProfileUpdate) -> Profile:
        """Apply *update* to the profile linked to *auth_id*.

        Raises
        ------
        ProfileNotFound
            No row matched *auth_id*.
        """
        async def _update() -> list[dict]:
            table = await self._table()
            response = await (
                table.update(update.to_row())
                .eq("id_auth", auth_id)
                .execute()
            )
            return response.data

        rows = await self._execute(
            _update, operation_name=f"update_profile ({self.TABLE})",
        )
        if not rows:
            raise ProfileNotFound(f"Aucun profil pour l'identité {auth_id}")

        self._logger.info("Updated profile for auth identity %s.", auth_id)
        return Profile.model_validate(rows[0])
