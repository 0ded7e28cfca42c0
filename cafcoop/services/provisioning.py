"""
Profile Provisioning Service.

Create-or-fetch of the ``utilisateurs`` row linked to an auth identity.
Three interchangeable backends implement :class:`ProfileProvisioner`:

- :class:`DirectProfileProvisioner` talks to the datastore through
  :class:`ProfileRepository`.  Used by the server-side request handler
  (with the service-role client) and for direct client-side inserts.
- :class:`EndpointProfileProvisioner` POSTs to the link-profile route.
- :class:`EdgeFunctionProfileProvisioner` POSTs to the
  ``create-user-profile`` edge function with the public anon key.

Race handling:
    Two concurrent provisioners for the same identity both find no row
    and both insert.  The loser hits the unique constraint on
    ``id_auth``; it re-fetches and returns the winner's row with
    ``existed=True``.  If the re-fetch finds nothing the constraint was
    on another column (email) and provisioning fails.
"""

from __future__ import annotations

from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from cafcoop.config import AppConfig
from cafcoop.errors import (
    CafcoopError,
    ConstraintViolation,
    InvalidArgument,
    ProvisionFailed,
)
from cafcoop.logger import StructuredLogger
from cafcoop.models.profile import Profile, ProfileDefaults, ProfileDraft, ProvisionResult
from cafcoop.repositories.audit_repository import AuditRepository
from cafcoop.repositories.profile_repository import ProfileRepository
from cafcoop.services.base_service import BaseService
from cafcoop.utils.audit import log_audit_event


class ProfileProvisioner(Protocol):
    """Create-or-fetch contract shared by every provisioning backend."""

    async def provision(
        self, auth_id: str, email: str, defaults: ProfileDefaults,
    ) -> ProvisionResult:
        """Return the profile for *auth_id*, creating it when absent.

        Raises:
            InvalidArgument: *auth_id* or *email* is empty.
            ProvisionFailed: No profile could be produced.
        """
        ...


def _require_identity(auth_id: str, email: str) -> None:
    if not auth_id or not email:
        raise InvalidArgument("id_auth et email requis")


# ---------------------------------------------------------------------------
# Datastore-backed provisioner
# ---------------------------------------------------------------------------


class DirectProfileProvisioner(BaseService):
    """Provision through the datastore, recovering from insert races.

    Idempotent: calling ``provision`` any number of times, concurrently
    or not, leaves exactly one row for the identity and every call
    returns that row.
    """

    def __init__(
        self,
        repo: ProfileRepository,
        logger: StructuredLogger,
        audit_repo: Optional[AuditRepository] = None,
    ) -> None:
        super().__init__(logger)
        self._repo = repo
        self._audit_repo = audit_repo

    async def provision(
        self, auth_id: str, email: str, defaults: ProfileDefaults,
    ) -> ProvisionResult:
        _require_identity(auth_id, email)

        try:
            existing = await self._repo.find_profile_by_auth_id(auth_id)
        except CafcoopError as exc:
            raise ProvisionFailed("Erreur vérification profil", original_error=exc) from exc

        if existing is not None:
            self._logger.info(
                "Provisioning: profile %s already exists for %s.",
                existing.profile_id, auth_id,
            )
            return ProvisionResult(profile=existing, existed=True)

        draft = ProfileDraft.from_defaults(auth_id, email.strip().lower(), defaults)
        try:
            created = await self._repo.insert_profile(draft)
        except ConstraintViolation as exc:
            return await self._recover_from_race(auth_id, exc)
        except CafcoopError as exc:
            raise ProvisionFailed(
                exc.message or "Échec création profil", original_error=exc,
            ) from exc

        self._logger.info(
            "Provisioning: created profile %s for %s.", created.profile_id, auth_id,
        )
        await self._record_audit(created)
        return ProvisionResult(profile=created, existed=False)

    # ------------------------------------------------------------------
    # Private implementation
    # ------------------------------------------------------------------

    async def _recover_from_race(
        self, auth_id: str, violation: ConstraintViolation,
    ) -> ProvisionResult:
        self._logger.warning(
            "Provisioning: race detected for %s, re-fetching. Error: %s",
            auth_id, violation.message,
        )
        try:
            winner = await self._repo.find_profile_by_auth_id(auth_id)
        except CafcoopError as exc:
            raise ProvisionFailed("Erreur vérification profil", original_error=exc) from exc

        if winner is None:
            raise ProvisionFailed(
                "Un profil avec cet email existe déjà", original_error=violation,
            )

        self._logger.info("Provisioning: profile for %s found after race.", auth_id)
        return ProvisionResult(profile=winner, existed=True)

    async def _record_audit(self, profile: Profile) -> None:
        event = log_audit_event(
            logger=self._logger,
            action="profile_created",
            user_id=profile.auth_id,
            metadata={"email": profile.email, "role": profile.role},
        )
        if self._audit_repo is None:
            return
        try:
            await self._audit_repo.insert_audit(event)
        except CafcoopError as exc:
            # Audit persistence never blocks provisioning.
            self._log_failure("Audit log insert", exc, auth_id=profile.auth_id)


# ---------------------------------------------------------------------------
# HTTP provisioners
# ---------------------------------------------------------------------------


class EndpointProfileProvisioner(BaseService):
    """Provision by POSTing to the server-side link-profile route.

    The route answers ``{ok: true, profile|user, existed?}`` with status
    200 (existing) or 201 (created), and ``{ok: false, error}`` otherwise.
    """

    def __init__(
        self,
        url: str,
        logger: StructuredLogger,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(logger)
        self._url = url
        self._timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def provision(
        self, auth_id: str, email: str, defaults: ProfileDefaults,
    ) -> ProvisionResult:
        _require_identity(auth_id, email)
        body = {
            "id_auth": auth_id,
            "email": email,
            "nom": defaults.nom,
            "prenom": defaults.prenom,
            "telephone": defaults.telephone,
            "role": defaults.role,
        }

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport,
            ) as client:
                response = await client.post(self._url, json=body, headers=self._headers())
        except httpx.HTTPError as exc:
            self._logger.error("Provisioning request to %s failed: %s", self._url, exc)
            raise ProvisionFailed(
                f"Appel provisioning impossible: {exc}", original_error=exc,
            ) from exc

        return self._parse(response)

    def _parse(self, response: httpx.Response) -> ProvisionResult:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProvisionFailed(
                f"Réponse provisioning invalide (HTTP {response.status_code})",
                original_error=exc,
            ) from exc

        if not isinstance(payload, dict):
            raise ProvisionFailed(
                f"Réponse provisioning invalide (HTTP {response.status_code})",
            )

        if not response.is_success or not payload.get("ok"):
            message = payload.get("error") or f"Échec création profil (HTTP {response.status_code})"
            self._logger.warning("Provisioning rejected: %s", message)
            raise ProvisionFailed(str(message))

        row = payload.get("profile") or payload.get("user")
        if not row:
            raise ProvisionFailed("Réponse provisioning sans profil")

        try:
            profile = Profile.model_validate(row)
        except ValidationError as exc:
            raise ProvisionFailed(
                "Profil retourné invalide", original_error=exc,
            ) from exc

        existed = bool(payload.get("existed", response.status_code == 200))
        return ProvisionResult(profile=profile, existed=existed)


class EdgeFunctionProfileProvisioner(EndpointProfileProvisioner):
    """Provision through the ``create-user-profile`` edge function."""

    def __init__(
        self,
        url: str,
        anon_key: str,
        logger: StructuredLogger,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(url, logger, timeout=timeout, transport=transport)
        self._anon_key = anon_key

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._anon_key}",
            "apikey": self._anon_key,
        }


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_provisioner(
    config: AppConfig,
    logger: StructuredLogger,
    repo: Optional[ProfileRepository] = None,
    audit_repo: Optional[AuditRepository] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProfileProvisioner:
    """Select the provisioning backend named by ``PROVISIONING_MODE``.

    Raises:
        ConfigurationError: ``edge_function`` mode without URL/anon key.
        ValueError: ``direct`` mode without a repository.
    """
    mode = config.PROVISIONING_MODE

    if mode == "direct":
        if repo is None:
            raise ValueError("direct provisioning requires a ProfileRepository")
        return DirectProfileProvisioner(repo=repo, logger=logger, audit_repo=audit_repo)

    if mode == "edge_function":
        _, anon_key = config.require_client_credentials()
        return EdgeFunctionProfileProvisioner(
            url=config.edge_function_url,
            anon_key=anon_key,
            logger=logger,
            timeout=config.PROVISION_TIMEOUT_S,
            transport=transport,
        )

    return EndpointProfileProvisioner(
        url=config.PROVISIONING_ENDPOINT_URL,
        logger=logger,
        timeout=config.PROVISION_TIMEOUT_S,
        transport=transport,
    )
