"""
Profile Loader Service.

Given an auth identity, returns its profile, provisioning one on first
login.  Encapsulates retry, timeout and de-duplication policy.

Policy:
    - Each lookup is raced against ``PROFILE_QUERY_TIMEOUT_S``.
    - A ``TransientNetworkError`` (timeout, severed request, transport
      failure) is retried after ``PROFILE_RETRY_DELAY_S``, at most
      ``PROFILE_MAX_RETRIES`` times.  Any other failure is terminal.
    - A lookup that finds no row provisions one through the injected
      :class:`ProfileProvisioner`, raced against ``PROVISION_TIMEOUT_S``.
    - A load for an ``(auth_id, attempt)`` pair already in flight, or
      settled less than ``DEDUP_WINDOW_S`` ago, is collapsed: the call
      returns ``None`` and callers must not treat that as "no profile".
"""

from __future__ import annotations

import asyncio
from typing import Optional

from cafcoop.config import AppConfig
from cafcoop.errors import (
    CafcoopError,
    InvalidArgument,
    ProfileCreateFailed,
    ProfileLoadFailed,
    TransientNetworkError,
)
from cafcoop.gateway import ProviderGateway
from cafcoop.logger import StructuredLogger
from cafcoop.models.profile import Profile, ProfileDefaults
from cafcoop.repositories.profile_repository import ProfileRepository
from cafcoop.services.base_service import BaseService
from cafcoop.services.provisioning import ProfileProvisioner
from cafcoop.telemetry import Telemetry
from cafcoop.utils.deadline import call_with_deadline
from cafcoop.utils.expiring_keys import ExpiringKeySet


class ProfileLoader(BaseService):
    """Resolve an auth identity to its profile, creating it when needed."""

    def __init__(
        self,
        repo: ProfileRepository,
        provisioner: ProfileProvisioner,
        gateway: ProviderGateway,
        telemetry: Telemetry,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        super().__init__(logger)
        self._repo = repo
        self._provisioner = provisioner
        self._gateway = gateway
        self._telemetry = telemetry

        self._query_timeout: float = config.PROFILE_QUERY_TIMEOUT_S
        self._provision_timeout: float = config.PROVISION_TIMEOUT_S
        self._max_retries: int = config.PROFILE_MAX_RETRIES
        self._retry_delay: float = config.PROFILE_RETRY_DELAY_S
        self._defaults = ProfileDefaults(role=config.DEFAULT_PROFILE_ROLE)
        self._in_flight: ExpiringKeySet[tuple[str, int]] = ExpiringKeySet(config.DEDUP_WINDOW_S)

    async def load(
        self, auth_id: str, attempt: int = 0, *, force: bool = False,
    ) -> Optional[Profile]:
        """Return the profile for *auth_id*.

        Args:
            auth_id: Auth identifier of the signed-in principal.
            attempt: Zero-based retry counter; callers pass ``0``.
            force: Bypass de-duplication.  Used by explicit refreshes,
                which must observe fresh data.

        Returns:
            The profile, or ``None`` when the load was collapsed into
            another one for the same identity.

        Raises:
            InvalidArgument: *auth_id* is empty.
            ProfileLoadFailed: Lookup failed after the retry budget.
            ProfileCreateFailed: Provisioning failed.
        """
        if not auth_id:
            error = InvalidArgument("Missing authUserId")
            self._telemetry.profile.load_failure(None, error)
            raise error

        key = (auth_id, attempt)
        if not self._in_flight.claim(key) and not force:
            self._telemetry.profile.load_skipped(auth_id, attempt)
            return None

        try:
            return await self._load_once(auth_id, attempt, force)
        finally:
            self._in_flight.release_later(key)

    def close(self) -> None:
        """Cancel pending de-duplication evictions."""
        self._in_flight.clear()

    # ------------------------------------------------------------------
    # Private implementation
    # ------------------------------------------------------------------

    async def _load_once(self, auth_id: str, attempt: int, force: bool) -> Optional[Profile]:
        self._telemetry.profile.load_attempt(auth_id, attempt)

        try:
            with self._telemetry.perf.measure("load_profile"):
                profile = await call_with_deadline(
                    self._repo.find_profile_by_auth_id(auth_id),
                    self._query_timeout,
                    "Profile query",
                )
        except TransientNetworkError as exc:
            if attempt < self._max_retries:
                self._telemetry.profile.load_retry(auth_id, attempt + 1, self._max_retries, exc)
                await asyncio.sleep(self._retry_delay)
                return await self.load(auth_id, attempt + 1, force=force)
            self._telemetry.profile.load_failure(auth_id, exc)
            raise ProfileLoadFailed(
                f"Erreur chargement profil: {exc.message}", original_error=exc,
            ) from exc
        except CafcoopError as exc:
            self._telemetry.profile.load_failure(auth_id, exc)
            raise ProfileLoadFailed(
                f"Erreur chargement profil: {exc.message}", original_error=exc,
            ) from exc

        if profile is None:
            return await self._provision(auth_id)

        self._telemetry.profile.load_success(auth_id, profile.profile_id, profile.role)
        if profile.is_incomplete:
            self._telemetry.profile.incomplete(profile.profile_id, profile.missing_identity_fields)
        return profile

    async def _provision(self, auth_id: str) -> Profile:
        try:
            email = await self._resolve_email(auth_id)
            self._telemetry.profile.create_attempt(auth_id, email)
            result = await call_with_deadline(
                self._provisioner.provision(auth_id, email, self._defaults),
                self._provision_timeout,
                "Profile provisioning",
            )
        except CafcoopError as exc:
            self._telemetry.profile.create_failure(auth_id, exc)
            raise ProfileCreateFailed(
                exc.message or "Échec création profil", original_error=exc,
            ) from exc

        self._telemetry.profile.create_success(auth_id, result.profile.profile_id, result.existed)
        return result.profile

    async def _resolve_email(self, auth_id: str) -> str:
        user = await call_with_deadline(
            self._gateway.get_user(), self._provision_timeout, "getUser",
        )
        if user is None or user.id != auth_id or not user.email:
            raise InvalidArgument("Email introuvable pour l'utilisateur connecté")
        return user.email
