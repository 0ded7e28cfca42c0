"""
Provisioning Request Handler.

Framework-free server-side handler behind ``POST /api/auth/link-profile``.
It runs with the service-role client (bypassing row-level security) and
must never be reachable from code that ships to the client boundary.

Contract::

    POST {id_auth, email, nom?, prenom?, telephone?, role?}

    405  {ok: false, error}          method is not POST
    400  {ok: false, error}          id_auth or email missing
    200  {ok: true, profile, existed: true}   profile already linked
    201  {ok: true, profile, existed: false}  profile created
    409  {ok: false, error}          email already used by another identity
    500  {ok: false, error}          configuration or internal failure

The stored email is lower-cased.
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping, Optional

from pydantic import BaseModel, Field

from cafcoop.config import AppConfig
from cafcoop.errors import (
    CafcoopError,
    ConfigurationError,
    ConstraintViolation,
    InvalidArgument,
    ProvisionFailed,
)
from cafcoop.gateway import ProviderGateway
from cafcoop.logger import StructuredLogger
from cafcoop.models.profile import ProfileDefaults
from cafcoop.repositories.audit_repository import AuditRepository
from cafcoop.repositories.profile_repository import ProfileRepository
from cafcoop.services.base_service import BaseService
from cafcoop.services.provisioning import DirectProfileProvisioner, ProfileProvisioner


class EndpointResponse(BaseModel):
    """HTTP status code plus JSON body returned by the handler."""

    status_code: int
    payload: dict[str, object] = Field(default_factory=dict)


def _failure(status_code: int, error: str) -> EndpointResponse:
    return EndpointResponse(status_code=status_code, payload={"ok": False, "error": error})


class ProvisioningEndpoint(BaseService):
    """Create-or-fetch handler using the service-role datastore client.

    Parameters
    ----------
    config:
        Application configuration; the service-role key is read lazily
        on the first request so a missing key yields a 500 response
        rather than a startup crash.
    logger:
        Structured logger.
    provisioner_factory:
        Optional zero-argument callable returning the provisioner.  The
        default builds a :class:`DirectProfileProvisioner` over a
        service-role :class:`ProviderGateway`.
    """

    def __init__(
        self,
        config: AppConfig,
        logger: StructuredLogger,
        provisioner_factory: Optional[Callable[[], ProfileProvisioner]] = None,
    ) -> None:
        super().__init__(logger)
        self._config = config
        self._provisioner_factory = provisioner_factory or self._service_role_provisioner
        self._provisioner: Optional[ProfileProvisioner] = None

    def _service_role_provisioner(self) -> ProfileProvisioner:
        gateway = ProviderGateway.for_service_role(self._config, self._logger)
        return DirectProfileProvisioner(
            repo=ProfileRepository(gateway, self._logger, self._config.PROFILE_TABLE),
            logger=self._logger,
            audit_repo=AuditRepository(gateway, self._logger, self._config.AUDIT_TABLE),
        )

    async def handle(
        self, method: str, body: Optional[Mapping[str, object]],
    ) -> EndpointResponse:
        """Serve one request.  Never raises."""
        if method.upper() != "POST":
            return _failure(405, "Method not allowed")

        body = body or {}
        auth_id = str(body.get("id_auth") or "").strip()
        email = str(body.get("email") or "").strip()
        if not auth_id or not email:
            return _failure(400, "id_auth et email requis")

        try:
            if self._provisioner is None:
                self._provisioner = self._provisioner_factory()
        except ConfigurationError as exc:
            self._logger.error("Provisioning endpoint misconfigured: %s", exc.message)
            return _failure(500, "Configuration serveur incomplète")

        defaults = ProfileDefaults(
            nom=str(body.get("nom") or ""),
            prenom=str(body.get("prenom") or ""),
            telephone=str(body.get("telephone") or ""),
            role=str(body.get("role") or self._config.DEFAULT_PROFILE_ROLE),
        )

        try:
            result = await self._provisioner.provision(auth_id, email.lower(), defaults)
        except InvalidArgument as exc:
            return _failure(400, exc.message)
        except ProvisionFailed as exc:
            if isinstance(exc.original_error, ConstraintViolation):
                self._logger.warning("Duplicate email on link-profile for %s.", auth_id)
                return _failure(409, "Un profil avec cet email existe déjà")
            self._log_failure("link-profile", exc, logging.ERROR, auth_id=auth_id)
            return _failure(500, exc.message or "Échec création profil")
        except CafcoopError as exc:
            self._logger.error(
                "link-profile internal error for %s: %s", auth_id, exc.message,
                exc_info=True,
            )
            return _failure(500, "Erreur serveur interne")

        return EndpointResponse(
            status_code=200 if result.existed else 201,
            payload={
                "ok": True,
                "profile": result.profile.model_dump(mode="json", by_alias=True),
                "existed": result.existed,
            },
        )
