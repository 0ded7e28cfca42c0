"""
Business Logic Services Package.

Services depend on the Repository layer for data access and on the
ProviderGateway for identity.

The ``create_services()`` factory wires every repository and service
together, returning a typed dict that the application layer can consume
without knowing the internal dependency graph.
"""

from __future__ import annotations

from typing import Optional, TypedDict

import httpx

from cafcoop.config import AppConfig
from cafcoop.gateway import ProviderGateway
from cafcoop.logger import get_logger
from cafcoop.repositories.audit_repository import AuditRepository
from cafcoop.repositories.profile_repository import ProfileRepository
from cafcoop.services.profile_loader import ProfileLoader
from cafcoop.services.profile_service import ProfileService
from cafcoop.services.provisioning import ProfileProvisioner, build_provisioner
from cafcoop.services.session_controller import SessionController
from cafcoop.telemetry import Telemetry


class ServiceContainer(TypedDict):
    """Typed container for the session bootstrap services."""

    telemetry: Telemetry
    profile_repository: ProfileRepository
    provisioner: ProfileProvisioner
    profile_loader: ProfileLoader
    profile_service: ProfileService
    session_controller: SessionController


def create_services(
    gateway: ProviderGateway,
    config: AppConfig,
    telemetry: Optional[Telemetry] = None,
    enable_polling: bool = False,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ServiceContainer:
    """
    Wire all repositories and services together.

    This is the single composition root for the service layer.  The
    application entry-point calls this once at startup.

    Args:
        gateway: Client-side ProviderGateway (anon key).
        config: Application configuration (injected into services that need it).
        telemetry: Optional shared telemetry sink; one is created if omitted.
        enable_polling: Start the profile polling fallback on initialize.
        transport: Optional httpx transport for the HTTP provisioners.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("cafcoop.services")
    if telemetry is None:
        telemetry = Telemetry(
            logger=get_logger("cafcoop.telemetry"),
            buffer_size=config.TELEMETRY_BUFFER_SIZE,
            slow_threshold_s=config.SLOW_OPERATION_THRESHOLD_S,
        )

    # ------------------------------------------------------------------
    # 1. Repositories (data-access layer)
    # ------------------------------------------------------------------
    profile_repo = ProfileRepository(gateway=gateway, logger=logger, table=config.PROFILE_TABLE)
    audit_repo = AuditRepository(gateway=gateway, logger=logger, table=config.AUDIT_TABLE)

    # ------------------------------------------------------------------
    # 2. Leaf services
    # ------------------------------------------------------------------
    provisioner = build_provisioner(
        config=config,
        logger=logger,
        repo=profile_repo,
        audit_repo=audit_repo,
        transport=transport,
    )
    profile_service = ProfileService(repo=profile_repo, telemetry=telemetry, logger=logger)

    # ------------------------------------------------------------------
    # 3. Orchestration services
    # ------------------------------------------------------------------
    profile_loader = ProfileLoader(
        repo=profile_repo,
        provisioner=provisioner,
        gateway=gateway,
        telemetry=telemetry,
        config=config,
        logger=logger,
    )
    session_controller = SessionController(
        gateway=gateway,
        loader=profile_loader,
        telemetry=telemetry,
        config=config,
        logger=logger,
        profile_service=profile_service,
        enable_polling=enable_polling,
    )

    return ServiceContainer(
        telemetry=telemetry,
        profile_repository=profile_repo,
        provisioner=provisioner,
        profile_loader=profile_loader,
        profile_service=profile_service,
        session_controller=session_controller,
    )
