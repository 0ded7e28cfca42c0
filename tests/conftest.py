"""Shared fixtures and in-memory fakes for the session bootstrap tests."""

from __future__ import annotations

import asyncio
import itertools
from typing import Callable, Optional

import pytest
import pytest_asyncio

from cafcoop.config import AppConfig
from cafcoop.errors import ConstraintViolation, ProfileNotFound
from cafcoop.logger import StructuredLogger
from cafcoop.models.enums import AuthEventKind
from cafcoop.models.profile import Profile, ProfileDraft, ProfileUpdate
from cafcoop.models.session import AuthUser, ControllerState, Session
from cafcoop.services.profile_loader import ProfileLoader
from cafcoop.services.provisioning import DirectProfileProvisioner
from cafcoop.services.session_controller import SessionController
from cafcoop.telemetry import Telemetry

# Returned by a scripted session pull to make it hang until released.
HANG = object()


def make_session(user_id: str = "auth-1", email: str = "awa@cafcoop.bf") -> Session:
    return Session(
        user_id=user_id,
        email=email,
        expires_at=1_900_000_000,
        access_token="access",
        refresh_token="refresh",
    )


def make_profile(
    auth_id: str = "auth-1",
    profile_id: int = 1,
    email: str = "awa@cafcoop.bf",
    nom: str = "Ouedraogo",
    prenom: str = "Awa",
) -> Profile:
    return Profile(
        profile_id=profile_id,
        auth_id=auth_id,
        email=email,
        nom=nom,
        prenom=prenom,
        role="agriculteur",
    )


async def wait_for_state(
    controller: SessionController,
    predicate: Callable[[ControllerState], bool],
    timeout: float = 1.0,
) -> ControllerState:
    """Poll the controller until *predicate* holds."""
    async def _poll() -> ControllerState:
        while not predicate(controller.state):
            await asyncio.sleep(0.005)
        return controller.state

    return await asyncio.wait_for(_poll(), timeout=timeout)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeGateway:
    """Stands in for ProviderGateway: scripted pulls plus a push emitter."""

    def __init__(self) -> None:
        self.session: Optional[Session] = None
        self.session_script: list[object] = []
        self.release = asyncio.Event()
        self.get_session_calls = 0
        self.resets = 0
        self.sign_out_calls = 0
        self._ids = itertools.count(1)
        self._handlers: dict[int, Callable[[AuthEventKind, Optional[Session]], None]] = {}

    async def get_session(self) -> Optional[Session]:
        self.get_session_calls += 1
        outcome: object = self.session
        if self.session_script:
            outcome = self.session_script.pop(0)
        if outcome is HANG:
            await self.release.wait()
            return self.session
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome  # type: ignore[return-value]

    async def get_user(self) -> Optional[AuthUser]:
        return self.session.user if self.session is not None else None

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        self.session = None

    def reset(self) -> None:
        self.resets += 1

    async def on_auth_state_change(
        self, handler: Callable[[AuthEventKind, Optional[Session]], None],
    ) -> Callable[[], None]:
        handler_id = next(self._ids)
        self._handlers[handler_id] = handler
        return lambda: self._handlers.pop(handler_id, None)

    @property
    def listener_count(self) -> int:
        return len(self._handlers)

    def emit(self, kind: AuthEventKind, session: Optional[Session] = None) -> None:
        for handler in list(self._handlers.values()):
            handler(kind, session)


class FakeProfileStore:
    """In-memory ``utilisateurs`` table with unique ``id_auth`` and ``email``."""

    def __init__(self) -> None:
        self.rows: dict[str, Profile] = {}
        self.lookups = 0
        self.inserts = 0
        self.lookup_failures: list[Exception] = []
        self.lookup_gate: Optional[asyncio.Event] = None
        self._next_id = itertools.count(1)

    def add(self, profile: Profile) -> None:
        self.rows[profile.auth_id] = profile

    async def find_profile_by_auth_id(self, auth_id: str) -> Optional[Profile]:
        self.lookups += 1
        if self.lookup_failures:
            raise self.lookup_failures.pop(0)
        if self.lookup_gate is not None:
            gate, self.lookup_gate = self.lookup_gate, None
            await gate.wait()
        await asyncio.sleep(0)
        return self.rows.get(auth_id)

    async def insert_profile(self, draft: ProfileDraft) -> Profile:
        self.inserts += 1
        # Yield so concurrent provisioners interleave between check and insert.
        await asyncio.sleep(0)
        if draft.auth_id in self.rows or any(
            row.email == draft.email for row in self.rows.values()
        ):
            raise ConstraintViolation("duplicate key value violates unique constraint", code="23505")
        profile = Profile(
            profile_id=next(self._next_id),
            auth_id=draft.auth_id,
            email=draft.email,
            nom=draft.nom,
            prenom=draft.prenom,
            telephone=draft.telephone,
            role=draft.role,
            status=draft.status,
            registered_at=draft.registered_at,
            last_login_at=draft.last_login_at,
        )
        self.rows[draft.auth_id] = profile
        return profile

    async def update_profile(self, auth_id: str, update: ProfileUpdate) -> Profile:
        current = self.rows.get(auth_id)
        if current is None:
            raise ProfileNotFound(f"Aucun profil pour l'identité {auth_id}")
        updated = current.model_copy(update=update.to_row())
        self.rows[auth_id] = updated
        return updated


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def logger(tmp_path_factory: pytest.TempPathFactory) -> StructuredLogger:
    log_file = tmp_path_factory.mktemp("logs") / "cafcoop-test.log"
    return StructuredLogger(name="cafcoop.tests", log_file=str(log_file))


def build_config(**overrides: object) -> AppConfig:
    settings: dict[str, object] = {
        "SUPABASE_URL": "https://cafcoop-test.supabase.co",
        "SUPABASE_ANON_KEY": "anon-key",
        "SUPABASE_SERVICE_ROLE_KEY": "service-key",
        "PROVISIONING_MODE": "direct",
        "SESSION_TIMEOUT_S": 0.2,
        "PROFILE_QUERY_TIMEOUT_S": 0.2,
        "PROVISION_TIMEOUT_S": 0.2,
        "PROFILE_MAX_RETRIES": 2,
        "PROFILE_RETRY_DELAY_S": 0.01,
        "DEDUP_WINDOW_S": 0.3,
        "INIT_SAFETY_TIMEOUT_S": 1.0,
        "POLL_INTERVAL_S": 0.02,
        "POLL_MAX_ATTEMPTS": 3,
    }
    settings.update(overrides)
    return AppConfig(_env_file=None, **settings)


@pytest.fixture
def config() -> AppConfig:
    return build_config()


@pytest.fixture
def telemetry(logger: StructuredLogger) -> Telemetry:
    return Telemetry(logger=logger, buffer_size=500)


@pytest_asyncio.fixture
async def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def store() -> FakeProfileStore:
    return FakeProfileStore()


@pytest.fixture
def provisioner(store: FakeProfileStore, logger: StructuredLogger) -> DirectProfileProvisioner:
    return DirectProfileProvisioner(repo=store, logger=logger)  # type: ignore[arg-type]


def build_loader(
    store: FakeProfileStore,
    gateway: FakeGateway,
    telemetry: Telemetry,
    config: AppConfig,
    logger: StructuredLogger,
    provisioner: Optional[object] = None,
) -> ProfileLoader:
    return ProfileLoader(
        repo=store,  # type: ignore[arg-type]
        provisioner=provisioner or DirectProfileProvisioner(repo=store, logger=logger),  # type: ignore[arg-type]
        gateway=gateway,  # type: ignore[arg-type]
        telemetry=telemetry,
        config=config,
        logger=logger,
    )


@pytest_asyncio.fixture
async def loader(
    store: FakeProfileStore,
    gateway: FakeGateway,
    telemetry: Telemetry,
    config: AppConfig,
    logger: StructuredLogger,
) -> ProfileLoader:
    profile_loader = build_loader(store, gateway, telemetry, config, logger)
    yield profile_loader
    profile_loader.close()
