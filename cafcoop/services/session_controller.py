"""
Session Controller.

Reconciles the provider session with the application profile and
exposes the result to consumers as immutable :class:`ControllerState`
snapshots.

State machine::

    UNINITIALIZED -> INITIALIZING
    INITIALIZING  -> UNAUTHENTICATED | PROFILE_LOADING
    PROFILE_LOADING -> PROFILE_READY | PROFILE_ERROR
    any -> UNAUTHENTICATED   on session-terminated
    any -> PROFILE_LOADING   on session-established
    any -> TORN_DOWN         on close()

Two paths feed the machine: the initialization *pull* (read the current
session once, then load its profile) and the provider's *push*
notifications.  They may overlap.  Every asynchronous chain captures the
generation counter when it starts; a result whose generation no longer
matches is discarded.  The generation advances when the session ends or
a different principal signs in.  After :meth:`SessionController.close`
no state mutation happens at all.

Usage::

    controller = SessionController(gateway, loader, telemetry, config, logger)
    unsubscribe = controller.subscribe(lambda state: print(state.phase))
    await controller.initialize()
    ...
    controller.close()
"""

from __future__ import annotations

import asyncio
import itertools
from collections import Counter
from typing import Callable, Coroutine, Optional

from cafcoop.config import AppConfig
from cafcoop.errors import (
    CafcoopError,
    InitializationTimeout,
    InvalidArgument,
    TransientKind,
    TransientNetworkError,
)
from cafcoop.gateway import ProviderGateway
from cafcoop.logger import StructuredLogger
from cafcoop.models.enums import AuthEventKind, ControllerPhase
from cafcoop.models.profile import Profile, ProfileUpdate
from cafcoop.models.session import ControllerState, Session
from cafcoop.services.base_service import BaseService
from cafcoop.services.profile_loader import ProfileLoader
from cafcoop.services.profile_poller import ProfilePoller
from cafcoop.services.profile_service import ProfileService
from cafcoop.telemetry import Telemetry
from cafcoop.utils.deadline import call_with_deadline

StateListener = Callable[[ControllerState], None]

POLL_EXHAUSTED_MESSAGE: str = "Impossible de charger le profil. Réessayez."
INIT_TIMEOUT_MESSAGE: str = "Timeout initialisation auth"


class SessionController(BaseService):
    """Owns the session/profile state for one consumer boundary.

    Parameters
    ----------
    gateway:
        Provider gateway (client-side, anon key).
    loader:
        Profile loader shared by the pull, push and refresh paths.
    telemetry:
        Event sink for every transition.
    config:
        Timeouts and polling policy.
    logger:
        Structured logger.
    profile_service:
        Optional; required only by :meth:`update_profile`.
    enable_polling:
        Start a :class:`ProfilePoller` during initialization.
    """

    def __init__(
        self,
        gateway: ProviderGateway,
        loader: ProfileLoader,
        telemetry: Telemetry,
        config: AppConfig,
        logger: StructuredLogger,
        profile_service: Optional[ProfileService] = None,
        enable_polling: bool = False,
    ) -> None:
        super().__init__(logger)
        self._gateway = gateway
        self._loader = loader
        self._telemetry = telemetry
        self._profile_service = profile_service

        self._session_timeout: float = config.SESSION_TIMEOUT_S
        self._safety_timeout: float = config.INIT_SAFETY_TIMEOUT_S

        self._state = ControllerState()
        self._listener_ids = itertools.count(1)
        self._listeners: dict[int, StateListener] = {}

        self._alive: bool = True
        self._init_started: bool = False
        self._init_finished = asyncio.Event()
        self._safety_timer: Optional[asyncio.TimerHandle] = None
        self._unsubscribe_push: Optional[Callable[[], None]] = None
        self._tasks: set[asyncio.Task[None]] = set()

        self._generation: int = 0
        self._inflight_loads: Counter[int] = Counter()

        self._poller: Optional[ProfilePoller] = None
        if enable_polling:
            self._poller = ProfilePoller(
                loader=loader,
                target=self._poll_target,
                on_profile=self._on_polled_profile,
                on_exhausted=self._on_poll_exhausted,
                logger=logger,
                interval_s=config.POLL_INTERVAL_S,
                max_attempts=config.POLL_MAX_ATTEMPTS,
            )

    # ------------------------------------------------------------------
    # Consumer surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> ControllerState:
        """Current immutable snapshot."""
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call *listener* with every new snapshot.  Returns an unsubscribe."""
        listener_id = next(self._listener_ids)
        self._listeners[listener_id] = listener

        def _unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return _unsubscribe

    async def initialize(self) -> None:
        """Run the initialization pull and attach the push listener.

        Only the first call does anything.  Returns once the pull chain
        settled or the safety timeout fired, whichever comes first.
        """
        if self._init_started or not self._alive:
            self._logger.debug("Session controller already initialized; skipping.")
            await self._init_finished.wait()
            return
        self._init_started = True

        self._set_state(phase=ControllerPhase.INITIALIZING, loading=True, error=None)
        self._telemetry.auth.state_change("INIT", None)
        self._safety_timer = asyncio.get_running_loop().call_later(
            self._safety_timeout, self._on_initialization_deadline,
        )

        try:
            self._unsubscribe_push = await self._gateway.on_auth_state_change(self._on_auth_event)
        except CafcoopError as exc:
            # The pull below reports the same failure into the state.
            self._telemetry.error.handled(exc, "onAuthStateChange")

        if self._poller is not None:
            self._poller.start()

        self._spawn(self._run_initialization(self._generation))
        await self._init_finished.wait()

    async def refresh_profile(self) -> None:
        """Reload the profile of the current user, bypassing de-duplication."""
        if not self._alive:
            return
        user = self._state.user
        if user is None:
            error = InvalidArgument("No user to refresh")
            self._telemetry.profile.load_failure(None, error)
            return

        self._set_state(phase=ControllerPhase.PROFILE_LOADING, loading=True)
        await self._load_profile_into_state(
            user.id, self._generation, "refreshProfile", force=True,
        )

    async def update_profile(self, update: ProfileUpdate) -> bool:
        """Persist profile edits for the current user, then refresh.

        Returns ``False`` (with the failure recorded in telemetry) when
        there is no user or the datastore rejected the update.
        """
        if self._profile_service is None:
            raise RuntimeError("update_profile requires a ProfileService")
        user = self._state.user
        if not self._alive or user is None:
            return False

        try:
            await self._profile_service.update_fields(user.id, update)
        except CafcoopError as exc:
            self._telemetry.error.handled(exc, "updateProfile", userId=user.id)
            return False

        await self.refresh_profile()
        return True

    async def sign_out(self) -> None:
        """End the provider session and clear local state."""
        try:
            await self._gateway.sign_out()
        except CafcoopError as exc:
            self._telemetry.error.handled(exc, "signOut")
            self._set_state(error=exc.message)
            return
        self._handle_session_terminated()

    def close(self) -> None:
        """Tear down: stop timers, detach listeners, freeze the state."""
        if not self._alive:
            return

        if self._safety_timer is not None:
            self._safety_timer.cancel()
            self._safety_timer = None
        if self._poller is not None:
            self._poller.stop()
        if self._unsubscribe_push is not None:
            self._unsubscribe_push()
            self._unsubscribe_push = None
        self._loader.close()

        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        self._set_state(phase=ControllerPhase.TORN_DOWN, loading=False)
        self._alive = False
        self._listeners.clear()
        self._init_finished.set()
        self._logger.info("Session controller closed.")

    # ------------------------------------------------------------------
    # Initialization pull
    # ------------------------------------------------------------------

    async def _run_initialization(self, generation: int) -> None:
        try:
            with self._telemetry.perf.measure("init_auth"):
                await self._initialize_session(generation)
        finally:
            self._finish_initialization()

    async def _initialize_session(self, generation: int) -> None:
        try:
            session = await self._pull_session()
        except CafcoopError as exc:
            self._telemetry.error.handled(exc, "initAuth")
            if self._is_current(generation):
                self._set_state(
                    phase=ControllerPhase.UNAUTHENTICATED,
                    loading=False,
                    error=exc.message or "Erreur initialisation auth",
                )
            return

        if not self._is_current(generation):
            self._logger.debug("Discarding stale session pull (generation %d).", generation)
            return

        if session is None:
            self._telemetry.auth.state_change("NO_SESSION", None)
            self._set_state(
                phase=ControllerPhase.UNAUTHENTICATED,
                session=None, user=None, profile=None, loading=False,
            )
            return

        self._telemetry.auth.session_start(session.user_id, session.email)
        self._set_state(
            phase=ControllerPhase.PROFILE_LOADING,
            session=session, user=session.user, loading=True,
        )
        await self._load_profile_into_state(session.user_id, generation, "initAuth")

    async def _pull_session(self) -> Optional[Session]:
        """Read the session, resetting the client once on a severed call."""
        try:
            return await call_with_deadline(
                self._gateway.get_session(), self._session_timeout, "getSession",
            )
        except TransientNetworkError as exc:
            if exc.kind not in (TransientKind.TIMEOUT, TransientKind.ABORTED):
                self._telemetry.auth.failure("session-check", exc)
                raise
            self._telemetry.auth.client_reset(exc.message)
            self._gateway.reset()

        try:
            return await call_with_deadline(
                self._gateway.get_session(), self._session_timeout, "getSession retry",
            )
        except CafcoopError as exc:
            self._telemetry.auth.failure("session-retry", exc)
            raise

    def _finish_initialization(self) -> None:
        if self._safety_timer is not None:
            self._safety_timer.cancel()
            self._safety_timer = None
        self._init_finished.set()

    def _on_initialization_deadline(self) -> None:
        self._safety_timer = None
        if not self._alive or self._init_finished.is_set():
            return

        error = InitializationTimeout(INIT_TIMEOUT_MESSAGE)
        self._telemetry.error.handled(error, "initAuth")
        phase = (
            ControllerPhase.PROFILE_ERROR
            if self._state.session is not None
            else ControllerPhase.UNAUTHENTICATED
        )
        self._set_state(phase=phase, loading=False, error=error.message)
        self._init_finished.set()

    # ------------------------------------------------------------------
    # Push notifications
    # ------------------------------------------------------------------

    def _on_auth_event(self, kind: AuthEventKind, session: Optional[Session]) -> None:
        self._telemetry.auth.state_change(kind, session.user_id if session else None)
        if not self._alive:
            return

        if kind is AuthEventKind.SESSION_ESTABLISHED and session is not None:
            self._spawn(self._handle_session_established(session))
        elif kind is AuthEventKind.SESSION_TERMINATED:
            self._handle_session_terminated()
        elif session is not None and self._state.user is not None \
                and session.user_id == self._state.user.id:
            # token-refreshed / user-updated: same principal, new tokens.
            self._set_state(session=session, user=session.user)

    async def _handle_session_established(self, session: Session) -> None:
        self._telemetry.auth.login_success(session.user_id, session.email, "session")

        previous = self._state.user
        same_principal = previous is not None and previous.id == session.user_id
        if not same_principal:
            self._generation += 1
        generation = self._generation

        self._set_state(
            phase=ControllerPhase.PROFILE_LOADING,
            session=session,
            user=session.user,
            profile=self._state.profile if same_principal else None,
            loading=True,
        )
        await self._load_profile_into_state(
            session.user_id, generation, "onAuthStateChange-SIGNED_IN",
        )

    def _handle_session_terminated(self) -> None:
        user = self._state.user
        if user is not None:
            self._telemetry.auth.logout(user.id)
        self._generation += 1
        self._set_state(
            phase=ControllerPhase.UNAUTHENTICATED,
            session=None, user=None, profile=None, error=None, loading=False,
        )

    # ------------------------------------------------------------------
    # Profile loading
    # ------------------------------------------------------------------

    async def _load_profile_into_state(
        self, auth_id: str, generation: int, context: str, *, force: bool = False,
    ) -> None:
        self._inflight_loads[generation] += 1
        try:
            profile = await self._loader.load(auth_id, force=force)
        except CafcoopError as exc:
            self._telemetry.error.handled(exc, context, userId=auth_id)
            if self._is_current(generation):
                self._set_state(
                    phase=ControllerPhase.PROFILE_ERROR,
                    loading=False,
                    error=exc.message or "Erreur chargement profil",
                )
            return
        finally:
            self._inflight_loads[generation] -= 1
            if self._inflight_loads[generation] <= 0:
                del self._inflight_loads[generation]

        if not self._is_current(generation):
            self._logger.debug("Discarding stale profile for %s (%s).", auth_id, context)
            return

        if profile is None:
            await self._settle_collapsed_load(auth_id, generation, context)
            return

        self._set_state(
            phase=ControllerPhase.PROFILE_READY, profile=profile, error=None, loading=False,
        )

    async def _settle_collapsed_load(self, auth_id: str, generation: int, context: str) -> None:
        if self._inflight_loads[generation] > 0:
            # A sibling chain of this generation will settle the state.
            return
        current = self._state.profile
        if current is not None and current.auth_id == auth_id:
            self._set_state(phase=ControllerPhase.PROFILE_READY, loading=False)
            return
        # The load we collapsed into belongs to a superseded generation.
        await self._load_profile_into_state(auth_id, generation, context, force=True)

    # ------------------------------------------------------------------
    # Polling callbacks
    # ------------------------------------------------------------------

    def _poll_target(self) -> Optional[str]:
        state = self._state
        if not self._alive or state.user is None or state.profile is not None or not state.loading:
            return None
        return state.user.id

    def _on_polled_profile(self, profile: Profile) -> None:
        user = self._state.user
        if user is None or user.id != profile.auth_id:
            return
        self._set_state(
            phase=ControllerPhase.PROFILE_READY, profile=profile, error=None, loading=False,
        )

    def _on_poll_exhausted(self) -> None:
        if self._poll_target() is None:
            return
        self._set_state(
            phase=ControllerPhase.PROFILE_ERROR, loading=False, error=POLL_EXHAUSTED_MESSAGE,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return self._alive and generation == self._generation

    def _set_state(self, **changes: object) -> None:
        if not self._alive:
            return
        new_state = self._state.model_copy(update=changes)
        if new_state == self._state:
            return
        self._state = new_state
        if new_state.profile is not None and self._poller is not None and self._poller.running:
            self._poller.stop()
        for listener in list(self._listeners.values()):
            try:
                listener(new_state)
            except Exception as exc:
                self._telemetry.error.handled(exc, "stateListener")

    def _spawn(self, coro: Coroutine[object, object, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._telemetry.error.unhandled(exc, "sessionController")
