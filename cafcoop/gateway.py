"""
Provider Gateway.

Thin capability wrapper around the Supabase identity + data provider.

- Lazily constructs **one** async Supabase client per gateway and caches
  it until :meth:`ProviderGateway.reset` discards it.
- Translates provider sessions/users into the domain models in
  ``cafcoop.models.session`` and provider exceptions into the error
  taxonomy in ``cafcoop.errors``.
- Owns the push subscription bridge: listeners registered through
  :meth:`ProviderGateway.on_auth_state_change` survive a reset and are
  re-attached to the rebuilt client.

Reset is the recovery action after a session pull fails with a severed
in-flight request.  Rebuilding the client (and dropping the client-side
token storage) avoids wedging on a half-torn-down transport.  Reset is
safe while other calls are in flight: those calls keep their reference
to the old client and rely on their caller's retry policy.

Usage (dependency injection at startup)::

    from cafcoop.gateway import ProviderGateway
    from cafcoop.logger import StructuredLogger

    gateway = ProviderGateway.from_config(
        config, logger=StructuredLogger(name="cafcoop.gateway"),
    )
    session = await gateway.get_session()
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Awaitable, Callable, Optional

from supabase import AsyncClient, AsyncClientOptions, acreate_client
from supabase_auth import AsyncMemoryStorage
from supabase_auth.errors import AuthSessionMissingError

from cafcoop.config import AppConfig
from cafcoop.errors import ConfigurationError, classify_provider_error
from cafcoop.logger import StructuredLogger
from cafcoop.models.enums import AuthEventKind
from cafcoop.models.session import AuthUser, Session

AuthEventHandler = Callable[[AuthEventKind, Optional[Session]], None]
ClientFactory = Callable[[str, str, AsyncClientOptions], Awaitable[AsyncClient]]

# Provider event names mapped onto the push-notification kinds the
# controller understands.  Anything else is logged and ignored.
_PROVIDER_EVENTS: dict[str, AuthEventKind] = {
    "SIGNED_IN": AuthEventKind.SESSION_ESTABLISHED,
    "SIGNED_OUT": AuthEventKind.SESSION_TERMINATED,
    "USER_DELETED": AuthEventKind.SESSION_TERMINATED,
    "TOKEN_REFRESHED": AuthEventKind.TOKEN_REFRESHED,
    "USER_UPDATED": AuthEventKind.USER_UPDATED,
}


async def _default_client_factory(
    url: str, key: str, options: AsyncClientOptions,
) -> AsyncClient:
    return await acreate_client(url, key, options=options)


class ProviderGateway:
    """Owns the process-local Supabase client handle.

    Parameters
    ----------
    supabase_url:
        The Supabase project URL (e.g. ``https://xyz.supabase.co``).
    supabase_key:
        The anonymous key for client-side use, or the service-role key
        for server-side provisioning.  Never pass the service-role key
        to a gateway that serves the UI boundary.
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    persist_session:
        ``True`` for the client-side gateway (tokens kept in the
        gateway-owned storage), ``False`` for server-side use.
    client_factory:
        Coroutine building the client.  Defaults to ``acreate_client``.
    """

    def __init__(
        self,
        supabase_url: str,
        supabase_key: str,
        logger: StructuredLogger,
        persist_session: bool = True,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self._url: str = supabase_url
        self._key: str = supabase_key
        self._logger: StructuredLogger = logger
        self._persist_session: bool = persist_session
        self._client_factory: ClientFactory = client_factory or _default_client_factory

        self._client: Optional[AsyncClient] = None
        self._storage: AsyncMemoryStorage = AsyncMemoryStorage()
        self._build_lock: asyncio.Lock = asyncio.Lock()
        self._generation: int = 0

        self._listener_ids = itertools.count(1)
        self._listeners: dict[int, AuthEventHandler] = {}
        self._provider_subscriptions: dict[int, Callable[[], None]] = {}

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_config(cls, config: AppConfig, logger: StructuredLogger) -> "ProviderGateway":
        """Client-side gateway using the public anon key."""
        return cls(
            supabase_url=config.SUPABASE_URL,
            supabase_key=config.SUPABASE_ANON_KEY.get_secret_value(),
            logger=logger,
        )

    @classmethod
    def for_service_role(cls, config: AppConfig, logger: StructuredLogger) -> "ProviderGateway":
        """Server-side gateway that bypasses row-level security.

        Raises
        ------
        ConfigurationError
            If the URL or the service-role key is missing.
        """
        url, key = config.require_service_credentials()
        return cls(supabase_url=url, supabase_key=key, logger=logger, persist_session=False)

    # ------------------------------------------------------------------
    # Client lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        """``True`` when a client handle is currently cached."""
        return self._client is not None

    @property
    def generation(self) -> int:
        """Number of resets performed so far."""
        return self._generation

    async def get_client(self) -> AsyncClient:
        """Return the cached client, building it on first demand.

        Raises
        ------
        ConfigurationError
            If the URL or key is absent.  Never retried.
        """
        if self._client is not None:
            return self._client

        if not self._url or not self._key:
            raise ConfigurationError("SUPABASE_URL ou clé Supabase manquant")

        async with self._build_lock:
            while self._client is None:
                generation = self._generation
                options = AsyncClientOptions(
                    storage=self._storage,
                    persist_session=self._persist_session,
                    auto_refresh_token=self._persist_session,
                )
                try:
                    client = await self._client_factory(self._url, self._key, options)
                except (ValueError, TypeError) as exc:
                    self._logger.error("Supabase credential format error: %s", exc)
                    raise ConfigurationError(
                        f"Supabase client configuration rejected: {exc}", original_error=exc,
                    ) from exc
                if generation != self._generation:
                    # reset() ran during the build; the client holds discarded storage.
                    self._logger.warning(
                        "Discarding Supabase client built for generation %d.", generation,
                    )
                    continue
                self._client = client
                self._logger.info(
                    "Supabase client initialized (generation %d).", self._generation,
                )
                for listener_id in list(self._listeners):
                    self._attach(listener_id, client)
            return self._client

    def reset(self) -> None:
        """Discard the cached client and the client-side token storage.

        The next :meth:`get_client` call rebuilds both.  Registered push
        listeners are re-attached to the rebuilt client.
        """
        for unsubscribe in self._provider_subscriptions.values():
            unsubscribe()
        self._provider_subscriptions.clear()

        self._client = None
        self._storage = AsyncMemoryStorage()
        self._generation += 1
        self._logger.warning(
            "Supabase client reset; next access rebuilds it (generation %d).",
            self._generation,
        )

    # ------------------------------------------------------------------
    # Session / user reads
    # ------------------------------------------------------------------

    async def get_session(self) -> Optional[Session]:
        """Return the current provider session, or ``None`` when signed out."""
        client = await self.get_client()
        try:
            raw = await client.auth.get_session()
        except Exception as exc:
            raise classify_provider_error(exc, "getSession") from exc
        return self._to_session(raw)

    async def get_user(self) -> Optional[AuthUser]:
        """Return the live auth user record, or ``None`` when signed out."""
        client = await self.get_client()
        try:
            response = await client.auth.get_user()
        except AuthSessionMissingError:
            return None
        except Exception as exc:
            raise classify_provider_error(exc, "getUser") from exc
        if response is None or response.user is None:
            return None
        return AuthUser(id=response.user.id, email=response.user.email)

    async def sign_out(self) -> None:
        """End the provider session."""
        client = await self.get_client()
        try:
            await client.auth.sign_out()
        except Exception as exc:
            raise classify_provider_error(exc, "signOut") from exc
        self._logger.info("Provider session signed out.")

    # ------------------------------------------------------------------
    # Push notifications
    # ------------------------------------------------------------------

    async def on_auth_state_change(self, handler: AuthEventHandler) -> Callable[[], None]:
        """Register *handler* for auth-state push notifications.

        Returns
        -------
        Callable[[], None]
            Unsubscribe function.  Safe to call more than once.
        """
        listener_id = next(self._listener_ids)
        self._listeners[listener_id] = handler
        client = await self.get_client()
        if listener_id not in self._provider_subscriptions:
            self._attach(listener_id, client)

        def _unsubscribe() -> None:
            self._listeners.pop(listener_id, None)
            detach = self._provider_subscriptions.pop(listener_id, None)
            if detach is not None:
                detach()

        return _unsubscribe

    def _attach(self, listener_id: int, client: AsyncClient) -> None:
        subscription = client.auth.on_auth_state_change(self._bridge(listener_id))
        self._provider_subscriptions[listener_id] = subscription.unsubscribe

    def _bridge(self, listener_id: int) -> Callable[[str, object], None]:
        def _callback(event: str, raw_session: object) -> None:
            handler = self._listeners.get(listener_id)
            kind = _PROVIDER_EVENTS.get(event)
            if handler is None:
                return
            if kind is None:
                self._logger.debug("Ignoring provider auth event %s.", event)
                return
            try:
                handler(kind, self._to_session(raw_session))
            except Exception:
                # The provider's emitter loop must keep delivering to
                # the other listeners.
                self._logger.error(
                    "Auth state listener %d failed on %s.", listener_id, event,
                    exc_info=True,
                )

        return _callback

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_session(raw: object) -> Optional[Session]:
        user = getattr(raw, "user", None)
        if raw is None or user is None:
            return None
        return Session(
            user_id=user.id,
            email=getattr(user, "email", None),
            expires_at=getattr(raw, "expires_at", None),
            access_token=getattr(raw, "access_token", "") or "",
            refresh_token=getattr(raw, "refresh_token", "") or "",
        )
