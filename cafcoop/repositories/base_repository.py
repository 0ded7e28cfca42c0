"""
Base Repository.

Provides shared infrastructure for all repositories:
- ProviderGateway reference (lazily built async Supabase client)
- Logger reference
- Uniform translation of provider exceptions into ``cafcoop.errors``
"""

from __future__ import annotations

from typing import Awaitable, Callable, TypeVar

from postgrest import AsyncRequestBuilder

from cafcoop.errors import CafcoopError, classify_provider_error
from cafcoop.gateway import ProviderGateway
from cafcoop.logger import StructuredLogger

T = TypeVar("T")


class BaseRepository:
    """Base class for all repositories. Receives dependencies via __init__."""

    TABLE: str = ""

    def __init__(
        self,
        gateway: ProviderGateway,
        logger: StructuredLogger,
        table: str = "",
    ) -> None:
        self._gateway = gateway
        self._logger = logger
        if table:
            self.TABLE = table

    async def _table(self) -> AsyncRequestBuilder:
        """Return a request builder for this repository's table."""
        client = await self._gateway.get_client()
        return client.table(self.TABLE)

    async def _execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str,
    ) -> T:
        """Run one datastore call, translating provider failures.

        Parameters
        ----------
        operation:
            Zero-argument coroutine function performing the query.
        operation_name:
            Human-readable label for log messages, e.g.
            ``"find_profile_by_auth_id (utilisateurs)"``.

        Raises
        ------
        CafcoopError
            The translated provider failure.  ``TransientNetworkError``
            signals that the caller may retry.
        """
        try:
            return await operation()
        except CafcoopError:
            raise
        except Exception as exc:
            error = classify_provider_error(exc, operation_name)
            self._logger.warning(
                "Datastore call failed for %s: %s (%s)",
                operation_name,
                error.message,
                type(error).__name__,
            )
            raise error from exc
