"""
Error Taxonomy.

Every failure the bootstrap layer can observe is expressed as one of the
exceptions below.  Provider exceptions (``postgrest``, ``supabase_auth``,
``httpx``) are translated into this taxonomy at the gateway/repository
boundary by :func:`classify_provider_error`, so orchestration code only
ever inspects exception *types*.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Optional

import httpx
from postgrest.exceptions import APIError
from supabase_auth.errors import AuthError, AuthRetryableError

# Postgres SQLSTATE for unique_violation.
UNIQUE_VIOLATION_CODE: str = "23505"


class CafcoopError(Exception):
    """Base class for all bootstrap-layer errors."""

    def __init__(self, message: str, original_error: Optional[BaseException] = None) -> None:
        self.message: str = message
        self.original_error: Optional[BaseException] = original_error
        super().__init__(self.message)


class ConfigurationError(CafcoopError):
    """Missing connection parameters.  Fatal, never retried."""


class InvalidArgument(CafcoopError):
    """A caller passed an empty or malformed argument."""


class TransientKind(StrEnum):
    """Structured signature of a retryable failure."""

    TIMEOUT = "timeout"
    ABORTED = "aborted"
    NETWORK = "network"


class TransientNetworkError(CafcoopError):
    """Retryable failure: timeout, severed request, or transport error."""

    def __init__(
        self,
        message: str,
        kind: TransientKind = TransientKind.NETWORK,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, original_error)
        self.kind: TransientKind = kind

    @property
    def is_aborted(self) -> bool:
        return self.kind is TransientKind.ABORTED


class DatastoreError(CafcoopError):
    """Non-retryable datastore failure."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, original_error)
        self.code: Optional[str] = code


class ConstraintViolation(DatastoreError):
    """Uniqueness constraint hit while inserting a profile.

    Recovered internally by the provisioner; never surfaced to consumers.
    """


class ProfileNotFound(CafcoopError):
    """No profile row exists for an auth identity.  Triggers provisioning."""


class ProvisionFailed(CafcoopError):
    """The create-or-fetch operation could not produce a profile."""


class ProfileCreateFailed(CafcoopError):
    """Profile provisioning failed while loading a profile."""


class ProfileLoadFailed(CafcoopError):
    """Profile lookup failed after the retry budget was exhausted."""


class InitializationTimeout(CafcoopError):
    """The global safety valve fired before initialization completed."""


def _is_aborted_text(text: Optional[str]) -> bool:
    # Last resort for provider errors that carry no structured kind.
    return bool(text) and "abort" in text.lower()


def classify_provider_error(exc: Exception, context: str) -> CafcoopError:
    """Translate a raw provider exception into the error taxonomy.

    Args:
        exc: The exception raised by the Supabase SDK or ``httpx``.
        context: Short label of the failing operation, used in messages.

    Returns:
        A :class:`CafcoopError` subclass instance wrapping *exc*.
    """
    if isinstance(exc, CafcoopError):
        return exc

    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return TransientNetworkError(
            f"{context}: timeout", kind=TransientKind.TIMEOUT, original_error=exc,
        )

    if isinstance(exc, httpx.TransportError):
        kind = TransientKind.ABORTED if _is_aborted_text(str(exc)) else TransientKind.NETWORK
        return TransientNetworkError(f"{context}: {exc}", kind=kind, original_error=exc)

    if isinstance(exc, APIError):
        message = exc.message or str(exc)
        if exc.code == UNIQUE_VIOLATION_CODE:
            return ConstraintViolation(
                f"{context}: {message}", code=exc.code, original_error=exc,
            )
        if _is_aborted_text(message):
            return TransientNetworkError(
                f"{context}: {message}", kind=TransientKind.ABORTED, original_error=exc,
            )
        return DatastoreError(f"{context}: {message}", code=exc.code, original_error=exc)

    if isinstance(exc, AuthRetryableError):
        kind = TransientKind.ABORTED if _is_aborted_text(exc.message) else TransientKind.NETWORK
        return TransientNetworkError(f"{context}: {exc.message}", kind=kind, original_error=exc)

    if isinstance(exc, AuthError):
        if _is_aborted_text(exc.message):
            return TransientNetworkError(
                f"{context}: {exc.message}", kind=TransientKind.ABORTED, original_error=exc,
            )
        return DatastoreError(f"{context}: {exc.message}", original_error=exc)

    if _is_aborted_text(str(exc)):
        return TransientNetworkError(
            f"{context}: {exc}", kind=TransientKind.ABORTED, original_error=exc,
        )
    return DatastoreError(f"{context}: {exc}", original_error=exc)
