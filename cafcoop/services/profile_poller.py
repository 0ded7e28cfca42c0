"""
Profile Poller.

Fallback for environments where the push channel is unreliable: while a
session exists without a profile, re-run the loader every
``POLL_INTERVAL_S`` until it produces a profile, the profile arrives
through another path, or ``POLL_MAX_ATTEMPTS`` polls have run.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from cafcoop.errors import CafcoopError
from cafcoop.logger import StructuredLogger
from cafcoop.models.profile import Profile
from cafcoop.services.base_service import BaseService
from cafcoop.services.profile_loader import ProfileLoader


class ProfilePoller(BaseService):
    """Periodic profile reload bound to a controller through callbacks.

    Parameters
    ----------
    loader:
        Loader used for every poll.
    target:
        Returns the auth id to poll for, or ``None`` when there is
        nothing to poll (no session, or the profile is already loaded).
    on_profile:
        Called with the first profile a poll produces.
    on_exhausted:
        Called once after the last poll when no profile was produced.
    """

    def __init__(
        self,
        loader: ProfileLoader,
        target: Callable[[], Optional[str]],
        on_profile: Callable[[Profile], None],
        on_exhausted: Callable[[], None],
        logger: StructuredLogger,
        interval_s: float = 2.0,
        max_attempts: int = 10,
    ) -> None:
        super().__init__(logger)
        self._loader = loader
        self._target = target
        self._on_profile = on_profile
        self._on_exhausted = on_exhausted
        self._interval_s = interval_s
        self._max_attempts = max_attempts
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling on the running loop.  No-op when already running."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        """Stop polling.  Safe to call when not running."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self) -> None:
        had_target = False
        for attempt in range(1, self._max_attempts + 1):
            await asyncio.sleep(self._interval_s)
            auth_id = self._target()
            if auth_id is None:
                if had_target:
                    # Settled elsewhere: profile loaded by another path or session ended.
                    self._logger.debug("Profile poll target cleared; stopping.")
                    return
                continue
            had_target = True

            self._logger.debug("Profile poll %d/%d for %s.", attempt, self._max_attempts, auth_id)
            try:
                profile = await self._loader.load(auth_id)
            except CafcoopError as exc:
                self._log_failure("Profile poll", exc, attempt=str(attempt), auth_id=auth_id)
                continue

            if profile is not None:
                self._on_profile(profile)
                return

        self._logger.warning("Profile polling stopped after %d attempts.", self._max_attempts)
        self._on_exhausted()
