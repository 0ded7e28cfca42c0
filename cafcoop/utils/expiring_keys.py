"""
Expiring Key Set.

Insert-only set whose entries are evicted a fixed window after they are
released.  Used by ``ProfileLoader`` to collapse overlapping loads for
the same ``(auth_id, attempt)`` pair.  Only presence checks and timed
eviction touch the set, so no lock is needed on the single event loop.
"""

from __future__ import annotations

import asyncio
from typing import Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)


class ExpiringKeySet(Generic[K]):
    """Presence markers with delayed eviction.

    Parameters
    ----------
    window_s:
        Seconds a released key stays in the set before it is evicted.
    """

    def __init__(self, window_s: float) -> None:
        self._window_s: float = window_s
        self._keys: set[K] = set()
        self._evictions: dict[K, asyncio.TimerHandle] = {}

    def claim(self, key: K) -> bool:
        """Insert *key*.  Returns ``False`` when it is already present."""
        if key in self._keys:
            return False
        self._keys.add(key)
        return True

    def release_later(self, key: K) -> None:
        """Schedule eviction of *key* after the window."""
        previous = self._evictions.pop(key, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._evictions[key] = loop.call_later(self._window_s, self._evict, key)

    def _evict(self, key: K) -> None:
        self._keys.discard(key)
        self._evictions.pop(key, None)

    def clear(self) -> None:
        """Drop every key and cancel pending evictions."""
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        self._keys.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)
