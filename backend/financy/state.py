"""Short-lived keyed state shared between conversation turns."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from time import monotonic
from typing import Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(slots=True)
class _Entry(Generic[V]):
    value: V
    expires_at: float


class ExpiringStore(Generic[K, V]):
    """In-process key/value store where every entry carries its own deadline.

    Expiry is checked lazily: ``get`` never returns an entry whose deadline has
    passed, and ``put`` sweeps stale entries so the map does not grow without
    bound. No background timer is involved, and the clock is injectable so
    tests can move time forward explicitly.
    """

    def __init__(
        self,
        name: str,
        default_ttl: float,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive.")
        self.name = name
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[K, _Entry[V]] = {}

    def put(self, key: K, value: V, ttl: float | None = None) -> None:
        now = self._clock()
        self._sweep(now)
        lifetime = self.default_ttl if ttl is None else ttl
        self._entries[key] = _Entry(value=value, expires_at=now + lifetime)

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            self._entries.pop(key, None)
            logger.debug("Entry %s expired in %s store", key, self.name)
            return None
        return entry.value

    def remove(self, key: K) -> V | None:
        """Drop ``key`` and return its live value, if any."""
        value = self.get(key)
        self._entries.pop(key, None)
        return value

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        self._sweep(self._clock())
        return len(self._entries)

    def _sweep(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Evicted %d expired entries from %s store", len(expired), self.name)
