"""TTL caches passed explicitly to the components that need them."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Key/value cache that stores ``(value, stored_at)`` and expires entries
    after ``ttl_seconds`` as measured by ``clock``.

    ``allow_stale=True`` returns an expired entry instead of ``None``; the
    best-effort readers use it to fall back to the last known value when a
    refresh fails.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[V, float]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def get(self, key: Hashable, *, allow_stale: bool = False) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, stored_at = entry
        if allow_stale or self._clock() - stored_at < self.ttl_seconds:
            return value
        return None

    def set(self, key: Hashable, value: V) -> None:
        self._entries[key] = (value, self._clock())

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every string key starting with ``prefix``; returns how many were dropped."""
        doomed = [k for k in self._entries if isinstance(k, str) and k.startswith(prefix)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()


@dataclass
class ClientCaches:
    """Permission, subscription and feature-toggle caches shared by one app instance."""

    permissions: TTLCache[Any] = field(default_factory=lambda: TTLCache(300))
    subscriptions: TTLCache[Any] = field(default_factory=lambda: TTLCache(300))
    feature_toggles: TTLCache[Any] = field(default_factory=lambda: TTLCache(600))

    @classmethod
    def from_settings(cls, settings: Any, clock: Callable[[], float] = time.monotonic) -> "ClientCaches":
        return cls(
            permissions=TTLCache(settings.permission_cache_ttl_seconds, clock),
            subscriptions=TTLCache(settings.subscription_cache_ttl_seconds, clock),
            feature_toggles=TTLCache(settings.feature_toggle_cache_ttl_seconds, clock),
        )

    def invalidate_organization(self, organization_id: Optional[str]) -> None:
        """Forget cached permission and subscription state after an auth rejection."""
        if organization_id is None:
            self.permissions.clear()
            self.subscriptions.clear()
        else:
            self.permissions.invalidate(organization_id)
            self.subscriptions.invalidate(organization_id)
        logger.info("auth_caches_invalidated organization_id=%s", organization_id or "*")
