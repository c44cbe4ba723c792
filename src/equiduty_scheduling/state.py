"""
Observable state containers.

``StateStore`` is a single-writer/multi-reader value holder. ``ScopedSubscription``
keeps a store in sync with one scope (a stable, an organization, a selection
window) at a time, via a one-shot async loader, a push listener, or both.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Generic, Hashable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]
Loader = Callable[[Any], Awaitable[T]]
# (scope, on_value, on_error) -> unsubscribe
ListenerFactory = Callable[[Any, Callable[[T], None], Callable[[BaseException], None]], Unsubscribe]


class StateStore(Generic[T]):
    """Holds the current value and notifies subscribers on every ``set``."""

    def __init__(self, initial: T, name: str = "state") -> None:
        self.name = name
        self._value = initial
        self._subscribers: List[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, callback: Callable[[T], None]) -> Unsubscribe:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._subscribers.remove(callback)

        return unsubscribe

    def set(self, value: T) -> None:
        self._value = value
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception as exc:
                logger.warning("state_subscriber_failed store=%s", self.name, exc_info=exc)


class ScopedSubscription(Generic[T]):
    """
    Binds a ``StateStore`` to the currently watched scope.

    ``switch(scope)`` tears down the previous scope's listener and in-flight
    load before starting new ones, and results tagged with an old scope are
    dropped. Load and listener errors are logged and leave the last good value
    in the store.
    """

    def __init__(
        self,
        store: StateStore[T],
        loader: Optional[Loader[T]] = None,
        listener: Optional[ListenerFactory[T]] = None,
    ) -> None:
        if loader is None and listener is None:
            raise ValueError("ScopedSubscription needs a loader, a listener, or both")
        self.store = store
        self._loader = loader
        self._listener = listener
        self._scope: Optional[Hashable] = None
        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Unsubscribe] = None

    @property
    def scope(self) -> Optional[Hashable]:
        return self._scope

    @property
    def active(self) -> bool:
        return self._scope is not None

    async def switch(self, scope: Optional[Hashable]) -> None:
        if scope is not None and scope == self._scope:
            return
        await self.stop()
        self._scope = scope
        if scope is None:
            return

        generation = self._generation
        logger.debug("scope_switched store=%s scope=%s", self.store.name, scope)
        if self._listener is not None:
            self._unsubscribe = self._listener(
                scope,
                lambda value: self._accept(generation, value),
                lambda exc: self._on_error(generation, scope, exc),
            )
        if self._loader is not None:
            self._task = asyncio.create_task(self._load(generation, scope))

    async def refresh(self) -> None:
        """Re-run the loader for the current scope and wait for it."""
        if self._scope is None or self._loader is None:
            return
        await self._cancel_task()
        self._task = asyncio.create_task(self._load(self._generation, self._scope))
        await self.wait()

    async def wait(self) -> None:
        """Wait for the in-flight load, if any."""
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def stop(self) -> None:
        self._generation += 1
        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            try:
                unsubscribe()
            except Exception as exc:
                logger.warning("scope_unsubscribe_failed store=%s", self.store.name, exc_info=exc)
        await self._cancel_task()
        self._scope = None

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _load(self, generation: int, scope: Hashable) -> None:
        assert self._loader is not None
        try:
            value = await self._loader(scope)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._on_error(generation, scope, exc)
            return
        self._accept(generation, value)

    def _accept(self, generation: int, value: T) -> None:
        if generation != self._generation:
            logger.debug("stale_scope_update_dropped store=%s", self.store.name)
            return
        self.store.set(value)

    def _on_error(self, generation: int, scope: Hashable, exc: BaseException) -> None:
        if generation != self._generation:
            return
        logger.warning("scope_update_failed store=%s scope=%s", self.store.name, scope, exc_info=exc)
