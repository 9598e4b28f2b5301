"""Shared store interface and cancellable change subscriptions."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from cardclash.core.errors import StoreError
from cardclash.shared.paths import join

LOGGER = logging.getLogger("SharedStore")

ChangeCallback = Callable[[Any], Awaitable[None]]
Loader = Callable[[], Awaitable[Any]]


class Subscription:
    """A watch on one subtree, delivered by its own asyncio task.

    ``notify()`` only marks the subscription dirty; the task then loads the
    *current* value and awaits the callback. Callbacks never overlap and
    bursts of changes collapse into one delivery of the latest value.
    """

    def __init__(
        self,
        path: str,
        callback: ChangeCallback,
        loader: Loader,
        *,
        on_cancel: Callable[[Subscription], None] | None = None,
    ) -> None:
        self.path = path
        self._callback = callback
        self._loader = loader
        self._on_cancel = on_cancel
        self._dirty = asyncio.Event()
        self._cancelled = False
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"subscription:{path}"
        )
        self.notify()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def notify(self) -> None:
        if not self._cancelled:
            self._dirty.set()

    def cancel(self) -> None:
        """Stop delivery. No callback starts after this returns."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel(self)
        # A callback cancelling its own subscription finishes normally.
        if self._task is not asyncio.current_task():
            self._task.cancel()

    async def wait_closed(self) -> None:
        if self._task is asyncio.current_task():
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while not self._cancelled:
            await self._dirty.wait()
            self._dirty.clear()
            if self._cancelled:
                break
            try:
                value = await self._loader()
            except StoreError as e:
                LOGGER.warning(f"Reload of '{self.path}' failed, waiting for next change: {e}")
                continue
            if self._cancelled:
                break
            try:
                await self._callback(value)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception(f"Subscriber for '{self.path}' raised")


class SharedStore(ABC):
    """Replicated JSON tree used as the only channel between two clients.

    Paths are ``/``-separated. ``None`` stands for absence everywhere.
    Every failure is raised as :class:`StoreError`.
    """

    client_id: str

    @abstractmethod
    async def get(self, path: str) -> Any: ...

    @abstractmethod
    async def set(self, path: str, value: Any) -> None: ...

    @abstractmethod
    async def update(self, path: str, changes: dict[str, Any]) -> None:
        """Apply several relative writes as one change."""

    async def remove(self, path: str) -> None:
        await self.set(path, None)

    @abstractmethod
    async def increment(self, path: str, delta: float) -> float:
        """Atomically add ``delta`` (absent counts as 0) and return the new value."""

    @abstractmethod
    async def set_if_absent(self, path: str, value: Any) -> bool:
        """Write only if nothing exists at ``path``. Returns True for the winner."""

    @abstractmethod
    def subscribe(self, path: str, callback: ChangeCallback) -> Subscription: ...

    @abstractmethod
    async def run_on_disconnect(self, path: str, value: Any = None) -> None:
        """Have the backend write ``value`` (None removes) if this client drops."""

    @abstractmethod
    async def cancel_on_disconnect(self, path: str) -> None: ...

    @abstractmethod
    async def close(self) -> None:
        """Graceful shutdown; registered disconnect writes are discarded."""

    @staticmethod
    def _absolute(base: str, changes: dict[str, Any]) -> list[tuple[str, Any]]:
        writes = [(join(base, rel), value) for rel, value in changes.items()]
        if any(not path for path, _ in writes):
            raise StoreError("update", base, ValueError("empty path"))
        return writes
