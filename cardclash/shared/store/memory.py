"""In-process shared store.

One :class:`MemoryBackend` plays the role of the replicated database; each
simulated player talks to it through its own :class:`MemoryStore` client.
Every operation yields to the event loop first so concurrent clients
interleave the way remote clients would.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from cardclash.core.errors import StoreError
from cardclash.shared.paths import split

from .base import ChangeCallback, SharedStore, Subscription
from .tree import get_in, normalize, set_in, touches

logger = logging.getLogger(__name__)


@dataclass
class _InjectedFailure:
    operation: str
    path_prefix: str
    remaining: int


class MemoryBackend:
    """The shared tree, its watchers and per-client disconnect writes."""

    def __init__(self, *, latency: float = 0.0) -> None:
        self.latency = latency
        self._root: dict[str, Any] = {}
        self._subscriptions: list[Subscription] = []
        self._disconnect_writes: dict[str, dict[str, Any]] = {}
        self._failures: list[_InjectedFailure] = []

    def connect(self, client_id: str | None = None) -> MemoryStore:
        return MemoryStore(self, client_id or uuid.uuid4().hex)

    def snapshot(self, path: str = "") -> Any:
        """Synchronous deep copy of a subtree (for inspection)."""
        parts = split(path)
        return copy.deepcopy(get_in(self._root, parts) if parts else self._root)

    def fail_next(self, operation: str, path_prefix: str = "", times: int = 1) -> None:
        """Make the next ``times`` matching operations raise ``StoreError``."""
        self._failures.append(_InjectedFailure(operation, path_prefix, times))

    # --- internals used by MemoryStore ---

    async def _enter(self, operation: str, path: str) -> None:
        await asyncio.sleep(self.latency)
        for failure in self._failures:
            if failure.operation == operation and path.startswith(failure.path_prefix):
                failure.remaining -= 1
                if failure.remaining <= 0:
                    self._failures.remove(failure)
                raise StoreError(operation, path, RuntimeError("injected failure"))

    def _read(self, path: str) -> Any:
        return copy.deepcopy(get_in(self._root, split(path)))

    def _apply(self, writes: list[tuple[str, Any]]) -> None:
        for path, value in writes:
            set_in(self._root, split(path), value)
        for sub in list(self._subscriptions):
            if any(touches(path, sub.path) for path, _ in writes):
                sub.notify()

    def _watch(self, sub: Subscription) -> None:
        self._subscriptions.append(sub)

    def _unwatch(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def _drop_client(self, client_id: str, *, run_writes: bool) -> None:
        writes = self._disconnect_writes.pop(client_id, {})
        if run_writes and writes:
            logger.info(f"Client {client_id} dropped, applying {len(writes)} disconnect write(s)")
            self._apply(list(writes.items()))


class MemoryStore(SharedStore):
    """One client's connection to a :class:`MemoryBackend`."""

    def __init__(self, backend: MemoryBackend, client_id: str) -> None:
        self.backend = backend
        self.client_id = client_id
        self._subscriptions: list[Subscription] = []
        self._closed = False

    def _check_open(self, operation: str, path: str) -> None:
        if self._closed:
            raise StoreError(operation, path, RuntimeError("store client is closed"))

    async def get(self, path: str) -> Any:
        self._check_open("get", path)
        await self.backend._enter("get", path)
        return self.backend._read(path)

    async def set(self, path: str, value: Any) -> None:
        self._check_open("set", path)
        if not split(path):
            raise StoreError("set", path, ValueError("empty path"))
        await self.backend._enter("set", path)
        self.backend._apply([(path, value)])

    async def update(self, path: str, changes: dict[str, Any]) -> None:
        self._check_open("update", path)
        writes = self._absolute(path, changes)
        await self.backend._enter("update", path)
        self.backend._apply(writes)

    async def increment(self, path: str, delta: float) -> float:
        self._check_open("increment", path)
        await self.backend._enter("increment", path)
        current = self.backend._read(path)
        if current is None:
            current = 0
        if isinstance(current, bool) or not isinstance(current, (int, float)):
            raise StoreError("increment", path, TypeError(f"not a number: {current!r}"))
        new_value = current + delta
        self.backend._apply([(path, new_value)])
        return new_value

    async def set_if_absent(self, path: str, value: Any) -> bool:
        self._check_open("set_if_absent", path)
        await self.backend._enter("set_if_absent", path)
        if self.backend._read(path) is not None:
            return False
        self.backend._apply([(path, value)])
        return True

    def subscribe(self, path: str, callback: ChangeCallback) -> Subscription:
        self._check_open("subscribe", path)

        async def load() -> Any:
            await self.backend._enter("get", path)
            return self.backend._read(path)

        sub = Subscription(path, callback, load, on_cancel=self._forget)
        self._subscriptions.append(sub)
        self.backend._watch(sub)
        return sub

    def _forget(self, sub: Subscription) -> None:
        self.backend._unwatch(sub)
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    async def run_on_disconnect(self, path: str, value: Any = None) -> None:
        self._check_open("run_on_disconnect", path)
        await self.backend._enter("run_on_disconnect", path)
        writes = self.backend._disconnect_writes.setdefault(self.client_id, {})
        writes[path] = normalize(value)

    async def cancel_on_disconnect(self, path: str) -> None:
        self._check_open("cancel_on_disconnect", path)
        await self.backend._enter("cancel_on_disconnect", path)
        self.backend._disconnect_writes.get(self.client_id, {}).pop(path, None)

    def _shutdown(self) -> None:
        self._closed = True
        for sub in list(self._subscriptions):
            sub.cancel()

    async def close(self) -> None:
        if self._closed:
            return
        self._shutdown()
        self.backend._drop_client(self.client_id, run_writes=False)

    async def disconnect(self) -> None:
        """Simulate an abrupt connection loss."""
        if self._closed:
            return
        self._shutdown()
        self.backend._drop_client(self.client_id, run_writes=True)
