"""Resource store for desired-state Stack objects.

The operator talks to the store only through the ResourceStore protocol:
get/list, create, update (metadata and spec), update_status (status
subresource), delete with finalizer semantics, and a watch stream of keys.

InMemoryStore implements the protocol with the semantics of a Kubernetes API
server, which is what the controller logic is written against:

- Every write bumps ``metadata.resourceVersion``; writes carrying a stale
  version fail with ConflictError (optimistic concurrency).
- ``update`` never touches status and ``update_status`` never touches spec or
  metadata.
- Deleting an object that still has finalizers only sets
  ``metadata.deletionTimestamp``; the object disappears once an update removes
  the last finalizer.
- Every change is delivered as a key on each active watch.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Protocol

from .models import DesiredStack, StackKey

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class for resource store errors."""

    pass


class NotFoundError(StoreError):
    """Raised when the requested object does not exist."""

    pass


class ConflictError(StoreError):
    """Raised when a write carries a stale resourceVersion."""

    pass


class AlreadyExistsError(StoreError):
    """Raised when creating an object whose key is taken."""

    pass


class ResourceStore(Protocol):
    """Contract of the desired-state store used by the controller."""

    def get(self, key: StackKey) -> DesiredStack: ...

    def list(self, namespace: str | None = None) -> list[DesiredStack]: ...

    def create(self, obj: DesiredStack) -> DesiredStack: ...

    def update(self, obj: DesiredStack) -> DesiredStack: ...

    def update_status(self, obj: DesiredStack) -> DesiredStack: ...

    def delete(self, key: StackKey) -> None: ...

    def watch(self) -> AsyncIterator[StackKey]: ...


class InMemoryStore:
    """Thread-safe in-memory ResourceStore.

    Objects are deep-copied on the way in and out so callers can never mutate
    stored state without going through a versioned write.
    """

    # Maximum objects to prevent unbounded growth
    MAX_OBJECTS = 10000

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._objects: dict[StackKey, DesiredStack] = {}
        self._version = 0
        self._watchers: list[tuple[asyncio.AbstractEventLoop, asyncio.Queue[StackKey]]] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def get(self, key: StackKey) -> DesiredStack:
        with self._lock:
            obj = self._objects.get(key)
            if obj is None:
                raise NotFoundError(f"Stack {key} not found")
            return obj.model_copy(deep=True)

    def list(self, namespace: str | None = None) -> list[DesiredStack]:
        with self._lock:
            return [
                obj.model_copy(deep=True)
                for key, obj in sorted(self._objects.items())
                if namespace is None or key.namespace == namespace
            ]

    def create(self, obj: DesiredStack) -> DesiredStack:
        key = obj.key
        with self._lock:
            if key in self._objects:
                raise AlreadyExistsError(f"Stack {key} already exists")
            if len(self._objects) >= self.MAX_OBJECTS:
                raise StoreError(f"Object limit exceeded: {self.MAX_OBJECTS}")

            stored = obj.model_copy(deep=True)
            stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
            stored.metadata.generation = 1
            stored.metadata.deletion_timestamp = None
            stored.metadata.resource_version = self._next_version()
            self._objects[key] = stored
            result = stored.model_copy(deep=True)

        self._notify(key)
        return result

    def update(self, obj: DesiredStack) -> DesiredStack:
        """Replace metadata and spec. Status in ``obj`` is ignored."""
        key = obj.key
        with self._lock:
            current = self._check_version(obj)

            if current.is_marked_for_deletion:
                # Only finalizer removal is allowed once deletion has started
                removed = set(current.metadata.finalizers) - set(obj.metadata.finalizers)
                added = set(obj.metadata.finalizers) - set(current.metadata.finalizers)
                if added or obj.spec != current.spec:
                    raise ConflictError(
                        f"Stack {key} is being deleted; only finalizers may be removed"
                    )
                if removed and not obj.metadata.finalizers:
                    del self._objects[key]
                    logger.debug("Stack removed after last finalizer", extra={"key": str(key)})
                    result = obj.model_copy(deep=True)
                    result.metadata.resource_version = self._next_version()
                    self._notify_locked_release(key)
                    return result

            stored = current.model_copy(deep=True)
            if obj.spec != current.spec:
                stored.metadata.generation = current.metadata.generation + 1
            stored.spec = obj.spec.model_copy(deep=True)
            stored.metadata.labels = dict(obj.metadata.labels)
            stored.metadata.finalizers = list(obj.metadata.finalizers)
            stored.metadata.resource_version = self._next_version()
            self._objects[key] = stored
            result = stored.model_copy(deep=True)

        self._notify(key)
        return result

    def update_status(self, obj: DesiredStack) -> DesiredStack:
        """Replace status only."""
        key = obj.key
        with self._lock:
            current = self._check_version(obj)
            stored = current.model_copy(deep=True)
            stored.status = obj.status.model_copy(deep=True)
            stored.metadata.resource_version = self._next_version()
            self._objects[key] = stored
            result = stored.model_copy(deep=True)

        self._notify(key)
        return result

    def delete(self, key: StackKey) -> None:
        """Delete an object, or mark it for deletion if finalizers remain."""
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(f"Stack {key} not found")

            if not current.metadata.finalizers:
                del self._objects[key]
            elif current.metadata.deletion_timestamp is None:
                stored = current.model_copy(deep=True)
                stored.metadata.deletion_timestamp = datetime.now(UTC)
                stored.metadata.resource_version = self._next_version()
                self._objects[key] = stored
            else:
                return

        self._notify(key)

    async def watch(self) -> AsyncIterator[StackKey]:
        """Yield the key of every object that changes from now on.

        The stream starts with the keys of all existing objects so that a new
        watcher reconciles the full state once.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[StackKey] = asyncio.Queue()
        with self._lock:
            for key in sorted(self._objects):
                queue.put_nowait(key)
            self._watchers.append((loop, queue))
        try:
            while True:
                yield await queue.get()
        finally:
            with self._lock:
                self._watchers = [(lp, q) for lp, q in self._watchers if q is not queue]

    def _check_version(self, obj: DesiredStack) -> DesiredStack:
        """Return the stored object if ``obj`` carries its current version."""
        current = self._objects.get(obj.key)
        if current is None:
            raise NotFoundError(f"Stack {obj.key} not found")
        version = obj.metadata.resource_version
        if version and version != current.metadata.resource_version:
            raise ConflictError(
                f"Stack {obj.key} has been modified "
                f"(have {version}, current {current.metadata.resource_version})"
            )
        return current

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _notify_locked_release(self, key: StackKey) -> None:
        # Called with the lock held; delivery itself does not take the lock
        for loop, queue in list(self._watchers):
            self._deliver(loop, queue, key)

    def _notify(self, key: StackKey) -> None:
        with self._lock:
            watchers = list(self._watchers)
        for loop, queue in watchers:
            self._deliver(loop, queue, key)

    @staticmethod
    def _deliver(
        loop: asyncio.AbstractEventLoop, queue: asyncio.Queue[StackKey], key: StackKey
    ) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            queue.put_nowait(key)
        elif not loop.is_closed():
            loop.call_soon_threadsafe(queue.put_nowait, key)
