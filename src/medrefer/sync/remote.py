"""
MedRefer remote side of synchronization.

Defines the store a sync pass pushes to and the connectivity flag that
gates it.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from medrefer.core.errors import SyncError
from medrefer.core.logging import get_logger

logger = get_logger(__name__)

ConnectivityListener = Callable[[bool], None]


class RemoteStore(ABC):
    """Abstract remote store.

    Versions are opaque strings. A pushed ``create``/``update`` returns the
    new version; ``False``/``None`` results mean the remote rejected the
    change and the operation should be retried.
    """

    @abstractmethod
    def exists(self, entity_type: str, entity_id: str) -> bool: ...

    @abstractmethod
    def get_version(self, entity_type: str, entity_id: str) -> str | None: ...

    @abstractmethod
    def fetch(self, entity_type: str, entity_id: str) -> dict[str, Any]: ...

    @abstractmethod
    def create(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> str | None: ...

    @abstractmethod
    def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> str | None: ...

    @abstractmethod
    def delete(self, entity_type: str, entity_id: str) -> bool: ...

    def apply_custom(self, entity_type: str, data: dict[str, Any]) -> bool:
        """Apply a custom operation. ``data["action"]`` selects it."""
        action = data.get("action")
        if action == "bulk_update":
            entities = data.get("entities")
            if not isinstance(entities, list):
                raise SyncError("bulk_update requires an 'entities' list")
            for entity in entities:
                entity_id = str(entity.get("id", ""))
                if not entity_id:
                    raise SyncError("bulk_update entity without id")
                if self.exists(entity_type, entity_id):
                    result = self.update(entity_type, entity_id, entity)
                else:
                    result = self.create(entity_type, entity_id, entity)
                if result is None:
                    return False
            return True
        if action == "merge":
            source_id = data.get("source_id")
            target_id = data.get("target_id")
            if not source_id or not target_id:
                raise SyncError("merge requires 'source_id' and 'target_id'")
            merged = {**self.fetch(entity_type, source_id), **self.fetch(entity_type, target_id)}
            merged["id"] = target_id
            if self.update(entity_type, target_id, merged) is None:
                return False
            return self.delete(entity_type, source_id)
        raise SyncError(f"Unknown custom operation: {action}")


class InMemoryRemoteStore(RemoteStore):
    """Remote store kept in process memory.

    Each entity carries an integer version rendered as ``"v<n>"``. Failures
    can be injected per entity to exercise retry handling.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entities: dict[tuple[str, str], dict[str, Any]] = {}
        self._versions: dict[tuple[str, str], int] = {}
        self._failing: dict[tuple[str, str], int | None] = {}
        self.calls: list[tuple[str, str, str]] = []

    def fail_for(self, entity_type: str, entity_id: str, times: int | None = None) -> None:
        """Reject writes to an entity, ``times`` times or until cleared."""
        with self._lock:
            self._failing[(entity_type, entity_id)] = times

    def clear_failures(self) -> None:
        with self._lock:
            self._failing.clear()

    def seed(self, entity_type: str, entity_id: str, data: dict[str, Any], version: int = 1) -> None:
        with self._lock:
            self._entities[(entity_type, entity_id)] = dict(data)
            self._versions[(entity_type, entity_id)] = version

    def _should_fail(self, key: tuple[str, str]) -> bool:
        if key not in self._failing:
            return False
        remaining = self._failing[key]
        if remaining is None:
            return True
        if remaining <= 1:
            del self._failing[key]
        else:
            self._failing[key] = remaining - 1
        return True

    def _bump(self, key: tuple[str, str]) -> str:
        self._versions[key] = self._versions.get(key, 0) + 1
        return f"v{self._versions[key]}"

    def exists(self, entity_type: str, entity_id: str) -> bool:
        with self._lock:
            return (entity_type, entity_id) in self._entities

    def get_version(self, entity_type: str, entity_id: str) -> str | None:
        with self._lock:
            version = self._versions.get((entity_type, entity_id))
            return f"v{version}" if version is not None else None

    def fetch(self, entity_type: str, entity_id: str) -> dict[str, Any]:
        with self._lock:
            return dict(self._entities.get((entity_type, entity_id), {}))

    def create(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> str | None:
        key = (entity_type, entity_id)
        with self._lock:
            self.calls.append(("create", entity_type, entity_id))
            if self._should_fail(key):
                return None
            self._entities[key] = dict(data)
            return self._bump(key)

    def update(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> str | None:
        key = (entity_type, entity_id)
        with self._lock:
            self.calls.append(("update", entity_type, entity_id))
            if self._should_fail(key):
                return None
            current = self._entities.get(key, {})
            self._entities[key] = {**current, **data}
            return self._bump(key)

    def delete(self, entity_type: str, entity_id: str) -> bool:
        key = (entity_type, entity_id)
        with self._lock:
            self.calls.append(("delete", entity_type, entity_id))
            if self._should_fail(key):
                return False
            self._entities.pop(key, None)
            self._versions.pop(key, None)
            return True


class ConnectivityMonitor:
    """Online/offline flag with change listeners."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._lock = threading.Lock()
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        with self._lock:
            if online == self._online:
                return
            self._online = online
            listeners = list(self._listeners)

        logger.info("Connectivity changed", online=online)
        for listener in listeners:
            try:
                listener(online)
            except Exception as e:
                logger.warning("Connectivity listener failed", error=str(e))
