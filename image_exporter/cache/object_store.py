"""In-memory store of watched Kubernetes objects.

Populated by the watchers in ``image_exporter.collector``: one initial list
per kind marks the kind as synced, after which watch events keep it
current. Reconcilers read single objects from here and the metrics
exporter lists whole kinds, so neither talks to the API server directly.
"""

from __future__ import annotations

import copy
import threading
from typing import Any

from image_exporter.errors import StoreNotSyncedError


class ObjectStore:
    """Raw objects keyed by kind, then ``(namespace, name)``.

    Objects are stored as plain dicts with Kubernetes camelCase keys.
    ``get`` and ``list`` hand out deep copies; callers may not mutate the
    store's contents.
    """

    def __init__(self, kinds: list[str]) -> None:
        self._lock = threading.Lock()
        self._objects: dict[str, dict[tuple[str, str], dict[str, Any]]] = {kind: {} for kind in kinds}
        self._synced: set[str] = set()

    def replace(self, kind: str, objects: list[dict[str, Any]]) -> None:
        """Replace every object of *kind* with the result of a full list, and mark it synced."""
        items = {_key(obj): obj for obj in objects}
        with self._lock:
            self._objects[kind] = items
            self._synced.add(kind)

    def update(self, kind: str, obj: dict[str, Any]) -> None:
        with self._lock:
            self._objects.setdefault(kind, {})[_key(obj)] = obj

    def remove(self, kind: str, namespace: str, name: str) -> None:
        with self._lock:
            self._objects.get(kind, {}).pop((namespace, name), None)

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        """Return the object, or None when it does not exist (or no longer exists)."""
        with self._lock:
            obj = self._objects.get(kind, {}).get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def list(self, kind: str) -> list[dict[str, Any]]:
        """Return every object of *kind*, ordered by namespace and name.

        Raises:
            StoreNotSyncedError: the initial list for *kind* has not completed.
        """
        with self._lock:
            if kind not in self._synced:
                raise StoreNotSyncedError(kind)
            items = sorted(self._objects.get(kind, {}).items())
        return [copy.deepcopy(obj) for _, obj in items]

    def synced(self, kind: str) -> bool:
        with self._lock:
            return kind in self._synced

    def ready(self) -> bool:
        """True once every registered kind completed its initial list."""
        with self._lock:
            return self._synced >= set(self._objects)


def _key(obj: dict[str, Any]) -> tuple[str, str]:
    metadata = obj.get("metadata") or {}
    return str(metadata.get("namespace") or ""), str(metadata.get("name") or "")
