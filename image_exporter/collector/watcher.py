"""List/watch loop keeping the ObjectStore current for one kind.

Each watcher performs an initial list (marking its kind synced in the
store), then follows a watch stream from the list's resource version.
Every change is written to the store and reported through ``on_change``
so the kind's controller can enqueue the object. Dropped streams are
resumed; expired resource versions (410 Gone) trigger a full relist;
other failures back off exponentially.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from kubernetes_asyncio import watch  # type: ignore[import-untyped]
from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]

from image_exporter.cache.object_store import ObjectStore

_log = structlog.get_logger(component="collector.watcher")

_WATCH_TIMEOUT_SECONDS = 300
_INITIAL_BACKOFF = 1.0
_MAX_BACKOFF = 60.0

# kind -> (API class name, all-namespaces list method) in kubernetes_asyncio.client
LIST_METHODS: dict[str, tuple[str, str]] = {
    "Pod": ("CoreV1Api", "list_pod_for_all_namespaces"),
    "Deployment": ("AppsV1Api", "list_deployment_for_all_namespaces"),
    "StatefulSet": ("AppsV1Api", "list_stateful_set_for_all_namespaces"),
    "DaemonSet": ("AppsV1Api", "list_daemon_set_for_all_namespaces"),
    "Job": ("BatchV1Api", "list_job_for_all_namespaces"),
    "CronJob": ("BatchV1Api", "list_cron_job_for_all_namespaces"),
}


class _ResourceVersionExpired(Exception):
    """The watch's resource version is too old; a relist is required."""


class KindWatcher:
    """Feeds one kind's objects into the store.

    Args:
        kind:      Kind name, e.g. ``"Deployment"``.
        list_fn:   kubernetes-asyncio list method for all namespaces.
        store:     Store to keep current.
        on_change: Called with (namespace, name) for every listed or changed object.
        serialize: Converts typed API objects into camelCase dicts
                   (``ApiClient().sanitize_for_serialization``).
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Awaitable[Any]],
        store: ObjectStore,
        on_change: Callable[[str, str], None],
        serialize: Callable[[Any], dict[str, Any]],
    ) -> None:
        self.kind = kind
        self._list_fn = list_fn
        self._store = store
        self._on_change = on_change
        self._serialize = serialize
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        self._task = asyncio.create_task(self.run(), name=f"watch-{self.kind.lower()}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def run(self) -> None:
        backoff = _INITIAL_BACKOFF
        while True:
            try:
                resource_version = await self.relist()
                backoff = _INITIAL_BACKOFF
                while True:
                    resource_version = await self.watch(resource_version)
            except _ResourceVersionExpired:
                _log.info("watch resource version expired; relisting", kind=self.kind)
            except ApiException as exc:
                if exc.status == 410:
                    _log.info("watch resource version expired; relisting", kind=self.kind)
                    continue
                _log.warning("watch failed", kind=self.kind, status=exc.status, error=str(exc.reason), backoff=backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF)
            except Exception as exc:
                _log.warning("watch connection failed", kind=self.kind, error=str(exc), backoff=backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _MAX_BACKOFF)

    async def relist(self) -> str:
        """List every object of the kind, replace the store's view and return the list's resource version."""
        response = await self._list_fn()
        objects = [self._serialize(item) for item in response.items or []]
        self._store.replace(self.kind, objects)
        _log.info("listed objects", kind=self.kind, count=len(objects))
        for obj in objects:
            namespace, name = _identity(obj)
            self._on_change(namespace, name)
        return str(response.metadata.resource_version or "")

    async def watch(self, resource_version: str) -> str:
        """Follow one watch stream; return the last resource version seen."""
        w = watch.Watch()
        async with w.stream(
            self._list_fn,
            resource_version=resource_version,
            timeout_seconds=_WATCH_TIMEOUT_SECONDS,
            allow_watch_bookmarks=True,
        ) as stream:
            async for event in stream:
                raw = event.get("raw_object") or {}
                resource_version = self.handle_event(event.get("type", ""), raw, resource_version)
        return resource_version

    def handle_event(self, event_type: str, raw: dict[str, Any], resource_version: str) -> str:
        """Apply one watch event to the store; return the updated resource version."""
        if event_type == "ERROR":
            if raw.get("code") == 410:
                raise _ResourceVersionExpired()
            _log.warning("watch error event", kind=self.kind, message=raw.get("message", ""))
            return resource_version

        metadata = raw.get("metadata") or {}
        resource_version = str(metadata.get("resourceVersion") or resource_version)
        if event_type == "BOOKMARK":
            return resource_version

        namespace, name = _identity(raw)
        if not name:
            return resource_version
        if event_type in ("ADDED", "MODIFIED"):
            self._store.update(self.kind, raw)
        elif event_type == "DELETED":
            self._store.remove(self.kind, namespace, name)
        else:
            return resource_version
        self._on_change(namespace, name)
        return resource_version


def _identity(obj: dict[str, Any]) -> tuple[str, str]:
    metadata = obj.get("metadata") or {}
    return str(metadata.get("namespace") or ""), str(metadata.get("name") or "")
