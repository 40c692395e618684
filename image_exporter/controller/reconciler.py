"""Per-object reconciliation: resolve every image an object references.

Reconciling an object fills the image cache that the metrics exporter
reads from. Tags are mutable, so a successfully reconciled object is
scheduled to be reconciled again after the cache duration plus jitter.
"""

from __future__ import annotations

import random
from datetime import timedelta
from typing import Protocol

import structlog

from image_exporter.cache.object_store import ObjectStore
from image_exporter.errors import ImageExporterError, ReconcileError
from image_exporter.extraction import container_specs, image_pull_secrets, service_account_name
from image_exporter.models.images import Platform, ResolvedImage
from image_exporter.models.reconcile import ReconcileResult, ReconcileState
from image_exporter.models.resources import ObjectKey, WatchedResourceKind
from image_exporter.registry.auth import AuthContext, Keychain


class _ResolverProto(Protocol):
    """Minimal resolver interface required by the reconciler."""

    async def resolve(
        self,
        image: str,
        ttl: timedelta,
        platform: Platform | None,
        keychain: Keychain,
    ) -> ResolvedImage: ...


class _KeychainFactoryProto(Protocol):
    """Builds registry credentials for one object."""

    async def build(self, ctx: AuthContext) -> Keychain: ...


class AnonymousKeychainFactory:
    """Keychain factory that never has credentials."""

    async def build(self, ctx: AuthContext) -> Keychain:
        return Keychain()


def add_jitter(d: timedelta, rng: random.Random | None = None) -> timedelta:
    """Extend *d* by a random amount in ``[0, d/6)``.

    Spreads re-reconciles of objects sharing one cache duration so they do
    not hit the registry at the same moment. Zero or negative durations are
    returned unchanged.
    """
    if d <= timedelta(0):
        return d
    max_jitter_us = int(d.total_seconds() * 1_000_000) // 6
    if max_jitter_us <= 0:
        return d
    jitter_us = (rng or random).randrange(max_jitter_us)
    return d + timedelta(microseconds=jitter_us)


class ContainerImageReconciler:
    """Reconciles the container images described in objects of one kind.

    Args:
        kind:           The watched kind this reconciler handles.
        store:          Object store the object is read from.
        resolver:       Image resolver backed by the shared image cache.
        keychains:      Builds registry credentials from pull secrets.
        cache_duration: Image cache TTL and base requeue delay.
        platform:       Preferred platform for multi-architecture images.
    """

    def __init__(
        self,
        kind: WatchedResourceKind,
        store: ObjectStore,
        resolver: _ResolverProto,
        keychains: _KeychainFactoryProto | None = None,
        cache_duration: timedelta = timedelta(hours=1),
        platform: Platform | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.kind = kind
        self._store = store
        self._resolver = resolver
        self._keychains = keychains or AnonymousKeychainFactory()
        self._cache_duration = cache_duration
        self._platform = platform
        self._rng = rng

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """Resolve every container image of the object identified by *key*.

        Returns an IGNORED result when the object no longer exists and a
        SCHEDULED result with the next requeue delay on success.

        Raises:
            ReconcileError: credentials or any single image could not be
                resolved. No requeue delay is computed; the work queue
                retries with its own backoff.
        """
        gvk = self.kind.gvk
        log = structlog.get_logger(component="reconciler").bind(
            group=gvk.group,
            version=gvk.version,
            kind=gvk.kind,
            namespace=key.namespace,
            name=key.name,
        )
        log.info("Reconciling", state=ReconcileState.PENDING)

        obj = self._store.get(gvk.kind, key.namespace, key.name)
        if obj is None:
            log.debug("object no longer exists", state=ReconcileState.IGNORED)
            return ReconcileResult(state=ReconcileState.IGNORED)

        ctx = AuthContext(
            namespace=key.namespace,
            service_account_name=service_account_name(obj, self.kind.service_account_name_paths),
            image_pull_secrets=tuple(image_pull_secrets(obj, self.kind.image_pull_secrets_paths)),
        )
        try:
            keychain = await self._keychains.build(ctx)
        except ImageExporterError as exc:
            log.warning("constructing keychain failed", state=ReconcileState.FAILED, error=str(exc))
            raise ReconcileError(str(key), exc) from exc

        for container in container_specs(obj, self.kind.container_paths):
            log.info("Fetching image metadata", state=ReconcileState.RESOLVING, image=container.image)
            try:
                img = await self._resolver.resolve(container.image, self._cache_duration, self._platform, keychain)
            except ImageExporterError as exc:
                log.warning(
                    "fetching image details failed",
                    state=ReconcileState.FAILED,
                    image=container.image,
                    error=str(exc),
                )
                raise ReconcileError(str(key), exc) from exc
            log.info("Fetched image metadata", image=container.image, digest=img.digest)

        requeue_after = add_jitter(self._cache_duration, self._rng)
        log.info("Reconciled", state=ReconcileState.SCHEDULED, requeue_after=requeue_after.total_seconds())
        return ReconcileResult(state=ReconcileState.SCHEDULED, requeue_after=requeue_after)
