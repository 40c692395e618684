"""Image resolution: reference -> ResolvedImage, through the cache.

A cached entry younger than the TTL is returned without I/O. Otherwise the
registry is queried, a single image is picked from multi-architecture
indexes, its metadata extracted, and the result written through to the
cache before it is returned.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from image_exporter.cache.image_cache import ImageCache
from image_exporter.errors import CacheWriteError, EmptyIndexError, ImageNotFoundError, RegistryError
from image_exporter.models.images import ZERO_TIME, Platform, ResolvedImage
from image_exporter.observability.metrics import image_cache_lookups_total, registry_requests_total
from image_exporter.registry.auth import Keychain
from image_exporter.registry.client import Descriptor, ImageData, IndexEntry, RegistryClient, blob_size
from image_exporter.registry.reference import Reference, parse_reference

_log = structlog.get_logger(component="resolver")

# RFC 3339 with an optional fraction of up to nine digits, as written by image builders.
_CREATED_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$", re.IGNORECASE)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class ImageResolver:
    """Resolves image references against the registry, deduplicated by the cache.

    Args:
        registry: Registry client used on cache miss or expiry.
        cache:    Optional image cache. Without one every call hits the registry.
        clock:    Source of the current time, compared against fetch times.
    """

    def __init__(
        self,
        registry: RegistryClient,
        cache: ImageCache | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._cache = cache
        self._clock = clock

    async def resolve(
        self,
        image: str,
        ttl: timedelta,
        platform: Platform | None,
        keychain: Keychain,
    ) -> ResolvedImage:
        """Return details for *image*, fetching from the registry when the cache can't answer.

        Raises:
            ReferenceParseError: *image* is not a valid reference.
            RegistryError:       the registry call failed (EmptyIndexError for empty indexes).
            CacheWriteError:     the resolved details could not be cached.
        """
        ref = parse_reference(image)

        if self._cache is not None:
            try:
                cached = self._cache.get(ref)
            except ImageNotFoundError:
                image_cache_lookups_total.labels(result="miss").inc()
            else:
                if cached.fresh(ttl.total_seconds(), self._clock()):
                    image_cache_lookups_total.labels(result="hit").inc()
                    return cached.image
                image_cache_lookups_total.labels(result="expired").inc()

        try:
            resolved = await self._fetch(ref, platform, keychain)
        except RegistryError:
            registry_requests_total.labels(outcome="error").inc()
            raise
        registry_requests_total.labels(outcome="success").inc()

        if self._cache is not None:
            try:
                self._cache.put(ref, resolved)
            except Exception as exc:
                raise CacheWriteError(f"putting details for {resolved.digest} into the cache: {exc}") from exc

        return resolved

    async def _fetch(self, ref: Reference, platform: Platform | None, keychain: Keychain) -> ResolvedImage:
        descriptor = await self._registry.fetch_descriptor(ref, keychain)
        data = await self._image_data(descriptor, platform, keychain)
        _log.debug("fetched image from registry", image=str(ref), digest=descriptor.digest)
        return extract_image(descriptor, data)

    async def _image_data(self, descriptor: Descriptor, platform: Platform | None, keychain: Keychain) -> ImageData:
        if not descriptor.is_index:
            return await self._registry.fetch_config(descriptor.repository, descriptor.manifest, keychain)

        entries = await self._registry.fetch_index_manifest(descriptor)
        if not entries:
            raise EmptyIndexError(f"no manifests in index {descriptor.repository.name}@{descriptor.digest}")
        entry = select_manifest(entries, platform)
        return await self._registry.fetch_image(descriptor.repository, entry.digest, keychain)


def select_manifest(entries: Sequence[IndexEntry], platform: Platform | None) -> IndexEntry:
    """Pick the first entry whose platform equals *platform*, else the first entry.

    Registry order is preserved; nothing is sorted and matching is exact.
    """
    if platform is not None:
        for entry in entries:
            if entry.platform == platform:
                return entry
    return entries[0]


def extract_image(descriptor: Descriptor, data: ImageData) -> ResolvedImage:
    """Build a ResolvedImage from a descriptor and the chosen image's manifest and config."""
    config = data.config_file.get("config") or {}
    labels = config.get("Labels") if isinstance(config, dict) else None
    return ResolvedImage(
        digest=descriptor.digest,
        annotations=dict(descriptor.annotations),
        labels={str(k): str(v) for k, v in labels.items()} if isinstance(labels, dict) else {},
        size=image_size(data.manifest),
        created=parse_created(data.config_file.get("created")),
    )


def image_size(manifest: dict[str, Any]) -> int:
    """Return the config blob size plus the size of every layer."""
    size = 0
    config = manifest.get("config")
    if isinstance(config, dict):
        size += blob_size(config.get("size"), "config descriptor")
    for layer in manifest.get("layers") or []:
        if isinstance(layer, dict):
            size += blob_size(layer.get("size"), f"layer {layer.get('digest')}")
    return size


def parse_created(value: object) -> datetime:
    """Parse the config ``created`` timestamp; absent or unparseable values give ZERO_TIME."""
    if not isinstance(value, str):
        return ZERO_TIME
    match = _CREATED_RE.match(value.strip())
    if not match:
        return ZERO_TIME
    base, fraction, offset = match.groups()
    micros = (fraction or "")[:6].ljust(6, "0")
    offset = "+00:00" if offset.upper() == "Z" else offset
    try:
        return datetime.fromisoformat(f"{base}.{micros}{offset}").astimezone(UTC)
    except ValueError:
        return ZERO_TIME
