"""Tests for ImageResolver: cache TTL, multi-arch selection and metadata extraction."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from image_exporter.cache.image_cache import ImageCache
from image_exporter.errors import (
    CacheWriteError,
    EmptyIndexError,
    ImageNotFoundError,
    ReferenceParseError,
    RegistryError,
)
from image_exporter.models.images import ZERO_TIME, Platform, ResolvedImage
from image_exporter.registry.auth import Keychain
from image_exporter.registry.client import (
    DOCKER_MANIFEST,
    OCI_IMAGE_INDEX,
    Descriptor,
    ImageData,
    IndexEntry,
)
from image_exporter.registry.reference import parse_reference
from image_exporter.resolver import ImageResolver, parse_created, select_manifest

_T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)
_TTL = timedelta(minutes=10)
_INDEX_DIGEST = "sha256:" + "1" * 64
_ARM_DIGEST = "sha256:" + "a" * 64
_AMD_DIGEST = "sha256:" + "b" * 64
_IMAGE_DIGEST = "sha256:" + "c" * 64

_AMD64 = Platform("linux", "amd64")
_ARM64 = Platform("linux", "arm64", "v8")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _manifest(config_size: int = 100, layer_sizes: tuple[int, ...] = (1000, 2000)) -> dict[str, object]:
    return {
        "schemaVersion": 2,
        "mediaType": DOCKER_MANIFEST,
        "config": {"digest": "sha256:" + "f" * 64, "size": config_size},
        "layers": [{"digest": "sha256:" + f"{i:064x}", "size": s} for i, s in enumerate(layer_sizes)],
    }


def _config(labels: dict[str, str] | None = None, created: str | None = "2024-05-01T10:00:00Z") -> dict[str, object]:
    config: dict[str, object] = {"architecture": "amd64", "os": "linux", "config": {"Labels": labels}}
    if created is not None:
        config["created"] = created
    return config


def _single_descriptor(image: str = "nginx:1.25") -> Descriptor:
    return Descriptor(
        repository=parse_reference(image).repository,
        media_type=DOCKER_MANIFEST,
        digest=_IMAGE_DIGEST,
        size=512,
        manifest=_manifest(),
        annotations={"org.opencontainers.image.source": "https://example.com/nginx"},
    )


def _index_descriptor(image: str = "nginx:1.25") -> Descriptor:
    return Descriptor(
        repository=parse_reference(image).repository,
        media_type=OCI_IMAGE_INDEX,
        digest=_INDEX_DIGEST,
        size=512,
        manifest={"mediaType": OCI_IMAGE_INDEX, "manifests": []},
    )


def _entries() -> list[IndexEntry]:
    return [
        IndexEntry(digest=_ARM_DIGEST, media_type=DOCKER_MANIFEST, size=10, platform=_ARM64),
        IndexEntry(digest=_AMD_DIGEST, media_type=DOCKER_MANIFEST, size=10, platform=_AMD64),
    ]


def _make_registry(descriptor: Descriptor | None = None, entries: list[IndexEntry] | None = None) -> MagicMock:
    registry = MagicMock()
    registry.fetch_descriptor = AsyncMock(return_value=descriptor or _single_descriptor())
    registry.fetch_index_manifest = AsyncMock(return_value=entries if entries is not None else _entries())
    registry.fetch_image = AsyncMock(return_value=ImageData(manifest=_manifest(50, (10,)), config_file=_config()))
    registry.fetch_config = AsyncMock(
        return_value=ImageData(manifest=_manifest(), config_file=_config({"team": "web"}))
    )
    return registry


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


# ---------------------------------------------------------------------------
# Single-platform images
# ---------------------------------------------------------------------------


class TestSingleImage:
    async def test_extracts_digest_size_labels_annotations_created(self) -> None:
        registry = _make_registry()
        resolver = ImageResolver(registry)

        img = await resolver.resolve("nginx:1.25", _TTL, None, Keychain())

        assert img.digest == _IMAGE_DIGEST
        assert img.size == 100 + 1000 + 2000
        assert img.labels == {"team": "web"}
        assert img.annotations == {"org.opencontainers.image.source": "https://example.com/nginx"}
        assert img.created == datetime(2024, 5, 1, 10, 0, 0, tzinfo=UTC)
        registry.fetch_index_manifest.assert_not_awaited()
        registry.fetch_config.assert_awaited_once()

    async def test_registry_error_propagates_without_caching(self) -> None:
        registry = _make_registry()
        registry.fetch_descriptor.side_effect = RegistryError("unauthorized", status_code=401)
        cache = ImageCache()
        resolver = ImageResolver(registry, cache=cache)

        with pytest.raises(RegistryError):
            await resolver.resolve("nginx:1.25", _TTL, None, Keychain())
        assert len(cache) == 0

    async def test_malformed_layer_size_is_a_registry_error(self) -> None:
        manifest = _manifest()
        manifest["layers"] = [
            {"digest": "sha256:" + "0" * 64, "size": None},
            {"digest": "sha256:" + "9" * 64, "size": "big"},
        ]
        registry = _make_registry()
        registry.fetch_config.return_value = ImageData(manifest=manifest, config_file=_config())
        cache = ImageCache()
        resolver = ImageResolver(registry, cache=cache)

        with pytest.raises(RegistryError, match="invalid size"):
            await resolver.resolve("nginx:1.25", _TTL, None, Keychain())
        assert len(cache) == 0

    async def test_missing_sizes_count_as_zero(self) -> None:
        manifest = {
            "config": {"digest": "sha256:" + "f" * 64},
            "layers": [{"digest": "sha256:" + "0" * 64, "size": None}],
        }
        registry = _make_registry()
        registry.fetch_config.return_value = ImageData(manifest=manifest, config_file=_config())
        resolver = ImageResolver(registry)

        img = await resolver.resolve("nginx:1.25", _TTL, None, Keychain())

        assert img.size == 0

    async def test_cancelled_fetch_propagates_and_caches_nothing(self) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_descriptor(*args: object) -> Descriptor:
            started.set()
            await release.wait()
            return _single_descriptor()

        registry = _make_registry()
        registry.fetch_descriptor.side_effect = slow_descriptor
        cache = ImageCache()
        resolver = ImageResolver(registry, cache=cache)

        task = asyncio.create_task(resolver.resolve("nginx:1.25", _TTL, None, Keychain()))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        with pytest.raises(ImageNotFoundError):
            cache.get(parse_reference("nginx:1.25"))
        assert len(cache) == 0
        registry.fetch_config.assert_not_awaited()

    async def test_malformed_reference_raises_parse_error(self) -> None:
        registry = _make_registry()
        resolver = ImageResolver(registry)
        with pytest.raises(ReferenceParseError):
            await resolver.resolve("NOT A REFERENCE", _TTL, None, Keychain())
        registry.fetch_descriptor.assert_not_awaited()


# ---------------------------------------------------------------------------
# Cache and TTL
# ---------------------------------------------------------------------------


class TestCacheTTL:
    async def test_fresh_entry_is_served_without_registry_call(self) -> None:
        clock = _Clock(_T0)
        cache = ImageCache(clock=clock)
        registry = _make_registry()
        resolver = ImageResolver(registry, cache=cache, clock=clock)

        first = await resolver.resolve("nginx:1.25", _TTL, None, Keychain())
        clock.now = _T0 + _TTL - timedelta(seconds=1)
        second = await resolver.resolve("nginx:1.25", _TTL, None, Keychain())

        assert first == second
        assert registry.fetch_descriptor.await_count == 1

    async def test_entry_at_exactly_ttl_is_refetched(self) -> None:
        clock = _Clock(_T0)
        cache = ImageCache(clock=clock)
        registry = _make_registry()
        resolver = ImageResolver(registry, cache=cache, clock=clock)

        await resolver.resolve("nginx:1.25", _TTL, None, Keychain())
        clock.now = _T0 + _TTL
        await resolver.resolve("nginx:1.25", _TTL, None, Keychain())

        assert registry.fetch_descriptor.await_count == 2
        assert cache.get(parse_reference("nginx:1.25")).fetched_at == _T0 + _TTL

    async def test_zero_ttl_always_refetches(self) -> None:
        clock = _Clock(_T0)
        cache = ImageCache(clock=clock)
        registry = _make_registry()
        resolver = ImageResolver(registry, cache=cache, clock=clock)

        await resolver.resolve("nginx:1.25", timedelta(0), None, Keychain())
        await resolver.resolve("nginx:1.25", timedelta(0), None, Keychain())

        assert registry.fetch_descriptor.await_count == 2

    async def test_digest_reference_hits_metadata_cached_under_tag(self) -> None:
        clock = _Clock(_T0)
        cache = ImageCache(clock=clock)
        registry = _make_registry()
        resolver = ImageResolver(registry, cache=cache, clock=clock)

        await resolver.resolve("nginx:1.25", _TTL, None, Keychain())
        img = await resolver.resolve(f"nginx@{_IMAGE_DIGEST}", _TTL, None, Keychain())

        assert img.digest == _IMAGE_DIGEST
        assert registry.fetch_descriptor.await_count == 1

    async def test_digest_reference_does_not_use_unrelated_alias(self) -> None:
        """A cached tag pointing elsewhere never satisfies a digest lookup."""
        clock = _Clock(_T0)
        cache = ImageCache(clock=clock)
        other_digest = "sha256:" + "d" * 64
        cache.put(parse_reference("nginx:1.25"), ResolvedImage(digest=other_digest))
        registry = _make_registry()
        resolver = ImageResolver(registry, cache=cache, clock=clock)

        await resolver.resolve(f"nginx@{_IMAGE_DIGEST}", _TTL, None, Keychain())

        registry.fetch_descriptor.assert_awaited_once()

    async def test_cache_write_failure_is_an_error(self) -> None:
        cache = MagicMock()
        cache.get.side_effect = ImageNotFoundError("nginx:1.25")
        cache.put.side_effect = RuntimeError("disk full")
        resolver = ImageResolver(_make_registry(), cache=cache)

        with pytest.raises(CacheWriteError):
            await resolver.resolve("nginx:1.25", _TTL, None, Keychain())

    async def test_unexpected_cache_read_error_propagates(self) -> None:
        cache = MagicMock()
        cache.get.side_effect = RuntimeError("corrupt")
        registry = _make_registry()
        resolver = ImageResolver(registry, cache=cache)

        with pytest.raises(RuntimeError):
            await resolver.resolve("nginx:1.25", _TTL, None, Keychain())
        registry.fetch_descriptor.assert_not_awaited()


# ---------------------------------------------------------------------------
# Multi-architecture indexes
# ---------------------------------------------------------------------------


class TestMultiArch:
    async def test_platform_preference_selects_matching_child(self) -> None:
        registry = _make_registry(descriptor=_index_descriptor())
        resolver = ImageResolver(registry)

        img = await resolver.resolve("nginx:1.25", _TTL, _AMD64, Keychain())

        registry.fetch_image.assert_awaited_once()
        assert registry.fetch_image.await_args.args[1] == _AMD_DIGEST
        # The reported digest is the one the reference resolved to.
        assert img.digest == _INDEX_DIGEST
        assert img.size == 50 + 10

    async def test_no_preference_selects_first_child(self) -> None:
        registry = _make_registry(descriptor=_index_descriptor())
        resolver = ImageResolver(registry)

        await resolver.resolve("nginx:1.25", _TTL, None, Keychain())

        assert registry.fetch_image.await_args.args[1] == _ARM_DIGEST

    async def test_unmatched_preference_falls_back_to_first_child(self) -> None:
        registry = _make_registry(descriptor=_index_descriptor())
        resolver = ImageResolver(registry)

        await resolver.resolve("nginx:1.25", _TTL, Platform("windows", "amd64"), Keychain())

        assert registry.fetch_image.await_args.args[1] == _ARM_DIGEST

    async def test_empty_index_raises(self) -> None:
        registry = _make_registry(descriptor=_index_descriptor(), entries=[])
        resolver = ImageResolver(registry)

        with pytest.raises(EmptyIndexError):
            await resolver.resolve("nginx:1.25", _TTL, None, Keychain())
        registry.fetch_image.assert_not_awaited()


class TestSelectManifest:
    def test_match_requires_full_platform_equality(self) -> None:
        """linux/arm64 does not match a linux/arm64/v8 child."""
        entries = [
            IndexEntry(digest=_AMD_DIGEST, media_type="", size=0, platform=_AMD64),
            IndexEntry(digest=_ARM_DIGEST, media_type="", size=0, platform=_ARM64),
        ]
        assert select_manifest(entries, Platform("linux", "arm64")).digest == _AMD_DIGEST
        assert select_manifest(entries, Platform("linux", "arm64", "v8")).digest == _ARM_DIGEST

    def test_first_match_wins_among_duplicates(self) -> None:
        entries = [
            IndexEntry(digest=_ARM_DIGEST, media_type="", size=0, platform=None),
            IndexEntry(digest=_AMD_DIGEST, media_type="", size=0, platform=_AMD64),
            IndexEntry(digest=_IMAGE_DIGEST, media_type="", size=0, platform=_AMD64),
        ]
        assert select_manifest(entries, _AMD64).digest == _AMD_DIGEST


class TestParseCreated:
    def test_nanosecond_precision_is_truncated(self) -> None:
        assert parse_created("2024-05-01T10:00:00.123456789Z") == datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=UTC)

    def test_offset_is_converted_to_utc(self) -> None:
        assert parse_created("2024-05-01T12:00:00+02:00") == datetime(2024, 5, 1, 10, 0, 0, tzinfo=UTC)

    def test_missing_or_invalid_gives_zero_time(self) -> None:
        assert parse_created(None) == ZERO_TIME
        assert parse_created("yesterday") == ZERO_TIME
        assert ZERO_TIME.timestamp() == -62135596800
