"""Shared fixtures for image-exporter integration tests.

Provides an in-process fake registry (served through an httpx mock
transport), a synced object store with realistic workloads, and the
resolver/reconciler/exporter components wired together so tests can
exercise the full pipeline without a cluster or network access.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from image_exporter.cache.image_cache import ImageCache
from image_exporter.cache.object_store import ObjectStore
from image_exporter.registry.client import DOCKER_MANIFEST, OCI_IMAGE_INDEX, RegistryClient
from image_exporter.resolver import ImageResolver

REGISTRY_HOST = "registry.example.com"

# ---------------------------------------------------------------------------
# Fake registry
# ---------------------------------------------------------------------------


def _digest(body: bytes) -> str:
    return "sha256:" + hashlib.sha256(body).hexdigest()


def _encode(obj: dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True).encode()


class FakeRegistry:
    """A tiny OCI registry holding single and multi-architecture images.

    ``push_image`` and ``push_index`` return the manifest digest, the same
    digest a real registry reports in ``Docker-Content-Digest``.
    """

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.manifests: dict[str, bytes] = {}
        self.tags: dict[tuple[str, str], str] = {}
        self.requests: list[httpx.Request] = []
        self.failing = False

    def push_image(
        self,
        repo: str,
        tag: str | None,
        labels: dict[str, str] | None = None,
        created: str = "2024-02-01T08:30:00Z",
        layer_sizes: tuple[int, ...] = (1024,),
        annotations: dict[str, str] | None = None,
    ) -> str:
        config = _encode({"created": created, "os": "linux", "config": {"Labels": labels or {}}})
        config_digest = _digest(config)
        self.blobs[config_digest] = config
        manifest: dict[str, Any] = {
            "schemaVersion": 2,
            "mediaType": DOCKER_MANIFEST,
            "config": {"digest": config_digest, "size": len(config)},
            "layers": [{"digest": _digest(str(i).encode()), "size": s} for i, s in enumerate(layer_sizes)],
        }
        if annotations:
            manifest["annotations"] = annotations
        return self._put_manifest(repo, tag, _encode(manifest))

    def push_index(self, repo: str, tag: str, children: list[tuple[str, dict[str, str]]]) -> str:
        index = {
            "schemaVersion": 2,
            "mediaType": OCI_IMAGE_INDEX,
            "manifests": [
                {"mediaType": DOCKER_MANIFEST, "digest": digest, "size": 1, "platform": platform}
                for digest, platform in children
            ],
        }
        return self._put_manifest(repo, tag, _encode(index))

    def _put_manifest(self, repo: str, tag: str | None, body: bytes) -> str:
        digest = _digest(body)
        self.manifests[digest] = body
        if tag is not None:
            self.tags[(repo, tag)] = digest
        return digest

    def manifest_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if "/manifests/" in r.url.path]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.failing:
            return httpx.Response(503, text="registry unavailable")
        repo, _, rest = request.url.path.removeprefix("/v2/").partition("/manifests/")
        if rest:
            digest = rest if rest.startswith("sha256:") else self.tags.get((repo, rest), "")
            body = self.manifests.get(digest)
            if body is None:
                return httpx.Response(404)
            return httpx.Response(200, content=body, headers={"Docker-Content-Digest": digest})
        _, _, blob = request.url.path.partition("/blobs/")
        if blob in self.blobs:
            return httpx.Response(200, content=self.blobs[blob])
        return httpx.Response(404)


@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
async def registry_client(fake_registry: FakeRegistry) -> AsyncIterator[RegistryClient]:
    client = RegistryClient(transport=httpx.MockTransport(fake_registry.handle))
    yield client
    await client.close()


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------


class Clock:
    """Manually advanced clock shared by the cache and resolver."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def image_cache(clock: Clock) -> ImageCache:
    return ImageCache(clock=clock)


@pytest.fixture
def resolver(registry_client: RegistryClient, image_cache: ImageCache, clock: Clock) -> ImageResolver:
    return ImageResolver(registry_client, cache=image_cache, clock=clock)


# ---------------------------------------------------------------------------
# Workloads
# ---------------------------------------------------------------------------


def make_deployment(name: str, images: list[str], namespace: str = "shop") -> dict[str, Any]:
    """Create a Deployment dict as returned by the API server."""
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"namespace": namespace, "name": name, "resourceVersion": "1"},
        "spec": {
            "template": {
                "spec": {
                    "containers": [{"name": f"c{i}", "image": image} for i, image in enumerate(images)],
                }
            }
        },
    }


def make_pod(name: str, images: list[str], namespace: str = "shop") -> dict[str, Any]:
    """Create a Pod dict as returned by the API server."""
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"namespace": namespace, "name": name, "resourceVersion": "1"},
        "spec": {"containers": [{"name": f"c{i}", "image": image} for i, image in enumerate(images)]},
    }


@pytest.fixture
def object_store() -> ObjectStore:
    store = ObjectStore(["Pod", "Deployment"])
    store.replace("Pod", [])
    store.replace("Deployment", [])
    return store
