"""Async client for the OCI distribution API.

Only the read operations the exporter needs are implemented: fetching a
manifest (image or index) by tag or digest and fetching an image config
blob. Errors are never retried here; the controller's requeue cadence is
the retry policy.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import httpx
import structlog

from image_exporter.errors import RegistryError
from image_exporter.models.images import Platform
from image_exporter.registry.auth import Keychain, RegistryAuth
from image_exporter.registry.reference import DEFAULT_REGISTRY, Reference, Repository

_log = structlog.get_logger(component="registry.client")

OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"

INDEX_MEDIA_TYPES = frozenset({OCI_IMAGE_INDEX, DOCKER_MANIFEST_LIST})

_MANIFEST_ACCEPT = ", ".join((OCI_IMAGE_INDEX, DOCKER_MANIFEST_LIST, OCI_MANIFEST, DOCKER_MANIFEST))

# Docker Hub references name index.docker.io, but its v2 API is served from here.
_DOCKER_HUB_API = "registry-1.docker.io"


@dataclass(frozen=True)
class Descriptor:
    """A manifest fetched by reference, together with its identity."""

    repository: Repository
    media_type: str
    digest: str
    size: int
    manifest: dict[str, Any] = field(repr=False)
    annotations: dict[str, str] = field(default_factory=dict)

    @property
    def is_index(self) -> bool:
        return self.media_type in INDEX_MEDIA_TYPES


@dataclass(frozen=True)
class IndexEntry:
    """One child manifest listed in a multi-architecture index."""

    digest: str
    media_type: str
    size: int
    platform: Platform | None


@dataclass(frozen=True)
class ImageData:
    """An image manifest and its parsed config file."""

    manifest: dict[str, Any]
    config_file: dict[str, Any]


class RegistryClient:
    """Reads manifests and config blobs from container registries.

    Args:
        timeout: Deadline applied to every registry request.
        transport: Optional httpx transport, used by tests to stub the registry.
    """

    def __init__(
        self,
        timeout: timedelta = timedelta(seconds=30),
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            timeout=timeout.total_seconds(),
            transport=transport,
            follow_redirects=True,
            headers={"User-Agent": "image-exporter"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def stop(self) -> None:
        await self.close()

    async def fetch_descriptor(self, ref: Reference, keychain: Keychain) -> Descriptor:
        """Fetch the manifest *ref* points at, which may be an image or an index."""
        auth = self._auth(ref.repository, keychain)
        response = await self._get(ref.repository, f"manifests/{ref.identifier}", auth, accept=_MANIFEST_ACCEPT)
        return _descriptor_from_response(ref.repository, response)

    async def fetch_index_manifest(self, descriptor: Descriptor) -> list[IndexEntry]:
        """List the child manifests of an index, in registry order."""
        manifests = descriptor.manifest.get("manifests")
        if not isinstance(manifests, list):
            raise RegistryError(f"index {descriptor.digest} has no manifests list")
        entries = []
        for item in manifests:
            if not isinstance(item, dict) or not isinstance(item.get("digest"), str):
                raise RegistryError(f"index {descriptor.digest} contains a malformed manifest entry")
            platform = item.get("platform")
            entries.append(
                IndexEntry(
                    digest=item["digest"],
                    media_type=str(item.get("mediaType", "")),
                    size=blob_size(item.get("size"), f"index {descriptor.digest} entry {item['digest']}"),
                    platform=Platform.from_dict(platform) if isinstance(platform, dict) else None,
                )
            )
        return entries

    async def fetch_image(self, repository: Repository, digest: str, keychain: Keychain) -> ImageData:
        """Fetch the image manifest stored under *digest* and its config blob."""
        auth = self._auth(repository, keychain)
        response = await self._get(repository, f"manifests/{digest}", auth, accept=_MANIFEST_ACCEPT)
        manifest = _json(response, f"manifest {digest}")
        return await self._fetch_config(repository, manifest, auth)

    async def fetch_config(self, repository: Repository, manifest: dict[str, Any], keychain: Keychain) -> ImageData:
        """Fetch the config blob referenced by an already fetched image manifest."""
        return await self._fetch_config(repository, manifest, self._auth(repository, keychain))

    async def _fetch_config(self, repository: Repository, manifest: dict[str, Any], auth: httpx.Auth) -> ImageData:
        config = manifest.get("config")
        if not isinstance(config, dict) or not isinstance(config.get("digest"), str):
            raise RegistryError(f"manifest in {repository.name} has no config descriptor")
        response = await self._get(repository, f"blobs/{config['digest']}", auth)
        return ImageData(manifest=manifest, config_file=_json(response, f"config {config['digest']}"))

    def _auth(self, repository: Repository, keychain: Keychain) -> RegistryAuth:
        return keychain.auth(repository.registry, f"repository:{repository.path}:pull")

    async def _get(
        self,
        repository: Repository,
        path: str,
        auth: httpx.Auth,
        accept: str | None = None,
    ) -> httpx.Response:
        host = _DOCKER_HUB_API if repository.registry == DEFAULT_REGISTRY else repository.registry
        url = f"{repository.scheme}://{host}/v2/{repository.path}/{path}"
        headers = {"Accept": accept} if accept else None
        try:
            response = await self._client.get(url, headers=headers, auth=auth)
        except httpx.TimeoutException as exc:
            raise RegistryError(f"GET {url}: timed out") from exc
        except httpx.HTTPError as exc:
            raise RegistryError(f"GET {url}: {exc}") from exc
        except (httpx.InvalidURL, ValueError, TypeError) as exc:
            # Raised from the auth flow when a challenge advertises an unusable realm.
            raise RegistryError(f"GET {url}: {exc}") from exc
        if not response.is_success:
            _log.debug("registry_non_2xx_response", url=url, status_code=response.status_code)
            raise RegistryError(
                f"GET {url}: unexpected status code {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response


def _descriptor_from_response(repository: Repository, response: httpx.Response) -> Descriptor:
    manifest = _json(response, f"manifest in {repository.name}")
    media_type = manifest.get("mediaType") or response.headers.get("Content-Type", "").split(";")[0].strip()
    digest = response.headers.get("Docker-Content-Digest") or "sha256:" + hashlib.sha256(response.content).hexdigest()
    annotations = manifest.get("annotations")
    return Descriptor(
        repository=repository,
        media_type=str(media_type),
        digest=digest,
        size=len(response.content),
        manifest=manifest,
        annotations={str(k): str(v) for k, v in annotations.items()} if isinstance(annotations, dict) else {},
    )


def blob_size(value: Any, what: str) -> int:
    """Validate a descriptor size field; absent means unknown and counts as 0."""
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise RegistryError(f"{what}: invalid size {value!r}")
    return value


def _json(response: httpx.Response, what: str) -> dict[str, Any]:
    try:
        body = json.loads(response.content)
    except ValueError as exc:
        raise RegistryError(f"{what}: invalid JSON") from exc
    if not isinstance(body, dict):
        raise RegistryError(f"{what}: expected a JSON object")
    return body
