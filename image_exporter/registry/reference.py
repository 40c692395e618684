"""Image reference parsing.

A reference names an image either by tag (``nginx:1.25``, mutable) or by
digest (``nginx@sha256:...``, immutable). Names without a registry resolve
against Docker Hub, and single-segment Docker Hub names gain the
``library/`` prefix.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from image_exporter.errors import ReferenceParseError

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"

_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^(sha256:[a-f0-9]{64}|sha512:[a-f0-9]{128})$")
_REGISTRY_RE = re.compile(r"^[a-zA-Z0-9.-]+(?::[0-9]+)?$|^\[[0-9a-fA-F:]+\](?::[0-9]+)?$")


@dataclass(frozen=True)
class Repository:
    """A registry host plus repository path."""

    registry: str
    path: str

    @property
    def name(self) -> str:
        return f"{self.registry}/{self.path}"

    @property
    def scheme(self) -> str:
        """``http`` for local registries, ``https`` for everything else."""
        if self.registry.startswith("["):
            host = self.registry.split("]", 1)[0] + "]"
        else:
            host = self.registry.rsplit(":", 1)[0]
        if host in ("localhost", "127.0.0.1", "[::1]") or host.endswith((".localhost", ".local")):
            return "http"
        return "https"


@dataclass(frozen=True)
class Tag:
    """A reference by tag."""

    repository: Repository
    tag: str
    original: str

    @property
    def identifier(self) -> str:
        return self.tag

    def __str__(self) -> str:
        return self.original


@dataclass(frozen=True)
class Digest:
    """A reference by content digest."""

    repository: Repository
    digest: str
    original: str

    @property
    def identifier(self) -> str:
        return self.digest

    def __str__(self) -> str:
        return self.original


Reference = Tag | Digest


def parse_reference(value: str) -> Reference:
    """Parse an image reference string.

    Raises:
        ReferenceParseError: the string is not a valid tag or digest reference.
    """
    if not value or value != value.strip():
        raise ReferenceParseError(value, "empty or padded with whitespace")

    name, at, digest = value.partition("@")
    if at:
        if not _DIGEST_RE.match(digest):
            raise ReferenceParseError(value, f"invalid digest {digest!r}")
        # name:tag@digest refers to the digest; the tag is informational.
        name, _ = _split_tag(name)
        return Digest(repository=_parse_repository(value, name), digest=digest, original=value)

    name, tag = _split_tag(name)
    if tag is None:
        tag = DEFAULT_TAG
    elif not _TAG_RE.match(tag):
        raise ReferenceParseError(value, f"invalid tag {tag!r}")
    return Tag(repository=_parse_repository(value, name), tag=tag, original=value)


def _split_tag(name: str) -> tuple[str, str | None]:
    slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > slash:
        return name[:colon], name[colon + 1 :]
    return name, None


def _parse_repository(original: str, name: str) -> Repository:
    registry = DEFAULT_REGISTRY
    path = name
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        if not _REGISTRY_RE.match(first):
            raise ReferenceParseError(original, f"invalid registry {first!r}")
        registry, path = first, rest

    if registry == "docker.io":
        registry = DEFAULT_REGISTRY
    if registry == DEFAULT_REGISTRY and "/" not in path:
        path = f"library/{path}"

    if len(path) > 255:
        raise ReferenceParseError(original, "repository name longer than 255 characters")
    for component in path.split("/"):
        if not _COMPONENT_RE.match(component):
            raise ReferenceParseError(original, f"invalid repository component {component!r}")
    return Repository(registry=registry, path=path)
