"""Registry access for image-exporter.

Submodules:
    reference -- Image reference parsing (tags, digests, Docker Hub defaults).
    auth      -- Keychains built from Kubernetes pull secrets, token auth flow.
    client    -- Async OCI distribution API client (manifests, config blobs).
"""

from image_exporter.registry.auth import AuthContext, Credentials, Keychain, KubernetesKeychainFactory
from image_exporter.registry.client import Descriptor, ImageData, IndexEntry, RegistryClient
from image_exporter.registry.reference import Digest, Reference, Repository, Tag, parse_reference

__all__ = [
    "AuthContext",
    "Credentials",
    "Descriptor",
    "Digest",
    "ImageData",
    "IndexEntry",
    "Keychain",
    "KubernetesKeychainFactory",
    "Reference",
    "RegistryClient",
    "Repository",
    "Tag",
    "parse_reference",
]
