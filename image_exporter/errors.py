"""Exception hierarchy for image-exporter."""

from __future__ import annotations


class ImageExporterError(Exception):
    """Base class for all image-exporter errors."""


class ConfigError(ImageExporterError):
    """Raised when a configuration value is invalid."""


class ReferenceParseError(ImageExporterError):
    """Raised when an image reference string is malformed."""

    def __init__(self, reference: str, reason: str) -> None:
        super().__init__(f"invalid image reference {reference!r}: {reason}")
        self.reference = reference
        self.reason = reason


class ImageNotFoundError(ImageExporterError):
    """Raised by the image cache when a reference has no cached metadata."""


class RegistryError(ImageExporterError):
    """Raised when the registry cannot be reached or returns an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EmptyIndexError(RegistryError):
    """Raised when a multi-architecture index lists no child manifests."""


class CacheWriteError(ImageExporterError):
    """Raised when resolved image details could not be written to the cache."""


class KeychainError(ImageExporterError):
    """Raised when registry credentials could not be assembled for an object."""


class ReconcileError(ImageExporterError):
    """Raised when a reconcile attempt fails for one object."""

    def __init__(self, key: str, cause: Exception) -> None:
        super().__init__(f"reconciling {key}: {cause}")
        self.key = key
        self.cause = cause


class StoreNotSyncedError(ImageExporterError):
    """Raised when listing a kind whose initial list has not completed."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"object store has not synced kind {kind}")
        self.kind = kind
