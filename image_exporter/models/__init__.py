"""Core data structures for image-exporter."""

from image_exporter.models.config import ControllerConfig, ExporterConfig, LogConfig, ServerConfig
from image_exporter.models.images import CachedImage, ContainerSpec, Platform, ResolvedImage
from image_exporter.models.reconcile import ReconcileResult, ReconcileState
from image_exporter.models.resources import (
    WATCHED_KINDS,
    GroupVersionKind,
    ObjectKey,
    WatchedResourceKind,
)

__all__ = [
    "WATCHED_KINDS",
    "CachedImage",
    "ContainerSpec",
    "ControllerConfig",
    "ExporterConfig",
    "GroupVersionKind",
    "LogConfig",
    "ObjectKey",
    "Platform",
    "ReconcileResult",
    "ReconcileState",
    "ResolvedImage",
    "ServerConfig",
    "WatchedResourceKind",
]
