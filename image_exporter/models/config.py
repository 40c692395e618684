"""Configuration data structures.

Each dataclass validates its fields on construction so that an invalid
configuration fails at startup rather than on first use.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from image_exporter.errors import ConfigError
from image_exporter.models.images import Platform

_VALID_LOG_LEVELS = frozenset({"debug", "info", "warning", "error"})


@dataclass
class ControllerConfig:
    """Reconciliation and image resolution settings.

    ``cache_duration`` is both the image cache TTL and the base delay before
    an object is reconciled again. A zero or negative value disables
    time-based re-checks; objects are then only reconciled on watch events.
    ``platform`` selects the image from multi-architecture indexes; ``None``
    always takes the first image in the index.
    """

    cache_duration: timedelta = timedelta(hours=1)
    platform: Platform | None = field(default_factory=lambda: Platform("linux", "amd64"))
    registry_timeout: timedelta = timedelta(seconds=30)
    workers: int = 2

    def __post_init__(self) -> None:
        if self.registry_timeout <= timedelta(0):
            raise ConfigError(f"registry_timeout must be positive, got {self.registry_timeout}")
        if not 1 <= self.workers <= 32:
            raise ConfigError(f"workers must be between 1 and 32, got {self.workers}")


@dataclass
class ServerConfig:
    """Bind addresses of the metrics and health probe endpoints."""

    metrics_bind_address: str = ":8080"
    health_probe_bind_address: str = ":8081"

    def __post_init__(self) -> None:
        for name in ("metrics_bind_address", "health_probe_bind_address"):
            split_address(getattr(self, name))


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"

    def __post_init__(self) -> None:
        if self.level.lower() not in _VALID_LOG_LEVELS:
            raise ConfigError(f"Invalid log level: {self.level}. Must be one of {sorted(_VALID_LOG_LEVELS)}")
        self.level = self.level.lower()


@dataclass
class ExporterConfig:
    """Top-level image-exporter configuration."""

    controller: ControllerConfig = field(default_factory=ControllerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    log: LogConfig = field(default_factory=LogConfig)


def split_address(address: str) -> tuple[str, int]:
    """Split a ``host:port`` bind address; an empty host binds every interface."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit() or not 0 < int(port) < 65536:
        raise ConfigError(f"Invalid bind address: {address!r}. Expected [host]:port")
    return host.strip("[]") or "0.0.0.0", int(port)
