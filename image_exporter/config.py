"""Configuration loading from environment variables."""

from __future__ import annotations

import os
import re
from datetime import timedelta

from image_exporter.errors import ConfigError
from image_exporter.models.config import ControllerConfig, ExporterConfig, LogConfig, ServerConfig
from image_exporter.models.images import Platform

_DURATION_RE = re.compile(r"([0-9]*\.?[0-9]+)(ns|us|µs|ms|s|m|h)")

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"IMAGE_EXPORTER_{key}", default)


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    raw = _env(key, str(default))
    try:
        val = int(raw)
    except ValueError as exc:
        raise ConfigError(f"IMAGE_EXPORTER_{key} must be an integer, got {raw!r}") from exc
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration such as ``1h``, ``90s`` or ``1h30m``.

    A bare ``0`` is accepted, as is a leading sign.
    """
    text = value.strip()
    sign = 1.0
    if text[:1] in ("+", "-"):
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text or _DURATION_RE.sub("", text):
        raise ConfigError(f"Invalid duration: {value!r}")
    seconds = sum(float(num) * _UNIT_SECONDS[unit] for num, unit in _DURATION_RE.findall(text))
    return timedelta(seconds=sign * seconds)


def parse_platform(value: str) -> Platform | None:
    """Parse a platform preference; an empty string means no preference."""
    if not value:
        return None
    try:
        return Platform.parse(value)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def load_config() -> ExporterConfig:
    """Load configuration from IMAGE_EXPORTER_* environment variables."""
    return ExporterConfig(
        controller=ControllerConfig(
            cache_duration=parse_duration(_env("CACHE_DURATION", "1h")),
            platform=parse_platform(_env("PLATFORM", "linux/amd64")),
            registry_timeout=parse_duration(_env("REGISTRY_TIMEOUT", "30s")),
            workers=_env_int("WORKERS", 2, min_val=1, max_val=32),
        ),
        server=ServerConfig(
            metrics_bind_address=_env("METRICS_BIND_ADDRESS", ":8080"),
            health_probe_bind_address=_env("HEALTH_PROBE_BIND_ADDRESS", ":8081"),
        ),
        log=LogConfig(
            level=_env("LOG_LEVEL", "info"),
        ),
    )
