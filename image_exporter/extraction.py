"""Structural extraction of container details from Kubernetes objects.

Workload objects nest pod specs at different depths (Pod, Deployment,
CronJob, ...). Rather than typing each kind, objects are walked as plain
dicts along a fixed list of known paths. Missing paths and malformed
entries are skipped; extraction never raises.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from image_exporter.models.images import ContainerSpec
from image_exporter.models.resources import (
    CONTAINER_PATHS,
    IMAGE_PULL_SECRETS_PATHS,
    SERVICE_ACCOUNT_NAME_PATHS,
    Path,
)

_MISSING = object()


def nested_get(obj: Any, path: Path) -> Any:
    """Follow *path* through nested dicts, returning None if any step is absent."""
    current = obj
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key, _MISSING)
        if current is _MISSING:
            return None
    return current


def _nested_list(obj: Any, path: Path) -> list[Any]:
    value = nested_get(obj, path)
    return value if isinstance(value, list) else []


def container_specs(obj: dict[str, Any], paths: Sequence[Path] = CONTAINER_PATHS) -> list[ContainerSpec]:
    """Return every well-formed container in *obj*, in path order then array order."""
    specs: list[ContainerSpec] = []
    for path in paths:
        for i, container in enumerate(_nested_list(obj, path)):
            if not isinstance(container, dict):
                continue
            name = container.get("name")
            image = container.get("image")
            if not isinstance(name, str) or not isinstance(image, str):
                continue
            specs.append(ContainerSpec(json_path=json_path(path, i), name=name, image=image))
    return specs


def image_pull_secrets(obj: dict[str, Any], paths: Sequence[Path] = IMAGE_PULL_SECRETS_PATHS) -> list[str]:
    """Return pull secret names from every known location, in path order."""
    secrets: list[str] = []
    for path in paths:
        for ref in _nested_list(obj, path):
            if isinstance(ref, dict) and isinstance(ref.get("name"), str):
                secrets.append(ref["name"])
    return secrets


def service_account_name(obj: dict[str, Any], paths: Sequence[Path] = SERVICE_ACCOUNT_NAME_PATHS) -> str:
    """Return the first non-empty service account name, or an empty string."""
    for path in paths:
        value = nested_get(obj, path)
        if isinstance(value, str) and value:
            return value
    return ""


def json_path(path: Path, index: int) -> str:
    """Format a locator such as ``{.spec.containers[0]}``."""
    return "{." + ".".join(path) + f"[{index}]}}"
