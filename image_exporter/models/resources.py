"""Kubernetes object kinds the exporter watches."""

from __future__ import annotations

from dataclasses import dataclass

# A structural path into a Kubernetes object, e.g. ("spec", "containers").
Path = tuple[str, ...]

_POD_SPEC_PREFIXES: tuple[Path, ...] = (
    ("spec",),
    ("spec", "template", "spec"),
    ("spec", "jobTemplate", "spec", "template", "spec"),
)

# Order matters: containers are reported in this order within an object.
CONTAINER_PATHS: tuple[Path, ...] = (
    ("spec", "initContainers"),
    ("spec", "containers"),
    ("spec", "ephemeralContainers"),
    ("spec", "template", "spec", "initContainers"),
    ("spec", "template", "spec", "containers"),
    ("spec", "jobTemplate", "spec", "template", "spec", "initContainers"),
    ("spec", "jobTemplate", "spec", "template", "spec", "containers"),
)

IMAGE_PULL_SECRETS_PATHS: tuple[Path, ...] = tuple(p + ("imagePullSecrets",) for p in _POD_SPEC_PREFIXES)

SERVICE_ACCOUNT_NAME_PATHS: tuple[Path, ...] = tuple(p + ("serviceAccountName",) for p in _POD_SPEC_PREFIXES)


@dataclass(frozen=True)
class GroupVersionKind:
    """API group, version and kind of a Kubernetes resource."""

    group: str
    version: str
    kind: str

    def __str__(self) -> str:
        if self.group:
            return f"{self.group}/{self.version}, Kind={self.kind}"
        return f"{self.version}, Kind={self.kind}"


@dataclass(frozen=True)
class WatchedResourceKind:
    """A resource kind whose objects are inspected for container images."""

    gvk: GroupVersionKind
    container_paths: tuple[Path, ...] = CONTAINER_PATHS
    image_pull_secrets_paths: tuple[Path, ...] = IMAGE_PULL_SECRETS_PATHS
    service_account_name_paths: tuple[Path, ...] = SERVICE_ACCOUNT_NAME_PATHS

    @property
    def kind(self) -> str:
        return self.gvk.kind


WATCHED_KINDS: tuple[WatchedResourceKind, ...] = (
    WatchedResourceKind(GroupVersionKind("", "v1", "Pod")),
    WatchedResourceKind(GroupVersionKind("apps", "v1", "Deployment")),
    WatchedResourceKind(GroupVersionKind("apps", "v1", "StatefulSet")),
    WatchedResourceKind(GroupVersionKind("apps", "v1", "DaemonSet")),
    WatchedResourceKind(GroupVersionKind("batch", "v1", "Job")),
    WatchedResourceKind(GroupVersionKind("batch", "v1", "CronJob")),
)


@dataclass(frozen=True)
class ObjectKey:
    """Identifies one object of one kind: the unit of work for a controller."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"
