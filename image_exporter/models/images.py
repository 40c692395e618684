"""Image metadata data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

# The creation time reported for configs that omit ``created``.
ZERO_TIME = datetime(1, 1, 1, tzinfo=UTC)


@dataclass(frozen=True)
class ResolvedImage:
    """Facts about one image, identified by its digest.

    Every attribute other than ``digest`` belongs to the content behind the
    digest, so a value for a given digest never changes.
    """

    digest: str
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    size: int = 0
    created: datetime = ZERO_TIME


@dataclass(frozen=True)
class CachedImage:
    """A ResolvedImage together with the time it was fetched from the registry."""

    image: ResolvedImage
    fetched_at: datetime

    def fresh(self, ttl_seconds: float, now: datetime) -> bool:
        """Return True while ``now`` is strictly before ``fetched_at + ttl``."""
        return now.timestamp() < self.fetched_at.timestamp() + ttl_seconds


@dataclass(frozen=True)
class ContainerSpec:
    """A container found in a Kubernetes object.

    ``json_path`` locates the container inside the object, for example
    ``{.spec.template.spec.containers[0]}``.
    """

    json_path: str
    name: str
    image: str


@dataclass(frozen=True)
class Platform:
    """An OS/architecture pair, optionally narrowed by variant and OS version."""

    os: str
    architecture: str
    variant: str = ""
    os_version: str = ""
    os_features: tuple[str, ...] = ()
    features: tuple[str, ...] = ()

    @classmethod
    def parse(cls, value: str) -> Platform:
        """Parse ``os/arch[/variant][:osversion]``, e.g. ``linux/arm64/v8``."""
        spec, _, os_version = value.partition(":")
        parts = spec.split("/")
        if len(parts) < 2 or len(parts) > 3 or not all(parts):
            raise ValueError(f"Invalid platform: {value!r}. Expected os/arch[/variant][:osversion]")
        return cls(
            os=parts[0],
            architecture=parts[1],
            variant=parts[2] if len(parts) == 3 else "",
            os_version=os_version,
        )

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> Platform:
        """Build a Platform from a manifest index ``platform`` object."""
        return cls(
            os=str(data.get("os", "")),
            architecture=str(data.get("architecture", "")),
            variant=str(data.get("variant", "")),
            os_version=str(data.get("os.version", "")),
            os_features=_str_tuple(data.get("os.features")),
            features=_str_tuple(data.get("features")),
        )

    def __str__(self) -> str:
        value = f"{self.os}/{self.architecture}"
        if self.variant:
            value += f"/{self.variant}"
        if self.os_version:
            value += f":{self.os_version}"
        return value


def _str_tuple(value: object) -> tuple[str, ...]:
    if isinstance(value, list):
        return tuple(str(v) for v in value)
    return ()
