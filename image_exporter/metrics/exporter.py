"""Scrape-time Prometheus collector for container image metrics.

Each scrape lists every watched object from the ObjectStore and looks up
the images its containers reference in the ImageCache. The registry is
never contacted here: an image the reconcilers have not resolved yet is
reported with an empty digest and no per-digest metrics. Values that went
stale because a later registry call failed keep being served until a
reconcile succeeds again.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Any, Protocol

import structlog
from prometheus_client.core import GaugeMetricFamily, Metric
from prometheus_client.registry import Collector

from image_exporter.cache.image_cache import ImageCache
from image_exporter.errors import ImageExporterError
from image_exporter.extraction import container_specs
from image_exporter.models.images import ResolvedImage
from image_exporter.models.resources import WatchedResourceKind
from image_exporter.registry.reference import parse_reference

_log = structlog.get_logger(component="metrics.exporter")

NAMESPACE = "container_image"

INFO_LABELS = ["group", "version", "kind", "namespace", "name", "jsonpath", "image", "digest"]


class _ListerProto(Protocol):
    """Lists every live object of a kind."""

    def list(self, kind: str) -> list[dict[str, Any]]: ...


def _families() -> dict[str, GaugeMetricFamily]:
    return {
        "info": GaugeMetricFamily(
            f"{NAMESPACE}_container_info",
            "Information about containers running in the cluster, including the image digest resolved by the exporter.",
            labels=INFO_LABELS,
        ),
        "annotation": GaugeMetricFamily(
            f"{NAMESPACE}_annotation",
            "Annotations from the image manifest.",
            labels=["digest", "key", "value"],
        ),
        "label": GaugeMetricFamily(
            f"{NAMESPACE}_label",
            "Labels from the image config.",
            labels=["digest", "key", "value"],
        ),
        "size": GaugeMetricFamily(
            f"{NAMESPACE}_size_bytes",
            "The size of the image in the registry.",
            labels=["digest"],
        ),
        "created": GaugeMetricFamily(
            f"{NAMESPACE}_created",
            "The created date from the image config. Expressed as a Unix Epoch Time.",
            labels=["digest"],
        ),
    }


class ImageMetricsExporter(Collector):
    """prometheus-client collector emitting per-container and per-digest image metrics.

    Args:
        lister: Source of live objects (the ObjectStore).
        cache:  Image cache filled by the reconcilers; only read here.
        kinds:  Watched kinds, scraped in this order.
    """

    def __init__(self, lister: _ListerProto, cache: ImageCache, kinds: Sequence[WatchedResourceKind]) -> None:
        self._lister = lister
        self._cache = cache
        self._kinds = tuple(kinds)

    def describe(self) -> Iterator[Metric]:
        # Registration must not trigger a scrape before the store is synced.
        yield from _families().values()

    def collect(self) -> Iterator[Metric]:
        """Build every family for one scrape.

        Families are yielded only after all kinds were listed; a failure to
        list any kind drops the whole scrape rather than serving a partial one.
        """
        families = _families()
        digests: set[str] = set()
        for watched in self._kinds:
            try:
                objects = self._lister.list(watched.kind)
            except ImageExporterError as exc:
                _log.warning("listing objects failed; skipping scrape", kind=watched.kind, error=str(exc))
                return
            for obj in objects:
                self._collect_object(watched, obj, families, digests)
        yield from families.values()

    def _collect_object(
        self,
        watched: WatchedResourceKind,
        obj: dict[str, Any],
        families: dict[str, GaugeMetricFamily],
        digests: set[str],
    ) -> None:
        gvk = watched.gvk
        metadata = obj.get("metadata") or {}
        for container in container_specs(obj, watched.container_paths):
            img = self._lookup(container.image)
            families["info"].add_metric(
                [
                    gvk.group,
                    gvk.version,
                    gvk.kind,
                    str(metadata.get("namespace") or ""),
                    str(metadata.get("name") or ""),
                    container.json_path,
                    container.image,
                    img.digest if img is not None else "",
                ],
                1.0,
            )

            # Per-digest metrics need the image metadata, and are emitted once per scrape.
            if img is None or img.digest in digests:
                continue
            digests.add(img.digest)

            families["size"].add_metric([img.digest], float(img.size))
            families["created"].add_metric([img.digest], float(int(img.created.timestamp())))
            for key, value in img.annotations.items():
                families["annotation"].add_metric([img.digest, key, value], 1.0)
            for key, value in img.labels.items():
                families["label"].add_metric([img.digest, key, value], 1.0)

    def _lookup(self, image: str) -> ResolvedImage | None:
        try:
            return self._cache.get(parse_reference(image)).image
        except ImageExporterError:
            return None
