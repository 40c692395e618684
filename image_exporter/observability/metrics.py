"""Prometheus metrics describing the exporter's own behaviour.

These live in the default prometheus-client registry, next to the process
collector, and are served from the same endpoint as the image metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

reconcile_total = Counter(
    "image_exporter_reconcile_total",
    "Reconcile attempts by watched kind and outcome.",
    ["kind", "result"],
)

reconcile_duration_seconds = Histogram(
    "image_exporter_reconcile_duration_seconds",
    "Time spent in one reconcile attempt, including registry calls.",
    ["kind"],
    buckets=(0.005, 0.025, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

registry_requests_total = Counter(
    "image_exporter_registry_requests_total",
    "Image resolutions that reached the registry, by outcome.",
    ["outcome"],
)

image_cache_lookups_total = Counter(
    "image_exporter_image_cache_lookups_total",
    "Image cache lookups made by the resolver, by result (hit, miss, expired).",
    ["result"],
)

image_cache_digests = Gauge(
    "image_exporter_image_cache_digests",
    "Number of distinct image digests held in the image cache.",
)

work_queue_depth = Gauge(
    "image_exporter_work_queue_depth",
    "Keys waiting to be reconciled, by watched kind.",
    ["kind"],
)
