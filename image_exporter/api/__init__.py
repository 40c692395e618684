"""HTTP layer for image-exporter.

Exposes:
    create_metrics_app -- FastAPI app serving Prometheus metrics.
    create_probe_app   -- FastAPI app serving liveness and readiness probes.
"""

from image_exporter.api.app import create_metrics_app, create_probe_app

__all__ = ["create_metrics_app", "create_probe_app"]
