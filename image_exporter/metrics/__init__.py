"""Prometheus exposition of container image metrics.

Exposes:
    ImageMetricsExporter -- custom collector reading the object store and image cache.
"""

from image_exporter.metrics.exporter import ImageMetricsExporter

__all__ = ["ImageMetricsExporter"]
