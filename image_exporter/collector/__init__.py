"""Collector package for image-exporter.

Provides Kubernetes list/watch loops that keep the ObjectStore current
and enqueue changed objects for reconciliation.

Submodules
----------
watcher -- KindWatcher: initial list, watch resumption, 410 relist, exponential back-off.
"""

from image_exporter.collector.watcher import LIST_METHODS, KindWatcher

__all__ = ["LIST_METHODS", "KindWatcher"]
