"""Reconciliation for image-exporter.

Submodules:
    reconciler -- ContainerImageReconciler: resolves every image of one object, jittered requeue.
    queue      -- WorkQueue: deduplicating keyed queue with delayed and backoff requeues.
    controller -- Controller: worker pool connecting a kind's queue to its reconciler.
"""

from image_exporter.controller.controller import Controller
from image_exporter.controller.queue import WorkQueue
from image_exporter.controller.reconciler import ContainerImageReconciler, add_jitter

__all__ = ["ContainerImageReconciler", "Controller", "WorkQueue", "add_jitter"]
