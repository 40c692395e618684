"""Controller: a pool of workers draining one kind's work queue into its reconciler."""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta

import structlog

from image_exporter.controller.queue import WorkQueue
from image_exporter.controller.reconciler import ContainerImageReconciler
from image_exporter.errors import ReconcileError
from image_exporter.models.reconcile import ReconcileState
from image_exporter.models.resources import ObjectKey
from image_exporter.observability.metrics import reconcile_duration_seconds, reconcile_total, work_queue_depth

_log = structlog.get_logger(component="controller")


class Controller:
    """Runs reconcile attempts for one watched kind.

    Keys from the queue are processed by ``workers`` concurrent tasks; the
    queue guarantees one object is never reconciled by two workers at once.
    Failed attempts are retried with the queue's per-key backoff, successful
    ones are requeued after the delay the reconciler asks for.
    """

    def __init__(
        self,
        reconciler: ContainerImageReconciler,
        queue: WorkQueue[ObjectKey] | None = None,
        workers: int = 2,
    ) -> None:
        self.reconciler = reconciler
        self.queue: WorkQueue[ObjectKey] = queue if queue is not None else WorkQueue()
        self._workers = workers
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def kind(self) -> str:
        return self.reconciler.kind.kind

    def enqueue(self, namespace: str, name: str) -> None:
        self.queue.add(ObjectKey(self.kind, namespace, name))
        work_queue_depth.labels(kind=self.kind).set(len(self.queue))

    async def start(self) -> None:
        for i in range(self._workers):
            self._tasks.append(asyncio.create_task(self._worker(), name=f"controller-{self.kind.lower()}-{i}"))
        _log.info("controller started", kind=self.kind, workers=self._workers)

    async def stop(self) -> None:
        self.queue.shutdown()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        _log.info("controller stopped", kind=self.kind)

    async def _worker(self) -> None:
        while True:
            key = await self.queue.get()
            if key is None:
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)
                work_queue_depth.labels(kind=self.kind).set(len(self.queue))

    async def process(self, key: ObjectKey) -> ReconcileState:
        """Run one reconcile attempt for *key* and schedule what comes next."""
        started = time.monotonic()
        try:
            result = await self.reconciler.reconcile(key)
        except ReconcileError as exc:
            _log.error("reconcile failed", key=str(key), error=str(exc.cause), requeues=self.queue.num_requeues(key))
            self.queue.add_rate_limited(key)
            reconcile_total.labels(kind=self.kind, result=ReconcileState.FAILED).inc()
            return ReconcileState.FAILED
        except Exception as exc:
            _log.error("reconcile raised an unexpected error", key=str(key), error=str(exc))
            self.queue.add_rate_limited(key)
            reconcile_total.labels(kind=self.kind, result=ReconcileState.FAILED).inc()
            return ReconcileState.FAILED
        finally:
            reconcile_duration_seconds.labels(kind=self.kind).observe(time.monotonic() - started)

        self.queue.forget(key)
        if result.requeue_after > timedelta(0):
            self.queue.add_after(key, result.requeue_after)
        reconcile_total.labels(kind=self.kind, result=result.state).inc()
        return result.state
