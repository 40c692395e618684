"""Application bootstrap for image-exporter.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → object store → image cache
              → registry client → controllers → watchers → metrics server
              → probe server

Shutdown is fully graceful: components are stopped in reverse startup order.
Each component's stop error is caught and logged independently so that a
single component failure does not prevent the rest from shutting down cleanly.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from image_exporter.config import load_config
from image_exporter.models.config import ExporterConfig, split_address
from image_exporter.models.resources import WATCHED_KINDS
from image_exporter.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from image_exporter.cache import ImageCache, ObjectStore
    from image_exporter.controller import Controller
    from image_exporter.registry import RegistryClient

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class ImageExporterApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    ``stop()`` is safe to call on an app that was never started or is
    already stopped.
    """

    def __init__(self, config: ExporterConfig | None = None) -> None:
        self.config = config
        self._api_client: Any = None
        self._store: ObjectStore | None = None
        self._image_cache: ImageCache | None = None
        self._registry: RegistryClient | None = None
        self._controllers: dict[str, Controller] = {}
        self._watchers: list[Any] = []
        self._exporter: Any = None
        self._servers: list[tuple[str, Any]] = []

        # Background tasks that must be cancelled on shutdown
        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            self.config = load_config()

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info(
            "image-exporter starting",
            version=_exporter_version(),
            cache_duration=self.config.controller.cache_duration.total_seconds(),
            platform=str(self.config.controller.platform or ""),
        )

        await self._start_k8s_client()
        self._start_caches()
        self._start_registry()
        await self._start_controllers()
        await self._start_watchers()
        await self._start_metrics_server()
        await self._start_probe_server()

        self._running = True
        self._log.info(
            "image-exporter started",
            metrics_bind_address=self.config.server.metrics_bind_address,
            health_probe_bind_address=self.config.server.health_probe_bind_address,
        )

    # ------------------------------------------------------------------
    # Component startup helpers
    # ------------------------------------------------------------------

    async def _start_k8s_client(self) -> None:
        """Initialise the kubernetes-asyncio client from in-cluster config or kubeconfig."""
        assert self._log is not None
        self._log.debug("starting k8s client")
        try:
            import kubernetes_asyncio.config as k8s_config  # type: ignore[import-untyped]
            from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

            try:
                # load_incluster_config() is synchronous in kubernetes-asyncio
                k8s_config.load_incluster_config()
                self._log.info("k8s client configured from in-cluster service account")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s client configured from kubeconfig")

            self._api_client = k8s_client.ApiClient()
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    def _start_caches(self) -> None:
        from image_exporter.cache import ImageCache, ObjectStore

        assert self._log is not None
        self._store = ObjectStore([k.kind for k in WATCHED_KINDS])
        # One image cache shared by every controller and the exporter, so an
        # image referenced by many objects is fetched once per cache duration.
        self._image_cache = ImageCache()
        self._log.info("caches started", kinds=[k.kind for k in WATCHED_KINDS])

    def _start_registry(self) -> None:
        from image_exporter.registry import RegistryClient

        assert self.config is not None
        self._registry = RegistryClient(timeout=self.config.controller.registry_timeout)

    async def _start_controllers(self) -> None:
        """Build one reconciler and controller per watched kind."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting controllers")
        try:
            from kubernetes_asyncio import client as k8s_client

            from image_exporter.controller import ContainerImageReconciler, Controller
            from image_exporter.registry import KubernetesKeychainFactory
            from image_exporter.resolver import ImageResolver

            assert self._store is not None
            assert self._registry is not None
            keychains = KubernetesKeychainFactory(k8s_client.CoreV1Api(self._api_client))
            resolver = ImageResolver(self._registry, cache=self._image_cache)
            for watched in WATCHED_KINDS:
                reconciler = ContainerImageReconciler(
                    kind=watched,
                    store=self._store,
                    resolver=resolver,
                    keychains=keychains,
                    cache_duration=self.config.controller.cache_duration,
                    platform=self.config.controller.platform,
                )
                controller = Controller(reconciler, workers=self.config.controller.workers)
                await controller.start()
                self._controllers[watched.kind] = controller
        except Exception as exc:
            raise _ComponentError("controllers", exc) from exc

    async def _start_watchers(self) -> None:
        """Start one list/watch loop per watched kind, feeding store and controller."""
        assert self._log is not None
        try:
            from kubernetes_asyncio import client as k8s_client

            from image_exporter.collector import LIST_METHODS, KindWatcher

            assert self._store is not None
            for watched in WATCHED_KINDS:
                api_cls, method = LIST_METHODS[watched.kind]
                api = getattr(k8s_client, api_cls)(self._api_client)
                watcher = KindWatcher(
                    kind=watched.kind,
                    list_fn=getattr(api, method),
                    store=self._store,
                    on_change=self._controllers[watched.kind].enqueue,
                    serialize=self._api_client.sanitize_for_serialization,
                )
                await watcher.start()
                self._watchers.append(watcher)
            self._log.info("watchers started", kinds=[w.kind for w in self._watchers])
        except Exception as exc:
            raise _ComponentError("watchers", exc) from exc

    async def _start_metrics_server(self) -> None:
        """Register the image metrics collector and serve /metrics."""
        assert self.config is not None
        assert self._store is not None
        assert self._image_cache is not None
        try:
            from prometheus_client import REGISTRY

            from image_exporter.api import create_metrics_app
            from image_exporter.metrics import ImageMetricsExporter

            self._exporter = ImageMetricsExporter(self._store, self._image_cache, WATCHED_KINDS)
            REGISTRY.register(self._exporter)
            await self._serve("metrics", create_metrics_app(REGISTRY), self.config.server.metrics_bind_address)
        except Exception as exc:
            raise _ComponentError("metrics_server", exc) from exc

    async def _start_probe_server(self) -> None:
        assert self.config is not None
        assert self._store is not None
        try:
            from image_exporter.api import create_probe_app

            await self._serve(
                "probe",
                create_probe_app(self._store.ready),
                self.config.server.health_probe_bind_address,
            )
        except Exception as exc:
            raise _ComponentError("probe_server", exc) from exc

    async def _serve(self, name: str, app: Any, address: str) -> None:
        import uvicorn  # type: ignore[import-untyped]

        assert self._log is not None
        host, port = split_address(address)
        uv_config = uvicorn.Config(
            app=app,
            host=host,
            port=port,
            log_config=None,  # structlog handles all logging
            access_log=False,
        )
        server = uvicorn.Server(uv_config)
        # Signals are handled by main(), not by uvicorn.
        server.install_signal_handlers = lambda: None  # type: ignore[method-assign]
        task = asyncio.create_task(server.serve(), name=f"{name}-server")
        self._background_tasks.append(task)
        self._servers.append((name, server))
        self._log.info(f"{name} server started", host=host, port=port)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if not self._running and self._log is None:
            # Never started; nothing to do
            return

        log = self._log or get_logger("app")
        log.info("image-exporter shutting down")
        self._running = False

        for _, server in reversed(self._servers):
            server.should_exit = True
        if self._background_tasks:
            _, pending = await asyncio.wait(self._background_tasks, timeout=_SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()
        self._servers.clear()

        if self._exporter is not None:
            from prometheus_client import REGISTRY

            REGISTRY.unregister(self._exporter)
            self._exporter = None

        for watcher in reversed(self._watchers):
            await self._stop_component(f"watcher.{watcher.kind}", watcher)
        self._watchers.clear()
        for kind, controller in reversed(list(self._controllers.items())):
            await self._stop_component(f"controller.{kind}", controller)
        self._controllers.clear()
        await self._stop_component("registry", self._registry)
        self._registry = None
        await self._stop_k8s_client()

        log.info("image-exporter stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() on a component if it has that method, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component stop timed out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component stop raised an error", component=name, error=str(exc))

    async def _stop_k8s_client(self) -> None:
        """Close the kubernetes-asyncio ApiClient connection pool."""
        if self._api_client is None:
            return
        log = self._log or get_logger("app")
        try:
            await self._api_client.close()
        except Exception as exc:
            log.debug("k8s client close raised (non-fatal)", error=str(exc))
        self._api_client = None


def _exporter_version() -> str:
    from image_exporter import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(config: ExporterConfig | None = None) -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = ImageExporterApp(config)
    loop = asyncio.get_running_loop()

    shutdown_task: asyncio.Task[None] | None = None

    def _request_shutdown() -> None:
        nonlocal shutdown_task
        if shutdown_task is not None:
            return
        shutdown_task = asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        # Block until shutdown is triggered (background tasks run concurrently)
        while app._running:
            await asyncio.sleep(1)
    except _ComponentError as exc:
        # A mandatory component failed; log and exit non-zero
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        # stop() clears _running before it has finished; a signal-initiated
        # shutdown must complete before main returns and the loop closes.
        if shutdown_task is not None:
            await shutdown_task
        elif app._running:
            await app.stop()
