"""FastAPI application factories for image-exporter.

Usage::

    from image_exporter.api.app import create_metrics_app, create_probe_app

    metrics_app = create_metrics_app(registry=REGISTRY)
    probe_app = create_probe_app(readiness=store.ready)

Two apps are served on separate ports: one for Prometheus scrapes and one
for kubelet health probes. Both are used by the production bootstrap
(``image_exporter.app``) and by unit tests.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, generate_latest

_log = structlog.get_logger(component="api.app")


def create_metrics_app(registry: CollectorRegistry = REGISTRY) -> FastAPI:
    """Create the app serving ``GET /metrics`` from *registry*."""
    from image_exporter import __version__

    app = FastAPI(
        title="image-exporter metrics",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.registry = registry

    # A plain def runs in the threadpool: collection takes the image cache
    # lock and must not stall the event loop running the reconcilers.
    @app.get("/metrics")
    def metrics(request: Request) -> Response:
        return Response(content=generate_latest(request.app.state.registry), media_type=CONTENT_TYPE_LATEST)

    _install_error_handler(app)
    return app


def create_probe_app(readiness: Callable[[], bool]) -> FastAPI:
    """Create the app serving ``GET /healthz`` and ``GET /readyz``.

    ``/healthz`` answers as long as the process serves requests; ``/readyz``
    returns 503 until *readiness* reports the object store synced.
    """
    from image_exporter import __version__

    app = FastAPI(
        title="image-exporter probes",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.readiness = readiness

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz(request: Request) -> JSONResponse:
        if request.app.state.readiness():
            return JSONResponse(status_code=200, content={"status": "ok"})
        return JSONResponse(status_code=503, content={"status": "not ready"})

    _install_error_handler(app)
    return app


def _install_error_handler(app: FastAPI) -> None:
    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error=str(exc),
        )
        return JSONResponse(
            status_code=500,
            content={"error": "INTERNAL_ERROR", "detail": "An unexpected error occurred."},
        )
