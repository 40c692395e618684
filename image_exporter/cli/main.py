"""Command line entry point.

Flags override the matching IMAGE_EXPORTER_* environment variables.
"""

from __future__ import annotations

import asyncio

import click

from image_exporter import __version__
from image_exporter.config import load_config, parse_duration, parse_platform
from image_exporter.errors import ConfigError
from image_exporter.models.config import ControllerConfig, ExporterConfig, LogConfig, ServerConfig


def build_config(
    metrics_bind_address: str | None = None,
    health_probe_bind_address: str | None = None,
    platform: str | None = None,
    cache_duration: str | None = None,
    log_level: str | None = None,
) -> ExporterConfig:
    """Merge command line flags over the environment configuration."""
    base = load_config()
    controller = base.controller
    return ExporterConfig(
        controller=ControllerConfig(
            cache_duration=parse_duration(cache_duration) if cache_duration is not None else controller.cache_duration,
            platform=parse_platform(platform) if platform is not None else controller.platform,
            registry_timeout=controller.registry_timeout,
            workers=controller.workers,
        ),
        server=ServerConfig(
            metrics_bind_address=metrics_bind_address or base.server.metrics_bind_address,
            health_probe_bind_address=health_probe_bind_address or base.server.health_probe_bind_address,
        ),
        log=LogConfig(level=log_level or base.log.level),
    )


@click.command(name="image-exporter", help="Export metrics about container images in a Kubernetes cluster.")
@click.version_option(__version__, prog_name="image-exporter")
@click.option("--metrics-bind-address", default=None, help="The address the metric endpoint binds to. [default: :8080]")
@click.option(
    "--health-probe-bind-address", default=None, help="The address the probe endpoint binds to. [default: :8081]"
)
@click.option(
    "--platform",
    default=None,
    help="The default platform to resolve multi-arch images to; empty for the first image. [default: linux/amd64]",
)
@click.option(
    "--cache-duration",
    default=None,
    help="How long to cache image details for before querying the registry again. [default: 1h]",
)
@click.option("--log-level", type=click.Choice(["debug", "info", "warning", "error"]), default=None)
def cli(
    metrics_bind_address: str | None,
    health_probe_bind_address: str | None,
    platform: str | None,
    cache_duration: str | None,
    log_level: str | None,
) -> None:
    try:
        config = build_config(metrics_bind_address, health_probe_bind_address, platform, cache_duration, log_level)
    except ConfigError as exc:
        raise click.BadParameter(str(exc)) from exc

    from image_exporter.app import main

    asyncio.run(main(config))
