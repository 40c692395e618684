"""image-exporter: Prometheus metrics about the container images running in a cluster."""

__version__ = "0.3.0"
