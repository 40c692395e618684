"""Logging and self-instrumentation for image-exporter.

Submodules:
    logging -- structlog configuration and component loggers.
    metrics -- Prometheus counters and histograms describing the exporter itself.
"""
