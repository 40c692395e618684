"""image-exporter command-line interface.

Exposes:
    cli -- Click command entry point (registered as ``image-exporter`` script).
"""

from image_exporter.cli.main import cli

__all__ = ["cli"]
