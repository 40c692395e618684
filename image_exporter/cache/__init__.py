"""Cache layer for image-exporter.

Submodules:
    image_cache  -- Tag/digest aliasing cache of resolved image details.
    object_store -- Watch-fed store of the Kubernetes objects being inspected.
"""

from image_exporter.cache.image_cache import ImageCache
from image_exporter.cache.object_store import ObjectStore

__all__ = ["ImageCache", "ObjectStore"]
