"""In-memory cache of resolved image details.

Two tables are kept: an alias table mapping a reference string (usually a
tag) to a digest, and a metadata table mapping a digest to its details and
fetch time. Many tags may alias one digest without duplicating metadata.
Digest references are looked up in the metadata table directly and never
go through the alias table.

Entries are never evicted; the cache grows with the set of distinct
digests observed over the life of the process.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import UTC, datetime

from image_exporter.errors import ImageNotFoundError
from image_exporter.models.images import CachedImage, ResolvedImage
from image_exporter.observability.metrics import image_cache_digests
from image_exporter.registry.reference import Digest, Reference


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class ImageCache:
    """Thread-safe reference -> digest -> CachedImage store.

    A single lock guards both tables and is only held for dictionary
    operations, so readers (the scrape path) never wait on registry I/O.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._digests: dict[str, str] = {}
        self._images: dict[str, CachedImage] = {}

    def get(self, ref: Reference) -> CachedImage:
        """Return the cached details for *ref*.

        Raises:
            ImageNotFoundError: no alias or no metadata exists for *ref*.
        """
        with self._lock:
            if isinstance(ref, Digest):
                digest: str | None = ref.digest
            else:
                digest = self._digests.get(str(ref))
            cached = self._images.get(digest) if digest else None
        if cached is None:
            raise ImageNotFoundError(f"{ref} not found in image cache")
        return cached

    def put(self, ref: Reference, image: ResolvedImage | None) -> None:
        """Alias *ref* to ``image.digest`` and store *image*, replacing any earlier entry."""
        if image is None:
            return
        cached = CachedImage(image=image, fetched_at=self._clock())
        with self._lock:
            self._digests[str(ref)] = image.digest
            self._images[image.digest] = cached
            size = len(self._images)
        image_cache_digests.set(size)

    def __len__(self) -> int:
        with self._lock:
            return len(self._images)
