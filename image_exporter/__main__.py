"""Entry point for `python -m image_exporter`.

Usage:
    python -m image_exporter
    uv run python -m image_exporter
"""

from __future__ import annotations

import asyncio

from image_exporter.app import main

asyncio.run(main())
