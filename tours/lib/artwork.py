# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Artwork loading for now-playing / lock-screen metadata.

Artwork is read from a local file or fetched over HTTP, re-encoded as JPEG
in a thread pool, and handed out as ``{'base64': str, 'size': (w, h)}``.
Failures return None; artwork is always optional.
"""

import asyncio
import base64
import logging
from concurrent.futures import ThreadPoolExecutor
from io import BytesIO

import aiohttp
from PIL import Image

log = logging.getLogger(__name__)

MAX_ARTWORK_SIZE = 500 * 1024  # 500 KB limit for JPEG output

# Shared thread pool for CPU-bound image processing
_artwork_executor = ThreadPoolExecutor(max_workers=2)


def process_image(image_bytes: bytes) -> dict | None:
    """Convert raw image bytes to a compressed JPEG base64 dict.

    Runs in a thread pool (CPU-bound).  Returns ``{'base64': str, 'size': (w,h)}``
    or None on failure.
    """
    try:
        image = Image.open(BytesIO(image_bytes))
        if image.mode in ("RGBA", "LA", "P"):
            image = image.convert("RGB")

        buf = BytesIO()
        image.save(buf, "JPEG", quality=85)
        if buf.tell() > MAX_ARTWORK_SIZE:
            buf = BytesIO()
            image.save(buf, "JPEG", quality=60)

        buf.seek(0)
        return {
            "base64": base64.b64encode(buf.getvalue()).decode("utf-8"),
            "size": image.size,
        }
    except Exception as e:
        log.warning("Error processing image: %s", e)
        return None


def as_data_uri(artwork: dict | None) -> str | None:
    if not artwork:
        return None
    return f"data:image/jpeg;base64,{artwork['base64']}"


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


async def load_artwork(source: str, session: aiohttp.ClientSession | None = None) -> dict | None:
    """Load artwork from a file path or http(s) URL, return processed dict or None.

    If *session* is None and *source* is a URL, a temporary session is
    created (and closed).
    """
    loop = asyncio.get_running_loop()
    try:
        if source.startswith(("http://", "https://")):
            image_bytes = await _fetch(source, session)
        else:
            image_bytes = await loop.run_in_executor(None, _read_file, source)
    except (OSError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        log.warning("Could not load artwork %s: %s", source, e)
        return None

    if not image_bytes:
        log.warning("Artwork %s is empty", source)
        return None

    return await loop.run_in_executor(_artwork_executor, process_image, image_bytes)


async def _fetch(url: str, session: aiohttp.ClientSession | None) -> bytes:
    close_session = False
    if session is None:
        session = aiohttp.ClientSession()
        close_session = True
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=10)) as resp:
            resp.raise_for_status()
            return await resp.read()
    finally:
        if close_session:
            await session.close()
