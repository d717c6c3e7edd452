from __future__ import annotations

import asyncio
import io
import logging
from typing import Callable, Optional

from PIL import Image, ImageOps

# Author: Daniel Neugent

logger = logging.getLogger(__name__)

JPEG_QUALITY = 85

Thumbnailer = Callable[[bytes, int], bytes]


def render_thumbnail(data: bytes, max_dimension: int) -> bytes:
    """Return JPEG bytes that fit inside a max_dimension square.

    EXIF orientation is applied and metadata is not carried over. Raises
    when the bytes are not a decodable image.
    """
    if max_dimension <= 0:
        raise ValueError("thumbnail size must be positive")
    with Image.open(io.BytesIO(data)) as source:
        img = ImageOps.exif_transpose(source)
        img.thumbnail((max_dimension, max_dimension))
        rgb = img.convert("RGB")
    out = io.BytesIO()
    rgb.save(out, format="JPEG", quality=JPEG_QUALITY)
    return out.getvalue()


async def generate_thumbnail(
    thumbnailer: Thumbnailer,
    data: bytes,
    max_dimension: int,
    *,
    timeout: float,
) -> Optional[bytes]:
    """Run the thumbnailer off the event loop; any failure yields None.

    A thumbnail that does not finish within timeout seconds is abandoned. The
    worker thread may keep running, but its result is discarded.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(thumbnailer, data, max_dimension), timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.warning("thumbnail timed out after=%ss bytes=%s", timeout, len(data))
    except Exception:
        logger.exception("thumbnail failed bytes=%s", len(data))
    return None
