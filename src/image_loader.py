"""
image_loader.py

Upload intake for card images.

Checks, in order:
    empty        → 400
    too large    → 413  (MAX_FILE_SIZE_MB)
    not an image Pillow recognises as JPEG/PNG → 415

Images with an edge longer than MAX_IMAGE_EDGE are downscaled (aspect ratio
kept) and re-encoded in their original format before they are stored on the
job.  The media type always comes from the decoded bytes, never from the
client's Content-Type or file extension.

prepare_image is CPU-bound — the HTTP layer calls it via asyncio.to_thread.
"""

import io
import logging
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from config import MAX_FILE_SIZE_MB, MAX_IMAGE_EDGE

logger = logging.getLogger(__name__)

_MAX_FILE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024

# Pillow format name → media type sent to the provider.
_MEDIA_TYPES = {
    "JPEG": "image/jpeg",
    "PNG":  "image/png",
}


class ImageRejected(Exception):
    def __init__(self, message: str, status_code: int = 400) -> None:
        self.message     = message
        self.status_code = status_code
        super().__init__(message)


@dataclass
class PreparedImage:
    filename: str
    media_type: str
    data: bytes
    width: int
    height: int
    resized: bool = False


def _downscale(img: Image.Image, fmt: str) -> bytes:
    """Shrink so the longest edge is MAX_IMAGE_EDGE and re-encode as fmt."""
    img.thumbnail((MAX_IMAGE_EDGE, MAX_IMAGE_EDGE))
    if fmt == "JPEG" and img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    buf = io.BytesIO()
    if fmt == "JPEG":
        img.save(buf, format="JPEG", quality=90)
    else:
        img.save(buf, format=fmt)
    return buf.getvalue()


def prepare_image(filename: str, content: bytes) -> PreparedImage:
    """Validate upload bytes and return the image as it will be sent."""
    if not content:
        raise ImageRejected(f"File '{filename}' is empty.", 400)

    if len(content) > _MAX_FILE_BYTES:
        raise ImageRejected(
            f"'{filename}' is too large "
            f"({len(content) // (1024 * 1024)} MB). "
            f"Maximum allowed: {MAX_FILE_SIZE_MB} MB.",
            413,
        )

    try:
        with Image.open(io.BytesIO(content)) as probe:
            fmt = probe.format
            probe.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        logger.warning(f"[{filename}] Not a readable image: {exc}")
        raise ImageRejected(f"'{filename}' is not a valid JPEG or PNG image.", 415) from exc

    media_type = _MEDIA_TYPES.get(fmt or "")
    if media_type is None:
        raise ImageRejected(
            f"'{filename}' is {fmt}; only JPEG and PNG images are accepted.", 415
        )

    # verify() leaves the image unusable — reopen for size / resampling.
    with Image.open(io.BytesIO(content)) as img:
        width, height = img.size
        if max(width, height) <= MAX_IMAGE_EDGE:
            return PreparedImage(filename, media_type, content, width, height)

        img.load()
        data = _downscale(img, fmt)
        new_w, new_h = img.size

    logger.info(
        f"[{filename}] Downscaled {width}x{height} → {new_w}x{new_h} "
        f"({len(content)} → {len(data)} bytes)."
    )
    return PreparedImage(filename, media_type, data, new_w, new_h, resized=True)
