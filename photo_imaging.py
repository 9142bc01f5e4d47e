"""Pillow-backed image services: metadata, thumbnails and rotated renditions."""

from __future__ import annotations

import enum
import hashlib
import io
import logging
import os
import threading
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, ImageOps

JPEG_QUALITY = 80
EXIF_ORIENTATION_TAG = 0x0112
THUMBNAIL_CACHE_FLAVORS = ("large", "normal")

logger = logging.getLogger(__name__)

# Decoding full-size photos is memory hungry, so only one runs at a time.
_RENDER_LOCK = threading.Lock()


class ConversionError(Exception):
    """An image could not be decoded or re-encoded."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Unable to convert {path}: {reason}")
        self.path = path
        self.reason = reason


class ImageOrientation(enum.Enum):
    ROTATE_NONE = (1, 0)
    ROTATE_90 = (6, 90)
    ROTATE_180 = (3, 180)
    ROTATE_270 = (8, 270)

    def __init__(self, exif_value: int, degrees: int):
        self.exif_value = exif_value
        self.degrees = degrees

    @property
    def swaps_dimensions(self) -> bool:
        return self.degrees in (90, 270)

    @classmethod
    def from_exif(cls, value: Optional[int]) -> Optional["ImageOrientation"]:
        for orientation in cls:
            if orientation.exif_value == value:
                return orientation
        return None


def _thumbnail_cache_home() -> Path:
    configured = os.environ.get("XDG_CACHE_HOME")
    base = Path(configured) if configured else Path.home() / ".cache"
    return base / "thumbnails"


def lookup_external_thumbnail(path: str, cache_home: Optional[Path] = None) -> Optional[str]:
    """Find a thumbnail that a desktop file manager already generated for ``path``.

    Thumbnails follow the freedesktop.org layout: a PNG named after the MD5 of
    the file URI. Entries older than the source image are ignored.
    """
    source = Path(path).absolute()
    try:
        source_mtime = source.stat().st_mtime
    except OSError:
        return None
    digest = hashlib.md5(source.as_uri().encode("utf-8")).hexdigest()
    home = cache_home if cache_home is not None else _thumbnail_cache_home()
    for flavor in THUMBNAIL_CACHE_FLAVORS:
        candidate = home / flavor / f"{digest}.png"
        try:
            if candidate.stat().st_mtime >= source_mtime:
                return str(candidate)
        except OSError:
            continue
    return None


def decode_dimensions(path: str) -> Tuple[int, int]:
    try:
        with Image.open(path) as img:
            return img.size
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ConversionError(path, str(exc)) from exc


def read_orientation(path: str) -> ImageOrientation:
    try:
        with Image.open(path) as img:
            value = img.getexif().get(EXIF_ORIENTATION_TAG)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ConversionError(path, str(exc)) from exc
    return ImageOrientation.from_exif(value) or ImageOrientation.ROTATE_NONE


def _to_rgb(img: Image.Image) -> Image.Image:
    if img.mode in ("P", "LA"):
        img = img.convert("RGBA")
    if img.mode == "RGBA":
        background = Image.new("RGB", img.size, (16, 16, 16))
        background.paste(img, mask=img.split()[3])
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def _encode_jpeg(img: Image.Image) -> bytes:
    buffer = io.BytesIO()
    img.save(buffer, "JPEG", quality=JPEG_QUALITY, optimize=True)
    return buffer.getvalue()


def render_thumbnail(path: str, width: int) -> bytes:
    if width <= 0:
        raise ValueError("Thumbnail width must be positive")
    with _RENDER_LOCK:
        try:
            with Image.open(path) as img:
                img.draft("RGB", (width, width))
                img = ImageOps.exif_transpose(img)
                source_width, source_height = img.size
                height = max(1, round(width * source_height / source_width))
                thumb = _to_rgb(img)
                thumb = thumb.resize((width, height), Image.LANCZOS)
                data = _encode_jpeg(thumb)
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            logger.warning("Thumbnail generation failed for %s: %s", path, exc)
            raise ConversionError(path, str(exc)) from exc
    logger.debug("Rendered %dx%d thumbnail for %s (%d bytes)", width, height, path, len(data))
    return data


def render_rotated(path: str, orientation: ImageOrientation) -> bytes:
    with _RENDER_LOCK:
        try:
            with Image.open(path) as img:
                rotated = img.rotate(-orientation.degrees, expand=True)
                data = _encode_jpeg(_to_rgb(rotated))
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            logger.warning("Rotation by %d degrees failed for %s: %s", orientation.degrees, path, exc)
            raise ConversionError(path, str(exc)) from exc
    logger.debug("Rendered %s rotated by %d degrees (%d bytes)", path, orientation.degrees, len(data))
    return data
