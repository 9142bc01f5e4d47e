from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Tuple

import pytest
from PIL import Image


def write_image(
    path: Path,
    size: Tuple[int, int] = (64, 48),
    mtime: Optional[float] = None,
    exif_orientation: Optional[int] = None,
    color: Tuple[int, int, int] = (200, 30, 30),
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGB", size, color)
    save_kwargs = {}
    if exif_orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = exif_orientation
        save_kwargs["exif"] = exif.tobytes()
    img.save(path, **save_kwargs)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def make_image():
    return write_image
