"""PNG helpers shared by the comparison, screenshot and baseline layers."""

from __future__ import annotations

import hashlib
from pathlib import Path

from PIL import Image

from src.models.baseline import ImageDimensions


def load_rgba(path: str | Path) -> Image.Image:
    with Image.open(path) as img:
        return img.convert("RGBA")


def image_dimensions(path: str | Path) -> ImageDimensions:
    with Image.open(path) as img:
        return ImageDimensions(width=img.width, height=img.height)


def pad_image(img: Image.Image, width: int, height: int) -> Image.Image:
    """Pad to ``width`` x ``height`` with transparent pixels, anchored top-left."""
    if img.width == width and img.height == height:
        return img
    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    canvas.paste(img, (0, 0))
    return canvas


def file_sha256(path: str | Path) -> str:
    return hashlib.sha256(Path(path).read_bytes()).hexdigest()
