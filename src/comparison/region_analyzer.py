"""Cluster diff pixels into rectangular regions.

The diff image is divided into a fixed grid. A cell is "hot" when more than
``CELL_THRESHOLD`` of its pixels carry the diff colour; hot cells that
touch, diagonally included, are merged into one bounding box.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Optional

from PIL import Image, ImageChops

from src.models.comparison import Bounds, DiffRegion, SizeDiff

GRID_SIZE = 50
CELL_THRESHOLD = 0.1
DIFF_COLOR = (255, 0, 0)


@dataclass
class _Cell:
    x: int
    y: int
    w: int
    h: int
    pixels: int


def diff_mask(diff: Image.Image, color: tuple[int, int, int] = DIFF_COLOR) -> Image.Image:
    """Return an L-mode mask that is 255 exactly where ``diff`` has ``color``."""
    r, g, b = diff.convert("RGB").split()
    mask = r.point(lambda v: 255 if v == color[0] else 0)
    mask = ImageChops.multiply(mask, g.point(lambda v: 255 if v == color[1] else 0))
    return ImageChops.multiply(mask, b.point(lambda v: 255 if v == color[2] else 0))


def analyze_diff_regions(
    diff: Image.Image, size_diff: Optional[SizeDiff] = None
) -> list[DiffRegion]:
    mask = diff_mask(diff)
    width, height = mask.size
    cells: list[_Cell] = []

    for y in range(0, height, GRID_SIZE):
        for x in range(0, width, GRID_SIZE):
            w = min(GRID_SIZE, width - x)
            h = min(GRID_SIZE, height - y)
            pixels = mask.crop((x, y, x + w, y + h)).histogram()[255]
            if pixels > w * h * CELL_THRESHOLD:
                cells.append(_Cell(x, y, w, h, pixels))

    return [_label(r, size_diff) for r in _merge_adjacent(cells)]


def _adjacent(a: _Cell, b: _Cell) -> bool:
    tolerance = GRID_SIZE
    x_overlap = a.x < b.x + b.w + tolerance and b.x < a.x + a.w + tolerance
    y_overlap = a.y < b.y + b.h + tolerance and b.y < a.y + a.h + tolerance
    return x_overlap and y_overlap


def _merge_adjacent(cells: list[_Cell]) -> list[DiffRegion]:
    regions: list[DiffRegion] = []
    visited: set[int] = set()

    for start in range(len(cells)):
        if start in visited:
            continue
        visited.add(start)
        queue = deque([start])
        group: list[_Cell] = []
        while queue:
            current = queue.popleft()
            group.append(cells[current])
            for j, other in enumerate(cells):
                if j not in visited and _adjacent(cells[current], other):
                    visited.add(j)
                    queue.append(j)

        min_x = min(c.x for c in group)
        min_y = min(c.y for c in group)
        max_x = max(c.x + c.w for c in group)
        max_y = max(c.y + c.h for c in group)
        regions.append(DiffRegion(
            bounds=Bounds(x=min_x, y=min_y, width=max_x - min_x, height=max_y - min_y),
            pixels=sum(c.pixels for c in group),
        ))

    return regions


def _label(region: DiffRegion, size_diff: Optional[SizeDiff]) -> DiffRegion:
    if size_diff is None:
        return region
    # Area covered by both images; everything outside it is padding
    common_w = min(size_diff.baseline.width, size_diff.actual.width)
    common_h = min(size_diff.baseline.height, size_diff.actual.height)
    if region.bounds.x >= common_w or region.bounds.y >= common_h:
        return region.model_copy(update={"type": "size"})
    return region
