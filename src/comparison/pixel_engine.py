"""Pixel comparison engine backed by pixelmatch."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from PIL import Image
from pixelmatch.contrib.PIL import pixelmatch

from src.models.comparison import CompareResult, SizeDiff
from src.models.baseline import ImageDimensions

from .image_utils import load_rgba, pad_image
from .region_analyzer import DIFF_COLOR, analyze_diff_regions

logger = logging.getLogger(__name__)


@dataclass
class CompareOptions:
    baseline_path: str
    actual_path: str
    diff_path: str
    threshold: float = 0.01
    color_threshold: float = 0.1
    antialiasing: bool = True


class PixelComparisonEngine:
    """Compares two PNGs, writing a diff image only when they differ."""

    name = "pixel"

    async def compare(self, options: CompareOptions) -> CompareResult:
        return await asyncio.to_thread(self.compare_sync, options)

    def compare_sync(self, options: CompareOptions) -> CompareResult:
        logger.debug("Comparing: %s vs %s", options.baseline_path, options.actual_path)

        baseline = load_rgba(options.baseline_path)
        actual = load_rgba(options.actual_path)

        size_diff = None
        if baseline.size != actual.size:
            size_diff = SizeDiff(
                baseline=ImageDimensions(width=baseline.width, height=baseline.height),
                actual=ImageDimensions(width=actual.width, height=actual.height),
            )

        width = max(baseline.width, actual.width)
        height = max(baseline.height, actual.height)
        baseline = pad_image(baseline, width, height)
        actual = pad_image(actual, width, height)

        diff = Image.new("RGBA", (width, height))
        mismatch_pixels = pixelmatch(
            baseline,
            actual,
            diff,
            threshold=options.color_threshold,
            includeAA=not options.antialiasing,
            alpha=0.3,
            diff_color=DIFF_COLOR,
        )

        total_pixels = width * height
        mismatch_percentage = mismatch_pixels / total_pixels * 100 if total_pixels else 0.0
        match = mismatch_percentage <= options.threshold * 100

        diff_path = None
        diff_regions = []
        if not match:
            out = Path(options.diff_path)
            out.parent.mkdir(parents=True, exist_ok=True)
            diff.save(out, format="PNG")
            diff_path = str(out)
            diff_regions = analyze_diff_regions(diff, size_diff)

        logger.debug(
            "Compare result: %.2f%% mismatch (%d/%d pixels)",
            mismatch_percentage, mismatch_pixels, total_pixels,
        )

        return CompareResult(
            match=match,
            mismatch_percentage=mismatch_percentage,
            mismatch_pixels=mismatch_pixels,
            total_pixels=total_pixels,
            diff_path=diff_path,
            size_diff=size_diff,
            diff_regions=diff_regions,
        )
