"""Pixel comparison results."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

from src.models.baseline import ImageDimensions


class SizeDiff(BaseModel):
    baseline: ImageDimensions
    actual: ImageDimensions


class Bounds(BaseModel):
    x: int
    y: int
    width: int
    height: int


class DiffRegion(BaseModel):
    bounds: Bounds
    pixels: int
    type: Literal[
        "color", "spacing", "font", "size", "border", "shadow",
        "position", "missing", "extra", "layout", "unknown",
    ] = "unknown"


class CompareResult(BaseModel):
    match: bool
    mismatch_percentage: float
    mismatch_pixels: int
    total_pixels: int
    diff_path: Optional[str] = None
    size_diff: Optional[SizeDiff] = None
    diff_regions: list[DiffRegion] = Field(default_factory=list)
