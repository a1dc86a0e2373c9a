"""Baseline fetch results."""

from __future__ import annotations

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from src.models.config import BaselineSource


class ImageDimensions(BaseModel):
    width: int
    height: int


class FigmaInfo(BaseModel):
    file_key: str
    node_id: str
    last_modified: str
    version: str = "latest"


class BaselineMetadata(BaseModel):
    dimensions: ImageDimensions
    hash: str
    fetched_at: str
    figma_info: Optional[FigmaInfo] = None


class BaselineResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    path: str
    success: bool
    metadata: Optional[BaselineMetadata] = None
    error: Optional[Exception] = None


class FetchBaselineOptions(BaseModel):
    source: Union[str, BaselineSource]
    output_path: str
    scale: Optional[int] = None
    timeout_seconds: Optional[float] = None
