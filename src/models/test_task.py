"""A single (target, variant) capture-and-compare unit of work."""

from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel

from src.models.config import BaselineSource, ViewportConfig


class TestTask(BaseModel):
    __test__ = False

    target: str
    target_type: Literal["component", "page", "element"] = "component"
    variant: str
    url: str
    baseline: Union[str, BaselineSource]
    selector: Optional[str] = None
    wait_for: Optional[str] = None
    threshold: Optional[float] = None
    viewport: Optional[ViewportConfig] = None
    browser: Optional[str] = None
    theme: Optional[Literal["light", "dark"]] = None

    @property
    def label(self) -> str:
        return f"{self.target}/{self.variant}"
