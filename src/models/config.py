"""Configuration models for the visual test runner."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


def _resolve_env(v: Optional[str]) -> Optional[str]:
    if isinstance(v, str) and v.startswith("env:"):
        env_var = v[4:]
        resolved = os.environ.get(env_var)
        if resolved is None:
            raise ValueError(f"Environment variable '{env_var}' not set")
        return resolved
    return v


# ---------------------------------------------------------------------------
# Screenshot capture
# ---------------------------------------------------------------------------


class ViewportConfig(BaseModel):
    width: int = Field(default=1280, gt=0)
    height: int = Field(default=720, gt=0)


class NamedViewport(ViewportConfig):
    name: str = Field(min_length=1)


class SelectorWait(BaseModel):
    type: Literal["selector"] = "selector"
    selector: str
    state: Optional[Literal["visible", "hidden"]] = None


class NetworkWait(BaseModel):
    type: Literal["network"] = "network"
    value: Literal["idle", "load"] = "idle"


class TimeoutWait(BaseModel):
    type: Literal["timeout"] = "timeout"
    duration_ms: int = Field(gt=0)


WaitStrategy = Annotated[
    Union[SelectorWait, NetworkWait, TimeoutWait],
    Field(discriminator="type"),
]


class ReplaceSelector(BaseModel):
    selector: str
    replacement: str


class RetryConfig(BaseModel):
    """Consecutive-shot consistency check settings."""
    attempts: int = Field(default=1, ge=1)
    compare_interval_ms: int = Field(default=200, gt=0)
    consistency_threshold: float = Field(default=0.001, ge=0, le=1)


class StabilityConfig(BaseModel):
    wait_for_network_idle: bool = True
    wait_for_animations: bool = True
    extra_delay_ms: int = Field(default=500, ge=0)
    disable_animations: bool = True
    hide_selectors: list[str] = Field(default_factory=list)
    mask_selectors: list[str] = Field(default_factory=list)
    replace_selectors: list[ReplaceSelector] = Field(default_factory=list)
    wait_strategies: list[WaitStrategy] = Field(default_factory=list)
    retry: Optional[RetryConfig] = None


class BrowserConfig(BaseModel):
    type: Literal["chromium", "firefox", "webkit"] = "chromium"
    headless: bool = True
    channel: Optional[str] = None


class ScreenshotConfig(BaseModel):
    viewport: ViewportConfig = Field(default_factory=ViewportConfig)
    viewports: list[NamedViewport] = Field(default_factory=list)
    stability: StabilityConfig = Field(default_factory=StabilityConfig)
    browsers: list[BrowserConfig] = Field(
        default_factory=lambda: [BrowserConfig()]
    )
    full_page: bool = False


# ---------------------------------------------------------------------------
# Comparison and baselines
# ---------------------------------------------------------------------------


class ComparisonConfig(BaseModel):
    threshold: float = Field(default=0.01, ge=0, le=1)
    color_threshold: float = Field(default=0.1, ge=0, le=1)
    antialiasing: bool = True


class FigmaConfig(BaseModel):
    file_key: Optional[str] = None
    access_token: Optional[str] = None
    # MCP server launched over stdio
    command: str = "npx"
    args: list[str] = Field(
        default_factory=lambda: ["-y", "figma-developer-mcp", "--stdio"]
    )
    scale: int = Field(default=2, gt=0)
    timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("access_token", mode="before")
    @classmethod
    def resolve_env_token(cls, v: Optional[str]) -> Optional[str]:
        return _resolve_env(v)


class BaselineConfig(BaseModel):
    provider: Literal["local", "figma-mcp"] = "local"
    figma: FigmaConfig = Field(default_factory=FigmaConfig)


class BaselineSource(BaseModel):
    type: Literal["local", "figma-mcp"]
    source: str
    file_key: Optional[str] = None


# ---------------------------------------------------------------------------
# LLM analysis
# ---------------------------------------------------------------------------


class LLMEndpointConfig(BaseModel):
    """Per-endpoint overrides; unset fields inherit from LLMConfig."""
    api_key: Optional[str] = None
    model: Optional[str] = None
    base_url: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, gt=0)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, ge=0)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)

    @field_validator("api_key", mode="before")
    @classmethod
    def resolve_env_key(cls, v: Optional[str]) -> Optional[str]:
        return _resolve_env(v)


class ResolvedEndpoint(BaseModel):
    api_key: str = ""
    model: str
    base_url: Optional[str] = None
    max_tokens: int = 4096
    timeout_seconds: Optional[float] = None
    max_retries: Optional[int] = None
    temperature: float = 0.3


class CostControlConfig(BaseModel):
    max_calls_per_run: int = Field(default=50, gt=0)
    # Percentage below which the LLM is not consulted
    diff_threshold: float = Field(default=5.0, ge=0, le=100)
    cache_enabled: bool = True
    cache_ttl_seconds: float = Field(default=3600.0, gt=0)
    max_budget_usd: Optional[float] = Field(default=None, gt=0)


class FallbackConfig(BaseModel):
    on_error: Literal["skip", "retry", "rule-based"] = "skip"
    retry_attempts: int = Field(default=2, ge=0)
    timeout_seconds: float = Field(default=30.0, gt=0)
    fallback_to_rule_based: bool = True


class LLMConfig(BaseModel):
    enabled: bool = True
    api_key: Optional[str] = None
    model: str = "gpt-4o"
    base_url: Optional[str] = None
    max_tokens: int = 4096
    temperature: float = 0.3
    analyze: LLMEndpointConfig = Field(default_factory=LLMEndpointConfig)
    suggest_fix: LLMEndpointConfig = Field(default_factory=LLMEndpointConfig)
    cost_control: CostControlConfig = Field(default_factory=CostControlConfig)
    fallback: FallbackConfig = Field(default_factory=FallbackConfig)

    @field_validator("api_key", mode="before")
    @classmethod
    def resolve_env_key(cls, v: Optional[str]) -> Optional[str]:
        return _resolve_env(v)

    def resolve_endpoint(
        self, endpoint: Literal["analyze", "suggest_fix"]
    ) -> ResolvedEndpoint:
        """Merge top-level defaults with an endpoint's overrides."""
        override: LLMEndpointConfig = getattr(self, endpoint)
        return ResolvedEndpoint(
            api_key=override.api_key or self.api_key or "",
            model=override.model or self.model,
            base_url=override.base_url or self.base_url,
            max_tokens=override.max_tokens or self.max_tokens,
            timeout_seconds=override.timeout_seconds,
            max_retries=override.max_retries,
            temperature=(
                override.temperature
                if override.temperature is not None
                else self.temperature
            ),
        )


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------


class VariantConfig(BaseModel):
    name: str = Field(min_length=1)
    url: str
    baseline: Union[str, BaselineSource]
    selector: Optional[str] = None
    wait_for: Optional[str] = None
    threshold: Optional[float] = Field(default=None, ge=0, le=1)
    viewport: Optional[ViewportConfig] = None
    theme: Optional[Literal["light", "dark"]] = None


class TargetConfig(BaseModel):
    name: str = Field(min_length=1)
    type: Literal["component", "page", "element"] = "component"
    variants: list[VariantConfig] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Run-level settings
# ---------------------------------------------------------------------------


class DirectoriesConfig(BaseModel):
    baselines: str = ".visual-test/baselines"
    actuals: str = ".visual-test/actuals"
    diffs: str = ".visual-test/diffs"
    reports: str = ".visual-test/reports"


class ReportConfig(BaseModel):
    formats: list[Literal["json"]] = Field(default_factory=lambda: ["json"])


class ConcurrencyConfig(BaseModel):
    max_targets: int = Field(default=10, gt=0)
    pool_size: int = Field(default=5, gt=0)
    acquire_timeout_seconds: float = Field(default=30.0, gt=0)


class PerformanceConfig(BaseModel):
    task_timeout_seconds: float = Field(default=120.0, gt=0)
    concurrent: ConcurrencyConfig = Field(default_factory=ConcurrencyConfig)


class VisualTestConfig(BaseModel):
    directories: DirectoriesConfig = Field(default_factory=DirectoriesConfig)
    screenshot: ScreenshotConfig = Field(default_factory=ScreenshotConfig)
    comparison: ComparisonConfig = Field(default_factory=ComparisonConfig)
    baseline: BaselineConfig = Field(default_factory=BaselineConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    targets: list[TargetConfig] = Field(default_factory=list)
    report: ReportConfig = Field(default_factory=ReportConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)

    @classmethod
    def load(cls, path: str | Path) -> "VisualTestConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        return cls(**data)

    def save(self, path: str | Path) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(exclude_none=True), f, indent=2)
