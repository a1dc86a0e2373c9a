"""Pytest configuration and shared fixtures."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from src.models.analysis import AnalyzeResult, Assessment, Difference
from src.models.comparison import CompareResult
from src.models.config import (
    CostControlConfig,
    DirectoriesConfig,
    LLMConfig,
    PerformanceConfig,
    StabilityConfig,
    TargetConfig,
    VariantConfig,
    VisualTestConfig,
)


# ============================================================================
# Image Helpers
# ============================================================================


def make_png(path: Path, size=(100, 100), color=(255, 255, 255, 255), box=None) -> Path:
    """Write a solid PNG, optionally with a black box ``(x, y, w, h)`` drawn on it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGBA", size, color)
    if box is not None:
        x, y, w, h = box
        img.paste(Image.new("RGBA", (w, h), (0, 0, 0, 255)), (x, y))
    img.save(path, format="PNG")
    return path


@pytest.fixture
def png_factory(tmp_path: Path):
    """Create PNG files under tmp_path by name."""
    def _make(name: str, **kwargs) -> Path:
        return make_png(tmp_path / name, **kwargs)
    return _make


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def directories(tmp_path: Path) -> DirectoriesConfig:
    root = tmp_path / ".visual-test"
    return DirectoriesConfig(
        baselines=str(root / "baselines"),
        actuals=str(root / "actuals"),
        diffs=str(root / "diffs"),
        reports=str(root / "reports"),
    )


@pytest.fixture
def quiet_stability() -> StabilityConfig:
    """Stability settings that do nothing, for tests with mocked pages."""
    return StabilityConfig(
        wait_for_network_idle=False,
        wait_for_animations=False,
        extra_delay_ms=0,
        disable_animations=False,
    )


@pytest.fixture
def visual_config(directories: DirectoriesConfig) -> VisualTestConfig:
    """Two targets, rule-based analysis only."""
    return VisualTestConfig(
        directories=directories,
        llm=LLMConfig(
            enabled=True,
            model="rule-based",
            cost_control=CostControlConfig(diff_threshold=0.0),
        ),
        performance=PerformanceConfig(task_timeout_seconds=5),
        targets=[
            TargetConfig(
                name="button",
                variants=[
                    VariantConfig(name="primary", url="http://localhost/button", baseline="button/primary.png"),
                    VariantConfig(name="secondary", url="http://localhost/button2", baseline="button/secondary.png"),
                ],
            ),
            TargetConfig(
                name="home",
                type="page",
                variants=[VariantConfig(name="default", url="http://localhost/", baseline="home/default.png")],
            ),
        ],
    )


# ============================================================================
# Result Fixtures
# ============================================================================


@pytest.fixture
def mismatch_comparison() -> CompareResult:
    return CompareResult(
        match=False,
        mismatch_percentage=12.5,
        mismatch_pixels=1250,
        total_pixels=10000,
        diff_path=None,
    )


@pytest.fixture
def sample_analysis() -> AnalyzeResult:
    return AnalyzeResult(
        differences=[
            Difference(
                id="diff-1",
                type="color",
                location="header button",
                description="Background is darker",
                severity="minor",
                expected="#3366ff",
                actual="#2255ee",
            )
        ],
        assessment=Assessment(match_score=85, acceptable=True, summary="Minor colour change"),
    )


# ============================================================================
# Playwright Mock Fixtures
# ============================================================================


@pytest.fixture
def mock_page() -> MagicMock:
    """A Playwright page whose awaitables all succeed."""
    page = MagicMock()
    page.goto = AsyncMock()
    page.close = AsyncMock()
    page.emulate_media = AsyncMock()
    page.set_viewport_size = AsyncMock()
    page.add_style_tag = AsyncMock()
    page.wait_for_load_state = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.evaluate = AsyncMock()
    page.screenshot = AsyncMock()
    page.query_selector = AsyncMock()
    return page


@pytest.fixture
def mock_context() -> MagicMock:
    """A BrowserContext that hands out a fresh mock page per new_page()."""
    context = MagicMock()

    async def _new_page():
        page = MagicMock()
        page.goto = AsyncMock()
        page.close = AsyncMock()
        return page

    context.new_page = AsyncMock(side_effect=_new_page)
    context.close = AsyncMock()
    return context
