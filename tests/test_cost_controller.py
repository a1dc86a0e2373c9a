"""Tests for LLM cost control and the analysis cache."""

import asyncio
import json
from pathlib import Path

import pytest

from src.ai.cost_controller import LLMCostController
from src.models.analysis import AnalyzeResult, TokenUsage
from src.models.comparison import CompareResult
from src.models.config import CostControlConfig


def _comparison(pct: float, match: bool = False) -> CompareResult:
    return CompareResult(
        match=match, mismatch_percentage=pct, mismatch_pixels=int(pct * 100), total_pixels=10000
    )


class TestShouldAnalyze:
    """Tests for the analysis gate."""

    def test_match_declined(self):
        controller = LLMCostController()
        assert controller.should_analyze(_comparison(50, match=True)) is False
        assert controller.call_count == 0

    def test_below_diff_threshold_declined(self):
        controller = LLMCostController(CostControlConfig(diff_threshold=5.0))
        assert controller.should_analyze(_comparison(4.9)) is False
        assert controller.should_analyze(_comparison(5.0)) is True

    def test_reserves_slot(self):
        controller = LLMCostController(CostControlConfig(diff_threshold=0))
        assert controller.should_analyze(_comparison(10)) is True
        assert controller.call_count == 1
        assert controller.get_remaining_calls() == 49

    def test_call_limit(self):
        """Test no more than max_calls_per_run slots are granted."""
        controller = LLMCostController(CostControlConfig(max_calls_per_run=2))
        granted = [controller.should_call() for _ in range(5)]
        assert granted == [True, True, False, False, False]
        assert controller.get_remaining_calls() == 0

    def test_release_returns_slot(self):
        controller = LLMCostController(CostControlConfig(max_calls_per_run=1))
        assert controller.should_call() is True
        controller.release_call()
        assert controller.should_call() is True
        controller.release_call()
        controller.release_call()
        assert controller.call_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_overshoot(self):
        controller = LLMCostController(CostControlConfig(max_calls_per_run=3, diff_threshold=0))

        async def _try():
            await asyncio.sleep(0)
            return controller.should_analyze(_comparison(10))

        results = await asyncio.gather(*(_try() for _ in range(20)))
        assert sum(results) == 3
        assert controller.call_count == 3


class TestCostAccounting:
    """Tests for token and cost tracking."""

    def test_record_call_estimates_cost(self):
        controller = LLMCostController(provider="openai")
        controller.should_call()
        controller.record_call(TokenUsage(prompt_tokens=1_000_000, completion_tokens=100_000))
        stats = controller.get_cost_stats()
        assert stats.call_count == 1
        assert stats.total_tokens == 1_100_000
        assert stats.estimated_cost == pytest.approx(2.5 + 1.0)
        assert stats.breakdown.prompt_tokens == 1_000_000
        assert stats.average_tokens_per_call == 1_100_000

    def test_provider_pricing(self):
        controller = LLMCostController(provider="anthropic")
        controller.record_call(TokenUsage(prompt_tokens=1_000_000, completion_tokens=0))
        assert controller.estimated_cost == pytest.approx(3.0)

    def test_budget_blocks_further_calls(self):
        controller = LLMCostController(CostControlConfig(max_budget_usd=1.0), provider="openai")
        assert controller.should_call() is True
        controller.record_call(TokenUsage(prompt_tokens=400_000, completion_tokens=0))
        assert controller.should_call() is False

    def test_reset(self):
        controller = LLMCostController()
        controller.should_call()
        controller.record_call(TokenUsage(prompt_tokens=10, completion_tokens=10))
        controller.reset()
        stats = controller.get_cost_stats()
        assert stats.call_count == 0
        assert stats.estimated_cost == 0.0
        assert stats.average_tokens_per_call == 0.0


class TestAnalysisCache:
    """Tests for cached analyses keyed by image content."""

    @pytest.mark.asyncio
    async def test_cache_roundtrip_by_content(self, png_factory, sample_analysis):
        """Test identical image bytes at other paths hit the same entry."""
        controller = LLMCostController()
        b1, a1 = png_factory("b1.png"), png_factory("a1.png", box=(0, 0, 5, 5))
        b2, a2 = png_factory("b2.png"), png_factory("a2.png", box=(0, 0, 5, 5))

        await controller.cache_analysis(str(b1), str(a1), sample_analysis)
        cached = await controller.get_cached_analysis(str(b2), str(a2))

        assert cached == sample_analysis
        assert controller.get_cache_stats().hits == 1

    @pytest.mark.asyncio
    async def test_cache_miss(self, png_factory):
        controller = LLMCostController()
        assert await controller.get_cached_analysis(
            str(png_factory("b.png")), str(png_factory("a.png"))
        ) is None
        assert controller.get_cache_stats().misses == 1

    @pytest.mark.asyncio
    async def test_cache_disabled(self, png_factory, sample_analysis):
        controller = LLMCostController(CostControlConfig(cache_enabled=False))
        b, a = str(png_factory("b.png")), str(png_factory("a.png"))
        await controller.cache_analysis(b, a, sample_analysis)
        assert await controller.get_cached_analysis(b, a) is None
        assert controller.get_cache_stats().size == 0

    @pytest.mark.asyncio
    async def test_unreadable_images_fall_back_to_paths(self, tmp_path: Path, sample_analysis):
        controller = LLMCostController()
        b, a = str(tmp_path / "gone-b.png"), str(tmp_path / "gone-a.png")
        await controller.cache_analysis(b, a, sample_analysis)
        assert await controller.get_cached_analysis(b, a) == sample_analysis

    @pytest.mark.asyncio
    async def test_flush_persists(self, tmp_path: Path, png_factory, sample_analysis):
        b, a = str(png_factory("b.png")), str(png_factory("a.png"))
        controller = LLMCostController(cache_dir=tmp_path / "cache")
        await controller.cache_analysis(b, a, sample_analysis)
        controller.flush_cache()
        assert (tmp_path / "cache" / "llm-cache.json").exists()

        fresh = LLMCostController(cache_dir=tmp_path / "cache")
        assert await fresh.get_cached_analysis(b, a) == sample_analysis

    @pytest.mark.asyncio
    async def test_malformed_cache_file_is_a_miss(self, tmp_path: Path, png_factory):
        """Test a cache file in the wrong layout does not break lookups."""
        cache_dir = tmp_path / "cache"
        cache_dir.mkdir()
        (cache_dir / "llm-cache.json").write_text(json.dumps({"abc": {"data": 1}}))
        b, a = str(png_factory("b.png")), str(png_factory("a.png"))

        controller = LLMCostController(cache_dir=cache_dir)

        assert await controller.get_cached_analysis(b, a) is None
        assert await controller.get_cached_analysis(b, a) is None
