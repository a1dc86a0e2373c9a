"""Per-run budget for LLM calls, plus the analysis result cache.

Call slots are reserved up front: :meth:`should_analyze` and
:meth:`should_call` check the limits and increment the call count with no
await in between, so concurrent tasks on one event loop can never overshoot
``max_calls_per_run``. A caller that ends up not calling the LLM (cache hit,
error) hands the slot back with :meth:`release_call`.
"""

from __future__ import annotations

import asyncio
import logging
import urllib.parse
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from src.comparison.image_utils import file_sha256
from src.models.analysis import (
    AnalyzeResult,
    CacheStats,
    CostBreakdown,
    CostStats,
    TokenUsage,
)
from src.models.comparison import CompareResult
from src.models.config import CostControlConfig
from src.utils.cache import CacheManager

logger = logging.getLogger(__name__)

CACHE_FILE_NAME = "llm-cache.json"

# USD per 1M tokens; estimates only, vendor invoices are authoritative
PRICING = {
    "anthropic": {"input": 3.0, "output": 15.0},
    "openai": {"input": 2.5, "output": 10.0},
    "rule-based": {"input": 0.0, "output": 0.0},
}


class LLMCostController:
    def __init__(
        self,
        config: Optional[CostControlConfig] = None,
        cache_dir: Optional[str | Path] = None,
        provider: str = "openai",
    ):
        self.config = config or CostControlConfig()
        self.pricing = PRICING.get(provider, PRICING["openai"])
        self.cache = CacheManager(
            default_ttl=self.config.cache_ttl_seconds,
            persist_path=Path(cache_dir) / CACHE_FILE_NAME if cache_dir else None,
        )
        self._load_task: Optional[asyncio.Task] = None
        self.call_count = 0
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.estimated_cost = 0.0

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    def should_analyze(self, comparison: CompareResult) -> bool:
        if comparison.match:
            logger.debug("Skip LLM: images match")
            return False
        if comparison.mismatch_percentage < self.config.diff_threshold:
            logger.debug(
                "Skip LLM: diff %.2f%% below threshold %.2f%%",
                comparison.mismatch_percentage, self.config.diff_threshold,
            )
            return False
        return self.should_call()

    def should_call(self) -> bool:
        if self.call_count >= self.config.max_calls_per_run:
            logger.warning("Skip LLM: call limit reached (%d)", self.config.max_calls_per_run)
            return False
        if self._budget_exhausted():
            logger.warning(
                "Skip LLM: budget exhausted ($%.2f / $%.2f)",
                self.estimated_cost, self.config.max_budget_usd,
            )
            return False
        self.call_count += 1
        return True

    def release_call(self) -> None:
        if self.call_count > 0:
            self.call_count -= 1

    def record_call(self, usage: Optional[TokenUsage] = None) -> None:
        """Account for a completed call; the slot itself was taken at reservation."""
        if usage is None:
            logger.debug("LLM call %d/%d", self.call_count, self.config.max_calls_per_run)
            return
        self.prompt_tokens += usage.prompt_tokens
        self.completion_tokens += usage.completion_tokens
        cost = (
            usage.prompt_tokens * self.pricing["input"]
            + usage.completion_tokens * self.pricing["output"]
        ) / 1_000_000
        self.estimated_cost += cost
        logger.debug(
            "LLM call %d: %d tokens, cost $%.4f, total $%.4f",
            self.call_count, usage.prompt_tokens + usage.completion_tokens,
            cost, self.estimated_cost,
        )
        if self._budget_exhausted():
            logger.warning(
                "LLM budget exceeded: $%.2f / $%.2f",
                self.estimated_cost, self.config.max_budget_usd,
            )

    def get_remaining_calls(self) -> int:
        return max(0, self.config.max_calls_per_run - self.call_count)

    def get_cost_stats(self) -> CostStats:
        total = self.prompt_tokens + self.completion_tokens
        return CostStats(
            call_count=self.call_count,
            total_tokens=total,
            estimated_cost=self.estimated_cost,
            average_tokens_per_call=total / self.call_count if self.call_count else 0.0,
            breakdown=CostBreakdown(
                prompt_tokens=self.prompt_tokens,
                completion_tokens=self.completion_tokens,
            ),
        )

    def reset(self) -> None:
        self.call_count = 0
        self.prompt_tokens = 0
        self.completion_tokens = 0
        self.estimated_cost = 0.0
        logger.debug("Cost controller reset")

    def _budget_exhausted(self) -> bool:
        budget = self.config.max_budget_usd
        return budget is not None and self.estimated_cost >= budget

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    async def get_cached_analysis(
        self, baseline_path: str, actual_path: str
    ) -> Optional[AnalyzeResult]:
        if not self.config.cache_enabled:
            return None
        await self._ensure_loaded()
        key = await self._cache_key(baseline_path, actual_path)
        cached = self.cache.get(key)
        if cached is None:
            return None
        try:
            result = AnalyzeResult.model_validate(cached)
        except ValidationError:
            self.cache.delete(key)
            return None
        logger.debug("Cache hit: %s...", key[:16])
        return result

    async def cache_analysis(
        self, baseline_path: str, actual_path: str, analysis: AnalyzeResult
    ) -> None:
        if not self.config.cache_enabled:
            return
        key = await self._cache_key(baseline_path, actual_path)
        self.cache.set(key, analysis.model_dump(mode="json"))
        logger.debug("Cached analysis: %s...", key[:16])

    def get_cache_stats(self) -> CacheStats:
        return CacheStats(**self.cache.stats())

    def flush_cache(self) -> None:
        self.cache.save()

    async def _ensure_loaded(self) -> None:
        # One shared load; concurrent first callers all await the same task
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(asyncio.to_thread(self.cache.load))
        await self._load_task

    @staticmethod
    async def _cache_key(baseline_path: str, actual_path: str) -> str:
        try:
            baseline_hash, actual_hash = await asyncio.gather(
                asyncio.to_thread(file_sha256, baseline_path),
                asyncio.to_thread(file_sha256, actual_path),
            )
            return f"{baseline_hash}:{actual_hash}"
        except OSError as e:
            logger.warning("Failed to hash images for cache key, using paths: %s", e)
            quote = urllib.parse.quote
            return f"path:{quote(baseline_path, safe='')}:{quote(actual_path, safe='')}"
