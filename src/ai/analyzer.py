"""Analysis policy: cost control, caching, vendor calls and fallbacks."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

from src.models.analysis import AnalyzeResult, FixSuggestion, LLMStats
from src.models.config import LLMConfig

from .adapters import VisionAdapter, create_adapter
from .client import AnalyzeOptions, LLMClient, SuggestFixOptions
from .cost_controller import LLMCostController
from .rule_based import RuleBasedProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LLMTimeoutError(TimeoutError):
    pass


class LLMCallAborted(RuntimeError):
    """The task that issued the call was cancelled or timed out."""


class LLMAnalyzer:
    """Decides whether and how each diff gets analysed.

    ``analyze`` never spends more than the cost controller allows, serves
    repeated image pairs from the cache, and on vendor failure applies
    ``fallback.on_error``:

    - ``retry``: retry up to ``retry_attempts`` times, then rule-based (or
      re-raise when ``fallback_to_rule_based`` is off)
    - ``rule-based``: rule-based analysis
    - ``skip``: rule-based analysis when ``fallback_to_rule_based``,
      otherwise re-raise
    """

    def __init__(
        self,
        config: LLMConfig,
        cache_dir: Optional[str | Path] = None,
        adapter_factory: Callable = create_adapter,
    ):
        self.config = config
        self.fallback = RuleBasedProvider()
        self.analyze_client: Optional[LLMClient] = None
        self.suggest_fix_client: Optional[LLMClient] = None

        if config.enabled:
            try:
                self.analyze_client = self._build_client("analyze", adapter_factory)
                self.suggest_fix_client = self._build_client("suggest_fix", adapter_factory)
            except Exception as e:
                logger.warning("LLM client unavailable, using rule-based analysis: %s", e)
                self.analyze_client = None
                self.suggest_fix_client = None

        self.cost = LLMCostController(
            config.cost_control, cache_dir=cache_dir, provider=self.provider_name
        )

    @property
    def provider_name(self) -> str:
        return self.analyze_client.adapter_name if self.analyze_client else "rule-based"

    def _build_client(self, endpoint: str, adapter_factory: Callable) -> Optional[LLMClient]:
        resolved = self.config.resolve_endpoint(endpoint)
        adapter: Optional[VisionAdapter] = adapter_factory(resolved)
        return LLMClient(adapter, resolved) if adapter is not None else None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def analyze(
        self, options: AnalyzeOptions, abort: Optional[asyncio.Event] = None
    ) -> AnalyzeResult:
        if not self.cost.should_analyze(options.comparison):
            logger.debug("Cost controller declined, using rule-based analysis")
            return self.fallback.analyze(options)

        recorded = False
        try:
            cached = await self.cost.get_cached_analysis(options.baseline_path, options.actual_path)
            if cached is not None:
                return cached

            client = self.analyze_client
            if client is None:
                return self.fallback.analyze(options)

            try:
                result = await self._call_with_timeout(lambda: client.analyze(options), abort)
            except Exception as e:
                result, recorded = await self._handle_error(e, client, options, abort)
                if recorded:
                    await self.cost.cache_analysis(options.baseline_path, options.actual_path, result)
                return result

            self.cost.record_call(result.usage)
            recorded = True
            await self.cost.cache_analysis(options.baseline_path, options.actual_path, result)
            return result
        finally:
            if not recorded:
                self.cost.release_call()

    async def suggest_fix(
        self, options: SuggestFixOptions, abort: Optional[asyncio.Event] = None
    ) -> list[FixSuggestion]:
        client = self.suggest_fix_client
        if client is None:
            return []
        if not self.cost.should_call():
            logger.debug("Cost controller declined fix suggestions")
            return []
        try:
            result = await self._call_with_timeout(lambda: client.suggest_fix(options), abort)
        except Exception as e:
            logger.warning("Failed to generate fix suggestions: %s", e)
            self.cost.release_call()
            return []
        self.cost.record_call(result.usage)
        return result.fixes

    def reset(self) -> None:
        self.cost.reset()

    def flush_cache(self) -> None:
        self.cost.flush_cache()

    def get_stats(self) -> LLMStats:
        return LLMStats(
            **self.cost.get_cost_stats().model_dump(),
            remaining_calls=self.cost.get_remaining_calls(),
            cache=self.cost.get_cache_stats(),
            provider=self.provider_name,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _handle_error(
        self,
        error: Exception,
        client: LLMClient,
        options: AnalyzeOptions,
        abort: Optional[asyncio.Event],
    ) -> tuple[AnalyzeResult, bool]:
        """Apply the fallback strategy; the flag tells whether a vendor call was recorded."""
        fallback = self.config.fallback
        logger.warning("LLM call failed (%s), fallback strategy: %s", error, fallback.on_error)

        if fallback.on_error == "retry" and not isinstance(error, LLMCallAborted):
            for attempt in range(fallback.retry_attempts):
                try:
                    result = await self._call_with_timeout(lambda: client.analyze(options), abort)
                except LLMCallAborted:
                    break
                except Exception as retry_error:
                    logger.warning(
                        "LLM retry %d/%d failed: %s",
                        attempt + 1, fallback.retry_attempts, retry_error,
                    )
                    continue
                self.cost.record_call(result.usage)
                return result, True

        if fallback.on_error == "rule-based" or fallback.fallback_to_rule_based:
            return self.fallback.analyze(options), False
        raise error

    async def _call_with_timeout(
        self, call: Callable[[], Awaitable[T]], abort: Optional[asyncio.Event] = None
    ) -> T:
        """Run ``call`` until it finishes, times out, or ``abort`` is set.

        The underlying request is cancelled in the latter two cases.
        """
        if abort is not None and abort.is_set():
            raise LLMCallAborted("Aborted before the LLM call started")

        timeout = self.config.fallback.timeout_seconds
        call_task = asyncio.ensure_future(call())
        abort_task = asyncio.ensure_future(abort.wait()) if abort is not None else None
        waiting = {call_task} if abort_task is None else {call_task, abort_task}
        try:
            done, _ = await asyncio.wait(
                waiting, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if call_task in done:
                return call_task.result()
            if abort_task is not None and abort_task in done:
                raise LLMCallAborted("LLM call aborted")
            raise LLMTimeoutError(f"LLM call timed out after {timeout}s")
        finally:
            if abort_task is not None:
                abort_task.cancel()
            if not call_task.done():
                call_task.cancel()
