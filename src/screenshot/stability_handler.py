"""Page stabilisation and consecutive-shot consistency checks."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional

from PIL import Image
from pixelmatch.contrib.PIL import pixelmatch
from playwright.async_api import Page

from src.models.config import (
    NetworkWait,
    ReplaceSelector,
    RetryConfig,
    SelectorWait,
    StabilityConfig,
    TimeoutWait,
    WaitStrategy,
)

from .errors import InconsistentScreenshotError, SelectorNotFoundError

logger = logging.getLogger(__name__)

LOAD_STATE_TIMEOUT_MS = 10_000

DISABLE_ANIMATIONS_CSS = """
*, *::before, *::after {
  animation-duration: 0s !important;
  animation-delay: 0s !important;
  transition-duration: 0s !important;
  transition-delay: 0s !important;
  caret-color: transparent !important;
  scroll-behavior: auto !important;
}
"""

_WAIT_FOR_ANIMATIONS_JS = """
() => Promise.all(document.getAnimations().map((a) => a.finished))
"""

_HIDE_JS = """
(sel) => {
  document.querySelectorAll(sel).forEach((el) => { el.style.display = 'none'; });
}
"""

_MASK_JS = """
(sel) => {
  document.querySelectorAll(sel).forEach((el) => {
    el.style.backgroundColor = '#FF00FF';
    el.style.color = 'transparent';
    el.style.backgroundImage = 'none';
    el.style.overflow = 'hidden';
    el.querySelectorAll('*').forEach((child) => { child.style.color = 'transparent'; });
  });
}
"""

_REPLACE_JS = """
({ sel, text }) => {
  document.querySelectorAll(sel).forEach((el) => { el.textContent = text; });
}
"""


class StabilityHandler:
    """Brings a page into a deterministic state before it is captured."""

    def __init__(self, config: StabilityConfig):
        self.config = config

    async def stabilize_page(self, page: Page) -> None:
        cfg = self.config
        if cfg.disable_animations:
            await page.add_style_tag(content=DISABLE_ANIMATIONS_CSS)
            logger.debug("Animations disabled")

        if cfg.wait_strategies:
            await self._run_wait_strategies(page, cfg.wait_strategies)

        if cfg.wait_for_network_idle:
            try:
                await page.wait_for_load_state("networkidle", timeout=LOAD_STATE_TIMEOUT_MS)
                logger.debug("Network idle reached")
            except Exception as e:
                logger.warning("Network idle not reached (%s), proceeding anyway", e)

        if cfg.wait_for_animations:
            try:
                await page.evaluate(_WAIT_FOR_ANIMATIONS_JS)
                logger.debug("All animations completed")
            except Exception as e:
                logger.warning("Error waiting for animations (%s), proceeding", e)

        for selector in cfg.hide_selectors:
            await page.evaluate(_HIDE_JS, selector)
        for selector in cfg.mask_selectors:
            await page.evaluate(_MASK_JS, selector)
        for item in cfg.replace_selectors:
            await self._replace(page, item)

        if cfg.extra_delay_ms > 0:
            await page.wait_for_timeout(cfg.extra_delay_ms)

    async def capture_with_retry(
        self,
        page: Page,
        output_path: str,
        selector: Optional[str] = None,
        full_page: bool = False,
        retry: Optional[RetryConfig] = None,
    ) -> None:
        """Capture to ``output_path``, optionally verifying the page is still.

        With ``attempts > 1`` at least two shots are taken
        ``compare_interval_ms`` apart and the last two must differ by no more
        than ``consistency_threshold`` (as a fraction of all pixels).
        """
        opts = retry or self.config.retry
        if opts is None or opts.attempts <= 1:
            await self._take_screenshot(page, output_path, selector, full_page)
            return

        attempts = max(2, opts.attempts)
        out = Path(output_path)
        shots: list[Path] = []
        try:
            for i in range(attempts):
                shot = out.with_name(f"{out.stem}.attempt-{i}.png")
                await self._take_screenshot(page, str(shot), selector, full_page)
                shots.append(shot)
                if i < attempts - 1:
                    await page.wait_for_timeout(opts.compare_interval_ms)

            consistent = await asyncio.to_thread(
                _is_consistent, shots[-2], shots[-1], opts.consistency_threshold
            )
            if not consistent:
                raise InconsistentScreenshotError(
                    f"Screenshots not consistent after {attempts} attempts "
                    f"(threshold: {opts.consistency_threshold})"
                )
            shutil.copyfile(shots[-1], out)
        finally:
            for shot in shots:
                shot.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _take_screenshot(
        self, page: Page, path: str, selector: Optional[str], full_page: bool
    ) -> None:
        if selector:
            element = await page.query_selector(selector)
            if element is None:
                raise SelectorNotFoundError(selector)
            await element.screenshot(path=path)
        else:
            await page.screenshot(path=path, full_page=full_page)

    async def _run_wait_strategies(self, page: Page, strategies: list[WaitStrategy]) -> None:
        for strategy in strategies:
            if isinstance(strategy, SelectorWait):
                state = strategy.state or "visible"
                await page.wait_for_selector(
                    strategy.selector, state=state, timeout=LOAD_STATE_TIMEOUT_MS
                )
                logger.debug("Wait strategy: selector %r %s", strategy.selector, state)
            elif isinstance(strategy, NetworkWait):
                load_state = "networkidle" if strategy.value == "idle" else "load"
                await page.wait_for_load_state(load_state, timeout=LOAD_STATE_TIMEOUT_MS)
                logger.debug("Wait strategy: network %s", strategy.value)
            elif isinstance(strategy, TimeoutWait):
                await page.wait_for_timeout(strategy.duration_ms)
                logger.debug("Wait strategy: timeout %dms", strategy.duration_ms)

    async def _replace(self, page: Page, item: ReplaceSelector) -> None:
        await page.evaluate(_REPLACE_JS, {"sel": item.selector, "text": item.replacement})


def _is_consistent(path1: Path, path2: Path, threshold: float) -> bool:
    with Image.open(path1) as a, Image.open(path2) as b:
        img1 = a.convert("RGBA")
        img2 = b.convert("RGBA")

    if img1.size != img2.size:
        logger.warning("Consecutive screenshots differ in size: %s vs %s", img1.size, img2.size)
        return False

    total = img1.width * img1.height
    diff_count = pixelmatch(img1, img2, threshold=0.1)
    ratio = diff_count / total if total else 0.0
    logger.debug(
        "Consistency check: %d/%d pixels differ (%.3f%%), threshold %.3f%%",
        diff_count, total, ratio * 100, threshold * 100,
    )
    return ratio <= threshold
