"""Bounded pool of reusable Playwright pages.

Pages are handed out idle-first, created on demand up to ``max_size``, and
otherwise queued FIFO. Every handed-out page has been reset to
``about:blank``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

from playwright.async_api import BrowserContext, Page

from .errors import PageAcquireTimeoutError, PagePoolDrainedError

logger = logging.getLogger(__name__)

RESET_TIMEOUT_MS = 5_000


@dataclass
class _Waiter:
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None

    def settle(self, page: Optional[Page] = None, error: Optional[BaseException] = None) -> bool:
        """Resolve or reject the waiter once; returns False if it was already settled."""
        if self.timer is not None:
            self.timer.cancel()
        if self.future.done():
            return False
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(page)
        return True


class PagePool:
    def __init__(self, max_size: int = 5, acquire_timeout: float = 30.0):
        self.max_size = max_size
        self.acquire_timeout = acquire_timeout
        self._context: Optional[BrowserContext] = None
        self._idle: list[Page] = []
        self._busy: set[Page] = set()
        self._waiters: deque[_Waiter] = deque()
        self._handovers: set[asyncio.Task] = set()
        logger.debug("PagePool created with max size %d", max_size)

    def set_context(self, context: BrowserContext) -> None:
        self._context = context

    async def acquire(self) -> Page:
        if self._idle:
            page = self._idle.pop()
            self._busy.add(page)
            try:
                await _reset(page)
            except Exception as e:
                logger.warning("Failed to reset pooled page, creating a new one: %s", e)
                self._busy.discard(page)
                await _close_quietly(page)
                return await self._create_page()
            logger.debug("Page acquired from pool (%s)", self._describe())
            return page

        if len(self._busy) + len(self._idle) < self.max_size:
            return await self._create_page()

        logger.debug("Page pool at capacity (%s), waiting...", self._describe())
        loop = asyncio.get_running_loop()
        waiter = _Waiter(future=loop.create_future())
        waiter.timer = loop.call_later(self.acquire_timeout, self._expire, waiter)
        self._waiters.append(waiter)
        return await waiter.future

    def release(self, page: Page) -> None:
        self._busy.discard(page)

        while self._waiters:
            waiter = self._waiters.popleft()
            if waiter.future.done():
                continue
            if waiter.timer is not None:
                waiter.timer.cancel()
            self._busy.add(page)
            logger.debug("Page handed to waiting request (%s)", self._describe())
            task = asyncio.ensure_future(self._hand_over(page, waiter))
            self._handovers.add(task)
            task.add_done_callback(self._handovers.discard)
            return

        if len(self._idle) < self.max_size:
            self._idle.append(page)
            logger.debug("Page released to pool (%s)", self._describe())
        else:
            task = asyncio.ensure_future(_close_quietly(page))
            self._handovers.add(task)
            task.add_done_callback(self._handovers.discard)
            logger.debug("Page closed, pool full (%s)", self._describe())

    async def drain(self) -> None:
        logger.debug("Draining page pool (%s)", self._describe())
        while self._waiters:
            self._waiters.popleft().settle(error=PagePoolDrainedError("Page pool drained"))

        if self._handovers:
            await asyncio.gather(*self._handovers, return_exceptions=True)

        pages = [*self._idle, *self._busy]
        self._idle.clear()
        self._busy.clear()
        await asyncio.gather(*(_close_quietly(p) for p in pages))
        logger.debug("Page pool drained")

    def stats(self) -> dict[str, int]:
        return {
            "idle": len(self._idle),
            "busy": len(self._busy),
            "waiting": sum(1 for w in self._waiters if not w.future.done()),
            "max_size": self.max_size,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _create_page(self) -> Page:
        if self._context is None:
            raise RuntimeError("BrowserContext not set; call set_context() first")
        page = await self._context.new_page()
        self._busy.add(page)
        logger.debug("New page created (%s)", self._describe())
        return page

    async def _hand_over(self, page: Page, waiter: _Waiter) -> None:
        try:
            await _reset(page)
        except Exception as e:
            logger.warning("Page reset failed, creating a replacement: %s", e)
            self._busy.discard(page)
            await _close_quietly(page)
            try:
                page = await self._create_page()
            except Exception as create_err:
                waiter.settle(error=RuntimeError(
                    f"Failed to acquire page: reset and creation both failed ({create_err})"
                ))
                return

        if not waiter.settle(page=page):
            # Waiter gave up while the page was being reset
            self.release(page)

    def _expire(self, waiter: _Waiter) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            return
        waiter.settle(error=PageAcquireTimeoutError(
            f"Page acquire timeout after {self.acquire_timeout}s"
        ))

    def _describe(self) -> str:
        return f"idle={len(self._idle)} busy={len(self._busy)} waiting={len(self._waiters)}"


async def _reset(page: Page) -> None:
    await page.goto("about:blank", wait_until="domcontentloaded", timeout=RESET_TIMEOUT_MS)


async def _close_quietly(page: Page) -> None:
    try:
        await page.close()
    except Exception as e:
        logger.debug("Ignoring page close error: %s", e)
