"""Errors raised while capturing screenshots."""


class PageAcquireTimeoutError(TimeoutError):
    """No page became available within the pool's acquire timeout."""


class PagePoolDrainedError(RuntimeError):
    """The pool was drained while a caller was waiting for a page."""


class SelectorNotFoundError(LookupError):
    def __init__(self, selector: str):
        super().__init__(f"Selector not found: {selector}")
        self.selector = selector


class InconsistentScreenshotError(RuntimeError):
    """Consecutive screenshots differed by more than the consistency threshold."""
