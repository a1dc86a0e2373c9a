"""Test orchestrator: baseline → screenshot → compare → analyse, per task."""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Optional, Protocol, Union

from src.ai.analyzer import LLMAnalyzer
from src.ai.client import AnalysisContext, AnalyzeOptions, SuggestFixOptions
from src.baseline.errors import BaselineNotFoundError
from src.baseline.provider import RoutingBaselineProvider, create_baseline_provider
from src.comparison.pixel_engine import CompareOptions, PixelComparisonEngine
from src.models.analysis import AnalyzeResult, Assessment, Difference, FixSuggestion, LLMStats
from src.models.baseline import BaselineResult, FetchBaselineOptions
from src.models.comparison import CompareResult
from src.models.config import BaselineSource, VisualTestConfig
from src.models.test_result import ErrorStep, ScreenshotPaths, TestError, TestResult
from src.models.test_task import TestTask
from src.reporter.reporter import Reporter
from src.screenshot.engine import CaptureOptions, PlaywrightScreenshotEngine

logger = logging.getLogger(__name__)

STRAGGLER_GRACE_SECONDS = 5.0


class DevServer(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class TaskTimeoutError(TimeoutError):
    pass


class TaskAborted(Exception):
    """Raised between steps once a task's abort flag is set."""


def derive_baseline(
    baseline: Union[str, BaselineSource], suffix: str
) -> Union[str, BaselineSource]:
    """``btn.png`` → ``btn@suffix.png``; structured sources are left as they are."""
    if isinstance(baseline, BaselineSource):
        return baseline
    path = Path(baseline)
    if not path.suffix:
        return f"{baseline}@{suffix}"
    return str(path.with_name(f"{path.stem}@{suffix}{path.suffix}"))


class VisualTestOrchestrator:
    """Runs every configured (target, variant) pair and returns one result each."""

    def __init__(
        self,
        config: VisualTestConfig,
        baseline_provider: Optional[RoutingBaselineProvider] = None,
        screenshot_engine: Optional[PlaywrightScreenshotEngine] = None,
        comparison_engine: Optional[PixelComparisonEngine] = None,
        analyzer: Optional[LLMAnalyzer] = None,
        dev_server: Optional[DevServer] = None,
        straggler_grace: float = STRAGGLER_GRACE_SECONDS,
    ):
        self.config = config
        self.baseline_provider = baseline_provider or create_baseline_provider(config)
        self.screenshot_engine = screenshot_engine or PlaywrightScreenshotEngine(config)
        self.comparison_engine = comparison_engine or PixelComparisonEngine()
        self.analyzer = analyzer or LLMAnalyzer(
            config.llm,
            cache_dir=Path(config.directories.baselines).parent / "cache",
        )
        self.dev_server = dev_server
        self.reporter = Reporter(config)
        self.straggler_grace = straggler_grace
        self.reports: dict[str, str] = {}

        self._cleanup_done = False
        self._cancel_event: Optional[asyncio.Event] = None
        self._stragglers: set[asyncio.Task] = set()

    async def run_tests(
        self,
        target_names: Optional[list[str]] = None,
        update: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[TestResult]:
        """Run the selected targets (all when ``target_names`` is empty).

        Setting ``cancel_event`` stops new steps from starting; the run still
        cleans up and returns a result for every task.
        """
        start = time.time()
        logger.info("=== Starting visual tests ===")
        self._cleanup_done = False
        self._cancel_event = cancel_event or asyncio.Event()
        self._stragglers = set()
        results: list[TestResult] = []

        try:
            if self.dev_server is not None:
                logger.info("Starting dev server...")
                await self.dev_server.start()

            tasks = self.resolve_targets(target_names)
            if not tasks:
                logger.warning("No test targets found")
                return []
            logger.info("Resolved %d test task(s)", len(tasks))

            self._ensure_output_dirs()
            await self.screenshot_engine.initialize()
            self.analyzer.reset()

            semaphore = asyncio.Semaphore(self.config.performance.concurrent.max_targets)

            async def _run_one(task: TestTask) -> TestResult:
                async with semaphore:
                    if self._cancel_event.is_set():
                        return self._create_error_result(task, TaskAborted("Run cancelled before start"))
                    return await self._run_single_test(task, update)

            settled = await asyncio.gather(
                *(_run_one(task) for task in tasks), return_exceptions=True
            )
            for task, outcome in zip(tasks, settled):
                if isinstance(outcome, BaseException):
                    logger.error("[%s] Unexpected error: %s", task.label, outcome)
                    results.append(self._create_error_result(task, outcome))
                else:
                    results.append(outcome)

            self._generate_reports(results, time.time() - start)
        finally:
            await self._cleanup()

        passed = sum(1 for r in results if r.passed)
        logger.info(
            "=== Visual tests completed in %.1fs: %d passed, %d failed ===",
            time.time() - start, passed, len(results) - passed,
        )
        return results

    def resolve_targets(self, target_names: Optional[list[str]] = None) -> list[TestTask]:
        """Expand targets × variants × viewports × browsers into tasks."""
        targets = self.config.targets
        if target_names:
            targets = [t for t in targets if t.name in target_names]

        viewports = self.config.screenshot.viewports
        browsers = self.config.screenshot.browsers
        tasks: list[TestTask] = []

        for target in targets:
            for variant in target.variants:
                base = TestTask(
                    target=target.name,
                    target_type=target.type,
                    variant=variant.name,
                    url=variant.url,
                    baseline=variant.baseline,
                    selector=variant.selector,
                    wait_for=variant.wait_for,
                    threshold=variant.threshold,
                    viewport=variant.viewport,
                    theme=variant.theme,
                )
                if viewports:
                    per_viewport = [
                        base.model_copy(update={
                            "variant": f"{variant.name}@{vp.name}",
                            "baseline": derive_baseline(variant.baseline, vp.name),
                            "viewport": vp,
                        })
                        for vp in viewports
                    ]
                else:
                    per_viewport = [base]

                if len(browsers) > 1:
                    for browser in browsers:
                        for task in per_viewport:
                            tasks.append(task.model_copy(update={
                                "variant": f"{task.variant}@{browser.type}",
                                "baseline": derive_baseline(task.baseline, browser.type),
                                "browser": browser.type,
                            }))
                else:
                    browser_type = browsers[0].type if browsers else None
                    tasks.extend(t.model_copy(update={"browser": browser_type}) for t in per_viewport)

        return tasks

    def update_baselines(self, results: list[TestResult]) -> int:
        """Accept the actual screenshots of failed results as new baselines."""
        updated = 0
        for result in results:
            if result.passed:
                continue
            label = f"{result.target}/{result.variant}"
            baseline, actual = result.screenshots.baseline, result.screenshots.actual
            if not baseline or not actual or not Path(actual).exists():
                logger.warning("[%s] No screenshot to accept, skipping", label)
                continue
            try:
                Path(baseline).parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(actual, baseline)
            except OSError as e:
                logger.error("[%s] Failed to update baseline: %s", label, e)
                continue
            logger.info("[%s] Baseline updated: %s", label, baseline)
            updated += 1
        return updated

    async def sync_baselines(
        self, target_names: Optional[list[str]] = None
    ) -> list[tuple[TestTask, BaselineResult]]:
        """Fetch every resolved task's baseline into the baselines directory.

        Nothing is captured or compared. Failures are reported per task in
        the returned :class:`BaselineResult` rather than raised.
        """
        tasks = self.resolve_targets(target_names)
        if not tasks:
            logger.warning("No targets found to sync")
            return []
        logger.info("Syncing %d baseline(s)", len(tasks))
        Path(self.config.directories.baselines).mkdir(parents=True, exist_ok=True)
        semaphore = asyncio.Semaphore(self.config.performance.concurrent.max_targets)

        async def _fetch_one(task: TestTask) -> BaselineResult:
            async with semaphore:
                return await self.baseline_provider.fetch(FetchBaselineOptions(
                    source=task.baseline, output_path=str(self._baseline_path(task))
                ))

        try:
            settled = await asyncio.gather(
                *(_fetch_one(task) for task in tasks), return_exceptions=True
            )
        finally:
            try:
                await self.baseline_provider.dispose()
            except Exception as e:
                logger.warning("Failed to dispose baseline provider: %s", e)

        synced: list[tuple[TestTask, BaselineResult]] = []
        for task, outcome in zip(tasks, settled):
            if isinstance(outcome, BaseException):
                outcome = BaselineResult(
                    path=str(self._baseline_path(task)), success=False, error=outcome
                )
            if outcome.success:
                logger.info("[%s] Baseline synced: %s", task.label, outcome.path)
            else:
                logger.error("[%s] Baseline sync failed: %s", task.label, outcome.error)
            synced.append((task, outcome))
        return synced

    def get_llm_stats(self) -> LLMStats:
        return self.analyzer.get_stats()

    # ------------------------------------------------------------------
    # Per-task pipeline
    # ------------------------------------------------------------------

    async def _run_single_test(self, task: TestTask, update: bool) -> TestResult:
        label = task.label
        timeout = self.config.performance.task_timeout_seconds
        started = time.time()
        abort = asyncio.Event()
        timer = asyncio.get_running_loop().call_later(timeout, abort.set)

        pipeline = asyncio.ensure_future(self._execute_steps(task, abort, update, started))
        abort_wait = asyncio.ensure_future(abort.wait())
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {pipeline, abort_wait, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
            )
            if pipeline in done:
                return pipeline.result()

            # Browser calls in flight are left to finish; the next step check stops them
            abort.set()
            self._detach(pipeline)
            if self._cancel_event.is_set():
                logger.warning("[%s] Run cancelled, abandoning task", label)
                return self._create_error_result(task, TaskAborted("Run cancelled"), started=started)
            logger.error("[%s] Task timeout after %ss", label, timeout)
            return self._create_error_result(
                task, TaskTimeoutError(f"Task timeout after {timeout}s"), started=started
            )
        except Exception as e:
            logger.error("[%s] Unexpected error: %s", label, e)
            return self._create_error_result(task, e, started=started)
        finally:
            timer.cancel()
            abort_wait.cancel()
            cancel_wait.cancel()

    async def _execute_steps(
        self, task: TestTask, abort: asyncio.Event, update: bool, started: float
    ) -> TestResult:
        label = task.label
        baseline_path = self._baseline_path(task)
        actual_path = self._actual_path(task)
        diff_path = self._diff_path(task)
        logger.info("[%s] Starting test...", label)

        # Step 1: baseline
        _check_aborted(abort)
        first_run = False
        try:
            fetched = await self.baseline_provider.fetch(
                FetchBaselineOptions(source=task.baseline, output_path=str(baseline_path))
            )
            if not fetched.success:
                error = fetched.error or RuntimeError("Baseline fetch failed")
                if update and isinstance(error, BaselineNotFoundError):
                    first_run = True
                    logger.info("[%s] No baseline found, capturing initial baseline...", label)
                else:
                    raise error
            else:
                logger.debug("[%s] Baseline ready", label)
        except Exception as e:
            logger.error("[%s] Baseline fetch failed: %s", label, e)
            return self._create_error_result(task, e, "baseline", started)

        # Step 2: screenshot
        _check_aborted(abort)
        try:
            await self.screenshot_engine.capture(CaptureOptions(
                url=task.url,
                output_path=str(actual_path),
                selector=task.selector,
                wait_for=task.wait_for,
                viewport=task.viewport,
                browser=task.browser,
                theme=task.theme,
            ))
        except Exception as e:
            logger.error("[%s] Screenshot failed: %s", label, e)
            return self._create_error_result(task, e, "screenshot", started)

        if first_run:
            try:
                baseline_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(actual_path, baseline_path)
            except OSError as e:
                logger.error("[%s] Failed to save initial baseline: %s", label, e)
                return self._create_error_result(task, e, "baseline", started)
            logger.info("[%s] INITIALIZED baseline: %s", label, baseline_path)
            return TestResult(
                target=task.target,
                variant=task.variant,
                passed=True,
                mismatch_percentage=0.0,
                screenshots=ScreenshotPaths(baseline=str(baseline_path), actual=str(actual_path)),
                comparison=CompareResult(
                    match=True, mismatch_percentage=0.0, mismatch_pixels=0, total_pixels=0
                ),
                duration_seconds=time.time() - started,
            )

        # Step 3: comparison
        _check_aborted(abort)
        threshold = task.threshold if task.threshold is not None else self.config.comparison.threshold
        try:
            comparison = await self.comparison_engine.compare(CompareOptions(
                baseline_path=str(baseline_path),
                actual_path=str(actual_path),
                diff_path=str(diff_path),
                threshold=threshold,
                color_threshold=self.config.comparison.color_threshold,
                antialiasing=self.config.comparison.antialiasing,
            ))
        except Exception as e:
            logger.error("[%s] Comparison failed: %s", label, e)
            return self._create_error_result(task, e, "comparison", started)
        logger.debug("[%s] Comparison done: %.2f%%", label, comparison.mismatch_percentage)

        # Step 4: analysis, only for mismatches
        _check_aborted(abort)
        analysis: Optional[AnalyzeResult] = None
        suggestions: Optional[list[FixSuggestion]] = None
        if not comparison.match and self.config.llm.enabled:
            context = AnalysisContext(
                name=label, type="page" if task.target_type == "page" else "component"
            )
            try:
                analysis = await self.analyzer.analyze(
                    AnalyzeOptions(
                        baseline_path=str(baseline_path),
                        actual_path=str(actual_path),
                        diff_path=comparison.diff_path,
                        comparison=comparison,
                        context=context,
                    ),
                    abort,
                )
                if analysis.differences:
                    fixes = await self.analyzer.suggest_fix(
                        SuggestFixOptions(differences=analysis.differences, context=context), abort
                    )
                    suggestions = fixes or None
            except Exception as e:
                logger.error("[%s] Analysis failed: %s", label, e)
                return self._create_error_result(task, e, "analysis", started)

        duration = time.time() - started
        logger.info(
            "[%s] %s (%.2f%%, %.1fs)", label,
            "PASSED" if comparison.match else "FAILED",
            comparison.mismatch_percentage, duration,
        )
        return TestResult(
            target=task.target,
            variant=task.variant,
            passed=comparison.match,
            mismatch_percentage=comparison.mismatch_percentage,
            screenshots=ScreenshotPaths(
                baseline=str(baseline_path), actual=str(actual_path), diff=comparison.diff_path
            ),
            comparison=comparison,
            analysis=analysis,
            suggestions=suggestions,
            duration_seconds=duration,
        )

    def _create_error_result(
        self,
        task: TestTask,
        error: BaseException,
        step: ErrorStep = "unknown",
        started: Optional[float] = None,
    ) -> TestResult:
        message = str(error) or type(error).__name__
        return TestResult(
            target=task.target,
            variant=task.variant,
            passed=False,
            mismatch_percentage=100.0,
            screenshots=ScreenshotPaths(
                baseline=str(self._baseline_path(task)), actual=str(self._actual_path(task))
            ),
            comparison=CompareResult(
                match=False, mismatch_percentage=100.0, mismatch_pixels=0, total_pixels=0
            ),
            analysis=AnalyzeResult(
                differences=[Difference(
                    id=f"error-{task.label}",
                    type="other",
                    location=task.label,
                    description=f"Test failed at {step} step: {message}",
                    severity="critical",
                )],
                assessment=Assessment(
                    match_score=0, acceptable=False, summary=f"Test error ({step}): {message}"
                ),
            ),
            error=TestError(step=step, message=message),
            duration_seconds=time.time() - started if started else 0.0,
        )

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _detach(self, pipeline: asyncio.Task) -> None:
        self._stragglers.add(pipeline)

        def _finished(t: asyncio.Task) -> None:
            self._stragglers.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.debug("Abandoned task ended with: %s", t.exception())

        pipeline.add_done_callback(_finished)

    def _generate_reports(self, results: list[TestResult], duration: float) -> None:
        try:
            self.reports = self.reporter.generate_reports(
                results, llm_stats=self.analyzer.get_stats(), duration_seconds=duration
            )
        except Exception as e:
            logger.error("Failed to generate reports: %s", e)

    async def _cleanup(self) -> None:
        """Release run resources once; each step is attempted even if another fails."""
        if self._cleanup_done:
            return
        self._cleanup_done = True

        if self._stragglers:
            logger.debug("Waiting for %d abandoned task(s)", len(self._stragglers))
            _, pending = await asyncio.wait(set(self._stragglers), timeout=self.straggler_grace)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        try:
            await self.screenshot_engine.close()
        except Exception as e:
            logger.warning("Failed to close screenshot engine: %s", e)

        try:
            await self.baseline_provider.dispose()
        except Exception as e:
            logger.warning("Failed to dispose baseline provider: %s", e)

        if self.dev_server is not None:
            try:
                await self.dev_server.stop()
            except Exception as e:
                logger.warning("Failed to stop dev server: %s", e)

        try:
            self.analyzer.flush_cache()
        except Exception as e:
            logger.warning("Failed to persist LLM cache: %s", e)

    def _ensure_output_dirs(self) -> None:
        dirs = self.config.directories
        for d in (dirs.baselines, dirs.actuals, dirs.diffs, dirs.reports):
            Path(d).mkdir(parents=True, exist_ok=True)

    def _baseline_path(self, task: TestTask) -> Path:
        return Path(self.config.directories.baselines) / task.target / f"{task.variant}.png"

    def _actual_path(self, task: TestTask) -> Path:
        return Path(self.config.directories.actuals) / task.target / f"{task.variant}.png"

    def _diff_path(self, task: TestTask) -> Path:
        return Path(self.config.directories.diffs) / task.target / f"{task.variant}-diff.png"


def _check_aborted(abort: asyncio.Event) -> None:
    if abort.is_set():
        raise TaskAborted("Task aborted")
