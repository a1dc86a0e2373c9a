"""CLI entry point for the visual test runner."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from src.models.config import (
    TargetConfig,
    VariantConfig,
    VisualTestConfig,
)
from src.models.test_result import RunSummary, TestResult
from src.orchestrator import VisualTestOrchestrator

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


async def _run_with_signals(
    orchestrator: VisualTestOrchestrator,
    targets: Optional[list[str]],
    update: bool,
    cancel_event: asyncio.Event,
) -> list[TestResult]:
    loop = asyncio.get_running_loop()
    installed = []

    def _on_signal(name: str) -> None:
        if not cancel_event.is_set():
            logger.warning("Received %s, cancelling run...", name)
            cancel_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            pass
    try:
        return await orchestrator.run_tests(targets, update=update, cancel_event=cancel_event)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _print_results(results: list[TestResult]) -> None:
    table = Table(title="Visual Test Results")
    table.add_column("Target", style="bold")
    table.add_column("Variant")
    table.add_column("Status")
    table.add_column("Mismatch", justify="right")
    table.add_column("Details")

    for r in results:
        if r.error is not None:
            status = "[red]ERROR[/red]"
            details = f"{r.error.step}: {r.error.message}"
        elif r.passed:
            status = "[green]PASS[/green]"
            details = ""
        else:
            status = "[red]FAIL[/red]"
            details = r.analysis.assessment.summary if r.analysis else ""
        table.add_row(r.target, r.variant, status, f"{r.mismatch_percentage:.2f}%", details)
    console.print(table)

    summary = RunSummary.from_results(results)
    console.print(
        f"Total: {summary.total}  "
        f"[green]Passed: {summary.passed}[/green]  "
        f"[red]Failed: {summary.failed}[/red]  "
        f"[red]Errors: {summary.errors}[/red]"
    )


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Visual regression testing: capture, compare, analyse."""
    setup_logging(verbose)


@cli.command()
@click.option("--config", "-c", default="visual-test.json", help="Config file path")
@click.option("--target", "-t", "targets", multiple=True, help="Only run these targets")
@click.option("--update", is_flag=True, help="Capture baselines that do not exist yet")
@click.option("--accept", is_flag=True, help="Accept failing screenshots as new baselines")
def run(config: str, targets: tuple[str, ...], update: bool, accept: bool) -> None:
    """Run visual tests: baseline → screenshot → compare → analyse."""
    try:
        cfg = VisualTestConfig.load(config)
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {config}[/red]")
        console.print("Run 'visual-test init' to create a default config.")
        sys.exit(1)

    orchestrator = VisualTestOrchestrator(cfg)
    cancel_event = asyncio.Event()
    results = asyncio.run(
        _run_with_signals(orchestrator, list(targets) or None, update, cancel_event)
    )

    if not results:
        console.print("[yellow]No tests were run[/yellow]")
        return

    console.print("\n[bold green]Run Complete[/bold green]")
    _print_results(results)

    for fmt, path in orchestrator.reports.items():
        console.print(f"  {fmt.upper()} report: [blue]{path}[/blue]")

    stats = orchestrator.get_llm_stats()
    if stats.call_count:
        console.print(
            f"  LLM ({stats.provider}): {stats.call_count} call(s), "
            f"{stats.total_tokens} tokens, ~${stats.estimated_cost:.4f}"
        )

    if cancel_event.is_set():
        if accept:
            console.print("[yellow]Run was interrupted, baselines not updated[/yellow]")
        sys.exit(1)

    if accept:
        updated = orchestrator.update_baselines(results)
        console.print(f"[green]Updated {updated} baseline(s)[/green]")
        return

    if any(not r.passed for r in results):
        sys.exit(1)


@cli.command()
@click.option("--config", "-c", default="visual-test.json", help="Config file path")
@click.option("--target", "-t", "targets", multiple=True, help="Only sync these targets")
def sync(config: str, targets: tuple[str, ...]) -> None:
    """Fetch baselines from their providers without running tests."""
    try:
        cfg = VisualTestConfig.load(config)
    except FileNotFoundError:
        console.print(f"[red]Config file not found: {config}[/red]")
        sys.exit(1)

    orchestrator = VisualTestOrchestrator(cfg)
    synced = asyncio.run(orchestrator.sync_baselines(list(targets) or None))
    if not synced:
        console.print("[yellow]No targets found to sync[/yellow]")
        return

    failed = [(task, result) for task, result in synced if not result.success]
    console.print(f"[green]Synced {len(synced) - len(failed)} baseline(s)[/green]")
    if failed:
        console.print(f"[red]{len(failed)} baseline(s) failed to sync:[/red]")
        for task, result in failed:
            console.print(f"  - {task.label} ({result.path}): {result.error or 'Unknown error'}")
        sys.exit(1)


@cli.command()
@click.option("--url", "-u", prompt="Page URL", help="URL of the page to test")
@click.option("--config", "-c", default="visual-test.json", help="Config file path")
def init(url: str, config: str) -> None:
    """Create a default configuration file."""
    config_path = Path(config)
    if config_path.exists():
        if not click.confirm(f"{config_path} already exists. Overwrite?"):
            return

    cfg = VisualTestConfig(
        targets=[
            TargetConfig(
                name="home",
                type="page",
                variants=[VariantConfig(name="default", url=url, baseline="home/default.png")],
            )
        ]
    )
    cfg.save(config_path)
    console.print(f"[green]Created {config_path}[/green]")
    console.print("\nCapture the initial baselines with:")
    console.print("  [blue]visual-test run --update[/blue]")


if __name__ == "__main__":
    cli()
