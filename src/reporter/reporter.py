"""Report generation orchestration."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

from src.models.analysis import LLMStats
from src.models.config import VisualTestConfig
from src.models.test_result import TestResult

from .json_report import generate_json_report

logger = logging.getLogger(__name__)


class Reporter:
    """Generates reports from test results."""

    def __init__(self, config: VisualTestConfig):
        self.config = config

    def generate_reports(
        self,
        results: list[TestResult],
        llm_stats: Optional[LLMStats] = None,
        duration_seconds: float = 0.0,
        output_dir: Path | None = None,
    ) -> dict[str, str]:
        """Generate all configured report formats. Returns format -> file path."""
        out_dir = output_dir or Path(self.config.directories.reports)
        out_dir.mkdir(parents=True, exist_ok=True)
        generated = {}
        stamp = time.strftime("%Y%m%d_%H%M%S")

        # LLM stats are only interesting once the LLM was actually called
        stats = llm_stats if llm_stats and llm_stats.call_count > 0 else None

        if "json" in self.config.report.formats:
            path = out_dir / f"report_{stamp}.json"
            generate_json_report(
                results,
                path,
                llm_stats=stats,
                generated_at=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                duration_seconds=duration_seconds,
            )
            generated["json"] = str(path)
            logger.info("JSON report: %s", path)

        return generated
