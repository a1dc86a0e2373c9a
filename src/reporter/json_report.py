"""JSON report output."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from src.models.analysis import LLMStats
from src.models.test_result import RunSummary, TestResult


def generate_json_report(
    results: list[TestResult],
    output_path: Path,
    llm_stats: Optional[LLMStats] = None,
    generated_at: str = "",
    duration_seconds: float = 0.0,
) -> None:
    """Write a machine-readable JSON report."""
    report = {
        "generated_at": generated_at,
        "duration_seconds": round(duration_seconds, 2),
        "summary": RunSummary.from_results(results).model_dump(),
        "results": [r.model_dump(mode="json") for r in results],
        "llm": llm_stats.model_dump(mode="json") if llm_stats else None,
    }

    with open(output_path, "w") as f:
        json.dump(report, f, indent=2, default=str)
