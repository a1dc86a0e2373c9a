"""Prompts for visual diff analysis and fix suggestions."""

from __future__ import annotations

import json

from src.models.analysis import Difference
from src.models.comparison import CompareResult

JSON_ONLY_SYSTEM_PROMPT = (
    "You must respond with valid JSON only. No markdown, no explanation, "
    "no text outside the JSON object."
)

ANALYZE_DIFF_INSTRUCTIONS = """You are a meticulous UI reviewer comparing a design baseline with the rendered implementation.

You are given up to three images, each followed by its label:
- [BASELINE] the expected design
- [ACTUAL] what the browser rendered
- [DIFF] differing pixels highlighted in red

Return exactly this JSON structure:

{"differences": [{"id": "diff-1", "type": "color", "location": "primary button label", "description": "what differs", "severity": "minor", "expected": "#1677ff", "actual": "#1890ff"}], "assessment": {"match_score": 85, "grade": "B", "acceptable": true, "summary": "one or two sentences"}}

Fields:
- type: one of color, spacing, font, size, border, shadow, position, missing, extra, layout, other
- severity: one of critical, major, minor, trivial
- expected / actual: optional concrete values (colours, sizes, text)
- match_score: 0-100, how faithfully the implementation matches the design
- acceptable: true only if the differences would not be noticed by a typical user

Ignore differences caused purely by anti-aliasing or sub-pixel font rendering."""


SUGGEST_FIX_INSTRUCTIONS = """You are a senior front-end engineer. For each visual difference below, propose a concrete code fix.

Return exactly this JSON structure:

{"fixes": [{"difference_id": "diff-1", "type": "css", "code": ".btn { color: #1677ff; }", "file": "optional/path.css", "confidence": 0.8, "explanation": "why this fixes it"}]}

Fields:
- type: one of css, html, component, config
- confidence: 0.0-1.0"""


def build_analyze_prompt(
    comparison: CompareResult,
    name: str = "Unknown",
    target_type: str = "component",
    framework: str = "unknown",
) -> str:
    """Build the text part of the analysis request; the images are attached separately."""
    size_diff = comparison.size_diff.model_dump_json() if comparison.size_diff else "none"
    return (
        f"{ANALYZE_DIFF_INSTRUCTIONS}\n\n"
        f"Target: {name} ({target_type}, framework: {framework})\n"
        f"Mismatched pixels: {comparison.mismatch_pixels} of {comparison.total_pixels}\n"
        f"Mismatch percentage: {comparison.mismatch_percentage:.2f}%\n"
        f"Size difference: {size_diff}\n"
    )


def build_suggest_fix_prompt(differences: list[Difference]) -> str:
    payload = json.dumps([d.model_dump(exclude_none=True) for d in differences], indent=2)
    return f"{SUGGEST_FIX_INSTRUCTIONS}\n\nDifferences:\n{payload}\n"
