"""Heuristic diff analysis used when no LLM is available or affordable."""

from __future__ import annotations

from src.models.analysis import AnalyzeResult, Assessment, Difference
from src.models.comparison import SizeDiff

from .client import AnalyzeOptions
from .scoring import mismatch_to_score, percentage_to_severity


def size_diff_severity(size_diff: SizeDiff) -> str:
    max_delta = max(
        abs(size_diff.baseline.width - size_diff.actual.width),
        abs(size_diff.baseline.height - size_diff.actual.height),
    )
    if max_delta > 100:
        return "critical"
    if max_delta > 20:
        return "major"
    if max_delta > 5:
        return "minor"
    return "trivial"


class RuleBasedProvider:
    name = "rule-based"

    def analyze(self, options: AnalyzeOptions) -> AnalyzeResult:
        comparison = options.comparison
        differences: list[Difference] = []

        if comparison.size_diff is not None:
            b, a = comparison.size_diff.baseline, comparison.size_diff.actual
            differences.append(Difference(
                id=f"diff-{len(differences) + 1}",
                type="size",
                location="overall container",
                description=f"Size mismatch: baseline {b.width}x{b.height}, actual {a.width}x{a.height}",
                severity=size_diff_severity(comparison.size_diff),
                expected=f"{b.width}x{b.height}",
                actual=f"{a.width}x{a.height}",
            ))

        for region in comparison.diff_regions:
            pct = region.pixels / comparison.total_pixels * 100 if comparison.total_pixels else 0.0
            bounds = region.bounds
            differences.append(Difference(
                id=f"diff-{len(differences) + 1}",
                type="other" if region.type == "unknown" else region.type,
                location=f"region ({bounds.x}, {bounds.y}) {bounds.width}x{bounds.height}",
                description=f"{region.pixels} differing pixels ({pct:.2f}%)",
                severity=percentage_to_severity(pct),
            ))

        if not differences and comparison.mismatch_percentage > 0:
            differences.append(Difference(
                id="diff-1",
                type="other",
                location=options.context.name or "overall",
                description=f"Overall difference {comparison.mismatch_percentage:.2f}%",
                severity=percentage_to_severity(comparison.mismatch_percentage),
            ))

        return AnalyzeResult(
            differences=differences,
            assessment=build_assessment(comparison.mismatch_percentage, differences),
        )


def build_assessment(mismatch_percentage: float, differences: list[Difference]) -> Assessment:
    score = mismatch_to_score(mismatch_percentage)
    has_critical = any(d.severity == "critical" for d in differences)
    has_major = any(d.severity == "major" for d in differences)
    return Assessment(
        match_score=score,
        acceptable=not has_critical and not has_major and score >= 80,
        summary=_summary(score, len(differences), has_critical, has_major),
    )


def _summary(score: int, count: int, has_critical: bool, has_major: bool) -> str:
    if count == 0:
        return "No differences, perfect match"
    if has_critical:
        return f"{count} difference(s) found, including critical issues that need fixing"
    if has_major:
        return f"{count} difference(s) found with noticeable issues"
    if score >= 90:
        return f"{count} minor difference(s) found, overall match is good"
    return f"{count} difference(s) found, match score {score}"
