"""Severity and grade scales shared by the LLM and rule-based analysis paths."""

from __future__ import annotations


def percentage_to_severity(percentage: float) -> str:
    if percentage >= 20:
        return "critical"
    if percentage >= 5:
        return "major"
    if percentage >= 1:
        return "minor"
    return "trivial"


def score_to_grade(score: float) -> str:
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    if score >= 60:
        return "D"
    return "F"


def mismatch_to_score(mismatch_percentage: float) -> int:
    return max(0, round(100 - mismatch_percentage * 5))
