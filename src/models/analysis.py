"""Diff analysis results, from the LLM or the rule-based fallback."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from src.ai.scoring import score_to_grade

Severity = Literal["critical", "major", "minor", "trivial"]
Grade = Literal["A", "B", "C", "D", "F"]

DIFFERENCE_TYPES = (
    "color", "spacing", "font", "size", "border", "shadow",
    "position", "missing", "extra", "layout", "other",
)


class Difference(BaseModel):
    id: str
    type: str = "other"
    location: str
    description: str
    severity: Severity
    expected: Optional[str] = None
    actual: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def coerce_unknown_type(cls, v):
        # LLMs invent categories; anything unrecognised is "other"
        return v if v in DIFFERENCE_TYPES else "other"


class Assessment(BaseModel):
    match_score: float = Field(ge=0, le=100)
    grade: Grade = "F"
    acceptable: bool
    summary: str

    @model_validator(mode="after")
    def derive_grade(self) -> "Assessment":
        self.grade = score_to_grade(self.match_score)
        return self


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0


class AnalyzeResult(BaseModel):
    differences: list[Difference] = Field(default_factory=list)
    assessment: Assessment
    raw_response: Optional[str] = None
    usage: Optional[TokenUsage] = None


class FixSuggestion(BaseModel):
    difference_id: str
    type: Literal["css", "html", "component", "config"]
    code: str
    file: Optional[str] = None
    confidence: float
    explanation: str


class CostBreakdown(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0


class CostStats(BaseModel):
    call_count: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    average_tokens_per_call: float = 0.0
    breakdown: CostBreakdown = Field(default_factory=CostBreakdown)


class CacheStats(BaseModel):
    size: int = 0
    hits: int = 0
    misses: int = 0


class SuggestFixResult(BaseModel):
    fixes: list[FixSuggestion] = Field(default_factory=list)
    usage: Optional[TokenUsage] = None


class LLMStats(CostStats):
    remaining_calls: int = 0
    cache: CacheStats = Field(default_factory=CacheStats)
    provider: str = "rule-based"
