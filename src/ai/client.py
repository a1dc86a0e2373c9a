"""LLM client for visual diff analysis.

Builds prompts, loads the images, calls a :class:`VisionAdapter` and parses
the reply. Parsing never raises: an unusable reply yields a failing default
assessment so callers always get a well-formed result.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from src.models.analysis import (
    AnalyzeResult,
    Assessment,
    Difference,
    FixSuggestion,
    SuggestFixResult,
)
from src.models.comparison import CompareResult
from src.models.config import ResolvedEndpoint

from .adapters import ImageInput, VisionAdapter
from .prompts.analyze_diff import build_analyze_prompt, build_suggest_fix_prompt

logger = logging.getLogger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?\s*```")
_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


@dataclass
class AnalysisContext:
    name: str = "Unknown"
    type: str = "component"
    framework: str = "unknown"


@dataclass
class AnalyzeOptions:
    baseline_path: str
    actual_path: str
    comparison: CompareResult
    diff_path: Optional[str] = None
    context: AnalysisContext = field(default_factory=AnalysisContext)


@dataclass
class SuggestFixOptions:
    differences: list[Difference]
    context: AnalysisContext = field(default_factory=AnalysisContext)


class _AnalyzeResponse(BaseModel):
    differences: list[Difference] = Field(default_factory=list)
    assessment: Optional[Assessment] = None


class _SuggestFixResponse(BaseModel):
    fixes: list[FixSuggestion] = Field(default_factory=list)


def default_assessment() -> Assessment:
    return Assessment(
        match_score=0, acceptable=False, summary="Failed to parse LLM response"
    )


def parse_json_response(text: str) -> Optional[Any]:
    """Parse an LLM reply: whole text, then a fenced block, then the outermost object."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    match = _FENCE_PATTERN.search(text)
    if match:
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            pass

    match = _OBJECT_PATTERN.search(text)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            pass

    logger.warning("Failed to parse LLM JSON response: %s", text[:200])
    return None


class LLMClient:
    def __init__(self, adapter: VisionAdapter, endpoint: ResolvedEndpoint):
        self.adapter = adapter
        self.model = endpoint.model
        self.max_tokens = endpoint.max_tokens
        self.temperature = endpoint.temperature

    @property
    def adapter_name(self) -> str:
        return self.adapter.name

    async def analyze(self, options: AnalyzeOptions) -> AnalyzeResult:
        images = await asyncio.to_thread(
            _load_images, options.baseline_path, options.actual_path, options.diff_path
        )
        prompt = build_analyze_prompt(
            options.comparison,
            name=options.context.name,
            target_type=options.context.type,
            framework=options.context.framework,
        )
        reply = await self.adapter.chat_with_images(
            images, prompt, model=self.model,
            max_tokens=self.max_tokens, temperature=self.temperature,
        )
        result = self.parse_analyze_response(reply.text)
        if reply.usage is not None:
            result.usage = reply.usage
        return result

    async def suggest_fix(self, options: SuggestFixOptions) -> SuggestFixResult:
        prompt = build_suggest_fix_prompt(options.differences)
        reply = await self.adapter.chat(
            prompt, model=self.model,
            max_tokens=self.max_tokens, temperature=self.temperature,
        )
        return SuggestFixResult(
            fixes=self.parse_suggest_fix_response(reply.text), usage=reply.usage
        )

    @staticmethod
    def parse_analyze_response(text: str) -> AnalyzeResult:
        parsed = parse_json_response(text)
        if parsed is not None:
            try:
                validated = _AnalyzeResponse.model_validate(parsed)
                return AnalyzeResult(
                    differences=validated.differences,
                    assessment=validated.assessment or default_assessment(),
                    raw_response=text,
                )
            except ValidationError as e:
                logger.warning("LLM analysis response failed validation: %s", e)
        return AnalyzeResult(assessment=default_assessment(), raw_response=text)

    @staticmethod
    def parse_suggest_fix_response(text: str) -> list[FixSuggestion]:
        parsed = parse_json_response(text)
        if parsed is not None:
            try:
                return _SuggestFixResponse.model_validate(parsed).fixes
            except ValidationError as e:
                logger.warning("LLM fix suggestion response failed validation: %s", e)
        return []


def _load_images(baseline: str, actual: str, diff: Optional[str]) -> list[ImageInput]:
    images = [
        ImageInput(data=Path(baseline).read_bytes(), label="[BASELINE]"),
        ImageInput(data=Path(actual).read_bytes(), label="[ACTUAL]"),
    ]
    if diff and Path(diff).exists():
        images.append(ImageInput(data=Path(diff).read_bytes(), label="[DIFF]"))
    return images
