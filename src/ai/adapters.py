"""Vendor adapters for vision-capable chat APIs.

Adapters only translate images and prompts into each vendor's message format
and map token usage back; prompt building and response parsing live in
:mod:`src.ai.client`.
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import anthropic
import openai

from src.models.analysis import TokenUsage
from src.models.config import ResolvedEndpoint

from .prompts.analyze_diff import JSON_ONLY_SYSTEM_PROMPT

logger = logging.getLogger(__name__)


@dataclass
class ImageInput:
    data: bytes
    label: str

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass
class ChatResult:
    text: str
    usage: Optional[TokenUsage] = None


class VisionAdapter(Protocol):
    name: str

    async def chat_with_images(
        self, images: list[ImageInput], prompt: str, model: str,
        max_tokens: int, temperature: float,
    ) -> ChatResult: ...

    async def chat(
        self, prompt: str, model: str, max_tokens: int, temperature: float,
    ) -> ChatResult: ...


def resolve_adapter_kind(model: str) -> str:
    """Map a model name to one of ``anthropic``, ``openai`` or ``rule-based``."""
    normalized = model.strip().lower()
    if normalized == "rule-based":
        return "rule-based"
    if normalized.startswith("claude"):
        return "anthropic"
    return "openai"


def _client_options(endpoint: ResolvedEndpoint) -> dict[str, Any]:
    options: dict[str, Any] = {}
    if endpoint.base_url:
        options["base_url"] = endpoint.base_url
    if endpoint.timeout_seconds is not None:
        options["timeout"] = endpoint.timeout_seconds
    if endpoint.max_retries is not None:
        options["max_retries"] = endpoint.max_retries
    return options


class AnthropicAdapter:
    name = "anthropic"

    def __init__(self, endpoint: ResolvedEndpoint):
        api_key = endpoint.api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            raise EnvironmentError(
                "Anthropic API key is required. Set ANTHROPIC_API_KEY or llm.api_key in config."
            )
        self.client = anthropic.AsyncAnthropic(api_key=api_key, **_client_options(endpoint))

    async def chat_with_images(
        self, images: list[ImageInput], prompt: str, model: str,
        max_tokens: int, temperature: float,
    ) -> ChatResult:
        content: list[dict[str, Any]] = []
        for image in images:
            content.append({
                "type": "image",
                "source": {"type": "base64", "media_type": "image/png", "data": image.base64},
            })
            content.append({"type": "text", "text": image.label})
        content.append({"type": "text", "text": prompt})
        logger.debug("Calling Anthropic (model=%s, images=%d)", model, len(images))
        return await self._create(content, model, max_tokens, temperature)

    async def chat(
        self, prompt: str, model: str, max_tokens: int, temperature: float,
    ) -> ChatResult:
        logger.debug("Calling Anthropic text endpoint (model=%s)", model)
        return await self._create(prompt, model, max_tokens, temperature)

    async def _create(self, content: Any, model: str, max_tokens: int, temperature: float) -> ChatResult:
        response = await self.client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=JSON_ONLY_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": content}],
        )
        text = ""
        if response.content and response.content[0].type == "text":
            text = response.content[0].text
        if response.stop_reason == "max_tokens":
            logger.warning("Anthropic response truncated at max_tokens=%d", max_tokens)
        return ChatResult(
            text=text,
            usage=TokenUsage(
                prompt_tokens=response.usage.input_tokens,
                completion_tokens=response.usage.output_tokens,
            ),
        )


class OpenAIAdapter:
    """OpenAI chat completions; ``base_url`` also covers Azure and compatible servers."""

    name = "openai"

    def __init__(self, endpoint: ResolvedEndpoint):
        api_key = endpoint.api_key or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise EnvironmentError(
                "OpenAI API key is required. Set OPENAI_API_KEY or llm.api_key in config."
            )
        self.client = openai.AsyncOpenAI(api_key=api_key, **_client_options(endpoint))

    async def chat_with_images(
        self, images: list[ImageInput], prompt: str, model: str,
        max_tokens: int, temperature: float,
    ) -> ChatResult:
        content: list[dict[str, Any]] = []
        for image in images:
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:image/png;base64,{image.base64}"},
            })
            content.append({"type": "text", "text": image.label})
        content.append({"type": "text", "text": prompt})
        logger.debug("Calling OpenAI (model=%s, images=%d)", model, len(images))
        return await self._create(content, model, max_tokens, temperature)

    async def chat(
        self, prompt: str, model: str, max_tokens: int, temperature: float,
    ) -> ChatResult:
        logger.debug("Calling OpenAI text endpoint (model=%s)", model)
        return await self._create(prompt, model, max_tokens, temperature)

    async def _create(self, content: Any, model: str, max_tokens: int, temperature: float) -> ChatResult:
        response = await self.client.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[
                {"role": "system", "content": JSON_ONLY_SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            response_format={"type": "json_object"},
        )
        text = (response.choices[0].message.content or "") if response.choices else ""
        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
            )
        return ChatResult(text=text, usage=usage)


def create_adapter(endpoint: ResolvedEndpoint) -> Optional[VisionAdapter]:
    """Build the adapter for ``endpoint.model``; ``None`` means rule-based only."""
    kind = resolve_adapter_kind(endpoint.model)
    if kind == "anthropic":
        return AnthropicAdapter(endpoint)
    if kind == "openai":
        return OpenAIAdapter(endpoint)
    return None
