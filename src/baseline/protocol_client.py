"""Clients for tool servers that serve design baselines.

The Figma provider talks to an MCP server over stdio. The ``mcp`` SDK is an
optional extra (``pip install visual-test-core[figma]``); when it is missing
:func:`default_client_factory` returns :class:`UnavailableProtocolClient`,
whose ``connect`` fails with a clear message so the provider can report an
ordinary baseline error.
"""

from __future__ import annotations

import importlib.util
import logging
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Protocol

from src.models.config import FigmaConfig

from .errors import ProtocolClientUnavailable

logger = logging.getLogger(__name__)

CLIENT_NAME = "visual-test-core"


@dataclass
class ToolCallResult:
    text: str
    is_error: bool = False


class ProtocolClient(Protocol):
    async def connect(self) -> None: ...

    async def call_tool(
        self, name: str, arguments: dict[str, Any], timeout: float
    ) -> ToolCallResult: ...

    async def close(self) -> None: ...


class McpStdioClient:
    """MCP client session over a child process's stdio."""

    def __init__(self, command: str, args: list[str], env: Optional[dict[str, str]] = None):
        self.command = command
        self.args = args
        self.env = env
        self._stack: Optional[AsyncExitStack] = None
        self._session = None

    async def connect(self) -> None:
        from mcp import ClientSession, StdioServerParameters
        from mcp.client.stdio import stdio_client

        params = StdioServerParameters(command=self.command, args=self.args, env=self.env)
        stack = AsyncExitStack()
        try:
            read, write = await stack.enter_async_context(stdio_client(params))
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._session = session
        logger.info("MCP session started: %s %s", self.command, " ".join(self.args))

    async def call_tool(
        self, name: str, arguments: dict[str, Any], timeout: float
    ) -> ToolCallResult:
        if self._session is None:
            raise RuntimeError("MCP client not connected")
        result = await self._session.call_tool(
            name, arguments, read_timeout_seconds=timedelta(seconds=timeout)
        )
        text = "\n".join(
            getattr(item, "text", "") for item in result.content if getattr(item, "text", None)
        )
        return ToolCallResult(text=text, is_error=bool(result.isError))

    async def close(self) -> None:
        stack, self._stack, self._session = self._stack, None, None
        if stack is not None:
            await stack.aclose()


class UnavailableProtocolClient:
    """Stands in when the MCP SDK is not installed; every call fails."""

    def __init__(self, reason: str):
        self.reason = reason

    async def connect(self) -> None:
        raise ProtocolClientUnavailable(self.reason)

    async def call_tool(
        self, name: str, arguments: dict[str, Any], timeout: float
    ) -> ToolCallResult:
        raise ProtocolClientUnavailable(self.reason)

    async def close(self) -> None:
        return None


def mcp_available() -> bool:
    return importlib.util.find_spec("mcp") is not None


def default_client_factory(config: FigmaConfig) -> ProtocolClient:
    if not mcp_available():
        return UnavailableProtocolClient(
            "The 'mcp' package is not installed; install the 'figma' extra "
            "to fetch Figma baselines"
        )
    env = None
    if config.access_token:
        env = {**os.environ, "FIGMA_API_KEY": config.access_token}
    return McpStdioClient(config.command, config.args, env=env)
