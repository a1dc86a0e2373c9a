"""Baselines exported from Figma through an MCP tool server."""

from __future__ import annotations

import asyncio
import atexit
import logging
import time
from pathlib import Path
from typing import Callable, Optional, Union

from src.comparison.image_utils import file_sha256, image_dimensions
from src.models.baseline import BaselineMetadata, BaselineResult, FetchBaselineOptions, FigmaInfo
from src.models.config import BaselineSource, FigmaConfig

from .protocol_client import ProtocolClient, default_client_factory

logger = logging.getLogger(__name__)

DOWNLOAD_TOOL = "download_figma_images"
NODE_DATA_TOOL = "get_figma_data"


def parse_source(source: Union[str, BaselineSource]) -> BaselineSource:
    """Normalise ``"fileKey:nodeId"`` strings; node ids may contain colons themselves."""
    if isinstance(source, BaselineSource):
        return source
    file_key, sep, node_id = source.partition(":")
    if sep and file_key:
        return BaselineSource(type="figma-mcp", source=node_id, file_key=file_key)
    return BaselineSource(type="figma-mcp", source=source)


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class FigmaMcpProvider:
    name = "figma-mcp"

    def __init__(
        self,
        config: Optional[FigmaConfig] = None,
        client_factory: Callable[[FigmaConfig], ProtocolClient] = default_client_factory,
    ):
        self.config = config or FigmaConfig()
        self._client_factory = client_factory
        self._client: Optional[ProtocolClient] = None
        self._connect_lock = asyncio.Lock()
        self._disposed = False
        # Only drops the reference; the child process exits with the interpreter
        atexit.register(self._on_exit)

    async def fetch(self, options: FetchBaselineOptions) -> BaselineResult:
        parsed = parse_source(options.source)
        file_key = parsed.file_key or self.config.file_key
        output = Path(options.output_path)

        if not file_key:
            return BaselineResult(
                path=options.output_path,
                success=False,
                error=ValueError(
                    "Figma file key is required; provide it in the source or baseline.figma.file_key"
                ),
            )

        logger.debug("Fetching Figma node %s/%s -> %s", file_key, parsed.source, output)
        try:
            client = await self._ensure_client()
        except Exception as e:
            return BaselineResult(
                path=options.output_path,
                success=False,
                error=RuntimeError(f"Failed to initialize Figma MCP client: {e}"),
            )

        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            result = await client.call_tool(
                DOWNLOAD_TOOL,
                {
                    "fileKey": file_key,
                    "nodes": [{"nodeId": parsed.source, "fileName": output.name}],
                    "localPath": str(output.parent),
                    "format": "png",
                    "scale": options.scale or self.config.scale,
                },
                timeout=options.timeout_seconds or self.config.timeout_seconds,
            )
            if result.is_error:
                raise RuntimeError(f"Figma MCP download failed: {result.text or 'unknown MCP error'}")
            if not output.exists():
                raise FileNotFoundError(f"Downloaded file not found at: {output}")

            metadata = BaselineMetadata(
                dimensions=image_dimensions(output),
                hash=file_sha256(output),
                fetched_at=_now(),
                figma_info=FigmaInfo(file_key=file_key, node_id=parsed.source, last_modified=_now()),
            )
        except Exception as e:
            logger.error("Failed to fetch Figma baseline %s/%s: %s", file_key, parsed.source, e)
            return BaselineResult(path=options.output_path, success=False, error=e)

        logger.info(
            "Figma baseline fetched: %s (%dx%d)", output.name,
            metadata.dimensions.width, metadata.dimensions.height,
        )
        return BaselineResult(path=options.output_path, success=True, metadata=metadata)

    async def exists(self, source: Union[str, BaselineSource]) -> bool:
        parsed = parse_source(source)
        file_key = parsed.file_key or self.config.file_key
        if not file_key:
            return False
        try:
            client = await self._ensure_client()
            result = await client.call_tool(
                NODE_DATA_TOOL,
                {"fileKey": file_key, "nodeId": parsed.source, "depth": 0},
                timeout=self.config.timeout_seconds,
            )
        except Exception as e:
            logger.debug("Figma node lookup failed for %s/%s: %s", file_key, parsed.source, e)
            return False
        return not result.is_error

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        atexit.unregister(self._on_exit)
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.close()
            except Exception as e:
                logger.debug("Ignoring MCP client close error: %s", e)
            logger.debug("MCP client disposed")

    async def _ensure_client(self) -> ProtocolClient:
        async with self._connect_lock:
            if self._client is None:
                logger.info("Initializing Figma MCP client...")
                client = self._client_factory(self.config)
                await client.connect()
                self._client = client
                logger.info("Figma MCP client initialized")
            return self._client

    def _on_exit(self) -> None:
        self._client = None
