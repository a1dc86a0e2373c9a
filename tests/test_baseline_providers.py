"""Tests for baseline providers."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.baseline.errors import BaselineNotFoundError, ProtocolClientUnavailable
from src.baseline.figma_mcp_provider import FigmaMcpProvider, parse_source
from src.baseline.local_provider import LocalProvider
from src.baseline.protocol_client import (
    McpStdioClient,
    ToolCallResult,
    UnavailableProtocolClient,
    default_client_factory,
)
from src.baseline.provider import RoutingBaselineProvider, create_provider
from src.models.baseline import FetchBaselineOptions
from src.models.config import BaselineSource, FigmaConfig, VisualTestConfig
from tests.conftest import make_png


# ============================================================================
# Helpers
# ============================================================================


def _fake_client(download_writes=True, is_error=False, text=""):
    """Protocol client whose download tool writes the requested PNG."""
    client = MagicMock()
    client.connect = AsyncMock()
    client.close = AsyncMock()

    async def _call_tool(name, arguments, timeout):
        if name == "download_figma_images" and download_writes and not is_error:
            node = arguments["nodes"][0]
            make_png(Path(arguments["localPath"]) / node["fileName"], size=(40, 30))
        return ToolCallResult(text=text, is_error=is_error)

    client.call_tool = AsyncMock(side_effect=_call_tool)
    return client


class TestLocalProvider:
    """Tests for LocalProvider."""

    @pytest.mark.asyncio
    async def test_fetch_copies_and_describes(self, tmp_path: Path):
        make_png(tmp_path / "store" / "btn.png", size=(20, 10))
        provider = LocalProvider(tmp_path / "store")
        out = tmp_path / "work" / "btn.png"

        result = await provider.fetch(FetchBaselineOptions(source="btn.png", output_path=str(out)))

        assert result.success is True
        assert out.exists()
        assert result.metadata.dimensions.width == 20
        assert result.metadata.dimensions.height == 10
        assert len(result.metadata.hash) == 64
        assert result.metadata.figma_info is None

    @pytest.mark.asyncio
    async def test_missing_source_is_not_found(self, tmp_path: Path):
        """Test a missing baseline is reported, not raised."""
        provider = LocalProvider(tmp_path)
        result = await provider.fetch(
            FetchBaselineOptions(source="nope.png", output_path=str(tmp_path / "out.png"))
        )
        assert result.success is False
        assert isinstance(result.error, BaselineNotFoundError)

    @pytest.mark.asyncio
    async def test_fetch_in_place(self, tmp_path: Path):
        """Test fetching a baseline onto itself leaves it untouched."""
        src = make_png(tmp_path / "btn.png")
        before = src.read_bytes()
        result = await LocalProvider(tmp_path).fetch(
            FetchBaselineOptions(source="btn.png", output_path=str(src))
        )
        assert result.success is True
        assert src.read_bytes() == before

    @pytest.mark.asyncio
    async def test_absolute_source(self, tmp_path: Path):
        src = make_png(tmp_path / "abs.png")
        provider = LocalProvider(tmp_path / "elsewhere")
        assert await provider.exists(str(src)) is True
        assert await provider.exists("relative.png") is False


class TestParseSource:
    """Tests for Figma source parsing."""

    def test_file_key_and_node(self):
        parsed = parse_source("abc123:1:23")
        assert parsed.file_key == "abc123"
        assert parsed.source == "1:23"

    def test_node_only(self):
        parsed = parse_source("node")
        assert parsed.file_key is None
        assert parsed.source == "node"

    def test_structured_passthrough(self):
        source = BaselineSource(type="figma-mcp", source="1:2", file_key="k")
        assert parse_source(source) is source


class TestFigmaMcpProvider:
    """Tests for FigmaMcpProvider."""

    @pytest.mark.asyncio
    async def test_fetch_downloads_node(self, tmp_path: Path):
        client = _fake_client()
        provider = FigmaMcpProvider(FigmaConfig(file_key="FILE"), client_factory=lambda cfg: client)
        out = tmp_path / "baselines" / "btn.png"

        node = BaselineSource(type="figma-mcp", source="1:23")
        result = await provider.fetch(FetchBaselineOptions(source=node, output_path=str(out)))

        assert result.success is True
        assert result.metadata.figma_info.file_key == "FILE"
        assert result.metadata.figma_info.node_id == "1:23"
        assert result.metadata.dimensions.width == 40
        name, arguments = client.call_tool.await_args.args[:2]
        assert name == "download_figma_images"
        assert arguments["scale"] == 2
        assert arguments["format"] == "png"
        await provider.dispose()

    @pytest.mark.asyncio
    async def test_missing_file_key(self, tmp_path: Path):
        provider = FigmaMcpProvider(FigmaConfig(), client_factory=lambda cfg: _fake_client())
        result = await provider.fetch(
            FetchBaselineOptions(
                source=BaselineSource(type="figma-mcp", source="1:23"),
                output_path=str(tmp_path / "x.png"),
            )
        )
        assert result.success is False
        assert "file key" in str(result.error)

    @pytest.mark.asyncio
    async def test_tool_error(self, tmp_path: Path):
        client = _fake_client(is_error=True, text="node not found")
        provider = FigmaMcpProvider(FigmaConfig(file_key="F"), client_factory=lambda cfg: client)
        result = await provider.fetch(
            FetchBaselineOptions(source="9:9", output_path=str(tmp_path / "x.png"))
        )
        assert result.success is False
        assert "node not found" in str(result.error)

    @pytest.mark.asyncio
    async def test_file_not_written(self, tmp_path: Path):
        client = _fake_client(download_writes=False)
        provider = FigmaMcpProvider(FigmaConfig(file_key="F"), client_factory=lambda cfg: client)
        result = await provider.fetch(
            FetchBaselineOptions(source="9:9", output_path=str(tmp_path / "x.png"))
        )
        assert result.success is False
        assert isinstance(result.error, FileNotFoundError)

    @pytest.mark.asyncio
    async def test_connect_failure(self, tmp_path: Path):
        """Test an unavailable client becomes a failed result."""
        provider = FigmaMcpProvider(
            FigmaConfig(file_key="F"),
            client_factory=lambda cfg: UnavailableProtocolClient("mcp missing"),
        )
        result = await provider.fetch(
            FetchBaselineOptions(source="1:2", output_path=str(tmp_path / "x.png"))
        )
        assert result.success is False
        assert "Failed to initialize Figma MCP client" in str(result.error)

    @pytest.mark.asyncio
    async def test_client_connected_once(self, tmp_path: Path):
        client = _fake_client()
        factory = MagicMock(return_value=client)
        provider = FigmaMcpProvider(FigmaConfig(file_key="F"), client_factory=factory)
        for i in range(3):
            await provider.fetch(
                FetchBaselineOptions(source=f"1:{i}", output_path=str(tmp_path / f"{i}.png"))
            )
        factory.assert_called_once()
        client.connect.assert_awaited_once()
        await provider.dispose()

    @pytest.mark.asyncio
    async def test_dispose_idempotent(self, tmp_path: Path):
        client = _fake_client()
        provider = FigmaMcpProvider(FigmaConfig(file_key="F"), client_factory=lambda cfg: client)
        await provider.fetch(FetchBaselineOptions(source="1:1", output_path=str(tmp_path / "a.png")))
        await provider.dispose()
        await provider.dispose()
        client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_exists(self):
        client = _fake_client()
        provider = FigmaMcpProvider(FigmaConfig(file_key="F"), client_factory=lambda cfg: client)
        assert await provider.exists("1:1") is True
        assert client.call_tool.await_args.args[0] == "get_figma_data"
        await provider.dispose()


class TestProtocolClientFactory:
    """Tests for default_client_factory."""

    def test_unavailable_without_sdk(self):
        with patch("src.baseline.protocol_client.mcp_available", return_value=False):
            client = default_client_factory(FigmaConfig())
        assert isinstance(client, UnavailableProtocolClient)

    @pytest.mark.asyncio
    async def test_unavailable_client_raises(self):
        with pytest.raises(ProtocolClientUnavailable):
            await UnavailableProtocolClient("missing").connect()

    def test_stdio_client_gets_token(self):
        with patch("src.baseline.protocol_client.mcp_available", return_value=True):
            client = default_client_factory(FigmaConfig(access_token="tok"))
        assert isinstance(client, McpStdioClient)
        assert client.command == "npx"
        assert client.env["FIGMA_API_KEY"] == "tok"


class TestRoutingBaselineProvider:
    """Tests for per-source provider routing."""

    def test_create_provider_unknown(self):
        with pytest.raises(ValueError, match="Unknown baseline provider"):
            create_provider("s3", VisualTestConfig())

    def test_resolve_type(self):
        router = RoutingBaselineProvider(VisualTestConfig())
        assert router.resolve_type("btn.png") == "local"
        assert router.resolve_type(BaselineSource(type="figma-mcp", source="1:2")) == "figma-mcp"

    @pytest.mark.asyncio
    async def test_routes_to_local(self, visual_config: VisualTestConfig, tmp_path: Path):
        make_png(Path(visual_config.directories.baselines) / "btn.png")
        router = RoutingBaselineProvider(visual_config)
        result = await router.fetch(
            FetchBaselineOptions(source="btn.png", output_path=str(tmp_path / "out.png"))
        )
        assert result.success is True
        await router.dispose()

    @pytest.mark.asyncio
    async def test_dispose_disposes_created_providers(self, visual_config: VisualTestConfig):
        router = RoutingBaselineProvider(visual_config)
        figma = MagicMock()
        figma.dispose = AsyncMock()
        router._providers["figma-mcp"] = figma
        await router.dispose()
        await router.dispose()
        figma.dispose.assert_awaited_once()
