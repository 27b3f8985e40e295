import json
import sys
import textwrap
from pathlib import Path

import pytest
from mcp.types import CallToolResult, TextContent

from moss.mcp import (
    RemoteToolConnection,
    RemoteToolProviderManager,
    ServerSpec,
    TransportKind,
    tool_result_to_data,
)
from moss.tools.registry import ToolRegistry


def test_text_results_become_content_list():
    result = CallToolResult(content=[TextContent(type="text", text="one"), TextContent(type="text", text="two")])

    assert tool_result_to_data(result)["content"] == ["one", "two"]


def test_error_results_become_error_payload():
    result = CallToolResult(content=[TextContent(type="text", text="no such file")], isError=True)

    assert tool_result_to_data(result) == {"error": "no such file"}


def test_structured_results_are_kept():
    result = CallToolResult(
        content=[TextContent(type="text", text='{"n": 3}')],
        structuredContent={"n": 3},
    )

    assert tool_result_to_data(result) == {"content": ['{"n": 3}'], "structured": {"n": 3}}


@pytest.mark.parametrize(
    "transport,spec",
    [
        (TransportKind.STDIO, ServerSpec(type="stdio", command="echo")),
        (TransportKind.SSE, ServerSpec(type="sse", url="http://localhost:1/sse")),
        (TransportKind.STREAMING_HTTP, ServerSpec(type="http", url="http://localhost:1/mcp")),
        (TransportKind.WEBSOCKET, ServerSpec(type="ws", url="ws://localhost:1/ws")),
    ],
)
def test_every_transport_has_a_client(transport: TransportKind, spec: ServerSpec):
    connection = RemoteToolConnection("srv", spec, transport)

    context = connection._transport_context()

    assert hasattr(context, "__aenter__")


@pytest.mark.asyncio
async def test_stdio_server_roundtrip(tmp_path: Path):
    script = tmp_path / "echo_server.py"
    script.write_text(
        textwrap.dedent(
            """
            from mcp.server.fastmcp import FastMCP

            server = FastMCP("echo")


            @server.tool()
            def echo(text: str) -> str:
                \"\"\"Echo text back.\"\"\"
                return f"echo: {text}"


            server.run()
            """
        ),
        encoding="utf-8",
    )
    manifest = tmp_path / "mcp.json"
    manifest.write_text(
        json.dumps({"mcpServers": {"local": {"command": sys.executable, "args": [str(script)]}}}),
        encoding="utf-8",
    )
    registry = ToolRegistry()
    manager = RemoteToolProviderManager(registry)

    await manager.initialize(manifest)
    try:
        assert "local_echo" in registry.snapshot()
        result = await registry.execute("local_echo", {"text": "hi"})
        assert result["content"] == ["echo: hi"]
    finally:
        await manager.close(timeout_ms=10_000)

    assert "local_echo" not in registry.snapshot()
