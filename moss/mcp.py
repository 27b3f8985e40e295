"""Remote tool providers: MCP server discovery, registration and teardown."""

import asyncio
import json
import os
from collections.abc import Awaitable, Callable, Iterable
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import anyio
from mcp.types import CallToolResult
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from moss import __version__
from moss.exceptions import (
    CloseTimeoutError,
    ConnectionFailedError,
    InvalidStateError,
    ManifestNotFoundError,
    RemoteCloseError,
    RemoteToolError,
    ToolDiscoveryFailedError,
    UnknownTransportError,
)
from moss.logging import get_logger
from moss.tools.registry import FunctionTool, ToolRegistry

log = get_logger(__name__)

CLIENT_NAME = "moss-mcp-client"
DEFAULT_CLOSE_TIMEOUT_MS = 5000

_DISCONNECT_ERROR_TYPES: tuple[type[BaseException], ...] = (
    asyncio.CancelledError,
    ConnectionResetError,
    ConnectionAbortedError,
    BrokenPipeError,
    EOFError,
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
)
_DISCONNECT_MARKERS = ("abort", "disconnect", "connection reset", "connection closed", "broken pipe", "stream closed")


class TransportKind(str, Enum):
    """Transport used to reach a server."""

    STDIO = "stdio"
    SSE = "sse"
    STREAMING_HTTP = "streaming-http"
    WEBSOCKET = "websocket"


_TYPE_ALIASES = {
    "stdio": TransportKind.STDIO,
    "sse": TransportKind.SSE,
    "mcp": TransportKind.STREAMING_HTTP,
    "http": TransportKind.STREAMING_HTTP,
    "streaming-http": TransportKind.STREAMING_HTTP,
    "streamable-http": TransportKind.STREAMING_HTTP,
    "websocket": TransportKind.WEBSOCKET,
    "ws": TransportKind.WEBSOCKET,
}


class ServerSpec(BaseModel):
    """One entry of the manifest's `mcpServers` mapping."""

    model_config = ConfigDict(extra="allow")

    type: str | None = None
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = None
    cwd: str | None = None
    url: str | None = None
    headers: dict[str, str] | None = None


class Manifest(BaseModel):
    """Remote tool manifest file."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    servers: dict[str, ServerSpec] = Field(default_factory=dict, alias="mcpServers")

    @field_validator("servers", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value


def load_manifest(path: Path | str) -> dict[str, ServerSpec]:
    """Read the manifest and return server specs by name.

    Raises:
        ManifestNotFoundError when the file is missing
        RemoteToolError when it is not a valid manifest
    """
    manifest_path = Path(path).expanduser()
    if not manifest_path.is_file():
        raise ManifestNotFoundError(str(manifest_path))
    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8") or "{}")
        return Manifest.model_validate(data or {}).servers
    except (json.JSONDecodeError, ValidationError) as e:
        raise RemoteToolError(f"Invalid MCP manifest {manifest_path}: {e}") from e


def resolve_transport(name: str, spec: ServerSpec) -> TransportKind:
    """Pick the transport: explicit `type` first, then `command` (stdio) or `url` (SSE)."""
    if spec.type:
        kind = _TYPE_ALIASES.get(spec.type.strip().lower())
        if kind is None:
            raise UnknownTransportError(name, spec.type)
        return kind
    if spec.command:
        return TransportKind.STDIO
    if spec.url:
        return TransportKind.SSE
    raise UnknownTransportError(name, spec.type)


def is_disconnect_error(error: BaseException) -> bool:
    """Whether `error` looks like an expected connection teardown."""
    if isinstance(error, BaseExceptionGroup):
        return all(is_disconnect_error(inner) for inner in error.exceptions)
    if isinstance(error, _DISCONNECT_ERROR_TYPES):
        return True
    text = f"{type(error).__name__} {error}".lower()
    return any(marker in text for marker in _DISCONNECT_MARKERS)


def describe_error(error: BaseException) -> str:
    """One-line description, unwrapping single-member exception groups."""
    while isinstance(error, BaseExceptionGroup) and len(error.exceptions) == 1:
        error = error.exceptions[0]
    return str(error).strip() or error.__class__.__name__


@dataclass
class RemoteToolSpec:
    """A tool advertised by a remote server."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


def tool_result_to_data(result: CallToolResult) -> dict[str, Any]:
    """Convert an MCP `CallToolResult` into plain result data."""
    texts: list[str] = []
    for item in result.content:
        text = getattr(item, "text", None)
        if text is not None:
            texts.append(text)
        elif getattr(item, "data", None) is not None:
            mime = getattr(item, "mimeType", "") or "binary"
            texts.append(f"[{getattr(item, 'type', 'data')}: {mime}]")
        elif getattr(item, "resource", None) is not None:
            resource = item.resource
            texts.append(getattr(resource, "text", None) or str(getattr(resource, "uri", "")))
        else:
            texts.append(str(item))

    if result.isError:
        return {"error": "\n".join(texts) or "Remote tool reported an error"}

    data: dict[str, Any] = {"content": texts}
    structured = result.structuredContent
    if structured:
        data["structured"] = structured
    return data


ErrorCallback = Callable[[str, BaseException], None]


class RemoteToolConnection:
    """A live session with one MCP server.

    The transport and session contexts are entered and exited inside one
    dedicated task, which the MCP client's task groups require.
    """

    def __init__(
        self,
        name: str,
        spec: ServerSpec,
        transport: TransportKind,
        on_error: ErrorCallback | None = None,
    ):
        self.name = name
        self.spec = spec
        self.transport = transport
        self.tool_names: list[str] = []
        self.session: Any = None
        self._on_error = on_error
        self._runner: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._stop = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self.session is not None

    def _transport_context(self) -> Any:
        spec = self.spec
        if self.transport is TransportKind.STDIO:
            from mcp import StdioServerParameters
            from mcp.client.stdio import stdio_client

            if not spec.command:
                raise ValueError("stdio transport requires a command")
            params = StdioServerParameters(
                command=spec.command,
                args=list(spec.args),
                env={**os.environ, **spec.env} if spec.env else None,
                cwd=spec.cwd,
            )
            return stdio_client(params)

        if not spec.url:
            raise ValueError(f"{self.transport.value} transport requires a url")
        if self.transport is TransportKind.SSE:
            from mcp.client.sse import sse_client

            return sse_client(spec.url, headers=spec.headers)
        if self.transport is TransportKind.STREAMING_HTTP:
            from mcp.client.streamable_http import streamablehttp_client

            return streamablehttp_client(spec.url, headers=spec.headers)

        from mcp.client.websocket import websocket_client

        return websocket_client(spec.url)

    async def _handle_message(self, message: Any) -> None:
        if isinstance(message, Exception) and self._on_error is not None:
            self._on_error(self.name, message)

    async def _serve(self) -> None:
        from mcp import ClientSession
        from mcp.types import Implementation

        assert self._ready is not None
        try:
            async with AsyncExitStack() as stack:
                streams = await stack.enter_async_context(self._transport_context())
                read_stream, write_stream = streams[0], streams[1]
                session = await stack.enter_async_context(
                    ClientSession(
                        read_stream,
                        write_stream,
                        message_handler=self._handle_message,
                        client_info=Implementation(name=CLIENT_NAME, version=__version__),
                    )
                )
                await session.initialize()
                self.session = session
                if not self._ready.done():
                    self._ready.set_result(None)
                await self._stop.wait()
        except asyncio.CancelledError:
            if not self._ready.done():
                self._ready.cancel()
            raise
        except Exception as e:
            if not self._ready.done():
                self._ready.set_exception(e)
                return
            raise
        finally:
            self.session = None

    async def open(self) -> None:
        """Connect and complete the MCP handshake."""
        self._ready = asyncio.get_running_loop().create_future()
        self._stop = asyncio.Event()
        self._runner = asyncio.create_task(self._serve(), name=f"mcp:{self.name}")
        try:
            await asyncio.shield(self._ready)
        except BaseException:
            await self._abort()
            raise
        log.debug("MCP server connected", server=self.name, transport=self.transport.value)

    async def _abort(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        self._stop.set()
        if not runner.done():
            runner.cancel()
        try:
            await runner
        except BaseException:
            pass

    async def list_tools(self) -> list[RemoteToolSpec]:
        if self.session is None:
            raise RemoteToolError(f"MCP server '{self.name}' is not connected")
        response = await self.session.list_tools()
        return [
            RemoteToolSpec(
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {}),
            )
            for tool in response.tools
        ]

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> Any:
        if self.session is None:
            raise RemoteToolError(f"MCP server '{self.name}' is not connected")
        result = await self.session.call_tool(tool_name, arguments=arguments)
        return tool_result_to_data(result)

    async def close(self) -> None:
        """Tear the session down; errors raised while exiting the transport propagate."""
        runner, self._runner = self._runner, None
        if runner is None:
            return
        self._stop.set()
        await runner


ConnectionFactory = Callable[[str, ServerSpec, TransportKind, ErrorCallback], RemoteToolConnection]


class ManagerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


async def _run_all(coros: Iterable[Awaitable[None]]) -> None:
    """Run coroutines concurrently; on the first failure cancel the rest and re-raise it."""
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    if not tasks:
        return
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class RemoteToolProviderManager:
    """Connects the servers of a manifest and registers their tools.

    Remote tools are registered as `{server}_{tool}`. `close()` removes
    exactly the entries this manager added and disconnects every server.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        connection_factory: ConnectionFactory = RemoteToolConnection,
    ):
        self.registry = registry
        self._connection_factory = connection_factory
        self._state = ManagerState.UNINITIALIZED
        self._connections: dict[str, RemoteToolConnection] = {}
        self._tool_names: list[str] = []
        self._close_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def servers(self) -> dict[str, RemoteToolConnection]:
        return dict(self._connections)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tool_names)

    async def initialize(self, manifest_path: Path | str) -> None:
        """Connect every configured server and register its tools.

        Raises:
            InvalidStateError when closing or closed
            ManifestNotFoundError, UnknownTransportError, ConnectionFailedError,
            ToolDiscoveryFailedError after rolling back partial state
        """
        if self._state is ManagerState.READY:
            return
        if self._state in (ManagerState.INITIALIZING, ManagerState.CLOSING, ManagerState.CLOSED):
            raise InvalidStateError(self._state.value, "initialize")

        self._state = ManagerState.INITIALIZING
        try:
            servers = load_manifest(manifest_path)
            transports = {name: resolve_transport(name, spec) for name, spec in servers.items()}
            await _run_all(
                self._connect(name, spec, transports[name])
                for name, spec in servers.items()
            )
            await _run_all(
                self._discover(connection)
                for connection in list(self._connections.values())
            )
        except BaseException as e:
            try:
                log.error("MCP initialization failed", manifest=str(manifest_path), error=describe_error(e))
            finally:
                await self._rollback()
            raise

        self._state = ManagerState.READY
        log.info("MCP servers ready", servers=list(self._connections), tools=len(self._tool_names))

    async def _connect(self, name: str, spec: ServerSpec, transport: TransportKind) -> None:
        connection = self._connection_factory(name, spec, transport, self._handle_connection_error)
        try:
            await connection.open()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ConnectionFailedError(name, describe_error(e)) from e
        self._connections[name] = connection

    async def _discover(self, connection: RemoteToolConnection) -> None:
        try:
            remote_tools = await connection.list_tools()
            for remote in remote_tools:
                registry_name = f"{connection.name}_{remote.name}"
                tool = FunctionTool(
                    name=registry_name,
                    description=remote.description,
                    parameters=remote.input_schema,
                    func=self._remote_caller(connection, remote.name),
                )
                # Translate the schema now so a bad schema fails discovery.
                tool.input_model
                self.registry.register(tool)
                connection.tool_names.append(registry_name)
                self._tool_names.append(registry_name)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise ToolDiscoveryFailedError(connection.name, describe_error(e)) from e
        log.debug("MCP tools registered", server=connection.name, tools=connection.tool_names)

    @staticmethod
    def _remote_caller(connection: RemoteToolConnection, tool_name: str) -> Callable[..., Awaitable[Any]]:
        async def call(**arguments: Any) -> Any:
            return await connection.call_tool(tool_name, arguments)

        return call

    def _handle_connection_error(self, server: str, error: BaseException) -> None:
        if self._state is ManagerState.CLOSING and is_disconnect_error(error):
            log.debug("Ignoring MCP disconnect during close", server=server, error=describe_error(error))
            return
        log.error("MCP connection error", server=server, error=describe_error(error))

    async def _rollback(self) -> None:
        self._state = ManagerState.CLOSING
        try:
            await self._cleanup()
        except Exception as e:
            log.warning("MCP rollback incomplete", error=describe_error(e))
        finally:
            self._state = ManagerState.FAILED

    async def _cleanup(self) -> None:
        for name in self._tool_names:
            self.registry.remove(name)
        self._tool_names.clear()

        connections = list(self._connections.items())
        self._connections.clear()
        results = await asyncio.gather(
            *(connection.close() for _, connection in connections),
            return_exceptions=True,
        )

        errors: dict[str, BaseException] = {}
        for (name, _), result in zip(connections, results):
            if not isinstance(result, BaseException):
                continue
            if is_disconnect_error(result):
                log.debug("MCP server disconnected during close", server=name, error=describe_error(result))
                continue
            errors[name] = result
        if errors:
            raise RemoteCloseError(errors)

    async def close(self, timeout_ms: int = DEFAULT_CLOSE_TIMEOUT_MS) -> None:
        """Remove registered tools and disconnect every server.

        Idempotent. On timeout the manager is already `closed` when
        `CloseTimeoutError` is raised.

        Raises:
            CloseTimeoutError, RemoteCloseError
        """
        if self._state is ManagerState.CLOSED:
            return
        if self._close_task is None:
            self._state = ManagerState.CLOSING
            self._close_task = asyncio.create_task(self._cleanup(), name="mcp:close")
            self._close_task.add_done_callback(_consume_result)

        try:
            await asyncio.wait_for(asyncio.shield(self._close_task), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise CloseTimeoutError(timeout_ms) from None
        finally:
            self._state = ManagerState.CLOSED
            self._tool_names.clear()
            self._connections.clear()
        log.debug("MCP manager closed")


def _consume_result(task: asyncio.Task[None]) -> None:
    if not task.cancelled():
        task.exception()
