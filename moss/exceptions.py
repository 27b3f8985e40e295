"""Custom exceptions for Moss."""


class MossError(Exception):
    """Base exception for Moss."""

    pass


class ConfigurationError(MossError):
    """Configuration-related errors."""

    pass


class LockError(MossError):
    """Configuration lock errors."""

    pass


class LockTimeoutError(LockError):
    """Lock was not acquired within the allowed time."""

    def __init__(self, timeout_ms: int):
        super().__init__(
            f"Failed to acquire config lock ({timeout_ms}ms). "
            "Another process might be using the same configuration."
        )
        self.timeout_ms = timeout_ms


class LockCorruptedError(LockError):
    """Lock file exists but does not hold a valid lock record."""

    pass


class LLMError(MossError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(MossError):
    """Tool execution errors."""

    pass


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class RemoteToolError(MossError):
    """Remote tool provider (MCP) errors."""

    pass


class ManifestNotFoundError(RemoteToolError):
    """MCP manifest file is missing."""

    def __init__(self, path: str):
        super().__init__(f"MCP manifest not found: {path}")
        self.path = path


class UnknownTransportError(RemoteToolError):
    """Server descriptor does not resolve to a supported transport."""

    def __init__(self, server: str, transport: str | None):
        super().__init__(f"Unknown transport type for MCP server '{server}': {transport}")
        self.server = server
        self.transport = transport


class ConnectionFailedError(RemoteToolError):
    """Connecting to an MCP server failed."""

    def __init__(self, server: str, reason: str):
        super().__init__(f"Failed to connect to MCP server '{server}': {reason}")
        self.server = server
        self.reason = reason


class ToolDiscoveryFailedError(RemoteToolError):
    """Listing or registering the tools of an MCP server failed."""

    def __init__(self, server: str, reason: str):
        super().__init__(f"Failed to discover tools of MCP server '{server}': {reason}")
        self.server = server
        self.reason = reason


class InvalidStateError(RemoteToolError):
    """Operation is not allowed in the manager's current state."""

    def __init__(self, state: str, operation: str):
        super().__init__(f"Cannot {operation} MCP manager in state '{state}'")
        self.state = state
        self.operation = operation


class CloseTimeoutError(RemoteToolError):
    """MCP teardown did not finish in time."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Closing MCP connections timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class RemoteCloseError(RemoteToolError):
    """One or more MCP connections failed to close."""

    def __init__(self, errors: dict[str, BaseException]):
        summary = "; ".join(f"{name}: {error}" for name, error in errors.items())
        super().__init__(f"Failed to close MCP connections: {summary}")
        self.errors = errors
