"""Tool registry and base tool class."""

import asyncio
import functools
import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from moss.exceptions import ToolNotFoundError
from moss.logging import get_logger
from moss.tools.schema import ToolInput, model_from_schema, validate_arguments

log = get_logger(__name__)

ToolRunner = Callable[[dict[str, Any]], Awaitable[Any]]


def error_payload(error: BaseException) -> dict[str, str]:
    """Render an exception as in-band tool result data."""
    message = str(error).strip() or error.__class__.__name__
    return {"error": message}


def capture_errors(func: Callable[..., Any], label: str | None = None) -> Callable[..., Awaitable[Any]]:
    """Wrap a tool callable so failures come back as `{"error": message}`.

    Works for sync callables, coroutine functions, and sync callables that
    return awaitables. Cancellation still propagates.
    """

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Tool execution failed", tool=label or getattr(func, "__qualname__", repr(func)), error=str(e))
            return error_payload(e)

    return wrapper


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}}

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """Execute the tool.

        Args:
            **kwargs: Validated tool arguments

        Returns:
            JSON-serializable result
        """
        pass

    @functools.cached_property
    def input_model(self) -> type[ToolInput]:
        """Validation model derived from `parameters`."""
        return model_from_schema(self.name, self.parameters)

    async def invoke(self, arguments: dict[str, Any] | None = None) -> Any:
        """Validate raw arguments and execute."""
        validated = validate_arguments(self.input_model, arguments)
        return await self.execute(**validated)

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for the LLM.

        Returns:
            Function-style definition
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class FunctionTool(Tool):
    """Tool backed by a plain sync or async callable."""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any] | None,
        func: Callable[..., Any],
    ):
        self.name = name
        self.description = description or ""
        self.parameters = parameters if isinstance(parameters, dict) else {"type": "object", "properties": {}}
        self._func = func

    async def execute(self, **kwargs: Any) -> Any:
        result = self._func(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


@dataclass(frozen=True)
class ToolDescriptor:
    """Registered capability as the agent sees it."""

    name: str
    description: str
    parameters: dict[str, Any]
    run: ToolRunner = field(repr=False, compare=False)

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


def describe(tool: Tool) -> ToolDescriptor:
    """Build the descriptor for `tool`, wrapping execution once."""
    return ToolDescriptor(
        name=tool.name,
        description=tool.description,
        parameters=dict(tool.parameters or {}),
        run=capture_errors(tool.invoke, label=tool.name),
    )


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        self._descriptors: dict[str, ToolDescriptor] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """Register a tool, replacing any tool of the same name.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool
        self._descriptors[tool.name] = describe(tool)

    def remove(self, name: str) -> None:
        """Remove a tool. Removing an unknown name is a no-op.

        Args:
            name: Tool name to remove
        """
        self._tools.pop(name, None)
        if self._descriptors.pop(name, None) is not None:
            log.debug("Removed tool", tool=name)

    def has(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def names(self) -> list[str]:
        return list(self._tools)

    def snapshot(self) -> Mapping[str, ToolDescriptor]:
        """Read-only view of the current tool set.

        The view is a copy: later registrations and removals are not reflected.
        """
        return MappingProxyType(dict(self._descriptors))

    def definitions(self) -> list[dict[str, Any]]:
        return [descriptor.definition() for descriptor in self._descriptors.values()]

    async def execute(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        """Execute a tool by name; failures come back as `{"error": ...}`."""
        descriptor = self._descriptors.get(name)
        if descriptor is None:
            return error_payload(ToolNotFoundError(name))
        log.info("Executing tool", tool=name, args=arguments)
        return await descriptor.run(arguments or {})
