"""Tools package for Moss."""

from moss.tools.registry import (
    FunctionTool,
    Tool,
    ToolDescriptor,
    ToolRegistry,
    capture_errors,
)
from moss.tools.listdir import ExistsTool, ListDirTool
from moss.tools.read import ReadTool
from moss.tools.shell import ShellTool
from moss.tools.think import ThinkTool
from moss.tools.write import WriteTool


def builtin_tools(shell_timeout: float = 120.0) -> list[Tool]:
    """Instantiate every built-in tool."""
    return [
        ThinkTool(),
        ReadTool(),
        WriteTool(),
        ExistsTool(),
        ListDirTool(),
        ShellTool(timeout=shell_timeout),
    ]


def create_default_registry(config=None) -> ToolRegistry:
    """Build a registry holding the built-in tools enabled in `config`."""
    if config is None:
        from moss.config import get_config

        config = get_config()
    enabled = set(config.tools.enabled)
    registry = ToolRegistry()
    for tool in builtin_tools(shell_timeout=config.tools.shell.timeout):
        if tool.name in enabled:
            registry.register(tool)
    return registry


__all__ = [
    "ExistsTool",
    "FunctionTool",
    "ListDirTool",
    "ReadTool",
    "ShellTool",
    "ThinkTool",
    "Tool",
    "ToolDescriptor",
    "ToolRegistry",
    "WriteTool",
    "builtin_tools",
    "capture_errors",
    "create_default_registry",
]
