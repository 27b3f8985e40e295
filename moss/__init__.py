"""Moss - a conversational agent with local and MCP tools."""

__version__ = "0.1.0"

from moss.config import Config
from moss.main import app

__all__ = ["Config", "app", "__version__"]
