"""Read tool for reading file contents."""

import asyncio
from pathlib import Path
from typing import Any

from moss.logging import get_logger
from moss.tools.registry import Tool

log = get_logger(__name__)

MAX_READ_BYTES = 1_000_000


class ReadTool(Tool):
    """Read file contents."""

    name = "fs_read"
    description = "Read from a file."
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": "The path to the file to read from",
            },
        },
        "required": ["file_path"],
    }

    async def execute(self, file_path: str, **kwargs: Any) -> dict[str, Any]:
        """Read a file.

        Args:
            file_path: Path to file

        Returns:
            The path and the file's text content
        """
        path = Path(file_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")
        if not path.is_file():
            raise IsADirectoryError(f"Not a file: {file_path}")

        size = path.stat().st_size
        if size > MAX_READ_BYTES:
            raise ValueError(f"File too large: {size} bytes (max {MAX_READ_BYTES})")

        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        log.debug("Read file", path=str(path), chars=len(content))
        return {"file_path": file_path, "content": content}
