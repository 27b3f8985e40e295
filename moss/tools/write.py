"""Write tool for writing file contents."""

import asyncio
from pathlib import Path
from typing import Any

from moss.logging import get_logger
from moss.tools.registry import Tool

log = get_logger(__name__)


class WriteTool(Tool):
    """Write content to files."""

    name = "fs_write"
    description = "Write to a file."
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": "The path to the file to write to",
            },
            "content": {
                "type": "string",
                "description": "The content to write to the file",
            },
        },
        "required": ["file_path", "content"],
    }

    @staticmethod
    def _write(path: Path, content: str) -> int:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            return f.write(content)

    async def execute(self, file_path: str, content: str, **kwargs: Any) -> dict[str, Any]:
        """Create or overwrite a file.

        Args:
            file_path: Path to file
            content: Content to write

        Returns:
            The path and the number of characters written
        """
        path = Path(file_path).expanduser()
        written = await asyncio.to_thread(self._write, path, content)
        log.debug("Wrote file", path=str(path), chars=written)
        return {"file_path": file_path, "chars_written": written}
