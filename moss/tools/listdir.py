"""Filesystem inspection tools."""

import asyncio
from pathlib import Path
from typing import Any

from moss.tools.registry import Tool


class ExistsTool(Tool):
    """Check whether a path exists."""

    name = "fs_exists"
    description = "Check if a file exists."
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": "The path to the file to check",
            },
        },
        "required": ["file_path"],
    }

    async def execute(self, file_path: str, **kwargs: Any) -> dict[str, Any]:
        return {"file_path": file_path, "exists": Path(file_path).expanduser().exists()}


class ListDirTool(Tool):
    """List directory entries."""

    name = "fs_listdir"
    description = "List all files in a directory."
    parameters = {
        "type": "object",
        "properties": {
            "directory_path": {
                "type": "string",
                "description": "The path to the directory to list",
            },
        },
        "required": ["directory_path"],
    }

    @staticmethod
    def _list(path: Path) -> list[str]:
        return sorted(entry.name for entry in path.iterdir())

    async def execute(self, directory_path: str, **kwargs: Any) -> dict[str, Any]:
        path = Path(directory_path).expanduser()
        if not path.is_dir():
            raise NotADirectoryError(f"Not a directory: {directory_path}")
        files = await asyncio.to_thread(self._list, path)
        return {"directory_path": directory_path, "files": files}
