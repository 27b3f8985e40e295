"""Shell tool for executing commands."""

import asyncio
import os
from typing import Any

from moss.logging import get_logger
from moss.tools.registry import Tool

log = get_logger(__name__)

MAX_OUTPUT_CHARS = 50_000


class ShellTool(Tool):
    """Execute shell commands."""

    name = "os_shell_exec"
    description = "Execute a shell command."
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The command to execute",
            },
        },
        "required": ["command"],
    }

    def __init__(self, timeout: float = 120.0, cwd: str | None = None):
        self.timeout_seconds = max(1.0, float(timeout))
        self.cwd = cwd

    async def execute(self, command: str, **kwargs: Any) -> dict[str, Any]:
        """Execute a shell command.

        Args:
            command: Shell command to execute

        Returns:
            The command, its combined output and exit code

        Raises:
            ValueError for an empty command, TimeoutError when it runs too long
        """
        if not command.strip():
            raise ValueError("Command is empty")

        log.info("Executing shell command", command=command, timeout=self.timeout_seconds)
        process = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=os.environ.copy(),
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TimeoutError(f"Command timed out after {self.timeout_seconds:g}s") from None

        stdout_text = stdout.decode("utf-8", errors="replace").rstrip()
        stderr_text = stderr.decode("utf-8", errors="replace").rstrip()

        output = stdout_text
        if stderr_text:
            output += f"\n[stderr] {stderr_text}" if output else f"[stderr] {stderr_text}"

        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:MAX_OUTPUT_CHARS] + f"\n... [truncated, {len(output)} total chars]"

        return {
            "command": command,
            "output": output,
            "exit_code": process.returncode,
        }
