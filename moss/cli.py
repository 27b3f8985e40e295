"""Terminal rendering for agent runs and admin commands."""

import json
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from moss.agent import AgentObserver, StepResult
from moss.config_lock import LockRecord
from moss.messages import Message

TOOL_ICON = "🔧"
MAX_DETAIL_CHARS = 120

_PATH_KEYS = ("file_path", "directory_path", "path")


def tool_detail(name: str, args: dict[str, Any]) -> str:
    """Short human description of a tool call's arguments."""
    if name == "os_shell_exec" and args.get("command"):
        detail = str(args["command"])
    else:
        detail = next((str(args[key]) for key in _PATH_KEYS if args.get(key)), "")
        if not detail and args:
            detail = json.dumps(args, ensure_ascii=False, default=str)
    detail = " ".join(detail.split())
    if len(detail) > MAX_DETAIL_CHARS:
        detail = detail[: MAX_DETAIL_CHARS - 3] + "..."
    return detail


class ConsoleObserver(AgentObserver):
    """Streams the assistant's text and one line per tool call."""

    def __init__(self, console: Console | None = None, err_console: Console | None = None):
        self.console = console or Console(highlight=False)
        self.err_console = err_console or Console(stderr=True, highlight=False)
        self._mid_line = False

    def _end_line(self) -> None:
        if self._mid_line:
            self.console.print()
            self._mid_line = False

    def on_stream_text_reset(self) -> None:
        self._end_line()
        self.console.print()

    def on_stream_text(self, text: str) -> None:
        self.console.print(text, end="", markup=False, soft_wrap=True)
        self._mid_line = not text.endswith("\n")

    def on_tool_finish(self, name: str, args: dict[str, Any], result: Any) -> None:
        self._end_line()
        line = f"{TOOL_ICON} [bold cyan]{name}[/bold cyan]"
        detail = tool_detail(name, args)
        if detail:
            line += f"  [dim]{escape(detail)}[/dim]"
        if isinstance(result, dict) and "error" in result:
            line += f"  [red]{escape(str(result['error']))}[/red]"
        self.console.print(line)

    def on_step_finish(self, step: StepResult) -> None:
        self._end_line()

    def on_finish(self, reason: str) -> None:
        self._end_line()

    def on_error(self, error: BaseException) -> None:
        self._end_line()
        self.err_console.print(f"[bold red]Error:[/bold red] {escape(str(error))}")


def print_lock_info(record: LockRecord | None, console: Console | None = None) -> None:
    """Render the current lock holder for `moss lock-info`."""
    console = console or Console()
    if record is None:
        console.print("[green]No active lock.[/green]")
        return
    acquired = datetime.fromtimestamp(record.timestamp / 1000).isoformat(sep=" ", timespec="seconds")
    table = Table(title="Config Lock", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value", overflow="fold")
    table.add_row("PID", str(record.pid))
    table.add_row("Acquired", acquired)
    table.add_row("Command", record.command)
    table.add_row("Working directory", record.cwd)
    console.print(table)


def print_history(messages: list[Message], console: Console | None = None, width: int = 100) -> None:
    """Print stored conversation messages, one line each."""
    console = console or Console()
    if not messages:
        console.print("[dim]No messages.[/dim]")
        return
    for index, message in enumerate(messages, start=1):
        if message.role == "tool":
            summary = ", ".join(part.tool_name for part in message.tool_results)
            content = f"[results: {summary}]"
        else:
            content = message.text
            if message.tool_calls:
                calls = ", ".join(part.tool_name for part in message.tool_calls)
                content = f"{content} [calls: {calls}]".strip()
        content = " ".join(content.split())
        if len(content) > width:
            content = content[:width] + "..."
        console.print(f"[{index}] [bold]{message.role}[/bold] ({message.id}): {escape(content)}")


def print_environment(rows: list[tuple[str, str]], console: Console | None = None) -> None:
    """Render `environment_status` rows."""
    console = console or Console()
    table = Table(title="Environment", show_header=True, header_style="bold cyan")
    table.add_column("Setting")
    table.add_column("Value", overflow="fold")
    for key, value in rows:
        style = "yellow" if key == "Warning" else None
        table.add_row(key, value, style=style)
    console.print(table)
