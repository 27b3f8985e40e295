"""Main entry point for Moss."""

import asyncio
import threading
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from moss.agent import Agent, AgentConfig, AgentObserver
from moss.cli import ConsoleObserver, print_environment, print_history, print_lock_info
from moss.config import Config, environment_status, set_config
from moss.config_lock import ConfigLock, config_lock, force_clear_lock, get_lock_info
from moss.exceptions import ConfigurationError, LockTimeoutError, RemoteToolError
from moss.lifecycle import Shutdown
from moss.llm import LLMProvider, create_provider
from moss.logging import configure_logging, get_logger
from moss.mcp import RemoteToolProviderManager
from moss.memory import MessageLog
from moss.messages import Message
from moss.tools import create_default_registry

log = get_logger(__name__)

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit"}

app = typer.Typer(
    help="Moss - a conversational agent with local and MCP tools.",
    invoke_without_command=True,
    add_completion=False,
)


def load_config(
    config_dir: Optional[Path] = None,
    model: str = "",
    temperature: Optional[float] = None,
    verbose: bool = False,
) -> Config:
    """Load configuration, apply CLI overrides and configure logging."""
    try:
        cfg = Config.load(config_dir)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
    if model:
        cfg.model.model = model
    if temperature is not None:
        cfg.model.temperature = temperature
    if verbose:
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    configure_logging()
    return cfg


async def read_line(prompt: str) -> str:
    """Read one line from stdin without blocking the event loop.

    Uses a daemon thread so a pending prompt never holds up process exit.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def _deliver(value: str | None, error: BaseException | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(value or "")

    def _worker() -> None:
        try:
            value, error = input(prompt), None
        except (EOFError, KeyboardInterrupt, OSError) as e:
            value, error = None, EOFError(str(e))
        if not loop.is_closed():
            loop.call_soon_threadsafe(_deliver, value, error)

    threading.Thread(target=_worker, name="moss-input", daemon=True).start()
    return await future


async def interactive_loop(agent: Agent, observer: AgentObserver) -> None:
    """Prompt repeatedly until EOF or an exit command."""
    console.print("[bold]Moss[/bold] - type 'exit' to quit, '/clear' to forget the conversation.")
    while True:
        try:
            line = await read_line("> ")
        except EOFError:
            console.print()
            break
        text = line.strip()
        if not text:
            continue
        if text.lower() in EXIT_COMMANDS:
            break
        if text == "/clear":
            await agent.clear()
            console.print("[dim]Conversation cleared.[/dim]")
            continue
        await agent.run(text, observer)


async def run_session(
    config: Config,
    prompt: str = "",
    provider: LLMProvider | None = None,
    observer: AgentObserver | None = None,
) -> int:
    """Run one CLI session and return the process exit code.

    Holds the config lock for the whole session. Cleanup runs exactly once,
    from here or from a signal handler.
    """
    loop = asyncio.get_running_loop()
    lock = ConfigLock(config.config_dir, retry_interval_ms=config.lock.retry_interval_ms)
    shutdown = Shutdown(lock=lock, close_timeout_ms=config.mcp.close_timeout_ms)
    shutdown.install(loop, asyncio.current_task())
    try:
        await lock.acquire(config.lock.timeout_ms)

        registry = create_default_registry(config)
        manifest_path = config.resolved_manifest_path()
        if manifest_path.is_file():
            shutdown.manager = RemoteToolProviderManager(registry)
            await shutdown.manager.initialize(manifest_path)
        else:
            log.debug("No MCP manifest, remote tools disabled", manifest=str(manifest_path))

        shutdown.provider = provider or create_provider(config)
        agent = Agent(
            AgentConfig.from_config(config),
            shutdown.provider,
            registry,
            MessageLog(config.memory_path),
        )
        await agent.load()

        observer = observer or ConsoleObserver(console=console, err_console=err_console)
        if prompt:
            await agent.run(prompt, observer)
        else:
            await interactive_loop(agent, observer)
        return EXIT_OK
    except LockTimeoutError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        return EXIT_FAILURE
    except (ConfigurationError, RemoteToolError) as e:
        err_console.print(f"[red]Startup failed:[/red] {escape(str(e))}")
        return EXIT_FAILURE
    except asyncio.CancelledError:
        if not shutdown.requested:
            raise
        err_console.print(f"[yellow]Interrupted ({shutdown.reason}), shutting down.[/yellow]")
        return EXIT_INTERRUPTED
    finally:
        await shutdown.shutdown()
        shutdown.uninstall(loop)


def _load_or_exit(config_dir: Optional[Path], **overrides) -> Config:
    try:
        return load_config(config_dir, **overrides)
    except ConfigurationError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(EXIT_FAILURE) from None


@app.callback()
def main(ctx: typer.Context) -> None:
    """Start an interactive session when no command is given."""
    if ctx.invoked_subcommand is None:
        run(prompt="", model="", temperature=None, config_dir=None, manifest=None, verbose=False)


@app.command()
def run(
    prompt: str = typer.Option("", "-p", "--prompt", help="Prompt to send (interactive when omitted)"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    temperature: Optional[float] = typer.Option(None, "-t", "--temperature", help="Override sampling temperature"),
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", help="Configuration directory"),
    manifest: Optional[Path] = typer.Option(None, "--manifest", help="MCP server manifest (JSON)"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Chat with the agent."""
    cfg = _load_or_exit(config_dir, model=model, temperature=temperature, verbose=verbose)
    if manifest is not None:
        cfg.mcp.manifest = str(manifest.expanduser().resolve())
    code = asyncio.run(run_session(cfg, prompt))
    raise typer.Exit(code)


@app.command("lock-info")
def lock_info(
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", help="Configuration directory"),
) -> None:
    """Show which process holds the configuration lock."""
    cfg = _load_or_exit(config_dir)
    print_lock_info(asyncio.run(get_lock_info(cfg.config_dir)), console=console)


@app.command("clear-lock")
def clear_lock(
    force: bool = typer.Option(False, "-f", "--force", help="Delete the lock even if its holder is alive"),
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", help="Configuration directory"),
) -> None:
    """Delete the configuration lock file."""
    cfg = _load_or_exit(config_dir)
    if not force:
        err_console.print(
            "[yellow]This removes the lock even if another moss process is running. "
            "Re-run with --force to proceed.[/yellow]"
        )
        return
    asyncio.run(force_clear_lock(cfg.config_dir))
    console.print("[green]Config lock cleared.[/green]")


async def _read_history(config: Config, limit: int) -> list[Message]:
    async with config_lock(
        config.config_dir,
        timeout_ms=config.lock.timeout_ms,
        retry_interval_ms=config.lock.retry_interval_ms,
    ):
        messages = await MessageLog(config.memory_path).load()
    return messages[-limit:] if limit > 0 else messages


async def _clear_history(config: Config) -> None:
    async with config_lock(
        config.config_dir,
        timeout_ms=config.lock.timeout_ms,
        retry_interval_ms=config.lock.retry_interval_ms,
    ):
        memory = MessageLog(config.memory_path)
        await memory.load()
        await memory.clear()


@app.command()
def history(
    limit: int = typer.Option(20, "-n", "--limit", help="Messages to show (0 for all)"),
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", help="Configuration directory"),
) -> None:
    """Show stored conversation messages."""
    cfg = _load_or_exit(config_dir)
    try:
        messages = asyncio.run(_read_history(cfg, limit))
    except LockTimeoutError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(EXIT_FAILURE) from None
    print_history(messages, console=console)


@app.command("clear-history")
def clear_history(
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", help="Configuration directory"),
) -> None:
    """Delete every stored conversation message."""
    cfg = _load_or_exit(config_dir)
    try:
        asyncio.run(_clear_history(cfg))
    except LockTimeoutError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(EXIT_FAILURE) from None
    console.print("[green]Conversation history cleared.[/green]")


@app.command()
def env(
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", help="Configuration directory"),
) -> None:
    """Show backend configuration with secrets masked."""
    cfg = _load_or_exit(config_dir)
    print_environment(environment_status(cfg), console=console)


@app.command()
def version() -> None:
    """Show version information."""
    from moss import __version__

    console.print(f"moss v{__version__}")


if __name__ == "__main__":
    app()
