"""Orderly shutdown: close remote tools, then release the config lock."""

import asyncio
import signal
from typing import Any

from moss.config_lock import ConfigLock
from moss.exceptions import CloseTimeoutError, MossError
from moss.llm import LLMProvider
from moss.logging import get_logger
from moss.mcp import DEFAULT_CLOSE_TIMEOUT_MS, RemoteToolProviderManager

log = get_logger(__name__)


class Shutdown:
    """Single idempotent cleanup routine shared by `finally` blocks and signal handlers.

    The first caller runs the cleanup; later callers wait for the same run.
    """

    def __init__(
        self,
        lock: ConfigLock | None = None,
        manager: RemoteToolProviderManager | None = None,
        provider: LLMProvider | None = None,
        close_timeout_ms: int = DEFAULT_CLOSE_TIMEOUT_MS,
    ):
        self.lock = lock
        self.manager = manager
        self.provider = provider
        self.close_timeout_ms = close_timeout_ms
        self.reason: str | None = None
        self._task: asyncio.Task[None] | None = None
        self._main_task: asyncio.Task[Any] | None = None

    @property
    def started(self) -> bool:
        return self._task is not None

    @property
    def requested(self) -> bool:
        return self.reason is not None

    async def shutdown(self) -> None:
        """Run cleanup once; never raises."""
        if self._task is None:
            self._task = asyncio.create_task(self._cleanup(), name="moss:shutdown")
        await asyncio.shield(self._task)

    async def _cleanup(self) -> None:
        if self.manager is not None:
            try:
                await self.manager.close(self.close_timeout_ms)
            except CloseTimeoutError as e:
                log.warning("Remote tool shutdown timed out", error=str(e))
            except MossError as e:
                log.error("Remote tool shutdown failed", error=str(e))
            except Exception as e:
                log.error("Unexpected error closing remote tools", error=str(e))

        if self.provider is not None:
            try:
                await self.provider.close()
            except Exception as e:
                log.warning("Failed to close backend client", error=str(e))

        # Always attempted, even when the steps above failed.
        if self.lock is not None:
            await self.lock.release()
        log.debug("Shutdown complete", reason=self.reason or "normal")

    def request(self, reason: str) -> None:
        """Ask the running session to stop; cleanup runs from its `finally`.

        Only the first request acts. Later ones must not cancel the session
        again while it is waiting on cleanup.
        """
        if self.reason is not None or self._task is not None:
            log.info("Already shutting down", reason=reason)
            return
        self.reason = reason
        log.info("Shutdown requested", reason=reason)
        if self._main_task is not None and not self._main_task.done():
            self._main_task.cancel()
        elif self._task is None:
            asyncio.get_running_loop().create_task(self.shutdown())

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        error = context.get("exception")
        log.error(
            "Unhandled asynchronous error",
            message=context.get("message", ""),
            error=str(error) if error is not None else None,
        )
        self.request("unhandled-error")

    def install(self, loop: asyncio.AbstractEventLoop, main_task: asyncio.Task[Any] | None = None) -> None:
        """Route SIGINT/SIGTERM and unhandled loop errors to `request`."""
        self._main_task = main_task
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request, sig.name.lower())
            except (NotImplementedError, OSError, RuntimeError):
                # Not available on Windows event loops or off the main thread.
                log.debug("Signal handler unavailable", signal=sig.name)
        loop.set_exception_handler(self._handle_loop_exception)

    def uninstall(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, OSError, RuntimeError):
                pass
        loop.set_exception_handler(None)
        self._main_task = None
