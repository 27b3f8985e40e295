import asyncio
import os
import signal
import sys
from pathlib import Path

import pytest

from moss.config_lock import LOCK_FILENAME, ConfigLock
from moss.exceptions import CloseTimeoutError, RemoteCloseError
from moss.lifecycle import Shutdown


class FakeManager:
    def __init__(self, error: BaseException | None = None):
        self.error = error
        self.close_calls: list[int] = []

    async def close(self, timeout_ms: int) -> None:
        self.close_calls.append(timeout_ms)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error


@pytest.mark.asyncio
async def test_shutdown_runs_once_for_concurrent_callers(tmp_path: Path):
    lock = ConfigLock(tmp_path)
    await lock.acquire()
    manager = FakeManager()
    shutdown = Shutdown(lock=lock, manager=manager, close_timeout_ms=1234)

    await asyncio.gather(shutdown.shutdown(), shutdown.shutdown())
    await shutdown.shutdown()

    assert manager.close_calls == [1234]
    assert not lock.held
    assert not (tmp_path / LOCK_FILENAME).exists()


@pytest.mark.parametrize(
    "error",
    [RemoteCloseError({"a": RuntimeError("kaput")}), CloseTimeoutError(10), RuntimeError("surprise")],
)
@pytest.mark.asyncio
async def test_lock_released_even_when_manager_close_fails(tmp_path: Path, error: BaseException):
    lock = ConfigLock(tmp_path)
    await lock.acquire()
    shutdown = Shutdown(lock=lock, manager=FakeManager(error))

    await shutdown.shutdown()

    assert not (tmp_path / LOCK_FILENAME).exists()


@pytest.mark.asyncio
async def test_request_cancels_main_task():
    shutdown = Shutdown()

    async def _session() -> str:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            return "stopped" if shutdown.requested else "cancelled"
        return "finished"

    task = asyncio.create_task(_session())
    await asyncio.sleep(0)
    shutdown.install(asyncio.get_running_loop(), task)
    try:
        shutdown.request("sigterm")
        assert await task == "stopped"
        assert shutdown.reason == "sigterm"
    finally:
        shutdown.uninstall(asyncio.get_running_loop())


class SlowManager:
    def __init__(self, delay: float):
        self.delay = delay
        self.closed = False

    async def close(self, timeout_ms: int) -> None:
        await asyncio.sleep(self.delay)
        self.closed = True


@pytest.mark.asyncio
async def test_repeated_requests_do_not_interrupt_cleanup(tmp_path: Path):
    lock = ConfigLock(tmp_path)
    await lock.acquire()
    manager = SlowManager(delay=0.3)
    shutdown = Shutdown(lock=lock, manager=manager)
    loop = asyncio.get_running_loop()

    async def _session() -> str:
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            return "interrupted"
        finally:
            await shutdown.shutdown()
        return "finished"

    task = asyncio.create_task(_session())
    await asyncio.sleep(0)
    shutdown.install(loop, task)
    try:
        await asyncio.sleep(0.05)
        shutdown.request("sigint")
        await asyncio.sleep(0.1)
        assert shutdown.started
        shutdown.request("sigint")
        shutdown.request("sigterm")

        assert await task == "interrupted"
        assert manager.closed
        assert shutdown.reason == "sigint"
        assert not (tmp_path / LOCK_FILENAME).exists()
    finally:
        shutdown.uninstall(loop)


@pytest.mark.asyncio
async def test_request_without_session_task_runs_cleanup(tmp_path: Path):
    lock = ConfigLock(tmp_path)
    await lock.acquire()
    shutdown = Shutdown(lock=lock)

    shutdown.request("unhandled-error")
    shutdown.request("sigint")
    await shutdown.shutdown()

    assert shutdown.reason == "unhandled-error"
    assert not (tmp_path / LOCK_FILENAME).exists()


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
@pytest.mark.asyncio
async def test_sigterm_triggers_request():
    shutdown = Shutdown()
    loop = asyncio.get_running_loop()
    session = asyncio.create_task(asyncio.sleep(10))
    shutdown.install(loop, session)
    try:
        os.kill(os.getpid(), signal.SIGTERM)
        with pytest.raises(asyncio.CancelledError):
            await session
        assert shutdown.reason == "sigterm"
    finally:
        shutdown.uninstall(loop)
