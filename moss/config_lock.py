"""Cross-process lock guarding the configuration directory."""

import asyncio
import json
import os
import sys
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from moss.exceptions import LockCorruptedError, LockTimeoutError
from moss.logging import get_logger

log = get_logger(__name__)

LOCK_FILENAME = ".moss.lock"
DEFAULT_TIMEOUT_MS = 5000
DEFAULT_RETRY_INTERVAL_MS = 100


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class LockRecord:
    """Metadata identifying the current lock holder."""

    pid: int
    timestamp: int = field(default_factory=_now_ms)
    command: str = ""
    cwd: str = ""

    @classmethod
    def for_current_process(cls) -> "LockRecord":
        return cls(
            pid=os.getpid(),
            command=" ".join([sys.executable, *sys.argv]),
            cwd=os.getcwd(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "timestamp": self.timestamp,
            "command": self.command,
            "cwd": self.cwd,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "LockRecord":
        if not isinstance(data, dict):
            raise LockCorruptedError("Lock record is not a JSON object")
        pid = data.get("pid")
        if isinstance(pid, bool) or not isinstance(pid, int) or pid <= 0:
            raise LockCorruptedError(f"Lock record has invalid pid: {pid!r}")
        timestamp = data.get("timestamp", 0)
        return cls(
            pid=pid,
            timestamp=int(timestamp) if isinstance(timestamp, (int, float)) else 0,
            command=str(data.get("command", "")),
            cwd=str(data.get("cwd", "")),
        )

    @classmethod
    def parse(cls, text: str) -> "LockRecord":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise LockCorruptedError(f"Lock file is not valid JSON: {e}") from e
        return cls.from_dict(data)


async def is_process_running(pid: int) -> bool:
    """Return whether `pid` is alive. A failed probe counts as dead."""
    if pid <= 0:
        return False
    if os.name != "nt":
        try:
            os.kill(pid, 0)
        except OSError:
            return False
        return True

    try:
        process = await asyncio.create_subprocess_exec(
            "tasklist",
            "/FI",
            f"PID eq {pid}",
            "/NH",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await process.communicate()
    except OSError:
        return False
    return str(pid) in stdout.decode("utf-8", errors="replace").split()


class ConfigLock:
    """Lock file with holder metadata and dead-owner reclamation.

    Acquisition is an exclusive create of `<config_dir>/.moss.lock`. A
    contender reads the existing record: a corrupted record or a dead holder
    is deleted and the create retried at once, a live holder is polled
    every `retry_interval_ms` until the timeout elapses.
    """

    def __init__(self, config_dir: Path | str, retry_interval_ms: int = DEFAULT_RETRY_INTERVAL_MS):
        self.config_dir = Path(config_dir).expanduser()
        self.lock_path = self.config_dir / LOCK_FILENAME
        self.retry_interval_ms = max(1, int(retry_interval_ms))
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    async def acquire(self, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> bool:
        """Acquire the lock or raise `LockTimeoutError`."""
        if self._fd is not None:
            return True

        self.config_dir.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        while (time.monotonic() - started) * 1000 < timeout_ms:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if await self._resolve_conflict():
                    continue
                await asyncio.sleep(self.retry_interval_ms / 1000)
                continue

            try:
                self._write_record(fd, LockRecord.for_current_process())
            except BaseException:
                os.close(fd)
                self.lock_path.unlink(missing_ok=True)
                raise
            self._fd = fd
            log.debug("Config lock acquired", path=str(self.lock_path))
            return True

        raise LockTimeoutError(timeout_ms)

    async def _resolve_conflict(self) -> bool:
        """Inspect a conflicting lock file.

        Returns True when the caller should retry immediately (the file was
        reclaimed or vanished) and False when a live holder owns it.
        """
        try:
            text = self.lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return True
        except (OSError, UnicodeDecodeError) as e:
            log.warning("Unreadable config lock, reclaiming", path=str(self.lock_path), error=str(e))
            self._unlink_quietly()
            return True

        try:
            record = LockRecord.parse(text)
        except LockCorruptedError as e:
            log.warning("Corrupted config lock, reclaiming", path=str(self.lock_path), error=str(e))
            self._unlink_quietly()
            return True

        if await is_process_running(record.pid):
            return False

        log.info("Stale config lock, reclaiming", path=str(self.lock_path), pid=record.pid)
        self._unlink_quietly()
        return True

    @staticmethod
    def _write_record(fd: int, record: LockRecord) -> None:
        payload = json.dumps(record.to_dict(), indent=2).encode("utf-8")
        written = 0
        while written < len(payload):
            written += os.write(fd, payload[written:])
        os.fsync(fd)

    def _unlink_quietly(self) -> None:
        try:
            self.lock_path.unlink(missing_ok=True)
        except OSError as e:
            log.debug("Failed to delete config lock", path=str(self.lock_path), error=str(e))

    async def release(self) -> None:
        """Release the lock. Idempotent and never raises."""
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            os.close(fd)
        except OSError as e:
            log.debug("Failed to close config lock handle", error=str(e))
        self._unlink_quietly()
        log.debug("Config lock released", path=str(self.lock_path))

    async def inspect(self) -> LockRecord | None:
        """Return the current lock record, or None when unlocked or corrupted."""
        try:
            text = self.lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError):
            return None
        try:
            return LockRecord.parse(text)
        except LockCorruptedError:
            return None

    async def force_clear(self) -> None:
        """Delete the lock file regardless of its holder."""
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None
        self._unlink_quietly()
        log.warning("Config lock force-cleared", path=str(self.lock_path))


@asynccontextmanager
async def config_lock(
    config_dir: Path | str,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    retry_interval_ms: int = DEFAULT_RETRY_INTERVAL_MS,
) -> AsyncIterator[ConfigLock]:
    """Hold the configuration lock for the duration of the block."""
    lock = ConfigLock(config_dir, retry_interval_ms=retry_interval_ms)
    await lock.acquire(timeout_ms)
    try:
        yield lock
    finally:
        await lock.release()


async def get_lock_info(config_dir: Path | str) -> LockRecord | None:
    return await ConfigLock(config_dir).inspect()


async def force_clear_lock(config_dir: Path | str) -> None:
    await ConfigLock(config_dir).force_clear()
