"""Durable conversation log stored as newline-delimited JSON."""

import asyncio
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from moss.logging import get_logger
from moss.messages import Message

log = get_logger(__name__)

MEMORY_FILENAME = "memory.jsonl"


class MessageLog:
    """Append-only message log replayed at startup.

    Every record is one JSON line written with a single append and fsynced,
    so a crash can only ever leave a partial *last* line. `load()` trims such
    a tail so later appends start on a fresh line.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path).expanduser()
        self._messages: list[Message] = []
        self._loaded = False

    @classmethod
    def in_config_dir(cls, config_dir: Path | str) -> "MessageLog":
        return cls(Path(config_dir) / MEMORY_FILENAME)

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> list[Message]:
        """Replay the log from disk, creating an empty file when missing."""
        self._messages = await asyncio.to_thread(self._read_file)
        self._loaded = True
        log.debug("Message log loaded", path=str(self.path), messages=len(self._messages))
        return list(self._messages)

    async def append(self, message: Message) -> None:
        """Durably append one message."""
        await asyncio.to_thread(self._append_line, message.to_json_line())
        self._messages.append(message)

    def get(self, message_id: str) -> Message | None:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def all(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    async def delete(self, message_id: str) -> bool:
        """Remove one message by id and rewrite the file. Returns whether it existed."""
        remaining = [message for message in self._messages if message.id != message_id]
        if len(remaining) == len(self._messages):
            return False
        await asyncio.to_thread(self._rewrite, remaining)
        self._messages = remaining
        return True

    async def clear(self) -> None:
        """Drop every message, in memory and on disk."""
        await asyncio.to_thread(self._rewrite, [])
        self._messages = []

    def _read_file(self) -> list[Message]:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text("", encoding="utf-8")
            return []

        data = self.path.read_bytes()
        messages: list[Message] = []
        offset = 0
        lines = data.split(b"\n")
        for index, raw in enumerate(lines):
            is_tail = index == len(lines) - 1
            if raw.strip():
                try:
                    messages.append(Message.from_json_line(raw.decode("utf-8")))
                except (UnicodeDecodeError, ValidationError, ValueError) as e:
                    if is_tail:
                        log.warning(
                            "Truncating partial trailing record",
                            path=str(self.path),
                            offset=offset,
                            error=str(e),
                        )
                        self._truncate(offset)
                        break
                    log.warning("Skipping unreadable record", path=str(self.path), line=index + 1, error=str(e))
                else:
                    if is_tail:
                        # Complete record missing its newline terminator.
                        self._append_raw(b"\n")
            offset += len(raw) + 1
        return messages

    def _append_line(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._append_raw((line + "\n").encode("utf-8"))

    def _append_raw(self, payload: bytes) -> None:
        with open(self.path, "ab") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())

    def _truncate(self, size: int) -> None:
        with open(self.path, "r+b") as f:
            f.truncate(size)
            f.flush()
            os.fsync(f.fileno())

    def _rewrite(self, messages: list[Message]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".memory-", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for message in messages:
                    f.write(message.to_json_line() + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
