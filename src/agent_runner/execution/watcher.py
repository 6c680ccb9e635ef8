"""Polling file watcher and coarse fallback timer for the live log viewer.

Change detection compares `(inode, size, mtime_ns)` between polls. A missing
file or a new inode is reported as `rename`, anything else as `change`.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class WatchEvent(str, Enum):
    """Kind of file system change observed by `FileWatcher`."""

    CHANGE = "change"
    RENAME = "rename"


@dataclass(frozen=True, slots=True)
class FileSignature:
    inode: int
    size: int
    mtime_ns: int

    @classmethod
    def of(cls, stat: os.stat_result) -> FileSignature:
        return cls(inode=stat.st_ino, size=stat.st_size, mtime_ns=stat.st_mtime_ns)


def read_signature(path: Path) -> FileSignature | None:
    """Signature of `path`, or None if it does not exist."""

    try:
        return FileSignature.of(path.stat())
    except FileNotFoundError:
        return None


class FileWatcher:
    """Emit change/rename events for one path by polling its stat signature."""

    def __init__(
        self,
        path: Path,
        callback: Callable[[WatchEvent], None],
        *,
        interval: float = 0.1,
        log: logging.Logger | None = None,
    ) -> None:
        self.path = path
        self.interval = interval
        self._callback = callback
        self._log = log or logger
        self._signature: FileSignature | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.active:
            return
        self._signature = read_signature(self.path)
        self._task = asyncio.get_running_loop().create_task(self._run())

    def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    def check(self) -> WatchEvent | None:
        """Compare the current signature with the last one and emit an event on difference."""

        try:
            current = read_signature(self.path)
        except OSError as error:
            self._log.debug("Failed to stat %s: %s", self.path, error)
            return None
        previous = self._signature
        if current == previous:
            return None
        self._signature = current
        if current is None or previous is None or current.inode != previous.inode:
            event = WatchEvent.RENAME
        else:
            event = WatchEvent.CHANGE
        self._callback(event)
        return event

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.check()


class PollTimer:
    """Call `action` every `interval` seconds until closed."""

    def __init__(self, interval: float, action: Callable[[], None]) -> None:
        if interval <= 0:
            raise ValueError("Poll interval must be > 0.")
        self.interval = interval
        self._action = action
        self._task: asyncio.Task[None] | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.active:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self._action()
