"""Per-stack exclusive lock around the shared git cache."""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from shipflow.execution.command import CommandFailed

logger = logging.getLogger(__name__)


class LockAcquisitionTimeout(CommandFailed):
    """Git cache lock could not be taken within the bounded wait."""


class GitCacheLock:
    """Bounded-wait file lock keyed by stack id.

    Holders may inspect and fetch into ``<root>/<stack_id>.git``. Callers
    should heartbeat their task right before :meth:`acquire`, since the
    wait can legitimately take the whole timeout.
    """

    def __init__(
        self,
        root: Path,
        *,
        timeout_seconds: float = 15.0,
        poll_seconds: float = 0.1,
    ) -> None:
        self.root = root
        self.timeout_seconds = timeout_seconds
        self.poll_seconds = poll_seconds

    def cache_path(self, stack_id: str) -> Path:
        return self.root / f"{_safe_name(stack_id)}.git"

    def lock_path(self, stack_id: str) -> Path:
        return self.root / f"{_safe_name(stack_id)}.lock"

    @contextmanager
    def acquire(self, stack_id: str) -> Iterator[Path]:
        """Hold the stack lock for the duration of the block; yields the cache path."""

        self.root.mkdir(parents=True, exist_ok=True)
        lock_path = self.lock_path(stack_id)
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            self._wait_for_lock(fd, stack_id=stack_id)
            logger.debug("Acquired git cache lock for stack %s", stack_id)
            try:
                yield self.cache_path(stack_id)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
                logger.debug("Released git cache lock for stack %s", stack_id)
        finally:
            os.close(fd)

    def _wait_for_lock(self, fd: int, *, stack_id: str) -> None:
        deadline = time.monotonic() + self.timeout_seconds
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockAcquisitionTimeout(
                        f"Timed out after {self.timeout_seconds}s waiting for "
                        f"git cache lock of stack {stack_id}",
                    ) from None
                time.sleep(self.poll_seconds)


def _safe_name(stack_id: str) -> str:
    return "".join(char if char.isalnum() or char in "-_." else "_" for char in stack_id)
