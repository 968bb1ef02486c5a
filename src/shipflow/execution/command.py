"""Subprocess-based command runner with streamed output."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from pathlib import Path

logger = logging.getLogger(__name__)


class CommandError(RuntimeError):
    """Base error for commands that did not complete successfully."""


class CommandFailed(CommandError):
    """Command exited with a nonzero status."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class CommandTimedOut(CommandError):
    """Command ran past its timeout and was killed."""

    def __init__(self, message: str, *, timeout_seconds: float) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class Command:
    """One shell command: start, stream output lines, classify exit.

    The optional ``on_tick`` callback passed to :meth:`start` is invoked
    from a background thread every ``tick_seconds`` while the process runs.
    """

    def __init__(  # noqa: PLR0913
        self,
        args: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        timeout_seconds: float | None = None,
        tick_seconds: float = 1.0,
        display: str | None = None,
    ) -> None:
        if not args:
            raise ValueError("Command args must not be empty.")
        self.args = list(args)
        self.env = dict(env) if env is not None else None
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds
        self.tick_seconds = tick_seconds
        self._display = display
        self._process: subprocess.Popen[str] | None = None
        self._ticker: threading.Thread | None = None
        self._done = threading.Event()
        self._timed_out = False
        self._started_monotonic = 0.0

    @classmethod
    def shell(cls, script: str, **kwargs: object) -> Command:
        """Build a command that runs ``script`` through ``/bin/sh -c``."""

        return cls(["/bin/sh", "-c", script], display=script, **kwargs)  # type: ignore[arg-type]

    def __str__(self) -> str:
        if self._display is not None:
            return self._display
        return shlex.join(self.args)

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def exit_code(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    def start(self, on_tick: Callable[[], None] | None = None) -> Command:
        if self.cwd is not None:
            self.cwd.mkdir(parents=True, exist_ok=True)
        self._process = subprocess.Popen(  # noqa: S603
            self.args,
            env=self.env,
            cwd=self.cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            bufsize=1,
            start_new_session=True,
        )
        self._started_monotonic = time.monotonic()
        self._ticker = threading.Thread(
            target=self._tick_loop,
            args=(on_tick,),
            name=f"command-ticker-{self._process.pid}",
            daemon=True,
        )
        self._ticker.start()
        return self

    def stream(self) -> Iterator[str]:
        """Yield output lines as they arrive, then raise on timeout/nonzero exit."""

        process = self._require_started()
        assert process.stdout is not None
        try:
            yield from process.stdout
        finally:
            process.stdout.close()
            process.wait()
            self._done.set()
            if self._ticker is not None:
                self._ticker.join(timeout=max(self.tick_seconds * 2, 1.0))
        self._raise_for_status()

    def run(self) -> Command:
        """Run to completion, discarding output; never raises on exit status."""

        self.start()
        try:
            for _ in self.stream():
                pass
        except CommandError:
            pass
        return self

    def success(self) -> bool:
        return self.exit_code == 0 and not self._timed_out

    def _require_started(self) -> subprocess.Popen[str]:
        if self._process is None:
            raise RuntimeError(f"Command was not started: {self}")
        return self._process

    def _raise_for_status(self) -> None:
        if self._timed_out:
            raise CommandTimedOut(
                f"Command timed out after {self.timeout_seconds}s: {self}",
                timeout_seconds=self.timeout_seconds or 0,
            )
        returncode = self.exit_code
        if returncode != 0:
            raise CommandFailed(
                f"{self} terminated with exit status {returncode}",
                exit_code=returncode,
            )

    def _tick_loop(self, on_tick: Callable[[], None] | None) -> None:
        process = self._require_started()
        while not self._done.wait(self.tick_seconds):
            if process.poll() is not None:
                return
            if (
                self.timeout_seconds is not None
                and time.monotonic() - self._started_monotonic >= self.timeout_seconds
            ):
                self._timed_out = True
                _kill_process_group(process)
                return
            if on_tick is None:
                continue
            try:
                on_tick()
            except Exception:  # noqa: BLE001
                logger.exception("Command tick callback failed for pid %s", process.pid)


def _kill_process_group(process: subprocess.Popen[str]) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except OSError:
        try:
            process.kill()
        except OSError:
            return
