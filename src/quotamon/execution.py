"""Run provider CLIs on a pseudo-terminal.

Several CLIs only print their usage screens when attached to a terminal, so
``execute`` spawns the child on a pty instead of plain pipes. Output is read
as it arrives; ``send_on_substrings`` answers prompts seen in that stream and
``stop_on_substrings`` ends sessions of CLIs that never exit by themselves.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import glob
import logging
import os
import pty
import shutil
import signal
import struct
import termios
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from quotamon.errors import ExecutionFailed, Timeout

logger = logging.getLogger(__name__)

ROWS, COLS = 50, 160
READ_SIZE = 4096
SETTLE_SECONDS = 1.0
KILL_GRACE_SECONDS = 2.0


def extra_search_paths() -> list[str]:
    home = Path.home()
    paths = [
        "/usr/local/bin",
        "/opt/homebrew/bin",
        str(home / ".local/bin"),
        str(home / ".npm-global/bin"),
        str(home / ".bun/bin"),
        "/usr/local/lib/node_modules/.bin",
    ]
    paths.extend(sorted(glob.glob(str(home / ".nvm/versions/node/*/bin")), reverse=True))
    return paths


def effective_path(current: str | None = None) -> str:
    current = os.environ.get("PATH", "") if current is None else current
    parts = extra_search_paths() + [p for p in current.split(os.pathsep) if p]
    seen: set[str] = set()
    unique = []
    for p in parts:
        if p not in seen:
            seen.add(p)
            unique.append(p)
    return os.pathsep.join(unique)


def child_environment(base: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env["PATH"] = effective_path(env.get("PATH", ""))
    env.setdefault("TERM", "xterm-256color")
    env["COLUMNS"] = str(COLS)
    env["LINES"] = str(ROWS)
    return env


@dataclass(frozen=True)
class CLIResult:
    output: str
    exit_code: int | None = 0


class CommandExecutor:
    """Locates binaries and runs them attached to a pseudo-terminal."""

    def locate(self, binary: str) -> str | None:
        if os.sep in binary:
            return binary if os.path.isfile(binary) and os.access(binary, os.X_OK) else None
        return shutil.which(binary, path=effective_path())

    async def execute(
        self,
        binary: str,
        args: Sequence[str] = (),
        script: str | None = None,
        timeout: float = 20.0,
        working_directory: str | Path | None = None,
        send_on_substrings: Mapping[str, str] | None = None,
        stop_on_substrings: Sequence[str] = (),
        settle_seconds: float = SETTLE_SECONDS,
    ) -> CLIResult:
        path = self.locate(binary)
        if path is None:
            raise ExecutionFailed(f"{binary} not found")

        master, slave = pty.openpty()
        _set_window_size(slave)
        try:
            proc = await asyncio.create_subprocess_exec(
                path,
                *args,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                cwd=str(working_directory) if working_directory else None,
                env=child_environment(),
                start_new_session=True,
            )
        except OSError as exc:
            os.close(master)
            raise ExecutionFailed(f"failed to start {binary}: {exc}", cause=exc) from exc
        finally:
            os.close(slave)

        logger.debug("started %s %s (pid %s)", path, " ".join(args), proc.pid)
        session = _PtySession(master, proc, dict(send_on_substrings or {}), tuple(stop_on_substrings), settle_seconds)
        finished = False
        try:
            output = await asyncio.wait_for(session.run(script), timeout)
            finished = True
        except asyncio.TimeoutError as exc:
            raise Timeout(f"{binary} did not finish within {timeout:g}s", cause=exc) from exc
        finally:
            # Timed out or cancelled: no grace period before SIGKILL.
            await session.close(graceful=finished)

        return CLIResult(output=output, exit_code=proc.returncode)


class _PtySession:
    def __init__(
        self,
        master: int,
        proc: asyncio.subprocess.Process,
        triggers: dict[str, str],
        stop_markers: tuple[str, ...],
        settle_seconds: float,
    ) -> None:
        self.master = master
        self.proc = proc
        self.pending_triggers = triggers
        self.stop_markers = stop_markers
        self.settle_seconds = settle_seconds
        self.buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._chunks: asyncio.Queue[bytes] = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self._reading = True
        self._loop.add_reader(master, self._on_readable)
        self._closed = False

    def _on_readable(self) -> None:
        try:
            data = os.read(self.master, READ_SIZE)
        except OSError:
            # EIO once the child side of the pty is gone.
            data = b""
        if not data:
            self._stop_reading()
        self._chunks.put_nowait(data)

    def _stop_reading(self) -> None:
        if self._reading:
            self._loop.remove_reader(self.master)
            self._reading = False

    def _write(self, text: str) -> None:
        try:
            os.write(self.master, text.encode())
        except OSError as exc:
            logger.debug("write to pty failed: %s", exc)

    def _feed(self, data: bytes) -> None:
        self.buffer += self._decoder.decode(data)
        for trigger in list(self.pending_triggers):
            if trigger in self.buffer:
                reply = self.pending_triggers.pop(trigger)
                logger.debug("prompt %r seen, replying", trigger)
                self._write(reply)

    def _stop_seen(self) -> bool:
        return any(marker in self.buffer for marker in self.stop_markers)

    async def run(self, script: str | None) -> str:
        if script:
            self._write(script)

        while True:
            data = await self._chunks.get()
            if not data:
                break
            self._feed(data)
            if self._stop_seen():
                await self._settle()
                break

        self.buffer += self._decoder.decode(b"", final=True)
        return self.buffer

    async def _settle(self) -> None:
        while True:
            try:
                data = await asyncio.wait_for(self._chunks.get(), self.settle_seconds)
            except asyncio.TimeoutError:
                return
            if not data:
                return
            self._feed(data)

    async def close(self, graceful: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop_reading()
        try:
            await _terminate(self.proc, KILL_GRACE_SECONDS if graceful else 0.0)
        finally:
            os.close(self.master)


async def _terminate(proc: asyncio.subprocess.Process, grace: float = KILL_GRACE_SECONDS) -> None:
    if proc.returncode is not None:
        return
    if grace > 0:
        _signal_group(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(proc.wait()), grace)
            return
        except asyncio.TimeoutError:
            pass
    _signal_group(proc, signal.SIGKILL)
    await proc.wait()


def _signal_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        proc.send_signal(sig)


def _set_window_size(fd: int) -> None:
    try:
        fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", ROWS, COLS, 0, 0))
    except OSError:
        logger.debug("could not set pty window size")
