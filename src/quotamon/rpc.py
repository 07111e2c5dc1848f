"""Newline-framed byte transport to a helper subprocess."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Mapping, Sequence

from quotamon.errors import ExecutionFailed
from quotamon.execution import child_environment

logger = logging.getLogger(__name__)

# app-server responses can carry long payloads on a single line.
LINE_LIMIT = 4 * 1024 * 1024
CLOSE_GRACE_SECONDS = 2.0


class LineTransport(ABC):
    """One message per line in both directions. Knows nothing about message content."""

    @abstractmethod
    async def send(self, payload: bytes) -> None:
        raise NotImplementedError

    @abstractmethod
    async def receive(self) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        """Close and wait for the peer to go away."""
        self.close()

    @property
    def alive(self) -> bool:
        return True


class ProcessLineTransport(LineTransport):
    def __init__(self, proc: asyncio.subprocess.Process, name: str = "helper") -> None:
        self.proc = proc
        self.name = name

    @classmethod
    async def spawn(
        cls,
        executable: str,
        arguments: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
    ) -> ProcessLineTransport:
        try:
            proc = await asyncio.create_subprocess_exec(
                executable,
                *arguments,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env=child_environment(env),
                limit=LINE_LIMIT,
            )
        except OSError as exc:
            raise ExecutionFailed(f"failed to start {executable}: {exc}", cause=exc) from exc
        logger.debug("spawned %s %s (pid %s)", executable, " ".join(arguments), proc.pid)
        return cls(proc, name=executable)

    @property
    def alive(self) -> bool:
        return self.proc.returncode is None

    async def send(self, payload: bytes) -> None:
        stdin = self.proc.stdin
        if stdin is None or stdin.is_closing():
            raise ExecutionFailed(f"{self.name} input is closed")
        try:
            stdin.write(payload + b"\n")
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ExecutionFailed(f"{self.name} closed its input", cause=exc) from exc

    async def receive(self) -> bytes:
        stdout = self.proc.stdout
        if stdout is None:
            raise ExecutionFailed(f"{self.name} has no output stream")
        while True:
            try:
                line = await stdout.readline()
            except ValueError as exc:
                # Raised by StreamReader when a line exceeds LINE_LIMIT.
                raise ExecutionFailed(f"oversized message from {self.name}", cause=exc) from exc
            if not line:
                raise ExecutionFailed(f"{self.name} closed unexpectedly")
            line = line.rstrip(b"\r\n")
            if line:
                return line

    def close(self) -> None:
        stdin = self.proc.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()
        if self.proc.returncode is not None:
            return
        logger.debug("terminating %s (pid %s)", self.name, self.proc.pid)
        try:
            self.proc.terminate()
        except ProcessLookupError:
            pass

    async def aclose(self) -> None:
        self.close()
        try:
            await asyncio.wait_for(self.proc.wait(), CLOSE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.debug("%s ignored SIGTERM; killing pid %s", self.name, self.proc.pid)
            try:
                self.proc.kill()
            except ProcessLookupError:
                pass
            await self.proc.wait()
