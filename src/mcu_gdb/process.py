"""Subprocess plumbing consumed by the frame multiplexer.

The engine never touches :mod:`asyncio.subprocess` directly.  It talks to a
:class:`ProcessHandle`, which merges stdout and stderr into one stream of text
chunks, accepts writes, and can be signalled or killed.
:class:`AsyncioProcessExecutor` is the production implementation; tests
substitute a scripted handle.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import enum
import logging
import os
import shlex
import signal as _signal
from asyncio.subprocess import Process
from typing import AsyncIterator, List, Mapping, MutableMapping, Optional, Protocol, Sequence

_LOGGER = logging.getLogger(__name__)

_READ_SIZE = 4096
_KILL_WAIT = 3.0


class ProcessHandle(Protocol):
    """Minimal view of a running debugger process."""

    def output(self) -> AsyncIterator[str]:
        """Yield decoded stdout/stderr chunks in arrival order until both close."""

    async def write(self, data: str) -> None:
        """Write ``data`` to stdin; raises :class:`OSError` on a broken pipe."""

    def signal(self, name: str) -> None:
        """Deliver the named signal (``"SIGINT"``...) to the process."""

    async def kill(self) -> None:
        """Terminate the process and wait for it to exit."""

    def is_alive(self) -> bool:
        """Return True while the process has not exited."""


class LaunchStrategy(enum.Enum):
    EXEC = "exec"
    SHELL = "shell"


class AsyncioProcessHandle:
    """:class:`ProcessHandle` backed by an :class:`asyncio.subprocess.Process`."""

    def __init__(self, process: Process, *, encoding: str = "utf-8") -> None:
        self._process = process
        self._encoding = encoding
        self._chunks: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._readers: List[asyncio.Task[None]] = []
        for stream in (process.stdout, process.stderr):
            if stream is not None:
                self._readers.append(asyncio.create_task(self._pump(stream)))

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    def is_alive(self) -> bool:
        return self._process.returncode is None

    async def output(self) -> AsyncIterator[str]:
        remaining = len(self._readers)
        while remaining:
            chunk = await self._chunks.get()
            if chunk is None:
                remaining -= 1
                continue
            yield chunk

    async def write(self, data: str) -> None:
        stdin = self._process.stdin
        if stdin is None:
            raise BrokenPipeError("process stdin is not available")
        stdin.write(data.encode(self._encoding))
        await stdin.drain()

    def signal(self, name: str) -> None:
        if not self.is_alive():
            raise ProcessLookupError("process is not running")
        signum = getattr(_signal, name, None)
        if signum is None:
            raise ValueError(f"Unsupported signal on this platform: {name}")
        self._process.send_signal(signum)

    async def kill(self) -> None:
        if self.is_alive():
            self._process.kill()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=_KILL_WAIT)
            except asyncio.TimeoutError:  # pragma: no cover - zombie guard
                _LOGGER.warning("Process %s did not exit after kill", self._process.pid)
        for task in self._readers:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        # stdout and stderr share one queue; the prompt has no trailing
        # newline, so raw chunks are forwarded instead of lines.
        decoder = codecs.getincrementaldecoder(self._encoding)(errors="replace")
        try:
            while True:
                data = await stream.read(_READ_SIZE)
                if not data:
                    tail = decoder.decode(b"", final=True)
                    if tail:
                        await self._chunks.put(tail)
                    break
                text = decoder.decode(data)
                if text:
                    await self._chunks.put(text)
        finally:
            self._chunks.put_nowait(None)


class AsyncioProcessExecutor:
    """Spawn processes with :mod:`asyncio` and check they survive startup."""

    def __init__(
        self,
        strategy: LaunchStrategy = LaunchStrategy.EXEC,
        *,
        launch_delay: float = 0.5,
        encoding: str = "utf-8",
    ) -> None:
        self._strategy = strategy
        self._launch_delay = launch_delay
        self._encoding = encoding

    async def launch(
        self,
        path: str,
        args: Optional[Sequence[str]] = None,
        *,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> Optional[AsyncioProcessHandle]:
        """Start ``path`` and return a handle, or None if it died on launch."""

        argv = [path, *(args or [])]

        resolved_env: Optional[MutableMapping[str, str]] = None
        if env is not None:
            resolved_env = os.environ.copy()
            resolved_env.update(env)

        pipes = dict(
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=resolved_env,
        )

        _LOGGER.debug("Launching (%s): %s", self._strategy.value, " ".join(argv))
        try:
            if self._strategy is LaunchStrategy.SHELL:
                process = await asyncio.create_subprocess_shell(shlex.join(argv), **pipes)
            else:
                process = await asyncio.create_subprocess_exec(*argv, **pipes)
        except OSError as exc:
            _LOGGER.error("Failed to launch %s: %s", path, exc)
            return None

        handle = AsyncioProcessHandle(process, encoding=self._encoding)

        if self._launch_delay > 0:
            await asyncio.sleep(self._launch_delay)
        if not handle.is_alive():
            _LOGGER.error("%s exited during startup with code %s", path, process.returncode)
            await handle.kill()
            return None
        return handle


__all__ = [
    "AsyncioProcessExecutor",
    "AsyncioProcessHandle",
    "LaunchStrategy",
    "ProcessHandle",
]
