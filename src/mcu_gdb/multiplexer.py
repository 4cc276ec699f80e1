"""Turn the debugger's prompt-delimited console into a command channel.

:class:`FrameMultiplexer` owns the only reference to the process input.  It
writes one command at a time, splits the merged output into frames at each
prompt, and hands every frame to the oldest pending command.  Frames that
arrive while nothing is pending are *standalone*: the target stopped on its
own, e.g. after a background ``continue&``.

Correlation is purely positional.  A debugger that never prints its prompt
again starves every later command, which is why callers await frames with a
timeout (see :class:`~mcu_gdb.config.EngineConfig`).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from .models import NULL_ID, Command, Frame
from .process import ProcessHandle

_LOGGER = logging.getLogger(__name__)

_LINE_SPLIT = re.compile(r"\r\n|\n")
_LINE_TERMINATOR = "\r\n"


class GDBEngineError(RuntimeError):
    """Base error for the debug engine."""


class SessionNotRunning(GDBEngineError):
    """Raised when an operation requires a started session but none exists."""


class SessionTerminated(GDBEngineError):
    """Set on outstanding commands when the debugger exits or is killed."""


class CommandWriteError(GDBEngineError):
    """Set on a command whose bytes could not be written to the debugger."""


class LineBuffer:
    """Accumulates raw chunks and exposes them as lines."""

    def __init__(self) -> None:
        self._buf = ""

    def append(self, chunk: str) -> None:
        self._buf += chunk

    def last_line(self) -> str:
        index = self._buf.rfind("\n")
        return self._buf[index + 1 :] if index != -1 else self._buf

    def take_frame(self, prompt: str) -> Optional[List[str]]:
        """Pop the lines before the first line that starts with ``prompt``.

        Text printed after the prompt on the same line stays buffered as the
        start of the next frame.
        """

        lines = _LINE_SPLIT.split(self._buf)
        for index, line in enumerate(lines):
            if line.startswith(prompt):
                rest = line[len(prompt) :].lstrip(" ")
                remaining = [rest] if rest else []
                remaining.extend(lines[index + 1 :])
                self._buf = "\n".join(remaining)
                return lines[:index]
        return None

    def clear(self) -> None:
        self._buf = ""

    def __bool__(self) -> bool:
        return bool(self._buf)


class FrameMultiplexer:
    """Serialise writes and correlate prompt-delimited frames to commands."""

    def __init__(self, handle: ProcessHandle, *, prompt: str = "(gdb)") -> None:
        self._handle = handle
        self._prompt = prompt
        self._buffer = LineBuffer()

        self._id_queue: Deque[int] = deque()
        self._write_queue: Deque[Command] = deque()
        self._in_flight: Optional[int] = None

        self._futures: Dict[int, asyncio.Future[Frame]] = {}
        self._started_at: Dict[int, float] = {}

        self.standalone: asyncio.Queue[Frame] = asyncio.Queue()

        self._reader: Optional[asyncio.Task[None]] = None
        self._writer: Optional[asyncio.Task[None]] = None
        self._closed = False

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_ids(self) -> Tuple[int, ...]:
        return tuple(self._id_queue)

    def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop())

    async def kill(self) -> None:
        """Kill the debugger without a protocol-level goodbye."""

        self._fail_outstanding(SessionTerminated("debugger session killed"))
        await self._handle.kill()
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None

    # ------------------------------------------------------------------
    # commands
    # ------------------------------------------------------------------
    def enqueue_write(self, command: Command) -> asyncio.Future[Frame]:
        """Queue ``command`` and return a future resolved with its frame."""

        future = self._reserve(command.id)
        if self._in_flight is not None:
            self._write_queue.append(command)
        else:
            self._start_write(command)
        return future

    def signal(self, command: Command, name: str) -> asyncio.Future[Frame]:
        """Deliver a signal in place of a text write.

        Signals bypass the write queue so an interrupt can preempt a running
        target, but still reserve an id for the frame that answers them.
        """

        future = self._reserve(command.id)
        self._started_at[command.id] = time.monotonic()
        try:
            self._handle.signal(name)
        except (OSError, ValueError) as exc:
            self._drop_id(command.id)
            self._futures.pop(command.id, None)
            self._started_at.pop(command.id, None)
            future.set_exception(CommandWriteError(f"signal {name} failed: {exc}"))
        return future

    def send_signal(self, name: str) -> None:
        """Deliver a signal without reserving a frame for it."""

        self._handle.signal(name)

    def _reserve(self, command_id: int) -> asyncio.Future[Frame]:
        if self._closed:
            raise SessionTerminated("debugger session is closed")
        future: asyncio.Future[Frame] = asyncio.get_running_loop().create_future()
        self._futures[command_id] = future
        self._id_queue.append(command_id)
        return future

    def _start_write(self, command: Command) -> None:
        self._in_flight = command.id
        self._writer = asyncio.create_task(self._write(command))

    async def _write(self, command: Command) -> None:
        self._started_at[command.id] = time.monotonic()
        try:
            await self._handle.write(command.text + _LINE_TERMINATOR)
        except (OSError, RuntimeError) as exc:
            # only this command fails; its frame will never come
            _LOGGER.error("Write of %r failed: %s", command.text, exc)
            self._drop_id(command.id)
            self._started_at.pop(command.id, None)
            future = self._futures.pop(command.id, None)
            if future is not None and not future.done():
                future.set_exception(CommandWriteError(str(exc)))
            if self._in_flight == command.id:
                self._flush_next()

    def _flush_next(self) -> None:
        self._in_flight = None
        if self._write_queue and not self._closed:
            self._start_write(self._write_queue.popleft())

    def _drop_id(self, command_id: int) -> None:
        with contextlib.suppress(ValueError):
            self._id_queue.remove(command_id)

    # ------------------------------------------------------------------
    # output
    # ------------------------------------------------------------------
    def feed(self, chunk: str) -> None:
        """Append output and emit every frame it completes."""

        self._buffer.append(chunk)
        while True:
            lines = self._buffer.take_frame(self._prompt)
            if lines is None:
                break
            self._emit(lines)

    def _emit(self, lines: List[str]) -> None:
        if not self._id_queue:
            _LOGGER.debug("Standalone frame (%d lines)", len(lines))
            self.standalone.put_nowait(Frame(lines=lines))
            return

        command_id = self._id_queue.popleft()
        started = self._started_at.pop(command_id, None)
        elapsed = time.monotonic() - started if started is not None else None
        frame = Frame(lines=lines, id=command_id, elapsed=elapsed)

        future = self._futures.pop(command_id, None)
        if future is None or future.done():
            # the caller gave up (timeout); the frame still consumed its slot
            _LOGGER.debug("Dropping late frame for command %d", command_id)
        else:
            future.set_result(frame)

        if command_id == self._in_flight:
            self._flush_next()

    async def _read_loop(self) -> None:
        try:
            async for chunk in self._handle.output():
                self.feed(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - surfaced via futures
            _LOGGER.exception("Debugger output reader failed")
            self._fail_outstanding(SessionTerminated(f"output reader failed: {exc}"))
            return
        if self._buffer:
            _LOGGER.debug("Debugger exited with unterminated output: %r", self._buffer.last_line())
            self._buffer.clear()
        self._fail_outstanding(SessionTerminated("debugger exited"))

    def _fail_outstanding(self, exc: Exception) -> None:
        self._closed = True
        futures = list(self._futures.values())
        self._futures.clear()
        self._id_queue.clear()
        self._write_queue.clear()
        self._started_at.clear()
        self._in_flight = None
        for future in futures:
            if not future.done():
                future.set_exception(exc)


__all__ = [
    "CommandWriteError",
    "FrameMultiplexer",
    "GDBEngineError",
    "LineBuffer",
    "SessionNotRunning",
    "SessionTerminated",
]
