"""Typed debugging operations on top of a console-mode GDB.

:class:`DebugEngine` owns the run/stop state machine and is the only object a
front-end talks to.  Each operation builds one command (or an ordered list),
pushes it through the :class:`~mcu_gdb.multiplexer.FrameMultiplexer`, decodes
the frame with :class:`~mcu_gdb.parser.ResponseParser` and reports the result.
Protocol, parse, transport and timeout failures come back as failed
:class:`~mcu_gdb.models.DebugResult` values; they are never raised past the
command boundary.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Dict, List, Optional, Sequence, Union

from .adapters import VendorAdapter
from .config import EngineConfig
from .models import (
    RUN_CONTROL_KINDS,
    Breakpoint,
    Command,
    CommandKind,
    ConnectOptions,
    DebugResult,
    EngineEvent,
    Frame,
    LogEvent,
    LogType,
    MemoryBlock,
    RunState,
    StackFrame,
    StopEvent,
    StopLocation,
    Variable,
    VariableDefinition,
)
from .multiplexer import (
    CommandWriteError,
    FrameMultiplexer,
    GDBEngineError,
    SessionNotRunning,
    SessionTerminated,
)
from .parser import ResponseParser
from .process import AsyncioProcessExecutor

_LOGGER = logging.getLogger(__name__)

_LOG_LEVELS = {
    LogType.LOG: logging.INFO,
    LogType.WARNING: logging.WARNING,
    LogType.ERROR: logging.ERROR,
    LogType.HIDE: logging.DEBUG,
}

_INTERRUPT_COMMAND = "interrupt"

# run-control commands whose frame only completes once the target halts
_BLOCKING_RUN_KINDS = RUN_CONTROL_KINDS - {CommandKind.INTERRUPT, CommandKind.CONTINUE_BACKGROUND}


class SessionAlreadyRunning(GDBEngineError):
    """Raised when starting a session while one is already active."""


class DebugEngine:
    """Run-state machine and typed operation surface for one debug session."""

    def __init__(
        self,
        adapter: Optional[VendorAdapter] = None,
        *,
        config: Optional[EngineConfig] = None,
        executor: Optional[AsyncioProcessExecutor] = None,
        parser: Optional[ResponseParser] = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._adapter = adapter
        self._executor = executor or AsyncioProcessExecutor(launch_delay=self._config.launch_delay)
        self._parser = parser or ResponseParser()

        self._mux: Optional[FrameMultiplexer] = None
        self._standalone_task: Optional[asyncio.Task[None]] = None
        self._state = RunState.STOPPED
        self._next_id = 0
        self._last_elapsed: Optional[float] = None
        self._last_command: Optional[str] = None
        self._blocking_runs = 0

        self._breakpoints: Dict[str, List[int]] = {}
        self._subscribers: List[asyncio.Queue[EngineEvent]] = []
        self._stop_future: Optional[asyncio.Future[Optional[StopLocation]]] = None

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------
    @property
    def adapter(self) -> Optional[VendorAdapter]:
        return self._adapter

    @property
    def run_state(self) -> RunState:
        return self._state

    @property
    def last_command(self) -> Optional[str]:
        return self._last_command

    @property
    def last_command_elapsed(self) -> Optional[float]:
        """Seconds between the last command's write and its prompt."""

        return self._last_elapsed

    def is_stopped(self) -> bool:
        return self._state is RunState.STOPPED

    def is_running(self) -> bool:
        return self._mux is not None and not self._mux.closed

    def breakpoint_numbers(self, file: str) -> List[int]:
        return list(self._breakpoints.get(file, []))

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------
    def subscribe(self) -> asyncio.Queue[EngineEvent]:
        """Return a queue receiving every log line and standalone stop."""

        queue: asyncio.Queue[EngineEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[EngineEvent]) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(queue)

    def _publish(self, event: EngineEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    def _log(self, log_type: LogType, message: str) -> None:
        if log_type is LogType.HIDE:
            if not self._config.verbose:
                _LOGGER.debug("%s", message)
                return
            log_type = LogType.LOG
        _LOGGER.log(_LOG_LEVELS[log_type], "%s", message)
        self._publish(LogEvent(log_type, message))

    async def wait_for_stop(self, timeout: Optional[float] = None) -> Optional[StopLocation]:
        """Wait for the target to report a stop on its own.

        Used after ``continue_(background=True)``.  Returns None on timeout
        or when the session is killed.
        """

        if self._stop_future is None:
            self._stop_future = asyncio.get_running_loop().create_future()
        future = self._stop_future
        try:
            location = await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            return None
        if self._stop_future is future:
            self._stop_future = None
        return location

    def _expect_stop(self) -> None:
        if self._stop_future is None or self._stop_future.done():
            self._stop_future = asyncio.get_running_loop().create_future()

    def _report_stop(self, location: Optional[StopLocation]) -> None:
        if self._stop_future is None:
            self._stop_future = asyncio.get_running_loop().create_future()
        if not self._stop_future.done():
            self._stop_future.set_result(location)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    async def start(
        self,
        exe_path: Optional[str] = None,
        args: Optional[Sequence[str]] = None,
        *,
        cwd: Optional[str] = None,
    ) -> Optional[str]:
        """Launch the debugger; return an error message or None on success."""

        if self.is_running():
            raise SessionAlreadyRunning("GDB session is already active")
        if self._mux is not None:
            # previous debugger exited on its own
            await self._teardown()

        path = exe_path or self._config.gdb_path
        if path is None and self._adapter is not None:
            path = self._adapter.exe_path()
        if path is None:
            return "No GDB executable configured !"

        handle = await self._executor.launch(path, list(args or []), cwd=cwd)
        if handle is None:
            return "GDB launch failed !"

        mux = FrameMultiplexer(handle, prompt=self._config.prompt)
        mux.start()
        self._mux = mux

        try:
            banner = await asyncio.wait_for(mux.standalone.get(), self._config.command_timeout)
        except asyncio.TimeoutError:
            await self._teardown()
            return "GDB did not print its prompt !"
        if banner.lines:
            self._log(LogType.WARNING, "\r\n".join(banner.lines))

        self._state = RunState.STOPPED
        self._standalone_task = asyncio.create_task(self._watch_standalone(mux))
        return None

    async def kill(self) -> None:
        """Kill the debugger; outstanding commands resolve as failed."""

        await self._teardown()
        if self._adapter is not None:
            message = await self._adapter.on_kill()
            if message:
                self._log(LogType.ERROR, message)

    async def _teardown(self) -> None:
        if self._standalone_task is not None:
            self._standalone_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._standalone_task
            self._standalone_task = None
        if self._mux is not None:
            await self._mux.kill()
            self._mux = None
        self._report_stop(None)
        self._stop_future = None
        self._state = RunState.STOPPED

    async def _watch_standalone(self, mux: FrameMultiplexer) -> None:
        while True:
            frame = await mux.standalone.get()
            self._on_standalone(frame)

    def _on_standalone(self, frame: Frame) -> None:
        try:
            result = self._parser.parse(CommandKind.CONTINUE_BACKGROUND, frame.lines)
        except ValueError as exc:
            self._log(LogType.ERROR, f"[Parser Error]: {exc}")
            return

        if result.stop is None:
            if frame.lines:
                self._log(LogType.LOG, "\r\n".join(frame.lines))
            return

        self._state = RunState.STOPPED
        self._log(LogType.WARNING, "\r\n".join(frame.lines))
        self._publish(StopEvent(location=result.stop, lines=list(frame.lines)))
        self._report_stop(result.stop)

    # ------------------------------------------------------------------
    # command execution
    # ------------------------------------------------------------------
    def _require_session(self) -> FrameMultiplexer:
        if self._mux is None:
            raise SessionNotRunning("Start the session before sending commands")
        return self._mux

    def _obtain_id(self) -> int:
        command_id = self._next_id
        self._next_id += 1
        return command_id

    def _timeout_for(self, kind: CommandKind) -> Optional[float]:
        if kind in _BLOCKING_RUN_KINDS:
            return self._config.run_timeout
        return self._config.command_timeout

    async def send_command(
        self,
        command: str,
        kind: CommandKind = CommandKind.CUSTOM,
        log_type: LogType = LogType.LOG,
    ) -> DebugResult:
        """Send one console command and decode its frame as ``kind``."""

        return await self._execute(command, kind, log_type)

    async def _execute(
        self,
        text: str,
        kind: CommandKind,
        log_type: LogType,
        *,
        signal: Optional[str] = None,
    ) -> DebugResult:
        mux = self._require_session()
        command = Command(id=self._obtain_id(), text=text, kind=kind)
        self._last_command = text
        timeout = self._timeout_for(kind)

        try:
            if signal is not None:
                future = mux.signal(command, signal)
            else:
                future = mux.enqueue_write(command)
            frame = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            result = DebugResult.failure(f"timeout: no prompt from debugger after {timeout}s")
        except CommandWriteError as exc:
            result = DebugResult.failure(f"write failed: {exc}")
        except SessionTerminated as exc:
            result = DebugResult.failure(f"session terminated: {exc}")
        else:
            self._last_elapsed = frame.elapsed
            self._log(log_type, f"[SEND]: {text}")
            if frame.lines:
                self._log(log_type, "\r\n".join(f"\t{line}" for line in frame.lines))
            self._log(log_type, "[END]")
            result = self._decode(kind, frame)

        if not result.ok:
            self._log(LogType.ERROR, f"[{result.result_type.value}]: {result.error}")
        return result

    def _decode(self, kind: CommandKind, frame: Frame) -> DebugResult:
        try:
            return self._parser.parse(kind, frame.lines)
        except Exception as exc:
            _LOGGER.exception("Could not parse response to command %d", frame.id)
            return DebugResult.failure(f"parse error: {exc}")

    async def _execute_all(self, commands: Sequence[str], kind: CommandKind, log_type: LogType) -> bool:
        for text in commands:
            result = await self._execute(text, kind, log_type)
            if not result.ok:
                return False
        return True

    # ------------------------------------------------------------------
    # target lifecycle
    # ------------------------------------------------------------------
    def _require_adapter(self) -> VendorAdapter:
        if self._adapter is None:
            raise GDBEngineError("No vendor adapter configured")
        return self._adapter

    async def connect(self, options: ConnectOptions, other_commands: Optional[Sequence[str]] = None) -> bool:
        adapter = self._require_adapter()
        message = await adapter.on_connect(options)
        if message:
            self._log(LogType.ERROR, message)
            return False

        if not await self._execute_all(adapter.connect_commands(options), CommandKind.CONNECT, LogType.LOG):
            return False

        for text in other_commands or []:
            await self._execute(text, CommandKind.CONNECT, LogType.HIDE)

        # user commands are best effort
        for text in options.custom_commands:
            await self._execute(text, CommandKind.CUSTOM, LogType.LOG)
        return True

    async def disconnect(self) -> bool:
        adapter = self._require_adapter()
        ok = await self._execute_all(adapter.disconnect_commands(), CommandKind.DISCONNECT, LogType.WARNING)
        self._breakpoints.clear()
        return ok

    async def launch(self, executable: str, extra_commands: Optional[Sequence[str]] = None) -> bool:
        adapter = self._require_adapter()
        commands = adapter.start_debug_commands(executable)
        if not await self._execute_all(commands, CommandKind.START_DEBUG, LogType.LOG):
            return False
        for text in extra_commands or []:
            await self._execute(text, CommandKind.START_DEBUG, LogType.HIDE)
        return True

    # ------------------------------------------------------------------
    # run control
    # ------------------------------------------------------------------
    async def _run(self, text: str, kind: CommandKind, *, signal: Optional[str] = None) -> Optional[StopLocation]:
        self._require_session()
        previous = self._state
        self._state = RunState.RUNNING
        self._expect_stop()

        blocking = kind in _BLOCKING_RUN_KINDS
        if blocking:
            self._blocking_runs += 1
        try:
            result = await self._execute(text, kind, LogType.WARNING, signal=signal)
        finally:
            if blocking:
                self._blocking_runs -= 1

        if not result.ok:
            self._state = previous
            return None

        if kind is CommandKind.CONTINUE_BACKGROUND:
            if result.stop is None:
                # the stop arrives later as a standalone frame
                return StopLocation()
            self._publish(StopEvent(location=result.stop, lines=list(result.logs)))

        self._state = RunState.STOPPED
        location = result.stop or StopLocation()
        self._report_stop(location)
        return location

    async def interrupt(self) -> Optional[StopLocation]:
        """Stop a running target by signalling the debugger.

        Program received signal SIGINT, Interrupt.
        DelayMs (ms=464) at c:\\stm8_demo\\lib\\delay\\stm8s_delay.c:31

        While a blocking ``continue``/``step`` is pending, its own frame
        carries the stop, so the signal is sent without reserving a frame.
        """

        if self._blocking_runs:
            mux = self._require_session()
            try:
                mux.send_signal(self._config.interrupt_signal)
            except (OSError, ValueError) as exc:
                self._log(LogType.ERROR, f"interrupt failed: {exc}")
                return None
            return await self.wait_for_stop(self._config.command_timeout)

        return await self._run(
            _INTERRUPT_COMMAND,
            CommandKind.INTERRUPT,
            signal=self._config.interrupt_signal,
        )

    async def continue_(self, *, background: bool = False) -> Optional[StopLocation]:
        """``continue`` until the next stop, or ``continue&`` and return at once."""

        if background:
            return await self._run("continue&", CommandKind.CONTINUE_BACKGROUND)
        return await self._run("continue", CommandKind.CONTINUE)

    async def next(self, instruction: bool = False) -> Optional[StopLocation]:
        return await self._run("nexti" if instruction else "next", CommandKind.NEXT)

    async def step(self, instruction: bool = False) -> Optional[StopLocation]:
        return await self._run("stepi" if instruction else "step", CommandKind.STEP)

    async def step_out(self) -> Optional[StopLocation]:
        return await self._run("finish", CommandKind.STEP_OUT)

    # ------------------------------------------------------------------
    # breakpoints
    # ------------------------------------------------------------------
    async def add_breakpoint(self, breakpoint: Breakpoint) -> Optional[Breakpoint]:
        """Set one breakpoint; None unless the debugger assigned a number."""

        location = f"{breakpoint.file}:{breakpoint.line}" if breakpoint.file else str(breakpoint.line)
        text = f"break {location}"
        if breakpoint.condition:
            text += f" if {breakpoint.condition}"

        result = await self._execute(text, CommandKind.ADD_BREAKPOINT, LogType.HIDE)
        confirmed = result.breakpoint
        if not result.ok or confirmed is None or not confirmed.number:
            return None
        confirmed.condition = breakpoint.condition
        return confirmed

    async def remove_breakpoints(self, numbers: Sequence[int]) -> bool:
        if not numbers:
            return True
        text = "delete breakpoints " + " ".join(str(number) for number in numbers)
        result = await self._execute(text, CommandKind.REMOVE_BREAKPOINTS, LogType.HIDE)
        return result.ok

    async def set_breakpoints(self, file: str, breakpoints: Sequence[Breakpoint]) -> List[Breakpoint]:
        """Replace every breakpoint in ``file`` with ``breakpoints``.

        Requests the debugger does not confirm are dropped, not retried.
        """

        previous = self._breakpoints.pop(file, [])
        if previous:
            await self.remove_breakpoints(previous)

        confirmed: List[Breakpoint] = []
        for requested in breakpoints:
            added = await self.add_breakpoint(
                Breakpoint(line=requested.line, file=file, condition=requested.condition)
            )
            if added is not None:
                confirmed.append(added)

        self._breakpoints[file] = [bp.number for bp in confirmed if bp.number is not None]
        return confirmed

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    async def get_stack(self) -> List[StackFrame]:
        result = await self._execute("bt", CommandKind.STACK_TRACE, LogType.HIDE)
        return result.stack or []

    async def get_local_variables(self) -> Optional[List[Variable]]:
        # No locals.
        # clock = 16 '\020'
        result = await self._execute("info locals", CommandKind.LOCAL_VARIABLES, LogType.LOG)
        if not result.ok:
            return None
        return result.variables or []

    async def get_variable_value(self, expression: str) -> Optional[Variable]:
        result = await self._execute(f"p {expression}", CommandKind.VARIABLE_VALUE, LogType.LOG)
        if not result.ok or not result.variables:
            return None
        variable = result.variables[0]
        variable.name = expression
        return variable

    async def get_global_variables(self) -> Optional[List[VariableDefinition]]:
        result = await self._execute("info variables", CommandKind.GLOBAL_VARIABLES, LogType.HIDE)
        if not result.ok:
            return None
        return result.definitions or []

    async def get_register_variables(self) -> Optional[List[Variable]]:
        result = await self._execute("info registers", CommandKind.REGISTERS, LogType.HIDE)
        if not result.ok:
            return None
        return result.variables or []

    async def read_memory(self, address: int, length: int) -> Optional[MemoryBlock]:
        result = await self._execute(f"x/{length}xb 0x{address:x}", CommandKind.READ_MEMORY, LogType.HIDE)
        if not result.ok:
            return None
        return result.memory

    async def read_disassembly(self, start: Union[int, str], length: int) -> Optional[List[str]]:
        origin = f"0x{start:x}" if isinstance(start, int) else start
        result = await self._execute(f"disassemble {origin},+{length}", CommandKind.DISASSEMBLE, LogType.HIDE)
        if not result.ok:
            return None
        return result.disassembly or []

    async def custom_command(self, command: str) -> DebugResult:
        return await self._execute(command, CommandKind.CUSTOM, LogType.LOG)


__all__ = ["DebugEngine", "SessionAlreadyRunning"]
