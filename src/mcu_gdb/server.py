"""Model Context Protocol (MCP) server that exposes a microcontroller debug session."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional, Union

from typing_extensions import Literal

from mcp.server.fastmcp import FastMCP

from .adapters import get_adapter
from .config import EngineConfig
from .engine import DebugEngine, SessionAlreadyRunning
from .models import Breakpoint, ConnectOptions, DebugResult, StopLocation
from .multiplexer import GDBEngineError

_LOGGER = logging.getLogger(__name__)

_CONFIG = EngineConfig.from_env()
logging.basicConfig(level=_CONFIG.log_level)

server = FastMCP(
    name="mcu-gdb",
    instructions="Debug a microcontroller target through a console-mode GDB.",
    dependencies=["gdb"],
)

_ENGINE: Optional[DebugEngine] = None

_IDLE_CHECK_INTERVAL = 5.0

_last_activity = time.monotonic()
_idle_monitor_task: Optional[asyncio.Task[None]] = None


def _engine() -> DebugEngine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = DebugEngine(get_adapter(_CONFIG.adapter, _CONFIG.bin_dir), config=_CONFIG)
    return _ENGINE


def _ensure_running() -> DebugEngine:
    engine = _engine()
    if not engine.is_running():
        raise RuntimeError("GDB session is not running. Call start_session first.")
    return engine


def _stop_payload(location: Optional[StopLocation]) -> Dict[str, object]:
    engine = _engine()
    return {
        "stopped": location is not None,
        "location": location.to_dict() if location else None,
        "run_state": engine.run_state.value,
        "elapsed": engine.last_command_elapsed,
    }


def _result_to_payload(result: DebugResult) -> Dict[str, object]:
    payload = result.to_dict()
    payload["elapsed"] = _engine().last_command_elapsed
    return payload


def _touch_activity() -> None:
    global _last_activity
    _last_activity = time.monotonic()
    if _engine().is_running():
        _ensure_idle_monitor()


def _ensure_idle_monitor() -> None:
    if _CONFIG.idle_timeout <= 0:
        return

    global _idle_monitor_task
    if _idle_monitor_task is None or _idle_monitor_task.done():
        _idle_monitor_task = asyncio.create_task(_idle_monitor_loop())


async def _idle_monitor_loop() -> None:
    if _CONFIG.idle_timeout <= 0:
        return

    global _idle_monitor_task

    try:
        while True:
            interval = max(1.0, min(_IDLE_CHECK_INTERVAL, _CONFIG.idle_timeout / 3))
            await asyncio.sleep(interval)

            engine = _engine()
            if not engine.is_running():
                continue

            idle_duration = time.monotonic() - _last_activity
            if idle_duration >= _CONFIG.idle_timeout:
                _LOGGER.info(
                    "Debug session idle for %.1fs (threshold %.1fs); stopping session",
                    idle_duration,
                    _CONFIG.idle_timeout,
                )
                await engine.kill()
    except asyncio.CancelledError:  # pragma: no cover - task cancelled on shutdown
        pass
    finally:
        _idle_monitor_task = None


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


@server.tool()
async def start_session(
    executable: Optional[str] = None,
    gdb_args: Optional[List[str]] = None,
    cwd: Optional[str] = None,
) -> Dict[str, object]:
    """Start the debugger (the adapter's gdb unless ``executable`` is given)."""

    try:
        error = await _engine().start(executable, gdb_args, cwd=cwd)
    except SessionAlreadyRunning as exc:
        raise RuntimeError(str(exc))
    if error:
        raise RuntimeError(error)

    _touch_activity()
    adapter = _engine().adapter
    return {"started": True, "adapter": adapter.name if adapter else None}


@server.tool()
async def stop_session() -> Dict[str, object]:
    """Kill the active debugger (if running)."""

    _touch_activity()
    engine = _engine()
    if not engine.is_running():
        return {"stopped": False, "reason": "session-not-running"}

    await engine.kill()
    return {"stopped": True}


@server.tool()
async def session_status() -> Dict[str, object]:
    """Return high-level information about the current session."""

    _touch_activity()
    engine = _engine()
    status: Dict[str, object] = {"running": engine.is_running()}
    if engine.is_running():
        status["run_state"] = engine.run_state.value
        status["last_command"] = engine.last_command
        status["last_command_elapsed"] = engine.last_command_elapsed
    return status


# ---------------------------------------------------------------------------
# Target
# ---------------------------------------------------------------------------


@server.tool()
async def connect_target(
    executable: str,
    cpu: str = "",
    interface: str = "",
    port: Optional[str] = None,
    custom_commands: Optional[List[str]] = None,
    openocd_configs: Optional[List[str]] = None,
    other_commands: Optional[List[str]] = None,
) -> Dict[str, object]:
    """Load symbols from ``executable`` and attach to the probe."""

    _touch_activity()
    engine = _ensure_running()
    options = ConnectOptions(
        executable=executable,
        cpu=cpu,
        interface=interface,
        port=port,
        custom_commands=list(custom_commands or []),
        openocd_configs=list(openocd_configs or []),
    )
    try:
        connected = await engine.connect(options, other_commands)
    except GDBEngineError as exc:
        raise RuntimeError(str(exc))
    return {"connected": connected}


@server.tool()
async def disconnect_target() -> Dict[str, object]:
    """Drop breakpoints and symbols and detach from the probe."""

    _touch_activity()
    engine = _ensure_running()
    try:
        disconnected = await engine.disconnect()
    except GDBEngineError as exc:
        raise RuntimeError(str(exc))
    return {"disconnected": disconnected}


@server.tool()
async def launch_program(executable: str, extra_commands: Optional[List[str]] = None) -> Dict[str, object]:
    """Flash the program and reset the target."""

    _touch_activity()
    engine = _ensure_running()
    try:
        launched = await engine.launch(executable, extra_commands)
    except GDBEngineError as exc:
        raise RuntimeError(str(exc))
    return {"launched": launched}


# ---------------------------------------------------------------------------
# Execution control (CONSOLIDATED)
# ---------------------------------------------------------------------------


@server.tool()
async def execution_control(
    action: Literal["continue", "continue_background", "next", "step", "step_out", "interrupt"],
    instruction: bool = False,
) -> Dict[str, object]:
    """Unified run control.

    Args:
        action: Run-control operation to perform
        instruction: Step by machine instruction (``next``/``step`` only)
    """

    _touch_activity()
    engine = _ensure_running()

    if action == "continue":
        location = await engine.continue_()
    elif action == "continue_background":
        location = await engine.continue_(background=True)
    elif action == "next":
        location = await engine.next(instruction)
    elif action == "step":
        location = await engine.step(instruction)
    elif action == "step_out":
        location = await engine.step_out()
    elif action == "interrupt":
        location = await engine.interrupt()
    else:
        raise ValueError(f"Unknown action: {action}")

    _touch_activity()
    return _stop_payload(location)


@server.tool()
async def wait_for_stop(timeout: Optional[float] = None) -> Dict[str, object]:
    """Wait for a stop after ``continue_background``."""

    _touch_activity()
    engine = _ensure_running()
    location = await engine.wait_for_stop(timeout)
    _touch_activity()
    return _stop_payload(location)


@server.tool()
async def set_breakpoints(
    file: str,
    lines: List[int],
    conditions: Optional[Dict[str, str]] = None,
) -> Dict[str, object]:
    """Replace every breakpoint in ``file``.

    Args:
        file: Source file as the debugger knows it
        lines: Line numbers to break on; an empty list clears the file
        conditions: Optional ``{"<line>": "<expression>"}`` map
    """

    _touch_activity()
    engine = _ensure_running()
    conditions = conditions or {}
    requested = [Breakpoint(line=line, file=file, condition=conditions.get(str(line))) for line in lines]
    confirmed = await engine.set_breakpoints(file, requested)
    return {"file": file, "breakpoints": [bp.to_dict() for bp in confirmed]}


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------


@server.tool()
async def stack_trace() -> Dict[str, object]:
    """Return the current call stack."""

    _touch_activity()
    frames = await _ensure_running().get_stack()
    return {"frames": [frame.to_dict() for frame in frames]}


@server.tool()
async def local_variables() -> Dict[str, object]:
    """Return the locals of the selected frame."""

    _touch_activity()
    variables = await _ensure_running().get_local_variables()
    if variables is None:
        return {"success": False, "variables": []}
    return {"success": True, "variables": [variable.to_dict() for variable in variables]}


@server.tool()
async def evaluate(expression: str) -> Dict[str, object]:
    """Print the value of an expression."""

    _touch_activity()
    variable = await _ensure_running().get_variable_value(expression)
    return {"expression": expression, "value": variable.to_dict() if variable else None}


@server.tool()
async def global_variables() -> Dict[str, object]:
    """List global variable declarations."""

    _touch_activity()
    definitions = await _ensure_running().get_global_variables()
    if definitions is None:
        return {"success": False, "definitions": []}
    return {"success": True, "definitions": [definition.to_dict() for definition in definitions]}


@server.tool()
async def registers() -> Dict[str, object]:
    """Return the CPU registers."""

    _touch_activity()
    variables = await _ensure_running().get_register_variables()
    if variables is None:
        return {"success": False, "registers": []}
    return {"success": True, "registers": [variable.to_dict() for variable in variables]}


@server.tool()
async def read_memory(address: int, length: int) -> Dict[str, object]:
    """Read ``length`` bytes starting at ``address``."""

    _touch_activity()
    if length <= 0:
        raise ValueError("length must be positive")
    block = await _ensure_running().read_memory(address, length)
    return {"success": block is not None, "memory": block.to_dict() if block else None}


@server.tool()
async def disassemble(start: str, length: int) -> Dict[str, object]:
    """Disassemble ``length`` bytes from ``start`` (address or symbol)."""

    _touch_activity()
    origin: Union[int, str] = start
    if start.lower().startswith("0x"):
        origin = int(start, 16)
    lines = await _ensure_running().read_disassembly(origin, length)
    return {"success": lines is not None, "lines": lines or []}


@server.tool()
async def run_command(command: str) -> Dict[str, object]:
    """Execute a raw console command and return its output lines."""

    _touch_activity()
    result = await _ensure_running().custom_command(command)
    return _result_to_payload(result)


def main() -> None:
    """CLI entrypoint (``mcu-gdb-mcp``)."""

    server.run()


if __name__ == "__main__":  # pragma: no cover - module entrypoint
    main()
