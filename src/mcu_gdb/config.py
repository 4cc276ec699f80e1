"""Environment driven configuration for the debug engine and its MCP server."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

_LOGGER = logging.getLogger(__name__)

_ENV_PREFIX = "MCU_GDB_"
_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(slots=True)
class EngineConfig:
    """Settings shared by :class:`~mcu_gdb.engine.DebugEngine` and the server.

    ``command_timeout`` bounds query commands (breakpoints, stack, variables,
    memory...).  ``run_timeout`` bounds blocking run control (continue, step, next,
    finish); it defaults to ``None`` because a blocking ``continue``
    legitimately waits until the target hits a breakpoint.  ``interrupt`` is
    answered at once, so it uses ``command_timeout``.
    """

    gdb_path: Optional[str] = None
    prompt: str = "(gdb)"
    command_timeout: Optional[float] = 15.0
    run_timeout: Optional[float] = None
    launch_delay: float = 0.5
    interrupt_signal: str = "SIGINT"
    verbose: bool = False
    bin_dir: Optional[str] = None
    adapter: str = "st7"
    log_level: str = "INFO"
    idle_timeout: float = 90.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        source = os.environ if env is None else env
        defaults = cls()

        def get(name: str) -> Optional[str]:
            value = source.get(_ENV_PREFIX + name)
            if value is None or not value.strip():
                return None
            return value.strip()

        return cls(
            gdb_path=get("PATH") or defaults.gdb_path,
            prompt=source.get(_ENV_PREFIX + "PROMPT") or defaults.prompt,
            command_timeout=_timeout(get("COMMAND_TIMEOUT"), defaults.command_timeout, "COMMAND_TIMEOUT"),
            run_timeout=_timeout(get("RUN_TIMEOUT"), defaults.run_timeout, "RUN_TIMEOUT"),
            launch_delay=_float(get("LAUNCH_DELAY"), defaults.launch_delay, "LAUNCH_DELAY"),
            interrupt_signal=get("INTERRUPT_SIGNAL") or defaults.interrupt_signal,
            verbose=(get("VERBOSE") or "").lower() in _TRUE_VALUES,
            bin_dir=get("BIN_DIR") or defaults.bin_dir,
            adapter=get("ADAPTER") or defaults.adapter,
            log_level=(get("LOGLEVEL") or defaults.log_level).upper(),
            idle_timeout=_float(get("IDLE_TIMEOUT"), defaults.idle_timeout, "IDLE_TIMEOUT"),
        )


def _float(raw: Optional[str], default: float, name: str) -> float:
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        _LOGGER.warning("Ignoring invalid %s%s=%r; using %s", _ENV_PREFIX, name, raw, default)
        return default


def _timeout(raw: Optional[str], default: Optional[float], name: str) -> Optional[float]:
    # 0 or a negative value means "wait forever"
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        _LOGGER.warning("Ignoring invalid %s%s=%r; using %s", _ENV_PREFIX, name, raw, default)
        return default
    return value if value > 0 else None


__all__ = ["EngineConfig"]
