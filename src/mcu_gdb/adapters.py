"""Probe/toolchain specific command templates.

A :class:`VendorAdapter` tells the engine how to attach to, prepare and leave
a target.  Adapters may also run companion processes (an OpenOCD bridge for
the SDCC toolchain) from their ``on_connect``/``on_kill`` hooks; a non-empty
string returned by a hook aborts the operation before the debugger sees any
command.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
import os
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Type

from .models import ConnectOptions
from .process import AsyncioProcessExecutor, AsyncioProcessHandle

_LOGGER = logging.getLogger(__name__)
_OPENOCD_LOGGER = logging.getLogger(__name__ + ".openocd")

_PRINT_SETUP = [
    "set print elements 0",  # full char arrays
    "set width 0",  # no line wrapping
]


class VendorAdapter(abc.ABC):
    """Command sequences and side effects for one probe/toolchain."""

    name: str = ""

    def __init__(self, bin_dir: Optional[str] = None) -> None:
        self._bin_dir = Path(bin_dir) if bin_dir else Path.cwd()

    @abc.abstractmethod
    def exe_path(self) -> str:
        """Path of the debugger executable for this toolchain."""

    @abc.abstractmethod
    def connect_commands(self, options: ConnectOptions) -> List[str]:
        ...

    @abc.abstractmethod
    def disconnect_commands(self) -> List[str]:
        ...

    @abc.abstractmethod
    def start_debug_commands(self, executable: str) -> List[str]:
        ...

    async def on_connect(self, options: ConnectOptions) -> Optional[str]:
        return None

    async def on_kill(self) -> Optional[str]:
        return None


class ST7Adapter(VendorAdapter):
    """STVD gdb talking to an ST-LINK through the ``gdi`` swim target."""

    name = "st7"

    def exe_path(self) -> str:
        return str(self._bin_dir / "st7" / "gdb.exe")

    def _error_log(self) -> Path:
        return Path(self.exe_path()).parent / "swim" / "Error.log"

    async def on_connect(self, options: ConnectOptions) -> Optional[str]:
        log_file = self._error_log()
        if log_file.is_file():
            log_file.write_text("", encoding="utf-8")
        return None

    def connect_commands(self, options: ConnectOptions) -> List[str]:
        port = f"-port {options.port}" if options.port else ""
        interface = options.interface or "stlink3"
        target = f"target gdi -dll swim\\stm_swim.dll -{interface} {port}".rstrip()
        return [
            *_PRINT_SETUP,
            f'file "{options.executable}"',
            target,
            f"mcuname -set {options.cpu}",
        ]

    def disconnect_commands(self) -> List[str]:
        return ["delete", "symbol-file", "target gdi -close"]

    def start_debug_commands(self, executable: str) -> List[str]:
        return ["load", "reset"]


class SDCCAdapter(VendorAdapter):
    """stm8-gdb attached to an OpenOCD bridge on ``localhost:3333``."""

    name = "stm8-sdcc"

    def __init__(
        self,
        bin_dir: Optional[str] = None,
        *,
        openocd_path: Optional[str] = None,
        executor: Optional[AsyncioProcessExecutor] = None,
    ) -> None:
        super().__init__(bin_dir)
        self._openocd_path = openocd_path or os.environ.get("MCU_GDB_OPENOCD", "openocd")
        self._executor = executor or AsyncioProcessExecutor()
        self._bridge: Optional[AsyncioProcessHandle] = None
        self._mirror: Optional[asyncio.Task[None]] = None

    def exe_path(self) -> str:
        return str(self._bin_dir / "sdcc" / "stm8-gdb.exe")

    def openocd_args(self, options: ConnectOptions) -> List[str]:
        args: List[str] = []
        for config in options.openocd_configs:
            args.extend(["-f", config])
        args.extend(["-c", "init", "-c", "reset halt"])
        return args

    async def on_connect(self, options: ConnectOptions) -> Optional[str]:
        if shutil.which(self._openocd_path) is None and not os.path.isfile(self._openocd_path):
            return "Not found openocd !"

        # gdb on Windows wants forward slashes in `file "..."`
        options.executable = options.executable.replace("\\", "/")

        await self._stop_bridge()
        args = self.openocd_args(options)
        _OPENOCD_LOGGER.info("launch openocd: %s %s", self._openocd_path, " ".join(args))
        handle = await self._executor.launch(self._openocd_path, args)
        if handle is None:
            return "launch Openocd failed !"
        self._bridge = handle
        self._mirror = asyncio.create_task(self._mirror_output(handle))
        return None

    async def on_kill(self) -> Optional[str]:
        await self._stop_bridge()
        return None

    def connect_commands(self, options: ConnectOptions) -> List[str]:
        return [
            *_PRINT_SETUP,
            f'file "{options.executable}"',
            "target extended-remote localhost:3333",
        ]

    def disconnect_commands(self) -> List[str]:
        return ["delete", "symbol-file"]

    def start_debug_commands(self, executable: str) -> List[str]:
        return ["load"]

    async def _mirror_output(self, handle: AsyncioProcessHandle) -> None:
        async for chunk in handle.output():
            for line in chunk.splitlines():
                if line.strip():
                    _OPENOCD_LOGGER.info("%s", line)
        _OPENOCD_LOGGER.info("[Exited]: exit code %s", handle.returncode)

    async def _stop_bridge(self) -> None:
        if self._bridge is not None:
            await self._bridge.kill()
            self._bridge = None
        if self._mirror is not None:
            self._mirror.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._mirror
            self._mirror = None


_ADAPTERS: Dict[str, Type[VendorAdapter]] = {
    ST7Adapter.name: ST7Adapter,
    SDCCAdapter.name: SDCCAdapter,
}


def get_adapter(name: str, bin_dir: Optional[str] = None) -> Optional[VendorAdapter]:
    """Instantiate the adapter registered under ``name`` (None if unknown)."""

    adapter_cls = _ADAPTERS.get(name)
    if adapter_cls is None:
        _LOGGER.warning("Unknown gdb adapter: %s", name)
        return None
    return adapter_cls(bin_dir)


__all__ = [
    "SDCCAdapter",
    "ST7Adapter",
    "VendorAdapter",
    "get_adapter",
]
