import asyncio
import sys

import pytest

from mcu_gdb.models import Command, CommandKind
from mcu_gdb.multiplexer import FrameMultiplexer
from mcu_gdb.process import AsyncioProcessExecutor, LaunchStrategy

ECHO_DEBUGGER = r"""
import sys
sys.stdout.write("echo debugger\n(gdb) ")
sys.stdout.flush()
for line in sys.stdin:
    command = line.strip()
    sys.stdout.write("ok " + command + "\n(gdb) ")
    sys.stdout.flush()
"""


@pytest.mark.parametrize("strategy", [LaunchStrategy.EXEC, LaunchStrategy.SHELL])
async def test_frames_from_real_process(strategy):
    executor = AsyncioProcessExecutor(strategy, launch_delay=0.1)
    handle = await executor.launch(sys.executable, ["-c", ECHO_DEBUGGER])
    assert handle is not None and handle.is_alive()

    mux = FrameMultiplexer(handle)
    mux.start()
    banner = await asyncio.wait_for(mux.standalone.get(), 5)
    assert banner.lines == ["echo debugger"]

    futures = [
        mux.enqueue_write(Command(id=i, text=text, kind=CommandKind.CUSTOM))
        for i, text in enumerate(["info frame", "bt"])
    ]
    frames = await asyncio.wait_for(asyncio.gather(*futures), 5)
    assert [frame.lines for frame in frames] == [["ok info frame"], ["ok bt"]]

    await mux.kill()
    assert not handle.is_alive()


async def test_launch_of_missing_executable():
    executor = AsyncioProcessExecutor(launch_delay=0)
    assert await executor.launch("/nonexistent/stm8-gdb") is None


async def test_process_dying_on_startup():
    executor = AsyncioProcessExecutor(launch_delay=0.3)
    assert await executor.launch(sys.executable, ["-c", "raise SystemExit(3)"]) is None
