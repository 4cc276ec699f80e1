"""Scripted stand-in for the debugger subprocess."""

import asyncio
import dataclasses
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import pytest

from mcu_gdb.config import EngineConfig
from mcu_gdb.engine import DebugEngine

PROMPT = "(gdb)"
BANNER = ["GNU gdb (GDB) 7.12", "This GDB was configured as \"--target=stm8-none-elf32\"."]


@dataclass
class Reply:
    """Lines printed for one command; ``respond=False`` never prints a prompt."""

    lines: List[str] = field(default_factory=list)
    delay: float = 0.0
    respond: bool = True


ReplyScript = Union[Reply, Sequence[str]]


class FakeHandle:
    """:class:`~mcu_gdb.process.ProcessHandle` that answers from a script.

    Unknown commands get an empty frame (a bare prompt).
    """

    def __init__(
        self,
        replies: Optional[Dict[str, ReplyScript]] = None,
        *,
        signal_replies: Optional[Dict[str, ReplyScript]] = None,
        banner: Optional[List[str]] = BANNER,
        fail_writes: Sequence[str] = (),
        fail_signals: bool = False,
    ) -> None:
        self.replies = dict(replies or {})
        self.signal_replies = dict(signal_replies or {})
        self.fail_writes = set(fail_writes)
        self.fail_signals = fail_signals
        self.writes: List[str] = []
        self.signals: List[str] = []
        self.returncode: Optional[int] = None
        self._chunks: asyncio.Queue = asyncio.Queue()
        if banner is not None:
            self.push(banner)

    # ProcessHandle -----------------------------------------------------
    async def output(self):
        while True:
            chunk = await self._chunks.get()
            if chunk is None:
                return
            yield chunk

    async def write(self, data: str) -> None:
        text = data.rstrip("\r\n")
        if text in self.fail_writes:
            raise BrokenPipeError(f"cannot write {text!r}")
        self.writes.append(text)
        self._answer(self.replies.get(text, Reply()))

    def signal(self, name: str) -> None:
        if self.fail_signals:
            raise ProcessLookupError("process is not running")
        self.signals.append(name)
        self._answer(self.signal_replies.get(name, Reply()))

    async def kill(self) -> None:
        self.close(-9)

    def is_alive(self) -> bool:
        return self.returncode is None

    # scripting -----------------------------------------------------------
    def push(self, lines: Sequence[str]) -> None:
        """Print ``lines`` followed by the prompt, as if the target stopped."""

        text = "".join(f"{line}\n" for line in lines)
        self._chunks.put_nowait(text + PROMPT + " ")

    def close(self, returncode: int = 0) -> None:
        if self.returncode is None:
            self.returncode = returncode
            self._chunks.put_nowait(None)

    def _answer(self, script: ReplyScript) -> None:
        reply = script if isinstance(script, Reply) else Reply(list(script))
        if not reply.respond:
            return
        if reply.delay:
            asyncio.get_running_loop().call_later(reply.delay, self.push, reply.lines)
        else:
            self.push(reply.lines)


class FakeExecutor:
    def __init__(self, handle: Optional[FakeHandle]) -> None:
        self.handle = handle
        self.launches: List[tuple] = []

    async def launch(self, path, args=None, *, cwd=None, env=None):
        self.launches.append((path, list(args or []), cwd))
        return self.handle


@pytest.fixture
def config():
    return EngineConfig(gdb_path="gdb", command_timeout=1.0, launch_delay=0)


@pytest.fixture
async def make_engine(config):
    """Build a started engine around a scripted handle."""

    engines: List[DebugEngine] = []

    async def factory(handle: FakeHandle, adapter=None, **overrides) -> DebugEngine:
        engine = DebugEngine(
            adapter,
            config=dataclasses.replace(config, **overrides),
            executor=FakeExecutor(handle),
        )
        error = await engine.start()
        assert error is None
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        await engine.kill()
