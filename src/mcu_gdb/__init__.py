"""Drive a console-mode GDB for microcontroller debugging."""

from .adapters import SDCCAdapter, ST7Adapter, VendorAdapter, get_adapter
from .config import EngineConfig
from .engine import DebugEngine, SessionAlreadyRunning
from .multiplexer import (
    CommandWriteError,
    FrameMultiplexer,
    GDBEngineError,
    SessionNotRunning,
    SessionTerminated,
)
from .parser import ResponseParser

__version__ = "0.1.0"

__all__ = [
    "CommandWriteError",
    "DebugEngine",
    "EngineConfig",
    "FrameMultiplexer",
    "GDBEngineError",
    "ResponseParser",
    "SDCCAdapter",
    "ST7Adapter",
    "SessionAlreadyRunning",
    "SessionNotRunning",
    "SessionTerminated",
    "VendorAdapter",
    "get_adapter",
]
