"""Typed data exchanged between the multiplexer, the parser and the engine."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

# Sentinel id carried by frames that answer no queued command.
NULL_ID = -1


class RunState(enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class ResultType(enum.Enum):
    DONE = "done"
    FAILED = "failed"


class LogType(enum.Enum):
    LOG = "log"
    WARNING = "warning"
    ERROR = "error"
    HIDE = "hide"


class CommandKind(enum.Enum):
    """Which engine operation issued a command; selects the line grammar."""

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    START_DEBUG = "start_debug"
    INTERRUPT = "interrupt"
    CONTINUE = "continue"
    CONTINUE_BACKGROUND = "continue_background"
    NEXT = "next"
    STEP = "step"
    STEP_OUT = "step_out"
    ADD_BREAKPOINT = "add_breakpoint"
    REMOVE_BREAKPOINTS = "remove_breakpoints"
    STACK_TRACE = "stack_trace"
    LOCAL_VARIABLES = "local_variables"
    VARIABLE_VALUE = "variable_value"
    GLOBAL_VARIABLES = "global_variables"
    REGISTERS = "registers"
    READ_MEMORY = "read_memory"
    DISASSEMBLE = "disassemble"
    CUSTOM = "custom"


RUN_CONTROL_KINDS = frozenset(
    {
        CommandKind.INTERRUPT,
        CommandKind.CONTINUE,
        CommandKind.CONTINUE_BACKGROUND,
        CommandKind.NEXT,
        CommandKind.STEP,
        CommandKind.STEP_OUT,
    }
)


class VariableKind(enum.Enum):
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"
    RAW = "raw"


@dataclass(slots=True)
class Command:
    id: int
    text: str
    kind: CommandKind


@dataclass(slots=True)
class Frame:
    """Lines printed by the debugger between two prompts."""

    lines: List[str]
    id: int = NULL_ID
    elapsed: Optional[float] = None

    @property
    def standalone(self) -> bool:
        return self.id == NULL_ID


@dataclass(slots=True)
class Breakpoint:
    line: int
    file: Optional[str] = None
    condition: Optional[str] = None
    number: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.file,
            "line": self.line,
            "condition": self.condition,
            "number": self.number,
        }


@dataclass(slots=True)
class StopLocation:
    """Where the target halted after a run-control command."""

    file: Optional[str] = None
    line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"file": self.file, "line": self.line}


@dataclass(slots=True)
class Variable:
    """A node of a printed value tree.

    ``ARRAY``/``OBJECT`` nodes hold a list of child variables; every other
    kind holds the value as text.
    """

    name: str
    kind: VariableKind
    value: Union[str, List["Variable"]]

    @property
    def children(self) -> List["Variable"]:
        if isinstance(self.value, list):
            return self.value
        return []

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.value, list):
            value: Any = [child.to_dict() for child in self.value]
        else:
            value = self.value
        return {"name": self.name, "kind": self.kind.value, "value": value}


@dataclass(slots=True)
class VariableDefinition:
    name: str
    declaration: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "declaration": self.declaration}


@dataclass(slots=True)
class StackFrame:
    level: int
    function: str
    address: Optional[str] = None
    file: Optional[str] = None
    file_name: Optional[str] = None
    line: Optional[int] = None
    params: Optional[List[Variable]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "function": self.function,
            "address": self.address,
            "file": self.file,
            "file_name": self.file_name,
            "line": self.line,
            "params": None if self.params is None else [p.to_dict() for p in self.params],
        }


@dataclass(slots=True)
class MemoryBlock:
    address: int
    data: bytearray = field(default_factory=bytearray)

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "data": self.data.hex()}


@dataclass(slots=True)
class DebugResult:
    """Outcome of a single command; check ``result_type`` before the payload."""

    result_type: ResultType = ResultType.DONE
    error: Optional[str] = None
    stop: Optional[StopLocation] = None
    breakpoint: Optional[Breakpoint] = None
    stack: Optional[List[StackFrame]] = None
    variables: Optional[List[Variable]] = None
    definitions: Optional[List[VariableDefinition]] = None
    memory: Optional[MemoryBlock] = None
    disassembly: Optional[List[str]] = None
    lines: Optional[List[str]] = None
    logs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.result_type is ResultType.DONE

    @classmethod
    def failure(cls, message: str) -> "DebugResult":
        return cls(result_type=ResultType.FAILED, error=message)

    def fail(self, message: str) -> None:
        self.result_type = ResultType.FAILED
        self.error = message

    def to_dict(self) -> Dict[str, Any]:
        def dump(items: Optional[List[Any]]) -> Optional[List[Any]]:
            if items is None:
                return None
            return [item.to_dict() for item in items]

        return {
            "result_type": self.result_type.value,
            "error": self.error,
            "stop": self.stop.to_dict() if self.stop else None,
            "breakpoint": self.breakpoint.to_dict() if self.breakpoint else None,
            "stack": dump(self.stack),
            "variables": dump(self.variables),
            "definitions": dump(self.definitions),
            "memory": self.memory.to_dict() if self.memory else None,
            "disassembly": None if self.disassembly is None else list(self.disassembly),
            "lines": None if self.lines is None else list(self.lines),
            "logs": list(self.logs),
        }


@dataclass(slots=True)
class ConnectOptions:
    executable: str
    cpu: str = ""
    interface: str = ""
    port: Optional[str] = None
    custom_commands: List[str] = field(default_factory=list)
    openocd_configs: List[str] = field(default_factory=list)


@dataclass(slots=True)
class LogEvent:
    type: LogType
    message: str


@dataclass(slots=True)
class StopEvent:
    """Asynchronous stop reported while no command was pending."""

    location: StopLocation
    lines: List[str] = field(default_factory=list)


EngineEvent = Union[LogEvent, StopEvent]


__all__ = [
    "NULL_ID",
    "RUN_CONTROL_KINDS",
    "Breakpoint",
    "Command",
    "CommandKind",
    "ConnectOptions",
    "DebugResult",
    "EngineEvent",
    "Frame",
    "LogEvent",
    "LogType",
    "MemoryBlock",
    "ResultType",
    "RunState",
    "StackFrame",
    "StopEvent",
    "StopLocation",
    "Variable",
    "VariableDefinition",
    "VariableKind",
]
