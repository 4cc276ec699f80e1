"""Decode the debugger's console output into typed results.

The console is not self-describing, so :class:`ResponseParser` is told which
operation produced a frame and applies the matching line grammar from
``GRAMMARS``.  Every line is first checked for a failure marker; lines that no
grammar claims end up in ``DebugResult.logs`` (command echoes, banners,
"No locals." and similar chatter).

The value grammar covers what GDB prints for ``info locals``, ``p <expr>``,
``info registers`` and frame parameters::

    clock = 16 '\\020'
    name = {next = 900, prev = 38399, arr = "\\377\\202r\\a"}
    $1 = {1, 2, 0 <repeats 14 times>}

Aggregates are expanded with an explicit work-list, so deeply nested target
structures cannot exhaust the interpreter stack.
"""

from __future__ import annotations

import logging
import ntpath
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import (
    Breakpoint,
    CommandKind,
    DebugResult,
    MemoryBlock,
    StackFrame,
    StopLocation,
    Variable,
    VariableDefinition,
    VariableKind,
)

_LOGGER = logging.getLogger(__name__)

ERROR_MARKER = "Error:"
NOT_AVAILABLE_MARKERS = (
    "Cannot access memory",
    "No symbol",
    "The program is not being run",
    "The program has no registers now",
    "Not available",
)

ESCAPE_TABLE: Dict[str, int] = {
    "a": 7,
    "b": 8,
    "f": 12,
    "n": 10,
    "r": 13,
    "t": 9,
    "v": 11,
    "\\": 92,
    "'": 39,
    '"': 34,
    "?": 63,
}

# line grammars
_EXPRESSION = re.compile(r"^\s*([\w$]+)\s*=\s*(.+)$")
_MEMBER = re.compile(r"^([\w$]+|\[\d+\]|<[^<>=]+>)\s*=\s*(.+)$", re.S)
_VAR_DEFINE = re.compile(r"(\w+)(?:\[\w*\])*(?:\s*=\s*[^;]+)?;$")
_SOURCE_LINE_PREFIX = re.compile(r"^\d+:\s*")
_REGISTER = re.compile(r"^([\w:?$]+)\s+(0x[0-9a-fA-F]+)\s+\S.*$")
_VALID_STACK = re.compile(r"^#(\d+)\s+(?:(0x[0-9a-fA-F]+) in )?(\S+) \((.*)\) at (.+):(\d+)$")
_ANONYMOUS_STACK = re.compile(r"^#(\d+)\s+(?:(0x[0-9a-fA-F]+) in )?(\S+) \((.*)\)(?: from \S+)?$")
_BREAKPOINT_BANNER = re.compile(r"^Breakpoint \d+ ")
_BREAKPOINT = re.compile(r"^Breakpoint (\d+) [^:]+: file ([^,]+), line (\d+)")
_STOP_LINE = re.compile(r"\S+ at (.+):(\d+)$")
_STOP_SOURCE = re.compile(r"^(?:0x[0-9a-fA-F]+\s+)?(\d+)\s+\S.*;\s*$")
_MEMORY = re.compile(r"^(0x[0-9a-fA-F]+)(?:\s+<[^>]*>)?:\s*((?:0x[0-9a-fA-F]+\s*)+)$")
_DISASSEMBLY_HEADER = re.compile(r"^Dump of assembler code")
_DISASSEMBLY_FOOTER = re.compile(r"^End of assembler dump\.")

# value grammar
_INTEGER = re.compile(r"^(-?(?:0x[0-9a-fA-F]+|\d+))(?: '(?:[^'\\]|\\.)*')?$")
_FLOAT = re.compile(
    r"^-?(?:(?:\d+\.\d+(?:[eE][-+]?\d+)?|\d+[eE][-+]?\d+)[ufldUFLD]?|inf|nan(?:\(0x[0-9a-fA-F]+\))?)$"
)
_REPEATED = re.compile(r"^.+ <repeats \d+ times>$", re.S)
_QUOTED = re.compile(r'^"((?:[^"\\]|\\.)*)"$', re.S)
_ESCAPED = re.compile(r"\\(?:[0-7]{3}|[abfnrtv\\'\"?])")


# ---------------------------------------------------------------------------
# value grammar
# ---------------------------------------------------------------------------


def decode_char_array(body: str) -> List[int]:
    """Decode the inside of a quoted C string into one integer per byte."""

    values: List[int] = []
    index = 0
    length = len(body)
    while index < length:
        char = body[index]
        if char != "\\":
            values.append(ord(char))
            index += 1
            continue
        octal = body[index + 1 : index + 4]
        if len(octal) == 3 and all(c in "01234567" for c in octal):
            values.append(int(octal, 8))
            index += 4
            continue
        if index + 1 >= length:
            raise ValueError(f"Dangling escape in string: {body!r}")
        code = ESCAPE_TABLE.get(body[index + 1])
        if code is None:
            raise ValueError(f"Unknown escape '\\{body[index + 1]}' in string: {body!r}")
        values.append(code)
        index += 2
    return values


def split_aggregate(body: str) -> List[str]:
    """Split the inside of ``{...}`` on top-level commas.

    Braces and commas inside quoted strings or character literals are
    ignored.  Raises :class:`ValueError` on unbalanced input.
    """

    parts: List[str] = []
    depth = 0
    quote: Optional[str] = None
    start = 0
    index = 0
    length = len(body)

    while index < length:
        char = body[index]
        if quote is not None:
            if char == "\\":
                index += 2
                continue
            if char == quote:
                quote = None
        elif char in "\"'":
            quote = char
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth < 0:
                raise ValueError(f"Unbalanced '}}' in aggregate: {body!r}")
        elif char == "," and depth == 0:
            parts.append(body[start:index])
            start = index + 1
        index += 1

    if depth != 0 or quote is not None:
        raise ValueError(f"Unterminated aggregate: {body!r}")

    parts.append(body[start:])
    return [part.strip() for part in parts if part.strip()]


def _is_repeated_aggregate(text: str) -> bool:
    if not (text.startswith("{") and text.endswith("}")):
        return False
    body = text[1:-1]
    return bool(_REPEATED.match(body)) and len(split_aggregate(body)) == 1


def _classify(name: str, text: str) -> Tuple[Variable, Optional[str]]:
    """Classify one printed value.

    Returns the variable plus, for aggregates, the body still to be split.
    """

    match = _INTEGER.match(text)
    if match:
        return Variable(name, VariableKind.INTEGER, match.group(1)), None

    if _FLOAT.match(text):
        return Variable(name, VariableKind.FLOAT, text), None

    # {0 <repeats 12 times>} is kept verbatim, never expanded
    if _REPEATED.match(text) or _is_repeated_aggregate(text):
        return Variable(name, VariableKind.RAW, text), None

    match = _QUOTED.match(text)
    if match:
        body = match.group(1)
        if _ESCAPED.search(body):
            children = [
                Variable(str(index), VariableKind.INTEGER, str(code))
                for index, code in enumerate(decode_char_array(body))
            ]
            return Variable(name, VariableKind.ARRAY, children), None
        return Variable(name, VariableKind.STRING, body), None

    if text.startswith("{") and text.endswith("}"):
        return Variable(name, VariableKind.OBJECT, []), text[1:-1]

    return Variable(name, VariableKind.RAW, text), None


def parse_variable(name: str, text: str) -> Variable:
    """Build the variable tree for ``name = text``."""

    root, body = _classify(name, text.strip())
    pending: List[Tuple[Variable, str]] = []
    if body is not None:
        pending.append((root, body))

    while pending:
        node, body = pending.pop()
        children: List[Variable] = []
        positional = False
        for index, segment in enumerate(split_aggregate(body)):
            member = _MEMBER.match(segment)
            if member:
                child_name, child_text = member.group(1), member.group(2)
            else:
                child_name, child_text = str(index), segment
                positional = True
            child, child_body = _classify(child_name, child_text.strip())
            children.append(child)
            if child_body is not None:
                pending.append((child, child_body))
        node.value = children
        if positional:
            node.kind = VariableKind.ARRAY

    return root


def parse_parameters(params: str) -> Optional[List[Variable]]:
    """Decode a frame's ``(a=1, b=0x20)`` parameter list; None if malformed."""

    if not params.strip():
        return []
    try:
        return parse_variable("params", "{" + params + "}").children
    except ValueError as exc:
        _LOGGER.debug("Could not parse frame parameters %r: %s", params, exc)
        return None


# ---------------------------------------------------------------------------
# line grammars
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Grammar:
    """``match`` turns a line into a partial result; ``merge`` folds it in."""

    match: Callable[[str], Optional[Any]]
    merge: Callable[[DebugResult, Any], None]


def _match_stop(line: str) -> Optional[StopLocation]:
    # ... at c:\stm8_demo\lib\delay\stm8s_delay.c:5
    match = _STOP_LINE.search(line)
    if match:
        return StopLocation(file=match.group(1), line=int(match.group(2)))
    # 43          DelayInit();
    # 0x0086f5	56	    CLK_HSIPrescalerConfig(CLK_PRESCALER_HSIDIV1);
    match = _STOP_SOURCE.match(line)
    if match:
        return StopLocation(file=None, line=int(match.group(1)))
    return None


def _merge_stop(result: DebugResult, location: StopLocation) -> None:
    if location.file is not None or result.stop is None:
        result.stop = location
    elif result.stop.file is None:
        result.stop.line = location.line


def _match_breakpoint(line: str) -> Optional[Breakpoint]:
    if not _BREAKPOINT_BANNER.match(line):
        return None
    match = _BREAKPOINT.match(line)
    if match is None:
        return None
    return Breakpoint(number=int(match.group(1)), file=match.group(2), line=int(match.group(3)))


def _merge_breakpoint(result: DebugResult, breakpoint: Breakpoint) -> None:
    result.breakpoint = breakpoint


def _match_stack(line: str) -> Optional[StackFrame]:
    if not line.startswith("#"):
        return None

    # #1  0x0086b2 in main () at c:\stm8_demo\src\main.c:46
    match = _VALID_STACK.match(line)
    if match:
        level, address, name, params, path, lineno = match.groups()
        return StackFrame(
            level=int(level),
            function=f"{name} ({params})",
            address=address,
            file=path,
            file_name=ntpath.basename(path),
            line=int(lineno),
            params=parse_parameters(params),
        )

    # #2  0x008719 in .near_func.text_4 ()
    match = _ANONYMOUS_STACK.match(line)
    if match:
        level, address, name, params = match.groups()
        return StackFrame(
            level=int(level),
            function=f"{name} ({params})",
            address=address,
            params=parse_parameters(params),
        )
    return None


def _merge_stack(result: DebugResult, frame: StackFrame) -> None:
    if result.stack is None:
        result.stack = []
    result.stack.append(frame)


def _match_expression(line: str) -> Optional[Variable]:
    match = _EXPRESSION.match(line)
    if match is None:
        return None
    return parse_variable(match.group(1), match.group(2))


def _merge_variable(result: DebugResult, variable: Variable) -> None:
    if result.variables is None:
        result.variables = []
    result.variables.append(variable)


def _match_definition(line: str) -> Optional[VariableDefinition]:
    # uint8_t HSIDivFactor[4];
    match = _VAR_DEFINE.search(line)
    if match is None:
        return None
    declaration = _SOURCE_LINE_PREFIX.sub("", line.strip())
    return VariableDefinition(name=match.group(1), declaration=declaration)


def _merge_definition(result: DebugResult, definition: VariableDefinition) -> None:
    if result.definitions is None:
        result.definitions = []
    result.definitions.append(definition)


def _match_register(line: str) -> Optional[Variable]:
    # PC             0x6000   24576
    match = _REGISTER.match(line)
    if match is None:
        return None
    return Variable(match.group(1), VariableKind.INTEGER, match.group(2))


def _match_memory(line: str) -> Optional[Tuple[int, bytes]]:
    # 0x8000 <main>:	0x35	0x00	0x50	0xc6
    match = _MEMORY.match(line)
    if match is None:
        return None
    data = bytes(int(value, 16) for value in match.group(2).split())
    return int(match.group(1), 16), data


def _merge_memory(result: DebugResult, chunk: Tuple[int, bytes]) -> None:
    address, data = chunk
    if result.memory is None:
        result.memory = MemoryBlock(address=address)
    result.memory.data.extend(data)


def _match_disassembly(line: str) -> Optional[str]:
    if _DISASSEMBLY_HEADER.match(line) or _DISASSEMBLY_FOOTER.match(line):
        return None
    return line


def _merge_disassembly(result: DebugResult, line: str) -> None:
    if result.disassembly is None:
        result.disassembly = []
    result.disassembly.append(line)


def _merge_custom(result: DebugResult, line: str) -> None:
    if result.lines is None:
        result.lines = []
    result.lines.append(line)


_STOP_GRAMMAR = Grammar(_match_stop, _merge_stop)
_VARIABLE_GRAMMAR = Grammar(_match_expression, _merge_variable)

GRAMMARS: Dict[CommandKind, Grammar] = {
    CommandKind.INTERRUPT: _STOP_GRAMMAR,
    CommandKind.CONTINUE: _STOP_GRAMMAR,
    CommandKind.CONTINUE_BACKGROUND: _STOP_GRAMMAR,
    CommandKind.NEXT: _STOP_GRAMMAR,
    CommandKind.STEP: _STOP_GRAMMAR,
    CommandKind.STEP_OUT: _STOP_GRAMMAR,
    CommandKind.ADD_BREAKPOINT: Grammar(_match_breakpoint, _merge_breakpoint),
    CommandKind.STACK_TRACE: Grammar(_match_stack, _merge_stack),
    CommandKind.LOCAL_VARIABLES: _VARIABLE_GRAMMAR,
    CommandKind.VARIABLE_VALUE: _VARIABLE_GRAMMAR,
    CommandKind.GLOBAL_VARIABLES: Grammar(_match_definition, _merge_definition),
    CommandKind.REGISTERS: Grammar(_match_register, _merge_variable),
    CommandKind.READ_MEMORY: Grammar(_match_memory, _merge_memory),
    CommandKind.DISASSEMBLE: Grammar(_match_disassembly, _merge_disassembly),
    CommandKind.CUSTOM: Grammar(lambda line: line, _merge_custom),
}


def failure_message(line: str) -> Optional[str]:
    """Return the error text if ``line`` reports a failed command."""

    if line.startswith(ERROR_MARKER):
        return line[len(ERROR_MARKER) :].strip()
    for marker in NOT_AVAILABLE_MARKERS:
        if line.startswith(marker):
            return line.strip()
    return None


class ResponseParser:
    """Stateless translation of one frame into a :class:`DebugResult`.

    Raises :class:`ValueError` on malformed values; the engine turns that
    into a failed result at the command boundary.
    """

    def __init__(self, grammars: Optional[Dict[CommandKind, Grammar]] = None) -> None:
        self._grammars = dict(GRAMMARS if grammars is None else grammars)

    def parse(self, kind: CommandKind, lines: List[str]) -> DebugResult:
        result = DebugResult()
        grammar = self._grammars.get(kind)
        keep_blank = kind is CommandKind.CUSTOM

        for raw_line in lines:
            line = raw_line.rstrip()
            if not line and not keep_blank:
                continue

            if not result.ok:
                result.logs.append(line)
                continue

            message = failure_message(line)
            if message is not None:
                result.fail(message)
                continue

            partial = grammar.match(line) if grammar is not None else None
            if partial is None:
                result.logs.append(line)
            else:
                grammar.merge(result, partial)

        return result


__all__ = [
    "ERROR_MARKER",
    "ESCAPE_TABLE",
    "GRAMMARS",
    "Grammar",
    "NOT_AVAILABLE_MARKERS",
    "ResponseParser",
    "decode_char_array",
    "failure_message",
    "parse_parameters",
    "parse_variable",
    "split_aggregate",
]
