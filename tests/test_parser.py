import pytest

from mcu_gdb.models import CommandKind, ResultType, VariableKind
from mcu_gdb.parser import (
    ResponseParser,
    decode_char_array,
    failure_message,
    parse_parameters,
    parse_variable,
    split_aggregate,
)


@pytest.fixture
def parser():
    return ResponseParser()


# =============================================================================
# Value grammar
# =============================================================================


def test_char_value_is_integer():
    variable = parse_variable("clock", "16 '\\020'")
    assert variable.kind is VariableKind.INTEGER
    assert variable.value == "16"


def test_hex_and_negative_integers():
    assert parse_variable("a", "0x1f").value == "0x1f"
    assert parse_variable("b", "-12").kind is VariableKind.INTEGER


@pytest.mark.parametrize(
    "text", ["3.5", "-0.25", "1.5e-3", "2.0f", "1e+10", "inf", "-inf", "nan(0x400000)", "-nan(0xc00000)"]
)
def test_floats(text):
    assert parse_variable("f", text).kind is VariableKind.FLOAT


def test_plain_string():
    variable = parse_variable("msg", '"hello world"')
    assert variable.kind is VariableKind.STRING
    assert variable.value == "hello world"


def test_escaped_string_becomes_byte_array():
    variable = parse_variable("arr", '"\\377\\202r\\a"')

    assert variable.kind is VariableKind.ARRAY
    assert [child.value for child in variable.children] == ["255", "130", "114", "7"]
    assert [child.name for child in variable.children] == ["0", "1", "2", "3"]
    assert all(child.kind is VariableKind.INTEGER for child in variable.children)


def test_nested_aggregate():
    variable = parse_variable("name", '{next = 900, prev = 38399, arr = "\\377\\202r\\a", pos = {x = 1, y = 2}}')

    assert variable.kind is VariableKind.OBJECT
    by_name = {child.name: child for child in variable.children}
    assert list(by_name) == ["next", "prev", "arr", "pos"]
    assert by_name["next"].value == "900"
    assert by_name["arr"].kind is VariableKind.ARRAY
    assert by_name["pos"].kind is VariableKind.OBJECT
    assert [(c.name, c.value) for c in by_name["pos"].children] == [("x", "1"), ("y", "2")]


def test_positional_members_make_an_array():
    variable = parse_variable("buf", "{1, 2, {3, 4}}")

    assert variable.kind is VariableKind.ARRAY
    assert [child.name for child in variable.children] == ["0", "1", "2"]
    inner = variable.children[2]
    assert inner.kind is VariableKind.ARRAY
    assert [child.value for child in inner.children] == ["3", "4"]


def test_repeats_are_kept_verbatim():
    variable = parse_variable("zeros", "{0 <repeats 16 times>}")
    assert variable.kind is VariableKind.RAW
    assert variable.value == "{0 <repeats 16 times>}"

    mixed = parse_variable("buf", "{1, 2, 0 <repeats 14 times>}")
    assert mixed.kind is VariableKind.ARRAY
    assert mixed.children[2].kind is VariableKind.RAW
    assert mixed.children[2].value == "0 <repeats 14 times>"


def test_unknown_value_is_raw():
    variable = parse_variable("fn", "{void (void)} 0x8080 <main>")
    assert variable.kind is VariableKind.RAW


def test_deep_nesting_does_not_recurse():
    depth = 1500
    variable = parse_variable("deep", "{" * depth + "1" + "}" * depth)

    for _ in range(depth - 1):
        variable = variable.children[0]
    assert variable.children[0].value == "1"


def test_split_ignores_commas_in_strings():
    assert split_aggregate('a = "x, {y}", b = \',\'') == ['a = "x, {y}"', "b = ','"]


@pytest.mark.parametrize("body", ["a = {1, 2", "a = 1}", 'a = "open'])
def test_split_rejects_unbalanced(body):
    with pytest.raises(ValueError):
        split_aggregate(body)


def test_decode_char_array_escapes():
    assert decode_char_array("A\\n\\t\\\\\\\"") == [65, 10, 9, 92, 34]
    with pytest.raises(ValueError):
        decode_char_array("abc\\")
    with pytest.raises(ValueError):
        decode_char_array("\\q")


def test_parameters():
    params = parse_parameters("ms=464, flag=0 '\\000'")
    assert [(p.name, p.value) for p in params] == [("ms", "464"), ("flag", "0")]
    assert parse_parameters("") == []
    assert parse_parameters("a={1, 2") is None


# =============================================================================
# Line grammars
# =============================================================================


def test_failure_markers():
    assert failure_message("Error: target not halted") == "target not halted"
    assert failure_message('No symbol "foo" in current context.') == 'No symbol "foo" in current context.'
    assert failure_message("Breakpoint 1 at 0x8000") is None


def test_failure_stops_decoding(parser):
    result = parser.parse(
        CommandKind.LOCAL_VARIABLES,
        ["No symbol table is loaded.  Use the \"file\" command.", "x = 1"],
    )
    assert result.result_type is ResultType.FAILED
    assert result.error.startswith("No symbol table is loaded")
    assert result.variables is None
    assert result.logs == ["x = 1"]


def test_error_prefix(parser):
    result = parser.parse(CommandKind.CONNECT, ["Error: cannot open swim\\stm_swim.dll"])
    assert not result.ok
    assert result.error == "cannot open swim\\stm_swim.dll"


def test_stop_from_breakpoint_hit(parser):
    result = parser.parse(
        CommandKind.CONTINUE,
        [
            "Continuing.",
            "",
            "Breakpoint 1, main () at c:\\stm8_demo\\src\\main.c:46",
            "46\t  DelayInit();",
        ],
    )
    assert result.ok
    assert result.stop.file == "c:\\stm8_demo\\src\\main.c"
    assert result.stop.line == 46
    assert result.logs == ["Continuing."]


def test_stop_from_source_echo(parser):
    result = parser.parse(CommandKind.NEXT, ["0x0086f5\t56\t    CLK_HSIPrescalerConfig(CLK_PRESCALER_HSIDIV1);"])
    assert result.stop.file is None
    assert result.stop.line == 56


def test_stop_after_interrupt(parser):
    result = parser.parse(
        CommandKind.INTERRUPT,
        [
            "Program received signal SIGINT, Interrupt.",
            "DelayMs (ms=464) at c:\\stm8_demo\\lib\\delay\\stm8s_delay.c:31",
            "31\t  while (ms--) {",
        ],
    )
    assert result.stop.file == "c:\\stm8_demo\\lib\\delay\\stm8s_delay.c"
    assert result.stop.line == 31


def test_breakpoint_confirmation(parser):
    result = parser.parse(CommandKind.ADD_BREAKPOINT, ["Breakpoint 3 at 0x8082: file main.c, line 12."])
    assert result.breakpoint.number == 3
    assert result.breakpoint.file == "main.c"
    assert result.breakpoint.line == 12


def test_unconfirmed_breakpoint(parser):
    result = parser.parse(
        CommandKind.ADD_BREAKPOINT,
        ["No source file named foo.c.", "Make breakpoint pending on future shared library load? (y or [n]) [answered N; input not from terminal]"],
    )
    assert result.ok
    assert result.breakpoint is None


def test_stack_trace(parser):
    result = parser.parse(
        CommandKind.STACK_TRACE,
        [
            "#0  DelayMs (ms=464) at c:\\stm8_demo\\lib\\delay\\stm8s_delay.c:31",
            "#1  0x0086b2 in main () at c:\\stm8_demo\\src\\main.c:46",
            "#2  0x008719 in .near_func.text_4 ()",
        ],
    )
    first, second, third = result.stack

    assert first.level == 0
    assert first.function == "DelayMs (ms=464)"
    assert first.file_name == "stm8s_delay.c"
    assert first.line == 31
    assert [(p.name, p.value) for p in first.params] == [("ms", "464")]

    assert second.address == "0x0086b2"
    assert second.file_name == "main.c"
    assert second.params == []

    assert third.file is None
    assert third.line is None
    assert third.function == ".near_func.text_4 ()"


def test_local_variables(parser):
    result = parser.parse(
        CommandKind.LOCAL_VARIABLES,
        ["clock = 16 '\\020'", "name = {next = 900, prev = 38399}"],
    )
    assert [v.name for v in result.variables] == ["clock", "name"]
    assert result.variables[1].kind is VariableKind.OBJECT


def test_no_locals(parser):
    result = parser.parse(CommandKind.LOCAL_VARIABLES, ["No locals."])
    assert result.ok
    assert result.variables is None
    assert result.logs == ["No locals."]


def test_global_definitions(parser):
    result = parser.parse(
        CommandKind.GLOBAL_VARIABLES,
        [
            "All defined variables:",
            "",
            "File main.c:",
            "12:\tuint8_t HSIDivFactor[4];",
            "static volatile uint16_t ticks;",
        ],
    )
    assert [(d.name, d.declaration) for d in result.definitions] == [
        ("HSIDivFactor", "uint8_t HSIDivFactor[4];"),
        ("ticks", "static volatile uint16_t ticks;"),
    ]


def test_registers(parser):
    result = parser.parse(
        CommandKind.REGISTERS,
        ["PC             0x86b2   0x86b2 <main+12>", "A              0x1      1"],
    )
    assert [(v.name, v.value) for v in result.variables] == [("PC", "0x86b2"), ("A", "0x1")]


def test_memory(parser):
    result = parser.parse(
        CommandKind.READ_MEMORY,
        ["0x8000 <main>:\t0x35\t0x00\t0x50\t0xc6", "0x8004 <main+4>:\t0x01\t0xff"],
    )
    assert result.memory.address == 0x8000
    assert bytes(result.memory.data) == b"\x35\x00\x50\xc6\x01\xff"


def test_disassembly(parser):
    result = parser.parse(
        CommandKind.DISASSEMBLE,
        [
            "Dump of assembler code from 0x8000 to 0x8004:",
            "   0x008000 <main+0>:\tmov 0x50c6,#0x00",
            "   0x008003 <main+3>:\tret",
            "End of assembler dump.",
        ],
    )
    assert result.disassembly == ["   0x008000 <main+0>:\tmov 0x50c6,#0x00", "   0x008003 <main+3>:\tret"]


def test_custom_keeps_blank_lines(parser):
    result = parser.parse(CommandKind.CUSTOM, ["a", "", "b"])
    assert result.lines == ["a", "", "b"]


def test_kinds_without_grammar_log_everything(parser):
    result = parser.parse(CommandKind.START_DEBUG, ["Loading section .text, size 0x120 lma 0x8080"])
    assert result.ok
    assert result.logs == ["Loading section .text, size 0x120 lma 0x8080"]


# =============================================================================
# Reference cases
# =============================================================================


def test_octal_and_backslash_escapes():
    assert decode_char_array("\\020") == [16]
    assert decode_char_array("\\\\") == [92]


def test_compact_nested_aggregate(parser):
    result = parser.parse(CommandKind.VARIABLE_VALUE, ["a={b=1,c={d=2}}"])
    (a,) = result.variables

    assert (a.name, a.kind) == ("a", VariableKind.OBJECT)
    b, c = a.children
    assert (b.name, b.kind, b.value) == ("b", VariableKind.INTEGER, "1")
    assert (c.name, c.kind) == ("c", VariableKind.OBJECT)
    assert [(d.name, d.kind, d.value) for d in c.children] == [("d", VariableKind.INTEGER, "2")]


def test_compact_positional_aggregate():
    variable = parse_variable("v", "{1,2,3}")
    assert variable.kind is VariableKind.ARRAY
    assert [(c.name, c.kind, c.value) for c in variable.children] == [
        ("0", VariableKind.INTEGER, "1"),
        ("1", VariableKind.INTEGER, "2"),
        ("2", VariableKind.INTEGER, "3"),
    ]


def test_frame_without_address(parser):
    result = parser.parse(CommandKind.STACK_TRACE, ["#0  Setup () at main.c:19"])
    (frame,) = result.stack
    assert (frame.level, frame.file, frame.line, frame.function) == (0, "main.c", 19, "Setup ()")
    assert frame.address is None
