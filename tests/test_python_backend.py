import ast

import pytest

from rill.rill_datatypes import (
    CompileError, CompiledArtifact, Environment, EvalError, HistoryMismatch,
    Incomplete, Snippet, Unit, Value,
)
from rill.rill_python import PythonCompiler, PythonExecutor
from rill.rill_runtime import CycleState, create_repl
from rill.rill_config import RillConfig


@pytest.fixture
def repl():
    r = create_repl(RillConfig())
    yield r
    r.close()


def feed(repl, *lines):
    result = None
    for line in lines:
        result = repl.compile_and_eval(line)
    return result


def shown(repl):
    return [s.show() for s in repl.plugins[0].table.list()]


def test_expression_is_reported_and_bound(repl, capsys):
    cycle = feed(repl, "1 + 2")
    assert cycle.state is CycleState.VALUE
    out = capsys.readouterr().out
    assert out == "res1: int = 3\n"
    assert repl.environment.read("res1") == 3
    assert cycle.bindings[0].snippet.source == "res1: int = __res"
    assert shown(repl) == ["var res1: int"]


def test_results_can_be_reused(repl, capsys):
    feed(repl, "[1, 2]", "res1 + [3]")
    assert capsys.readouterr().out.splitlines() == ["res1: list = [1, 2]", "res2: list = [1, 2, 3]"]


def test_multiline_function_needs_a_blank_line(repl):
    assert feed(repl, "def add(a: int, b: int = 0) -> int:").state is CycleState.INCOMPLETE
    assert feed(repl, "    return a + b").state is CycleState.INCOMPLETE
    cycle = feed(repl, "")
    assert cycle.state is CycleState.UNIT
    assert shown(repl) == ["fun add(a: int,b: int): int"]
    assert feed(repl, "add(2, 3)").eval_result.value == 5


def test_class_and_annotated_declarations(repl):
    feed(repl, "class Point:", "    x = 0", "")
    feed(repl, "from typing import Final")
    feed(repl, "LIMIT: Final = 10")
    feed(repl, "count: int = 3")
    listed = shown(repl)
    assert "class Point" in listed
    assert "val LIMIT: int" in listed
    assert "var count: int" in listed


def test_statement_that_prints_is_unit(repl, capsys):
    cycle = feed(repl, "print('hi')")
    assert cycle.state is CycleState.UNIT
    assert capsys.readouterr().out == "hi\n"


def test_runtime_exception_is_an_eval_error(repl, capsys):
    cycle = feed(repl, "1 / 0")
    assert cycle.state is CycleState.EVAL_ERROR
    assert capsys.readouterr().err == "Error: ZeroDivisionError: division by zero\n"
    assert isinstance(cycle.eval_result.cause, ZeroDivisionError)
    # The failed snippet does not block the next one.
    assert feed(repl, "2").state is CycleState.VALUE


def test_syntax_error_is_a_compile_error(repl, capsys):
    cycle = feed(repl, "x = )")
    assert cycle.state is CycleState.COMPILE_ERROR
    err = capsys.readouterr().err
    assert err.startswith("Message: SyntaxError:")
    assert "Location: line 1" in err


def test_rebinding_shadows_previous_symbol(repl):
    feed(repl, "x = 1", "x = 'one'")
    xs = [s for s in repl.plugins[0].table.list() if s.name == "x"]
    assert [(s.value, s.type) for s in xs] == [("one", "str")]


def test_compiler_reports_incomplete_source():
    compiler = PythonCompiler()
    assert isinstance(compiler.compile(Snippet(1, 0, "if True:"), Environment()), Incomplete)
    assert not compiler.is_complete("(1,")
    assert compiler.is_complete("(1, 2)")


def test_compiler_manifest_lists_top_level_declarations():
    compiler = PythonCompiler()
    source = "import os.path as p, sys\na, (b, *c) = 1, (2, 3)\nobj.attr = 4\nn += 1\n"
    result = compiler.compile(Snippet(1, 0, source), Environment(namespace="Line"))
    assert isinstance(result, CompiledArtifact)
    assert result.manifest.namespace == "Line"
    assert result.manifest.bound_names() == ("p", "sys", "a", "b", "c", "n")
    assert result.type is None


def test_function_declaration_details():
    compiler = PythonCompiler()
    source = "def f(x, /, *args: int, key: str, **kw) -> None:\n    pass\n"
    [decl] = compiler.compile(Snippet(1, 0, source), Environment()).manifest.declarations
    assert decl.kind == "function"
    assert [(p.name, p.type) for p in decl.params] == [
        ("x", "Any"), ("*args", "int"), ("key", "str"), ("**kw", "Any"),
    ]
    assert decl.returns == "None"


@pytest.mark.parametrize("source,expected", [
    ("1", "int"),
    ("1 / 2", "float"),
    ("1 + 2.5", "float"),
    ("True + 1", "int"),
    ("'a' + 'b'", "str"),
    ("not 0", "bool"),
    ("-3", "int"),
    ("[i for i in range(3)]", "list"),
    ("{'a': 1}", "dict"),
    ("1 < 2", "bool"),
    ("str(5)", "str"),
    ("undefined_name", None),
])
def test_infer_type(source, expected):
    node = ast.parse(source, mode="eval").body
    assert PythonCompiler().infer_type(node, Environment()) == expected


def test_infer_type_uses_environment_and_return_annotations():
    env = Environment()
    env.bindings["n"] = 2.0

    def half(x) -> float:
        return x / 2
    env.bindings["half"] = half
    compiler = PythonCompiler()
    assert compiler.infer_type(ast.parse("n", mode="eval").body, env) == "float"
    assert compiler.infer_type(ast.parse("half(4)", mode="eval").body, env) == "float"


def _artifact(source, generation=0):
    compiler = PythonCompiler()
    return compiler.compile(Snippet(1, generation, source), Environment())


def test_executor_returns_value_unit_and_error():
    executor = PythonExecutor()
    env = Environment()
    result = executor.eval(_artifact("6 * 7"), env)
    assert isinstance(result, Value)
    assert (result.value, result.type) == (42, "int")
    assert "__result__" not in env

    assert isinstance(executor.eval(_artifact("y = 1"), env), Unit)
    assert env.read("y") == 1

    failed = executor.eval(_artifact("{}['k']"), env)
    assert isinstance(failed, EvalError)
    assert str(failed) == "Error: KeyError: 'k'"


def test_executor_rejects_stale_generation():
    env = Environment()
    env.version = 3
    result = PythonExecutor().eval(_artifact("1", generation=1), env)
    assert isinstance(result, HistoryMismatch)
    assert "generation 1" in str(result)


def test_compile_error_carries_location():
    result = PythonCompiler().compile(Snippet(1, 0, "a = 1\nb = = 2"), Environment())
    assert isinstance(result, CompileError)
    assert result.location.line == 2


def test_name_bound_twice_in_one_snippet_is_listed_once(repl):
    feed(repl, "x = 1; x = 'two'")
    assert shown(repl) == ["var x: str"]


def test_manifest_keeps_last_declaration_per_name():
    compiler = PythonCompiler()
    result = compiler.compile(Snippet(1, 0, "v = 1\nv: int = 2\nclass v: pass\n"), Environment())
    assert [d.kind for d in result.manifest.declarations] == ["property", "property", "class"]
    assert result.manifest.members() == ()
    assert [d.name for d in result.manifest.classes()] == ["v"]


def test_loop_target_rebinding_shadows_previous_symbol(repl):
    feed(repl, "x = 1")
    feed(repl, "for x in ['a', 'b']: pass", "")
    assert repl.environment.read("x") == "b"
    xs = [s for s in repl.plugins[0].table.list() if s.name == "x"]
    assert [(s.value, s.type) for s in xs] == [("b", "str")]


def test_untaken_branch_keeps_current_value(repl):
    feed(repl, "y = 1")
    feed(repl, "if False:", "    y = 'never'", "")
    feed(repl, "if True:", "    z = 3", "")
    listed = {s.name: s.value for s in repl.plugins[0].table.list()}
    assert listed == {"y": 1, "z": 3}


def test_del_hides_the_symbol(repl):
    feed(repl, "gone = 1", "kept = 2")
    feed(repl, "del gone")
    assert shown(repl) == ["var kept: int"]


def test_except_name_and_walrus_bindings(repl):
    feed(repl, "err = 'old'")
    feed(repl, "try:", "    1 / 0", "except ZeroDivisionError as err:", "    caught = True", "")
    feed(repl, "(w := 5)")
    listed = {s.name: s.value for s in repl.plugins[0].table.list()}
    # The handler unbinds its name on exit.
    assert "err" not in listed
    assert listed["caught"] is True
    assert listed["w"] == 5


def test_manifest_walks_module_scope_binding_sites():
    source = (
        "for i, j in pairs:\n"
        "    total = i\n"
        "else:\n"
        "    done = True\n"
        "while (n := step()):\n"
        "    pass\n"
        "with open(p) as fh, ctx() as (a, b):\n"
        "    import json\n"
        "try:\n"
        "    risky()\n"
        "except ValueError as err:\n"
        "    def handler(): pass\n"
        "finally:\n"
        "    class Later: pass\n"
        "match cmd:\n"
        "    case [first, *rest]:\n"
        "        pass\n"
        "    case {'k': v, **others}:\n"
        "        pass\n"
        "    case _:\n"
        "        pass\n"
        "del gone\n"
        "def outer():\n"
        "    inner = 1\n"
        "class Box:\n"
        "    size = 2\n"
        "f = lambda: (hidden := 1)\n"
    )
    result = PythonCompiler().compile(Snippet(1, 0, source), Environment())
    assert isinstance(result, CompiledArtifact)
    names = result.manifest.bound_names()
    assert set(names) == {
        "i", "j", "total", "done", "n", "fh", "a", "b", "json", "err", "handler",
        "Later", "first", "rest", "v", "others", "gone", "outer", "Box", "f",
    }
    assert len(names) == len(set(names))
    by_name = {d.name: d for d in result.manifest.latest()}
    assert not by_name["fh"].conditional
    assert not by_name["json"].conditional
    assert not by_name["Later"].conditional
    assert by_name["total"].conditional
    assert by_name["gone"].conditional


def test_nul_byte_is_a_compile_error():
    result = PythonCompiler().compile(Snippet(1, 0, "x = 1\x00"), Environment())
    assert isinstance(result, CompileError)


@pytest.mark.parametrize("source", ["type('a-b', (), {})()", "type('class', (), {})()"])
def test_unannotatable_type_names_bind_as_any(repl, capsys, source):
    cycle = feed(repl, source)
    assert cycle.state is CycleState.VALUE
    assert cycle.bindings[0].snippet.source == "res1: Any = __res"
    assert capsys.readouterr().out.startswith("res1: Any = <")
