import importlib.util
import sys
import uuid
from pathlib import Path

import pytest


def _load_repl_module():
    """Dynamically load the top-level rill.py (REPL) as a module with a unique name."""
    repl_path = Path(__file__).resolve().parents[1] / "rill.py"
    mod_name = f"rill_repl_for_test_{uuid.uuid4().hex}"
    spec = importlib.util.spec_from_file_location(mod_name, str(repl_path))
    mod = importlib.util.module_from_spec(spec)
    sys.modules[mod_name] = mod
    assert spec.loader is not None
    spec.loader.exec_module(mod)
    return mod


@pytest.fixture(autouse=True)
def no_user_config(monkeypatch, tmp_path):
    monkeypatch.delenv("RILL_CONFIG", raising=False)
    monkeypatch.setattr("rill.rill_config.DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")


def feed_lines(monkeypatch, repl, lines, prompts=None):
    it = iter(lines)

    async def fake_ainput(prompt: str) -> str:
        if prompts is not None:
            prompts.append(prompt)
        return next(it)
    monkeypatch.setattr(repl, "ainput", fake_ainput)


@pytest.mark.asyncio
async def test_repl_quit_immediately(monkeypatch, capsys):
    repl = _load_repl_module()
    feed_lines(monkeypatch, repl, [":quit\n"])

    await repl.main([])
    out = capsys.readouterr().out
    assert "rill REPL v0.1" in out
    assert "Type ':help' for commands, ':quit' or Ctrl+D to quit." in out


@pytest.mark.asyncio
async def test_repl_prints_side_effects_and_values(monkeypatch, capsys):
    repl = _load_repl_module()
    feed_lines(monkeypatch, repl, [
        "print('hello from rill')\n",
        "1 + 2\n",
        ":q\n",
    ])

    await repl.main([])
    out, err = capsys.readouterr()
    assert "hello from rill" in out
    assert "res1: int = 3" in out
    assert err == ""


@pytest.mark.asyncio
async def test_repl_multiline_uses_continuation_prompt(monkeypatch, capsys):
    repl = _load_repl_module()
    prompts = []
    feed_lines(monkeypatch, repl, [
        "def double(n):\n",
        "    return n * 2\n",
        "\n",
        "double(21)\n",
        ":quit\n",
    ], prompts)

    await repl.main([])
    out = capsys.readouterr().out
    assert prompts == ["rill> ", "... ", "... ", "rill> ", "rill> "]
    assert "res1: int = 42" in out


@pytest.mark.asyncio
async def test_repl_errors_print_to_stderr(monkeypatch, capsys):
    repl = _load_repl_module()
    feed_lines(monkeypatch, repl, [
        "1 / 0\n",
        "x = )\n",
        ":nonsense\n",
        ":quit\n",
    ])

    await repl.main([])
    out, err = capsys.readouterr()
    assert "rill REPL v0.1" in out
    assert "Error: ZeroDivisionError: division by zero" in err
    assert "Message: SyntaxError:" in err
    assert "Unknown command :nonsense" in err


@pytest.mark.asyncio
async def test_repl_commands(monkeypatch, capsys):
    repl = _load_repl_module()
    feed_lines(monkeypatch, repl, [
        "answer = 42\n",
        ":type answer\n",
        ":ls ans.*\n",
        ":quit\n",
    ])

    await repl.main([])
    out = capsys.readouterr().out
    assert "\nint\n" in out
    assert "var answer: int" in out


@pytest.mark.asyncio
async def test_repl_eof_quits(monkeypatch, capsys):
    repl = _load_repl_module()
    feed_lines(monkeypatch, repl, [""])

    await repl.main([])
    out = capsys.readouterr().out
    assert "rill REPL v0.1" in out
    assert "Exiting." in out


@pytest.mark.asyncio
async def test_repl_bad_config_exits(monkeypatch, tmp_path, capsys):
    repl = _load_repl_module()
    path = tmp_path / "bad.yaml"
    path.write_text("colour: blue\n")
    monkeypatch.setenv("RILL_CONFIG", str(path))

    with pytest.raises(SystemExit) as exc:
        await repl.main([])
    assert exc.value.code == 1
    assert "unknown configuration keys" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_run_script_file_success(tmp_path, capsys):
    repl = _load_repl_module()
    script = tmp_path / "ok.py"
    script.write_text(
        "def square(n):\n"
        "    return n * n\n"
        "\n"
        "square(7)\n"
        "\n"
        "for i in range(2):\n"
        "    print(i)\n"
    )

    await repl.main([str(script)])
    out = capsys.readouterr().out
    assert "res1: int = 49" in out
    assert out.endswith("0\n1\n")


@pytest.mark.asyncio
async def test_run_script_file_stops_on_error(tmp_path, capsys):
    repl = _load_repl_module()
    script = tmp_path / "bad.py"
    script.write_text("1 + 1\nundefined_thing\n2 + 2\n")

    with pytest.raises(SystemExit) as exc:
        await repl.main([str(script)])
    assert exc.value.code == 1
    out, err = capsys.readouterr()
    assert "res1: int = 2" in out
    assert "res2" not in out
    assert "NameError" in err


@pytest.mark.asyncio
async def test_run_script_file_missing(tmp_path, capsys):
    repl = _load_repl_module()
    with pytest.raises(SystemExit) as exc:
        await repl.run_script_file(str(tmp_path / "absent.py"))
    assert exc.value.code == 1
    assert "Error: file not found" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_internal_error_exits_with_status_2(tmp_path, capsys):
    from rill.rill_datatypes import InternalConsistencyError
    from rill.rill_runtime import create_repl

    repl = _load_repl_module()
    session = create_repl()

    def broken(proceed):
        raise InternalConsistencyError("extractor out of step")
    session.wrappers.add(broken)
    script = tmp_path / "s.py"
    script.write_text("x = 1\n")

    with pytest.raises(SystemExit) as exc:
        await repl.run_script_file(str(script), session)
    assert exc.value.code == 2
    assert "Internal error" in capsys.readouterr().err
