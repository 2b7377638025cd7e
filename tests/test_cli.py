import pytest

from maspmigrate.cli import Runner, SubCommand


def _make_runner(calls):
    def configure(parser):
        parser.add_argument("-name", default="")
        parser.add_argument("-skip-empty", dest="skip_empty", action="store_true")

    def greet(ns):
        calls.append((ns.name, ns.skip_empty))

    def fail(ns):
        raise ValueError("boom")

    return Runner(
        {
            "greet": SubCommand("say hello", greet, configure),
            "fail": SubCommand("always fails", fail),
        },
        prog="tool",
    )


def test_runs_selected_subcommand_with_flags():
    calls = []
    runner = _make_runner(calls)
    with pytest.raises(SystemExit) as exc:
        runner.run(["greet", "-name", "world", "-skip-empty"])
    assert exc.value.code == 0
    assert calls == [("world", True)]


def test_flag_defaults_apply():
    calls = []
    with pytest.raises(SystemExit) as exc:
        _make_runner(calls).run(["greet"])
    assert exc.value.code == 0
    assert calls == [("", False)]


def test_entrypoint_error_exits_1(capsys):
    with pytest.raises(SystemExit) as exc:
        _make_runner([]).run(["fail"])
    assert exc.value.code == 1
    assert "error: boom" in capsys.readouterr().err


def test_no_subcommand_prints_usage(capsys):
    runner = _make_runner([])
    with pytest.raises(SystemExit) as exc:
        runner.run([])
    assert exc.value.code == 1
    assert capsys.readouterr().err == runner.usage()


def test_unknown_subcommand_prints_usage(capsys):
    calls = []
    with pytest.raises(SystemExit) as exc:
        _make_runner(calls).run(["nope"])
    assert exc.value.code == 1
    assert "Usage of tool:" in capsys.readouterr().err
    assert calls == []


def test_help_flag_exits_0(capsys):
    calls = []
    with pytest.raises(SystemExit) as exc:
        _make_runner(calls).run(["greet", "-h"])
    assert exc.value.code == 0
    assert "say hello" in capsys.readouterr().out
    assert calls == []


def test_bad_flag_is_rejected():
    calls = []
    with pytest.raises(SystemExit) as exc:
        _make_runner(calls).run(["greet", "-unknown"])
    assert exc.value.code != 0 and exc.value.code != 1
    assert calls == []


def test_usage_lists_sorted_aligned_subcommands():
    text = _make_runner([]).usage()
    lines = text.splitlines()
    assert lines[0] == "Usage of tool:"
    assert lines[1] == ""
    entries = lines[2:]
    assert [line.split()[1] for line in entries] == ["fail", "greet"]
    columns = {line.index(desc) for line, desc in zip(entries, ["always fails", "say hello"])}
    assert len(columns) == 1
    assert all(line.startswith("  tool ") for line in entries)


def test_usage_without_subcommands():
    assert Runner({}, prog="tool").usage() == "Usage of tool:\n"