"""Tests for pipeline_lang.steps and pipeline_lang.builtin_steps."""

import json
import logging
from dataclasses import dataclass

import pytest

from pipeline_lang.builtin_steps import BUILTIN_STEPS, EnvVars, new_base_scope
from pipeline_lang.errors import EvalError
from pipeline_lang.parser import parse_file
from pipeline_lang.reflect import Reference
from pipeline_lang.runtime import Runtime
from pipeline_lang.steps import Execution, Step, StepContext, bind, param, parse_tag, step_params
from pipeline_lang.values import KeyValuePair, Number, String


@dataclass
class Greet(Execution):
    """Greet someone."""
    name: str = param(position=0, required=True, default="")
    times: int = param(position=1, default=1)
    greeting: str = param(default="hello")
    user_id: int = param(default=0)
    internal: list = param(skip=True, default_factory=list)

    def run(self, ctx):
        return " ".join([f"{self.greeting} {self.name}"] * self.times)


@dataclass
class Boom(Execution):
    def run(self, ctx):
        raise ValueError("bad input")


def positional(*values):
    return [KeyValuePair("", v) for v in values]


# ---------------------------------------------------------------------------
# Tags and parameters
# ---------------------------------------------------------------------------

class TestParams:

    def test_step_params(self):
        params = step_params(Greet)
        assert [p.name for p in params] == ["name", "times", "greeting", "userId"]
        assert params[0].position == 0 and params[0].required
        assert params[1].annotation is int

    def test_parse_tag(self):
        p = parse_tag("path", "file,position=2,required")
        assert (p.name, p.position, p.required) == ("file", 2, True)
        assert parse_tag("x", "-") is None

    def test_parse_tag_errors(self):
        with pytest.raises(EvalError, match="invalid position"):
            parse_tag("x", ",position=a")
        with pytest.raises(EvalError, match="unknown option 'often'"):
            parse_tag("x", ",often")

    def test_step_doc_from_execution(self):
        assert Step(Greet).doc == "Greet someone."
        assert Step(Greet, doc="custom").doc == "custom"


# ---------------------------------------------------------------------------
# Argument binding
# ---------------------------------------------------------------------------

class TestBind:

    def test_by_position(self):
        g = Greet()
        bind(g, positional(String("ann"), Number(2)), "greet")
        assert (g.name, g.times) == ("ann", 2)

    def test_by_name(self):
        g = Greet()
        bind(g, [KeyValuePair("", String("ann")), KeyValuePair("greeting", String("hi")),
                 KeyValuePair("userId", Number(7))], "greet")
        assert (g.greeting, g.user_id) == ("hi", 7)

    def test_unknown_argument(self):
        with pytest.raises(EvalError, match="step greet: unknown argument 'nope'"):
            bind(Greet(), [KeyValuePair("nope", Number(1))], "greet")

    def test_skipped_field_is_not_bindable(self):
        with pytest.raises(EvalError, match="unknown argument 'internal'"):
            bind(Greet(), [KeyValuePair("internal", Number(1))], "greet")

    def test_no_parameter_at_position(self):
        with pytest.raises(EvalError, match="step greet: no parameter at position 2"):
            bind(Greet(), positional(String("a"), Number(1), Number(2)), "greet")

    def test_missing_required(self):
        with pytest.raises(EvalError, match="step greet: missing required argument 'name'"):
            bind(Greet(), [], "greet")

    def test_conversion_error(self):
        with pytest.raises(EvalError) as exc:
            bind(Greet(), positional(String("a"), String("x")), "greet")
        assert exc.value.message == "step greet: argument 'times': cannot convert 'x' to int"

    def test_call_returns_script_value(self):
        ctx = StepContext(new_base_scope(env=EnvVars()))
        result = Step(Greet).call(positional(String("ann"), Number(2)), ctx, "greet")
        assert result == String("hello ann hello ann")

    def test_call_wraps_host_errors(self):
        ctx = StepContext(new_base_scope(env=EnvVars()))
        with pytest.raises(EvalError, match="step boom: bad input"):
            Step(Boom).call([], ctx, "boom")

    def test_each_call_gets_a_fresh_execution(self):
        step = Step(Greet)
        assert step.start() is not step.start()


class TestStepContext:

    def test_get_registered_object(self):
        env = EnvVars(working_dir="/tmp/work")
        ctx = StepContext(new_base_scope(env=env))
        assert ctx.get(EnvVars) is env

    def test_get_missing(self):
        class Other:
            pass
        ctx = StepContext(new_base_scope(env=EnvVars()))
        assert ctx.get(Other) is None

    def test_lookup(self):
        ctx = StepContext(new_base_scope(env=EnvVars()))
        assert ctx.lookup("true").value is True


# ---------------------------------------------------------------------------
# Built-in steps
# ---------------------------------------------------------------------------

@pytest.fixture
def workdir(tmp_path):
    (tmp_path / "cfg.yml").write_text("name: demo\nitems: [1, 2]\n", encoding="utf-8")
    (tmp_path / "users.json").write_text(json.dumps([{"name": "ann"}, {"name": "bob"}]),
                                         encoding="utf-8")
    (tmp_path / "notes.txt").write_text("first line", encoding="utf-8")
    return tmp_path


class TestBuiltins:

    def test_registered_names(self):
        assert set(BUILTIN_STEPS) == {
            "echo", "delay", "fileExists", "readFile", "readYaml", "readJson",
            "random", "xmlpath", "context",
        }

    def test_echo_prints(self, wrap, capsys):
        scope = new_base_scope(env=EnvVars())
        Runtime().run(parse_file(wrap("echo 'hello'"), scope))
        assert capsys.readouterr().out == "hello\n"

    def test_read_yaml(self, run_source, recorder, wrap, workdir):
        env = EnvVars(working_dir=str(workdir))
        result = run_source(wrap("cfg := readYaml 'cfg.yml'\n        echo cfg.name\n        echo cfg.items.size"),
                            env=env)
        assert result.success, result.error
        assert recorder.messages == ["demo", "2"]

    def test_read_json(self, run_source, recorder, wrap, workdir):
        env = EnvVars(working_dir=str(workdir))
        run_source(wrap("users := readJson 'users.json'\n        echo users.*.name"), env=env)
        assert recorder.messages == ["[ann, bob]"]

    def test_read_file(self, run_source, recorder, wrap, workdir):
        env = EnvVars(working_dir=str(workdir))
        run_source(wrap("echo readFile 'notes.txt'"), env=env)
        assert recorder.messages == ["first line"]

    def test_read_missing_file(self, run_source, wrap, workdir):
        env = EnvVars(working_dir=str(workdir))
        result = run_source(wrap("x := readFile 'missing.txt'"), env=env)
        assert not result.success
        assert result.error.message.startswith("step readFile: ")

    def test_file_exists(self, run_source, recorder, wrap, workdir):
        env = EnvVars(working_dir=str(workdir))
        run_source(wrap("echo fileExists 'cfg.yml'\n        echo fileExists 'nope.yml'"), env=env)
        assert recorder.messages == ["true", "false"]

    def test_relative_path_without_working_dir(self, tmp_path):
        assert EnvVars().resolve("a.txt") == "a.txt"
        assert EnvVars(working_dir=str(tmp_path)).resolve("a.txt") == str(tmp_path / "a.txt")
        assert EnvVars(working_dir="/x").resolve("/abs") == "/abs"

    def test_missing_required_path(self, run_source, wrap):
        result = run_source(wrap("readFile"))
        assert not result.success
        assert result.error.message == "step readFile: missing required argument 'path'"


XML = '<root><item id="1"><name>a</name></item><item id="2"><name>b</name></item></root>'


class TestXmlPath:

    def test_first_match(self, run_source, recorder, wrap):
        run_source(wrap("v := xmlpath doc, './item/name'\n        echo v"), doc=XML)
        assert recorder.messages == ["a"]

    def test_all_matches(self, run_source, recorder, wrap):
        run_source(wrap("v := xmlpath doc, './item/name', all: true\n        echo v"), doc=XML)
        assert recorder.messages == ["[a, b]"]

    def test_attribute(self, run_source, recorder, wrap):
        run_source(wrap("v := xmlpath doc, './item/@id', all: true\n        echo v"), doc=XML)
        assert recorder.messages == ["[1, 2]"]

    def test_no_match_is_nil(self, run_source, recorder, wrap):
        run_source(wrap("v := xmlpath doc, './missing'\n        echo v"), doc=XML)
        assert recorder.messages == ["NULL"]

    def test_invalid_xml(self, run_source, wrap):
        result = run_source(wrap("v := xmlpath '<a>', './b'"))
        assert not result.success
        assert "xmlpath: invalid xml" in result.error.message


class TestRandomDelayContext:

    def test_random_int(self, run_source, recorder, wrap):
        run_source(wrap("echo random 10\n        echo random 10\n        echo random 10"))
        for value in recorder.calls:
            assert value.is_integral()
            assert 0 <= value.value < 10

    def test_random_float(self, run_source, recorder, wrap):
        run_source(wrap("echo random 1, type: 'float'"))
        value = recorder.calls[0].value
        assert 0 <= value < 1

    def test_random_unbounded(self, run_source, recorder, wrap):
        run_source(wrap("echo random 0"))
        value = recorder.calls[0].value
        assert value.is_integer()
        assert 0 <= value < 2 ** 63

    def test_delay(self, run_source, wrap, monkeypatch):
        slept = []
        monkeypatch.setattr("pipeline_lang.builtin_steps.time.sleep", slept.append)
        result = run_source(wrap("delay 500\n        delay '1.5s'"))
        assert result.success, result.error
        assert slept == [0.5, 1.5]

    def test_delay_is_logged(self, run_source, wrap, monkeypatch, caplog):
        caplog.set_level(logging.DEBUG, logger="pipeline_lang.builtin_steps")
        monkeypatch.setattr("pipeline_lang.builtin_steps.time.sleep", lambda s: None)
        assert run_source(wrap("delay 250")).success
        assert "delaying 0.250s" in [r.getMessage() for r in caplog.records]

    def test_delay_requires_duration(self, run_source, wrap):
        result = run_source(wrap("delay"))
        assert result.error.message == "step delay: missing required argument 'duration'"

    def test_context(self, run_source, recorder, wrap, tmp_path):
        env = EnvVars(working_dir=str(tmp_path), vars={"HOME": "/home/ann"})
        run_source(wrap("env := context 'EnvVars'\n        echo env.workingDir\n        echo env.get 'HOME'"),
                   env=env)
        assert recorder.messages == [str(tmp_path), "/home/ann"]

    def test_context_not_found(self, run_source, wrap):
        result = run_source(wrap("x := context 'Nope'"))
        assert result.error.message == "context 'Nope' not found"

    def test_context_value_is_reference(self):
        scope = new_base_scope(env=EnvVars())
        result = BUILTIN_STEPS["context"].call(positional(String("envvars")), StepContext(scope), "context")
        assert isinstance(result, Reference)
        assert isinstance(result.obj, EnvVars)
