"""Shared fixtures for pipeline-lang tests."""

from dataclasses import dataclass
from typing import Optional

import pytest

from pipeline_lang.builtin_steps import EnvVars, new_base_scope
from pipeline_lang.parser import parse_file
from pipeline_lang.runtime import Runtime
from pipeline_lang.scheduler import with_global_vars
from pipeline_lang.steps import Execution, Step, StepContext, param
from pipeline_lang.values import Value, render


@dataclass
class RecordingEcho(Execution):
    """``echo`` that remembers its messages instead of printing them."""
    message: Optional[Value] = param(position=0)
    sink: list = param(skip=True, default_factory=list)

    def run(self, ctx: StepContext):
        self.sink.append(self.message)


class Recorder:
    """Collects every message passed to the recording ``echo`` step."""

    def __init__(self):
        self.calls: list = []
        self.step = Step(lambda: RecordingEcho(sink=self.calls), doc="Record a message.")

    @property
    def messages(self) -> list[str]:
        return [render(m) for m in self.calls]

    def steps(self) -> dict[str, Step]:
        return {"echo": self.step}


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def run_source(recorder):
    """Parse and run ``source`` with the recording echo installed.

    Keyword arguments are exposed to the script as global variables.
    """
    def run(source: str, env: EnvVars | None = None, **global_vars):
        scope = new_base_scope(steps=recorder.steps(), env=env or EnvVars())
        if global_vars:
            with_global_vars(global_vars)(scope)
        file = parse_file(source, scope)
        return Runtime().run(file)
    return run


def _pipeline(steps: str, *, when: str = "", name: str = "s") -> str:
    """Wrap statements in a single-stage pipeline."""
    guard = f"      when {{ {when} }}\n" if when else ""
    return (
        "pipeline('p') {\n"
        "  stages {\n"
        f"    stage('{name}') {{\n"
        f"{guard}"
        "      steps {\n"
        f"        {steps}\n"
        "      }\n"
        "    }\n"
        "  }\n"
        "}\n"
    )


# ---------------------------------------------------------------------------
# Sample sources
# ---------------------------------------------------------------------------

MULTI_STAGE = '''
pipeline('build') {
  stages {
    vars {
      greeting := 'hello'
    }
    stage('prepare') {
      vars {
        count := 2
      }
      steps {
        echo "$greeting x$count"
      }
    }
    stage('skip-me') {
      when { greeting == 'bye' }
      steps {
        echo 'never'
      }
    }
    stage('finish') {
      steps {
        total := 0
        items := [1, 2, 3]
        total += items.size
        echo total
      }
    }
  }
}
'''


@pytest.fixture
def multi_stage_source():
    return MULTI_STAGE


@pytest.fixture
def wrap():
    """``wrap(steps, when=..., name=...)`` builds a single-stage pipeline."""
    return _pipeline
