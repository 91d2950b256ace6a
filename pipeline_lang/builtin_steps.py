"""Built-in steps available to every pipeline."""

from __future__ import annotations

import json
import logging
import os
import random
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from .errors import EvalError
from .parser import universe
from .reflect import Reference
from .scope import Scope
from .steps import Execution, Step, StepContext, param
from .values import Array, String, Value, render

logger = logging.getLogger(__name__)


@dataclass
class EnvVars:
    """Working directory and environment captured when a run starts."""
    working_dir: str = ""
    vars: dict[str, str] = field(default_factory=dict)

    @classmethod
    def capture(cls) -> EnvVars:
        return cls(working_dir=os.getcwd(), vars=dict(os.environ))

    def get(self, name: str, default: str | None = None) -> str | None:
        return self.vars.get(name, default)

    def resolve(self, path: str) -> str:
        """``path`` made absolute against the captured working directory."""
        if os.path.isabs(path) or not self.working_dir:
            return path
        return os.path.join(self.working_dir, path)


def _resolve(ctx: StepContext, path: str) -> str:
    env = ctx.get(EnvVars)
    resolved = env.resolve(path) if env is not None else path
    logger.debug("resolved %r to %s", path, resolved)
    return resolved


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

@dataclass
class Echo(Execution):
    """Print a message: ``echo "hello $name"``."""
    message: Optional[Value] = param(position=0)

    def run(self, ctx: StepContext) -> Any:
        print(render(self.message))
        return None


@dataclass
class Delay(Execution):
    """Pause the pipeline: ``delay 500`` (milliseconds) or ``delay "1.5s"``."""
    duration: Optional[Value] = param(position=0, required=True)

    def run(self, ctx: StepContext) -> Any:
        from .config import parse_duration

        value = self.duration.to_native() if self.duration is not None else 0
        seconds = value / 1000 if isinstance(value, (int, float)) else parse_duration(value)
        logger.debug("delaying %.3fs", seconds)
        time.sleep(seconds)
        return None


@dataclass
class FileExists(Execution):
    """True if the file exists: ``fileExists "data.yml"``."""
    path: str = param(position=0, required=True, default="")

    def run(self, ctx: StepContext) -> Any:
        return os.path.exists(_resolve(ctx, self.path))


@dataclass
class ReadFile(Execution):
    """Read a text file: ``content := readFile "notes.txt"``."""
    path: str = param(position=0, required=True, default="")

    def run(self, ctx: StepContext) -> Any:
        with open(_resolve(ctx, self.path), encoding="utf-8") as f:
            return f.read()


@dataclass
class ReadYaml(Execution):
    """Read a YAML file into maps and lists: ``cfg := readYaml "cfg.yml"``."""
    path: str = param(position=0, required=True, default="")

    def run(self, ctx: StepContext) -> Any:
        with open(_resolve(ctx, self.path), encoding="utf-8") as f:
            return yaml.safe_load(f)


@dataclass
class ReadJson(Execution):
    """Read a JSON file into maps and lists: ``users := readJson "users.json"``."""
    path: str = param(position=0, required=True, default="")

    def run(self, ctx: StepContext) -> Any:
        with open(_resolve(ctx, self.path), encoding="utf-8") as f:
            return json.load(f)


@dataclass
class Random(Execution):
    """A random number: ``random 10`` → integer in [0, 10); ``random 1, type: "float"``."""
    max: float = param(position=0, default=0)
    type: str = param(position=1, default="int")

    def run(self, ctx: StepContext) -> Any:
        if self.type == "float":
            if self.max > 0:
                return random.uniform(0, self.max)
            return random.random()
        if self.max > 0:
            return random.randrange(int(self.max))
        return random.getrandbits(63)


@dataclass
class XmlPath(Execution):
    """Select from an XML document: ``xmlpath doc, "./item/name"``.

    A trailing ``/@attr`` selects an attribute. Returns the first match,
    or every match when ``all: true``.
    """
    xml: str = param(position=0, required=True, default="")
    path: str = param(position=1, required=True, default="")
    all: bool = param(default=False)

    def run(self, ctx: StepContext) -> Any:
        try:
            root = ET.fromstring(self.xml)
        except ET.ParseError as e:
            raise EvalError(f"xmlpath: invalid xml: {e}") from None
        path, attr = self.path, None
        head, sep, tail = path.rpartition("/@")
        if sep:
            path, attr = head or ".", tail
        try:
            elements = root.findall(path) if path not in ("", ".", "/") else [root]
        except SyntaxError as e:
            raise EvalError(f"xmlpath: invalid path '{self.path}': {e}") from None
        if attr is not None:
            values = [e.get(attr) for e in elements if e.get(attr) is not None]
        else:
            values = [(e.text or "").strip() for e in elements]
        if self.all:
            return Array(String(v) for v in values)
        return values[0] if values else None


@dataclass
class Context(Execution):
    """A host object registered with the run: ``env := context "EnvVars"``."""
    type: str = param(position=0, required=True, default="")

    def run(self, ctx: StepContext) -> Any:
        obj = ctx.scope.context_by_name(self.type)
        if obj is None:
            raise EvalError(f"context '{self.type}' not found")
        return Reference(obj)


BUILTIN_STEPS: dict[str, Step] = {
    "echo": Step(Echo),
    "delay": Step(Delay),
    "fileExists": Step(FileExists),
    "readFile": Step(ReadFile),
    "readYaml": Step(ReadYaml),
    "readJson": Step(ReadJson),
    "random": Step(Random),
    "xmlpath": Step(XmlPath),
    "context": Step(Context),
}


def new_base_scope(steps: dict[str, Step] | None = None, env: EnvVars | None = None) -> Scope:
    """A scope with the constants, the built-in steps and the captured environment."""
    scope = universe()
    for name, step in BUILTIN_STEPS.items():
        scope.define(name, step)
    for name, step in (steps or {}).items():
        scope.define(name, step)
    scope.register(env if env is not None else EnvVars.capture())
    return scope
