"""YAML configuration for scheduled pipelines.

A config file declares pipelines as plain data (variables, stages with a
condition and a block of steps) and the schedules that run them::

    pipelines:
      - name: p
        variables:
          - name: count
            value: 1
        stages:
          - name: first
            condition: "count > 0"
            steps: |
              echo "tick"
    schedules:
      - name: tick
        pipeline: p
        every: 10ms
        iterations: 3

Keys are matched case-insensitively and common synonyms are accepted.
Each pipeline is turned into pipeline-lang source for the parser.
"""

from __future__ import annotations

import decimal
import math
import re
from dataclasses import dataclass, field
from typing import Any

import yaml

from .errors import ConfigError


# ── Key normalization ────────────────────────────────────────────────

KEY_SYNONYMS: dict[str, str] = {
    "vars":       "variables",
    "when":       "condition",
    "if":         "condition",
    "interval":   "every",
    "count":      "iterations",
    "times":      "iterations",
    "expression": "expr",
    "script":     "steps",
}

_IDENT_RE = re.compile(r"^[A-Za-z_]\w*$")
_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNITS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


def _normalize(data: Any, where: str) -> dict[str, Any]:
    """Lower-case the keys of a mapping and apply the synonym table."""
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: expected a mapping, got {type(data).__name__}")
    result: dict[str, Any] = {}
    for key, value in data.items():
        k = str(key).lower()
        k = KEY_SYNONYMS.get(k, k)
        if k in result:
            raise ConfigError(f"{where}: duplicate key '{key}'")
        result[k] = value
    return result


def _list(data: Any, where: str) -> list:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigError(f"{where}: expected a list, got {type(data).__name__}")
    return data


# ── Durations ────────────────────────────────────────────────────────

def parse_duration(value: Any) -> float:
    """Parse ``"1m30s"``, ``"10ms"`` or a number of seconds into seconds."""
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ConfigError(f"invalid duration {value!r}")
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass
    pos, total = 0, 0.0
    for m in _DURATION_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNITS[m.group(2)]
        pos = m.end()
    if pos != len(text) or not text:
        raise ConfigError(f"invalid duration '{value}'")
    return total


# ── Specs ────────────────────────────────────────────────────────────

@dataclass
class VariableSpec:
    """``{name, value}`` rendered as ``name := <literal>``, or a raw ``expr``."""
    name: str = ""
    value: Any = None
    expr: str = ""

    def source(self) -> str:
        if self.expr:
            return self.expr
        return f"{self.name} := {literal(self.value, self.name)}"


@dataclass
class StageSpec:
    name: str = ""
    condition: str = ""
    steps: str = ""

    def source(self, indent: str = "    ") -> str:
        inner = indent + "  "
        lines = [f"{indent}stage({quote(self.name)}) {{"]
        if self.condition:
            lines.append(f"{inner}when {{ {self.condition.strip()} }}")
        lines.append(f"{inner}steps {{")
        for line in self.steps.strip("\n").splitlines():
            lines.append(f"{inner}  {line}" if line.strip() else "")
        lines.append(f"{inner}}}")
        lines.append(f"{indent}}}")
        return "\n".join(lines)


@dataclass
class PipelineSpec:
    name: str
    variables: list[VariableSpec] = field(default_factory=list)
    stages: list[StageSpec] = field(default_factory=list)

    def source(self) -> str:
        """The pipeline as pipeline-lang source."""
        lines = [f"pipeline({quote(self.name)}) {{", "  stages {"]
        if self.variables:
            lines.append("    vars {")
            for v in self.variables:
                lines.append(f"      {v.source()}")
            lines.append("    }")
        for stage in self.stages:
            lines.append(stage.source())
        lines.append("  }")
        lines.append("}")
        return "\n".join(lines)


@dataclass
class Schedule:
    name: str
    pipeline: str
    every: float
    iterations: int = 0


@dataclass
class Config:
    pipelines: list[PipelineSpec] = field(default_factory=list)
    schedules: list[Schedule] = field(default_factory=list)

    def pipeline(self, name: str) -> PipelineSpec | None:
        for p in self.pipelines:
            if p.name == name:
                return p
        return None

    def source(self) -> str:
        return "\n\n".join(p.source() for p in self.pipelines)


# ── Literal rendering ────────────────────────────────────────────────

def quote(text: str) -> str:
    """A single-quoted (non-interpolated) string literal."""
    if "\n" in text:
        raise ConfigError("multi-line strings are not supported in values")
    escaped = text.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def literal(value: Any, name: str = "") -> str:
    """Render a YAML value as a pipeline-lang literal."""
    if value is None:
        raise ConfigError(f"variable '{name}' has no value")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ConfigError(f"variable '{name}': {value} is not a finite number")
        text = repr(value)
        return format(decimal.Decimal(text), "f") if "e" in text else text
    if isinstance(value, str):
        return quote(value)
    if isinstance(value, list):
        return "[" + ", ".join(literal(v, name) for v in value) + "]"
    if isinstance(value, dict):
        if not value:
            raise ConfigError(f"variable '{name}': empty mappings are not supported")
        items = []
        for k, v in value.items():
            key = str(k) if _IDENT_RE.match(str(k)) else quote(str(k))
            items.append(f"{key}: {literal(v, name)}")
        return "[" + ", ".join(items) + "]"
    raise ConfigError(f"variable '{name}': unsupported value type {type(value).__name__}")


# ── Loading ──────────────────────────────────────────────────────────

def _steps_text(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list) and all(isinstance(s, str) for s in value):
        return "\n".join(value)
    raise ConfigError(f"{where}: steps must be a string or a list of strings")


def _parse_stage(data: Any, where: str) -> StageSpec:
    d = _normalize(data, where)
    return StageSpec(
        name=str(d.get("name") or ""),
        condition=str(d.get("condition") or ""),
        steps=_steps_text(d.get("steps"), where),
    )


def _parse_variable(data: Any, where: str) -> VariableSpec:
    d = _normalize(data, where)
    if d.get("expr"):
        return VariableSpec(expr=str(d["expr"]).strip())
    name = d.get("name")
    if not name or not _IDENT_RE.match(str(name)):
        raise ConfigError(f"{where}: variable needs a valid 'name' or an 'expr'")
    if "value" not in d:
        raise ConfigError(f"{where}: variable '{name}' has no value")
    return VariableSpec(name=str(name), value=d["value"])


def _parse_pipeline(data: Any, where: str) -> PipelineSpec:
    d = _normalize(data, where)
    name = d.get("name")
    if not name:
        raise ConfigError(f"{where}: missing 'name'")
    where = f"pipeline '{name}'"

    variables = [_parse_variable(v, f"{where} variable {i + 1}")
                 for i, v in enumerate(_list(d.get("variables"), where))]

    shapes = [k for k in ("stages", "stage", "steps") if d.get(k) is not None]
    if len(shapes) > 1:
        raise ConfigError(f"{where}: use only one of 'stages', 'stage' or 'steps'")
    stages: list[StageSpec] = []
    if "stages" in shapes:
        stages = [_parse_stage(s, f"{where} stage {i + 1}")
                  for i, s in enumerate(_list(d["stages"], where))]
    elif "stage" in shapes:
        stages = [_parse_stage(d["stage"], f"{where} stage")]
    elif "steps" in shapes:
        stages = [StageSpec(steps=_steps_text(d["steps"], where))]

    return PipelineSpec(name=str(name), variables=variables, stages=stages)


def _parse_schedule(data: Any, where: str) -> Schedule:
    d = _normalize(data, where)
    pipeline = d.get("pipeline")
    if not pipeline:
        raise ConfigError(f"{where}: missing 'pipeline'")
    if "every" not in d:
        raise ConfigError(f"{where}: missing 'every'")
    iterations = d.get("iterations") or 0
    if isinstance(iterations, bool) or not isinstance(iterations, int) or iterations < 0:
        raise ConfigError(f"{where}: 'iterations' must be a non-negative integer")
    return Schedule(
        name=str(d.get("name") or pipeline),
        pipeline=str(pipeline),
        every=parse_duration(d["every"]),
        iterations=iterations,
    )


def load_config(source: str) -> Config:
    """Parse YAML config text. Raises ConfigError."""
    try:
        data = yaml.safe_load(source)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML: {exc}") from exc
    if data is None:
        return Config()
    root = _normalize(data, "config")

    pipelines = [_parse_pipeline(p, f"pipeline {i + 1}")
                 for i, p in enumerate(_list(root.get("pipelines"), "pipelines"))]
    seen: set[str] = set()
    for p in pipelines:
        if p.name in seen:
            raise ConfigError(f"pipeline '{p.name}' defined twice")
        seen.add(p.name)

    schedules = [_parse_schedule(s, f"schedule {i + 1}")
                 for i, s in enumerate(_list(root.get("schedules"), "schedules"))]
    return Config(pipelines=pipelines, schedules=schedules)


def load_config_file(path: str) -> Config:
    with open(path, encoding="utf-8") as f:
        return load_config(f.read())
