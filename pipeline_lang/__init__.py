"""pipeline-lang: a small scripting language for staged pipelines."""

from .ast_nodes import File, NodeVisitor, Pipeline, Stage
from .builtin_steps import BUILTIN_STEPS, EnvVars, new_base_scope
from .config import Config, PipelineSpec, Schedule, load_config, load_config_file, parse_duration
from .errors import (
    ConfigError,
    ErrorList,
    EvalError,
    ParseError,
    PipelineLangError,
    ScheduleError,
)
from .logging import ExecutionLogger, RunLog, StageLog
from .parser import parse_expr, parse_file, universe
from .reflect import Reference
from .runtime import RunResult, Runtime
from .scanner import Scanner, tokenize
from .scheduler import Job, Scheduler, with_global_vars, with_params, with_steps
from .scope import Scope
from .steps import Execution, Step, StepContext, param
from .values import Array, Bool, Closure, Expando, KeyValuePair, Number, String, Value

__all__ = [
    "parse_file",
    "parse_expr",
    "universe",
    "new_base_scope",
    "tokenize",
    "Scanner",
    "Runtime",
    "RunResult",
    "Scope",
    "File",
    "Pipeline",
    "Stage",
    "NodeVisitor",
    "Step",
    "Execution",
    "StepContext",
    "param",
    "BUILTIN_STEPS",
    "EnvVars",
    "Value",
    "Number",
    "String",
    "Bool",
    "Array",
    "Expando",
    "KeyValuePair",
    "Closure",
    "Reference",
    "Config",
    "PipelineSpec",
    "Schedule",
    "load_config",
    "load_config_file",
    "parse_duration",
    "Scheduler",
    "Job",
    "with_steps",
    "with_params",
    "with_global_vars",
    "ExecutionLogger",
    "RunLog",
    "StageLog",
    "PipelineLangError",
    "ParseError",
    "EvalError",
    "ConfigError",
    "ScheduleError",
    "ErrorList",
]
