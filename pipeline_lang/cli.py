"""CLI for pipeline-lang: run, check and inspect pipeline files."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time

from . import ast_nodes as ast
from .builtin_steps import new_base_scope
from .config import load_config_file
from .errors import PipelineLangError
from .parser import parse_file
from .runtime import Runtime
from .scanner import tokenize
from .scheduler import Scheduler, with_params
from .tokens import Token


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="pipeline-lang",
        description="Interpreter and scheduler for pipeline-lang scripts",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command")

    # run
    run_p = sub.add_parser("run", help="Parse and run a pipeline file")
    run_p.add_argument("file", help="Input pipeline file")
    run_p.add_argument("--pipeline", help="Run only the pipeline with this name")
    run_p.add_argument("--params", help="JSON object exposed to scripts as 'params'")
    run_p.add_argument("--json", action="store_true", help="Print the run log as JSON")

    # check
    check_p = sub.add_parser("check", help="Parse only and report errors")
    check_p.add_argument("file", help="Input pipeline file")

    # tokens
    tokens_p = sub.add_parser("tokens", help="Dump the token stream (debug)")
    tokens_p.add_argument("file", help="Input pipeline file")

    # ast
    ast_p = sub.add_parser("ast", help="Show parsed pipelines, stages and statements (debug)")
    ast_p.add_argument("file", help="Input pipeline file")

    # schedule
    schedule_p = sub.add_parser("schedule", help="Run the schedules of a YAML config")
    schedule_p.add_argument("file", help="Input YAML config")
    schedule_p.add_argument("--duration", type=float, default=None,
                            help="Stop after this many seconds (default: until Ctrl+C)")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "schedule":
            return _cmd_schedule(args.file, duration=args.duration)
        source = _read_file(args.file)
        if args.command == "run":
            return _cmd_run(source, pipeline=args.pipeline, params=args.params, as_json=args.json)
        elif args.command == "check":
            return _cmd_check(source)
        elif args.command == "tokens":
            return _cmd_tokens(source)
        elif args.command == "ast":
            return _cmd_ast(source)
    except FileNotFoundError:
        print(f"Error: file not found: {args.file}", file=sys.stderr)
        return 1
    except PipelineLangError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


def _read_file(path: str) -> str:
    with open(path, encoding="utf-8") as f:
        return f.read()


def _cmd_run(source: str, pipeline: str | None = None, params: str | None = None,
             as_json: bool = False) -> int:
    scope = new_base_scope()
    if params:
        try:
            data = json.loads(params)
        except json.JSONDecodeError as e:
            print(f"Error: invalid --params: {e}", file=sys.stderr)
            return 1
        if not isinstance(data, dict):
            print("Error: --params must be a JSON object", file=sys.stderr)
            return 1
        with_params(data)(scope)

    file = parse_file(source, scope)
    result = Runtime().run(file, pipeline)
    if as_json and result.run_log is not None:
        print(result.run_log.to_json(pretty=True))
    else:
        print(result.summary())
    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    return 0


def _cmd_check(source: str) -> int:
    file = parse_file(source, new_base_scope())
    stages = sum(len(p.stages) for p in file.pipelines)
    print(f"Valid: {len(file.pipelines)} pipeline(s), {stages} stage(s)")
    return 0


def _cmd_tokens(source: str) -> int:
    for pos, tok, lit in tokenize(source):
        text = repr(lit) if lit else ""
        print(f"{pos!s:>8}  {tok.name:<12} {text}")
    return 0


def _cmd_ast(source: str) -> int:
    file = parse_file(source, new_base_scope())
    _print_ast(file)
    return 0


def _print_ast(file: ast.File) -> None:
    for p in file.pipelines:
        print(f"Pipeline: {p.name!r}")
        for block in p.vars:
            _print_stmts("vars", block.specs, "  ")
        for stage in p.stages:
            print(f"\n  Stage: {stage.name!r}")
            if stage.vars is not None:
                _print_stmts("vars", stage.vars.specs, "    ")
            if stage.when is not None:
                print(f"    when {_fmt_node(stage.when)}")
            if stage.steps is not None:
                _print_stmts("steps", stage.steps.stmts, "    ")


def _print_stmts(label: str, stmts, indent: str) -> None:
    print(f"{indent}{label}:")
    for stmt in stmts:
        print(f"{indent}  {stmt.pos}  {_fmt_node(stmt)}")


def _fmt_node(node: ast.Node) -> str:
    if isinstance(node, ast.Ident):
        return node.name
    if isinstance(node, ast.Literal):
        return repr(node.value) if node.kind is not Token.NUMBER else node.value
    if isinstance(node, ast.Binary):
        return f"({_fmt_node(node.lhs)} {node.op} {_fmt_node(node.rhs)})"
    if isinstance(node, ast.Unary):
        return f"{node.op}{_fmt_node(node.x)}"
    if isinstance(node, ast.ParenExpr):
        return _fmt_node(node.x)
    if isinstance(node, ast.Call):
        args = ", ".join(_fmt_arg(a) for a in node.args)
        return f"{_fmt_node(node.func)}({args})"
    if isinstance(node, ast.PathExpr):
        call = ""
        if node.args is not None:
            call = "(" + ", ".join(_fmt_arg(a) for a in node.args) + ")"
        return f"{_fmt_node(node.x)}.{node.path}{call}"
    if isinstance(node, ast.IndexExpr):
        return f"{_fmt_node(node.x)}[{_fmt_node(node.index)}]"
    if isinstance(node, ast.RangeExpr):
        return f"{_fmt_node(node.start)}..{_fmt_node(node.end)}"
    if isinstance(node, ast.SequenceExpr):
        return "[" + ", ".join(_fmt_node(v) for v in node.values) + "]"
    if isinstance(node, ast.KeyValueExpr):
        return f"{_fmt_node(node.key)}: {_fmt_node(node.value)}"
    if isinstance(node, ast.Closure):
        params = ", ".join(node.params)
        body = "; ".join(_fmt_node(s) for s in node.block.stmts)
        return f"{{{params} => {body}}}" if params else f"{{{body}}}"
    if isinstance(node, ast.Assignment):
        return f"{_fmt_node(node.lhs)} {node.tok} {_fmt_node(node.rhs)}"
    if isinstance(node, ast.IncDecStmt):
        return f"{_fmt_node(node.x)}{node.tok}"
    if isinstance(node, ast.ExprStmt):
        return _fmt_node(node.x)
    return type(node).__name__


def _fmt_arg(arg: ast.Argument) -> str:
    value = _fmt_node(arg.value)
    return f"{arg.name}: {value}" if arg.name else value


def _cmd_schedule(path: str, duration: float | None = None) -> int:
    config = load_config_file(path)
    if not config.schedules:
        print("Error: no schedules defined", file=sys.stderr)
        return 1

    scheduler = Scheduler(config)
    scheduler.start()
    jobs = scheduler.jobs
    try:
        if duration is None:
            while scheduler.running:
                time.sleep(0.5)
        else:
            time.sleep(duration)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop(wait=True)

    failed = 0
    for job in jobs:
        print(f"{job.name}: {job.runs} run(s), {job.failures} failure(s)")
        failed += job.failures
    return 1 if failed else 0
