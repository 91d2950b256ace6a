"""Tests for pipeline_lang.parser."""

import pytest

from pipeline_lang import ast_nodes as ast
from pipeline_lang.builtin_steps import new_base_scope
from pipeline_lang.errors import ParseError
from pipeline_lang.parser import parse_expr, parse_file, universe
from pipeline_lang.scope import UNDEFINED, Scope
from pipeline_lang.tokens import Token
from pipeline_lang.values import Number


def num(text):
    return ast.Literal(Token.NUMBER, text)


def with_names(*names):
    return Scope(universe(), {n: Number(0) for n in names})


# ---------------------------------------------------------------------------
# File structure
# ---------------------------------------------------------------------------

class TestFileStructure:

    def test_minimal_pipeline(self):
        f = parse_file("pipeline(){stages{stage(){steps{x := 12}}}}")
        assert len(f.pipelines) == 1
        p = f.pipelines[0]
        assert p.name == ""
        assert len(p.stages) == 1
        assert len(p.stages[0].steps.stmts) == 1

    def test_named_pipeline_and_stages(self, multi_stage_source):
        f = parse_file(multi_stage_source, new_base_scope())
        p = f.pipeline("build")
        assert p is not None
        assert [s.name for s in p.stages] == ["prepare", "skip-me", "finish"]
        assert len(p.vars) == 1
        assert p.stages[0].vars is not None
        assert p.stages[1].when is not None

    def test_vars_directly_in_pipeline(self):
        f = parse_file("pipeline('p') { vars { a := 1 } stages { stage('s') { steps { a = 2 } } } }")
        assert len(f.pipelines[0].vars) == 1

    def test_multiple_pipelines(self):
        f = parse_file("pipeline('a'){stages{}} pipeline('b'){stages{}}")
        assert [p.name for p in f.pipelines] == ["a", "b"]
        assert f.pipeline("c") is None

    def test_newlines_separate_statements(self):
        src = "pipeline('p') {\n stages {\n stage('s') {\n steps {\n a := 1\n b := a + 1\n }\n }\n }\n}"
        stage = parse_file(src).pipelines[0].stages[0]
        assert len(stage.steps.stmts) == 2

    def test_newline_inside_parens_is_not_a_separator(self):
        src = "pipeline('p') {stages {stage('s') {steps {\n a := (1 +\n 2)\n}}}}"
        stage = parse_file(src).pipelines[0].stages[0]
        assert len(stage.steps.stmts) == 1

    def test_scopes_are_nested(self):
        f = parse_file("pipeline('p') {stages {vars {a := 1} stage('s') {steps {b := a}}}}")
        p = f.pipelines[0]
        stage = p.stages[0]
        assert stage.scope.outer is p.scope
        assert p.scope.outer is f.scope
        assert stage.scope.lookup_local("b") == (UNDEFINED, True)
        assert p.scope.lookup_local("a") == (UNDEFINED, True)


# ---------------------------------------------------------------------------
# Scope discipline
# ---------------------------------------------------------------------------

class TestScopeDiscipline:

    def test_undefined_identifier(self):
        with pytest.raises(ParseError, match="identifier 'y' does not exist"):
            parse_file("pipeline(){stages{stage(){steps{x := y}}}}")

    def test_use_before_declaration(self):
        with pytest.raises(ParseError, match="identifier 'x' does not exist"):
            parse_file("pipeline(){stages{stage(){steps{y := x; x := 1}}}}")

    def test_self_reference_in_declaration(self):
        with pytest.raises(ParseError, match="identifier 'x' does not exist"):
            parse_file("pipeline(){stages{stage(){steps{x := x}}}}")

    def test_redeclaration(self):
        with pytest.raises(ParseError, match="identifier 'x' already defined"):
            parse_file("pipeline(){stages{stage(){steps{x := 1; x := 2}}}}")

    def test_assignment_needs_existing_binding(self):
        with pytest.raises(ParseError, match="identifier 'x' does not exist"):
            parse_file("pipeline(){stages{stage(){steps{x = 1}}}}")

    def test_stage_scopes_are_separate(self):
        with pytest.raises(ParseError, match="identifier 'a' does not exist"):
            parse_file("pipeline(){stages{stage('1'){steps{a := 1}} stage('2'){steps{b := a}}}}")

    def test_shadowing_in_inner_scope(self):
        parse_file("pipeline(){stages{vars{a := 1} stage(){steps{a := 2}}}}")

    def test_every_ident_resolves_in_scope_chain(self, multi_stage_source):
        scope = new_base_scope()
        f = parse_file(multi_stage_source, scope)
        for p in f.pipelines:
            for stage in p.stages:
                for node in ast.walk(stage.steps):
                    if isinstance(node, ast.Ident):
                        assert stage.scope.lookup(node.name)[1], node.name

    def test_closure_params_are_local(self):
        with pytest.raises(ParseError, match="identifier 'v' does not exist"):
            parse_file("pipeline(){stages{stage(){steps{f := {v => v}; x := v}}}}")


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

class TestExpressions:

    def test_precedence(self):
        x = parse_expr("1 + 2 * 3")
        assert x == ast.Binary(num("1"), Token.ADD, ast.Binary(num("2"), Token.MUL, num("3")))

    def test_left_associative(self):
        x = parse_expr("1 - 2 - 3")
        assert x == ast.Binary(ast.Binary(num("1"), Token.SUB, num("2")), Token.SUB, num("3"))

    def test_logical_precedence(self):
        x = parse_expr("true || false && false")
        assert x.op is Token.LOR
        assert x.rhs.op is Token.LAND

    def test_comparison_binds_looser_than_arithmetic(self):
        x = parse_expr("1 + 1 == 2")
        assert x.op is Token.EQL
        assert x.lhs.op is Token.ADD

    def test_unary(self):
        x = parse_expr("-2 * 3")
        assert x == ast.Binary(ast.Unary(Token.SUB, num("2")), Token.MUL, num("3"))

    def test_parenthesized(self):
        x = parse_expr("(1 + 2) * 3")
        assert isinstance(x.lhs, ast.ParenExpr)

    def test_call_without_parens(self):
        x = parse_expr("echo 'a', message: 1", new_base_scope())
        assert isinstance(x, ast.Call)
        assert x.func == ast.Ident("echo")
        assert [a.name for a in x.args] == ["", "message"]

    def test_minus_after_name_is_binary(self):
        x = parse_expr("a -1", with_names("a"))
        assert isinstance(x, ast.Binary)
        assert x.op is Token.SUB

    def test_path_with_call(self):
        x = parse_expr("a.b.findAll {v => v}", with_names("a"))
        assert isinstance(x, ast.PathExpr)
        assert x.path == "findAll"
        assert isinstance(x.args[0].value, ast.Closure)
        assert x.x == ast.PathExpr(ast.Ident("a"), "b")

    def test_star_segments(self):
        x = parse_expr("a.*.b.**", with_names("a"))
        assert x.path == "**"
        assert x.x.x.path == "*"

    def test_quoted_segments(self):
        x = parse_expr("a.'key with space'.'..'", with_names("a"))
        assert x.path == ".."
        assert x.x.path == "key with space"

    def test_keyword_as_segment(self):
        x = parse_expr("a.stage", with_names("a"))
        assert x.path == "stage"

    def test_adjacent_bracket_is_index(self):
        x = parse_expr("a[0]", with_names("a"))
        assert x == ast.IndexExpr(ast.Ident("a"), num("0"))

    def test_spaced_bracket_is_argument(self):
        x = parse_expr("a [0]", with_names("a"))
        assert isinstance(x, ast.Call)
        assert isinstance(x.args[0].value, ast.SequenceExpr)

    def test_index_after_path_call(self):
        x = parse_expr("a.findAll {v => v}[0]", with_names("a"))
        assert isinstance(x, ast.IndexExpr)
        assert x.x.path == "findAll"

    def test_range(self):
        x = parse_expr("1..3")
        assert x == ast.RangeExpr(num("1"), num("3"))

    def test_list_and_map_literals(self):
        lst = parse_expr("[1, 2]")
        assert isinstance(lst, ast.SequenceExpr) and not lst.is_map
        m = parse_expr("[a: 1, 'b c': 2]")
        assert m.is_map
        assert m.values[0].key == ast.Literal(Token.RSTRING, "a")
        assert parse_expr("[]") == ast.SequenceExpr(())

    def test_mixed_sequence(self):
        with pytest.raises(ParseError, match="mixed list and map elements"):
            parse_expr("[a: 1, 2]")

    def test_closure(self):
        x = parse_expr("{a, b => a + b}")
        assert x.params == ("a", "b")
        assert len(x.block.stmts) == 1
        assert x.scope.lookup_local("a")[1]

    def test_closure_without_params(self):
        x = parse_expr("{1 + 2}")
        assert x.params == ()
        assert isinstance(x.block.stmts[0], ast.ExprStmt)

    def test_closure_statements_need_separator(self):
        with pytest.raises(ParseError, match="expected '\\}' but found 'b'"):
            parse_expr("{a b}", with_names("a", "b"))

    def test_trailing_tokens(self):
        with pytest.raises(ParseError, match="unexpected"):
            parse_expr("1 2")


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

def stmts(body):
    f = parse_file("pipeline(){stages{stage(){steps{" + body + "}}}}", new_base_scope())
    return f.pipelines[0].stages[0].steps.stmts


class TestStatements:

    def test_define(self):
        (s,) = stmts("x := 1")
        assert isinstance(s, ast.Assignment)
        assert s.tok is Token.DEFINE

    def test_compound_assignment(self):
        s = stmts("x := 1; x += 2")[1]
        assert s.tok is Token.ADD_ASSIGN

    def test_path_assignment_marks_lhs(self):
        s = stmts("m := [a: 1]; m.a = 2")[1]
        assert isinstance(s.lhs, ast.PathExpr)
        assert s.lhs.lhs

    def test_index_assignment(self):
        s = stmts("l := [1]; l[0] = 2")[1]
        assert isinstance(s.lhs, ast.IndexExpr)

    def test_inc_dec(self):
        inc, dec = stmts("x := 1; x++; x--")[1:]
        assert isinstance(inc, ast.IncDecStmt) and inc.tok is Token.INC
        assert dec.tok is Token.DEC

    def test_step_call_statement(self):
        (s,) = stmts("echo 'hi'")
        assert isinstance(s, ast.ExprStmt)
        assert isinstance(s.x, ast.Call)

    def test_cannot_assign_to_expression(self):
        with pytest.raises(ParseError, match="cannot assign to expression"):
            stmts("x := 1; (x) = 2")

    def test_define_needs_name(self):
        with pytest.raises(ParseError, match="non-name on left side of ':='"):
            stmts("m := [a: 1]; m.a := 2")

    def test_missing_separator(self):
        with pytest.raises(ParseError, match="expected ';'"):
            stmts("x := 1 y := 2")


# ---------------------------------------------------------------------------
# Errors and recovery
# ---------------------------------------------------------------------------

class TestErrors:

    def test_expected_token(self):
        with pytest.raises(ParseError, match="expected '\\(' but found '\\{'"):
            parse_file("pipeline {}")

    def test_top_level_garbage(self):
        with pytest.raises(ParseError, match="expected 'pipeline' but found 'x'"):
            parse_file("x")

    def test_redefine_steps_block(self):
        with pytest.raises(ParseError, match="redefine steps block"):
            parse_file("pipeline(){stages{stage(){steps{} steps{}}}}")

    def test_redefine_when_block(self):
        with pytest.raises(ParseError, match="redefine when block"):
            parse_file("pipeline(){stages{stage(){when{true} when{false}}}}")

    def test_vars_only_allow_assignments(self):
        with pytest.raises(ParseError, match="vars block only allows assignments"):
            parse_file("pipeline(){stages{stage(){vars{1 + 2}}}}")

    def test_errors_carry_positions(self):
        src = "pipeline('p') {\n  stages {\n    stage('s') {\n      steps {\n        echo y\n      }\n    }\n  }\n}"
        with pytest.raises(ParseError) as exc:
            parse_file(src, new_base_scope())
        assert (exc.value.line, exc.value.column) == (5, 14)

    def test_recovers_and_reports_every_stage(self):
        src = (
            "pipeline('p') {\n"
            "  stages {\n"
            "    stage('a') { steps { echo one } }\n"
            "    stage('b') { steps { x := ) } }\n"
            "    stage('c') { steps { echo three } }\n"
            "  }\n"
            "}\n"
        )
        with pytest.raises(ParseError) as exc:
            parse_file(src, new_base_scope())
        messages = [e.message for e in exc.value.errors]
        assert "identifier 'one' does not exist" in messages
        assert "identifier 'three' does not exist" in messages
        assert [e.line for e in exc.value.errors] == sorted(e.line for e in exc.value.errors)

    def test_recovers_across_pipelines(self):
        src = "pipeline('a') { stages { stage() { steps { echo a } } } }\npipeline('b') { stages { stage() { steps { echo b } } } }"
        with pytest.raises(ParseError) as exc:
            parse_file(src, new_base_scope())
        assert len(exc.value.errors) == 2
