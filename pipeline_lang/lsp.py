"""pipeline-lang Language Server Protocol (LSP) implementation.

Provides:
- Diagnostics (parse errors with their source positions)
- Autocompletion (keywords, built-in steps, constants)
- Hover information (built-in step documentation and parameters)

Requires: pygls (`pip install pipeline-lang[lsp]`)

Usage:
    python -m pipeline_lang.lsp
"""

from __future__ import annotations

import logging

try:
    from lsprotocol import types
    from pygls.lsp.server import LanguageServer
except ImportError:
    raise ImportError(
        "LSP dependencies not installed. Run: pip install pipeline-lang[lsp]"
    )

from .builtin_steps import BUILTIN_STEPS, new_base_scope
from .errors import ParseError, PipelineLangError
from .parser import parse_file

logger = logging.getLogger(__name__)

SOURCE = "pipeline-lang"

# ---------------------------------------------------------------------------
# Completion data
# ---------------------------------------------------------------------------

KEYWORD_COMPLETIONS = [
    ("pipeline", "Declare a pipeline", "pipeline('${1:name}') {\n  stages {\n    $0\n  }\n}"),
    ("stages", "Ordered list of stages", "stages {\n  $0\n}"),
    ("stage", "A named stage", "stage('${1:name}') {\n  steps {\n    $0\n  }\n}"),
    ("steps", "Statements run by a stage", "steps {\n  $0\n}"),
    ("when", "Run the stage only if the condition is true", "when { $0 }"),
    ("vars", "Variable declarations", "vars {\n  $0\n}"),
    ("true", "Boolean true", None),
    ("false", "Boolean false", None),
]

PATH_COMPLETIONS = [
    ("size", "Number of elements"),
    ("contains", "True if the collection holds the value"),
    ("find", "First element matching a predicate"),
    ("findAll", "All elements matching a predicate"),
    ("any", "True if any element matches a predicate"),
    ("every", "True if every element matches a predicate"),
    ("select", "Project every element through a closure"),
    ("keys", "Map keys"),
    ("values", "Map values"),
    ("containsKey", "True if the map has the key"),
]

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

server = LanguageServer("pipeline-lang-lsp", "v0.1.0")


@server.feature(types.TEXT_DOCUMENT_DID_OPEN)
def did_open(params: types.DidOpenTextDocumentParams) -> None:
    _validate_document(params.text_document.uri, params.text_document.text)


@server.feature(types.TEXT_DOCUMENT_DID_SAVE)
def did_save(params: types.DidSaveTextDocumentParams) -> None:
    doc = server.workspace.get_text_document(params.text_document.uri)
    _validate_document(params.text_document.uri, doc.source)


@server.feature(types.TEXT_DOCUMENT_DID_CHANGE)
def did_change(params: types.DidChangeTextDocumentParams) -> None:
    doc = server.workspace.get_text_document(params.text_document.uri)
    _validate_document(params.text_document.uri, doc.source)


@server.feature(types.TEXT_DOCUMENT_COMPLETION)
def completion(params: types.CompletionParams) -> types.CompletionList:
    """Provide autocompletion for keywords, built-in steps and path members."""
    return types.CompletionList(is_incomplete=False, items=completion_items())


@server.feature(types.TEXT_DOCUMENT_HOVER)
def hover(params: types.HoverParams) -> types.Hover | None:
    """Show the documentation of the built-in step under the cursor."""
    doc = server.workspace.get_text_document(params.text_document.uri)
    lines = doc.source.splitlines()
    if params.position.line >= len(lines):
        return None
    word = get_word_at_position(lines[params.position.line], params.position.character)
    content = step_hover(word)
    if content is None:
        return None
    return types.Hover(
        contents=types.MarkupContent(kind=types.MarkupKind.Markdown, value=content)
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def completion_items() -> list[types.CompletionItem]:
    items: list[types.CompletionItem] = []

    for keyword, desc, snippet in KEYWORD_COMPLETIONS:
        item = types.CompletionItem(
            label=keyword,
            kind=types.CompletionItemKind.Keyword,
            detail=desc,
        )
        if snippet:
            item.insert_text = snippet
            item.insert_text_format = types.InsertTextFormat.Snippet
        items.append(item)

    for name, step in BUILTIN_STEPS.items():
        items.append(types.CompletionItem(
            label=name,
            kind=types.CompletionItemKind.Function,
            detail=_first_line(step.doc),
        ))

    for member, desc in PATH_COMPLETIONS:
        items.append(types.CompletionItem(
            label=member,
            kind=types.CompletionItemKind.Method,
            detail=desc,
        ))

    return items


def step_hover(word: str) -> str | None:
    """Markdown documentation for a built-in step, or None."""
    step = BUILTIN_STEPS.get(word)
    if step is None:
        return None
    lines = [f"**{word}**", "", step.doc or "Built-in step."]
    params = step.params()
    if params:
        lines.append("")
        lines.append("Parameters:")
        for p in params:
            flags = []
            if p.position is not None:
                flags.append(f"position {p.position}")
            if p.required:
                flags.append("required")
            suffix = f" ({', '.join(flags)})" if flags else ""
            lines.append(f"- `{p.name}`{suffix}")
    return "\n".join(lines)


def diagnostics_for(source: str) -> list[types.Diagnostic]:
    """Parse ``source`` and turn every parse error into a diagnostic."""
    try:
        parse_file(source, new_base_scope())
    except ParseError as e:
        return [_diagnostic(err) for err in (e.errors or [e])]
    return []


def _diagnostic(error: PipelineLangError) -> types.Diagnostic:
    line = max(0, (error.line or 1) - 1)
    col = max(0, (error.column or 1) - 1)
    return types.Diagnostic(
        range=types.Range(
            start=types.Position(line=line, character=col),
            end=types.Position(line=line, character=col + 1),
        ),
        message=error.message,
        severity=types.DiagnosticSeverity.Error,
        source=SOURCE,
    )


def _validate_document(uri: str, source: str) -> None:
    """Parse the document and publish its diagnostics."""
    diagnostics = diagnostics_for(source)
    logger.debug("%s: %d diagnostic(s)", uri, len(diagnostics))
    server.text_document_publish_diagnostics(
        types.PublishDiagnosticsParams(uri=uri, diagnostics=diagnostics)
    )


def get_word_at_position(line: str, character: int) -> str:
    """Extract the word at the given character position."""
    if character >= len(line):
        return ""
    start = character
    while start > 0 and (line[start - 1].isalnum() or line[start - 1] == "_"):
        start -= 1
    end = character
    while end < len(line) and (line[end].isalnum() or line[end] == "_"):
        end += 1
    return line[start:end]


def _first_line(text: str) -> str:
    return text.strip().splitlines()[0] if text.strip() else ""


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Start the LSP server."""
    server.start_io()


if __name__ == "__main__":
    main()
