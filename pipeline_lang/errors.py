"""Error types for pipeline-lang with source location context."""

from __future__ import annotations

from typing import Iterator


class PipelineLangError(Exception):
    """Base error with optional source location."""

    def __init__(self, message: str, line: int | None = None, column: int | None = None):
        self.message = message
        self.line = line
        self.column = column
        loc = ""
        if line is not None:
            loc = f" (line {line}"
            if column is not None:
                loc += f", col {column}"
            loc += ")"
        super().__init__(f"{message}{loc}")


class ParseError(PipelineLangError):
    """Raised when source code cannot be scanned or parsed."""

    def __init__(self, message: str, line: int | None = None, column: int | None = None,
                 errors: list[PipelineLangError] | None = None):
        super().__init__(message, line, column)
        self.errors = errors or []


class EvalError(PipelineLangError):
    """Raised when evaluating a pipeline fails."""

    def __init__(self, message: str, line: int | None = None, column: int | None = None,
                 errors: list[PipelineLangError] | None = None):
        super().__init__(message, line, column)
        self.errors = errors or []


class ConfigError(PipelineLangError):
    """Raised when a scheduler config file is malformed."""


class ScheduleError(PipelineLangError):
    """Raised when a job cannot be registered with the scheduler."""


class ErrorList:
    """Positional errors collected in the order they were reported."""

    def __init__(self, error_type: type[PipelineLangError] = ParseError):
        self._errors: list[PipelineLangError] = []
        self._error_type = error_type

    def add(self, pos, message: str) -> None:
        if pos is None:
            self._errors.append(PipelineLangError(message))
        else:
            self._errors.append(PipelineLangError(message, pos.line, pos.column))

    def append(self, error: PipelineLangError) -> None:
        self._errors.append(error)

    def __len__(self) -> int:
        return len(self._errors)

    def __iter__(self) -> Iterator[PipelineLangError]:
        return iter(self._errors)

    def __bool__(self) -> bool:
        return bool(self._errors)

    def clear(self) -> None:
        self._errors.clear()

    def err(self) -> PipelineLangError | None:
        """Join all collected errors into one, or None when empty."""
        if not self._errors:
            return None
        first = self._errors[0]
        if len(self._errors) == 1:
            return self._error_type(first.message, first.line, first.column, errors=list(self._errors))
        message = "\n".join(str(e) for e in self._errors)
        return self._error_type(message, errors=list(self._errors))
