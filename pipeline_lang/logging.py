"""Per-stage run logs.

An ``ExecutionLogger`` follows one run through its stages. Each stage gets
a ``StageLog`` that ends as completed, failed or skipped; the ``RunLog``
collects them together with errors raised outside any stage (pipeline
``vars`` blocks, for instance).
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field

STATUSES = ("completed", "skipped", "failed")


@dataclass
class StageLog:
    """What happened to one stage."""
    stage: str
    status: str = "started"
    started_at: float = field(default_factory=time.time)
    duration_ms: float | None = None
    error: str | None = None
    reason: str | None = None
    _clock: float = field(default_factory=time.perf_counter, repr=False, compare=False)

    @property
    def label(self) -> str:
        return self.stage or "<unnamed>"

    def end(self, status: str, *, error: str | None = None, reason: str | None = None) -> None:
        self.status = status
        self.error = error
        self.reason = reason
        if status != "skipped":
            self.duration_ms = (time.perf_counter() - self._clock) * 1000

    def to_dict(self) -> dict:
        d = {"stage": self.stage, "status": self.status, "started_at": self.started_at}
        if self.duration_ms is not None:
            d["duration_ms"] = round(self.duration_ms, 3)
        if self.error:
            d["error"] = self.error
        if self.reason:
            d["reason"] = self.reason
        return d

    def describe(self) -> str:
        """One summary line: status, stage name and outcome."""
        if self.status == "skipped":
            detail = f"({self.reason})" if self.reason else ""
        else:
            detail = f"{self.duration_ms:.1f}ms" if self.duration_ms is not None else ""
        return f"{self.status:<9} {self.label} {detail}".rstrip()


@dataclass
class RunLog:
    """Stages of one run, in execution order."""
    pipeline: str
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    status: str = "running"
    stages: list[StageLog] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def total_duration_ms(self) -> float | None:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at) * 1000

    def counts(self) -> dict[str, int]:
        """Number of stages per final status."""
        counts = dict.fromkeys(STATUSES, 0)
        for s in self.stages:
            if s.status in counts:
                counts[s.status] += 1
        return counts

    @property
    def success_count(self) -> int:
        return self.counts()["completed"]

    @property
    def skipped(self) -> list[str]:
        return [s.stage for s in self.stages if s.status == "skipped"]

    @property
    def failed(self) -> list[str]:
        return [s.stage for s in self.stages if s.status == "failed"]

    def to_dict(self) -> dict:
        d = {
            "pipeline": self.pipeline,
            "status": self.status,
            "started_at": self.started_at,
            "counts": self.counts(),
            "stages": [s.to_dict() for s in self.stages],
        }
        if self.finished_at is not None:
            d["finished_at"] = self.finished_at
            d["total_duration_ms"] = round(self.total_duration_ms, 3)
        if self.errors:
            d["errors"] = list(self.errors)
        return d

    def to_json(self, pretty: bool = False) -> str:
        return json.dumps(self.to_dict(), indent=2 if pretty else None, default=str)

    def summary(self) -> str:
        head = f"Pipeline: {self.pipeline or '<unnamed>'} [{self.status}]"
        if self.total_duration_ms is not None:
            head += f" in {self.total_duration_ms:.1f}ms"
        counts = ", ".join(f"{n} {status}" for status, n in self.counts().items())
        lines = [head, f"  stages: {counts}"]
        lines.extend(f"  {s.describe()}" for s in self.stages)
        if self.errors:
            lines.append("errors:")
            lines.extend(f"  {e}" for e in self.errors)
        return "\n".join(lines)


class ExecutionLogger:
    """Records stage outcomes for one run."""

    def __init__(self, pipeline: str):
        self.run = RunLog(pipeline=pipeline)

    def start_stage(self, stage: str) -> StageLog:
        log = StageLog(stage=stage)
        self.run.stages.append(log)
        return log

    def complete_stage(self, log: StageLog) -> None:
        log.end("completed")

    def fail_stage(self, log: StageLog, error: str) -> None:
        log.end("failed", error=error)
        self.run.errors.append(f"{log.stage}: {error}" if log.stage else error)

    def skip_stage(self, log: StageLog, reason: str = "") -> None:
        log.end("skipped", reason=reason or None)

    def error(self, message: str) -> None:
        """Record an error raised outside any stage."""
        self.run.errors.append(message)

    def finish(self, status: str | None = None) -> RunLog:
        if status is None:
            status = "failed" if self.run.errors else "completed"
        self.run.status = status
        self.run.finished_at = time.time()
        return self.run
