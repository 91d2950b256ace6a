"""Periodic pipeline runner.

Each schedule entry becomes a ``Job`` that fires every ``every`` seconds,
optionally a fixed number of times. A dispatcher thread owns the job
table; every firing runs on its own worker thread with a fresh base
scope, freshly parsed source and its own runtime, so a failing run never
affects the dispatcher or other jobs.
"""

from __future__ import annotations

import datetime
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .builtin_steps import EnvVars, new_base_scope
from .config import Config, Schedule
from .errors import PipelineLangError, ScheduleError
from .parser import parse_file
from .reflect import lower_camel, to_value
from .runtime import Runtime
from .scope import Scope
from .steps import Step
from .values import Expando

logger = logging.getLogger(__name__)

Option = Callable[[Scope], None]

__all__ = [
    "EnvVars",
    "Job",
    "Option",
    "Scheduler",
    "with_global_vars",
    "with_params",
    "with_steps",
]


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------

def with_steps(steps: dict[str, Step]) -> Option:
    """Install steps under their script-visible names."""
    def apply(scope: Scope) -> None:
        for name, step in steps.items():
            scope.define(name, step)
    return apply


def with_params(params: dict[str, Any]) -> Option:
    """Insert or extend the ``params`` map."""
    def apply(scope: Scope) -> None:
        existing, found = scope.lookup_local("params")
        target = existing if found and isinstance(existing, Expando) else Expando()
        for key, value in params.items():
            target.set_field(str(key), to_value(value))
        scope.define("params", target)
    return apply


def with_global_vars(objects: dict[type | str, Any]) -> Option:
    """Expose host objects to scripts.

    A string key is the variable name. A type key exposes the object under
    the lower camel case type name and registers it as run context, where
    steps find it with ``ctx.get(type)``.
    """
    def apply(scope: Scope) -> None:
        for key, obj in objects.items():
            if isinstance(key, type):
                scope.register(obj, key)
                scope.define(lower_camel(key.__name__), to_value(obj))
            else:
                scope.define(str(key), to_value(obj))
    return apply


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class Job:
    """A registered schedule and its run statistics."""
    name: str
    pipeline: str
    every: float
    iterations: int = 0
    runs: int = 0
    completed: int = 0
    failures: int = 0
    last_error: str | None = None
    last_run: datetime.datetime | None = None
    next_run: datetime.datetime | None = None
    _next_at: float = field(default=0.0, repr=False)

    @property
    def done(self) -> bool:
        """True once a bounded job has fired all its iterations."""
        return self.iterations > 0 and self.runs >= self.iterations


class Scheduler:
    """Runs the pipelines of a ``Config`` according to its schedules."""

    def __init__(self, config: Config):
        self.config = config
        self._jobs: list[Job] = []
        self._options: tuple[Option, ...] = ()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._dispatcher: threading.Thread | None = None
        self._workers: list[threading.Thread] = []

    @property
    def jobs(self) -> list[Job]:
        with self._lock:
            return list(self._jobs)

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and self._dispatcher.is_alive()

    def start(self, *options: Option) -> None:
        """Register one job per schedule and start dispatching."""
        if self._dispatcher is not None:
            raise ScheduleError("scheduler already started")
        jobs = [self._register(s) for s in self.config.schedules]

        self._options = options
        self._stop.clear()
        start = time.monotonic()
        now = _utcnow()
        for job in jobs:
            job._next_at = start + job.every
            job.next_run = now + datetime.timedelta(seconds=job.every)
        with self._lock:
            self._jobs = jobs

        self._dispatcher = threading.Thread(target=self._dispatch, name="pipeline-scheduler", daemon=True)
        self._dispatcher.start()
        logger.info("scheduler started with %d job(s)", len(jobs))

    def stop(self, wait: bool = False, timeout: float | None = None) -> None:
        """Deregister all jobs. Runs in flight finish unless ``wait`` joins them."""
        self._stop.set()
        if self._dispatcher is not None:
            self._dispatcher.join(timeout=timeout)
            self._dispatcher = None
        with self._lock:
            workers = list(self._workers)
            self._jobs = []
        if wait:
            for t in workers:
                t.join(timeout=timeout)
        logger.info("scheduler stopped")

    def _register(self, schedule: Schedule) -> Job:
        if self.config.pipeline(schedule.pipeline) is None:
            raise ScheduleError(f"job '{schedule.name}': pipeline '{schedule.pipeline}' not found")
        if schedule.every <= 0:
            raise ScheduleError(f"job '{schedule.name}': invalid interval {schedule.every}s")
        if schedule.iterations < 0:
            raise ScheduleError(f"job '{schedule.name}': invalid iterations {schedule.iterations}")
        return Job(schedule.name, schedule.pipeline, schedule.every, schedule.iterations)

    # -- dispatcher ---------------------------------------------------------

    def _dispatch(self) -> None:
        while not self._stop.is_set():
            now = time.monotonic()
            with self._lock:
                for job in self._jobs:
                    if not job.done and job._next_at <= now:
                        self._fire(job, now)
                pending = [j._next_at for j in self._jobs if not j.done]
                self._workers = [t for t in self._workers if t.is_alive()]
            if not pending:
                return
            self._stop.wait(max(0.0, min(pending) - time.monotonic()))

    def _fire(self, job: Job, now: float) -> None:
        job.runs += 1
        job.last_run = _utcnow()
        job._next_at += job.every
        if job._next_at <= now:
            # Missed slots are dropped.
            job._next_at = now + job.every
        job.next_run = None if job.done else job.last_run + datetime.timedelta(
            seconds=job._next_at - now)
        worker = threading.Thread(target=self._run_job, args=(job,),
                                  name=f"pipeline-job-{job.name}", daemon=True)
        self._workers.append(worker)
        worker.start()

    # -- worker -------------------------------------------------------------

    def build_scope(self) -> Scope:
        """A fresh base scope with the built-in steps and all options applied."""
        scope = new_base_scope(env=EnvVars.capture())
        for option in self._options:
            option(scope)
        return scope

    def run_pipeline(self, name: str) -> Any:
        """Parse and run one pipeline of the config once; returns the RunResult."""
        spec = self.config.pipeline(name)
        if spec is None:
            raise ScheduleError(f"pipeline '{name}' not found")
        file = parse_file(spec.source(), self.build_scope())
        return Runtime().run(file, name)

    def _run_job(self, job: Job) -> None:
        error: str | None = None
        try:
            result = self.run_pipeline(job.pipeline)
            if result.error is not None:
                error = str(result.error)
        except PipelineLangError as e:
            error = str(e)
        except Exception as e:
            logger.exception("job '%s' (pipeline '%s') crashed", job.name, job.pipeline)
            error = f"{type(e).__name__}: {e}"

        with self._lock:
            job.completed += 1
            if error is not None:
                job.failures += 1
                job.last_error = error
        if error is not None:
            logger.error("job '%s' (pipeline '%s') failed: %s", job.name, job.pipeline, error)
