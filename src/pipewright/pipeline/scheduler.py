"""Scheduler — drives one pipeline run over its dependency graph.

A single asyncio task (the one awaiting ``run()``) owns every JobInstance.
Workers never touch instance state: they post ``_Started`` / ``_Finished``
events to the scheduler's queue, and so do the external controls
(``approve``, ``cancel``, ``interrupt``). The loop blocks on that queue; there
is no polling.

Eligibility of a Pending instance is decided once all of its predecessors
are terminal (a ManualPending ``allow_failure`` predecessor reached through a
stage edge does not block):

    on_success  Eligible, or Canceled if a required predecessor failed
    manual      ManualPending, or Canceled if a required predecessor failed
    on_failure  Eligible if a required predecessor failed, else Skipped
    always      Eligible

Instances canceled because of an upstream failure count as failed for the
purpose of ``on_failure`` dependents further down.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from pipewright.pipeline.errors import JobTimeoutError, NotInterruptibleError
from pipewright.pipeline.executor import JobResult, JobRunner
from pipewright.pipeline.graph import PipelineGraph
from pipewright.pipeline.models import (
    TERMINAL_STATUSES,
    EdgeKind,
    ErrorKind,
    ExecutionReport,
    JobInstance,
    JobStatus,
    JobTemplate,
    PipelineRunContext,
    PipelineStatus,
    Runner,
    WhenPolicy,
)
from pipewright.pipeline.reporter import build_report
from pipewright.pipeline.variables import build_environment

logger = logging.getLogger("pipewright.pipeline.scheduler")

DEFAULT_CONCURRENCY = 4
DEFAULT_GRACE_PERIOD = 10.0


class TransitionListener(Protocol):
    """Called after every batch of instance state changes (e.g. persistence)."""

    async def __call__(self, run_context: PipelineRunContext, instance: JobInstance) -> None: ...


# ── Events ───────────────────────────────────────────────────────────────────


@dataclass
class _Started:
    key: str


@dataclass
class _Finished:
    key: str
    result: JobResult


@dataclass
class _Approve:
    key: str


@dataclass
class _Cancel:
    reason: str
    interrupt: bool = False


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Scheduler ────────────────────────────────────────────────────────────────


class Scheduler:
    """Runs the instances of one PipelineGraph to completion.

    Usage::

        scheduler = Scheduler(graph, run_context, ScriptRunner(workdir))
        report = await scheduler.run()

    ``approve``, ``cancel`` and ``interrupt`` may be called from other tasks
    while ``run()`` is in progress.
    """

    def __init__(
        self,
        graph: PipelineGraph,
        run_context: PipelineRunContext,
        runner: JobRunner,
        *,
        runners: list[Runner] | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        wait_for_manual: bool = False,
        project_dir: Path | None = None,
        listener: TransitionListener | None = None,
    ):
        self.graph = graph
        self.run_context = run_context
        self._runner = runner
        self._concurrency = max(1, concurrency)
        self._runners = list(runners) if runners else [
            Runner(name="local", tags=["*"], capacity=self._concurrency)
        ]
        self._grace_period = grace_period
        self._wait_for_manual = wait_for_manual
        self._project_dir = Path(project_dir) if project_dir is not None else Path.cwd()
        self._listener = listener

        self._events: asyncio.Queue = asyncio.Queue()
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._runner_load: dict[str, int] = {r.name: 0 for r in self._runners}
        self._order = graph.topological_order()
        self._priority = graph.descendant_counts()
        self._failure_canceled: set[str] = set()
        self._dirty: dict[str, None] = {}

        self._canceled = False
        self._cancel_reason: str | None = None
        self._notices: list[str] = []
        self._status = PipelineStatus.PENDING
        self._started_at: datetime | None = None
        self._report: ExecutionReport | None = None
        self._done = asyncio.Event()

    # ── Read-only views ──────────────────────────────────────────────────────

    @property
    def run_id(self) -> str:
        return self.run_context.run_id

    @property
    def status(self) -> PipelineStatus:
        return self._status

    @property
    def report(self) -> ExecutionReport | None:
        return self._report

    @property
    def notices(self) -> list[str]:
        return list(self._notices)

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def add_notice(self, message: str) -> None:
        self._notices.append(message)

    def is_interruptible(self) -> bool:
        """True unless the run opted out or a non-interruptible job has started."""
        if not self.run_context.interruptible:
            return False
        return not any(
            not instance.interruptible and instance.started_at is not None
            for instance in self.graph.instances.values()
        )

    async def wait(self) -> ExecutionReport:
        """Block until the run has finished and return its report."""
        await self._done.wait()
        assert self._report is not None
        return self._report

    # ── External controls ────────────────────────────────────────────────────

    def approve(self, key: str) -> bool:
        """Release a ManualPending instance.

        Raises KeyError for an unknown instance; returns False when the
        instance is not waiting for approval.
        """
        instance = self.graph.instances[key]
        if self.finished or instance.status != JobStatus.MANUAL_PENDING:
            return False
        self._events.put_nowait(_Approve(key))
        return True

    def cancel(self, reason: str = "canceled by user") -> bool:
        """Cancel every non-terminal instance. Always permitted."""
        if self.finished:
            return False
        self._events.put_nowait(_Cancel(reason))
        return True

    def interrupt(self, reason: str = "superseded by a newer pipeline") -> bool:
        """Cancel the run on behalf of a newer run in the same concurrency group.

        Raises NotInterruptibleError if the run may not be interrupted.
        """
        if self.finished:
            return False
        if not self.is_interruptible():
            raise NotInterruptibleError(self.run_id)
        self._events.put_nowait(_Cancel(reason, interrupt=True))
        return True

    # ── Main loop ────────────────────────────────────────────────────────────

    async def run(self) -> ExecutionReport:
        if self._started_at is not None:
            raise RuntimeError(f"Pipeline {self.run_id} has already been started")
        self._started_at = _now()
        self._status = PipelineStatus.RUNNING
        logger.info(
            "Pipeline %s started (%d instances, concurrency %d)",
            self.run_id,
            len(self.graph),
            self._concurrency,
        )

        try:
            self._advance()
            await self._flush()
            while not self._is_complete():
                event = await self._events.get()
                self._handle(event)
                self._advance()
                await self._flush()
        finally:
            if self._tasks:
                for task in self._tasks.values():
                    task.cancel()
                await asyncio.gather(*self._tasks.values(), return_exceptions=True)

        self._settle_blocked()
        await self._flush()
        report = build_report(
            self.graph,
            self.run_context,
            canceled=self._canceled,
            notices=self._notices,
            started_at=self._started_at,
        )
        self._report = report
        self._status = report.status
        self._done.set()
        logger.info(
            "Pipeline %s finished: %s (exit %d)", self.run_id, report.status.value, report.exit_code
        )
        return report

    def _is_complete(self) -> bool:
        if self._tasks:
            return False
        instances = self.graph.instances.values()
        if any(i.status == JobStatus.ELIGIBLE for i in instances):
            return False
        if self._canceled:
            return True
        if self._wait_for_manual and any(i.status == JobStatus.MANUAL_PENDING for i in instances):
            return False
        return True

    def _settle_blocked(self) -> None:
        """Instances still Pending at the end are blocked behind a manual job."""
        for instance in self.graph.instances.values():
            if instance.status == JobStatus.PENDING:
                self._transition(instance, JobStatus.SKIPPED, cancel_reason="blocked by a manual job")

    # ── Event handling ───────────────────────────────────────────────────────

    def _handle(self, event: _Started | _Finished | _Approve | _Cancel) -> None:
        match event:
            case _Started(key=key):
                instance = self.graph.instances[key]
                if instance.status == JobStatus.DISPATCHED:
                    if instance.started_at is None:
                        instance.started_at = _now()
                    self._transition(instance, JobStatus.RUNNING)
                    logger.info("Job %s running on %s (attempt %d)", key, instance.runner, instance.attempt)
            case _Finished(key=key, result=result):
                self._on_finished(self.graph.instances[key], result)
            case _Approve(key=key):
                instance = self.graph.instances[key]
                if instance.status == JobStatus.MANUAL_PENDING and not self._canceled:
                    logger.info("Job %s approved", key)
                    self._transition(instance, JobStatus.ELIGIBLE)
            case _Cancel(reason=reason, interrupt=interrupt):
                self._on_cancel(reason, interrupt)

    def _on_finished(self, instance: JobInstance, result: JobResult) -> None:
        key = instance.key
        self._tasks.pop(key, None)
        self._cancel_events.pop(key, None)
        if instance.runner in self._runner_load:
            self._runner_load[instance.runner] -= 1

        instance.exit_code = result.exit_code
        instance.artifacts = list(result.artifacts)
        instance.dotenv = dict(result.dotenv)
        instance.tests = result.tests

        if result.canceled:
            self._transition(
                instance,
                JobStatus.CANCELED,
                cancel_reason=instance.cancel_reason or self._cancel_reason,
            )
            logger.info("Job %s canceled", key)
            return
        if result.succeeded:
            self._transition(instance, JobStatus.SUCCEEDED, error_kind=None, error_message=None)
            logger.info("Job %s succeeded", key)
            return

        kind = result.error_kind or ErrorKind.SCRIPT_FAILURE
        message = result.error_message or f"exit code {result.exit_code}"
        if (
            not self._canceled
            and instance.attempt <= instance.retry.max
            and instance.retry.allows(kind)
        ):
            logger.info(
                "Job %s failed (%s); retrying (attempt %d of %d)",
                key,
                kind.value,
                instance.attempt + 1,
                instance.retry.max + 1,
            )
            self._transition(
                instance, JobStatus.ELIGIBLE, error_kind=kind, error_message=message, runner=None
            )
            return

        self._transition(instance, JobStatus.FAILED, error_kind=kind, error_message=message)
        if instance.allow_failure:
            logger.warning("Job %s failed (%s), allowed to fail: %s", key, kind.value, message)
        else:
            logger.error("Job %s failed (%s): %s", key, kind.value, message)

    def _on_cancel(self, reason: str, interrupt: bool) -> None:
        if self._canceled:
            return
        if interrupt and not self.is_interruptible():
            # A non-interruptible job started after the request was queued.
            logger.warning("Pipeline %s: interruption refused: pipeline is not interruptible", self.run_id)
            self._notices.append("pipeline is not interruptible")
            return

        self._canceled = True
        self._cancel_reason = reason
        logger.info("Pipeline %s canceling: %s", self.run_id, reason)
        for instance in self.graph.instances.values():
            if instance.is_terminal:
                continue
            if instance.key in self._cancel_events:
                instance.cancel_reason = reason
                self._cancel_events[instance.key].set()
            else:
                self._transition(instance, JobStatus.CANCELED, cancel_reason=reason)

    # ── Eligibility & dispatch ───────────────────────────────────────────────

    def _advance(self) -> None:
        while True:
            promoted = self._promote()
            failed = self._dispatch()
            if not (promoted or failed):
                return

    def _promote(self) -> bool:
        changed = False
        progress = True
        while progress:
            progress = False
            for key in self._order:
                instance = self.graph.instances[key]
                if instance.status != JobStatus.PENDING:
                    continue
                decision = self._eligibility(instance)
                if decision is None:
                    continue
                status, blamed = decision
                if status == JobStatus.CANCELED:
                    self._failure_canceled.add(key)
                    self._transition(instance, status, cancel_reason=f"upstream job '{blamed}' failed")
                    logger.info("Job %s canceled: upstream job %s failed", key, blamed)
                else:
                    self._transition(instance, status)
                    if status == JobStatus.MANUAL_PENDING:
                        logger.info("Job %s waiting for manual approval", key)
                progress = changed = True
        return changed

    def _eligibility(self, instance: JobInstance) -> tuple[JobStatus, str | None] | None:
        failed_upstream: str | None = None
        for pred_key in self.graph.predecessors(instance.key):
            pred = self.graph.instances[pred_key]
            if (
                pred.status == JobStatus.MANUAL_PENDING
                and pred.allow_failure
                and self.graph.edge_kind(pred_key, instance.key) == EdgeKind.STAGE
            ):
                continue
            if pred.status not in TERMINAL_STATUSES:
                return None
            if failed_upstream is None and (
                (pred.status == JobStatus.FAILED and pred.is_required)
                or pred_key in self._failure_canceled
            ):
                failed_upstream = pred_key

        match instance.when:
            case WhenPolicy.ON_FAILURE:
                return (JobStatus.ELIGIBLE if failed_upstream else JobStatus.SKIPPED), failed_upstream
            case WhenPolicy.ALWAYS:
                return JobStatus.ELIGIBLE, None
            case WhenPolicy.MANUAL:
                if failed_upstream:
                    return JobStatus.CANCELED, failed_upstream
                return JobStatus.MANUAL_PENDING, None
            case _:
                if failed_upstream:
                    return JobStatus.CANCELED, failed_upstream
                return JobStatus.ELIGIBLE, None

    def _dispatch(self) -> bool:
        """Start ready instances by priority. Returns True if any failed to place."""
        ready = [i for i in self.graph.instances.values() if i.status == JobStatus.ELIGIBLE]
        ready.sort(key=lambda i: (-self._priority.get(i.key, 0), i.index, i.key))

        unplaceable = False
        for instance in ready:
            if len(self._tasks) >= self._concurrency:
                break
            capable = [r for r in self._runners if r.can_run(instance.tags)]
            if not capable:
                message = f"no runner matches tags {sorted(instance.tags)}"
                logger.error("Job %s cannot run: %s", instance.key, message)
                self._transition(
                    instance, JobStatus.FAILED, error_kind=ErrorKind.NO_RUNNER, error_message=message
                )
                unplaceable = True
                continue
            runner = next(
                (r for r in capable if self._runner_load[r.name] < r.capacity), None
            )
            if runner is None:
                continue
            self._start(instance, runner)
        return unplaceable

    def _start(self, instance: JobInstance, runner: Runner) -> None:
        self._runner_load[runner.name] += 1
        self._transition(
            instance,
            JobStatus.DISPATCHED,
            attempt=instance.attempt + 1,
            runner=runner.name,
            exit_code=None,
        )
        env = build_environment(
            self.run_context,
            instance,
            self._project_dir,
            dotenv=self._inherited_dotenv(instance),
        )
        template = self.graph.templates.get(instance.template) or JobTemplate(name=instance.template)
        cancel = asyncio.Event()
        self._cancel_events[instance.key] = cancel
        self._tasks[instance.key] = asyncio.create_task(
            self._execute(instance.model_copy(deep=True), template, env, cancel),
            name=f"job:{instance.key}",
        )
        logger.debug("Job %s dispatched to %s", instance.key, runner.name)

    def _inherited_dotenv(self, instance: JobInstance) -> dict[str, str]:
        """Dotenv values from predecessors whose artifacts this instance takes.

        ``dependencies`` narrows the predecessors to the named jobs; an empty
        list takes nothing.
        """
        without_artifacts = {
            need.job for need in (instance.needs or []) if not need.artifacts
        }
        allowed = set(instance.dependencies) if instance.dependencies is not None else None
        merged: dict[str, str] = {}
        for pred_key in self.graph.predecessors(instance.key):
            pred = self.graph.instances[pred_key]
            if pred.template in without_artifacts or pred_key in without_artifacts:
                continue
            if allowed is not None and pred.template not in allowed and pred_key not in allowed:
                continue
            merged.update(pred.dotenv)
        return merged

    # ── Worker ───────────────────────────────────────────────────────────────

    async def _execute(
        self,
        instance: JobInstance,
        template: JobTemplate,
        env: dict[str, str],
        cancel: asyncio.Event,
    ) -> None:
        key = instance.key
        self._events.put_nowait(_Started(key))
        job = asyncio.create_task(self._runner.run(instance, template, env, cancel))
        cancel_wait = asyncio.create_task(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {job, cancel_wait},
                timeout=instance.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if job in done:
                result = job.result()
            elif cancel_wait in done:
                result = await self._drain(job, key)
                result.canceled = True
            else:
                timeout = JobTimeoutError(key, instance.timeout_seconds)
                logger.warning("%s", timeout)
                cancel.set()
                await self._drain(job, key)
                result = JobResult(error_kind=ErrorKind.TIMEOUT, error_message=str(timeout))
        except asyncio.CancelledError:
            job.cancel()
            raise
        except Exception as exc:
            logger.exception("Runner error in job %s", key)
            result = JobResult(error_kind=ErrorKind.RUNNER_ERROR, error_message=str(exc))
        finally:
            cancel_wait.cancel()
        self._events.put_nowait(_Finished(key, result))

    async def _drain(self, job: asyncio.Task, key: str) -> JobResult:
        """Give a signalled job the grace period, then kill it."""
        done, _ = await asyncio.wait({job}, timeout=self._grace_period)
        if job in done:
            if not job.cancelled() and job.exception() is None:
                return job.result()
            return JobResult()
        logger.warning(
            "Job %s did not stop within the %.1fs grace period; killing", key, self._grace_period
        )
        job.cancel()
        await asyncio.wait({job})
        return JobResult()

    # ── State bookkeeping ────────────────────────────────────────────────────

    def _transition(self, instance: JobInstance, status: JobStatus, **changes) -> None:
        logger.debug("Job %s: %s -> %s", instance.key, instance.status.value, status.value)
        instance.status = status
        for name, value in changes.items():
            setattr(instance, name, value)
        if status in TERMINAL_STATUSES:
            instance.completed_at = _now()
        self._dirty[instance.key] = None

    async def _flush(self) -> None:
        if self._listener is None:
            self._dirty.clear()
            return
        keys = list(self._dirty)
        self._dirty.clear()
        for key in keys:
            try:
                await self._listener(self.run_context, self.graph.instances[key])
            except Exception:
                logger.exception("Failed to record state of job %s", key)
