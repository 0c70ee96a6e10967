"""Pipeline coordinator — plans runs from a config and drives their schedulers.

Responsibilities:
    - Evaluate rules, expand jobs and build the dependency graph (``plan``)
    - Start runs, interrupting older runs of the same concurrency group
    - Persist run and job state through the registry
    - Route approvals and cancellations to the owning scheduler
    - Deliver pipeline-finished notifications

Not re-exported from ``pipewright.pipeline``: it depends on the config and
notification layers, which themselves build on the pipeline package.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from pathlib import Path

from pipewright.config import PipelineConfig
from pipewright.notifications import Notifier, PipelineEvent, dispatch_notifications
from pipewright.pipeline.errors import NotInterruptibleError
from pipewright.pipeline.executor import JobRunner
from pipewright.pipeline.expander import JobExpander
from pipewright.pipeline.graph import GraphBuilder, PipelineGraph
from pipewright.pipeline.models import (
    ExecutionReport,
    JobInstance,
    PipelineRunContext,
    PipelineRunRecord,
    TriggerContext,
)
from pipewright.pipeline.registry import PipelineRegistry
from pipewright.pipeline.rules import RuleEvaluator
from pipewright.pipeline.scheduler import Scheduler
from pipewright.pipeline.variables import VariableResolver

logger = logging.getLogger("pipewright.pipeline.coordinator")

# Finished schedulers kept in memory for status queries
MAX_FINISHED_RUNS = 100


class PipelineCoordinator:
    """Plans and runs pipelines for one configuration.

    Usage::

        coordinator = PipelineCoordinator(config, ScriptRunner(workdir), registry=registry)
        report = await coordinator.run_pipeline(trigger)
    """

    def __init__(
        self,
        config: PipelineConfig,
        runner: JobRunner,
        *,
        registry: PipelineRegistry | None = None,
        notifiers: list[Notifier] | None = None,
        project_dir: Path | None = None,
    ):
        self._config = config
        self._settings = config.orchestrator
        self._runner = runner
        self._registry = registry
        self._notifiers = list(notifiers or [])
        self._project_dir = project_dir or config.resolve_path(self._settings.workdir)

        self._evaluator = RuleEvaluator(config.variables)
        self._expander = JobExpander(VariableResolver(config.variables))
        self._graph_builder = GraphBuilder(config.stages)

        self._active: dict[str, Scheduler] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._finished: OrderedDict[str, Scheduler] = OrderedDict()

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def active_runs(self) -> list[Scheduler]:
        return list(self._active.values())

    def get(self, run_id: str) -> Scheduler | None:
        """Scheduler of an active or recently finished run."""
        return self._active.get(run_id) or self._finished.get(run_id)

    async def get_record(self, run_id: str) -> tuple[PipelineRunRecord, list[JobInstance]] | None:
        """Persisted run and job states, for runs no longer held in memory."""
        if self._registry is None:
            return None
        record = await self._registry.get_run(run_id)
        if record is None:
            return None
        return record, await self._registry.get_jobs(run_id)

    # ── Planning ─────────────────────────────────────────────────────────────

    def plan(self, trigger: TriggerContext) -> PipelineGraph:
        """Decide which instances run for ``trigger`` and how they depend.

        Raises ConfigError or CycleError; nothing has started at that point.
        """
        instances: list[JobInstance] = []
        for template in self._config.visible_templates:
            decision = self._evaluator.evaluate(template, trigger)
            if not decision.included:
                logger.debug("Job %s excluded for %s", template.name, trigger.source.value)
                continue
            instances.extend(self._expander.expand(template, decision))

        graph = self._graph_builder.build(instances, self._config.templates)
        logger.info(
            "Planned %d job instances for %s on '%s'",
            len(graph),
            trigger.source.value,
            trigger.ref,
        )
        return graph

    # ── Run lifecycle ────────────────────────────────────────────────────────

    async def start_pipeline(
        self,
        trigger: TriggerContext,
        *,
        wait_for_manual: bool | None = None,
    ) -> Scheduler:
        """Plan and start a run in the background. Returns its scheduler."""
        graph = self.plan(trigger)
        workflow = self._config.workflow
        run_context = PipelineRunContext.create(
            trigger,
            pipeline_name=self._config.name,
            concurrency_group=workflow.concurrency_group_for(trigger),
            interruptible=workflow.interruptible_for(trigger),
        )
        notices = self._supersede(run_context)

        scheduler = Scheduler(
            graph,
            run_context,
            self._runner,
            runners=self._settings.effective_runners(),
            concurrency=self._settings.concurrency,
            grace_period=self._settings.grace_period_seconds,
            wait_for_manual=(
                self._settings.wait_for_manual if wait_for_manual is None else wait_for_manual
            ),
            project_dir=self._project_dir,
            listener=self._record_job if self._registry is not None else None,
        )
        for notice in notices:
            scheduler.add_notice(notice)

        if self._registry is not None:
            await self._registry.create_run(run_context)
        self._active[run_context.run_id] = scheduler
        self._tasks[run_context.run_id] = asyncio.create_task(
            self._drive(scheduler), name=f"pipeline:{run_context.run_id}"
        )
        logger.info(
            "Pipeline %s started for %s on '%s' (group %s)",
            run_context.run_id,
            trigger.source.value,
            trigger.ref,
            run_context.concurrency_group,
        )
        return scheduler

    async def run_pipeline(
        self, trigger: TriggerContext, *, wait_for_manual: bool | None = None
    ) -> ExecutionReport:
        """Plan, run and wait for a pipeline."""
        scheduler = await self.start_pipeline(trigger, wait_for_manual=wait_for_manual)
        return await self._tasks[scheduler.run_id]

    def approve(self, run_id: str, key: str) -> bool:
        """Approve a manual job of an active run.

        Raises KeyError for an unknown run or instance.
        """
        scheduler = self._active.get(run_id)
        if scheduler is None:
            raise KeyError(run_id)
        return scheduler.approve(key)

    def cancel_pipeline(self, run_id: str, reason: str = "canceled by user") -> bool:
        """Cancel an active run. Returns False if it is unknown or finished."""
        scheduler = self._active.get(run_id)
        if scheduler is None:
            return False
        logger.info("Pipeline %s cancel requested: %s", run_id, reason)
        return scheduler.cancel(reason)

    async def recover_stale_runs(self) -> list[str]:
        """Mark runs left active by a previous process as canceled."""
        if self._registry is None:
            return []
        stale = await self._registry.mark_stale_runs_canceled()
        if stale:
            logger.warning("Marked %d stale pipeline runs as canceled: %s", len(stale), stale)
        return stale

    async def shutdown(self) -> None:
        """Cancel every active run and wait for them to finish."""
        for scheduler in list(self._active.values()):
            scheduler.cancel("orchestrator shutting down")
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Internals ────────────────────────────────────────────────────────────

    def _supersede(self, run_context: PipelineRunContext) -> list[str]:
        """Interrupt older runs of the same concurrency group."""
        if not self._config.workflow.auto_cancel:
            return []
        notices: list[str] = []
        for prior in list(self._active.values()):
            if prior.finished or prior.run_context.concurrency_group != run_context.concurrency_group:
                continue
            try:
                prior.interrupt(f"superseded by pipeline {run_context.run_id}")
                logger.info("Pipeline %s superseded by %s", prior.run_id, run_context.run_id)
            except NotInterruptibleError as exc:
                logger.warning("Pipeline %s not interrupted: %s", prior.run_id, exc)
                prior.add_notice(f"interruption by pipeline {run_context.run_id} refused: {exc}")
                notices.append(f"pipeline {prior.run_id} kept running: {exc}")
        return notices

    async def _drive(self, scheduler: Scheduler) -> ExecutionReport:
        run_id = scheduler.run_id
        try:
            if self._registry is not None:
                await self._registry.mark_run_started(run_id)
            report = await scheduler.run()
            if self._registry is not None:
                await self._registry.complete_run(report)
            await dispatch_notifications(
                self._notifiers, PipelineEvent.from_report(scheduler.run_context, report)
            )
            return report
        finally:
            self._active.pop(run_id, None)
            self._tasks.pop(run_id, None)
            self._finished[run_id] = scheduler
            while len(self._finished) > MAX_FINISHED_RUNS:
                self._finished.popitem(last=False)

    async def _record_job(self, run_context: PipelineRunContext, instance: JobInstance) -> None:
        assert self._registry is not None
        await self._registry.upsert_job(run_context.run_id, instance)
