"""HTTP interface for starting pipelines, approving manual jobs and canceling runs.

Endpoints:
    GET  /health
    POST /pipelines                                    start a run
    GET  /pipelines                                    active runs
    GET  /pipelines/{run_id}                           run + job states
    POST /pipelines/{run_id}/jobs/{instance_key}/approve
    POST /pipelines/{run_id}/cancel
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite
from fastapi import APIRouter, FastAPI, HTTPException

from pipewright.config import PipelineConfig, load_config
from pipewright.notifications import Notifier, build_notifiers, close_notifiers
from pipewright.pipeline.coordinator import PipelineCoordinator
from pipewright.pipeline.errors import PipelineError
from pipewright.pipeline.executor import ScriptRunner
from pipewright.pipeline.models import JobInstance, TriggerContext
from pipewright.pipeline.registry import PipelineRegistry
from pipewright.pipeline.scheduler import Scheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

# Module-level reference (configured at startup)
_coordinator: PipelineCoordinator | None = None


def configure(coordinator: PipelineCoordinator | None) -> None:
    """Configure the pipelines router with its coordinator."""
    global _coordinator
    _coordinator = coordinator
    logger.info("Pipelines router configured (coordinator=%s)", "yes" if coordinator else "no")


def _require_coordinator() -> PipelineCoordinator:
    if _coordinator is None:
        raise HTTPException(status_code=503, detail="Coordinator not available")
    return _coordinator


# ── Serialization ────────────────────────────────────────────────────────────


def _job_dict(instance: JobInstance) -> dict[str, Any]:
    return {
        "key": instance.key,
        "template": instance.template,
        "stage": instance.stage,
        "status": instance.status.value,
        "when": instance.when.value,
        "allow_failure": instance.allow_failure,
        "attempt": instance.attempt,
        "exit_code": instance.exit_code,
        "error_kind": instance.error_kind.value if instance.error_kind else None,
        "error_message": instance.error_message,
        "depends_on": list(instance.depends_on),
        "started_at": instance.started_at.isoformat() if instance.started_at else None,
        "completed_at": instance.completed_at.isoformat() if instance.completed_at else None,
    }


def _run_dict(scheduler: Scheduler) -> dict[str, Any]:
    context = scheduler.run_context
    report = scheduler.report
    return {
        "run_id": context.run_id,
        "pipeline_name": context.pipeline_name,
        "concurrency_group": context.concurrency_group,
        "source": context.trigger.source.value,
        "ref": context.trigger.ref,
        "status": scheduler.status.value,
        "exit_code": report.exit_code if report else None,
        "interruptible": scheduler.is_interruptible(),
        "notices": scheduler.notices,
        "jobs": [_job_dict(i) for i in scheduler.graph.instances.values()],
    }


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", status_code=201)
async def start_pipeline(trigger: TriggerContext):
    """Plan and start a pipeline for the given trigger."""
    coordinator = _require_coordinator()
    try:
        scheduler = await coordinator.start_pipeline(trigger)
    except PipelineError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return _run_dict(scheduler)


@router.get("")
async def list_pipelines():
    """List active pipeline runs."""
    coordinator = _require_coordinator()
    runs = coordinator.active_runs
    return {"active_count": len(runs), "runs": [_run_dict(s) for s in runs]}


@router.get("/{run_id}")
async def get_pipeline(run_id: str):
    """Run status with per-job states."""
    coordinator = _require_coordinator()
    scheduler = coordinator.get(run_id)
    if scheduler is not None:
        return _run_dict(scheduler)

    stored = await coordinator.get_record(run_id)
    if stored is None:
        raise HTTPException(status_code=404, detail=f"Pipeline {run_id} not found")
    record, jobs = stored
    return {
        "run_id": record.run_id,
        "pipeline_name": record.pipeline_name,
        "concurrency_group": record.concurrency_group,
        "source": record.source.value,
        "ref": record.ref,
        "status": record.status.value,
        "exit_code": record.report.exit_code if record.report else None,
        "interruptible": record.interruptible,
        "notices": record.report.notices if record.report else [],
        "jobs": [_job_dict(j) for j in jobs],
    }


@router.post("/{run_id}/jobs/{instance_key:path}/approve")
async def approve_job(run_id: str, instance_key: str):
    """Release a manual job waiting for approval."""
    coordinator = _require_coordinator()
    try:
        approved = coordinator.approve(run_id, instance_key)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"Unknown pipeline or job: {e}") from e
    if not approved:
        raise HTTPException(
            status_code=409, detail=f"Job {instance_key} is not waiting for approval"
        )
    logger.info("Job %s of pipeline %s approved via API", instance_key, run_id)
    return {"run_id": run_id, "job": instance_key, "approved": True}


@router.post("/{run_id}/cancel")
async def cancel_pipeline(run_id: str):
    """Cancel every non-terminal job of a run."""
    coordinator = _require_coordinator()
    if coordinator.cancel_pipeline(run_id):
        return {"run_id": run_id, "canceled": True}
    if coordinator.get(run_id) is not None:
        raise HTTPException(status_code=409, detail=f"Pipeline {run_id} already finished")
    raise HTTPException(status_code=404, detail=f"Pipeline {run_id} not found")


# ── Server lifecycle ─────────────────────────────────────────────────────────


class PipewrightServer:
    """Owns the database connection, registry, notifiers and coordinator."""

    def __init__(
        self,
        config_path: Path | None = None,
        *,
        coordinator: PipelineCoordinator | None = None,
    ):
        self.config_path = config_path
        self.coordinator = coordinator
        self.config: PipelineConfig | None = coordinator.config if coordinator else None
        self.db: aiosqlite.Connection | None = None
        self.notifiers: list[Notifier] = []

    async def start(self) -> None:
        if self.coordinator is None:
            if self.config_path is None:
                raise RuntimeError("PipewrightServer needs a config path or a coordinator")
            self.config = load_config(self.config_path)
            settings = self.config.orchestrator

            db_path = self.config.resolve_path(settings.db_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self.db = await aiosqlite.connect(str(db_path))
            self.db.row_factory = aiosqlite.Row
            registry = PipelineRegistry(self.db)
            await registry.initialize()

            workdir = self.config.resolve_path(settings.workdir)
            self.notifiers = build_notifiers(self.config.notifications)
            self.coordinator = PipelineCoordinator(
                self.config,
                ScriptRunner(workdir, log_dir=self.config.resolve_path(settings.log_dir)),
                registry=registry,
                notifiers=self.notifiers,
                project_dir=workdir,
            )
            await self.coordinator.recover_stale_runs()

        configure(self.coordinator)
        logger.info("pipewright server started")

    async def stop(self) -> None:
        configure(None)
        if self.coordinator is not None:
            await self.coordinator.shutdown()
        await close_notifiers(self.notifiers)
        if self.db is not None:
            await self.db.close()
            self.db = None
        logger.info("pipewright server stopped")


# ── FastAPI App ──────────────────────────────────────────────────────────────


def create_app(
    config_path: Path | None = None,
    *,
    coordinator: PipelineCoordinator | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Pass ``coordinator`` to serve an already-built coordinator (tests);
    otherwise one is built from ``config_path`` at startup.
    """
    server = PipewrightServer(config_path, coordinator=coordinator)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """FastAPI lifespan — startup and shutdown."""
        await server.start()
        yield
        await server.stop()

    app = FastAPI(
        title="pipewright",
        version="0.1.0",
        description="CI pipeline orchestration engine",
        lifespan=lifespan,
    )
    app.include_router(router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        active = server.coordinator.active_runs if server.coordinator else []
        return {
            "status": "ok",
            "pipeline": server.config.name if server.config else None,
            "active_runs": len(active),
        }

    return app
