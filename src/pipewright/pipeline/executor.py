"""Script execution boundary.

Each job instance hands its script to ``/bin/sh`` and observes the exit code.
``before_script`` and ``script`` lines run in one shell session under
``set -e`` so the first failing line ends the job; ``after_script`` runs in a
separate session afterwards and never changes the outcome.

Cancellation is cooperative: when the cancel event is set the process group
receives SIGTERM. If the caller then cancels the ``run`` coroutine itself
(grace period exhausted) the process group is killed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Protocol

from dotenv import dotenv_values

from pipewright.pipeline.errors import ArtifactMissingError, JobFailure
from pipewright.pipeline.models import (
    ArtifactSpec,
    ArtifactWhen,
    ErrorKind,
    JobInstance,
    JobTemplate,
    TestSummary,
)
from pipewright.pipeline.reporter import summarize_junit

logger = logging.getLogger("pipewright.pipeline.executor")


@dataclass
class JobResult:
    """What a runner reports back for one attempt of one instance."""

    exit_code: int | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    canceled: bool = False
    artifacts: list[str] = field(default_factory=list)
    dotenv: dict[str, str] = field(default_factory=dict)
    tests: TestSummary | None = None

    @property
    def succeeded(self) -> bool:
        return not self.canceled and self.error_kind is None and self.exit_code == 0


class JobRunner(Protocol):
    """Executes one attempt of a job instance."""

    async def run(
        self,
        instance: JobInstance,
        template: JobTemplate,
        env: dict[str, str],
        cancel: asyncio.Event,
    ) -> JobResult:
        """Run to completion or until ``cancel`` is set.

        Must return promptly after ``cancel`` is set (with ``canceled=True``)
        and must release external resources if the coroutine itself is
        cancelled.
        """
        ...


class ScriptRunner:
    """Runs job scripts as local shell processes.

    Usage::

        runner = ScriptRunner(Path("."), log_dir=Path(".pipewright/logs"))
        result = await runner.run(instance, template, env, asyncio.Event())
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        shell: str = "/bin/sh",
        log_dir: Path | None = None,
        base_env: Mapping[str, str] | None = None,
    ):
        self._project_dir = Path(project_dir)
        self._shell = shell
        self._log_dir = log_dir
        self._base_env = dict(os.environ if base_env is None else base_env)

    async def run(
        self,
        instance: JobInstance,
        template: JobTemplate,
        env: dict[str, str],
        cancel: asyncio.Event,
    ) -> JobResult:
        full_env = {**self._base_env, **env}
        log_file = self._open_log(env.get("CI_PIPELINE_ID", "local"), instance)
        try:
            exit_code = await self._run_script(
                [*template.before_script, *template.script], full_env, cancel, log_file
            )
            canceled = cancel.is_set()
            if template.after_script and not canceled:
                after_code = await self._run_script(
                    template.after_script, full_env, asyncio.Event(), log_file
                )
                if after_code != 0:
                    logger.warning(
                        "after_script of '%s' exited %d (ignored)", instance.key, after_code
                    )
        finally:
            if log_file is not None:
                log_file.close()

        if canceled:
            return JobResult(exit_code=exit_code, canceled=True)
        return await asyncio.to_thread(self.collect_outputs, instance, template.artifacts, exit_code)

    def collect_outputs(
        self, instance: JobInstance, spec: ArtifactSpec, exit_code: int
    ) -> JobResult:
        """Verify artifacts and read reports after the script finished."""
        result = JobResult(exit_code=exit_code)
        if exit_code != 0:
            failure = JobFailure(instance.key, exit_code)
            result.error_kind = ErrorKind.SCRIPT_FAILURE
            result.error_message = str(failure)

        collect = (
            spec.when == ArtifactWhen.ALWAYS
            or (spec.when == ArtifactWhen.ON_SUCCESS and exit_code == 0)
            or (spec.when == ArtifactWhen.ON_FAILURE and exit_code != 0)
        )
        if not collect:
            return result

        found, missing = verify_artifacts(self._project_dir, spec.paths)
        result.artifacts = found
        if missing:
            error = ArtifactMissingError(instance.key, missing)
            if spec.required and result.error_kind is None:
                result.error_kind = ErrorKind.ARTIFACTS_MISSING
                result.error_message = str(error)
            else:
                logger.warning("%s", error)

        for pattern in spec.reports.dotenv:
            for path in sorted(self._project_dir.glob(pattern)):
                result.dotenv.update(read_dotenv(path))
        junit_files = [
            path for pattern in spec.reports.junit for path in sorted(self._project_dir.glob(pattern))
        ]
        if junit_files:
            result.tests = summarize_junit(junit_files)
        return result

    async def _run_script(
        self,
        lines: list[str],
        env: dict[str, str],
        cancel: asyncio.Event,
        log_file: IO[bytes] | None,
    ) -> int:
        if not lines:
            return 0
        script = "set -e\n" + "\n".join(lines)
        process = await asyncio.create_subprocess_exec(
            self._shell,
            "-c",
            script,
            cwd=self._project_dir,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=log_file if log_file is not None else asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        wait_task = asyncio.create_task(process.wait())
        cancel_task = asyncio.create_task(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {wait_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if wait_task not in done:
                logger.info("Terminating process group %d", process.pid)
                _signal_group(process.pid, signal.SIGTERM)
            return await wait_task
        except asyncio.CancelledError:
            logger.warning("Killing process group %d", process.pid)
            _signal_group(process.pid, signal.SIGKILL)
            raise
        finally:
            cancel_task.cancel()

    def _open_log(self, run_id: str, instance: JobInstance) -> IO[bytes] | None:
        if self._log_dir is None:
            return None
        directory = self._log_dir / run_id
        directory.mkdir(parents=True, exist_ok=True)
        name = re.sub(r"[^A-Za-z0-9_.-]+", "_", instance.key)
        return open(directory / f"{name}.{instance.attempt}.log", "ab")


def _signal_group(pid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        pass


def verify_artifacts(project_dir: Path, patterns: list[str]) -> tuple[list[str], list[str]]:
    """Resolve artifact globs under ``project_dir``.

    Returns ``(found, missing)``: relative paths that exist, and the patterns
    that matched nothing.
    """
    found: list[str] = []
    missing: list[str] = []
    for pattern in patterns:
        matches = sorted(project_dir.glob(pattern)) if pattern else []
        if not matches:
            missing.append(pattern)
            continue
        for path in matches:
            relative = str(path.relative_to(project_dir))
            if relative not in found:
                found.append(relative)
    return found, missing


def read_dotenv(path: Path) -> dict[str, str]:
    """Read a dotenv report. Keys without a value are dropped; nothing is interpolated."""
    values = dotenv_values(path, interpolate=False, encoding="utf-8")
    return {name: value for name, value in values.items() if value is not None}
