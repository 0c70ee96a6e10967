"""Exception taxonomy for the orchestration core.

Only ``ConfigError`` and ``CycleError`` are fatal: they are raised before any
job runs. Everything else is contained to a single job instance and recorded
in the execution report.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipewright errors."""


class ConfigError(PipelineError):
    """Malformed template, unresolved or cyclic ``extends``, bad matrix shape."""


class CycleError(PipelineError):
    """The job dependency graph contains a directed cycle."""

    def __init__(self, chain: list[str]):
        self.chain = chain
        super().__init__(f"Dependency cycle detected: {' -> '.join(chain)}")


class RuleEvaluationError(PipelineError):
    """A rule predicate referenced an undefined context field."""

    def __init__(self, variable: str):
        self.variable = variable
        super().__init__(f"Rule references undefined variable '${variable}'")


class NotInterruptibleError(PipelineError):
    """Cancellation of a superseded run was refused."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__("pipeline is not interruptible")


class JobFailure(PipelineError):
    """A job's script exited non-zero."""

    def __init__(self, key: str, exit_code: int):
        self.key = key
        self.exit_code = exit_code
        super().__init__(f"Job '{key}' failed with exit code {exit_code}")


class JobTimeoutError(PipelineError):
    """A job exceeded its wall-clock timeout."""

    def __init__(self, key: str, timeout_seconds: int):
        self.key = key
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Job '{key}' timed out after {timeout_seconds}s")


class ArtifactMissingError(PipelineError):
    """Declared artifact paths did not exist when the job finished."""

    def __init__(self, key: str, missing: list[str]):
        self.key = key
        self.missing = missing
        super().__init__(f"Job '{key}' is missing artifacts: {', '.join(missing)}")
