"""Pipeline Pydantic models — job definitions, trigger context and runtime state.

Key exports:
    Definition models: JobDefinition, RuleDefinition, ArtifactSpec, NeedRef,
        ParallelSpec, RetryPolicy, JobTemplate
    Trigger models: TriggerContext, MergeRequestInfo, PipelineRunContext
    Runtime state models: JobInstance, Runner, ExecutionReport, InstanceReport,
        TestSummary, PipelineRunRecord
    Enums: EventSource, WhenPolicy, JobStatus, ErrorKind, PipelineStatus,
        EdgeKind, ArtifactWhen
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class EventSource(str, Enum):
    """What triggered a pipeline."""

    PUSH = "push"
    MERGE_REQUEST = "merge_request_event"
    SCHEDULE = "schedule"
    WEB = "web"
    TRIGGER = "trigger"
    API = "api"


class WhenPolicy(str, Enum):
    """When an included job runs relative to its predecessors."""

    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"
    MANUAL = "manual"
    ALWAYS = "always"
    NEVER = "never"


class JobStatus(str, Enum):
    """Job instance lifecycle states."""

    PENDING = "pending"
    ELIGIBLE = "eligible"
    MANUAL_PENDING = "manual_pending"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED, JobStatus.SKIPPED}
)
ACTIVE_STATUSES = frozenset({JobStatus.DISPATCHED, JobStatus.RUNNING})


class ErrorKind(str, Enum):
    """Why a job instance failed."""

    SCRIPT_FAILURE = "script_failure"
    TIMEOUT = "timeout"
    ARTIFACTS_MISSING = "artifacts_missing"
    NO_RUNNER = "no_runner"
    RUNNER_ERROR = "runner_error"


class PipelineStatus(str, Enum):
    """Pipeline run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class EdgeKind(str, Enum):
    """Origin of a dependency edge."""

    NEEDS = "needs"
    STAGE = "stage"


class ArtifactWhen(str, Enum):
    """Job outcomes for which artifacts are collected."""

    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"
    ALWAYS = "always"


DEFAULT_STAGES = [".pre", "build", "test", "deploy", ".post"]
DEFAULT_STAGE = "test"
DEFAULT_TIMEOUT_SECONDS = 3600
MAX_MATRIX_INSTANCES = 200

JOB_NAME_PATTERN = re.compile(r"^\.?[a-zA-Z0-9][a-zA-Z0-9_.:/ -]*$")


# ── Definition Models (parsed from YAML config) ─────────────────────────────


def _as_list(value: Any) -> Any:
    if isinstance(value, (str, dict)):
        return [value]
    return value


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _coerce_variables(raw: Any) -> Any:
    """Normalize a variables mapping to ``str -> str``.

    Accepts the long form ``{NAME: {value: ..., description: ...}}``.
    """
    if not isinstance(raw, dict):
        return raw
    result: dict[str, str] = {}
    for name, value in raw.items():
        if isinstance(value, dict):
            value = value.get("value")
        result[str(name)] = _stringify(value)
    return result


class RuleDefinition(BaseModel):
    """One entry of a job's ``rules`` list. First match wins."""

    if_: str | None = Field(None, alias="if")
    event: list[EventSource] | None = None
    branch: str | None = None  # Regex matched against the ref name
    changes: list[str] | None = None
    when: WhenPolicy | None = None
    allow_failure: bool | None = None
    variables: dict[str, str] = {}

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("event", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        return _as_list(v)

    @field_validator("changes", mode="before")
    @classmethod
    def _changes_paths(cls, v: Any) -> Any:
        # ``changes: {paths: [...]}`` long form
        if isinstance(v, dict):
            return v.get("paths", [])
        return _as_list(v)

    @field_validator("variables", mode="before")
    @classmethod
    def _vars(cls, v: Any) -> Any:
        return _coerce_variables(v) or {}

    @property
    def is_unconditional(self) -> bool:
        """True when the rule has no predicate and no changes filter."""
        return (
            self.if_ is None
            and self.event is None
            and self.branch is None
            and self.changes is None
        )


class ArtifactReports(BaseModel):
    """Structured report files a job produces."""

    junit: list[str] = []
    dotenv: list[str] = []

    model_config = {"frozen": True}

    @field_validator("junit", "dotenv", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        return _as_list(v) or []


class ArtifactSpec(BaseModel):
    """Declared artifact paths for a job."""

    paths: list[str] = []
    when: ArtifactWhen = ArtifactWhen.ON_SUCCESS
    expire_in: str | None = None
    required: bool = False
    reports: ArtifactReports = ArtifactReports()

    model_config = {"frozen": True}


class RetryPolicy(BaseModel):
    """Automatic retry of failed job instances."""

    max: int = Field(0, ge=0, le=2)
    when: list[str] = ["always"]

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _shorthand(cls, data: Any) -> Any:
        if isinstance(data, int):
            return {"max": data}
        return data

    @field_validator("when", mode="before")
    @classmethod
    def _listify(cls, v: Any) -> Any:
        return _as_list(v)

    @model_validator(mode="after")
    def _validate_when(self) -> RetryPolicy:
        allowed = {"always"} | {k.value for k in ErrorKind}
        unknown = [w for w in self.when if w not in allowed]
        if unknown:
            msg = f"Unknown retry condition(s): {unknown}. Allowed: {sorted(allowed)}"
            raise ValueError(msg)
        return self

    def allows(self, kind: ErrorKind | None) -> bool:
        """Whether a failure of this kind may be retried."""
        if "always" in self.when:
            return True
        return kind is not None and kind.value in self.when


class NeedRef(BaseModel):
    """A ``needs`` entry: a template name, optionally pinned to matrix cells."""

    job: str
    optional: bool = False
    artifacts: bool = True
    matrix: list[dict[str, str]] | None = None

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _shorthand(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"job": data}
        if isinstance(data, dict) and "parallel" in data:
            data = dict(data)
            parallel = data.pop("parallel") or {}
            matrix = parallel.get("matrix") if isinstance(parallel, dict) else None
            if matrix is not None:
                data["matrix"] = [
                    {str(k): _stringify(v) for k, v in cell.items()} for cell in matrix
                ]
        return data


class ParallelSpec(BaseModel):
    """``parallel: N`` or ``parallel: {matrix: [...]}``."""

    count: int | None = Field(None, ge=1, le=MAX_MATRIX_INSTANCES)
    matrix: list[dict[str, Any]] | None = None

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _shorthand(cls, data: Any) -> Any:
        if isinstance(data, int):
            return {"count": data}
        return data

    @model_validator(mode="after")
    def _exactly_one(self) -> ParallelSpec:
        if (self.count is None) == (self.matrix is None):
            msg = "parallel requires exactly one of a count or a 'matrix'"
            raise ValueError(msg)
        return self


class JobDefinition(BaseModel):
    """A job mapping exactly as declared in the config document.

    Every field is optional so that ``extends`` layers can be merged: a field
    left as ``None`` is inherited from the next layer down.
    """

    extends: list[str] = []
    rules: list[RuleDefinition] | None = None
    variables: dict[str, str] | None = None
    script: list[str] | None = None
    before_script: list[str] | None = None
    after_script: list[str] | None = None
    artifacts: ArtifactSpec | None = None
    needs: list[NeedRef] | None = None
    dependencies: list[str] | None = None
    stage: str | None = None
    tags: list[str] | None = None
    timeout: str | int | None = None
    interruptible: bool | None = None
    allow_failure: bool | None = None
    when: WhenPolicy | None = None
    retry: RetryPolicy | None = None
    parallel: ParallelSpec | None = None

    @field_validator("extends", mode="before")
    @classmethod
    def _extends_list(cls, v: Any) -> Any:
        if v is None:
            return []
        return _as_list(v)

    @field_validator("script", "before_script", "after_script", "tags", mode="before")
    @classmethod
    def _str_lists(cls, v: Any) -> Any:
        v = _as_list(v)
        if isinstance(v, list):
            return [_stringify(item) for item in _flatten(v)]
        return v

    @field_validator("needs", "dependencies", mode="before")
    @classmethod
    def _needs_list(cls, v: Any) -> Any:
        return _as_list(v)

    @field_validator("variables", mode="before")
    @classmethod
    def _vars(cls, v: Any) -> Any:
        return _coerce_variables(v)

    @field_validator("timeout")
    @classmethod
    def _timeout(cls, v: str | int | None) -> str | int | None:
        if v is not None:
            _parse_duration_seconds(v)
        return v


class JobTemplate(BaseModel):
    """A job with its ``extends`` chain flattened. Immutable after load.

    ``variable_layers`` keeps every layer of the chain (ancestors first, the
    template's own mapping last) so the variable resolver can apply them in
    precedence order.
    """

    name: str
    index: int = 0
    extends_chain: list[str] = []
    rules: list[RuleDefinition] | None = None
    variable_layers: list[tuple[str, dict[str, str]]] = []
    script: list[str] = []
    before_script: list[str] = []
    after_script: list[str] = []
    artifacts: ArtifactSpec = ArtifactSpec()
    needs: list[NeedRef] | None = None
    dependencies: list[str] | None = None
    stage: str = DEFAULT_STAGE
    tags: list[str] = []
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    interruptible: bool = True
    allow_failure: bool = False
    when: WhenPolicy = WhenPolicy.ON_SUCCESS
    retry: RetryPolicy = RetryPolicy()
    parallel: ParallelSpec | None = None

    model_config = {"frozen": True}

    @property
    def variables(self) -> dict[str, str]:
        """Own + inherited variables, later layers overriding earlier ones."""
        merged: dict[str, str] = {}
        for _source, layer in self.variable_layers:
            merged.update(layer)
        return merged

    @property
    def hidden(self) -> bool:
        return self.name.startswith(".")


# ── Trigger Context ──────────────────────────────────────────────────────────


class MergeRequestInfo(BaseModel):
    """Merge request metadata carried by ``merge_request_event`` triggers."""

    title: str = ""
    event_type: str = "detached"  # detached | merged_result | merge_train
    target_branch: str = ""
    source_branch: str = ""

    model_config = {"frozen": True}


# Context fields that rule expressions may reference. Absent values are null.
KNOWN_CONTEXT_FIELDS = frozenset(
    {
        "CI_PIPELINE_SOURCE",
        "CI_COMMIT_REF_NAME",
        "CI_COMMIT_BRANCH",
        "CI_COMMIT_TAG",
        "CI_COMMIT_MESSAGE",
        "CI_COMMIT_TITLE",
        "CI_DEFAULT_BRANCH",
        "CI_MERGE_REQUEST_TITLE",
        "CI_MERGE_REQUEST_EVENT_TYPE",
        "CI_MERGE_REQUEST_TARGET_BRANCH_NAME",
        "CI_MERGE_REQUEST_SOURCE_BRANCH_NAME",
        "SCHEDULE_NAME",
    }
)


class TriggerContext(BaseModel):
    """Read-only description of the event that started a pipeline."""

    source: EventSource
    ref: str = ""
    is_tag: bool = False
    merge_request: MergeRequestInfo | None = None
    schedule_name: str | None = None
    changed_files: frozenset[str] | None = None  # None = diff unknown
    commit_message: str = ""
    default_branch: str = "main"
    variables: dict[str, str] = {}

    model_config = {"frozen": True}

    @field_validator("variables", mode="before")
    @classmethod
    def _vars(cls, v: Any) -> Any:
        return _coerce_variables(v) or {}

    def context_fields(self) -> dict[str, str | None]:
        """Predefined CI variables derived from this trigger."""
        mr = self.merge_request
        is_mr = self.source == EventSource.MERGE_REQUEST
        ref = mr.source_branch if (is_mr and mr and mr.source_branch) else self.ref
        return {
            "CI_PIPELINE_SOURCE": self.source.value,
            "CI_COMMIT_REF_NAME": ref,
            "CI_COMMIT_BRANCH": None if (self.is_tag or is_mr) else (self.ref or None),
            "CI_COMMIT_TAG": self.ref if self.is_tag else None,
            "CI_COMMIT_MESSAGE": self.commit_message,
            "CI_COMMIT_TITLE": self.commit_message.splitlines()[0] if self.commit_message else "",
            "CI_DEFAULT_BRANCH": self.default_branch,
            "CI_MERGE_REQUEST_TITLE": mr.title if mr else None,
            "CI_MERGE_REQUEST_EVENT_TYPE": mr.event_type if mr else None,
            "CI_MERGE_REQUEST_TARGET_BRANCH_NAME": mr.target_branch if mr else None,
            "CI_MERGE_REQUEST_SOURCE_BRANCH_NAME": mr.source_branch if mr else None,
            "SCHEDULE_NAME": self.schedule_name,
        }


class PipelineRunContext(BaseModel):
    """Pipeline-wide state threaded through the scheduler of one run."""

    run_id: str
    pipeline_name: str = "default"
    trigger: TriggerContext
    concurrency_group: str
    interruptible: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def create(
        cls,
        trigger: TriggerContext,
        *,
        pipeline_name: str = "default",
        concurrency_group: str | None = None,
        interruptible: bool = True,
    ) -> PipelineRunContext:
        return cls(
            run_id=f"pl-{uuid.uuid4().hex[:12]}",
            pipeline_name=pipeline_name,
            trigger=trigger,
            concurrency_group=concurrency_group or f"{pipeline_name}:{trigger.ref}",
            interruptible=interruptible,
        )


# ── Runtime State Models ─────────────────────────────────────────────────────


class Runner(BaseModel):
    """A tagged worker slot group that can execute job instances."""

    name: str
    tags: list[str] = []
    capacity: int = Field(1, ge=1)

    def can_run(self, required_tags: list[str]) -> bool:
        """A runner tagged ``*`` accepts any job."""
        if "*" in self.tags:
            return True
        return set(required_tags) <= set(self.tags)


class TestSummary(BaseModel):
    """Counts aggregated from JUnit report files."""

    __test__ = False

    tests: int = 0
    failures: int = 0
    errors: int = 0
    skipped: int = 0
    files: list[str] = []


class JobInstance(BaseModel):
    """One concrete, schedulable expansion of a job template."""

    key: str
    template: str
    index: int = 0
    matrix_cell: dict[str, str] = {}
    node_index: int | None = None
    node_total: int | None = None

    # Resolved configuration
    variables: dict[str, str] = {}
    stage: str = DEFAULT_STAGE
    tags: list[str] = []
    when: WhenPolicy = WhenPolicy.ON_SUCCESS
    allow_failure: bool = False
    interruptible: bool = True
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    retry: RetryPolicy = RetryPolicy()
    needs: list[NeedRef] | None = None
    dependencies: list[str] | None = None

    # Resolved dependency edges (instance keys)
    depends_on: list[str] = []

    # Execution
    status: JobStatus = JobStatus.PENDING
    attempt: int = 0
    runner: str | None = None
    exit_code: int | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    cancel_reason: str | None = None

    # Outputs
    artifacts: list[str] = []
    dotenv: dict[str, str] = {}
    tests: TestSummary | None = None

    # Timing
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_required(self) -> bool:
        return not self.allow_failure

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class InstanceReport(BaseModel):
    """Terminal state of one instance as recorded in an execution report."""

    key: str
    template: str
    stage: str
    status: JobStatus
    allow_failure: bool = False
    attempts: int = 0
    exit_code: int | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    duration_seconds: float | None = None
    artifacts: list[str] = []
    tests: TestSummary | None = None


class ExecutionReport(BaseModel):
    """Aggregated outcome of a pipeline run."""

    run_id: str
    pipeline_name: str
    status: PipelineStatus
    exit_code: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    instances: list[InstanceReport] = []
    notices: list[str] = []

    def get(self, key: str) -> InstanceReport | None:
        for item in self.instances:
            if item.key == key:
                return item
        return None

    @property
    def failed(self) -> list[str]:
        return [i.key for i in self.instances if i.status == JobStatus.FAILED]

    @property
    def manual_pending(self) -> list[str]:
        return [i.key for i in self.instances if i.status == JobStatus.MANUAL_PENDING]


class PipelineRunRecord(BaseModel):
    """Persisted summary of a pipeline run (see registry)."""

    run_id: str
    pipeline_name: str
    concurrency_group: str
    source: EventSource
    ref: str = ""
    status: PipelineStatus = PipelineStatus.PENDING
    interruptible: bool = True
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    report: ExecutionReport | None = None


# ── Helpers ──────────────────────────────────────────────────────────────────


def _flatten(items: list[Any]) -> list[Any]:
    """Flatten nested lists (``!reference`` splices produce them)."""
    out: list[Any] = []
    for item in items:
        if isinstance(item, list):
            out.extend(_flatten(item))
        else:
            out.append(item)
    return out


_DURATION_TOKEN_RE = re.compile(
    r"(\d+)\s*(seconds?|secs?|s|minutes?|mins?|m|hours?|hrs?|h|days?|d)(?![a-z])",
    re.IGNORECASE,
)
_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def _parse_duration_seconds(duration: str | int) -> int:
    """Parse a duration like '30m', '80 minutes', '7h 30m' or '3600' to seconds.

    Raises ValueError on invalid format.
    """
    if isinstance(duration, int):
        if duration <= 0:
            msg = f"Invalid duration: {duration}. Must be positive"
            raise ValueError(msg)
        return duration
    text = duration.strip()
    if text.isdigit():
        return _parse_duration_seconds(int(text))

    total = 0
    pos = 0
    for match in _DURATION_TOKEN_RE.finditer(text):
        if text[pos : match.start()].strip():
            break
        unit = match.group(2).lower()
        total += int(match.group(1)) * _DURATION_UNITS[unit[0]]
        pos = match.end()
    if total <= 0 or text[pos:].strip():
        msg = f"Invalid duration format: '{duration}'. Expected e.g. '30m', '2h 30m', '80 minutes'"
        raise ValueError(msg)
    return total
