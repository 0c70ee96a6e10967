"""CI pipeline orchestration core.

Data flow: trigger context → RuleEvaluator → JobExpander (VariableResolver)
→ GraphBuilder → Scheduler → build_report.

Key exports:
    RuleEvaluator — First-match-wins rule evaluation, fail-closed
    VariableResolver, VariableSet — Layered variable resolution
    JobExpander — Matrix / parallel expansion into job instances
    GraphBuilder, PipelineGraph — Dependency graph with cycle detection
    Scheduler — Single-owner async execution of one run
    ScriptRunner — Shell process execution boundary
    PipelineRegistry — SQLite persistence
    build_report — ExecutionReport aggregation

``PipelineCoordinator`` lives in ``pipewright.pipeline.coordinator``.
"""

from pipewright.pipeline.errors import (
    ArtifactMissingError,
    ConfigError,
    CycleError,
    JobFailure,
    JobTimeoutError,
    NotInterruptibleError,
    PipelineError,
    RuleEvaluationError,
)
from pipewright.pipeline.executor import JobResult, JobRunner, ScriptRunner, read_dotenv, verify_artifacts
from pipewright.pipeline.expander import JobExpander, matrix_cells
from pipewright.pipeline.graph import GraphBuilder, PipelineGraph
from pipewright.pipeline.inheritance import build_templates, linearize_extends
from pipewright.pipeline.models import (
    ArtifactSpec,
    EdgeKind,
    ErrorKind,
    EventSource,
    ExecutionReport,
    InstanceReport,
    JobDefinition,
    JobInstance,
    JobStatus,
    JobTemplate,
    MergeRequestInfo,
    NeedRef,
    ParallelSpec,
    PipelineRunContext,
    PipelineRunRecord,
    PipelineStatus,
    RetryPolicy,
    RuleDefinition,
    Runner,
    TestSummary,
    TriggerContext,
    WhenPolicy,
)
from pipewright.pipeline.registry import PipelineRegistry
from pipewright.pipeline.reporter import build_report, summarize_junit
from pipewright.pipeline.rules import RuleDecision, RuleEvaluator, compile_expression
from pipewright.pipeline.scheduler import Scheduler, TransitionListener
from pipewright.pipeline.variables import VariableResolver, VariableSet, expand_variables

__all__ = [
    # Errors
    "PipelineError",
    "ConfigError",
    "CycleError",
    "RuleEvaluationError",
    "NotInterruptibleError",
    "JobFailure",
    "JobTimeoutError",
    "ArtifactMissingError",
    # Components
    "RuleEvaluator",
    "RuleDecision",
    "compile_expression",
    "VariableResolver",
    "VariableSet",
    "expand_variables",
    "linearize_extends",
    "build_templates",
    "JobExpander",
    "matrix_cells",
    "GraphBuilder",
    "PipelineGraph",
    "Scheduler",
    "TransitionListener",
    "JobRunner",
    "JobResult",
    "ScriptRunner",
    "verify_artifacts",
    "read_dotenv",
    "build_report",
    "summarize_junit",
    "PipelineRegistry",
    # Definition models
    "JobDefinition",
    "JobTemplate",
    "RuleDefinition",
    "ArtifactSpec",
    "NeedRef",
    "ParallelSpec",
    "RetryPolicy",
    # Trigger models
    "TriggerContext",
    "MergeRequestInfo",
    "PipelineRunContext",
    # Runtime state models
    "JobInstance",
    "Runner",
    "TestSummary",
    "ExecutionReport",
    "InstanceReport",
    "PipelineRunRecord",
    # Enums
    "EventSource",
    "WhenPolicy",
    "JobStatus",
    "ErrorKind",
    "PipelineStatus",
    "EdgeKind",
]
