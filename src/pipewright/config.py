"""Configuration loading for pipewright.

Reads a pipeline YAML document. Top-level keys other than the reserved
sections below are job definitions; names starting with ``.`` are hidden
templates used only through ``extends`` or ``!reference``.

Reserved sections:
    variables       global variables (lowest precedence)
    default         fields applied to every job (scripts, tags, timeout, ...)
    stages          ordered stage names
    workflow        pipeline name, concurrency group and auto-cancel policy
    orchestrator    concurrency, runners, paths and timeouts
    notifications   where pipeline-finished events are delivered
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, PrivateAttr, ValidationError, field_validator, model_validator

from pipewright.pipeline.errors import ConfigError
from pipewright.pipeline.inheritance import build_templates
from pipewright.pipeline.models import (
    DEFAULT_STAGES,
    EventSource,
    JobDefinition,
    JobTemplate,
    PipelineStatus,
    Runner,
    TriggerContext,
    _coerce_variables,
    _parse_duration_seconds,
)

logger = logging.getLogger(__name__)

RESERVED_KEYS = frozenset(
    {"variables", "default", "stages", "workflow", "orchestrator", "notifications"}
)
# Accepted for compatibility with existing CI files, but not interpreted.
IGNORED_KEYS = frozenset({"include", "image", "services", "cache", "before_script", "after_script"})

MAX_REFERENCE_DEPTH = 10


# ── !reference support ───────────────────────────────────────────────────────


class _Reference:
    """Placeholder for a ``!reference [job, key, ...]`` node."""

    def __init__(self, path: list[Any]):
        self.path = [str(p) for p in path]

    def __repr__(self) -> str:
        return f"!reference {self.path}"


class _ConfigLoader(yaml.SafeLoader):
    """SafeLoader that understands ``!reference``."""


def _construct_reference(loader: yaml.SafeLoader, node: yaml.Node) -> _Reference:
    if not isinstance(node, yaml.SequenceNode):
        raise yaml.constructor.ConstructorError(
            None, None, "!reference expects a sequence such as [.job, script]", node.start_mark
        )
    return _Reference(loader.construct_sequence(node))


_ConfigLoader.add_constructor("!reference", _construct_reference)


def resolve_references(document: dict[str, Any]) -> dict[str, Any]:
    """Replace every ``!reference`` placeholder with the value it points at."""

    def lookup(ref: _Reference, depth: int) -> Any:
        if depth > MAX_REFERENCE_DEPTH:
            raise ConfigError(f"!reference nesting deeper than {MAX_REFERENCE_DEPTH}: {ref.path}")
        value: Any = document
        for part in ref.path:
            if not isinstance(value, dict) or part not in value:
                raise ConfigError(f"!reference {ref.path} does not resolve")
            value = value[part]
        return resolve(value, depth + 1)

    def resolve(value: Any, depth: int) -> Any:
        if isinstance(value, _Reference):
            return lookup(value, depth)
        if isinstance(value, dict):
            return {k: resolve(v, depth) for k, v in value.items()}
        if isinstance(value, list):
            return [resolve(item, depth) for item in value]
        return value

    return resolve(document, 0)


# ── Config Models ────────────────────────────────────────────────────────────


class WorkflowConfig(BaseModel):
    """Pipeline-level behaviour."""

    name: str = "default"
    # Format string; {pipeline}, {ref} and {source} are available.
    concurrency_group: str = "{pipeline}:{ref}"
    # Interrupt older runs of the same concurrency group when a new one starts.
    auto_cancel: bool = True
    # Runs on refs matching any of these patterns may never be interrupted.
    non_interruptible_refs: list[str] = []
    # Runs started by these sources (e.g. schedule) may never be interrupted.
    non_interruptible_sources: list[EventSource] = []

    @field_validator("non_interruptible_refs")
    @classmethod
    def _compile(cls, v: list[str]) -> list[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid ref pattern {pattern!r}: {exc}") from exc
        return v

    def concurrency_group_for(self, trigger: TriggerContext) -> str:
        return self.concurrency_group.format(
            pipeline=self.name, ref=trigger.ref, source=trigger.source.value
        )

    def interruptible_for(self, trigger: TriggerContext) -> bool:
        if trigger.source in self.non_interruptible_sources:
            return False
        return not any(re.search(p, trigger.ref) for p in self.non_interruptible_refs)


class OrchestratorSettings(BaseModel):
    """Runtime settings for the scheduler and its outer surfaces."""

    concurrency: int = Field(4, ge=1)
    grace_period: str | int = "10s"
    default_timeout: str | int = "1h"
    runners: list[Runner] = []
    workdir: str = "."
    log_dir: str = ".pipewright/logs"
    db_path: str = ".pipewright/pipewright.db"
    wait_for_manual: bool = False
    host: str = "127.0.0.1"
    port: int = 8080

    @field_validator("grace_period", "default_timeout")
    @classmethod
    def _duration(cls, v: str | int) -> str | int:
        _parse_duration_seconds(v)
        return v

    @property
    def grace_period_seconds(self) -> int:
        return _parse_duration_seconds(self.grace_period)

    @property
    def default_timeout_seconds(self) -> int:
        return _parse_duration_seconds(self.default_timeout)

    def effective_runners(self) -> list[Runner]:
        """Configured runners, or a single untagged-accepting local runner."""
        if self.runners:
            return list(self.runners)
        return [Runner(name="local", tags=["*"], capacity=self.concurrency)]


class NotificationTarget(BaseModel):
    """One destination for pipeline-finished events."""

    type: Literal["log", "webhook"] = "log"
    url: str | None = None
    headers: dict[str, str] = {}
    on: list[PipelineStatus] = [
        PipelineStatus.SUCCEEDED,
        PipelineStatus.FAILED,
        PipelineStatus.CANCELED,
    ]
    timeout: float = 10.0

    @model_validator(mode="before")
    @classmethod
    def _yaml_on_key(cls, data: Any) -> Any:
        # YAML 1.1 reads a bare ``on:`` key as boolean True
        if isinstance(data, dict) and True in data:
            data = dict(data)
            data["on"] = data.pop(True)
        return data

    @field_validator("url")
    @classmethod
    def _url(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"Webhook URL must be http(s): {v!r}")
        return v


class PipelineConfig(BaseModel):
    """Top-level pipeline configuration."""

    variables: dict[str, str] = {}
    default: JobDefinition | None = None
    stages: list[str] = list(DEFAULT_STAGES)
    workflow: WorkflowConfig = WorkflowConfig()
    orchestrator: OrchestratorSettings = OrchestratorSettings()
    notifications: list[NotificationTarget] = []
    jobs: dict[str, JobDefinition] = {}

    _templates: dict[str, JobTemplate] = PrivateAttr(default_factory=dict)
    _base_dir: Path = PrivateAttr(default_factory=Path.cwd)

    @field_validator("variables", mode="before")
    @classmethod
    def _vars(cls, v: Any) -> Any:
        return _coerce_variables(v) or {}

    @field_validator("stages")
    @classmethod
    def _unique_stages(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError(f"Duplicate stage names: {v}")
        return v

    @property
    def name(self) -> str:
        return self.workflow.name

    @property
    def templates(self) -> dict[str, JobTemplate]:
        """All flattened templates, hidden ones included, in declaration order."""
        return self._templates

    @property
    def visible_templates(self) -> list[JobTemplate]:
        return [t for t in self._templates.values() if not t.hidden]

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def resolve_path(self, value: str | Path) -> Path:
        """Resolve a settings path relative to the config file's directory."""
        path = Path(value).expanduser()
        return path if path.is_absolute() else self._base_dir / path


def parse_config(raw: dict[str, Any], *, base_dir: Path | None = None) -> PipelineConfig:
    """Validate a loaded YAML document and flatten its job templates.

    Raises:
        ConfigError: On any schema, inheritance or reference problem.
    """
    if not isinstance(raw, dict):
        raise ConfigError("Pipeline config must be a mapping")
    raw = resolve_references(raw)

    sections: dict[str, Any] = {}
    jobs: dict[str, Any] = {}
    for key, value in raw.items():
        key = str(key)
        if key in RESERVED_KEYS:
            sections[key] = value
        elif key in IGNORED_KEYS:
            logger.debug("Ignoring top-level '%s'", key)
        elif isinstance(value, dict):
            jobs[key] = value
        else:
            raise ConfigError(f"Top-level key '{key}' is neither a section nor a job mapping")

    try:
        config = PipelineConfig(**sections, jobs=jobs)
    except ValidationError as exc:
        raise ConfigError(f"Invalid pipeline config: {exc}") from exc

    config._templates = build_templates(
        config.jobs,
        defaults=config.default,
        stages=config.stages,
        default_timeout=config.orchestrator.default_timeout_seconds,
    )
    if base_dir is not None:
        config._base_dir = base_dir
    return config


def load_config(config_path: Path) -> PipelineConfig:
    """Load a pipeline configuration file.

    Args:
        config_path: Path to the pipeline YAML document.

    Returns:
        Validated PipelineConfig with flattened templates.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ConfigError: If parsing or validation fails.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Pipeline config not found: {config_path}")

    with open(config_path) as f:
        try:
            raw = yaml.load(f, Loader=_ConfigLoader) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    config = parse_config(raw, base_dir=config_path.resolve().parent)
    apply_env_overrides(config.orchestrator)

    logger.info(
        "Loaded pipeline config '%s': %d jobs (%d visible)",
        config.name,
        len(config.templates),
        len(config.visible_templates),
    )
    return config


def apply_env_overrides(settings: OrchestratorSettings) -> None:
    """Apply ``PIPEWRIGHT_*`` environment overrides for deployment."""
    concurrency = os.environ.get("PIPEWRIGHT_CONCURRENCY")
    if concurrency:
        try:
            settings.concurrency = max(1, int(concurrency))
        except ValueError as exc:
            raise ConfigError(f"PIPEWRIGHT_CONCURRENCY must be an integer: {concurrency!r}") from exc

    workdir = os.environ.get("PIPEWRIGHT_WORKDIR")
    if workdir:
        settings.workdir = workdir

    db_path = os.environ.get("PIPEWRIGHT_DB_PATH")
    if db_path:
        settings.db_path = db_path

    log_dir = os.environ.get("PIPEWRIGHT_LOG_DIR")
    if log_dir:
        settings.log_dir = log_dir

    wait_for_manual = os.environ.get("PIPEWRIGHT_WAIT_FOR_MANUAL")
    if wait_for_manual is not None:
        settings.wait_for_manual = wait_for_manual.lower() in ("1", "true", "yes")
