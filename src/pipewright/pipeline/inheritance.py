"""Template inheritance: flatten ``extends`` chains into JobTemplates.

Hidden jobs (names starting with ``.``) take part in inheritance but are
never scheduled. The linearization is depth-first with parents visited left
to right; an ancestor reached twice keeps its first position, so a shared
base of a diamond sits below both branches.

Field merging is strict overwrite: for each field the highest layer that
declares it wins. ``rules`` and ``needs`` are replaced wholesale, never
merged entry by entry. Variables are kept per layer so the variable resolver
can apply them in precedence order.
"""

from __future__ import annotations

import logging

from pipewright.pipeline.errors import ConfigError
from pipewright.pipeline.models import (
    DEFAULT_STAGE,
    DEFAULT_STAGES,
    DEFAULT_TIMEOUT_SECONDS,
    JOB_NAME_PATTERN,
    ArtifactSpec,
    JobDefinition,
    JobTemplate,
    RetryPolicy,
    WhenPolicy,
    _parse_duration_seconds,
)
from pipewright.pipeline.rules import compile_rule

logger = logging.getLogger("pipewright.pipeline.inheritance")

# Fields a ``default:`` section may supply to every job.
DEFAULTABLE_FIELDS = frozenset(
    {"before_script", "after_script", "artifacts", "tags", "timeout", "interruptible", "retry"}
)

_MERGED_FIELDS = (
    "rules",
    "script",
    "before_script",
    "after_script",
    "artifacts",
    "needs",
    "dependencies",
    "stage",
    "tags",
    "timeout",
    "interruptible",
    "allow_failure",
    "when",
    "retry",
    "parallel",
)


def linearize_extends(
    name: str,
    definitions: dict[str, JobDefinition],
    _stack: tuple[str, ...] = (),
) -> list[str]:
    """Return the ancestors of ``name``, lowest precedence first.

    Raises ConfigError on an unknown parent or a cyclic chain.
    """
    if name in _stack:
        chain = " -> ".join([*_stack[_stack.index(name) :], name])
        raise ConfigError(f"Cyclic extends chain: {chain}")
    definition = definitions.get(name)
    if definition is None:
        raise ConfigError(f"Unknown job or template '{name}'")

    order: list[str] = []
    for parent in definition.extends:
        if parent not in definitions:
            raise ConfigError(f"Job '{name}' extends unknown template '{parent}'")
        for ancestor in [*linearize_extends(parent, definitions, (*_stack, name)), parent]:
            if ancestor not in order:
                order.append(ancestor)
    return order


def build_templates(
    definitions: dict[str, JobDefinition],
    *,
    defaults: JobDefinition | None = None,
    stages: list[str] | None = None,
    default_timeout: int = DEFAULT_TIMEOUT_SECONDS,
) -> dict[str, JobTemplate]:
    """Flatten every job definition into a JobTemplate.

    ``definitions`` must be in declaration order; a template's ``index`` is
    its position there. Hidden templates are returned too so callers can
    inspect them, but only visible ones are validated for a script and a
    known stage.
    """
    stages = list(stages) if stages is not None else list(DEFAULT_STAGES)
    if defaults is not None:
        extra = sorted(defaults.model_fields_set - DEFAULTABLE_FIELDS - {"extends"})
        if extra or defaults.extends:
            bad = extra + (["extends"] if defaults.extends else [])
            raise ConfigError(f"'default' may not declare: {', '.join(bad)}")

    templates: dict[str, JobTemplate] = {}
    for index, (name, definition) in enumerate(definitions.items()):
        if not JOB_NAME_PATTERN.match(name):
            raise ConfigError(f"Invalid job name '{name}'")
        chain = linearize_extends(name, definitions)
        layers = [definitions[a] for a in chain] + [definition]
        if defaults is not None:
            layers.insert(0, defaults)

        merged = _merge_layers(layers)
        template = _to_template(name, index, chain, merged, definitions, default_timeout)
        _compile_rules(template)
        if not template.hidden:
            _validate_visible(template, stages)
            _validate_dependencies(template, definitions)
        templates[name] = template

    logger.debug("Built %d templates (%d hidden)", len(templates), sum(t.hidden for t in templates.values()))
    return templates


def _merge_layers(layers: list[JobDefinition]) -> dict:
    merged: dict = {}
    for layer in layers:
        for field_name in _MERGED_FIELDS:
            value = getattr(layer, field_name)
            if value is not None:
                merged[field_name] = value
    return merged


def _to_template(
    name: str,
    index: int,
    chain: list[str],
    merged: dict,
    definitions: dict[str, JobDefinition],
    default_timeout: int,
) -> JobTemplate:
    variable_layers = [
        (ancestor, dict(definitions[ancestor].variables))
        for ancestor in chain
        if definitions[ancestor].variables
    ]
    if definitions[name].variables:
        variable_layers.append((name, dict(definitions[name].variables)))

    timeout = merged.get("timeout")
    try:
        timeout_seconds = _parse_duration_seconds(timeout) if timeout is not None else default_timeout
    except ValueError as exc:
        raise ConfigError(f"Job '{name}': {exc}") from exc

    return JobTemplate(
        name=name,
        index=index,
        extends_chain=chain,
        rules=merged.get("rules"),
        variable_layers=variable_layers,
        script=merged.get("script") or [],
        before_script=merged.get("before_script") or [],
        after_script=merged.get("after_script") or [],
        artifacts=merged.get("artifacts") or ArtifactSpec(),
        needs=merged.get("needs"),
        dependencies=merged.get("dependencies"),
        stage=merged.get("stage") or DEFAULT_STAGE,
        tags=merged.get("tags") or [],
        timeout_seconds=timeout_seconds,
        interruptible=merged.get("interruptible", True),
        allow_failure=merged.get("allow_failure", False),
        when=merged.get("when") or WhenPolicy.ON_SUCCESS,
        retry=merged.get("retry") or RetryPolicy(),
        parallel=merged.get("parallel"),
    )


def _compile_rules(template: JobTemplate) -> None:
    for idx, rule in enumerate(template.rules or []):
        try:
            compile_rule(rule)
        except ConfigError as exc:
            raise ConfigError(f"Job '{template.name}' rule #{idx}: {exc}") from exc


def _validate_dependencies(template: JobTemplate, definitions: dict[str, JobDefinition]) -> None:
    for dep in template.dependencies or []:
        if dep not in definitions or dep.startswith("."):
            raise ConfigError(f"Job '{template.name}' depends on unknown job '{dep}'")


def _validate_visible(template: JobTemplate, stages: list[str]) -> None:
    if not template.script:
        raise ConfigError(f"Job '{template.name}' has no script")
    if template.stage not in stages:
        raise ConfigError(
            f"Job '{template.name}' uses undeclared stage '{template.stage}'. "
            f"Declared stages: {stages}"
        )
