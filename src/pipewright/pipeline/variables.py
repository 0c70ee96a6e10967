"""Variable resolution and ``$VAR`` expansion.

Precedence, lowest to highest::

    global variables
    each ancestor of the linearized extends chain
    the template's own variables
    the matrix cell
    variables of the matching rule

Every layer overwrites the ones below it. The resulting VariableSet is a pure
function of its inputs; runtime values (dotenv reports, predefined ``CI_*``
variables, trigger variables) are layered on only when the process
environment is built at dispatch.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path

from pipewright.pipeline.errors import ConfigError
from pipewright.pipeline.models import JobInstance, JobTemplate, PipelineRunContext

logger = logging.getLogger("pipewright.pipeline.variables")

# $$ (escaped dollar), ${NAME} or $NAME
_REFERENCE_RE = re.compile(r"\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


class VariableSet(Mapping[str, str]):
    """Immutable name → value mapping that remembers which layer set each name.

    Usage::

        resolved = VariableSet([("global", {"A": "1"}), ("job:build", {"A": "2"})])
        resolved["A"]            # → "2"
        resolved.source_of("A")  # → "job:build"
    """

    def __init__(self, layers: Iterable[tuple[str, Mapping[str, str]]] = ()):
        values: dict[str, str] = {}
        sources: dict[str, str] = {}
        for source, layer in layers:
            for name, value in layer.items():
                values[name] = value
                sources[name] = source
        self._values = values
        self._sources = sources

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"VariableSet({self._values!r})"

    def source_of(self, name: str) -> str | None:
        """Layer that supplied the effective value of ``name``."""
        return self._sources.get(name)

    def to_dict(self) -> dict[str, str]:
        return dict(self._values)


class VariableResolver:
    """Resolves the variables of one job instance."""

    def __init__(self, global_variables: Mapping[str, str] | None = None):
        self._global_variables = dict(global_variables or {})

    def resolve(
        self,
        template: JobTemplate,
        matrix_cell: Mapping[str, str] | None = None,
        rule_variables: Mapping[str, str] | None = None,
    ) -> VariableSet:
        if template.name in template.extends_chain:
            chain = " -> ".join([*template.extends_chain, template.name])
            raise ConfigError(f"Cyclic extends chain: {chain}")

        layers: list[tuple[str, Mapping[str, str]]] = [("global", self._global_variables)]
        for source, layer in template.variable_layers:
            kind = "job" if source == template.name else "extends"
            layers.append((f"{kind}:{source}", layer))
        if matrix_cell:
            layers.append(("matrix", matrix_cell))
        if rule_variables:
            layers.append(("rule", rule_variables))
        return VariableSet(layers)


def expand_variables(
    variables: Mapping[str, str],
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Expand ``$NAME`` and ``${NAME}`` references inside variable values.

    References resolve against ``variables`` first, then ``environ``.
    Unknown names expand to an empty string and ``$$`` yields a literal
    ``$``. A self-referencing chain stops expanding at the reference that
    closes the loop, which is kept as an
    unexpanded ``${NAME}`` reference.
    """
    environ = environ or {}
    expanded: dict[str, str] = {}

    def lookup(name: str, visiting: tuple[str, ...]) -> str:
        if name in expanded:
            return expanded[name]
        if name in variables:
            if name in visiting:
                logger.warning("Variable reference cycle: %s", " -> ".join([*visiting, name]))
                return f"${{{name}}}"
            return expand(variables[name], (*visiting, name))
        return environ.get(name, "")

    def expand(text: str, visiting: tuple[str, ...]) -> str:
        if "$" not in text:
            return text

        def replace(match: re.Match) -> str:
            name = match.group(1) or match.group(2)
            if name is None:
                return "$"
            return lookup(name, visiting)

        return _REFERENCE_RE.sub(replace, text)

    for name, value in variables.items():
        expanded[name] = expand(value, (name,))
    return expanded


def predefined_variables(
    run_context: PipelineRunContext,
    instance: JobInstance,
    project_dir: Path | str,
) -> dict[str, str]:
    """``CI_*`` variables describing the run and the instance."""
    env = {
        key: value
        for key, value in run_context.trigger.context_fields().items()
        if value is not None
    }
    env.update(
        {
            "CI": "true",
            "CI_PIPELINE_ID": run_context.run_id,
            "CI_PIPELINE_NAME": run_context.pipeline_name,
            "CI_PROJECT_DIR": str(project_dir),
            "CI_JOB_NAME": instance.key,
            "CI_JOB_NAME_SLUG": _slug(instance.key),
            "CI_JOB_STAGE": instance.stage,
            "CI_JOB_ATTEMPT": str(instance.attempt),
        }
    )
    if instance.node_index is not None and instance.node_total is not None:
        env["CI_NODE_INDEX"] = str(instance.node_index)
        env["CI_NODE_TOTAL"] = str(instance.node_total)
    return env


def build_environment(
    run_context: PipelineRunContext,
    instance: JobInstance,
    project_dir: Path | str,
    *,
    dotenv: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Process environment for one dispatch of ``instance``.

    Layering, lowest to highest: predefined ``CI_*`` variables, the
    instance's resolved variables, dotenv values inherited from needed jobs,
    then pipeline variables supplied with the trigger.
    """
    # Predefined values are literal: commit messages may contain "$".
    layered = {
        name: value.replace("$", "$$")
        for name, value in predefined_variables(run_context, instance, project_dir).items()
    }
    layered.update(instance.variables)
    layered.update(dotenv or {})
    layered.update(run_context.trigger.variables)
    return expand_variables(layered, environ)


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")[:63]
