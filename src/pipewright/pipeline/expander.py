"""Job expansion: one template + rule decision → concrete job instances.

``parallel: {matrix: [...]}`` expands each entry as the cartesian product of
its axes; entries are concatenated in declaration order. ``parallel: N``
produces N numbered copies. Without ``parallel`` the template yields a
single instance keyed by its name.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any

from pipewright.pipeline.errors import ConfigError
from pipewright.pipeline.models import (
    MAX_MATRIX_INSTANCES,
    JobInstance,
    JobTemplate,
    ParallelSpec,
    _stringify,
)
from pipewright.pipeline.rules import RuleDecision
from pipewright.pipeline.variables import VariableResolver

logger = logging.getLogger("pipewright.pipeline.expander")


def matrix_cells(name: str, spec: ParallelSpec) -> list[dict[str, str]]:
    """Expand ``spec.matrix`` into ordered cells.

    Raises ConfigError on an empty entry, an empty or nested axis list, a
    duplicate cell, or more than MAX_MATRIX_INSTANCES cells.
    """
    if spec.matrix is None:
        return []
    if not spec.matrix:
        raise ConfigError(f"Job '{name}': parallel.matrix must not be empty")

    cells: list[dict[str, str]] = []
    seen: set[tuple[tuple[str, str], ...]] = set()
    for position, entry in enumerate(spec.matrix):
        if not entry:
            raise ConfigError(f"Job '{name}': matrix entry {position} is empty")
        axes = [(str(axis), _axis_values(name, str(axis), values)) for axis, values in entry.items()]
        for combination in itertools.product(*(values for _axis, values in axes)):
            cell = {axis: value for (axis, _values), value in zip(axes, combination)}
            identity = tuple(cell.items())
            if identity in seen:
                raise ConfigError(f"Job '{name}': duplicate matrix cell {cell_label(cell)}")
            seen.add(identity)
            cells.append(cell)
            if len(cells) > MAX_MATRIX_INSTANCES:
                raise ConfigError(
                    f"Job '{name}': matrix expands to more than {MAX_MATRIX_INSTANCES} instances"
                )
    return cells


def _axis_values(name: str, axis: str, values: Any) -> list[str]:
    if not isinstance(values, list):
        values = [values]
    if not values:
        raise ConfigError(f"Job '{name}': matrix axis '{axis}' has no values")
    for value in values:
        if isinstance(value, (list, dict)):
            raise ConfigError(f"Job '{name}': matrix axis '{axis}' must list scalar values")
    return [_stringify(value) for value in values]


def cell_label(cell: dict[str, str]) -> str:
    """``{"A": "1", "B": "x"}`` → ``A=1, B=x``."""
    return ", ".join(f"{axis}={value}" for axis, value in cell.items())


def instance_key(name: str, cell: dict[str, str]) -> str:
    return f"{name}[{cell_label(cell)}]"


class JobExpander:
    """Turns included templates into JobInstances with resolved variables."""

    def __init__(self, resolver: VariableResolver):
        self._resolver = resolver

    def expand(self, template: JobTemplate, decision: RuleDecision) -> list[JobInstance]:
        if not decision.included:
            return []

        spec = template.parallel
        if spec is None:
            return [self._instance(template, decision, template.name)]

        if spec.count is not None:
            total = spec.count
            return [
                self._instance(template, decision, f"{template.name}[{n}/{total}]", node=(n, total))
                for n in range(1, total + 1)
            ]

        cells = matrix_cells(template.name, spec)
        total = len(cells)
        logger.debug("Expanded %s into %d matrix instances", template.name, total)
        return [
            self._instance(template, decision, instance_key(template.name, cell), cell=cell, node=(n, total))
            for n, cell in enumerate(cells, start=1)
        ]

    def _instance(
        self,
        template: JobTemplate,
        decision: RuleDecision,
        key: str,
        *,
        cell: dict[str, str] | None = None,
        node: tuple[int, int] | None = None,
    ) -> JobInstance:
        variables = self._resolver.resolve(template, cell, decision.variables)
        return JobInstance(
            key=key,
            template=template.name,
            index=template.index,
            matrix_cell=cell or {},
            node_index=node[0] if node else None,
            node_total=node[1] if node else None,
            variables=variables.to_dict(),
            stage=template.stage,
            tags=list(template.tags),
            when=decision.when or template.when,
            allow_failure=(
                decision.allow_failure
                if decision.allow_failure is not None
                else template.allow_failure
            ),
            interruptible=template.interruptible,
            timeout_seconds=template.timeout_seconds,
            retry=template.retry,
            needs=list(template.needs) if template.needs is not None else None,
            dependencies=list(template.dependencies) if template.dependencies is not None else None,
        )
