"""Dependency graph of the job instances of one pipeline run.

Edges come from two places:

- ``needs`` entries fan out to every instance of the named template, or only
  to the pinned matrix cells / explicit instance key.
- Jobs that do not declare ``needs`` depend on every instance of all earlier
  stages (``stage`` edges).

Edges to jobs that were excluded by their rules are dropped with a warning
(debug level for ``optional`` needs). The resulting graph is always acyclic;
a cycle raises CycleError naming the offending chain.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from pipewright.pipeline.errors import CycleError
from pipewright.pipeline.models import (
    DEFAULT_STAGES,
    EdgeKind,
    JobInstance,
    JobTemplate,
    NeedRef,
)

logger = logging.getLogger("pipewright.pipeline.graph")


class PipelineGraph:
    """Instances keyed by instance key plus typed dependency edges.

    ``edges[successor][predecessor]`` holds the EdgeKind. Instance order is
    declaration order and is preserved by every query.
    """

    def __init__(
        self,
        instances: dict[str, JobInstance],
        edges: dict[str, dict[str, EdgeKind]],
        *,
        templates: dict[str, JobTemplate] | None = None,
        stages: list[str] | None = None,
        warnings: list[str] | None = None,
    ):
        self.instances = instances
        self.edges = edges
        self.templates = templates or {}
        self.stages = stages or list(DEFAULT_STAGES)
        self.warnings = warnings or []
        self._successors: dict[str, list[str]] = defaultdict(list)
        for successor, preds in edges.items():
            for predecessor in preds:
                self._successors[predecessor].append(successor)

    def __len__(self) -> int:
        return len(self.instances)

    def __contains__(self, key: object) -> bool:
        return key in self.instances

    def predecessors(self, key: str) -> list[str]:
        return list(self.edges.get(key, {}))

    def successors(self, key: str) -> list[str]:
        return list(self._successors.get(key, []))

    def edge_kind(self, predecessor: str, successor: str) -> EdgeKind | None:
        return self.edges.get(successor, {}).get(predecessor)

    def instances_of(self, template: str) -> list[JobInstance]:
        return [i for i in self.instances.values() if i.template == template]

    def topological_order(self) -> list[str]:
        """Kahn's algorithm; ties broken by declaration order."""
        remaining = {key: len(self.edges.get(key, {})) for key in self.instances}
        order: list[str] = []
        ready = [key for key, count in remaining.items() if count == 0]
        while ready:
            key = ready.pop(0)
            order.append(key)
            for successor in self.successors(key):
                remaining[successor] -= 1
                if remaining[successor] == 0:
                    ready.append(successor)
        if len(order) != len(self.instances):
            raise CycleError(find_cycle(self.instances, self.edges) or list(remaining))
        return order

    def descendant_counts(self) -> dict[str, int]:
        """Number of transitive dependents of every instance."""
        descendants: dict[str, set[str]] = {}
        for key in reversed(self.topological_order()):
            reach: set[str] = set()
            for successor in self.successors(key):
                reach.add(successor)
                reach |= descendants[successor]
            descendants[key] = reach
        return {key: len(reach) for key, reach in descendants.items()}


class GraphBuilder:
    """Resolves ``needs`` and stage ordering into a PipelineGraph."""

    def __init__(self, stages: list[str] | None = None):
        self._stages = list(stages) if stages is not None else list(DEFAULT_STAGES)

    def build(
        self,
        instances: list[JobInstance],
        templates: dict[str, JobTemplate] | None = None,
    ) -> PipelineGraph:
        by_key: dict[str, JobInstance] = {}
        by_template: dict[str, list[JobInstance]] = defaultdict(list)
        for instance in instances:
            by_key[instance.key] = instance
            by_template[instance.template].append(instance)

        warnings: list[str] = []
        edges: dict[str, dict[str, EdgeKind]] = {}
        for instance in instances:
            preds: dict[str, EdgeKind] = {}
            if instance.needs is not None:
                for need in instance.needs:
                    for target in self._resolve_need(instance, need, by_key, by_template, warnings):
                        preds[target] = EdgeKind.NEEDS
            else:
                rank = self._stage_rank(instance.stage)
                for other in instances:
                    if self._stage_rank(other.stage) < rank:
                        preds[other.key] = EdgeKind.STAGE
            edges[instance.key] = preds
            instance.depends_on = list(preds)

        cycle = find_cycle(by_key, edges)
        if cycle:
            raise CycleError(cycle)

        logger.debug(
            "Built graph: %d instances, %d edges",
            len(by_key),
            sum(len(p) for p in edges.values()),
        )
        return PipelineGraph(
            by_key, edges, templates=templates, stages=self._stages, warnings=warnings
        )

    def _stage_rank(self, stage: str) -> int:
        try:
            return self._stages.index(stage)
        except ValueError:
            return len(self._stages)

    @staticmethod
    def _resolve_need(
        instance: JobInstance,
        need: NeedRef,
        by_key: dict[str, JobInstance],
        by_template: dict[str, list[JobInstance]],
        warnings: list[str],
    ) -> list[str]:
        if need.job in by_key and need.job not in by_template:
            # Explicit instance key such as ``build[OS=linux]``
            return [need.job]

        targets = by_template.get(need.job, [])
        if targets and need.matrix is not None:
            targets = [t for t in targets if any(_cell_matches(t.matrix_cell, pin) for pin in need.matrix)]

        if not targets:
            message = f"'{instance.key}' needs '{need.job}', which is not in this pipeline; edge dropped"
            if need.optional:
                logger.debug("%s", message)
            else:
                logger.warning("%s", message)
                warnings.append(message)
            return []
        return [t.key for t in targets]


def _cell_matches(cell: dict[str, str], pin: dict[str, str]) -> bool:
    return all(cell.get(axis) == value for axis, value in pin.items())


def find_cycle(
    instances: dict[str, JobInstance],
    edges: dict[str, dict[str, EdgeKind]],
) -> list[str] | None:
    """Return a dependency cycle as ``[a, b, ..., a]``, or None if acyclic.

    Iterative DFS over predecessor edges with an explicit recursion stack.
    """
    visited: set[str] = set()
    on_stack: set[str] = set()

    for root in instances:
        if root in visited:
            continue
        path: list[str] = [root]
        iterators = [iter(edges.get(root, {}))]
        on_stack.add(root)
        visited.add(root)
        while iterators:
            nxt = next(iterators[-1], None)
            if nxt is None:
                on_stack.discard(path.pop())
                iterators.pop()
                continue
            if nxt in on_stack:
                start = path.index(nxt)
                # Walked predecessor edges; reverse to read in execution order.
                return list(reversed([*path[start:], nxt]))
            if nxt in visited:
                continue
            visited.add(nxt)
            on_stack.add(nxt)
            path.append(nxt)
            iterators.append(iter(edges.get(nxt, {})))
    return None
