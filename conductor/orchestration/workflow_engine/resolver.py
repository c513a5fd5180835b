"""
Dependency resolution for pipeline steps.

Builds a DAG from ``depends_on`` edges, rejects dangling references and
cycles, and groups steps into waves that can start together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set

import networkx as nx

from ...exceptions import ValidationError
from .steps import StepDefinition

logger = logging.getLogger(__name__)


@dataclass
class ExecutionPlan:
    """Validated schedule for one pipeline.

    Attributes:
        waves: Step ids grouped by wave, each wave in declaration order
        graph: DAG with an edge ``dependency -> dependent`` per ``depends_on`` entry
    """

    waves: List[List[str]]
    graph: nx.DiGraph = field(repr=False)

    @property
    def order(self) -> List[str]:
        """Flattened execution order."""
        return [step_id for wave in self.waves for step_id in wave]

    def wave_of(self, step_id: str) -> int:
        for index, wave in enumerate(self.waves):
            if step_id in wave:
                return index
        raise KeyError(step_id)

    def dependencies(self, step_id: str) -> Set[str]:
        """Transitive dependencies of ``step_id``."""
        return set(nx.ancestors(self.graph, step_id))

    def dependents(self, step_id: str) -> Set[str]:
        """Transitive dependents of ``step_id``."""
        return set(nx.descendants(self.graph, step_id))


class DependencyResolver:
    """Turns step definitions into an :class:`ExecutionPlan`."""

    def __init__(self, steps: Sequence[StepDefinition], pipeline_id: Optional[str] = None):
        self.steps = list(steps)
        self.pipeline_id = pipeline_id
        self._by_id: Dict[str, StepDefinition] = {step.id: step for step in self.steps}

    def build_graph(self) -> nx.DiGraph:
        """Build the dependency DAG.

        Raises:
            ValidationError: If a step depends on an unknown step
        """
        dag = nx.DiGraph()
        for step in self.steps:
            dag.add_node(step.id)

        for step in self.steps:
            for dep in step.depends_on:
                if dep not in self._by_id:
                    raise ValidationError(
                        f"Step {step.id} depends on non-existent step: {dep}",
                        pipeline_id=self.pipeline_id,
                        step_id=step.id,
                    )
                dag.add_edge(dep, step.id)
        return dag

    def find_cycle(self) -> Optional[str]:
        """Depth-first search with a recursion stack.

        Returns:
            Id of a step on a cycle, or None if the graph is acyclic
        """
        visited: Set[str] = set()
        in_stack: Set[str] = set()

        def visit(step_id: str) -> Optional[str]:
            if step_id in in_stack:
                return step_id
            if step_id in visited:
                return None

            visited.add(step_id)
            in_stack.add(step_id)
            step = self._by_id.get(step_id)
            for dep in step.depends_on if step else ():
                found = visit(dep)
                if found:
                    return found
            in_stack.discard(step_id)
            return None

        for step in self.steps:
            found = visit(step.id)
            if found:
                return found
        return None

    def compute_waves(self, dag: nx.DiGraph) -> List[List[str]]:
        """Group steps by wave.

        Wave 0 holds steps without dependencies; wave n holds steps whose
        dependencies all sit in earlier waves.
        """
        levels: Dict[str, int] = {}
        remaining = [step.id for step in self.steps]

        while remaining:
            progressed = []
            for step_id in remaining:
                predecessors = list(dag.predecessors(step_id))
                if all(p in levels for p in predecessors):
                    levels[step_id] = 1 + max((levels[p] for p in predecessors), default=-1)
                    progressed.append(step_id)

            if not progressed:
                raise ValidationError(
                    f"Cannot determine execution waves - possible cycle involving {remaining[0]}",
                    pipeline_id=self.pipeline_id,
                    step_id=remaining[0],
                )
            remaining = [sid for sid in remaining if sid not in levels]

        waves: List[List[str]] = [[] for _ in range(max(levels.values()) + 1)] if levels else []
        for step in self.steps:
            waves[levels[step.id]].append(step.id)
        return waves

    def resolve(self) -> ExecutionPlan:
        """Validate the dependencies and compute the schedule.

        Raises:
            ValidationError: Dangling dependency or cycle
        """
        dag = self.build_graph()

        cyclic_step = self.find_cycle()
        if cyclic_step is not None:
            raise ValidationError(
                f"Circular dependency detected involving step: {cyclic_step}",
                pipeline_id=self.pipeline_id,
                step_id=cyclic_step,
            )

        waves = self.compute_waves(dag)
        logger.debug(f"Resolved {len(self.steps)} steps into {len(waves)} waves: {waves}")
        return ExecutionPlan(waves=waves, graph=dag)


def resolve_execution_plan(
    steps: Sequence[StepDefinition], pipeline_id: Optional[str] = None
) -> ExecutionPlan:
    """Convenience wrapper around :class:`DependencyResolver`."""
    return DependencyResolver(steps, pipeline_id).resolve()
