"""Plan compiler: diffs a resource graph against prior state."""

import heapq
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set

from stackpilot.drivers.base import ProviderResult
from stackpilot.orchestrator.dependency_graph import ResourceGraph
from stackpilot.orchestrator.references import canonicalize, iter_references, to_document
from stackpilot.state.models import StateRecord, utcnow
from stackpilot.utils.errors import EngineError, PlanError, PlanErrorKind
from stackpilot.utils.logging import get_logger

logger = get_logger(__name__)


class StepAction(Enum):
    """What a plan step does to its resource."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


class StepStatus(Enum):
    """Execution status of a plan step."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def finished(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED)


@dataclass
class PlanStep:
    """One resource's action within a plan, and its execution status.

    ``depends_on`` lists the steps that must succeed before this one runs.
    ``graph_dependencies`` is what gets recorded in state for the resource;
    for deletes it is empty.
    """

    identifier: str
    type: str
    action: StepAction
    properties: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    graph_dependencies: List[str] = field(default_factory=list)
    prior: Optional[StateRecord] = None
    reason: Optional[str] = None
    changed_keys: List[str] = field(default_factory=list)

    status: StepStatus = StepStatus.PENDING
    resolved_properties: Optional[Dict[str, Any]] = None
    outputs: Optional[ProviderResult] = None
    error: Optional[EngineError] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class Plan:
    """Ordered plan steps.

    Every step appears after all of its dependencies; deletes come after
    every create, update and no-op.
    """

    steps: List[PlanStep] = field(default_factory=list)
    outputs: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self._by_id = {step.identifier: step for step in self.steps}
        self._dependents: Dict[str, List[str]] = {step.identifier: [] for step in self.steps}
        for step in self.steps:
            for dep in step.depends_on:
                self._dependents.setdefault(dep, []).append(step.identifier)

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._by_id

    def step(self, identifier: str) -> PlanStep:
        return self._by_id[identifier]

    def order(self) -> List[str]:
        return [step.identifier for step in self.steps]

    def get_dependents(self, identifier: str) -> List[str]:
        """Steps that wait on the given step."""
        return list(self._dependents.get(identifier, []))

    def get_steps_by_action(self, action: StepAction) -> List[PlanStep]:
        return [step for step in self.steps if step.action == action]

    def has_changes(self) -> bool:
        """Check if the plan changes any resource."""
        return any(step.action != StepAction.NO_OP for step in self.steps)

    def get_summary(self) -> Dict[str, int]:
        """Get a summary of steps by action."""
        summary = {action.value: 0 for action in StepAction}
        for step in self.steps:
            summary[step.action.value] += 1
        return summary


def changed_keys(declared: Mapping[str, Any], recorded: Mapping[str, Any]) -> List[str]:
    """Top-level property keys whose normalized values differ."""
    keys = set(declared) | set(recorded)
    return sorted(
        key for key in keys
        if key not in declared or key not in recorded
        or canonicalize(declared[key]) != canonicalize(recorded[key])
    )


class PlanCompiler:
    """Compiles a ResourceGraph and prior state into a Plan."""

    def __init__(self):
        """Initialize plan compiler."""
        self.logger = get_logger(__name__)

    def compile(self, graph: ResourceGraph, prior: Mapping[str, StateRecord]) -> Plan:
        """Create a plan by comparing the desired graph with prior state.

        Args:
            graph: Desired resources
            prior: State records keyed by identifier

        Returns:
            Plan with one step per declared resource plus one delete step per
            recorded resource that is no longer declared

        Raises:
            PlanError: If the graph has a cycle or a resource changed type
        """
        order = self.topological_order(graph)

        steps: List[PlanStep] = []
        actions: Dict[str, StepAction] = {}
        for index in order:
            node = graph.nodes[index]
            record = prior.get(node.identifier)
            dependencies = graph.get_dependencies(node.identifier)
            declared = to_document(node.properties)

            if record is None:
                action, reason, keys = StepAction.CREATE, "Resource does not exist", []
            elif record.type != node.type:
                raise PlanError(
                    f"Resource '{node.identifier}' changed type from {record.type} to {node.type}; "
                    "remove it first or give the new resource a new identifier",
                    kind=PlanErrorKind.TYPE_CHANGED,
                    identifiers=[node.identifier]
                )
            else:
                keys = changed_keys(declared, record.properties)
                referenced = {ref.target for ref in iter_references(node.properties)}
                recreated = [
                    dep for dep in dependencies
                    if dep in referenced and actions[dep] == StepAction.CREATE
                ]
                if keys:
                    action, reason = StepAction.UPDATE, f"Properties changed: {', '.join(keys)}"
                elif recreated:
                    # Resolved values still point at the replaced resource
                    keys = self._keys_referencing(node.properties, recreated)
                    action, reason = StepAction.UPDATE, f"Dependency re-created: {', '.join(recreated)}"
                else:
                    action, reason = StepAction.NO_OP, "No changes detected"

            actions[node.identifier] = action
            steps.append(PlanStep(
                identifier=node.identifier,
                type=node.type,
                action=action,
                properties=dict(node.properties),
                depends_on=dependencies,
                graph_dependencies=list(dependencies),
                prior=record,
                reason=reason,
                changed_keys=keys
            ))

        steps.extend(self._delete_steps(graph, prior))

        plan = Plan(steps=steps, outputs=dict(graph.outputs))
        summary = plan.get_summary()
        self.logger.info(
            f"Plan compiled: {summary['create']} create, {summary['update']} update, "
            f"{summary['delete']} delete, {summary['no-op']} unchanged"
        )
        return plan

    @staticmethod
    def _keys_referencing(properties: Mapping[str, Any], targets: List[str]) -> List[str]:
        return sorted(
            key for key, value in properties.items()
            if any(ref.target in targets for ref in iter_references(value))
        )

    def topological_order(self, graph: ResourceGraph) -> List[int]:
        """Order node indices so dependencies come first.

        Kahn's algorithm; among ready nodes the earliest declared goes first,
        so the order is a pure function of the graph.

        Raises:
            PlanError: If the graph contains a cycle
        """
        in_degree = [len(deps) for deps in graph.dependencies]
        ready = [i for i, degree in enumerate(in_degree) if degree == 0]
        heapq.heapify(ready)
        result: List[int] = []

        while ready:
            index = heapq.heappop(ready)
            result.append(index)
            for dependent in graph.dependents[index]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(result) != len(graph.nodes):
            remaining = {i for i, degree in enumerate(in_degree) if degree > 0}
            cycle = self._find_cycle(graph, remaining)
            names = [graph.nodes[i].identifier for i in cycle]
            raise PlanError(
                f"Circular dependency detected: {' -> '.join(names + names[:1])}",
                kind=PlanErrorKind.CYCLE_DETECTED,
                identifiers=names
            )

        return result

    @staticmethod
    def _find_cycle(graph: ResourceGraph, candidates: Set[int]) -> List[int]:
        # Every node left after Kahn's algorithm lies on or behind a cycle,
        # so walking dependencies inside the leftover set must revisit a node.
        start = min(candidates)
        path: List[int] = []
        position: Dict[int, int] = {}
        current = start
        while current not in position:
            position[current] = len(path)
            path.append(current)
            current = min(dep for dep in graph.dependencies[current] if dep in candidates)
        cycle = path[position[current]:]
        # Report the cycle in dependency-first order starting from its earliest declaration
        cycle.reverse()
        pivot = cycle.index(min(cycle))
        return cycle[pivot:] + cycle[:pivot]

    def _delete_steps(self, graph: ResourceGraph, prior: Mapping[str, StateRecord]) -> List[PlanStep]:
        removed = [identifier for identifier in prior if identifier not in graph]
        if not removed:
            return []

        removed_set = set(removed)
        # Deleted resources that recorded a dependency on each removed resource
        blockers: Dict[str, List[str]] = {identifier: [] for identifier in removed}
        for identifier in removed:
            for dep in prior[identifier].dependencies:
                if dep in removed_set and dep != identifier:
                    blockers[dep].append(identifier)

        # Surviving resources whose prior record depended on a removed one
        survivors: Dict[str, List[str]] = {identifier: [] for identifier in removed}
        for node in graph.nodes:
            record = prior.get(node.identifier)
            if record is None:
                continue
            for dep in record.dependencies:
                if dep in removed_set:
                    survivors[dep].append(node.identifier)

        # Reverse topological order over the removed set: dependents first
        remaining = {identifier: len(blockers[identifier]) for identifier in removed}
        ready = sorted(identifier for identifier, count in remaining.items() if count == 0)
        heapq.heapify(ready)
        ordered: List[str] = []
        while ready:
            identifier = heapq.heappop(ready)
            ordered.append(identifier)
            for dep in prior[identifier].dependencies:
                if dep in remaining and dep != identifier:
                    remaining[dep] -= 1
                    if remaining[dep] == 0:
                        heapq.heappush(ready, dep)

        if len(ordered) != len(removed):
            stuck = sorted(identifier for identifier in removed if identifier not in ordered)
            raise PlanError(
                f"Recorded dependencies of removed resources form a cycle: {', '.join(stuck)}",
                kind=PlanErrorKind.CYCLE_DETECTED,
                identifiers=stuck
            )

        steps = []
        for identifier in ordered:
            record = prior[identifier]
            steps.append(PlanStep(
                identifier=identifier,
                type=record.type,
                action=StepAction.DELETE,
                properties=dict(record.resolved_properties),
                depends_on=sorted(blockers[identifier]) + survivors[identifier],
                prior=record,
                reason="Resource no longer declared"
            ))
        return steps
