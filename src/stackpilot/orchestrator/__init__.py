"""Orchestrator module for graph building, planning and execution."""

from stackpilot.orchestrator.references import (
    Interpolation,
    Reference,
    ReferenceParser,
    canonicalize,
    resolve_value,
)
from stackpilot.orchestrator.dependency_graph import GraphBuilder, ResourceGraph, ResourceNode
from stackpilot.orchestrator.planner import Plan, PlanCompiler, PlanStep, StepAction, StepStatus
from stackpilot.orchestrator.executor import (
    ApplyResult,
    Executor,
    ProgressCallback,
    RunStatus,
    StepResult,
)
from stackpilot.orchestrator.orchestrator import ProvisioningOrchestrator, pseudo_parameters

__all__ = [
    # References
    'Interpolation',
    'Reference',
    'ReferenceParser',
    'canonicalize',
    'resolve_value',

    # Dependency graph
    'GraphBuilder',
    'ResourceGraph',
    'ResourceNode',

    # Planning
    'Plan',
    'PlanCompiler',
    'PlanStep',
    'StepAction',
    'StepStatus',

    # Execution
    'ApplyResult',
    'Executor',
    'ProgressCallback',
    'RunStatus',
    'StepResult',

    # Main orchestrator
    'ProvisioningOrchestrator',
    'pseudo_parameters',
]
