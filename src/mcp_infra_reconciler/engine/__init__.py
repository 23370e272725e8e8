"""Reconcile Engine for declarative infrastructure.

This module provides declarative resource management:
- Parse resource declarations (YAML/dict) into ResourceSpecs
- Build and check the dependency graph
- Diff desired resources against recorded state
- Order changes into a plan and apply it through providers

Usage:
    from mcp_infra_reconciler.engine import ReconcileEngine

    engine = ReconcileEngine(store, registry)
    result = await engine.apply({
        "resources": {
            "aws_vpc": {"main": {"cidr_block": "10.0.0.0/16"}},
            "aws_subnet": {
                "public": {
                    "vpc_id": "${aws_vpc.main.id}",
                    "cidr_block": "10.0.1.0/24",
                },
            },
        },
    })
"""

from .schema import (
    UNKNOWN,
    ApplyResult,
    ApplySummary,
    Change,
    ChangeType,
    ExecuteOptions,
    Plan,
    PlanStep,
    Reference,
    ResourceSpec,
    StepAction,
    StepOutcome,
    StepStatus,
    Template,
    ValidationResult,
)
from .parser import ConfigParser, ParseError
from .graph import (
    GraphBuilder,
    ResourceGraph,
    ResourceNode,
    GraphError,
    DependencyCycleError,
    DuplicateAddressError,
    UnresolvedReferenceError,
    ReferenceEvaluationError,
)
from .validator import ConfigValidator
from .diff import DiffEngine, REPLACE_ON_CHANGE, summarize_plan
from .planner import Planner, PlanError
from .executor import PlanExecutor, OperationTimeoutError
from .engine import ReconcileEngine

__all__ = [
    # Main engine
    "ReconcileEngine",
    # Schema
    "UNKNOWN",
    "ApplyResult",
    "ApplySummary",
    "Change",
    "ChangeType",
    "ExecuteOptions",
    "Plan",
    "PlanStep",
    "Reference",
    "ResourceSpec",
    "StepAction",
    "StepOutcome",
    "StepStatus",
    "Template",
    "ValidationResult",
    # Components
    "ConfigParser",
    "ParseError",
    "GraphBuilder",
    "ResourceGraph",
    "ResourceNode",
    "GraphError",
    "DependencyCycleError",
    "DuplicateAddressError",
    "UnresolvedReferenceError",
    "ReferenceEvaluationError",
    "ConfigValidator",
    "DiffEngine",
    "REPLACE_ON_CHANGE",
    "summarize_plan",
    "Planner",
    "PlanError",
    "PlanExecutor",
    "OperationTimeoutError",
]
