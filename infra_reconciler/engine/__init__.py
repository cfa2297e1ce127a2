"""
Infra Reconciler - Engine Package

Core reconciliation engine:
- Parser: Validates and parses YAML declarations
- Graph: Builds the resource dependency graph
- Planner: Diffs declared vs remembered state into a plan
- Executor: Applies plans through adapters
- Reconciler: Plan -> Apply facade
"""

from infra_reconciler.engine.parser import DeclarationParser, ParserError
from infra_reconciler.engine.graph import (
    CycleError,
    DependencyGraph,
    GraphError,
    UnresolvedReferenceError,
)
from infra_reconciler.engine.planner import ReconciliationPlanner
from infra_reconciler.engine.executor import ExecutionError, PlanExecutor
from infra_reconciler.engine.reconciler import Reconciler

__all__ = [
    "DeclarationParser",
    "ParserError",
    "CycleError",
    "DependencyGraph",
    "GraphError",
    "UnresolvedReferenceError",
    "ReconciliationPlanner",
    "ExecutionError",
    "PlanExecutor",
    "Reconciler",
]
