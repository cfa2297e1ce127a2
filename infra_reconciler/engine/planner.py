"""
Infra Reconciler - Reconciliation Planner

Creates plans by diffing declared resources against remembered state.
Determines operation kinds, ordering and inter-operation dependencies.
"""

from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

import networkx as nx

from infra_reconciler.engine.graph import CycleError, DependencyGraph, find_cycle
from infra_reconciler.models import (
    Operation,
    OperationType,
    Plan,
    StateRecord,
)

logger = logging.getLogger(__name__)


def changed_attributes(declared: Dict[str, Any], remembered: Dict[str, Any]) -> List[str]:
    """Attribute names whose declared value differs from the remembered one."""
    keys = set(declared) | set(remembered)
    return sorted(
        k for k in keys
        if k not in declared or k not in remembered or declared[k] != remembered[k]
    )


class ReconciliationPlanner:
    """
    Creates plans from a dependency graph and remembered state.

    Responsibilities:
    - Classify each resource as create / update / unchanged
    - Schedule deletes for remembered resources no longer declared
    - Order creates/updates dependencies first, deletes dependents first
    - Record which operations must succeed before each operation

    Drift (from a refresh) maps identity key to the current remote outputs,
    or None when the remote object no longer exists.
    """

    def __init__(self):
        """Initialize planner."""
        self.logger = logging.getLogger(__name__)

    def create_plan(
        self,
        run_id: str,
        graph: Optional[DependencyGraph],
        records: Dict[str, StateRecord],
        drift: Optional[Dict[str, Optional[Dict[str, Any]]]] = None,
        destroy: bool = False,
    ) -> Plan:
        """
        Create a plan.

        Args:
            run_id: Unique run identifier
            graph: Dependency graph of the declaration (may be None when destroying)
            records: Remembered state keyed by identity key
            drift: Optional refresh result
            destroy: Delete every remembered resource instead of converging

        Returns:
            Plan with ordered operations

        Raises:
            CycleError: remembered dependencies of deleted resources form a cycle
        """
        drift = drift or {}
        operations: List[Operation] = []
        unchanged: List[str] = []
        op_by_key: Dict[str, Operation] = {}

        if not destroy and graph is not None:
            for key in graph.topological_order():
                op = self._plan_declared(key, graph, records, drift, op_by_key)
                if op is None:
                    unchanged.append(key)
                    continue
                op_by_key[key] = op
                operations.append(op)

        declared_keys = set() if destroy or graph is None else set(graph.topological_order())
        orphaned = {k: r for k, r in records.items() if k not in declared_keys}
        operations.extend(self._plan_deletes(orphaned, records, op_by_key, destroy))

        plan = Plan(
            run_id=run_id,
            created_at=datetime.utcnow(),
            operations=operations,
            unchanged=unchanged,
            destroy=destroy,
        )

        counts = plan.counts()
        self.logger.info(
            f"Created plan {run_id}: {counts['create']} to create, "
            f"{counts['update']} to update, {counts['delete']} to delete, "
            f"{len(unchanged)} unchanged"
        )
        return plan

    def _plan_declared(
        self,
        key: str,
        graph: DependencyGraph,
        records: Dict[str, StateRecord],
        drift: Dict[str, Optional[Dict[str, Any]]],
        op_by_key: Dict[str, Operation],
    ) -> Optional[Operation]:
        resource = graph.declaration(key)
        dependency_keys = resource.dependency_keys()
        depends_on_ops = [op_by_key[d].id for d in dependency_keys if d in op_by_key]
        record = records.get(key)

        if record is None or (key in drift and drift[key] is None):
            return Operation(
                type=OperationType.CREATE,
                identity=resource.identity,
                attributes=resource.attributes,
                dependencies=depends_on_ops,
                resource_dependencies=dependency_keys,
                reason="not in state" if record is None else "missing from remote",
            )

        changed = changed_attributes(resource.attributes, record.declared)
        reason = ""
        if changed:
            reason = f"attributes changed: {', '.join(changed)}"
        elif sorted(dependency_keys) != sorted(record.dependencies):
            reason = "dependencies changed"
        elif key in drift and drift[key] != record.outputs:
            reason = "drift detected"
        else:
            recreated = [
                d for d in dependency_keys
                if d in op_by_key and op_by_key[d].type == OperationType.CREATE
            ]
            if recreated:
                reason = f"dependency recreated: {', '.join(recreated)}"

        if not reason:
            return None

        return Operation(
            type=OperationType.UPDATE,
            identity=resource.identity,
            attributes=resource.attributes,
            prior=record,
            dependencies=depends_on_ops,
            resource_dependencies=dependency_keys,
            reason=reason,
            changed_attributes=changed,
        )

    def _plan_deletes(
        self,
        orphaned: Dict[str, StateRecord],
        records: Dict[str, StateRecord],
        op_by_key: Dict[str, Operation],
        destroy: bool,
    ) -> List[Operation]:
        """Delete operations for orphaned records, dependents first."""
        if not orphaned:
            return []

        # Edge A -> B: A depended on B, so A is deleted first.
        delete_graph: nx.DiGraph = nx.DiGraph()
        for key in orphaned:
            delete_graph.add_node(key)
        for key, record in orphaned.items():
            for dep in record.dependencies:
                if dep in orphaned:
                    delete_graph.add_edge(key, dep)

        cycle = find_cycle(delete_graph)
        if cycle:
            raise CycleError(cycle)

        delete_ops: Dict[str, Operation] = {}
        ordered: List[Operation] = []
        for key in nx.lexicographical_topological_sort(delete_graph):
            record = orphaned[key]
            dependencies = [delete_ops[d].id for d in delete_graph.predecessors(key)]
            # Surviving resources that referenced this one must be updated first.
            for other_key, other in records.items():
                if other_key in orphaned or key not in other.dependencies:
                    continue
                if other_key in op_by_key:
                    dependencies.append(op_by_key[other_key].id)
            op = Operation(
                type=OperationType.DELETE,
                identity=record.identity,
                prior=record,
                dependencies=sorted(dependencies),
                resource_dependencies=list(record.dependencies),
                reason="destroy requested" if destroy else "removed from declaration",
            )
            delete_ops[key] = op
            ordered.append(op)

        self.logger.debug(f"Planned {len(ordered)} deletes")
        return ordered


# Singleton instance
planner = ReconciliationPlanner()


def get_planner() -> ReconciliationPlanner:
    """Get planner instance."""
    return planner
